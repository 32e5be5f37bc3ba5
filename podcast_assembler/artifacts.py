"""JSON artifacts, section lists, and run-scoped scratch space."""

import contextlib
import json
import logging
import os
import shutil
import tempfile

from podcast_assembler.constants import SCRATCH_PREFIX
from podcast_assembler.errors import ConfigError
from podcast_assembler.models import AudioSection

logger = logging.getLogger(__name__)


def write_artifact(directory: str, filename: str, data: dict) -> str:
    """Write JSON artifact to directory/filename.

    Returns path to the written file.
    """
    path = os.path.join(directory, filename)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    return path


def load_artifact(directory: str, filename: str) -> dict | list | None:
    """Read JSON artifact. Returns None if file doesn't exist."""
    path = os.path.join(directory, filename)
    if not os.path.exists(path):
        return None
    with open(path) as f:
        return json.load(f)


def load_sections(path: str) -> list[AudioSection]:
    """Read a section list artifact.

    Accepts either a bare list or {"sections": [...]}; each entry needs
    "type" and "path", "title" is optional. Relative paths are resolved
    against the artifact's directory. Order is kept exactly as written.
    """
    directory, filename = os.path.split(os.path.abspath(path))
    try:
        data = load_artifact(directory, filename)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON ({e})") from e
    if data is None:
        raise ConfigError(f"section list not found: {path}")
    if isinstance(data, dict):
        data = data.get("sections")
    if not isinstance(data, list):
        raise ConfigError(f"{path}: expected a list of sections")

    sections = []
    for i, entry in enumerate(data):
        if not isinstance(entry, dict) or "type" not in entry or "path" not in entry:
            raise ConfigError(f"{path}: section {i} needs 'type' and 'path'")
        try:
            section_type = entry["type"]
            source = os.path.join(directory, os.path.expanduser(entry["path"]))
            sections.append(AudioSection(type=section_type, source_path=source,
                                         title=entry.get("title")))
        except ValueError as e:
            raise ConfigError(f"{path}: section {i}: {e}") from e
    return sections


@contextlib.contextmanager
def scratch_dir(root: str | None = None):
    """Run-scoped scratch directory, removed on every exit path."""
    path = tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=root)
    logger.debug("Scratch directory: %s", path)
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed scratch directory: %s", path)


@contextlib.contextmanager
def atomic_output(output_path: str):
    """Yield a temporary sibling path that replaces output_path on success.

    On failure the temporary file is removed and output_path is left as it
    was, so a partial file is never published.
    """
    directory = os.path.dirname(os.path.abspath(output_path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".partial-", dir=directory)
    os.close(fd)
    try:
        yield tmp_path
        os.replace(tmp_path, output_path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
