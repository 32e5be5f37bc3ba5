"""Music bed resolution: configured file, or absent."""

import logging
import os

from podcast_assembler.errors import ProbeFailure, ProcessCancelled
from podcast_assembler.models import MusicAssets, MusicRole
from podcast_assembler.probe import MediaProber

logger = logging.getLogger(__name__)


def resolve_music_assets(
    assets: MusicAssets,
    prober: MediaProber,
) -> tuple[MusicAssets, dict[str, str]]:
    """Return the usable subset of `assets` and a provenance map.

    Music is optional: a path that is missing, empty, or not decodable as
    audio resolves to None and the run degrades instead of failing.
    Provenance values are "file:<name>" or "absent".
    """
    resolved = {}
    provenance = {}

    for role in MusicRole:
        path = assets.get(role)
        usable = _check_asset(role, path, prober) if path else False
        resolved[role.value] = path if usable else None
        provenance[role.value] = f"file:{os.path.basename(path)}" if usable else "absent"

    return MusicAssets(**resolved), provenance


def _check_asset(role: MusicRole, path: str, prober: MediaProber) -> bool:
    if not os.path.isfile(path) or os.path.getsize(path) == 0:
        logger.warning("%s music not found or empty: %s", role.value, path)
        return False
    try:
        info = prober.probe(path)
    except ProcessCancelled:
        raise
    except ProbeFailure as e:
        logger.warning("%s music unusable, skipping: %s", role.value, e)
        return False
    if info.duration_seconds <= 0:
        logger.warning("%s music has no duration, skipping: %s", role.value, path)
        return False
    return True
