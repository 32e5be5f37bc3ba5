"""Provenance manifest for an assembled episode."""

import os
from datetime import datetime, timezone

from podcast_assembler.artifacts import write_artifact
from podcast_assembler.constants import MANIFEST_NAME, VERSION
from podcast_assembler.models import EpisodeAssembly, SegmentKind


def build_manifest(assembly: EpisodeAssembly, settings: dict) -> dict:
    """Manifest dict: settings, stats, chapters, timeline and per-element loudness."""
    sections = [e for e in assembly.timeline if e.kind is SegmentKind.SECTION]
    fallbacks = [r.element_id for r in assembly.normalization if r.fallback]

    manifest = {
        "project": os.path.splitext(os.path.basename(assembly.output_path))[0],
        "output": os.path.abspath(assembly.output_path),
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "assembler_version": VERSION,
        "settings": settings,
        "music_used": dict(assembly.music_used),
        "stats": {
            "sections": len(sections),
            "duration_seconds": round(assembly.total_duration_seconds, 1),
            "inserted_seconds": round(assembly.inserted_duration_seconds, 3),
            "file_size_bytes": assembly.file_size_bytes,
            "normalization_fallbacks": fallbacks,
        },
        "chapters": [c.to_dict() for c in assembly.chapters],
        "timeline": [
            {
                "kind": e.kind.value,
                "start": round(e.start_time_seconds, 3),
                "duration": round(e.duration_seconds, 3),
            }
            for e in assembly.timeline
        ],
        "normalization": [r.to_dict() for r in assembly.normalization],
    }
    if assembly.final_loudness is not None:
        manifest["stats"]["integrated_lufs"] = assembly.final_loudness.integrated_lufs
        manifest["stats"]["true_peak_db"] = assembly.final_loudness.true_peak_db
    return manifest


def write_manifest(assembly: EpisodeAssembly, settings: dict, directory: str | None = None) -> str:
    """Write output.json next to the episode (or into `directory`).

    Returns path to the manifest.
    """
    if directory is None:
        directory = os.path.dirname(os.path.abspath(assembly.output_path))
    os.makedirs(directory, exist_ok=True)
    return write_artifact(directory, MANIFEST_NAME, build_manifest(assembly, settings))
