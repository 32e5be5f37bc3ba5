"""Structural and loudness inspection of media files."""

import json
import logging
import math
import os
import re

from podcast_assembler.constants import LOUDNORM_LRA, MAX_TRUE_PEAK_DB, VOICE_TARGET_LUFS
from podcast_assembler.errors import (
    LoudnessParseFailure,
    NoAudioStream,
    ProbeFailure,
    ProcessCancelled,
    ProcessError,
    ProcessTimeout,
)
from podcast_assembler.models import LoudnessMeasurement, MediaInfo
from podcast_assembler.process import ProcessRunner

logger = logging.getLogger(__name__)

# loudnorm prints a flat JSON object after its "Parsed_loudnorm" log line;
# the surrounding stderr is arbitrary log noise.
_LOUDNORM_BLOCK = re.compile(r"\{[^{}]*\"input_i\"[^{}]*\}", re.DOTALL)

_LOUDNORM_FIELDS = {
    "input_i": "integrated_lufs",
    "input_tp": "true_peak_db",
    "input_lra": "loudness_range_lu",
    "input_thresh": "threshold_lufs",
}


class MediaProber:
    def __init__(self, runner: ProcessRunner):
        self.runner = runner

    def probe(self, path: str) -> MediaInfo:
        """Return duration, sample rate, channels, codec and bitrate of a file."""
        try:
            result = self.runner.run_ffprobe(
                "-v", "error",
                "-print_format", "json",
                "-show_format", "-show_streams",
                path,
            )
        except (ProcessTimeout, ProcessCancelled):
            raise
        except ProcessError as e:
            raise ProbeFailure(path, str(e)) from e

        size = os.path.getsize(path) if os.path.exists(path) else 0
        return parse_probe_output(result.stdout, path, size_bytes=size)

    def duration(self, path: str) -> float:
        return self.probe(path).duration_seconds

    def measure_loudness(
        self,
        path: str,
        target_lufs: float = VOICE_TARGET_LUFS,
        max_true_peak_db: float = MAX_TRUE_PEAK_DB,
    ) -> LoudnessMeasurement:
        """Single analysis pass with the EBU R128 loudnorm filter."""
        loudnorm = (
            f"loudnorm=I={target_lufs:g}:TP={max_true_peak_db:g}:"
            f"LRA={LOUDNORM_LRA:g}:print_format=json"
        )
        try:
            result = self.runner.run_ffmpeg(
                "-nostats", "-i", path, "-af", loudnorm, "-f", "null", "-",
            )
        except (ProcessTimeout, ProcessCancelled):
            raise
        except ProcessError as e:
            raise LoudnessParseFailure(path, f"analysis pass failed: {e}") from e

        measurement = parse_loudness_output(result.stderr, path, target_lufs)
        logger.debug(
            "%s: I=%.2f LUFS TP=%.2f dB LRA=%.2f LU",
            os.path.basename(path),
            measurement.integrated_lufs,
            measurement.true_peak_db,
            measurement.loudness_range_lu,
        )
        return measurement


def parse_probe_output(stdout: str, path: str, size_bytes: int = 0) -> MediaInfo:
    """Build MediaInfo from `ffprobe -print_format json` output."""
    try:
        data = json.loads(stdout)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProbeFailure(path, f"unparsable ffprobe output ({e})") from e
    if not isinstance(data, dict):
        raise ProbeFailure(path, "unexpected ffprobe output")

    streams = data.get("streams") or []
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if audio is None:
        raise NoAudioStream(path)

    fmt = data.get("format") or {}
    duration = _number(fmt.get("duration"))
    if duration is None:
        duration = _number(audio.get("duration"))
    if duration is None or duration < 0:
        raise ProbeFailure(path, "duration unavailable")
    # Encoder delay (e.g. LAME priming samples) shows up as a start offset
    # that the container adds to the reported duration.
    start = _number(fmt.get("start_time"))
    if start is None:
        start = _number(audio.get("start_time"))
    if start is not None and 0 < start < duration:
        duration -= start

    bitrate = _number(fmt.get("bit_rate"))
    if bitrate is None:
        bitrate = _number(audio.get("bit_rate"))

    return MediaInfo(
        path=path,
        duration_seconds=duration,
        sample_rate=int(_number(audio.get("sample_rate")) or 0),
        channels=int(audio.get("channels") or 0),
        codec=audio.get("codec_name") or "unknown",
        bitrate=int(bitrate) if bitrate is not None else None,
        size_bytes=size_bytes,
    )


def parse_loudness_output(stderr: str, path: str, target_lufs: float) -> LoudnessMeasurement:
    """Extract the loudnorm statistics block from ffmpeg's diagnostic output.

    Only the last delimited block mentioning "input_i" is considered. Every
    statistic must be present and finite; target_offset_lu is recomputed as
    target_lufs - integrated loudness.
    """
    blocks = _LOUDNORM_BLOCK.findall(stderr or "")
    if not blocks:
        raise LoudnessParseFailure(path, "no statistics block in output")
    try:
        raw = json.loads(blocks[-1])
    except json.JSONDecodeError as e:
        raise LoudnessParseFailure(path, f"malformed statistics block ({e})") from e

    values = {}
    for key, name in _LOUDNORM_FIELDS.items():
        if key not in raw:
            raise LoudnessParseFailure(path, f"missing {key}")
        value = _number(raw[key])
        if value is None or not math.isfinite(value):
            raise LoudnessParseFailure(path, f"{key}={raw[key]!r} is not a finite number")
        values[name] = value

    return LoudnessMeasurement(
        target_offset_lu=target_lufs - values["integrated_lufs"],
        **values,
    )


def _number(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
