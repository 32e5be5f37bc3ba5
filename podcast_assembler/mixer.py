"""Toolchain-backed audio primitives: mix, crossfade, concatenate, beds, encode.

Every primitive writes one output file and returns its path. Intermediate
outputs are PCM WAV in the working format of the MixPolicy, so that the
concat demuxer can join them without re-encoding.
"""

import logging
import os
import shutil
import tempfile

from pydub.utils import ratio_to_db

from podcast_assembler.constants import WORK_CODEC
from podcast_assembler.errors import ConcatenationError, MixError, ProcessExecutionFailure
from podcast_assembler.models import MixPolicy
from podcast_assembler.process import ProcessRunner

logger = logging.getLogger(__name__)

# output format -> (encoder, muxer, takes a bitrate)
ENCODERS = {
    "mp3": ("libmp3lame", "mp3", True),
    "m4a": ("aac", "ipod", True),
    "aac": ("aac", "adts", True),
    "opus": ("libopus", "opus", True),
    "ogg": ("libvorbis", "ogg", True),
    "flac": ("flac", "flac", False),
    "wav": (WORK_CODEC, "wav", False),
}


class Mixer:
    def __init__(self, runner: ProcessRunner, policy: MixPolicy | None = None):
        self.runner = runner
        self.policy = policy or MixPolicy()

    def mix(self, tracks, output_path: str) -> str:
        """Overlay tracks, each scaled by its volume factor.

        A track is (path, volume) or (path, volume, delay_seconds). The result
        lasts as long as the longest (delayed) input.
        """
        tracks = [_track(t) for t in tracks]
        if not tracks:
            raise MixError("no tracks to mix")

        inputs, chains = [], []
        for i, (path, volume, delay) in enumerate(tracks):
            inputs += ["-i", path]
            chain = f"[{i}:a]volume={volume:.4f}"
            if delay > 0:
                chain += f",adelay=delays={round(delay * 1000)}:all=1"
            chains.append(f"{chain}[a{i}]")
            if volume > 0 and volume != 1.0:
                logger.debug("mix: %s at %.1f dB", os.path.basename(path), ratio_to_db(volume))

        labels = "".join(f"[a{i}]" for i in range(len(tracks)))
        graph = ";".join(chains) + (
            f";{labels}amix=inputs={len(tracks)}:duration=longest"
            f":dropout_transition=0:normalize=0[out]"
        )
        self._ffmpeg(MixError, output_path, *inputs, "-filter_complex", graph,
                     "-map", "[out]", *self._pcm_args())
        return output_path

    def crossfade(self, first: str, second: str, output_path: str, duration: float) -> str:
        """Fade the tail of `first` out while the head of `second` fades in.

        A non-positive duration joins the two with a hard cut.
        """
        if duration <= 0:
            return self.concatenate([first, second], output_path)

        graph = f"[0:a][1:a]acrossfade=d={duration:.3f}:c1=tri:c2=tri[out]"
        self._ffmpeg(MixError, output_path, "-i", first, "-i", second,
                     "-filter_complex", graph, "-map", "[out]", *self._pcm_args())
        return output_path

    def concatenate(self, paths: list[str], output_path: str) -> str:
        """Join files end to end, in the given order.

        A single input is copied byte for byte. Multiple inputs must share
        codec, sample rate and channel layout.
        """
        if not paths:
            raise ConcatenationError("no input files to concatenate")
        if len(paths) == 1:
            try:
                shutil.copyfile(paths[0], output_path)
            except OSError as e:
                raise ConcatenationError(f"cannot copy {paths[0]}: {e}") from e
            return output_path

        fd, list_path = tempfile.mkstemp(
            prefix="concat-", suffix=".txt", dir=os.path.dirname(os.path.abspath(output_path))
        )
        try:
            with os.fdopen(fd, "w") as f:
                for path in paths:
                    f.write(f"file '{_escape(os.path.abspath(path))}'\n")
            self._ffmpeg(ConcatenationError, output_path,
                         "-f", "concat", "-safe", "0", "-i", list_path, "-c", "copy")
        finally:
            os.remove(list_path)
        return output_path

    def generate_silence(self, output_path: str, duration: float) -> str:
        source = f"anullsrc=r={self.policy.sample_rate}:cl={_layout(self.policy.channels)}"
        self._ffmpeg(MixError, output_path, "-f", "lavfi", "-i", source,
                     "-t", f"{max(duration, 0.0):.3f}", *self._pcm_args())
        return output_path

    def fit_bed(
        self,
        path: str,
        output_path: str,
        duration: float,
        fade_in: float = 0.0,
        fade_out: float = 0.0,
    ) -> str:
        """Loop or trim music to exactly `duration` seconds, with optional fades."""
        if duration <= 0:
            raise MixError(f"cannot fit {path} to {duration:.3f}s")

        # Fades may not overlap each other
        total_fade = fade_in + fade_out
        if total_fade > duration:
            scale = duration / total_fade
            fade_in, fade_out = fade_in * scale, fade_out * scale

        filters = []
        if fade_in > 0:
            filters.append(f"afade=t=in:st=0:d={fade_in:.3f}")
        if fade_out > 0:
            filters.append(f"afade=t=out:st={duration - fade_out:.3f}:d={fade_out:.3f}")
        af = ["-af", ",".join(filters)] if filters else []

        self._ffmpeg(MixError, output_path, "-stream_loop", "-1", "-i", path,
                     "-t", f"{duration:.3f}", "-vn", *af, *self._pcm_args())
        return output_path

    def conform(self, path: str, output_path: str) -> str:
        """Transcode to the working PCM format without touching levels."""
        self._ffmpeg(MixError, output_path, "-i", path, "-vn", "-map_metadata", "-1",
                     *self._pcm_args())
        return output_path

    def encode(self, path: str, output_path: str, fmt: str, bitrate: str) -> str:
        """Encode the deliverable file in the requested format and bitrate."""
        try:
            codec, muxer, uses_bitrate = ENCODERS[fmt.lower()]
        except KeyError:
            raise MixError(f"unsupported output format: {fmt}") from None
        rate = ["-b:a", bitrate] if uses_bitrate and bitrate else []
        self._ffmpeg(MixError, output_path, "-i", path, "-vn", "-c:a", codec, *rate,
                     "-f", muxer)
        return output_path

    def _pcm_args(self) -> list[str]:
        return [
            "-ar", str(self.policy.sample_rate),
            "-ac", str(self.policy.channels),
            "-c:a", WORK_CODEC,
        ]

    def _ffmpeg(self, error_type, output_path: str, *args: str) -> None:
        """Run ffmpeg writing output_path; drop any partial output on failure."""
        try:
            self.runner.run_ffmpeg(*args, output_path)
        except ProcessExecutionFailure as e:
            _discard(output_path)
            raise error_type(f"{os.path.basename(output_path)}: {e}") from e
        except BaseException:
            _discard(output_path)
            raise


def _track(track) -> tuple[str, float, float]:
    if len(track) == 2:
        path, volume = track
        return path, float(volume), 0.0
    path, volume, delay = track
    return path, float(volume), float(delay)


def _layout(channels: int) -> str:
    return {1: "mono", 2: "stereo"}.get(channels, f"{channels}c")


def _escape(path: str) -> str:
    return path.replace("'", "'\\''")


def _discard(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)
