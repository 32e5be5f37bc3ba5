"""Two-pass loudness normalization of voice sections and music beds."""

import logging
import os

from pydub.utils import db_to_float

from podcast_assembler.constants import WORK_CODEC
from podcast_assembler.errors import AssemblyError, NormalizationError, ProcessCancelled
from podcast_assembler.models import (
    LoudnessMeasurement,
    MixPolicy,
    NormalizationPolicy,
    NormalizationResult,
)
from podcast_assembler.probe import MediaProber
from podcast_assembler.process import ProcessRunner

logger = logging.getLogger(__name__)


def compute_gain(measurement: LoudnessMeasurement, max_true_peak_db: float) -> tuple[float, bool]:
    """Return (gain_db, clamped) for the correction pass.

    The gain is the measured target offset unless applying it would push the
    true peak above max_true_peak_db, in which case it is limited to the
    available headroom.
    """
    gain = measurement.target_offset_lu
    headroom = max_true_peak_db - measurement.true_peak_db
    if gain > headroom:
        return headroom, True
    return gain, False


class LoudnessNormalizer:
    def __init__(
        self,
        runner: ProcessRunner,
        prober: MediaProber,
        policy: NormalizationPolicy | None = None,
        mix_policy: MixPolicy | None = None,
    ):
        self.runner = runner
        self.prober = prober
        self.policy = policy or NormalizationPolicy()
        self.mix_policy = mix_policy or MixPolicy()

    def normalize_voice(self, element_id: str, path: str, output_path: str) -> NormalizationResult:
        return self.normalize(element_id, path, output_path, self.policy.voice_target_lufs)

    def normalize_music(self, element_id: str, path: str, output_path: str) -> NormalizationResult:
        return self.normalize(element_id, path, output_path, self.policy.music_target_lufs)

    def measure(self, path: str, target_lufs: float) -> LoudnessMeasurement:
        """First pass: loudness scan against the element's target."""
        return self.prober.measure_loudness(path, target_lufs, self.policy.max_true_peak_db)

    def normalize(
        self,
        element_id: str,
        path: str,
        output_path: str,
        target_lufs: float,
        measurement: LoudnessMeasurement | None = None,
    ) -> NormalizationResult:
        """Measure (unless a measurement is supplied), correct, and verify one element.

        With normalization disabled the source path is handed back untouched.
        """
        if not self.policy.enabled:
            return self.passthrough(element_id, path, target_lufs)

        try:
            if measurement is None:
                measurement = self.measure(path, target_lufs)
            return self._correct(element_id, path, output_path, target_lufs, measurement)
        except AssemblyError as e:
            return self.fallback(element_id, path, target_lufs, e)

    def passthrough(self, element_id: str, path: str, target_lufs: float) -> NormalizationResult:
        return NormalizationResult(
            element_id=element_id,
            source_path=path,
            output_path=path,
            target_lufs=target_lufs,
        )

    def fallback(
        self, element_id: str, path: str, target_lufs: float, cause: Exception
    ) -> NormalizationResult:
        """Substitute the raw source for a failed element, if policy allows it."""
        if isinstance(cause, ProcessCancelled):
            raise cause
        if not self.policy.allow_fallback:
            raise NormalizationError(element_id, cause) from cause

        logger.warning("Normalization of %s failed, using raw source: %s", element_id, cause)
        result = self.passthrough(element_id, path, target_lufs)
        result.fallback = True
        return result

    def _correct(
        self,
        element_id: str,
        path: str,
        output_path: str,
        target_lufs: float,
        measurement: LoudnessMeasurement,
    ) -> NormalizationResult:
        max_peak = self.policy.max_true_peak_db
        gain, clamped = compute_gain(measurement, max_peak)
        result = NormalizationResult(
            element_id=element_id,
            source_path=path,
            output_path=path,
            target_lufs=target_lufs,
            gain_db=gain,
            before=measurement,
            clamped=clamped,
        )

        if not clamped and abs(gain) <= self.policy.tolerance_lu:
            logger.info(
                "%s: %.1f LUFS already within %.1f LU of %.1f, left as is",
                element_id, measurement.integrated_lufs, self.policy.tolerance_lu, target_lufs,
            )
            return result

        if clamped:
            logger.warning(
                "%s: true-peak clamp, gain %+.2f dB instead of %+.2f dB",
                element_id, gain, measurement.target_offset_lu,
            )
        else:
            logger.info("%s: applying %+.2f dB toward %.1f LUFS", element_id, gain, target_lufs)

        limit = db_to_float(max_peak)
        self.runner.run_ffmpeg(
            "-i", path,
            "-af", f"volume={gain:.2f}dB,alimiter=limit={limit:.4f}:level=disabled",
            "-ar", str(self.mix_policy.sample_rate),
            "-ac", str(self.mix_policy.channels),
            "-c:a", WORK_CODEC,
            output_path,
        )
        result.output_path = output_path
        result.applied = True

        try:
            result.after = self.measure(output_path, target_lufs)
        except ProcessCancelled:
            raise
        except AssemblyError as e:
            logger.warning("%s: could not verify normalized loudness: %s", element_id, e)
            return result

        result.postcondition_met = self._postcondition_met(result)
        if not result.postcondition_met:
            logger.warning(
                "%s: normalized to %.2f LUFS / %.2f dBTP (target %.1f LUFS, ceiling %.1f dBTP)",
                os.path.basename(output_path),
                result.after.integrated_lufs,
                result.after.true_peak_db,
                target_lufs,
                max_peak,
            )
        return result

    def _postcondition_met(self, result: NormalizationResult) -> bool:
        after = result.after
        if result.clamped:
            return after.true_peak_db <= self.policy.max_true_peak_db
        return abs(after.integrated_lufs - result.target_lufs) <= self.policy.tolerance_lu
