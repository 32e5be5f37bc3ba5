"""Assemble normalized voice sections and music beds into one episode.

Structure of the finished episode:

  [BED SOLO] [BED DUCKED + INTRO] [T] [TOPIC 1] [T] ... [T] [BED DUCKED + SYNTHESIS] [BED SOLO + FADE]

where [T] is the transition bed, or silence when no transition bed is
configured. The bed solos only exist when the matching music is available.

A run moves through PENDING → MEASURING → NORMALIZING → CONCATENATING →
MIXING → FINALIZING → COMPLETE, or ends in FAILED from any earlier stage.
"""

import dataclasses
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum

from podcast_assembler.artifacts import atomic_output, scratch_dir
from podcast_assembler.config import EngineConfig, default_config
from podcast_assembler.constants import OUTPUT_BITRATE, OUTPUT_FORMAT
from podcast_assembler.errors import (
    AssemblyError,
    AssemblyFailed,
    ConcatenationError,
    ConfigError,
    ProcessCancelled,
)
from podcast_assembler.mixer import Mixer
from podcast_assembler.models import (
    AudioSection,
    ChapterEntry,
    EpisodeAssembly,
    LoudnessMeasurement,
    MixPolicy,
    MusicRole,
    NormalizationResult,
    SectionType,
    SegmentKind,
    TimelineEntry,
)
from podcast_assembler.music import resolve_music_assets
from podcast_assembler.normalizer import LoudnessNormalizer
from podcast_assembler.probe import MediaProber
from podcast_assembler.process import ProcessRunner

logger = logging.getLogger(__name__)


class Stage(Enum):
    PENDING = "pending"
    MEASURING = "measuring"
    NORMALIZING = "normalizing"
    CONCATENATING = "concatenating"
    MIXING = "mixing"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    FAILED = "failed"


def needs_transition(prev: SectionType, curr: SectionType) -> bool:
    """A transition separates sections of different types and adjacent topics."""
    match (prev, curr):
        case (SectionType.TOPIC, SectionType.TOPIC):
            return True
        case _:
            return prev is not curr


def bed_role(section_type: SectionType) -> MusicRole | None:
    """Which music bed, if any, plays ducked under a section."""
    match section_type:
        case SectionType.INTRO:
            return MusicRole.INTRO
        case SectionType.TOPIC:
            return None
        case SectionType.SYNTHESIS:
            return MusicRole.OUTRO


def validate_sections(sections: list[AudioSection]) -> None:
    """Check that the explicit input order is intro → topics → synthesis."""
    if not sections:
        raise ConcatenationError("no sections to assemble")
    for i, section in enumerate(sections):
        if not os.path.isfile(section.source_path):
            raise ConfigError(f"section {i} ({section.type.value}) not found: {section.source_path}")
        if i > 0 and section.type.rank < sections[i - 1].type.rank:
            raise ConfigError(
                f"section {i} ({section.type.value}) may not follow "
                f"a {sections[i - 1].type.value} section"
            )


def build_chapters(sections: list[AudioSection], timeline: list[TimelineEntry]) -> list[ChapterEntry]:
    """Chapter manifest from the section entries of the timeline, in order."""
    return [
        ChapterEntry(
            type=sections[entry.section_index].type,
            title=sections[entry.section_index].title,
            start_time_seconds=entry.start_time_seconds,
            duration_seconds=entry.duration_seconds,
        )
        for entry in timeline
        if entry.kind is SegmentKind.SECTION
    ]


class EpisodeAssembler:
    """Entry point for the engine. One instance can serve many runs.

    Configuration is read-only for the assembler's lifetime; everything a run
    creates (child processes, scratch files, sections) belongs to that run.
    """

    def __init__(self, config: EngineConfig | None = None, runner_factory=None, on_stage=None):
        self.config = config or default_config()
        self._runner_factory = runner_factory or self._new_runner
        self._on_stage = on_stage
        self._lock = threading.Lock()
        self._runs: set[_AssemblyRun] = set()

    def assemble(
        self,
        sections: list[AudioSection],
        output_path: str,
        fmt: str = OUTPUT_FORMAT,
        bitrate: str = OUTPUT_BITRATE,
        mix_policy: MixPolicy | None = None,
    ) -> EpisodeAssembly:
        """Run the whole pipeline and return the finished episode's record.

        Raises AssemblyFailed carrying the failing stage and its cause.
        """
        run = _AssemblyRun(
            self.config,
            self._runner_factory(),
            mix_policy or self.config.mixing,
            self._on_stage,
        )
        with self._lock:
            self._runs.add(run)
        try:
            owned = [dataclasses.replace(s, duration_seconds=0.0, audio_path="") for s in sections]
            return run.execute(owned, output_path, fmt, bitrate)
        finally:
            with self._lock:
                self._runs.discard(run)

    def cancel(self) -> None:
        """Terminate the toolchain processes of every run in progress."""
        with self._lock:
            runs = list(self._runs)
        for run in runs:
            run.runner.cancel()

    def _new_runner(self) -> ProcessRunner:
        toolchain = self.config.toolchain
        return ProcessRunner(self.config.process, ffmpeg=toolchain.ffmpeg, ffprobe=toolchain.ffprobe)


@dataclass(frozen=True)
class _Element:
    element_id: str
    path: str
    target_lufs: float
    section_index: int | None = None
    role: MusicRole | None = None


class _AssemblyRun:
    def __init__(self, config: EngineConfig, runner: ProcessRunner, mix_policy: MixPolicy, on_stage):
        self.config = config
        self.runner = runner
        self.mix_policy = mix_policy
        self.prober = MediaProber(runner)
        self.normalizer = LoudnessNormalizer(runner, self.prober, config.normalization, mix_policy)
        self.mixer = Mixer(runner, mix_policy)
        self.stage = Stage.PENDING
        self.scratch = ""
        self._on_stage = on_stage
        self._silences: dict[float, str] = {}

    def execute(self, sections, output_path, fmt, bitrate) -> EpisodeAssembly:
        try:
            validate_sections(sections)
            with scratch_dir(self.config.toolchain.scratch_root) as scratch:
                self.scratch = scratch
                assembly = self._pipeline(sections, output_path, fmt, bitrate)
        except (AssemblyError, OSError) as e:
            failed_in = self.stage
            self._enter(Stage.FAILED)
            logger.error("Assembly failed during %s: %s", failed_in.value, e)
            raise AssemblyFailed(failed_in, e) from e
        except BaseException:
            self.runner.cancel()
            self._enter(Stage.FAILED)
            raise

        self._enter(Stage.COMPLETE)
        return assembly

    def _enter(self, stage: Stage) -> None:
        if stage not in (Stage.FAILED, Stage.COMPLETE) and self.runner.cancelled:
            raise ProcessCancelled()
        self.stage = stage
        logger.info("Stage: %s", stage.value)
        if self._on_stage:
            self._on_stage(stage)

    def _pipeline(self, sections, output_path, fmt, bitrate) -> EpisodeAssembly:
        norm = self.config.normalization

        # --- Measuring ---
        self._enter(Stage.MEASURING)
        music, provenance = resolve_music_assets(self.config.music, self.prober)
        elements = self._elements(sections, music)
        slots = self._measure(elements)

        # --- Normalizing ---
        self._enter(Stage.NORMALIZING)
        results = self._map_bounded(self._normalize_one, list(zip(elements, slots)))

        # --- Concatenating ---
        self._enter(Stage.CONCATENATING)
        working = self._map_bounded(self._working_copy, list(zip(elements, results)))
        music_paths = {}
        for element, path in zip(elements, working):
            if element.section_index is not None:
                section = sections[element.section_index]
                section.audio_path = path
                section.duration_seconds = self.prober.duration(path)
            else:
                music_paths[element.role] = path

        timeline = self._build_timeline(sections, music_paths)
        voice_master = self.mixer.concatenate(
            [entry.path for entry in timeline], self._scratch_path("voice.wav")
        )
        chapters = build_chapters(sections, timeline)

        # --- Mixing ---
        self._enter(Stage.MIXING)
        beds, bed_roles = self._bed_tracks(sections, timeline, music_paths)
        master = voice_master
        if beds:
            master = self.mixer.mix([(voice_master, 1.0), *beds], self._scratch_path("mixed.wav"))

        # --- Finalizing ---
        self._enter(Stage.FINALIZING)
        if norm.enabled and norm.normalize_master:
            result = self.normalizer.normalize(
                "episode", master, self._scratch_path("master.wav"), norm.voice_target_lufs
            )
            results.append(result)
            master = result.output_path

        with atomic_output(output_path) as tmp_path:
            self.mixer.encode(master, tmp_path, fmt, bitrate)
            info = self.prober.probe(tmp_path)
            final_loudness = self._final_loudness(tmp_path)
        size = os.path.getsize(output_path)

        used_roles = bed_roles | {
            MusicRole.TRANSITION for e in timeline if e.kind is SegmentKind.TRANSITION
        }
        music_used = {
            role.value: self.config.music.get(role)
            for role in MusicRole
            if role in used_roles
        }
        logger.info(
            "Episode assembled: %s (%.1fs, %d bytes, %d chapters, music: %s)",
            output_path, info.duration_seconds, size, len(chapters),
            ", ".join(f"{k}={v}" for k, v in provenance.items()),
        )
        return EpisodeAssembly(
            output_path=output_path,
            sections=sections,
            music_used=music_used,
            timeline=timeline,
            chapters=chapters,
            normalization=results,
            total_duration_seconds=info.duration_seconds,
            file_size_bytes=size,
            final_loudness=final_loudness,
        )

    # --- Measuring / normalizing ---

    def _elements(self, sections, music) -> list[_Element]:
        """Sections in input order, then the music beds this episode will use."""
        norm = self.config.normalization
        elements = [
            _Element(
                element_id=f"section-{i:02d}-{section.type.value}",
                path=section.source_path,
                target_lufs=norm.voice_target_lufs,
                section_index=i,
            )
            for i, section in enumerate(sections)
        ]

        needed = {bed_role(s.type) for s in sections} - {None}
        if any(needs_transition(a.type, b.type) for a, b in zip(sections, sections[1:])):
            needed.add(MusicRole.TRANSITION)
        for role, path in music.present().items():
            if role in needed:
                elements.append(_Element(
                    element_id=f"music-{role.value}",
                    path=path,
                    target_lufs=norm.music_target_lufs,
                    role=role,
                ))
        return elements

    def _measure(self, elements):
        if not self.config.normalization.enabled:
            logger.info("Normalization disabled: %d element(s) pass through", len(elements))
            return [
                self.normalizer.passthrough(e.element_id, e.path, e.target_lufs)
                for e in elements
            ]
        return self._map_bounded(self._measure_one, elements)

    def _measure_one(self, element: _Element) -> LoudnessMeasurement | NormalizationResult:
        try:
            return self.normalizer.measure(element.path, element.target_lufs)
        except AssemblyError as e:
            return self.normalizer.fallback(element.element_id, element.path, element.target_lufs, e)

    def _normalize_one(self, job) -> NormalizationResult:
        element, slot = job
        if isinstance(slot, NormalizationResult):
            return slot
        return self.normalizer.normalize(
            element.element_id,
            element.path,
            self._scratch_path(f"norm-{element.element_id}.wav"),
            element.target_lufs,
            measurement=slot,
        )

    def _map_bounded(self, func, items: list) -> list:
        """Apply func on a bounded pool; results keep the order of items."""
        if not items:
            return []
        slots = [None] * len(items)
        workers = max(1, min(self.config.process.max_workers, len(items)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="assembler") as pool:
            futures = {pool.submit(func, item): index for index, item in enumerate(items)}
            try:
                for future in as_completed(futures):
                    slots[futures[future]] = future.result()
            except BaseException:
                pool.shutdown(wait=False, cancel_futures=True)
                self.runner.cancel()
                raise
        return slots

    # --- Concatenating ---

    def _working_copy(self, job) -> str:
        """Path of the element in the working PCM format."""
        element, result = job
        if result.applied:
            return result.output_path
        return self.mixer.conform(result.output_path, self._scratch_path(f"work-{element.element_id}.wav"))

    def _build_timeline(self, sections, music_paths) -> list[TimelineEntry]:
        """Order every segment of the voice stream and accumulate start times.

        Start times are sums of probed durations of the segments actually
        written, transitions and silences included.
        """
        policy = self.mix_policy
        timeline: list[TimelineEntry] = []
        cursor = 0.0

        def add(kind, path, duration=None, section_index=None):
            nonlocal cursor
            if duration is None:
                duration = self.prober.duration(path)
            timeline.append(TimelineEntry(kind, path, cursor, duration, section_index))
            cursor += duration

        first, last = sections[0], sections[-1]
        if (first.type is SectionType.INTRO and MusicRole.INTRO in music_paths
                and policy.lead_in_seconds > 0):
            add(SegmentKind.LEAD_IN, self._silence(policy.lead_in_seconds))

        transition = music_paths.get(MusicRole.TRANSITION)
        for i, section in enumerate(sections):
            if i > 0 and needs_transition(sections[i - 1].type, section.type):
                if transition:
                    add(SegmentKind.TRANSITION, transition)
                elif policy.transition_silence_seconds > 0:
                    logger.debug("No transition music, inserting %.2fs of silence",
                                 policy.transition_silence_seconds)
                    add(SegmentKind.SILENCE, self._silence(policy.transition_silence_seconds))
            add(SegmentKind.SECTION, section.audio_path, section.duration_seconds, i)

        if (last.type is SectionType.SYNTHESIS and MusicRole.OUTRO in music_paths
                and policy.tail_seconds > 0):
            add(SegmentKind.TAIL, self._silence(policy.tail_seconds))

        return timeline

    def _silence(self, duration: float) -> str:
        if duration not in self._silences:
            path = self._scratch_path(f"silence-{len(self._silences)}.wav")
            self._silences[duration] = self.mixer.generate_silence(path, duration)
        return self._silences[duration]

    # --- Mixing ---

    def _bed_tracks(self, sections, timeline, music_paths):
        """Bed tracks to overlay on the voice stream, as (path, volume, delay).

        The intro bed plays solo over the lead-in and crossfades down to the
        ducking level as the first section starts; the outro bed crossfades
        back up to full level as the last section ends.
        """
        policy = self.mix_policy
        entries = {e.section_index: e for e in timeline if e.kind is SegmentKind.SECTION}
        lead = timeline[0] if timeline[0].kind is SegmentKind.LEAD_IN else None
        tail = timeline[-1] if timeline[-1].kind is SegmentKind.TAIL else None
        last_index = len(sections) - 1

        tracks, roles = [], set()
        for i, section in enumerate(sections):
            role = bed_role(section.type)
            bed = music_paths.get(role) if role else None
            entry = entries[i]
            if not bed or entry.duration_seconds <= 0:
                continue

            name = f"{i:02d}"
            if i == 0 and lead:
                xfade = min(policy.crossfade_seconds, lead.duration_seconds, entry.duration_seconds)
                solo = self.mixer.fit_bed(bed, self._scratch_path("solo-lead.wav"),
                                          lead.duration_seconds, fade_in=policy.bed_fade_seconds)
                ducked = self._ducked(bed, entry.duration_seconds + xfade, name,
                                      fade_in=0.0, fade_out=policy.bed_fade_seconds)
                track = self.mixer.crossfade(solo, ducked, self._scratch_path("bed-lead.wav"), xfade)
                delay = lead.start_time_seconds
            elif i == last_index and tail:
                xfade = min(policy.crossfade_seconds, tail.duration_seconds, entry.duration_seconds)
                ducked = self._ducked(bed, entry.duration_seconds + xfade, name,
                                      fade_in=policy.bed_fade_seconds, fade_out=0.0)
                solo = self.mixer.fit_bed(bed, self._scratch_path("solo-tail.wav"),
                                          tail.duration_seconds, fade_out=policy.bed_fade_seconds)
                track = self.mixer.crossfade(ducked, solo, self._scratch_path("bed-tail.wav"), xfade)
                delay = entry.start_time_seconds
            else:
                track = self._ducked(bed, entry.duration_seconds, name,
                                     fade_in=policy.bed_fade_seconds,
                                     fade_out=policy.bed_fade_seconds)
                delay = entry.start_time_seconds

            logger.info("Ducking %s bed under %s at %.2f", role.value, section.type.value,
                        policy.duck_volume)
            tracks.append((track, 1.0, delay))
            roles.add(role)
        return tracks, roles

    def _ducked(self, bed: str, duration: float, name: str, fade_in: float, fade_out: float) -> str:
        fitted = self.mixer.fit_bed(bed, self._scratch_path(f"bed-{name}.wav"), duration,
                                    fade_in=fade_in, fade_out=fade_out)
        return self.mixer.mix([(fitted, self.mix_policy.duck_volume)],
                              self._scratch_path(f"ducked-{name}.wav"))

    # --- Finalizing ---

    def _final_loudness(self, path: str) -> LoudnessMeasurement:
        norm = self.config.normalization
        measurement = self.prober.measure_loudness(path, norm.voice_target_lufs, norm.max_true_peak_db)
        if measurement.true_peak_db > norm.max_true_peak_db:
            logger.warning(
                "Final true peak %.2f dBTP exceeds ceiling %.1f dBTP",
                measurement.true_peak_db, norm.max_true_peak_db,
            )
        return measurement

    def _scratch_path(self, name: str) -> str:
        return os.path.join(self.scratch, name)
