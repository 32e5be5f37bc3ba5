"""Data models for episode assembly."""

from dataclasses import dataclass, field
from enum import Enum

from podcast_assembler.constants import (
    BED_FADE_SECONDS,
    CROSSFADE_SECONDS,
    DUCK_VOLUME,
    LEAD_IN_SECONDS,
    LOUDNESS_TOLERANCE_LU,
    MAX_TRUE_PEAK_DB,
    MAX_WORKERS,
    MUSIC_TARGET_LUFS,
    PROCESS_TIMEOUT_SECONDS,
    RETRY_BASE_DELAY,
    TAIL_SECONDS,
    TIMEOUT_RETRIES,
    TRANSITION_SILENCE_SECONDS,
    VOICE_TARGET_LUFS,
    WORK_CHANNELS,
    WORK_SAMPLE_RATE,
)


class SectionType(Enum):
    INTRO = "intro"
    TOPIC = "topic"
    SYNTHESIS = "synthesis"   # also used for the outro

    @classmethod
    def parse(cls, value: "str | SectionType") -> "SectionType":
        """Accept an enum member or its lowercase name ("outro" maps to synthesis)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text == "outro":
            return cls.SYNTHESIS
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"unknown section type: {value!r}") from None

    @property
    def rank(self) -> int:
        """Position class in the fixed intro → topics → synthesis order."""
        match self:
            case SectionType.INTRO:
                return 0
            case SectionType.TOPIC:
                return 1
            case SectionType.SYNTHESIS:
                return 2


class MusicRole(Enum):
    INTRO = "intro"
    TRANSITION = "transition"
    OUTRO = "outro"


class SegmentKind(Enum):
    SECTION = "section"
    TRANSITION = "transition"
    SILENCE = "silence"
    LEAD_IN = "lead_in"
    TAIL = "tail"


@dataclass
class AudioSection:
    type: SectionType
    source_path: str
    title: str | None = None
    duration_seconds: float = 0.0     # populated after probing
    audio_path: str = ""              # working file resolved by the engine

    def __post_init__(self):
        self.type = SectionType.parse(self.type)


@dataclass(frozen=True)
class MediaInfo:
    path: str
    duration_seconds: float
    sample_rate: int
    channels: int
    codec: str
    bitrate: int | None = None
    size_bytes: int = 0


@dataclass(frozen=True)
class LoudnessMeasurement:
    integrated_lufs: float
    true_peak_db: float
    loudness_range_lu: float
    threshold_lufs: float
    target_offset_lu: float

    @property
    def target_lufs(self) -> float:
        return self.integrated_lufs + self.target_offset_lu


@dataclass(frozen=True)
class NormalizationPolicy:
    enabled: bool = True
    voice_target_lufs: float = VOICE_TARGET_LUFS
    music_target_lufs: float = MUSIC_TARGET_LUFS
    max_true_peak_db: float = MAX_TRUE_PEAK_DB
    tolerance_lu: float = LOUDNESS_TOLERANCE_LU
    allow_fallback: bool = True
    normalize_master: bool = True


@dataclass(frozen=True)
class MusicAssets:
    intro: str | None = None
    transition: str | None = None
    outro: str | None = None

    def get(self, role: MusicRole) -> str | None:
        match role:
            case MusicRole.INTRO:
                return self.intro
            case MusicRole.TRANSITION:
                return self.transition
            case MusicRole.OUTRO:
                return self.outro

    def present(self) -> dict[MusicRole, str]:
        return {role: path for role in MusicRole if (path := self.get(role))}


@dataclass(frozen=True)
class MixPolicy:
    duck_volume: float = DUCK_VOLUME
    bed_fade_seconds: float = BED_FADE_SECONDS
    crossfade_seconds: float = CROSSFADE_SECONDS
    lead_in_seconds: float = LEAD_IN_SECONDS
    tail_seconds: float = TAIL_SECONDS
    transition_silence_seconds: float = TRANSITION_SILENCE_SECONDS
    sample_rate: int = WORK_SAMPLE_RATE
    channels: int = WORK_CHANNELS


@dataclass(frozen=True)
class ProcessPolicy:
    timeout_seconds: float = PROCESS_TIMEOUT_SECONDS
    timeout_retries: int = TIMEOUT_RETRIES
    retry_base_delay: float = RETRY_BASE_DELAY
    max_workers: int = MAX_WORKERS


@dataclass(frozen=True)
class ChapterEntry:
    type: SectionType
    title: str | None
    start_time_seconds: float
    duration_seconds: float

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "title": self.title,
            "startTimeSeconds": round(self.start_time_seconds, 3),
            "durationSeconds": round(self.duration_seconds, 3),
        }


@dataclass(frozen=True)
class TimelineEntry:
    kind: SegmentKind
    path: str
    start_time_seconds: float
    duration_seconds: float           # contribution to the joined stream
    section_index: int | None = None


@dataclass
class NormalizationResult:
    element_id: str
    source_path: str
    output_path: str
    target_lufs: float
    gain_db: float = 0.0
    before: LoudnessMeasurement | None = None
    after: LoudnessMeasurement | None = None
    applied: bool = False
    clamped: bool = False
    fallback: bool = False
    postcondition_met: bool = True

    def to_dict(self) -> dict:
        return {
            "element": self.element_id,
            "target_lufs": self.target_lufs,
            "gain_db": round(self.gain_db, 2),
            "before_lufs": self.before.integrated_lufs if self.before else None,
            "after_lufs": self.after.integrated_lufs if self.after else None,
            "applied": self.applied,
            "clamped": self.clamped,
            "fallback": self.fallback,
        }


@dataclass
class EpisodeAssembly:
    output_path: str
    sections: list[AudioSection] = field(default_factory=list)
    music_used: dict[str, str] = field(default_factory=dict)
    timeline: list[TimelineEntry] = field(default_factory=list)
    chapters: list[ChapterEntry] = field(default_factory=list)
    normalization: list[NormalizationResult] = field(default_factory=list)
    total_duration_seconds: float = 0.0
    file_size_bytes: int = 0
    final_loudness: LoudnessMeasurement | None = None

    @property
    def inserted_duration_seconds(self) -> float:
        """Stream time contributed by everything that is not a section."""
        return sum(
            entry.duration_seconds for entry in self.timeline
            if entry.kind is not SegmentKind.SECTION
        )

    def chapter_manifest(self) -> list[tuple]:
        """(type, title, startTimeSeconds, durationSeconds) per section."""
        return [
            (c.type.value, c.title, c.start_time_seconds, c.duration_seconds)
            for c in self.chapters
        ]

    def to_dict(self) -> dict:
        data = {
            "output_path": self.output_path,
            "total_duration_seconds": round(self.total_duration_seconds, 3),
            "file_size_bytes": self.file_size_bytes,
            "music_used": dict(self.music_used),
            "chapters": [c.to_dict() for c in self.chapters],
        }
        if self.final_loudness is not None:
            data["final_loudness"] = {
                "integrated_lufs": self.final_loudness.integrated_lufs,
                "true_peak_db": self.final_loudness.true_peak_db,
                "loudness_range_lu": self.final_loudness.loudness_range_lu,
            }
        return data
