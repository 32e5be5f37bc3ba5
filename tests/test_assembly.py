"""Tests for assembly module."""

import dataclasses
import os

import pytest

from fakes import make_media
from podcast_assembler.assembly import (
    EpisodeAssembler,
    Stage,
    bed_role,
    needs_transition,
    validate_sections,
)
from podcast_assembler.errors import (
    AssemblyFailed,
    ConcatenationError,
    ConfigError,
    MixError,
    NormalizationError,
    ProcessCancelled,
    ProcessTimeout,
)
from podcast_assembler.models import (
    AudioSection,
    MixPolicy,
    MusicAssets,
    MusicRole,
    ProcessPolicy,
    SectionType,
    SegmentKind,
)


# --- Helpers ---

def _assemble(config, sections, tmp_path, **kwargs):
    stages = []
    assembler = EpisodeAssembler(config, on_stage=stages.append)
    output = str(tmp_path / "out" / "episode.mp3")
    assembly = assembler.assemble(sections, output, **kwargs)
    return assembly, stages


def _kinds(assembly):
    return [entry.kind for entry in assembly.timeline]


def _no_music(config):
    return dataclasses.replace(config, music=MusicAssets())


# --- Transition rule ---

def test_transition_between_adjacent_topics():
    """Two topics in a row are separated."""
    assert needs_transition(SectionType.TOPIC, SectionType.TOPIC)


def test_transition_between_different_types():
    """Intro → topic and topic → synthesis are separated."""
    assert needs_transition(SectionType.INTRO, SectionType.TOPIC)
    assert needs_transition(SectionType.TOPIC, SectionType.SYNTHESIS)
    assert needs_transition(SectionType.INTRO, SectionType.SYNTHESIS)


def test_no_transition_between_same_bookends():
    """Consecutive intro sections run together."""
    assert not needs_transition(SectionType.INTRO, SectionType.INTRO)
    assert not needs_transition(SectionType.SYNTHESIS, SectionType.SYNTHESIS)


def test_bed_roles():
    """Intro gets the intro bed, synthesis the outro bed, topics none."""
    assert bed_role(SectionType.INTRO) is MusicRole.INTRO
    assert bed_role(SectionType.TOPIC) is None
    assert bed_role(SectionType.SYNTHESIS) is MusicRole.OUTRO


# --- Validation ---

def test_validate_rejects_out_of_order(tmp_path):
    """A topic after the synthesis is refused, not reordered."""
    sections = [
        AudioSection("synthesis", make_media(tmp_path / "s.wav")),
        AudioSection("topic", make_media(tmp_path / "t.wav")),
    ]
    with pytest.raises(ConfigError, match="may not follow"):
        validate_sections(sections)


def test_validate_rejects_missing_source(tmp_path):
    """Every source file must exist."""
    with pytest.raises(ConfigError, match="not found"):
        validate_sections([AudioSection("topic", str(tmp_path / "missing.wav"))])


def test_validate_empty():
    """An empty section list cannot be concatenated."""
    with pytest.raises(ConcatenationError):
        validate_sections([])


# --- Full episode ---

def test_full_episode_timeline(fake_toolchain, episode_files, engine_config, tmp_path):
    """Lead-in, sections with transitions, tail; starts accumulate exactly."""
    sections, _ = episode_files
    assembly, _ = _assemble(engine_config, sections, tmp_path)

    assert _kinds(assembly) == [
        SegmentKind.LEAD_IN,
        SegmentKind.SECTION,
        SegmentKind.TRANSITION,
        SegmentKind.SECTION,
        SegmentKind.TRANSITION,
        SegmentKind.SECTION,
        SegmentKind.TRANSITION,
        SegmentKind.SECTION,
        SegmentKind.TAIL,
    ]
    starts = [c.start_time_seconds for c in assembly.chapters]
    assert starts == pytest.approx([4.0, 17.0, 40.0, 58.0])
    assert [c.title for c in assembly.chapters] == [
        "Welcome", "First topic", "Second topic", "Wrap-up",
    ]


def test_full_episode_durations_add_up(fake_toolchain, episode_files, engine_config, tmp_path):
    """Section durations plus inserted material equal the episode length."""
    sections, _ = episode_files
    assembly, _ = _assemble(engine_config, sections, tmp_path)

    section_total = sum(s.duration_seconds for s in assembly.sections)
    assert section_total == pytest.approx(57.0)
    assert assembly.inserted_duration_seconds == pytest.approx(4.0 + 3 * 3.0 + 4.0)
    assert section_total + assembly.inserted_duration_seconds == pytest.approx(
        assembly.total_duration_seconds
    )
    assert assembly.total_duration_seconds == pytest.approx(74.0)


def test_timeline_is_contiguous(fake_toolchain, episode_files, engine_config, tmp_path):
    """Each segment starts where the previous one ended."""
    sections, _ = episode_files
    assembly, _ = _assemble(engine_config, sections, tmp_path)
    timeline = assembly.timeline
    assert timeline[0].start_time_seconds == 0.0
    for prev, curr in zip(timeline, timeline[1:]):
        assert curr.start_time_seconds == pytest.approx(prev.start_time_seconds + prev.duration_seconds)


def test_stage_order(fake_toolchain, episode_files, engine_config, tmp_path):
    """Stages are entered in pipeline order, ending COMPLETE."""
    sections, _ = episode_files
    _, stages = _assemble(engine_config, sections, tmp_path)
    assert stages == [
        Stage.MEASURING,
        Stage.NORMALIZING,
        Stage.CONCATENATING,
        Stage.MIXING,
        Stage.FINALIZING,
        Stage.COMPLETE,
    ]


def test_output_written_and_scratch_removed(fake_toolchain, episode_files, engine_config, tmp_path):
    """The episode lands at the output path; nothing is left in scratch."""
    sections, _ = episode_files
    assembly, _ = _assemble(engine_config, sections, tmp_path)

    assert os.path.exists(assembly.output_path)
    assert assembly.file_size_bytes == os.path.getsize(assembly.output_path)
    assert os.listdir(engine_config.toolchain.scratch_root) == []
    assert not [f for f in os.listdir(tmp_path / "out") if f.startswith(".partial-")]


def test_music_used(fake_toolchain, episode_files, engine_config, tmp_path):
    """All three beds are reported with their configured paths."""
    sections, music = episode_files
    assembly, _ = _assemble(engine_config, sections, tmp_path)
    assert assembly.music_used == {
        "intro": music.intro,
        "transition": music.transition,
        "outro": music.outro,
    }


def test_beds_mixed_under_bookends(fake_toolchain, episode_files, engine_config, tmp_path):
    """Voice is mixed with the lead bed at 0 and the tail bed at the synthesis start."""
    sections, _ = episode_files
    _assemble(engine_config, sections, tmp_path)
    mixer = fake_toolchain.mixer

    mixes = [call[1] for call in mixer.calls if call[0] == "mix"]
    final = [tracks for tracks in mixes if tracks[0][0].endswith("voice.wav")]
    assert len(final) == 1
    tracks = final[0]
    assert len(tracks) == 3
    assert [t[2] for t in tracks[1:]] == pytest.approx([0.0, 58.0])

    ducked = [tracks for tracks in mixes if len(tracks) == 1]
    assert [t[0][1] for t in ducked] == [0.15, 0.15]

    crossfades = [call for call in mixer.calls if call[0] == "crossfade"]
    assert [call[3] for call in crossfades] == [1.0, 1.0]


def test_sections_normalized_before_mixing(fake_toolchain, episode_files, engine_config, tmp_path):
    """Every section and bed is corrected toward its own target."""
    sections, _ = episode_files
    assembly, _ = _assemble(engine_config, sections, tmp_path)

    by_id = {r.element_id: r for r in assembly.normalization}
    assert by_id["section-00-intro"].applied
    assert by_id["section-00-intro"].after.integrated_lufs == pytest.approx(-16.0)
    assert by_id["music-intro"].target_lufs == -20.0
    assert by_id["music-intro"].after.integrated_lufs == pytest.approx(-20.0)
    # master pass finds the episode already on target
    assert not by_id["episode"].applied
    assert assembly.final_loudness.integrated_lufs == pytest.approx(-16.0)
    assert assembly.final_loudness.true_peak_db <= -1.0


def test_input_sections_not_mutated(fake_toolchain, episode_files, engine_config, tmp_path):
    """The run works on its own copies of the sections."""
    sections, _ = episode_files
    assembly, _ = _assemble(engine_config, sections, tmp_path)
    assert sections[0].audio_path == ""
    assert sections[0].duration_seconds == 0.0
    assert assembly.sections[0].duration_seconds == pytest.approx(10.0)
    assert assembly.sections[0] is not sections[0]


# --- Degraded music ---

def test_no_music_inserts_silence(fake_toolchain, episode_files, engine_config, tmp_path):
    """Without music, silence separates sections and nothing is mixed."""
    sections, _ = episode_files
    assembly, _ = _assemble(_no_music(engine_config), sections, tmp_path)

    assert _kinds(assembly) == [
        SegmentKind.SECTION, SegmentKind.SILENCE,
        SegmentKind.SECTION, SegmentKind.SILENCE,
        SegmentKind.SECTION, SegmentKind.SILENCE,
        SegmentKind.SECTION,
    ]
    assert assembly.total_duration_seconds == pytest.approx(57.0 + 3 * 0.75)
    assert assembly.music_used == {}
    names = fake_toolchain.mixer.names()
    assert "mix" not in names
    assert names.count("silence") == 1


def test_missing_transition_falls_back_to_silence(fake_toolchain, episode_files, engine_config, tmp_path):
    """An unusable transition asset degrades to silence; beds still play."""
    sections, music = episode_files
    config = dataclasses.replace(
        engine_config,
        music=dataclasses.replace(music, transition=str(tmp_path / "gone.mp3")),
    )
    assembly, _ = _assemble(config, sections, tmp_path)

    kinds = _kinds(assembly)
    assert SegmentKind.TRANSITION not in kinds
    assert kinds.count(SegmentKind.SILENCE) == 3
    assert kinds[0] is SegmentKind.LEAD_IN
    assert kinds[-1] is SegmentKind.TAIL
    assert "transition" not in assembly.music_used


def test_corrupt_music_is_skipped(fake_toolchain, episode_files, engine_config, tmp_path):
    """An intro bed that cannot be probed is treated as absent."""
    sections, music = episode_files
    broken = make_media(tmp_path / "broken.mp3", broken=True)
    config = dataclasses.replace(engine_config, music=dataclasses.replace(music, intro=broken))
    assembly, _ = _assemble(config, sections, tmp_path)

    assert _kinds(assembly)[0] is SegmentKind.SECTION
    assert assembly.chapters[0].start_time_seconds == 0.0
    assert "intro" not in assembly.music_used


def test_only_present_and_needed_music_normalized(fake_toolchain, episode_files, engine_config, tmp_path):
    """Beds are normalized only when configured and used by this episode."""
    sections, music = episode_files
    config = dataclasses.replace(engine_config, music=dataclasses.replace(music, transition=None))
    assembly, _ = _assemble(config, sections[:3], tmp_path)

    music_ids = [r.element_id for r in assembly.normalization if r.element_id.startswith("music-")]
    assert music_ids == ["music-intro"]


# --- Policies ---

def test_mix_policy_override(fake_toolchain, episode_files, engine_config, tmp_path):
    """A per-call policy without lead-in or tail ducks beds under the sections only."""
    sections, _ = episode_files
    policy = MixPolicy(lead_in_seconds=0.0, tail_seconds=0.0)
    assembly, _ = _assemble(engine_config, sections, tmp_path, mix_policy=policy)

    kinds = _kinds(assembly)
    assert SegmentKind.LEAD_IN not in kinds
    assert SegmentKind.TAIL not in kinds
    assert assembly.chapters[0].start_time_seconds == 0.0

    fits = [call for call in fake_toolchain.mixer.calls if call[0] == "fit_bed"]
    assert [call[2] for call in fits] == pytest.approx([10.0, 12.0])
    assert all(call[3] == 1.0 and call[4] == 1.0 for call in fits)


def test_normalization_disabled_passes_sources_through(fake_toolchain, episode_files, engine_config, tmp_path):
    """Disabled normalization never touches loudness."""
    sections, _ = episode_files
    config = dataclasses.replace(
        engine_config,
        normalization=dataclasses.replace(engine_config.normalization, enabled=False),
    )
    assembly, _ = _assemble(config, sections, tmp_path)

    assert fake_toolchain.runner.calls == []
    # only the final peak check measures anything
    assert len(fake_toolchain.probers[-1].measured) == 1
    assert all(not r.applied for r in assembly.normalization)
    assert all(r.output_path == r.source_path for r in assembly.normalization)
    assert len(assembly.normalization) == 7
    conformed = [call[1] for call in fake_toolchain.mixer.calls if call[0] == "conform"]
    assert sections[0].source_path in conformed


def test_measurement_failure_uses_raw_source(fake_toolchain, episode_files, engine_config, tmp_path):
    """An unmeasurable section falls back to its raw audio and the run completes."""
    sections, _ = episode_files
    make_media(sections[1].source_path, 20.0, unmeasurable=True)
    assembly, stages = _assemble(engine_config, sections, tmp_path)

    by_id = {r.element_id: r for r in assembly.normalization}
    assert by_id["section-01-topic"].fallback
    assert not by_id["section-01-topic"].applied
    assert stages[-1] is Stage.COMPLETE
    conformed = [call[1] for call in fake_toolchain.mixer.calls if call[0] == "conform"]
    assert conformed == [sections[1].source_path]


def test_measurement_failure_without_fallback(fake_toolchain, episode_files, engine_config, tmp_path):
    """With fallback disallowed the run fails in the measuring stage."""
    sections, _ = episode_files
    make_media(sections[1].source_path, 20.0, unmeasurable=True)
    config = dataclasses.replace(
        engine_config,
        normalization=dataclasses.replace(engine_config.normalization, allow_fallback=False),
    )
    with pytest.raises(AssemblyFailed) as exc_info:
        _assemble(config, sections, tmp_path)

    assert exc_info.value.stage is Stage.MEASURING
    assert isinstance(exc_info.value.cause, NormalizationError)
    assert exc_info.value.cause.element_id == "section-01-topic"
    assert not os.path.exists(tmp_path / "out" / "episode.mp3")
    assert os.listdir(engine_config.toolchain.scratch_root) == []


# --- Concurrency ---

def test_slow_early_sections_keep_source_order(fake_toolchain, engine_config, tmp_path):
    """Results are placed by source index even when later sections finish first."""
    src = tmp_path / "slow"
    src.mkdir()
    layout = [("intro", "Welcome", 10.0, 0.3), ("topic", "First topic", 20.0, 0.2),
            ("topic", "Second topic", 15.0, 0.1), ("synthesis", "Wrap-up", 12.0, 0.0)]
    sections = [
        AudioSection(kind, make_media(src / f"{i}-{kind}.wav", duration, delay=delay), title=title)
        for i, (kind, title, duration, delay) in enumerate(layout)
    ]
    config = dataclasses.replace(engine_config, process=ProcessPolicy(max_workers=2))
    assembly, _ = _assemble(config, sections, tmp_path)

    assert [s.title for s in assembly.sections] == ["Welcome", "First topic", "Second topic", "Wrap-up"]
    assert [s.duration_seconds for s in assembly.sections] == [10.0, 20.0, 15.0, 12.0]
    assert [c.title for c in assembly.chapters] == ["Welcome", "First topic", "Second topic", "Wrap-up"]
    assert [r.element_id for r in assembly.normalization[:4]] == [
        "section-00-intro",
        "section-01-topic",
        "section-02-topic",
        "section-03-synthesis",
    ]
    starts = [c.start_time_seconds for c in assembly.chapters]
    assert starts == sorted(starts)


def test_worker_pool_is_bounded(fake_toolchain, episode_files, engine_config, tmp_path):
    """No more loudness passes run at once than max_workers allows."""
    src = tmp_path / "slow"
    src.mkdir()
    sections = [
        AudioSection(s.type, make_media(src / os.path.basename(s.source_path), 10.0, delay=0.1))
        for s in episode_files[0]
    ]
    config = dataclasses.replace(engine_config, process=ProcessPolicy(max_workers=2))
    _assemble(config, sections, tmp_path)

    prober = fake_toolchain.probers[-1]
    assert 1 < prober.peak_active <= 2


# --- Failures ---

def test_out_of_order_fails_pending(fake_toolchain, episode_files, engine_config, tmp_path):
    """Invalid input fails before any stage runs."""
    sections, _ = episode_files
    stages = []
    assembler = EpisodeAssembler(engine_config, on_stage=stages.append)
    with pytest.raises(AssemblyFailed) as exc_info:
        assembler.assemble(list(reversed(sections)), str(tmp_path / "episode.mp3"))
    assert exc_info.value.stage is Stage.PENDING
    assert isinstance(exc_info.value.cause, ConfigError)
    assert stages == [Stage.FAILED]


def test_empty_sections_fail(fake_toolchain, engine_config, tmp_path):
    """Nothing to assemble is a concatenation failure."""
    with pytest.raises(AssemblyFailed) as exc_info:
        EpisodeAssembler(engine_config).assemble([], str(tmp_path / "episode.mp3"))
    assert isinstance(exc_info.value.cause, ConcatenationError)


def test_encode_failure_leaves_no_output(fake_toolchain, episode_files, engine_config, tmp_path):
    """A failing final encode publishes nothing."""
    sections, _ = episode_files
    with pytest.raises(AssemblyFailed) as exc_info:
        _assemble(engine_config, sections, tmp_path, fmt="xyz")

    assert exc_info.value.stage is Stage.FINALIZING
    assert isinstance(exc_info.value.cause, MixError)
    assert os.listdir(tmp_path / "out") == []
    assert os.listdir(engine_config.toolchain.scratch_root) == []


def test_cancel_during_normalization(fake_toolchain, episode_files, engine_config, tmp_path):
    """Cancelling a run fails it with the cancellation as cause."""
    sections, _ = episode_files
    stages = []

    def on_stage(stage):
        stages.append(stage)
        if stage is Stage.NORMALIZING:
            assembler.cancel()

    assembler = EpisodeAssembler(engine_config, on_stage=on_stage)
    with pytest.raises(AssemblyFailed) as exc_info:
        assembler.assemble(sections, str(tmp_path / "episode.mp3"))

    assert exc_info.value.stage is Stage.NORMALIZING
    assert isinstance(exc_info.value.cause, ProcessCancelled)
    assert stages[-1] is Stage.FAILED
    assert fake_toolchain.runner.cancelled
    assert not os.path.exists(tmp_path / "episode.mp3")


def test_cancel_without_runs_is_noop(engine_config):
    """cancel() with nothing in flight does nothing."""
    EpisodeAssembler(engine_config).cancel()


def test_timeout_failure_is_retryable():
    """A timeout cause marks the assembly failure as retryable."""
    failed = AssemblyFailed(Stage.MIXING, ProcessTimeout(["ffmpeg"], 5))
    assert failed.retryable
    assert "mixing" in str(failed)
    assert not AssemblyFailed(Stage.MIXING, MixError("bad graph")).retryable


def test_each_run_gets_its_own_runner(fake_toolchain, episode_files, engine_config, tmp_path):
    """A cancelled run does not poison the next one."""
    sections, _ = episode_files
    assembler = EpisodeAssembler(engine_config)
    assembler.assemble(sections, str(tmp_path / "a.mp3"))
    fake_toolchain.runner.cancel()
    assembly = assembler.assemble(sections, str(tmp_path / "b.mp3"))

    assert len(fake_toolchain.runners) == 2
    assert os.path.exists(assembly.output_path)
