"""Shared fixtures for podcast assembler tests."""

import numpy as np
import pytest
from pydub import AudioSegment

from fakes import FakeToolchain, make_media
from podcast_assembler.config import EngineConfig, ToolchainConfig
from podcast_assembler.models import AudioSection, MusicAssets


def tone(duration_ms=1000, freq=440.0, amplitude=0.2, frame_rate=44100, channels=2):
    """A sine tone as an AudioSegment."""
    t = np.arange(int(frame_rate * duration_ms / 1000)) / frame_rate
    wave = (np.sin(2 * np.pi * freq * t) * amplitude * 32767).astype(np.int16)
    if channels == 2:
        wave = np.repeat(wave, 2)
    return AudioSegment(data=wave.tobytes(), sample_width=2, frame_rate=frame_rate, channels=channels)


@pytest.fixture
def tone_wav(tmp_path):
    """Factory writing sine-tone WAV files into tmp_path."""
    def _write(name, duration_ms=1000, freq=440.0, amplitude=0.2):
        path = tmp_path / name
        tone(duration_ms, freq, amplitude).export(str(path), format="wav")
        return str(path)
    return _write


@pytest.fixture
def fake_toolchain(monkeypatch):
    """Replace the assembler's runner, prober and mixer with JSON-backed fakes."""
    toolchain = FakeToolchain()
    monkeypatch.setattr("podcast_assembler.assembly.ProcessRunner", toolchain.make_runner)
    monkeypatch.setattr("podcast_assembler.assembly.MediaProber", toolchain.make_prober)
    monkeypatch.setattr("podcast_assembler.assembly.Mixer", toolchain.make_mixer)
    return toolchain


@pytest.fixture
def episode_files(tmp_path):
    """Fake sources for a four-section episode with all three music beds."""
    src = tmp_path / "src"
    src.mkdir()
    sections = [
        AudioSection("intro", make_media(src / "intro.wav", 10.0), title="Welcome"),
        AudioSection("topic", make_media(src / "topic1.wav", 20.0), title="First topic"),
        AudioSection("topic", make_media(src / "topic2.wav", 15.0), title="Second topic"),
        AudioSection("synthesis", make_media(src / "synthesis.wav", 12.0), title="Wrap-up"),
    ]
    music = MusicAssets(
        intro=make_media(src / "music-intro.mp3", 30.0, lufs=-26.0, tp=-10.0),
        transition=make_media(src / "music-transition.mp3", 3.0, lufs=-26.0, tp=-10.0),
        outro=make_media(src / "music-outro.mp3", 30.0, lufs=-26.0, tp=-10.0),
    )
    return sections, music


@pytest.fixture
def engine_config(episode_files, tmp_path):
    """Default config with the fake music beds and a scratch root inside tmp_path."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    _, music = episode_files
    return EngineConfig(music=music, toolchain=ToolchainConfig(scratch_root=str(scratch)))
