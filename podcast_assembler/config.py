"""Engine configuration: constant defaults overlaid with an engine.json artifact.

Example engine.json (every key optional):

    {
      "normalization": {"enabled": true, "voice_target_lufs": -16,
                        "music_target_lufs": -20, "max_true_peak_db": -1},
      "music": {"intro": "music/intro.mp3", "transition": null,
                "outro": "music/outro.mp3"},
      "mixing": {"duck_volume": 0.15, "crossfade_seconds": 1.0},
      "process": {"timeout_seconds": 300, "max_workers": 4},
      "toolchain": {"ffmpeg": "ffmpeg", "ffprobe": "ffprobe", "scratch_root": null}
    }
"""

import dataclasses
import json
import os
from dataclasses import dataclass, field

from podcast_assembler.artifacts import load_artifact
from podcast_assembler.errors import ConfigError
from podcast_assembler.models import MixPolicy, MusicAssets, NormalizationPolicy, ProcessPolicy


@dataclass(frozen=True)
class ToolchainConfig:
    ffmpeg: str | None = None       # None: resolved via pydub
    ffprobe: str | None = None
    scratch_root: str | None = None  # None: system temp dir


@dataclass(frozen=True)
class EngineConfig:
    normalization: NormalizationPolicy = field(default_factory=NormalizationPolicy)
    music: MusicAssets = field(default_factory=MusicAssets)
    mixing: MixPolicy = field(default_factory=MixPolicy)
    process: ProcessPolicy = field(default_factory=ProcessPolicy)
    toolchain: ToolchainConfig = field(default_factory=ToolchainConfig)


_SECTIONS = {
    "normalization": NormalizationPolicy,
    "music": MusicAssets,
    "mixing": MixPolicy,
    "process": ProcessPolicy,
    "toolchain": ToolchainConfig,
}

# key -> (low, high), inclusive
_RANGES = {
    "voice_target_lufs": (-70.0, 0.0),
    "music_target_lufs": (-70.0, 0.0),
    "max_true_peak_db": (-20.0, 0.0),
    "tolerance_lu": (0.0, 10.0),
    "duck_volume": (0.0, 1.0),
    "bed_fade_seconds": (0.0, 60.0),
    "crossfade_seconds": (0.0, 60.0),
    "lead_in_seconds": (0.0, 600.0),
    "tail_seconds": (0.0, 600.0),
    "transition_silence_seconds": (0.0, 60.0),
    "sample_rate": (8000, 192000),
    "channels": (1, 8),
    "timeout_seconds": (1.0, 86400.0),
    "timeout_retries": (0, 10),
    "retry_base_delay": (0.0, 60.0),
    "max_workers": (1, 64),
}


def default_config() -> EngineConfig:
    return EngineConfig()


def load_config(path: str) -> EngineConfig:
    """Load engine.json; missing keys keep their defaults."""
    directory, filename = os.path.split(os.path.abspath(path))
    try:
        data = load_artifact(directory, filename)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON ({e})") from e
    if data is None:
        raise ConfigError(f"config not found: {path}")
    return config_from_dict(data, base_dir=directory)


def config_from_dict(data: dict, base_dir: str | None = None) -> EngineConfig:
    if not isinstance(data, dict):
        raise ConfigError("config must be a JSON object")
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ConfigError(f"unknown config section(s): {', '.join(sorted(unknown))}")

    parts = {}
    for name, cls in _SECTIONS.items():
        values = data.get(name) or {}
        if not isinstance(values, dict):
            raise ConfigError(f"config section '{name}' must be an object")
        parts[name] = _build(name, cls, values)

    if base_dir:
        parts["music"] = MusicAssets(**{
            key: _resolve(base_dir, value)
            for key, value in dataclasses.asdict(parts["music"]).items()
        })
    return EngineConfig(**parts)


def _build(section: str, cls, values: dict):
    allowed = {f.name: f for f in dataclasses.fields(cls)}
    unknown = set(values) - set(allowed)
    if unknown:
        raise ConfigError(f"unknown key(s) in '{section}': {', '.join(sorted(unknown))}")

    defaults = cls()
    for key, value in values.items():
        default = getattr(defaults, key)
        expected = type(default)
        if default is None:
            # optional paths and binaries
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"{section}.{key} must be a string or null")
            continue
        if value is None:
            raise ConfigError(f"{section}.{key} may not be null")
        if expected is bool and not isinstance(value, bool):
            raise ConfigError(f"{section}.{key} must be true or false")
        if expected in (int, float) and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise ConfigError(f"{section}.{key} must be a number")
        if expected is int and not isinstance(value, int):
            raise ConfigError(f"{section}.{key} must be an integer")
        if key in _RANGES:
            low, high = _RANGES[key]
            if not low <= value <= high:
                raise ConfigError(f"{section}.{key}={value} is outside [{low}, {high}]")

    converted = {
        key: float(value) if isinstance(getattr(defaults, key), float) else value
        for key, value in values.items()
    }
    return dataclasses.replace(defaults, **converted)


def _resolve(base_dir: str, path: str | None) -> str | None:
    if not path:
        return None
    return os.path.join(base_dir, os.path.expanduser(path))
