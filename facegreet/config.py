"""Explicit configuration for every component.

Each component receives its own dataclass through its constructor; there is no
process-wide settable configuration. `load_config` builds an `AppConfig` from a
JSON file with one object per section, e.g.::

    {
        "database": "data/friends",
        "matcher": {"threshold": 0.4},
        "throttle": {"cooldown_seconds": 10}
    }
"""
from __future__ import annotations

import json
import time

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from facegreet.errors import InvalidInput

# Contract with the embedding extractor: every canonical image is this size.
CANONICAL_SIZE = 224

# Reference system greeting cooldown.
DEFAULT_COOLDOWN_SECONDS = 10.0

MATCHER_BACKENDS = ("linear", "numpy", "torch", "auto")


@dataclass
class PreprocessConfig:
    canonical_size: int = CANONICAL_SIZE
    # Optional conditioning applied before resizing (off by default).
    stretch_contrast: bool = False
    # Gaussian kernel size, odd; 0 disables denoising.
    blur_kernel: int = 0

    def __post_init__(self) -> None:
        if int(self.canonical_size) <= 0:
            raise InvalidInput(f"canonical_size must be positive, got {self.canonical_size}")
        k = int(self.blur_kernel)
        if k < 0 or (k > 0 and k % 2 == 0):
            raise InvalidInput(f"blur_kernel must be 0 or a positive odd number, got {self.blur_kernel}")


@dataclass
class MatcherConfig:
    # Acceptance threshold, strict: a score must be > threshold. No default on purpose.
    threshold: float
    backend: str = "linear"
    unknown_label: str = "Unknown"
    error_label: str = "Error"

    def __post_init__(self) -> None:
        self.threshold = float(self.threshold)
        if self.backend not in MATCHER_BACKENDS:
            raise InvalidInput(f"unknown matcher backend {self.backend!r}, expected one of {MATCHER_BACKENDS}")


@dataclass
class ThrottleConfig:
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self.cooldown_seconds = float(self.cooldown_seconds)
        if self.cooldown_seconds < 0:
            raise InvalidInput(f"cooldown must be non-negative, got {self.cooldown_seconds}")


@dataclass
class GreeterConfig:
    enabled: bool = True
    template: str = "Bonjour {name}"


@dataclass
class SpeechConfig:
    lang: str = "fr"
    cache_dir: str = "tts_cache"
    player: Tuple[str, ...] = ("ffplay", "-nodisp", "-autoexit", "-loglevel", "quiet")

    def __post_init__(self) -> None:
        self.player = tuple(str(p) for p in self.player)


@dataclass
class AppConfig:
    matcher: MatcherConfig
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    greeter: GreeterConfig = field(default_factory=GreeterConfig)
    speech: SpeechConfig = field(default_factory=SpeechConfig)
    # Embedding model on disk and the adapter that loads it ("sface" | "insightface").
    model_path: str = "models/face_recognition_sface_2021dec.onnx"
    extractor: str = "sface"
    # Base path of the two-part database (`<database>.names`, `<database>.features`).
    database: Optional[str] = None


_SECTIONS = {
    "preprocess": PreprocessConfig,
    "matcher": MatcherConfig,
    "throttle": ThrottleConfig,
    "greeter": GreeterConfig,
    "speech": SpeechConfig,
}

_SCALARS = ("model_path", "extractor", "database")


def _build_section(cls, values: Dict[str, Any], section: str):
    if not isinstance(values, dict):
        raise InvalidInput(f"config section {section!r} must be an object")
    allowed = {f.name for f in fields(cls)} - {"clock"}
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise InvalidInput(f"unknown keys in config section {section!r}: {unknown}")
    try:
        return cls(**values)
    except TypeError as e:
        raise InvalidInput(f"invalid config section {section!r}: {e}") from e


def config_from_dict(data: Dict[str, Any], threshold: Optional[float] = None) -> AppConfig:
    """Build an `AppConfig` from plain dicts.

    `threshold`, when given, overrides (or supplies) the matcher threshold.
    """
    if not isinstance(data, dict):
        raise InvalidInput("config root must be an object")
    unknown = sorted(set(data) - set(_SECTIONS) - set(_SCALARS))
    if unknown:
        raise InvalidInput(f"unknown config keys: {unknown}")

    matcher_values = dict(data.get("matcher") or {})
    if threshold is not None:
        matcher_values["threshold"] = float(threshold)
    if "threshold" not in matcher_values:
        raise InvalidInput("matcher.threshold is required (no default acceptance threshold)")

    kwargs: Dict[str, Any] = {"matcher": _build_section(MatcherConfig, matcher_values, "matcher")}
    for name, cls in _SECTIONS.items():
        if name == "matcher" or name not in data:
            continue
        kwargs[name] = _build_section(cls, data[name], name)
    for name in _SCALARS:
        if name in data and data[name] is not None:
            kwargs[name] = str(data[name])
    return AppConfig(**kwargs)


def load_config(path, threshold: Optional[float] = None) -> AppConfig:
    fp = Path(path)
    try:
        with open(fp, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise InvalidInput(f"config file not found: {fp}") from e
    except json.JSONDecodeError as e:
        raise InvalidInput(f"config file {fp} is not valid JSON: {e}") from e
    return config_from_dict(data, threshold=threshold)
