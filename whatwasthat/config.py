"""whatwasthat configuration, paths and tunable matching constants."""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping
from types import MappingProxyType

# Data directory: ~/.whatwasthat/
DATA_DIR = Path(os.environ.get("WWT_DATA_DIR", Path.home() / ".whatwasthat"))
DB_PATH = DATA_DIR / "fingerprints.db"

# Pipeline version: increment when the extraction logic changes.
# Fingerprints from the legacy Node server count as version 1.
PIPELINE_VERSION = 2
LEGACY_PIPELINE_VERSION = 1

# Analysis windows
WINDOW_SIZE = 2048
HOP_SIZE = 512
MAX_BINS = 512               # spectrum is truncated to min(MAX_BINS, N/2) bins

# Signal conditioning
HIGH_PASS_CUTOFF = 80.0      # Hz

# Feature extraction
ROLLOFF_FRACTION = 0.85
CONTRAST_FRACTION = 0.1      # top/bottom share of bins used for spectral contrast

# Log-spaced bands (Hz), in feature order
BANDS = (
    ("sub_bass", 20.0, 60.0),
    ("bass", 60.0, 250.0),
    ("low_mid", 250.0, 500.0),
    ("mid", 500.0, 1000.0),
    ("high_mid", 1000.0, 2000.0),
    ("upper_mid", 2000.0, 4000.0),
    ("presence", 4000.0, 6000.0),
    ("brilliance", 6000.0, 12000.0),
)

# Per-feature weights for frame similarity. Spectral shape dominates; energy is
# nearly ignored since it tracks recording volume.
FEATURE_WEIGHTS = MappingProxyType({
    "energy": 0.01,
    "zero_crossing_rate": 0.03,
    "spectral_centroid": 0.12,
    "spectral_flux": 0.10,
    "spectral_rolloff": 0.10,
    "spectral_flatness": 0.08,
    "spectral_contrast": 0.08,
    "sub_bass": 0.06,
    "bass": 0.08,
    "low_mid": 0.07,
    "mid": 0.08,
    "high_mid": 0.06,
    "upper_mid": 0.05,
    "presence": 0.04,
    "brilliance": 0.02,
    "peak_freq1": 0.01,
    "peak_freq2": 0.01,
})

# Fields compared with the relative-frequency penalty instead of the generic one
PEAK_FEATURES = ("peak_freq1", "peak_freq2")
PEAK_TOLERANCE = 0.1         # peaks must sit within ~10% of each other
DECAY = 2.0                  # exponential decay on normalized differences
VALUE_FLOOR = 0.001
FREQ_FLOOR = 1.0

MIN_FRAMES = 10              # fingerprints shorter than this never match


@dataclass(frozen=True)
class MatchingConfig:
    match_threshold: float = 0.85
    notify_confidence_floor: float = 0.80
    min_consistent_frame_fraction: float = 0.6
    good_frame_threshold: float = 0.7
    length_ratio_penalty_floor: float = 0.7
    length_ratio_penalty_factor: float = 0.85
    require_temporal_consistency: bool = True
    consistency_penalty: float = 0.5
    min_frames: int = MIN_FRAMES
    weights: Mapping[str, float] = field(default_factory=lambda: FEATURE_WEIGHTS)
    max_workers: int = 1     # >1 scores candidates on a thread pool
    log_matching: bool = True

    def __post_init__(self):
        total = sum(self.weights.values())
        if not math.isclose(total, 1.0, abs_tol=1e-9):
            raise ValueError(f"feature weights must sum to 1.0, got {total}")
        for name, lo, hi in (
            ("match_threshold", 0.0, 1.0),
            ("notify_confidence_floor", 0.0, 1.0),
            ("min_consistent_frame_fraction", 0.0, 1.0),
            ("good_frame_threshold", 0.0, 1.0),
            ("length_ratio_penalty_floor", 0.0, 1.0),
            ("length_ratio_penalty_factor", 0.0, 1.0),
            ("consistency_penalty", 0.0, 1.0),
        ):
            value = getattr(self, name)
            if not lo <= value <= hi:
                raise ValueError(f"{name} must be in [{lo}, {hi}], got {value}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")


@dataclass(frozen=True)
class EngineConfig:
    window_size: int = WINDOW_SIZE
    hop_size: int = HOP_SIZE
    normalize: bool = True
    high_pass: bool = True
    high_pass_cutoff: float = HIGH_PASS_CUTOFF
    matching: MatchingConfig = field(default_factory=MatchingConfig)

    def __post_init__(self):
        if self.window_size < 2 or self.hop_size < 1:
            raise ValueError("window_size must be >= 2 and hop_size >= 1")
        if self.high_pass_cutoff <= 0:
            raise ValueError("high_pass_cutoff must be positive")


# Audio formats the CLI reads directly (decoding anything else is up to the caller)
AUDIO_EXTENSIONS = {".wav"}
