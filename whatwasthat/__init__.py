"""whatwasthat — short-clip sound fingerprinting and matching."""

from .config import EngineConfig, MatchingConfig
from .engine import Engine
from .errors import EngineError, InvalidInput, NotFound, StoreIOError
from .features import FeatureVector, fingerprint
from .similarity import MatchResult, Score, compare_fingerprints, match
from .store import Entry, Store, Summary

__all__ = [
    "Engine", "EngineConfig", "MatchingConfig",
    "EngineError", "InvalidInput", "NotFound", "StoreIOError",
    "FeatureVector", "fingerprint",
    "MatchResult", "Score", "compare_fingerprints", "match",
    "Entry", "Store", "Summary",
]
