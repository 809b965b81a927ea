"""Fingerprinting service: the register / match / delete / list entry points."""

import logging
from pathlib import Path

from .config import DB_PATH, EngineConfig
from .errors import InvalidInput
from .features import fingerprint
from .similarity import MatchResult, match
from .store import Entry, Store, Summary

log = logging.getLogger(__name__)


class Engine:
    """
    Owns the reference store and the tuning configuration.

    Construct one per process and hand it to whatever serves requests;
    close() (or leaving the with-block) releases the database.
    Safe to share between threads: store mutations are serialized and
    matching works on a snapshot of the store.
    """

    def __init__(self, db_path: Path = DB_PATH, config: EngineConfig | None = None):
        self.config = config or EngineConfig()
        self.store = Store(db_path)

    def close(self):
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()

    def fingerprint(self, samples, sample_rate: int):
        return fingerprint(samples, sample_rate, self.config)

    def register(self, samples, sample_rate: int, reference_id: str, owner_id: str | None = None) -> Entry:
        """Fingerprint a clip and store it under reference_id, replacing any previous entry."""
        if not isinstance(reference_id, str) or not reference_id:
            raise InvalidInput(f"reference id must be a non-empty string, got {reference_id!r}")
        fp = self.fingerprint(samples, sample_rate)
        if len(fp) < self.config.matching.min_frames:
            log.warning(
                "%s has only %d frames; clips under %d frames never match",
                reference_id, len(fp), self.config.matching.min_frames,
            )
        return self.store.put(reference_id, fp, owner_id)

    def match(
        self,
        samples,
        sample_rate: int,
        threshold: float | None = None,
        owner_filter: str | None = None,
    ) -> MatchResult:
        """Fingerprint a clip and find the best stored reference."""
        if threshold is not None and not 0.0 <= threshold <= 1.0:
            raise InvalidInput(f"threshold must be in [0, 1], got {threshold}")
        fp = self.fingerprint(samples, sample_rate)
        candidates = self.store.snapshot(owner_filter)
        stale = [e.id for e in candidates if e.stale]
        if stale:
            log.warning("Skipping %d stale fingerprint(s): %s", len(stale), ", ".join(stale))
            candidates = [e for e in candidates if not e.stale]
        return match(fp, candidates, threshold, owner_filter, self.config.matching)

    def delete(self, reference_id: str) -> bool:
        return self.store.delete(reference_id)

    def get(self, reference_id: str) -> Entry:
        return self.store.get(reference_id)

    def list(self, owner_filter: str | None = None) -> list[Summary]:
        return self.store.list(owner_filter)
