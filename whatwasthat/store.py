"""SQLite-backed reference fingerprint store."""

import gzip
import json
import logging
import sqlite3
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

from .config import DB_PATH, LEGACY_PIPELINE_VERSION, PIPELINE_VERSION
from .errors import InvalidInput, NotFound, StoreIOError
from .features import FEATURE_NAMES, N_FEATURES

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS refs (
    id          TEXT PRIMARY KEY,
    owner_id    TEXT,
    created_at  TEXT NOT NULL,
    frames      INTEGER NOT NULL,
    vector      BLOB NOT NULL,
    version     INTEGER NOT NULL
);
"""

UPSERT = """
INSERT INTO refs (id, owner_id, created_at, frames, vector, version)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    owner_id   = excluded.owner_id,
    created_at = excluded.created_at,
    frames     = excluded.frames,
    vector     = excluded.vector,
    version    = excluded.version
"""

# Field names used by the JSON database of the legacy Node server
LEGACY_KEYS = {
    "energy": "energy",
    "zero_crossing_rate": "zcr",
    "spectral_centroid": "spectralCentroid",
    "spectral_flux": "spectralFlux",
    "spectral_rolloff": "spectralRolloff",
    "spectral_flatness": "spectralFlatness",
    "spectral_contrast": "spectralContrast",
    "sub_bass": "subBass",
    "bass": "bass",
    "low_mid": "lowMid",
    "mid": "mid",
    "high_mid": "highMid",
    "upper_mid": "upperMid",
    "presence": "presence",
    "brilliance": "brilliance",
    "peak_freq1": "peakFreq1",
    "peak_freq2": "peakFreq2",
}


@dataclass(frozen=True)
class Entry:
    id: str
    fingerprint: np.ndarray
    owner_id: str | None
    created_at: str
    version: int = PIPELINE_VERSION

    @property
    def stale(self) -> bool:
        """Extracted by an older pipeline; needs re-registering before it can match."""
        return self.version != PIPELINE_VERSION


@dataclass(frozen=True)
class Summary:
    id: str
    owner_id: str | None
    created_at: str
    length: int
    stale: bool = False


def _pack(fp: np.ndarray) -> bytes:
    """Gzip-compress a float64 fingerprint to bytes."""
    return gzip.compress(np.ascontiguousarray(fp, dtype="<f8").tobytes())


def _unpack(blob: bytes, frames: int) -> np.ndarray:
    """Decompress bytes back to a read-only [frames × N_FEATURES] array."""
    fp = np.frombuffer(gzip.decompress(blob), dtype="<f8").astype(np.float64)
    fp = fp.reshape(frames, N_FEATURES)
    fp.flags.writeable = False
    return fp


def _frozen(fp) -> np.ndarray:
    arr = np.array(fp, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[1] != N_FEATURES:
        raise InvalidInput(f"fingerprint must be [T × {N_FEATURES}], got {arr.shape}")
    if not np.isfinite(arr).all():
        raise InvalidInput("fingerprint contains NaN or infinite values")
    arr.flags.writeable = False
    return arr


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _legacy_frames(ref_id, frames) -> list[list[float]]:
    if not isinstance(frames, list):
        raise InvalidInput(f"{ref_id}: fingerprint must be a list of frames")
    rows = []
    for i, frame in enumerate(frames):
        if not isinstance(frame, dict):
            raise InvalidInput(f"{ref_id}: frame {i} is not an object")
        try:
            rows.append([float(frame.get(LEGACY_KEYS[name]) or 0.0) for name in FEATURE_NAMES])
        except (TypeError, ValueError) as e:
            raise InvalidInput(f"{ref_id}: frame {i} has a non-numeric field: {e}") from e
    return rows


class Store:
    """
    Reference fingerprints keyed by caller-supplied id.

    The whole table is held in memory for matching; every mutation is
    committed to SQLite before it becomes visible. One lock serializes
    mutations and guards the map, so readers never see half an entry.
    """

    def __init__(self, path: Path = DB_PATH):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._entries: dict[str, Entry] = {}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
        except (sqlite3.Error, OSError) as e:
            raise StoreIOError(f"cannot open fingerprint database {self.path}: {e}") from e
        try:
            self._load()
        except StoreIOError:
            self._conn.close()
            raise
        stale = sum(e.stale for e in self._entries.values())
        log.info("Loaded %d fingerprint(s) from %s", len(self._entries), self.path)
        if stale:
            log.warning("%d fingerprint(s) in %s predate pipeline v%d and are skipped "
                        "when matching; register them again", stale, self.path, PIPELINE_VERSION)

    def _load(self):
        try:
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
            rows = self._conn.execute(
                "SELECT * FROM refs ORDER BY created_at, id"
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreIOError(f"cannot open fingerprint database {self.path}: {e}") from e
        for row in rows:
            try:
                fp = _unpack(row["vector"], row["frames"])
            except (OSError, EOFError, zlib.error, ValueError, TypeError) as e:
                raise StoreIOError(f"corrupt fingerprint {row['id']!r} in {self.path}: {e}") from e
            self._entries[row["id"]] = Entry(
                id=row["id"],
                fingerprint=fp,
                owner_id=row["owner_id"],
                created_at=row["created_at"],
                version=row["version"],
            )

    def close(self):
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, ref_id) -> bool:
        with self._lock:
            return ref_id in self._entries

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def put(self, ref_id: str, fingerprint, owner_id: str | None = None,
            created_at: str | None = None) -> Entry:
        """Insert or replace a reference. Returns the stored entry."""
        entry = self._entry(ref_id, fingerprint, owner_id, created_at, PIPELINE_VERSION)
        self._write([entry], f"failed to store {ref_id}")
        log.info("Stored fingerprint for %s (owner: %s, %d frames)",
                 ref_id, owner_id, len(entry.fingerprint))
        return entry

    def _entry(self, ref_id, fingerprint, owner_id, created_at, version) -> Entry:
        if not isinstance(ref_id, str) or not ref_id:
            raise InvalidInput(f"reference id must be a non-empty string, got {ref_id!r}")
        return Entry(
            id=ref_id,
            fingerprint=_frozen(fingerprint),
            owner_id=owner_id,
            created_at=created_at or _now(),
            version=version,
        )

    def _write(self, entries: list[Entry], error: str):
        """Upsert entries in one transaction; memory changes only after the commit."""
        with self._lock:
            try:
                self._conn.executemany(UPSERT, [
                    (e.id, e.owner_id, e.created_at, len(e.fingerprint),
                     _pack(e.fingerprint), e.version)
                    for e in entries
                ])
                self._conn.commit()
            except sqlite3.Error as e:
                self._rollback()
                raise StoreIOError(f"{error}: {e}") from e
            for entry in entries:
                self._entries[entry.id] = entry

    def delete(self, ref_id: str) -> bool:
        """Remove a reference. Returns False, without touching the database, if it is unknown."""
        with self._lock:
            if ref_id not in self._entries:
                return False
            try:
                self._conn.execute("DELETE FROM refs WHERE id = ?", (ref_id,))
                self._conn.commit()
            except sqlite3.Error as e:
                self._rollback()
                raise StoreIOError(f"failed to delete {ref_id}: {e}") from e
            del self._entries[ref_id]
        log.info("Deleted fingerprint %s", ref_id)
        return True

    def _rollback(self):
        try:
            self._conn.rollback()
        except sqlite3.Error:
            log.exception("rollback failed on %s", self.path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, ref_id: str) -> Entry:
        with self._lock:
            entry = self._entries.get(ref_id)
        if entry is None:
            raise NotFound(f"no fingerprint with id {ref_id!r}")
        return entry

    def snapshot(self, owner_id: str | None = None) -> list[Entry]:
        """Consistent copy of the entries (optionally one owner's), in store order."""
        with self._lock:
            entries = list(self._entries.values())
        if owner_id is not None:
            entries = [e for e in entries if e.owner_id == owner_id]
        return entries

    def list(self, owner_id: str | None = None) -> list[Summary]:
        return [
            Summary(e.id, e.owner_id, e.created_at, len(e.fingerprint), e.stale)
            for e in self.snapshot(owner_id)
        ]

    def stats(self) -> dict:
        entries = self.snapshot()
        return {
            "references": len(entries),
            "owners": len({e.owner_id for e in entries}),
            "frames": sum(len(e.fingerprint) for e in entries),
            "stale": sum(e.stale for e in entries),
        }

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def import_json(self, path: Path, default_owner: str | None = None) -> int:
        """
        Import the JSON database written by the legacy Node server:
        a list of [id, {fingerprint: [frame, ...], userId, timestamp}] pairs,
        where older entries may be a bare frame list. Returns the number imported.

        The whole file is validated before anything is written, and all entries
        land in one transaction. The legacy server searched its peak-frequency
        ranges an octave higher, so imported entries are marked stale.
        """
        try:
            data = json.loads(Path(path).read_text())
        except OSError as e:
            raise StoreIOError(f"cannot read {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise InvalidInput(f"{path} is not valid JSON: {e}") from e
        if not isinstance(data, list):
            raise InvalidInput(f"{path}: expected a list of [id, fingerprint] pairs")

        entries = []
        for i, item in enumerate(data):
            if not isinstance(item, list) or len(item) != 2:
                raise InvalidInput(f"{path}: item {i} is not an [id, fingerprint] pair")
            ref_id, stored = item
            if isinstance(stored, list):
                frames, owner, created = stored, default_owner, None
            elif isinstance(stored, dict):
                frames = stored.get("fingerprint") or []
                owner = stored.get("userId", default_owner)
                created = stored.get("timestamp")
            else:
                raise InvalidInput(f"{path}: item {i} has no fingerprint")
            if not frames:
                log.warning("Skipping %s: empty fingerprint", ref_id)
                continue
            entries.append(self._entry(
                str(ref_id), _legacy_frames(ref_id, frames), owner, created,
                LEGACY_PIPELINE_VERSION,
            ))

        if entries:
            self._write(entries, f"failed to import {path}")
            log.warning("Imported %d legacy fingerprint(s) from %s; they are skipped "
                        "when matching until registered again", len(entries), path)
        return len(entries)
