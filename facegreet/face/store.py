from __future__ import annotations

import threading

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from facegreet.errors import DimensionMismatch, InvalidInput
from facegreet.utils.math import as_signature


@dataclass(frozen=True, eq=False)
class IdentityRecord:
    name: str
    signature: np.ndarray

    @property
    def dimension(self) -> int:
        return int(self.signature.shape[0])


def _check_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidInput(f"identity name must be a non-empty string, got {name!r}")
    return name


def make_record(name, signature) -> IdentityRecord:
    """Validate and copy a (name, signature) pair into a read-only record."""
    name = _check_name(name)
    try:
        vec = as_signature(signature)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"invalid signature for {name!r}: {e}") from e
    if vec.size == 0:
        raise InvalidInput(f"empty signature for {name!r}")
    if not np.all(np.isfinite(vec)):
        raise InvalidInput(f"signature for {name!r} contains non-finite values")
    vec = vec.copy()
    vec.setflags(write=False)
    return IdentityRecord(name=name, signature=vec)


class SignatureStore:
    """Ordered, append-only collection of identity records.

    Insertion order is the scan order of the matcher (ties go to the earliest
    record); it carries no ranking meaning. All records share one
    dimensionality, fixed by the first enrolled signature and released when
    the store is cleared.

    Single-writer discipline: every mutation and snapshot is taken under the
    store's lock.
    """

    def __init__(self):
        self._records: List[IdentityRecord] = []
        self._lock = threading.RLock()
        # Flattened (n, D) view for the vectorized matcher, rebuilt lazily.
        self._matrix: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)

    @property
    def dimension(self) -> Optional[int]:
        with self._lock:
            if not self._records:
                return None
            return self._records[0].dimension

    def enroll(self, name: str, signature) -> int:
        """Append a record and return its id (its position in scan order).

        Duplicate names are allowed: each call adds an independent sample.
        """
        record = make_record(name, signature)
        with self._lock:
            dim = self.dimension
            if dim is not None and record.dimension != dim:
                raise DimensionMismatch(dim, record.dimension)
            self._records.append(record)
            self._matrix = None
            return len(self._records) - 1

    def all(self) -> Tuple[IdentityRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def names(self) -> List[str]:
        with self._lock:
            return [r.name for r in self._records]

    def clear(self) -> None:
        with self._lock:
            self._records = []
            self._matrix = None

    def replace(self, records: Iterable[IdentityRecord]) -> int:
        """Swap the whole content for `records`, all-or-nothing.

        Every record is validated before the current content is cleared, so a
        rejected batch leaves the store untouched.
        """
        staged = [make_record(r.name, r.signature) for r in records]
        if staged:
            dim = staged[0].dimension
            for r in staged:
                if r.dimension != dim:
                    raise DimensionMismatch(dim, r.dimension)
        with self._lock:
            self._records = []
            self._matrix = None
            self._records.extend(staged)
            return len(self._records)

    def matrix(self) -> np.ndarray:
        """Return the signatures stacked as a read-only `(n, D)` float32 matrix."""
        with self._lock:
            if self._matrix is None:
                if self._records:
                    mat = np.stack([r.signature for r in self._records], axis=0).astype(np.float32, copy=False)
                else:
                    mat = np.zeros((0, 0), dtype=np.float32)
                mat = np.ascontiguousarray(mat)
                mat.setflags(write=False)
                self._matrix = mat
            return self._matrix

    def summary(self) -> Dict[str, int]:
        """Per-name sample counts, in first-enrollment order."""
        with self._lock:
            return dict(Counter(r.name for r in self._records))

    def snapshot(self) -> Tuple[Tuple[IdentityRecord, ...], np.ndarray]:
        """Records and their stacked matrix, taken atomically."""
        with self._lock:
            return tuple(self._records), self.matrix()
