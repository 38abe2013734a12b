from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import torch

from facegreet.config import MatcherConfig
from facegreet.face.store import IdentityRecord, SignatureStore
from facegreet.utils.log import get_logger
from facegreet.utils.math import as_signature, cosine_similarity, l2_normalize

logger = get_logger(__name__)

Similarity = Callable[[np.ndarray, np.ndarray], float]


class MatchVerdict:
    """Outcome of a recognition query."""

    is_match = False


@dataclass(frozen=True)
class Recognized(MatchVerdict):
    name: str
    score: float
    is_match = True


@dataclass(frozen=True)
class Unrecognized(MatchVerdict):
    best_score: float

    @property
    def score(self) -> float:
        return self.best_score


@dataclass(frozen=True)
class Empty(MatchVerdict):
    """The store holds no records."""


@dataclass(frozen=True)
class Invalid(MatchVerdict):
    reason: str = ""


class Matcher:
    """Nearest-signature search over a `SignatureStore`.

    The reference backend ("linear") scans records in insertion order and only
    replaces the running best on a strictly greater score, so ties resolve to the
    earliest record. The vectorized backends compute every cosine score with one
    matrix product (numpy on CPU, torch on CUDA) and take the first occurrence of
    the maximum, which gives the same winner. They only apply to the built-in
    cosine measure; an extractor-specific `similarity` always uses the linear scan.

    Acceptance is strict: `best_score > threshold`.
    """

    def __init__(
        self,
        store: SignatureStore,
        config: MatcherConfig,
        similarity: Optional[Similarity] = None,
    ):
        self.store = store
        self.config = config
        self.similarity = similarity

        # Normalized copy of the store matrix, keyed on the matrix object it was built from.
        self._cache_src: Optional[np.ndarray] = None
        self._cache_matrix: Optional[np.ndarray] = None

        # Torch/CUDA copy of `_cache_matrix`, built lazily.
        self._cache_matrix_t = None
        self._cache_device: Optional[str] = None

    # -- labels ---------------------------------------------------------

    def label(self, verdict: MatchVerdict) -> str:
        """Display/notification label: the name, or the unknown/error sentinel."""
        if isinstance(verdict, Recognized):
            return verdict.name
        if isinstance(verdict, Invalid):
            return self.config.error_label
        return self.config.unknown_label

    # -- backends -------------------------------------------------------

    def _auto_device(self) -> str:
        try:
            return "cuda" if torch.cuda.is_available() else "cpu"
        except Exception:
            return "cpu"

    def _backend(self) -> str:
        backend = self.config.backend
        if self.similarity is not None:
            return "linear"
        if backend == "auto":
            return "torch" if self._auto_device() == "cuda" else "numpy"
        return backend

    def _normalized_matrix(self, matrix: np.ndarray) -> np.ndarray:
        if self._cache_src is not matrix or self._cache_matrix is None:
            self._cache_src = matrix
            self._cache_matrix = np.ascontiguousarray(l2_normalize(matrix))
            self._cache_matrix_t = None
            self._cache_device = None
        return self._cache_matrix

    def _torch_scores(self, q: np.ndarray, matrix: np.ndarray) -> np.ndarray:
        mat = self._normalized_matrix(matrix)
        device = self._auto_device()
        if self._cache_matrix_t is None or self._cache_device != device:
            self._cache_matrix_t = torch.from_numpy(mat.copy()).to(device)
            self._cache_device = device
        q_t = torch.from_numpy(l2_normalize(q).astype(np.float32, copy=True)).to(device)
        sims_t = self._cache_matrix_t @ q_t
        return sims_t.detach().cpu().numpy().astype(np.float32, copy=False)

    def _numpy_scores(self, q: np.ndarray, matrix: np.ndarray) -> np.ndarray:
        mat = self._normalized_matrix(matrix)
        return (mat @ l2_normalize(q)).astype(np.float32, copy=False)

    def _linear_scores(self, q: np.ndarray, records: Sequence[IdentityRecord]) -> np.ndarray:
        sim = self.similarity or cosine_similarity
        return np.asarray([float(sim(q, r.signature)) for r in records], dtype=np.float64)

    def scores(self, q: np.ndarray, records: Sequence[IdentityRecord], matrix: np.ndarray) -> np.ndarray:
        """Similarity of `q` with every record, in scan order."""
        backend = self._backend()
        if backend == "torch":
            try:
                return self._torch_scores(q, matrix)
            except Exception as e:
                logger.warning(f"torch matcher backend failed, falling back to numpy: {e}")
                return self._numpy_scores(q, matrix)
        if backend == "numpy":
            return self._numpy_scores(q, matrix)
        return self._linear_scores(q, records)

    def _linear_search(self, q: np.ndarray, records: Sequence[IdentityRecord]) -> Tuple[int, float]:
        sim = self.similarity or cosine_similarity
        best_idx = -1
        best_score = float("-inf")
        for i, record in enumerate(records):
            s = float(sim(q, record.signature))
            # Strict: an equal score never displaces an earlier record.
            if s > best_score:
                best_score = s
                best_idx = i
        return best_idx, best_score

    # -- queries --------------------------------------------------------

    def _check_query(self, query) -> np.ndarray:
        if query is None:
            raise ValueError("query is None")
        q = as_signature(query)
        if q.size == 0:
            raise ValueError("query is empty")
        if not np.all(np.isfinite(q)):
            raise ValueError("query contains non-finite values")
        return q

    def recognize(self, query, threshold: Optional[float] = None) -> MatchVerdict:
        """Return the verdict for `query`; never raises."""
        thr = float(self.config.threshold if threshold is None else threshold)
        try:
            q = self._check_query(query)
        except (TypeError, ValueError) as e:
            return Invalid(str(e))

        records, matrix = self.store.snapshot()
        if not records:
            return Empty()
        dim = records[0].dimension
        if q.shape[0] != dim:
            return Invalid(f"query has {q.shape[0]} values, store holds {dim}-D signatures")

        try:
            if self._backend() == "linear":
                best_idx, best_score = self._linear_search(q, records)
            else:
                sims = self.scores(q, records, matrix)
                best_idx = int(np.argmax(sims))
                best_score = float(sims[best_idx])
        except Exception as e:
            logger.warning(f"similarity computation failed: {e}")
            return Invalid(f"similarity computation failed: {e}")

        if best_idx < 0 or not np.isfinite(best_score):
            return Invalid("no comparable score")

        if best_score > thr:
            return Recognized(records[best_idx].name, best_score)
        return Unrecognized(best_score)

    def top_k(self, query, k: int = 5) -> List[Tuple[str, float]]:
        """Best `k` (name, score) pairs, best first, ties in insertion order; [] when nothing can be scored."""
        if int(k) <= 0:
            return []
        try:
            q = self._check_query(query)
        except (TypeError, ValueError):
            return []
        records, matrix = self.store.snapshot()
        if not records or q.shape[0] != records[0].dimension:
            return []
        try:
            sims = self.scores(q, records, matrix)
        except Exception as e:
            logger.warning(f"similarity computation failed: {e}")
            return []
        order = sorted(range(len(records)), key=lambda i: -float(sims[i]))
        return [(records[i].name, float(sims[i])) for i in order[: int(k)]]
