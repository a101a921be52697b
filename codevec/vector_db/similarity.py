"""
Similarity and distance metrics for embedding vectors.

Every metric offers a scalar ``similarity``/``distance`` pair, a vectorised
``similarities`` for scoring one query against a candidate matrix, and a
``pairwise`` similarity matrix. Degenerate inputs (zero-norm vectors) score
0.0 instead of raising, so the search hot path stays exception-free.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Iterable, List, Sequence, Tuple, Type

import numpy as np
from scipy.spatial.distance import pdist, squareform

from ..errors import ConfigurationError, DimensionMismatch

if TYPE_CHECKING:  # pragma: no cover
    from .quantization import QuantizedVector


def _check_pair(a: np.ndarray, b: np.ndarray) -> None:
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatch(int(a.shape[0]), int(b.shape[0]))


def _as_f32(v) -> np.ndarray:
    return np.asarray(v, dtype=np.float32)


def dot_product(a, b) -> float:
    """Plain dot product of two equal-length vectors."""
    a, b = _as_f32(a), _as_f32(b)
    _check_pair(a, b)
    return float(np.dot(a, b))


def cosine_similarity(a, b) -> float:
    """
    Cosine similarity in [-1, 1].

    Returns 0.0 when either vector has zero norm.
    """
    a, b = _as_f32(a), _as_f32(b)
    _check_pair(a, b)
    if a.shape[0] == 0:
        return 0.0
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = float(np.dot(a, b)) / (norm_a * norm_b)
    # Clamp float error
    return max(-1.0, min(1.0, sim))


def euclidean_distance(a, b) -> float:
    """Square root of the summed squared differences."""
    a, b = _as_f32(a), _as_f32(b)
    _check_pair(a, b)
    diff = a - b
    return float(np.sqrt(np.dot(diff, diff)))


def _code_sums(q: "QuantizedVector") -> Tuple[int, int]:
    """Return (sum of codes, sum of squared codes) as exact integers."""
    codes = q.values.astype(np.int64)
    return int(codes.sum()), int(np.dot(codes, codes))


def quantized_cosine_similarity(qa: "QuantizedVector", qb: "QuantizedVector") -> float:
    """
    Cosine similarity between two scalar-quantized vectors.

    Expands ``(va*sa + oa) . (vb*sb + ob)`` over the integer codes, so no
    reconstructed float vector is ever materialised. Agrees with
    reconstruct-then-cosine up to float rounding.
    """
    n = qa.values.shape[0]
    if n != qb.values.shape[0]:
        raise DimensionMismatch(n, int(qb.values.shape[0]))
    if n == 0:
        return 0.0

    va = qa.values.astype(np.int64)
    vb = qb.values.astype(np.int64)
    sa, oa = float(qa.scale), float(qa.offset)
    sb, ob = float(qb.scale), float(qb.offset)

    sum_a, sq_a = _code_sums(qa)
    sum_b, sq_b = _code_sums(qb)
    cross = int(np.dot(va, vb))

    dot = sa * sb * cross + sa * ob * sum_a + oa * sb * sum_b + n * oa * ob
    norm_a_sq = sa * sa * sq_a + 2.0 * sa * oa * sum_a + n * oa * oa
    norm_b_sq = sb * sb * sq_b + 2.0 * sb * ob * sum_b + n * ob * ob

    if norm_a_sq <= 0.0 or norm_b_sq <= 0.0:
        return 0.0
    sim = dot / (np.sqrt(norm_a_sq) * np.sqrt(norm_b_sq))
    return float(max(-1.0, min(1.0, sim)))


def quantized_cosine_to_query(query, q: "QuantizedVector") -> float:
    """Cosine similarity between a float query and a scalar-quantized vector."""
    query = _as_f32(query)
    n = q.values.shape[0]
    if query.shape[0] != n:
        raise DimensionMismatch(n, int(query.shape[0]))
    if n == 0:
        return 0.0

    q64 = query.astype(np.float64)
    codes = q.values.astype(np.float64)
    s, o = float(q.scale), float(q.offset)
    sum_codes, sq_codes = _code_sums(q)

    dot = s * float(np.dot(q64, codes)) + o * float(q64.sum())
    norm_q = float(np.linalg.norm(q64))
    norm_r_sq = s * s * sq_codes + 2.0 * s * o * sum_codes + n * o * o
    if norm_q == 0.0 or norm_r_sq <= 0.0:
        return 0.0
    sim = dot / (norm_q * np.sqrt(norm_r_sq))
    return float(max(-1.0, min(1.0, sim)))


class SimilarityMetric(ABC):
    """Interface for vector metrics (higher similarity = closer)."""

    name: str = "abstract"

    @abstractmethod
    def similarity(self, a, b) -> float:
        """Similarity between two vectors (higher = more similar)."""

    @abstractmethod
    def distance(self, a, b) -> float:
        """Distance between two vectors (lower = more similar)."""

    def similarities(self, query, matrix: np.ndarray) -> np.ndarray:
        """Score ``query`` against each row of ``matrix``."""
        query = _as_f32(query)
        matrix = np.asarray(matrix, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[0] == 0:
            return np.zeros(0, dtype=np.float32)
        _check_pair(query, matrix[0])
        return np.array([self.similarity(query, row) for row in matrix], dtype=np.float32)

    def pairwise(self, matrix: np.ndarray) -> np.ndarray:
        """Symmetric similarity matrix with ones on the diagonal."""
        n = matrix.shape[0]
        out = np.ones((n, n), dtype=np.float32)
        for i in range(n):
            for j in range(i + 1, n):
                out[i, j] = out[j, i] = self.similarity(matrix[i], matrix[j])
        return out

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class CosineSimilarity(SimilarityMetric):
    """Cosine similarity metric; distance is ``1 - similarity``."""

    name = "cosine"

    def similarity(self, a, b) -> float:
        return cosine_similarity(a, b)

    def distance(self, a, b) -> float:
        return 1.0 - self.similarity(a, b)

    def similarities(self, query, matrix: np.ndarray) -> np.ndarray:
        query = _as_f32(query)
        matrix = np.asarray(matrix, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[0] == 0:
            return np.zeros(0, dtype=np.float32)
        _check_pair(query, matrix[0])
        q_norm = np.linalg.norm(query)
        row_norms = np.linalg.norm(matrix, axis=1)
        denom = row_norms * q_norm
        dots = matrix @ query
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(denom > 0, dots / np.where(denom > 0, denom, 1.0), 0.0)
        return np.clip(sims, -1.0, 1.0).astype(np.float32)

    def pairwise(self, matrix: np.ndarray) -> np.ndarray:
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape[0] < 2:
            return np.ones((matrix.shape[0], matrix.shape[0]), dtype=np.float32)
        with np.errstate(divide="ignore", invalid="ignore"):
            dist = squareform(pdist(matrix, metric="cosine"))
        # Zero-norm rows come back as NaN
        sims = np.nan_to_num(1.0 - dist, nan=0.0)
        np.fill_diagonal(sims, 1.0)
        return np.clip(sims, -1.0, 1.0).astype(np.float32)


class DotProductSimilarity(SimilarityMetric):
    """Dot product (meaningful for L2-normalised vectors)."""

    name = "dot"

    def similarity(self, a, b) -> float:
        return dot_product(a, b)

    def distance(self, a, b) -> float:
        # For normalized vectors, |a-b|^2 = 2 - 2*a.b
        return 2.0 - 2.0 * self.similarity(a, b)

    def similarities(self, query, matrix: np.ndarray) -> np.ndarray:
        query = _as_f32(query)
        matrix = np.asarray(matrix, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[0] == 0:
            return np.zeros(0, dtype=np.float32)
        _check_pair(query, matrix[0])
        return (matrix @ query).astype(np.float32)

    def pairwise(self, matrix: np.ndarray) -> np.ndarray:
        matrix = np.asarray(matrix, dtype=np.float32)
        out = matrix @ matrix.T
        np.fill_diagonal(out, 1.0)
        return out.astype(np.float32)


class EuclideanDistance(SimilarityMetric):
    """Euclidean (L2) distance; similarity is ``exp(-distance)``."""

    name = "euclidean"

    def similarity(self, a, b) -> float:
        return float(np.exp(-self.distance(a, b)))

    def distance(self, a, b) -> float:
        return euclidean_distance(a, b)

    def similarities(self, query, matrix: np.ndarray) -> np.ndarray:
        query = _as_f32(query)
        matrix = np.asarray(matrix, dtype=np.float32)
        if matrix.ndim != 2 or matrix.shape[0] == 0:
            return np.zeros(0, dtype=np.float32)
        _check_pair(query, matrix[0])
        dists = np.linalg.norm(matrix - query, axis=1)
        return np.exp(-dists).astype(np.float32)

    def pairwise(self, matrix: np.ndarray) -> np.ndarray:
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape[0] < 2:
            return np.ones((matrix.shape[0], matrix.shape[0]), dtype=np.float32)
        return np.exp(-squareform(pdist(matrix, metric="euclidean"))).astype(np.float32)


class ManhattanDistance(SimilarityMetric):
    """L1 distance; similarity is ``1 / (1 + distance)``."""

    name = "manhattan"

    def similarity(self, a, b) -> float:
        return 1.0 / (1.0 + self.distance(a, b))

    def distance(self, a, b) -> float:
        a, b = _as_f32(a), _as_f32(b)
        _check_pair(a, b)
        return float(np.abs(a - b).sum())

    def pairwise(self, matrix: np.ndarray) -> np.ndarray:
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape[0] < 2:
            return np.ones((matrix.shape[0], matrix.shape[0]), dtype=np.float32)
        return (1.0 / (1.0 + squareform(pdist(matrix, metric="cityblock")))).astype(np.float32)


class JaccardSimilarity(SimilarityMetric):
    """
    Jaccard similarity over "active" components (value > threshold).

    Two vectors with no active components are identical (1.0).
    """

    name = "jaccard"

    def __init__(self, threshold: float = 0.0):
        self.threshold = threshold

    def similarity(self, a, b) -> float:
        a, b = _as_f32(a), _as_f32(b)
        _check_pair(a, b)
        active_a = a > self.threshold
        active_b = b > self.threshold
        union = int(np.count_nonzero(active_a | active_b))
        if union == 0:
            return 1.0
        return int(np.count_nonzero(active_a & active_b)) / union

    def distance(self, a, b) -> float:
        return 1.0 - self.similarity(a, b)

    def __repr__(self) -> str:
        return f"JaccardSimilarity(threshold={self.threshold})"


_METRICS: Dict[str, Type[SimilarityMetric]] = {
    "cosine": CosineSimilarity,
    "dot": DotProductSimilarity,
    "euclidean": EuclideanDistance,
    "manhattan": ManhattanDistance,
    "jaccard": JaccardSimilarity,
}


def get_metric(name: str) -> SimilarityMetric:
    """Instantiate a metric by its configuration name."""
    try:
        return _METRICS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown similarity metric {name!r}; expected one of {sorted(_METRICS)}"
        ) from None


# ----------------------------
# Batch utilities
# ----------------------------

def top_k_similar(
    metric: SimilarityMetric,
    query,
    items: Iterable[Tuple[str, Sequence[float]]],
    k: int,
) -> List[Tuple[str, float]]:
    """
    Find the ``k`` most similar (id, vector) items.

    Ordered by descending similarity; exact ties break by ascending id.
    """
    scored = [(item_id, metric.similarity(query, vec)) for item_id, vec in items]
    scored.sort(key=lambda pair: (-pair[1], pair[0]))
    return scored[:max(0, k)]


def similarity_matrix(metric: SimilarityMetric, vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Symmetric pairwise similarity matrix for ``vectors``."""
    matrix = np.asarray(vectors, dtype=np.float32)
    if matrix.ndim != 2:
        raise DimensionMismatch(0, int(matrix.ndim))
    return metric.pairwise(matrix)


# ----------------------------
# Normalisation helpers
# ----------------------------

def l2_normalize(vector) -> np.ndarray:
    """Unit-length copy of ``vector`` (unchanged if zero)."""
    v = np.array(vector, dtype=np.float32)
    norm = np.linalg.norm(v)
    return v / norm if norm > 0 else v


def l1_normalize(vector) -> np.ndarray:
    """Copy of ``vector`` whose absolute values sum to 1 (unchanged if zero)."""
    v = np.array(vector, dtype=np.float32)
    total = np.abs(v).sum()
    return v / total if total > 0 else v


def minmax_normalize(vector) -> np.ndarray:
    """Rescale to [0, 1]; constant vectors are returned unchanged."""
    v = np.array(vector, dtype=np.float32)
    if v.size == 0:
        return v
    lo, hi = v.min(), v.max()
    rng = hi - lo
    return (v - lo) / rng if rng > 0 else v


def zscore_normalize(vector) -> np.ndarray:
    """Zero mean, unit variance; constant vectors are returned unchanged."""
    v = np.array(vector, dtype=np.float32)
    if v.size == 0:
        return v
    std = v.std()
    return (v - v.mean()) / std if std > 0 else v
