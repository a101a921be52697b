"""
Quantization codecs for shrinking stored embeddings.

- Scalar quantization: per-vector affine map of float32 components to uint8
  codes (4x smaller, error bounded by half a quantization step).
- Product quantization: the vector is split into contiguous subvectors and
  each is replaced by the index of its nearest centroid in a trained,
  frozen codebook (one byte per subvector).

Codebooks are owned by a CodebookRegistry and referenced by id from every
vector encoded against them, so retraining never invalidates old codes
silently.
"""

import base64
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..errors import ConfigurationError, DimensionMismatch, NotFound
from .similarity import euclidean_distance

logger = logging.getLogger(__name__)

# Floor for the scalar quantizer step so constant vectors never divide by zero
SCALE_EPSILON = 1e-8
CODE_LEVELS = 255
MAX_CENTROIDS = 256
DEFAULT_KMEANS_ITERATIONS = 10


def encode_array(arr: np.ndarray) -> str:
    """Base64 of the little-endian array bytes, for JSON persistence."""
    little_endian = np.ascontiguousarray(arr).astype(arr.dtype.newbyteorder("<"))
    return base64.b64encode(little_endian.tobytes()).decode("ascii")


def decode_array(data: str, dtype, length: Optional[int] = None) -> np.ndarray:
    """Inverse of encode_array; raises ValueError on malformed input."""
    raw = base64.b64decode(data.encode("ascii"), validate=True)
    arr = np.frombuffer(raw, dtype=np.dtype(dtype).newbyteorder("<")).astype(dtype)
    if length is not None and arr.shape[0] != length:
        raise ValueError(f"expected {length} values, decoded {arr.shape[0]}")
    return arr


# ----------------------------
# Scalar quantization
# ----------------------------

@dataclass
class QuantizedVector:
    """uint8 codes plus the affine parameters that reconstruct them."""
    values: np.ndarray
    scale: float
    offset: float

    def __post_init__(self) -> None:
        self.values = np.asarray(self.values, dtype=np.uint8)
        self.scale = float(np.float32(self.scale))
        self.offset = float(np.float32(self.offset))

    @property
    def dimension(self) -> int:
        return int(self.values.shape[0])

    def size_bytes(self) -> int:
        """Codes plus two float32 parameters."""
        return self.dimension + 8

    def to_f32(self) -> np.ndarray:
        return ScalarQuantizer.to_f32(self)

    def to_dict(self) -> Dict[str, object]:
        return {
            "values": encode_array(self.values),
            "scale": self.scale,
            "offset": self.offset,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object], dimension: int) -> "QuantizedVector":
        values = decode_array(str(data["values"]), np.uint8, dimension)
        return cls(values=values, scale=float(data["scale"]), offset=float(data["offset"]))


class ScalarQuantizer:
    """Per-vector min/max scalar quantizer."""

    @staticmethod
    def from_f32(vector) -> QuantizedVector:
        """
        Quantize a float vector to 8-bit codes.

        ``scale = (max - min) / 255`` (floored at SCALE_EPSILON), ``offset = min``.
        """
        v = np.asarray(vector, dtype=np.float32)
        if v.size == 0:
            return QuantizedVector(values=np.zeros(0, dtype=np.uint8), scale=SCALE_EPSILON, offset=0.0)

        lo = float(v.min())
        hi = float(v.max())
        scale = np.float32(max((hi - lo) / CODE_LEVELS, SCALE_EPSILON))
        offset = np.float32(lo)

        # Quantize against the float32-rounded parameters used for decoding
        codes = np.rint((v.astype(np.float64) - float(offset)) / float(scale))
        codes = np.clip(codes, 0, CODE_LEVELS).astype(np.uint8)
        return QuantizedVector(values=codes, scale=float(scale), offset=float(offset))

    @staticmethod
    def to_f32(q: QuantizedVector) -> np.ndarray:
        """Reconstruct ``values * scale + offset`` as float32."""
        return (q.values.astype(np.float32) * np.float32(q.scale) + np.float32(q.offset)).astype(np.float32)

    @staticmethod
    def max_error(q: QuantizedVector) -> float:
        """Upper bound of the per-component reconstruction error."""
        return q.scale / 2.0


# ----------------------------
# Product quantization
# ----------------------------

@dataclass
class ProductQuantizedVector:
    """One centroid index per subvector, tied to the codebook that made it."""
    assignments: np.ndarray
    num_subvectors: int
    codebook_id: str

    def __post_init__(self) -> None:
        self.assignments = np.asarray(self.assignments, dtype=np.uint8)
        if self.assignments.shape[0] != self.num_subvectors:
            raise ConfigurationError(
                f"{self.assignments.shape[0]} assignments for {self.num_subvectors} subvectors"
            )

    def size_bytes(self) -> int:
        return self.num_subvectors + len(self.codebook_id)

    def to_dict(self) -> Dict[str, object]:
        return {
            "assignments": encode_array(self.assignments),
            "num_subvectors": self.num_subvectors,
            "codebook_id": self.codebook_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ProductQuantizedVector":
        num = int(data["num_subvectors"])
        return cls(
            assignments=decode_array(str(data["assignments"]), np.uint8, num),
            num_subvectors=num,
            codebook_id=str(data["codebook_id"]),
        )


def _nearest_centroids(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """
    Index of the nearest centroid (euclidean) for each row of ``points``.

    Uses ``|x|^2 - 2x.c + |c|^2`` in float32; ties resolve to the lowest index.
    """
    p_sq = np.einsum("ij,ij->i", points, points)[:, None]
    c_sq = np.einsum("ij,ij->i", centroids, centroids)[None, :]
    d2 = p_sq - 2.0 * (points @ centroids.T) + c_sq
    return np.argmin(d2, axis=1)


class ProductQuantizationCodebook:
    """
    Frozen per-subvector centroids produced by k-means training.

    Attributes:
        codebook_id: registry key referenced by encoded vectors
        centroids: read-only array (num_subvectors, num_centroids, subvector_dim)
    """

    def __init__(self, centroids: np.ndarray, codebook_id: Optional[str] = None):
        centroids = np.array(centroids, dtype=np.float32)
        if centroids.ndim != 3:
            raise ConfigurationError(
                f"centroids must be 3-D (subvectors, centroids, dim), got shape {centroids.shape}"
            )
        if not (1 <= centroids.shape[1] <= MAX_CENTROIDS):
            raise ConfigurationError(
                f"num_centroids must be in [1, {MAX_CENTROIDS}], got {centroids.shape[1]}"
            )
        centroids.setflags(write=False)
        self.centroids = centroids
        self.codebook_id = codebook_id or f"pq-{uuid.uuid4().hex[:12]}"
        self._centroid_sq_norms = np.einsum("mkd,mkd->mk", centroids, centroids)

    @property
    def num_subvectors(self) -> int:
        return int(self.centroids.shape[0])

    @property
    def num_centroids(self) -> int:
        return int(self.centroids.shape[1])

    @property
    def subvector_dim(self) -> int:
        return int(self.centroids.shape[2])

    @property
    def dimension(self) -> int:
        return self.num_subvectors * self.subvector_dim

    def _split(self, vector) -> np.ndarray:
        v = np.asarray(vector, dtype=np.float32)
        if v.shape[0] != self.dimension:
            raise DimensionMismatch(self.dimension, int(v.shape[0]))
        return v.reshape(self.num_subvectors, self.subvector_dim)

    def quantize(self, vector) -> ProductQuantizedVector:
        """Encode ``vector`` as one nearest-centroid index per subvector."""
        subs = self._split(vector)
        assignments = np.empty(self.num_subvectors, dtype=np.uint8)
        for m in range(self.num_subvectors):
            assignments[m] = _nearest_centroids(subs[m:m + 1], self.centroids[m])[0]
        return ProductQuantizedVector(
            assignments=assignments,
            num_subvectors=self.num_subvectors,
            codebook_id=self.codebook_id,
        )

    def _check(self, pq: ProductQuantizedVector) -> None:
        if pq.codebook_id != self.codebook_id:
            raise ConfigurationError(
                f"vector was encoded with codebook {pq.codebook_id!r}, not {self.codebook_id!r}"
            )
        if pq.num_subvectors != self.num_subvectors:
            raise ConfigurationError(
                f"vector has {pq.num_subvectors} subvectors, codebook has {self.num_subvectors}"
            )
        if pq.assignments.size and int(pq.assignments.max()) >= self.num_centroids:
            raise ConfigurationError(
                f"assignment {int(pq.assignments.max())} out of range for "
                f"{self.num_centroids} centroids"
            )

    def reconstruct(self, pq: ProductQuantizedVector) -> np.ndarray:
        """Concatenate the referenced centroids back into a float32 vector."""
        self._check(pq)
        rows = self.centroids[np.arange(self.num_subvectors), pq.assignments.astype(np.intp)]
        return rows.reshape(-1).astype(np.float32)

    def inner_product_table(self, query) -> np.ndarray:
        """(num_subvectors, num_centroids) table of query-subvector . centroid."""
        subs = self._split(query)
        return np.einsum("md,mkd->mk", subs, self.centroids)

    def asymmetric_distance_table(self, query) -> np.ndarray:
        """(num_subvectors, num_centroids) squared distances to each centroid."""
        subs = self._split(query)
        q_sq = np.einsum("md,md->m", subs, subs)[:, None]
        return q_sq - 2.0 * self.inner_product_table(query) + self._centroid_sq_norms

    def approximate_cosine(self, query, pq: ProductQuantizedVector,
                           table: Optional[np.ndarray] = None) -> float:
        """
        Cosine between ``query`` and the vector ``pq`` encodes, by table lookup.

        Pass a precomputed ``inner_product_table(query)`` when scoring many codes.
        """
        self._check(pq)
        if table is None:
            table = self.inner_product_table(query)
        idx = np.arange(self.num_subvectors)
        codes = pq.assignments.astype(np.intp)
        dot = float(table[idx, codes].sum())
        rec_sq = float(self._centroid_sq_norms[idx, codes].sum())
        q_norm = float(np.linalg.norm(np.asarray(query, dtype=np.float32)))
        if q_norm == 0.0 or rec_sq <= 0.0:
            return 0.0
        return float(max(-1.0, min(1.0, dot / (q_norm * np.sqrt(rec_sq)))))

    def quantization_error(self, vector) -> float:
        """Euclidean distance between ``vector`` and its PQ reconstruction."""
        return euclidean_distance(vector, self.reconstruct(self.quantize(vector)))

    def to_dict(self) -> Dict[str, object]:
        return {
            "codebook_id": self.codebook_id,
            "shape": list(self.centroids.shape),
            "centroids": encode_array(self.centroids.reshape(-1)),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ProductQuantizationCodebook":
        shape = tuple(int(x) for x in data["shape"])  # type: ignore[union-attr]
        if len(shape) != 3:
            raise ValueError(f"codebook shape must have 3 axes, got {shape}")
        flat = decode_array(str(data["centroids"]), np.float32, int(np.prod(shape)))
        return cls(flat.reshape(shape), codebook_id=str(data["codebook_id"]))

    def __repr__(self) -> str:
        return (f"ProductQuantizationCodebook(id={self.codebook_id!r}, "
                f"subvectors={self.num_subvectors}, centroids={self.num_centroids}, "
                f"subvector_dim={self.subvector_dim})")


def train_codebook(
    vectors: Sequence[Sequence[float]],
    num_subvectors: int,
    num_centroids: int,
    iterations: int = DEFAULT_KMEANS_ITERATIONS,
    codebook_id: Optional[str] = None,
) -> ProductQuantizationCodebook:
    """
    Train a product-quantization codebook with per-subvector k-means.

    Centroids start as the first ``num_centroids`` training subvectors (the
    first subvector is repeated if there are fewer points). Each round assigns
    members to their nearest centroid and moves centroids to the member mean;
    centroids that attract no members keep their position.

    Raises:
        ConfigurationError: empty input, indivisible dimension or bad sizes
    """
    if vectors is None or len(vectors) == 0:
        raise ConfigurationError("Cannot train a codebook from an empty vector set")
    if num_subvectors <= 0:
        raise ConfigurationError(f"num_subvectors must be > 0, got {num_subvectors}")
    if not (1 <= num_centroids <= MAX_CENTROIDS):
        raise ConfigurationError(
            f"num_centroids must be in [1, {MAX_CENTROIDS}], got {num_centroids}"
        )
    if iterations <= 0:
        raise ConfigurationError(f"iterations must be > 0, got {iterations}")

    try:
        data = np.asarray(vectors, dtype=np.float32)
    except ValueError as e:
        raise ConfigurationError(f"Training vectors have inconsistent lengths: {e}") from e
    if data.ndim != 2:
        raise ConfigurationError(f"Training vectors must form a 2-D array, got shape {data.shape}")

    n, dim = data.shape
    if dim % num_subvectors != 0:
        raise ConfigurationError(
            f"Dimension {dim} is not divisible by num_subvectors {num_subvectors}"
        )
    sub_dim = dim // num_subvectors
    subs = data.reshape(n, num_subvectors, sub_dim)

    centroids = np.empty((num_subvectors, num_centroids, sub_dim), dtype=np.float32)
    for m in range(num_subvectors):
        points = np.ascontiguousarray(subs[:, m, :])
        init_idx = [i if i < n else 0 for i in range(num_centroids)]
        cents = points[init_idx].copy()

        for _ in range(iterations):
            labels = _nearest_centroids(points, cents)
            counts = np.bincount(labels, minlength=num_centroids)
            sums = np.zeros_like(cents)
            np.add.at(sums, labels, points)
            occupied = counts > 0
            cents[occupied] = sums[occupied] / counts[occupied, None].astype(np.float32)

        centroids[m] = cents

    codebook = ProductQuantizationCodebook(centroids, codebook_id=codebook_id)
    logger.info(
        "Trained codebook %s from %d vectors (%d subvectors x %d centroids, dim %d)",
        codebook.codebook_id, n, num_subvectors, num_centroids, sub_dim,
    )
    return codebook


class CodebookRegistry:
    """
    Registry of frozen codebooks keyed by id, with reference counts.

    A codebook stays registered while any stored vector references it.
    """

    def __init__(self) -> None:
        self._codebooks: Dict[str, ProductQuantizationCodebook] = {}
        self._refcounts: Dict[str, int] = {}
        self._lock = threading.RLock()

    def register(self, codebook: ProductQuantizationCodebook) -> str:
        with self._lock:
            existing = self._codebooks.get(codebook.codebook_id)
            if existing is not None and existing is not codebook:
                raise ConfigurationError(
                    f"Codebook id {codebook.codebook_id!r} is already registered"
                )
            self._codebooks[codebook.codebook_id] = codebook
            self._refcounts.setdefault(codebook.codebook_id, 0)
            return codebook.codebook_id

    def train(self, vectors, num_subvectors: int, num_centroids: int,
              iterations: int = DEFAULT_KMEANS_ITERATIONS,
              codebook_id: Optional[str] = None) -> ProductQuantizationCodebook:
        """Train a new codebook and register it."""
        codebook = train_codebook(vectors, num_subvectors, num_centroids,
                                  iterations=iterations, codebook_id=codebook_id)
        self.register(codebook)
        return codebook

    def get(self, codebook_id: str) -> ProductQuantizationCodebook:
        with self._lock:
            try:
                return self._codebooks[codebook_id]
            except KeyError:
                raise NotFound(codebook_id, kind="codebook") from None

    def contains(self, codebook_id: str) -> bool:
        with self._lock:
            return codebook_id in self._codebooks

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._codebooks)

    def acquire(self, codebook_id: str) -> None:
        """Record one more vector referencing ``codebook_id``."""
        with self._lock:
            if codebook_id not in self._codebooks:
                raise NotFound(codebook_id, kind="codebook")
            self._refcounts[codebook_id] += 1

    def decref(self, codebook_id: str) -> int:
        """Drop one reference; returns the remaining count."""
        with self._lock:
            count = self._refcounts.get(codebook_id, 0)
            if count <= 0:
                raise ConfigurationError(f"Codebook {codebook_id!r} has no references to release")
            self._refcounts[codebook_id] = count - 1
            return count - 1

    def refcount(self, codebook_id: str) -> int:
        with self._lock:
            return self._refcounts.get(codebook_id, 0)

    def release(self, codebook_id: str) -> None:
        """Unregister a codebook that no vector references any more."""
        with self._lock:
            if codebook_id not in self._codebooks:
                raise NotFound(codebook_id, kind="codebook")
            if self._refcounts.get(codebook_id, 0) > 0:
                raise ConfigurationError(
                    f"Codebook {codebook_id!r} is still referenced by "
                    f"{self._refcounts[codebook_id]} vectors"
                )
            del self._codebooks[codebook_id]
            del self._refcounts[codebook_id]
            logger.info("Released codebook %s", codebook_id)

    def clear(self) -> None:
        with self._lock:
            self._codebooks.clear()
            self._refcounts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._codebooks)

    def __iter__(self):
        with self._lock:
            return iter(list(self._codebooks.values()))
