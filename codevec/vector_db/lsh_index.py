"""
Random-hyperplane LSH index for approximate nearest neighbour retrieval.

Each of ``num_tables`` tables projects a vector onto ``hash_bits`` unit
hyperplanes; the signs form a bit code that selects a bucket. Vectors with a
small angle between them collide in at least one table with high
probability, so the union of the query's buckets is a high-recall candidate
set that the store then re-scores exactly.
"""

import logging
import statistics
from typing import Dict, Iterable, List, Optional, Set

import numpy as np

from ..config import LSHConfig
from ..errors import ConfigurationError
from .rwlock import ReadWriteLock
from .types import LSHStats, as_vector

logger = logging.getLogger(__name__)


class LSHIndex:
    """
    Locality-Sensitive Hashing over cosine distance.

    Hyperplanes are drawn from ``numpy.random.default_rng(config.seed)`` and
    L2-normalised, so two indexes with the same config hash identically.
    A reverse map ``id -> codes`` lets ``remove`` skip re-hashing.
    """

    def __init__(self, dimension: int, config: Optional[LSHConfig] = None,
                 lock: Optional[ReadWriteLock] = None):
        """
        Initialize LSH index.

        Args:
            dimension: Vector dimension
            config: Table count, bits per table and hyperplane seed
            lock: Lock shared with the owning store (a private one otherwise)
        """
        if dimension <= 0:
            raise ConfigurationError(f"dimension must be > 0, got {dimension}")
        self.config = config or LSHConfig()
        self.config.validate()
        self.dimension = dimension
        self._lock = lock or ReadWriteLock()

        rng = np.random.default_rng(self.config.seed)
        planes = rng.standard_normal(
            (self.config.num_tables, self.config.hash_bits, dimension)
        ).astype(np.float32)
        norms = np.linalg.norm(planes, axis=2, keepdims=True)
        norms[norms == 0] = 1.0
        self.hyperplanes = planes / norms
        self.hyperplanes.setflags(write=False)

        self._bit_weights = np.left_shift(
            np.uint64(1), np.arange(self.config.hash_bits, dtype=np.uint64)
        )

        self._tables: List[Dict[int, List[str]]] = [{} for _ in range(self.config.num_tables)]
        self._codes: Dict[str, List[int]] = {}

    @property
    def num_tables(self) -> int:
        return self.config.num_tables

    @property
    def hash_bits(self) -> int:
        return self.config.hash_bits

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    def signature(self, vector) -> List[int]:
        """
        Compute the per-table bucket codes for a vector.

        Bit ``j`` of table ``t`` is set when ``hyperplanes[t, j] . vector >= 0``.
        """
        vec = as_vector(vector, self.dimension)
        projections = self.hyperplanes @ vec
        bits = (projections >= 0).astype(np.uint64)
        codes = (bits * self._bit_weights).sum(axis=1, dtype=np.uint64)
        return [int(c) for c in codes]

    def insert(self, item_id: str, vector) -> List[int]:
        """
        Add ``item_id`` to one bucket per table.

        Idempotent: an id that is already present is moved to the buckets of
        the new vector.

        Returns:
            The bucket codes, one per table
        """
        codes = self.signature(vector)
        with self._lock.write_lock():
            if item_id in self._codes:
                self._unlink(item_id)
            for table, code in zip(self._tables, codes):
                table.setdefault(code, []).append(item_id)
            self._codes[item_id] = codes
        logger.debug("LSH insert %s -> %s", item_id, codes)
        return codes

    def remove(self, item_id: str) -> bool:
        """Drop ``item_id`` from every table; False if it was not indexed."""
        with self._lock.write_lock():
            if item_id not in self._codes:
                return False
            self._unlink(item_id)
        logger.debug("LSH remove %s", item_id)
        return True

    def _unlink(self, item_id: str) -> None:
        codes = self._codes.pop(item_id)
        for table, code in zip(self._tables, codes):
            bucket = table.get(code)
            if bucket is None:
                continue
            if item_id in bucket:
                bucket.remove(item_id)
            if not bucket:
                del table[code]

    def _probe_codes(self, code: int, probe_radius: int) -> Iterable[int]:
        yield code
        if probe_radius >= 1:
            for bit in range(self.config.hash_bits):
                yield code ^ (1 << bit)

    def search_candidates(self, query, max_candidates: Optional[int] = None,
                          probe_radius: int = 0) -> Set[str]:
        """
        Union of the query's buckets across all tables.

        Args:
            query: Query vector
            max_candidates: Stop collecting once this many ids are found
            probe_radius: 1 also visits buckets one bit away (multi-probe)

        Returns:
            Set of candidate ids (false positives expected)
        """
        if probe_radius not in (0, 1):
            raise ConfigurationError(f"probe_radius must be 0 or 1, got {probe_radius}")
        codes = self.signature(query)
        candidates: Set[str] = set()

        with self._lock.read_lock():
            for table, code in zip(self._tables, codes):
                for probe in self._probe_codes(code, probe_radius):
                    bucket = table.get(probe)
                    if not bucket:
                        continue
                    for item_id in bucket:
                        candidates.add(item_id)
                        if max_candidates is not None and len(candidates) >= max_candidates:
                            return candidates
        return candidates

    def contains(self, item_id: str) -> bool:
        with self._lock.read_lock():
            return item_id in self._codes

    def __contains__(self, item_id: str) -> bool:
        return self.contains(item_id)

    def ids(self) -> Set[str]:
        with self._lock.read_lock():
            return set(self._codes)

    def codes_for(self, item_id: str) -> Optional[List[int]]:
        with self._lock.read_lock():
            codes = self._codes.get(item_id)
            return list(codes) if codes is not None else None

    def __len__(self) -> int:
        with self._lock.read_lock():
            return len(self._codes)

    def clear(self) -> None:
        with self._lock.write_lock():
            for table in self._tables:
                table.clear()
            self._codes.clear()

    def stats(self) -> LSHStats:
        """Bucket occupancy statistics."""
        with self._lock.read_lock():
            sizes = [len(bucket) for table in self._tables for bucket in table.values()]
            total = len(self._codes)
        return LSHStats(
            total_vectors=total,
            num_tables=self.config.num_tables,
            num_buckets=self.config.num_tables * (2 ** self.config.hash_bits),
            non_empty_buckets=len(sizes),
            average_bucket_size=float(np.mean(sizes)) if sizes else 0.0,
            median_bucket_size=int(statistics.median_low(sizes)) if sizes else 0,
            dimension=self.dimension,
            hash_bits=self.config.hash_bits,
        )

    def memory_estimate_bytes(self) -> int:
        """Rough size of hyperplanes, buckets and the reverse map."""
        with self._lock.read_lock():
            id_bytes = sum(len(item_id) for item_id in self._codes)
            buckets = sum(len(table) for table in self._tables)
            n = len(self._codes)
        per_table = self.config.num_tables
        return int(self.hyperplanes.nbytes + buckets * 16 + n * per_table * 16 + id_bytes * 2)

    def verify(self) -> List[str]:
        """Check that buckets and the reverse map describe the same membership."""
        problems = []
        with self._lock.read_lock():
            for t, table in enumerate(self._tables):
                seen: Set[str] = set()
                for code, bucket in table.items():
                    for item_id in bucket:
                        if item_id in seen:
                            problems.append(f"table {t}: {item_id!r} appears in more than one bucket")
                        seen.add(item_id)
                        codes = self._codes.get(item_id)
                        if codes is None or codes[t] != code:
                            problems.append(f"table {t}: bucket {code} holds untracked id {item_id!r}")
                missing = set(self._codes) - seen
                for item_id in sorted(missing):
                    problems.append(f"table {t}: {item_id!r} missing from its bucket")
        return problems

    def to_dict(self) -> Dict[str, object]:
        with self._lock.read_lock():
            tables = [
                {str(code): list(bucket) for code, bucket in table.items()}
                for table in self._tables
            ]
        return {
            "dimension": self.dimension,
            "config": self.config.to_dict(),
            "tables": tables,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object],
                  lock: Optional[ReadWriteLock] = None) -> "LSHIndex":
        """
        Restore an index from ``to_dict`` output.

        Raises:
            ValueError: malformed tables or a table count that disagrees with the config
        """
        config = LSHConfig.from_dict(data["config"])  # type: ignore[arg-type]
        index = cls(int(data["dimension"]), config, lock=lock)  # type: ignore[arg-type]
        tables = data.get("tables", [])
        if not isinstance(tables, list) or len(tables) != config.num_tables:
            raise ValueError(f"expected {config.num_tables} tables in the persisted index")

        codes: Dict[str, List[Optional[int]]] = {}
        for t, raw_table in enumerate(tables):
            if not isinstance(raw_table, dict):
                raise ValueError(f"table {t} is not a mapping")
            for raw_code, bucket in raw_table.items():
                code = int(raw_code)
                if code < 0 or code >= 2 ** config.hash_bits:
                    raise ValueError(f"table {t}: bucket code {code} out of range")
                if not bucket:
                    continue
                index._tables[t][code] = [str(item_id) for item_id in bucket]
                for item_id in bucket:
                    slots = codes.setdefault(str(item_id), [None] * config.num_tables)
                    if slots[t] is not None:
                        raise ValueError(f"table {t}: id {item_id!r} is in two buckets")
                    slots[t] = code

        for item_id, slots in codes.items():
            if any(code is None for code in slots):
                raise ValueError(f"id {item_id!r} is missing from some tables")
            index._codes[item_id] = [int(code) for code in slots]  # type: ignore[arg-type]
        return index

    def __repr__(self) -> str:
        return (f"LSHIndex(dimension={self.dimension}, tables={self.config.num_tables}, "
                f"bits={self.config.hash_bits}, vectors={len(self._codes)})")

