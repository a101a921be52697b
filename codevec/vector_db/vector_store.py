"""
Vector store: the single owner of entries, LSH index and codebooks.

Every mutation that touches both the entry map and the index runs inside
one write section of a shared ReadWriteLock, so a concurrent search never
sees an entry in one structure but not the other.
"""

import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

import numpy as np

from ..config import CodevecConfig, LSHConfig, QuantizationConfig
from ..errors import ConfigurationError, IndexInconsistency, NotFound
from ..utils.logging_setup import log_operation
from . import persistence
from .lsh_index import LSHIndex
from .quantization import CodebookRegistry, ProductQuantizationCodebook, ScalarQuantizer
from .records import StoredRecord, StoredVector, decode_vector
from .rwlock import ReadWriteLock
from .similarity import (
    CosineSimilarity,
    SimilarityMetric,
    get_metric,
    quantized_cosine_to_query,
)
from .types import (
    CodeMetadata,
    SearchResult,
    StorageMode,
    VectorDBStats,
    VectorEntry,
    as_vector,
    metadata_field,
    utcnow,
)

logger = logging.getLogger(__name__)

# Pairwise similarity in stats() is computed over at most this many entries
AVERAGE_SIMILARITY_SAMPLE = 100


class VectorStore:
    """
    Thread-safe store of code embeddings with LSH candidate retrieval.

    Entries are encoded according to the store's storage mode (``raw``,
    ``scalar`` or ``product``); each entry keeps its own mode tag, so a
    store may hold a mix after ``demote`` or a bounded store's pressure
    handling.

    Example:
        store = VectorStore(dimension=384)
        store.add_vector(VectorEntry("fn:parse", embedding, {"file_path": "a.py"}))
        hits = store.search(query, limit=5)
    """

    def __init__(
        self,
        dimension: int = 768,
        lsh_config: Optional[LSHConfig] = None,
        storage_mode: Union[str, StorageMode] = StorageMode.RAW,
        metric: Union[str, SimilarityMetric] = "cosine",
        similarity_threshold: float = -1.0,
        max_results: int = 50,
        strict: bool = False,
        quantization_config: Optional[QuantizationConfig] = None,
        lock: Optional[ReadWriteLock] = None,
    ):
        """
        Initialize the store.

        Args:
            dimension: Length every embedding must have
            lsh_config: LSH tables, bits and seed
            storage_mode: Encoding for newly added entries
            metric: Metric name or instance used to score candidates
            similarity_threshold: Default minimum score for search results
            max_results: Default result limit for search
            strict: Raise IndexInconsistency instead of logging it
            quantization_config: Defaults for product-quantization training
            lock: Reader/writer lock (a new one when omitted)
        """
        if dimension <= 0:
            raise ConfigurationError(f"dimension must be > 0, got {dimension}")
        if max_results <= 0:
            raise ConfigurationError(f"max_results must be > 0, got {max_results}")

        self.dimension = dimension
        self.storage_mode = StorageMode(storage_mode)
        self.metric = metric if isinstance(metric, SimilarityMetric) else get_metric(metric)
        self.similarity_threshold = similarity_threshold
        self.max_results = max_results
        self.strict = strict
        self.quantization_config = quantization_config or QuantizationConfig()
        self.quantization_config.validate()
        if self.storage_mode is StorageMode.PRODUCT and \
                dimension % self.quantization_config.num_subvectors != 0:
            raise ConfigurationError(
                f"dimension {dimension} is not divisible by "
                f"num_subvectors {self.quantization_config.num_subvectors}"
            )

        self._lock = lock or ReadWriteLock()
        self._access_lock = threading.Lock()
        self._index = LSHIndex(dimension, lsh_config or LSHConfig(), lock=self._lock)
        self._records: Dict[str, StoredRecord] = {}
        self._registry = CodebookRegistry()
        self._active_codebook: Optional[str] = None

        self.created_at = utcnow()
        self.last_updated = self.created_at

    @classmethod
    def from_config(cls, config: CodevecConfig) -> "VectorStore":
        """Build a store from a validated CodevecConfig."""
        config.validate()
        return cls(
            dimension=config.store.dimension,
            lsh_config=config.lsh,
            storage_mode=config.store.storage_mode,
            metric=config.store.metric,
            similarity_threshold=config.store.similarity_threshold,
            max_results=config.store.max_results,
            strict=config.store.strict_consistency,
            quantization_config=config.quantization,
        )

    # ----------------------------
    # Accessors
    # ----------------------------

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    @property
    def index(self) -> LSHIndex:
        return self._index

    @property
    def codebooks(self) -> CodebookRegistry:
        return self._registry

    @property
    def active_codebook(self) -> Optional[ProductQuantizationCodebook]:
        with self._lock.read_lock():
            if self._active_codebook is None:
                return None
            return self._registry.get(self._active_codebook)

    def __len__(self) -> int:
        with self._lock.read_lock():
            return len(self._records)

    def __contains__(self, item_id: str) -> bool:
        return self.contains(item_id)

    def contains(self, item_id: str) -> bool:
        with self._lock.read_lock():
            return item_id in self._records

    def ids(self) -> List[str]:
        with self._lock.read_lock():
            return sorted(self._records)

    # ----------------------------
    # Encoding
    # ----------------------------

    def _encode(self, vector: np.ndarray, mode: StorageMode) -> StoredVector:
        if mode is StorageMode.RAW:
            return StoredVector(mode, raw=vector.copy())
        if mode is StorageMode.SCALAR:
            return StoredVector(mode, scalar=ScalarQuantizer.from_f32(vector))
        if self._active_codebook is None:
            # Held raw until train_codebook() encodes it
            return StoredVector(StorageMode.RAW, raw=vector.copy())
        codebook = self._registry.get(self._active_codebook)
        return StoredVector(mode, pq=codebook.quantize(vector))

    def _decode(self, record: StoredRecord) -> np.ndarray:
        return decode_vector(record.vector, self._registry)

    def _attach(self, record: StoredRecord) -> None:
        if record.vector.codebook_id is not None:
            self._registry.acquire(record.vector.codebook_id)

    def _detach(self, record: StoredRecord) -> None:
        if record.vector.codebook_id is not None:
            self._registry.decref(record.vector.codebook_id)

    def _release_unused_codebooks(self) -> None:
        for codebook_id in self._registry.ids():
            if codebook_id != self._active_codebook and self._registry.refcount(codebook_id) == 0:
                self._registry.release(codebook_id)

    def footprint_bytes(self, item_id: str) -> int:
        """Bytes charged for ``item_id`` by a memory budget."""
        with self._lock.read_lock():
            return self._require(item_id).footprint_bytes()

    def memory_bytes(self) -> int:
        """Total footprint of all stored entries."""
        with self._lock.read_lock():
            return sum(record.footprint_bytes() for record in self._records.values())

    def estimate_footprint(self, entry: VectorEntry) -> int:
        """Footprint ``entry`` would have once encoded in the store's mode."""
        vector = as_vector(entry.embedding, self.dimension)
        with self._lock.read_lock():
            stored = self._encode(vector, self.storage_mode)
        return StoredRecord(entry.id, stored).footprint_bytes()

    # ----------------------------
    # Consistency
    # ----------------------------

    def _report(self, problems: List[str]) -> None:
        if not problems:
            return
        if self.strict:
            raise IndexInconsistency(
                f"Vector store and LSH index disagree: {problems[0]}", problems=problems
            )
        for problem in problems:
            logger.critical("Index inconsistency: %s", problem)

    def _check_membership(self, item_id: str) -> None:
        in_map = item_id in self._records
        in_index = self._index.contains(item_id)
        if in_map != in_index:
            where = "map only" if in_map else "index only"
            self._report([f"{item_id!r} present in {where}"])

    def verify_consistency(self) -> List[str]:
        """
        Compare the entry map, LSH index and codebook references.

        Returns:
            Human-readable problems (empty when consistent)
        """
        problems: List[str] = []
        with self._lock.read_lock():
            map_ids = set(self._records)
            index_ids = self._index.ids()
            for item_id in sorted(map_ids - index_ids):
                problems.append(f"{item_id!r} is stored but not indexed")
            for item_id in sorted(index_ids - map_ids):
                problems.append(f"{item_id!r} is indexed but not stored")
            problems.extend(self._index.verify())

            refs: Counter = Counter()
            for record in self._records.values():
                codebook_id = record.vector.codebook_id
                if codebook_id is None:
                    continue
                refs[codebook_id] += 1
                if not self._registry.contains(codebook_id):
                    problems.append(f"{record.id!r} references missing codebook {codebook_id!r}")
            for codebook_id in self._registry.ids():
                if self._registry.refcount(codebook_id) != refs.get(codebook_id, 0):
                    problems.append(
                        f"codebook {codebook_id!r} refcount {self._registry.refcount(codebook_id)} "
                        f"!= {refs.get(codebook_id, 0)} referencing entries"
                    )
        for problem in problems:
            logger.critical("Consistency check: %s", problem)
        return problems

    # ----------------------------
    # Mutations
    # ----------------------------

    def _insert_locked(self, entry: VectorEntry, vector: np.ndarray,
                       created_at=None) -> StoredRecord:
        stored = self._encode(vector, self.storage_mode)
        previous = self._records.get(entry.id)
        if previous is not None:
            self._detach(previous)

        now = utcnow()
        record = StoredRecord(
            id=entry.id,
            vector=stored,
            metadata=entry.metadata,
            created_at=created_at or entry.created_at,
            updated_at=now,
        )
        self._attach(record)
        self._records[entry.id] = record
        self._index.insert(entry.id, vector)
        self.last_updated = now
        self._check_membership(entry.id)
        return record

    def add_vector(self, entry: VectorEntry) -> None:
        """
        Insert ``entry``; an existing entry with the same id is replaced.

        Raises:
            DimensionMismatch: embedding length differs from the store dimension
            InvalidVector: embedding has NaN/inf components
        """
        vector = as_vector(entry.embedding, self.dimension)
        with self._lock.write_lock():
            self._insert_locked(entry, vector)
        logger.debug("Added vector %s", entry.id, extra={"entry_id": entry.id})

    def add_vectors(self, entries: Sequence[VectorEntry]) -> int:
        """
        Insert a batch; every entry is validated before any is stored.

        Returns:
            Number of entries inserted
        """
        vectors = [as_vector(entry.embedding, self.dimension) for entry in entries]
        ids = [entry.id for entry in entries]
        if len(set(ids)) != len(ids):
            duplicates = sorted(item_id for item_id, n in Counter(ids).items() if n > 1)
            raise ConfigurationError(f"Duplicate ids in batch: {duplicates}")

        with self._lock.write_lock():
            for entry, vector in zip(entries, vectors):
                self._insert_locked(entry, vector)
        logger.debug("Added %d vectors", len(entries))
        return len(entries)

    def update_vector(self, entry: VectorEntry) -> None:
        """
        Re-embed an existing entry (delete + insert, keeping ``created_at``).

        Raises:
            NotFound: no entry with ``entry.id``
        """
        vector = as_vector(entry.embedding, self.dimension)
        with self._lock.write_lock():
            existing = self._require(entry.id)
            self._insert_locked(entry, vector, created_at=existing.created_at)
        logger.debug("Updated vector %s", entry.id, extra={"entry_id": entry.id})

    def remove_vector(self, item_id: str) -> bool:
        """Remove an entry from the map and the index; False if unknown."""
        with self._lock.write_lock():
            record = self._records.pop(item_id, None)
            if record is None:
                return False
            self._index.remove(item_id)
            self._detach(record)
            self.last_updated = utcnow()
            self._check_membership(item_id)
        logger.debug("Removed vector %s", item_id, extra={"entry_id": item_id})
        return True

    def clear(self) -> None:
        """Remove every entry. Codebooks other than the active one are released."""
        with self._lock.write_lock():
            for record in self._records.values():
                self._detach(record)
            self._records.clear()
            self._index.clear()
            self._release_unused_codebooks()
            self.last_updated = utcnow()
        logger.info("Cleared vector store")

    # ----------------------------
    # Lookups
    # ----------------------------

    def _require(self, item_id: str) -> StoredRecord:
        record = self._records.get(item_id)
        if record is None:
            raise NotFound(item_id)
        return record

    def _touch(self, ids: Iterable[str]) -> None:
        now = utcnow()
        with self._access_lock:
            for item_id in ids:
                record = self._records.get(item_id)
                if record is not None:
                    record.last_accessed = now
                    record.access_count += 1

    def get(self, item_id: str) -> VectorEntry:
        """
        Fetch an entry (quantized entries are reconstructed).

        Raises:
            NotFound: unknown id
        """
        with self._lock.read_lock():
            record = self._require(item_id)
            self._touch([item_id])
            return record.to_entry(self._decode(record))

    def get_or_none(self, item_id: str) -> Optional[VectorEntry]:
        try:
            return self.get(item_id)
        except NotFound:
            return None

    def get_by_file(self, file_path: str) -> List[VectorEntry]:
        """All entries whose metadata ``file_path`` equals ``file_path``."""
        with self._lock.read_lock():
            return [
                record.to_entry(self._decode(record))
                for item_id, record in sorted(self._records.items())
                if metadata_field(record.metadata, "file_path") == file_path
            ]

    def get_all_vectors(self) -> List[VectorEntry]:
        with self._lock.read_lock():
            return [record.to_entry(self._decode(record))
                    for _, record in sorted(self._records.items())]

    def records(self) -> List[StoredRecord]:
        """Snapshot of the internal records, ordered by id."""
        with self._lock.read_lock():
            return [record for _, record in sorted(self._records.items())]

    # ----------------------------
    # Search
    # ----------------------------

    def _score(self, query: np.ndarray, ids: Iterable[str],
               threshold: float) -> List[SearchResult]:
        cosine = isinstance(self.metric, CosineSimilarity)
        tables: Dict[str, np.ndarray] = {}
        results = []
        for item_id in ids:
            record = self._records.get(item_id)
            if record is None:
                continue
            stored = record.vector
            if cosine and stored.mode is StorageMode.SCALAR:
                score = quantized_cosine_to_query(query, stored.scalar)
                distance = 1.0 - score
            elif cosine and stored.mode is StorageMode.PRODUCT:
                codebook = self._registry.get(stored.pq.codebook_id)
                if codebook.codebook_id not in tables:
                    tables[codebook.codebook_id] = codebook.inner_product_table(query)
                score = codebook.approximate_cosine(query, stored.pq, tables[codebook.codebook_id])
                distance = 1.0 - score
            else:
                vector = self._decode(record)
                score = self.metric.similarity(query, vector)
                distance = self.metric.distance(query, vector)
            if score >= threshold:
                results.append(SearchResult(item_id, float(score), float(distance), record.metadata))
        results.sort(key=lambda r: (-r.score, r.id))
        return results

    def search_candidates(self, query, max_candidates: Optional[int] = None,
                          probe_radius: int = 0) -> Set[str]:
        """Raw LSH candidate ids for ``query``."""
        vector = as_vector(query, self.dimension)
        return self._index.search_candidates(vector, max_candidates=max_candidates,
                                             probe_radius=probe_radius)

    def search(self, query, limit: Optional[int] = None, threshold: Optional[float] = None,
               probe_radius: int = 0) -> List[SearchResult]:
        """
        Approximate nearest neighbours of ``query``.

        LSH candidates are scored with the store metric, sorted by score
        (ties by ascending id) and truncated to ``limit``.

        Args:
            query: Query embedding
            limit: Maximum results (store ``max_results`` when omitted)
            threshold: Minimum score (store ``similarity_threshold`` when omitted)
            probe_radius: Multi-probe radius passed to the index

        Returns:
            Ordered SearchResult list
        """
        vector = as_vector(query, self.dimension)
        limit = self.max_results if limit is None else limit
        threshold = self.similarity_threshold if threshold is None else threshold
        if limit <= 0:
            return []

        with self._lock.read_lock():
            candidates = self._index.search_candidates(vector, probe_radius=probe_radius)
            results = self._score(vector, candidates, threshold)[:limit]
            self._touch(r.id for r in results)
        return results

    def search_exact(self, query, limit: Optional[int] = None,
                     threshold: Optional[float] = None) -> List[SearchResult]:
        """Brute-force scan over every entry; used to measure LSH recall."""
        vector = as_vector(query, self.dimension)
        limit = self.max_results if limit is None else limit
        threshold = self.similarity_threshold if threshold is None else threshold
        if limit <= 0:
            return []
        with self._lock.read_lock():
            return self._score(vector, list(self._records), threshold)[:limit]

    # ----------------------------
    # Quantization
    # ----------------------------

    def train_codebook(self, num_subvectors: Optional[int] = None,
                       num_centroids: Optional[int] = None,
                       sample: Optional[Sequence[Sequence[float]]] = None,
                       iterations: Optional[int] = None,
                       reencode: bool = False) -> ProductQuantizationCodebook:
        """
        Train a product-quantization codebook and make it the active one.

        Trains on ``sample`` or, by default, on every stored embedding.
        Entries held raw while waiting for a codebook are encoded with it;
        entries already encoded against an older codebook keep referencing
        that codebook unless ``reencode`` is set.
        """
        num_subvectors = num_subvectors or self.quantization_config.num_subvectors
        num_centroids = num_centroids or self.quantization_config.num_centroids
        iterations = iterations or self.quantization_config.iterations
        log_operation(logger, "train_codebook", num_subvectors=num_subvectors,
                      num_centroids=num_centroids, reencode=reencode)

        with self._lock.write_lock():
            if sample is None:
                training = [self._decode(r) for _, r in sorted(self._records.items())]
            else:
                training = [as_vector(v, self.dimension) for v in sample]
            codebook = self._registry.train(training, num_subvectors, num_centroids,
                                            iterations=iterations)
            self._active_codebook = codebook.codebook_id

            if self.storage_mode is StorageMode.PRODUCT:
                for record in self._records.values():
                    pending = record.mode is StorageMode.RAW
                    stale = record.mode is StorageMode.PRODUCT and reencode
                    if pending or stale:
                        self._reencode(record, StorageMode.PRODUCT)
            self._release_unused_codebooks()
            self.last_updated = utcnow()
        return codebook

    def _reencode(self, record: StoredRecord, mode: StorageMode) -> None:
        vector = self._decode(record)
        self._detach(record)
        record.vector = self._encode(vector, mode)
        self._attach(record)
        if record.mode is StorageMode.RAW:
            # Raw entries stay indexed by the embedding they hold
            self._index.insert(record.id, record.vector.raw)

    def convert_storage(self, mode: Union[str, StorageMode]) -> int:
        """
        Re-encode every entry into ``mode`` and make it the store's mode.

        Converting to ``product`` without a codebook trains one first.

        Returns:
            Number of entries re-encoded
        """
        mode = StorageMode(mode)
        log_operation(logger, "convert_storage", mode=mode.value)
        if mode is StorageMode.PRODUCT and \
                self.dimension % self.quantization_config.num_subvectors != 0:
            raise ConfigurationError(
                f"dimension {self.dimension} is not divisible by "
                f"num_subvectors {self.quantization_config.num_subvectors}"
            )
        with self._lock.write_lock():
            changed = sum(1 for record in self._records.values() if record.mode is not mode)
            self.storage_mode = mode
            if mode is StorageMode.PRODUCT and self._active_codebook is None and self._records:
                self.train_codebook()
            for record in self._records.values():
                if record.mode is not mode:
                    self._reencode(record, mode)
            self._release_unused_codebooks()
            self.last_updated = utcnow()
        logger.info("Converted %d entries to %s storage", changed, mode.value)
        return changed

    def demote(self, item_id: str) -> bool:
        """
        Move a raw entry to scalar quantization.

        Returns:
            False when the entry is already quantized

        Raises:
            NotFound: unknown id
        """
        with self._lock.write_lock():
            record = self._require(item_id)
            if record.mode is not StorageMode.RAW:
                return False
            self._reencode(record, StorageMode.SCALAR)
        logger.debug("Demoted %s to scalar storage", item_id, extra={"entry_id": item_id})
        return True

    # ----------------------------
    # Stats
    # ----------------------------

    def _average_similarity(self) -> float:
        """Mean pairwise similarity over the first AVERAGE_SIMILARITY_SAMPLE entries by id."""
        sample = [record for _, record in sorted(self._records.items())][:AVERAGE_SIMILARITY_SAMPLE]
        if len(sample) < 2:
            return 0.0
        matrix = np.stack([self._decode(record) for record in sample])
        sims = self.metric.pairwise(matrix)
        upper = np.triu_indices(len(sample), k=1)
        return float(np.mean(sims[upper]))

    def stats(self) -> VectorDBStats:
        with self._lock.read_lock():
            records = list(self._records.values())
            files = set()
            by_language: Counter = Counter()
            by_code_type: Counter = Counter()
            by_mode: Counter = Counter()
            for record in records:
                file_path = metadata_field(record.metadata, "file_path")
                if file_path:
                    files.add(file_path)
                language = metadata_field(record.metadata, "language")
                if language:
                    by_language[str(language)] += 1
                code_type = metadata_field(record.metadata, "code_type")
                if code_type is not None:
                    if isinstance(record.metadata, CodeMetadata):
                        code_type = code_type.value
                    by_code_type[str(code_type)] += 1
                by_mode[record.mode.value] += 1

            return VectorDBStats(
                entry_count=len(records),
                total_files=len(files),
                dimension=self.dimension,
                storage_mode=self.storage_mode.value,
                index_size_estimate_bytes=self._index.memory_estimate_bytes(),
                memory_bytes=sum(r.footprint_bytes() for r in records),
                memory_pressure_ratio=0.0,
                by_language=dict(by_language),
                by_code_type=dict(by_code_type),
                by_storage_mode=dict(by_mode),
                codebooks=len(self._registry),
                lsh=self._index.stats(),
                created_at=self.created_at,
                last_updated=self.last_updated,
                average_similarity=self._average_similarity(),
            )

    # ----------------------------
    # Persistence
    # ----------------------------

    def snapshot(self) -> persistence.StoreSnapshot:
        with self._lock.read_lock():
            return persistence.StoreSnapshot(
                dimension=self.dimension,
                storage_mode=self.storage_mode,
                metric=self.metric.name,
                similarity_threshold=self.similarity_threshold,
                max_results=self.max_results,
                strict_consistency=self.strict,
                lsh_config=self._index.config,
                records=[record for _, record in sorted(self._records.items())],
                codebooks=[self._registry.get(cid) for cid in self._registry.ids()],
                active_codebook=self._active_codebook,
                created_at=self.created_at,
                last_updated=self.last_updated,
                index=self._index,
            )

    def save(self, path: Union[str, Path]) -> Path:
        """Atomically write the store to ``path`` (gzip when it ends in .gz)."""
        with self._lock.read_lock():
            return persistence.save_snapshot(self.snapshot(), path)

    def _adopt(self, snapshot: persistence.StoreSnapshot) -> None:
        self.dimension = snapshot.dimension
        self.storage_mode = snapshot.storage_mode
        self.metric = get_metric(snapshot.metric)
        self.similarity_threshold = snapshot.similarity_threshold
        self.max_results = snapshot.max_results
        self.strict = snapshot.strict_consistency
        self._index = snapshot.index  # type: ignore[assignment]
        self._registry = CodebookRegistry()
        for codebook in snapshot.codebooks:
            self._registry.register(codebook)
        self._records = {record.id: record for record in snapshot.records}
        for record in snapshot.records:
            self._attach(record)
        self._active_codebook = snapshot.active_codebook
        self.created_at = snapshot.created_at
        self.last_updated = snapshot.last_updated

    @classmethod
    def load(cls, path: Union[str, Path],
             quantization_config: Optional[QuantizationConfig] = None) -> "VectorStore":
        """
        Load a store saved with ``save``.

        Raises:
            FileNotFoundError: ``path`` does not exist
            CorruptPersistence: the file cannot be loaded in full
        """
        lock = ReadWriteLock()
        snapshot = persistence.load_snapshot(path, lock=lock)
        store = cls(
            dimension=snapshot.dimension,
            lsh_config=snapshot.lsh_config,
            metric=snapshot.metric,
            quantization_config=quantization_config,
            lock=lock,
        )
        store._adopt(snapshot)
        return store

    def reload(self, path: Union[str, Path]) -> None:
        """Replace this store's contents with the file at ``path``."""
        snapshot = persistence.load_snapshot(path, lock=self._lock)
        with self._lock.write_lock():
            self._adopt(snapshot)

    def __repr__(self) -> str:
        return (f"VectorStore(dimension={self.dimension}, entries={len(self._records)}, "
                f"mode={self.storage_mode.value}, metric={self.metric.name})")
