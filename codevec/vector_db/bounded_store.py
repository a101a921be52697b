"""
Memory-bounded wrapper around VectorStore.

Each entry is charged its encoded size plus a fixed overhead. Inserts that
would overflow the budget first demote raw entries to scalar codes (when
enabled), then evict entries by policy; if the entry still cannot fit the
insert fails with CapacityExceeded and the budget is never exceeded.
"""

import logging
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Set, Union

from ..config import CodevecConfig
from ..errors import CapacityExceeded, ConfigurationError, NotFound
from .records import ENTRY_OVERHEAD_BYTES, StoredRecord
from .types import SearchResult, StorageMode, VectorDBStats, VectorEntry, as_vector
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

__all__ = ["BoundedVectorStore", "EvictionPolicy", "ENTRY_OVERHEAD_BYTES"]


class EvictionPolicy(Enum):
    """Which resident entry leaves first under memory pressure."""
    LRU = "lru"
    LFU = "lfu"


class BoundedVectorStore:
    """
    VectorStore with a hard memory budget.

    Residency per entry: raw -> scalar (demotion) -> evicted. Eviction goes
    through ``VectorStore.remove_vector`` so the LSH index stays in step.
    """

    def __init__(self, store: VectorStore, max_memory_bytes: int,
                 policy: Union[str, EvictionPolicy] = EvictionPolicy.LRU,
                 demote_before_evict: bool = False):
        if max_memory_bytes is None or max_memory_bytes <= 0:
            raise ConfigurationError(f"max_memory_bytes must be positive, got {max_memory_bytes}")
        self.store = store
        self.max_memory_bytes = int(max_memory_bytes)
        self.policy = EvictionPolicy(policy)
        self.demote_before_evict = demote_before_evict
        self.evictions = 0
        self.demotions = 0

        if self.current_memory_bytes > self.max_memory_bytes:
            self._shrink()

    @classmethod
    def from_config(cls, config: CodevecConfig) -> "BoundedVectorStore":
        if config.store.max_memory_bytes is None:
            raise ConfigurationError("store.max_memory_bytes must be set for a bounded store")
        return cls(
            VectorStore.from_config(config),
            config.store.max_memory_bytes,
            policy=config.store.eviction_policy,
            demote_before_evict=config.store.demote_before_evict,
        )

    @property
    def current_memory_bytes(self) -> int:
        return self.store.memory_bytes()

    @property
    def dimension(self) -> int:
        return self.store.dimension

    # ----------------------------
    # Victim selection
    # ----------------------------

    def _victim_order(self, exclude: Set[str]) -> List[StoredRecord]:
        records = [r for r in self.store.records() if r.id not in exclude]
        if self.policy is EvictionPolicy.LFU:
            records.sort(key=lambda r: (r.access_count, r.recency(), r.id))
        else:
            records.sort(key=lambda r: (r.recency(), r.id))
        return records

    def _demote_until(self, limit: int, exclude: Set[str]) -> None:
        for record in self._victim_order(exclude):
            if self.current_memory_bytes <= limit:
                return
            if record.mode is StorageMode.RAW and self.store.demote(record.id):
                self.demotions += 1

    def _evict_until(self, limit: int, exclude: Set[str]) -> List[str]:
        evicted = []
        for record in self._victim_order(exclude):
            if self.current_memory_bytes <= limit:
                break
            if self.store.remove_vector(record.id):
                evicted.append(record.id)
                self.evictions += 1
                logger.info("Evicted %s (%s policy)", record.id, self.policy.value,
                            extra={"entry_id": record.id, "operation": "evict"})
        return evicted

    def _make_room(self, required: int, replacing: Set[str]) -> None:
        """
        Free memory until ``required`` more bytes fit; raises CapacityExceeded.

        Entries in ``replacing`` are about to be overwritten: they are never
        victims and their current footprint counts as freed.
        """
        exclude = set(replacing)
        freed_by_replace = sum(self.store.footprint_bytes(item_id)
                               for item_id in exclude if self.store.contains(item_id))

        limit = self.max_memory_bytes - required + freed_by_replace
        if self.current_memory_bytes <= limit:
            return
        if self.demote_before_evict:
            self._demote_until(limit, exclude)
        self._evict_until(limit, exclude)

        if self.current_memory_bytes > limit:
            available = self.max_memory_bytes - self.current_memory_bytes + freed_by_replace
            raise CapacityExceeded(
                f"Cannot admit {required} bytes: only {available} available after eviction",
                required_bytes=required,
                available_bytes=available,
                permanent=False,
            )

    def _shrink(self) -> None:
        if self.demote_before_evict:
            self._demote_until(self.max_memory_bytes, set())
        self._evict_until(self.max_memory_bytes, set())

    # ----------------------------
    # Mutations
    # ----------------------------

    def _admit(self, entry: VectorEntry, update: bool) -> None:
        as_vector(entry.embedding, self.store.dimension)
        required = self.store.estimate_footprint(entry)
        with self.store.lock.write_lock():
            if update and not self.store.contains(entry.id):
                raise NotFound(entry.id)
            if required > self.max_memory_bytes:
                raise CapacityExceeded(
                    f"Entry {entry.id!r} needs {required} bytes, budget is {self.max_memory_bytes}",
                    required_bytes=required,
                    available_bytes=self.max_memory_bytes - self.current_memory_bytes,
                    permanent=True,
                )
            self._make_room(required, {entry.id})
            if update:
                self.store.update_vector(entry)
            else:
                self.store.add_vector(entry)

    def add_vector(self, entry: VectorEntry) -> None:
        """
        Insert ``entry``, making room first.

        Raises:
            DimensionMismatch: wrong embedding length
            CapacityExceeded: the entry cannot fit (``permanent`` if it never can)
        """
        self._admit(entry, update=False)

    def add_vectors(self, entries: Sequence[VectorEntry]) -> int:
        """
        Insert a batch, all or nothing.

        Room is made for the whole batch before any entry is stored, and
        entries of the batch are never chosen as victims. If the batch
        cannot fit, CapacityExceeded is raised and no entry of the batch is
        stored (entries already evicted while making room stay evicted).

        Returns:
            Number of entries inserted
        """
        ids = [entry.id for entry in entries]
        if len(set(ids)) != len(ids):
            raise ConfigurationError("Duplicate ids in batch")
        required = sum(self.store.estimate_footprint(entry) for entry in entries)
        with self.store.lock.write_lock():
            if required > self.max_memory_bytes:
                raise CapacityExceeded(
                    f"Batch of {len(entries)} entries needs {required} bytes, "
                    f"budget is {self.max_memory_bytes}",
                    required_bytes=required,
                    available_bytes=self.max_memory_bytes - self.current_memory_bytes,
                    permanent=True,
                )
            self._make_room(required, set(ids))
            return self.store.add_vectors(entries)

    def update_vector(self, entry: VectorEntry) -> None:
        self._admit(entry, update=True)

    def remove_vector(self, item_id: str) -> bool:
        return self.store.remove_vector(item_id)

    def evict(self, bytes_needed: int) -> List[str]:
        """
        Evict by policy until at least ``bytes_needed`` bytes are free.

        Returns:
            Evicted ids, in eviction order
        """
        with self.store.lock.write_lock():
            limit = max(0, self.max_memory_bytes - bytes_needed)
            return self._evict_until(limit, set())

    def set_max_memory(self, max_memory_bytes: int) -> None:
        """Change the budget, evicting immediately if it shrank."""
        if max_memory_bytes <= 0:
            raise ConfigurationError(f"max_memory_bytes must be positive, got {max_memory_bytes}")
        with self.store.lock.write_lock():
            self.max_memory_bytes = int(max_memory_bytes)
            self._shrink()
        logger.info("Memory budget set to %d bytes", max_memory_bytes)

    def clear(self) -> None:
        self.store.clear()

    # ----------------------------
    # Reads
    # ----------------------------

    def get(self, item_id: str) -> VectorEntry:
        return self.store.get(item_id)

    def get_or_none(self, item_id: str) -> Optional[VectorEntry]:
        return self.store.get_or_none(item_id)

    def contains(self, item_id: str) -> bool:
        return self.store.contains(item_id)

    def __contains__(self, item_id: str) -> bool:
        return self.store.contains(item_id)

    def __len__(self) -> int:
        return len(self.store)

    def ids(self) -> List[str]:
        return self.store.ids()

    def records(self) -> List[StoredRecord]:
        return self.store.records()

    def get_by_file(self, file_path: str) -> List[VectorEntry]:
        return self.store.get_by_file(file_path)

    def search(self, query, limit: Optional[int] = None,
               threshold: Optional[float] = None) -> List[SearchResult]:
        return self.store.search(query, limit=limit, threshold=threshold)

    def search_candidates(self, query) -> Set[str]:
        return self.store.search_candidates(query)

    def verify_consistency(self) -> List[str]:
        return self.store.verify_consistency()

    def memory_pressure_ratio(self) -> float:
        return self.current_memory_bytes / self.max_memory_bytes

    def stats(self) -> VectorDBStats:
        base = self.store.stats()
        return replace(
            base,
            memory_pressure_ratio=base.memory_bytes / self.max_memory_bytes,
            max_memory_bytes=self.max_memory_bytes,
            evictions=self.evictions,
            demotions=self.demotions,
        )

    def save(self, path: Union[str, Path]) -> Path:
        return self.store.save(path)

    def __repr__(self) -> str:
        return (f"BoundedVectorStore(entries={len(self.store)}, "
                f"memory={self.current_memory_bytes}/{self.max_memory_bytes}, "
                f"policy={self.policy.value})")
