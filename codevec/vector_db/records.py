"""
In-memory representation of stored entries.

A record keeps the entry's metadata and bookkeeping alongside exactly one
encoding of its embedding: raw float32, scalar codes or product-quantization
assignments. The mode tag travels with the record into persistence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import numpy as np

from .quantization import (
    CodebookRegistry,
    ProductQuantizedVector,
    QuantizedVector,
    ScalarQuantizer,
    decode_array,
    encode_array,
)
from .types import CodeMetadata, Metadata, StorageMode, VectorEntry, utcnow

# Fixed bookkeeping cost charged per entry (timestamps, counters, dict slots)
ENTRY_OVERHEAD_BYTES = 64


@dataclass
class StoredVector:
    """One embedding in exactly one storage mode."""
    mode: StorageMode
    raw: Optional[np.ndarray] = None
    scalar: Optional[QuantizedVector] = None
    pq: Optional[ProductQuantizedVector] = None

    def __post_init__(self) -> None:
        payload = {StorageMode.RAW: self.raw, StorageMode.SCALAR: self.scalar,
                   StorageMode.PRODUCT: self.pq}
        if payload[self.mode] is None:
            raise ValueError(f"{self.mode.value} vector without a {self.mode.value} payload")

    def size_bytes(self) -> int:
        if self.mode is StorageMode.RAW:
            return int(self.raw.nbytes)  # type: ignore[union-attr]
        if self.mode is StorageMode.SCALAR:
            return self.scalar.size_bytes()  # type: ignore[union-attr]
        return self.pq.size_bytes()  # type: ignore[union-attr]

    @property
    def codebook_id(self) -> Optional[str]:
        return self.pq.codebook_id if self.pq is not None else None

    def to_dict(self) -> Dict[str, Any]:
        if self.mode is StorageMode.RAW:
            return {"mode": "raw", "embedding": encode_array(self.raw)}
        if self.mode is StorageMode.SCALAR:
            return {"mode": "scalar", "quantized": self.scalar.to_dict()}  # type: ignore[union-attr]
        return {"mode": "product", "pq": self.pq.to_dict()}  # type: ignore[union-attr]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], dimension: int) -> "StoredVector":
        mode = StorageMode(data["mode"])
        if mode is StorageMode.RAW:
            raw = decode_array(data["embedding"], np.float32, dimension)
            if not np.all(np.isfinite(raw)):
                raise ValueError("embedding contains NaN or infinite components")
            return cls(mode, raw=raw)
        if mode is StorageMode.SCALAR:
            return cls(mode, scalar=QuantizedVector.from_dict(data["quantized"], dimension))
        return cls(mode, pq=ProductQuantizedVector.from_dict(data["pq"]))


def metadata_to_dict(metadata: Metadata) -> Dict[str, Any]:
    if isinstance(metadata, CodeMetadata):
        return {"type": "code", "value": metadata.to_dict()}
    return {"type": "dict", "value": dict(metadata)}


def metadata_from_dict(data: Dict[str, Any]) -> Metadata:
    if data["type"] == "code":
        return CodeMetadata.from_dict(data["value"])
    if data["type"] == "dict":
        value = data["value"]
        if not isinstance(value, dict):
            raise ValueError("metadata value must be a mapping")
        return value
    raise ValueError(f"unknown metadata type {data['type']!r}")


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class StoredRecord:
    """A stored entry: id, encoded embedding, metadata and access bookkeeping."""
    id: str
    vector: StoredVector
    metadata: Metadata = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed: Optional[datetime] = None
    access_count: int = 0

    @property
    def mode(self) -> StorageMode:
        return self.vector.mode

    def footprint_bytes(self) -> int:
        """Bytes charged against a memory budget for this record."""
        return ENTRY_OVERHEAD_BYTES + len(self.id.encode("utf-8")) + self.vector.size_bytes()

    def recency(self) -> datetime:
        """Last access, or creation time for never-read entries."""
        return self.last_accessed or self.created_at

    def to_entry(self, embedding: np.ndarray) -> VectorEntry:
        return VectorEntry(
            id=self.id,
            embedding=embedding,
            metadata=self.metadata,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_accessed=self.last_accessed,
            access_count=self.access_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"id": self.id}
        data.update(self.vector.to_dict())
        data.update({
            "metadata": metadata_to_dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
            "access_count": self.access_count,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], dimension: int) -> "StoredRecord":
        item_id = data["id"]
        if not isinstance(item_id, str) or not item_id:
            raise ValueError("entry id must be a non-empty string")
        access_count = int(data.get("access_count", 0))
        if access_count < 0:
            raise ValueError(f"negative access_count for {item_id!r}")
        return cls(
            id=item_id,
            vector=StoredVector.from_dict(data, dimension),
            metadata=metadata_from_dict(data["metadata"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            last_accessed=_parse_time(data.get("last_accessed")),
            access_count=access_count,
        )


def decode_vector(stored: StoredVector, registry: CodebookRegistry) -> np.ndarray:
    """Float32 embedding for any storage mode (lossy for quantized modes)."""
    if stored.mode is StorageMode.RAW:
        return stored.raw.copy()  # type: ignore[union-attr]
    if stored.mode is StorageMode.SCALAR:
        return ScalarQuantizer.to_f32(stored.scalar)  # type: ignore[arg-type]
    pq = stored.pq
    return registry.get(pq.codebook_id).reconstruct(pq)  # type: ignore[union-attr]
