"""
Data model for the vector store: entries, code metadata, results and stats.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import numpy as np

from ..errors import DimensionMismatch, InvalidVector


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageMode(Enum):
    """How an entry's embedding is held in memory."""
    RAW = "raw"
    SCALAR = "scalar"
    PRODUCT = "product"


class CodeType(Enum):
    """Kinds of code fragment an embedding can describe."""
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    COMPONENT = "component"
    SERVICE = "service"
    MODULE = "module"
    TEST = "test"
    COMMENT = "comment"
    IMPORT = "import"
    CONFIG = "config"


@dataclass
class CodeMetadata:
    """Source location and descriptive data for an embedded code fragment."""
    file_path: str
    function_name: Optional[str] = None
    line_start: int = 0
    line_end: int = 0
    code_type: CodeType = CodeType.FUNCTION
    language: str = "unknown"
    complexity: float = 0.0
    tokens: List[str] = field(default_factory=list)
    hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["code_type"] = self.code_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeMetadata":
        return cls(
            file_path=data["file_path"],
            function_name=data.get("function_name"),
            line_start=int(data.get("line_start", 0)),
            line_end=int(data.get("line_end", 0)),
            code_type=CodeType(data.get("code_type", CodeType.FUNCTION.value)),
            language=data.get("language", "unknown"),
            complexity=float(data.get("complexity", 0.0)),
            tokens=list(data.get("tokens", [])),
            hash=data.get("hash", ""),
        )


Metadata = Union[CodeMetadata, Dict[str, Any]]


def metadata_field(metadata: Optional[Metadata], name: str, default: Any = None) -> Any:
    """Read a field from either metadata flavour."""
    if metadata is None:
        return default
    if isinstance(metadata, CodeMetadata):
        return getattr(metadata, name, default)
    return metadata.get(name, default)


def as_vector(values: Any, dimension: Optional[int] = None) -> np.ndarray:
    """
    Coerce ``values`` to a contiguous 1-D float32 array.

    Raises:
        InvalidVector: input is not 1-D or has NaN/inf components
        DimensionMismatch: ``dimension`` given and the length differs
    """
    try:
        vec = np.ascontiguousarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidVector(f"Cannot convert to float32 vector: {e}") from e
    if vec.ndim != 1:
        raise InvalidVector(f"Expected a 1-D vector, got shape {vec.shape}")
    if dimension is not None and vec.shape[0] != dimension:
        raise DimensionMismatch(dimension, int(vec.shape[0]))
    if not np.all(np.isfinite(vec)):
        raise InvalidVector("Vector contains NaN or infinite components")
    return vec


@dataclass
class VectorEntry:
    """One stored item: id, embedding and opaque metadata."""
    id: str
    embedding: np.ndarray
    metadata: Metadata = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed: Optional[datetime] = None
    access_count: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise InvalidVector("VectorEntry.id must be a non-empty string")
        self.embedding = as_vector(self.embedding)

    @property
    def dimension(self) -> int:
        return int(self.embedding.shape[0])

    @property
    def file_path(self) -> Optional[str]:
        return metadata_field(self.metadata, "file_path")


@dataclass
class SearchResult:
    """A scored hit returned by VectorStore.search."""
    id: str
    score: float
    distance: float
    metadata: Metadata
    entry: Optional[VectorEntry] = None

    def as_tuple(self):
        return (self.id, self.score, self.metadata)


@dataclass
class LSHStats:
    """Bucket statistics for an LSH index."""
    total_vectors: int
    num_tables: int
    num_buckets: int
    non_empty_buckets: int
    average_bucket_size: float
    median_bucket_size: int
    dimension: int
    hash_bits: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class VectorDBStats:
    """Monitoring snapshot returned by VectorStore.stats()."""
    entry_count: int
    total_files: int
    dimension: int
    storage_mode: str
    index_size_estimate_bytes: int
    memory_bytes: int
    memory_pressure_ratio: float
    by_language: Dict[str, int]
    by_code_type: Dict[str, int]
    by_storage_mode: Dict[str, int]
    codebooks: int
    lsh: LSHStats
    created_at: datetime
    last_updated: datetime
    average_similarity: float = 0.0
    max_memory_bytes: Optional[int] = None
    evictions: int = 0
    demotions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["last_updated"] = self.last_updated.isoformat()
        return data
