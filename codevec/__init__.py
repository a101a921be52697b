"""codevec - Vector storage with LSH retrieval and quantization for semantic code search."""

__version__ = "0.1.0"

from .config import CodevecConfig
from .errors import (
    CapacityExceeded,
    CodevecError,
    ConfigurationError,
    CorruptPersistence,
    DimensionMismatch,
    NotFound,
)
from .vector_db import BoundedVectorStore, SemanticSearchPipeline, VectorEntry, VectorStore

__all__ = [
    "CodevecConfig",
    "CodevecError",
    "ConfigurationError",
    "DimensionMismatch",
    "CapacityExceeded",
    "NotFound",
    "CorruptPersistence",
    "VectorStore",
    "BoundedVectorStore",
    "SemanticSearchPipeline",
    "VectorEntry",
    "__version__",
]
