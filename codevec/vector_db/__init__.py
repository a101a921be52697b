"""
Vector database for semantic code search.

Stores code embeddings, retrieves candidates through a random-hyperplane
LSH index and re-scores them exactly or from quantized codes.
"""

from .types import (
    CodeMetadata,
    CodeType,
    LSHStats,
    SearchResult,
    StorageMode,
    VectorDBStats,
    VectorEntry,
)
from .similarity import (
    CosineSimilarity,
    DotProductSimilarity,
    EuclideanDistance,
    JaccardSimilarity,
    ManhattanDistance,
    SimilarityMetric,
    cosine_similarity,
    get_metric,
    quantized_cosine_similarity,
)
from .quantization import (
    CodebookRegistry,
    ProductQuantizationCodebook,
    ProductQuantizedVector,
    QuantizedVector,
    ScalarQuantizer,
    train_codebook,
)
from .lsh_index import LSHIndex
from .rwlock import ReadWriteLock
from .vector_store import VectorStore
from .bounded_store import BoundedVectorStore, EvictionPolicy
from .persistence import (
    BackupInfo,
    cleanup_old_backups,
    create_backup,
    export_store,
    list_backups,
)
from .providers import (
    EmbeddingProvider,
    HashingEmbeddingProvider,
    RerankerProvider,
    TokenOverlapReranker,
)
from .semantic_search import EnhancedSearchResult, SearchQuery, SemanticSearchPipeline

__all__ = [
    # Data model
    'CodeMetadata',
    'CodeType',
    'LSHStats',
    'SearchResult',
    'StorageMode',
    'VectorDBStats',
    'VectorEntry',
    # Similarity
    'SimilarityMetric',
    'CosineSimilarity',
    'DotProductSimilarity',
    'EuclideanDistance',
    'ManhattanDistance',
    'JaccardSimilarity',
    'cosine_similarity',
    'quantized_cosine_similarity',
    'get_metric',
    # Quantization
    'QuantizedVector',
    'ScalarQuantizer',
    'ProductQuantizedVector',
    'ProductQuantizationCodebook',
    'CodebookRegistry',
    'train_codebook',
    # Storage
    'LSHIndex',
    'ReadWriteLock',
    'VectorStore',
    'BoundedVectorStore',
    'EvictionPolicy',
    # Backups and export
    'BackupInfo',
    'create_backup',
    'list_backups',
    'cleanup_old_backups',
    'export_store',
    # Search
    'EmbeddingProvider',
    'RerankerProvider',
    'HashingEmbeddingProvider',
    'TokenOverlapReranker',
    'SemanticSearchPipeline',
    'SearchQuery',
    'EnhancedSearchResult',
]
