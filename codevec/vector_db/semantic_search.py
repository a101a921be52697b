"""
Semantic code search pipeline.

    query text -> embedding (cached) -> LSH candidates scored by the store
    -> metadata / similarity filters -> rerank top candidates
    -> combined score -> final results
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from ..config import SearchConfig
from ..errors import CodevecError, ProviderError, SearchTimeout
from ..performance.cache import EmbeddingCache
from .providers import EmbeddingProvider, RerankerProvider
from .types import CodeType, Metadata, SearchResult, as_vector, metadata_field
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class SearchQuery:
    """A text query with optional metadata filters."""
    text: str
    code_type: Optional[CodeType] = None
    language: Optional[str] = None
    file_context: Optional[str] = None
    max_results: Optional[int] = None


@dataclass
class EnhancedSearchResult:
    """A search hit with embedding, rerank and combined scores."""
    id: str
    metadata: Metadata
    embedding_similarity: float
    rerank_score: float
    combined_score: float
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "embedding_similarity": self.embedding_similarity,
            "rerank_score": self.rerank_score,
            "combined_score": self.combined_score,
            "confidence": self.confidence,
        }


@dataclass
class SemanticSearchStats:
    total_vectors: int
    queries: int
    embedding_cache_hit_rate: float
    average_candidates_per_query: float
    rerank_calls: int
    timeouts: int
    cache: Dict[str, Any] = field(default_factory=dict)


def combined_score(embedding_sim: float, rerank_score: float,
                   embedding_weight: float = 0.4, rerank_weight: float = 0.6) -> float:
    """Weighted blend of embedding similarity and rerank score."""
    return embedding_sim * embedding_weight + rerank_score * rerank_weight


def confidence_score(embedding_sim: float, rerank_score: float) -> float:
    """High when both signals agree and both are high."""
    agreement = 1.0 - abs(embedding_sim - rerank_score)
    base_quality = (embedding_sim + rerank_score) / 2.0
    return agreement * 0.3 + base_quality * 0.7


def document_text(metadata: Metadata) -> str:
    """Text handed to the reranker for one stored entry."""
    lines = []
    function_name = metadata_field(metadata, "function_name")
    if function_name:
        lines.append(f"Function: {function_name}")
    lines.append(f"File: {metadata_field(metadata, 'file_path', '')}")
    lines.append(f"Language: {metadata_field(metadata, 'language', 'unknown')}")
    code_type = metadata_field(metadata, "code_type")
    if isinstance(code_type, CodeType):
        code_type = code_type.value
    if code_type:
        lines.append(f"Type: {code_type}")
    tokens = metadata_field(metadata, "tokens") or []
    if tokens:
        lines.append("Context: " + " ".join(str(t) for t in tokens))
    return "\n".join(lines)


def _code_type_value(metadata: Metadata) -> Optional[str]:
    code_type = metadata_field(metadata, "code_type")
    if isinstance(code_type, CodeType):
        return code_type.value
    return str(code_type) if code_type is not None else None


class SemanticSearchPipeline:
    """
    Two-stage retrieval over a VectorStore.

    Args:
        store: Vector store holding the code embeddings
        embedding_provider: Embeds query text
        reranker_provider: Optional cross-scorer for the top candidates
        config: Candidate counts, thresholds, weights and cache sizes
    """

    def __init__(self, store: VectorStore, embedding_provider: EmbeddingProvider,
                 reranker_provider: Optional[RerankerProvider] = None,
                 config: Optional[SearchConfig] = None):
        self.store = store
        self.embedding_provider = embedding_provider
        self.reranker_provider = reranker_provider
        self.config = config or SearchConfig()
        self.config.validate()
        self._cache = EmbeddingCache(self.config.embedding_cache_size,
                                     self.config.embedding_cache_ttl)

        self._stats_lock = threading.Lock()
        self._queries = 0
        self._candidates = 0
        self._rerank_calls = 0
        self._timeouts = 0

    def update_config(self, config: SearchConfig) -> None:
        config.validate()
        self.config = config
        self._cache = EmbeddingCache(config.embedding_cache_size, config.embedding_cache_ttl)
        logger.info("Updated semantic search configuration")

    # ----------------------------
    # Stages
    # ----------------------------

    def _provider_name(self, provider: Any) -> str:
        return type(provider).__name__

    def _embed(self, text: str) -> np.ndarray:
        try:
            embedding = self.embedding_provider.embed(text)
        except CodevecError:
            raise
        except Exception as e:
            raise ProviderError(f"Embedding provider failed: {e}",
                                provider=self._provider_name(self.embedding_provider)) from e
        return as_vector(embedding, self.store.dimension)

    def embed_query(self, text: str) -> np.ndarray:
        """Query embedding, served from the cache when enabled."""
        if self.config.enable_caching:
            return self._cache.get_or_compute(text, self._embed)
        return self._embed(text)

    def retrieve_candidates(self, embedding: np.ndarray, query: SearchQuery) -> List[SearchResult]:
        """Store search followed by code-type, language and similarity filters."""
        candidates = self.store.search(embedding, limit=self.config.lsh_candidates)
        code_type = query.code_type.value if query.code_type is not None else None
        language = query.language.lower() if query.language else None

        kept = []
        for candidate in candidates:
            if code_type is not None and _code_type_value(candidate.metadata) != code_type:
                continue
            if language is not None and \
                    str(metadata_field(candidate.metadata, "language", "")).lower() != language:
                continue
            if candidate.score < self.config.min_similarity:
                continue
            kept.append(candidate)
        kept.sort(key=lambda c: (-c.score, c.id))
        return kept

    def rerank_candidates(self, text: str,
                          candidates: Sequence[SearchResult]) -> List[EnhancedSearchResult]:
        """
        Rerank the top ``rerank_limit`` candidates and blend the scores.

        Without a reranker the embedding similarity stands in for the
        rerank score.
        """
        if self.reranker_provider is not None:
            top = list(candidates[:self.config.rerank_limit])
        else:
            top = list(candidates)
        if not top:
            return []

        if self.reranker_provider is None:
            rerank_scores = {c.id: c.score for c in top}
        else:
            documents = [(c.id, document_text(c.metadata)) for c in top]
            try:
                ranked = self.reranker_provider.rerank(text, documents)
            except CodevecError:
                raise
            except Exception as e:
                raise ProviderError(f"Reranker provider failed: {e}",
                                    provider=self._provider_name(self.reranker_provider)) from e
            with self._stats_lock:
                self._rerank_calls += 1
            rerank_scores = {str(item_id): float(score) for item_id, score in ranked}

        results = []
        for candidate in top:
            if candidate.id not in rerank_scores:
                continue
            rerank = rerank_scores[candidate.id]
            results.append(EnhancedSearchResult(
                id=candidate.id,
                metadata=candidate.metadata,
                embedding_similarity=candidate.score,
                rerank_score=rerank,
                combined_score=combined_score(candidate.score, rerank,
                                              self.config.embedding_weight,
                                              self.config.rerank_weight),
                confidence=confidence_score(candidate.score, rerank),
            ))
        results.sort(key=lambda r: (-r.combined_score, r.id))
        return results

    def finalize_results(self, results: List[EnhancedSearchResult],
                         query: SearchQuery) -> List[EnhancedSearchResult]:
        if self.reranker_provider is not None:
            results = [r for r in results if r.rerank_score >= self.config.rerank_threshold]
        max_results = query.max_results if query.max_results is not None else self.config.final_results
        results = results[:max(0, max_results)]
        if results:
            logger.debug(
                "Result quality - avg combined %.3f, avg confidence %.3f",
                sum(r.combined_score for r in results) / len(results),
                sum(r.confidence for r in results) / len(results),
            )
        return results

    # ----------------------------
    # Entry points
    # ----------------------------

    def _run(self, query: SearchQuery) -> List[EnhancedSearchResult]:
        logger.info("Starting semantic search for %r", query.text[:80])
        embedding = self.embed_query(query.text)
        candidates = self.retrieve_candidates(embedding, query)
        with self._stats_lock:
            self._queries += 1
            self._candidates += len(candidates)
        if not candidates:
            logger.warning("No candidates found for query %r", query.text[:80])
            return []
        reranked = self.rerank_candidates(query.text, candidates)
        results = self.finalize_results(reranked, query)
        logger.info("Returning %d results", len(results))
        return results

    def search(self, query: Union[str, SearchQuery],
               timeout: Optional[float] = None) -> List[EnhancedSearchResult]:
        """
        Run the full pipeline.

        Args:
            query: Query text or SearchQuery with filters
            timeout: Seconds to wait; the search runs on a worker thread and
                its result is discarded once the deadline passes

        Raises:
            ProviderError: embedding or reranking failed
            SearchTimeout: ``timeout`` elapsed first
        """
        if isinstance(query, str):
            query = SearchQuery(text=query)
        if timeout is None:
            return self._run(query)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codevec-search")
        try:
            future = executor.submit(self._run, query)
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            with self._stats_lock:
                self._timeouts += 1
            logger.error("Search timed out after %.2fs for %r", timeout, query.text[:80])
            raise SearchTimeout(f"Search did not finish within {timeout}s",
                                details={"timeout": timeout}) from None
        finally:
            executor.shutdown(wait=False)

    def search_similar_code(self, code: str, language: str) -> List[EnhancedSearchResult]:
        return self.search(SearchQuery(text=code, language=language,
                                       max_results=self.config.final_results))

    def search_similar_functions(self, signature: str, body: str) -> List[EnhancedSearchResult]:
        return self.search(SearchQuery(text=f"{signature}\n{body}", code_type=CodeType.FUNCTION,
                                       max_results=self.config.final_results))

    def search_similar_components(self, component_code: str,
                                  framework: str) -> List[EnhancedSearchResult]:
        return self.search(SearchQuery(text=f"{framework} component\n{component_code}",
                                       code_type=CodeType.COMPONENT,
                                       max_results=self.config.final_results))

    def stats(self) -> SemanticSearchStats:
        cache_stats = self._cache.get_stats()
        with self._stats_lock:
            queries = self._queries
            return SemanticSearchStats(
                total_vectors=len(self.store),
                queries=queries,
                embedding_cache_hit_rate=float(cache_stats["hit_rate"]),
                average_candidates_per_query=self._candidates / queries if queries else 0.0,
                rerank_calls=self._rerank_calls,
                timeouts=self._timeouts,
                cache=cache_stats,
            )
