"""
Embedding and reranker provider interfaces.

The search pipeline talks to providers only through these protocols.
Two deterministic, dependency-free providers are included for offline use
and tests: feature-hashing embeddings and token-overlap reranking.
"""

import hashlib
import re
from typing import List, Protocol, Sequence, Set, Tuple, runtime_checkable

import numpy as np

from ..errors import ConfigurationError


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into fixed-length float vectors."""

    dimension: int

    def embed(self, text: str) -> np.ndarray:
        """
        Embed one text.

        Raises:
            ProviderUnavailable: backend cannot be reached
            ProviderTimeout: backend did not answer in time
        """
        ...

    def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        ...


@runtime_checkable
class RerankerProvider(Protocol):
    """Scores (id, text) candidates against a query; higher is better."""

    def rerank(self, query: str, candidates: Sequence[Tuple[str, str]]) -> List[Tuple[str, float]]:
        ...


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_NON_WORD = re.compile(r"[^A-Za-z0-9]+")


def tokenize_identifiers(text: str) -> List[str]:
    """
    Split text into lower-case identifier parts.

    ``parseHTTPResponse_v2`` -> ``["parse", "http", "response", "v2"]``
    """
    tokens = []
    for word in _NON_WORD.split(text):
        if not word:
            continue
        for part in _CAMEL_BOUNDARY.split(word):
            if part:
                tokens.append(part.lower())
    return tokens


class HashingEmbeddingProvider:
    """
    Signed feature hashing of identifier tokens into ``dimension`` slots.

    Deterministic across processes; the output is L2-normalised (all zeros
    for text without tokens).
    """

    def __init__(self, dimension: int = 768):
        if dimension <= 0:
            raise ConfigurationError(f"dimension must be > 0, got {dimension}")
        self.dimension = dimension

    def _slot(self, token: str) -> Tuple[int, float]:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:8], "little") % self.dimension
        sign = 1.0 if digest[8] & 1 else -1.0
        return index, sign

    def embed(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in tokenize_identifiers(text):
            index, sign = self._slot(token)
            vector[index] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector

    def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [self.embed(text) for text in texts]


class TokenOverlapReranker:
    """Jaccard overlap between query and candidate identifier tokens."""

    @staticmethod
    def _tokens(text: str) -> Set[str]:
        return set(tokenize_identifiers(text))

    def rerank(self, query: str, candidates: Sequence[Tuple[str, str]]) -> List[Tuple[str, float]]:
        query_tokens = self._tokens(query)
        scored = []
        for item_id, text in candidates:
            doc_tokens = self._tokens(text)
            union = query_tokens | doc_tokens
            score = len(query_tokens & doc_tokens) / len(union) if union else 0.0
            scored.append((item_id, float(score)))
        scored.sort(key=lambda pair: (-pair[1], pair[0]))
        return scored
