"""
Error types for the vector storage engine.

Every error raised by codevec derives from CodevecError so callers can
catch the whole family, while the concrete classes let them tell a bad
configuration apart from a full store or a broken provider.
"""

from typing import Optional, Any, Dict


class CodevecError(Exception):
    """
    Base exception for all codevec errors.

    Carries a structured ``details`` mapping alongside the message so errors
    can be logged or reported without string parsing.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize the error.

        Args:
            message: Error message
            details: Optional detailed error context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(CodevecError, ValueError):
    """Raised for invalid parameters: codebook training, LSH shape, config files."""


class DimensionMismatch(CodevecError, ValueError):
    """
    Raised when a vector's length differs from the store dimensionality.
    """

    def __init__(self, expected: int, actual: int,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Vector dimension mismatch: expected {expected}, got {actual}",
            details,
        )
        self.expected = expected
        self.actual = actual
        self.details.update({'expected': expected, 'actual': actual})


class InvalidVector(CodevecError, ValueError):
    """Raised for vectors that are not 1-D or contain NaN/inf components."""


class CapacityExceeded(CodevecError):
    """
    Raised when a bounded store cannot admit an entry even after eviction.

    ``permanent`` is True when the entry alone is larger than the whole
    budget, so retrying after an explicit eviction can never succeed.
    """

    def __init__(self, message: str,
                 required_bytes: int = 0,
                 available_bytes: int = 0,
                 permanent: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        """
        Initialize capacity error.

        Args:
            message: Error message
            required_bytes: Footprint of the rejected entry
            available_bytes: Budget left after eviction ran
            permanent: Whether the entry can never fit in this store
            details: Additional error context
        """
        super().__init__(message, details)
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        self.permanent = permanent

        self.details.update({
            'required_bytes': required_bytes,
            'available_bytes': available_bytes,
            'permanent': permanent,
        })


class NotFound(CodevecError, KeyError):
    """Raised for operations on an unknown id (entry or codebook)."""

    def __init__(self, key: str, kind: str = 'entry',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Unknown {kind} id: {key!r}", details)
        self.key = key
        self.kind = kind
        self.details.update({'key': key, 'kind': kind})

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.message


class CorruptPersistence(CodevecError):
    """Raised when a persisted store cannot be loaded in full."""

    def __init__(self, message: str, path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.path = path
        self.details.update({'path': path})


class ProviderError(CodevecError):
    """
    Raised when an embedding or reranker provider fails.

    Never generated by the engine itself, only propagated from providers.
    """

    def __init__(self, message: str, provider: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.provider = provider
        self.details.update({'provider': provider})


class ProviderUnavailable(ProviderError):
    """The provider cannot be reached or its model is not loaded."""


class ProviderTimeout(ProviderError):
    """The provider did not answer in time."""


class SearchTimeout(CodevecError):
    """A deadline-bounded search did not finish; its result was discarded."""


class IndexInconsistency(CodevecError, AssertionError):
    """
    The LSH index and the backing map disagree on membership.

    This is a programming defect rather than a caller error.
    """

    def __init__(self, message: str, problems: Optional[list] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.problems = problems or []
        self.details.update({'problems': self.problems})


def is_retryable(error: Exception) -> bool:
    """Check whether a caller may reasonably retry the failed operation."""
    if isinstance(error, CapacityExceeded):
        return not error.permanent
    return isinstance(error, (ProviderUnavailable, ProviderTimeout, SearchTimeout))


def is_capacity_error(error: Exception) -> bool:
    """Check if error is a bounded-store admission failure."""
    return isinstance(error, CapacityExceeded)
