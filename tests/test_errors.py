"""
Tests for the error hierarchy.
"""

import pytest

from codevec.errors import (
    CapacityExceeded,
    CodevecError,
    ConfigurationError,
    CorruptPersistence,
    DimensionMismatch,
    IndexInconsistency,
    InvalidVector,
    NotFound,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    SearchTimeout,
    is_capacity_error,
    is_retryable,
)


class TestHierarchy:

    @pytest.mark.parametrize("error", [
        ConfigurationError("bad"),
        DimensionMismatch(3, 4),
        InvalidVector("nan"),
        CapacityExceeded("full"),
        NotFound("x"),
        CorruptPersistence("broken"),
        ProviderError("down"),
        SearchTimeout("slow"),
        IndexInconsistency("drift"),
    ])
    def test_all_derive_from_base(self, error):
        assert isinstance(error, CodevecError)
        assert error.message

    def test_builtin_bases(self):
        assert isinstance(DimensionMismatch(1, 2), ValueError)
        assert isinstance(ConfigurationError("x"), ValueError)
        assert isinstance(NotFound("x"), KeyError)

    def test_provider_subclasses(self):
        assert issubclass(ProviderUnavailable, ProviderError)
        assert issubclass(ProviderTimeout, ProviderError)


class TestDetails:

    def test_dimension_mismatch(self):
        error = DimensionMismatch(768, 5)
        assert error.expected == 768
        assert error.actual == 5
        assert "768" in str(error)
        assert error.details == {"expected": 768, "actual": 5}

    def test_not_found_str_is_message(self):
        error = NotFound("abc", kind="codebook")
        assert str(error) == "Unknown codebook id: 'abc'"
        assert error.details["kind"] == "codebook"

    def test_capacity_details(self):
        error = CapacityExceeded("full", required_bytes=10, available_bytes=2, permanent=True)
        assert error.details == {"required_bytes": 10, "available_bytes": 2, "permanent": True}

    def test_corrupt_persistence_path(self):
        assert CorruptPersistence("x", path="/tmp/s.json").path == "/tmp/s.json"

    def test_index_inconsistency_problems(self):
        error = IndexInconsistency("drift", problems=["a", "b"])
        assert error.problems == ["a", "b"]


class TestClassification:

    def test_retryable(self):
        assert is_retryable(CapacityExceeded("full", permanent=False))
        assert not is_retryable(CapacityExceeded("never", permanent=True))
        assert is_retryable(ProviderTimeout("slow"))
        assert is_retryable(ProviderUnavailable("down"))
        assert is_retryable(SearchTimeout("slow"))
        assert not is_retryable(ProviderError("bad response"))
        assert not is_retryable(DimensionMismatch(1, 2))

    def test_capacity_error(self):
        assert is_capacity_error(CapacityExceeded("full"))
        assert not is_capacity_error(NotFound("x"))
