"""
Tests for the random-hyperplane LSH index.
"""

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st

from codevec.config import LSHConfig
from codevec.errors import ConfigurationError, DimensionMismatch, InvalidVector
from codevec.vector_db.lsh_index import LSHIndex
from codevec.vector_db.rwlock import ReadWriteLock


class TestHyperplanes:
    """Test hyperplane generation and signatures."""

    def test_same_seed_same_signatures(self, lsh_config, rng):
        a = LSHIndex(16, lsh_config)
        b = LSHIndex(16, LSHConfig(num_tables=8, hash_bits=4, seed=42))
        vector = rng.standard_normal(16)

        np.testing.assert_array_equal(a.hyperplanes, b.hyperplanes)
        assert a.signature(vector) == b.signature(vector)

    def test_different_seed_differs(self, lsh_config):
        a = LSHIndex(16, lsh_config)
        b = LSHIndex(16, LSHConfig(num_tables=8, hash_bits=4, seed=7))
        assert not np.array_equal(a.hyperplanes, b.hyperplanes)

    def test_hyperplanes_are_unit_and_frozen(self, lsh_config):
        index = LSHIndex(16, lsh_config)
        assert index.hyperplanes.shape == (8, 4, 16)
        np.testing.assert_allclose(np.linalg.norm(index.hyperplanes, axis=2), 1.0, rtol=1e-5)
        with pytest.raises(ValueError):
            index.hyperplanes[0, 0, 0] = 0.0

    def test_signature_codes_in_range(self, lsh_config, rng):
        index = LSHIndex(16, lsh_config)
        codes = index.signature(rng.standard_normal(16))
        assert len(codes) == 8
        assert all(0 <= code < 16 for code in codes)

    def test_scaling_does_not_change_signature(self, lsh_config, rng):
        index = LSHIndex(16, lsh_config)
        vector = rng.standard_normal(16)
        assert index.signature(vector) == index.signature(vector * 3.5)

    def test_zero_vector_sets_every_bit(self, lsh_config):
        """Projections of zero are 0 >= 0, so every bit is set."""
        index = LSHIndex(16, lsh_config)
        assert index.signature(np.zeros(16)) == [15] * 8

    def test_wrong_dimension(self, lsh_config):
        index = LSHIndex(16, lsh_config)
        with pytest.raises(DimensionMismatch):
            index.signature([1.0, 2.0])

    def test_rejects_nan(self, lsh_config):
        index = LSHIndex(4, lsh_config)
        with pytest.raises(InvalidVector):
            index.signature([1.0, float("nan"), 0.0, 0.0])

    def test_bad_config(self):
        with pytest.raises(ConfigurationError):
            LSHIndex(16, LSHConfig(num_tables=0))
        with pytest.raises(ConfigurationError):
            LSHIndex(16, LSHConfig(hash_bits=65))
        with pytest.raises(ConfigurationError):
            LSHIndex(0)


class TestMembership:
    """Test insert, remove and candidate retrieval."""

    @pytest.fixture
    def index(self, lsh_config):
        return LSHIndex(16, lsh_config)

    def test_inserted_vector_is_its_own_candidate(self, index, rng):
        vectors = {f"v{i}": rng.standard_normal(16) for i in range(30)}
        for item_id, vector in vectors.items():
            index.insert(item_id, vector)

        for item_id, vector in vectors.items():
            assert item_id in index.search_candidates(vector)

    def test_insert_is_idempotent(self, index, rng):
        vector = rng.standard_normal(16)
        index.insert("a", vector)
        index.insert("a", vector)

        assert len(index) == 1
        assert index.verify() == []
        assert index.stats().average_bucket_size == 1.0

    def test_reinsert_moves_buckets(self, index):
        first = np.ones(16)
        second = -np.ones(16)
        index.insert("a", first)
        index.insert("a", second)

        assert index.codes_for("a") == index.signature(second)
        assert "a" not in index.search_candidates(first)
        assert index.verify() == []

    def test_removed_id_is_never_a_candidate(self, index, rng):
        vector = rng.standard_normal(16)
        index.insert("gone", vector)
        index.insert("kept", vector)

        assert index.remove("gone") is True
        candidates = index.search_candidates(vector, probe_radius=1)
        assert "gone" not in candidates
        assert "kept" in candidates
        assert "gone" not in index

    @given(ops=st.lists(st.tuples(st.sampled_from(["insert", "remove"]),
                                  st.integers(min_value=0, max_value=7),
                                  st.integers(min_value=0, max_value=2**32 - 1)),
                        max_size=40))
    @settings(max_examples=50, deadline=None)
    def test_membership_follows_inserts_and_removes(self, ops):
        index = LSHIndex(16, LSHConfig(num_tables=8, hash_bits=4, seed=42))
        expected = {}
        for op, key, seed in ops:
            item_id = f"v{key}"
            if op == "insert":
                expected[item_id] = np.random.default_rng(seed).standard_normal(16)
                index.insert(item_id, expected[item_id])
            else:
                assert index.remove(item_id) is (expected.pop(item_id, None) is not None)

        assert len(index) == len(expected)
        assert index.verify() == []
        for item_id, vector in expected.items():
            assert item_id in index
            assert index.codes_for(item_id) == index.signature(vector)
            assert item_id in index.search_candidates(vector)
        for key in range(8):
            if f"v{key}" not in expected:
                assert index.codes_for(f"v{key}") is None

    def test_remove_unknown(self, index):
        assert index.remove("missing") is False

    def test_empty_buckets_are_dropped(self, index, rng):
        index.insert("a", rng.standard_normal(16))
        index.remove("a")
        assert index.stats().non_empty_buckets == 0
        assert index.to_dict()["tables"] == [{}] * 8

    def test_max_candidates(self, index, rng):
        vector = rng.standard_normal(16)
        for i in range(10):
            index.insert(f"v{i}", vector)
        assert len(index.search_candidates(vector, max_candidates=3)) == 3

    def test_probe_radius_widens_candidates(self, index, rng):
        for i in range(200):
            index.insert(f"v{i}", rng.standard_normal(16))
        query = rng.standard_normal(16)

        exact = index.search_candidates(query)
        probed = index.search_candidates(query, probe_radius=1)
        assert exact <= probed
        assert len(probed) > len(exact)

    def test_probe_radius_validated(self, index, rng):
        with pytest.raises(ConfigurationError):
            index.search_candidates(rng.standard_normal(16), probe_radius=2)

    def test_similar_vectors_collide(self, rng):
        index = LSHIndex(64, LSHConfig(num_tables=16, hash_bits=8, seed=42))
        base = rng.standard_normal(64)
        index.insert("near", base + 0.01 * rng.standard_normal(64))
        assert "near" in index.search_candidates(base)

    def test_clear(self, index, rng):
        index.insert("a", rng.standard_normal(16))
        index.clear()
        assert len(index) == 0
        assert index.ids() == set()


class TestStatsAndPersistence:
    """Test statistics, verification and serialisation."""

    def test_stats(self, lsh_config, rng):
        index = LSHIndex(16, lsh_config)
        for i in range(5):
            index.insert(f"v{i}", rng.standard_normal(16))
        stats = index.stats()

        assert stats.total_vectors == 5
        assert stats.num_tables == 8
        assert stats.num_buckets == 8 * 16
        assert 1 <= stats.non_empty_buckets <= 40
        assert stats.average_bucket_size == pytest.approx(40 / stats.non_empty_buckets)
        assert stats.median_bucket_size >= 1
        assert stats.dimension == 16
        assert stats.hash_bits == 4

    def test_empty_stats(self, lsh_config):
        stats = LSHIndex(16, lsh_config).stats()
        assert stats.average_bucket_size == 0.0
        assert stats.median_bucket_size == 0

    def test_memory_estimate_grows(self, lsh_config, rng):
        index = LSHIndex(16, lsh_config)
        empty = index.memory_estimate_bytes()
        index.insert("a", rng.standard_normal(16))
        assert index.memory_estimate_bytes() > empty

    def test_round_trip(self, lsh_config, rng):
        index = LSHIndex(16, lsh_config)
        vectors = {f"v{i}": rng.standard_normal(16) for i in range(12)}
        for item_id, vector in vectors.items():
            index.insert(item_id, vector)

        restored = LSHIndex.from_dict(index.to_dict())
        assert restored.ids() == index.ids()
        assert restored.verify() == []
        for item_id, vector in vectors.items():
            assert restored.codes_for(item_id) == index.codes_for(item_id)
            assert restored.search_candidates(vector) == index.search_candidates(vector)

    def test_from_dict_rejects_wrong_table_count(self, lsh_config):
        data = LSHIndex(16, lsh_config).to_dict()
        data["tables"] = data["tables"][:3]
        with pytest.raises(ValueError):
            LSHIndex.from_dict(data)

    def test_from_dict_rejects_partial_membership(self, lsh_config, rng):
        index = LSHIndex(16, lsh_config)
        index.insert("a", rng.standard_normal(16))
        data = index.to_dict()
        data["tables"][0] = {}
        with pytest.raises(ValueError):
            LSHIndex.from_dict(data)

    def test_from_dict_rejects_out_of_range_code(self, lsh_config):
        data = LSHIndex(16, lsh_config).to_dict()
        data["tables"][0] = {"99": ["a"]}
        with pytest.raises(ValueError):
            LSHIndex.from_dict(data)

    def test_shared_lock(self, lsh_config):
        lock = ReadWriteLock()
        index = LSHIndex(16, lsh_config, lock=lock)
        assert index.lock is lock
