"""
Tests for configuration loading, validation and environment overrides.
"""

import os

import pytest
import yaml

from codevec.config import (
    CodevecConfig,
    LSHConfig,
    QuantizationConfig,
    SearchConfig,
    StoreConfig,
    create_default_config_file,
)
from codevec.errors import ConfigurationError


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No CODEVEC_* variables, no config in cwd or home."""
    for name in list(os.environ):
        if name.startswith("CODEVEC_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


class TestDefaults:

    def test_defaults(self):
        config = CodevecConfig()
        assert config.store.dimension == 768
        assert config.store.storage_mode == "raw"
        assert config.store.similarity_threshold == -1.0
        assert config.lsh.num_tables == 16
        assert config.lsh.hash_bits == 10
        assert config.lsh.seed == 42
        assert config.quantization.num_centroids == 256
        assert config.search.embedding_weight == 0.4
        assert config.search.rerank_weight == 0.6
        assert config.search.rerank_limit == 20
        config.validate()


class TestValidation:

    @pytest.mark.parametrize("section,kwargs", [
        (LSHConfig, {"num_tables": 0}),
        (LSHConfig, {"hash_bits": 0}),
        (LSHConfig, {"seed": -1}),
        (QuantizationConfig, {"num_subvectors": 0}),
        (QuantizationConfig, {"num_centroids": 300}),
        (StoreConfig, {"dimension": -3}),
        (StoreConfig, {"storage_mode": "compressed"}),
        (StoreConfig, {"metric": "hamming"}),
        (StoreConfig, {"eviction_policy": "fifo"}),
        (StoreConfig, {"max_memory_bytes": 0}),
        (SearchConfig, {"final_results": 0}),
        (SearchConfig, {"embedding_weight": -0.1}),
        (SearchConfig, {"embedding_weight": 0.0, "rerank_weight": 0.0}),
    ])
    def test_invalid_values(self, section, kwargs):
        with pytest.raises(ConfigurationError):
            section(**kwargs).validate()

    def test_product_mode_needs_divisible_dimension(self):
        config = CodevecConfig()
        config.store.dimension = 100
        config.store.storage_mode = "product"
        with pytest.raises(ConfigurationError):
            config.validate()


class TestYaml:

    def test_round_trip(self, tmp_path):
        config = CodevecConfig()
        config.store.dimension = 256
        config.lsh.num_tables = 4
        config.search.final_results = 3
        path = tmp_path / "cfg" / "codevec.yml"
        config.save_to_file(path)

        loaded = CodevecConfig.load_from_file(path)
        assert loaded.to_dict() == config.to_dict()

    def test_partial_file_uses_defaults(self, tmp_path):
        path = tmp_path / "partial.yml"
        path.write_text("lsh:\n  num_tables: 4\n  unknown_key: 1\n")
        config = CodevecConfig.load_from_file(path)
        assert config.lsh.num_tables == 4
        assert config.lsh.hash_bits == 10
        assert config.store.dimension == 768

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert CodevecConfig.load_from_file(path).to_dict() == CodevecConfig().to_dict()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yml"
        path.write_text("store: [unclosed")
        with pytest.raises(ConfigurationError):
            CodevecConfig.load_from_file(path)

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError):
            CodevecConfig.load_from_file(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "bad_value.yml"
        path.write_text("store:\n  storage_mode: zip\n")
        with pytest.raises(ConfigurationError):
            CodevecConfig.load_from_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CodevecConfig.load_from_file(tmp_path / "nope.yml")

    def test_create_default_config_file(self, tmp_path):
        path = create_default_config_file(tmp_path / ".codevec.yml")
        data = yaml.safe_load(path.read_text())
        assert data["store"]["dimension"] == 768
        assert data["lsh"]["seed"] == 42


class TestEnvironment:

    def test_overrides(self, clean_env, monkeypatch):
        monkeypatch.setenv("CODEVEC_DIMENSION", "384")
        monkeypatch.setenv("CODEVEC_STORAGE_MODE", "scalar")
        monkeypatch.setenv("CODEVEC_STRICT", "yes")
        monkeypatch.setenv("CODEVEC_LSH_TABLES", "24")
        monkeypatch.setenv("CODEVEC_MAX_MEMORY_BYTES", "1000000")

        config = CodevecConfig.from_env()
        assert config.store.dimension == 384
        assert config.store.storage_mode == "scalar"
        assert config.store.strict_consistency is True
        assert config.lsh.num_tables == 24
        assert config.store.max_memory_bytes == 1000000

    def test_bad_number(self, clean_env, monkeypatch):
        monkeypatch.setenv("CODEVEC_DIMENSION", "lots")
        with pytest.raises(ConfigurationError):
            CodevecConfig.from_env()

    def test_bad_choice(self, clean_env, monkeypatch):
        monkeypatch.setenv("CODEVEC_EVICTION_POLICY", "random")
        with pytest.raises(ConfigurationError):
            CodevecConfig.from_env()

    def test_load_or_default_without_file(self, clean_env):
        assert CodevecConfig.load_or_default().to_dict() == CodevecConfig().to_dict()

    def test_env_beats_file(self, clean_env, monkeypatch):
        path = clean_env / "custom.yml"
        path.write_text("store:\n  dimension: 128\n  metric: dot\n")
        monkeypatch.setenv("CODEVEC_DIMENSION", "64")

        config = CodevecConfig.load_or_default(path)
        assert config.store.dimension == 64
        assert config.store.metric == "dot"

    def test_config_path_from_env(self, clean_env, monkeypatch):
        path = clean_env / "from_env.yml"
        path.write_text("search:\n  final_results: 7\n")
        monkeypatch.setenv("CODEVEC_CONFIG", str(path))
        assert CodevecConfig.load_or_default().search.final_results == 7

    def test_config_in_current_directory(self, clean_env):
        (clean_env / ".codevec.yml").write_text("lsh:\n  hash_bits: 6\n")
        assert CodevecConfig.load_or_default().lsh.hash_bits == 6
