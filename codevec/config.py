"""
Configuration system for codevec.

Defines the dataclasses that parameterise the LSH index, the quantization
codecs, the vector store and the search pipeline, with YAML persistence and
``CODEVEC_*`` environment overrides.
"""

import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .errors import ConfigurationError


STORAGE_MODES = ("raw", "scalar", "product")
EVICTION_POLICIES = ("lru", "lfu")
METRICS = ("cosine", "dot", "euclidean", "manhattan", "jaccard")

DEFAULT_CONFIG_NAME = ".codevec.yml"


def _filter_known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys the dataclass does not declare."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


@dataclass
class LSHConfig:
    """
    Random-hyperplane LSH parameters.

    Notes
    -----
    - ``num_tables`` independent tables, ``hash_bits`` hyperplanes each.
    - More tables raise recall, more bits shrink buckets (and recall).
    """
    num_tables: int = 16
    hash_bits: int = 10
    # Hyperplane generator seed; fixed so indexes rebuild identically
    seed: int = 42

    def validate(self) -> None:
        if self.num_tables <= 0:
            raise ConfigurationError(f"num_tables must be > 0, got {self.num_tables}")
        if not (1 <= self.hash_bits <= 64):
            raise ConfigurationError(f"hash_bits must be in [1, 64], got {self.hash_bits}")
        if self.seed < 0:
            raise ConfigurationError(f"seed must be non-negative, got {self.seed}")

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LSHConfig":
        cfg = cls(**_filter_known(cls, data))
        cfg.validate()
        return cfg


@dataclass
class QuantizationConfig:
    """Product quantization training parameters."""
    num_subvectors: int = 8
    num_centroids: int = 256
    iterations: int = 10

    def validate(self) -> None:
        if self.num_subvectors <= 0:
            raise ConfigurationError(f"num_subvectors must be > 0, got {self.num_subvectors}")
        if not (1 <= self.num_centroids <= 256):
            raise ConfigurationError(
                f"num_centroids must be in [1, 256], got {self.num_centroids}"
            )
        if self.iterations <= 0:
            raise ConfigurationError(f"iterations must be > 0, got {self.iterations}")

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuantizationConfig":
        cfg = cls(**_filter_known(cls, data))
        cfg.validate()
        return cfg


@dataclass
class StoreConfig:
    """Vector store and memory-budget settings."""
    dimension: int = 768
    storage_mode: str = "raw"
    metric: str = "cosine"
    # Results scoring below this are dropped by VectorStore.search
    similarity_threshold: float = -1.0
    max_results: int = 50
    strict_consistency: bool = False
    cache_dir: str = ".cache/vector-db"

    # Memory management (None = unbounded)
    max_memory_bytes: Optional[int] = None
    eviction_policy: str = "lru"
    demote_before_evict: bool = False

    def validate(self) -> None:
        if self.dimension <= 0:
            raise ConfigurationError(f"dimension must be > 0, got {self.dimension}")
        if self.storage_mode not in STORAGE_MODES:
            raise ConfigurationError(
                f"storage_mode must be one of {STORAGE_MODES}, got {self.storage_mode!r}"
            )
        if self.metric not in METRICS:
            raise ConfigurationError(f"metric must be one of {METRICS}, got {self.metric!r}")
        if self.max_results <= 0:
            raise ConfigurationError(f"max_results must be > 0, got {self.max_results}")
        if self.max_memory_bytes is not None and self.max_memory_bytes <= 0:
            raise ConfigurationError(
                f"max_memory_bytes must be positive, got {self.max_memory_bytes}"
            )
        if self.eviction_policy not in EVICTION_POLICIES:
            raise ConfigurationError(
                f"eviction_policy must be one of {EVICTION_POLICIES}, got {self.eviction_policy!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreConfig":
        cfg = cls(**_filter_known(cls, data))
        cfg.validate()
        return cfg


@dataclass
class SearchConfig:
    """Search pipeline settings (candidate retrieval, reranking, caching)."""
    lsh_candidates: int = 100
    final_results: int = 10
    min_similarity: float = 0.1
    rerank_threshold: float = 0.001
    # Reranking is only ever applied to this many top candidates
    rerank_limit: int = 20
    embedding_weight: float = 0.4
    rerank_weight: float = 0.6
    enable_caching: bool = True
    embedding_cache_size: int = 1000
    embedding_cache_ttl: int = 3600

    def validate(self) -> None:
        if self.lsh_candidates <= 0:
            raise ConfigurationError(f"lsh_candidates must be > 0, got {self.lsh_candidates}")
        if self.final_results <= 0:
            raise ConfigurationError(f"final_results must be > 0, got {self.final_results}")
        if self.rerank_limit <= 0:
            raise ConfigurationError(f"rerank_limit must be > 0, got {self.rerank_limit}")
        if self.embedding_weight < 0 or self.rerank_weight < 0:
            raise ConfigurationError("score weights must be non-negative")
        if self.embedding_weight + self.rerank_weight <= 0:
            raise ConfigurationError("at least one score weight must be positive")
        if self.embedding_cache_size <= 0:
            raise ConfigurationError(
                f"embedding_cache_size must be > 0, got {self.embedding_cache_size}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchConfig":
        cfg = cls(**_filter_known(cls, data))
        cfg.validate()
        return cfg


@dataclass
class CodevecConfig:
    """Top-level configuration, one section per component."""
    store: StoreConfig = field(default_factory=StoreConfig)
    lsh: LSHConfig = field(default_factory=LSHConfig)
    quantization: QuantizationConfig = field(default_factory=QuantizationConfig)
    search: SearchConfig = field(default_factory=SearchConfig)

    def validate(self) -> None:
        self.store.validate()
        self.lsh.validate()
        self.quantization.validate()
        self.search.validate()
        if self.store.storage_mode == "product" and \
                self.store.dimension % self.quantization.num_subvectors != 0:
            raise ConfigurationError(
                f"dimension {self.store.dimension} is not divisible by "
                f"num_subvectors {self.quantization.num_subvectors}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store": self.store.to_dict(),
            "lsh": self.lsh.to_dict(),
            "quantization": self.quantization.to_dict(),
            "search": self.search.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodevecConfig":
        data = data or {}
        cfg = cls(
            store=StoreConfig.from_dict(data.get("store", {})),
            lsh=LSHConfig.from_dict(data.get("lsh", {})),
            quantization=QuantizationConfig.from_dict(data.get("quantization", {})),
            search=SearchConfig.from_dict(data.get("search", {})),
        )
        cfg.validate()
        return cfg

    def save_to_file(self, file_path: Union[str, Path]) -> None:
        """Save configuration to a YAML file."""
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def load_from_file(cls, file_path: Union[str, Path]) -> "CodevecConfig":
        """Load configuration from a YAML file."""
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(file_path, "r") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {file_path}")
        return cls.from_dict(data or {})

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Look for config in the current directory, then the home directory."""
        current_dir_config = Path(DEFAULT_CONFIG_NAME)
        if current_dir_config.exists():
            return current_dir_config
        return Path.home() / DEFAULT_CONFIG_NAME

    @classmethod
    def load_or_default(
        cls, config_path: Optional[Union[str, Path]] = None
    ) -> "CodevecConfig":
        """
        Load configuration from file or return defaults, then apply env overrides.

        Args:
            config_path: Optional path to configuration file

        Returns:
            CodevecConfig instance
        """
        env_path = os.getenv("CODEVEC_CONFIG")
        candidates = [config_path, env_path, cls.get_default_config_path()]
        for candidate in candidates:
            if candidate and Path(candidate).exists():
                return cls.load_from_file(candidate).apply_env()
        return cls().apply_env()

    @classmethod
    def from_env(cls, prefix: str = "CODEVEC_") -> "CodevecConfig":
        """Build a default configuration with environment overrides applied."""
        return cls().apply_env(prefix)

    def apply_env(self, prefix: str = "CODEVEC_") -> "CodevecConfig":
        """
        Apply overrides from environment variables (all optional).

        Example vars:
          CODEVEC_DIMENSION=384
          CODEVEC_STORAGE_MODE=scalar
          CODEVEC_LSH_TABLES=24
        """
        def get(name: str, cast):
            v = os.getenv(prefix + name)
            if v is None:
                return None
            try:
                return cast(v)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {prefix}{name}: {v!r}") from e

        def as_bool(v: str) -> bool:
            return v.strip().lower() in ("1", "true", "yes", "on")

        env_mappings = [
            ("DIMENSION", self.store, "dimension", int),
            ("STORAGE_MODE", self.store, "storage_mode", str),
            ("METRIC", self.store, "metric", str),
            ("MAX_RESULTS", self.store, "max_results", int),
            ("STRICT", self.store, "strict_consistency", as_bool),
            ("CACHE_DIR", self.store, "cache_dir", str),
            ("MAX_MEMORY_BYTES", self.store, "max_memory_bytes", int),
            ("EVICTION_POLICY", self.store, "eviction_policy", str),
            ("LSH_TABLES", self.lsh, "num_tables", int),
            ("LSH_BITS", self.lsh, "hash_bits", int),
            ("SEED", self.lsh, "seed", int),
            ("PQ_SUBVECTORS", self.quantization, "num_subvectors", int),
            ("PQ_CENTROIDS", self.quantization, "num_centroids", int),
            ("LSH_CANDIDATES", self.search, "lsh_candidates", int),
            ("FINAL_RESULTS", self.search, "final_results", int),
        ]
        for env_name, section, attr, cast in env_mappings:
            value = get(env_name, cast)
            if value is not None:
                setattr(section, attr, value)

        self.validate()
        return self


def create_default_config_file(path: Union[str, Path]) -> Path:
    """Write the default configuration to ``path`` and return it."""
    path = Path(path)
    CodevecConfig().save_to_file(path)
    return path
