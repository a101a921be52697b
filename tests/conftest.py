"""Shared fixtures for codevec tests."""

import logging

import numpy as np
import pytest

from codevec.config import LSHConfig
from codevec.vector_db import CodeMetadata, CodeType, VectorEntry, VectorStore


def make_entry(item_id, vector, file_path="src/module.py", language="python",
               code_type=CodeType.FUNCTION):
    """Build a VectorEntry with code metadata."""
    return VectorEntry(
        id=item_id,
        embedding=np.asarray(vector, dtype=np.float32),
        metadata=CodeMetadata(
            file_path=file_path,
            function_name=item_id,
            code_type=code_type,
            language=language,
            tokens=[item_id],
        ),
    )


@pytest.fixture(autouse=True)
def reset_codevec_logging():
    """Undo setup_logging() so caplog keeps seeing package records."""
    yield
    logger = logging.getLogger("codevec")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def lsh_config():
    return LSHConfig(num_tables=8, hash_bits=4, seed=42)


@pytest.fixture
def store(lsh_config):
    """Empty 16-dimensional raw store."""
    return VectorStore(dimension=16, lsh_config=lsh_config)


@pytest.fixture
def populated_store(store, rng):
    """Store with 20 random entries spread over two files."""
    for i in range(20):
        file_path = "src/a.py" if i % 2 == 0 else "src/b.py"
        language = "python" if i < 15 else "rust"
        store.add_vector(make_entry(f"item-{i:02d}", rng.standard_normal(16),
                                    file_path=file_path, language=language))
    return store
