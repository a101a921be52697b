"""
Tests for saving and loading vector stores.
"""

import csv
import gzip
import json
from datetime import timedelta

import numpy as np
import pytest

from codevec.config import QuantizationConfig
from codevec.errors import ConfigurationError, CorruptPersistence
from codevec.vector_db import CodeMetadata, StorageMode, VectorEntry, VectorStore
from codevec.vector_db import persistence

from conftest import make_entry


def read_json(path):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path, document):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f)


class TestRoundTrip:
    """A saved store loads back with identical contents and behaviour."""

    def test_raw_store(self, populated_store, rng, tmp_path):
        populated_store.get("item-04")
        path = populated_store.save(tmp_path / "store.json")
        loaded = VectorStore.load(path)

        assert loaded.ids() == populated_store.ids()
        assert loaded.dimension == 16
        assert loaded.index.num_tables == 8
        for original in populated_store.get_all_vectors():
            restored = loaded.get_or_none(original.id)
            np.testing.assert_array_equal(restored.embedding, original.embedding)
            assert restored.metadata == original.metadata
            assert isinstance(restored.metadata, CodeMetadata)
            assert restored.created_at == original.created_at

        query = rng.standard_normal(16)
        expected = [(r.id, r.score) for r in populated_store.search(query)]
        assert [(r.id, r.score) for r in loaded.search(query)] == expected
        assert loaded.verify_consistency() == []

    def test_access_statistics_survive(self, populated_store, tmp_path):
        populated_store.get("item-04")
        populated_store.get("item-04")
        loaded = VectorStore.load(populated_store.save(tmp_path / "store.json"))
        record = {r.id: r for r in loaded.records()}["item-04"]
        assert record.access_count == 2
        assert record.last_accessed is not None

    def test_gzip(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json.gz")
        with open(path, "rb") as f:
            assert f.read(2) == b"\x1f\x8b"
        with gzip.open(path, "rt", encoding="utf-8") as f:
            assert json.load(f)["format"] == "codevec-store"

        loaded = VectorStore.load(path)
        assert len(loaded) == 20

    def test_dict_metadata(self, store, tmp_path):
        store.add_vector(VectorEntry("x", np.ones(16), {"file_path": "x.py", "tags": ["a", "b"]}))
        loaded = VectorStore.load(store.save(tmp_path / "store.json"))
        assert loaded.get("x").metadata == {"file_path": "x.py", "tags": ["a", "b"]}

    def test_scalar_store(self, populated_store, rng, tmp_path):
        populated_store.convert_storage("scalar")
        loaded = VectorStore.load(populated_store.save(tmp_path / "store.json"))

        assert loaded.storage_mode is StorageMode.SCALAR
        query = rng.standard_normal(16)
        expected = [(r.id, r.score) for r in populated_store.search_exact(query)]
        assert [(r.id, r.score) for r in loaded.search_exact(query)] == expected

    def test_product_store(self, lsh_config, rng, tmp_path):
        store = VectorStore(dimension=16, lsh_config=lsh_config, storage_mode="product",
                            quantization_config=QuantizationConfig(num_subvectors=4, num_centroids=4))
        for i in range(10):
            store.add_vector(make_entry(f"v{i}", rng.standard_normal(16)))
        codebook = store.train_codebook()

        loaded = VectorStore.load(store.save(tmp_path / "store.json"))
        assert loaded.active_codebook.codebook_id == codebook.codebook_id
        np.testing.assert_array_equal(loaded.active_codebook.centroids, codebook.centroids)
        assert loaded.codebooks.refcount(codebook.codebook_id) == 10
        np.testing.assert_array_equal(loaded.get("v3").embedding, store.get("v3").embedding)
        assert loaded.verify_consistency() == []

    def test_empty_store(self, store, tmp_path):
        loaded = VectorStore.load(store.save(tmp_path / "empty.json"))
        assert len(loaded) == 0

    def test_reload(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        other = VectorStore(dimension=4)
        other.reload(path)
        assert other.dimension == 16
        assert len(other) == 20
        assert other.verify_consistency() == []


class TestIndexRestore:
    """The LSH index is restored from stored tables or rebuilt."""

    def test_rebuilds_without_tables(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        del document["lsh"]["tables"]
        write_json(path, document)

        loaded = VectorStore.load(path)
        assert loaded.verify_consistency() == []
        for record in populated_store.records():
            assert loaded.index.codes_for(record.id) == populated_store.index.codes_for(record.id)

    def test_changed_seed_is_rejected(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        document["lsh"]["config"]["seed"] = 7
        write_json(path, document)

        with pytest.raises(CorruptPersistence) as exc_info:
            VectorStore.load(path)
        assert "do not match" in exc_info.value.message

    def test_moved_bucket_code_is_rejected(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        table = document["lsh"]["tables"][0]
        code = next(c for c, bucket in table.items() if "item-05" in bucket)
        table[code].remove("item-05")
        table.setdefault(str(int(code) ^ 1), []).append("item-05")
        write_json(path, document)

        with pytest.raises(CorruptPersistence):
            VectorStore.load(path)

    def test_quantized_then_raw_store_loads(self, populated_store, tmp_path):
        populated_store.convert_storage("scalar")
        populated_store.convert_storage("raw")
        loaded = VectorStore.load(populated_store.save(tmp_path / "store.json"))
        assert loaded.verify_consistency() == []
        for record in loaded.records():
            assert loaded.index.codes_for(record.id) == loaded.index.signature(record.vector.raw)

    def test_tables_missing_an_entry(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        for table in document["lsh"]["tables"]:
            for bucket in table.values():
                if "item-05" in bucket:
                    bucket.remove("item-05")
        write_json(path, document)

        with pytest.raises(CorruptPersistence):
            VectorStore.load(path)


class TestCorruption:
    """Loading is all-or-nothing."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            VectorStore.load(tmp_path / "nope.json")

    def test_not_json(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json")
        with pytest.raises(CorruptPersistence) as exc_info:
            VectorStore.load(path)
        assert exc_info.value.path == str(path)

    def test_truncated_gzip(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json.gz")
        data = path.read_bytes()
        path.write_bytes(data[: len(data) // 2])
        with pytest.raises(CorruptPersistence):
            VectorStore.load(path)

    @pytest.mark.parametrize("position", [0.25, 0.5, 0.75])
    def test_flipped_byte_in_gzip(self, populated_store, tmp_path, position):
        path = populated_store.save(tmp_path / "store.json.gz")
        data = bytearray(path.read_bytes())
        data[int(len(data) * position)] ^= 0xFF
        path.write_bytes(bytes(data))
        with pytest.raises(CorruptPersistence) as exc_info:
            VectorStore.load(path)
        assert exc_info.value.path == str(path)

    @pytest.mark.parametrize("field,value", [("version", 99), ("format", "other-store")])
    def test_unknown_format_or_version(self, populated_store, tmp_path, field, value):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        document[field] = value
        write_json(path, document)
        with pytest.raises(CorruptPersistence):
            VectorStore.load(path)

    def test_one_bad_entry_fails_everything(self, populated_store, lsh_config, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        document["entries"][7]["embedding"] = "!!not base64!!"
        write_json(path, document)

        store = VectorStore(dimension=16, lsh_config=lsh_config)
        store.add_vector(make_entry("keep", np.ones(16)))
        with pytest.raises(CorruptPersistence):
            store.reload(path)
        assert store.ids() == ["keep"]

    def test_wrong_length_embedding(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        short = VectorStore(dimension=4)
        short.add_vector(VectorEntry("s", np.ones(4)))
        document["entries"][0]["embedding"] = short.records()[0].vector.to_dict()["embedding"]
        write_json(path, document)
        with pytest.raises(CorruptPersistence):
            VectorStore.load(path)

    def test_duplicate_ids(self, populated_store, tmp_path):
        path = populated_store.save(tmp_path / "store.json")
        document = read_json(path)
        document["entries"].append(document["entries"][0])
        write_json(path, document)
        with pytest.raises(CorruptPersistence):
            VectorStore.load(path)

    def test_missing_codebook(self, lsh_config, rng, tmp_path):
        store = VectorStore(dimension=16, lsh_config=lsh_config, storage_mode="product",
                            quantization_config=QuantizationConfig(num_subvectors=4, num_centroids=4))
        for i in range(5):
            store.add_vector(make_entry(f"v{i}", rng.standard_normal(16)))
        store.train_codebook()
        path = store.save(tmp_path / "store.json")
        document = read_json(path)
        document["codebooks"] = []
        document["active_codebook"] = None
        write_json(path, document)

        with pytest.raises(CorruptPersistence):
            VectorStore.load(path)


class TestAtomicWrite:
    """Saves replace the target in one step."""

    def test_no_temporary_files_left(self, populated_store, tmp_path):
        populated_store.save(tmp_path / "store.json")
        populated_store.save(tmp_path / "store.json")
        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]

    def test_failed_replace_keeps_old_file(self, populated_store, tmp_path, monkeypatch):
        path = VectorStore(dimension=16).save(tmp_path / "store.json")
        before = path.read_bytes()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(persistence.os, "replace", broken_replace)
        with pytest.raises(OSError):
            populated_store.save(path)

        assert path.read_bytes() == before
        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]

    def test_creates_parent_directories(self, store, tmp_path):
        path = store.save(tmp_path / "nested" / "dir" / "store.json")
        assert path.exists()


class TestBackups:
    """Named backups beside a store, newest first, pruned by age."""

    def test_create_and_restore(self, populated_store, tmp_path):
        info = persistence.create_backup(populated_store, tmp_path / "backups", name="nightly")

        assert info.name == "nightly"
        assert info.store_file == "nightly.json.gz"
        assert info.stats["entry_count"] == 20
        restored = VectorStore.load(tmp_path / "backups" / info.store_file)
        assert restored.ids() == populated_store.ids()

    def test_default_name_is_timestamp(self, store, tmp_path):
        info = persistence.create_backup(store, tmp_path)
        assert info.name.startswith("backup-")
        assert (tmp_path / f"{info.name}.info.json").exists()

    def test_list_newest_first(self, store, tmp_path):
        first = persistence.create_backup(store, tmp_path, name="first")
        second = persistence.create_backup(store, tmp_path, name="second")
        assert second.created_at >= first.created_at

        names = [b.name for b in persistence.list_backups(tmp_path)]
        assert names == ["second", "first"]

    def test_duplicate_name_rejected(self, store, tmp_path):
        persistence.create_backup(store, tmp_path, name="nightly")
        with pytest.raises(ConfigurationError):
            persistence.create_backup(store, tmp_path, name="nightly")

    @pytest.mark.parametrize("name", [".hidden", "../escape", "a/b", "a\\b"])
    def test_invalid_name(self, store, tmp_path, name):
        with pytest.raises(ConfigurationError):
            persistence.create_backup(store, tmp_path, name=name)
        assert list(tmp_path.iterdir()) == []

    def test_list_missing_directory(self, tmp_path):
        assert persistence.list_backups(tmp_path / "nowhere") == []

    def test_unreadable_info_is_skipped(self, store, tmp_path, caplog):
        persistence.create_backup(store, tmp_path, name="good")
        (tmp_path / "bad.info.json").write_text("{not json", encoding="utf-8")

        assert [b.name for b in persistence.list_backups(tmp_path)] == ["good"]
        assert any("bad.info.json" in record.getMessage() for record in caplog.records)

    def test_cleanup_removes_only_old_backups(self, store, tmp_path):
        old = persistence.create_backup(store, tmp_path, name="old")
        later = old.created_at + timedelta(days=10)
        info_path = tmp_path / "recent.info.json"
        persistence.create_backup(store, tmp_path, name="recent")
        document = read_json(info_path)
        document["created_at"] = later.isoformat()
        write_json(info_path, document)

        removed = persistence.cleanup_old_backups(tmp_path, keep_days=7,
                                                  now=later + timedelta(days=1))

        assert removed == ["old"]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["recent.info.json", "recent.json.gz"]

    def test_cleanup_keep_days_validated(self, tmp_path):
        with pytest.raises(ConfigurationError):
            persistence.cleanup_old_backups(tmp_path, keep_days=-1)


class TestExport:
    """JSON exports carry statistics, CSV exports carry metadata rows."""

    def test_json_export(self, populated_store, tmp_path):
        path = persistence.export_store(populated_store, tmp_path / "export.json")
        document = read_json(path)

        assert document["format"] == persistence.FORMAT_NAME
        assert document["format_version"] == persistence.FORMAT_VERSION
        assert "exported_at" in document
        assert document["stats"]["entry_count"] == 20
        assert "average_similarity" in document["stats"]

    def test_csv_export(self, populated_store, tmp_path):
        path = persistence.export_store(populated_store, tmp_path / "export.csv")
        with open(path, "r", encoding="utf-8", newline="") as f:
            rows = list(csv.reader(f))

        assert rows[0] == persistence.CSV_COLUMNS
        assert len(rows) == 21
        first = dict(zip(rows[0], rows[1]))
        assert first["id"] == "item-00"
        assert first["file_path"] == "src/a.py"
        assert first["code_type"] == "function"
        assert first["language"] == "python"

    def test_explicit_format_overrides_suffix(self, populated_store, tmp_path):
        path = persistence.export_store(populated_store, tmp_path / "export.txt", fmt="csv")
        assert path.read_text(encoding="utf-8").startswith("id,file_path")

    def test_unknown_format(self, populated_store, tmp_path):
        with pytest.raises(ConfigurationError):
            persistence.export_store(populated_store, tmp_path / "export.xml")
        assert list(tmp_path.iterdir()) == []
