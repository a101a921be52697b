"""
Versioned on-disk format for vector stores.

A store is saved as one JSON document (gzip-compressed when the path ends
in ``.gz``) holding the store settings, every entry tagged with its storage
mode, the codebooks those entries reference and the LSH bucket tables.
Saves are atomic; loads are all-or-nothing.

Also provides named backups next to a store and JSON/CSV exports of its
statistics and metadata.
"""

import csv
import gzip
import io
import json
import logging
import os
import tempfile
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config import LSHConfig
from ..errors import CodevecError, ConfigurationError, CorruptPersistence
from .lsh_index import LSHIndex
from .quantization import CodebookRegistry, ProductQuantizationCodebook
from .records import StoredRecord, decode_vector
from .rwlock import ReadWriteLock
from .types import CodeMetadata, StorageMode, metadata_field, utcnow

logger = logging.getLogger(__name__)

FORMAT_NAME = "codevec-store"
FORMAT_VERSION = 1
SUPPORTED_VERSIONS = (1,)


@dataclass
class StoreSnapshot:
    """Everything needed to rebuild a VectorStore."""
    dimension: int
    storage_mode: StorageMode
    metric: str
    similarity_threshold: float
    max_results: int
    strict_consistency: bool
    lsh_config: LSHConfig
    records: List[StoredRecord]
    codebooks: List[ProductQuantizationCodebook] = field(default_factory=list)
    active_codebook: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    index: Optional[LSHIndex] = None


def _is_gzip_path(path: Path) -> bool:
    return path.suffix == ".gz"


def snapshot_to_document(snapshot: StoreSnapshot) -> Dict[str, Any]:
    lsh: Dict[str, Any]
    if snapshot.index is not None:
        lsh = snapshot.index.to_dict()
    else:
        lsh = {"dimension": snapshot.dimension, "config": snapshot.lsh_config.to_dict()}
    return {
        "format": FORMAT_NAME,
        "version": FORMAT_VERSION,
        "saved_at": utcnow().isoformat(),
        "dimension": snapshot.dimension,
        "storage_mode": snapshot.storage_mode.value,
        "metric": snapshot.metric,
        "similarity_threshold": snapshot.similarity_threshold,
        "max_results": snapshot.max_results,
        "strict_consistency": snapshot.strict_consistency,
        "created_at": snapshot.created_at.isoformat(),
        "last_updated": snapshot.last_updated.isoformat(),
        "active_codebook": snapshot.active_codebook,
        "codebooks": [cb.to_dict() for cb in snapshot.codebooks],
        "lsh": lsh,
        "entries": [record.to_dict() for record in snapshot.records],
    }


def _atomic_write(path: Union[str, Path], data: bytes) -> Path:
    """
    Write ``data`` to ``path`` through a temporary file in the same directory.

    The temporary file replaces the target in one step, so readers see
    either the old or the new file. Paths ending in ``.gz`` are compressed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as raw:
            if _is_gzip_path(path):
                with gzip.GzipFile(fileobj=raw, mode="wb", compresslevel=6) as gz:
                    gz.write(data)
            else:
                raw.write(data)
            raw.flush()
            os.fsync(raw.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return path


def write_document(document: Dict[str, Any], path: Union[str, Path]) -> Path:
    """Atomically write ``document`` as JSON (gzip when ``path`` ends in .gz)."""
    indent = None if _is_gzip_path(Path(path)) else 1
    return _atomic_write(path, json.dumps(document, indent=indent).encode("utf-8"))


def read_document(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read and parse a persisted document.

    Raises:
        FileNotFoundError: ``path`` does not exist
        CorruptPersistence: the file is not valid (gzipped) JSON
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Vector store file not found: {path}")
    try:
        if _is_gzip_path(path):
            with gzip.open(path, "rt", encoding="utf-8") as f:
                document = json.load(f)
        else:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
    except (OSError, EOFError, gzip.BadGzipFile, zlib.error,
            UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptPersistence(f"Cannot parse {path}: {e}", path=str(path)) from e
    if not isinstance(document, dict):
        raise CorruptPersistence(f"Document root in {path} is not an object", path=str(path))
    return document


def document_to_snapshot(document: Dict[str, Any], path: Optional[str] = None,
                         lock: Optional[ReadWriteLock] = None) -> StoreSnapshot:
    """
    Validate ``document`` in full and convert it to a snapshot.

    Any problem, from an unknown version to a single malformed entry, fails
    the whole conversion.

    Raises:
        CorruptPersistence: the document is not a loadable store
    """
    fmt = document.get("format")
    version = document.get("version")
    if fmt != FORMAT_NAME:
        raise CorruptPersistence(f"Unknown document format {fmt!r}", path=path)
    if version not in SUPPORTED_VERSIONS:
        raise CorruptPersistence(
            f"Unsupported format version {version!r} (supported: {list(SUPPORTED_VERSIONS)})",
            path=path,
        )

    try:
        return _build_snapshot(document, lock)
    except CorruptPersistence:
        raise
    except (KeyError, TypeError, ValueError, AttributeError, CodevecError) as e:
        raise CorruptPersistence(f"Invalid vector store document: {e}", path=path) from e


def _build_snapshot(document: Dict[str, Any], lock: Optional[ReadWriteLock]) -> StoreSnapshot:
    dimension = int(document["dimension"])
    if dimension <= 0:
        raise ValueError(f"dimension must be positive, got {dimension}")

    registry = CodebookRegistry()
    codebooks = [ProductQuantizationCodebook.from_dict(cb) for cb in document.get("codebooks", [])]
    for codebook in codebooks:
        if codebook.dimension != dimension:
            raise ValueError(
                f"codebook {codebook.codebook_id!r} has dimension {codebook.dimension}, "
                f"store has {dimension}"
            )
        registry.register(codebook)

    active = document.get("active_codebook")
    if active is not None and not registry.contains(active):
        raise ValueError(f"active codebook {active!r} is not in the document")

    records: List[StoredRecord] = []
    seen = set()
    for raw_entry in document["entries"]:
        record = StoredRecord.from_dict(raw_entry, dimension)
        if record.id in seen:
            raise ValueError(f"duplicate entry id {record.id!r}")
        seen.add(record.id)
        if record.mode is StorageMode.PRODUCT:
            # Resolves the codebook and range-checks the assignments
            decode_vector(record.vector, registry)
        records.append(record)

    lsh_data = document["lsh"]
    lsh_config = LSHConfig.from_dict(lsh_data["config"])
    if int(lsh_data.get("dimension", dimension)) != dimension:
        raise ValueError("LSH dimension differs from store dimension")

    if "tables" in lsh_data:
        index = LSHIndex.from_dict(lsh_data, lock=lock)
        problems = index.verify()
        if problems:
            raise ValueError(f"LSH tables are inconsistent: {problems[0]}")
        if index.ids() != seen:
            missing = sorted(seen - index.ids())[:3]
            extra = sorted(index.ids() - seen)[:3]
            raise ValueError(
                f"LSH tables disagree with entries (unindexed: {missing}, unknown: {extra})"
            )
        # Raw entries are indexed by their exact embedding
        for record in records:
            if record.mode is StorageMode.RAW and \
                    index.codes_for(record.id) != index.signature(record.vector.raw):
                raise ValueError(
                    f"LSH codes for {record.id!r} do not match its embedding "
                    f"(seed {lsh_config.seed})"
                )
    else:
        index = LSHIndex(dimension, lsh_config, lock=lock)
        for record in records:
            index.insert(record.id, decode_vector(record.vector, registry))
        logger.info("Rebuilt LSH index for %d entries", len(records))

    return StoreSnapshot(
        dimension=dimension,
        storage_mode=StorageMode(document.get("storage_mode", "raw")),
        metric=str(document.get("metric", "cosine")),
        similarity_threshold=float(document.get("similarity_threshold", -1.0)),
        max_results=int(document.get("max_results", 50)),
        strict_consistency=bool(document.get("strict_consistency", False)),
        lsh_config=lsh_config,
        records=records,
        codebooks=codebooks,
        active_codebook=active,
        created_at=datetime.fromisoformat(document["created_at"]) if "created_at" in document else utcnow(),
        last_updated=datetime.fromisoformat(document["last_updated"]) if "last_updated" in document else utcnow(),
        index=index,
    )


def save_snapshot(snapshot: StoreSnapshot, path: Union[str, Path]) -> Path:
    path = write_document(snapshot_to_document(snapshot), path)
    logger.info("Saved %d entries to %s", len(snapshot.records), path,
                extra={"operation": "save", "store_path": str(path)})
    return path


def load_snapshot(path: Union[str, Path], lock: Optional[ReadWriteLock] = None) -> StoreSnapshot:
    """
    Load and validate a persisted store.

    Raises:
        FileNotFoundError: ``path`` does not exist
        CorruptPersistence: the file cannot be loaded in full
    """
    path = Path(path)
    try:
        snapshot = document_to_snapshot(read_document(path), path=str(path), lock=lock)
    except CorruptPersistence as e:
        logger.error("Failed to load vector store from %s: %s", path, e.message,
                     extra={"operation": "load", "store_path": str(path)})
        raise
    logger.info("Loaded %d entries from %s", len(snapshot.records), path,
                extra={"operation": "load", "store_path": str(path)})
    return snapshot


# ----------------------------
# Backups
# ----------------------------

BACKUP_SUFFIX = ".json.gz"
BACKUP_INFO_SUFFIX = ".info.json"
EXPORT_FORMATS = ("json", "csv")
CSV_COLUMNS = ["id", "file_path", "function_name", "code_type", "language",
               "complexity", "line_start", "line_end"]


@dataclass
class BackupInfo:
    """Description of one named backup, stored beside it as ``<name>.info.json``."""
    name: str
    created_at: datetime
    store_file: str
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "store_file": self.store_file,
            "stats": self.stats,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupInfo":
        return cls(
            name=str(data["name"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            store_file=str(data["store_file"]),
            stats=dict(data.get("stats", {})),
        )


def _check_backup_name(name: str) -> None:
    if not name or name.startswith(".") or any(sep in name for sep in ("/", "\\")):
        raise ConfigurationError(f"Invalid backup name {name!r}")


def create_backup(store, backup_dir: Union[str, Path], name: Optional[str] = None) -> BackupInfo:
    """
    Save ``store`` as a named, gzip-compressed backup in ``backup_dir``.

    Args:
        store: VectorStore (or bounded wrapper) to back up
        backup_dir: Directory holding backups; created when missing
        name: Backup name (a UTC timestamp when omitted)

    Raises:
        ConfigurationError: the name is invalid or already taken
    """
    backup_dir = Path(backup_dir)
    created_at = utcnow()
    name = name or f"backup-{created_at:%Y%m%dT%H%M%S%fZ}"
    _check_backup_name(name)
    info_path = backup_dir / f"{name}{BACKUP_INFO_SUFFIX}"
    if info_path.exists():
        raise ConfigurationError(f"Backup {name!r} already exists in {backup_dir}")

    store_path = store.save(backup_dir / f"{name}{BACKUP_SUFFIX}")
    info = BackupInfo(
        name=name,
        created_at=created_at,
        store_file=store_path.name,
        stats=store.stats().to_dict(),
    )
    _atomic_write(info_path, json.dumps(info.to_dict(), indent=2).encode("utf-8"))
    logger.info("Created backup %s in %s", name, backup_dir,
                extra={"operation": "backup", "store_path": str(store_path)})
    return info


def list_backups(backup_dir: Union[str, Path]) -> List[BackupInfo]:
    """Backups in ``backup_dir``, newest first; unreadable info files are skipped."""
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        return []
    backups = []
    for info_path in backup_dir.glob(f"*{BACKUP_INFO_SUFFIX}"):
        try:
            with open(info_path, "r", encoding="utf-8") as f:
                backups.append(BackupInfo.from_dict(json.load(f)))
        except (OSError, KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable backup info %s: %s", info_path, e)
    backups.sort(key=lambda b: (b.created_at, b.name), reverse=True)
    return backups


def cleanup_old_backups(backup_dir: Union[str, Path], keep_days: int,
                        now: Optional[datetime] = None) -> List[str]:
    """
    Delete backups created more than ``keep_days`` days before ``now``.

    Returns:
        Names of the removed backups
    """
    if keep_days < 0:
        raise ConfigurationError(f"keep_days must be >= 0, got {keep_days}")
    backup_dir = Path(backup_dir)
    cutoff = (now or utcnow()) - timedelta(days=keep_days)
    removed = []
    for info in list_backups(backup_dir):
        if info.created_at >= cutoff:
            continue
        (backup_dir / info.store_file).unlink(missing_ok=True)
        (backup_dir / f"{info.name}{BACKUP_INFO_SUFFIX}").unlink(missing_ok=True)
        removed.append(info.name)
    if removed:
        logger.info("Removed %d backups older than %d days", len(removed), keep_days,
                    extra={"operation": "backup_cleanup"})
    return removed


# ----------------------------
# Export
# ----------------------------

def _metadata_row(record: StoredRecord) -> List[Any]:
    metadata = record.metadata
    code_type = metadata_field(metadata, "code_type")
    if isinstance(metadata, CodeMetadata):
        code_type = code_type.value
    row = [record.id]
    for column in CSV_COLUMNS[1:]:
        value = code_type if column == "code_type" else metadata_field(metadata, column)
        row.append("" if value is None else value)
    return row


def export_store(store, path: Union[str, Path], fmt: Optional[str] = None) -> Path:
    """
    Export ``store`` for analysis.

    ``json`` writes the statistics with the format version and export time;
    ``csv`` writes one metadata row per entry. The format defaults to the
    file suffix.

    Raises:
        ConfigurationError: unknown export format
    """
    path = Path(path)
    fmt = (fmt or path.suffix.lstrip(".")).lower()
    if fmt not in EXPORT_FORMATS:
        raise ConfigurationError(f"Unknown export format {fmt!r} (expected one of {EXPORT_FORMATS})")

    if fmt == "json":
        document = {
            "format": FORMAT_NAME,
            "format_version": FORMAT_VERSION,
            "exported_at": utcnow().isoformat(),
            "stats": store.stats().to_dict(),
        }
        data = json.dumps(document, indent=2).encode("utf-8")
    else:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for record in store.records():
            writer.writerow(_metadata_row(record))
        data = buffer.getvalue().encode("utf-8")

    _atomic_write(path, data)
    logger.info("Exported store as %s to %s", fmt, path,
                extra={"operation": "export", "store_path": str(path)})
    return path
