from __future__ import annotations

import copy
import json
import logging
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Protocol

from pydantic import ValidationError as SchemaValidationError

from contract_analyzer.errors import ConflictError, NotFoundError, StorageError
from contract_analyzer.schema_models import validate_contract_record

logger = logging.getLogger(__name__)

RecordFilter = Callable[[dict], bool]


class BlobStore(Protocol):
    def put(self, key: str, content_bytes: bytes) -> None:
        ...

    def get(self, key: str) -> bytes:
        ...

    def delete(self, key: str) -> None:
        ...


class RecordStore(Protocol):
    def get(self, contract_id: str) -> dict | None:
        ...

    def put(self, record: dict) -> dict:
        ...

    def update(self, contract_id: str, fields: dict, expected_status: str | None = None) -> dict:
        ...

    def scan(self, record_filter: RecordFilter | None = None) -> list[dict]:
        ...


def _atomic_write_bytes(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="wb",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        handle.write(payload)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


def _atomic_write_json(path: Path, payload: dict) -> None:
    _atomic_write_bytes(path, json.dumps(payload, indent=2).encode("utf-8"))


def _safe_relative_path(key: str) -> PurePosixPath:
    relative = PurePosixPath(key.strip())
    if not key.strip() or relative.is_absolute() or ".." in relative.parts:
        raise StorageError("Invalid storage key.", {"key": key})
    return relative


def _validated(record: dict) -> dict:
    try:
        return validate_contract_record(record)
    except SchemaValidationError as exc:
        raise StorageError(
            "Record failed schema validation and was not written.",
            {"contract_id": record.get("contract_id"), "errors": exc.error_count()},
        ) from exc


class FileBlobStore:
    """Blob store keeping each object as a file below ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path_for(self, key: str) -> Path:
        return self.root.joinpath(*_safe_relative_path(key).parts)

    def put(self, key: str, content_bytes: bytes) -> None:
        try:
            _atomic_write_bytes(self._path_for(key), content_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to upload file: {exc}", {"key": key}) from exc

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to retrieve file: {exc}", {"key": key}) from exc

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete file: {exc}", {"key": key}) from exc


class InMemoryBlobStore:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    def put(self, key: str, content_bytes: bytes) -> None:
        _safe_relative_path(key)
        self.objects[key] = bytes(content_bytes)

    def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise StorageError("Failed to retrieve file: no such key.", {"key": key})
        return self.objects[key]

    def delete(self, key: str) -> None:
        self.objects.pop(key, None)


class _LockedRecordStore:
    """Shared get/put/update/scan logic; subclasses provide raw persistence.

    ``update`` with ``expected_status`` is a compare-and-swap on ``status``:
    it only applies when the stored status still matches. The lock is
    per process; several workers sharing one ``JsonRecordStore`` directory
    can each win the same swap.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def _read(self, contract_id: str) -> dict | None:
        raise NotImplementedError

    def _write(self, record: dict) -> None:
        raise NotImplementedError

    def _read_all(self) -> Iterable[dict]:
        raise NotImplementedError

    def get(self, contract_id: str) -> dict | None:
        with self._lock:
            record = self._read(contract_id)
        return copy.deepcopy(record) if record is not None else None

    def put(self, record: dict) -> dict:
        validated = _validated(record)
        with self._lock:
            self._write(validated)
        return copy.deepcopy(validated)

    def update(self, contract_id: str, fields: dict, expected_status: str | None = None) -> dict:
        with self._lock:
            current = self._read(contract_id)
            if current is None:
                raise NotFoundError(contract_id)
            if expected_status is not None and current.get("status") != expected_status:
                raise ConflictError(contract_id, expected_status, current.get("status"))

            merged = {**current, **fields, "contract_id": contract_id}
            validated = _validated(merged)
            self._write(validated)
        return copy.deepcopy(validated)

    def scan(self, record_filter: RecordFilter | None = None) -> list[dict]:
        with self._lock:
            records = [copy.deepcopy(record) for record in self._read_all()]
        if record_filter is None:
            return records
        return [record for record in records if record_filter(record)]


class InMemoryRecordStore(_LockedRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self.records: dict[str, dict] = {}

    def _read(self, contract_id: str) -> dict | None:
        return self.records.get(contract_id)

    def _write(self, record: dict) -> None:
        self.records[record["contract_id"]] = copy.deepcopy(record)

    def _read_all(self) -> Iterable[dict]:
        return list(self.records.values())


class JsonRecordStore(_LockedRecordStore):
    """Record store persisting one JSON document per contract."""

    def __init__(self, records_dir: Path) -> None:
        super().__init__()
        self.records_dir = Path(records_dir)

    def _record_path(self, contract_id: str) -> Path:
        relative = _safe_relative_path(contract_id)
        if len(relative.parts) != 1:
            raise StorageError("Invalid contract id.", {"contract_id": contract_id})
        return self.records_dir / f"{contract_id}.json"

    def _load(self, path: Path) -> dict:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Failed to read record: {exc}", {"path": str(path)}) from exc

    def _read(self, contract_id: str) -> dict | None:
        path = self._record_path(contract_id)
        if not path.exists():
            return None
        return self._load(path)

    def _write(self, record: dict) -> None:
        try:
            _atomic_write_json(self._record_path(record["contract_id"]), record)
        except OSError as exc:
            raise StorageError(
                f"Failed to store record: {exc}", {"contract_id": record["contract_id"]}
            ) from exc

    def _read_all(self) -> Iterable[dict]:
        if not self.records_dir.exists():
            return []

        records: list[dict] = []
        for path in sorted(self.records_dir.glob("*.json")):
            try:
                records.append(self._load(path))
            except StorageError:
                logger.warning("Skipping unreadable record file %s", path)
        return records
