"""Durable keyed record storage.

Each store is a directory holding one JSON document per record, named after
the record key. The whole directory is loaded into memory when the store is
opened; every mutation is written through to disk before it becomes visible
in memory, so a crash never leaves memory ahead of disk.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from fulfillment.errors import DuplicateKey, NotFound, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_SUFFIX = ".json"
_TMP_SUFFIX = ".tmp"


def fsync_directory(location: Path) -> None:
    """Persist renames and unlinks made in ``location``."""
    fd = os.open(location, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class RecordStore(Generic[T]):
    def __init__(self, location: Path, model: Type[T], key: str) -> None:
        self.location = Path(location)
        self.model = model
        self.key = key
        self._records: Dict[Hashable, T] = {}
        self._lock = threading.Lock()

    @classmethod
    def load_or_init(cls, location: Path | str, model: Type[T], key: str = "id") -> "RecordStore[T]":
        store = cls(Path(location), model, key)
        store._load()
        logger.info("Loaded %d %s record(s) from %s", len(store), model.__name__, store.location)
        return store

    def _load(self) -> None:
        try:
            self.location.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create store at {self.location}: {exc}") from exc
        if not self.location.is_dir():
            raise StorageError(f"Store location is not a directory: {self.location}")

        try:
            entries = sorted(self.location.iterdir())
        except OSError as exc:
            raise StorageError(f"Cannot read store at {self.location}: {exc}") from exc

        for path in entries:
            if path.name.startswith(".") and path.name.endswith(_TMP_SUFFIX):
                logger.warning("Ignoring unfinished write %s", path)
                continue
            if path.suffix != _SUFFIX:
                continue
            try:
                record = self.model.model_validate_json(path.read_bytes())
            except (OSError, PydanticValidationError) as exc:
                raise StorageError(f"Corrupt record file {path}: {exc}") from exc
            key = self._key_of(record)
            if self._filename(key) != path.name:
                raise StorageError(f"Record file {path} holds key {key!r}")
            self._records[key] = record

    def _key_of(self, record: T) -> Hashable:
        return getattr(record, self.key)

    def _filename(self, key: Hashable) -> str:
        return f"{key}{_SUFFIX}"

    def _path_for(self, key: Hashable) -> Path:
        return self.location / self._filename(key)

    def _write(self, record: T) -> None:
        path = self._path_for(self._key_of(record))
        tmp = path.with_name(f".{path.name}{_TMP_SUFFIX}")
        data = record.model_dump_json(indent=2)
        try:
            with open(tmp, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
            fsync_directory(self.location)
        except OSError as exc:
            raise StorageError(f"Cannot write {path}: {exc}") from exc

    def _where(self) -> str:
        return f"{self.model.__name__} store"

    def insert(self, record: T) -> T:
        key = self._key_of(record)
        with self._lock:
            if key in self._records:
                raise DuplicateKey(key, self._where())
            stored = record.model_copy(deep=True)
            self._write(stored)
            self._records[key] = stored
        return record

    def find(self, key: Hashable) -> T:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                raise NotFound(key, self._where())
            return record.model_copy(deep=True)

    def get(self, key: Hashable) -> Optional[T]:
        try:
            return self.find(key)
        except NotFound:
            return None

    def contains(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._records

    def update(self, key: Hashable, mutator: Callable[[T], Any]) -> T:
        """Apply ``mutator`` to a copy of the record and persist the result.

        The mutator may change the copy in place or return a replacement.
        The in-memory record is swapped only after the write succeeds.
        """
        with self._lock:
            current = self._records.get(key)
            if current is None:
                raise NotFound(key, self._where())
            candidate = current.model_copy(deep=True)
            replacement = mutator(candidate)
            if replacement is not None:
                candidate = replacement
            if self._key_of(candidate) != key:
                raise ValueError(f"Mutator changed record key {key!r} to {self._key_of(candidate)!r}")
            self._write(candidate)
            self._records[key] = candidate
            return candidate.model_copy(deep=True)

    def remove(self, key: Hashable) -> None:
        with self._lock:
            if key not in self._records:
                raise NotFound(key, self._where())
            path = self._path_for(key)
            try:
                path.unlink()
            except FileNotFoundError:
                logger.warning("Record file %s already gone", path)
            except OSError as exc:
                raise StorageError(f"Cannot remove {path}: {exc}") from exc
            try:
                fsync_directory(self.location)
            except OSError as exc:
                raise StorageError(f"Cannot sync removal of {path}: {exc}") from exc
            del self._records[key]

    def iterate(self) -> list[T]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._records.values()]

    def keys(self) -> list[Hashable]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: object) -> bool:
        return self.contains(key)  # type: ignore[arg-type]
