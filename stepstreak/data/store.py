"""Aggregate persistence: key-value stores with atomic batches and per-key locks."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from types import TracebackType
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from stepstreak.core.errors import CorruptedAggregate
from stepstreak.data.encryption import decrypt_payload, encrypt_payload

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_SAFE_KEY_RE = re.compile(r"^[a-z_]+(/[0-9A-Za-z_-]+)?$")


class AggregateStore(ABC):
    """Durable key-value storage for aggregates.

    Values are JSON-compatible payloads. Every write goes through _write(),
    which applies a batch of changes atomically: all of them or none.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the stored payload for key, or None."""

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Sorted keys starting with prefix."""

    @abstractmethod
    def _write(self, changes: dict[str, Any | None]) -> None:
        """Apply a batch atomically; a None value deletes the key."""

    def put(self, key: str, value: Any) -> None:
        self._write({key: value})

    def delete(self, key: str) -> None:
        self._write({key: None})

    def transaction(self) -> StoreTransaction:
        return StoreTransaction(self)

    def lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    @asynccontextmanager
    async def locked(self, *keys: str) -> AsyncIterator[None]:
        """Hold the locks of several aggregates, acquired in sorted key order."""
        ordered = sorted(set(keys))
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lk = self.lock(key)
                await lk.acquire()
                acquired.append(lk)
            yield
        finally:
            for lk in reversed(acquired):
                lk.release()


class StoreTransaction:
    """Stages writes against a store and commits them as one batch."""

    def __init__(self, store: AggregateStore) -> None:
        self._store = store
        self._staged: dict[str, Any | None] = {}

    def get(self, key: str) -> Any | None:
        if key in self._staged:
            return self._staged[key]
        return self._store.get(key)

    def put(self, key: str, value: Any) -> None:
        self._staged[key] = value

    def delete(self, key: str) -> None:
        self._staged[key] = None

    @property
    def pending(self) -> list[str]:
        return sorted(self._staged)

    def commit(self) -> None:
        if self._staged:
            self._store._write(self._staged)
        self._staged = {}

    def __enter__(self) -> StoreTransaction:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.commit()
        else:
            self._staged = {}


class MemoryStore(AggregateStore):
    """In-process store; payloads are deep-copied on the way in and out."""

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, Any] = {}

    def get(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    def _write(self, changes: dict[str, Any | None]) -> None:
        # Serialize first so an unserializable payload rejects the whole batch.
        staged = {k: (None if v is None else json.loads(json.dumps(v, default=str))) for k, v in changes.items()}
        for key, value in staged.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value


class EncryptedFileStore(AggregateStore):
    """One age-encrypted file per aggregate under a root directory.

    Writes go to temporary files first and are then renamed into place; if a
    rename fails the batch is rolled back to the previous ciphertexts.
    """

    def __init__(self, root: Path, recipient: str, identity: str) -> None:
        super().__init__()
        self.root = root
        self._recipient = recipient
        self._identity = identity

    def _path(self, key: str) -> Path:
        # Security: keys map to paths, reject anything that could escape root
        if not _SAFE_KEY_RE.match(key):
            msg = f"Invalid store key: {key}"
            raise ValueError(msg)
        return self.root / f"{key}.age"

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return decrypt_payload(path.read_bytes(), self._identity)
        except Exception as exc:
            raise CorruptedAggregate(key, f"unreadable ciphertext: {exc}") from exc

    def keys(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        found = []
        for path in self.root.rglob("*.age"):
            key = path.relative_to(self.root).with_suffix("").as_posix()
            if key.startswith(prefix):
                found.append(key)
        return sorted(found)

    def _write(self, changes: dict[str, Any | None]) -> None:
        staged: list[tuple[Path, Path | None]] = []
        try:
            for key, value in changes.items():
                path = self._path(key)
                if value is None:
                    staged.append((path, None))
                    continue
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_name(path.name + ".tmp")
                tmp.write_bytes(encrypt_payload(value, self._recipient))
                staged.append((path, tmp))
        except Exception:
            for _, tmp in staged:
                if tmp is not None:
                    tmp.unlink(missing_ok=True)
            raise

        backups: dict[Path, bytes | None] = {
            path: (path.read_bytes() if path.exists() else None) for path, _ in staged
        }
        applied: list[Path] = []
        try:
            for path, tmp in staged:
                if tmp is None:
                    path.unlink(missing_ok=True)
                else:
                    os.replace(tmp, path)
                applied.append(path)
        except OSError:
            logger.error("Store batch failed after %d of %d writes; rolling back", len(applied), len(staged))
            for path in applied:
                previous = backups[path]
                if previous is None:
                    path.unlink(missing_ok=True)
                else:
                    path.write_bytes(previous)
            for _, tmp in staged:
                if tmp is not None:
                    tmp.unlink(missing_ok=True)
            raise


def load_model(source: AggregateStore | StoreTransaction, key: str, model: type[ModelT]) -> ModelT | None:
    """Load and validate an aggregate; invariant violations raise CorruptedAggregate."""
    payload = source.get(key)
    if payload is None:
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise CorruptedAggregate(key, str(exc)) from exc


def dump_model(value: BaseModel) -> dict[str, Any]:
    """JSON-compatible payload of an aggregate."""
    return value.model_dump(mode="json")
