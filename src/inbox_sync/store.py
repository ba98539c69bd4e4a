"""
Persistent pending store: durability backstop for unconfirmed mutations.

Keys:
  pendingMessages:<conversationId>         -> list of PendingMessage
  pendingLabels:<userId>:<conversationId>  -> list of Label

The store is never the source of truth. A failing backend degrades the store
to memory for the rest of the session instead of failing the user action.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from inbox_sync.errors import StoreUnavailable
from inbox_sync.models.label import Label
from inbox_sync.models.pending import MutationState, PendingMessage

DEFAULT_STORE_PATH = Path.home() / ".inbox_sync" / "pending.json"

logger = logging.getLogger("inbox_sync.store")


def messages_key(conversation_id: str) -> str:
    return f"pendingMessages:{conversation_id}"


def labels_key(user_id: str, conversation_id: str) -> str:
    return f"pendingLabels:{user_id}:{conversation_id}"


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStore:
    """Same-session store. Does not survive a restart."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    async def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStore:
    """All keys in one JSON document, rewritten atomically (fsync + rename) on each change."""

    def __init__(self, path: Path = DEFAULT_STORE_PATH):
        self._path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailable(f"Cannot read {self._path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreUnavailable(f"{self._path} does not hold a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(data, indent=2, sort_keys=True))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write {self._path}: {e}") from e

    def _update(self, key: str, value: Any) -> None:
        data = self._read()
        if value is None:
            if key not in data:
                return
            data.pop(key)
        else:
            data[key] = value
        self._write(data)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            return (await asyncio.to_thread(self._read)).get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update, key, value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._update, key, None)

    async def keys(self) -> list[str]:
        async with self._lock:
            return list(await asyncio.to_thread(self._read))


class PendingStore:
    def __init__(self, backend: Optional[KeyValueStore] = None):
        self._backend: KeyValueStore = backend if backend is not None else JsonFileStore()
        self._memory = MemoryStore()
        self._degraded = False

    @property
    def degraded(self) -> bool:
        return self._degraded

    def _degrade(self, error: StoreUnavailable) -> None:
        if not self._degraded:
            logger.warning(f"Pending store unavailable, keeping pending state in memory: {error}")
        self._degraded = True

    async def get(self, key: str) -> Optional[Any]:
        if not self._degraded:
            try:
                return await self._backend.get(key)
            except StoreUnavailable as e:
                self._degrade(e)
        return await self._memory.get(key)

    async def set(self, key: str, value: Any) -> bool:
        """Returns True when the write reached durable storage."""
        await self._memory.set(key, value)
        if self._degraded:
            return False
        try:
            await self._backend.set(key, value)
            return True
        except StoreUnavailable as e:
            self._degrade(e)
            return False

    async def delete(self, key: str) -> bool:
        await self._memory.delete(key)
        if self._degraded:
            return False
        try:
            await self._backend.delete(key)
            return True
        except StoreUnavailable as e:
            self._degrade(e)
            return False

    async def load_messages(self, conversation_id: str) -> list[PendingMessage]:
        raw = await self.get(messages_key(conversation_id))
        records: list[PendingMessage] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                record = PendingMessage.model_validate(item)
            except ValidationError:
                logger.warning(f"Dropping unreadable pending message for {conversation_id}")
                continue
            records.append(record.model_copy(update={"state": MutationState.PERSISTED}))
        return records

    async def add_message(self, record: PendingMessage) -> bool:
        key = messages_key(record.conversation_id)
        existing = [r for r in await self.load_messages(record.conversation_id)
                    if r.correlation_id != record.correlation_id]
        existing.append(record)
        return await self.set(key, [r.model_dump(mode="json") for r in existing])

    async def remove_message(self, conversation_id: str, correlation_id: str) -> bool:
        key = messages_key(conversation_id)
        remaining = [r for r in await self.load_messages(conversation_id) if r.correlation_id != correlation_id]
        if remaining:
            return await self.set(key, [r.model_dump(mode="json") for r in remaining])
        return await self.delete(key)

    async def load_labels(self, user_id: str, conversation_id: str) -> Optional[tuple[Label, ...]]:
        raw = await self.get(labels_key(user_id, conversation_id))
        if not isinstance(raw, list):
            return None
        labels: list[Label] = []
        for item in raw:
            try:
                labels.append(Label.model_validate(item))
            except ValidationError:
                logger.warning(f"Dropping unreadable pending label for {conversation_id}")
        return tuple(labels)

    async def save_labels(self, user_id: str, conversation_id: str, labels: tuple[Label, ...]) -> bool:
        return await self.set(labels_key(user_id, conversation_id), [label.model_dump() for label in labels])

    async def clear_labels(self, user_id: str, conversation_id: str) -> bool:
        return await self.delete(labels_key(user_id, conversation_id))
