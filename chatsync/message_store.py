"""Message stores: the durable, per-conversation record of every message."""
import json
import os
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from chatsync import settings
from chatsync.errors import StoreError
from chatsync.logging_conf import logger
from chatsync.models import Message


class MessageStore(Protocol):
    def append(self, conversation_id: str, message: Message) -> Message: ...

    def get(self, conversation_id: str) -> List[Message]: ...

    def find(self, conversation_id: str, message_id: str) -> Optional[Message]: ...

    def update_status(self, conversation_id: str, message_id: str, **changes) -> Optional[Message]: ...


class MemoryMessageStore:
    """Process-local store. Appending an id that already exists is a no-op."""

    def __init__(self):
        self._lock = threading.Lock()
        self._conversations: Dict[str, List[Message]] = {}

    def append(self, conversation_id: str, message: Message) -> Message:
        with self._lock:
            messages = self._conversations.setdefault(conversation_id, [])
            for existing in messages:
                if existing.id == message.id:
                    return existing
            messages.append(message)
            return message

    def get(self, conversation_id: str) -> List[Message]:
        with self._lock:
            return list(self._conversations.get(conversation_id, []))

    def find(self, conversation_id: str, message_id: str) -> Optional[Message]:
        with self._lock:
            for message in self._conversations.get(conversation_id, []):
                if message.id == message_id:
                    return message
        return None

    def update_status(self, conversation_id: str, message_id: str, **changes) -> Optional[Message]:
        with self._lock:
            messages = self._conversations.get(conversation_id, [])
            for index, message in enumerate(messages):
                if message.id == message_id:
                    updated = message.with_changes(**changes)
                    messages[index] = updated
                    return updated
        return None


class FileMessageStore:
    """One JSON document per conversation, replaced atomically on every write."""

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = Path(base_dir or settings.MESSAGE_STORE_DIR)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def append(self, conversation_id: str, message: Message) -> Message:
        with self._lock:
            messages = self._read(conversation_id)
            for existing in messages:
                if existing.id == message.id:
                    return existing
            messages.append(message)
            self._write(conversation_id, messages)
        logger.debug(f"Stored message {message.id} in {conversation_id}")
        return message

    def get(self, conversation_id: str) -> List[Message]:
        with self._lock:
            return self._read(conversation_id)

    def find(self, conversation_id: str, message_id: str) -> Optional[Message]:
        for message in self.get(conversation_id):
            if message.id == message_id:
                return message
        return None

    def update_status(self, conversation_id: str, message_id: str, **changes) -> Optional[Message]:
        with self._lock:
            messages = self._read(conversation_id)
            for index, message in enumerate(messages):
                if message.id == message_id:
                    updated = message.with_changes(**changes)
                    messages[index] = updated
                    self._write(conversation_id, messages)
                    return updated
        logger.debug(f"Status update for unknown message {message_id} in {conversation_id}")
        return None

    def _path_for(self, conversation_id: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", conversation_id)[:200]
        return self.base_dir / f"{safe}.json"

    def _read(self, conversation_id: str) -> List[Message]:
        path = self._path_for(conversation_id)
        if not path.exists():
            return []
        try:
            with open(path, "r") as f:
                data = json.load(f)
            return [Message.from_dict(item) for item in data.get("messages", [])]
        except (OSError, ValueError, KeyError) as e:
            raise StoreError(f"Cannot read conversation {conversation_id}: {e}") from e

    def _write(self, conversation_id: str, messages: List[Message]) -> None:
        path = self._path_for(conversation_id)
        tmp_path = path.with_suffix(".tmp")
        data = {
            "conversation_id": conversation_id,
            "messages": [message.to_dict() for message in messages],
        }
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to write conversation {conversation_id}: {e}", exc_info=True)
            raise StoreError(f"Cannot write conversation {conversation_id}: {e}") from e


def create_message_store(kind: Optional[str] = None) -> MessageStore:
    """Build the store named by ``kind`` (defaults to MESSAGE_STORE)."""
    kind = kind or settings.MESSAGE_STORE
    if kind == "memory":
        return MemoryMessageStore()
    if kind == "file":
        return FileMessageStore()
    if kind == "postgres":
        from chatsync.db import PostgresMessageStore

        return PostgresMessageStore()
    raise ValueError(f"Unknown message store: {kind}")
