"""Spool-directory based offline queue."""
import hashlib
import json
import os
import threading
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from chatsync import settings
from chatsync.errors import CapacityExceededError, NotConnectedError
from chatsync.logging_conf import logger
from chatsync.models import Message
from chatsync.queue.models import (
    DEFAULT_PRIORITY,
    MIN_PRIORITY,
    RESEND_PRIORITY,
    DrainFailure,
    DrainResult,
    QueuedMessage,
    clamp_priority,
)

SendFn = Callable[[QueuedMessage], bool]


class OfflineQueueManager:
    """Durable, priority-ordered queue of messages awaiting acknowledgment.

    Every entry is one ``<sha256 of message id>.msg`` JSON file in the spool directory.
    A mutation is written to disk before the in-memory index changes, and the
    index is rebuilt from disk on construction, so a restart never loses an
    accepted message.
    """

    SUFFIX = ".msg"

    def __init__(
        self,
        spool_dir: Optional[Path] = None,
        max_size: Optional[int] = None,
        demote_after: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.spool_dir: Path = Path(spool_dir or settings.QUEUE_DIR)
        self.max_size: int = max_size or settings.QUEUE_MAX_SIZE
        self.demote_after: int = demote_after if demote_after is not None else settings.QUEUE_DEMOTE_AFTER
        self.max_attempts: int = max_attempts or settings.MAX_DELIVERY_ATTEMPTS

        self.spool_dir.mkdir(parents=True, exist_ok=True)

        # Serializes every mutation of the index and the spool files
        self._lock = threading.RLock()
        # Held for a whole drain so two drains never overlap
        self._drain_lock = threading.Lock()

        self._entries: Dict[str, QueuedMessage] = {}
        self._sequence = 0
        self._size_listeners: List[Callable[[int], None]] = []
        self._sync_listeners: List[Callable[[DrainResult], None]] = []

        self._load()

    # -- public API -------------------------------------------------------

    def enqueue(self, message: Message, priority: int = DEFAULT_PRIORITY) -> QueuedMessage:
        """Persist ``message`` and accept it into the queue.

        Raises:
            CapacityExceededError: the queue already holds ``max_size`` entries
        """
        with self._lock:
            existing = self._entries.get(message.id)
            if existing is not None:
                logger.debug(f"Message {message.id} already queued")
                return existing

            if len(self._entries) >= self.max_size:
                logger.warning(
                    f"Offline queue full ({self.max_size}); rejecting {message.id}",
                    extra={"message_id": message.id, "conversation_id": message.conversation_id},
                )
                raise CapacityExceededError(self.max_size)

            self._sequence += 1
            entry = QueuedMessage.create(message, priority, self._sequence)
            self._write(entry)
            self._entries[entry.message_id] = entry

        logger.info(
            f"Queued message {message.id} (priority {entry.priority})",
            extra={"message_id": message.id, "conversation_id": message.conversation_id},
        )
        self._notify_size()
        return entry

    def drain(
        self,
        send_fn: SendFn,
        batch_size: Optional[int] = None,
        skip: Iterable[str] = (),
    ) -> DrainResult:
        """Attempt delivery of the highest-priority batch through ``send_fn``.

        ``send_fn`` returns True when the message was handed to the server.
        A False return or an exception counts as a failed attempt: the entry
        stays queued with ``attempts`` incremented by one. Past
        ``demote_after`` attempts the entry loses one priority level; at
        ``max_attempts`` it is marked exhausted and skipped by later drains
        until :meth:`requeue` is called.

        Entries whose id is in ``skip`` are left alone, which lets a caller
        run several batches in one pass without touching an entry twice.

        A ``NotConnectedError`` from ``send_fn`` means the channel went away.
        The batch stops there, untouched entries keep their attempt counts,
        and the result is flagged ``interrupted``.
        """
        batch_size = batch_size or settings.SYNC_BATCH_SIZE
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress; skipping")
            return DrainResult(skipped=True, remaining=self.size)

        skip = set(skip)
        result = DrainResult()
        try:
            with self._lock:
                batch = [
                    entry for entry in self._ordered()
                    if not entry.exhausted and entry.message_id not in skip
                ][:batch_size]

            for entry in batch:
                try:
                    delivered, details = self._attempt(send_fn, entry)
                except NotConnectedError as e:
                    logger.info(f"Channel unavailable before {entry.message_id} was sent: {e}")
                    result.interrupted = True
                    break
                result.processed += 1
                with self._lock:
                    if self._entries.get(entry.message_id) is not entry:
                        # Removed or requeued while the send was in flight
                        logger.debug(f"Entry {entry.message_id} changed during drain")
                        continue
                    if delivered:
                        self._delete(entry)
                        del self._entries[entry.message_id]
                        result.succeeded += 1
                        result.delivered.append(entry)
                    else:
                        updated = self._record_failure(entry, details)
                        result.failed += 1
                        result.failures.append(DrainFailure(entry=updated, details=details))
                        if updated.exhausted:
                            result.exhausted.append(updated)

            with self._lock:
                result.remaining = len(self._entries)
        finally:
            self._drain_lock.release()

        if result.processed:
            logger.info(
                f"Drain finished: {result.succeeded} delivered, {result.failed} failed, "
                f"{result.remaining} remaining"
            )
            self._notify_size()
        self._notify_sync_result(result)
        return result

    def requeue(
        self,
        message_id: str,
        priority: int = RESEND_PRIORITY,
        message: Optional[Message] = None,
    ) -> Optional[QueuedMessage]:
        """Reset an entry for an explicit resend. Returns None if it is not queued."""
        with self._lock:
            entry = self._entries.get(message_id)
            if entry is None:
                return None
            updated = replace(
                entry,
                message=message or entry.message,
                priority=clamp_priority(priority),
                attempts=0,
                exhausted=False,
                last_error=None,
            )
            self._write(updated)
            self._entries[message_id] = updated
        logger.info(f"Requeued message {message_id} (priority {updated.priority})")
        self._notify_size()
        return updated

    def remove(self, message_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(message_id)
            if entry is None:
                return False
            self._delete(entry)
            del self._entries[message_id]
        self._notify_size()
        return True

    def clear(self) -> None:
        with self._lock:
            for entry in list(self._entries.values()):
                self._delete(entry)
            self._entries.clear()
        logger.info("Offline queue cleared")
        self._notify_size()

    def get(self, message_id: str) -> Optional[QueuedMessage]:
        with self._lock:
            return self._entries.get(message_id)

    def entries(self) -> List[QueuedMessage]:
        """All entries in drain order."""
        with self._lock:
            return self._ordered()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def pending_size(self) -> int:
        """Entries still eligible for automatic delivery."""
        with self._lock:
            return sum(1 for entry in self._entries.values() if not entry.exhausted)

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    # -- listeners ----------------------------------------------------------

    def on_size_change(self, callback: Callable[[int], None]) -> Callable[[], None]:
        """Register a size listener; it is called right away with the current size."""
        self._size_listeners.append(callback)
        self._safe_call(callback, self.size)

        def unsubscribe():
            if callback in self._size_listeners:
                self._size_listeners.remove(callback)

        return unsubscribe

    def on_sync_result(self, callback: Callable[[DrainResult], None]) -> Callable[[], None]:
        self._sync_listeners.append(callback)

        def unsubscribe():
            if callback in self._sync_listeners:
                self._sync_listeners.remove(callback)

        return unsubscribe

    # -- internals ------------------------------------------------------------

    def _attempt(self, send_fn: SendFn, entry: QueuedMessage):
        try:
            if send_fn(entry):
                return True, None
            return False, "Transport did not accept the message"
        except NotConnectedError:
            raise
        except Exception as e:
            logger.warning(f"Delivery of {entry.message_id} raised: {e}")
            return False, str(e) or e.__class__.__name__

    def _record_failure(self, entry: QueuedMessage, details: str) -> QueuedMessage:
        attempts = entry.attempts + 1
        priority = entry.priority
        if attempts > self.demote_after:
            priority = max(MIN_PRIORITY, priority - 1)
        exhausted = attempts >= self.max_attempts
        updated = replace(
            entry,
            attempts=attempts,
            priority=priority,
            exhausted=exhausted,
            last_error=details,
        )
        self._write(updated)
        self._entries[entry.message_id] = updated
        if exhausted:
            logger.warning(
                f"Message {entry.message_id} exhausted after {attempts} attempts: {details}",
                extra={"message_id": entry.message_id},
            )
        return updated

    def _ordered(self) -> List[QueuedMessage]:
        return sorted(self._entries.values(), key=lambda e: e.sort_key)

    def _load(self) -> None:
        """Rebuild the index from the spool directory."""
        for path in sorted(self.spool_dir.glob(f"*{self.SUFFIX}")):
            try:
                with open(path, "r") as f:
                    entry = QueuedMessage.from_dict(json.load(f))
            except Exception as e:
                logger.error(f"Unreadable spool file {path.name}: {e}")
                try:
                    os.replace(path, path.with_suffix(".corrupt"))
                except OSError:
                    pass
                continue
            self._entries[entry.message_id] = entry
            self._sequence = max(self._sequence, entry.sequence)

        if self._entries:
            logger.info(f"Loaded {len(self._entries)} queued messages from {self.spool_dir}")

    def _path_for(self, message_id: str) -> Path:
        return self.spool_dir / f"{self._spool_name(message_id)}{self.SUFFIX}"

    def _write(self, entry: QueuedMessage) -> None:
        """Atomically write one entry; raises if the write does not land."""
        path = self._path_for(entry.message_id)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(entry.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except Exception as e:
            logger.error(f"Failed to persist queued message {entry.message_id}: {e}", exc_info=True)
            raise

    def _delete(self, entry: QueuedMessage) -> None:
        try:
            self._path_for(entry.message_id).unlink(missing_ok=True)
        except Exception as e:
            logger.error(f"Failed to delete spool file for {entry.message_id}: {e}")

    def _spool_name(self, message_id: str) -> str:
        """One filename per message id; distinct ids never share a file."""
        return hashlib.sha256(message_id.encode("utf-8")).hexdigest()

    def _notify_size(self) -> None:
        size = self.size
        for callback in list(self._size_listeners):
            self._safe_call(callback, size)

    def _notify_sync_result(self, result: DrainResult) -> None:
        for callback in list(self._sync_listeners):
            self._safe_call(callback, result)

    def _safe_call(self, callback, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Queue listener failed: {e}", exc_info=True)
