"""Sync coordinator: reconciles network, connection and offline queue."""
import threading
from collections import OrderedDict
from typing import Callable, List, Optional

from chatsync import settings
from chatsync.checkpoint import SyncCheckpoint
from chatsync.connection_manager import ConnectionManager
from chatsync.errors import CapacityExceededError, DeliveryError, NotConnectedError, StoreError
from chatsync.logging_conf import logger
from chatsync.message_store import MessageStore
from chatsync.models import (
    ConnectionQuality,
    ConnectionStatus,
    DeliveryStatus,
    Message,
    SyncError,
    SyncState,
    SyncStatus,
    WireMessage,
    utc_now,
)
from chatsync.network_monitor import NetworkMonitor
from chatsync.queue.models import DEFAULT_PRIORITY, RESEND_PRIORITY, DrainFailure, QueuedMessage
from chatsync.queue.spool_queue import OfflineQueueManager

SyncObserver = Callable[[SyncState], None]

STOP_WAIT_SECONDS = 30


def _start_daemon_thread(target: Callable[[], None]) -> None:
    threading.Thread(target=target, name="sync-pass", daemon=True).start()


class SyncCoordinator:
    """Drains the offline queue whenever the channel is usable.

    A pass is started by the connection coming up, the network coming back,
    the periodic timers, or :meth:`request_sync`. At most one pass runs at a
    time; triggers that arrive while one is running are dropped.

    Observers receive an immutable :class:`SyncState` after every change, in
    order, from whichever thread made the change. ``register`` replays the
    current snapshot immediately.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        queue: OfflineQueueManager,
        store: MessageStore,
        network_monitor: Optional[NetworkMonitor] = None,
        checkpoint: Optional[SyncCheckpoint] = None,
        timer_factory=threading.Timer,
        spawn: Callable[[Callable[[], None]], None] = _start_daemon_thread,
        batch_size: Optional[int] = None,
        auto_sync_interval: Optional[float] = None,
        error_retry_interval: Optional[float] = None,
    ):
        self.connection = connection
        self.queue = queue
        self.store = store
        self.network_monitor = network_monitor
        self.checkpoint = checkpoint
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.auto_sync_interval = auto_sync_interval if auto_sync_interval is not None else settings.AUTO_SYNC_INTERVAL
        self.error_retry_interval = (
            error_retry_interval if error_retry_interval is not None else settings.ERROR_RETRY_INTERVAL
        )
        self._timer_factory = timer_factory
        self._spawn = spawn

        # State lock: never held while calling into the connection or queue
        self._lock = threading.Lock()
        # Orders observer delivery
        self._dispatch_lock = threading.RLock()

        self._is_syncing = False
        self._last_sync_time = checkpoint.get_last_sync_time() if checkpoint else None
        self._queue_size = queue.size
        self._errors: "OrderedDict[str, SyncError]" = OrderedDict()
        self._error_seq = 0
        self._network_status = connection.status
        self._network_quality = connection.quality
        self._initial_sync_complete = False

        self._observers: List[SyncObserver] = []
        self._last_published: Optional[SyncState] = None
        self._subscriptions: List[Callable[[], None]] = []
        self._auto_timer = None
        self._retry_timer = None
        self.running = False
        self._stop_requested = threading.Event()
        self._pass_done = threading.Event()
        self._pass_done.set()

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self.running:
            logger.warning("Sync coordinator is already running")
            return
        self.running = True
        self._stop_requested.clear()

        self._subscriptions = [
            self.connection.on_status_change(self._on_connection_status),
            self.connection.on_quality_change(self._on_connection_quality),
            self.connection.on_message(self._on_inbound),
            self.queue.on_size_change(self._on_queue_size),
        ]
        if self.network_monitor is not None:
            self._subscriptions.append(self.network_monitor.subscribe(self._on_network_change))

        self._schedule("_auto_timer", self.auto_sync_interval, self._on_auto_sync_tick)
        self._schedule("_retry_timer", self.error_retry_interval, self._on_error_retry_tick)
        logger.info(
            f"Sync coordinator started (batch: {self.batch_size}, "
            f"auto sync: {self.auto_sync_interval}s, error retry: {self.error_retry_interval}s)"
        )
        self._publish()
        self.request_sync()

    def stop(self) -> None:
        """Unsubscribe, cancel timers and wait for an in-flight pass to finish its batch."""
        if not self.running:
            return
        self.running = False
        self._stop_requested.set()
        for name in ("_auto_timer", "_retry_timer"):
            timer = getattr(self, name)
            if timer is not None:
                timer.cancel()
                setattr(self, name, None)
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

        if not self._pass_done.wait(timeout=STOP_WAIT_SECONDS):
            logger.warning("Sync pass did not finish before stop timeout")
        logger.info("Sync coordinator stopped")

    # -- observers ----------------------------------------------------------

    def register(self, observer: SyncObserver) -> Callable[[], None]:
        """Add an observer and immediately replay the current snapshot to it."""
        with self._dispatch_lock:
            self._observers.append(observer)
            self._notify(observer, self.state)

        def unregister():
            with self._dispatch_lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unregister

    @property
    def state(self) -> SyncState:
        with self._lock:
            return SyncState(
                is_syncing=self._is_syncing,
                last_sync_time=self._last_sync_time,
                queue_size=self._queue_size,
                errors=tuple(self._errors.values()),
                network_status=self._network_status,
                network_quality=self._network_quality,
                is_initial_sync_complete=self._initial_sync_complete,
            )

    # -- sync passes ----------------------------------------------------------

    def request_sync(self) -> bool:
        """Start a pass unless one is running or the channel is unusable.

        Returns True when a pass was started.
        """
        if not self.running or not self._channel_usable():
            return False
        with self._lock:
            if self._is_syncing:
                logger.debug("Sync already in progress")
                return False
            self._is_syncing = True
            self._pass_done.clear()
        self._publish()
        try:
            self._spawn(self._run_pass)
        except Exception as e:
            logger.error(f"Could not start sync pass: {e}", exc_info=True)
            self._finish_pass(0)
            return False
        return True

    def _run_pass(self) -> None:
        attempted = set()
        succeeded = 0
        try:
            while not self._stop_requested.is_set():
                result = self.queue.drain(self._deliver, self.batch_size, skip=attempted)
                if result.skipped or result.processed == 0:
                    break
                for entry in result.delivered:
                    attempted.add(entry.message_id)
                    self._mark_delivered(entry)
                for failure in result.failures:
                    attempted.add(failure.entry.message_id)
                    self._record_failure(failure)
                succeeded += result.succeeded
                if result.interrupted or not self.connection.is_connected:
                    logger.info("Connection lost during sync; ending pass")
                    break
        except Exception as e:
            logger.error(f"Sync pass failed: {e}", exc_info=True)
            self._add_error(SyncError(details=str(e)))
        finally:
            self._finish_pass(succeeded)

    def _finish_pass(self, succeeded: int) -> None:
        synced_at = utc_now() if succeeded else None
        with self._lock:
            self._is_syncing = False
            self._initial_sync_complete = True
            if synced_at is not None:
                self._last_sync_time = synced_at
        if synced_at is not None:
            logger.info(f"Sync pass delivered {succeeded} message(s)")
            if self.checkpoint is not None:
                self.checkpoint.save_sync_time(synced_at)
        self._pass_done.set()
        self._publish()

    def _deliver(self, entry: QueuedMessage) -> bool:
        """Hand one entry to the channel.

        A channel that is down stops the drain without charging an attempt;
        a frame refused while the channel stays up is a delivery failure.
        """
        if not self.connection.is_connected:
            raise NotConnectedError("Channel closed during sync")
        try:
            self.connection.send(entry.message)
        except NotConnectedError as e:
            if not self.connection.is_connected:
                raise
            raise DeliveryError(entry.message_id, str(e)) from e
        return True

    def _mark_delivered(self, entry: QueuedMessage) -> None:
        message = entry.message
        try:
            current = self.store.find(message.conversation_id, message.id)
            status = DeliveryStatus.DELIVERED
            if current is not None and not current.delivery_status.can_advance_to(status):
                status = current.delivery_status
            self.store.update_status(
                message.conversation_id, message.id,
                delivery_status=status, sync_status=SyncStatus.SYNCED,
            )
        except StoreError as e:
            logger.error(f"Could not mark {message.id} delivered: {e}")
        self._remove_error(message.id)

    def _record_failure(self, failure: DrainFailure) -> None:
        entry = failure.entry
        message = entry.message
        self._add_error(SyncError(details=failure.details, message_id=entry.message_id, attempts=entry.attempts))
        if entry.exhausted:
            logger.warning(
                f"Message {message.id} failed after {entry.attempts} attempts; waiting for resend",
                extra={"message_id": message.id, "conversation_id": message.conversation_id},
            )
            try:
                self.store.update_status(
                    message.conversation_id, message.id,
                    delivery_status=DeliveryStatus.FAILED, sync_status=SyncStatus.FAILED,
                )
            except StoreError as e:
                logger.error(f"Could not mark {message.id} failed: {e}")

    # -- user operations ----------------------------------------------------

    def send_message(self, message: Message, priority: int = DEFAULT_PRIORITY) -> Message:
        """Persist ``message`` and deliver it now, or queue it for the next pass.

        Raises:
            CapacityExceededError: the message could not be queued; it is stored as failed
        """
        message = message.with_changes(delivery_status=DeliveryStatus.SENDING, sync_status=SyncStatus.PENDING)
        self.store.append(message.conversation_id, message)

        # Older queued messages go first; a direct send would overtake them
        if self._channel_usable() and self.queue.pending_size == 0:
            try:
                self.connection.send(message)
            except NotConnectedError as e:
                logger.info(f"Direct send of {message.id} failed ({e}); queueing")
            else:
                logger.debug(f"Sent message {message.id}")
                return self._update(message, delivery_status=DeliveryStatus.SENT, sync_status=SyncStatus.SYNCED)

        return self._enqueue(message, priority)

    def resend_message(self, conversation_id: str, message_id: str) -> Message:
        """Retry a failed or still-pending message at raised priority.

        Raises:
            ValueError: the message is unknown or not eligible for resend
        """
        message = self.store.find(conversation_id, message_id)
        if message is None:
            raise ValueError(f"Unknown message {message_id} in {conversation_id}")
        if message.delivery_status is not DeliveryStatus.FAILED and message.sync_status is not SyncStatus.PENDING:
            raise ValueError(f"Message {message_id} is {message.delivery_status.value}; nothing to resend")

        logger.info(f"Resending message {message_id}")
        message = self._update(message, delivery_status=DeliveryStatus.SENDING, sync_status=SyncStatus.SYNCING)
        self.clear_error(message_id)

        if self.queue.get(message_id) is None and self._channel_usable() and self.queue.pending_size == 0:
            try:
                self.connection.send(message)
            except NotConnectedError as e:
                logger.info(f"Direct resend of {message_id} failed ({e}); queueing")
            else:
                return self._update(message, delivery_status=DeliveryStatus.SENT, sync_status=SyncStatus.SYNCED)

        queued = message.with_changes(delivery_status=DeliveryStatus.PENDING, sync_status=SyncStatus.PENDING)
        if self.queue.requeue(message_id, RESEND_PRIORITY, queued) is not None:
            message = self._update(message, delivery_status=DeliveryStatus.PENDING, sync_status=SyncStatus.PENDING)
        else:
            message = self._enqueue(message, RESEND_PRIORITY)
        self.request_sync()
        return message

    def clear_errors(self) -> None:
        with self._lock:
            self._errors.clear()
        self._publish()

    def clear_error(self, message_id: str) -> None:
        self._remove_error(message_id)

    # -- collaborator events --------------------------------------------------

    def _on_connection_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            self._network_status = status
        self._publish()
        if status is ConnectionStatus.CONNECTED:
            self.request_sync()

    def _on_connection_quality(self, quality: ConnectionQuality) -> None:
        with self._lock:
            self._network_quality = quality
        self._publish()

    def _on_network_change(self, online: bool) -> None:
        self._publish()
        if online:
            self.request_sync()

    def _on_queue_size(self, size: int) -> None:
        with self._lock:
            self._queue_size = size
        self._publish()

    def _on_inbound(self, frame: WireMessage) -> None:
        if frame.type == "message":
            if frame.payload is None:
                logger.warning("Message frame without payload")
                return
            message = frame.payload
            try:
                self.store.append(message.conversation_id, message)
            except StoreError as e:
                logger.error(f"Could not store inbound message {message.id}: {e}")
                return
            logger.debug(f"Received message {message.id} in {message.conversation_id}")
        elif frame.type == "status":
            self._apply_status_frame(frame)
        elif frame.type == "error":
            logger.warning(
                f"Server error: {frame.metadata.get('message') or frame.metadata}",
                extra={"message_id": frame.metadata.get("messageId")},
            )

    def _apply_status_frame(self, frame: WireMessage) -> None:
        payload = frame.payload
        meta = frame.metadata
        message_id = meta.get("messageId") or (payload.id if payload else None)
        conversation_id = meta.get("sessionId") or (payload.conversation_id if payload else None)
        raw_status = meta.get("status") or (payload.delivery_status.value if payload else None)
        if not (message_id and conversation_id and raw_status):
            logger.warning(f"Incomplete status frame: {meta}")
            return
        try:
            status = DeliveryStatus(raw_status)
        except ValueError:
            logger.warning(f"Unknown delivery status {raw_status!r} for {message_id}")
            return

        try:
            current = self.store.find(conversation_id, message_id)
            if current is None:
                logger.debug(f"Status for unknown message {message_id}")
                return
            if not current.delivery_status.can_advance_to(status):
                logger.debug(f"Ignoring {status.value} for {message_id} (already {current.delivery_status.value})")
                return
            self.store.update_status(conversation_id, message_id, delivery_status=status)
        except StoreError as e:
            logger.error(f"Could not apply status to {message_id}: {e}")

    # -- timers -------------------------------------------------------------

    def _on_auto_sync_tick(self) -> None:
        self._auto_timer = None
        if not self.running:
            return
        self._schedule("_auto_timer", self.auto_sync_interval, self._on_auto_sync_tick)
        if self.queue.pending_size > 0:
            self.request_sync()

    def _on_error_retry_tick(self) -> None:
        self._retry_timer = None
        if not self.running:
            return
        self._schedule("_retry_timer", self.error_retry_interval, self._on_error_retry_tick)
        with self._lock:
            has_errors = bool(self._errors)
        if has_errors and self.queue.pending_size > 0:
            logger.info("Retrying messages with delivery errors")
            self.request_sync()

    def _schedule(self, name: str, interval: float, callback: Callable[[], None]) -> None:
        if interval <= 0:
            return
        timer = self._timer_factory(interval, callback)
        timer.daemon = True
        timer.start()
        setattr(self, name, timer)

    # -- helpers --------------------------------------------------------------

    def _channel_usable(self) -> bool:
        if self.network_monitor is not None and not self.network_monitor.is_online:
            return False
        return self.connection.is_connected

    def _enqueue(self, message: Message, priority: int) -> Message:
        try:
            self.queue.enqueue(message.with_changes(delivery_status=DeliveryStatus.PENDING), priority)
        except CapacityExceededError as e:
            self._update(message, delivery_status=DeliveryStatus.FAILED, sync_status=SyncStatus.FAILED)
            self._add_error(SyncError(details=str(e), message_id=message.id))
            raise
        return self._update(message, delivery_status=DeliveryStatus.PENDING, sync_status=SyncStatus.PENDING)

    def _update(self, message: Message, **changes) -> Message:
        updated = self.store.update_status(message.conversation_id, message.id, **changes)
        return updated or message.with_changes(**changes)

    def _add_error(self, error: SyncError) -> None:
        with self._lock:
            if error.message_id is not None:
                self._errors.pop(error.message_id, None)
                self._errors[error.message_id] = error
            else:
                self._error_seq += 1
                self._errors[f"_{self._error_seq}"] = error
        self._publish()

    def _remove_error(self, message_id: str) -> None:
        with self._lock:
            removed = self._errors.pop(message_id, None)
        if removed is not None:
            self._publish()

    def _publish(self) -> None:
        with self._dispatch_lock:
            snapshot = self.state
            if snapshot == self._last_published:
                return
            self._last_published = snapshot
            for observer in list(self._observers):
                self._notify(observer, snapshot)

    def _notify(self, observer: SyncObserver, snapshot: SyncState) -> None:
        try:
            observer(snapshot)
        except Exception as e:
            logger.error(f"Sync observer failed: {e}", exc_info=True)
