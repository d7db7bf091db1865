"""Chat session composition root and command-line client."""
import signal
import sys
import threading
from typing import Callable, Optional

from chatsync import settings
from chatsync.checkpoint import SyncCheckpoint
from chatsync.connection_manager import ConnectionManager
from chatsync.credentials import CredentialProvider
from chatsync.health_client import HealthCheckClient
from chatsync.logging_conf import logger
from chatsync.message_store import MessageStore, create_message_store
from chatsync.models import ConnectionStatus, Message, SyncState
from chatsync.network_monitor import NetworkMonitor, ProbeNetworkMonitor
from chatsync.queue.models import DEFAULT_PRIORITY
from chatsync.queue.spool_queue import OfflineQueueManager
from chatsync.sync_coordinator import SyncCoordinator


def build_network_monitor() -> NetworkMonitor:
    """Probe-based monitor when a probe URL is configured, else always online."""
    if settings.NETWORK_PROBE_URL:
        return ProbeNetworkMonitor()
    return NetworkMonitor(online=True)


class ChatSession:
    """Everything a signed-in user needs, created at sign-in and dropped at sign-out.

    Extra keyword arguments are passed through to :class:`ConnectionManager`.
    """

    def __init__(
        self,
        store: Optional[MessageStore] = None,
        network_monitor: Optional[NetworkMonitor] = None,
        credentials: Optional[CredentialProvider] = None,
        queue_dir=None,
        checkpoint_dir=None,
        coordinator_options: Optional[dict] = None,
        **connection_options,
    ):
        self.store = store or create_message_store()
        self.network_monitor = network_monitor or build_network_monitor()
        self.credentials = credentials or CredentialProvider()
        self.queue_dir = queue_dir
        self.checkpoint_dir = checkpoint_dir
        self.coordinator_options = coordinator_options or {}
        self.connection_options = connection_options

        self.connection: Optional[ConnectionManager] = None
        self.queue: Optional[OfflineQueueManager] = None
        self.coordinator: Optional[SyncCoordinator] = None

    @property
    def signed_in(self) -> bool:
        return self.coordinator is not None

    def sign_in(self, token: str) -> None:
        if self.signed_in:
            raise RuntimeError("Session is already signed in")
        if not token:
            raise ValueError("sign_in() requires a token")

        self.credentials.set_token(token)
        options = dict(self.connection_options)
        if "health_check" not in options and settings.HEALTH_CHECK_ENABLED:
            options["health_check"] = HealthCheckClient(options.get("url") or settings.WS_URL)

        self.connection = ConnectionManager(
            network_monitor=self.network_monitor,
            credential_provider=self.credentials,
            **options,
        )
        self.queue = OfflineQueueManager(spool_dir=self.queue_dir)
        self.coordinator = SyncCoordinator(
            self.connection,
            self.queue,
            self.store,
            network_monitor=self.network_monitor,
            checkpoint=SyncCheckpoint(self.checkpoint_dir),
            **self.coordinator_options,
        )

        self.network_monitor.start()
        self.coordinator.start()
        self.connection.initialize(token)
        logger.info(f"Signed in as device {self.connection.device_id}")

    def sign_out(self) -> None:
        if not self.signed_in:
            return
        self.coordinator.stop()
        self.connection.dispose()
        self.network_monitor.stop()
        self.credentials.set_token(None)
        close = getattr(self.store, "close", None)
        if close is not None:
            close()
        self.coordinator = None
        self.connection = None
        self.queue = None
        logger.info("Signed out")

    def send_message(self, conversation_id: str, content: str, priority: int = DEFAULT_PRIORITY, **fields) -> Message:
        self._require_session()
        message = Message(conversation_id=conversation_id, content=content, **fields)
        return self.coordinator.send_message(message, priority)

    def resend_message(self, conversation_id: str, message_id: str) -> Message:
        self._require_session()
        return self.coordinator.resend_message(conversation_id, message_id)

    def request_sync(self) -> bool:
        self._require_session()
        return self.coordinator.request_sync()

    def register(self, observer: Callable[[SyncState], None]) -> Callable[[], None]:
        self._require_session()
        return self.coordinator.register(observer)

    def on_status_change(self, callback: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        self._require_session()
        return self.connection.on_status_change(callback)

    def history(self, conversation_id: str):
        return self.store.get(conversation_id)

    def _require_session(self) -> None:
        if not self.signed_in:
            raise RuntimeError("Not signed in")


def log_sync_state(state: SyncState) -> None:
    logger.info(
        f"Sync state: {state.network_status.value}/{state.network_quality.value}, "
        f"queue {state.queue_size}, errors {len(state.errors)}"
        f"{', syncing' if state.is_syncing else ''}"
    )


def main():
    """Entry point."""
    try:
        settings.validate_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    if not settings.AUTH_TOKEN:
        logger.error("AUTH_TOKEN is required")
        sys.exit(1)

    logger.info("=" * 50)
    logger.info("chatsync client")
    logger.info("=" * 50)
    logger.info(f"Server: {settings.WS_URL}")
    logger.info(f"Store: {settings.MESSAGE_STORE}")
    logger.info(f"Conversation: {settings.CONVERSATION_ID or '(receive only)'}")
    logger.info("=" * 50)

    session = ChatSession()
    stop_event = threading.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    session.sign_in(settings.AUTH_TOKEN)
    session.register(log_sync_state)

    def read_stdin():
        for line in sys.stdin:
            if stop_event.is_set():
                break
            content = line.strip()
            if not content:
                continue
            if not settings.CONVERSATION_ID:
                logger.warning("CONVERSATION_ID is not set; input ignored")
                continue
            try:
                message = session.send_message(settings.CONVERSATION_ID, content)
                logger.info(f"Message {message.id}: {message.delivery_status.value}")
            except Exception as e:
                logger.error(f"Send failed: {e}")

    threading.Thread(target=read_stdin, name="stdin", daemon=True).start()

    try:
        while not stop_event.wait(1):
            pass
    finally:
        session.sign_out()


if __name__ == "__main__":
    main()
