"""Connection manager for the realtime chat channel."""
import random
import threading
import time
import uuid
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from chatsync import settings
from chatsync.credentials import CredentialProvider
from chatsync.errors import AuthenticationError, ConnectivityError, NotConnectedError, SerializationError
from chatsync.health_client import HealthCheckClient
from chatsync.logging_conf import logger
from chatsync.models import (
    ConnectionQuality,
    ConnectionState,
    ConnectionStatus,
    Message,
    WireMessage,
)
from chatsync.network_monitor import NetworkMonitor
from chatsync.transport import WebSocketChannel

PING_HISTORY_SIZE = 10
POOR_LATENCY_MS = 1000
FAIR_LATENCY_MS = 500
GOOD_LATENCY_MS = 200
POOR_PACKET_LOSS = 0.5

Event = Tuple[str, Any]


def calculate_backoff_delay(
    attempt: int,
    base_interval: float,
    max_interval: float,
    factor: float,
    use_exponential: bool = True,
    jitter: float = 1.0,
) -> float:
    """Seconds to wait before reconnect attempt number ``attempt`` (0-based)."""
    if not use_exponential:
        return min(base_interval * (attempt + 1), max_interval)
    return min(base_interval * (factor ** attempt) * jitter, max_interval)


def default_jitter() -> float:
    return random.uniform(1 - settings.BACKOFF_JITTER, 1 + settings.BACKOFF_JITTER)


def classify_quality(
    status: ConnectionStatus,
    latency_ms: Optional[float],
    packet_loss_ratio: float,
) -> ConnectionQuality:
    if status is not ConnectionStatus.CONNECTED:
        return ConnectionQuality.UNKNOWN
    if packet_loss_ratio > POOR_PACKET_LOSS:
        return ConnectionQuality.POOR
    if latency_ms is None:
        return ConnectionQuality.UNKNOWN
    if latency_ms > POOR_LATENCY_MS:
        return ConnectionQuality.POOR
    if latency_ms > FAIR_LATENCY_MS:
        return ConnectionQuality.FAIR
    if latency_ms > GOOD_LATENCY_MS:
        return ConnectionQuality.GOOD
    return ConnectionQuality.EXCELLENT


def _start_daemon_thread(target: Callable[[], None]) -> None:
    threading.Thread(target=target, name="ws-connect", daemon=True).start()


class ConnectionManager:
    """Keeps exactly one logical channel to the chat server alive.

    Transport faults never reach callers: a failed handshake, a dropped socket
    or a run of missed pongs all end in ``disconnected`` followed by a
    backoff-scheduled reconnect. The only error a caller sees is
    ``NotConnectedError`` from :meth:`send`.

    Every connect attempt gets a generation number. Callbacks from an older
    channel (a late handshake, a reader noticing a close we initiated) carry
    a stale generation and are ignored.

    Listeners are called while the manager's lock is held, so they observe
    transitions in order; a listener must not block on another thread that
    needs this manager.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        device_id: Optional[str] = None,
        network_monitor: Optional[NetworkMonitor] = None,
        credential_provider: Optional[CredentialProvider] = None,
        health_check: Optional[HealthCheckClient] = None,
        channel_factory: Callable[..., WebSocketChannel] = WebSocketChannel,
        timer_factory: Callable[..., Any] = threading.Timer,
        spawn: Callable[[Callable[[], None]], None] = _start_daemon_thread,
        jitter: Callable[[], float] = default_jitter,
        base_interval: Optional[float] = None,
        max_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_factor: Optional[float] = None,
        use_exponential_backoff: Optional[bool] = None,
        ping_interval: Optional[float] = None,
        pong_timeout: Optional[float] = None,
        max_missed_pongs: Optional[int] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.url = url or settings.WS_URL
        self.device_id = device_id or settings.DEVICE_ID
        self.base_interval = base_interval if base_interval is not None else settings.RECONNECT_BASE_INTERVAL
        self.max_interval = max_interval if max_interval is not None else settings.RECONNECT_MAX_INTERVAL
        self.max_attempts = max_attempts if max_attempts is not None else settings.RECONNECT_MAX_ATTEMPTS
        self.backoff_factor = backoff_factor if backoff_factor is not None else settings.BACKOFF_FACTOR
        self.use_exponential_backoff = (
            use_exponential_backoff if use_exponential_backoff is not None else settings.USE_EXPONENTIAL_BACKOFF
        )
        self.ping_interval = ping_interval if ping_interval is not None else settings.PING_INTERVAL
        self.pong_timeout = pong_timeout if pong_timeout is not None else settings.PONG_TIMEOUT
        self.max_missed_pongs = max_missed_pongs if max_missed_pongs is not None else settings.MAX_MISSED_PONGS
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.CONNECT_TIMEOUT

        self._health_check = health_check
        self._channel_factory = channel_factory
        self._timer_factory = timer_factory
        self._spawn = spawn
        self._jitter = jitter

        self._lock = threading.RLock()
        self._status = ConnectionStatus.DISCONNECTED
        self._quality = ConnectionQuality.UNKNOWN
        self._token: Optional[str] = None
        self._channel: Optional[WebSocketChannel] = None
        self._generation = 0
        self._attempt = 0
        self._last_delay: Optional[float] = None
        self._closed = True  # nothing happens until initialize()
        self._degraded = False
        self._auth_paused = False

        self._reconnect_timer = None
        self._heartbeat_timer = None
        self._pong_timer = None
        self._pending_ping: Optional[Tuple[str, float]] = None
        self._latencies: deque = deque(maxlen=PING_HISTORY_SIZE)
        self._ping_outcomes: deque = deque(maxlen=PING_HISTORY_SIZE)
        self._latency_ms: Optional[float] = None
        self._missed_pongs = 0

        self._listeners: Dict[str, List[Callable]] = {
            "status": [],
            "quality": [],
            "message": [],
            "auth_failure": [],
            "offline_mode": [],
        }

        self._network_available = network_monitor.is_online if network_monitor else True
        self._unsubscribers: List[Callable[[], None]] = []
        if network_monitor is not None:
            self._unsubscribers.append(network_monitor.subscribe(self._on_network_change))
        if credential_provider is not None:
            self._unsubscribers.append(credential_provider.on_token_change(self.update_credential))

    # -- public API -------------------------------------------------------

    def initialize(self, credential: str) -> None:
        """Start connecting with ``credential``.

        A no-op when already connected (or connecting) with the same
        credential. Also re-arms a manager stopped by :meth:`close`.
        """
        if not credential:
            raise ValueError("initialize() requires a credential")

        channel = None
        with self._lock:
            if (
                credential == self._token
                and not self._closed
                and self._status is not ConnectionStatus.DISCONNECTED
            ):
                logger.debug("Already connected with this credential")
                return
            self._token = credential
            self._closed = False
            self._auth_paused = False
            self._degraded = False
            self._attempt = 0
            events: List[Event] = []
            channel = self._detach_channel(events)
            self._dispatch(events)

        self._close_quietly(channel)
        self._connect()

    def update_credential(self, token: Optional[str]) -> None:
        """Swap the bearer token; an empty token disconnects and stops reconnecting."""
        token = token or None
        with self._lock:
            if token == self._token:
                return
            events: List[Event] = []
            self._token = token
            self._cancel_timer("_reconnect_timer")
            channel = self._detach_channel(events)
            if token is None:
                logger.info("Credential cleared; disconnecting")
            else:
                logger.info("Credential changed; reconnecting")
                self._auth_paused = False
                self._degraded = False
                self._attempt = 0
            self._dispatch(events)

        self._close_quietly(channel)
        if token is not None:
            self._connect()

    def send(self, payload: Union[WireMessage, Message]) -> None:
        """Write one frame now.

        Raises:
            NotConnectedError: the channel is not connected; the caller queues
        """
        frame = payload if isinstance(payload, WireMessage) else WireMessage(type="message", payload=payload)
        with self._lock:
            channel = self._channel
            generation = self._generation
            if self._status is not ConnectionStatus.CONNECTED or channel is None:
                raise NotConnectedError("Not connected")

        try:
            channel.send(frame.to_json())
        except ConnectivityError as e:
            self._on_transport_fault(generation, e)
            raise NotConnectedError(f"Connection lost while sending: {e}") from e

    def close(self) -> None:
        """Tear the channel down and stop reconnecting until initialize()."""
        with self._lock:
            self._closed = True
            self._cancel_timer("_reconnect_timer")
            self._attempt = 0
            self._degraded = False
            events: List[Event] = []
            channel = self._detach_channel(events)
            self._dispatch(events)
        self._close_quietly(channel)
        logger.info("Connection closed")

    def dispose(self) -> None:
        """close() and detach from the network monitor and credential provider."""
        self.close()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        if self._health_check is not None:
            self._health_check.close()

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    @property
    def quality(self) -> ConnectionQuality:
        return self._quality

    @property
    def latency_ms(self) -> float:
        return round(self._latency_ms or 0.0, 1)

    @property
    def packet_loss_ratio(self) -> float:
        with self._lock:
            return self._loss_ratio()

    @property
    def reconnect_attempt(self) -> int:
        return self._attempt

    @property
    def last_reconnect_delay(self) -> Optional[float]:
        return self._last_delay

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return ConnectionState(
                status=self._status,
                quality=self._quality,
                latency_ms=self.latency_ms,
                packet_loss_ratio=self._loss_ratio(),
                reconnect_attempt=self._attempt,
                degraded=self._degraded,
                auth_paused=self._auth_paused,
            )

    def on_status_change(self, callback: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        return self._add_listener("status", callback)

    def on_quality_change(self, callback: Callable[[ConnectionQuality], None]) -> Callable[[], None]:
        return self._add_listener("quality", callback)

    def on_message(self, callback: Callable[[WireMessage], None]) -> Callable[[], None]:
        return self._add_listener("message", callback)

    def on_auth_failure(self, callback: Callable[[AuthenticationError], None]) -> Callable[[], None]:
        return self._add_listener("auth_failure", callback)

    def on_offline_mode(self, callback: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self._add_listener("offline_mode", callback)

    # -- connecting ---------------------------------------------------------

    def _connect(self) -> None:
        with self._lock:
            if self._closed or not self._token or self._auth_paused:
                return
            if self._status is not ConnectionStatus.DISCONNECTED:
                return
            if not self._network_available:
                logger.info("Network unavailable; waiting for connectivity before connecting")
                return
            self._cancel_timer("_reconnect_timer")
            self._generation += 1
            generation = self._generation
            token = self._token
            events: List[Event] = []
            self._set_status(ConnectionStatus.CONNECTING, events)
            self._dispatch(events)

        logger.info(f"Connecting to {self.url}")
        self._spawn(lambda: self._open_channel(generation, token))

    def _open_channel(self, generation: int, token: str) -> None:
        """Runs off the caller's thread: health check, then handshake."""
        try:
            if self._health_check is not None and not self._health_check.is_available():
                raise ConnectivityError("Server health check failed")
            channel = self._channel_factory(
                url=self.url,
                token=token,
                device_id=self.device_id,
                connect_timeout=self.connect_timeout,
            )
            channel.open()
        except AuthenticationError as e:
            self._on_auth_rejected(generation, e)
            return
        except Exception as e:
            self._on_connect_failed(generation, e)
            return
        self._on_connected(generation, channel)

    def _on_connected(self, generation: int, channel: WebSocketChannel) -> None:
        start_error = None
        with self._lock:
            if generation != self._generation or self._closed:
                stale = True
            else:
                stale = False
                self._channel = channel
                self._missed_pongs = 0
                self._pending_ping = None
                self._latencies.clear()
                self._ping_outcomes.clear()
                self._latency_ms = None
                try:
                    channel.start(
                        on_frame=lambda raw: self._handle_frame(generation, raw),
                        on_close=lambda error: self._on_channel_closed(generation, error),
                    )
                except ConnectivityError as e:
                    self._channel = None
                    start_error = e
                else:
                    self._attempt = 0
                    self._last_delay = None
                    self._degraded = False
                    events: List[Event] = []
                    self._set_status(ConnectionStatus.CONNECTED, events)
                    self._schedule_heartbeat()
                    logger.info(f"Connected to {self.url}")
                    self._dispatch(events)

        if start_error is not None:
            self._close_quietly(channel)
            self._on_connect_failed(generation, start_error)
            return
        if stale:
            logger.debug("Discarding channel from a superseded connect attempt")
            self._close_quietly(channel)
            return
        self._send_ping()

    def _on_connect_failed(self, generation: int, error: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.warning(f"Connect attempt failed: {error}")
            events: List[Event] = []
            self._set_status(ConnectionStatus.DISCONNECTED, events)
            self._schedule_reconnect(events)
            self._dispatch(events)

    def _on_auth_rejected(self, generation: int, error: AuthenticationError) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.error(f"{error}; reconnect paused until a new credential arrives")
            self._auth_paused = True
            events: List[Event] = []
            self._set_status(ConnectionStatus.DISCONNECTED, events)
            events.append(("auth_failure", error))
            self._dispatch(events)

    def _on_channel_closed(self, generation: int, error: Optional[Exception]) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.warning(f"Channel closed by peer: {error or 'no reason given'}")
            events: List[Event] = []
            self._detach_channel(events)
            self._schedule_reconnect(events)
            self._dispatch(events)

    def _on_transport_fault(self, generation: int, error: Exception) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.warning(f"Transport fault: {error}")
            events: List[Event] = []
            channel = self._detach_channel(events)
            self._schedule_reconnect(events)
            self._dispatch(events)
        self._close_quietly(channel)

    def _schedule_reconnect(self, events: List[Event]) -> None:
        """Arm the backoff timer. Caller holds the lock."""
        if self._closed or not self._token or self._auth_paused:
            return
        if not self._network_available:
            logger.info("Network unavailable; reconnect deferred until it returns")
            return
        if self.max_attempts and self._attempt >= self.max_attempts:
            if not self._degraded:
                self._degraded = True
                logger.warning(
                    f"Giving up after {self._attempt} reconnect attempts; "
                    "waiting for the network to come back"
                )
                events.append(("offline_mode", self._snapshot()))
            return

        delay = calculate_backoff_delay(
            self._attempt,
            self.base_interval,
            self.max_interval,
            self.backoff_factor,
            self.use_exponential_backoff,
            self._jitter(),
        )
        self._attempt += 1
        self._last_delay = delay
        logger.info(
            f"Reconnecting in {delay:.1f}s "
            f"(attempt {self._attempt}/{self.max_attempts or 'unlimited'})"
        )
        self._cancel_timer("_reconnect_timer")
        self._reconnect_timer = self._start_timer(delay, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        with self._lock:
            self._reconnect_timer = None
        self._connect()

    def _on_network_change(self, online: bool) -> None:
        reconnect = False
        channel = None
        with self._lock:
            self._network_available = online
            events: List[Event] = []
            if online:
                if not self._closed and self._token and not self._auth_paused:
                    if self._status is ConnectionStatus.DISCONNECTED:
                        logger.info("Network restored; reconnecting")
                        self._attempt = 0
                        self._degraded = False
                        self._cancel_timer("_reconnect_timer")
                        reconnect = True
            else:
                self._cancel_timer("_reconnect_timer")
                if self._status is not ConnectionStatus.DISCONNECTED:
                    logger.info("Network lost; dropping channel")
                    channel = self._detach_channel(events)
            self._dispatch(events)

        self._close_quietly(channel)
        if reconnect:
            self._connect()

    # -- frames and heartbeat ----------------------------------------------

    def _handle_frame(self, generation: int, raw) -> None:
        try:
            frame = WireMessage.from_json(raw)
        except SerializationError as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return

        if frame.type == "pong":
            self._handle_pong(generation, frame)
        elif frame.type == "ping":
            pong = WireMessage(type="pong", metadata={"pingId": frame.metadata.get("pingId")})
            try:
                self.send(pong)
            except NotConnectedError:
                pass
        else:
            with self._lock:
                if generation != self._generation:
                    return
                self._dispatch([("message", frame)])

    def _send_ping(self) -> None:
        ping_id = uuid.uuid4().hex[:8]
        with self._lock:
            channel = self._channel
            generation = self._generation
            if self._status is not ConnectionStatus.CONNECTED or channel is None:
                return
            if self._pending_ping is not None:
                # The previous ping is still waiting on its own timeout
                return
            self._pending_ping = (ping_id, time.monotonic())
            self._cancel_timer("_pong_timer")
            self._pong_timer = self._start_timer(self.pong_timeout, lambda: self._on_pong_timeout(ping_id))

        frame = WireMessage(type="ping", metadata={"pingId": ping_id, "deviceId": self.device_id})
        try:
            channel.send(frame.to_json())
        except ConnectivityError as e:
            self._on_transport_fault(generation, e)

    def _handle_pong(self, generation: int, frame: WireMessage) -> None:
        with self._lock:
            pending = self._pending_ping
            if generation != self._generation or pending is None:
                return
            ping_id, sent_at = pending
            pong_id = frame.metadata.get("pingId")
            if pong_id is not None and pong_id != ping_id:
                logger.debug(f"Ignoring pong for unknown ping {pong_id}")
                return
            self._pending_ping = None
            self._cancel_timer("_pong_timer")

            self._latencies.append((time.monotonic() - sent_at) * 1000)
            self._latency_ms = sum(self._latencies) / len(self._latencies)
            self._ping_outcomes.append(True)
            self._missed_pongs = 0
            logger.debug(f"Heartbeat latency {self._latency_ms:.0f}ms")

            events: List[Event] = []
            self._refresh_quality(events)
            self._dispatch(events)

    def _on_pong_timeout(self, ping_id: str) -> None:
        channel = None
        with self._lock:
            self._pong_timer = None
            if self._pending_ping is None or self._pending_ping[0] != ping_id:
                return
            self._pending_ping = None
            self._ping_outcomes.append(False)
            self._missed_pongs += 1
            logger.warning(
                f"No pong within {self.pong_timeout}s ({self._missed_pongs} missed in a row)"
            )
            events: List[Event] = []
            self._refresh_quality(events)
            if self._missed_pongs > self.max_missed_pongs:
                logger.warning("Heartbeat lost; forcing reconnect")
                channel = self._detach_channel(events)
                self._schedule_reconnect(events)
            self._dispatch(events)
        self._close_quietly(channel)

    def _schedule_heartbeat(self) -> None:
        self._cancel_timer("_heartbeat_timer")
        if self.ping_interval > 0:
            self._heartbeat_timer = self._start_timer(self.ping_interval, self._on_heartbeat)

    def _on_heartbeat(self) -> None:
        with self._lock:
            self._heartbeat_timer = None
            if self._status is not ConnectionStatus.CONNECTED:
                return
            self._schedule_heartbeat()
        self._send_ping()

    # -- helpers --------------------------------------------------------------

    def _detach_channel(self, events: List[Event]):
        """Forget the current channel and go to disconnected. Caller holds the lock.

        Returns the channel so the caller can close it after releasing the lock.
        """
        channel = self._channel
        self._channel = None
        self._generation += 1
        self._pending_ping = None
        self._cancel_timer("_heartbeat_timer")
        self._cancel_timer("_pong_timer")
        self._set_status(ConnectionStatus.DISCONNECTED, events)
        return channel

    def _set_status(self, status: ConnectionStatus, events: List[Event]) -> None:
        if status is self._status:
            return
        self._status = status
        events.append(("status", status))
        self._refresh_quality(events)

    def _refresh_quality(self, events: List[Event]) -> None:
        quality = classify_quality(self._status, self._latency_ms, self._loss_ratio())
        if quality is not self._quality:
            self._quality = quality
            events.append(("quality", quality))

    def _loss_ratio(self) -> float:
        if not self._ping_outcomes:
            return 0.0
        return self._ping_outcomes.count(False) / len(self._ping_outcomes)

    def _snapshot(self) -> ConnectionState:
        return ConnectionState(
            status=self._status,
            quality=self._quality,
            latency_ms=round(self._latency_ms or 0.0, 1),
            packet_loss_ratio=self._loss_ratio(),
            reconnect_attempt=self._attempt,
            degraded=self._degraded,
            auth_paused=self._auth_paused,
        )

    def _start_timer(self, delay: float, callback: Callable[[], None]):
        timer = self._timer_factory(delay, callback)
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_timer(self, name: str) -> None:
        timer = getattr(self, name)
        if timer is not None:
            timer.cancel()
            setattr(self, name, None)

    def _close_quietly(self, channel) -> None:
        if channel is None:
            return
        try:
            channel.close()
        except Exception as e:
            logger.debug(f"Error closing channel: {e}")

    def _add_listener(self, kind: str, callback: Callable) -> Callable[[], None]:
        with self._lock:
            self._listeners[kind].append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._listeners[kind]:
                    self._listeners[kind].remove(callback)

        return unsubscribe

    def _dispatch(self, events: List[Event]) -> None:
        for kind, payload in events:
            for callback in list(self._listeners[kind]):
                try:
                    callback(payload)
                except Exception as e:
                    logger.error(f"Connection {kind} listener failed: {e}", exc_info=True)
