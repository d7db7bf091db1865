"""WebSocket channel carrying one JSON frame per text message."""
import threading
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.sync.client import connect

from chatsync import settings
from chatsync.errors import AuthenticationError, ConnectivityError, NotConnectedError
from chatsync.logging_conf import logger

AUTH_REJECTED_STATUSES = (401, 403)

FrameHandler = Callable[[Any], None]
CloseHandler = Callable[[Optional[Exception]], None]


class WebSocketChannel:
    """One physical WebSocket connection.

    The channel knows nothing about reconnecting: it opens once, reads frames
    on a daemon thread until the socket closes, and reports the close exactly
    once. The connection manager creates a fresh channel for every attempt.
    """

    def __init__(
        self,
        url: str,
        token: str,
        device_id: str,
        api_version: Optional[str] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.url = url
        self.token = token
        self.device_id = device_id
        self.api_version = api_version or settings.API_VERSION
        self.connect_timeout = connect_timeout or settings.CONNECT_TIMEOUT
        self._ws = None
        self._reader: Optional[threading.Thread] = None

    @property
    def handshake_url(self) -> str:
        """Channel URL with token, deviceId and version query parameters."""
        parsed = urlparse(self.url)
        query = dict(parse_qsl(parsed.query))
        query.update({"token": self.token, "deviceId": self.device_id, "version": self.api_version})
        return urlunparse(parsed._replace(query=urlencode(query)))

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "X-Device-Id": self.device_id}

    def open(self) -> None:
        """Perform the handshake. Blocks for at most ``connect_timeout`` seconds.

        Raises:
            AuthenticationError: the server answered the upgrade with 401/403
            ConnectivityError: any other handshake or socket failure
        """
        try:
            self._ws = connect(
                self.handshake_url,
                additional_headers=self.headers,
                open_timeout=self.connect_timeout,
                ping_interval=None,  # heartbeats are application-level frames
                close_timeout=self.connect_timeout,
            )
        except InvalidStatus as e:
            status_code = e.response.status_code
            if status_code in AUTH_REJECTED_STATUSES:
                raise AuthenticationError(f"Server rejected credential (HTTP {status_code})", status_code) from e
            raise ConnectivityError(f"Handshake rejected (HTTP {status_code})") from e
        except (WebSocketException, OSError) as e:
            raise ConnectivityError(f"Could not connect to {self.url}: {e}") from e

    def start(self, on_frame: FrameHandler, on_close: CloseHandler) -> None:
        """Start the reader thread."""
        if self._ws is None:
            raise NotConnectedError("Channel is not open")
        self._reader = threading.Thread(
            target=self._read_loop, args=(on_frame, on_close), name="ws-reader", daemon=True
        )
        try:
            self._reader.start()
        except RuntimeError as e:
            self._reader = None
            raise ConnectivityError(f"Could not start reader thread: {e}") from e

    def send(self, text: str) -> None:
        ws = self._ws
        if ws is None:
            raise NotConnectedError("Channel is not open")
        try:
            ws.send(text)
        except (ConnectionClosed, OSError) as e:
            raise ConnectivityError(f"Send failed: {e}") from e

    def close(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            ws.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")

    def _read_loop(self, on_frame: FrameHandler, on_close: CloseHandler) -> None:
        error: Optional[Exception] = None
        try:
            for raw in self._ws:
                on_frame(raw)
        except ConnectionClosed as e:
            error = e
            logger.warning(f"WebSocket closed: {e}")
        except Exception as e:
            error = e
            logger.error(f"WebSocket reader failed: {e}", exc_info=True)
        finally:
            self._ws = None
            on_close(error)
