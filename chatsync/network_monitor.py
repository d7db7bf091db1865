"""Network availability signal consumed by the connection and sync layers."""
import threading
import time
from typing import Callable, List, Optional

import requests

from chatsync import settings
from chatsync.logging_conf import logger

NetworkCallback = Callable[[bool], None]


class NetworkMonitor:
    """Binary connectivity signal.

    Platform glue calls :meth:`report` whenever the OS reports a change;
    subscribers only hear about actual transitions.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._lock = threading.Lock()
        self._callbacks: List[NetworkCallback] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: NetworkCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def report(self, online: bool) -> None:
        with self._lock:
            if online == self._online:
                return
            self._online = online
            callbacks = list(self._callbacks)

        logger.info(f"Network {'available' if online else 'unavailable'}")
        for callback in callbacks:
            try:
                callback(online)
            except Exception as e:
                logger.error(f"Network status callback failed: {e}", exc_info=True)

    def start(self) -> None:
        """Hook for monitors that need a background thread."""

    def stop(self) -> None:
        pass


class ProbeNetworkMonitor(NetworkMonitor):
    """Polls a probe URL and reports reachability."""

    def __init__(self, probe_url: Optional[str] = None, interval: Optional[int] = None, timeout: float = 3.0):
        super().__init__(online=False)
        self.probe_url = probe_url or settings.NETWORK_PROBE_URL
        self.interval = interval or settings.NETWORK_PROBE_INTERVAL
        self.timeout = timeout
        self.running = False
        self.thread = None

    def start(self):
        """Start the probe in a background thread."""
        if self.running:
            logger.warning("Network probe is already running")
            return

        self.running = True
        self.thread = threading.Thread(target=self._run, name="network-probe", daemon=True)
        self.thread.start()
        logger.info(f"Network probe started ({self.probe_url}, interval: {self.interval}s)")

    def stop(self):
        if not self.running:
            return

        self.running = False
        if self.thread:
            self.thread.join(timeout=10)
        logger.info("Network probe stopped")

    def probe_once(self) -> bool:
        try:
            requests.head(self.probe_url, timeout=self.timeout, allow_redirects=False)
            return True
        except requests.exceptions.RequestException as e:
            logger.debug(f"Network probe failed: {e}")
            return False

    def _run(self):
        while self.running:
            try:
                self.report(self.probe_once())
            except Exception as e:
                logger.error(f"Network probe error: {e}", exc_info=True)

            for _ in range(self.interval):
                if not self.running:
                    break
                time.sleep(1)
