"""Minimal HTTP client for the chat server's health endpoint."""
from typing import Optional
from urllib.parse import urlparse, urlunparse

import requests

from chatsync import settings
from chatsync.logging_conf import logger


def health_url_for(ws_url: str) -> str:
    """Map ``ws(s)://host/path`` to ``http(s)://host/path/health``."""
    parsed = urlparse(ws_url)
    scheme = {"ws": "http", "wss": "https"}.get(parsed.scheme, parsed.scheme)
    path = parsed.path.rstrip("/") + "/health"
    return urlunparse((scheme, parsed.netloc, path, "", "", ""))


class HealthCheckClient:
    """Checks that the chat server is reachable before a socket is opened."""

    def __init__(self, ws_url: str, timeout: Optional[float] = None):
        self.url = health_url_for(ws_url)
        self.timeout = timeout or settings.HEALTH_CHECK_TIMEOUT
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json", "Cache-Control": "no-cache"})

    def is_available(self) -> bool:
        """True if the endpoint answered at all.

        Any HTTP response counts as reachable: a 4xx/5xx still proves the host
        is up, and the handshake that follows will report the real problem.
        """
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            if response.status_code >= 500:
                logger.warning(f"Health check {self.url} answered {response.status_code}")
            return True
        except requests.exceptions.RequestException as e:
            logger.warning(f"Health check {self.url} failed: {e}")
            return False

    def close(self) -> None:
        self.session.close()
