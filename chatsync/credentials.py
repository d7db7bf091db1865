"""Bearer credential holder shared with the sign-in layer."""
import threading
from typing import Callable, List, Optional

from chatsync.logging_conf import logger

TokenCallback = Callable[[Optional[str]], None]


class CredentialProvider:
    """Holds the current token and tells subscribers when it changes."""

    def __init__(self, token: Optional[str] = None):
        self._token = token or None
        self._lock = threading.Lock()
        self._callbacks: List[TokenCallback] = []

    def get_token(self) -> Optional[str]:
        return self._token

    def set_token(self, token: Optional[str]) -> None:
        """Replace the token; an empty value means signed out."""
        token = token or None
        with self._lock:
            if token == self._token:
                return
            self._token = token
            callbacks = list(self._callbacks)

        logger.info("Credential cleared" if token is None else "Credential updated")
        for callback in callbacks:
            try:
                callback(token)
            except Exception as e:
                logger.error(f"Token change callback failed: {e}", exc_info=True)

    def on_token_change(self, callback: TokenCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe
