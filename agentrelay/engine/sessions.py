"""Session registry and cancellation tokens.

Each running agent owns one CancelToken. The registry maps session ids
to tokens so that a stop request arriving on a different HTTP
connection can reach the run. Entries are removed exactly once: either
by the run's own cleanup or by ``cancel()``, whichever comes first.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import Callable

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return uuid.uuid4().hex[:10]


class CancelToken:
    """One-shot cancellation signal shared between a run and its stopper.

    ``cancel()`` is idempotent. Callbacks registered with ``add_callback``
    run once on the first cancel, or immediately if already cancelled.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Fire the token. Returns False if it had already fired."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        self._event.set()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.warning("Cancel callback failed", exc_info=True)
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    async def wait(self) -> None:
        await self._event.wait()


class SessionRegistry:
    """Thread-safe map of session id -> CancelToken."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._tokens: dict[str, CancelToken] = {}
        self._lock = threading.Lock()

    def register(self, session_id: str, token: CancelToken) -> None:
        with self._lock:
            self._tokens[session_id] = token
        logger.debug("Session registered %s/%s", self._name, session_id)

    def cancel(self, session_id: str) -> bool:
        """Remove and cancel a session. False if the id is unknown."""
        with self._lock:
            token = self._tokens.pop(session_id, None)
        if token is None:
            return False
        token.cancel()
        logger.info("Session cancelled %s/%s", self._name, session_id)
        return True

    def unregister(self, session_id: str) -> None:
        with self._lock:
            removed = self._tokens.pop(session_id, None)
        if removed is not None:
            logger.debug("Session unregistered %s/%s", self._name, session_id)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
