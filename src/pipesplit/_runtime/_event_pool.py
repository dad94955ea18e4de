"""In-process event pool backing the WaitEvent/RecordEvent operators."""

from __future__ import annotations

import logging
import threading
from typing import Any

from pipesplit._errors import EventAbortedError, EventTimeoutError
from pipesplit._events import NO_EVENT

logger = logging.getLogger(__name__)


class EventPool:
    """Thread-safe set of signalled event tokens.

    ``record`` signals a token and may attach a payload; ``wait`` blocks until
    the token is signalled, then resets it and hands back the payload. Each
    record is therefore consumed by exactly one wait. ``NO_EVENT`` never
    blocks and is never stored. ``abort`` wakes every blocked wait so a run
    with a failed invocation does not hang.

    Args:
        timeout: Seconds a wait may block before raising EventTimeoutError.
            None waits forever.

    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout
        self._cond = threading.Condition()
        self._signalled: dict[int, dict[str, Any]] = {}
        self._aborted = False

    def record(self, token: int, payload: dict[str, Any] | None = None) -> None:
        if token == NO_EVENT:
            return
        with self._cond:
            if token in self._signalled:
                logger.warning(f"Event {token} recorded again before it was waited on")
            self._signalled[token] = dict(payload or {})
            self._cond.notify_all()
        logger.debug(f"Recorded event {token}")

    def wait(self, token: int) -> dict[str, Any]:
        """Block until ``token`` is recorded, then reset it.

        Returns:
            The payload attached by the matching record (empty for NO_EVENT).

        Raises:
            EventTimeoutError: If the pool timeout elapses first.
            EventAbortedError: If the pool is aborted before the token is recorded.

        """
        if token == NO_EVENT:
            return {}
        with self._cond:
            if not self._cond.wait_for(lambda: token in self._signalled or self._aborted, timeout=self.timeout):
                raise EventTimeoutError(token, self.timeout if self.timeout is not None else 0.0)
            if token not in self._signalled:
                raise EventAbortedError(token)
            payload = self._signalled.pop(token)
        logger.debug(f"Consumed event {token}")
        return payload

    def abort(self) -> None:
        """Wake every blocked wait; waits on tokens not yet recorded raise EventAbortedError."""
        with self._cond:
            self._aborted = True
            self._cond.notify_all()
        logger.debug("Event pool aborted")

    def is_signalled(self, token: int) -> bool:
        with self._cond:
            return token in self._signalled

    def pending(self) -> list[int]:
        """Tokens recorded but not yet waited on."""
        with self._cond:
            return sorted(self._signalled)

    def reset(self) -> None:
        with self._cond:
            self._signalled.clear()
            self._aborted = False
