"""Cooperative per-session cancellation for asyncio turns."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, TypeVar

from .errors import TurnCancelledError

__all__ = ["CancelToken"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cancellation signal scoped to one turn of one session.

    Supports:
    - idempotent :meth:`cancel`
    - polling via :attr:`is_cancelled` and :meth:`raise_if_cancelled`
    - callbacks via :meth:`on_cancel`
    - racing any awaitable against cancellation via :meth:`guard`

    All methods must be called from the event loop thread.
    """

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation; callbacks run once, on the first call."""
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pragma: no cover - callback isolation
                LOGGER.debug("Cancel callback failed", exc_info=True)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelledError(self.session_id)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        if self._event.is_set():
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation fires first.

        On cancellation the underlying task is cancelled and awaited, then
        :class:`TurnCancelledError` is raised. A result that lands after
        cancellation is discarded.
        """
        if self._event.is_set():
            _close_unawaited(awaitable)
            raise TurnCancelledError(self.session_id)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if not self._event.is_set():
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TurnCancelledError(self.session_id)

    async def sleep(self, delay: float) -> None:
        await self.guard(asyncio.sleep(delay))


def _close_unawaited(awaitable: Awaitable[object]) -> None:
    close = getattr(awaitable, "close", None)
    if callable(close):
        close()
