"""Cooperative cancellation shared by interrupts and call timeouts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """The token guarding an operation was cancelled."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


def discard_result(task: asyncio.Future) -> None:
    # Retrieve the outcome so abandoned calls never log "exception was never retrieved".
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned call finished with %r", exc)


class CancellationToken:
    """A cancel flag that async calls can race against.

    A token is cancelled at most once; later calls to :meth:`cancel` are
    no-ops. Children created with :meth:`child` are cancelled with their parent
    until they :meth:`detach`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self._parent: CancellationToken | None = None
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    def child(self) -> CancellationToken:
        token = CancellationToken()
        if self.cancelled:
            token.cancel(self.reason or "cancelled")
        else:
            self._children.append(token)
            token._parent = self
        return token

    @property
    def children(self) -> int:
        return len(self._children)

    def detach(self) -> None:
        """Stop following the parent. Call once the guarded work is over."""
        parent, self._parent = self._parent, None
        if parent is not None and self in parent._children:
            parent._children.remove(self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if woken by cancellation."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        return True

    async def run(
        self,
        aw: Awaitable[T],
        *,
        timeout: float | None = None,
        abandon: bool = False,
    ) -> T:
        """Await ``aw`` unless the token is cancelled or ``timeout`` expires first.

        With ``abandon`` the losing operation keeps running in the background
        and its result is thrown away; otherwise it is cancelled.
        """
        task = asyncio.ensure_future(aw)
        if self.cancelled:
            self._drop(task, abandon)
            raise OperationCancelled(self.reason or "cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        self._drop(task, abandon)
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")
        raise asyncio.TimeoutError()

    @staticmethod
    def _drop(task: asyncio.Future, abandon: bool) -> None:
        if not abandon:
            task.cancel()
        task.add_done_callback(discard_result)
