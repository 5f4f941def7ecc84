"""Cooperative cancellation for scan generations."""

import asyncio
import logging
from typing import Callable, Optional

from iac_watch.errors import ScanCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Read side of one scan generation.

    A token is checked at every resumption point; once cancelled it stays
    cancelled.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ScanCancelled("Scan was superseded")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation, immediately if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error("Cancellation callback failed: %s", e)


class CancellationTokenSource:
    """Owns a token and is the only thing allowed to cancel it."""

    def __init__(self) -> None:
        self._token = CancellationToken()

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def is_cancelled(self) -> bool:
        return self._token.is_cancellation_requested

    def cancel(self) -> None:
        self._token._cancel()
