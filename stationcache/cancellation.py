"""Cooperative cancellation checked at every network call and rate-limit sleep"""

import logging
from threading import Event

from .exceptions import HarvestCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Set from a signal handler, checked by the harvest loop.

    `sleep` doubles as a suspension point: it returns early and raises as
    soon as the token fires.
    """

    def __init__(self):
        self._event = Event()
        self.reason = None

    def cancel(self, reason: str = 'interrupted'):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Cancellation requested ({reason})")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise HarvestCancelled(self.reason or 'interrupted')

    def sleep(self, seconds: float):
        if seconds > 0 and self._event.wait(seconds):
            self.raise_if_cancelled()
        self.raise_if_cancelled()
