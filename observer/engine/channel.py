import logging
import threading
from typing import Any, Optional

logger = logging.getLogger(__name__)


class Mailbox:
    """
    One-slot hand-off between a producer and a single consumer thread.

    ``offer`` never blocks: an unconsumed item is overwritten by a newer one,
    and items offered after ``close`` are dropped. ``close`` may be called any
    number of times.
    """

    def __init__(self, name: str):
        self.name = name
        self._cond = threading.Condition()
        self._item = None
        self._pending = False
        self._closed = False
        self.dropped = 0
        self.overwritten = 0

    def offer(self, item: Any) -> bool:
        with self._cond:
            if self._closed:
                self.dropped += 1
                logger.warning(f"Mailbox {self.name} is closed, dropping notification")
                return False
            if self._pending:
                self.overwritten += 1
                logger.debug(f"Mailbox {self.name} overwrote an unconsumed notification")
            self._item = item
            self._pending = True
            self._cond.notify()
            return True

    def take(self, timeout: Optional[float] = None) -> Optional[Any]:
        """Wait for the next item; None once closed or when the timeout elapsed."""
        with self._cond:
            if not self._pending and not self._closed:
                self._cond.wait(timeout)
            if self._closed or not self._pending:
                return None
            item = self._item
            self._item = None
            self._pending = False
            return item

    def close(self) -> bool:
        """Close the mailbox; returns False if it was already closed."""
        with self._cond:
            if self._closed:
                return False
            self._closed = True
            self._item = None
            self._pending = False
            self._cond.notify_all()
            return True

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed
