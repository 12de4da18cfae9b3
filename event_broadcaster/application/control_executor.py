from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ControlExecutor(Generic[T]):
    """Single background thread applying requests one at a time.

    Holds at most one pending request: submitting while another is pending
    replaces it. The request being handled always runs to completion.
    """

    def __init__(self, handler: Callable[[T], object], name: str = "control") -> None:
        self._handler = handler
        self._cond = threading.Condition()
        self._pending: Optional[T] = None
        self._has_pending = False
        self._busy = False
        self._closed = False
        self.thread = threading.Thread(target=self._worker, name=name, daemon=True)
        self.thread.start()

    def submit(self, request: T) -> bool:
        """Queue ``request``; returns True if it superseded a pending one."""
        with self._cond:
            if self._closed:
                raise RuntimeError("ControlExecutor is shut down")
            coalesced = self._has_pending
            self._pending = request
            self._has_pending = True
            self._cond.notify_all()
        if coalesced:
            LOGGER.debug("Pending control request superseded")
        return coalesced

    @property
    def idle(self) -> bool:
        with self._cond:
            return not self._has_pending and not self._busy

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: not self._has_pending and not self._busy, timeout)

    def shutdown(self, timeout: Optional[float] = 5.0) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            if self._has_pending:
                LOGGER.debug("Discarding pending control request on shutdown")
            self._pending = None
            self._has_pending = False
            self._cond.notify_all()
        if threading.current_thread() is not self.thread:
            self.thread.join(timeout=timeout)

    def _worker(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._has_pending or self._closed)
                if self._closed:
                    self._cond.notify_all()
                    return
                request = self._pending
                self._pending = None
                self._has_pending = False
                self._busy = True
            try:
                self._handler(request)
            except Exception:
                LOGGER.exception("Control request failed")
            finally:
                with self._cond:
                    self._busy = False
                    self._cond.notify_all()
