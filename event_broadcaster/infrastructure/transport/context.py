from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import zmq

LOGGER = logging.getLogger(__name__)


class TransportContext:
    """Reference-counted owner of the ``zmq.Context`` behind publisher sockets.

    The application creates one and hands it to every port manager. The
    underlying context is created on the first ``acquire()`` and terminated
    when the last socket releases it, or by ``close()`` at shutdown.
    """

    def __init__(self, io_threads: int = 1) -> None:
        self.io_threads = max(1, int(io_threads))
        self._lock = threading.Lock()
        self._context: Optional[zmq.Context] = None
        self._refs = 0

    @property
    def ref_count(self) -> int:
        with self._lock:
            return self._refs

    @property
    def active(self) -> bool:
        with self._lock:
            return self._context is not None

    def acquire(self) -> zmq.Context:
        with self._lock:
            if self._context is None:
                self._context = zmq.Context(io_threads=self.io_threads)
                LOGGER.debug("Created transport context (io_threads=%d)", self.io_threads)
            self._refs += 1
            return self._context

    def release(self) -> None:
        with self._lock:
            if self._refs == 0:
                return
            self._refs -= 1
            if self._refs == 0:
                self._terminate_unlocked()

    def close(self) -> None:
        """Terminate the context now; sockets still open are closed with it."""
        with self._lock:
            if self._context is not None:
                self._context.destroy(linger=0)
                self._context = None
                LOGGER.debug("Transport context destroyed with %d open socket(s)", self._refs)
            self._refs = 0

    def _terminate_unlocked(self) -> None:
        if self._context is None:
            return
        self._context.term()
        self._context = None
        LOGGER.debug("Transport context terminated")

    def __enter__(self) -> "TransportContext":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()
