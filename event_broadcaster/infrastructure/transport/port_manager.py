from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import zmq

from event_broadcaster.domain.errors import BindError, SocketCreationError
from event_broadcaster.domain.events import PortBinding
from event_broadcaster.infrastructure.transport.context import TransportContext
from event_broadcaster.infrastructure.transport.socket import MAX_PORT, PublisherSocket

LOGGER = logging.getLogger(__name__)

BindingListener = Callable[[PortBinding], None]

# zmq closes unbound listeners on its I/O thread, so a port released a moment
# ago can still report EADDRINUSE.
RELEASE_RETRIES = 50
RELEASE_RETRY_DELAY_S = 0.01


class PortManager:
    """Owns the single live ``PortBinding`` and the bind/unbind state machine.

    Every state change is published as a new immutable ``PortBinding``: first
    an unbound one while the old port is being released, then either the new
    binding, the restored previous one, or unbound if the rollback failed too.
    Readers on other threads only ever see complete bindings.
    """

    def __init__(
        self,
        context: TransportContext,
        host: str = "*",
        send_hwm: int = 1000,
        on_binding: Optional[BindingListener] = None,
    ) -> None:
        self.context = context
        self.host = host
        self.send_hwm = int(send_hwm)
        self._on_binding = on_binding
        self._lock = threading.RLock()
        self._binding = PortBinding.unbound()

    @property
    def binding(self) -> PortBinding:
        return self._binding

    @property
    def port(self) -> int:
        return self._binding.actual_port

    def bind(self, requested_port: int, search_if_busy: bool = False) -> PortBinding:
        """Replace the current binding with one on ``requested_port``.

        With ``search_if_busy`` an in-use port is skipped for the next one up.
        On failure the previous port is rebound and the error re-raised.
        """
        with self._lock:
            previous = self._binding
            if previous.is_bound:
                self._publish(PortBinding.unbound(requested_port))
                try:
                    previous.socket.unbind()
                except BindError:
                    self._publish(previous)
                    raise
            try:
                socket = PublisherSocket(self.context, host=self.host, send_hwm=self.send_hwm)
            except SocketCreationError:
                self._rollback(previous)
                raise
            try:
                actual_port = self._bind_searching(socket, int(requested_port), search_if_busy, previous.actual_port)
            except BindError:
                socket.close()
                self._rollback(previous)
                raise

            binding = PortBinding(requested_port=int(requested_port), actual_port=actual_port, socket=socket)
            self._publish(binding)
            if previous.socket is not None:
                previous.socket.close()
            LOGGER.info("Listening on %s", socket.endpoint)
            return binding

    def unbind(self) -> None:
        """Release the port and close the socket; a no-op when unbound."""
        with self._lock:
            previous = self._binding
            if previous.socket is None:
                return
            self._publish(PortBinding.unbound())
            previous.socket.close()
            LOGGER.info("Released port %d", previous.actual_port)

    close = unbind

    def _bind_searching(self, socket: PublisherSocket, port: int, search_if_busy: bool, released_port: int) -> int:
        while True:
            try:
                return self._bind_port(socket, port, released_port)
            except BindError as exc:
                if not search_if_busy or exc.code != zmq.EADDRINUSE or port == 0:
                    raise
                if port >= MAX_PORT:
                    raise
                LOGGER.debug("Port %d in use, trying %d", port, port + 1)
                port += 1

    def _rollback(self, previous: PortBinding) -> None:
        if previous.socket is None:
            self._publish(PortBinding.unbound())
            return
        try:
            self._bind_port(previous.socket, previous.actual_port, previous.actual_port)
        except BindError as exc:
            LOGGER.error("Could not restore port %d: %s", previous.actual_port, exc)
            previous.socket.close()
            self._publish(PortBinding.unbound())
            return
        self._publish(previous)
        LOGGER.info("Restored previous port %d", previous.actual_port)

    def _bind_port(self, socket: PublisherSocket, port: int, released_port: int) -> int:
        attempts = RELEASE_RETRIES if port != 0 and port == released_port else 0
        while True:
            try:
                return socket.bind(port)
            except BindError as exc:
                if exc.code != zmq.EADDRINUSE or attempts <= 0:
                    raise
                attempts -= 1
                time.sleep(RELEASE_RETRY_DELAY_S)

    def _publish(self, binding: PortBinding) -> None:
        self._binding = binding
        if self._on_binding is not None:
            self._on_binding(binding)
