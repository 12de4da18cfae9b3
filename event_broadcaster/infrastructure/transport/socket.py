from __future__ import annotations

import logging
import threading
from typing import Optional

import zmq

from event_broadcaster.domain.errors import BindError, SocketCreationError
from event_broadcaster.infrastructure.transport.context import TransportContext

LOGGER = logging.getLogger(__name__)

MAX_PORT = 65535


def endpoint_for(host: str, port: int) -> str:
    if port == 0:
        return f"tcp://{host}:*"
    return f"tcp://{host}:{port}"


def port_from_endpoint(endpoint: str) -> int:
    return int(endpoint.rsplit(":", 1)[1])


class PublisherSocket:
    """A ZeroMQ PUB socket bound to at most one TCP port.

    Send, bind, unbind and close serialize on a per-socket lock so a socket
    being torn down on the control thread is never used half-way by a send.
    Sends are refused while the socket is not bound, so a dispatch still
    holding a superseded binding counts its message as dropped.
    """

    def __init__(self, context: TransportContext, host: str = "*", send_hwm: int = 1000) -> None:
        self.host = host
        self._context = context
        self._lock = threading.Lock()
        self._bound_port = 0
        self._endpoint: Optional[str] = None
        self._closed = False

        acquired = False
        sock = None
        try:
            zmq_context = context.acquire()
            acquired = True
            sock = zmq_context.socket(zmq.PUB)
            sock.setsockopt(zmq.LINGER, 0)
            sock.setsockopt(zmq.SNDHWM, int(send_hwm))
        except zmq.ZMQError as exc:
            if sock is not None:
                sock.close(linger=0)
            if acquired:
                context.release()
            raise SocketCreationError(exc.errno) from exc
        self._socket = sock

    @property
    def bound_port(self) -> int:
        return self._bound_port

    @property
    def endpoint(self) -> Optional[str]:
        return self._endpoint

    @property
    def closed(self) -> bool:
        return self._closed

    def bind(self, port: int) -> int:
        """Bind to ``port`` (0 for an OS-assigned one) and return the bound port.

        Any previous binding is released first. Raises ``BindError``, also
        when the previous endpoint cannot be released.
        """
        port = int(port)
        with self._lock:
            if self._closed:
                raise BindError(port, zmq.ENOTSOCK)
            if not 0 <= port <= MAX_PORT:
                raise BindError(port, zmq.EINVAL)
            self._unbind_unlocked()
            try:
                self._socket.bind(endpoint_for(self.host, port))
            except zmq.ZMQError as exc:
                raise BindError(port, exc.errno) from exc
            self._endpoint = self._socket.getsockopt_string(zmq.LAST_ENDPOINT)
            self._bound_port = port_from_endpoint(self._endpoint)
            return self._bound_port

    def unbind(self) -> None:
        with self._lock:
            self._unbind_unlocked()

    def send(self, data: bytes, flags: int = 0) -> None:
        """Send one frame; refused with ENOTSOCK once unbound or closed."""
        with self._lock:
            if self._closed or self._endpoint is None:
                raise zmq.ZMQError(zmq.ENOTSOCK)
            self._socket.send(data, flags=flags, copy=False)

    def close(self) -> None:
        """Unbind, close the socket and release the shared context."""
        with self._lock:
            if self._closed:
                return
            try:
                self._unbind_unlocked()
            except BindError as exc:
                # Closing the socket releases the port regardless.
                LOGGER.warning("%s", exc)
            self._socket.close(linger=0)
            self._closed = True
            self._endpoint = None
            self._bound_port = 0
        self._context.release()

    def _unbind_unlocked(self) -> None:
        if self._endpoint is None:
            return
        try:
            self._socket.unbind(self._endpoint)
        except zmq.ZMQError as exc:
            raise BindError(self._bound_port, exc.errno) from exc
        self._endpoint = None
        self._bound_port = 0
