from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from event_broadcaster.application.control_executor import ControlExecutor
from event_broadcaster.domain import codec
from event_broadcaster.domain.errors import BindError, SendError, SocketCreationError, describe_error
from event_broadcaster.domain.events import (
    ChannelDescriptor,
    EventRecord,
    OutputFormat,
    PortBinding,
    SpikeEvent,
    TTLEvent,
)
from event_broadcaster.infrastructure.config.settings import DEFAULT_PORT, BroadcasterConfig
from event_broadcaster.infrastructure.transport.context import TransportContext
from event_broadcaster.infrastructure.transport.message_framer import MessageFramer
from event_broadcaster.infrastructure.transport.port_manager import PortManager

LOGGER = logging.getLogger(__name__)

PortListener = Callable[[int], None]
ErrorListener = Callable[[int, str], None]


@dataclass(frozen=True)
class ReconfigureRequest:
    port: int
    output_format: Optional[OutputFormat] = None
    force_restart: bool = False
    search_for_port: bool = False


@dataclass(frozen=True)
class BroadcastState:
    """What the dispatch path reads: replaced whole, never mutated."""

    binding: PortBinding
    output_format: OutputFormat


@dataclass
class BroadcastStats:
    sent: int = 0
    dropped: int = 0


class Broadcaster:
    """Publishes pipeline events on a ZeroMQ PUB socket.

    ``dispatch`` runs on the real-time thread: it reads the current
    ``BroadcastState`` snapshot once, encodes and sends. Port changes run on
    the control executor (or inline for synchronous calls) and publish a new
    snapshot when done, so dispatch sees either the old binding, no binding
    while the port is being swapped, or the new one.
    """

    def __init__(
        self,
        context: TransportContext,
        port: int = DEFAULT_PORT,
        output_format: OutputFormat = OutputFormat.JSON,
        search_for_port: bool = True,
        host: str = "*",
        send_hwm: int = 1000,
        on_port_changed: Optional[PortListener] = None,
        on_error: Optional[ErrorListener] = None,
    ) -> None:
        self.on_port_changed = on_port_changed
        self.on_error = on_error
        self.stats = BroadcastStats()
        self._framer = MessageFramer()
        self._state_lock = threading.Lock()
        self._reconfigure_lock = threading.RLock()
        self._state = BroadcastState(PortBinding.unbound(), OutputFormat.parse(output_format))
        self._listening_port = 0
        self._port_manager = PortManager(context, host=host, send_hwm=send_hwm, on_binding=self._publish_binding)
        self._control: ControlExecutor[ReconfigureRequest] = ControlExecutor(
            self._apply, name="EventBroadcaster-Control"
        )
        self.reconfigure(port, None, force_restart=False, search_for_port=search_for_port, synchronous=False)

    @classmethod
    def from_config(cls, context: TransportContext, config: BroadcasterConfig, **kwargs: Any) -> "Broadcaster":
        return cls(
            context,
            port=config.port,
            output_format=config.output_format,
            search_for_port=config.search_for_port,
            host=config.host,
            send_hwm=config.send_hwm,
            **kwargs,
        )

    # Dispatch path ----------------------------------------------------------

    @property
    def state(self) -> BroadcastState:
        return self._state

    def dispatch(self, event: EventRecord, channel: ChannelDescriptor) -> bool:
        """Encode and send one event; returns False when it was dropped."""
        state = self._state
        if not state.binding.is_bound:
            self.stats.dropped += 1
            LOGGER.debug("No listening socket, dropping event")
            return False
        parts = codec.encode(event, channel, state.output_format)
        try:
            self._framer.send(state.binding.socket, parts)
        except SendError as exc:
            self.stats.dropped += 1
            LOGGER.warning("%s (part %d, message dropped)", exc, exc.part_index)
            return False
        self.stats.sent += 1
        return True

    def handle_ttl_event(self, event: TTLEvent, channel: ChannelDescriptor) -> bool:
        return self.dispatch(event, channel)

    def handle_spike(self, spike: SpikeEvent, channel: ChannelDescriptor) -> bool:
        return self.dispatch(spike, channel)

    # Control path -----------------------------------------------------------

    def get_listening_port(self) -> int:
        return self._state.binding.actual_port

    def get_output_format(self) -> OutputFormat:
        return self._state.output_format

    def set_output_format(self, output_format: OutputFormat) -> None:
        fmt = OutputFormat.parse(output_format)
        with self._state_lock:
            self._state = BroadcastState(self._state.binding, fmt)

    def set_listening_port(
        self,
        port: int,
        force_restart: bool = False,
        search_for_port: bool = False,
        synchronous: bool = True,
    ) -> Optional[int]:
        return self.reconfigure(port, None, force_restart, search_for_port, synchronous)

    def reconfigure(
        self,
        port: int,
        output_format: Optional[OutputFormat] = None,
        force_restart: bool = False,
        search_for_port: bool = False,
        synchronous: bool = True,
    ) -> Optional[int]:
        """Move the publisher to ``port`` and optionally switch format.

        Synchronous calls return 0 on success or the transport error code.
        Asynchronous calls return None at once; the latest request replaces
        any still pending one and failures go to ``on_error``.
        """
        request = ReconfigureRequest(
            port=int(port),
            output_format=None if output_format is None else OutputFormat.parse(output_format),
            force_restart=bool(force_restart),
            search_for_port=bool(search_for_port),
        )
        if not synchronous:
            self._control.submit(request)
            return None
        return self._apply(request)

    def restart(self) -> int:
        """Rebind the current port from scratch."""
        status = self.reconfigure(self.get_listening_port(), force_restart=True, synchronous=True)
        if status != 0:
            LOGGER.error("Restart failed: %s", describe_error(status))
        return status

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self._control.wait_idle(timeout)

    def to_settings(self) -> Dict[str, int]:
        return {"port": self._listening_port, "format": int(self.get_output_format())}

    def apply_settings(self, settings: Mapping[str, Any]) -> None:
        """Apply persisted settings; the port change supersedes any pending one."""
        if "format" in settings:
            self.set_output_format(OutputFormat.parse(settings["format"]))
        port = int(settings.get("port", self._listening_port))
        self.reconfigure(port, None, force_restart=False, search_for_port=False, synchronous=False)

    def close(self) -> None:
        self._control.shutdown()
        with self._reconfigure_lock:
            self._port_manager.close()

    def __enter__(self) -> "Broadcaster":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()

    def _apply(self, request: ReconfigureRequest) -> int:
        with self._reconfigure_lock:
            if request.output_format is not None:
                self.set_output_format(request.output_format)
            status = 0
            message = ""
            if request.force_restart or request.port != self._listening_port or not self._state.binding.is_bound:
                try:
                    binding = self._port_manager.bind(request.port, search_if_busy=request.search_for_port)
                except (SocketCreationError, BindError) as exc:
                    status = exc.code
                    message = str(exc)
                    LOGGER.error("%s", message)
                    self._listening_port = self.get_listening_port()
                else:
                    self._listening_port = binding.actual_port
            self._notify(status, message)
            return status

    def _publish_binding(self, binding: PortBinding) -> None:
        with self._state_lock:
            self._state = BroadcastState(binding, self._state.output_format)

    def _notify(self, status: int, message: str) -> None:
        if self.on_port_changed is not None:
            try:
                self.on_port_changed(self.get_listening_port())
            except Exception:
                LOGGER.exception("Port listener failed")
        if status != 0 and self.on_error is not None:
            try:
                self.on_error(status, message)
            except Exception:
                LOGGER.exception("Error listener failed")
