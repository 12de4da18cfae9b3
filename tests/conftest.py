import socket
import time

import pytest

zmq = pytest.importorskip("zmq")

from event_broadcaster.domain.events import ChannelDescriptor, MetadataDescriptor, ScalarType
from event_broadcaster.infrastructure.transport.context import TransportContext


def _can_bind(port: int) -> bool:
    # Plain sockets release their port on close, unlike zmq listeners.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("", port))
        except OSError:
            return False
    return True


def find_free_port(consecutive: int = 1) -> int:
    """A port p such that p .. p+consecutive-1 can all be bound right now."""
    for _ in range(100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("", 0))
            port = sock.getsockname()[1]
        if port + consecutive - 1 > 65535:
            continue
        if all(_can_bind(port + offset) for offset in range(consecutive)):
            return port
    raise RuntimeError("no free port range found")


class PortOccupier:
    """Holds a port with an unrelated ZeroMQ context, like another process would."""

    def __init__(self, port: int) -> None:
        self.port = port
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.PUB)
        self.socket.setsockopt(zmq.LINGER, 0)
        bind_with_retry(self.socket, port)

    def close(self) -> None:
        self.socket.close()
        self.context.term()


def bind_with_retry(socket, port: int, timeout_s: float = 2.0) -> None:
    deadline = time.monotonic() + timeout_s
    while True:
        try:
            socket.bind(f"tcp://*:{port}")
            return
        except zmq.ZMQError as exc:
            if exc.errno != zmq.EADDRINUSE or time.monotonic() >= deadline:
                raise
            time.sleep(0.02)


@pytest.fixture
def transport_context():
    context = TransportContext()
    yield context
    context.close()


@pytest.fixture
def free_port() -> int:
    return find_free_port()


@pytest.fixture
def occupy():
    held = []

    def _occupy(port: int) -> PortOccupier:
        occupier = PortOccupier(port)
        held.append(occupier)
        return occupier

    yield _occupy
    for occupier in held:
        occupier.close()


@pytest.fixture
def ttl_channel() -> ChannelDescriptor:
    return ChannelDescriptor(
        identifier="node100.ttl",
        name="TTL Input",
        stream_name="example_data",
        source_node_id=100,
        sample_rate=30000.0,
        data_size=2,
        metadata=(
            MetadataDescriptor("word", ScalarType.UINT64),
            MetadataDescriptor("label", ScalarType.TEXT, 8),
        ),
    )


@pytest.fixture
def spike_channel() -> ChannelDescriptor:
    return ChannelDescriptor(
        identifier="node101.tetrode1",
        name="Tetrode 1",
        stream_name="example_data",
        source_node_id=101,
        sample_rate=30000.0,
        num_channels=4,
        data_size=4 * 10 * 4,
        metadata=(MetadataDescriptor("gain", ScalarType.FLOAT32, 2),),
    )
