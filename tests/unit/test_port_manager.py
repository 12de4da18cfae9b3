import errno
import time

import pytest

zmq = pytest.importorskip("zmq")

from event_broadcaster.domain.errors import BindError, SocketCreationError
from event_broadcaster.domain.events import PortBinding
from event_broadcaster.infrastructure.transport.port_manager import PortManager
from event_broadcaster.infrastructure.transport.socket import PublisherSocket
from tests.conftest import _can_bind, bind_with_retry, find_free_port


def test_starts_unbound(transport_context) -> None:
    manager = PortManager(transport_context)
    assert manager.port == 0
    assert not manager.binding.is_bound
    manager.unbind()  # no-op when unbound


def test_bind_free_port(transport_context, free_port) -> None:
    manager = PortManager(transport_context)
    binding = manager.bind(free_port, search_if_busy=False)

    assert binding.actual_port == free_port
    assert binding.requested_port == free_port
    assert manager.port == free_port
    assert binding.socket.bound_port == free_port
    manager.close()


def test_bind_port_zero_picks_ephemeral(transport_context) -> None:
    manager = PortManager(transport_context)
    binding = manager.bind(0, search_if_busy=True)
    assert binding.actual_port > 0
    assert binding.requested_port == 0
    manager.close()


def test_search_skips_busy_port(transport_context, occupy) -> None:
    port = find_free_port(consecutive=2)
    occupy(port)
    manager = PortManager(transport_context)

    binding = manager.bind(port, search_if_busy=True)

    assert binding.actual_port == port + 1
    manager.close()


def test_busy_port_without_search_fails(transport_context, occupy, free_port) -> None:
    occupy(free_port)
    manager = PortManager(transport_context)

    with pytest.raises(BindError) as info:
        manager.bind(free_port, search_if_busy=False)

    assert info.value.code == zmq.EADDRINUSE
    assert manager.port == 0
    assert transport_context.ref_count == 0


def test_failed_rebind_restores_previous(transport_context, occupy) -> None:
    first = find_free_port(consecutive=2)
    busy = first + 1
    occupy(busy)
    published = []
    manager = PortManager(transport_context, on_binding=published.append)
    original = manager.bind(first)

    with pytest.raises(BindError):
        manager.bind(busy, search_if_busy=False)

    assert manager.port == first
    assert manager.binding is original
    assert original.socket.bound_port == first
    # unbound while switching, then the old binding again
    assert [b.actual_port for b in published] == [first, 0, first]

    sub_ctx = zmq.Context()
    sub = sub_ctx.socket(zmq.SUB)
    sub.setsockopt(zmq.LINGER, 0)
    sub.setsockopt(zmq.SUBSCRIBE, b"")
    sub.connect(f"tcp://127.0.0.1:{first}")
    try:
        received = None
        for _ in range(50):
            original.socket.send(b"ping", zmq.NOBLOCK)
            if sub.poll(100):
                received = sub.recv()
                break
        assert received == b"ping"
    finally:
        sub.close()
        sub_ctx.term()
        manager.close()


def test_rebind_releases_previous_port(transport_context) -> None:
    first = find_free_port(consecutive=2)
    second = first + 1
    manager = PortManager(transport_context)
    old = manager.bind(first)
    manager.bind(second)

    assert manager.port == second
    assert old.socket.closed
    assert transport_context.ref_count == 1

    other = zmq.Context()
    sock = other.socket(zmq.PUB)
    sock.setsockopt(zmq.LINGER, 0)
    try:
        bind_with_retry(sock, first)
    finally:
        sock.close()
        other.term()
        manager.close()


def test_unbind_frees_port_for_another_manager(transport_context, free_port) -> None:
    first = PortManager(transport_context)
    first.bind(free_port)
    first.unbind()
    assert first.binding == PortBinding.unbound()

    second = PortManager(transport_context)
    deadline = time.monotonic() + 2.0
    while True:
        try:
            binding = second.bind(free_port)
            break
        except BindError as exc:
            if exc.code != zmq.EADDRINUSE or time.monotonic() > deadline:
                raise
            time.sleep(0.02)
    assert binding.actual_port == free_port
    second.close()


def test_restart_same_port(transport_context, free_port) -> None:
    manager = PortManager(transport_context)
    manager.bind(free_port)
    binding = manager.bind(free_port)
    assert binding.actual_port == free_port
    manager.close()


def test_invalid_port_is_terminal(transport_context) -> None:
    manager = PortManager(transport_context)
    with pytest.raises(BindError) as info:
        manager.bind(70000, search_if_busy=True)
    assert info.value.code == zmq.EINVAL
    assert manager.port == 0


def test_socket_bind_unbind_cycle(transport_context, free_port) -> None:
    socket = PublisherSocket(transport_context)
    assert socket.bind(free_port) == free_port
    assert socket.endpoint.endswith(f":{free_port}")
    socket.unbind()
    assert socket.bound_port == 0
    assert socket.endpoint is None
    socket.close()
    with pytest.raises(BindError):
        socket.bind(free_port)


def test_send_after_unbind_is_refused(transport_context, free_port) -> None:
    socket = PublisherSocket(transport_context)
    socket.bind(free_port)
    socket.send(b"live", zmq.NOBLOCK)
    socket.unbind()

    with pytest.raises(zmq.ZMQError) as info:
        socket.send(b"late", zmq.NOBLOCK)

    assert info.value.errno == zmq.ENOTSOCK
    socket.close()


def test_failed_rollback_ends_unbound(transport_context, monkeypatch) -> None:
    first = find_free_port(consecutive=2)
    refs_before = transport_context.ref_count
    published = []
    manager = PortManager(transport_context, on_binding=published.append)
    previous = manager.bind(first)

    def refuse(self, port):
        raise BindError(port, errno.EACCES)

    monkeypatch.setattr(PublisherSocket, "bind", refuse)
    with pytest.raises(BindError) as info:
        manager.bind(first + 1, search_if_busy=False)

    assert info.value.code == errno.EACCES
    assert manager.binding == PortBinding.unbound()
    assert previous.socket.closed
    assert transport_context.ref_count == refs_before
    assert [b.actual_port for b in published] == [first, 0, 0]
    manager.close()


def test_search_stops_at_highest_port(transport_context, occupy) -> None:
    if not _can_bind(65535):
        pytest.skip("port 65535 is in use on this host")
    occupy(65535)
    manager = PortManager(transport_context)

    with pytest.raises(BindError) as info:
        manager.bind(65535, search_if_busy=True)

    assert info.value.code == zmq.EADDRINUSE
    assert manager.binding == PortBinding.unbound()
    assert transport_context.ref_count == 0


def test_context_failure_is_socket_creation_error(transport_context, monkeypatch) -> None:
    def exhausted():
        raise zmq.ZMQError(errno.EMFILE)

    monkeypatch.setattr(transport_context, "acquire", exhausted)

    with pytest.raises(SocketCreationError) as info:
        PublisherSocket(transport_context)

    assert info.value.code == errno.EMFILE
    assert transport_context.ref_count == 0


def test_context_failure_during_rebind_restores_previous(transport_context, monkeypatch) -> None:
    first = find_free_port(consecutive=2)
    manager = PortManager(transport_context)
    previous = manager.bind(first)

    def exhausted():
        raise zmq.ZMQError(errno.EMFILE)

    monkeypatch.setattr(transport_context, "acquire", exhausted)
    with pytest.raises(SocketCreationError):
        manager.bind(first + 1)
    monkeypatch.undo()

    assert manager.binding is previous
    assert previous.socket.bound_port == first
    assert transport_context.ref_count == 1
    manager.close()
