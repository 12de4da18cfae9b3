from __future__ import annotations

import zmq


def describe_error(code: int) -> str:
    return zmq.strerror(code)


class BroadcasterError(Exception):
    """Base class for transport failures raised by the broadcaster."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = int(code)


class SocketCreationError(BroadcasterError):
    def __init__(self, code: int) -> None:
        super().__init__(code, f"Failed to create socket: {describe_error(code)}")


class BindError(BroadcasterError):
    def __init__(self, port: int, code: int) -> None:
        super().__init__(code, f"Failed to bind to port {port}: {describe_error(code)}")
        self.port = int(port)


class SendError(BroadcasterError):
    """A part of a multipart message could not be sent; the rest were skipped."""

    def __init__(self, part_index: int, part_name: str, code: int) -> None:
        super().__init__(code, f"Error sending {part_name}: {describe_error(code)}")
        self.part_index = int(part_index)
        self.part_name = part_name


class EncodingContractViolation(AssertionError):
    """The event or channel handed to the codec breaks the producer contract."""
