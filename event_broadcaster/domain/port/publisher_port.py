from typing import Protocol


class PublisherPort(Protocol):
    """Outbound socket a framed message is written to (ZeroMQ PUB, test fakes)."""

    def send(self, data: bytes, flags: int = 0) -> None:
        ...
