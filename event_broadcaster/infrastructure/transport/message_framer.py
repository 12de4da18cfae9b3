from __future__ import annotations

from typing import Sequence

import zmq

from event_broadcaster.domain.codec import MessagePart
from event_broadcaster.domain.errors import SendError
from event_broadcaster.domain.port import PublisherPort


class MessageFramer:
    """Writes named parts as one multipart ZeroMQ message."""

    def __init__(self, blocking: bool = False) -> None:
        self._base_flags = 0 if blocking else zmq.NOBLOCK

    def send(self, socket: PublisherPort, parts: Sequence[MessagePart]) -> int:
        """Send every part, flagging all but the last with ``SNDMORE``.

        Stops at the first failing part and raises ``SendError`` naming it.
        Returns the number of parts sent.
        """
        last = len(parts) - 1
        for index, part in enumerate(parts):
            flags = self._base_flags
            if index < last:
                flags |= zmq.SNDMORE
            try:
                socket.send(part.data, flags)
            except zmq.ZMQError as exc:
                raise SendError(index, part.name, exc.errno) from exc
        return len(parts)
