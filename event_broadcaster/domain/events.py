from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional, Tuple, Union

import numpy as np


class ScalarType(Enum):
    TEXT = "text"
    INT8 = "int8"
    UINT8 = "uint8"
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"


class EventKind(IntEnum):
    """Value of the 2-byte discriminator part."""

    TTL = 0
    SPIKE = 1


class OutputFormat(IntEnum):
    # Ordinals match the values persisted by host settings.
    RAW_BINARY = 1
    JSON = 2

    @classmethod
    def parse(cls, value: Any) -> "OutputFormat":
        if isinstance(value, OutputFormat):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text.isdigit():
                return cls(int(text))
            aliases = {
                "json": cls.JSON,
                "json_string": cls.JSON,
                "raw": cls.RAW_BINARY,
                "binary": cls.RAW_BINARY,
                "raw_binary": cls.RAW_BINARY,
            }
            if text in aliases:
                return aliases[text]
            raise ValueError(f"Unknown output format: {value!r}")
        return cls(int(value))


@dataclass(frozen=True)
class MetadataDescriptor:
    name: str
    scalar_type: ScalarType
    count: int = 1


@dataclass(frozen=True)
class MetadataValue:
    """Raw metadata bytes, interpreted with the matching descriptor's type."""

    raw: bytes
    count: int = 1


@dataclass(frozen=True)
class ChannelDescriptor:
    """Snapshot of the channel an event was produced on.

    ``data_size`` is the size of the per-event data block the channel declares:
    the opaque payload for TTL lines, the float32 waveform for electrodes.
    ``metadata`` holds the descriptors of the values attached to each event.
    """

    identifier: str
    name: str
    stream_name: str
    source_node_id: int
    sample_rate: float
    num_channels: int = 1
    data_size: int = 0
    metadata: Tuple[MetadataDescriptor, ...] = ()


@dataclass(frozen=True)
class TTLEvent:
    line: int
    state: bool
    sample_number: int
    metadata: Tuple[MetadataValue, ...] = ()
    data: bytes = b""

    kind = EventKind.TTL


@dataclass(frozen=True)
class SpikeEvent:
    sorted_id: int
    channel_count: int
    waveform: np.ndarray = field(compare=False)
    thresholds: Tuple[float, ...]
    pre_peak_samples: int
    sample_number: int
    metadata: Tuple[MetadataValue, ...] = ()

    kind = EventKind.SPIKE

    @property
    def samples_per_channel(self) -> int:
        if self.channel_count <= 0:
            return 0
        return int(np.asarray(self.waveform).size) // self.channel_count


EventRecord = Union[TTLEvent, SpikeEvent]


@dataclass(frozen=True)
class PortBinding:
    """One published listening state. ``actual_port == 0`` means unbound."""

    requested_port: int = 0
    actual_port: int = 0
    socket: Optional[Any] = field(default=None, compare=False)

    @property
    def is_bound(self) -> bool:
        return self.actual_port != 0 and self.socket is not None

    @classmethod
    def unbound(cls, requested_port: int = 0) -> "PortBinding":
        return cls(requested_port=requested_port, actual_port=0, socket=None)
