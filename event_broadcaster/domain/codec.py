"""Encode TTL and spike events into named message parts.

Every message starts with a ``type`` part (little-endian uint16, 0 = TTL,
1 = spike) followed by either a ``data`` part holding the binary record or a
``json`` part holding a UTF-8 JSON object.

Binary records are little-endian and unpadded::

    TTL    <BBHIqd    kind, state, source node, line, sample number, timestamp   (24 bytes)
    spike  <BxHHqdHH  kind, pad, source node, channel count, sample number,
                      timestamp, sorted id, pre-peak samples                     (26 bytes)

Header field widths: source node, spike channel count, sorted id and pre-peak
samples are uint16, the TTL line is uint32 and the sample number is int64.
Events whose values do not fit are rejected in every output format.

A TTL header is followed by the channel's data block (``data_size`` bytes of
``TTLEvent.data``) and the metadata values in descriptor order.

A spike header is followed by the waveform as float32, channel-major, which
must be exactly the channel's ``data_size`` bytes. Then come the metadata
values, one float32 amplitude per channel (the ``ampN`` values of the JSON
form) and one float32 threshold per channel.

The record length is computed before the buffer is allocated. JSON output
never contains NaN or Infinity; non-finite numbers are written as ``null``.
"""
from __future__ import annotations

import json
import math
import struct
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import numpy as np

from event_broadcaster.domain import metadata_reader
from event_broadcaster.domain.errors import EncodingContractViolation
from event_broadcaster.domain.events import (
    ChannelDescriptor,
    EventKind,
    EventRecord,
    MetadataValue,
    OutputFormat,
    SpikeEvent,
    TTLEvent,
)

TTL_BASE_SIZE = 24
SPIKE_BASE_SIZE = 26
AMPLITUDE_SIZE = 4
THRESHOLD_SIZE = 4

_KIND = struct.Struct("<H")
_TTL_HEADER = struct.Struct("<BBHIqd")
_SPIKE_HEADER = struct.Struct("<BxHHqdHH")

UINT16_MAX = 0xFFFF
UINT32_MAX = 0xFFFFFFFF
INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

assert _TTL_HEADER.size == TTL_BASE_SIZE
assert _SPIKE_HEADER.size == SPIKE_BASE_SIZE


class MessagePart(NamedTuple):
    name: str
    data: bytes


def metadata_size(channel: ChannelDescriptor) -> int:
    return sum(metadata_reader.descriptor_size(d) for d in channel.metadata)


def ttl_frame_size(channel: ChannelDescriptor) -> int:
    return TTL_BASE_SIZE + channel.data_size + metadata_size(channel)


def spike_frame_size(channel: ChannelDescriptor, channel_count: int) -> int:
    return (
        SPIKE_BASE_SIZE
        + channel.data_size
        + metadata_size(channel)
        + channel_count * (AMPLITUDE_SIZE + THRESHOLD_SIZE)
    )


def encode(event: EventRecord, channel: ChannelDescriptor, output_format: OutputFormat) -> List[MessagePart]:
    if isinstance(event, TTLEvent):
        kind = EventKind.TTL
    elif isinstance(event, SpikeEvent):
        kind = EventKind.SPIKE
    else:
        raise EncodingContractViolation(f"Unsupported event type: {type(event).__name__}")
    _check_metadata(event.metadata, channel)
    if kind == EventKind.TTL:
        _check_ttl_fields(event, channel)
    else:
        _check_spike_fields(event, channel)

    parts = [MessagePart("type", _KIND.pack(int(kind)))]
    if output_format == OutputFormat.RAW_BINARY:
        if kind == EventKind.TTL:
            parts.append(MessagePart("data", encode_ttl_binary(event, channel)))
        else:
            parts.append(MessagePart("data", encode_spike_binary(event, channel)))
    else:
        if kind == EventKind.TTL:
            payload = ttl_json(event, channel)
        else:
            payload = spike_json(event, channel)
        parts.append(MessagePart("json", json.dumps(payload, allow_nan=False).encode("utf-8")))
    return parts


def encode_ttl_binary(event: TTLEvent, channel: ChannelDescriptor) -> bytes:
    buffer = bytearray(ttl_frame_size(channel))
    _TTL_HEADER.pack_into(
        buffer,
        0,
        int(EventKind.TTL),
        1 if event.state else 0,
        int(channel.source_node_id),
        int(event.line),
        int(event.sample_number),
        _timestamp(event.sample_number, channel.sample_rate),
    )
    offset = _write_block(buffer, TTL_BASE_SIZE, event.data, channel.data_size)
    _write_metadata(buffer, offset, event.metadata, channel)
    return bytes(buffer)


def encode_spike_binary(event: SpikeEvent, channel: ChannelDescriptor) -> bytes:
    amplitudes = spike_amplitudes(event, channel)
    buffer = bytearray(spike_frame_size(channel, event.channel_count))
    _SPIKE_HEADER.pack_into(
        buffer,
        0,
        int(EventKind.SPIKE),
        int(channel.source_node_id),
        int(event.channel_count),
        int(event.sample_number),
        _timestamp(event.sample_number, channel.sample_rate),
        int(event.sorted_id),
        int(event.pre_peak_samples),
    )
    waveform = np.asarray(event.waveform, dtype="<f4").tobytes()
    offset = _write_block(buffer, SPIKE_BASE_SIZE, waveform, channel.data_size)
    offset = _write_metadata(buffer, offset, event.metadata, channel)
    for block in (amplitudes.astype("<f4").tobytes(), np.asarray(event.thresholds, dtype="<f4").tobytes()):
        buffer[offset : offset + len(block)] = block
        offset += len(block)
    return bytes(buffer)


def ttl_json(event: TTLEvent, channel: ChannelDescriptor) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "event_type": "ttl",
        "stream": channel.stream_name,
        "source_node": int(channel.source_node_id),
        "sample_rate": _finite(channel.sample_rate),
        "channel_name": channel.name,
        "sample_number": int(event.sample_number),
        "line": int(event.line),
        "state": bool(event.state),
    }
    populate_metadata(payload, event.metadata, channel)
    return payload


def spike_json(event: SpikeEvent, channel: ChannelDescriptor) -> Dict[str, Any]:
    amplitudes = spike_amplitudes(event, channel)
    payload: Dict[str, Any] = {
        "event_type": "spike",
        "stream": channel.stream_name,
        "source_node": int(channel.source_node_id),
        "electrode": channel.name,
        "num_channels": int(channel.num_channels),
        "sample_rate": _finite(channel.sample_rate),
        "sample_number": int(event.sample_number),
        "sorted_id": int(event.sorted_id),
    }
    for ch, amp in enumerate(amplitudes, start=1):
        payload[f"amp{ch}"] = _finite(amp)
    populate_metadata(payload, event.metadata, channel)
    return payload


def spike_amplitudes(event: SpikeEvent, channel: ChannelDescriptor) -> np.ndarray:
    """Negated waveform sample at ``pre_peak_samples + 1`` for every channel."""
    if event.channel_count != channel.num_channels:
        raise EncodingContractViolation(
            f"Spike has {event.channel_count} channels, electrode {channel.name!r} declares {channel.num_channels}"
        )
    if event.channel_count <= 0:
        return np.zeros(0, dtype=np.float32)
    waveform = np.asarray(event.waveform, dtype=np.float32)
    if waveform.size % event.channel_count != 0:
        raise EncodingContractViolation(
            f"Waveform of {waveform.size} samples does not split into {event.channel_count} channels"
        )
    waveform = waveform.reshape(event.channel_count, -1)
    # Offset by one from the pre-peak count; kept as the receivers expect it.
    index = int(event.pre_peak_samples) + 1
    if not 0 <= index < waveform.shape[1]:
        raise EncodingContractViolation(
            f"Amplitude sample {index} outside waveform of {waveform.shape[1]} samples per channel"
        )
    return -waveform[:, index]


def populate_metadata(payload: Dict[str, Any], values: Sequence[MetadataValue], channel: ChannelDescriptor) -> None:
    for descriptor, value in zip(channel.metadata, values):
        payload[descriptor.name] = metadata_reader.read(descriptor.scalar_type, value.raw, value.count)


def _check_metadata(values: Sequence[MetadataValue], channel: ChannelDescriptor) -> None:
    if len(values) > len(channel.metadata):
        raise EncodingContractViolation(
            f"Event carries {len(values)} metadata values, channel {channel.identifier!r} "
            f"declares {len(channel.metadata)}"
        )


def _check_ttl_fields(event: TTLEvent, channel: ChannelDescriptor) -> None:
    _check_range("source_node_id", channel.source_node_id, 0, UINT16_MAX)
    _check_range("line", event.line, 0, UINT32_MAX)
    _check_range("sample_number", event.sample_number, INT64_MIN, INT64_MAX)


def _check_spike_fields(event: SpikeEvent, channel: ChannelDescriptor) -> None:
    _check_range("source_node_id", channel.source_node_id, 0, UINT16_MAX)
    _check_range("channel_count", event.channel_count, 0, UINT16_MAX)
    _check_range("sample_number", event.sample_number, INT64_MIN, INT64_MAX)
    _check_range("sorted_id", event.sorted_id, 0, UINT16_MAX)
    _check_range("pre_peak_samples", event.pre_peak_samples, 0, UINT16_MAX)
    waveform_bytes = np.asarray(event.waveform).size * AMPLITUDE_SIZE
    if waveform_bytes != channel.data_size:
        raise EncodingContractViolation(
            f"Waveform of {waveform_bytes} bytes, electrode {channel.name!r} declares data_size {channel.data_size}"
        )
    if len(event.thresholds) != event.channel_count:
        raise EncodingContractViolation(
            f"Spike has {len(event.thresholds)} thresholds for {event.channel_count} channels"
        )


def _check_range(field: str, value: int, low: int, high: int) -> None:
    if not low <= int(value) <= high:
        raise EncodingContractViolation(f"{field}={value} does not fit the wire field ({low}..{high})")


def _finite(value: float) -> Optional[float]:
    value = float(value)
    return value if math.isfinite(value) else None


def _timestamp(sample_number: int, sample_rate: float) -> float:
    if sample_rate <= 0:
        return 0.0
    return float(sample_number) / float(sample_rate)


def _write_block(buffer: bytearray, offset: int, data: bytes, size: int) -> int:
    chunk = bytes(data[:size])
    buffer[offset : offset + len(chunk)] = chunk
    return offset + size


def _write_metadata(
    buffer: bytearray, offset: int, values: Sequence[MetadataValue], channel: ChannelDescriptor
) -> int:
    for index, descriptor in enumerate(channel.metadata):
        size = metadata_reader.descriptor_size(descriptor)
        raw = values[index].raw if index < len(values) else b""
        offset = _write_block(buffer, offset, raw, size)
    return offset
