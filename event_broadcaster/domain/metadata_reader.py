"""Turn raw metadata bytes into JSON-ready text values.

Numeric values are rendered as text, one string per element: a single string
when the declared count is 1, a list otherwise. Text metadata is decoded
directly. The scalar type set is closed; every function here matches on all
of its members, so a new member shows up as a type error at ``_unreachable``.
"""
from __future__ import annotations

from typing import List, NoReturn, Union

import numpy as np

from event_broadcaster.domain.errors import EncodingContractViolation
from event_broadcaster.domain.events import MetadataDescriptor, ScalarType

MetadataJson = Union[str, List[str]]


def _unreachable(value: NoReturn) -> NoReturn:
    raise EncodingContractViolation(f"Unsupported metadata scalar type: {value!r}")


def scalar_dtype(scalar_type: ScalarType) -> np.dtype:
    match scalar_type:
        case ScalarType.TEXT:
            return np.dtype("S1")
        case ScalarType.INT8:
            return np.dtype("<i1")
        case ScalarType.UINT8:
            return np.dtype("<u1")
        case ScalarType.INT16:
            return np.dtype("<i2")
        case ScalarType.UINT16:
            return np.dtype("<u2")
        case ScalarType.INT32:
            return np.dtype("<i4")
        case ScalarType.UINT32:
            return np.dtype("<u4")
        case ScalarType.INT64:
            return np.dtype("<i8")
        case ScalarType.UINT64:
            return np.dtype("<u8")
        case ScalarType.FLOAT32:
            return np.dtype("<f4")
        case ScalarType.FLOAT64:
            return np.dtype("<f8")
        case _:
            _unreachable(scalar_type)


def descriptor_size(descriptor: MetadataDescriptor) -> int:
    """Bytes one value of ``descriptor`` occupies in a binary frame."""
    return scalar_dtype(descriptor.scalar_type).itemsize * max(0, int(descriptor.count))


def read(scalar_type: ScalarType, raw: bytes, count: int) -> MetadataJson:
    match scalar_type:
        case ScalarType.TEXT:
            return _read_text(raw, count)
        case (
            ScalarType.INT8
            | ScalarType.UINT8
            | ScalarType.INT16
            | ScalarType.UINT16
            | ScalarType.INT32
            | ScalarType.UINT32
            | ScalarType.INT64
            | ScalarType.UINT64
            | ScalarType.FLOAT32
            | ScalarType.FLOAT64
        ):
            return _read_numeric(scalar_dtype(scalar_type), raw, count)
        case _:
            _unreachable(scalar_type)


def _read_text(raw: bytes, count: int) -> str:
    # Stops at the first NUL like a C string.
    text = bytes(raw[: max(0, int(count))]).split(b"\x00", 1)[0]
    return text.decode("utf-8", errors="replace")


def _read_numeric(dtype: np.dtype, raw: bytes, count: int) -> MetadataJson:
    count = int(count)
    needed = dtype.itemsize * count
    if count < 0 or len(raw) < needed:
        raise EncodingContractViolation(
            f"Metadata holds {len(raw)} bytes, {count} x {dtype.name} needs {needed}"
        )
    values = np.frombuffer(raw, dtype=dtype, count=count)
    texts = [str(v) for v in values]
    if count == 1:
        return texts[0]
    return texts
