"""
Typed column extraction from raw reflection table byte buffers.

Column payloads are packed arrays of fixed-size rows:
- element width is 4 or 8 bytes
- rows hold 1, 3 or 6 elements
- all values are little-endian, independent of host byte order
"""

from enum import IntEnum
from typing import Union, TYPE_CHECKING

import numpy as np

from .errors import FormatError

if TYPE_CHECKING:
    from numpy.typing import NDArray


BufferLike = Union[bytes, bytearray, memoryview]


class ElementKind(IntEnum):
    """Numeric kind of a column element"""
    UINT32 = 0
    INT32 = 1
    FLOAT64 = 2


SUPPORTED_WIDTHS = (4, 8)
SUPPORTED_ARITIES = (1, 3, 6)

# Little-endian dtype for a 4-byte read of each kind
_NARROW_DTYPES = {
    ElementKind.UINT32: '<u4',
    ElementKind.INT32: '<i4',
}

# Little-endian dtype used to write an 8-byte element of each kind
_WIDE_DTYPES = {
    ElementKind.UINT32: '<u8',
    ElementKind.INT32: '<i8',
    ElementKind.FLOAT64: '<f8',
}


def row_size(element_width: int, arity: int = 1) -> int:
    """Number of bytes in one row"""
    return element_width * arity


def _check_layout(element_width: int, kind: ElementKind, arity: int) -> None:
    if element_width not in SUPPORTED_WIDTHS:
        raise FormatError(f"Unsupported element width {element_width} "
                          f"(expected one of {SUPPORTED_WIDTHS})")
    if arity not in SUPPORTED_ARITIES:
        raise FormatError(f"Unsupported arity {arity} (expected one of {SUPPORTED_ARITIES})")
    if kind == ElementKind.FLOAT64 and element_width != 8:
        raise FormatError("64-bit floats require an element width of 8")


def read_column(buffer: BufferLike, element_width: int, kind: ElementKind,
                arity: int = 1) -> 'NDArray':
    """
    Decode a packed little-endian column.

    A 32-bit kind read over 8-byte elements takes the low 32 bits of each
    element (DIALS stores std::size_t columns such as `flags` and `panel`
    as 8-byte integers).

    Args:
        buffer: Raw column bytes
        element_width: Bytes per element (4 or 8)
        kind: Numeric kind of each element
        arity: Elements per row (1, 3 or 6)

    Returns:
        Array of shape (n,) for arity 1, otherwise (n, arity)

    Raises:
        FormatError: If the layout is unsupported or the buffer length is
            not a whole number of rows
    """
    kind = ElementKind(kind)
    _check_layout(element_width, kind, arity)

    data = memoryview(buffer).cast('B')
    stride = row_size(element_width, arity)
    if len(data) % stride != 0:
        raise FormatError(f"Buffer length {len(data)} is not a multiple of "
                          f"row size {stride} ({arity} x {element_width} bytes)")

    if kind == ElementKind.FLOAT64:
        values = np.frombuffer(data, dtype='<f8')
    elif element_width == 4:
        values = np.frombuffer(data, dtype=_NARROW_DTYPES[kind])
    else:
        # Low word comes first in little-endian order
        values = np.frombuffer(data, dtype=_NARROW_DTYPES[kind]).reshape(-1, 2)[:, 0]

    native = {ElementKind.UINT32: np.uint32,
              ElementKind.INT32: np.int32,
              ElementKind.FLOAT64: np.float64}[kind]
    values = values.astype(native)

    if arity > 1:
        values = values.reshape(-1, arity)
    return values


def pack_column(values, element_width: int, kind: ElementKind, arity: int = 1) -> bytes:
    """
    Encode values into a packed little-endian column.

    Inverse of read_column; used to build reflection tables for export
    and test fixtures.

    Args:
        values: Scalars (arity 1) or rows of `arity` elements
        element_width: Bytes per element (4 or 8)
        kind: Numeric kind of each element
        arity: Elements per row

    Returns:
        Packed bytes
    """
    kind = ElementKind(kind)
    _check_layout(element_width, kind, arity)

    array = np.asarray(values)
    if array.size % arity != 0:
        raise FormatError(f"Cannot pack {array.size} values into rows of {arity}")
    dtype = _NARROW_DTYPES[kind] if element_width == 4 else _WIDE_DTYPES[kind]
    return array.reshape(-1).astype(dtype).tobytes()


def read_only(array: 'NDArray') -> 'NDArray':
    """Mark an array read-only in place and return it."""
    array.setflags(write=False)
    return array
