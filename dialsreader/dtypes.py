"""DIALS reflection column type tag -> binary layout mapping."""

from typing import NamedTuple

from .binary_format import ElementKind
from .errors import FormatError


class ColumnLayout(NamedTuple):
    """Binary layout of one column row"""
    element_width: int   # bytes per element
    kind: ElementKind
    arity: int           # elements per row
    description: str

    @property
    def row_size(self) -> int:
        return self.element_width * self.arity


DIALS_TYPES = {
    "double":                 ColumnLayout(8, ElementKind.FLOAT64, 1, "64-bit float"),
    "int":                    ColumnLayout(4, ElementKind.INT32, 1, "32-bit signed int"),
    "std::size_t":            ColumnLayout(8, ElementKind.UINT32, 1, "64-bit unsigned int (low 32 bits read)"),
    "vec3<double>":           ColumnLayout(8, ElementKind.FLOAT64, 3, "3 x 64-bit float"),
    "cctbx::miller::index<>": ColumnLayout(4, ElementKind.INT32, 3, "3 x 32-bit int (Miller index)"),
    "int6":                   ColumnLayout(4, ElementKind.INT32, 6, "6 x 32-bit int (bounding box)"),
}


def column_layout(type_tag: str) -> ColumnLayout:
    """Return the binary layout for a DIALS column type tag."""
    if type_tag not in DIALS_TYPES:
        raise FormatError(f"Unsupported column type: {type_tag!r}")
    return DIALS_TYPES[type_tag]


def is_supported_type(type_tag: str) -> bool:
    return type_tag in DIALS_TYPES
