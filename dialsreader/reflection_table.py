"""
Reflection table decoding.

A DIALS `.refl` file is a msgpack document of the form

    [type_name, version, {"data": {column_name: [type_tag, [metadata, raw_bytes]]}, ...}]

Only the "data" key is relied on. Column payloads stay as raw bytes and are
decoded on demand, so a table can be queried repeatedly (and from several
threads) without mutating anything.
"""

import base64
import binascii
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import IntFlag
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple, Union, TYPE_CHECKING

import msgpack
import numpy as np

from . import config
from .binary_format import ElementKind, read_column
from .dtypes import column_layout, is_supported_type
from .errors import FormatError

if TYPE_CHECKING:
    from numpy.typing import NDArray


class ReflectionFlag(IntFlag):
    """Status bits of the `flags` column"""
    PREDICTED = 1 << 0
    OBSERVED = 1 << 1
    INDEXED = 1 << 2
    INTEGRATED_SUM = 1 << 8
    INTEGRATED_PRF = 1 << 9


def _has_flag(flags, flag: ReflectionFlag):
    bit = int(flag)
    if isinstance(flags, (int, np.integer)):
        return (int(flags) & bit) == bit
    return (np.asarray(flags, dtype=np.uint64) & np.uint64(bit)) == np.uint64(bit)


def is_predicted(flags):
    """True where bit 0 is set. Accepts an int or an array of flags."""
    return _has_flag(flags, ReflectionFlag.PREDICTED)


def is_observed(flags):
    return _has_flag(flags, ReflectionFlag.OBSERVED)


def is_indexed(flags):
    return _has_flag(flags, ReflectionFlag.INDEXED)


def is_summation_integrated(flags):
    return _has_flag(flags, ReflectionFlag.INTEGRATED_SUM)


def is_prf_integrated(flags):
    return _has_flag(flags, ReflectionFlag.INTEGRATED_PRF)


def is_valid_miller_index(hkl) -> bool:
    """(0, 0, 0) marks an unindexed reflection; any nonzero component is valid."""
    h, k, l = (int(v) for v in hkl)
    return abs(h) + abs(k) + abs(l) > 0


def valid_miller_indices(indices: 'NDArray') -> 'NDArray':
    """Vectorised is_valid_miller_index over an (n, 3) array."""
    indices = np.asarray(indices, dtype=np.int64).reshape(-1, 3)
    return np.abs(indices).sum(axis=1) > 0


class Column(NamedTuple):
    """One undecoded reflection table column"""
    type_tag: str
    metadata: object     # usually the row count
    data: bytes


@dataclass
class Reflection:
    """
    Row view of a reflection table.

    Fields are None when the corresponding column is absent.
    """
    index: int
    experiment_id: Optional[int] = None
    panel: Optional[int] = None
    xyz_obs: Optional[Tuple[float, float, float]] = None
    xyz_cal: Optional[Tuple[float, float, float]] = None
    miller_index: Optional[Tuple[int, int, int]] = None
    flags: Optional[int] = None
    angle_obs: Optional[float] = None
    angle_cal: Optional[float] = None

    @property
    def is_indexed(self) -> bool:
        return self.miller_index is not None and is_valid_miller_index(self.miller_index)


class ReflectionTable:
    """
    Column map decoded from a DIALS reflection file.

    Usage:
        table = ReflectionTable.from_msgpack(raw_bytes)
        if table.contains_xyz_obs():
            xyz = table.get_xyz_obs()
    """

    def __init__(self, columns: Dict[str, Column], filename: Optional[str] = None):
        self._columns = dict(columns)
        self.filename = filename

    # Construction

    @classmethod
    def from_envelope(cls, decoded, filename: Optional[str] = None) -> 'ReflectionTable':
        """
        Build a table from an already deserialized msgpack envelope.

        Raises:
            FormatError: If the envelope or any column entry has the wrong nesting
        """
        if not isinstance(decoded, (list, tuple)) or len(decoded) != 3:
            raise FormatError("Reflection table envelope must be a 3-element array")

        container = decoded[2]
        if not isinstance(container, Mapping) or "data" not in container:
            raise FormatError("Reflection table envelope has no 'data' map")

        data = container["data"]
        if not isinstance(data, Mapping):
            raise FormatError("Reflection table 'data' entry is not a map")

        columns = {}
        for name, entry in data.items():
            if isinstance(name, bytes):
                name = name.decode('utf-8')
            columns[name] = _parse_column_entry(name, entry)

        return cls(columns, filename)

    @classmethod
    def from_msgpack(cls, raw: bytes, filename: Optional[str] = None) -> 'ReflectionTable':
        """Deserialize a `.refl` msgpack blob."""
        try:
            decoded = msgpack.unpackb(raw, raw=False, strict_map_key=False)
        except ValueError as e:
            # msgpack's ExtraData, FormatError and StackError all derive from ValueError
            raise FormatError(f"Invalid msgpack data: {e}") from e
        return cls.from_envelope(decoded, filename)

    @classmethod
    def from_base64_msgpack(cls, text: Union[str, bytes],
                            filename: Optional[str] = None) -> 'ReflectionTable':
        """Deserialize a base64-wrapped msgpack blob (as embedded in JSON messages)."""
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise FormatError(f"Invalid base64 reflection data: {e}") from e
        return cls.from_msgpack(raw, filename)

    @classmethod
    def load(cls, filename: str) -> 'ReflectionTable':
        """Read and decode a `.refl` file."""
        with open(filename, 'rb') as f:
            return cls.from_msgpack(f.read(), filename)

    # Column access

    def contains_column(self, name: str) -> bool:
        return name in self._columns

    def __contains__(self, name: str) -> bool:
        return self.contains_column(name)

    @property
    def column_names(self) -> List[str]:
        return list(self._columns.keys())

    def type_tag(self, name: str) -> Optional[str]:
        column = self._columns.get(name)
        return column.type_tag if column is not None else None

    def column_buffer(self, name: str) -> Optional[bytes]:
        """Raw bytes of a column, or None if absent."""
        column = self._columns.get(name)
        return column.data if column is not None else None

    @property
    def num_rows(self) -> int:
        """
        Number of reflections.

        Raises:
            FormatError: If decodable columns disagree on the row count
        """
        counts = {}
        for name, column in self._columns.items():
            if not is_supported_type(column.type_tag):
                continue
            layout = column_layout(column.type_tag)
            if len(column.data) % layout.row_size != 0:
                raise FormatError(f"Length {len(column.data)} is not a multiple of "
                                  f"row size {layout.row_size}", context=f"column {name!r}")
            counts[name] = len(column.data) // layout.row_size

        distinct = set(counts.values())
        if len(distinct) > 1:
            raise FormatError(f"Columns disagree on row count: {counts}")
        return distinct.pop() if distinct else 0

    def __len__(self) -> int:
        return self.num_rows

    def _read(self, name: str, element_width: int, kind: ElementKind,
              arity: int = 1) -> Optional['NDArray']:
        column = self._columns.get(name)
        if column is None:
            return None
        try:
            return read_column(column.data, element_width, kind, arity)
        except FormatError as e:
            raise FormatError(str(e), context=f"column {name!r}") from e

    def get_column(self, name: str) -> Optional['NDArray']:
        """Decode a column using its own type tag."""
        column = self._columns.get(name)
        if column is None:
            return None
        try:
            layout = column_layout(column.type_tag)
        except FormatError as e:
            raise FormatError(str(e), context=f"column {name!r}") from e
        return self._read(name, layout.element_width, layout.kind, layout.arity)

    def get_uint32_array(self, name: str) -> Optional['NDArray']:
        """Unsigned values stored as 8-byte elements (low 32 bits)."""
        return self._read(name, 8, ElementKind.UINT32)

    def get_int32_array(self, name: str) -> Optional['NDArray']:
        return self._read(name, 4, ElementKind.INT32)

    def get_double_array(self, name: str) -> Optional['NDArray']:
        return self._read(name, 8, ElementKind.FLOAT64)

    def get_vec3_double_array(self, name: str) -> Optional['NDArray']:
        return self._read(name, 8, ElementKind.FLOAT64, 3)

    def get_vec3_int32_array(self, name: str) -> Optional['NDArray']:
        return self._read(name, 4, ElementKind.INT32, 3)

    def get_vec6_int32_array(self, name: str) -> Optional['NDArray']:
        return self._read(name, 4, ElementKind.INT32, 6)

    def decode_columns(self, names: Optional[Sequence[str]] = None,
                       max_workers: Optional[int] = None) -> Dict[str, object]:
        """
        Decode several columns concurrently.

        Each column is decoded into its own slot. A column that fails keeps
        its exception as the value so the caller can skip it; an absent
        column maps to None.

        Args:
            names: Columns to decode (default: all)
            max_workers: Thread pool size

        Returns:
            Dict of column name -> array, None or FormatError
        """
        if names is None:
            names = self.column_names
        results: Dict[str, object] = {name: None for name in names}
        present = [name for name in names if name in self._columns]

        with ThreadPoolExecutor(max_workers=max_workers) as ex:
            futures = {ex.submit(self.get_column, name): name for name in present}
            for fut in as_completed(futures):
                name = futures[fut]
                try:
                    results[name] = fut.result()
                except FormatError as e:
                    results[name] = e
        return results

    # Named columns

    def get_panel_numbers(self) -> Optional['NDArray']:
        return self.get_uint32_array(config.COLUMN_PANEL)

    def get_flags(self) -> Optional['NDArray']:
        return self.get_uint32_array(config.COLUMN_FLAGS)

    def contains_flags(self) -> bool:
        return self.contains_column(config.COLUMN_FLAGS)

    def get_xyz_obs(self) -> Optional['NDArray']:
        return self.get_vec3_double_array(config.COLUMN_XYZOBS_PX)

    def contains_xyz_obs(self) -> bool:
        return self.contains_column(config.COLUMN_XYZOBS_PX)

    def get_xyz_obs_mm(self) -> Optional['NDArray']:
        return self.get_vec3_double_array(config.COLUMN_XYZOBS_MM)

    def contains_xyz_obs_mm(self) -> bool:
        return self.contains_column(config.COLUMN_XYZOBS_MM)

    def get_xyz_cal(self) -> Optional['NDArray']:
        return self.get_vec3_double_array(config.COLUMN_XYZCAL_PX)

    def contains_xyz_cal(self) -> bool:
        return self.contains_column(config.COLUMN_XYZCAL_PX)

    def get_xyz_cal_mm(self) -> Optional['NDArray']:
        return self.get_vec3_double_array(config.COLUMN_XYZCAL_MM)

    def contains_xyz_cal_mm(self) -> bool:
        return self.contains_column(config.COLUMN_XYZCAL_MM)

    def get_crystal_ids(self) -> Optional['NDArray']:
        return self.get_int32_array(config.COLUMN_CRYSTAL_ID)

    def get_wavelengths(self) -> Optional['NDArray']:
        return self.get_double_array(config.COLUMN_WAVELENGTH)

    def contains_wavelengths(self) -> bool:
        return self.contains_column(config.COLUMN_WAVELENGTH)

    def get_calculated_wavelengths(self) -> Optional['NDArray']:
        return self.get_double_array(config.COLUMN_WAVELENGTH_CAL)

    def contains_calculated_wavelengths(self) -> bool:
        return self.contains_column(config.COLUMN_WAVELENGTH_CAL)

    def contains_summation_intensities(self) -> bool:
        return self.contains_column(config.COLUMN_INTENSITY_SUM)

    def contains_profile_intensities(self) -> bool:
        return self.contains_column(config.COLUMN_INTENSITY_PRF)

    def get_bounding_boxes(self) -> Optional['NDArray']:
        return self.get_vec6_int32_array(config.COLUMN_BBOX)

    def contains_bounding_boxes(self) -> bool:
        return self.contains_column(config.COLUMN_BBOX)

    def get_miller_indices(self) -> Optional['NDArray']:
        return self.get_vec3_int32_array(config.COLUMN_MILLER_INDEX)

    def contains_miller_indices(self) -> bool:
        return self.contains_column(config.COLUMN_MILLER_INDEX)

    def get_experiment_ids(self) -> Optional['NDArray']:
        return self.get_int32_array(config.COLUMN_EXPERIMENT_ID)

    def contains_experiment_ids(self) -> bool:
        return self.contains_column(config.COLUMN_EXPERIMENT_ID)

    def get_imageset_ids(self) -> Optional['NDArray']:
        return self.get_int32_array(config.COLUMN_IMAGESET_ID)

    # Derived views

    def rows_for_experiment(self, experiment_id: int) -> Optional['NDArray']:
        """Row indices belonging to one experiment, or None without an `id` column."""
        ids = self.get_experiment_ids()
        if ids is None:
            return None
        return np.flatnonzero(ids == experiment_id)

    def flag_counts(self) -> Optional[Dict[str, int]]:
        """Number of rows with each status flag set, or None without a `flags` column."""
        flags = self.get_flags()
        if flags is None:
            return None
        return {flag.name: int(np.count_nonzero(_has_flag(flags, flag)))
                for flag in ReflectionFlag}

    def reflections(self) -> List[Reflection]:
        """Build one Reflection per row from whichever columns are present."""
        ids = self.get_experiment_ids()
        panels = self.get_panel_numbers()
        xyz_obs = self.get_xyz_obs()
        xyz_cal = self.get_xyz_cal()
        millers = self.get_miller_indices()
        flags = self.get_flags()

        rows = []
        for i in range(self.num_rows):
            rows.append(Reflection(
                index=i,
                experiment_id=int(ids[i]) if ids is not None else None,
                panel=int(panels[i]) if panels is not None else None,
                xyz_obs=tuple(float(v) for v in xyz_obs[i]) if xyz_obs is not None else None,
                xyz_cal=tuple(float(v) for v in xyz_cal[i]) if xyz_cal is not None else None,
                miller_index=tuple(int(v) for v in millers[i]) if millers is not None else None,
                flags=int(flags[i]) if flags is not None else None,
            ))
        return rows


def _parse_column_entry(name: str, entry) -> Column:
    """Unwrap `[type_tag, [metadata, raw_bytes]]`."""
    context = f"column {name!r}"
    try:
        type_tag, payload = entry
        metadata, raw = payload
    except (TypeError, ValueError) as e:
        raise FormatError("Expected [type_tag, [metadata, bytes]]", context=context) from e

    if isinstance(type_tag, bytes):
        type_tag = type_tag.decode('utf-8')
    if not isinstance(type_tag, str):
        raise FormatError(f"Type tag must be a string, got {type(type_tag).__name__}",
                          context=context)
    if not isinstance(raw, (bytes, bytearray, memoryview)):
        raise FormatError(f"Column payload must be bytes, got {type(raw).__name__}",
                          context=context)
    return Column(type_tag, metadata, bytes(raw))
