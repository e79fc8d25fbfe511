"""
Goniometer models.

Two source shapes exist in experiment lists:
- simple: fixed_rotation, setting_rotation and rotation_axis stored directly
- multi-axis: axes, angles (degrees) and scan_axis, composed here

The shape is selected once, when the record is read.
"""

import math
from typing import NamedTuple, Optional, Sequence, Union, TYPE_CHECKING

import numpy as np

from .binary_format import read_only
from .errors import FormatError, MissingDataError

if TYPE_CHECKING:
    from numpy.typing import NDArray


MULTI_AXIS_FIELDS = ("axes", "angles", "scan_axis")


class Goniometer(NamedTuple):
    """Resolved goniometer matrices in the lab frame"""
    fixed_rotation: 'NDArray'     # 3x3
    setting_rotation: 'NDArray'   # 3x3
    rotation_axis: 'NDArray'      # 3-vector


class SimpleGoniometerRecord(NamedTuple):
    fixed_rotation: 'NDArray'
    setting_rotation: 'NDArray'
    rotation_axis: 'NDArray'


class MultiAxisGoniometerRecord(NamedTuple):
    axes: 'NDArray'               # (n, 3)
    angles: 'NDArray'             # (n,) degrees
    scan_axis: int


GoniometerRecord = Union[SimpleGoniometerRecord, MultiAxisGoniometerRecord]


def _matrix3(values, name: str) -> 'NDArray':
    array = np.asarray(values, dtype=np.float64)
    if array.size != 9:
        raise FormatError(f"{name} must have 9 elements, got {array.size}")
    return array.reshape(3, 3)


def _vector3(values, name: str) -> 'NDArray':
    array = np.asarray(values, dtype=np.float64)
    if array.shape != (3,):
        raise FormatError(f"{name} must be a 3-vector, got shape {array.shape}")
    return array


def is_multi_axis(data: dict) -> bool:
    return all(field in data for field in MULTI_AXIS_FIELDS)


def goniometer_record(data: dict) -> GoniometerRecord:
    """
    Read a goniometer entry into its tagged variant.

    Raises:
        FormatError: If array shapes are wrong or scan_axis is out of range
        MissingDataError: If a simple goniometer lacks a required field
    """
    if is_multi_axis(data):
        axes = np.asarray(data["axes"], dtype=np.float64)
        angles = np.asarray(data["angles"], dtype=np.float64)
        scan_axis = int(data["scan_axis"])
        if axes.ndim != 2 or axes.shape[1] != 3:
            raise FormatError(f"Goniometer axes must be a list of 3-vectors, got shape {axes.shape}")
        if angles.shape != (axes.shape[0],):
            raise FormatError(f"Got {axes.shape[0]} goniometer axes but {angles.size} angles")
        if not 0 <= scan_axis < axes.shape[0]:
            raise FormatError(f"scan_axis {scan_axis} out of range for {axes.shape[0]} axes")
        return MultiAxisGoniometerRecord(axes, angles, scan_axis)

    for field in ("fixed_rotation", "setting_rotation", "rotation_axis"):
        if field not in data:
            raise MissingDataError(f"Goniometer has no '{field}'")
    return SimpleGoniometerRecord(
        _matrix3(data["fixed_rotation"], "fixed_rotation"),
        _matrix3(data["setting_rotation"], "setting_rotation"),
        _vector3(data["rotation_axis"], "rotation_axis"),
    )


def axis_angle_to_matrix(axis: Sequence[float], angle_deg: float) -> 'NDArray':
    """
    Right-handed rotation of `angle_deg` degrees about `axis` (Rodrigues form).

    The axis is normalized first. Viewers that build this matrix transposed
    (rotating by -angle) must transpose the result to match.
    """
    axis = np.asarray(axis, dtype=np.float64)
    norm = np.linalg.norm(axis)
    if norm == 0:
        raise FormatError("Cannot rotate about a zero-length axis")
    x, y, z = axis / norm

    angle = math.radians(angle_deg)
    c = math.cos(angle)
    s = math.sin(angle)
    t = 1.0 - c

    return np.array([
        [c + t * x * x,     t * x * y - s * z, t * x * z + s * y],
        [t * x * y + s * z, c + t * y * y,     t * y * z - s * x],
        [t * x * z - s * y, t * y * z + s * x, c + t * z * z],
    ])


def compose_rotations(axes: 'NDArray', angles: 'NDArray', indices) -> 'NDArray':
    """Product I . R(i0) . R(i1) ... in the order given by `indices`."""
    result = np.identity(3)
    for i in indices:
        result = result @ axis_angle_to_matrix(axes[i], angles[i])
    return result


def compose_goniometer(record: GoniometerRecord) -> Goniometer:
    """Build lab-frame matrices from either goniometer variant."""
    if isinstance(record, SimpleGoniometerRecord):
        return Goniometer(read_only(record.fixed_rotation.copy()),
                          read_only(record.setting_rotation.copy()),
                          read_only(record.rotation_axis.copy()))

    n_axes = len(record.axes)
    fixed = compose_rotations(record.axes, record.angles, range(record.scan_axis))
    setting = compose_rotations(record.axes, record.angles,
                                range(record.scan_axis + 1, n_axes))
    return Goniometer(read_only(fixed), read_only(setting),
                      read_only(record.axes[record.scan_axis].copy()))


def goniometer_from_record(data: Optional[dict]) -> Optional[Goniometer]:
    """Resolve a raw goniometer entry; None stays None."""
    if data is None:
        return None
    return compose_goniometer(goniometer_record(data))
