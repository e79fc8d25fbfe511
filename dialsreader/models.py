"""
Beam and scan records of an experiment list.
"""

import math
from typing import NamedTuple, Optional, TYPE_CHECKING

import numpy as np

from .binary_format import read_only
from .errors import FormatError, MissingDataError

if TYPE_CHECKING:
    from numpy.typing import NDArray


class Beam(NamedTuple):
    """Incident beam; wavelength in Angstrom, None if not recorded"""
    direction: 'NDArray'
    wavelength: Optional[float] = None

    def summary(self) -> str:
        direction = ",".join(f"{v:.3f}" for v in self.direction)
        text = f"direction: ({direction}), "
        if self.wavelength:
            text += f" wavelength: {self.wavelength:.3f}"
        return text


class Scan(NamedTuple):
    """
    Rotation scan.

    Angles in radians; image range converted to zero-based frame numbers.
    """
    oscillation_start: float
    oscillation_step: float
    image_range_start: int
    image_range_end: int

    def angle_from_frame(self, frame):
        """Rotation angle at a (possibly fractional) frame. Works on arrays too."""
        return self.oscillation_start + (frame - self.image_range_start) * self.oscillation_step

    @property
    def num_images(self) -> int:
        return self.image_range_end - self.image_range_start + 1


def beam_from_record(record: Optional[dict]) -> Optional[Beam]:
    if record is None:
        return None
    if "direction" not in record:
        raise MissingDataError("Beam has no 'direction'")
    direction = np.array(record["direction"], dtype=np.float64)
    if direction.shape != (3,):
        raise FormatError(f"Beam direction must be a 3-vector, got shape {direction.shape}")
    wavelength = record.get("wavelength")
    return Beam(read_only(direction), float(wavelength) if wavelength is not None else None)


def scan_from_record(record: Optional[dict]) -> Optional[Scan]:
    """
    Read a scan entry.

    Returns None when the scan has no oscillation property (still shots).
    """
    if record is None:
        return None
    properties = record.get("properties") or {}
    if "oscillation" not in properties:
        return None
    if "image_range" not in record:
        raise MissingDataError("Scan has no 'image_range'")

    start_deg, step_deg = properties["oscillation"][:2]
    first, last = record["image_range"][:2]
    return Scan(
        oscillation_start=math.radians(start_deg),
        oscillation_step=math.radians(step_deg),
        image_range_start=int(first) - 1,
        image_range_end=int(last) - 1,
    )
