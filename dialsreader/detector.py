"""
Detector panel geometry.

Each panel record gives pixel size, image size, unit fast/slow axes and an
origin (mm). The detector hierarchy contributes a parent orientation built
from its own fast/slow axes and their cross product, plus a parent origin.
The lab-frame matrix is the affine composition

    lab = parent_orientation . [fast | slow | origin]
    lab[:, 2] += parent_origin
"""

import warnings
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, TYPE_CHECKING

import numpy as np

from .binary_format import read_only
from .errors import FormatError, MissingDataError

if TYPE_CHECKING:
    from numpy.typing import NDArray


PANEL_FIELDS = ("pixel_size", "image_size", "fast_axis", "slow_axis", "origin")


@dataclass(frozen=True, eq=False)
class DetectorPanel:
    """
    Lab-frame geometry of one detector panel.

    Lengths are in mm; axes are unit vectors.
    """
    index: int
    name: Optional[str]
    pixel_size: 'NDArray'         # (fast, slow) mm
    image_size: 'NDArray'         # (fast, slow) pixels
    panel_size: 'NDArray'         # (fast, slow) mm
    fast_axis: 'NDArray'
    slow_axis: 'NDArray'
    scaled_fast_axis: 'NDArray'
    scaled_slow_axis: 'NDArray'
    origin: 'NDArray'
    lab_matrix: 'NDArray'         # 3x3, columns fast | slow | origin in the lab frame
    centroid: 'NDArray'

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                read_only(value)

    @property
    def corners(self) -> List['NDArray']:
        """origin, origin+fast, origin+fast+slow, origin+slow"""
        o = self.origin
        return [
            o.copy(),
            o + self.scaled_fast_axis,
            o + self.scaled_fast_axis + self.scaled_slow_axis,
            o + self.scaled_slow_axis,
        ]

    @property
    def normal(self) -> 'NDArray':
        n = np.cross(self.scaled_fast_axis, self.scaled_slow_axis)
        return n / np.linalg.norm(n)


def _vector(record: dict, key: str, size: int, context: str) -> 'NDArray':
    if key not in record:
        raise MissingDataError(f"No '{key}' field", context=context)
    array = np.array(record[key], dtype=np.float64)
    if array.shape != (size,):
        raise FormatError(f"'{key}' must have {size} elements, got shape {array.shape}",
                          context=context)
    return array


def parent_frame(hierarchy: Optional[dict]) -> Tuple['NDArray', 'NDArray']:
    """
    Orientation and origin of the detector hierarchy root.

    Without a hierarchy the panels are already in the lab frame.
    """
    if hierarchy is None:
        return np.identity(3), np.zeros(3)

    context = "detector hierarchy"
    fast = _vector(hierarchy, "fast_axis", 3, context)
    slow = _vector(hierarchy, "slow_axis", 3, context)
    origin = _vector(hierarchy, "origin", 3, context)
    orientation = np.column_stack([fast, slow, np.cross(fast, slow)])
    return orientation, origin


def resolve_panel(record: dict, index: int, orientation: 'NDArray',
                  parent_origin: 'NDArray') -> DetectorPanel:
    """Compute lab-frame geometry for one panel record."""
    context = f"panel {index}"
    pixel_size = _vector(record, "pixel_size", 2, context)
    image_size = _vector(record, "image_size", 2, context)
    fast = _vector(record, "fast_axis", 3, context)
    slow = _vector(record, "slow_axis", 3, context)
    origin = _vector(record, "origin", 3, context)

    panel_size = pixel_size * image_size

    local = np.column_stack([fast, slow, origin])
    lab = orientation @ local
    lab[:, 2] += parent_origin

    scaled_fast = fast * panel_size[0]
    scaled_slow = slow * panel_size[1]
    centroid = origin + 0.5 * scaled_fast + 0.5 * scaled_slow

    return DetectorPanel(
        index=index,
        name=record.get("name"),
        pixel_size=pixel_size,
        image_size=image_size,
        panel_size=panel_size,
        fast_axis=fast,
        slow_axis=slow,
        scaled_fast_axis=scaled_fast,
        scaled_slow_axis=scaled_slow,
        origin=origin,
        lab_matrix=lab,
        centroid=centroid,
    )


@dataclass(frozen=True, eq=False)
class Detector:
    """Ordered panels of one detector with O(1) lookup by name"""
    panels: Tuple[DetectorPanel, ...]
    name_index: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def from_panels(cls, panels: List[DetectorPanel]) -> 'Detector':
        """Build the name map; the first panel with a given name wins."""
        name_index: Dict[str, int] = {}
        for panel in panels:
            if panel.name is None:
                continue
            if panel.name in name_index:
                warnings.warn(f"Duplicate panel name {panel.name!r} (panels "
                              f"{name_index[panel.name]} and {panel.index}); "
                              f"lookups by name return panel {name_index[panel.name]}")
                continue
            name_index[panel.name] = panel.index
        return cls(tuple(panels), MappingProxyType(name_index))

    def __len__(self) -> int:
        return len(self.panels)

    def __iter__(self) -> Iterator[DetectorPanel]:
        return iter(self.panels)

    def __getitem__(self, idx: int) -> DetectorPanel:
        return self.panels[idx]

    def index_of(self, name: str) -> Optional[int]:
        return self.name_index.get(name)

    def panel_by_name(self, name: str) -> Optional[DetectorPanel]:
        idx = self.index_of(name)
        return self.panels[idx] if idx is not None else None


def resolve_detector(record: dict) -> Detector:
    """
    Resolve every panel of a detector entry.

    Raises:
        MissingDataError: If the entry has no panels or a panel lacks a field
        FormatError: If a vector has the wrong length
    """
    if "panels" not in record:
        raise MissingDataError("Detector has no 'panels' list")
    orientation, parent_origin = parent_frame(record.get("hierarchy"))
    panels = [resolve_panel(panel, i, orientation, parent_origin)
              for i, panel in enumerate(record["panels"])]
    return Detector.from_panels(panels)
