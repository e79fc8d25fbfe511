"""
Reader configuration and shared constants.

Configuration is passed explicitly to the parsers; nothing here is read
from the environment.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ReaderConfig:
    """
    Options that control decoding.

    Attributes:
        path_separator: Separator used to cut experiment labels out of
            imageset templates
        image_kind: Default numeric kind for decoded images ("float" or "int")
        singular_tolerance: |det| below which a matrix is treated as singular
        max_workers: Thread pool size for batch decoding (None = executor default)
        strict: Propagate the first per-experiment failure instead of skipping it
    """
    path_separator: str = "/"
    image_kind: str = "float"
    singular_tolerance: float = 1e-12
    max_workers: Optional[int] = None
    strict: bool = False

    def __post_init__(self):
        if self.image_kind not in ("float", "int"):
            raise ValueError(f"image_kind must be 'float' or 'int', got {self.image_kind!r}")
        if not self.path_separator:
            raise ValueError("path_separator must be a non-empty string")


DEFAULT_CONFIG = ReaderConfig()

# Sentinel identifying an experiment list document
EXPERIMENT_LIST_ID = "ExperimentList"
EXPERIMENT_LIST_EXTENSION = "expt"

# Shared sub-object arrays in an experiment list
REQUIRED_DOCUMENT_KEYS = ("imageset", "experiment")
OPTIONAL_DOCUMENT_KEYS = ("detector", "beam", "goniometer", "crystal", "scan")

# Reflection table column names
COLUMN_PANEL = "panel"
COLUMN_FLAGS = "flags"
COLUMN_XYZOBS_PX = "xyzobs.px.value"
COLUMN_XYZOBS_MM = "xyzobs.mm.value"
COLUMN_XYZCAL_PX = "xyzcal.px"
COLUMN_XYZCAL_MM = "xyzcal.mm"
COLUMN_CRYSTAL_ID = "crystal_id"
COLUMN_WAVELENGTH = "wavelength"
COLUMN_WAVELENGTH_CAL = "wavelength_cal"
COLUMN_INTENSITY_SUM = "intensity.sum.value"
COLUMN_INTENSITY_PRF = "intensity.prf.value"
COLUMN_BBOX = "bbox"
COLUMN_MILLER_INDEX = "miller_index"
COLUMN_EXPERIMENT_ID = "id"
COLUMN_IMAGESET_ID = "imageset_id"
