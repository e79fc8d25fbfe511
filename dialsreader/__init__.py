"""
DIALS Data Reader Package

A lightweight Python library for decoding DIALS processing output without
the full dxtbx/DIALS stack. Provides essential functionality for:
- Experiment list (.expt) resolution into immutable experiment records
- Goniometer, crystal orientation and detector panel geometry
- Reflection table (.refl msgpack) column decoding and status flags
- Compressed panel image decoding

License: MIT
"""

__version__ = "0.1.0"
__author__ = "DIALS Data Analysis"

from .errors import (
    DialsReaderError, FormatError, DecodeError, MissingDataError, SingularMatrixError
)
from .config import ReaderConfig, DEFAULT_CONFIG
from .binary_format import ElementKind, read_column, pack_column
from .dtypes import ColumnLayout, DIALS_TYPES, column_layout
from .reflection_table import (
    ReflectionTable, Reflection, ReflectionFlag,
    is_predicted, is_observed, is_indexed, is_summation_integrated, is_prf_integrated,
    is_valid_miller_index, valid_miller_indices
)
from .image_codec import (
    ImageStore, decompress_image_data, decompress_panel_images, compress_image_data
)
from .goniometer import (
    Goniometer, SimpleGoniometerRecord, MultiAxisGoniometerRecord,
    axis_angle_to_matrix, goniometer_record, compose_goniometer
)
from .crystal import (
    Crystal, LatticeParameters, lattice_parameters, unit_cell_volume,
    reciprocal_lattice_constants, b_matrix, crystal_from_vectors, crystal_summary
)
from .detector import Detector, DetectorPanel, resolve_detector
from .models import Beam, Scan
from .experiment_list import (
    Experiment, ExperimentList, is_expt_json, is_dials_expt
)

__all__ = [
    'DialsReaderError',
    'FormatError',
    'DecodeError',
    'MissingDataError',
    'SingularMatrixError',
    'ReaderConfig',
    'DEFAULT_CONFIG',
    'ElementKind',
    'read_column',
    'pack_column',
    'ColumnLayout',
    'DIALS_TYPES',
    'column_layout',
    'ReflectionTable',
    'Reflection',
    'ReflectionFlag',
    'is_predicted',
    'is_observed',
    'is_indexed',
    'is_summation_integrated',
    'is_prf_integrated',
    'is_valid_miller_index',
    'valid_miller_indices',
    'ImageStore',
    'decompress_image_data',
    'decompress_panel_images',
    'compress_image_data',
    'Goniometer',
    'SimpleGoniometerRecord',
    'MultiAxisGoniometerRecord',
    'axis_angle_to_matrix',
    'goniometer_record',
    'compose_goniometer',
    'Crystal',
    'LatticeParameters',
    'lattice_parameters',
    'unit_cell_volume',
    'reciprocal_lattice_constants',
    'b_matrix',
    'crystal_from_vectors',
    'crystal_summary',
    'Detector',
    'DetectorPanel',
    'resolve_detector',
    'Beam',
    'Scan',
    'Experiment',
    'ExperimentList',
    'is_expt_json',
    'is_dials_expt',
]
