"""
Experiment list (.expt) resolution.

An experiment list is a JSON document holding arrays of shared sub-objects
(imageset, detector, beam, goniometer, crystal, scan) and an `experiment`
array whose entries refer into them by integer index. ExperimentList
resolves every reference once, producing one self-contained, immutable
Experiment per entry; the raw document is never indexed again afterwards.
"""

import dataclasses
import json
import os
import warnings
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterator, List, Optional, Sequence, Union, TYPE_CHECKING

from .config import (
    DEFAULT_CONFIG, EXPERIMENT_LIST_EXTENSION, EXPERIMENT_LIST_ID,
    OPTIONAL_DOCUMENT_KEYS, REQUIRED_DOCUMENT_KEYS, ReaderConfig
)
from .crystal import Crystal, crystal_from_record, crystal_summary
from .detector import Detector, DetectorPanel, resolve_detector
from .errors import DialsReaderError, FormatError, MissingDataError
from .goniometer import Goniometer, goniometer_from_record
from .image_codec import ImageStore, decompress_image_data, decompress_panel_images
from .models import Beam, Scan, beam_from_record, scan_from_record
from .reflection_table import Reflection

if TYPE_CHECKING:
    from numpy.typing import NDArray


@dataclass(frozen=True, eq=False)
class Experiment:
    """
    One fully resolved experiment.

    goniometer, crystal, scan and beam are None when the experiment does
    not model them.
    """
    experiment_id: int
    image_filename: Optional[str]
    crystal_summary: Optional[str]
    goniometer: Optional[Goniometer]
    crystal: Optional[Crystal]
    scan: Optional[Scan]
    beam: Optional[Beam]
    detector: Detector
    crystal_index: Optional[int] = None

    @property
    def panels(self) -> Sequence[DetectorPanel]:
        return self.detector.panels

    @property
    def num_panels(self) -> int:
        return len(self.detector)

    def has_crystal(self) -> bool:
        return self.crystal is not None


def is_expt_json(document) -> bool:
    """True if a decoded JSON document carries the ExperimentList sentinel."""
    return isinstance(document, Mapping) and document.get("__id__") == EXPERIMENT_LIST_ID


def is_dials_expt(filename: str, content: str) -> bool:
    """True for a `.expt` file whose text content is a JSON object."""
    extension = filename.rsplit(".", 1)[-1] if "." in filename else ""
    return extension == EXPERIMENT_LIST_EXTENSION and content[:1] == "{"


def validate_document(document) -> None:
    """
    Check the top-level structure of an experiment list.

    Raises:
        FormatError: If the document is not a JSON object, carries another
            sentinel, or a shared table is not an array
        MissingDataError: If `imageset` or `experiment` is absent
    """
    if not isinstance(document, Mapping):
        raise FormatError(f"Experiment list must be a JSON object, got {type(document).__name__}")

    sentinel = document.get("__id__")
    if sentinel is None:
        warnings.warn("Experiment list has no '__id__' field; assuming ExperimentList")
    elif sentinel != EXPERIMENT_LIST_ID:
        raise FormatError(f"Not an experiment list (__id__ = {sentinel!r})")

    for key in REQUIRED_DOCUMENT_KEYS:
        if key not in document:
            raise MissingDataError(f"Experiment list has no '{key}' array")
    for key in REQUIRED_DOCUMENT_KEYS + OPTIONAL_DOCUMENT_KEYS:
        if key in document and not isinstance(document[key], list):
            raise FormatError(f"'{key}' must be an array, got {type(document[key]).__name__}")


class ExperimentList:
    """
    Resolved experiments of one `.expt` document.

    Usage:
        experiments = ExperimentList.load('indexed.expt')
        for expt in experiments:
            print(expt.experiment_id, expt.crystal_summary)

    Experiments that fail to resolve are kept out of `experiments` and
    reported in `failures` (unless config.strict is set, in which case the
    first failure propagates).
    """

    def __init__(self, document: dict, filename: Optional[str] = None,
                 config: ReaderConfig = DEFAULT_CONFIG):
        validate_document(document)
        self.filename = filename
        self.config = config
        self.images = ImageStore()
        self._experiments: Dict[int, Experiment] = {}
        self._failures: Dict[int, DialsReaderError] = {}

        self._crystals, self._crystal_errors = _resolve_crystals(
            document.get("crystal") or [], config.singular_tolerance)
        self._crystal_ids = _crystal_ids(document["experiment"])

        for expt_id, record in enumerate(document["experiment"]):
            try:
                self._experiments[expt_id] = self._resolve_experiment(document, expt_id, record)
            except DialsReaderError as e:
                if config.strict:
                    raise
                warnings.warn(f"Skipping experiment {expt_id}: {e}")
                self._failures[expt_id] = e

    @classmethod
    def from_dict(cls, document: dict, filename: Optional[str] = None,
                  config: ReaderConfig = DEFAULT_CONFIG) -> 'ExperimentList':
        return cls(document, filename, config)

    @classmethod
    def from_json(cls, text: Union[str, bytes], filename: Optional[str] = None,
                  config: ReaderConfig = DEFAULT_CONFIG) -> 'ExperimentList':
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise FormatError(f"Invalid JSON: {e}") from e
        return cls(document, filename, config)

    @classmethod
    def load(cls, filename: str, config: ReaderConfig = DEFAULT_CONFIG) -> 'ExperimentList':
        """Read and resolve a `.expt` file."""
        with open(filename, 'r', encoding='utf-8') as f:
            return cls.from_json(f.read(), os.path.basename(filename), config)

    # Resolution

    def _resolve_experiment(self, document: dict, expt_id: int, record) -> Experiment:
        context = f"experiment {expt_id}"
        if not isinstance(record, Mapping):
            raise FormatError("Experiment entry must be an object", context=context)

        try:
            imageset = _reference(document, "imageset", record, expt_id)
            detector_record = _reference(document, "detector", record, expt_id)
            crystal_record = _reference(document, "crystal", record, expt_id)

            detector = (resolve_detector(detector_record) if detector_record is not None
                        else Detector.from_panels([]))

            crystal = summary = crystal_index = None
            if crystal_record is not None:
                crystal_index = record["crystal"]
                if crystal_index in self._crystal_errors:
                    raise self._crystal_errors[crystal_index]
                crystal = self._crystals[crystal_index]
                summary = crystal_summary(crystal.lattice, crystal.space_group)

            return Experiment(
                experiment_id=expt_id,
                image_filename=_image_template(imageset),
                crystal_summary=summary,
                goniometer=goniometer_from_record(
                    _reference(document, "goniometer", record, expt_id)),
                crystal=crystal,
                scan=scan_from_record(_reference(document, "scan", record, expt_id)),
                beam=beam_from_record(_reference(document, "beam", record, expt_id)),
                detector=detector,
                crystal_index=crystal_index,
            )
        except DialsReaderError as e:
            if e.context is None:
                raise type(e)(e.message, context=context) from e
            if not e.context.startswith("experiment"):
                raise type(e)(e.message, context=f"{context} {e.context}") from e
            raise
        except (TypeError, ValueError, KeyError, IndexError) as e:
            raise FormatError(f"Malformed entry: {e}", context=context) from e

    # Experiments

    @property
    def experiments(self) -> Mapping:
        """Read-only map of experiment id -> Experiment"""
        return MappingProxyType(self._experiments)

    @property
    def failures(self) -> Mapping:
        """Read-only map of experiment id -> error for experiments that failed"""
        return MappingProxyType(self._failures)

    @property
    def experiment_ids(self) -> List[int]:
        return list(self._experiments.keys())

    @property
    def num_experiments(self) -> int:
        return len(self._experiments)

    def __len__(self) -> int:
        return self.num_experiments

    def __iter__(self) -> Iterator[Experiment]:
        return iter(self._experiments.values())

    def __getitem__(self, expt_id: int) -> Experiment:
        if expt_id not in self._experiments:
            if expt_id in self._failures:
                raise KeyError(f"Experiment {expt_id} failed to resolve: {self._failures[expt_id]}")
            raise KeyError(f"No experiment {expt_id}")
        return self._experiments[expt_id]

    @property
    def image_filenames(self) -> List[Optional[str]]:
        return [expt.image_filename for expt in self]

    def experiment_labels(self, separator: Optional[str] = None) -> List[str]:
        """Last path component of each imageset template."""
        separator = separator or self.config.path_separator
        return [(expt.image_filename or "").split(separator)[-1] for expt in self]

    def crystal_ids_map(self) -> Dict[str, str]:
        """
        Map experiment id -> crystal index, as strings.

        "-1" marks "no crystal" and always maps to itself.
        """
        return dict(self._crystal_ids)

    # Crystals

    def has_crystal(self, expt_id: int) -> bool:
        expt = self._experiments.get(expt_id)
        return expt is not None and expt.crystal is not None

    def crystal(self, expt_id: int) -> Optional[Crystal]:
        return self[expt_id].crystal

    def crystal_u(self, expt_id: int) -> Optional['NDArray']:
        crystal = self[expt_id].crystal
        return crystal.U.copy() if crystal is not None else None

    def crystal_rlv(self, expt_id: int) -> Optional['NDArray']:
        crystal = self[expt_id].crystal
        return crystal.reciprocal_cell.copy() if crystal is not None else None

    def all_crystals(self) -> List[Optional[Crystal]]:
        """
        Every crystal entry, in document order, as derived at construction.

        Entries that cannot be derived (degenerate cells) are None.
        """
        for i, error in self._crystal_errors.items():
            warnings.warn(f"Crystal {i} could not be derived: {error}")
        return list(self._crystals)

    def all_crystal_rlvs(self) -> List['NDArray']:
        """Reciprocal lattice vectors (rows a*, b*, c*) of every derivable crystal."""
        return [c.reciprocal_cell.copy() for c in self._crystals if c is not None]

    def all_crystal_rcvs(self) -> List['NDArray']:
        """Rows of each derivable crystal's B matrix."""
        return [c.B.copy() for c in self._crystals if c is not None]

    # Beam

    def beam_direction(self, expt_id: int) -> Optional['NDArray']:
        beam = self[expt_id].beam
        return beam.direction.copy() if beam is not None else None

    def beam_summary(self, expt_id: int) -> Optional[str]:
        beam = self[expt_id].beam
        return beam.summary() if beam is not None else None

    # Detector panels

    def num_panels(self, expt_id: int) -> int:
        return self[expt_id].num_panels

    def panel(self, expt_id: int, panel_idx: int) -> DetectorPanel:
        return self[expt_id].detector[panel_idx]

    def panel_name(self, expt_id: int, panel_idx: int) -> Optional[str]:
        return self.panel(expt_id, panel_idx).name

    def panel_index_by_name(self, expt_id: int, name: str) -> Optional[int]:
        return self[expt_id].detector.index_of(name)

    def panel_by_name(self, expt_id: int, name: str) -> Optional[DetectorPanel]:
        return self[expt_id].detector.panel_by_name(name)

    def panel_centroid_by_name(self, expt_id: int, name: str) -> Optional['NDArray']:
        panel = self.panel_by_name(expt_id, name)
        return panel.centroid.copy() if panel is not None else None

    def panel_corners(self, expt_id: int, panel_idx: int) -> List['NDArray']:
        return self.panel(expt_id, panel_idx).corners

    def panel_normal(self, expt_id: int, panel_idx: int) -> 'NDArray':
        return self.panel(expt_id, panel_idx).normal

    def panel_image_size(self, expt_id: int, panel_idx: int) -> 'NDArray':
        return self.panel(expt_id, panel_idx).image_size.copy()

    # Images

    def _check_experiment(self, expt_id: int) -> Experiment:
        return self[expt_id]

    def _check_panel(self, expt_id: int, panel_idx: int) -> None:
        n_panels = self[expt_id].num_panels
        if not 0 <= panel_idx < n_panels:
            raise IndexError(f"Experiment {expt_id} has {n_panels} panels, got index {panel_idx}")

    def add_image_data(self, expt_id: int, panel_idx: int, image_data: Union[str, bytes],
                       shape: Sequence[int], kind: Optional[str] = None) -> 'NDArray':
        """Decode one panel image and store it."""
        self._check_panel(expt_id, panel_idx)
        image = decompress_image_data(image_data, shape, kind or self.config.image_kind,
                                      context=f"experiment {expt_id} panel {panel_idx}")
        self.images.add(expt_id, panel_idx, image)
        return image

    def add_experiment_image_data(self, expt_id: int, images: Sequence[Union[str, bytes]],
                                  shapes: Sequence[Sequence[int]],
                                  kind: Optional[str] = None) -> List['NDArray']:
        """
        Decode and store the images of every panel of one experiment.

        Raises:
            FormatError: If the image count differs from the panel count
        """
        n_panels = self._check_experiment(expt_id).num_panels
        if len(images) != n_panels:
            raise FormatError(f"Got {len(images)} panel images for {n_panels} panels",
                              context=f"experiment {expt_id}")
        decoded = decompress_panel_images(images, shapes, kind or self.config.image_kind,
                                          self.config.max_workers,
                                          context=f"experiment {expt_id}")
        for panel_idx, image in enumerate(decoded):
            self.images.add(expt_id, panel_idx, image)
        return decoded

    def image(self, expt_id: int, panel_idx: int) -> Optional['NDArray']:
        return self.images.get(expt_id, panel_idx)

    def clear_images(self, expt_id: Optional[int] = None) -> None:
        self.images.clear(expt_id)

    # Scan angles

    @staticmethod
    def angle_from_frame(scan: Optional[Scan], frame: float) -> Optional[float]:
        if scan is None:
            return None
        return scan.angle_from_frame(frame)

    def add_angles_to_reflections(self, reflections: Sequence[Reflection]) -> List[Reflection]:
        """
        Return copies of `reflections` with rotation angles filled in.

        The angle comes from the z (frame) component of xyz_obs / xyz_cal.
        Reflections of experiments without a scan get an angle of 0.0.
        """
        updated = []
        for refl in reflections:
            expt = self._experiments.get(refl.experiment_id)
            scan = expt.scan if expt is not None else None
            changes = {}
            if refl.xyz_obs is not None:
                changes["angle_obs"] = 0.0 if scan is None else float(
                    scan.angle_from_frame(refl.xyz_obs[2]))
            if refl.xyz_cal is not None:
                changes["angle_cal"] = 0.0 if scan is None else float(
                    scan.angle_from_frame(refl.xyz_cal[2]))
            updated.append(dataclasses.replace(refl, **changes))
        return updated


def _image_template(imageset: Optional[dict]) -> Optional[str]:
    """Filename template of an imageset (first image path for non-sweep imagesets)."""
    if imageset is None:
        return None
    if imageset.get("template"):
        return imageset["template"]
    images = imageset.get("images")
    if images:
        return images[0]
    return None


def _reference(document: dict, key: str, record: Mapping, expt_id: int) -> Optional[dict]:
    """
    Follow one index of an experiment record into its shared array.

    A missing field, or a missing/empty shared array, means the
    experiment does not model that sub-object.
    """
    if key not in record or record[key] is None:
        return None
    table = document.get(key)
    if not table:
        return None

    context = f"experiment {expt_id}"
    idx = record[key]
    if isinstance(idx, bool) or not isinstance(idx, int):
        raise FormatError(f"'{key}' reference must be an integer, got {idx!r}", context=context)
    if not 0 <= idx < len(table):
        raise MissingDataError(f"'{key}' index {idx} out of range (0..{len(table) - 1})",
                               context=context)

    entry = table[idx]
    if entry is not None and not isinstance(entry, Mapping):
        raise FormatError(f"'{key}' entry {idx} must be an object, got {type(entry).__name__}",
                          context=context)
    return entry


def _resolve_crystals(records: Sequence, tolerance: float):
    """
    Derive every crystal entry once.

    Returns:
        (tuple of Crystal or None, dict of crystal index -> error)
    """
    crystals: List[Optional[Crystal]] = []
    errors: Dict[int, DialsReaderError] = {}
    for i, record in enumerate(records):
        try:
            if not isinstance(record, Mapping):
                raise FormatError(f"Crystal entry must be an object, got {type(record).__name__}")
            crystals.append(crystal_from_record(record, tolerance))
        except DialsReaderError as e:
            crystals.append(None)
            errors[i] = e
        except (TypeError, ValueError) as e:
            crystals.append(None)
            errors[i] = FormatError(f"Malformed crystal entry: {e}")
    return tuple(crystals), errors


def _crystal_ids(records: Sequence) -> Dict[str, str]:
    crystal_ids = {"-1": "-1"}
    for expt_id, record in enumerate(records):
        if isinstance(record, Mapping) and record.get("crystal") is not None:
            crystal_ids[str(expt_id)] = str(record["crystal"])
        else:
            crystal_ids[str(expt_id)] = "-1"
    return crystal_ids
