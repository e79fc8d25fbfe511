"""
Panel image decoding.

Images arrive as base64 text wrapping a DEFLATE (zlib) stream of
little-endian float64 or int32 pixels; the [rows, cols] shape is sent
separately. Decoded grids are large and session-scoped, so they live in an
ImageStore that can be cleared without touching experiment geometry.
"""

import base64
import binascii
import zlib
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence, Tuple, Union, TYPE_CHECKING

import numpy as np

from .errors import DecodeError, FormatError

if TYPE_CHECKING:
    from numpy.typing import NDArray


# kind -> (little-endian dtype, bytes per pixel)
IMAGE_KINDS = {
    "float": ('<f8', 8),
    "int": ('<i4', 4),
}


def _image_dtype(kind: str) -> Tuple[str, int]:
    if kind not in IMAGE_KINDS:
        raise ValueError(f"Unknown image kind {kind!r}, expected one of {sorted(IMAGE_KINDS)}")
    return IMAGE_KINDS[kind]


def decompress_image_data(image_data: Union[str, bytes], shape: Sequence[int],
                          kind: str = "float", context: Optional[str] = None) -> 'NDArray':
    """
    Decode one compressed panel image.

    Args:
        image_data: base64 text of the DEFLATE-compressed pixel buffer
        shape: (rows, cols)
        kind: "float" (float64) or "int" (int32)
        context: Label for error messages (e.g. "experiment 0 panel 3")

    Returns:
        Array of shape (rows, cols)

    Raises:
        DecodeError: If base64/inflate fails or the pixel count does not match
    """
    dtype, width = _image_dtype(kind)
    if len(shape) != 2:
        raise FormatError(f"Image shape must be [rows, cols], got {list(shape)}", context=context)
    rows, cols = int(shape[0]), int(shape[1])

    try:
        compressed = base64.b64decode(image_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 image data: {e}", context=context) from e

    try:
        raw = zlib.decompress(compressed)
    except zlib.error as e:
        raise DecodeError(f"Failed to inflate image data: {e}", context=context) from e

    expected = rows * cols * width
    if len(raw) != expected:
        raise DecodeError(f"Decompressed image is {len(raw)} bytes, expected "
                          f"{expected} ({rows} x {cols} x {width})", context=context)

    return np.frombuffer(raw, dtype=dtype).reshape(rows, cols)


def compress_image_data(image: 'NDArray', kind: str = "float", level: int = 6) -> str:
    """Inverse of decompress_image_data; returns base64 text."""
    dtype, _ = _image_dtype(kind)
    raw = np.ascontiguousarray(image, dtype=dtype).tobytes()
    return base64.b64encode(zlib.compress(raw, level)).decode('ascii')


def decompress_panel_images(images: Sequence[Union[str, bytes]], shapes: Sequence[Sequence[int]],
                            kind: str = "float", max_workers: Optional[int] = None,
                            context: Optional[str] = None) -> List['NDArray']:
    """
    Decode the images of every panel of one experiment.

    Panels are decoded concurrently, each into its own slot.

    Args:
        images: One compressed image per panel
        shapes: One (rows, cols) per panel
        kind: "float" or "int"
        max_workers: Thread pool size
        context: Label prefix for error messages

    Returns:
        List of decoded grids in panel order

    Raises:
        FormatError: If the image and shape counts differ
        DecodeError: For the first panel that fails to decode
    """
    if len(images) != len(shapes):
        raise FormatError(f"Got {len(images)} panel images but {len(shapes)} panel shapes",
                          context=context)

    decoded: List[Optional['NDArray']] = [None] * len(images)
    with ThreadPoolExecutor(max_workers=max_workers) as ex:
        futures = {}
        for panel_idx, (data, shape) in enumerate(zip(images, shapes)):
            label = f"{context} panel {panel_idx}" if context else f"panel {panel_idx}"
            futures[ex.submit(decompress_image_data, data, shape, kind, label)] = panel_idx
        for fut in as_completed(futures):
            decoded[futures[fut]] = fut.result()
    return decoded


class ImageStore:
    """
    Decoded image grids keyed by (experiment id, panel index).

    Clearing the store reclaims memory without invalidating geometry.
    """

    def __init__(self):
        self._images: Dict[Tuple[int, int], 'NDArray'] = {}

    def add(self, experiment_id: int, panel_idx: int, image: 'NDArray') -> None:
        self._images[(experiment_id, panel_idx)] = image

    def get(self, experiment_id: int, panel_idx: int) -> Optional['NDArray']:
        return self._images.get((experiment_id, panel_idx))

    def has(self, experiment_id: int, panel_idx: int) -> bool:
        return (experiment_id, panel_idx) in self._images

    def panels_for(self, experiment_id: int) -> Dict[int, 'NDArray']:
        """All decoded panels of one experiment, keyed by panel index."""
        return {panel: image for (expt, panel), image in self._images.items()
                if expt == experiment_id}

    def clear(self, experiment_id: Optional[int] = None) -> None:
        """Drop every image, or only those of one experiment."""
        if experiment_id is None:
            self._images.clear()
            return
        for key in [key for key in self._images if key[0] == experiment_id]:
            del self._images[key]

    def __len__(self) -> int:
        return len(self._images)

    @property
    def nbytes(self) -> int:
        return sum(image.nbytes for image in self._images.values())
