"""
Exception types raised while decoding experiment lists, reflection tables
and panel images.

Absent optional data is never an error: accessors return None instead.
"""

from typing import Optional

import numpy as np


class DialsReaderError(Exception):
    """Base class for decode failures. Carries the failing unit in `context`."""

    def __init__(self, message: str, context: Optional[str] = None):
        self.message = message
        self.context = context
        if context:
            message = f"{context}: {message}"
        super().__init__(message)


class FormatError(DialsReaderError, ValueError):
    """Structurally invalid buffer, wrong length or wrong nesting."""
    pass


class DecodeError(FormatError):
    """Compressed image payload could not be decoded."""
    pass


class MissingDataError(DialsReaderError, ValueError):
    """Required document field is absent or a reference is out of range."""
    pass


class SingularMatrixError(DialsReaderError, np.linalg.LinAlgError):
    """Matrix could not be inverted (degenerate crystal cell)."""
    pass
