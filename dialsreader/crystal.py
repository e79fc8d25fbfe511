"""
Crystal orientation from real-space cell vectors.

The stored real_space_a/b/c vectors (lab frame, Angstrom) are the source of
truth; B, UB, U and the reciprocal cell are derived:

    M  = rows (a, b, c)
    UB = inverse(M)^T          rows are a*, b*, c*
    B  = upper-triangular matrix from the lattice parameters
    U  = inverse(B) . UB

Matrices follow the row-vector convention of the viewer that consumes them,
so B and UB are the transposes of the column-vector forms used by dxtbx.
"""

import math
from typing import NamedTuple, Optional, Sequence, TYPE_CHECKING

import numpy as np

from .binary_format import read_only
from .config import DEFAULT_CONFIG
from .errors import FormatError, MissingDataError, SingularMatrixError

if TYPE_CHECKING:
    from numpy.typing import NDArray


REAL_SPACE_FIELDS = ("real_space_a", "real_space_b", "real_space_c")


class LatticeParameters(NamedTuple):
    """Cell edge lengths (Angstrom) and angles (radians)"""
    a: float
    b: float
    c: float
    alpha: float
    beta: float
    gamma: float

    def degrees(self) -> tuple:
        """(a, b, c, alpha, beta, gamma) with angles in degrees"""
        return (self.a, self.b, self.c,
                math.degrees(self.alpha), math.degrees(self.beta), math.degrees(self.gamma))


class ReciprocalLatticeConstants(NamedTuple):
    a_star: float
    b_star: float
    c_star: float
    cos_alpha_star: float
    cos_beta_star: float
    cos_gamma_star: float


class Crystal(NamedTuple):
    """Derived orientation matrices for one crystal"""
    U: 'NDArray'                  # 3x3 pure rotation
    B: 'NDArray'                  # 3x3 orthogonalization
    UB: 'NDArray'                 # 3x3
    reciprocal_cell: 'NDArray'    # 3x3, rows are a*, b*, c*
    lattice: LatticeParameters
    space_group: Optional[str] = None


def _angle_between(u: 'NDArray', v: 'NDArray') -> float:
    cos_angle = np.dot(u, v) / (np.linalg.norm(u) * np.linalg.norm(v))
    return float(np.arccos(np.clip(cos_angle, -1.0, 1.0)))


def lattice_parameters(a: Sequence[float], b: Sequence[float],
                       c: Sequence[float]) -> LatticeParameters:
    """
    Cell lengths and inter-axial angles of three real-space vectors.

    alpha = angle(b, c), beta = angle(a, c), gamma = angle(a, b)
    """
    a, b, c = (np.asarray(v, dtype=np.float64) for v in (a, b, c))
    lengths = [float(np.linalg.norm(v)) for v in (a, b, c)]
    if min(lengths) == 0.0:
        raise SingularMatrixError("Cell vector has zero length")
    return LatticeParameters(
        lengths[0], lengths[1], lengths[2],
        _angle_between(b, c), _angle_between(a, c), _angle_between(a, b),
    )


def unit_cell_volume(a: float, b: float, c: float,
                     alpha: float, beta: float, gamma: float,
                     tolerance: float = DEFAULT_CONFIG.singular_tolerance) -> float:
    """
    Volume from lattice parameters.

    Raises:
        SingularMatrixError: If the angles do not describe a real cell
            (volume term at or below `tolerance`)
    """
    cos_a, cos_b, cos_g = math.cos(alpha), math.cos(beta), math.cos(gamma)
    bracket = 1 - cos_a ** 2 - cos_b ** 2 - cos_g ** 2 + 2 * cos_a * cos_b * cos_g
    if bracket <= tolerance:
        raise SingularMatrixError(f"Degenerate cell (volume term {bracket:.3g})")
    return a * b * c * math.sqrt(bracket)


def reciprocal_lattice_constants(a: float, b: float, c: float,
                                 alpha: float, beta: float, gamma: float,
                                 volume: float) -> ReciprocalLatticeConstants:
    """a*, b*, c* and the reciprocal angle cosines."""
    sin_a, sin_b, sin_g = math.sin(alpha), math.sin(beta), math.sin(gamma)
    cos_a, cos_b, cos_g = math.cos(alpha), math.cos(beta), math.cos(gamma)
    return ReciprocalLatticeConstants(
        b * c * sin_a / volume,
        c * a * sin_b / volume,
        a * b * sin_g / volume,
        (cos_b * cos_g - cos_a) / (sin_b * sin_g),
        (cos_g * cos_a - cos_b) / (sin_g * sin_a),
        (cos_a * cos_b - cos_g) / (sin_a * sin_b),
    )


def b_matrix(a_vec: Sequence[float], b_vec: Sequence[float], c_vec: Sequence[float],
             tolerance: float = DEFAULT_CONFIG.singular_tolerance) -> 'NDArray':
    """Upper-triangular B matrix of a cell."""
    a, b, c, alpha, beta, gamma = lattice_parameters(a_vec, b_vec, c_vec)
    volume = unit_cell_volume(a, b, c, alpha, beta, gamma, tolerance)
    rlc = reciprocal_lattice_constants(a, b, c, alpha, beta, gamma, volume)
    sin_alpha_star = math.sqrt(1 - rlc.cos_alpha_star ** 2)

    sin_b, sin_g = math.sin(beta), math.sin(gamma)
    cos_b, cos_g = math.cos(beta), math.cos(gamma)

    b02 = -(cos_g * sin_b * rlc.cos_alpha_star + cos_b * sin_g)
    b02 /= sin_b * sin_alpha_star * sin_g * a

    return np.array([
        [1.0 / a, -cos_g / (sin_g * a), b02],
        [0.0, 1.0 / (sin_g * b), rlc.cos_alpha_star / (sin_alpha_star * sin_g * b)],
        [0.0, 0.0, 1.0 / (sin_b * sin_alpha_star * c)],
    ])


def invert_matrix(matrix: 'NDArray', tolerance: float = DEFAULT_CONFIG.singular_tolerance,
                  context: Optional[str] = None) -> 'NDArray':
    """
    Inverse of a 3x3 matrix.

    Raises:
        SingularMatrixError: If |det| is below `tolerance`
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    det = np.linalg.det(matrix)
    if not np.isfinite(det) or abs(det) < tolerance:
        raise SingularMatrixError(f"Matrix is singular (det={det:.3g})", context=context)
    return np.linalg.inv(matrix)


def crystal_from_vectors(a: Sequence[float], b: Sequence[float], c: Sequence[float],
                         space_group: Optional[str] = None,
                         tolerance: float = DEFAULT_CONFIG.singular_tolerance) -> Crystal:
    """
    Derive B, UB, U and the reciprocal cell from real-space vectors.

    Raises:
        SingularMatrixError: If the vectors are coplanar or degenerate
    """
    real_space = np.array([a, b, c], dtype=np.float64)
    if real_space.shape != (3, 3):
        raise FormatError(f"Cell vectors must be three 3-vectors, got shape {real_space.shape}")

    real_inverse = invert_matrix(real_space, tolerance, "real-space cell")
    ub = real_inverse.T.copy()
    b_mat = b_matrix(*real_space, tolerance=tolerance)
    u = invert_matrix(b_mat, tolerance, "B matrix") @ ub

    return Crystal(
        U=read_only(u),
        B=read_only(b_mat),
        UB=read_only(ub),
        reciprocal_cell=read_only(real_inverse.T.copy()),
        lattice=lattice_parameters(*real_space),
        space_group=space_group,
    )


def real_space_vectors(record: dict) -> 'NDArray':
    """(3, 3) array with rows a, b, c from a crystal entry."""
    missing = [field for field in REAL_SPACE_FIELDS if field not in record]
    if missing:
        raise MissingDataError(f"Crystal has no {', '.join(missing)}")
    return np.array([record[field] for field in REAL_SPACE_FIELDS], dtype=np.float64)


def crystal_from_record(record: Optional[dict],
                        tolerance: float = DEFAULT_CONFIG.singular_tolerance) -> Optional[Crystal]:
    """Resolve a raw crystal entry; None stays None."""
    if record is None:
        return None
    a, b, c = real_space_vectors(record)
    return crystal_from_vectors(a, b, c, record.get("space_group_hall_symbol"), tolerance)


def crystal_summary(lattice: LatticeParameters, space_group: Optional[str] = None) -> str:
    """Human-readable cell description, angles in degrees."""
    a, b, c, alpha, beta, gamma = lattice.degrees()
    text = f"a: {a:.3f} b: {b:.3f} c: {c:.3f}"
    text += f" alpha: {alpha:.3f} beta: {beta:.3f} gamma: {gamma:.3f}"
    if space_group is not None:
        text += f" ({space_group})"
    return text


def crystal_summary_from_record(record: Optional[dict]) -> Optional[str]:
    if record is None:
        return None
    return crystal_summary(lattice_parameters(*real_space_vectors(record)),
                           record.get("space_group_hall_symbol"))
