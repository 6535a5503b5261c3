"""
P-spline bases for the spatial trend of a field trial.

The 2-D trend over (column, row) coordinates is written as a mixed
model in PS-ANOVA form:

- fixed polynomial part: column, row and their product
- random smooth parts: column smooth, row smooth and their interaction

Each random block is whitened so that its covariance is sigma_k^2 I.
"""

from typing import Dict, Optional, Tuple, Union

import numpy as np
from scipy.interpolate import BSpline

DEFAULT_NSEG = 10


def construct_knots(x: np.ndarray, nseg: int, degree: int = 3) -> np.ndarray:
    """
    Construct knot sequence for P-splines.

    Parameters
    ----------
    x : np.ndarray
        Data points
    nseg : int
        Number of segments
    degree : int, default=3
        Spline degree

    Returns
    -------
    np.ndarray
        Equally spaced knot sequence extended by degree knots on each side
    """
    x_min, x_max = np.min(x), np.max(x)

    if x_max - x_min < 1e-10:
        x_range = max(1.0, abs(x_min))
        x_min = x_min - 0.5 * x_range
        x_max = x_min + x_range

    dx = (x_max - x_min) / nseg
    return x_min + dx * np.arange(-degree, nseg + degree + 1)


def bspline_basis(x: np.ndarray, knots: np.ndarray, degree: int = 3) -> np.ndarray:
    """
    Evaluate B-spline basis functions at x.

    Returns
    -------
    np.ndarray
        Basis matrix (n_obs x n_basis)
    """
    n_basis = len(knots) - degree - 1
    basis_matrix = np.zeros((len(x), n_basis))

    for i in range(n_basis):
        coeff = np.zeros(n_basis)
        coeff[i] = 1.0
        spline = BSpline(knots, coeff, degree)
        basis_matrix[:, i] = spline(x)

    return basis_matrix


def difference_penalty(n_basis: int, order: int = 2) -> np.ndarray:
    """Difference penalty matrix D'D of the given order."""
    if order == 0 or n_basis <= order:
        return np.eye(n_basis)
    D = np.diff(np.eye(n_basis), n=order, axis=0)
    return D.T @ D


def penalized_part(x: np.ndarray, nseg: int, degree: int = 3,
                   pord: int = 2) -> Tuple[np.ndarray, np.ndarray]:
    """
    Penalized part of a 1-D P-spline in mixed model form.

    Returns
    -------
    tuple
        - basis projected on the penalized eigenvectors (n_obs x q)
        - corresponding penalty eigenvalues (q,)
    """
    knots = construct_knots(x, nseg, degree)
    B = bspline_basis(x, knots, degree)
    eigenvalues, eigenvectors = np.linalg.eigh(difference_penalty(B.shape[1], pord))
    penalized = eigenvalues > 1e-8 * eigenvalues.max()
    return B @ eigenvectors[:, penalized], eigenvalues[penalized]


def _rowwise_kron(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    return (A[:, :, None] * B[:, None, :]).reshape(A.shape[0], -1)


def resolve_nseg(nseg: Optional[Union[int, Tuple[int, int]]],
                 col: np.ndarray, row: np.ndarray) -> Tuple[int, int]:
    """
    Segments in the (column, row) direction.

    Without an explicit value each direction gets one segment less than
    its number of distinct positions, capped at DEFAULT_NSEG.
    """
    if nseg is None:
        return tuple(int(min(max(len(np.unique(v)) - 1, 1), DEFAULT_NSEG)) for v in (col, row))
    if np.isscalar(nseg):
        return int(nseg), int(nseg)
    nseg_col, nseg_row = nseg
    return int(nseg_col), int(nseg_row)


def spatial_design(
    col: np.ndarray,
    row: np.ndarray,
    nseg: Optional[Union[int, Tuple[int, int]]] = None,
    degree: int = 3,
    pord: int = 2
) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
    """
    Design matrices of the 2-D spatial trend.

    Parameters
    ----------
    col, row : np.ndarray
        Column and row coordinates of the observations
    nseg : int or tuple of int, optional
        Number of segments in (column, row) direction
    degree : int, default=3
        B-spline degree
    pord : int, default=2
        Order of the difference penalty

    Returns
    -------
    tuple
        - fixed polynomial part without intercept (n_obs x p)
        - dict of whitened random blocks, keyed by component name
    """
    col = np.asarray(col, dtype=float)
    row = np.asarray(row, dtype=float)
    nseg_col, nseg_row = resolve_nseg(nseg, col, row)

    poly = []
    smooth = {}
    for name, x, n in (('colCoord', col, nseg_col), ('rowCoord', row, nseg_row)):
        n_distinct = len(np.unique(x))
        if n_distinct >= 2:
            poly.append(x - x.mean())
        # a smooth needs more positions than its polynomial null space
        if n_distinct > pord and n >= 1:
            smooth[name] = penalized_part(x, n, degree, pord)
    if len(poly) == 2:
        poly.append(poly[0] * poly[1])
    X_poly = np.column_stack(poly) if poly else np.zeros((len(col), 0))

    blocks = {}
    for name, (U, d) in smooth.items():
        blocks[f'f({name})'] = U / np.sqrt(d)
    if len(smooth) == 2:
        (U_c, d_c), (U_r, d_r) = smooth['colCoord'], smooth['rowCoord']
        scale = np.sqrt(np.add.outer(d_c, d_r)).ravel()
        blocks['f(colCoord):f(rowCoord)'] = _rowwise_kron(U_c, U_r) / scale
    return X_poly, blocks
