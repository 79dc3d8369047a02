from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy import linalg as sla

from trackfit_reco.errors import SingularMatrixError


__all__ = [
    "symmetrize",
    "safe_inverse",
    "solve_colpiv_qr",
    "weighted_chi2",
]


def symmetrize(M: np.ndarray) -> np.ndarray:
    r"""Return :math:`\tfrac12(M + M^\top)`."""
    M = np.asarray(M, dtype=np.float64)
    return 0.5 * (M + M.T)


def safe_inverse(M: np.ndarray, what: str = "matrix") -> np.ndarray:
    r"""
    Inverse of a small square matrix, refusing ill-conditioned input.

    The matrix is rejected when it contains non-finite entries or when its
    2-norm condition number exceeds :math:`1/\varepsilon_\text{mach}`, i.e.
    when :math:`M^{-1}` carries no significant digits.

    Parameters
    ----------
    M : array_like, shape (n, n)
        Matrix to invert (covariance or information matrix).
    what : str, optional
        Name used in the error message.

    Returns
    -------
    ndarray, shape (n, n)

    Raises
    ------
    SingularMatrixError
        If :math:`M` is not numerically invertible.

    Notes
    -----
    Unlike a jittered factorization, nothing is added to the diagonal: a
    degenerate covariance is reported, never silently regularized.
    """
    M = np.asarray(M, dtype=np.float64)
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise ValueError(f"{what} must be square, got shape {M.shape}.")
    if not np.all(np.isfinite(M)):
        raise SingularMatrixError(f"{what} has non-finite entries.")
    if M.size == 0:
        return M.copy()
    cond = np.linalg.cond(M)
    if not np.isfinite(cond) or cond * np.finfo(np.float64).eps >= 1.0:
        raise SingularMatrixError(f"{what} is singular (condition number {cond:.3g}).")
    try:
        return sla.inv(M, check_finite=False)
    except (np.linalg.LinAlgError, sla.LinAlgError) as e:
        raise SingularMatrixError(f"{what} could not be inverted: {e}") from e


def solve_colpiv_qr(A: np.ndarray,
                    b: np.ndarray,
                    rcond: Optional[float] = None,
                    logger: Optional[logging.Logger] = None) -> Tuple[np.ndarray, int]:
    r"""
    Solve :math:`A\,x = b` by column-pivoted Householder QR.

    With :math:`A P = Q R` the system becomes :math:`R\,(P^\top x) = Q^\top b`.
    The numerical rank :math:`r` is the number of diagonal entries with
    :math:`|R_{ii}| > \text{rcond}\,|R_{00}|`; only the leading
    :math:`r\times r` triangle is back-substituted and the remaining pivoted
    components of :math:`x` are set to zero. This is the least-squares
    solution restricted to the well-determined subspace, so a rank-deficient
    system never divides by a vanishing pivot.

    Parameters
    ----------
    A : array_like, shape (n, n)
        Normal-equation matrix, e.g. :math:`\sum J^\top W J`.
    b : array_like, shape (n,)
        Right-hand side.
    rcond : float, optional
        Relative pivot threshold; defaults to :math:`n\,\varepsilon_\text{mach}`.
    logger : logging.Logger, optional
        Receives a warning when the system is rank deficient.

    Returns
    -------
    x : ndarray, shape (n,)
    rank : int
        Numerical rank of :math:`A`.
    """
    A = np.asarray(A, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64).reshape(-1)
    n = A.shape[1]
    if not (np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
        raise SingularMatrixError("normal equations have non-finite entries.")

    Q, R, piv = sla.qr(A, pivoting=True, check_finite=False)
    diag = np.abs(np.diag(R))
    if rcond is None:
        rcond = n * np.finfo(np.float64).eps
    rank = int(np.sum(diag > rcond * diag[0])) if diag.size and diag[0] > 0.0 else 0

    z = np.zeros(n, dtype=np.float64)
    if rank > 0:
        qtb = Q.T @ b
        z[:rank] = sla.solve_triangular(R[:rank, :rank], qtb[:rank], lower=False, check_finite=False)
    x = np.zeros(n, dtype=np.float64)
    x[piv] = z

    if rank < n:
        (logger or logging.getLogger(__name__)).warning(
            "rank-deficient system (rank %d of %d); solving on the well-determined subspace.", rank, n
        )
    return x, rank


def weighted_chi2(residual: np.ndarray, weight: np.ndarray) -> float:
    r"""
    Weighted squared residual :math:`r^\top W r`.

    Parameters
    ----------
    residual : array_like, shape (m,)
    weight : array_like, shape (m, m)
        Inverse measurement covariance.
    """
    r = np.asarray(residual, dtype=np.float64).reshape(-1)
    return float(r @ np.asarray(weight, dtype=np.float64) @ r)
