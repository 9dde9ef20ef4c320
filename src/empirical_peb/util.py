from __future__ import annotations

import math
from typing import Any, Optional, Tuple

import numpy as np
import scipy.linalg

from .errors import NumericalInstabilityError


def normal_cdf(z: float) -> float:
    """Standard Normal CDF Φ(z)."""
    return 0.5 * (1.0 + math.erf(z / math.sqrt(2.0)))


def normal_ppf(p: float) -> float:
    """Inverse of the standard Normal CDF."""
    import scipy.stats

    return float(scipy.stats.norm.ppf(float(p)))


def is_sequence(x: Any) -> bool:
    return isinstance(x, (list, tuple))


def symmetrize(m: np.ndarray) -> np.ndarray:
    m = np.asarray(m, dtype=float)
    return 0.5 * (m + m.T)


def as_square(m: Any, size: Optional[int] = None, *, what: str = "matrix") -> np.ndarray:
    """Return a dense float matrix; scalars and 1-D inputs become diagonals."""
    a = np.asarray(m, dtype=float)
    if a.ndim == 0:
        if size is None:
            return a.reshape(1, 1)
        return float(a) * np.eye(size)
    if a.ndim == 1:
        return np.diag(a)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise ValueError(f"{what} must be square, got shape {a.shape}.")
    return a


def _jitter_scale(m: np.ndarray) -> float:
    diag = np.abs(np.diag(m))
    scale = float(np.mean(diag)) if diag.size else 1.0
    return 1.0 if not np.isfinite(scale) or scale <= 0 else scale


def cholesky(
    m: np.ndarray, *, regularization: float = 1e-8, what: str = "matrix"
) -> Tuple[Tuple[np.ndarray, bool], float]:
    """Cholesky factor of a symmetric matrix, regularising once on failure.

    Returns ``(cho_factor result, jitter)`` where ``jitter`` is the diagonal
    term that had to be added (0.0 if none). Raises NumericalInstabilityError
    if the regularised matrix is still not positive definite.
    """
    m = symmetrize(m)
    if m.size == 0:
        return (m, True), 0.0
    if not np.all(np.isfinite(m)):
        raise NumericalInstabilityError(f"{what} contains non-finite entries.")
    try:
        return scipy.linalg.cho_factor(m, lower=True), 0.0
    except np.linalg.LinAlgError:
        pass
    jitter = float(regularization) * _jitter_scale(m)
    try:
        return scipy.linalg.cho_factor(m + jitter * np.eye(m.shape[0]), lower=True), jitter
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(
            f"{what} is not positive definite after regularisation "
            f"(jitter={jitter:.3g})."
        ) from e


def inv_pd(m: np.ndarray, *, regularization: float = 1e-8, what: str = "matrix") -> np.ndarray:
    """Inverse of a symmetric positive (semi-)definite matrix."""
    m = np.asarray(m, dtype=float)
    if m.size == 0:
        return np.zeros_like(m)
    factor, _ = cholesky(m, regularization=regularization, what=what)
    return symmetrize(scipy.linalg.cho_solve(factor, np.eye(m.shape[0])))


def logdet_pd(m: np.ndarray, *, regularization: float = 1e-8, what: str = "matrix") -> float:
    """log|m| for a symmetric positive definite matrix."""
    m = np.asarray(m, dtype=float)
    if m.size == 0:
        return 0.0
    (c, _lower), _ = cholesky(m, regularization=regularization, what=what)
    return float(2.0 * np.sum(np.log(np.diag(c))))


def orth(m: np.ndarray, rcond: float = 1e-6) -> Tuple[np.ndarray, np.ndarray]:
    """Orthonormal basis for the column space of a symmetric matrix.

    Singular values below ``rcond * max(s)`` are discarded. Returns the basis
    (columns) and the singular values that were kept.
    """
    m = symmetrize(m)
    if m.size == 0:
        return np.zeros((m.shape[0], 0)), np.zeros((0,))
    try:
        u, s, _ = scipy.linalg.svd(m)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NumericalInstabilityError(f"SVD failed: {e}") from e
    if not s.size or float(s[0]) <= 0.0:
        return np.zeros((m.shape[0], 0)), np.zeros((0,))
    keep = s > float(rcond) * float(s[0])
    u = u[:, keep]
    # Fix column signs so the basis does not depend on LAPACK's choice.
    pivots = np.argmax(np.abs(u), axis=0)
    signs = np.sign(u[pivots, np.arange(u.shape[1])])
    signs[signs == 0] = 1.0
    return u * signs[None, :], s[keep]


def uncertainty_to_string(
    x: float, err: float, precision: int | str | None = 1
) -> str:
    """Format a value with uncertainty as a compact string.

    Returns the shortest string representation of x +/- err as either
    x.xx(ee)e+xx or xxx.xx(ee). Use precision="auto" to follow the
    common 1-or-2 significant-digit rule for the uncertainty.
    """
    auto = precision is None or (
        isinstance(precision, str) and precision.lower() == "auto"
    )
    x = float(x)
    err = float(err)

    if math.isnan(x) or math.isnan(err):
        return "NaN"
    if math.isinf(x) or math.isinf(err):
        return "inf"

    err = abs(err)
    if err == 0.0:
        if auto:
            precision = 1
        precision = max(1, int(precision))  # type: ignore[arg-type]
        return f"{x:.{precision}g}(0)"

    err_exp = int(math.floor(math.log10(err)))
    if auto:
        leading = int(err / (10 ** err_exp) + 1e-12)
        precision = 2 if leading == 1 else 1
    precision = max(1, int(precision))  # type: ignore[arg-type]

    if x == 0.0 or abs(x) < err:
        x_exp = err_exp
    else:
        x_exp = int(math.floor(math.log10(abs(x))))

    un_exp = err_exp - precision + 1
    un_int = round(err * 10 ** (-un_exp))

    no_exp = un_exp
    no_int = round(x * 10 ** (-no_exp))

    fieldw = x_exp - no_exp
    fmt = f"%.{fieldw}f"
    result1 = (fmt + "(%.0f)e%d") % (no_int * 10 ** (-fieldw), un_int, x_exp)

    fieldw = max(0, -no_exp)
    fmt = f"%.{fieldw}f"
    result2 = (fmt + "(%.0f)") % (no_int * 10 ** no_exp, un_int * 10 ** max(0, un_exp))

    return result2 if len(result2) <= len(result1) else result1
