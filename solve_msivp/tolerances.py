"""Error weights and weighted norms.

All convergence and error tests in the package go through
:func:`wrms_norm`::

    WRMSnorm(v, w) = sqrt( (1/N) * sum_i (v_i * w_i)^2 )

with error weights ``w_i = 1 / (rtol * |y_i| + atol_i)``.
"""

import math

import numpy as np


def wrms_norm(v, w) -> float:
    """Weighted root-mean-square norm of ``v`` with weights ``w``."""
    v = np.asarray(v)
    if v.size == 0:
        return 0.0
    vw = v * w
    return math.sqrt(float(np.dot(vw.ravel(), vw.ravel())) / vw.size)


def stacked_wrms_norm(vs, ws) -> float:
    """Largest WRMS norm over a stack of vectors (one row per direction)."""
    nrm = 0.0
    for v, w in zip(vs, ws):
        nrm = max(nrm, wrms_norm(v, w))
    return nrm


def check_tolerances(rtol, atol, n, name=''):
    """Validate a (scalar rtol, scalar-or-vector atol) pair.

    Returns ``(rtol, atol)`` as a float and a float or float array.
    Raises ``ValueError`` on negative or mis-shaped tolerances.
    """
    label = f'{name} ' if name else ''
    try:
        rtol = float(rtol)
    except (TypeError, ValueError):
        raise ValueError(f"{label}rtol must be a scalar.")
    if not np.isfinite(rtol) or rtol < 0.0:
        raise ValueError(f"{label}rtol must be a finite non-negative number.")

    atol_arr = np.asarray(atol, dtype=float)
    if atol_arr.ndim == 0:
        atol = float(atol_arr)
        if not np.isfinite(atol) or atol < 0.0:
            raise ValueError(f"{label}atol must be a finite non-negative number.")
        if rtol == 0.0 and atol == 0.0:
            raise ValueError(f"{label}rtol and atol cannot both be zero.")
        return rtol, atol

    if atol_arr.shape != (n,):
        raise ValueError(f"{label}atol must be a scalar or an array of length {n}.")
    if not np.all(np.isfinite(atol_arr)) or np.any(atol_arr < 0.0):
        raise ValueError(f"{label}atol has a negative or non-finite component.")
    if rtol == 0.0 and np.any(atol_arr == 0.0):
        raise ValueError(f"{label}rtol and atol cannot both be zero.")
    return rtol, atol_arr.copy()


def ewt_set(y, rtol, atol, out=None):
    """Compute error weights for ``y``.

    Returns ``(ok, ewt)`` where ``ok`` is False if some component of
    ``rtol*|y| + atol`` is not strictly positive. ``out`` is reused if given.
    """
    if out is None:
        out = np.empty_like(y, dtype=float)
    np.abs(y, out=out)
    out *= rtol
    out += atol
    if np.any(out <= 0.0):
        return False, out
    np.reciprocal(out, out=out)
    return True, out
