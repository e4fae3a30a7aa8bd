"""Banded matrices in LAPACK ``gbtrf`` storage and a banded DQ Jacobian.

A band matrix with upper half-bandwidth ``mu`` and lower half-bandwidth
``ml`` is stored as an array ``ab`` of shape ``(2*ml + mu + 1, N)`` with
``ab[ml + mu + i - j, j] = A[i, j]``. The top ``ml`` rows are fill-in space
for the pivoted LU factorization.
"""

import numpy as np
from scipy.linalg import lapack

from .tolerances import wrms_norm


class BandMatrix:
    """Square band matrix with room for its own LU factors."""

    def __init__(self, n: int, mu: int, ml: int):
        if n <= 0:
            raise ValueError("Band matrix dimension must be positive.")
        if mu < 0 or ml < 0 or mu >= n or ml >= n:
            raise ValueError(f"Illegal bandwidths mu={mu}, ml={ml} for N={n}.")
        self.n = int(n)
        self.mu = int(mu)
        self.ml = int(ml)
        self.smu = self.mu + self.ml
        self.ab = np.zeros((2 * self.ml + self.mu + 1, self.n), dtype=float)
        self.ipiv = None

    def zero(self):
        self.ab[:] = 0.0
        self.ipiv = None

    def copy_from(self, other):
        self.ab[:] = other.ab
        self.ipiv = None

    def from_dense(self, A):
        """Load the band part of a dense ``(N, N)`` array."""
        A = np.asarray(A, dtype=float)
        self.zero()
        for j in range(self.n):
            i1 = max(0, j - self.mu)
            i2 = min(self.n - 1, j + self.ml)
            self.ab[self.smu + i1 - j:self.smu + i2 - j + 1, j] = A[i1:i2 + 1, j]

    def to_dense(self):
        A = np.zeros((self.n, self.n))
        for j in range(self.n):
            i1 = max(0, j - self.mu)
            i2 = min(self.n - 1, j + self.ml)
            A[i1:i2 + 1, j] = self.ab[self.smu + i1 - j:self.smu + i2 - j + 1, j]
        return A

    def scale_add_identity(self, c):
        """``A <- I + c * A``."""
        self.ab *= c
        self.ab[self.smu, :] += 1.0

    def factor(self) -> int:
        """LU factor in place. Returns 0 on success, ``k > 0`` if U[k-1, k-1] == 0."""
        lu, ipiv, info = lapack.dgbtrf(self.ab, self.ml, self.mu)
        if info < 0:
            raise ValueError(f"dgbtrf: illegal argument {-info}.")
        self.ab[:] = lu
        self.ipiv = ipiv
        return int(info)

    def solve(self, b):
        x, info = lapack.dgbtrs(self.ab, self.ml, self.mu, b, self.ipiv)
        if info != 0:
            raise ValueError(f"dgbtrs: illegal argument {-info}.")
        return x


def band_dq_jac(f, t, y, fy, ewt, h, mu, ml, jac_out, uround):
    """Difference-quotient band Jacobian with column grouping.

    Columns ``j, j + width, j + 2*width, ...`` (``width = ml + mu + 1``) do
    not share nonzero rows and are perturbed together, so only
    ``min(width, N)`` calls to ``f`` are made. Returns the call count.
    """
    n = y.size
    srur = np.sqrt(uround)
    fnorm = wrms_norm(fy, ewt)
    min_inc = (1000.0 * abs(h) * uround * n * fnorm) if fnorm != 0.0 else 1.0

    width = ml + mu + 1
    ngroups = min(width, n)
    ytemp = y.copy()
    for group in range(ngroups):
        cols = np.arange(group, n, width)
        inc = np.maximum(srur * np.abs(y[cols]), min_inc / ewt[cols])
        ytemp[cols] += inc
        ftemp = np.asarray(f(t, ytemp), dtype=float)
        ytemp[cols] = y[cols]
        for j, dj in zip(cols, inc):
            i1 = max(0, j - mu)
            i2 = min(j + ml, n - 1)
            jac_out.ab[jac_out.smu + i1 - j:jac_out.smu + i2 - j + 1, j] = \
                (ftemp[i1:i2 + 1] - fy[i1:i2 + 1]) / dj
    return ngroups
