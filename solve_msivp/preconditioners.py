import numpy as np

from .band import BandMatrix, band_dq_jac
from .constants import UROUND


class BandPreconditioner:
    """
    Banded difference-quotient preconditioner for :class:`SpbcgsLinearSolver`.

    ``P = I - gamma * J_band`` where ``J_band`` is a difference-quotient
    approximation of the Jacobian restricted to half-bandwidths ``mu`` and
    ``ml`` (which may be narrower than the true Jacobian's). ``P`` is LU
    factored with ``dgbtrf`` and applied with ``dgbtrs``.

    Usage:
        prec = BandPreconditioner(n, mu=2, ml=2)
        ls = SpbcgsLinearSolver(pretype='left', preconditioner=prec)
    """

    def __init__(self, n: int, mu: int, ml: int, verbose: bool = False):
        n = int(n)
        # Bandwidths are clipped to the matrix size.
        self.mu = min(n - 1, max(0, int(mu)))
        self.ml = min(n - 1, max(0, int(ml)))
        self.n = n
        self.verbose = bool(verbose)
        self.saved_J = BandMatrix(n, self.mu, self.ml)
        self.saved_P = BandMatrix(n, self.mu, self.ml)
        self.nfeBP = 0

    def setup(self, mem, t, y, fy, jok, gamma):
        if jok:
            jcur = False
        else:
            jcur = True
            self.saved_J.zero()
            self.nfeBP += band_dq_jac(mem.call_f, t, y, fy, mem.ewt, mem.h,
                                      self.mu, self.ml, self.saved_J, UROUND)
        self.saved_P.copy_from(self.saved_J)
        self.saved_P.scale_add_identity(-gamma)
        if not np.all(np.isfinite(self.saved_P.ab)):
            return 1, jcur
        ier = self.saved_P.factor()
        if ier > 0:
            if self.verbose:
                print(f"[bandpre] zero pivot {ier} at t={t:.6g}")
            return 1, jcur
        return 0, jcur

    def solve(self, mem, t, y, fy, r, gamma, delta, lr):
        return 0, self.saved_P.solve(np.asarray(r, dtype=float))

    def get_work_space(self):
        """Real workspace size (two band matrices) and integer workspace size."""
        rows = self.saved_J.ab.shape[0]
        return 2 * rows * self.n, self.n

    def get_num_rhs_evals(self):
        return self.nfeBP
