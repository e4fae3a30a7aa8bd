import numpy as np

from .nordsieck import NordsieckArray
from .tolerances import wrms_norm, ewt_set


class QuadratureState:
    """
    Pure quadratures ``yQ' = fQ(t, y)`` integrated alongside the state.

    Quadrature variables never enter the corrector: once the state corrector
    has converged, ``acorQ = rl1 * (h * fQ(tn, y) - znQ[1])`` is applied
    directly. They share step size and order with the state and take part in
    the local error test only when ``errconQ`` is set.

    Parameters:
        fQ: callable
            ``fQ(t, y[, user_data]) -> qdot`` of length ``NQ``.
        yQ0: array_like
            Initial quadrature values.
        qmax: int
            Maximum order, shared with the state history.
    """

    def __init__(self, fQ, yQ0, qmax):
        if fQ is None or not callable(fQ):
            raise ValueError("fQ must be a callable.")
        yQ0 = np.array(yQ0, dtype=float).ravel()
        if yQ0.size == 0:
            raise ValueError("yQ0 must not be empty.")
        self.fQ = fQ
        self.nq = yQ0.size
        self.znQ = NordsieckArray(yQ0, qmax)
        self.ewtQ = np.ones(self.nq)
        self.acorQ = np.zeros(self.nq)
        self.yQ = yQ0.copy()
        self.tempvQ = np.zeros(self.nq)
        self.acnrmQ = 0.0

        self.errconQ = False
        self.rtolQ = None
        self.atolQ = None
        self.fQ_data = None
        self.has_fQ_data = False
        self.reset_counters()

    def reset_counters(self):
        self.nfQe = 0
        self.netfQ = 0

    def rhs(self, mem, t, y):
        self.nfQe += 1
        if self.has_fQ_data:
            return np.asarray(self.fQ(t, y, self.fQ_data), dtype=float)
        return np.asarray(mem.call(self.fQ, t, y), dtype=float)

    def ewt_set(self, yQ):
        ok, self.ewtQ = ewt_set(yQ, self.rtolQ, self.atolQ, out=self.ewtQ)
        return ok

    def norm(self, v) -> float:
        return wrms_norm(v, self.ewtQ)

    def correct(self, mem, y):
        """Evaluate ``fQ`` at the converged state and form ``acorQ`` and ``yQ``."""
        fq = self.rhs(mem, mem.tn, y)
        self.acorQ = mem.rl1 * (mem.h * fq - self.znQ[1])
        self.yQ = self.znQ[0] + self.acorQ
        if self.errconQ:
            self.acnrmQ = self.norm(self.acorQ)
        return self.acnrmQ
