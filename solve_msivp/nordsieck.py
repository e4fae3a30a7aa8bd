import math

import numpy as np


class NordsieckArray:
    """
    Nordsieck history array ``zn[j] = h^j / j! * y^(j)(tn)``, ``j = 0..q``.

    The same container holds the state history (trailing shape ``(N,)``),
    the sensitivity history (``(Ns, N)``) and the quadrature history
    (``(NQ,)``). Storage is allocated once for ``qmax + 1`` columns; the
    active part is ``zn[0..q]`` and ``len(zn) == q + 1``. The last column
    ``zn[qmax]`` doubles as the slot where the accepted correction of the
    step before a possible order increase is saved.

    Parameters:
        y0: array_like
            Initial value, stored in ``zn[0]``.
        qmax: int
            Largest order the array may reach.
    """

    def __init__(self, y0, qmax: int):
        y0 = np.asarray(y0, dtype=float)
        self.qmax = int(qmax)
        self.q = 1
        self.data = np.zeros((self.qmax + 1,) + y0.shape, dtype=float)
        self.data[0] = y0

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------
    def __len__(self):
        return self.q + 1

    def __getitem__(self, j):
        return self.data[j]

    def __setitem__(self, j, value):
        self.data[j] = value

    @property
    def shape(self):
        return self.data.shape[1:]

    @property
    def active(self):
        """View of the active columns ``zn[0..q]``."""
        return self.data[:self.q + 1]

    def reset(self, y0):
        """Reload ``zn[0] = y0`` and clear every other column; order back to 1."""
        self.data[:] = 0.0
        self.data[0] = y0
        self.q = 1

    # ------------------------------------------------------------------
    # Step operations
    # ------------------------------------------------------------------
    def predict(self):
        """Pascal-triangle summation: ``zn <- P zn`` in place."""
        q = self.q
        zn = self.data
        for k in range(1, q + 1):
            for j in range(q, k - 1, -1):
                zn[j - 1] += zn[j]

    def restore(self):
        """Exact inverse of :meth:`predict`; undoes a rejected prediction."""
        q = self.q
        zn = self.data
        for k in range(1, q + 1):
            for j in range(q, k - 1, -1):
                zn[j - 1] -= zn[j]

    def correct(self, acor, l):
        """Apply the accepted correction: ``zn[j] += l[j] * acor``, j = 0..q."""
        zn = self.data
        for j in range(self.q + 1):
            zn[j] += l[j] * acor

    def rescale(self, eta: float):
        """Rescale for a step-size ratio ``eta``: ``zn[j] *= eta^j``."""
        factor = eta
        zn = self.data
        for j in range(1, self.q + 1):
            zn[j] *= factor
            factor *= eta

    def save_correction(self, acor):
        self.data[self.qmax] = acor

    # ------------------------------------------------------------------
    # Order changes (coefficients come from integrations.py)
    # ------------------------------------------------------------------
    def subtract_top_column(self, l):
        """Order decrease: ``zn[j] -= l[j] * zn[q]`` for ``j = 2..q-1``."""
        zn = self.data
        q = self.q
        for j in range(2, q):
            zn[j] -= l[j] * zn[q]

    def zero_new_column(self):
        """Order increase for Adams: the new column ``zn[q+1]`` starts at zero."""
        self.data[self.q + 1] = 0.0

    def load_new_column(self, a1, l):
        """Order increase for BDF.

        ``zn[q+1] = a1 * zn[qmax]`` (the saved correction), then
        ``zn[j] += l[j] * zn[q+1]`` for ``j = 2..q``.
        """
        zn = self.data
        q = self.q
        zn[q + 1] = a1 * zn[self.qmax]
        for j in range(2, q + 1):
            zn[j] += l[j] * zn[q + 1]

    # ------------------------------------------------------------------
    # Dense output
    # ------------------------------------------------------------------
    def dky(self, t: float, k: int, tn: float, h: float):
        """k-th derivative of the interpolating polynomial at ``t``.

        No range checking is done here; :meth:`MultistepIntegrator.get_dky`
        validates ``t`` and ``k`` first.
        """
        q = self.q
        zn = self.data
        s = (t - tn) / h if h != 0.0 else 0.0
        dky = None
        for j in range(q, k - 1, -1):
            c = float(math.prod(range(j - k + 1, j + 1)))
            if dky is None:
                dky = c * zn[q]
            else:
                dky = c * zn[j] + s * dky
        if k == 0:
            return dky
        return dky * h ** (-k)
