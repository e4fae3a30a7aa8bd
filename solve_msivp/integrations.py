import numpy as np
from abc import ABC, abstractmethod

from .constants import ADAMS, BDF, ADAMS_Q_MAX, BDF_Q_MAX


class IntegrationMethod(ABC):
    """
    Abstract base class for the linear multistep families.

    A method family knows two things about the variable-step Nordsieck
    formulation:

    * the corrector polynomial coefficients ``l[0..q]`` and the test
      quantities ``tq[1..5]`` for the current order and step history, and
    * how to add or drop a column of the history array on an order change.

    Everything else (prediction, correction, rescaling) is shared and lives in
    :class:`~solve_msivp.nordsieck.NordsieckArray`.

    Conventions for the ``tq`` array (index 0 unused):
        tq[1]: scaling for the order ``q-1`` error estimate
        tq[2]: scaling for the order ``q`` error estimate (``dsm = tq[2] * acnrm``)
        tq[3]: scaling for the order ``q+1`` error estimate
        tq[4]: corrector convergence threshold, ``nlscoef / tq[2]``
        tq[5]: coefficient used to rescale the saved correction on an increase
    """

    name = None
    qmax = None

    @abstractmethod
    def set_coefficients(self, q, qwait, h, tau, nlscoef, l, tq):
        """Fill ``l`` and ``tq`` in place for order ``q`` and step ``h``.

        Parameters:
            q: int
                Current order (``q >= 1``).
            qwait: int
                Steps left before an order change is considered. ``tq[1]`` and
                ``tq[3]`` are only needed (and only computed) when ``qwait == 1``.
            h: float
                Step about to be attempted.
            tau: np.ndarray
                Previous successful step sizes, ``tau[1]`` being the latest.
            nlscoef: float
                Coefficient in the nonlinear convergence test.
        """
        pass

    @abstractmethod
    def adjust_order(self, deltaq, q, tau, hscale, histories):
        """Change the order of every array in ``histories`` by ``deltaq`` (+1 or -1)."""
        pass

    def __repr__(self):
        return f"{self.__class__.__name__}(qmax={self.qmax})"


def _alt_sum(iend, a, k):
    """Alternating sum ``sum_{i=0..iend} (-1)^i a[i] / (i + k)``."""
    if iend < 0:
        return 0.0
    total = 0.0
    sign = 1.0
    for i in range(iend + 1):
        total += sign * (a[i] / (i + k))
        sign = -sign
    return total


class AdamsMethod(IntegrationMethod):
    """
    Variable-step Adams-Moulton corrector of orders 1..12 (nonstiff problems).

    The coefficients are built from the polynomial ``prod_j (1 + x / xi_j)``
    with ``xi_j = (tn - t_{n-j}) / h``, integrated against the alternating
    sums of :func:`_alt_sum`.
    """

    name = ADAMS
    qmax = ADAMS_Q_MAX

    def set_coefficients(self, q, qwait, h, tau, nlscoef, l, tq):
        if q == 1:
            l[0] = l[1] = tq[1] = tq[5] = 1.0
            tq[2] = 0.5
            tq[3] = 1.0 / 12.0
            tq[4] = nlscoef / tq[2]
            return

        m = np.zeros(q + 1)
        m[0] = 1.0
        hsum = h
        for j in range(1, q):
            if j == q - 1 and qwait == 1:
                total = _alt_sum(q - 2, m, 2)
                tq[1] = q * total / m[q - 2]
            xi_inv = h / hsum
            for i in range(j, 0, -1):
                m[i] += m[i - 1] * xi_inv
            hsum += tau[j]

        M0 = _alt_sum(q - 1, m, 1)
        M1 = _alt_sum(q - 1, m, 2)
        M0_inv = 1.0 / M0

        l[0] = 1.0
        for i in range(1, q + 1):
            l[i] = M0_inv * (m[i - 1] / i)
        xi = hsum / h
        xi_inv = 1.0 / xi

        tq[2] = M1 * M0_inv / xi
        tq[5] = xi / l[q]

        if qwait == 1:
            for i in range(q, 0, -1):
                m[i] += m[i - 1] * xi_inv
            M2 = _alt_sum(q, m, 2)
            tq[3] = M2 * M0_inv / (q + 1)

        tq[4] = nlscoef / tq[2]

    def adjust_order(self, deltaq, q, tau, hscale, histories):
        # q == 2 going down is a no-op: the q = 1 history needs no correction.
        if q == 2 and deltaq != 1:
            return

        if deltaq == 1:
            for zn in histories:
                zn.zero_new_column()
            return

        # Order decrease: remove the zn[q] component from zn[2..q-1] using the
        # coefficients of x * int_0^x u (u + xi_1) ... (u + xi_{q-2}) du.
        l = np.zeros(q + 1)
        l[1] = 1.0
        hsum = 0.0
        for j in range(1, q - 1):
            hsum += tau[j]
            xi = hsum / hscale
            for i in range(j + 1, 0, -1):
                l[i] = l[i] * xi + l[i - 1]
        for j in range(1, q - 1):
            l[j + 1] = q * (l[j] / (j + 1))

        for zn in histories:
            zn.subtract_top_column(l)


class BDFMethod(IntegrationMethod):
    """
    Variable-step fixed-leading-coefficient BDF corrector of orders 1..5
    (stiff problems).
    """

    name = BDF
    qmax = BDF_Q_MAX

    def set_coefficients(self, q, qwait, h, tau, nlscoef, l, tq):
        l[:q + 1] = 0.0
        l[0] = l[1] = 1.0
        xi_inv = xistar_inv = 1.0
        alpha0 = alpha0_hat = -1.0
        hsum = h
        if q > 1:
            for j in range(2, q):
                hsum += tau[j - 1]
                xi_inv = h / hsum
                alpha0 -= 1.0 / j
                for i in range(j, 0, -1):
                    l[i] += l[i - 1] * xi_inv
            # j = q
            alpha0 -= 1.0 / q
            xistar_inv = -l[1] - alpha0
            hsum += tau[q - 1]
            xi_inv = h / hsum
            alpha0_hat = -l[1] - xi_inv
            for i in range(q, 0, -1):
                l[i] += l[i - 1] * xistar_inv

        self._set_tq(q, qwait, h, tau, nlscoef, l, tq,
                     hsum, alpha0, alpha0_hat, xi_inv, xistar_inv)

    @staticmethod
    def _set_tq(q, qwait, h, tau, nlscoef, l, tq,
                hsum, alpha0, alpha0_hat, xi_inv, xistar_inv):
        A1 = 1.0 - alpha0_hat + alpha0
        A2 = 1.0 + q * A1
        tq[2] = abs(A1 / (alpha0 * A2))
        tq[5] = abs(A2 * xistar_inv / (l[q] * xi_inv))
        if qwait == 1:
            if q > 1:
                C = xistar_inv / l[q]
                A3 = alpha0 + 1.0 / q
                A4 = alpha0_hat + xi_inv
                Cpinv = (1.0 - A4 + A3) / A3
                tq[1] = abs(C * Cpinv)
            else:
                tq[1] = 1.0
            hsum += tau[q]
            xi_inv = h / hsum
            A5 = alpha0 - (1.0 / (q + 1))
            A6 = alpha0_hat - xi_inv
            Cppinv = (1.0 - A6 + A5) / A2
            tq[3] = abs(Cppinv / (xi_inv * (q + 2) * A5))
        tq[4] = nlscoef / tq[2]

    def adjust_order(self, deltaq, q, tau, hscale, histories):
        if q == 2 and deltaq != 1:
            return
        if deltaq == 1:
            self._increase(q, tau, hscale, histories)
        else:
            self._decrease(q, tau, hscale, histories)

    @staticmethod
    def _increase(q, tau, hscale, histories):
        # The new column is built from the correction saved at the last step
        # of order q, zn[qmax], scaled by A1.
        l = np.zeros(q + 2)
        l[2] = alpha1 = prod = xiold = 1.0
        alpha0 = -1.0
        hsum = hscale
        if q > 1:
            for j in range(1, q):
                hsum += tau[j + 1]
                xi = hsum / hscale
                prod *= xi
                alpha0 -= 1.0 / (j + 1)
                alpha1 += 1.0 / xi
                for i in range(j + 2, 1, -1):
                    l[i] = l[i] * xiold + l[i - 1]
                xiold = xi
        A1 = (-alpha0 - alpha1) / prod
        for zn in histories:
            zn.load_new_column(A1, l)

    @staticmethod
    def _decrease(q, tau, hscale, histories):
        l = np.zeros(q + 1)
        l[2] = 1.0
        hsum = 0.0
        for j in range(1, q - 1):
            hsum += tau[j]
            xi = hsum / hscale
            for i in range(j + 2, 1, -1):
                l[i] = l[i] * xi + l[i - 1]
        for zn in histories:
            zn.subtract_top_column(l)


def make_method(lmm):
    """Return the method family instance for ``'adams'`` or ``'bdf'``."""
    if isinstance(lmm, IntegrationMethod):
        return lmm
    name = str(lmm).lower()
    if name == ADAMS:
        return AdamsMethod()
    if name == BDF:
        return BDFMethod()
    raise ValueError(f"Unsupported linear multistep method '{lmm}'. Use 'adams' or 'bdf'.")
