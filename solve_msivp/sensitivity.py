"""Forward sensitivity analysis.

For parameters ``p`` the sensitivities ``s_i = dy/dp_i`` satisfy::

    s_i' = (df/dy) s_i + df/dp_i ,    s_i(t0) = yS0[i]

and are carried alongside the state in their own Nordsieck array ``znS``
(trailing shape ``(Ns, N)``). The right-hand side of the sensitivity
system comes from a user routine (all directions at once, ``fS``, or one at
a time, ``fS1``) or from the difference quotients of :func:`sens_rhs1_dq`.
"""

import math
from dataclasses import dataclass, field

import numpy as np

from .constants import (
    SENS_METHODS, STAGGERED1, NLS_MAXCOR, UROUND,
)
from .nordsieck import NordsieckArray
from .tolerances import wrms_norm, ewt_set


@dataclass
class Staggered1Counters:
    """Per-direction corrector statistics, kept only in ``'staggered1'`` mode."""
    ns: int
    ncfS1: np.ndarray = field(init=False)
    ncfnS1: np.ndarray = field(init=False)
    nniS1: np.ndarray = field(init=False)

    def __post_init__(self):
        self.ncfS1 = np.zeros(self.ns, dtype=int)
        self.ncfnS1 = np.zeros(self.ns, dtype=int)
        self.nniS1 = np.zeros(self.ns, dtype=int)

    def reset(self):
        self.ncfS1[:] = 0
        self.ncfnS1[:] = 0
        self.nniS1[:] = 0


class SensitivityState:
    """
    Everything the integrator keeps for forward sensitivities.

    Parameters:
        ns: int
            Number of sensitivity directions.
        ism: str
            Corrector coupling: ``'simultaneous'``, ``'staggered'`` or
            ``'staggered1'``.
        p: np.ndarray or None
            Problem parameters. Must be the same array object the right-hand
            side reads (through ``user_data`` or a closure); the difference
            quotient routines perturb it in place and restore it.
        plist: sequence of int or None
            Indices into ``p`` of the parameters with respect to which
            sensitivities are computed (default ``range(ns)``).
        yS0: array_like, shape (ns, N)
            Initial sensitivities.
        qmax: int
            Maximum order, shared with the state history.
    """

    def __init__(self, ns, ism, p, plist, yS0, qmax):
        ism = str(ism).lower()
        if ism not in SENS_METHODS:
            raise ValueError(f"ism must be one of {SENS_METHODS}, got '{ism}'.")
        ns = int(ns)
        if ns <= 0:
            raise ValueError("Ns must be a positive integer.")
        yS0 = np.array(yS0, dtype=float)
        if yS0.ndim != 2 or yS0.shape[0] != ns:
            raise ValueError(f"yS0 must have shape (Ns, N) with Ns={ns}.")

        self.ns = ns
        self.ism = ism
        self.n = yS0.shape[1]
        self.p = p
        if plist is None:
            plist = list(range(ns))
        plist = [int(i) for i in plist]
        if len(plist) != ns:
            raise ValueError("plist must have Ns entries.")
        if p is not None:
            np_ = np.asarray(p).size
            for i in plist:
                if i < 0 or i >= np_:
                    raise ValueError(f"plist entry {i} is out of range for p of size {np_}.")
        self.plist = plist
        self.pbar = np.ones(ns)
        if p is not None:
            pv = np.asarray(p, dtype=float)
            for k, i in enumerate(plist):
                if pv[i] != 0.0:
                    self.pbar[k] = abs(pv[i])

        # Options
        self.rhomax = 0.0
        self.errconS = True
        self.maxcorS = NLS_MAXCOR
        self.fS = None
        self.fS1 = None
        self.fS_data = None
        self.has_fS_data = False
        self.user_tols = False
        self.rtolS = None
        self.atolS = None

        # Work arrays
        self.znS = NordsieckArray(yS0, qmax)
        self.ewtS = np.ones_like(yS0)
        self.acorS = np.zeros_like(yS0)
        self.yS = yS0.copy()
        self.tempvS = np.zeros_like(yS0)
        self.ftempS = np.zeros_like(yS0)
        self.crateS = 1.0
        self.acnrmS = 0.0

        self.stgr1 = Staggered1Counters(ns) if ism == STAGGERED1 else None
        self.reset_counters()

    def reset_counters(self):
        self.nfSe = 0
        self.nfeS = 0
        self.nniS = 0
        self.ncfnS = 0
        self.netfS = 0
        self.nsetupsS = 0
        if self.stgr1 is not None:
            self.stgr1.reset()

    def set_method(self, ism):
        ism = str(ism).lower()
        if ism not in SENS_METHODS:
            raise ValueError(f"ism must be one of {SENS_METHODS}, got '{ism}'.")
        self.ism = ism
        self.stgr1 = Staggered1Counters(self.ns) if ism == STAGGERED1 else None

    # ------------------------------------------------------------------
    # Tolerances
    # ------------------------------------------------------------------
    def tolerances(self, rtol, atol):
        """Return ``(rtolS, atolS)``: user values, or those derived from the state's."""
        if self.user_tols:
            return self.rtolS, self.atolS
        atol_arr = np.asarray(atol, dtype=float)
        atolS = np.empty((self.ns, self.n))
        for k in range(self.ns):
            atolS[k] = atol_arr / abs(self.pbar[k])
        return rtol, atolS

    def ewt_set(self, rtol, atol, yS):
        rtolS, atolS = self.tolerances(rtol, atol)
        ok, self.ewtS = ewt_set(yS, rtolS, atolS, out=self.ewtS)
        return ok

    def norm(self, xS) -> float:
        """Largest WRMS norm over directions with the sensitivity weights."""
        nrm = 0.0
        for k in range(self.ns):
            nrm = max(nrm, wrms_norm(xS[k], self.ewtS[k]))
        return nrm

    def norm1(self, k, x) -> float:
        return wrms_norm(x, self.ewtS[k])

    # ------------------------------------------------------------------
    # Right-hand side
    # ------------------------------------------------------------------
    def _call_user(self, fn, *args):
        if self.has_fS_data:
            return fn(*args, self.fS_data)
        return fn(*args)

    def rhs(self, mem, t, y, ydot, yS, out):
        """Fill ``out[k]`` with the sensitivity right-hand side for every direction."""
        if self.fS is not None:
            out[:] = self._call_user(self.fS, t, y, ydot, yS)
            self.nfSe += 1
            return out
        for k in range(self.ns):
            self.rhs1(mem, t, y, ydot, k, yS[k], out, count=False)
        self.nfSe += 1
        return out

    def rhs1(self, mem, t, y, ydot, k, ySk, out, count=True):
        """Sensitivity right-hand side for direction ``k`` only."""
        if self.fS1 is not None:
            out[k] = self._call_user(self.fS1, t, y, ydot, k, ySk)
        elif self.fS is not None:
            # A one-direction request with an all-directions routine.
            yS_full = self.yS.copy()
            yS_full[k] = ySk
            out[k] = self._call_user(self.fS, t, y, ydot, yS_full)[k]
        else:
            out[k] = sens_rhs1_dq(mem, self, t, y, ydot, k, ySk)
        if count:
            self.nfSe += 1
        return out


def sens_rhs1_dq(mem, sens, t, y, ydot, k, ySk):
    """Difference-quotient approximation of ``(df/dy) s_k + df/dp_k``.

    ``delta = sqrt(max(rtol, uround))`` sets the relative perturbation; the
    perturbation of ``p`` is ``pbar_k * delta`` and that of ``y`` is
    ``1 / max(||s_k||_wrms * pbar_k, 1/delta) * pbar_k``. With ``rhomax == 0``
    (or ratio of the two increments within ``|rhomax|``) both are applied at
    once with the common increment ``min(deltay, deltap)``; otherwise the two
    terms are estimated separately. ``rhomax >= 0`` selects centered,
    ``rhomax < 0`` forward differences.
    """
    delta = math.sqrt(max(mem.rtol, UROUND))
    rdelta = 1.0 / delta
    pbari = abs(sens.pbar[k])
    which = sens.plist[k]
    p = sens.p
    has_p = p is not None

    deltap = pbari * delta
    rdeltap = 1.0 / deltap
    norms = wrms_norm(ySk, mem.ewt) * pbari
    rdeltay = max(norms, rdelta) / pbari
    deltay = 1.0 / rdeltay

    ratio = deltay * rdeltap
    rhomax = sens.rhomax
    if max(1.0 / ratio, ratio) <= abs(rhomax) or rhomax == 0.0:
        method = 'centered1' if rhomax >= 0.0 else 'forward1'
    else:
        method = 'centered2' if rhomax > 0.0 else 'forward2'

    f = mem.call_f
    psave = p[which] if has_p else 0.0

    try:
        if method == 'centered1':
            dd = min(deltay, deltap)
            r2dd = 0.5 / dd
            if has_p:
                p[which] = psave + dd
            fp = np.asarray(f(t, y + dd * ySk), dtype=float)
            if has_p:
                p[which] = psave - dd
            fm = np.asarray(f(t, y - dd * ySk), dtype=float)
            sens.nfeS += 2
            return r2dd * (fp - fm)

        if method == 'centered2':
            r2deltap = 0.5 / deltap
            r2deltay = 0.5 / deltay
            fp = np.asarray(f(t, y + deltay * ySk), dtype=float)
            fm = np.asarray(f(t, y - deltay * ySk), dtype=float)
            out = r2deltay * (fp - fm)
            sens.nfeS += 2
            if has_p:
                p[which] = psave + deltap
                fp = np.asarray(f(t, y), dtype=float)
                p[which] = psave - deltap
                fm = np.asarray(f(t, y), dtype=float)
                out += r2deltap * (fp - fm)
                sens.nfeS += 2
            return out

        if method == 'forward1':
            dd = min(deltay, deltap)
            if has_p:
                p[which] = psave + dd
            fp = np.asarray(f(t, y + dd * ySk), dtype=float)
            sens.nfeS += 1
            return (fp - ydot) / dd

        # forward2
        fp = np.asarray(f(t, y + deltay * ySk), dtype=float)
        out = rdeltay * (fp - ydot)
        sens.nfeS += 1
        if has_p:
            p[which] = psave + deltap
            fp = np.asarray(f(t, y), dtype=float)
            out += rdeltap * (fp - ydot)
            sens.nfeS += 1
        return out
    finally:
        if has_p:
            p[which] = psave
