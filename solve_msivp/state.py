import sys

import numpy as np

from .constants import (
    ADAMS, BDF, FUNCTIONAL, ADAMS_Q_MAX, BDF_Q_MAX,
    HMIN_DEFAULT, HMAX_INV_DEFAULT, MXHNIL_DEFAULT, MXSTEP_DEFAULT,
    NLS_MAXCOR, MXNCF, MXNEF, CORTES, ETAMX1, LMM_TYPES, ITER_TYPES,
)


class IntegratorState:
    """
    Mutable record shared by the driver, the step controller, the corrector
    and the linear solver of one integration.

    Nothing here does numerical work; the owning
    :class:`~solve_msivp.integrator.MultistepIntegrator` fills it in and the
    collaborators read and update it.
    """

    def __init__(self, lmm: str, iter_type: str):
        lmm = str(lmm).lower()
        iter_type = str(iter_type).lower()
        if lmm not in LMM_TYPES:
            raise ValueError(f"lmm must be one of {LMM_TYPES}, got '{lmm}'.")
        if iter_type not in ITER_TYPES:
            raise ValueError(f"iter must be one of {ITER_TYPES}, got '{iter_type}'.")

        # Problem specification
        self.lmm = lmm
        self.iter = iter_type
        self.f = None
        self.user_data = None
        self.has_user_data = False
        self.n = 0
        self.rtol = 0.0
        self.atol = 0.0

        # Diagnostics
        self.errfp = sys.stderr
        self.verbose = False
        self.last_flag_source = None

        # Limits and options
        self.qmax = ADAMS_Q_MAX if lmm == ADAMS else BDF_Q_MAX
        self.mxstep = MXSTEP_DEFAULT
        self.mxhnil = MXHNIL_DEFAULT
        self.sldeton = False
        self.hin = 0.0
        self.hmin = HMIN_DEFAULT
        self.hmax_inv = HMAX_INV_DEFAULT
        self.tstop = 0.0
        self.tstopset = False
        self.istop = False
        self.maxnef = MXNEF
        self.maxncf = MXNCF
        self.maxcor = NLS_MAXCOR
        self.nlscoef = CORTES

        # Linear solver binding
        self.lsolver = None
        self.force_setup = False
        self.jcur = False

        self.malloc_done = False
        self.method = None
        self.sens = None
        self.quad = None

    @property
    def setup_non_null(self):
        return self.lsolver is not None and self.lsolver.setup_non_null

    # ------------------------------------------------------------------
    # Allocation (called from MultistepIntegrator.init / reinit)
    # ------------------------------------------------------------------
    def allocate(self, n: int):
        """(Re)allocate the work vectors and coefficient arrays for size ``n``."""
        from .nordsieck import NordsieckArray

        self.n = int(n)
        self.zn = NordsieckArray(np.zeros(n), self.qmax)
        self.ewt = np.ones(n)
        self.acor = np.zeros(n)
        self.y = np.zeros(n)
        self.ftemp = np.zeros(n)
        self.l = np.zeros(self.qmax + 1)
        self.tq = np.zeros(6)
        self.tau = np.zeros(self.qmax + 2)
        self.ssdat = np.zeros((6, 4))
        self.est_local_err = np.zeros(n)

    def reset_counters(self, t0):
        """Step/order scalars and statistics at the start of an integration."""
        self.tn = float(t0)
        self.q = 1
        self.L = 2
        self.qwait = self.L
        self.qprime = 1
        self.next_q = 1
        self.qu = 0
        self.etamax = ETAMX1
        self.eta = 1.0
        self.h = 0.0
        self.hprime = 0.0
        self.next_h = 0.0
        self.hscale = 0.0
        self.h0u = 0.0
        self.hu = 0.0
        self.tolsf = 1.0
        self.saved_tq5 = 0.0
        self.etaq = 1.0
        self.etaqm1 = 0.0
        self.etaqp1 = 0.0

        self.rl1 = 0.0
        self.gamma = 0.0
        self.gammap = 0.0
        self.gamrat = 1.0
        self.crate = 1.0
        self.acnrm = 0.0
        self.mnewt = 0

        self.nst = 0
        self.nfe = 0
        self.ncfn = 0
        self.netf = 0
        self.nni = 0
        self.nsetups = 0
        self.nhnil = 0
        self.nstlp = 0
        self.nscon = 0
        self.nor = 0

        self.tau[:] = 0.0
        self.tq[:] = 0.0
        self.l[:] = 0.0
        self.ssdat[:] = 0.0
        self.zn.q = 1

        self.force_setup = False
        self.jcur = False
        self.tretlast = self.tn
        self.last_flag_source = None

    # ------------------------------------------------------------------
    # Callback helpers
    # ------------------------------------------------------------------
    def call(self, fn, *args):
        """Call a user callback, appending ``user_data`` when one was set."""
        if self.has_user_data:
            return fn(*args, self.user_data)
        return fn(*args)

    def call_f(self, t, y):
        return self.call(self.f, t, y)

    def histories(self):
        """All Nordsieck arrays that move together (state, quadrature, sensitivity)."""
        out = [self.zn]
        if self.quad is not None:
            out.append(self.quad.znQ)
        if self.sens is not None:
            out.append(self.sens.znS)
        return out

    def set_history_order(self, q):
        for zn in self.histories():
            zn.q = q

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def error(self, source: str, func: str, msg: str):
        """Report a failure on the error stream and remember which part raised it."""
        self.last_flag_source = source
        if self.errfp is not None:
            print(f"[cvode] {func}: {msg}", file=self.errfp)

    def log(self, tag: str, msg: str):
        if self.verbose:
            print(f"[{tag}] {msg}")

    @property
    def is_functional(self):
        return self.iter == FUNCTIONAL

    @property
    def is_bdf(self):
        return self.lmm == BDF
