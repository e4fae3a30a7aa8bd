# linear_solvers.py  (Newton-matrix solvers behind the corrector)

from __future__ import annotations

import math
import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from abc import ABC, abstractmethod

from .band import BandMatrix, band_dq_jac
from .constants import (
    BDF, UROUND, LINIT_OK, LINIT_ERR, FAIL_BAD_J, FAIL_OTHER,
)
from .tolerances import wrms_norm


class LinearSolver(ABC):
    """
    Contract between the Newton corrector and a linear solver for
    ``M x = b`` with ``M ~ I - gamma * J``, ``J = df/dy``.

    The four methods mirror the life cycle of the integrator:

    * ``init(mem) -> int``: called once before the first step (and after a
      reinit). Returns ``LINIT_OK`` (0) or ``LINIT_ERR`` (-1).
    * ``setup(mem, convfail, ypred, fpred) -> (status, jcur)``: prepare
      ``M`` at the predicted state. ``convfail`` is one of ``NO_FAILURES``,
      ``FAIL_BAD_J``, ``FAIL_OTHER``. ``jcur`` tells the corrector whether the
      Jacobian data is fresh. ``status`` is 0 on success, > 0 for a
      recoverable failure, < 0 for an unrecoverable one.
    * ``solve(mem, b, weight, ycur, fcur) -> (status, x)``: solve with the
      current ``M``; same status convention.
    * ``free(mem)``: release whatever ``init``/``setup`` allocated.

    ``mem`` is the :class:`~solve_msivp.state.IntegratorState` the solver is
    attached to; it gives read access to ``tn``, ``h``, ``gamma``,
    ``gammap``, ``gamrat``, ``nst``, ``mnewt``, ``tq``, ``ewt``, ``lmm`` and
    to the right-hand side through ``mem.call_f``.

    Subclasses that need no setup phase set ``setup_non_null = False``.
    """

    setup_non_null = True
    name = 'base'

    # Jacobian reuse policy shared by the direct solvers
    MSBJ = 50
    DGMAX_J = 0.2

    def __init__(self, verbose: bool = False):
        self.verbose = bool(verbose)
        self.last_flag = 0

    @abstractmethod
    def init(self, mem) -> int:
        pass

    @abstractmethod
    def setup(self, mem, convfail, ypred, fpred):
        pass

    @abstractmethod
    def solve(self, mem, b, weight, ycur, fcur):
        pass

    def free(self, mem):
        pass

    def get_stats(self) -> dict:
        return {}

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------
    def _jac_is_bad(self, mem, convfail, nst_last):
        dgamma = abs(mem.gamma / mem.gammap - 1.0)
        return (mem.nst == 0
                or mem.nst > nst_last + self.MSBJ
                or (convfail == FAIL_BAD_J and dgamma < self.DGMAX_J)
                or convfail == FAIL_OTHER)

    @staticmethod
    def _bdf_gamma_correction(mem, x):
        # The saved M was built with gammap; a BDF step with a different gamma
        # is corrected by the scalar 2/(1 + gamrat).
        if mem.lmm == BDF and mem.gamrat != 1.0:
            x *= 2.0 / (1.0 + mem.gamrat)
        return x

    @staticmethod
    def _dq_min_inc(mem, fy, n):
        fnorm = wrms_norm(fy, mem.ewt)
        if fnorm != 0.0:
            return 1000.0 * abs(mem.h) * UROUND * n * fnorm
        return 1.0

    def _dense_dq_jac(self, mem, y, fy):
        """Column-by-column difference quotient Jacobian (N calls to f)."""
        n = y.size
        srur = math.sqrt(UROUND)
        min_inc = self._dq_min_inc(mem, fy, n)
        J = np.empty((n, n))
        ytemp = y.copy()
        for j in range(n):
            yj = ytemp[j]
            inc = max(srur * abs(yj), min_inc / mem.ewt[j])
            ytemp[j] = yj + inc
            ftemp = np.asarray(mem.call_f(mem.tn, ytemp), dtype=float)
            ytemp[j] = yj
            J[:, j] = (ftemp - fy) / inc
        return J, n

    def __repr__(self):
        return f"{self.__class__.__name__}()"


# ======================================================================
# Direct solvers
# ======================================================================
class DenseLinearSolver(LinearSolver):
    """
    Dense direct solver (LU with partial pivoting via ``scipy.linalg``).

    Parameters:
        jac: callable, optional
            ``jac(t, y, fy[, user_data]) -> (N, N) array``. When omitted a
            difference-quotient approximation is used.
    """

    name = 'dense'

    def __init__(self, jac=None, verbose: bool = False):
        super().__init__(verbose=verbose)
        self.jac = jac
        self.saved_J = None
        self._lu = None
        self.nje = 0
        self.nfeD = 0
        self.nstlj = 0

    def init(self, mem) -> int:
        if mem.n <= 0:
            return LINIT_ERR
        self.saved_J = np.zeros((mem.n, mem.n))
        self._lu = None
        self.nje = 0
        self.nfeD = 0
        self.nstlj = 0
        self.last_flag = 0
        return LINIT_OK

    def _evaluate_jac(self, mem, ypred, fpred):
        if self.jac is not None:
            return np.asarray(mem.call(self.jac, mem.tn, ypred, fpred), dtype=float)
        J, nf = self._dense_dq_jac(mem, ypred, fpred)
        self.nfeD += nf
        return J

    def setup(self, mem, convfail, ypred, fpred):
        jbad = self._jac_is_bad(mem, convfail, self.nstlj)
        if jbad:
            self.nje += 1
            self.nstlj = mem.nst
            self.saved_J = self._evaluate_jac(mem, ypred, fpred)
        jcur = jbad

        M = np.eye(mem.n) - mem.gamma * self.saved_J
        if not np.all(np.isfinite(M)):
            self.last_flag = 1
            return 1, jcur
        lu, piv = sla.lu_factor(M, check_finite=False)
        if np.any(np.diag(lu) == 0.0):
            if self.verbose:
                print(f"[dense] singular iteration matrix at t={mem.tn:.6g}")
            self._lu = None
            self.last_flag = 1
            return 1, jcur
        self._lu = (lu, piv)
        self.last_flag = 0
        return 0, jcur

    def solve(self, mem, b, weight, ycur, fcur):
        x = sla.lu_solve(self._lu, b, check_finite=False)
        self.last_flag = 0
        return 0, self._bdf_gamma_correction(mem, x)

    def free(self, mem):
        self.saved_J = None
        self._lu = None

    def get_stats(self) -> dict:
        return {'njev': self.nje, 'nfevDQ': self.nfeD}


class BandLinearSolver(LinearSolver):
    """
    Band direct solver using LAPACK ``dgbtrf``/``dgbtrs``.

    Parameters:
        mupper, mlower: int
            Upper and lower half-bandwidths of the Jacobian.
        jac: callable, optional
            ``jac(t, y, fy[, user_data])`` returning either the dense
            ``(N, N)`` Jacobian or its band in ``scipy.linalg.solve_banded``
            layout, shape ``(mupper + mlower + 1, N)``.
    """

    name = 'band'

    def __init__(self, mupper: int, mlower: int, jac=None, verbose: bool = False):
        super().__init__(verbose=verbose)
        self.mu = int(mupper)
        self.ml = int(mlower)
        self.jac = jac
        self.saved_J = None
        self.M = None
        self.nje = 0
        self.nfeB = 0
        self.nstlj = 0

    def init(self, mem) -> int:
        n = mem.n
        if self.mu < 0 or self.ml < 0 or self.mu >= n or self.ml >= n:
            if mem.errfp is not None:
                print(f"[band] illegal bandwidth parameter(s): mu={self.mu}, ml={self.ml}, N={n}",
                      file=mem.errfp)
            return LINIT_ERR
        self.saved_J = BandMatrix(n, self.mu, self.ml)
        self.M = BandMatrix(n, self.mu, self.ml)
        self.nje = 0
        self.nfeB = 0
        self.nstlj = 0
        return LINIT_OK

    def _load_user_jac(self, J):
        J = np.asarray(J, dtype=float)
        n = self.saved_J.n
        if J.shape == (n, n):
            self.saved_J.from_dense(J)
        elif J.shape == (self.mu + self.ml + 1, n):
            self.saved_J.zero()
            self.saved_J.ab[self.ml:, :] = J
        else:
            raise ValueError(f"Band Jacobian has shape {J.shape}; expected ({n}, {n}) "
                             f"or ({self.mu + self.ml + 1}, {n}).")

    def setup(self, mem, convfail, ypred, fpred):
        jbad = self._jac_is_bad(mem, convfail, self.nstlj)
        if jbad:
            self.nje += 1
            self.nstlj = mem.nst
            if self.jac is not None:
                self._load_user_jac(mem.call(self.jac, mem.tn, ypred, fpred))
            else:
                self.saved_J.zero()
                self.nfeB += band_dq_jac(mem.call_f, mem.tn, ypred, fpred, mem.ewt, mem.h,
                                         self.mu, self.ml, self.saved_J, UROUND)
        jcur = jbad

        self.M.copy_from(self.saved_J)
        self.M.scale_add_identity(-mem.gamma)
        if not np.all(np.isfinite(self.M.ab)):
            return 1, jcur
        ier = self.M.factor()
        self.last_flag = ier
        if ier > 0:
            if self.verbose:
                print(f"[band] zero pivot {ier} at t={mem.tn:.6g}")
            return 1, jcur
        return 0, jcur

    def solve(self, mem, b, weight, ycur, fcur):
        x = self.M.solve(b)
        return 0, self._bdf_gamma_correction(mem, x)

    def free(self, mem):
        self.saved_J = None
        self.M = None

    def get_stats(self) -> dict:
        return {'njev': self.nje, 'nfevDQ': self.nfeB}


class SparseLinearSolver(LinearSolver):
    """
    Sparse direct solver: ``M = I - gamma * J`` in CSC form factored by
    ``scipy.sparse.linalg.splu``.

    Parameters:
        jac: callable, optional
            ``jac(t, y, fy[, user_data])`` returning a scipy sparse matrix or a
            dense array. When omitted a dense difference quotient is
            converted to CSR.
        permc_spec: str
            Column permutation passed to ``splu``.
    """

    name = 'sparse'

    def __init__(self, jac=None, permc_spec: str = 'COLAMD', verbose: bool = False):
        super().__init__(verbose=verbose)
        self.jac = jac
        self.permc_spec = permc_spec
        self.saved_J = None
        self._lu = None
        self._I = None
        self.nje = 0
        self.nfeD = 0
        self.nstlj = 0

    def init(self, mem) -> int:
        self.saved_J = None
        self._lu = None
        self._I = sp.identity(mem.n, format='csc')
        self.nje = 0
        self.nfeD = 0
        self.nstlj = 0
        return LINIT_OK

    def _to_csc(self, A):
        if sp.issparse(A):
            return A.tocsc()
        return sp.csc_matrix(np.asarray(A, dtype=float))

    def setup(self, mem, convfail, ypred, fpred):
        jbad = self._jac_is_bad(mem, convfail, self.nstlj) or self.saved_J is None
        if jbad:
            self.nje += 1
            self.nstlj = mem.nst
            if self.jac is not None:
                self.saved_J = self._to_csc(mem.call(self.jac, mem.tn, ypred, fpred))
            else:
                J, nf = self._dense_dq_jac(mem, ypred, fpred)
                self.nfeD += nf
                self.saved_J = self._to_csc(J)
        jcur = jbad

        M = (self._I - mem.gamma * self.saved_J).tocsc()
        if not np.all(np.isfinite(M.data)):
            return 1, jcur
        try:
            self._lu = spla.splu(M, permc_spec=self.permc_spec)
        except RuntimeError as e:
            # splu raises on an exactly singular factor
            if self.verbose:
                print(f"[sparse] factorization failed at t={mem.tn:.6g}: {e}")
            self._lu = None
            return 1, jcur
        return 0, jcur

    def solve(self, mem, b, weight, ycur, fcur):
        x = self._lu.solve(np.asarray(b, dtype=float))
        return 0, self._bdf_gamma_correction(mem, x)

    def free(self, mem):
        self.saved_J = None
        self._lu = None

    def get_stats(self) -> dict:
        return {'njev': self.nje, 'nfevDQ': self.nfeD}


class DiagLinearSolver(LinearSolver):
    """
    Diagonal approximation of ``I - gamma * J``.

    The diagonal of ``J`` is estimated from one extra ``f`` evaluation at a
    point displaced by a fraction of the functional-iteration correction.
    Components whose displacement is at roundoff level keep ``M_ii = 1``.
    """

    name = 'diag'
    FRACT = 0.1

    def __init__(self, verbose: bool = False):
        super().__init__(verbose=verbose)
        self.M = None
        self.gammasv = 0.0
        self.nfeDI = 0

    def init(self, mem) -> int:
        self.M = np.ones(mem.n)
        self.gammasv = 0.0
        self.nfeDI = 0
        return LINIT_OK

    def setup(self, mem, convfail, ypred, fpred):
        r = self.FRACT * mem.rl1
        ftemp = mem.h * fpred - mem.zn[1]
        y = ypred + r * ftemp
        fp = np.asarray(mem.call_f(mem.tn, y), dtype=float)
        self.nfeDI += 1

        dy_scaled = ftemp * mem.ewt
        bit = np.abs(dy_scaled) > UROUND
        with np.errstate(divide='ignore', invalid='ignore'):
            Mdiag = np.where(bit, 1.0 - mem.h * (fp - fpred) / (self.FRACT * ftemp), 1.0)
        if not np.all(np.isfinite(Mdiag)) or np.any(Mdiag == 0.0):
            return 1, True
        self.M = 1.0 / Mdiag
        self.gammasv = mem.gamma
        return 0, True

    def solve(self, mem, b, weight, ycur, fcur):
        if self.gammasv != mem.gamma:
            # Rebuild 1/(I - gamma J) for the new gamma from the stored one.
            ratio = mem.gamma / self.gammasv
            Mdiag = 1.0 + ratio * (1.0 / self.M - 1.0)
            if np.any(Mdiag == 0.0):
                return 1, b
            self.M = 1.0 / Mdiag
            self.gammasv = mem.gamma
        return 0, b * self.M

    def free(self, mem):
        self.M = None

    def get_stats(self) -> dict:
        return {'nfevDQ': self.nfeDI}


# ======================================================================
# Krylov solver
# ======================================================================
PREC_NONE = 'none'
PREC_LEFT = 'left'
PREC_RIGHT = 'right'
PREC_BOTH = 'both'
PRETYPES = (PREC_NONE, PREC_LEFT, PREC_RIGHT, PREC_BOTH)


class SpbcgsLinearSolver(LinearSolver):
    """
    Matrix-free scaled preconditioned BiCGStab solver.

    ``(I - gamma J) v`` is applied with a difference-quotient Jacobian-vector
    product ``J v ~ (f(t, y + sigma v) - f(t, y)) / sigma`` with
    ``sigma = 1 / ||v||_wrms``, and the system is handed to
    ``scipy.sparse.linalg.bicgstab`` in the weighted variables ``S x`` with
    ``S = diag(weight)``. The iteration stops once the scaled residual
    reaches ``delt * tq[4] * sqrt(N)``.

    Parameters:
        pretype: str
            ``'none'``, ``'left'``, ``'right'`` or ``'both'``.
        maxl: int
            Maximum number of BiCGStab iterations per solve.
        delt: float
            Factor on the Newton tolerance giving the linear tolerance.
        psetup, psolve: callable, optional
            User preconditioner ``psetup(t, y, fy, jok, gamma[, user_data]) ->
            (status, jcur)`` and ``psolve(t, y, fy, r, gamma, delta, lr[,
            user_data]) -> (status, z)``.
        preconditioner: object, optional
            An object with ``setup(mem, t, y, fy, jok, gamma)`` and
            ``solve(mem, t, y, fy, r, gamma, delta, lr)``, for example
            :class:`~solve_msivp.preconditioners.BandPreconditioner`.
        jtimes: callable, optional
            ``jtimes(v, t, y, fy[, user_data]) -> J v`` replacing the
            difference quotient.
    """

    name = 'spbcgs'
    MSBPRE = 50
    DGMAX_P = 0.2

    def __init__(self, pretype: str = PREC_NONE, maxl: int = 5, delt: float = 0.05,
                 psetup=None, psolve=None, preconditioner=None, jtimes=None,
                 verbose: bool = False):
        super().__init__(verbose=verbose)
        pretype = (pretype or PREC_NONE).lower()
        if pretype not in PRETYPES:
            raise ValueError(f"pretype must be one of {PRETYPES}.")
        if maxl <= 0:
            maxl = 5
        if delt < 0.0:
            raise ValueError("delt must be non-negative.")
        self.pretype = pretype
        self.maxl = int(maxl)
        self.delt = float(delt) if delt > 0.0 else 0.05
        self.psetup = psetup
        self.psolve = psolve
        self.preconditioner = preconditioner
        self.jtimes = jtimes
        self.setup_non_null = (pretype != PREC_NONE
                               and (preconditioner is not None or psetup is not None))
        self.nstlpre = 0
        self.npe = 0
        self.nli = 0
        self.nps = 0
        self.ncfl = 0
        self.njtimes = 0
        self.nfeSG = 0

    def init(self, mem) -> int:
        if self.pretype != PREC_NONE and self.preconditioner is None and self.psolve is None:
            if mem.errfp is not None:
                print("[spbcgs] pretype set but no psolve routine given.", file=mem.errfp)
            return LINIT_ERR
        self.nstlpre = 0
        self.npe = self.nli = self.nps = self.ncfl = self.njtimes = self.nfeSG = 0
        return LINIT_OK

    def setup(self, mem, convfail, ypred, fpred):
        dgamma = abs(mem.gamma / mem.gammap - 1.0)
        jbad = (mem.nst == 0
                or mem.nst > self.nstlpre + self.MSBPRE
                or (convfail == FAIL_BAD_J and dgamma < self.DGMAX_P)
                or convfail == FAIL_OTHER)
        jok = not jbad
        if self.preconditioner is not None:
            ier, jcur = self.preconditioner.setup(mem, mem.tn, ypred, fpred, jok, mem.gamma)
        elif self.psetup is not None:
            ier, jcur = mem.call(self.psetup, mem.tn, ypred, fpred, jok, mem.gamma)
        else:
            ier, jcur = 0, jbad
        self.npe += 1
        if jcur:
            self.nstlpre = mem.nst
        if ier < 0:
            return -1, jcur
        if ier > 0:
            return 1, jcur
        return 0, jcur

    def _psolve(self, mem, ycur, fcur, r, delta, lr):
        self.nps += 1
        if self.preconditioner is not None:
            return self.preconditioner.solve(mem, mem.tn, ycur, fcur, r, mem.gamma, delta, lr)
        return mem.call(self.psolve, mem.tn, ycur, fcur, r, mem.gamma, delta, lr)

    def _jv(self, mem, v, ycur, fcur):
        self.njtimes += 1
        if self.jtimes is not None:
            return np.asarray(mem.call(self.jtimes, v, mem.tn, ycur, fcur), dtype=float)
        vnrm = wrms_norm(v, mem.ewt)
        if vnrm == 0.0:
            return np.zeros_like(v)
        sig = 1.0 / vnrm
        fw = np.asarray(mem.call_f(mem.tn, ycur + sig * v), dtype=float)
        self.nfeSG += 1
        return (fw - fcur) * vnrm

    def _bicgstab(self, A, b, M=None, atol=0.0, callback=None):
        return spla.bicgstab(A, b, rtol=0.0, atol=atol, M=M, maxiter=self.maxl, callback=callback)

    def solve(self, mem, b, weight, ycur, fcur):
        n = b.size
        deltar = self.delt * mem.tq[4]
        bnorm = wrms_norm(b, weight)
        if bnorm <= deltar:
            x = np.zeros_like(b) if mem.mnewt > 0 else b.copy()
            return 0, x
        delta = deltar * math.sqrt(n)

        status = {'psolve': 0}

        def _matvec(xs):
            v = xs / weight
            return weight * (v - mem.gamma * self._jv(mem, v, ycur, fcur))

        A = spla.LinearOperator((n, n), matvec=_matvec, dtype=float)
        M = None
        if self.pretype != PREC_NONE:
            def _prec(rs):
                ier, z = self._psolve(mem, ycur, fcur, rs / weight, delta, 1)
                if ier != 0 and status['psolve'] == 0:
                    status['psolve'] = ier
                return weight * np.asarray(z, dtype=float)
            M = spla.LinearOperator((n, n), matvec=_prec, dtype=float)

        iters = [0]

        def _count(_xk):
            iters[0] += 1

        xs, info = self._bicgstab(A, weight * b, M=M, atol=delta, callback=_count)
        self.nli += iters[0]

        if status['psolve'] < 0:
            return -1, b
        if status['psolve'] > 0 or not np.all(np.isfinite(xs)):
            self.ncfl += 1
            return 1, b
        if info != 0:
            self.ncfl += 1
            # A reduced residual is accepted on the first Newton iteration only.
            rs = weight * b
            reduced = np.linalg.norm(A.matvec(xs) - rs) < np.linalg.norm(rs)
            if reduced and mem.mnewt == 0:
                return 0, xs / weight
            if self.verbose:
                print(f"[spbcgs] no convergence at t={mem.tn:.6g} (info={info})")
            return 1, b
        return 0, xs / weight

    def get_stats(self) -> dict:
        return {'npe': self.npe, 'nli': self.nli, 'nps': self.nps, 'ncfl': self.ncfl,
                'njtimes': self.njtimes, 'nfevDQ': self.nfeSG}


_SOLVERS = {
    'dense': DenseLinearSolver,
    'band': BandLinearSolver,
    'sparse': SparseLinearSolver,
    'diag': DiagLinearSolver,
    'spbcgs': SpbcgsLinearSolver,
}


def make_linear_solver(name, **opts):
    """Build a linear solver from its name and keyword options."""
    if isinstance(name, LinearSolver):
        return name
    key = str(name).lower()
    if key not in _SOLVERS:
        raise ValueError(f"Unknown linear solver '{name}'. Choose from {sorted(_SOLVERS)}.")
    return _SOLVERS[key](**opts)
