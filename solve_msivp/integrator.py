"""Driver for the multistep integrator.

:class:`MultistepIntegrator` owns one :class:`~solve_msivp.state.IntegratorState`
and exposes the create / configure / advance / query life cycle::

    >>> ode = MultistepIntegrator('bdf', 'newton')
    >>> ode.init(f, 0.0, y0, rtol=1e-6, atol=1e-8)
    >>> ode.set_linear_solver('dense')
    >>> flag, t, y = ode.advance(1.0, 'normal')

Illegal configuration raises ``ValueError`` immediately. Numerical outcomes
of :meth:`MultistepIntegrator.advance` are integer flags from
:mod:`solve_msivp.constants`; the integrator stays usable after
``TOO_MUCH_WORK`` and ``TOO_MUCH_ACC``.
"""

import math
import warnings

import numpy as np

from .adaptive_integrator import AdaptiveStepping
from .constants import (
    BDF, NEWTON, ITER_TYPES, TASKS, NORMAL, ONE_STEP, NORMAL_TSTOP, ONE_STEP_TSTOP,
    SUCCESS, TSTOP_RETURN, NO_MALLOC, ILL_INPUT, TOO_MUCH_WORK, TOO_MUCH_ACC,
    ERR_FAILURE, CONV_FAILURE, SETUP_FAILURE, SOLVE_FAILURE,
    OKAY, BAD_K, BAD_T, BAD_IS, NO_QUAD, NO_SENS,
    LINIT_ERR, SUCCESS_STEP, REP_ERR_FAIL, REP_CONV_FAIL, SETUP_FAILED, SOLVE_FAILED,
    UROUND, FUZZ_FACTOR, MXSTEP_DEFAULT, MXHNIL_DEFAULT, NLS_MAXCOR, MXNCF, MXNEF, CORTES,
)
from .integrations import make_method
from .linear_solvers import make_linear_solver
from .nonlinear_solvers import CorrectorSolver
from .quadrature import QuadratureState
from .sensitivity import SensitivityState
from .state import IntegratorState
from .tolerances import check_tolerances, ewt_set, wrms_norm


class MultistepIntegrator:
    """
    Variable-order, variable-step Adams / BDF integrator with optional
    forward sensitivities and quadratures.

    Parameters
    ----------
    lmm : {'adams', 'bdf'}
        Linear multistep family. Adams-Moulton (orders 1..12) for nonstiff,
        BDF (orders 1..5) for stiff problems.
    iter : {'functional', 'newton'}
        Corrector iteration. Newton needs a linear solver, attached with
        :meth:`set_linear_solver`.
    verbose : bool
        Print per-step diagnostics.
    record_attempts : bool
        Keep a log of every attempted step (see
        :meth:`AdaptiveStepping.get_attempt_log`).
    """

    def __init__(self, lmm: str = 'bdf', iter: str = 'newton', verbose: bool = False,
                 record_attempts: bool = False):
        self.mem = IntegratorState(lmm, iter)
        self.mem.verbose = bool(verbose)
        self.verbose = bool(verbose)
        self.corrector = CorrectorSolver(verbose=verbose)
        self.stepper = AdaptiveStepping(self.mem, self.corrector, verbose=verbose,
                                        record_attempts=record_attempts)
        self._qmax_alloc = self.mem.qmax
        self._sens_data_explicit = False

    # ------------------------------------------------------------------
    # Problem definition
    # ------------------------------------------------------------------
    def init(self, f, t0, y0, rtol, atol):
        """Attach the problem ``y' = f(t, y)``, ``y(t0) = y0`` and its tolerances.

        ``rtol`` is a scalar, ``atol`` a scalar or an array of length ``N``.
        Any quadrature or sensitivity problem attached before is dropped.
        """
        if f is None or not callable(f):
            raise ValueError("f must be a callable.")
        y0 = np.array(y0, dtype=float)
        if y0.ndim != 1 or y0.size == 0:
            raise ValueError("y0 must be a non-empty one-dimensional array.")
        rtol, atol = check_tolerances(rtol, atol, y0.size)

        mem = self.mem
        mem.f = f
        mem.rtol = rtol
        mem.atol = atol
        mem.allocate(y0.size)
        mem.zn.reset(y0)
        mem.method = make_method(mem.lmm)
        mem.quad = None
        mem.sens = None
        self._sens_data_explicit = False
        mem.reset_counters(t0)
        mem.malloc_done = True
        self.stepper.reset_attempt_log()
        return SUCCESS

    def reinit(self, t0, y0, rtol=None, atol=None):
        """Restart from ``(t0, y0)`` with a problem of the same size.

        Options and the linear solver are kept. Quadratures and
        sensitivities stay attached and should be restarted with
        :meth:`quad_reinit` / :meth:`sens_reinit`.
        """
        mem = self.mem
        if not mem.malloc_done:
            raise ValueError("reinit called before init.")
        y0 = np.array(y0, dtype=float)
        if y0.shape != (mem.n,):
            raise ValueError(f"y0 must have length {mem.n}.")
        if rtol is not None or atol is not None:
            rtol = mem.rtol if rtol is None else rtol
            atol = mem.atol if atol is None else atol
            mem.rtol, mem.atol = check_tolerances(rtol, atol, mem.n)
        mem.zn.reset(y0)
        mem.set_history_order(1)
        mem.reset_counters(t0)
        self.stepper.reset_attempt_log()
        return SUCCESS

    def set_tolerances(self, rtol, atol):
        mem = self.mem
        self._require_malloc('set_tolerances')
        mem.rtol, mem.atol = check_tolerances(rtol, atol, mem.n)
        return SUCCESS

    def _require_malloc(self, func):
        if not self.mem.malloc_done:
            raise ValueError(f"{func}: init must be called first.")

    # ------------------------------------------------------------------
    # Optional inputs
    # ------------------------------------------------------------------
    def set_user_data(self, user_data):
        """Opaque object appended as last argument to every user callback."""
        mem = self.mem
        mem.user_data = user_data
        mem.has_user_data = True
        if mem.sens is not None and not self._sens_data_explicit:
            mem.sens.fS_data = user_data
            mem.sens.has_fS_data = True
        return SUCCESS

    def set_err_file(self, stream):
        """Stream for error messages; ``None`` silences them."""
        self.mem.errfp = stream
        return SUCCESS

    def set_max_ord(self, maxord):
        maxord = int(maxord)
        if maxord <= 0:
            raise ValueError("maxord must be positive.")
        if maxord > self._qmax_alloc:
            raise ValueError(f"maxord cannot exceed {self._qmax_alloc} for this method.")
        mem = self.mem
        if mem.malloc_done and maxord > mem.qmax:
            raise ValueError("maxord can only be decreased after init.")
        mem.qmax = maxord
        if mem.malloc_done:
            for zn in mem.histories():
                zn.qmax = maxord
        return SUCCESS

    def set_max_num_steps(self, mxsteps):
        mxsteps = int(mxsteps)
        if mxsteps < 0:
            raise ValueError("mxsteps must be non-negative.")
        self.mem.mxstep = mxsteps if mxsteps > 0 else MXSTEP_DEFAULT
        return SUCCESS

    def set_max_hnil_warns(self, mxhnil):
        self.mem.mxhnil = int(mxhnil) if mxhnil is not None else MXHNIL_DEFAULT
        return SUCCESS

    def set_stab_lim_det(self, stldet):
        mem = self.mem
        if stldet and mem.lmm != BDF:
            raise ValueError("Stability limit detection is only available with BDF.")
        stldet = bool(stldet)
        if stldet and not mem.sldeton and mem.malloc_done:
            mem.nscon = 0
            mem.ssdat[:] = 0.0
        mem.sldeton = stldet
        return SUCCESS

    def set_init_step(self, hin):
        self.mem.hin = float(hin)
        return SUCCESS

    def set_min_step(self, hmin):
        hmin = float(hmin)
        mem = self.mem
        if hmin < 0.0:
            raise ValueError("hmin must be non-negative.")
        if hmin * mem.hmax_inv > 1.0:
            raise ValueError("hmin exceeds hmax.")
        mem.hmin = hmin
        return SUCCESS

    def set_max_step(self, hmax):
        hmax = float(hmax)
        mem = self.mem
        if hmax < 0.0:
            raise ValueError("hmax must be non-negative.")
        hmax_inv = 0.0 if hmax == 0.0 else 1.0 / hmax
        if hmax_inv * mem.hmin > 1.0:
            raise ValueError("hmax is smaller than hmin.")
        mem.hmax_inv = hmax_inv
        return SUCCESS

    def set_stop_time(self, tstop):
        """Time the integrator must never step past in the ``*_tstop`` tasks."""
        self.mem.tstop = float(tstop)
        self.mem.tstopset = True
        return SUCCESS

    def set_max_err_test_fails(self, maxnef):
        maxnef = int(maxnef)
        self.mem.maxnef = maxnef if maxnef > 0 else MXNEF
        return SUCCESS

    def set_max_nonlin_iters(self, maxcor):
        maxcor = int(maxcor)
        self.mem.maxcor = maxcor if maxcor > 0 else NLS_MAXCOR
        return SUCCESS

    def set_max_conv_fails(self, maxncf):
        maxncf = int(maxncf)
        self.mem.maxncf = maxncf if maxncf > 0 else MXNCF
        return SUCCESS

    def set_nonlin_conv_coef(self, nlscoef):
        nlscoef = float(nlscoef)
        self.mem.nlscoef = nlscoef if nlscoef > 0.0 else CORTES
        return SUCCESS

    def reset_iter_type(self, iter):
        iter = str(iter).lower()
        if iter not in ITER_TYPES:
            raise ValueError(f"iter must be one of {ITER_TYPES}, got '{iter}'.")
        self.mem.iter = iter
        self.mem.force_setup = True
        return SUCCESS

    def set_linear_solver(self, solver='dense', **opts):
        """Attach the linear solver used by the Newton corrector.

        ``solver`` is a :class:`~solve_msivp.linear_solvers.LinearSolver`
        instance or one of ``'dense'``, ``'band'``, ``'sparse'``, ``'diag'``,
        ``'spbcgs'`` (options forwarded to its constructor).
        """
        mem = self.mem
        self._require_malloc('set_linear_solver')
        ls = make_linear_solver(solver, **opts)
        if mem.lsolver is not None and mem.lsolver is not ls:
            mem.lsolver.free(mem)
        mem.lsolver = ls
        if ls.init(mem) == LINIT_ERR:
            mem.lsolver = None
            raise ValueError(f"Linear solver {ls!r} failed to initialize.")
        mem.force_setup = True
        return SUCCESS

    # ------------------------------------------------------------------
    # Quadratures
    # ------------------------------------------------------------------
    def quad_init(self, fQ, yQ0, rtolQ=None, atolQ=None):
        """Attach quadratures ``yQ' = fQ(t, y)``.

        With ``rtolQ``/``atolQ`` given the quadratures also take part in the
        local error test (see :meth:`set_quad_err_con`).
        """
        mem = self.mem
        self._require_malloc('quad_init')
        mem.quad = QuadratureState(fQ, yQ0, mem.qmax)
        mem.quad.znQ.q = mem.q
        if rtolQ is not None or atolQ is not None:
            self.set_quad_err_con(True, rtolQ, atolQ)
        return SUCCESS

    def quad_reinit(self, yQ0):
        quad = self._require_quad('quad_reinit')
        yQ0 = np.array(yQ0, dtype=float).ravel()
        if yQ0.size != quad.nq:
            raise ValueError(f"yQ0 must have length {quad.nq}.")
        quad.znQ.reset(yQ0)
        quad.znQ.q = self.mem.q
        quad.yQ = yQ0.copy()
        quad.reset_counters()
        return SUCCESS

    def quad_free(self):
        self.mem.quad = None

    def set_quad_err_con(self, errconQ, rtolQ=None, atolQ=None):
        quad = self._require_quad('set_quad_err_con')
        errconQ = bool(errconQ)
        if errconQ:
            if rtolQ is None and quad.rtolQ is None:
                raise ValueError("Quadrature error control needs rtolQ and atolQ.")
            if rtolQ is not None or atolQ is not None:
                rtolQ = quad.rtolQ if rtolQ is None else rtolQ
                atolQ = quad.atolQ if atolQ is None else atolQ
                quad.rtolQ, quad.atolQ = check_tolerances(rtolQ, atolQ, quad.nq, name='quadrature')
        quad.errconQ = errconQ
        return SUCCESS

    def set_quad_data(self, fQ_data):
        quad = self._require_quad('set_quad_data')
        quad.fQ_data = fQ_data
        quad.has_fQ_data = True
        return SUCCESS

    def _require_quad(self, func):
        if self.mem.quad is None:
            raise ValueError(f"{func}: quadratures were not initialized (call quad_init).")
        return self.mem.quad

    # ------------------------------------------------------------------
    # Sensitivities
    # ------------------------------------------------------------------
    def sens_init(self, Ns, ism, p, plist, yS0):
        """Attach ``Ns`` forward sensitivities with respect to ``p[plist]``.

        ``ism`` selects how their corrector is coupled to the state's:
        ``'simultaneous'``, ``'staggered'`` or ``'staggered1'``. ``p`` must
        be the very array the right-hand side reads parameters from when no
        sensitivity right-hand side is supplied.
        """
        mem = self.mem
        self._require_malloc('sens_init')
        yS0 = np.array(yS0, dtype=float)
        if yS0.ndim == 1 and int(Ns) == 1:
            yS0 = yS0.reshape(1, -1)
        if yS0.ndim != 2 or yS0.shape[1] != mem.n:
            raise ValueError(f"yS0 must have shape (Ns, {mem.n}).")
        sens = SensitivityState(Ns, ism, p, plist, yS0, mem.qmax)
        sens.znS.q = mem.q
        if mem.has_user_data:
            sens.fS_data = mem.user_data
            sens.has_fS_data = True
        self._sens_data_explicit = False
        mem.sens = sens
        return SUCCESS

    def sens_reinit(self, ism, yS0):
        sens = self._require_sens('sens_reinit')
        yS0 = np.array(yS0, dtype=float)
        if yS0.ndim == 1 and sens.ns == 1:
            yS0 = yS0.reshape(1, -1)
        if yS0.shape != (sens.ns, sens.n):
            raise ValueError(f"yS0 must have shape ({sens.ns}, {sens.n}).")
        sens.set_method(ism)
        sens.znS.reset(yS0)
        sens.znS.q = self.mem.q
        sens.yS = yS0.copy()
        sens.reset_counters()
        return SUCCESS

    def sens_free(self):
        self.mem.sens = None

    def set_sens_rhs_fn(self, fS):
        """``fS(t, y, ydot, yS[, data]) -> ySdot`` for all directions at once."""
        sens = self._require_sens('set_sens_rhs_fn')
        if fS is not None and not callable(fS):
            raise ValueError("fS must be callable or None.")
        sens.fS = fS
        sens.fS1 = None
        return SUCCESS

    def set_sens_rhs1_fn(self, fS1):
        """``fS1(t, y, ydot, i, yS_i[, data]) -> ySdot_i`` for one direction."""
        sens = self._require_sens('set_sens_rhs1_fn')
        if fS1 is not None and not callable(fS1):
            raise ValueError("fS1 must be callable or None.")
        sens.fS1 = fS1
        sens.fS = None
        return SUCCESS

    def set_sens_data(self, fS_data):
        sens = self._require_sens('set_sens_data')
        sens.fS_data = fS_data
        sens.has_fS_data = True
        self._sens_data_explicit = True
        return SUCCESS

    def set_sens_err_con(self, errconS):
        self._require_sens('set_sens_err_con').errconS = bool(errconS)
        return SUCCESS

    def set_sens_rho(self, rho):
        """Selects the difference-quotient scheme; see :func:`sens_rhs1_dq`."""
        self._require_sens('set_sens_rho').rhomax = float(rho)
        return SUCCESS

    def set_sens_pbar(self, pbar):
        sens = self._require_sens('set_sens_pbar')
        pbar = np.array(pbar, dtype=float).ravel()
        if pbar.size != sens.ns:
            raise ValueError(f"pbar must have {sens.ns} entries.")
        if np.any(pbar == 0.0):
            raise ValueError("pbar entries must be non-zero.")
        sens.pbar = pbar
        return SUCCESS

    def set_sens_tolerances(self, rtolS, atolS):
        """Tolerances for the sensitivities.

        ``atolS`` holds one scalar per direction (shape ``(Ns,)``) or one
        vector per direction (shape ``(Ns, N)``).
        """
        sens = self._require_sens('set_sens_tolerances')
        rtolS, _ = check_tolerances(rtolS, 1.0, sens.n, name='sensitivity')
        atolS = np.array(atolS, dtype=float)
        if atolS.shape == (sens.ns,):
            atolS = np.repeat(atolS[:, None], sens.n, axis=1)
        if atolS.shape != (sens.ns, sens.n):
            raise ValueError(f"atolS must have shape ({sens.ns},) or ({sens.ns}, {sens.n}).")
        if not np.all(np.isfinite(atolS)) or np.any(atolS < 0.0):
            raise ValueError("atolS has a negative or non-finite component.")
        if rtolS == 0.0 and np.any(atolS == 0.0):
            raise ValueError("rtolS and atolS cannot both be zero.")
        sens.rtolS = rtolS
        sens.atolS = atolS
        sens.user_tols = True
        return SUCCESS

    def set_sens_max_nonlin_iters(self, maxcorS):
        maxcorS = int(maxcorS)
        self._require_sens('set_sens_max_nonlin_iters').maxcorS = maxcorS if maxcorS > 0 else NLS_MAXCOR
        return SUCCESS

    def _require_sens(self, func):
        if self.mem.sens is None:
            raise ValueError(f"{func}: sensitivities were not initialized (call sens_init).")
        return self.mem.sens

    # ------------------------------------------------------------------
    # Main driver
    # ------------------------------------------------------------------
    def advance(self, tout, task=NORMAL):
        """Integrate towards ``tout``.

        Parameters
        ----------
        tout : float
            Next output time.
        task : str
            ``'normal'``: step past ``tout`` and interpolate ``y(tout)``.
            ``'one_step'``: take one internal step and return.
            ``'normal_tstop'`` / ``'one_step_tstop'``: the same, but never
            step past the time given to :meth:`set_stop_time`.

        Returns
        -------
        flag : int
            ``SUCCESS``, ``TSTOP_RETURN`` or a negative failure flag.
        tret : float
            Time reached.
        y : ndarray
            Solution at ``tret``.
        """
        mem = self.mem
        if not mem.malloc_done:
            if mem.errfp is not None:
                print("[cvode] advance: init has not been called.", file=mem.errfp)
            return NO_MALLOC, float('nan'), None

        task = str(task).lower()
        if task not in TASKS:
            mem.error('state', 'advance', f"illegal value for task '{task}'.")
            return ILL_INPUT, mem.tn, mem.zn[0].copy()
        if task in (NORMAL_TSTOP, ONE_STEP_TSTOP):
            if not mem.tstopset:
                mem.error('state', 'advance', "tstop task requested but set_stop_time was not called.")
                return ILL_INPUT, mem.tn, mem.zn[0].copy()
            mem.istop = True
        else:
            mem.istop = False
        one_step = task in (ONE_STEP, ONE_STEP_TSTOP)

        if mem.iter == NEWTON and mem.lsolver is None:
            mem.error('state', 'advance', "the Newton iteration needs a linear solver (set_linear_solver).")
            return ILL_INPUT, mem.tn, mem.zn[0].copy()

        if mem.nst == 0:
            flag = self._first_call(tout)
            if flag != SUCCESS:
                return flag, mem.tn, mem.zn[0].copy()
        else:
            done = self._check_early_return(tout, one_step)
            if done is not None:
                return done

        # Take internal steps until tout, tstop or a failure.
        nstloc = 0
        while True:
            mem.next_h = mem.h
            mem.next_q = mem.q

            if mem.nst > 0 and not self._set_weights():
                mem.error('state', 'advance', f"at t = {mem.tn:g}, a component of ewt has become <= 0.")
                mem.tretlast = mem.tn
                return ILL_INPUT, mem.tn, mem.zn[0].copy()

            if mem.mxstep > 0 and nstloc >= mem.mxstep:
                mem.error('state', 'advance',
                          f"at t = {mem.tn:g}, mxstep steps taken before reaching tout.")
                mem.tretlast = mem.tn
                return TOO_MUCH_WORK, mem.tn, mem.zn[0].copy()

            nrm = self._solution_norm()
            mem.tolsf = UROUND * nrm
            if mem.tolsf > 1.0:
                mem.tolsf *= 2.0
                mem.error('state', 'advance',
                          f"at t = {mem.tn:g}, too much accuracy requested (tolsf = {mem.tolsf:g}).")
                mem.tretlast = mem.tn
                return TOO_MUCH_ACC, mem.tn, mem.zn[0].copy()
            mem.tolsf = 1.0

            if mem.tn + mem.h == mem.tn:
                mem.nhnil += 1
                if mem.nhnil <= mem.mxhnil:
                    warnings.warn(f"Internal t = {mem.tn:g} and h = {mem.h:g} are such that "
                                  "t + h == t on the next step. The solver will continue anyway.",
                                  RuntimeWarning, stacklevel=2)
                if mem.nhnil == mem.mxhnil:
                    warnings.warn("The above warning has been issued mxhnil times and will "
                                  "not be issued again for this problem.",
                                  RuntimeWarning, stacklevel=2)

            kflag = self.stepper.step()
            if kflag != SUCCESS_STEP:
                flag = self._handle_failure(kflag)
                mem.tretlast = mem.tn
                return flag, mem.tn, mem.zn[0].copy()

            nstloc += 1

            if task in (NORMAL, NORMAL_TSTOP) and (mem.tn - tout) * mem.h >= 0.0:
                mem.tretlast = tout
                _, y = self.get_dky(tout, 0)
                mem.next_q = mem.qprime
                mem.next_h = mem.hprime
                return SUCCESS, float(tout), y

            if mem.istop:
                troundoff = FUZZ_FACTOR * UROUND * (abs(mem.tn) + abs(mem.h))
                if abs(mem.tn - mem.tstop) <= troundoff:
                    _, y = self.get_dky(mem.tstop, 0)
                    mem.tretlast = mem.tstop
                    mem.next_q = mem.qprime
                    mem.next_h = mem.hprime
                    return TSTOP_RETURN, mem.tstop, y
                if (mem.tn + mem.hprime - mem.tstop) * mem.h > 0.0:
                    mem.hprime = (mem.tstop - mem.tn) * (1.0 - 4.0 * UROUND)
                    mem.eta = mem.hprime / mem.h

            if one_step:
                mem.tretlast = mem.tn
                mem.next_q = mem.qprime
                mem.next_h = mem.hprime
                return SUCCESS, mem.tn, mem.zn[0].copy()

    def _first_call(self, tout):
        """Initial derivatives, error weights and first step size."""
        mem = self.mem
        quad = mem.quad
        sens = mem.sens

        if mem.lsolver is not None and mem.iter == NEWTON:
            if mem.lsolver.init(mem) == LINIT_ERR:
                mem.error('linear_solver', 'advance', "the linear solver's init routine failed.")
                return ILL_INPUT

        if not self._set_weights():
            mem.error('state', 'advance', "some initial ewt component is <= 0.")
            return ILL_INPUT

        zn = mem.zn
        f0 = np.asarray(mem.call_f(mem.tn, zn[0]), dtype=float)
        mem.nfe += 1
        if f0.shape != zn[0].shape:
            mem.error('state', 'advance', f"f returned shape {f0.shape}, expected {zn[0].shape}.")
            return ILL_INPUT
        zn[1] = f0

        if quad is not None:
            quad.znQ[1] = quad.rhs(mem, mem.tn, zn[0])
        if sens is not None:
            sens.rhs(mem, mem.tn, zn[0], f0, sens.znS[0], sens.tempvS)
            sens.znS[1] = sens.tempvS

        if mem.istop and (mem.tstop - mem.tn) * (tout - mem.tn) <= 0.0:
            mem.error('state', 'advance', f"tstop = {mem.tstop:g} is behind t0 = {mem.tn:g}.")
            return ILL_INPUT

        mem.h = mem.hin
        if mem.h != 0.0 and (tout - mem.tn) * mem.h < 0.0:
            mem.error('state', 'advance', "h0 and tout - t0 have opposite signs.")
            return ILL_INPUT
        if mem.h == 0.0 and not self.stepper.initial_step(tout):
            mem.error('state', 'advance', "tout too close to t0 to start integration.")
            return ILL_INPUT

        rh = abs(mem.h) * mem.hmax_inv
        if rh > 1.0:
            mem.h /= rh
        if abs(mem.h) < mem.hmin:
            mem.h *= mem.hmin / abs(mem.h)

        if mem.istop and (mem.tn + mem.h - mem.tstop) * mem.h > 0.0:
            mem.h = (mem.tstop - mem.tn) * (1.0 - 4.0 * UROUND)

        mem.hscale = mem.h
        mem.h0u = mem.h
        mem.next_h = mem.h
        for hist in mem.histories():
            hist[1] = hist[1] * mem.h
        mem.log('cvode', f"initial step h0 = {mem.h:.3e}")
        return SUCCESS

    def _check_early_return(self, tout, one_step):
        """Returns ``(flag, tret, y)`` when no step is needed, else None."""
        mem = self.mem
        if not one_step and (mem.tn - tout) * mem.h >= 0.0:
            mem.tretlast = tout
            flag, y = self.get_dky(tout, 0)
            if flag != OKAY:
                mem.error('state', 'advance', f"trouble interpolating at tout = {tout:g} "
                                              "(tout too far back in the direction of integration).")
                return ILL_INPUT, mem.tn, mem.zn[0].copy()
            return SUCCESS, float(tout), y

        if one_step and (mem.tn - mem.tretlast) * mem.h > 0.0:
            mem.tretlast = mem.tn
            return SUCCESS, mem.tn, mem.zn[0].copy()

        if mem.istop:
            if (mem.tn - mem.tstop) * mem.h > 0.0:
                mem.error('state', 'advance', f"tstop = {mem.tstop:g} is behind current t = {mem.tn:g}.")
                return ILL_INPUT, mem.tn, mem.zn[0].copy()
            troundoff = FUZZ_FACTOR * UROUND * (abs(mem.tn) + abs(mem.h))
            if abs(mem.tn - mem.tstop) <= troundoff:
                flag, y = self.get_dky(mem.tstop, 0)
                if flag != OKAY:
                    mem.error('state', 'advance', f"trouble interpolating at tstop = {mem.tstop:g}.")
                    return ILL_INPUT, mem.tn, mem.zn[0].copy()
                mem.tretlast = mem.tstop
                return TSTOP_RETURN, mem.tstop, y
            if (mem.tn + mem.hprime - mem.tstop) * mem.h > 0.0:
                mem.hprime = (mem.tstop - mem.tn) * (1.0 - 4.0 * UROUND)
                mem.eta = mem.hprime / mem.h
        return None

    def _set_weights(self):
        mem = self.mem
        ok, mem.ewt = ewt_set(mem.zn[0], mem.rtol, mem.atol, out=mem.ewt)
        if not ok:
            return False
        quad = mem.quad
        if quad is not None and quad.errconQ:
            if not quad.ewt_set(quad.znQ[0]):
                mem.last_flag_source = 'quadrature'
                return False
        sens = mem.sens
        if sens is not None:
            if not sens.ewt_set(mem.rtol, mem.atol, sens.znS[0]):
                mem.last_flag_source = 'sensitivity'
                return False
        return True

    def _solution_norm(self):
        mem = self.mem
        nrm = wrms_norm(mem.zn[0], mem.ewt)
        quad = mem.quad
        if quad is not None and quad.errconQ:
            nrm = max(nrm, quad.norm(quad.znQ[0]))
        sens = mem.sens
        if sens is not None and sens.errconS:
            nrm = max(nrm, sens.norm(sens.znS[0]))
        return nrm

    def _handle_failure(self, kflag):
        mem = self.mem
        t, h = mem.tn, mem.h
        source = mem.last_flag_source or 'state'
        if kflag == REP_ERR_FAIL:
            mem.error(source, 'advance', f"at t = {t:g} and h = {h:g}, the error test failed "
                                         "repeatedly or with |h| = hmin.")
            return ERR_FAILURE
        if kflag == REP_CONV_FAIL:
            mem.error(source, 'advance', f"at t = {t:g} and h = {h:g}, the corrector convergence "
                                         "test failed repeatedly or with |h| = hmin.")
            return CONV_FAILURE
        if kflag == SETUP_FAILED:
            mem.error('linear_solver', 'advance', f"at t = {t:g}, the setup routine failed "
                                                  "in an unrecoverable manner.")
            return SETUP_FAILURE
        if kflag == SOLVE_FAILED:
            mem.error('linear_solver', 'advance', f"at t = {t:g}, the solve routine failed "
                                                  "in an unrecoverable manner.")
            return SOLVE_FAILURE
        raise RuntimeError(f"unexpected step outcome {kflag}")

    # ------------------------------------------------------------------
    # Dense output
    # ------------------------------------------------------------------
    def _check_dky_args(self, t, k):
        mem = self.mem
        if not mem.malloc_done:
            return NO_MALLOC
        if k < 0 or k > mem.q:
            mem.error('state', 'get_dky', f"illegal value for k = {k}.")
            return BAD_K
        tfuzz = FUZZ_FACTOR * UROUND * (abs(mem.tn) + abs(mem.hu))
        if mem.hu < 0.0:
            tfuzz = -tfuzz
        tp = mem.tn - mem.hu - tfuzz
        tn1 = mem.tn + tfuzz
        if (t - tp) * (t - tn1) > 0.0:
            mem.error('state', 'get_dky', f"illegal value for t = {t:g}; t not in "
                                          f"[{mem.tn - mem.hu:g}, {mem.tn:g}].")
            return BAD_T
        return OKAY

    def get_dky(self, t, k=0):
        """k-th derivative of the interpolating polynomial at ``t``.

        ``t`` must lie in the last step ``[tn - hu, tn]`` (with a small
        roundoff allowance) and ``0 <= k <= q``. Returns ``(flag, dky)``.
        """
        mem = self.mem
        flag = self._check_dky_args(t, k)
        if flag != OKAY:
            return flag, None
        return OKAY, mem.zn.dky(t, k, mem.tn, mem.h)

    def get_quad(self, t):
        return self.get_quad_dky(t, 0)

    def get_quad_dky(self, t, k=0):
        mem = self.mem
        if mem.quad is None:
            return NO_QUAD, None
        flag = self._check_dky_args(t, k)
        if flag != OKAY:
            return flag, None
        return OKAY, mem.quad.znQ.dky(t, k, mem.tn, mem.h)

    def get_sens(self, t):
        return self.get_sens_dky_all(t, 0)

    def get_sens1(self, t, is_):
        return self.get_sens_dky(t, 0, is_)

    def get_sens_dky_all(self, t, k=0):
        mem = self.mem
        if mem.sens is None:
            return NO_SENS, None
        flag = self._check_dky_args(t, k)
        if flag != OKAY:
            return flag, None
        return OKAY, mem.sens.znS.dky(t, k, mem.tn, mem.h)

    def get_sens_dky(self, t, k, is_):
        """k-th derivative of sensitivity ``is_`` at ``t``."""
        mem = self.mem
        if mem.sens is None:
            return NO_SENS, None
        if is_ < 0 or is_ >= mem.sens.ns:
            mem.error('sensitivity', 'get_sens_dky', f"illegal value for is = {is_}.")
            return BAD_IS, None
        flag, dkyS = self.get_sens_dky_all(t, k)
        if flag != OKAY:
            return flag, None
        return OKAY, dkyS[is_]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    def get_num_steps(self):
        return self.mem.nst

    def get_num_rhs_evals(self):
        return self.mem.nfe

    def get_num_lin_solv_setups(self):
        return self.mem.nsetups

    def get_num_err_test_fails(self):
        return self.mem.netf

    def get_last_order(self):
        return self.mem.qu

    def get_current_order(self):
        return self.mem.next_q

    def get_num_stab_lim_order_reds(self):
        return self.mem.nor

    def get_actual_init_step(self):
        return self.mem.h0u

    def get_last_step(self):
        return self.mem.hu

    def get_current_step(self):
        return self.mem.next_h

    def get_current_time(self):
        return self.mem.tn

    def get_tol_scale_factor(self):
        return self.mem.tolsf

    def get_err_weights(self):
        return self.mem.ewt.copy()

    def get_est_local_errors(self):
        return self.mem.est_local_err.copy()

    def get_num_nonlin_solv_iters(self):
        return self.mem.nni

    def get_num_nonlin_solv_conv_fails(self):
        return self.mem.ncfn

    def get_nonlin_solv_stats(self):
        return self.mem.nni, self.mem.ncfn

    def get_integrator_stats(self):
        mem = self.mem
        return {
            'nsteps': mem.nst,
            'nfevals': mem.nfe,
            'nlinsetups': mem.nsetups,
            'netfails': mem.netf,
            'qlast': mem.qu,
            'qcur': mem.next_q,
            'hinused': mem.h0u,
            'hlast': mem.hu,
            'hcur': mem.next_h,
            'tcur': mem.tn,
        }

    def get_lin_solv_stats(self):
        mem = self.mem
        if mem.lsolver is None:
            return {}
        return mem.lsolver.get_stats()

    def get_work_space(self):
        """Approximate ``(lenrw, leniw)``: real and integer work space."""
        mem = self.mem
        n = mem.n
        lenrw = 58 + (mem.qmax + 5) * n
        leniw = 40
        if mem.quad is not None:
            lenrw += (mem.qmax + 5) * mem.quad.nq
        if mem.sens is not None:
            lenrw += (mem.qmax + 6) * mem.sens.ns * n
            leniw += 3 * mem.sens.ns
        return lenrw, leniw

    # quadratures
    def get_quad_num_rhs_evals(self):
        return self._require_quad('get_quad_num_rhs_evals').nfQe

    def get_quad_num_err_test_fails(self):
        return self._require_quad('get_quad_num_err_test_fails').netfQ

    def get_quad_err_weights(self):
        return self._require_quad('get_quad_err_weights').ewtQ.copy()

    def get_quad_stats(self):
        quad = self._require_quad('get_quad_stats')
        return quad.nfQe, quad.netfQ

    # sensitivities
    def get_sens_num_rhs_evals(self):
        return self._require_sens('get_sens_num_rhs_evals').nfSe

    def get_num_rhs_evals_sens(self):
        """Calls to ``f`` made by the sensitivity difference quotients."""
        return self._require_sens('get_num_rhs_evals_sens').nfeS

    def get_sens_num_err_test_fails(self):
        return self._require_sens('get_sens_num_err_test_fails').netfS

    def get_sens_num_lin_solv_setups(self):
        return self._require_sens('get_sens_num_lin_solv_setups').nsetupsS

    def get_sens_err_weights(self):
        return self._require_sens('get_sens_err_weights').ewtS.copy()

    def get_sens_stats(self):
        sens = self._require_sens('get_sens_stats')
        return {
            'nfSevals': sens.nfSe,
            'nfevalsS': sens.nfeS,
            'nSetfails': sens.netfS,
            'nlinsetupsS': sens.nsetupsS,
        }

    def get_sens_num_nonlin_solv_iters(self):
        return self._require_sens('get_sens_num_nonlin_solv_iters').nniS

    def get_sens_num_nonlin_solv_conv_fails(self):
        return self._require_sens('get_sens_num_nonlin_solv_conv_fails').ncfnS

    def get_sens_nonlin_solv_stats(self):
        sens = self._require_sens('get_sens_nonlin_solv_stats')
        return sens.nniS, sens.ncfnS

    def get_stgr_sens_nonlin_solv_stats(self):
        """Per-direction ``(nniS1, ncfnS1)`` arrays; staggered1 mode only."""
        sens = self._require_sens('get_stgr_sens_nonlin_solv_stats')
        if sens.stgr1 is None:
            raise ValueError("Per-direction statistics exist only in 'staggered1' mode.")
        return sens.stgr1.nniS1.copy(), sens.stgr1.ncfnS1.copy()

    # ------------------------------------------------------------------
    def free(self):
        """Release the linear solver and every attached sub-problem."""
        mem = self.mem
        if mem.lsolver is not None:
            mem.lsolver.free(mem)
            mem.lsolver = None
        mem.quad = None
        mem.sens = None
        mem.malloc_done = False

    def __repr__(self):
        mem = self.mem
        return (f"MultistepIntegrator(lmm='{mem.lmm}', iter='{mem.iter}', "
                f"n={mem.n}, t={getattr(mem, 'tn', math.nan):g})")
