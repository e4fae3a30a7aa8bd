import numpy as np
import math

from .constants import (
    STAGGERED, STAGGERED1, UROUND,
    SOLVED, SETUP_FAIL_UNREC, SOLVE_FAIL_UNREC,
    FIRST_CALL, PREV_CONV_FAIL, PREV_ERR_FAIL,
    SUCCESS_STEP, REP_ERR_FAIL, REP_CONV_FAIL, SETUP_FAILED, SOLVE_FAILED,
    DO_ERROR_TEST, PREDICT_AGAIN,
    HLB_FACTOR, HUB_FACTOR, H_BIAS, MAX_ITERS,
    THRESH, ETAMX2, ETAMX3, ETAMXF, ETAMIN, ETACF, ADDON,
    BIAS1, BIAS2, BIAS3, ONEPSM, SMALL_NST, MXNEF1, SMALL_NEF, LONG_WAIT,
)
from .nonlinear_solvers import CorrectorSolver
from .stability import bdf_stab
from .tolerances import wrms_norm


class AdaptiveStepping:
    """
    Variable-step, variable-order controller for the Nordsieck multistep
    formulas.

    One call to :meth:`step` takes one successful internal step (or reports
    why it could not):

    1. apply the step/order change chosen at the end of the previous step;
    2. predict ``zn`` (Pascal summation) and compute the method coefficients;
    3. run the corrector; a recoverable failure restores ``zn``, shrinks
       ``h`` by ``ETACF`` and predicts again;
    4. local error test ``dsm = tq[2] * acnrm <= 1`` for the state, then the
       quadratures and the staggered sensitivities; a failure restores
       ``zn`` and retries with a smaller step (and, after repeated failures,
       a lower order);
    5. accept: ``zn[j] += l[j] * acor``, shift the step history, and choose
       ``(hprime, qprime)`` for the next step from the estimates at orders
       ``q-1``, ``q`` and ``q+1``.

    The controller works on the shared :class:`~solve_msivp.state.IntegratorState`
    ``mem`` and returns one of the internal ``kflag`` values
    (``SUCCESS_STEP``, ``REP_ERR_FAIL``, ``REP_CONV_FAIL``, ``SETUP_FAILED``,
    ``SOLVE_FAILED``).

    Parameters
    ----------
    mem : IntegratorState
        Integration state.
    corrector : CorrectorSolver, optional
        Nonlinear corrector; a default one is built if omitted.
    verbose : bool
        Print accept/reject diagnostics with the ``[cvode]`` tag.
    record_attempts : bool
        Keep a log of every attempted step (accepted or not).
    """

    def __init__(self, mem, corrector=None, verbose: bool = False, record_attempts: bool = False):
        self.mem = mem
        self.corrector = corrector if corrector is not None else CorrectorSolver(verbose=verbose)
        self.verbose = bool(verbose)
        self.record_attempts = bool(record_attempts)

        # per-step failure counters
        self.ncf = 0
        self.nef = 0
        self.ncfS = 0
        self.nefS = 0
        self.nefQ = 0

        self._attempt_t = None
        self._attempt_h = None
        self._attempt_q = None
        self._attempt_accept = None
        self._attempt_error = None
        self._attempt_status = None
        self.reset_attempt_log()

    # ------------------------------------------------------------------
    # Attempt logging helpers (optional)
    # ------------------------------------------------------------------
    def reset_attempt_log(self):
        """Clear stored attempt information if logging is enabled."""
        if not self.record_attempts:
            self._attempt_t = None
            self._attempt_h = None
            self._attempt_q = None
            self._attempt_accept = None
            self._attempt_error = None
            self._attempt_status = None
            return

        self._attempt_t = []
        self._attempt_h = []
        self._attempt_q = []
        self._attempt_accept = []
        self._attempt_error = []
        self._attempt_status = []

    def _record(self, accepted, dsm, status):
        mem = self.mem
        if self.verbose:
            word = "accept" if accepted else "reject"
            print(f"[cvode] {word} t={mem.tn:.6g} h={mem.h:.3e} q={mem.q} "
                  f"dsm={dsm:.3e} ({status})")
        if not self.record_attempts:
            return
        if self._attempt_t is None:
            self.reset_attempt_log()
        self._attempt_t.append(float(mem.tn))
        self._attempt_h.append(float(mem.h))
        self._attempt_q.append(int(mem.q))
        self._attempt_accept.append(bool(accepted))
        self._attempt_error.append(float(dsm))
        self._attempt_status.append(status)

    def get_attempt_log(self):
        """Return recorded attempt arrays or None if logging disabled."""
        if not self.record_attempts or self._attempt_t is None:
            return None

        return {
            "t": np.asarray(self._attempt_t, dtype=float),
            "dt": np.asarray(self._attempt_h, dtype=float),
            "order": np.asarray(self._attempt_q, dtype=int),
            "accepted": np.asarray(self._attempt_accept, dtype=bool),
            "error": np.asarray(self._attempt_error, dtype=float),
            "status": np.asarray(self._attempt_status, dtype=object),
        }

    # ------------------------------------------------------------------
    # Initial step size
    # ------------------------------------------------------------------
    def initial_step(self, tout) -> bool:
        """Estimate the first step size and store it in ``mem.h``.

        ``h0`` is chosen so that the local error of a step of size ``h0``,
        estimated from a difference-quotient second derivative, is about one
        half in the weighted norm. At most four iterations are done, the
        result is biased by ``H_BIAS`` and confined to ``[hlb, hub]`` where
        ``hlb`` is a roundoff-based lower bound and ``hub`` an upper bound
        from the initial data and ``|tout - t0|``.

        Returns False when ``tout`` is too close to ``t0`` to start.
        """
        mem = self.mem
        tdiff = tout - mem.tn
        if tdiff == 0.0:
            return False

        sign = 1.0 if tdiff > 0.0 else -1.0
        tdist = abs(tdiff)
        tround = UROUND * max(abs(mem.tn), abs(tout))
        if tdist < 2.0 * tround:
            return False

        hlb = HLB_FACTOR * tround
        hub = self._upper_bound_h0(tdist)
        hg = math.sqrt(hlb * hub)

        if hub < hlb:
            mem.h = sign * hg
            return True

        count = 0
        while True:
            yddnrm = self._ydd_norm(sign * hg)
            if yddnrm * hub * hub > 2.0:
                hnew = math.sqrt(2.0 / yddnrm)
            else:
                hnew = math.sqrt(hg * hub)
            count += 1
            if count >= MAX_ITERS:
                break
            hrat = hnew / hg
            if 0.5 < hrat < 2.0:
                break
            if count >= 2 and hrat > 2.0:
                hnew = hg
                break
            hg = hnew

        h0 = H_BIAS * hnew
        h0 = min(max(h0, hlb), hub)
        mem.h = sign * h0
        return True

    def _upper_bound_h0(self, tdist):
        mem = self.mem
        hub_inv = _bound_ratio(mem.zn[0], mem.zn[1], mem.atol)
        quad = mem.quad
        if quad is not None and quad.errconQ:
            hub_inv = max(hub_inv, _bound_ratio(quad.znQ[0], quad.znQ[1], quad.atolQ))
        sens = mem.sens
        if sens is not None and sens.errconS:
            _, atolS = sens.tolerances(mem.rtol, mem.atol)
            for k in range(sens.ns):
                hub_inv = max(hub_inv, _bound_ratio(sens.znS[0][k], sens.znS[1][k], atolS[k]))

        hub = HUB_FACTOR * tdist
        if hub * hub_inv > 1.0:
            hub = 1.0 / hub_inv
        return hub

    def _ydd_norm(self, hg):
        """WRMS norm of a difference-quotient estimate of ``y''`` at ``t0``."""
        mem = self.mem
        t1 = mem.tn + hg
        y = mem.zn[0] + hg * mem.zn[1]
        fy = np.asarray(mem.call_f(t1, y), dtype=float)
        mem.nfe += 1
        ydd = (fy - mem.zn[1]) / hg
        nrm = wrms_norm(ydd, mem.ewt)

        quad = mem.quad
        if quad is not None and quad.errconQ:
            fq = quad.rhs(mem, t1, y)
            nrm = max(nrm, quad.norm((fq - quad.znQ[1]) / hg))

        sens = mem.sens
        if sens is not None and sens.errconS:
            yS = sens.znS[0] + hg * sens.znS[1]
            fS = np.zeros_like(yS)
            sens.rhs(mem, t1, y, fy, yS, fS)
            nrm = max(nrm, sens.norm((fS - sens.znS[1]) / hg))
        return nrm

    # ------------------------------------------------------------------
    # Nordsieck bookkeeping shared by all histories
    # ------------------------------------------------------------------
    def _predict(self):
        mem = self.mem
        mem.tn += mem.h
        if mem.istop and (mem.tn - mem.tstop) * mem.h > 0.0:
            mem.tn = mem.tstop
        for zn in mem.histories():
            zn.predict()

    def _restore(self, saved_t):
        mem = self.mem
        mem.tn = saved_t
        for zn in mem.histories():
            zn.restore()

    def _rescale(self):
        mem = self.mem
        for zn in mem.histories():
            zn.rescale(mem.eta)
        mem.h = mem.hscale * mem.eta
        mem.next_h = mem.h
        mem.hscale = mem.h
        mem.nscon = 0

    def _adjust_order(self, deltaq):
        mem = self.mem
        mem.method.adjust_order(deltaq, mem.q, mem.tau, mem.hscale, mem.histories())

    def _adjust_params(self):
        mem = self.mem
        if mem.qprime != mem.q:
            self._adjust_order(mem.qprime - mem.q)
            mem.q = mem.qprime
            mem.L = mem.q + 1
            mem.qwait = mem.L
            mem.set_history_order(mem.q)
        self._rescale()

    def _set_coefficients(self):
        mem = self.mem
        mem.method.set_coefficients(mem.q, mem.qwait, mem.h, mem.tau, mem.nlscoef, mem.l, mem.tq)
        mem.rl1 = 1.0 / mem.l[1]
        mem.gamma = mem.h * mem.rl1
        if mem.nst == 0:
            mem.gammap = mem.gamma
        mem.gamrat = mem.gamma / mem.gammap if mem.nst > 0 else 1.0

    # ------------------------------------------------------------------
    # One internal step
    # ------------------------------------------------------------------
    def step(self):
        mem = self.mem
        quad = mem.quad
        sens = mem.sens
        saved_t = mem.tn
        self.ncf = self.nef = 0
        self.ncfS = self.nefS = self.nefQ = 0
        if sens is not None and sens.stgr1 is not None:
            sens.stgr1.ncfS1[:] = 0
        nflag = FIRST_CALL

        if mem.nst > 0 and mem.hprime != mem.h:
            self._adjust_params()

        while True:
            self._predict()
            self._set_coefficients()

            nflag = self.corrector.solve(mem, nflag)
            kflag, nflag = self._handle_nflag(nflag, saved_t, 'state')
            if kflag == PREDICT_AGAIN:
                continue
            if kflag != DO_ERROR_TEST:
                return kflag

            passed, dsm, kflag = self._do_error_test(mem.acnrm, 'state', saved_t)
            if not passed:
                nflag = PREV_ERR_FAIL
                if kflag == REP_ERR_FAIL:
                    return kflag
                continue

            if quad is not None:
                acnrmQ = quad.correct(mem, mem.y)
                if quad.errconQ:
                    passed, dsmQ, kflag = self._do_error_test(acnrmQ, 'quadrature', saved_t)
                    if not passed:
                        nflag = PREV_ERR_FAIL
                        if kflag == REP_ERR_FAIL:
                            return kflag
                        continue
                    dsm = max(dsm, dsmQ)

            if sens is not None and sens.ism in (STAGGERED, STAGGERED1):
                # f at the converged y is needed by the sensitivity right-hand side.
                mem.ftemp = np.asarray(mem.call_f(mem.tn, mem.y), dtype=float)
                mem.nfe += 1

                if sens.ism == STAGGERED:
                    nflag = self.corrector.solve_sens_staggered(mem, nflag)
                    kflag, nflag = self._handle_nflag(nflag, saved_t, 'sensitivity')
                else:
                    kflag = DO_ERROR_TEST
                    for k in range(sens.ns):
                        nflag = self.corrector.solve_sens_staggered1(mem, nflag, k)
                        kflag, nflag = self._handle_nflag(nflag, saved_t, 'sensitivity', k)
                        if kflag != DO_ERROR_TEST:
                            break
                if kflag == PREDICT_AGAIN:
                    continue
                if kflag != DO_ERROR_TEST:
                    return kflag

                if sens.errconS:
                    sens.acnrmS = sens.norm(sens.acorS)
                    passed, dsmS, kflag = self._do_error_test(sens.acnrmS, 'sensitivity', saved_t)
                    if not passed:
                        nflag = PREV_ERR_FAIL
                        if kflag == REP_ERR_FAIL:
                            return kflag
                        continue
                    dsm = max(dsm, dsmS)

            break

        self._record(True, dsm, 'accept')
        self._complete_step()
        self._prepare_next_step(dsm)

        if mem.sldeton:
            bdf_stab(mem)

        mem.etamax = ETAMX2 if mem.nst <= SMALL_NST else ETAMX3

        # acor rescaled to the local error estimate
        mem.est_local_err = mem.tq[2] * mem.acor
        return SUCCESS_STEP

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------
    def _handle_nflag(self, nflag, saved_t, source, k=None):
        """Route the corrector outcome.

        Returns ``(kflag, nflag)`` with ``kflag`` one of ``DO_ERROR_TEST``,
        ``PREDICT_AGAIN``, ``REP_CONV_FAIL``, ``SETUP_FAILED``,
        ``SOLVE_FAILED``.
        """
        mem = self.mem
        if nflag == SOLVED:
            return DO_ERROR_TEST, nflag

        sens = mem.sens
        if source == 'state':
            mem.ncfn += 1
        else:
            sens.ncfnS += 1
            if k is not None and sens.stgr1 is not None:
                sens.stgr1.ncfnS1[k] += 1

        self._restore(saved_t)

        if nflag == SETUP_FAIL_UNREC:
            mem.last_flag_source = 'linear_solver'
            return SETUP_FAILED, nflag
        if nflag == SOLVE_FAIL_UNREC:
            mem.last_flag_source = 'linear_solver'
            return SOLVE_FAILED, nflag

        if source == 'state':
            self.ncf += 1
            ncf = self.ncf
        elif k is not None and sens.stgr1 is not None:
            sens.stgr1.ncfS1[k] += 1
            ncf = int(sens.stgr1.ncfS1[k])
        else:
            self.ncfS += 1
            ncf = self.ncfS

        mem.etamax = 1.0
        self._record(False, np.nan, f'{source}_conv_fail')

        if abs(mem.h) <= mem.hmin * ONEPSM or ncf == mem.maxncf:
            mem.last_flag_source = source
            return REP_CONV_FAIL, nflag

        mem.eta = max(ETACF, mem.hmin / abs(mem.h))
        self._rescale()
        return PREDICT_AGAIN, PREV_CONV_FAIL

    def _do_error_test(self, acnrm, source, saved_t):
        """Local error test for one component.

        Returns ``(passed, dsm, kflag)``; ``kflag`` is ``REP_ERR_FAIL`` when
        the failure is fatal and ``None`` otherwise.
        """
        mem = self.mem
        dsm = acnrm * mem.tq[2]
        if dsm <= 1.0:
            return True, dsm, None

        if source == 'state':
            self.nef += 1
            mem.netf += 1
            nef = self.nef
        elif source == 'quadrature':
            self.nefQ += 1
            mem.quad.netfQ += 1
            nef = self.nefQ
        else:
            self.nefS += 1
            mem.sens.netfS += 1
            nef = self.nefS

        self._restore(saved_t)
        self._record(False, dsm, f'{source}_error_test')

        if nef == mem.maxnef or abs(mem.h) <= mem.hmin * ONEPSM:
            mem.last_flag_source = source
            return False, dsm, REP_ERR_FAIL

        mem.etamax = 1.0

        if nef <= MXNEF1:
            eta = 1.0 / ((BIAS2 * dsm) ** (1.0 / mem.L) + ADDON)
            eta = max(ETAMIN, max(eta, mem.hmin / abs(mem.h)))
            if nef >= SMALL_NEF:
                eta = min(eta, ETAMXF)
            mem.eta = eta
            self._rescale()
            return False, dsm, None

        # After MXNEF1 failures force an order reduction and retry.
        if mem.q > 1:
            mem.eta = max(ETAMIN, mem.hmin / abs(mem.h))
            self._adjust_order(-1)
            mem.L = mem.q
            mem.q -= 1
            mem.qwait = mem.L
            mem.set_history_order(mem.q)
            self._rescale()
            return False, dsm, None

        # Already at order 1: restart from y and a fresh f value.
        mem.eta = max(ETAMIN, mem.hmin / abs(mem.h))
        mem.h *= mem.eta
        mem.next_h = mem.h
        mem.hscale = mem.h
        mem.qwait = LONG_WAIT
        mem.nscon = 0

        zn = mem.zn
        ftemp = np.asarray(mem.call_f(mem.tn, zn[0]), dtype=float)
        mem.nfe += 1
        zn[1] = mem.h * ftemp
        if mem.quad is not None:
            mem.quad.znQ[1] = mem.h * mem.quad.rhs(mem, mem.tn, zn[0])
        if mem.sens is not None:
            sens = mem.sens
            sens.rhs(mem, mem.tn, zn[0], ftemp, sens.znS[0], sens.tempvS)
            sens.znS[1] = mem.h * sens.tempvS
        return False, dsm, None

    # ------------------------------------------------------------------
    # Acceptance and next step/order selection
    # ------------------------------------------------------------------
    def _complete_step(self):
        mem = self.mem
        mem.nst += 1
        mem.nscon += 1
        mem.hu = mem.h
        mem.qu = mem.q

        tau = mem.tau
        for i in range(mem.q, 1, -1):
            tau[i] = tau[i - 1]
        if mem.q == 1 and mem.nst > 1:
            tau[2] = tau[1]
        tau[1] = mem.h

        mem.zn.correct(mem.acor, mem.l)
        quad = mem.quad
        sens = mem.sens
        if quad is not None:
            quad.znQ.correct(quad.acorQ, mem.l)
        if sens is not None:
            sens.znS.correct(sens.acorS, mem.l)

        mem.qwait -= 1
        if mem.qwait == 1 and mem.q != mem.qmax:
            self._save_corrections()
            mem.saved_tq5 = mem.tq[5]

    def _save_corrections(self):
        mem = self.mem
        mem.zn.save_correction(mem.acor)
        if mem.quad is not None:
            mem.quad.znQ.save_correction(mem.quad.acorQ)
        if mem.sens is not None:
            mem.sens.znS.save_correction(mem.sens.acorS)

    def _prepare_next_step(self, dsm):
        mem = self.mem
        # After a failure in this step keep h and q.
        if mem.etamax == 1.0:
            mem.qwait = max(mem.qwait, 2)
            mem.qprime = mem.q
            mem.hprime = mem.h
            mem.eta = 1.0
            return

        mem.etaq = 1.0 / ((BIAS2 * dsm) ** (1.0 / mem.L) + ADDON)

        if mem.qwait != 0:
            mem.eta = mem.etaq
            mem.qprime = mem.q
            self._set_eta()
            return

        mem.qwait = 2
        mem.etaqm1 = self._compute_etaqm1()
        mem.etaqp1 = self._compute_etaqp1()
        self._choose_eta()
        self._set_eta()

    def _set_eta(self):
        mem = self.mem
        if mem.eta < THRESH:
            mem.eta = 1.0
            mem.hprime = mem.h
        else:
            mem.eta = min(mem.eta, mem.etamax)
            mem.eta /= max(1.0, abs(mem.h) * mem.hmax_inv * mem.eta)
            mem.hprime = mem.h * mem.eta
            if mem.qprime < mem.q:
                mem.nscon = 0

    def _history_norm(self, j):
        """Norm of column ``j`` over every history taking part in error control."""
        mem = self.mem
        nrm = wrms_norm(mem.zn[j], mem.ewt)
        quad = mem.quad
        if quad is not None and quad.errconQ:
            nrm = max(nrm, quad.norm(quad.znQ[j]))
        sens = mem.sens
        if sens is not None and sens.errconS:
            nrm = max(nrm, sens.norm(sens.znS[j]))
        return nrm

    def _compute_etaqm1(self):
        mem = self.mem
        if mem.q <= 1:
            return 0.0
        ddn = self._history_norm(mem.q) * mem.tq[1]
        return 1.0 / ((BIAS1 * ddn) ** (1.0 / mem.q) + ADDON)

    def _compute_etaqp1(self):
        mem = self.mem
        if mem.q == mem.qmax or mem.saved_tq5 == 0.0:
            return 0.0
        cquot = (mem.tq[5] / mem.saved_tq5) * (mem.h / mem.tau[2]) ** mem.L
        dup = wrms_norm(mem.acor - cquot * mem.zn[mem.qmax], mem.ewt)
        quad = mem.quad
        if quad is not None and quad.errconQ:
            dup = max(dup, quad.norm(quad.acorQ - cquot * quad.znQ[mem.qmax]))
        sens = mem.sens
        if sens is not None and sens.errconS:
            dup = max(dup, sens.norm(sens.acorS - cquot * sens.znS[mem.qmax]))
        dup *= mem.tq[3]
        return 1.0 / ((BIAS3 * dup) ** (1.0 / (mem.L + 1)) + ADDON)

    def _choose_eta(self):
        mem = self.mem
        etam = max(mem.etaqm1, mem.etaq, mem.etaqp1)
        if etam < THRESH:
            mem.eta = 1.0
            mem.qprime = mem.q
            return

        if etam == mem.etaq:
            mem.eta = mem.etaq
            mem.qprime = mem.q
        elif etam == mem.etaqm1:
            mem.eta = mem.etaqm1
            mem.qprime = mem.q - 1
        else:
            mem.eta = mem.etaqp1
            mem.qprime = mem.q + 1
            if mem.is_bdf:
                # zn[qmax] carries Delta_n into the order increase.
                self._save_corrections()


def _bound_ratio(y, ydot, atol):
    """``max_i |ydot_i| / (HUB_FACTOR |y_i| + atol_i)``."""
    temp = HUB_FACTOR * np.abs(y) + atol
    with np.errstate(divide='ignore', invalid='ignore'):
        r = np.abs(ydot) / temp
    if r.size == 0:
        return 0.0
    return float(np.max(r))
