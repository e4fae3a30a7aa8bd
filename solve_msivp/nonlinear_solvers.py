# nonlinear_solvers.py  (corrector iterations for one multistep step)

from __future__ import annotations

import math
import numpy as np

from .constants import (
    SIMULTANEOUS, CRDOWN, DGMAX, RDIV, MSBP,
    NO_FAILURES, FAIL_BAD_J, FAIL_OTHER,
    SOLVED, CONV_FAIL, TRY_AGAIN, SETUP_FAIL_UNREC, SOLVE_FAIL_UNREC,
    FIRST_CALL, PREV_CONV_FAIL, PREV_ERR_FAIL,
)
from .tolerances import wrms_norm


class CorrectorSolver:
    """Solve the corrector equation of the current step.

    For the current order the implicit relation is written in terms of the
    correction ``acor = y_n - zn[0]`` (``zn[0]`` being the predicted value)::

        G(acor) = rl1 * zn[1] + acor - gamma * f(tn, zn[0] + acor) = 0

    Two strategies are available, selected by ``mem.iter``:

    * ``'functional'``: fixed-point iteration
      ``acor <- rl1 * (h * f(tn, y) - zn[1])``, no Jacobian involved.
    * ``'newton'``: modified Newton with the iteration matrix
      ``M ~ I - gamma * J`` prepared and applied by the attached
      :class:`~solve_msivp.linear_solvers.LinearSolver`.

    Convergence is declared when ``del * min(1, crate) / tq[4] <= 1`` with
    ``del`` the WRMS norm of the last increment and ``crate`` the running
    convergence-rate estimate. Each solve returns one of ``SOLVED``,
    ``CONV_FAIL`` (recoverable), ``SETUP_FAIL_UNREC`` or ``SOLVE_FAIL_UNREC``.

    Sensitivities are handled here too: in ``'simultaneous'`` mode they are
    iterated together with the state by :meth:`solve`; in the staggered modes
    :meth:`solve_sens_staggered` and :meth:`solve_sens_staggered1` run after
    the state has converged.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = bool(verbose)

    # ------------------------------------------------------------------
    # State (and simultaneous sensitivity) corrector
    # ------------------------------------------------------------------
    def solve(self, mem, nflag):
        sens = mem.sens if (mem.sens is not None and mem.sens.ism == SIMULTANEOUS) else None
        if mem.is_functional:
            return self._functional(mem, sens)
        return self._newton(mem, nflag, sens)

    def _acnrm(self, mem, sens):
        acnrm = wrms_norm(mem.acor, mem.ewt)
        if sens is not None and sens.errconS:
            acnrm = max(acnrm, sens.norm(sens.acorS))
        return acnrm

    def _functional(self, mem, sens):
        mem.crate = 1.0
        m = 0
        zn = mem.zn

        ftemp = np.asarray(mem.call_f(mem.tn, zn[0]), dtype=float)
        mem.nfe += 1
        if sens is not None:
            sens.rhs(mem, mem.tn, zn[0], ftemp, sens.znS[0], sens.tempvS)
            sens.acorS[:] = 0.0
        mem.acor[:] = 0.0

        delp = 0.0
        while True:
            mem.nni += 1
            # Correct y directly from the last f value
            tempv = mem.rl1 * (mem.h * ftemp - zn[1])
            mem.y = zn[0] + tempv
            dl = wrms_norm(tempv - mem.acor, mem.ewt)
            mem.acor = tempv

            if sens is not None:
                tempvS = mem.rl1 * (mem.h * sens.tempvS - sens.znS[1])
                sens.yS = sens.znS[0] + tempvS
                dl = max(dl, sens.norm(tempvS - sens.acorS))
                sens.acorS = tempvS

            if not math.isfinite(dl):
                mem.log('nls', f"non-finite correction at t={mem.tn:.6g}")
                return CONV_FAIL

            if m > 0:
                mem.crate = max(CRDOWN * mem.crate, dl / delp)
            dcon = dl * min(1.0, mem.crate) / mem.tq[4]
            if dcon <= 1.0:
                mem.acnrm = self._acnrm(mem, sens)
                mem.mnewt = m
                return SOLVED

            m += 1
            if m == mem.maxcor or (m >= 2 and dl > RDIV * delp):
                mem.log('nls', f"functional iteration failed at t={mem.tn:.6g} "
                               f"(m={m}, del={dl:.3e})")
                return CONV_FAIL

            delp = dl
            ftemp = np.asarray(mem.call_f(mem.tn, mem.y), dtype=float)
            mem.nfe += 1
            if sens is not None:
                sens.rhs(mem, mem.tn, mem.y, ftemp, sens.yS, sens.tempvS)

    def _newton(self, mem, nflag, sens):
        zn = mem.zn
        convfail = NO_FAILURES if nflag in (FIRST_CALL, PREV_ERR_FAIL) else FAIL_OTHER

        if mem.setup_non_null:
            call_setup = (nflag in (PREV_CONV_FAIL, PREV_ERR_FAIL)
                          or mem.nst == 0
                          or mem.nst >= mem.nstlp + MSBP
                          or abs(mem.gamrat - 1.0) > DGMAX)
            if mem.force_setup:
                call_setup = True
                convfail = FAIL_OTHER
        else:
            mem.crate = 1.0
            call_setup = False

        while True:
            mem.ftemp = np.asarray(mem.call_f(mem.tn, zn[0]), dtype=float)
            mem.nfe += 1
            if sens is not None:
                sens.rhs(mem, mem.tn, zn[0], mem.ftemp, sens.znS[0], sens.ftempS)

            if call_setup:
                ier, jcur = mem.lsolver.setup(mem, convfail, zn[0], mem.ftemp)
                mem.jcur = bool(jcur)
                mem.nsetups += 1
                call_setup = False
                mem.force_setup = False
                mem.gamrat = mem.crate = 1.0
                mem.gammap = mem.gamma
                mem.nstlp = mem.nst
                if sens is not None:
                    sens.crateS = 1.0
                if ier < 0:
                    mem.last_flag_source = 'linear_solver'
                    return SETUP_FAIL_UNREC
                if ier > 0:
                    return CONV_FAIL

            mem.acor[:] = 0.0
            mem.y = zn[0].copy()
            if sens is not None:
                sens.acorS[:] = 0.0
                sens.yS = sens.znS[0].copy()

            ier = self._newton_iteration(mem, sens)
            if ier != TRY_AGAIN:
                return ier

            # Stale Jacobian data: set up again and retry once more.
            mem.log('nls', f"retrying with fresh Jacobian at t={mem.tn:.6g}")
            call_setup = True
            convfail = FAIL_BAD_J

    def _recoverable(self, mem):
        if not mem.jcur and mem.setup_non_null:
            return TRY_AGAIN
        return CONV_FAIL

    def _newton_iteration(self, mem, sens):
        zn = mem.zn
        m = 0
        mem.mnewt = 0
        delp = 0.0
        while True:
            b = mem.gamma * mem.ftemp - (mem.rl1 * zn[1] + mem.acor)
            ret, b = mem.lsolver.solve(mem, b, mem.ewt, mem.y, mem.ftemp)
            mem.nni += 1
            if ret < 0:
                mem.last_flag_source = 'linear_solver'
                return SOLVE_FAIL_UNREC
            if ret > 0:
                return self._recoverable(mem)

            if sens is not None:
                bS = mem.gamma * sens.ftempS - (mem.rl1 * sens.znS[1] + sens.acorS)
                for k in range(sens.ns):
                    ret, bS[k] = mem.lsolver.solve(mem, bS[k], sens.ewtS[k], mem.y, mem.ftemp)
                    if ret < 0:
                        mem.last_flag_source = 'linear_solver'
                        return SOLVE_FAIL_UNREC
                    if ret > 0:
                        return self._recoverable(mem)

            dl = wrms_norm(b, mem.ewt)
            mem.acor = mem.acor + b
            mem.y = zn[0] + mem.acor
            if sens is not None:
                dl = max(dl, sens.norm(bS))
                sens.acorS = sens.acorS + bS
                sens.yS = sens.znS[0] + sens.acorS

            if not math.isfinite(dl):
                mem.log('nls', f"non-finite Newton update at t={mem.tn:.6g}")
                return CONV_FAIL

            if m > 0:
                mem.crate = max(CRDOWN * mem.crate, dl / delp)
            dcon = dl * min(1.0, mem.crate) / mem.tq[4]
            if dcon <= 1.0:
                mem.acnrm = self._acnrm(mem, sens)
                mem.jcur = False
                return SOLVED

            m += 1
            mem.mnewt = m
            if m == mem.maxcor or (m >= 2 and dl > RDIV * delp):
                mem.log('nls', f"Newton iteration failed at t={mem.tn:.6g} "
                               f"(m={m}, del={dl:.3e}, crate={mem.crate:.3e})")
                return self._recoverable(mem)

            delp = dl
            mem.ftemp = np.asarray(mem.call_f(mem.tn, mem.y), dtype=float)
            mem.nfe += 1
            if sens is not None:
                sens.rhs(mem, mem.tn, mem.y, mem.ftemp, sens.yS, sens.ftempS)

    # ------------------------------------------------------------------
    # Staggered sensitivity correctors
    # ------------------------------------------------------------------
    def solve_sens_staggered(self, mem, nflag):
        """All sensitivity directions together, with the converged state fixed."""
        sens = mem.sens
        dirs = list(range(sens.ns))
        if mem.is_functional:
            ier = self._stgr_functional(mem, sens, dirs)
        else:
            ier = self._stgr_newton(mem, sens, dirs, nflag)
        if ier == SOLVED and sens.errconS:
            sens.acnrmS = sens.norm(sens.acorS)
        return ier

    def solve_sens_staggered1(self, mem, nflag, k):
        """Sensitivity direction ``k`` alone, with the converged state fixed."""
        sens = mem.sens
        if mem.is_functional:
            return self._stgr_functional(mem, sens, [k])
        return self._stgr_newton(mem, sens, [k], nflag)

    @staticmethod
    def _sens_norm(sens, xS, dirs):
        return max(sens.norm1(k, xS[k]) for k in dirs)

    @staticmethod
    def _count_sens_iter(sens, dirs):
        sens.nniS += 1
        if sens.stgr1 is not None and len(dirs) == 1:
            sens.stgr1.nniS1[dirs[0]] += 1

    def _eval_sens_rhs(self, mem, sens, yS, out, dirs):
        if len(dirs) == sens.ns:
            sens.rhs(mem, mem.tn, mem.y, mem.ftemp, yS, out)
        else:
            for k in dirs:
                sens.rhs1(mem, mem.tn, mem.y, mem.ftemp, k, yS[k], out)

    def _stgr_functional(self, mem, sens, dirs):
        sens.crateS = 1.0
        m = 0
        znS = sens.znS

        for k in dirs:
            sens.yS[k] = znS[0][k]
            sens.acorS[k] = 0.0
        self._eval_sens_rhs(mem, sens, sens.yS, sens.tempvS, dirs)

        delp = 0.0
        while True:
            self._count_sens_iter(sens, dirs)
            dl = 0.0
            for k in dirs:
                tempv = mem.rl1 * (mem.h * sens.tempvS[k] - znS[1][k])
                sens.yS[k] = znS[0][k] + tempv
                dl = max(dl, sens.norm1(k, tempv - sens.acorS[k]))
                sens.acorS[k] = tempv

            if not math.isfinite(dl):
                return CONV_FAIL
            if m > 0:
                sens.crateS = max(CRDOWN * sens.crateS, dl / delp)
            dcon = dl * min(1.0, sens.crateS) / mem.tq[4]
            if dcon <= 1.0:
                return SOLVED

            m += 1
            if m == sens.maxcorS or (m >= 2 and dl > RDIV * delp):
                mem.log('sens', f"functional sensitivity iteration failed at t={mem.tn:.6g} "
                                f"(directions {dirs})")
                return CONV_FAIL
            delp = dl
            self._eval_sens_rhs(mem, sens, sens.yS, sens.tempvS, dirs)

    def _stgr_newton(self, mem, sens, dirs, nflag):
        convfail = NO_FAILURES if nflag in (FIRST_CALL, PREV_ERR_FAIL) else FAIL_OTHER
        while True:
            for k in dirs:
                sens.acorS[k] = 0.0
                sens.yS[k] = sens.znS[0][k]
            self._eval_sens_rhs(mem, sens, sens.yS, sens.ftempS, dirs)

            ier = self._stgr_newton_iteration(mem, sens, dirs)
            if ier != TRY_AGAIN:
                return ier

            # Jacobian data looked stale: set up at the converged state.
            convfail = FAIL_BAD_J
            ier, jcur = mem.lsolver.setup(mem, convfail, mem.y, mem.ftemp)
            mem.jcur = bool(jcur)
            mem.nsetups += 1
            sens.nsetupsS += 1
            mem.gamrat = mem.crate = 1.0
            sens.crateS = 1.0
            mem.gammap = mem.gamma
            mem.nstlp = mem.nst
            if ier < 0:
                mem.last_flag_source = 'linear_solver'
                return SETUP_FAIL_UNREC
            if ier > 0:
                return CONV_FAIL

    def _stgr_newton_iteration(self, mem, sens, dirs):
        m = 0
        delp = 0.0
        znS = sens.znS
        while True:
            self._count_sens_iter(sens, dirs)
            bS = {}
            for k in dirs:
                b = mem.gamma * sens.ftempS[k] - (mem.rl1 * znS[1][k] + sens.acorS[k])
                ret, b = mem.lsolver.solve(mem, b, sens.ewtS[k], mem.y, mem.ftemp)
                if ret < 0:
                    mem.last_flag_source = 'linear_solver'
                    return SOLVE_FAIL_UNREC
                if ret > 0:
                    return self._recoverable(mem)
                bS[k] = b

            dl = max(sens.norm1(k, bS[k]) for k in dirs)
            for k in dirs:
                sens.acorS[k] += bS[k]
                sens.yS[k] = znS[0][k] + sens.acorS[k]

            if not math.isfinite(dl):
                return CONV_FAIL
            if m > 0:
                sens.crateS = max(CRDOWN * sens.crateS, dl / delp)
            dcon = dl * min(1.0, sens.crateS) / mem.tq[4]
            if dcon <= 1.0:
                mem.jcur = False
                return SOLVED

            m += 1
            if m == sens.maxcorS or (m >= 2 and dl > RDIV * delp):
                mem.log('sens', f"Newton sensitivity iteration failed at t={mem.tn:.6g} "
                                f"(directions {dirs})")
                return self._recoverable(mem)
            delp = dl
            self._eval_sens_rhs(mem, sens, sens.yS, sens.ftempS, dirs)
