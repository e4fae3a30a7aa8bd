import numpy as np
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .constants import (
    SUCCESS, TSTOP_RETURN, NORMAL_TSTOP, ONE_STEP_TSTOP, flag_name,
)


class ODESolver:
    """Time integration driver for an ``ODESystem``.

    Without ``t_eval`` every accepted internal step is recorded; with
    ``t_eval`` the solution is interpolated at the requested times. The end
    of the interval is passed to the integrator as stop time, so ``fun`` is
    never evaluated beyond ``tf``.

    Sensitivities and quadratures, when attached to the system, are
    recorded alongside the state at the same times.
    """
    def __init__(self, system: Any, t_span: Tuple[float, float],
                 t_eval: Optional[Sequence[float]] = None):
        """
        Initialize the ODESolver.

        Parameters:
            system: The ODE system to be integrated.
            t_span: A tuple (t0, tf) specifying the start and end times.
            t_eval: Optional output times inside ``t_span``.
        """
        self.system = system
        self.t0, self.tf = (float(t_span[0]), float(t_span[1]))
        if self.tf == self.t0:
            raise ValueError("t_span must have a non-zero length.")
        if abs(system.current_t - self.t0) > 0.0:
            raise ValueError("t_span[0] must match the system's initial time.")
        direction = np.sign(self.tf - self.t0)
        if t_eval is not None:
            t_eval = np.asarray(t_eval, dtype=float)
            if t_eval.ndim != 1:
                raise ValueError("t_eval must be one-dimensional.")
            lo, hi = min(self.t0, self.tf), max(self.t0, self.tf)
            if np.any(t_eval < lo) or np.any(t_eval > hi):
                raise ValueError("Values in t_eval are not within t_span.")
            if np.any(direction * np.diff(t_eval) <= 0):
                raise ValueError("t_eval must be strictly monotone in the direction of integration.")
        self.t_eval = t_eval

        self.t_values: List[float] = []
        self.y_values: List[np.ndarray] = []
        self.h_values: List[float] = []
        self.q_values: List[int] = []
        self.sens_values: List[np.ndarray] = []
        self.quad_values: List[np.ndarray] = []

    def _record_extras(self, t):
        system = self.system
        if system.has_sensitivities:
            self.sens_values.append(np.array(system.sensitivities(t)))
        if system.has_quadratures:
            self.quad_values.append(np.array(system.quadratures(t)))

    def _record(self, t, y):
        ode = self.system.integrator
        self.t_values.append(float(t))
        self.y_values.append(np.array(y, copy=True))
        self.h_values.append(ode.get_last_step())
        self.q_values.append(ode.get_last_order())
        self._record_extras(t)

    def solve(self, return_attempts: bool = False):
        """Integrate from ``t0`` to ``tf``.

        Parameters
        ----------
        return_attempts : bool, default False
            When ``True`` and attempt logging is enabled on the system,
            include the raw attempt log as a sixth return value.

        Returns
        -------
        t_values : ndarray (m,)
            Output times: ``t0`` and every internal step, or ``t_eval``.
        y_values : ndarray (m, n)
            State history.
        h_values : ndarray (m,)
            Size of the last internal step taken before each output
            (0 for the initial point).
        q_values : ndarray (m,)
            Order of that step.
        info : dict
            ``flag`` and ``message`` of the last integrator return,
            ``success``, integrator ``stats``, and ``sens`` / ``quad`` arrays
            of shape ``(m, Ns, n)`` / ``(m, NQ)`` when attached.
        attempts : dict or None, optional
            Only returned when ``return_attempts`` is ``True``.
        """
        system = self.system
        ode = system.integrator
        ode.set_stop_time(self.tf)
        stepper = system.adaptive_stepper
        stepper.reset_attempt_log()

        if self.t_eval is None or self.t_eval[0] == self.t0:
            self.t_values.append(self.t0)
            self.y_values.append(system.current_y.copy())
            self.h_values.append(0.0)
            self.q_values.append(0)
            self._record_extras(self.t0)

        flag = SUCCESS
        if self.t_eval is None:
            while True:
                flag, t, y = system.step(self.tf, ONE_STEP_TSTOP)
                if flag < 0:
                    break
                self._record(t, y)
                if flag == TSTOP_RETURN:
                    break
        else:
            for tout in self.t_eval:
                if tout == self.t0:
                    continue
                flag, t, y = system.step(tout, NORMAL_TSTOP)
                if flag < 0:
                    break
                self._record(t, y)

        info: Dict[str, Any] = {
            'flag': flag,
            'message': flag_name(flag),
            'success': flag >= 0,
            'stats': ode.get_integrator_stats(),
            'nonlin': ode.get_nonlin_solv_stats(),
            'linear_solver': ode.get_lin_solv_stats(),
        }
        if system.has_sensitivities:
            info['sens'] = np.array(self.sens_values)
        if system.has_quadratures:
            info['quad'] = np.array(self.quad_values)

        t_arr = np.array(self.t_values)
        y_arr = np.array(self.y_values)
        h_arr = np.array(self.h_values)
        q_arr = np.array(self.q_values, dtype=int)

        if return_attempts:
            return t_arr, y_arr, h_arr, q_arr, info, stepper.get_attempt_log()
        return t_arr, y_arr, h_arr, q_arr, info
