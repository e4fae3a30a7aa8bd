import numpy as np
from typing import Any, Callable, Optional, Union

from .constants import NEWTON, SIMULTANEOUS, NORMAL, flag_name
from .integrator import MultistepIntegrator
from .linear_solvers import LinearSolver


# Recognised integrator options: key -> (setter name, cast)
_INTEGRATOR_OPTIONS = {
    'max_ord': ('set_max_ord', int),
    'max_num_steps': ('set_max_num_steps', int),
    'max_hnil_warns': ('set_max_hnil_warns', int),
    'stab_lim_det': ('set_stab_lim_det', bool),
    'init_step': ('set_init_step', float),
    'min_step': ('set_min_step', float),
    'max_step': ('set_max_step', float),
    'max_err_test_fails': ('set_max_err_test_fails', int),
    'max_nonlin_iters': ('set_max_nonlin_iters', int),
    'max_conv_fails': ('set_max_conv_fails', int),
    'nonlin_conv_coef': ('set_nonlin_conv_coef', float),
}


class ODESystem:
    """Encapsulate RHS, initial state and integrator configuration.

    The system binds a user RHS ``fun`` to a :class:`MultistepIntegrator`
    and keeps the current state for the driver. Callbacks receive
    ``user_data`` as an extra last argument only when one is given.

    Parameters
    ----------
    fun : callable
        ODE right-hand side ``fun(t, y[, user_data]) -> ndarray``.
    y0 : array_like, shape (n,)
        Initial state vector.
    t0 : float, default 0.0
        Initial time.
    method : {'bdf', 'adams'}
        Linear multistep family.
    iteration : {'newton', 'functional'}
        Corrector iteration.
    linear_solver : str | LinearSolver, default 'dense'
        Linear solver for the Newton iteration (ignored for functional
        iteration).
    linear_solver_opts : dict, optional
        Keyword arguments for the linear solver constructor.
    atol, rtol : float
        Absolute / relative tolerances. ``atol`` may be per component.
    integrator_opts : dict, optional
        Optional inputs applied through the ``set_*`` methods of the
        integrator (``max_ord``, ``max_num_steps``, ``min_step``,
        ``max_step``, ``init_step``, ``stab_lim_det``, ...). Unknown keys are
        ignored.
    user_data : object, optional
        Passed unchanged to every callback.
    verbose : bool, default False
        Emit step diagnostics.
    record_attempts : bool, default False
        Keep the log of attempted steps.
    """
    def __init__(self,
                 fun: Callable[..., np.ndarray],
                 y0: Union[np.ndarray, list],
                 t0: float = 0.0,
                 method: str = 'bdf',
                 iteration: str = NEWTON,
                 linear_solver: Union[str, LinearSolver] = 'dense',
                 linear_solver_opts: Optional[dict] = None,
                 atol: Union[float, np.ndarray] = 1e-6,
                 rtol: float = 1e-3,
                 integrator_opts: Optional[dict] = None,
                 user_data: Any = None,
                 verbose: bool = False,
                 record_attempts: bool = False):
        self.fun = fun
        self.t0 = float(t0)
        self.y0 = np.array(y0, dtype=float)
        self.current_t = self.t0
        self.current_y = self.y0.copy()
        self.atol = atol
        self.rtol = rtol
        self.verbose = verbose
        self.has_quadratures = False
        self.has_sensitivities = False

        self.integrator = MultistepIntegrator(method, iteration, verbose=verbose,
                                              record_attempts=record_attempts)
        self.integrator.init(fun, self.t0, self.y0, rtol, atol)
        if user_data is not None:
            self.integrator.set_user_data(user_data)

        if self.integrator.mem.iter == NEWTON:
            self.integrator.set_linear_solver(linear_solver, **(linear_solver_opts or {}))

        self._apply_options(integrator_opts or {})

    def _apply_options(self, opts: dict):
        for key, value in opts.items():
            if key not in _INTEGRATOR_OPTIONS or value is None:
                if self.verbose:
                    print(f"[cvode] ignoring unknown integrator option '{key}'")
                continue
            setter, cast = _INTEGRATOR_OPTIONS[key]
            getattr(self.integrator, setter)(cast(value))

    @property
    def adaptive_stepper(self):
        return self.integrator.stepper

    def add_quadrature(self, fQ: Callable[..., np.ndarray], yQ0,
                       rtolQ: Optional[float] = None, atolQ=None,
                       errcon: Optional[bool] = None, fQ_data: Any = None):
        """
        Attach quadrature variables ``yQ' = fQ(t, y)``.

        Parameters:
            fQ : callable
                Quadrature integrand.
            yQ0 : array_like
                Initial quadrature values.
            rtolQ, atolQ : optional
                Tolerances; when given, quadratures join the error test.
            errcon : bool, optional
                Force quadrature error control on or off.
            fQ_data : optional
                Data passed to ``fQ`` instead of the system's ``user_data``.
        """
        ode = self.integrator
        ode.quad_init(fQ, yQ0, rtolQ, atolQ)
        if errcon is not None:
            ode.set_quad_err_con(errcon, rtolQ, atolQ)
        if fQ_data is not None:
            ode.set_quad_data(fQ_data)
        self.has_quadratures = True

    def add_sensitivities(self, p=None, plist=None, yS0=None, method: str = SIMULTANEOUS,
                          fS=None, fS1=None, errcon: bool = True, rho: Optional[float] = None,
                          pbar=None, rtolS: Optional[float] = None, atolS=None,
                          max_nonlin_iters: Optional[int] = None, fS_data: Any = None):
        """
        Attach forward sensitivities with respect to ``p[plist]``.

        Parameters:
            p : ndarray
                Parameter array read by ``fun`` (needed for difference
                quotient sensitivity right-hand sides).
            plist : sequence of int, optional
                Parameter indices; defaults to all of ``p``.
            yS0 : array_like, shape (Ns, n), optional
                Initial sensitivities; zeros by default.
            method : {'simultaneous', 'staggered', 'staggered1'}
                Corrector coupling.
            fS, fS1 : callable, optional
                Sensitivity right-hand side (all directions / one direction).
        """
        if plist is None:
            if p is None:
                raise ValueError("Either p or plist must be given.")
            plist = list(range(np.asarray(p).size))
        ns = len(plist)
        if yS0 is None:
            yS0 = np.zeros((ns, self.y0.size))

        ode = self.integrator
        ode.sens_init(ns, method, p, plist, yS0)
        if fS is not None:
            ode.set_sens_rhs_fn(fS)
        elif fS1 is not None:
            ode.set_sens_rhs1_fn(fS1)
        if fS_data is not None:
            ode.set_sens_data(fS_data)
        ode.set_sens_err_con(errcon)
        if rho is not None:
            ode.set_sens_rho(rho)
        if pbar is not None:
            ode.set_sens_pbar(pbar)
        if rtolS is not None or atolS is not None:
            if atolS is None:
                # atol / |pbar_i| per direction
                atolS = ode.mem.sens.tolerances(self.rtol, self.atol)[1]
            ode.set_sens_tolerances(self.rtol if rtolS is None else rtolS, atolS)
        if max_nonlin_iters is not None:
            ode.set_sens_max_nonlin_iters(max_nonlin_iters)
        self.has_sensitivities = True

    def step(self, tout: float, task: str = NORMAL):
        """
        Advance the integrator towards ``tout``.

        Returns:
            A tuple ``(flag, t, y)`` as returned by
            :meth:`MultistepIntegrator.advance`; ``current_t`` and
            ``current_y`` are updated unless the call failed before any step.
        """
        flag, t, y = self.integrator.advance(tout, task)
        if y is not None:
            self.current_t = t
            self.current_y = y
        if flag < 0 and self.verbose:
            print(f"[cvode] advance returned {flag_name(flag)} at t={t:.6g}")
        return flag, t, y

    def sensitivities(self, t: float):
        flag, yS = self.integrator.get_sens(t)
        return yS

    def quadratures(self, t: float):
        flag, yQ = self.integrator.get_quad(t)
        return yQ
