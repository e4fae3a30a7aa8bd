"""solve_msivp: variable-order, variable-step multistep IVP solver.

This package integrates initial-value problems::

    dy/dt = f(t, y),   y(t0) = y0 ,

with Adams-Moulton (orders 1..12, nonstiff) or BDF (orders 1..5, stiff)
formulas in Nordsieck form, adapting both step size and order to keep the
weighted local error below one. Two corrector iterations are available each
step:

* ``functional`` (fixed-point iteration, no Jacobian)
* ``newton`` (modified Newton with a pluggable linear solver: ``dense``,
  ``band``, ``sparse``, ``diag`` or the matrix-free ``spbcgs``)

Forward sensitivities ``dy/dp`` (simultaneous, staggered or staggered1
corrector) and pure quadratures ``yQ' = fQ(t, y)`` can be integrated along
with the state.

High-level entry point
----------------------
``solve_ivp_ms`` builds the system and the driver and returns the output
times, states and diagnostic information.

Low-level workflow
------------------
1. Create a :class:`MultistepIntegrator` with the method and iteration.
2. ``init`` it with ``f``, ``t0``, ``y0`` and tolerances.
3. Attach a linear solver (``set_linear_solver``) for Newton iteration,
   optionally quadratures (``quad_init``) and sensitivities (``sens_init``).
4. Call ``advance(tout, task)`` repeatedly and query ``get_dky``,
   ``get_sens``, ``get_quad`` and the statistics getters.

Quick start
-----------
>>> import numpy as np
>>> from solve_msivp import solve_ivp_ms
>>> def rhs(t, y):
...     return -y
>>> t, y, h, q, info = solve_ivp_ms(rhs, (0.0, 1.0), y0=np.array([1.0]), rtol=1e-6, atol=1e-9)
>>> y[-1]
array([0.36787944])  # ~ exp(-1)

See the Sphinx documentation (``docs/``) for extended examples.
"""

import numpy as np
from .constants import (
  SUCCESS, TSTOP_RETURN, NO_MALLOC, ILL_INPUT, TOO_MUCH_WORK, TOO_MUCH_ACC,
  ERR_FAILURE, CONV_FAILURE, SETUP_FAILURE, SOLVE_FAILURE,
  OKAY, BAD_K, BAD_T, BAD_IS, NO_QUAD, NO_SENS,
  flag_name,
)
from .integrator import MultistepIntegrator
from .linear_solvers import (
  LinearSolver,
  DenseLinearSolver,
  BandLinearSolver,
  SparseLinearSolver,
  DiagLinearSolver,
  SpbcgsLinearSolver,
)
from .preconditioners import BandPreconditioner
from .integrations import AdamsMethod, BDFMethod
from .ODESystem import ODESystem
from .ODESolver import ODESolver

__version__ = '0.1.0'

# Curated public API
__all__ = [
  'solve_ivp_ms',
  # Core system / driver
  'ODESystem', 'ODESolver', 'MultistepIntegrator',
  # Method families
  'AdamsMethod', 'BDFMethod',
  # Linear solvers
  'LinearSolver', 'DenseLinearSolver', 'BandLinearSolver', 'SparseLinearSolver',
  'DiagLinearSolver', 'SpbcgsLinearSolver', 'BandPreconditioner',
  # Flags
  'SUCCESS', 'TSTOP_RETURN', 'NO_MALLOC', 'ILL_INPUT', 'TOO_MUCH_WORK', 'TOO_MUCH_ACC',
  'ERR_FAILURE', 'CONV_FAILURE', 'SETUP_FAILURE', 'SOLVE_FAILURE',
  'OKAY', 'BAD_K', 'BAD_T', 'BAD_IS', 'NO_QUAD', 'NO_SENS', 'flag_name',
]

# Linear solvers that accept a user Jacobian
_JAC_SOLVERS = ('dense', 'band', 'sparse')


def solve_ivp_ms(
  fun,
  t_span,
  y0,
  method='bdf',
  iteration='newton',
  linear_solver='dense',
  t_eval=None,
  rtol=1e-3,
  atol=1e-6,
  jac=None,
  user_data=None,
  integrator_opts=None,
  linear_solver_opts=None,
  sens_opts=None,
  quad_opts=None,
  verbose=False,
  return_attempts=False,
):
  """Integrate an ODE with the variable-order multistep solver.

  Parameters
  ----------
  fun : callable
    Right-hand side ``fun(t, y) -> ndarray`` (``fun(t, y, user_data)`` when
    ``user_data`` is given).
  t_span : (float, float)
    Time interval ``(t0, tf)``; ``tf < t0`` integrates backwards.
  y0 : array_like, shape (n,)
    Initial state.
  method : str, default 'bdf'
    ``'bdf'`` (stiff) or ``'adams'`` (nonstiff).
  iteration : str, default 'newton'
    ``'newton'`` or ``'functional'``.
  linear_solver : str or LinearSolver, default 'dense'
    ``'dense'``, ``'band'``, ``'sparse'``, ``'diag'``, ``'spbcgs'`` or an
    instance. Only used with Newton iteration.
  t_eval : array_like or None
    Output times. When omitted every internal step is returned.
  rtol, atol : float or array_like
    Relative (scalar) and absolute (scalar or per component) tolerances.
  jac : callable or None
    Jacobian ``jac(t, y, fy) -> (n, n)`` for the direct linear solvers.
  user_data : object, optional
    Passed unchanged to every callback.
  integrator_opts : dict or None
    Optional inputs: ``max_ord``, ``max_num_steps``, ``max_hnil_warns``,
    ``stab_lim_det``, ``init_step``, ``min_step``, ``max_step``,
    ``max_err_test_fails``, ``max_nonlin_iters``, ``max_conv_fails``,
    ``nonlin_conv_coef``. Unknown keys are ignored.
  linear_solver_opts : dict or None
    Keyword arguments for the linear solver (e.g. ``mupper``/``mlower`` for
    ``'band'``, ``pretype``/``maxl``/``preconditioner`` for ``'spbcgs'``).
  sens_opts : dict or None
    Enables forward sensitivities. Keys: ``p`` (parameter array read by
    ``fun``), ``plist``, ``yS0``, ``method`` (``'simultaneous'``,
    ``'staggered'``, ``'staggered1'``), ``fS``, ``fS1``, ``errcon``,
    ``rho``, ``pbar``, ``rtolS``, ``atolS``, ``max_nonlin_iters``, ``data``.
  quad_opts : dict or None
    Enables quadratures. Keys: ``fQ``, ``yQ0`` (required), ``rtolQ``,
    ``atolQ``, ``errcon``, ``data``.
  verbose : bool
    Print step diagnostics.
  return_attempts : bool
    Also return the log of every attempted step.

  Returns
  -------
  t : ndarray (m,)
    Output times.
  y : ndarray (m, n)
    States.
  h : ndarray (m,)
    Last internal step size before each output.
  q : ndarray (m,)
    Order used on that step.
  info : dict
    ``flag``, ``message``, ``success``, ``stats`` and, when requested,
    ``sens`` (m, Ns, n) and ``quad`` (m, NQ).
  attempts : dict, optional
    Only with ``return_attempts=True``.
  """
  _ls_opts = dict(linear_solver_opts) if linear_solver_opts is not None else {}
  if jac is not None:
    if isinstance(linear_solver, str) and linear_solver.lower() in _JAC_SOLVERS:
      _ls_opts.setdefault('jac', jac)
    else:
      raise ValueError(f"A Jacobian can only be used with the {_JAC_SOLVERS} linear solvers.")
  if isinstance(linear_solver, str) and linear_solver.lower() == 'band':
    n0 = int(np.atleast_1d(y0).shape[0])
    _ls_opts.setdefault('mupper', n0 - 1)
    _ls_opts.setdefault('mlower', n0 - 1)

  # 1) System assembly
  system = ODESystem(
    fun=fun,
    y0=y0,
    t0=t_span[0],
    method=method,
    iteration=iteration,
    linear_solver=linear_solver,
    linear_solver_opts=_ls_opts,
    atol=atol,
    rtol=rtol,
    integrator_opts=integrator_opts,
    user_data=user_data,
    verbose=verbose,
    record_attempts=return_attempts,
  )

  # 2) Quadratures
  if quad_opts is not None:
    q_opts = dict(quad_opts)
    if 'fQ' not in q_opts or 'yQ0' not in q_opts:
      raise ValueError("quad_opts needs 'fQ' and 'yQ0'.")
    system.add_quadrature(
      q_opts['fQ'], q_opts['yQ0'],
      rtolQ=q_opts.get('rtolQ'), atolQ=q_opts.get('atolQ'),
      errcon=q_opts.get('errcon'), fQ_data=q_opts.get('data'),
    )

  # 3) Sensitivities
  if sens_opts is not None:
    s_opts = dict(sens_opts)
    system.add_sensitivities(
      p=s_opts.get('p'),
      plist=s_opts.get('plist'),
      yS0=s_opts.get('yS0'),
      method=str(s_opts.get('method', 'simultaneous')),
      fS=s_opts.get('fS'),
      fS1=s_opts.get('fS1'),
      errcon=bool(s_opts.get('errcon', True)),
      rho=s_opts.get('rho'),
      pbar=s_opts.get('pbar'),
      rtolS=s_opts.get('rtolS'),
      atolS=s_opts.get('atolS'),
      max_nonlin_iters=s_opts.get('max_nonlin_iters'),
      fS_data=s_opts.get('data'),
    )

  # 4) Integrate
  solver_obj = ODESolver(system, t_span, t_eval=t_eval)
  return solver_obj.solve(return_attempts=return_attempts)
