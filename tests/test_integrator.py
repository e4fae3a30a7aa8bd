import numpy as np
import pytest

from solve_msivp import (
    MultistepIntegrator, LinearSolver,
    SUCCESS, TSTOP_RETURN, NO_MALLOC, ILL_INPUT, TOO_MUCH_WORK, TOO_MUCH_ACC,
    ERR_FAILURE, CONV_FAILURE, SETUP_FAILURE, SOLVE_FAILURE, OKAY, BAD_K, BAD_T,
)
from solve_msivp.constants import (
    LINIT_OK, ONE_STEP, NORMAL_TSTOP, ONE_STEP_TSTOP, ETAMX1, ETAMX2, ETAMX3, SMALL_NST,
    ADAMS_Q_MAX, BDF_Q_MAX,
)
from solve_msivp.tolerances import wrms_norm


def _decay(t, y):
    return -y


def _bdf(f=_decay, y0=(1.0,), rtol=1e-6, atol=1e-10, t0=0.0):
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(f, t0, np.array(y0), rtol, atol)
    ode.set_linear_solver('dense')
    ode.set_err_file(None)
    return ode


class _ScriptedSolver(LinearSolver):
    """Linear solver returning fixed status codes."""

    def __init__(self, setup_status=0, solve_status=0):
        super().__init__()
        self.setup_status = setup_status
        self.solve_status = solve_status
        self.nsetup = 0

    def init(self, mem):
        return LINIT_OK

    def setup(self, mem, convfail, ypred, fpred):
        self.nsetup += 1
        return self.setup_status, True

    def solve(self, mem, b, weight, ycur, fcur):
        return self.solve_status, b


def test_bdf_newton_exponential_decay():
    ode = _bdf()
    flag, t, y = ode.advance(1.0)
    assert flag == SUCCESS
    assert t == 1.0
    np.testing.assert_allclose(y, [np.exp(-1.0)], rtol=1e-4)
    stats = ode.get_integrator_stats()
    assert stats['nsteps'] == ode.get_num_steps() > 0
    assert stats['tcur'] >= 1.0
    assert ode.get_lin_solv_stats()['njev'] >= 1


def test_adams_functional_step_growth_and_order_settling():
    ode = MultistepIntegrator('adams', 'functional')
    ode.init(_decay, 0.0, np.array([1.0]), 1e-10, 1e-14)
    steps, orders, clean = [], [], []
    fails = 0
    t = 0.0
    while t < 5.0:
        flag, t, y = ode.advance(5.0, ONE_STEP)
        assert flag == SUCCESS
        now = ode.get_num_err_test_fails() + ode.get_num_nonlin_solv_conv_fails()
        clean.append(now == fails)
        fails = now
        steps.append(ode.get_last_step())
        orders.append(ode.get_last_order())
    np.testing.assert_allclose(y, [np.exp(-t)], rtol=1e-7)

    steps = np.array(steps)
    orders = np.array(orders)
    # growth per step is capped by etamax: ETAMX1 after the first step
    for j in range(1, steps.size):
        etamax = ETAMX1 if j == 1 else (ETAMX2 if j - 1 <= SMALL_NST else ETAMX3)
        assert steps[j] <= etamax * steps[j - 1] * (1.0 + 1e-12)
        # without a failure the step never shrinks
        if clean[j]:
            assert steps[j] >= steps[j - 1]
    assert steps[-1] > 10.0 * steps[0]

    # orders move by one at a time and each new order is held for q + 1 steps
    assert np.all(np.abs(np.diff(orders)) <= 1)
    assert orders.max() >= 3
    starts = list(np.flatnonzero(np.diff(orders)) + 1)
    for a, b in zip(starts[:-1], starts[1:]):
        if all(clean[a:b]):
            assert b - a >= orders[a] + 1

    # no linear solver is involved with functional iteration
    assert ode.get_num_lin_solv_setups() == 0
    assert ode.get_lin_solv_stats() == {}


def test_repeated_error_test_failures_give_err_failure():
    def rough(t, y):
        # unresolvable forcing once t passes 0.1
        if t > 0.1:
            return -y + 1e3 * np.sin(1e7 * t)
        return -y

    ode = _bdf(rough)
    ode.set_max_err_test_fails(2)
    flag, t, y = ode.advance(1.0)
    assert flag == ERR_FAILURE
    assert ode.get_num_err_test_fails() >= 2
    assert t < 1.0
    assert np.all(np.isfinite(y))


def test_constant_rhs_is_integrated_exactly():
    ode = _bdf(lambda t, y: np.array([1.0, -2.0]), y0=(1.0, 1.0), rtol=1e-8, atol=1e-12)
    flag, t, y = ode.advance(3.0)
    assert flag == SUCCESS
    np.testing.assert_allclose(y, [4.0, -5.0], rtol=1e-10)
    assert ode.get_num_err_test_fails() == 0


def test_unrecoverable_setup_failure():
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_decay, 0.0, np.array([1.0]), 1e-4, 1e-8)
    ode.set_err_file(None)
    ode.set_linear_solver(_ScriptedSolver(setup_status=-1))
    flag, t, y = ode.advance(1.0)
    assert flag == SETUP_FAILURE
    assert ode.mem.last_flag_source == 'linear_solver'
    assert t == 0.0


def test_unrecoverable_solve_failure():
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_decay, 0.0, np.array([1.0]), 1e-4, 1e-8)
    ode.set_err_file(None)
    ode.set_linear_solver(_ScriptedSolver(solve_status=-1))
    flag, t, y = ode.advance(1.0)
    assert flag == SOLVE_FAILURE
    assert ode.mem.last_flag_source == 'linear_solver'


def test_repeated_recoverable_setup_failures():
    y0 = np.array([1.0, 3.0])
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_decay, 0.0, y0, 1e-4, 1e-8)
    ode.set_err_file(None)
    solver = _ScriptedSolver(setup_status=1)
    ode.set_linear_solver(solver)
    flag, t, y = ode.advance(1.0)
    assert flag == CONV_FAILURE
    assert ode.get_num_nonlin_solv_conv_fails() == 10
    assert solver.nsetup == 10
    assert t == 0.0
    np.testing.assert_allclose(y, y0, rtol=1e-14)
    assert ode.get_num_steps() == 0


def test_max_conv_fails_option():
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_decay, 0.0, np.array([1.0]), 1e-4, 1e-8)
    ode.set_err_file(None)
    ode.set_linear_solver(_ScriptedSolver(setup_status=1))
    ode.set_max_conv_fails(3)
    flag, _, _ = ode.advance(1.0)
    assert flag == CONV_FAILURE
    assert ode.get_num_nonlin_solv_conv_fails() == 3


def test_get_dky_checks_arguments():
    ode = _bdf()
    flag, t, y = ode.advance(0.5)
    assert flag == SUCCESS
    tn = ode.get_current_time()
    q = ode.mem.q

    flag, dky = ode.get_dky(tn + 10.0, 0)
    assert flag == BAD_T and dky is None
    flag, _ = ode.get_dky(tn, q + 1)
    assert flag == BAD_K
    flag, _ = ode.get_dky(tn, -1)
    assert flag == BAD_K

    flag, y_tn = ode.get_dky(tn, 0)
    assert flag == OKAY
    np.testing.assert_allclose(y_tn, [np.exp(-tn)], rtol=1e-4)
    flag, dy_tn = ode.get_dky(tn, 1)
    assert flag == OKAY
    np.testing.assert_allclose(dy_tn, -y_tn, rtol=1e-2)

    # inside the last step
    t_mid = tn - 0.5 * ode.get_last_step()
    flag, y_mid = ode.get_dky(t_mid, 0)
    assert flag == OKAY
    np.testing.assert_allclose(y_mid, [np.exp(-t_mid)], rtol=1e-4)


def test_stop_time_is_never_passed():
    seen = []

    def f(t, y):
        seen.append(t)
        return -y

    ode = _bdf(f)
    ode.set_stop_time(0.5)
    flag, t, y = ode.advance(2.0, NORMAL_TSTOP)
    assert flag == TSTOP_RETURN
    assert t == 0.5
    assert max(seen) <= 0.5
    np.testing.assert_allclose(y, [np.exp(-0.5)], rtol=1e-4)

    # the stop time is reported again rather than passed
    flag, t, _ = ode.advance(2.0, ONE_STEP_TSTOP)
    assert flag == TSTOP_RETURN and t == 0.5


def test_one_step_mode_takes_one_step():
    ode = _bdf()
    flag, t, y = ode.advance(1.0, ONE_STEP)
    assert flag == SUCCESS
    assert ode.get_num_steps() == 1
    assert 0.0 < t < 1.0
    assert t == ode.get_current_time()
    flag, t2, _ = ode.advance(1.0, ONE_STEP)
    assert ode.get_num_steps() == 2
    assert t2 > t


def test_too_much_work_is_recoverable():
    ode = _bdf()
    ode.set_max_num_steps(5)
    flag, t, y = ode.advance(10.0)
    assert flag == TOO_MUCH_WORK
    assert ode.get_num_steps() == 5
    assert t < 10.0
    ode.set_max_num_steps(0)
    flag, t, y = ode.advance(10.0)
    assert flag == SUCCESS
    np.testing.assert_allclose(y, [np.exp(-10.0)], rtol=1e-3)


def test_large_initial_step_recovers_from_error_test_failures():
    ode = _bdf(rtol=1e-6, atol=1e-8)
    ode.set_init_step(1.0)
    flag, t, y = ode.advance(2.0)
    assert flag == SUCCESS
    assert ode.get_num_err_test_fails() >= 1
    assert ode.get_actual_init_step() == 1.0
    np.testing.assert_allclose(y, [np.exp(-2.0)], rtol=1e-4)


def test_advance_without_init():
    ode = MultistepIntegrator('bdf', 'newton')
    ode.set_err_file(None)
    flag, t, y = ode.advance(1.0)
    assert flag == NO_MALLOC
    assert y is None


def test_illegal_inputs_at_first_call():
    ode = _bdf()
    flag, _, _ = ode.advance(0.0)
    assert flag == ILL_INPUT

    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_decay, 0.0, np.array([1.0]), 1e-6, 1e-8)
    ode.set_err_file(None)
    flag, _, _ = ode.advance(1.0)
    assert flag == ILL_INPUT

    ode = _bdf()
    flag, _, _ = ode.advance(1.0, NORMAL_TSTOP)
    assert flag == ILL_INPUT

    ode = _bdf()
    flag, _, _ = ode.advance(1.0, 'sideways')
    assert flag == ILL_INPUT


def test_too_much_accuracy():
    ode = _bdf(rtol=0.0, atol=1e-100)
    flag, t, y = ode.advance(1.0)
    assert flag == TOO_MUCH_ACC
    assert ode.get_tol_scale_factor() > 1.0
    assert t == 0.0


def test_max_order_option():
    assert MultistepIntegrator('adams', 'functional').mem.qmax == ADAMS_Q_MAX
    assert MultistepIntegrator('bdf', 'newton').mem.qmax == BDF_Q_MAX

    ode = MultistepIntegrator('adams', 'functional')
    ode.init(_decay, 0.0, np.array([1.0]), 1e-8, 1e-12)
    ode.set_max_ord(2)
    t = 0.0
    orders = []
    while t < 3.0:
        flag, t, _ = ode.advance(3.0, ONE_STEP)
        assert flag == SUCCESS
        orders.append(ode.get_last_order())
    assert max(orders) == 2

    bdf = MultistepIntegrator('bdf', 'newton')
    with pytest.raises(ValueError):
        bdf.set_max_ord(6)
    bdf.init(_decay, 0.0, np.array([1.0]), 1e-6, 1e-8)
    bdf.set_max_ord(3)
    with pytest.raises(ValueError):
        bdf.set_max_ord(4)


def test_configuration_errors_raise():
    with pytest.raises(ValueError):
        MultistepIntegrator('rk45', 'newton')
    with pytest.raises(ValueError):
        MultistepIntegrator('bdf', 'picard')
    ode = MultistepIntegrator('adams', 'functional')
    with pytest.raises(ValueError):
        ode.set_stab_lim_det(True)
    with pytest.raises(ValueError):
        ode.init(_decay, 0.0, np.array([1.0, 2.0]), 1e-6, [1e-8])
    ode.init(_decay, 0.0, np.array([1.0]), 1e-6, 1e-8)
    with pytest.raises(ValueError):
        ode.set_min_step(-1.0)
    with pytest.raises(ValueError):
        ode.set_linear_solver('qr')
    with pytest.raises(ValueError):
        ode.get_quad_stats()
    with pytest.raises(ValueError):
        ode.set_sens_err_con(True)


def test_user_data_is_passed_to_rhs():
    data = {'rate': 2.0, 'calls': 0}

    def f(t, y, d):
        d['calls'] += 1
        return -d['rate'] * y

    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(f, 0.0, np.array([1.0]), 1e-6, 1e-10)
    ode.set_user_data(data)
    ode.set_linear_solver('dense')
    flag, t, y = ode.advance(1.0)
    assert flag == SUCCESS
    assert data['calls'] == ode.get_num_rhs_evals() + ode.get_lin_solv_stats()['nfevDQ']
    np.testing.assert_allclose(y, [np.exp(-2.0)], rtol=1e-4)


def test_accepted_steps_pass_the_error_test():
    def f(t, y):
        return np.array([y[1], -y[0] - 0.1 * y[1]])

    ode = _bdf(f, y0=(1.0, 0.0), rtol=1e-5, atol=1e-8)
    t = 0.0
    while t < 5.0:
        flag, t, _ = ode.advance(5.0, ONE_STEP)
        assert flag == SUCCESS
        err = wrms_norm(ode.get_est_local_errors(), ode.get_err_weights())
        assert err <= 1.0 + 1e-12


def test_reinit_reproduces_run():
    ode = _bdf()
    _, _, y1 = ode.advance(1.0)
    nst = ode.get_num_steps()
    ode.reinit(0.0, np.array([1.0]))
    assert ode.get_num_steps() == 0
    _, _, y2 = ode.advance(1.0)
    np.testing.assert_allclose(y1, y2, rtol=1e-12)
    assert ode.get_num_steps() == nst


def test_backward_integration():
    ode = _bdf(t0=1.0, y0=(np.exp(-1.0),))
    flag, t, y = ode.advance(0.0)
    assert flag == SUCCESS
    assert t == 0.0
    np.testing.assert_allclose(y, [1.0], rtol=1e-4)
    assert ode.get_last_step() < 0.0


def test_work_space_and_repr():
    ode = _bdf(y0=(1.0, 2.0, 3.0))
    lenrw, leniw = ode.get_work_space()
    assert lenrw > 0 and leniw > 0
    assert 'bdf' in repr(ode)
    ode.free()
    flag, _, _ = ode.advance(1.0)
    assert flag == NO_MALLOC


def test_switch_to_newton_mid_run_and_current_getters():
    ode = MultistepIntegrator('adams', 'functional')
    ode.init(_decay, 0.0, np.array([1.0]), 1e-6, 1e-10)
    ode.set_err_file(None)
    flag, _, _ = ode.advance(0.5)
    assert flag == SUCCESS
    nni = ode.get_num_nonlin_solv_iters()
    assert nni > 0
    assert (nni, ode.get_num_nonlin_solv_conv_fails()) == ode.get_nonlin_solv_stats()
    assert ode.get_current_order() >= 1
    assert ode.get_current_step() > 0.0

    ode.reset_iter_type('newton')
    flag, _, _ = ode.advance(1.0)
    assert flag == ILL_INPUT
    ode.set_linear_solver('dense')
    flag, t, y = ode.advance(1.0)
    assert flag == SUCCESS
    np.testing.assert_allclose(y, [np.exp(-1.0)], rtol=1e-4)
    assert ode.get_num_lin_solv_setups() >= 1

    with pytest.raises(ValueError):
        ode.reset_iter_type('picard')
