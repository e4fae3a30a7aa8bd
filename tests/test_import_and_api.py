import numpy as np
import pytest


def test_package_import_and_basic_api():
    import solve_msivp as sms

    # Simple linear ODE: dy/dt = -y
    def fun(t, y):
        return -y

    y0 = np.array([1.0, -2.0, 0.5])
    t_span = (0.0, 1.0)

    t_values, y_values, h_values, q_values, info = sms.solve_ivp_ms(
        fun=fun,
        t_span=t_span,
        y0=y0,
        method='bdf',
        iteration='newton',
        rtol=1e-6,
        atol=1e-9,
    )

    # Basic shape checks
    assert t_values.ndim == 1 and y_values.ndim == 2
    assert y_values.shape == (t_values.size, y0.size)
    assert h_values.shape == q_values.shape == t_values.shape
    # Monotonic time, starting at t0 and ending exactly at tf
    assert t_values[0] == t_span[0]
    assert t_values[-1] == t_span[1]
    assert np.all(np.diff(t_values) > 0)
    np.testing.assert_array_equal(y_values[0], y0)
    assert h_values[0] == 0.0 and q_values[0] == 0
    assert info['success'] and info['message'] == 'TSTOP_RETURN'
    assert info['stats']['nsteps'] == t_values.size - 1

    y_exact = y0 * np.exp(-(t_span[1] - t_span[0]))
    np.testing.assert_allclose(y_values[-1], y_exact, rtol=1e-4, atol=1e-9)


def test_t_eval_output():
    from solve_msivp import solve_ivp_ms

    t_eval = np.linspace(0.0, 2.0, 11)
    t, y, h, q, info = solve_ivp_ms(lambda t, y: -y, (0.0, 2.0), np.array([1.0]),
                                    method='adams', iteration='functional',
                                    t_eval=t_eval, rtol=1e-7, atol=1e-10)
    np.testing.assert_array_equal(t, t_eval)
    np.testing.assert_allclose(y[:, 0], np.exp(-t_eval), rtol=1e-5)

    # without t0 in t_eval the initial point is not reported
    t, y, h, q, info = solve_ivp_ms(lambda t, y: -y, (0.0, 2.0), np.array([1.0]),
                                    t_eval=t_eval[1:])
    assert t.size == t_eval.size - 1
    assert info['success']


def test_linear_solver_choices_and_jacobian():
    from solve_msivp import solve_ivp_ms

    A = np.array([[-1.0, 0.5, 0.0], [0.5, -20.0, 0.5], [0.0, 0.5, -300.0]])
    y0 = np.ones(3)

    results = []
    for ls, kwargs in (('dense', {'jac': lambda t, y, fy: A}),
                       ('band', {}),
                       ('sparse', {}),
                       ('spbcgs', {'linear_solver_opts': {'maxl': 10}}),
                       ('diag', {})):
        t, y, h, q, info = solve_ivp_ms(lambda t, y: A @ y, (0.0, 1.0), y0,
                                        linear_solver=ls, rtol=1e-6, atol=1e-10,
                                        integrator_opts={'max_num_steps': 5000}, **kwargs)
        assert info['success'], ls
        results.append(y[-1])
    for yf in results[1:]:
        np.testing.assert_allclose(yf, results[0], rtol=1e-3, atol=1e-8)

    with pytest.raises(ValueError):
        solve_ivp_ms(lambda t, y: A @ y, (0.0, 1.0), y0, linear_solver='diag',
                     jac=lambda t, y, fy: A)


def test_sensitivities_and_quadratures_in_info():
    from solve_msivp import solve_ivp_ms

    p = np.array([0.5])

    def fun(t, y, pp):
        return -pp[0] * y

    t, y, h, q, info = solve_ivp_ms(
        fun, (0.0, 2.0), np.array([1.0]), user_data=p,
        t_eval=[0.0, 1.0, 2.0], rtol=1e-7, atol=1e-10,
        sens_opts={'p': p, 'method': 'staggered'},
        quad_opts={'fQ': lambda t, y, pp: y, 'yQ0': [0.0], 'rtolQ': 1e-7, 'atolQ': 1e-10},
    )
    assert info['sens'].shape == (3, 1, 1)
    assert info['quad'].shape == (3, 1)
    # dy/dp = -t exp(-p t)
    np.testing.assert_allclose(info['sens'][:, 0, 0], -t * np.exp(-0.5 * t), atol=1e-5)
    # int_0^t y = (1 - exp(-p t)) / p
    np.testing.assert_allclose(info['quad'][:, 0], (1.0 - np.exp(-0.5 * t)) / 0.5, atol=1e-5)


def test_attempt_log_and_failure_report():
    from solve_msivp import solve_ivp_ms, TOO_MUCH_WORK

    out = solve_ivp_ms(lambda t, y: -y, (0.0, 1.0), np.array([1.0]), return_attempts=True)
    assert len(out) == 6
    attempts = out[5]
    assert attempts['accepted'].sum() == out[4]['stats']['nsteps']
    assert set(attempts) == {'t', 'dt', 'order', 'accepted', 'error', 'status'}

    t, y, h, q, info = solve_ivp_ms(lambda t, y: -y, (0.0, 100.0), np.array([1.0]),
                                    t_eval=[0.0, 100.0], rtol=1e-10, atol=1e-14,
                                    integrator_opts={'max_num_steps': 3})
    assert not info['success']
    assert info['flag'] == TOO_MUCH_WORK
    assert t.size == 1


def test_odesystem_and_solver_validation():
    from solve_msivp import ODESystem, ODESolver

    system = ODESystem(lambda t, y: -y, np.array([1.0]), t0=0.0)
    with pytest.raises(ValueError):
        ODESolver(system, (0.0, 0.0))
    with pytest.raises(ValueError):
        ODESolver(system, (1.0, 2.0))
    with pytest.raises(ValueError):
        ODESolver(system, (0.0, 1.0), t_eval=[0.5, 0.2])
    with pytest.raises(ValueError):
        ODESolver(system, (0.0, 1.0), t_eval=[2.0])

    flag, t, y = system.step(0.5)
    assert flag == 0 and t == 0.5
    assert system.current_t == 0.5
    np.testing.assert_allclose(system.current_y, [np.exp(-0.5)], rtol=1e-2)


def test_sensitivity_atol_defaults_to_scaled_state_atol():
    from solve_msivp import ODESystem

    p = np.array([2.0, 0.5])
    system = ODESystem(lambda t, y, pp: -pp[0] * pp[1] * y, np.array([1.0, 3.0]),
                       atol=1e-8, rtol=1e-6, user_data=p)
    system.add_sensitivities(p=p, pbar=[4.0, -0.5], rtolS=1e-5)
    sens = system.integrator.mem.sens
    assert sens.rtolS == 1e-5
    # atol / |pbar_i| for every component of direction i
    np.testing.assert_allclose(sens.atolS, [[2.5e-9, 2.5e-9], [2e-8, 2e-8]])

    flag, t, y = system.step(1.0)
    assert flag == 0
    np.testing.assert_allclose(y, np.exp(-1.0) * np.array([1.0, 3.0]), rtol=1e-4)
