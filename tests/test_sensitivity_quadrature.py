import numpy as np
import pytest

from solve_msivp import (
    MultistepIntegrator, SUCCESS, OKAY, BAD_IS, NO_QUAD, NO_SENS,
)
from solve_msivp.constants import SIMULTANEOUS, STAGGERED, STAGGERED1

TF = 1.0


def _exact(p, t):
    # y' = -p0 y, y(0) = p1
    y = p[1] * np.exp(-p[0] * t)
    s0 = -t * p[1] * np.exp(-p[0] * t)
    s1 = np.exp(-p[0] * t)
    return np.array([y]), np.array([[s0], [s1]])


def _sens_integrator(ism, iteration='newton', rhs=None):
    p = np.array([2.0, 1.5])

    def f(t, y):
        return -p[0] * y

    def fS(t, y, ydot, yS):
        return np.array([-p[0] * yS[0] - y, -p[0] * yS[1]])

    def fS1(t, y, ydot, i, ySi):
        out = -p[0] * ySi
        if i == 0:
            out = out - y
        return out

    lmm = 'bdf' if iteration == 'newton' else 'adams'
    ode = MultistepIntegrator(lmm, iteration)
    ode.init(f, 0.0, np.array([p[1]]), 1e-7, 1e-10)
    ode.set_err_file(None)
    if iteration == 'newton':
        ode.set_linear_solver('dense')
    ode.sens_init(2, ism, p, [0, 1], np.array([[0.0], [1.0]]))
    if rhs == 'fS':
        ode.set_sens_rhs_fn(fS)
    elif rhs == 'fS1':
        ode.set_sens_rhs1_fn(fS1)
    return ode, p


@pytest.mark.parametrize('ism', [SIMULTANEOUS, STAGGERED, STAGGERED1])
@pytest.mark.parametrize('rhs', [None, 'fS', 'fS1'])
def test_sensitivities_newton(ism, rhs):
    ode, p = _sens_integrator(ism, 'newton', rhs)
    flag, t, y = ode.advance(TF)
    assert flag == SUCCESS
    flag, yS = ode.get_sens(TF)
    assert flag == OKAY
    y_ex, s_ex = _exact(p, TF)
    np.testing.assert_allclose(y, y_ex, rtol=1e-4)
    np.testing.assert_allclose(yS, s_ex, rtol=1e-4)
    # p is restored after every difference quotient
    np.testing.assert_array_equal(p, [2.0, 1.5])
    assert ode.get_sens_num_rhs_evals() > 0
    if rhs is None:
        assert ode.get_num_rhs_evals_sens() > 0
    else:
        assert ode.get_num_rhs_evals_sens() == 0


@pytest.mark.parametrize('ism', [SIMULTANEOUS, STAGGERED, STAGGERED1])
def test_sensitivities_functional(ism):
    ode, p = _sens_integrator(ism, 'functional')
    flag, t, y = ode.advance(TF)
    assert flag == SUCCESS
    flag, yS = ode.get_sens(TF)
    assert flag == OKAY
    _, s_ex = _exact(p, TF)
    np.testing.assert_allclose(yS, s_ex, rtol=1e-4)
    assert ode.get_num_lin_solv_setups() == 0


def test_staggered1_per_direction_counters():
    ode, _ = _sens_integrator(STAGGERED1)
    flag, _, _ = ode.advance(TF)
    assert flag == SUCCESS
    nniS1, ncfnS1 = ode.get_stgr_sens_nonlin_solv_stats()
    assert nniS1.shape == (2,)
    assert nniS1.sum() == ode.get_sens_num_nonlin_solv_iters()
    assert ncfnS1.sum() == ode.get_sens_num_nonlin_solv_conv_fails()
    assert np.all(nniS1 > 0)


def test_staggered_counters_and_stats():
    ode, _ = _sens_integrator(STAGGERED)
    flag, _, _ = ode.advance(TF)
    assert flag == SUCCESS
    nniS, ncfnS = ode.get_sens_nonlin_solv_stats()
    assert nniS >= ode.get_num_steps()
    stats = ode.get_sens_stats()
    assert set(stats) == {'nfSevals', 'nfevalsS', 'nSetfails', 'nlinsetupsS'}
    assert stats['nfSevals'] == ode.get_sens_num_rhs_evals()
    assert ode.get_sens_err_weights().shape == (2, 1)
    with pytest.raises(ValueError):
        ode.get_stgr_sens_nonlin_solv_stats()


def test_sensitivity_dense_output():
    ode, p = _sens_integrator(SIMULTANEOUS)
    flag, _, _ = ode.advance(0.5 * TF)
    assert flag == SUCCESS
    flag, s1 = ode.get_sens1(0.5 * TF, 1)
    assert flag == OKAY
    _, s_ex = _exact(p, 0.5 * TF)
    np.testing.assert_allclose(s1, s_ex[1], rtol=1e-4)
    flag, ds1 = ode.get_sens_dky(0.5 * TF, 1, 1)
    assert flag == OKAY
    np.testing.assert_allclose(ds1, -p[0] * s_ex[1], rtol=1e-2)
    flag, out = ode.get_sens_dky(0.5 * TF, 0, 2)
    assert flag == BAD_IS and out is None


def test_sensitivity_user_data_and_options():
    p = np.array([2.0, 1.5])

    def f(t, y, pp):
        return -pp[0] * y

    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(f, 0.0, np.array([p[1]]), 1e-7, 1e-10)
    ode.set_user_data(p)
    ode.set_linear_solver('dense')
    ode.sens_init(2, SIMULTANEOUS, p, None, np.array([[0.0], [1.0]]))
    ode.set_sens_tolerances(1e-7, np.array([1e-10, 1e-10]))
    ode.set_sens_pbar([2.0, 1.5])
    ode.set_sens_rho(-1.0)
    flag, _, _ = ode.advance(TF)
    assert flag == SUCCESS
    _, yS = ode.get_sens(TF)
    _, s_ex = _exact(p, TF)
    np.testing.assert_allclose(yS, s_ex, rtol=1e-4)

    with pytest.raises(ValueError):
        ode.set_sens_pbar([1.0])
    with pytest.raises(ValueError):
        ode.set_sens_tolerances(1e-6, np.ones((3, 1)))
    with pytest.raises(ValueError):
        ode.sens_init(2, 'sideways', p, None, np.zeros((2, 1)))


def test_sensitivity_without_error_control():
    ode, p = _sens_integrator(SIMULTANEOUS)
    ode.set_sens_err_con(False)
    flag, _, _ = ode.advance(TF)
    assert flag == SUCCESS
    _, yS = ode.get_sens(TF)
    _, s_ex = _exact(p, TF)
    np.testing.assert_allclose(yS, s_ex, rtol=1e-3)


def test_sens_reinit_and_free():
    ode, p = _sens_integrator(STAGGERED)
    _, _, _ = ode.advance(TF)
    _, yS_first = ode.get_sens(TF)

    ode.reinit(0.0, np.array([p[1]]))
    ode.sens_reinit(STAGGERED1, np.array([[0.0], [1.0]]))
    flag, _, _ = ode.advance(TF)
    assert flag == SUCCESS
    _, yS_second = ode.get_sens(TF)
    np.testing.assert_allclose(yS_second, yS_first, rtol=1e-4)

    ode.sens_free()
    flag, out = ode.get_sens(TF)
    assert flag == NO_SENS and out is None


def _quad_integrator(**quad):
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(lambda t, y: -y, 0.0, np.array([1.0]), 1e-7, 1e-10)
    ode.set_err_file(None)
    ode.set_linear_solver('dense')
    ode.quad_init(lambda t, y: np.array([y[0], t]), np.zeros(2), **quad)
    return ode


@pytest.mark.parametrize('quad', [{}, {'rtolQ': 1e-7, 'atolQ': 1e-10}])
def test_quadrature(quad):
    ode = _quad_integrator(**quad)
    flag, t, y = ode.advance(2.0)
    assert flag == SUCCESS
    flag, yQ = ode.get_quad(2.0)
    assert flag == OKAY
    np.testing.assert_allclose(yQ, [1.0 - np.exp(-2.0), 2.0], rtol=1e-4)
    nfQe, netfQ = ode.get_quad_stats()
    assert nfQe == ode.get_quad_num_rhs_evals() > 0
    assert netfQ == ode.get_quad_num_err_test_fails()
    flag, dyQ = ode.get_quad_dky(2.0, 1)
    assert flag == OKAY
    np.testing.assert_allclose(dyQ, [np.exp(-2.0), 2.0], rtol=1e-2)


def test_quadrature_error_control_weights():
    ode = _quad_integrator(rtolQ=1e-6, atolQ=1e-9)
    assert ode.mem.quad.errconQ
    ode.advance(1.0)
    ewtQ = ode.get_quad_err_weights()
    assert ewtQ.shape == (2,)
    assert np.all(ewtQ > 0.0)
    ode.set_quad_err_con(False)
    assert not ode.mem.quad.errconQ


def test_quadrature_data_and_reinit():
    ode = MultistepIntegrator('adams', 'functional')
    ode.init(lambda t, y: -y, 0.0, np.array([1.0]), 1e-7, 1e-10)
    ode.quad_init(lambda t, y, scale: scale * y, np.zeros(1))
    ode.set_quad_data(3.0)
    ode.advance(1.0)
    _, yQ = ode.get_quad(1.0)
    np.testing.assert_allclose(yQ, [3.0 * (1.0 - np.exp(-1.0))], rtol=1e-4)

    ode.reinit(0.0, np.array([1.0]))
    ode.quad_reinit(np.array([1.0]))
    ode.advance(1.0)
    _, yQ = ode.get_quad(1.0)
    np.testing.assert_allclose(yQ, [1.0 + 3.0 * (1.0 - np.exp(-1.0))], rtol=1e-4)

    ode.quad_free()
    flag, out = ode.get_quad(1.0)
    assert flag == NO_QUAD and out is None
    with pytest.raises(ValueError):
        ode.quad_reinit(np.zeros(1))
