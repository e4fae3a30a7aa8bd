import numpy as np
import pytest
import scipy.linalg as sla
import scipy.sparse as sp

from solve_msivp import (
    MultistepIntegrator, SUCCESS,
    DenseLinearSolver, BandLinearSolver, SparseLinearSolver, DiagLinearSolver,
    SpbcgsLinearSolver, BandPreconditioner,
)
from solve_msivp.band import BandMatrix, band_dq_jac
from solve_msivp.constants import UROUND

N = 10
K = 50.0


def _laplacian(n=N):
    return K * (np.diag(-2.0 * np.ones(n)) + np.diag(np.ones(n - 1), 1) + np.diag(np.ones(n - 1), -1))


A = _laplacian()
Y0 = np.sin(np.pi * np.arange(1, N + 1) / (N + 1)) + 0.3 * np.cos(3.0 * np.arange(N))


def _diffusion(t, y):
    return A @ y


def _run(solver, tf=0.2, rtol=1e-6, atol=1e-9):
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_diffusion, 0.0, Y0.copy(), rtol, atol)
    ode.set_err_file(None)
    ode.set_max_num_steps(5000)
    ode.set_linear_solver(solver)
    flag, t, y = ode.advance(tf)
    assert flag == SUCCESS
    return ode, y


def _exact(tf=0.2):
    return sla.expm(A * tf) @ Y0


def test_dense_difference_quotient_jacobian():
    ode, y = _run(DenseLinearSolver())
    np.testing.assert_allclose(y, _exact(), atol=1e-4)
    stats = ode.get_lin_solv_stats()
    assert stats['njev'] >= 1
    assert stats['nfevDQ'] == N * stats['njev']


def test_dense_user_jacobian():
    ode, y = _run(DenseLinearSolver(jac=lambda t, y, fy: A))
    np.testing.assert_allclose(y, _exact(), atol=1e-4)
    assert ode.get_lin_solv_stats()['nfevDQ'] == 0


def test_band_solver_matches_dense():
    ode_b, y_b = _run(BandLinearSolver(1, 1))
    ode_d, y_d = _run('dense')
    np.testing.assert_allclose(y_b, _exact(), atol=1e-4)
    np.testing.assert_allclose(y_b, y_d, atol=1e-4)
    # three column groups cover a tridiagonal Jacobian
    stats = ode_b.get_lin_solv_stats()
    assert stats['nfevDQ'] == 3 * stats['njev']


def test_band_user_jacobian_in_band_layout():
    ab = np.zeros((3, N))
    ab[0, 1:] = K
    ab[1, :] = -2.0 * K
    ab[2, :-1] = K
    ode, y = _run(BandLinearSolver(1, 1, jac=lambda t, y, fy: ab))
    np.testing.assert_allclose(y, _exact(), atol=1e-4)


def test_sparse_solver_with_csr_jacobian():
    J = sp.csr_matrix(A)
    ode, y = _run(SparseLinearSolver(jac=lambda t, y, fy: J))
    np.testing.assert_allclose(y, _exact(), atol=1e-4)
    assert ode.get_lin_solv_stats()['njev'] >= 1


def test_spbcgs_without_preconditioner():
    ode, y = _run(SpbcgsLinearSolver(maxl=N))
    np.testing.assert_allclose(y, _exact(), atol=1e-4)
    stats = ode.get_lin_solv_stats()
    assert stats['nli'] > 0
    assert stats['njtimes'] > 0


def test_spbcgs_with_band_preconditioner():
    prec = BandPreconditioner(N, 1, 1)
    ode, y = _run(SpbcgsLinearSolver(pretype='left', maxl=N, preconditioner=prec))
    np.testing.assert_allclose(y, _exact(), atol=1e-4)
    stats = ode.get_lin_solv_stats()
    assert stats['npe'] > 0
    assert stats['nps'] > 0
    assert prec.get_num_rhs_evals() > 0
    lenrw, leniw = prec.get_work_space()
    assert lenrw > 0 and leniw == N


def test_diag_solver_on_decoupled_stiff_problem():
    lam = np.array([1.0, 10.0, 100.0, 1000.0])
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(lambda t, y: -lam * y, 0.0, np.ones(4), 1e-6, 1e-10)
    ode.set_err_file(None)
    ode.set_max_num_steps(5000)
    ode.set_linear_solver(DiagLinearSolver())
    flag, t, y = ode.advance(1.0)
    assert flag == SUCCESS
    np.testing.assert_allclose(y, np.exp(-lam), rtol=1e-3, atol=1e-8)
    assert ode.get_lin_solv_stats()['nfevDQ'] > 0


def test_solver_init_errors_raise():
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_diffusion, 0.0, Y0.copy(), 1e-6, 1e-9)
    with pytest.raises(ValueError):
        ode.set_linear_solver('band', mupper=N, mlower=1)
    ode.set_err_file(None)
    with pytest.raises(ValueError):
        ode.set_linear_solver(SpbcgsLinearSolver(pretype='left'))
    with pytest.raises(ValueError):
        SpbcgsLinearSolver(pretype='upside_down')


def test_band_matrix_factor_and_solve():
    M = BandMatrix(N, 1, 1)
    M.from_dense(A)
    np.testing.assert_allclose(M.to_dense(), A)
    M.scale_add_identity(-0.01)
    dense = np.eye(N) - 0.01 * A
    np.testing.assert_allclose(M.to_dense(), dense)
    assert M.factor() == 0
    b = np.arange(1.0, N + 1)
    np.testing.assert_allclose(M.solve(b), np.linalg.solve(dense, b))


def test_band_dq_jacobian_of_linear_rhs():
    y = Y0.copy()
    J = BandMatrix(N, 1, 1)
    ncalls = band_dq_jac(_diffusion, 0.0, y, _diffusion(0.0, y), np.ones(N), 0.01, 1, 1, J, UROUND)
    assert ncalls == 3
    np.testing.assert_allclose(J.to_dense(), A, atol=1e-3)

    # zero f norm: the increments fall back to 1 / ewt
    J0 = BandMatrix(N, 1, 1)
    band_dq_jac(_diffusion, 0.0, np.zeros(N), np.zeros(N), np.ones(N), 0.01, 1, 1, J0, UROUND)
    np.testing.assert_allclose(J0.to_dense(), A, atol=1e-12)
