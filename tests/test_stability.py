import types

import numpy as np
import pytest

from solve_msivp import MultistepIntegrator, SUCCESS
from solve_msivp.stability import bdf_stab, sldet


def _growing_ssdat(rr, a, delta=5e-5):
    # squared norms that grow by rr per step, with a small period-4 ripple;
    # ssdat[1] is the newest row
    ripple = [1.0, 0.0, -1.0, 0.0, 1.0]
    ssdat = np.zeros((6, 4))
    for i in range(1, 6):
        for k in range(1, 4):
            ssdat[i][k] = rr ** (-(i - 1)) * a[k - 1] * (1.0 + delta * ripple[i - 1])
    return ssdat


def _order3_weights(rr):
    # order q-1, q, q+1 magnitudes consistent with a characteristic root rr at q = 3
    return 3.0, 1.0, 2.0 - 1.0 / rr


def test_sldet_rejects_vanishing_data():
    ssdat = np.zeros((6, 4))
    assert sldet(ssdat, 3) == -1


def test_sldet_constant_data_gives_no_estimate():
    ssdat = np.ones((6, 4))
    assert sldet(ssdat, 4) < 0


def test_sldet_inconsistent_ratios():
    # the three orders decay at different rates: no common root
    ssdat = np.zeros((6, 4))
    for i in range(1, 6):
        ssdat[i][1] = 0.5 ** i
        ssdat[i][2] = 0.7 ** i
        ssdat[i][3] = 0.9 ** i
    assert sldet(ssdat, 3) < 0


def _oscillator(t, y):
    # lightly damped fast oscillation plus a slow decay
    return np.array([y[1], -100.0 * y[0] - 0.2 * y[1], -0.1 * y[2]])


def test_stability_limit_detection_keeps_accuracy():
    y0 = np.array([1.0, 0.0, 1.0])
    ode = MultistepIntegrator('bdf', 'newton')
    ode.init(_oscillator, 0.0, y0, 1e-5, 1e-8)
    ode.set_err_file(None)
    ode.set_linear_solver('dense')
    ode.set_max_num_steps(20000)
    ode.set_stab_lim_det(True)
    flag, t, y = ode.advance(10.0)
    assert flag == SUCCESS
    np.testing.assert_allclose(y[2], np.exp(-1.0), rtol=1e-3)

    ref = MultistepIntegrator('bdf', 'newton')
    ref.init(_oscillator, 0.0, y0, 1e-5, 1e-8)
    ref.set_err_file(None)
    ref.set_linear_solver('dense')
    ref.set_max_num_steps(20000)
    flag, _, y_ref = ref.advance(10.0)
    assert flag == SUCCESS
    np.testing.assert_allclose(y[2], y_ref[2], rtol=1e-3)
    assert ref.get_num_stab_lim_order_reds() == 0


def test_stability_limit_detection_needs_bdf():
    ode = MultistepIntegrator('adams', 'functional')
    with pytest.raises(ValueError):
        ode.set_stab_lim_det(True)
    # switching it off is always allowed
    ode.set_stab_lim_det(False)


@pytest.mark.parametrize('rr, expected', [(1.1, 4), (0.9, 1)])
def test_sldet_recovers_known_root(rr, expected):
    assert sldet(_growing_ssdat(rr, _order3_weights(rr)), 3) == expected


def _stab_mem(nscon, rr=1.1):
    target = _growing_ssdat(rr, _order3_weights(rr))
    ssdat = np.zeros((6, 4))
    # bdf_stab shifts rows 1..4 down before adding the newest row
    ssdat[1:5] = target[2:6]
    q = 3
    zn = [np.zeros(1) for _ in range(q + 2)]
    zn[q - 1][0] = np.sqrt(target[1][1]) / 2.0
    zn[q][0] = np.sqrt(target[1][2]) / 6.0
    tq = np.zeros(6)
    tq[5] = 1.0
    return types.SimpleNamespace(
        q=q, qprime=q, nscon=nscon, ssdat=ssdat, zn=zn, tq=tq,
        acnrm=np.sqrt(target[1][3]) / 24.0, ewt=np.ones(1),
        etaqm1=0.5, etamax=10.0, eta=1.0, h=0.1, hprime=0.1, hmax_inv=0.0,
        tn=1.0, nor=0, log=lambda tag, msg: None,
    ), target


def test_bdf_stab_reduces_order_on_detected_limit():
    mem, target = _stab_mem(nscon=8)
    bdf_stab(mem)
    np.testing.assert_allclose(mem.ssdat[1:6, 1:4], target[1:6, 1:4], rtol=1e-12)
    assert mem.nor == 1
    assert mem.qprime == 2
    assert mem.eta == 0.5
    assert mem.hprime == pytest.approx(0.05)


def test_bdf_stab_waits_for_q_plus_5_steps():
    mem, target = _stab_mem(nscon=7)
    bdf_stab(mem)
    # data is still collected
    np.testing.assert_allclose(mem.ssdat[1, 1:4], target[1, 1:4], rtol=1e-12)
    assert mem.nor == 0
    assert mem.qprime == 3
    assert mem.hprime == 0.1
