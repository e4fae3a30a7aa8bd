"""BDF stability limit detection.

At orders 3 to 5 the BDF formulas are not A-stable; on problems with
eigenvalues near the imaginary axis the step controller may settle on a
step size at which the method is only marginally stable, which shows up as
slowly growing scaled derivatives. :func:`bdf_stab` keeps the last five
values of three such quantities (for orders ``q-1``, ``q`` and ``q+1``) in
``mem.ssdat`` and, after ``q + 5`` steps at constant order, asks
:func:`sldet` for an estimate of the dominant characteristic root ``rr``.
If ``rr`` exceeds :data:`RRCUT` the order is reduced.

The cutoffs and tolerances below are module attributes so callers can
adjust them; results close to the thresholds are sensitive to them.
"""

import math

import numpy as np

from .tolerances import wrms_norm

RRCUT = 0.98
VRRTOL = 1.0e-4
VRRT2 = 5.0e-4
SQTOL = 1.0e-3
RRTOL = 1.0e-2
TINY = 1.0e-10
HUN = 100.0


def bdf_stab(mem):
    """Update the scaled-derivative history and reduce the order on a detected limit."""
    q = mem.q
    if q >= 3:
        ssdat = mem.ssdat
        for k in range(1, 4):
            for i in range(5, 1, -1):
                ssdat[i][k] = ssdat[i - 1][k]
        factorial = math.factorial(q - 1)
        sq = factorial * q * (q + 1) * mem.acnrm / max(mem.tq[5], TINY)
        sqm1 = factorial * q * wrms_norm(mem.zn[q], mem.ewt)
        sqm2 = factorial * wrms_norm(mem.zn[q - 1], mem.ewt)
        ssdat[1][1] = sqm2 * sqm2
        ssdat[1][2] = sqm1 * sqm1
        ssdat[1][3] = sq * sq

    if mem.qprime >= q:
        if q >= 3 and mem.nscon >= q + 5:
            ldflag = sldet(mem.ssdat, q)
            mem.log('cvode', f"stability limit detection flag {ldflag} at t={mem.tn:.6g}, q={q}")
            if ldflag > 3:
                # Flags 4, 5 and 6 indicate a violated stability limit.
                mem.qprime = q - 1
                eta = min(mem.etaqm1, mem.etamax)
                eta = eta / max(1.0, abs(mem.h) * mem.hmax_inv * eta)
                mem.eta = eta
                mem.hprime = mem.h * eta
                mem.nor += 1
    else:
        # An order increase is coming; start counting again.
        mem.nscon = 0


def sldet(ssdat, q):
    """Estimate the dominant characteristic root from the saved data.

    ``ssdat[i][k]`` (``i = 1..5`` backwards in time, ``k = 1..3`` for orders
    ``q-1, q, q+1``) are squared scaled derivative norms. Returns:

    * 1, 2, 3: root found (normal matrix, from the quartics, after Newton
      corrections), no violation;
    * 4, 5, 6: the same, and the root exceeds :data:`RRCUT`;
    * a negative value when no reliable estimate can be made.
    """
    rat = np.zeros((5, 4))
    rav = np.zeros(4)
    qkr = np.zeros(4)
    sigsq = np.zeros(4)
    smax = np.zeros(4)
    ssmax = np.zeros(4)
    drr = np.zeros(4)
    rrc = np.zeros(4)
    sqmx = np.zeros(4)
    qjk = np.zeros((4, 4))
    vrat = np.zeros(5)
    qc = np.zeros((6, 4))
    qco = np.zeros((6, 4))

    rr = 0.0
    kflag = 0

    # Maxima, minima and variances; quartic coefficients.
    for k in range(1, 4):
        smink = ssdat[1][k]
        smaxk = 0.0
        for i in range(1, 6):
            smink = min(smink, ssdat[i][k])
            smaxk = max(smaxk, ssdat[i][k])
        if smink < TINY * smaxk:
            return -1
        smax[k] = smaxk
        ssmax[k] = smaxk * smaxk

        sumrat = 0.0
        sumrsq = 0.0
        for i in range(1, 5):
            rat[i][k] = ssdat[i][k] / ssdat[i + 1][k]
            sumrat += rat[i][k]
            sumrsq += rat[i][k] * rat[i][k]
        rav[k] = 0.25 * sumrat
        vrat[k] = abs(0.25 * sumrsq - rav[k] * rav[k])

        qc[5][k] = ssdat[1][k] * ssdat[3][k] - ssdat[2][k] * ssdat[2][k]
        qc[4][k] = ssdat[2][k] * ssdat[3][k] - ssdat[1][k] * ssdat[4][k]
        qc[3][k] = 0.0
        qc[2][k] = ssdat[2][k] * ssdat[5][k] - ssdat[3][k] * ssdat[4][k]
        qc[1][k] = ssdat[4][k] * ssdat[4][k] - ssdat[3][k] * ssdat[5][k]
        for i in range(1, 6):
            qco[i][k] = qc[i][k]

    # Normal or nearly normal matrix: the three quartics share a root.
    vmin = min(vrat[1], vrat[2], vrat[3])
    vmax = max(vrat[1], vrat[2], vrat[3])

    if vmin < VRRTOL * VRRTOL:
        if vmax > VRRT2 * VRRT2:
            return -2
        rr = (rav[1] + rav[2] + rav[3]) / 3.0
        drrmax = 0.0
        for k in range(1, 4):
            drrmax = max(drrmax, abs(rav[k] - rr))
        if drrmax > VRRT2:
            return -3
        kflag = 1
    else:
        # Use the quartics to get rr.
        if abs(qco[1][1]) < TINY * ssmax[1]:
            return -4

        tem = qco[1][2] / qco[1][1]
        for i in range(2, 6):
            qco[i][2] -= tem * qco[i][1]
        qco[1][2] = 0.0
        tem = qco[1][3] / qco[1][1]
        for i in range(2, 6):
            qco[i][3] -= tem * qco[i][1]
        qco[1][3] = 0.0

        if abs(qco[2][2]) < TINY * ssmax[2]:
            return -4
        tem = qco[2][3] / qco[2][2]
        for i in range(3, 6):
            qco[i][3] -= tem * qco[i][2]

        if abs(qco[4][3]) < TINY * ssmax[3]:
            return -4
        rr = -qco[5][3] / qco[4][3]
        if rr < TINY or rr > HUN:
            return -5

        for k in range(1, 4):
            qkr[k] = qc[5][k] + rr * (qc[4][k] + rr * rr * (qc[2][k] + rr * qc[1][k]))

        sqmax = 0.0
        for k in range(1, 4):
            saqk = abs(qkr[k]) / ssmax[k]
            sqmax = max(sqmax, saqk)

        if sqmax < SQTOL:
            kflag = 2
        else:
            # Newton corrections to improve rr.
            sqmin = sqmax
            for _ in range(3):
                for k in range(1, 4):
                    qp = qc[4][k] + rr * rr * (3.0 * qc[2][k] + rr * 4.0 * qc[1][k])
                    drr[k] = 0.0
                    if abs(qp) > TINY * ssmax[k]:
                        drr[k] = -qkr[k] / qp
                    rrc[k] = rr + drr[k]

                for k in range(1, 4):
                    s = rrc[k]
                    sqmaxk = 0.0
                    for j in range(1, 4):
                        qjk[j][k] = qc[5][j] + s * (qc[4][j] + s * s * (qc[2][j] + s * qc[1][j]))
                        saqj = abs(qjk[j][k]) / ssmax[j]
                        sqmaxk = max(sqmaxk, saqj)
                    sqmx[k] = sqmaxk

                sqmin = sqmx[1] + 1.0
                kmin = 1
                for k in range(1, 4):
                    if sqmx[k] < sqmin:
                        kmin = k
                        sqmin = sqmx[k]
                rr = rrc[kmin]

                if sqmin < SQTOL:
                    kflag = 3
                    break
                for j in range(1, 4):
                    qkr[j] = qjk[j][kmin]

            if sqmin > SQTOL:
                return -6

    # Given rr, find sigsq[k] and verify rr.
    for k in range(1, 4):
        rsa = ssdat[1][k]
        rsb = ssdat[2][k] * rr
        rsc = ssdat[3][k] * rr * rr
        rsd = ssdat[4][k] * rr * rr * rr
        rd1a = rsa - rsb
        rd1b = rsb - rsc
        rd1c = rsc - rsd
        rd2a = rd1a - rd1b
        rd2b = rd1b - rd1c
        rd3a = rd2a - rd2b

        if abs(rd1b) < TINY * smax[k]:
            return -7
        cest1 = -rd3a / rd1b
        if cest1 < TINY or cest1 > 4.0:
            return -7
        corr1 = (rd2b / cest1) / (rr * rr)
        sigsq[k] = ssdat[3][k] + corr1

    if sigsq[2] < TINY:
        return -8

    ratp = sigsq[3] / sigsq[2]
    ratm = sigsq[1] / sigsq[2]
    qfac1 = 0.25 * (q * q - 1)
    qfac2 = 2.0 / (q - 1)
    bb = ratp * ratm - 1.0 - qfac1 * ratp
    tem = 1.0 - qfac2 * bb
    if abs(tem) < TINY:
        return -8
    rrb = 1.0 / tem
    if abs(rrb - rr) > RRTOL:
        return -9

    # Root above the cutoff: stability limit violated.
    if rr > RRCUT:
        kflag += 3
    return kflag
