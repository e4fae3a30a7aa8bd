"""Return flags, option names and step-control constants.

Every public entry point of :class:`~solve_msivp.integrator.MultistepIntegrator`
that can fail numerically reports an integer flag from this module instead of
raising. Positive flags are successful returns, negative flags are failures.
"""

import numpy as np

# ----------------------------------------------------------------------
# Option names
# ----------------------------------------------------------------------
ADAMS = 'adams'
BDF = 'bdf'
LMM_TYPES = (ADAMS, BDF)

FUNCTIONAL = 'functional'
NEWTON = 'newton'
ITER_TYPES = (FUNCTIONAL, NEWTON)

SIMULTANEOUS = 'simultaneous'
STAGGERED = 'staggered'
STAGGERED1 = 'staggered1'
SENS_METHODS = (SIMULTANEOUS, STAGGERED, STAGGERED1)

NORMAL = 'normal'
ONE_STEP = 'one_step'
NORMAL_TSTOP = 'normal_tstop'
ONE_STEP_TSTOP = 'one_step_tstop'
TASKS = (NORMAL, ONE_STEP, NORMAL_TSTOP, ONE_STEP_TSTOP)

# ----------------------------------------------------------------------
# advance() return flags
# ----------------------------------------------------------------------
SUCCESS = 0
TSTOP_RETURN = 1
NO_MALLOC = -2
ILL_INPUT = -3
TOO_MUCH_WORK = -4
TOO_MUCH_ACC = -5
ERR_FAILURE = -6
CONV_FAILURE = -7
SETUP_FAILURE = -8
SOLVE_FAILURE = -9

# get_dky() and friends
OKAY = 0
BAD_K = -3
BAD_T = -4
BAD_IS = -6
NO_QUAD = -7
NO_SENS = -8

_FLAG_NAMES = {
    SUCCESS: 'SUCCESS',
    TSTOP_RETURN: 'TSTOP_RETURN',
    NO_MALLOC: 'NO_MALLOC',
    ILL_INPUT: 'ILL_INPUT',
    TOO_MUCH_WORK: 'TOO_MUCH_WORK',
    TOO_MUCH_ACC: 'TOO_MUCH_ACC',
    ERR_FAILURE: 'ERR_FAILURE',
    CONV_FAILURE: 'CONV_FAILURE',
    SETUP_FAILURE: 'SETUP_FAILURE',
    SOLVE_FAILURE: 'SOLVE_FAILURE',
}

_DKY_FLAG_NAMES = {
    OKAY: 'OKAY',
    BAD_K: 'BAD_K',
    BAD_T: 'BAD_T',
    BAD_IS: 'BAD_IS',
    NO_QUAD: 'NO_QUAD',
    NO_SENS: 'NO_SENS',
}


def flag_name(flag: int, dky: bool = False) -> str:
    """Return the symbolic name of an integer return flag."""
    table = _DKY_FLAG_NAMES if dky else _FLAG_NAMES
    return table.get(flag, f'UNKNOWN({flag})')


# ----------------------------------------------------------------------
# Linear solver contract
# ----------------------------------------------------------------------
LINIT_OK = 0
LINIT_ERR = -1

# convfail codes passed to LinearSolver.setup
NO_FAILURES = 0
FAIL_BAD_J = 1
FAIL_OTHER = 2

# ----------------------------------------------------------------------
# Internal step outcomes (never returned to callers)
# ----------------------------------------------------------------------
# nonlinear solver results
SOLVED = 0
CONV_FAIL = 1
TRY_AGAIN = 2
SETUP_FAIL_UNREC = 3
SOLVE_FAIL_UNREC = 4

# nflag values on entry to the corrector
FIRST_CALL = 5
PREV_CONV_FAIL = 6
PREV_ERR_FAIL = 7

# kflag values produced by the step controller
SUCCESS_STEP = 0
REP_ERR_FAIL = -1
REP_CONV_FAIL = -2
SETUP_FAILED = -3
SOLVE_FAILED = -4
DO_ERROR_TEST = 2
PREDICT_AGAIN = 3

# ----------------------------------------------------------------------
# Defaults and limits
# ----------------------------------------------------------------------
UROUND = float(np.finfo(float).eps)

ADAMS_Q_MAX = 12
BDF_Q_MAX = 5

HMIN_DEFAULT = 0.0
HMAX_INV_DEFAULT = 0.0
MXHNIL_DEFAULT = 10
MXSTEP_DEFAULT = 500
NLS_MAXCOR = 3
MXNCF = 10
MXNEF = 7
CORTES = 0.1

# initial step estimate
FUZZ_FACTOR = 100.0
HLB_FACTOR = 100.0
HUB_FACTOR = 0.1
H_BIAS = 0.5
MAX_ITERS = 4

# step and order selection
THRESH = 1.5
ETAMX1 = 10000.0
ETAMX2 = 10.0
ETAMX3 = 10.0
ETAMXF = 0.2
ETAMIN = 0.1
ETACF = 0.25
ADDON = 1.0e-6
BIAS1 = 6.0
BIAS2 = 6.0
BIAS3 = 10.0
ONEPSM = 1.000001
SMALL_NST = 10
MXNEF1 = 3
SMALL_NEF = 2
LONG_WAIT = 10

# nonlinear corrector
CRDOWN = 0.3
DGMAX = 0.3
RDIV = 2.0
MSBP = 20
