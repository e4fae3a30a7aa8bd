def _smoke(out):
    """Integrate y' = -y with both method families and report the error."""
    import numpy as np
    from solve_msivp import solve_ivp_ms

    ok = True
    for method, iteration in (('adams', 'functional'), ('bdf', 'newton')):
        t, y, h, q, info = solve_ivp_ms(lambda t, y: -y, (0.0, 2.0), np.array([1.0]),
                                        method=method, iteration=iteration,
                                        rtol=1e-6, atol=1e-10)
        err = abs(y[-1, 0] - np.exp(-2.0))
        stats = info['stats']
        print(f"  {method:5s}/{iteration:10s} flag={info['message']:8s} steps={stats['nsteps']:4d} "
              f"f-evals={stats['nfevals']:4d} max order={int(q.max())} |error|={err:.2e}", file=out)
        ok = ok and info['success'] and err < 1e-4
    return ok


def main(argv=None):
    """
    Print an environment summary, run a short integration, then the test suite.

    Usage:
        solve_msivp-selftest [--quick]

    ``--quick`` stops after the smoke integration.
    """
    import sys
    import os
    import platform
    from importlib import import_module

    argv = sys.argv[1:] if argv is None else list(argv)
    quick = '--quick' in argv

    print("\n=== solve_msivp self-test ===")
    try:
        import solve_msivp
        print(f"Package: solve_msivp {solve_msivp.__version__} @ {os.path.dirname(solve_msivp.__file__)}")
    except ImportError as e:
        print("Could not import solve_msivp:", e)
        return 1

    print("Python:", platform.python_version(), "| Platform:", platform.platform())
    print("NumPy:", import_module('numpy').__version__, "| SciPy:", import_module('scipy').__version__)

    print("Smoke integration of y' = -y on [0, 2]:")
    if not _smoke(sys.stdout):
        print("Smoke integration FAILED", file=sys.stderr)
        return 1
    if quick:
        return 0

    try:
        import pytest
    except ImportError:
        print("pytest is required. Install with: pip install -e .[test]", file=sys.stderr)
        return 1

    tests_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'tests')
    if not os.path.isdir(tests_path):
        print(f"Tests directory not found: {tests_path}")
        print("If you installed non-editable, clone the repo and run tests from source.")
        return 1

    print(f"Running pytest in: {tests_path}\n")
    exit_code = pytest.main(["-v", tests_path])
    print("\n=== Self-test", "PASSED" if exit_code == 0 else "FAILED", f"(exit code {exit_code}) ===")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
