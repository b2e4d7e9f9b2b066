"""Logging for the BCFLASH solver.

Messages go to the ``"bcflash_jax"`` logger; the application decides where
they end up. Per-iteration lines are emitted from compiled code through
``jax.debug.callback``, so they also appear when the solver runs under
``jax.jit`` inside ``optimistix.minimise``.
"""

import logging

import jax

logger = logging.getLogger("bcflash_jax")

# Repeat the column header every this many iterations.
HEADER_EVERY = 20

_COLUMNS = ("iter", "f(x)", "|Pg(x)|", "cg", "preRed", "radius", "")
_HEADER_FMT = "%5s  %13s  %13s  %5s  %9s  %9s  %3s"
_LINE_FMT = "%5d  %13.6e  %13.6e  %5d  %9.2e  %9.2e  %3s"


def _emit_iteration(iteration, f, pg_norm, cg_iter, pre_red, delta, accepted):
    iteration = int(iteration)
    if iteration % HEADER_EVERY == 0:
        logger.info(_HEADER_FMT, *_COLUMNS)
    flag = "" if bool(accepted) else "rej"
    logger.info(
        _LINE_FMT,
        iteration,
        float(f),
        float(pg_norm),
        int(cg_iter),
        float(pre_red),
        float(delta),
        flag,
    )


def log_iteration(iteration, f, pg_norm, cg_iter, pre_red, delta, accepted):
    """Log one iteration line from inside traced code.

    Rejected steps are flagged with ``rej``; the objective and projected
    gradient are those of the iterate the solver holds after the step.
    """
    jax.debug.callback(
        _emit_iteration, iteration, f, pg_norm, cg_iter, pre_red, delta, accepted
    )


def log_header(solver, n: int) -> None:
    """Log the problem size and the solver parameters."""
    logger.info("bcflash: n = %d", n)
    logger.info(
        "  rtol = %8.1e  atol = %8.1e  max_steps = %d  cg_rtol = %8.1e",
        solver.rtol,
        solver.atol,
        solver.max_steps,
        solver.cg_rtol,
    )
    logger.info(
        "  fatol = %8.1e  frtol = %8.1e  f_min = %8.1e  mu0 = %8.1e",
        solver.fatol,
        solver.frtol,
        solver.f_min,
        solver.mu0,
    )


def log_summary(result, stop_tol: float, verbose: int) -> None:
    """Log the outcome of a solve when ``verbose >= 1``."""
    if verbose < 1:
        return
    logger.info("EXIT bcflash: %s (success = %s)", result.message, result.success)
    logger.info(
        "  f(x) = %15.8e  ||Pg|| = %8.1e  stop tolerance = %8.1e",
        result.fun,
        result.pg_norm,
        stop_tol,
    )
    logger.info(
        "  iterations = %d  accepted = %d  cg iterations = %d",
        result.iterations,
        result.n_success,
        result.cg_iterations,
    )
    logger.info(
        "  f evals = %d  g evals = %d  Hv products = %d  time = %.3fs",
        result.n_fobj,
        result.n_gobj,
        result.n_hvp,
        result.solve_time,
    )
