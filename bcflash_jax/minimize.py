"""Function-style front end to the BCFLASH solver."""

import time
from typing import Any, NamedTuple, Optional

import jax
import jax.numpy as jnp
import optimistix as optx
from jaxtyping import Array, ArrayLike, Float

from bcflash_jax.box import project
from bcflash_jax.log import log_header, log_summary
from bcflash_jax.solver import Bcflash
from bcflash_jax.types import ExitStatus, ObjectiveFn


class BcflashResult(NamedTuple):
    """Outcome of :func:`minimize`.

    Attributes:
        x: Final iterate, inside the bounds.
        fun: Objective value at x.
        pg_norm: Norm of the projected gradient at x.
        status: ``ExitStatus`` code.
        message: Human-readable exit reason.
        success: True for the optimal, unbounded and tolerance exits.
        iterations: Number of trust-region iterations.
        cg_iterations: Total CG iterations.
        n_success: Number of accepted steps.
        n_fobj: Objective evaluations.
        n_gobj: Gradient evaluations.
        n_hvp: Hessian-vector products.
        solve_time: Wall-clock time of the solve in seconds.
        result: The optimistix result code.
        aux: Auxiliary objective output at x (None without ``has_aux``).
    """

    x: Float[Array, " n"]
    fun: float
    pg_norm: float
    status: int
    message: str
    success: bool
    iterations: int
    cg_iterations: int
    n_success: int
    n_fobj: int
    n_gobj: int
    n_hvp: int
    solve_time: float
    result: optx.RESULTS
    aux: Any = None


def minimize(
    fn: ObjectiveFn,
    x0: ArrayLike,
    bounds: Optional[ArrayLike] = None,
    args: Any = None,
    *,
    has_aux: bool = False,
    **options: Any,
) -> BcflashResult:
    """Minimize ``fn`` subject to simple bounds with BCFLASH.

    Args:
        fn: Objective ``fn(x, args)``. It returns the scalar objective, or
            ``(f, aux)`` when ``has_aux`` is True.
        x0: Starting point; projected into the bounds before the solve.
        bounds: Array of shape (n, 2) holding [lower, upper] per variable,
            with -inf / inf for unbounded sides. None means unconstrained.
        args: Extra argument passed to ``fn`` and the derivative callbacks.
        has_aux: Whether ``fn`` returns auxiliary output.
        **options: ``Bcflash`` fields (``rtol``, ``atol``, ``max_steps``,
            ``obj_grad_fn``, ``obj_hvp_fn``, ``max_cg_iter``, ``cg_rtol``,
            ``f_min``, ``mu0``, ``fatol``, ``frtol``, ``max_search_steps``,
            ``verbose``).

    Returns:
        BcflashResult. Solver failures are reported in ``status`` and
        ``result``; they never raise.

    Raises:
        ValueError: For malformed bounds or a starting point whose size does
            not match them.
        TypeError: For non-callable derivative callbacks.
    """
    x0 = jnp.asarray(x0, dtype=jnp.result_type(float))
    if x0.ndim != 1:
        raise ValueError(f"x0 must be a 1-D array, got shape {x0.shape}")

    if bounds is not None:
        bounds = jnp.asarray(bounds, dtype=x0.dtype)
        if bounds.ndim != 2 or bounds.shape[0] != x0.shape[0]:
            raise ValueError(
                f"bounds must have shape ({x0.shape[0]}, 2), got {bounds.shape}"
            )

    solver = Bcflash(bounds=bounds, **options)
    if bounds is not None:
        x0 = project(x0, bounds[:, 0], bounds[:, 1])

    if solver.verbose >= 2:
        log_header(solver, x0.shape[0])

    start = time.perf_counter()
    sol = optx.minimise(
        fn,
        solver,
        x0,
        args,
        has_aux=has_aux,
        max_steps=solver.max_steps,
        throw=False,
    )
    x = jax.block_until_ready(sol.value)
    solve_time = time.perf_counter() - start
    # Flush per-iteration log lines before the summary.
    jax.effects_barrier()

    stats = sol.stats
    status = int(stats["exit_status"])
    if status == ExitStatus.NONE:
        # Stopped by the outer loop before the solver reported a reason.
        status = ExitStatus.ITERATIONS

    result = BcflashResult(
        x=x,
        fun=float(stats["final_objective"]),
        pg_norm=float(stats["pg_norm"]),
        status=status,
        message=ExitStatus.message(status),
        success=ExitStatus.is_success(status),
        iterations=int(stats["iterations"]),
        cg_iterations=int(stats["cg_iterations"]),
        n_success=int(stats["n_success"]),
        n_fobj=int(stats["n_fobj"]),
        n_gobj=int(stats["n_gobj"]),
        n_hvp=int(stats["n_hvp"]),
        solve_time=solve_time,
        result=sol.result,
        aux=sol.aux if has_aux else None,
    )
    log_summary(result, float(stats["stop_tol"]), solver.verbose)
    return result
