"""BCFLASH solver implementation using Optimistix.

This module contains the trust-region Newton-CG minimiser for problems with
simple bounds

    minimize f(x)  subject to  lower <= x <= upper,

following the TRON family of algorithms. Each iteration:

1. Computes a generalized Cauchy step along the projected steepest-descent
   path that satisfies the trust-region and sufficient decrease conditions.
2. Refines it by subspace minimization over faces of the box
   (preconditioned trust-region CG plus projected searches).
3. Compares the actual reduction of f with the reduction predicted by the
   quadratic model, updates the trust-region radius and accepts or rejects
   the step.

The Hessian is never formed. It is accessed only through Hessian-vector
products (HVPs), either user-supplied or computed by forward-over-reverse
automatic differentiation. Gradients are user-supplied or computed with
jax.grad.
"""

from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
import optimistix._misc as optx_misc
from jaxtyping import Array, Bool, Float, Int

from bcflash_jax.box import gpnrm2, project
from bcflash_jax.cauchy import cauchy
from bcflash_jax.log import log_iteration
from bcflash_jax.subspace import spcg
from bcflash_jax.types import ExitStatus, GradFn, HVPFn
from bcflash_jax.utils import grad_closure, hvp_closure, quadratic_model

# Constants used to manipulate the trust-region radius. These are the numbers
# used by TRON.
SIGMA1 = 0.25
SIGMA2 = 0.50
SIGMA3 = 4.00
ETA0 = 1e-4
ETA1 = 0.25
ETA2 = 0.75


class BcflashState(eqx.Module):
    """State for the BCFLASH solver.

    Attributes:
        step_count: Number of iterations performed.
        f_val: Objective value at the current iterate.
        grad: Gradient at the current iterate. Only recomputed after an
            accepted step; a rejected step restores the iterate, so this is
            always the gradient at the point the solver holds.
        aux: Auxiliary output of the objective at the current iterate.
        delta: Trust-region radius.
        alpha_cauchy: Last Cauchy step length, the warm start of the next.
        act_red: Actual reduction of the last step (inf before the first).
        pre_red: Predicted reduction of the last step (inf before the first).
        g_norm0: Norm of the gradient at the starting point.
        n_success: Number of accepted steps.
        cg_iter: CG iterations of the last step.
        cg_total: CG iterations over all steps.
        accepted: Whether the last step was accepted.
        n_fobj: Number of objective evaluations.
        n_gobj: Number of gradient evaluations.
        n_hvp: Number of Hessian-vector products.
    """

    step_count: Int[Array, ""]
    f_val: Float[Array, ""]
    grad: Float[Array, " n"]
    aux: Any

    # Trust-region bookkeeping
    delta: Float[Array, ""]
    alpha_cauchy: Float[Array, ""]
    act_red: Float[Array, ""]
    pre_red: Float[Array, ""]
    g_norm0: Float[Array, ""]
    n_success: Int[Array, ""]

    # Inner iteration counts
    cg_iter: Int[Array, ""]
    cg_total: Int[Array, ""]
    accepted: Bool[Array, ""]

    # Evaluation counters
    n_fobj: Int[Array, ""]
    n_gobj: Int[Array, ""]
    n_hvp: Int[Array, ""]


def step_ratio(
    f: Float[Array, ""],
    f_trial: Float[Array, ""],
    gts: Float[Array, ""],
) -> Float[Array, ""]:
    """Minimizer of the quadratic interpolating f along the step.

    Returns the step fraction used to scale ||s|| in the radius update;
    ``SIGMA3`` when the interpolant has no positive curvature.
    """
    curvature = f_trial - f - gts
    safe = jnp.where(curvature > 0, curvature, 1.0)
    return jnp.where(
        curvature <= 0, SIGMA3, jnp.maximum(SIGMA1, -0.5 * gts / safe)
    )


def update_radius(
    delta: Float[Array, ""],
    act_red: Float[Array, ""],
    pre_red: Float[Array, ""],
    s_norm: Float[Array, ""],
    alpha: Float[Array, ""],
) -> Float[Array, ""]:
    """Update the trust-region radius from the ratio act_red / pre_red.

    Four regions, split by ETA0 < ETA1 < ETA2:

    - unsuccessful (act_red < ETA0*pre_red): shrink below SIGMA2*delta;
    - poor (< ETA1): between SIGMA1*delta and SIGMA2*delta;
    - good (< ETA2): between SIGMA1*delta and SIGMA3*delta;
    - very good: between delta and SIGMA3*delta.

    Inside each region the candidate radius is alpha*||s||.
    """
    shrink = jnp.minimum(jnp.maximum(alpha, SIGMA1) * s_norm, SIGMA2 * delta)
    poor = jnp.maximum(SIGMA1 * delta, jnp.minimum(alpha * s_norm, SIGMA2 * delta))
    good = jnp.maximum(SIGMA1 * delta, jnp.minimum(alpha * s_norm, SIGMA3 * delta))
    very_good = jnp.maximum(delta, jnp.minimum(alpha * s_norm, SIGMA3 * delta))

    return jnp.where(
        (act_red < ETA0 * pre_red) | (act_red == -jnp.inf),
        shrink,
        jnp.where(
            act_red < ETA1 * pre_red,
            poor,
            jnp.where(act_red < ETA2 * pre_red, good, very_good),
        ),
    )


class Bcflash(optx.AbstractMinimiser):
    """Bound-constrained trust-region Newton-CG minimiser (BCFLASH).

    Solves

        minimize f(x)  subject to  bounds[:, 0] <= x <= bounds[:, 1]

    with the TRON algorithm: a generalized Cauchy step followed by subspace
    minimization with a trust-region preconditioned conjugate gradient
    solver and projected searches. The Hessian is only accessed through
    Hessian-vector products.

    Users can optionally supply their own derivative functions:
    - obj_grad_fn: Gradient of objective (else jax.grad).
    - obj_hvp_fn: HVP of objective (else forward-over-reverse AD).

    Termination is checked in a fixed order: optimality of the projected
    gradient, objective below ``f_min``, absolute and relative function
    tolerances, iteration budget, non-finite objective or gradient. The
    reason is reported as an ``ExitStatus`` code in the stats.

    Attributes:
        rtol: Relative tolerance on the projected gradient norm (relative
            to the gradient norm at the starting point).
        atol: Absolute tolerance on the projected gradient norm.
        max_steps: Maximum number of iterations.
        bounds: Box constraints, shape (n, 2) with [lower, upper] per
            variable. Use -jnp.inf / jnp.inf for unbounded dimensions.
            None means unconstrained.
        obj_grad_fn: Optional gradient of objective.
        obj_hvp_fn: Optional HVP of objective.
        max_cg_iter: CG iterations per Newton step (default n).
        cg_rtol: Relative tolerance of the subspace CG solves.
        f_min: Objective floor; below it the problem is declared unbounded.
        mu0: Sufficient decrease constant of the Cauchy and projected
            searches, in (0, 1).
        fatol: Absolute tolerance on the actual and predicted reductions.
        frtol: Relative tolerance on the actual and predicted reductions.
        max_search_steps: Maximum trial step lengths per Cauchy or
            projected search.
        verbose: 0 silent, 1 summary, 2 one log line per iteration.

    Example:
        >>> import jax.numpy as jnp
        >>> import optimistix as optx
        >>> from bcflash_jax import Bcflash
        >>>
        >>> def objective(x, args):
        ...     return jnp.sum((x - 2.0) ** 2), None
        >>>
        >>> bounds = jnp.array([[-1.0, 1.0], [-1.0, 1.0]])
        >>> solver = Bcflash(bounds=bounds)
        >>> sol = optx.minimise(objective, solver, jnp.zeros(2), has_aux=True)
    """

    # Convergence tolerances
    rtol: float = 1e-5
    atol: float = 0.0

    # Norm function for convergence checking (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=optx_misc.max_norm)

    # Maximum iterations
    max_steps: int = 100

    # Box constraints (bounds) on decision variables
    # Shape (n, 2) where bounds[i, 0] = lower, bounds[i, 1] = upper
    bounds: Optional[Float[Array, "n 2"]] = None

    # Optional user-supplied derivative functions
    obj_grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    obj_hvp_fn: Optional[HVPFn] = eqx.field(static=True, default=None)

    # Subspace CG parameters
    max_cg_iter: Optional[int] = eqx.field(static=True, default=None)
    cg_rtol: float = 0.1

    # Stopping and search parameters
    f_min: float = -1e32
    mu0: float = 0.01
    fatol: float = 1e-12
    frtol: float = 1e-12
    max_search_steps: int = eqx.field(static=True, default=50)

    # Log level
    verbose: int = eqx.field(static=True, default=1)

    def __check_init__(self):
        """Validate the configuration at construction time."""
        if self.obj_grad_fn is not None and not callable(self.obj_grad_fn):
            raise TypeError("obj_grad_fn must be callable as obj_grad_fn(x, args)")
        if self.obj_hvp_fn is not None and not callable(self.obj_hvp_fn):
            raise TypeError("obj_hvp_fn must be callable as obj_hvp_fn(x, v, args)")
        if not 0.0 < self.mu0 < 1.0:
            raise ValueError(f"mu0 must lie in (0, 1), got {self.mu0}")
        if self.max_cg_iter is not None and self.max_cg_iter < 1:
            raise ValueError("max_cg_iter must be a positive integer")

        # Bounds are checked with numpy when they are concrete values.
        if self.bounds is not None and not isinstance(self.bounds, jax.core.Tracer):
            bounds_np = np.asarray(self.bounds)
            if bounds_np.ndim != 2 or bounds_np.shape[1] != 2:
                raise ValueError(
                    f"bounds must have shape (n, 2), got {bounds_np.shape}"
                )
            if np.any(bounds_np[:, 0] > bounds_np[:, 1]):
                bad = np.flatnonzero(bounds_np[:, 0] > bounds_np[:, 1])
                raise ValueError(
                    f"lower bound exceeds upper bound at indices {bad.tolist()}"
                )

    def _box(
        self, y: Float[Array, " n"]
    ) -> tuple[Float[Array, " n"], Float[Array, " n"]]:
        """Lower and upper bound vectors in the dtype of y."""
        if self.bounds is None:
            return jnp.full_like(y, -jnp.inf), jnp.full_like(y, jnp.inf)
        bounds = jnp.asarray(self.bounds, dtype=y.dtype)
        return bounds[:, 0], bounds[:, 1]

    def _exit_status(
        self,
        y: Float[Array, " n"],
        state: BcflashState,
    ) -> tuple[Int[Array, ""], Float[Array, ""]]:
        """Return the exit status and the projected gradient norm at y.

        The first satisfied condition wins.
        """
        lower, upper = self._box(y)
        pg_norm = gpnrm2(project(y, lower, upper), lower, upper, state.grad)

        f = state.f_val
        abs_act = jnp.abs(state.act_red)
        abs_f = jnp.abs(f)
        conditions = [
            pg_norm <= jnp.maximum(self.atol, self.rtol * state.g_norm0),
            f < self.f_min,
            (abs_act <= self.fatol) & (state.pre_red <= self.fatol),
            (abs_act <= self.frtol * abs_f) & (state.pre_red <= self.frtol * abs_f),
            state.step_count >= self.max_steps,
            ~jnp.isfinite(f) | ~jnp.all(jnp.isfinite(state.grad)),
        ]
        codes = [
            ExitStatus.OPTIMAL,
            ExitStatus.UNBOUNDED,
            ExitStatus.FATOL,
            ExitStatus.FRTOL,
            ExitStatus.ITERATIONS,
            ExitStatus.UNKNOWN,
        ]
        status = jnp.select(
            conditions,
            [jnp.array(code) for code in codes],
            default=jnp.array(ExitStatus.NONE),
        )
        return status, pg_norm

    def init(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> BcflashState:
        """Initialize the BCFLASH solver state.

        Projects the starting point into the box, evaluates the objective
        and gradient there and sets the initial trust-region radius to the
        gradient norm.

        Args:
            fn: Objective function with signature fn(y, args) -> (f_val, aux).
            y: Initial parameter values.
            args: Additional arguments passed to fn.
            options: Runtime options dictionary.
            f_struct: Structure of function output (for type inference).
            aux_struct: Structure of auxiliary output.
            tags: Lineax tags for the problem.

        Returns:
            Initial BcflashState with all fields populated.
        """
        dtype = y.dtype
        lower, upper = self._box(y)
        x = project(y, lower, upper)

        f_val, aux = fn(x, args)
        f_val = jnp.asarray(f_val, dtype=dtype)
        grad = grad_closure(fn, args, self.obj_grad_fn)(x).astype(dtype)

        g_norm = jnp.linalg.norm(grad)
        # A zero gradient exits as optimal right away; keep delta positive.
        delta = jnp.where(g_norm > 0, g_norm, 1.0).astype(dtype)
        inf = jnp.array(jnp.inf, dtype=dtype)

        state = BcflashState(
            step_count=jnp.array(0),
            f_val=f_val,
            grad=grad,
            aux=aux,
            delta=delta,
            alpha_cauchy=jnp.array(1.0, dtype=dtype),
            act_red=inf,
            pre_red=inf,
            g_norm0=g_norm,
            n_success=jnp.array(0),
            cg_iter=jnp.array(0),
            cg_total=jnp.array(0),
            accepted=jnp.array(True),
            n_fobj=jnp.array(1),
            n_gobj=jnp.array(1),
            n_hvp=jnp.array(0),
        )

        if self.verbose >= 2:
            log_iteration(
                state.step_count,
                f_val,
                gpnrm2(x, lower, upper, grad),
                state.cg_iter,
                state.pre_red,
                delta,
                state.accepted,
            )
        return state

    def step(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: BcflashState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], BcflashState, Any]:
        """Perform one BCFLASH iteration.

        This method:
        1. Builds the Hessian-vector product at the current iterate.
        2. Computes the Cauchy step (warm-started from the last step length).
        3. Refines it by subspace minimization (``spcg``).
        4. Compares actual and predicted reductions and updates the radius.
        5. Accepts the step and recomputes the gradient, or restores the
           current iterate, objective value and gradient.

        Args:
            fn: Objective function.
            y: Current parameter values.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (new_y, new_state, aux).
        """
        dtype = y.dtype
        n = y.shape[0]
        lower, upper = self._box(y)
        x = project(y, lower, upper)
        f = state.f_val
        g = state.grad
        max_cg_iter = n if self.max_cg_iter is None else self.max_cg_iter

        # Step 1: Hessian operator at x
        hvp_fn = hvp_closure(fn, x, args, self.obj_grad_fn, self.obj_hvp_fn)

        # Step 2: Cauchy step
        cp = cauchy(
            hvp_fn,
            x,
            g,
            state.delta,
            state.alpha_cauchy,
            lower,
            upper,
            self.mu0,
            self.max_search_steps,
        )

        # Step 3: Projected Newton step
        sub = spcg(
            hvp_fn,
            x,
            g,
            state.delta,
            self.cg_rtol,
            cp.s,
            max_cg_iter,
            lower,
            upper,
            self.mu0,
            self.max_search_steps,
        )
        s = sub.s
        x_trial = sub.x

        # Step 4: Predicted and actual reductions
        q, gts, _ = quadratic_model(hvp_fn, g, s)
        pre_red = -q

        f_trial, aux_trial = fn(x_trial, args)
        f_trial = jnp.asarray(f_trial, dtype=dtype)
        finite = jnp.isfinite(f_trial)
        act_red = jnp.where(finite, f - f_trial, -jnp.inf)
        s_norm = jnp.linalg.norm(s)

        # Never let the radius exceed the first step until a step succeeds.
        delta = jnp.where(
            state.n_success == 0, jnp.minimum(state.delta, s_norm), state.delta
        )
        alpha = step_ratio(f, jnp.where(finite, f_trial, jnp.inf), gts)
        delta = update_radius(delta, act_red, pre_red, s_norm, alpha)

        # Step 5: Accept or reject
        accepted = act_red > ETA0 * pre_red
        grad_fn = grad_closure(fn, args, self.obj_grad_fn)
        grad_new = jax.lax.cond(
            accepted,
            lambda z: grad_fn(z).astype(dtype),
            lambda z: g,
            x_trial,
        )
        y_new = jnp.where(accepted, x_trial, x)
        f_new = jnp.where(accepted, f_trial, f)
        aux_new = jax.tree_util.tree_map(
            lambda new, old: jnp.where(accepted, new, old), aux_trial, state.aux
        )

        new_state = BcflashState(
            step_count=state.step_count + 1,
            f_val=f_new,
            grad=grad_new,
            aux=aux_new,
            delta=delta.astype(dtype),
            alpha_cauchy=cp.alpha.astype(dtype),
            act_red=act_red.astype(dtype),
            pre_red=pre_red.astype(dtype),
            g_norm0=state.g_norm0,
            n_success=state.n_success + jnp.where(accepted, 1, 0),
            cg_iter=sub.iterations,
            cg_total=state.cg_total + sub.iterations,
            accepted=accepted,
            n_fobj=state.n_fobj + 1,
            n_gobj=state.n_gobj + jnp.where(accepted, 1, 0),
            n_hvp=state.n_hvp + cp.n_hvp + sub.n_hvp + 1,
        )

        if self.verbose >= 2:
            log_iteration(
                new_state.step_count,
                f_new,
                gpnrm2(y_new, lower, upper, grad_new),
                sub.iterations,
                pre_red,
                delta,
                accepted,
            )

        return y_new, new_state, aux_new

    def terminate(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: BcflashState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Check if the solver should terminate.

        Args:
            fn: Objective function.
            y: Current parameter values.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (done, result) where done is a bool indicating
            termination and result is the termination status code.
        """
        status, _ = self._exit_status(y, state)
        done = status != ExitStatus.NONE

        result = jax.lax.cond(
            status == ExitStatus.ITERATIONS,
            lambda: optx.RESULTS.nonlinear_max_steps_reached,
            lambda: jax.lax.cond(
                (status == ExitStatus.UNBOUNDED) | (status == ExitStatus.UNKNOWN),
                lambda: optx.RESULTS.nonlinear_divergence,
                lambda: optx.RESULTS.successful,
            ),
        )

        return done, result

    def postprocess(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: BcflashState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """Post-process the optimization result.

        Args:
            fn: Objective function.
            y: Final parameter values.
            aux: Auxiliary output from last function evaluation.
            args: Additional arguments.
            options: Runtime options.
            state: Final solver state.
            tags: Lineax tags.
            result: Termination result code.

        Returns:
            Tuple of (y, aux, stats) where stats is a dictionary
            containing solver statistics.
        """
        lower, upper = self._box(y)
        status, pg_norm = self._exit_status(y, state)

        stats = {
            "iterations": state.step_count,
            "final_objective": state.f_val,
            "pg_norm": pg_norm,
            "stop_tol": jnp.maximum(self.atol, self.rtol * state.g_norm0),
            "exit_status": status,
            "cg_iterations": state.cg_total,
            "n_success": state.n_success,
            "delta": state.delta,
            "n_fobj": state.n_fobj,
            "n_gobj": state.n_gobj,
            "n_hvp": state.n_hvp,
        }

        return project(y, lower, upper), aux, stats
