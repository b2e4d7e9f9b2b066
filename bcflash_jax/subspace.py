"""Subspace minimization of the bound-constrained quadratic.

This module generates a sequence of approximate minimizers of

    min { q(x) : lower <= x <= upper },   q(x[0] + s) = (1/2) s^T A s + g^T s,

where x[0] is the base point of the trust-region iteration. At each stage
the current point x[k] defines a face (the set of free variables); a
direction p[k] is computed by ``trpcg`` on

    min { q(x[k] + p) : ||p|| <= delta, p(fixed) = 0 },

and the next point x[k+1] is obtained with a projected search along p[k].
Each face fixes at least one more variable than the last, so there are at
most n faces.

Reduced quantities are stored as full-length vectors that are zero outside
the free set. The reduced operator pads its argument with zeros, applies
A and masks the result again, which keeps every shape static under
``jax.jit``.
"""

from typing import Callable, NamedTuple, Union

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from bcflash_jax.box import breakpt, free_mask, gpstep, project
from bcflash_jax.cg import trpcg
from bcflash_jax.types import CGStatus, Operator, Scalar, SubspaceStatus
from bcflash_jax.utils import quadratic_model

PRSRCH_INTERP_FACTOR = 0.5


def free_hvp(hvp_fn: Operator, free: Bool[Array, " n"]) -> Operator:
    """Restrict v -> A @ v to the free variables by zero padding."""

    def reduced(v: Float[Array, " n"]) -> Float[Array, " n"]:
        Av = hvp_fn(jnp.where(free, v, 0.0))
        return jnp.where(free, Av, 0.0)

    return reduced


class ProjectedSearchResult(NamedTuple):
    """Result of the projected search.

    Attributes:
        x: Final point P[x + alpha*w].
        s: Step actually taken, P[x + alpha*w] - x.
        alpha: Final step length.
        n_hvp: Number of operator products used.
    """

    x: Float[Array, " n"]
    s: Float[Array, " n"]
    alpha: Scalar
    n_hvp: Int[Array, ""]


class _PrsrchState(NamedTuple):
    alpha: Scalar
    search: Bool[Array, ""]
    iteration: Int[Array, ""]


@jaxtyped(typechecker=beartype)
def prsrch(
    hvp_fn: Callable,
    x: Float[Array, " n"],
    g: Float[Array, " n"],
    w: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
    mu0: float = 0.01,
    max_steps: int = 50,
) -> ProjectedSearchResult:
    """Projected search along w for the quadratic q(s) = 0.5 s'As + g's.

    The direction w must make q decreasing on the ray x + alpha*w for
    0 <= alpha <= 1. The search starts at alpha = 1 and halves alpha until
    s[alpha] = P[x + alpha*w] - x satisfies

        q(s) <= mu0 * g^T s,

    or alpha drops below the smallest breakpoint of the ray. In the latter
    case alpha is moved up to that breakpoint, which adds at least one
    variable to the active set; the decrease is guaranteed there because q
    is decreasing on the ray.

    Args:
        hvp_fn: Operator v -> A @ v.
        x: Current feasible point.
        g: Gradient of the quadratic at x.
        w: Search direction.
        lower: Lower bounds.
        upper: Upper bounds.
        mu0: Sufficient decrease constant in (0, 1).
        max_steps: Maximum number of trial step lengths.

    Returns:
        ProjectedSearchResult with the new point and the step.
    """
    dtype = x.dtype
    _, brpt_min, _ = breakpt(x, w, lower, upper)

    def cond_fn(state: _PrsrchState):
        return (
            state.search & (state.alpha > brpt_min) & (state.iteration < max_steps)
        )

    def body_fn(state: _PrsrchState) -> _PrsrchState:
        s = gpstep(x, state.alpha, w, lower, upper)
        q, gts, _ = quadratic_model(hvp_fn, g, s)
        success = q <= mu0 * gts
        return _PrsrchState(
            alpha=jnp.where(success, state.alpha, PRSRCH_INTERP_FACTOR * state.alpha),
            search=~success,
            iteration=state.iteration + 1,
        )

    init = _PrsrchState(
        alpha=jnp.ones((), dtype=dtype),
        search=jnp.array(True),
        iteration=jnp.array(0),
    )
    final = jax.lax.while_loop(cond_fn, body_fn, init)

    # Force at least one more variable into the active set.
    alpha = jnp.where(
        (final.alpha < 1) & (final.alpha < brpt_min), brpt_min, final.alpha
    )
    s = gpstep(x, alpha, w, lower, upper)
    x_new = project(x + alpha * w, lower, upper)
    return ProjectedSearchResult(x=x_new, s=s, alpha=alpha, n_hvp=final.iteration)


class SubspaceResult(NamedTuple):
    """Result of the subspace minimization.

    Attributes:
        x: Final point x[0] + s (inside the box).
        s: Total step from the base point.
        iterations: Total number of CG iterations.
        status: One of the ``SubspaceStatus`` codes.
        n_hvp: Number of operator products used.
    """

    x: Float[Array, " n"]
    s: Float[Array, " n"]
    iterations: Int[Array, ""]
    status: Int[Array, ""]
    n_hvp: Int[Array, ""]


class _FaceState(NamedTuple):
    x: Float[Array, " n"]
    s: Float[Array, " n"]
    As: Float[Array, " n"]
    face: Int[Array, ""]
    iterations: Int[Array, ""]
    status: Int[Array, ""]
    n_hvp: Int[Array, ""]


@jaxtyped(typechecker=beartype)
def spcg(
    hvp_fn: Callable,
    x: Float[Array, " n"],
    g: Float[Array, " n"],
    delta: Union[Scalar, float],
    rtol: float,
    s: Float[Array, " n"],
    max_iter: int,
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
    mu0: float = 0.01,
    max_steps: int = 50,
) -> SubspaceResult:
    """Minimize the bound-constrained quadratic over successive faces.

    The starting point is x[1] = P[x[0] + s], where x[0] = x is the base
    point and s is the Cauchy step. The iteration converges when

        ||(g + A s)[free]|| <= rtol * ||g[free]||,

    in which case the final point approximately minimizes q on the face of
    the free variables. It terminates early when the trust region does not
    allow further progress (``trpcg`` hit the boundary or found negative
    curvature); the final point still decreases q.

    Args:
        hvp_fn: Operator v -> A @ v at the base point.
        x: Base point x[0].
        g: Gradient at the base point.
        delta: Trust-region radius.
        rtol: Relative tolerance on the reduced model gradient.
        s: Cauchy step from the base point.
        max_iter: Budget of CG iterations (over all faces).
        lower: Lower bounds.
        upper: Upper bounds.
        mu0: Sufficient decrease constant of the projected search.
        max_steps: Maximum trial step lengths of the projected search.

    Returns:
        SubspaceResult with the final point, the total step and the status
        ``CONVERGED``, ``TRUST_REGION`` or ``MAX_ITERATIONS``.
    """
    n = x.shape[0]
    dtype = x.dtype

    init = _FaceState(
        x=project(x + s, lower, upper),
        s=s,
        As=hvp_fn(s),
        face=jnp.array(0),
        iterations=jnp.array(0),
        status=jnp.array(SubspaceStatus.RUNNING),
        n_hvp=jnp.array(1),
    )

    def cond_fn(state: _FaceState):
        return (state.status == SubspaceStatus.RUNNING) & (state.face < n)

    def body_fn(state: _FaceState) -> _FaceState:
        free = free_mask(state.x, lower, upper)

        # Gradient of q at x[k] on the free variables, and the norm of the
        # reduced gradient at the base point.
        g_free = jnp.where(free, g + state.As, 0.0)
        gf_norm = jnp.linalg.norm(jnp.where(free, g, 0.0))

        reduced_hvp = free_hvp(hvp_fn, free)
        cg = trpcg(reduced_hvp, g_free, delta, rtol * gf_norm, 0.0, max_iter)

        search = prsrch(
            reduced_hvp, state.x, g_free, cg.w, lower, upper, mu0, max_steps
        )

        # s now holds x[k+1] - x[0].
        x_new = jnp.where(free, search.x, state.x)
        s_new = jnp.where(free, state.s + search.s, state.s)
        As_new = hvp_fn(s_new)

        gf_norm_new = jnp.linalg.norm(jnp.where(free, g + As_new, 0.0))
        iterations = state.iterations + cg.iterations

        status = jnp.where(
            gf_norm_new <= rtol * gf_norm,
            SubspaceStatus.CONVERGED,
            jnp.where(
                (cg.status == CGStatus.NEGATIVE_CURVATURE)
                | (cg.status == CGStatus.BOUNDARY),
                SubspaceStatus.TRUST_REGION,
                jnp.where(
                    iterations > max_iter,
                    SubspaceStatus.MAX_ITERATIONS,
                    SubspaceStatus.RUNNING,
                ),
            ),
        )

        advanced = _FaceState(
            x=x_new.astype(dtype),
            s=s_new.astype(dtype),
            As=As_new.astype(dtype),
            face=state.face + 1,
            iterations=iterations,
            status=status.astype(state.status.dtype),
            n_hvp=state.n_hvp + cg.iterations + search.n_hvp + 1,
        )
        # No free variables left: the face problem is solved.
        done = state._replace(
            face=state.face + 1,
            status=jnp.array(SubspaceStatus.CONVERGED, dtype=state.status.dtype),
        )
        return jax.lax.cond(jnp.any(free), lambda: advanced, lambda: done)

    final = jax.lax.while_loop(cond_fn, body_fn, init)

    # All n faces used: converged only if nothing is left free.
    exhausted = final.status == SubspaceStatus.RUNNING
    leftover = jnp.any(free_mask(final.x, lower, upper))
    status = jnp.where(
        exhausted,
        jnp.where(leftover, SubspaceStatus.MAX_ITERATIONS, SubspaceStatus.CONVERGED),
        final.status,
    )
    return SubspaceResult(
        x=final.x,
        s=final.s,
        iterations=final.iterations,
        status=status.astype(final.status.dtype),
        n_hvp=final.n_hvp,
    )
