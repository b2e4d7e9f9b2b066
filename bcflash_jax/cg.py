"""Preconditioned conjugate gradient for the trust-region subproblem.

Given an operator v -> A @ v, a gradient g and a lower triangular
preconditioner L, ``trpcg`` looks for an approximate minimizer of

    minimize    q(s) = (1/2) s^T A s + g^T s
    subject to  ||L^T s|| <= delta

by running conjugate gradient on the equivalent scaled problem

    minimize    Q(w) = q(s),  w = L^T s
    subject to  ||w|| <= delta.

The iteration stops when CG leaves the trust region, when a direction of
non-positive curvature is generated (in both cases the final iterate lies
on the boundary), or when one of the residual tests is satisfied:

    ||grad q(s)|| <= tol     (original variables)
    ||grad Q(w)|| <= stol    (scaled variables)

The matrix A is accessed only through the operator, so the solver works
unchanged for dense, sparse and matrix-free Hessians.
"""

from typing import Callable, NamedTuple, Optional, Union

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, Int, jaxtyped

from bcflash_jax.box import trqsol
from bcflash_jax.types import CGStatus, Scalar


class TRCGResult(NamedTuple):
    """Result from the trust-region CG solver.

    Attributes:
        w: Final iterate in the scaled variables (``w = L^T s``).
        iterations: Number of CG iterations, one operator product each.
        status: One of the ``CGStatus`` codes.
    """

    w: Float[Array, " n"]
    iterations: Int[Array, ""]
    status: Int[Array, ""]


class _TRCGState(NamedTuple):
    """Internal state for the trust-region CG loop."""

    w: Float[Array, " n"]
    r: Float[Array, " n"]
    t: Float[Array, " n"]
    p: Float[Array, " n"]
    rho: Float[Array, ""]
    iteration: Int[Array, ""]
    status: Int[Array, ""]


def _triangular_solves(
    precond: Optional[Float[Array, "n n"]],
) -> tuple[Callable, Callable]:
    """Return (v -> L^{-1} v, v -> L^{-T} v)."""
    if precond is None:
        return (lambda v: v), (lambda v: v)

    def l_solve(v):
        return jax.scipy.linalg.solve_triangular(precond, v, lower=True)

    def lt_solve(v):
        return jax.scipy.linalg.solve_triangular(precond, v, lower=True, trans="T")

    return l_solve, lt_solve


@jaxtyped(typechecker=beartype)
def trpcg(
    hvp_fn: Callable,
    g: Float[Array, " n"],
    delta: Union[Scalar, float],
    tol: Union[Scalar, float],
    stol: Union[Scalar, float],
    max_iter: int,
    precond: Optional[Float[Array, "n n"]] = None,
) -> TRCGResult:
    """Solve the trust-region subproblem with preconditioned CG.

    Args:
        hvp_fn: Operator v -> A @ v, A symmetric.
        g: Linear term of the quadratic.
        delta: Trust-region radius in the scaled variables.
        tol: Tolerance on the residual in the original variables.
        stol: Tolerance on the residual in the scaled variables.
        max_iter: Maximum number of CG iterations.
        precond: Lower triangular preconditioner L (identity when None).

    Returns:
        TRCGResult. The step in the original variables is ``L^{-T} w``.
        Status is ``NEGATIVE_CURVATURE`` or ``BOUNDARY`` when the iterate was
        moved to the trust-region boundary, ``CONVERGED`` or
        ``CONVERGED_SCALED`` when a residual test was met and
        ``MAX_ITERATIONS`` otherwise.
    """
    l_solve, lt_solve = _triangular_solves(precond)
    dtype = g.dtype

    # Residual t of grad q is -g; residual r of grad Q solves L r = -g.
    t0 = -g
    r0 = l_solve(t0)
    rho0 = jnp.dot(r0, r0)

    init = _TRCGState(
        w=jnp.zeros_like(g),
        r=r0,
        t=t0,
        p=r0,
        rho=rho0,
        iteration=jnp.array(0),
        # g = 0 is a solution on its own
        status=jnp.where(
            rho0 == 0, jnp.array(CGStatus.CONVERGED), jnp.array(CGStatus.RUNNING)
        ),
    )

    def cond_fn(state: _TRCGState):
        return (state.status == CGStatus.RUNNING) & (state.iteration < max_iter)

    def body_fn(state: _TRCGState) -> _TRCGState:
        z = lt_solve(state.p)
        Az = hvp_fn(z)
        q = l_solve(Az)

        ptq = jnp.dot(state.p, q)
        alpha = jnp.where(ptq > 0, state.rho / jnp.where(ptq > 0, ptq, 1.0), 0.0)
        sigma = trqsol(state.w, state.p, delta)

        # Negative curvature or a step past the boundary: stop on the sphere.
        to_boundary = (ptq <= 0) | (alpha >= sigma)
        w_boundary = state.w + sigma * state.p

        w_new = state.w + alpha * state.p
        r_new = state.r - alpha * q
        t_new = state.t - alpha * Az
        rtr = jnp.dot(r_new, r_new)
        rnorm = jnp.sqrt(rtr)
        tnorm = jnp.linalg.norm(t_new)

        status = jnp.where(
            to_boundary,
            jnp.where(ptq <= 0, CGStatus.NEGATIVE_CURVATURE, CGStatus.BOUNDARY),
            jnp.where(
                tnorm <= tol,
                CGStatus.CONVERGED,
                jnp.where(rnorm <= stol, CGStatus.CONVERGED_SCALED, CGStatus.RUNNING),
            ),
        )

        beta = rtr / jnp.where(state.rho > 0, state.rho, 1.0)
        p_new = r_new + beta * state.p

        return _TRCGState(
            w=jnp.where(to_boundary, w_boundary, w_new).astype(dtype),
            r=r_new.astype(dtype),
            t=t_new.astype(dtype),
            p=p_new.astype(dtype),
            rho=rtr.astype(dtype),
            iteration=state.iteration + 1,
            status=status.astype(state.status.dtype),
        )

    final = jax.lax.while_loop(cond_fn, body_fn, init)

    status = jnp.where(
        final.status == CGStatus.RUNNING, CGStatus.MAX_ITERATIONS, final.status
    )
    return TRCGResult(
        w=final.w,
        iterations=final.iteration,
        status=status.astype(final.status.dtype),
    )
