"""Generalized Cauchy step for bound-constrained trust-region methods.

The Cauchy step is computed for the quadratic

    q(s) = (1/2) s^T A s + g^T s.

Given a parameter alpha, the step along the projected steepest-descent path
is

    s[alpha] = P[x - alpha*g] - x,

with P the projection onto [lower, upper]. The Cauchy step satisfies the
trust-region constraint and the sufficient decrease condition

    ||s|| <= delta,    q(s) <= mu0 * g^T s,

where mu0 is a constant in (0, 1). Starting from the previous value of
alpha, the step length is reduced geometrically when the trial step fails
either test, and increased geometrically (never past the last breakpoint of
the path) while it passes both.
"""

from typing import Callable, NamedTuple, Union

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from bcflash_jax.box import breakpt, gpstep
from bcflash_jax.types import Scalar
from bcflash_jax.utils import quadratic_model

INTERP_FACTOR = 0.1
EXTRAP_FACTOR = 10.0


class CauchyResult(NamedTuple):
    """Result of the Cauchy step computation.

    Attributes:
        alpha: Accepted step length along -g, reused as the next warm start.
        s: The Cauchy step P[x - alpha*g] - x.
        n_hvp: Number of operator products used.
    """

    alpha: Scalar
    s: Float[Array, " n"]
    n_hvp: Int[Array, ""]


class _SearchState(NamedTuple):
    alpha: Scalar
    alpha_ok: Scalar
    search: Bool[Array, ""]
    iteration: Int[Array, ""]
    n_hvp: Int[Array, ""]


@jaxtyped(typechecker=beartype)
def cauchy(
    hvp_fn: Callable,
    x: Float[Array, " n"],
    g: Float[Array, " n"],
    delta: Union[Scalar, float],
    alpha: Union[Scalar, float],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
    mu0: float = 0.01,
    max_steps: int = 50,
) -> CauchyResult:
    """Compute a Cauchy step satisfying the trust-region and decrease tests.

    Args:
        hvp_fn: Operator v -> A @ v.
        x: Current feasible point.
        g: Gradient at x.
        delta: Trust-region radius.
        alpha: Initial step length (the previous Cauchy step length).
        lower: Lower bounds.
        upper: Upper bounds.
        mu0: Sufficient decrease constant in (0, 1).
        max_steps: Maximum number of trial step lengths per search.

    Returns:
        CauchyResult with the step length, the step and the product count.
    """
    dtype = x.dtype
    alpha = jnp.asarray(alpha, dtype=dtype)

    # Maximal breakpoint of the path x - alpha*g.
    _, _, brpt_max = breakpt(x, -g, lower, upper)

    def trial(alpha):
        s = gpstep(x, -alpha, g, lower, upper)
        q, gts, _ = quadratic_model(hvp_fn, g, s)
        return jnp.linalg.norm(s), q, gts

    # Decide whether to interpolate or extrapolate from the initial alpha. A
    # first step that reaches the boundary is interpolated.
    s_norm, q, gts = trial(alpha)
    interp = (s_norm >= delta) | (q >= mu0 * gts)

    init = _SearchState(
        alpha=alpha,
        alpha_ok=alpha,
        search=jnp.array(True),
        iteration=jnp.array(0),
        n_hvp=jnp.array(1),
    )

    def interpolate(state: _SearchState) -> _SearchState:
        def cond_fn(state):
            return state.search & (state.iteration < max_steps)

        def body_fn(state):
            alpha = INTERP_FACTOR * state.alpha
            s_norm, q, gts = trial(alpha)
            within = s_norm <= delta
            success = within & (q < mu0 * gts)
            return _SearchState(
                alpha=alpha,
                alpha_ok=alpha,
                search=~success,
                iteration=state.iteration + 1,
                n_hvp=state.n_hvp + 1,
            )

        return jax.lax.while_loop(cond_fn, body_fn, state)

    def extrapolate(state: _SearchState) -> _SearchState:
        def cond_fn(state):
            return (
                state.search
                & (state.alpha <= brpt_max)
                & (state.iteration < max_steps)
            )

        def body_fn(state):
            alpha = EXTRAP_FACTOR * state.alpha
            s_norm, q, gts = trial(alpha)
            within = s_norm <= delta
            # Remember the largest alpha that still passes both tests; stop
            # once the step leaves the trust region.
            success = within & (q <= mu0 * gts)
            return _SearchState(
                alpha=alpha,
                alpha_ok=jnp.where(success, alpha, state.alpha_ok),
                search=within,
                iteration=state.iteration + 1,
                n_hvp=state.n_hvp + 1,
            )

        return jax.lax.while_loop(cond_fn, body_fn, state)

    final = jax.lax.cond(interp, interpolate, extrapolate, init)

    alpha = final.alpha_ok
    s = gpstep(x, -alpha, g, lower, upper)
    return CauchyResult(alpha=alpha, s=s, n_hvp=final.n_hvp)
