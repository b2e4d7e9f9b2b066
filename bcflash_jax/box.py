"""Box geometry for bound-constrained trust-region methods.

Stateless helpers on vectors constrained to the box ``[lower, upper]``:

- ``project``: Euclidean projection onto the box.
- ``gpstep``: the projected step ``P[x + alpha*w] - x``.
- ``gpnrm2``: norm of the projected gradient, the stopping measure.
- ``breakpt``: breakpoints of the ray ``x + t*w``.
- ``trqsol``: positive root of the trust-region equation.

Infinite bounds (``-inf`` / ``inf``) are allowed everywhere.
"""

from typing import Union

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from bcflash_jax.types import Scalar


@jaxtyped(typechecker=beartype)
def project(
    x: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Project x onto the box [lower, upper]."""
    return jnp.minimum(jnp.maximum(x, lower), upper)


@jaxtyped(typechecker=beartype)
def gpstep(
    x: Float[Array, " n"],
    alpha: Union[Scalar, float],
    w: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute the gradient projection step s = P[x + alpha*w] - x.

    Coordinates of ``x + alpha*w`` that leave the box are sent to the
    violated bound; the others move by exactly ``alpha*w``.

    Args:
        x: Feasible point.
        alpha: Step length (may be negative, e.g. ``-alpha`` along ``g``).
        w: Direction.
        lower: Lower bounds.
        upper: Upper bounds.

    Returns:
        The step s.
    """
    aw = alpha * w
    trial = x + aw
    below = trial < lower
    above = trial > upper
    return jnp.where(below, lower - x, jnp.where(above, upper - x, aw))


@jaxtyped(typechecker=beartype)
def gpnrm2(
    x: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
    g: Float[Array, " n"],
) -> Scalar:
    """2-norm of the projected gradient at x.

    Fixed coordinates (lower == upper) never contribute. A coordinate at its
    lower bound contributes only when g < 0, one at its upper bound only when
    g > 0, and interior coordinates always contribute. The result is exactly
    zero at a stationary point of the bound-constrained problem.
    """
    not_fixed = lower < upper
    at_lower = not_fixed & (x == lower)
    at_upper = not_fixed & (x == upper)
    interior = not_fixed & ~(at_lower | at_upper)

    contributes = interior | (at_lower & (g < 0)) | (at_upper & (g > 0))
    pg = jnp.where(contributes, g, 0.0)
    return jnp.sqrt(jnp.sum(pg**2))


@jaxtyped(typechecker=beartype)
def breakpt(
    x: Float[Array, " n"],
    w: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> tuple[Int[Array, ""], Scalar, Scalar]:
    """Breakpoints of the projection of the ray x + t*w on [lower, upper].

    A coordinate has a breakpoint when it moves toward a bound it has not
    reached yet: ``x < upper`` with ``w > 0`` or ``x > lower`` with ``w < 0``.
    Its breakpoint is the step at which it reaches that bound (``inf`` for an
    infinite bound).

    Returns:
        Tuple ``(count, brpt_min, brpt_max)``. When there are no breakpoints
        all three are zero.
    """
    inc = (x < upper) & (w > 0)
    dec = (x > lower) & (w < 0)
    has_brpt = inc | dec
    count = jnp.sum(has_brpt)

    safe_w = jnp.where(has_brpt, w, 1.0)
    dist = jnp.where(inc, upper - x, lower - x)
    brpts = jnp.where(has_brpt, dist / safe_w, 0.0)

    brpt_min = jnp.min(jnp.where(has_brpt, brpts, jnp.inf))
    brpt_max = jnp.max(jnp.where(has_brpt, brpts, -jnp.inf))

    none = count == 0
    zero = jnp.zeros((), dtype=x.dtype)
    return (
        count,
        jnp.where(none, zero, brpt_min).astype(x.dtype),
        jnp.where(none, zero, brpt_max).astype(x.dtype),
    )


@jaxtyped(typechecker=beartype)
def trqsol(
    x: Float[Array, " n"],
    p: Float[Array, " n"],
    delta: Union[Scalar, float],
) -> Scalar:
    """Largest non-negative solution of ||x + sigma*p|| = delta.

    The root is computed with the cancellation-free form of the quadratic
    formula. A non-negative solution is guaranteed when ||x|| <= delta and
    p != 0; when the equation has no solution the result is 0.
    """
    ptx = jnp.dot(p, x)
    ptp = jnp.dot(p, p)
    xtx = jnp.dot(x, x)
    dsq = delta**2

    rad = ptx**2 + ptp * (dsq - xtx)
    rad = jnp.sqrt(jnp.maximum(rad, 0.0))

    pos_denom = jnp.where(ptx > 0, ptx + rad, 1.0)
    safe_ptp = jnp.where(ptp > 0, ptp, 1.0)
    sigma = jnp.where(
        ptx > 0,
        (dsq - xtx) / pos_denom,
        jnp.where(rad > 0, (rad - ptx) / safe_ptp, 0.0),
    )
    return jnp.maximum(sigma, 0.0).astype(x.dtype)


@jaxtyped(typechecker=beartype)
def free_mask(
    x: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Bool[Array, " n"]:
    """Coordinates strictly inside the box (the free variables)."""
    return (lower < x) & (x < upper)
