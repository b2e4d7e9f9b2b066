from typing import Any, Callable, Optional

import jax
import jax.numpy as jnp

from bcflash_jax.types import GradFn, HVPFn, ObjectiveFn, Operator


def value_closure(fn: ObjectiveFn, args: Any) -> Callable[[jax.Array], jax.Array]:
    """Drop the auxiliary output and bind ``args``: x -> f(x)."""

    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)[0]

    return wrapped


def grad_closure(
    fn: ObjectiveFn, args: Any, grad_fn: Optional[GradFn] = None
) -> Callable[[jax.Array], jax.Array]:
    """x -> ∇f(x), from the user-supplied gradient or reverse-mode AD."""
    if grad_fn is not None:

        def wrapped(x: jax.Array) -> jax.Array:
            return grad_fn(x, args)

        return wrapped
    return jax.grad(value_closure(fn, args))


def hvp_closure(
    fn: ObjectiveFn,
    x: jax.Array,
    args: Any,
    grad_fn: Optional[GradFn] = None,
    hvp_fn: Optional[HVPFn] = None,
) -> Operator:
    """v -> ∇²f(x) v at a fixed point x.

    Uses the user-supplied HVP when present, otherwise forward-over-reverse
    differentiation of the gradient.
    """
    if hvp_fn is not None:

        def user_hvp(v: jax.Array) -> jax.Array:
            return hvp_fn(x, v, args)

        return user_hvp

    gradient = grad_closure(fn, args, grad_fn)

    def ad_hvp(v: jax.Array) -> jax.Array:
        _, hv = jax.jvp(gradient, (x,), (v.astype(x.dtype),))
        return hv

    return ad_hvp


def quadratic_model(
    hvp: Operator, g: jax.Array, s: jax.Array
) -> tuple[jax.Array, jax.Array, jax.Array]:
    """Evaluate q(s) = 0.5 s'As + g's.

    Returns ``(q, g's, As)`` so callers can reuse the product.
    """
    As = hvp(s)
    gts = jnp.dot(g, s)
    return 0.5 * jnp.dot(s, As) + gts, gts, As
