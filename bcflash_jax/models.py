"""Bound-constrained quadratic programs as test and example problems.

A ``QuadraticModel`` is passed as ``args``; the module-level functions have
the callback signatures the solver expects, so they can be used directly as
``fn``, ``obj_grad_fn`` and ``obj_hvp_fn``::

    solver = Bcflash(bounds=model.bounds, obj_grad_fn=gradient, obj_hvp_fn=hvp)
    sol = optx.minimise(objective, solver, x0, args=model, has_aux=True)
"""

from typing import Optional

import equinox as eqx
import jax.numpy as jnp
from jaxtyping import Array, Float


class QuadraticModel(eqx.Module):
    """f(x) = 0.5 x'Qx + c'x on the box [lower, upper].

    Attributes:
        Q: Symmetric matrix of shape (n, n).
        c: Linear term of shape (n,).
        lower: Lower bounds (defaults to -inf).
        upper: Upper bounds (defaults to inf).
    """

    Q: Float[Array, "n n"]
    c: Float[Array, " n"]
    lower: Float[Array, " n"]
    upper: Float[Array, " n"]

    def __init__(
        self,
        Q,
        c,
        lower: Optional[Float[Array, " n"]] = None,
        upper: Optional[Float[Array, " n"]] = None,
    ):
        self.Q = jnp.asarray(Q)
        self.c = jnp.asarray(c, dtype=self.Q.dtype)
        n = self.c.shape[0]
        self.lower = (
            jnp.full(n, -jnp.inf, dtype=self.Q.dtype)
            if lower is None
            else jnp.asarray(lower, dtype=self.Q.dtype)
        )
        self.upper = (
            jnp.full(n, jnp.inf, dtype=self.Q.dtype)
            if upper is None
            else jnp.asarray(upper, dtype=self.Q.dtype)
        )

    def __check_init__(self):
        n = self.c.shape[0]
        if self.Q.shape != (n, n):
            raise ValueError(f"Q must have shape ({n}, {n}), got {self.Q.shape}")
        if self.lower.shape != (n,) or self.upper.shape != (n,):
            raise ValueError(f"lower and upper must have shape ({n},)")

    @property
    def bounds(self) -> Float[Array, "n 2"]:
        return jnp.stack([self.lower, self.upper], axis=1)

    def value(self, x):
        return 0.5 * jnp.dot(x, self.Q @ x) + jnp.dot(self.c, x)


def objective(x, model: QuadraticModel):
    return model.value(x), None


def gradient(x, model: QuadraticModel):
    return model.Q @ x + model.c


def hvp(x, v, model: QuadraticModel):
    return model.Q @ v
