"""Type definitions for BCFLASH-JAX.

This module contains type aliases and the status tables used throughout the
package. Array types use jaxtyping for runtime type checking with beartype.
"""

from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function type: fn(x, args) -> (f(x), aux)
ObjectiveFn = Callable[[Vector, Any], tuple[Scalar, Any]]

# Gradient function type: takes parameters and args, returns gradient of objective
# grad_fn(x, args) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Hessian-vector product function type for the objective
# hvp_fn(x, v, args) -> ∇²f(x) @ v
HVPFn = Callable[[Vector, Vector, Any], Vector]

# Hessian-vector product at a fixed point: v -> A @ v
Operator = Callable[[Vector], Vector]


class ExitStatus:
    """Terminal outcomes of the trust-region driver.

    ``NONE`` means the solver is still running. The remaining codes are
    terminal; ``MESSAGES[code]`` is the human-readable reason.
    """

    NONE = 0
    OPTIMAL = 1
    ITERATIONS = 2
    UNBOUNDED = 3
    FATOL = 4
    FRTOL = 5
    UNKNOWN = 6

    MESSAGES = (
        "Running",
        "Optimal solution found",
        "Too many iterations",
        "Unbounded below",
        "Absolute function tolerance",
        "Relative function tolerance",
        "Unknown exit",
    )

    @classmethod
    def message(cls, code: int) -> str:
        return cls.MESSAGES[int(code)]

    @classmethod
    def is_success(cls, code: int) -> bool:
        return int(code) not in (cls.NONE, cls.ITERATIONS, cls.UNKNOWN)


class CGStatus:
    """Exit codes of the trust-region conjugate gradient solver."""

    RUNNING = 0
    CONVERGED = 1
    CONVERGED_SCALED = 2
    NEGATIVE_CURVATURE = 3
    BOUNDARY = 4
    MAX_ITERATIONS = 5


class SubspaceStatus:
    """Exit codes of the subspace minimization over faces."""

    RUNNING = 0
    CONVERGED = 1
    TRUST_REGION = 2
    MAX_ITERATIONS = 3
