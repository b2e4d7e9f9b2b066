"""BCFLASH-JAX: bound-constrained trust-region Newton-CG in pure JAX.

This package provides an implementation of the BCFLASH algorithm (a variant
of TRON) for minimizing smooth functions subject to simple bounds, built on
JAX and the Optimistix framework. The Hessian is only accessed through
Hessian-vector products, so the solver scales to large problems.
"""

from bcflash_jax.box import breakpt, free_mask, gpnrm2, gpstep, project, trqsol
from bcflash_jax.cauchy import CauchyResult, cauchy
from bcflash_jax.cg import TRCGResult, trpcg
from bcflash_jax.minimize import BcflashResult, minimize
from bcflash_jax.models import QuadraticModel
from bcflash_jax.solver import Bcflash, BcflashState, update_radius
from bcflash_jax.subspace import ProjectedSearchResult, SubspaceResult, prsrch, spcg
from bcflash_jax.types import (
    CGStatus,
    ExitStatus,
    GradFn,
    HVPFn,
    ObjectiveFn,
    SubspaceStatus,
)

__all__ = [
    # Main solver
    "Bcflash",
    "BcflashState",
    "BcflashResult",
    "minimize",
    "update_radius",
    # Status tables
    "ExitStatus",
    "CGStatus",
    "SubspaceStatus",
    # Types
    "ObjectiveFn",
    "GradFn",
    "HVPFn",
    # Box geometry
    "project",
    "gpstep",
    "gpnrm2",
    "breakpt",
    "trqsol",
    "free_mask",
    # Subproblem kernels
    "trpcg",
    "TRCGResult",
    "cauchy",
    "CauchyResult",
    "prsrch",
    "ProjectedSearchResult",
    "spcg",
    "SubspaceResult",
    # Example problems
    "QuadraticModel",
]
