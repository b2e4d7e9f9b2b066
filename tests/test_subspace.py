"""Unit tests for the Cauchy step, the projected search and spcg.

These are the pieces of one trust-region iteration of BCFLASH, tested on
small quadratics q(s) = 0.5 s'As + g's with dense A.
"""

import jax
import jax.numpy as jnp
import numpy as np

from bcflash_jax.box import free_mask, project
from bcflash_jax.cauchy import cauchy
from bcflash_jax.cg import trpcg
from bcflash_jax.subspace import free_hvp, prsrch, spcg
from bcflash_jax.types import CGStatus, SubspaceStatus

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)

MU0 = 0.01


def _q(A, g, s):
    return 0.5 * s @ (A @ s) + g @ s


def _identity(v):
    return v


class TestCauchy:
    """Tests for the generalized Cauchy step."""

    def test_plain_steepest_descent(self):
        """alpha = 1 passes both tests and alpha = 10 leaves the region."""
        g = jnp.array([1.0, 0.5])
        x = jnp.zeros(2)
        lower, upper = jnp.full(2, -100.0), jnp.full(2, 100.0)

        result = cauchy(_identity, x, g, 2.0, 1.0, lower, upper)

        np.testing.assert_allclose(result.alpha, 1.0)
        np.testing.assert_allclose(result.s, -g)
        assert int(result.n_hvp) == 2

    def test_interpolation(self):
        """||g|| > delta: alpha is cut by 10 until the step fits."""
        g = jnp.array([1.0, 0.5])
        x = jnp.zeros(2)
        lower, upper = jnp.full(2, -100.0), jnp.full(2, 100.0)

        result = cauchy(_identity, x, g, 0.5, 1.0, lower, upper)

        np.testing.assert_allclose(result.alpha, 0.1)
        np.testing.assert_allclose(result.s, -0.1 * g)

    def test_step_on_boundary_interpolates(self):
        """||g|| = delta exactly: the first trial already reaches the boundary."""
        g = jnp.array([3.0, 4.0])
        x = jnp.zeros(2)
        lower, upper = jnp.full(2, -100.0), jnp.full(2, 100.0)

        result = cauchy(_identity, x, g, 5.0, 1.0, lower, upper)

        np.testing.assert_allclose(result.alpha, 0.1)
        np.testing.assert_allclose(result.s, -0.1 * g)

    def test_extrapolation(self):
        """A small warm start grows while both tests hold."""
        g = jnp.array([1.0, 0.0])
        x = jnp.zeros(2)
        lower, upper = jnp.full(2, -100.0), jnp.full(2, 100.0)

        result = cauchy(_identity, x, g, 5.0, 0.01, lower, upper)

        # 0.01 -> 0.1 -> 1 pass, 10 leaves the trust region.
        np.testing.assert_allclose(result.alpha, 1.0)
        np.testing.assert_allclose(result.s, [-1.0, 0.0])

    def test_path_bends_at_bounds(self):
        g = jnp.array([-2.0, 1.0])
        x = jnp.zeros(2)

        result = cauchy(_identity, x, g, 10.0, 1.0, jnp.zeros(2), jnp.ones(2))

        # The second coordinate starts on the lower bound and g pushes it out.
        np.testing.assert_allclose(result.s, [1.0, 0.0])

    def test_trust_region_and_decrease(self):
        rng = np.random.default_rng(0)
        n = 6
        M = rng.normal(size=(n, n))
        A = jnp.asarray(M @ M.T + 0.1 * np.eye(n))
        lower = jnp.asarray(rng.uniform(-2, -0.5, size=n))
        upper = jnp.asarray(rng.uniform(0.5, 2, size=n))

        for seed in range(5):
            r = np.random.default_rng(seed + 10)
            x = project(jnp.asarray(r.normal(size=n)), lower, upper)
            g = jnp.asarray(r.normal(size=n))
            for delta in (0.05, 0.5, 5.0):
                result = cauchy(lambda v: A @ v, x, g, delta, 1.0, lower, upper)
                s = result.s
                assert jnp.linalg.norm(s) <= delta * (1 + 1e-12)
                assert _q(A, g, s) <= MU0 * (g @ s)
                np.testing.assert_allclose(project(x + s, lower, upper), x + s)


class TestPrsrch:
    """Tests for the projected search."""

    def test_full_step_accepted(self):
        x = jnp.array([0.5, 0.5])
        g = jnp.array([-1.0, 0.0])
        w = jnp.array([1.0, 0.0])

        result = prsrch(_identity, x, g, w, jnp.zeros(2), jnp.ones(2))

        np.testing.assert_allclose(result.alpha, 1.0)
        np.testing.assert_allclose(result.x, [1.0, 0.5])
        np.testing.assert_allclose(result.s, [0.5, 0.0])
        assert int(result.n_hvp) == 1

    def test_halving(self):
        """alpha = 1 and 0.5 overshoot the minimizer; 0.25 is accepted."""
        x = jnp.array([0.5, 0.999])
        g = jnp.array([-1.0, 0.0])
        w = jnp.array([4.0, 1.0])
        lower = jnp.zeros(2)
        upper = jnp.array([10.0, 1.0])

        result = prsrch(_identity, x, g, w, lower, upper)

        np.testing.assert_allclose(result.alpha, 0.25)
        np.testing.assert_allclose(result.x, [1.5, 1.0])
        np.testing.assert_allclose(result.s, [1.0, 0.001], atol=1e-12)
        assert int(result.n_hvp) == 3

    def test_moves_to_first_breakpoint(self):
        """An ascent direction is cut back to its smallest breakpoint."""
        x = jnp.array([0.5])
        g = jnp.array([1.0])
        w = jnp.array([1.0])

        result = prsrch(_identity, x, g, w, jnp.zeros(1), jnp.array([0.6]))

        np.testing.assert_allclose(result.alpha, 0.1)
        np.testing.assert_allclose(result.x, [0.6])
        assert int(result.n_hvp) == 4


class TestFreeHVP:
    def test_masks_input_and_output(self):
        A = jnp.array([[2.0, 1.0], [1.0, 3.0]])
        free = jnp.array([True, False])
        reduced = free_hvp(lambda v: A @ v, free)
        np.testing.assert_allclose(reduced(jnp.array([1.0, 5.0])), [2.0, 0.0])


class TestSPCG:
    """Tests for the subspace minimization."""

    def test_unconstrained_newton_step(self):
        """Without active bounds spcg reaches the minimizer of q."""
        A = jnp.array([[4.0, 1.0, 0.0], [1.0, 3.0, 0.5], [0.0, 0.5, 2.0]])
        g = jnp.array([1.0, -2.0, 0.5])
        x = jnp.zeros(3)
        lower, upper = jnp.full(3, -jnp.inf), jnp.full(3, jnp.inf)
        hvp = lambda v: A @ v  # noqa: E731

        cp = cauchy(hvp, x, g, 100.0, 1.0, lower, upper)
        result = spcg(hvp, x, g, 100.0, 1e-8, cp.s, 3, lower, upper)

        assert int(result.status) == SubspaceStatus.CONVERGED
        np.testing.assert_allclose(result.s, -jnp.linalg.solve(A, g), rtol=1e-6)
        np.testing.assert_allclose(result.x, x + result.s)

    def test_all_variables_active(self):
        """The Cauchy point fixes every variable: nothing left to do."""
        g = jnp.array([-2.0, 1.0])
        x = jnp.zeros(2)
        lower, upper = jnp.zeros(2), jnp.ones(2)

        cp = cauchy(_identity, x, g, 10.0, 1.0, lower, upper)
        result = spcg(_identity, x, g, 10.0, 0.1, cp.s, 2, lower, upper)

        assert int(result.status) == SubspaceStatus.CONVERGED
        assert int(result.iterations) == 0
        np.testing.assert_allclose(result.x, [1.0, 0.0])

    def test_trust_region_stop(self):
        g = jnp.array([3.0, 4.0])
        x = jnp.zeros(2)
        lower, upper = jnp.full(2, -jnp.inf), jnp.full(2, jnp.inf)

        cp = cauchy(_identity, x, g, 1.0, 1.0, lower, upper)
        result = spcg(_identity, x, g, 1.0, 0.1, cp.s, 2, lower, upper)

        assert int(result.status) == SubspaceStatus.TRUST_REGION
        assert _q(jnp.eye(2), g, result.s) < _q(jnp.eye(2), g, cp.s)

    def test_bound_constrained_decrease(self):
        rng = np.random.default_rng(7)
        n = 8
        M = rng.normal(size=(n, n))
        A = jnp.asarray(M @ M.T + np.eye(n))
        g = jnp.asarray(rng.normal(size=n) * 5)
        lower, upper = -jnp.ones(n), jnp.ones(n)
        x = project(jnp.asarray(rng.normal(size=n) * 0.5), lower, upper)
        hvp = lambda v: A @ v  # noqa: E731

        cp = cauchy(hvp, x, g, 2.0, 1.0, lower, upper)
        result = spcg(hvp, x, g, 2.0, 0.1, cp.s, n, lower, upper)

        # Feasible, consistent with s, and no worse than the Cauchy point.
        np.testing.assert_allclose(project(result.x, lower, upper), result.x)
        np.testing.assert_allclose(result.x, x + result.s, atol=1e-12)
        assert _q(A, g, result.s) <= _q(A, g, cp.s) + 1e-12


def _face_steps(A, g, x, s, delta, lower, upper, rtol=0.1):
    """Replay the face loop of spcg, returning the step after every face."""
    n = x.shape[0]
    hvp = lambda v: A @ v  # noqa: E731
    x = project(x + s, lower, upper)
    steps = [s]
    for _ in range(n):
        free = free_mask(x, lower, upper)
        if not bool(jnp.any(free)):
            break
        g_free = jnp.where(free, g + A @ s, 0.0)
        gf_norm = jnp.linalg.norm(jnp.where(free, g, 0.0))
        reduced = free_hvp(hvp, free)
        cg = trpcg(reduced, g_free, delta, rtol * gf_norm, 0.0, n)
        search = prsrch(reduced, x, g_free, cg.w, lower, upper)
        x = jnp.where(free, search.x, x)
        s = jnp.where(free, s + search.s, s)
        steps.append(s)
        if int(cg.status) in (CGStatus.NEGATIVE_CURVATURE, CGStatus.BOUNDARY):
            break
    return steps


class TestFaceTransitions:
    """The quadratic model never increases from one face to the next."""

    def test_indefinite_model_decreases_per_face(self):
        n = 6
        lower, upper = -jnp.ones(n), jnp.ones(n)
        for seed in range(20):
            rng = np.random.default_rng(100 + seed)
            M = rng.normal(size=(n, n))
            A = jnp.asarray(M + M.T)
            g = jnp.asarray(rng.normal(size=n) * 2)
            x = project(jnp.asarray(rng.normal(size=n) * 0.5), lower, upper)
            delta = float(rng.uniform(0.5, 3.0))

            cp = cauchy(lambda v: A @ v, x, g, delta, 1.0, lower, upper)
            steps = _face_steps(A, g, x, cp.s, delta, lower, upper)

            values = [float(_q(A, g, s)) for s in steps]
            for before, after in zip(values[:-1], values[1:]):
                assert after <= before + 1e-12
            assert values[-1] <= 0.0
