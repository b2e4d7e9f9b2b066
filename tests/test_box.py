"""Unit tests for the box geometry helpers."""

import jax
import jax.numpy as jnp
import numpy as np

from bcflash_jax.box import breakpt, free_mask, gpnrm2, gpstep, project, trqsol

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


class TestProject:
    def test_clamps_to_bounds(self):
        x = jnp.array([-2.0, 0.5, 3.0])
        lower = jnp.array([-1.0, 0.0, 0.0])
        upper = jnp.array([1.0, 1.0, 2.0])
        np.testing.assert_array_equal(project(x, lower, upper), [-1.0, 0.5, 2.0])

    def test_idempotent(self):
        rng = np.random.default_rng(0)
        x = jnp.asarray(rng.normal(size=10) * 3)
        lower = -jnp.ones(10)
        upper = jnp.ones(10)
        px = project(x, lower, upper)
        np.testing.assert_array_equal(project(px, lower, upper), px)

    def test_infinite_bounds(self):
        x = jnp.array([-1e10, 1e10])
        lower = jnp.array([-jnp.inf, 0.0])
        upper = jnp.array([0.0, jnp.inf])
        np.testing.assert_array_equal(project(x, lower, upper), [-1e10, 1e10])


class TestGpstep:
    def test_clipped_coordinates_go_to_bound(self):
        """x + 2w = [2, -1.5] leaves the unit box on both sides."""
        x = jnp.array([0.0, 0.5])
        w = jnp.array([1.0, -1.0])
        s = gpstep(x, 2.0, w, jnp.zeros(2), jnp.ones(2))
        np.testing.assert_allclose(s, [1.0, -0.5])

    def test_unclipped_coordinates_move_by_alpha_w(self):
        x = jnp.array([0.5, 0.5])
        w = jnp.array([1.0, -2.0])
        s = gpstep(x, 0.1, w, jnp.zeros(2), jnp.ones(2))
        np.testing.assert_allclose(s, [0.1, -0.2])

    def test_negative_alpha(self):
        """Negative alpha walks along -w (the Cauchy path uses -alpha*g)."""
        x = jnp.array([0.5])
        g = jnp.array([1.0])
        s = gpstep(x, -1.0, g, jnp.zeros(1), jnp.ones(1))
        np.testing.assert_allclose(s, [-0.5])

    def test_matches_projection(self):
        rng = np.random.default_rng(1)
        lower = jnp.asarray(rng.uniform(-2, -1, size=8))
        upper = jnp.asarray(rng.uniform(1, 2, size=8))
        x = project(jnp.asarray(rng.normal(size=8)), lower, upper)
        w = jnp.asarray(rng.normal(size=8))
        s = gpstep(x, 1.7, w, lower, upper)
        np.testing.assert_allclose(s, project(x + 1.7 * w, lower, upper) - x)


class TestGpnrm2:
    def test_sign_rules(self):
        """Active bounds only count when the gradient points outward."""
        x = jnp.array([0.0, 1.0, 0.5, 0.3])
        lower = jnp.array([0.0, 0.0, 0.0, 0.3])
        upper = jnp.array([1.0, 1.0, 1.0, 0.3])

        # At lower with g > 0, at upper with g < 0, fixed: all excluded.
        g = jnp.array([1.0, -1.0, 2.0, 5.0])
        np.testing.assert_allclose(gpnrm2(x, lower, upper, g), 2.0)

        # At lower with g < 0 and at upper with g > 0 both count.
        g = jnp.array([-3.0, 4.0, 0.0, 5.0])
        np.testing.assert_allclose(gpnrm2(x, lower, upper, g), 5.0)

    def test_unbounded_is_gradient_norm(self):
        g = jnp.array([3.0, -4.0])
        pg = gpnrm2(jnp.zeros(2), jnp.full(2, -jnp.inf), jnp.full(2, jnp.inf), g)
        np.testing.assert_allclose(pg, 5.0)

    def test_zero_at_kkt_point(self):
        """min (x-2)^2 on [0, 1] is attained at the upper bound."""
        x = jnp.array([1.0])
        g = 2.0 * (x - 2.0)
        assert gpnrm2(x, jnp.zeros(1), jnp.ones(1), g) == 0.0


class TestBreakpt:
    def test_min_and_max(self):
        x = jnp.array([0.0, 0.5, 1.0])
        w = jnp.array([1.0, -1.0, 1.0])
        count, brpt_min, brpt_max = breakpt(x, w, jnp.zeros(3), jnp.ones(3))

        # The last coordinate already sits on the bound it moves toward.
        assert int(count) == 2
        np.testing.assert_allclose(brpt_min, 0.5)
        np.testing.assert_allclose(brpt_max, 1.0)

    def test_no_breakpoints(self):
        x = jnp.array([0.0, 1.0])
        w = jnp.array([-1.0, 1.0])
        count, brpt_min, brpt_max = breakpt(x, w, jnp.zeros(2), jnp.ones(2))
        assert int(count) == 0
        assert float(brpt_min) == 0.0
        assert float(brpt_max) == 0.0

    def test_infinite_bound(self):
        x = jnp.array([0.0, 0.0])
        w = jnp.array([2.0, 1.0])
        upper = jnp.array([1.0, jnp.inf])
        count, brpt_min, brpt_max = breakpt(x, w, jnp.full(2, -jnp.inf), upper)
        assert int(count) == 2
        np.testing.assert_allclose(brpt_min, 0.5)
        assert jnp.isinf(brpt_max)


class TestTrqsol:
    def test_from_origin(self):
        sigma = trqsol(jnp.zeros(2), jnp.array([1.0, 0.0]), 2.0)
        np.testing.assert_allclose(sigma, 2.0)

    def test_from_interior_point(self):
        """||[1, 0] + sigma*[1, 0]|| = 2  =>  sigma = 1."""
        sigma = trqsol(jnp.array([1.0, 0.0]), jnp.array([1.0, 0.0]), 2.0)
        np.testing.assert_allclose(sigma, 1.0)

    def test_lands_on_sphere(self):
        rng = np.random.default_rng(2)
        for _ in range(5):
            x = jnp.asarray(rng.normal(size=4))
            x = 0.5 * x / jnp.linalg.norm(x)
            p = jnp.asarray(rng.normal(size=4))
            sigma = trqsol(x, p, 1.5)
            assert sigma >= 0
            np.testing.assert_allclose(jnp.linalg.norm(x + sigma * p), 1.5)


class TestFreeMask:
    def test_strict_interior(self):
        x = jnp.array([0.0, 0.5, 1.0, 0.3])
        lower = jnp.array([0.0, 0.0, 0.0, 0.3])
        upper = jnp.array([1.0, 1.0, 1.0, 0.3])
        np.testing.assert_array_equal(
            free_mask(x, lower, upper), [False, True, False, False]
        )
