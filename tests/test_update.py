"""Unit tests for the curvature-pair update engine."""

import jax
import jax.numpy as jnp
import numpy as np

from rqn_jax import (
    Euclidean,
    InverseHessianApproximation,
    Sphere,
    accept_update,
    curvature_pair,
    default_cautious_function,
    history_append,
    history_init,
    update_memory,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def test_default_cautious_function():
    np.testing.assert_allclose(default_cautious_function(2.0), 2e-4)
    assert default_cautious_function(0.0) == 0.0


class TestCurvaturePair:
    def test_euclidean_pair_is_plain_difference(self):
        manifold = Euclidean(3)
        x_old = jnp.array([1.0, 2.0, 3.0])
        step = jnp.array([0.5, -0.5, 0.0])
        x_new = manifold.retract(x_old, step)
        grad_old = jnp.array([1.0, 0.0, -1.0])
        grad_new = jnp.array([0.5, 0.5, 0.0])

        s, y = curvature_pair(manifold, x_old, x_new, step, grad_old, grad_new)
        np.testing.assert_allclose(s, step)
        np.testing.assert_allclose(y, grad_new - grad_old)

    def test_parallel_transport_needs_no_compensation(self):
        manifold = Sphere(3)
        x_old = jnp.array([0.0, 0.0, 1.0])
        step = jnp.array([0.3, 0.0, 0.0])
        x_new = manifold.exp(x_old, step)
        grad_old = jnp.array([0.2, -0.1, 0.0])
        grad_new = manifold.proj(x_new, jnp.array([0.1, 0.4, 0.2]))

        s, y = curvature_pair(
            manifold, x_old, x_new, step, grad_old, grad_new, "parallel"
        )
        np.testing.assert_allclose(jnp.linalg.norm(s), 0.3, rtol=1e-12)
        np.testing.assert_allclose(
            y,
            grad_new - manifold.parallel_transport(x_old, x_new, grad_old),
            atol=1e-12,
        )

    def test_projection_transport_is_length_compensated(self):
        manifold = Sphere(3)
        x_old = jnp.array([0.0, 0.0, 1.0])
        step = jnp.array([0.5, 0.0, 0.0])
        x_new = manifold.retract(x_old, step, "projection")
        grad_old = jnp.array([0.2, -0.1, 0.0])
        grad_new = manifold.proj(x_new, jnp.array([0.1, 0.4, 0.2]))

        s, y = curvature_pair(
            manifold, x_old, x_new, step, grad_old, grad_new, "projection"
        )
        beta = 0.5 / jnp.linalg.norm(s)
        assert beta > 1.0
        np.testing.assert_allclose(s, manifold.proj(x_new, step), atol=1e-12)
        np.testing.assert_allclose(
            y, beta * grad_new - manifold.proj(x_new, grad_old), atol=1e-12
        )

    def test_zero_step(self):
        manifold = Sphere(3)
        x = jnp.array([0.0, 1.0, 0.0])
        grad = jnp.array([0.3, 0.0, 0.1])
        s, y = curvature_pair(manifold, x, x, jnp.zeros(3), grad, grad)
        np.testing.assert_array_equal(s, 0.0)
        np.testing.assert_allclose(y, 0.0, atol=1e-12)


class TestAcceptUpdate:
    manifold = Euclidean(2)
    x = jnp.zeros(2)

    def test_positive_curvature_accepted(self):
        s = jnp.array([1.0, 0.0])
        y = jnp.array([2.0, 0.0])
        assert bool(accept_update(self.manifold, self.x, self.x, s, y, y))
        assert bool(
            accept_update(self.manifold, self.x, self.x, s, y, y, cautious=True)
        )

    def test_zero_step_rejected(self):
        s = jnp.zeros(2)
        y = jnp.array([2.0, 0.0])
        assert not bool(accept_update(self.manifold, self.x, self.x, s, y, y))

    def test_orthogonal_pair_rejected(self):
        s = jnp.array([1.0, 0.0])
        y = jnp.array([0.0, 1.0])
        assert not bool(accept_update(self.manifold, self.x, self.x, s, y, y))

    def test_non_finite_pair_rejected(self):
        s = jnp.array([1.0, 0.0])
        y = jnp.array([jnp.nan, 0.0])
        assert not bool(accept_update(self.manifold, self.x, self.x, s, y, y))

    def test_negative_curvature_needs_cautious_gate(self):
        s = jnp.array([1.0, 0.0])
        y = jnp.array([-1.0, 0.0])
        grad_old = jnp.array([0.5, 0.5])
        assert bool(accept_update(self.manifold, self.x, self.x, s, y, grad_old))
        assert not bool(
            accept_update(self.manifold, self.x, self.x, s, y, grad_old, cautious=True)
        )

    def test_cautious_bound_uses_old_gradient_norm(self):
        s = jnp.array([2.0, 0.0])
        y = jnp.array([1.0, 0.0])  # <s, y> / ||s|| = 1
        small = jnp.array([0.0, 0.5])
        large = jnp.array([0.0, 3.0])
        assert bool(
            accept_update(
                self.manifold,
                self.x,
                self.x,
                s,
                y,
                small,
                cautious=True,
                cautious_function=lambda t: t,
            )
        )
        assert not bool(
            accept_update(
                self.manifold,
                self.x,
                self.x,
                s,
                y,
                large,
                cautious=True,
                cautious_function=lambda t: t,
            )
        )


class TestUpdateMemory:
    def test_rejected_pair_only_transports(self):
        manifold = Sphere(3)
        x_old = jnp.array([1.0, 0.0, 0.0])
        x_new = manifold.exp(x_old, jnp.array([0.0, 0.2, 0.1]))
        history = history_init(x_old, capacity=3)
        history = history_append(
            history, jnp.array([0.0, 1.0, 0.0]), jnp.array([0.0, 2.0, 0.5])
        )
        s = manifold.proj(x_new, jnp.array([0.0, 1.0, 1.0]))

        updated = update_memory(
            manifold, history, x_old, x_new, s, 3.0 * s, jnp.array(False)
        )
        expected = history.transport(manifold, x_old, x_new, "parallel")
        assert int(updated.count) == 1
        np.testing.assert_allclose(updated.steps, expected.steps, atol=1e-12)

    def test_accepted_pair_is_appended(self):
        manifold = Euclidean(2)
        x = jnp.zeros(2)
        history = history_init(x, capacity=2)
        s = jnp.array([1.0, 0.0])
        updated = update_memory(manifold, history, x, x, s, 2.0 * s, jnp.array(True))
        assert int(updated.count) == 1
        np.testing.assert_array_equal(updated.steps[0], s)

    def test_full_memory_update(self):
        manifold = Euclidean(2)
        x = jnp.zeros(2)
        operator = InverseHessianApproximation.identity(manifold, x)
        s = jnp.array([1.0, 1.0])
        y = jnp.array([2.0, 1.0])

        updated = update_memory(
            manifold, operator, x, x, s, y, jnp.array(True), broyden_factor=0.0
        )
        np.testing.assert_allclose(updated.apply(manifold, x, y), s, rtol=1e-12)

        skipped = update_memory(
            manifold, operator, x, x, s, y, jnp.array(False), broyden_factor=0.0
        )
        np.testing.assert_array_equal(skipped.columns, operator.columns)
