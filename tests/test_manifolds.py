"""Unit tests for the reference manifolds."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from rqn_jax import Euclidean, Sphere

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


@pytest.fixture
def sphere_points():
    manifold = Sphere(4)
    key_x, key_v, key_w = jax.random.split(jax.random.PRNGKey(42), 3)
    x = manifold.random_point(key_x)
    v = 0.5 * manifold.random_tangent(key_v, x)
    w = manifold.random_tangent(key_w, x)
    return manifold, x, v, w


class TestEuclidean:
    def test_dimension_and_basis(self):
        manifold = Euclidean(3)
        assert manifold.dimension == 3
        basis = manifold.orthonormal_basis(jnp.zeros(3))
        np.testing.assert_array_equal(basis, jnp.eye(3))

    def test_retract_and_transport(self):
        manifold = Euclidean(2)
        x = jnp.array([1.0, 2.0])
        v = jnp.array([0.5, -1.0])
        np.testing.assert_array_equal(manifold.retract(x, v, "exp"), x + v)
        np.testing.assert_array_equal(manifold.retract(x, v, "projection"), x + v)
        np.testing.assert_array_equal(manifold.transport(x, x + v, v), v)


class TestSphere:
    def test_dimension(self):
        assert Sphere(5).dimension == 4

    def test_too_small_rejected(self):
        with pytest.raises(ValueError):
            Sphere(1)

    def test_exp_stays_on_sphere(self, sphere_points):
        manifold, x, v, _ = sphere_points
        y = manifold.exp(x, v)
        np.testing.assert_allclose(jnp.linalg.norm(y), 1.0, rtol=1e-12)

    def test_exp_of_zero_is_identity(self, sphere_points):
        manifold, x, _, _ = sphere_points
        np.testing.assert_allclose(manifold.exp(x, manifold.zero_vector(x)), x)

    def test_log_inverts_exp(self, sphere_points):
        manifold, x, v, _ = sphere_points
        y = manifold.exp(x, v)
        np.testing.assert_allclose(manifold.log(x, y), v, atol=1e-10)

    def test_projection_retraction(self, sphere_points):
        manifold, x, v, _ = sphere_points
        y = manifold.retract(x, v, "projection")
        np.testing.assert_allclose(y, (x + v) / jnp.linalg.norm(x + v))

    def test_unknown_method_rejected(self, sphere_points):
        manifold, x, v, _ = sphere_points
        with pytest.raises(ValueError):
            manifold.retract(x, v, "cayley")
        with pytest.raises(ValueError):
            manifold.transport(x, x, v, "schild")

    def test_orthonormal_basis(self, sphere_points):
        manifold, x, _, _ = sphere_points
        basis = manifold.orthonormal_basis(x)
        assert basis.shape == (3, 4)
        np.testing.assert_allclose(basis @ basis.T, jnp.eye(3), atol=1e-12)
        np.testing.assert_allclose(basis @ x, 0.0, atol=1e-12)

    def test_parallel_transport_round_trip(self, sphere_points):
        """Transporting A -> B -> A returns the original vector."""
        manifold, x, v, w = sphere_points
        y = manifold.exp(x, v)
        there = manifold.transport(x, y, w, "parallel")
        back = manifold.transport(y, x, there, "parallel")
        np.testing.assert_allclose(back, w, atol=1e-12)

    def test_parallel_transport_is_isometric(self, sphere_points):
        manifold, x, v, w = sphere_points
        y = manifold.exp(x, v)
        w_y = manifold.transport(x, y, w)
        v_y = manifold.transport(x, y, v)
        np.testing.assert_allclose(w_y @ y, 0.0, atol=1e-12)
        np.testing.assert_allclose(
            manifold.inner(y, w_y, v_y), manifold.inner(x, w, v), rtol=1e-10
        )

    def test_parallel_transport_of_velocity(self, sphere_points):
        """The geodesic velocity is transported to the velocity at the endpoint."""
        manifold, x, v, _ = sphere_points
        y = manifold.exp(x, v)
        np.testing.assert_allclose(
            manifold.transport(x, y, v), -manifold.log(y, x), atol=1e-10
        )

    def test_projection_transport_shrinks(self, sphere_points):
        manifold, x, v, w = sphere_points
        y = manifold.exp(x, v)
        w_y = manifold.transport(x, y, w, "projection")
        np.testing.assert_allclose(w_y @ y, 0.0, atol=1e-12)
        assert jnp.linalg.norm(w_y) <= jnp.linalg.norm(w) + 1e-12

    def test_egrad2rgrad_projects(self, sphere_points):
        manifold, x, _, _ = sphere_points
        rgrad = manifold.egrad2rgrad(x, jnp.ones(4))
        np.testing.assert_allclose(rgrad @ x, 0.0, atol=1e-12)
