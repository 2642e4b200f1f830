"""Manifold geometry used by the quasi-Newton solvers.

The solvers only talk to a manifold through the methods of
:class:`AbstractManifold`: inner products, retractions, vector transports and
orthonormal bases of tangent spaces. Any equinox module implementing these
methods can be optimised over.

Two reference manifolds are provided:

* :class:`Euclidean` - ``R^n`` with the standard inner product. Transport is
  the identity, which makes it a convenient flat chart for testing.
* :class:`Sphere` - the unit sphere ``S^{n-1}`` in ``R^n`` with the metric
  induced by the embedding. Both the exponential map and the projection
  retraction are available, together with exact parallel transport along
  geodesics and the (length-distorting) projection transport.
"""

import abc

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float, PRNGKeyArray

from rqn_jax.types import (
    RETRACTION_METHODS,
    TRANSPORT_METHODS,
    Point,
    RetractionMethod,
    Scalar,
    Tangent,
    TangentStack,
    TransportMethod,
)


def _check_method(method: str, allowed: tuple[str, ...], kind: str) -> None:
    if method not in allowed:
        raise ValueError(
            f"Unknown {kind} method {method!r}; expected one of {allowed}."
        )


class AbstractManifold(eqx.Module):
    """Interface of a Riemannian manifold.

    Points and tangent vectors are JAX arrays in an ambient representation.
    Every tangent vector is anchored at a point and must be transported
    before it is combined with vectors anchored elsewhere.
    """

    @property
    @abc.abstractmethod
    def dimension(self) -> int:
        """Intrinsic dimension of the manifold."""

    @abc.abstractmethod
    def inner(self, x: Point, u: Tangent, v: Tangent) -> Scalar:
        """Riemannian inner product of two tangent vectors at ``x``."""

    def norm(self, x: Point, v: Tangent) -> Scalar:
        """Riemannian norm of a tangent vector at ``x``."""
        return jnp.sqrt(jnp.maximum(self.inner(x, v, v), 0.0))

    @abc.abstractmethod
    def proj(self, x: Point, v: Float[Array, "*shape"]) -> Tangent:
        """Orthogonal projection of an ambient vector onto ``T_x M``."""

    @abc.abstractmethod
    def exp(self, x: Point, v: Tangent) -> Point:
        """Exponential map."""

    @abc.abstractmethod
    def log(self, x: Point, y: Point) -> Tangent:
        """Logarithmic map, the inverse of :meth:`exp` near ``x``."""

    @abc.abstractmethod
    def projection_retraction(self, x: Point, v: Tangent) -> Point:
        """First-order retraction obtained by projecting ``x + v``."""

    @abc.abstractmethod
    def parallel_transport(self, x: Point, y: Point, v: Tangent) -> Tangent:
        """Parallel transport of ``v`` from ``T_x M`` to ``T_y M``."""

    @abc.abstractmethod
    def orthonormal_basis(self, x: Point) -> TangentStack:
        """Orthonormal basis of ``T_x M`` stacked along the leading axis."""

    @abc.abstractmethod
    def random_point(self, key: PRNGKeyArray) -> Point:
        """Sample a point on the manifold."""

    def retract(
        self, x: Point, v: Tangent, method: RetractionMethod = "exp"
    ) -> Point:
        """Move from ``x`` along ``v`` using the requested retraction."""
        _check_method(method, RETRACTION_METHODS, "retraction")
        if method == "exp":
            return self.exp(x, v)
        return self.projection_retraction(x, v)

    def transport(
        self, x: Point, y: Point, v: Tangent, method: TransportMethod = "parallel"
    ) -> Tangent:
        """Transport ``v`` from ``T_x M`` to ``T_y M``."""
        _check_method(method, TRANSPORT_METHODS, "vector transport")
        if method == "parallel":
            return self.parallel_transport(x, y, v)
        return self.proj(y, v)

    def transport_stack(
        self,
        x: Point,
        y: Point,
        vs: TangentStack,
        method: TransportMethod = "parallel",
    ) -> TangentStack:
        """Transport a stack of tangent vectors from ``T_x M`` to ``T_y M``."""
        return jax.vmap(lambda v: self.transport(x, y, v, method))(vs)

    def zero_vector(self, x: Point) -> Tangent:
        return jnp.zeros_like(x)

    def egrad2rgrad(self, x: Point, egrad: Float[Array, "*shape"]) -> Tangent:
        """Convert an Euclidean gradient into the Riemannian gradient.

        Valid for embedded submanifolds with the induced metric.
        """
        return self.proj(x, egrad)

    def random_tangent(self, key: PRNGKeyArray, x: Point) -> Tangent:
        return self.proj(x, jax.random.normal(key, x.shape, dtype=x.dtype))


class Euclidean(AbstractManifold):
    """Flat space ``R^n``.

    Attributes:
        n: Ambient (and intrinsic) dimension.
    """

    n: int = eqx.field(static=True)

    @property
    def dimension(self) -> int:
        return self.n

    def inner(self, x, u, v):
        return jnp.sum(u * v)

    def proj(self, x, v):
        return v

    def exp(self, x, v):
        return x + v

    def log(self, x, y):
        return y - x

    def projection_retraction(self, x, v):
        return x + v

    def parallel_transport(self, x, y, v):
        return v

    def orthonormal_basis(self, x):
        return jnp.eye(self.n, dtype=x.dtype)

    def random_point(self, key):
        return jax.random.normal(key, (self.n,))


class Sphere(AbstractManifold):
    """Unit sphere ``S^{n-1} = {x in R^n : ||x|| = 1}``.

    Tangent vectors at ``x`` are the vectors of ``R^n`` orthogonal to ``x``.
    The intrinsic dimension is ``n - 1``.

    Attributes:
        n: Ambient dimension.
    """

    n: int = eqx.field(static=True)

    def __check_init__(self):
        if self.n < 2:
            raise ValueError(f"Sphere needs an ambient dimension >= 2, got {self.n}.")

    @property
    def dimension(self) -> int:
        return self.n - 1

    def inner(self, x, u, v):
        return jnp.sum(u * v)

    def proj(self, x, v):
        return v - jnp.sum(x * v) * x

    def exp(self, x, v):
        """Follow the great circle through ``x`` with initial velocity ``v``.

        exp_x(v) = cos(||v||) x + sin(||v||) v / ||v||
        """
        norm_v = jnp.linalg.norm(v)
        safe_norm = jnp.where(norm_v > 0, norm_v, 1.0)
        y = jnp.cos(norm_v) * x + jnp.sin(norm_v) * v / safe_norm
        # Renormalise to stay on the sphere in finite precision
        return y / jnp.linalg.norm(y)

    def log(self, x, y):
        cos_theta = jnp.clip(jnp.sum(x * y), -1.0, 1.0)
        theta = jnp.arccos(cos_theta)
        u = self.proj(x, y - x)
        norm_u = jnp.linalg.norm(u)
        safe_norm = jnp.where(norm_u > 0, norm_u, 1.0)
        return jnp.where(norm_u > 0, theta * u / safe_norm, jnp.zeros_like(x))

    def projection_retraction(self, x, v):
        y = x + v
        return y / jnp.linalg.norm(y)

    def parallel_transport(self, x, y, v):
        """Parallel transport along the minimising geodesic from ``x`` to ``y``.

        P(v) = v - <y, v> / (1 + <x, y>) (x + y)

        Undefined for antipodal points.
        """
        return v - (jnp.sum(y * v) / (1.0 + jnp.sum(x * y))) * (x + y)

    def orthonormal_basis(self, x):
        # Householder QR of [x | I]: the first column of Q spans x, the
        # remaining n - 1 columns span its orthogonal complement.
        q, _ = jnp.linalg.qr(
            jnp.concatenate([x[:, None], jnp.eye(self.n, dtype=x.dtype)], axis=1)
        )
        return q[:, 1:].T

    def random_point(self, key):
        x = jax.random.normal(key, (self.n,))
        return x / jnp.linalg.norm(x)
