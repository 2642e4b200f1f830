"""Full-memory inverse Hessian approximation on a tangent space.

The operator is stored through its action on an orthonormal basis
``{e_1, ..., e_d}`` of the tangent space at the current iterate. Column ``i``
holds the tangent vector ``H e_i`` and the operator is applied as

    H v = sum_i <e_i, v> * column_i

This costs O(d^2) inner products per application, so it is only viable for
small manifolds. For larger problems use the limited-memory
:class:`rqn_jax.history.CorrectionHistory`.

After every step the columns and the basis they belong to are transported to
the tangent space of the new iterate, re-expressed on the orthonormal basis
there, and updated with a Broyden-class formula built from the transported
curvature pair (s, y). ``broyden_factor = 0`` gives the inverse BFGS update,
``1`` gives the inverse DFP update and fractional values blend the two.
"""

import abc

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from rqn_jax.errors import DimensionMismatchError
from rqn_jax.manifolds import AbstractManifold
from rqn_jax.types import Point, Tangent


class AbstractInverseHessianMemory(eqx.Module):
    """Curvature information carried between quasi-Newton iterations.

    Implementations are immutable PyTrees anchored at the current iterate.
    The solver only uses the three methods below, so full-memory and
    limited-memory variants are interchangeable.
    """

    @abc.abstractmethod
    def direction(
        self, manifold: AbstractManifold, x: Point, grad: Tangent
    ) -> Tangent:
        """Quasi-Newton search direction ``-H grad`` at ``x``."""

    @abc.abstractmethod
    def transport(
        self,
        manifold: AbstractManifold,
        x_old: Point,
        x_new: Point,
        method: str,
    ) -> "AbstractInverseHessianMemory":
        """Move every stored tangent vector from ``T_{x_old}`` to ``T_{x_new}``."""

    @abc.abstractmethod
    def incorporate(
        self,
        manifold: AbstractManifold,
        x: Point,
        s: Tangent,
        y: Tangent,
        broyden_factor: float,
    ) -> "AbstractInverseHessianMemory":
        """Add the curvature pair (s, y), anchored at ``x``, to the memory."""


@jaxtyped(typechecker=beartype)
def square_matrix_vector_product(
    manifold: AbstractManifold,
    x: Float[Array, "*shape"],
    columns: Float[Array, "m *shape"],
    basis: Float[Array, "d *shape"],
    v: Float[Array, "*shape"],
) -> Float[Array, "*shape"]:
    """Apply an operator stored by columns to a tangent vector.

    Computes ``sum_i <basis_i, v>_x * columns_i``.

    Args:
        manifold: Manifold providing the inner product.
        x: Point the tangent space is anchored at.
        columns: Stored operator columns ``H e_i``, one per basis vector.
        basis: Orthonormal basis of ``T_x M``.
        v: Tangent vector at ``x``.

    Returns:
        The tangent vector ``H v``.

    Raises:
        DimensionMismatchError: If the number of columns differs from the
            number of basis vectors.
    """
    if columns.shape[0] != basis.shape[0]:
        raise DimensionMismatchError(expected=basis.shape[0], actual=columns.shape[0])
    coefficients = jax.vmap(lambda e: manifold.inner(x, e, v))(basis)
    return jnp.tensordot(coefficients, columns, axes=1)


def _bfgs_columns(manifold, x, columns, basis, s, y, By):
    """Inverse BFGS update applied to each basis vector.

    H+ e_i = H e_i - (<e_i, s> / <s, y>) H y - (<H y, e_i> / <s, y>) s
             + (<y, H y> <s, e_i> / <s, y>^2) s + (<s, e_i> / <s, y>) s
    """
    sy = manifold.inner(x, s, y)
    yBy = manifold.inner(x, y, By)

    def column(b, e):
        s_e = manifold.inner(x, s, e)
        return (
            b
            - (s_e / sy) * By
            - (manifold.inner(x, By, e) / sy) * s
            + (yBy * s_e / sy**2) * s
            + (s_e / sy) * s
        )

    return jax.vmap(column)(columns, basis)


def _dfp_columns(manifold, x, columns, basis, s, y, By):
    """Inverse DFP update applied to each basis vector.

    H+ e_i = H e_i + (<s, e_i> / <s, y>) s - (<H y, e_i> / <y, H y>) H y
    """
    sy = manifold.inner(x, s, y)
    yBy = manifold.inner(x, y, By)
    safe_yBy = jnp.where(yBy != 0, yBy, 1.0)

    def column(b, e):
        return (
            b
            + (manifold.inner(x, s, e) / sy) * s
            - (manifold.inner(x, By, e) / safe_yBy) * By
        )

    return jax.vmap(column)(columns, basis)


class InverseHessianApproximation(AbstractInverseHessianMemory):
    """Dense inverse Hessian approximation stored by columns.

    Attributes:
        columns: Tangent vectors ``H e_i`` stacked along the leading axis, one
            per orthonormal basis vector of the tangent space at the current
            iterate. The leading dimension equals the manifold dimension.
    """

    columns: Float[Array, "d *shape"]

    @classmethod
    def identity(
        cls, manifold: AbstractManifold, x: Point
    ) -> "InverseHessianApproximation":
        """Identity operator on ``T_x M``: the columns are the basis itself."""
        return cls(columns=manifold.orthonormal_basis(x))

    def apply(self, manifold: AbstractManifold, x: Point, v: Tangent) -> Tangent:
        return square_matrix_vector_product(
            manifold, x, self.columns, manifold.orthonormal_basis(x), v
        )

    def direction(self, manifold, x, grad):
        return -self.apply(manifold, x, grad)

    def transport(self, manifold, x_old, x_new, method):
        # Columns are paired with the basis at x_old. Moving both and reading
        # the result off the basis at x_new keeps H v = sum <e_i, v> H e_i.
        moved_basis = manifold.transport_stack(
            x_old, x_new, manifold.orthonormal_basis(x_old), method
        )
        moved_columns = manifold.transport_stack(x_old, x_new, self.columns, method)
        columns = jax.vmap(
            lambda e: square_matrix_vector_product(
                manifold, x_new, moved_columns, moved_basis, e
            )
        )(manifold.orthonormal_basis(x_new))
        return InverseHessianApproximation(columns=columns)

    def incorporate(self, manifold, x, s, y, broyden_factor):
        basis = manifold.orthonormal_basis(x)
        By = square_matrix_vector_product(manifold, x, self.columns, basis, y)

        # The factor is static, so only the branches in use are traced.
        if broyden_factor == 0.0:
            columns = _bfgs_columns(manifold, x, self.columns, basis, s, y, By)
        elif broyden_factor == 1.0:
            columns = _dfp_columns(manifold, x, self.columns, basis, s, y, By)
        else:
            bfgs = _bfgs_columns(manifold, x, self.columns, basis, s, y, By)
            dfp = _dfp_columns(manifold, x, self.columns, basis, s, y, By)
            columns = (1.0 - broyden_factor) * bfgs + broyden_factor * dfp

        return InverseHessianApproximation(columns=columns)
