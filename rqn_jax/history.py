"""Limited-memory correction history for Riemannian L-BFGS.

Instead of a dense operator on the tangent space (O(d^2) memory), L-BFGS
keeps the last ``capacity`` curvature pairs (s_i, y_i) and applies the
inverse Hessian approximation implicitly with the two-loop recursion
(Nocedal & Wright, Algorithm 7.4) in O(capacity) inner products.

On a manifold the stored pairs live in the tangent space of the iterate at
which they were computed. After every step all valid pairs are transported to
the tangent space of the new iterate, so that the recursion only ever combines
vectors anchored at the same point.

The pairs are stored oldest-first in fixed-size buffers. When the buffer is
full, appending a pair evicts the oldest one and shifts the others one slot
towards index 0.
"""

from collections.abc import Sequence
from typing import Optional, Union

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, Int, jaxtyped

from rqn_jax.errors import ConfigurationError
from rqn_jax.manifolds import AbstractManifold
from rqn_jax.operator import AbstractInverseHessianMemory
from rqn_jax.types import Point

TangentSequence = Union[Sequence[Float[Array, "*shape"]], Float[Array, "m *shape"]]


class CorrectionHistory(AbstractInverseHessianMemory):
    """Fixed-capacity buffer of curvature pairs.

    Attributes:
        steps: Stored steps s_i, oldest first.
        gradient_differences: Stored gradient differences y_i, oldest first.
        count: Number of valid pairs stored (0 to capacity). Slots at index
            ``count`` and above are zero and ignored.
    """

    steps: Float[Array, "memory *shape"]
    gradient_differences: Float[Array, "memory *shape"]
    count: Int[Array, ""]

    @property
    def capacity(self) -> int:
        return self.steps.shape[0]

    def valid_mask(self) -> Array:
        return jnp.arange(self.capacity) < self.count

    def direction(self, manifold, x, grad):
        return two_loop_recursion(manifold, x, self, grad)

    def transport(self, manifold, x_old, x_new, method):
        return history_transport(manifold, self, x_old, x_new, method)

    def incorporate(self, manifold, x, s, y, broyden_factor):
        return history_append(self, s, y)


def _stack(vectors: TangentSequence, x: Point) -> Array:
    if isinstance(vectors, (jax.Array,)) and vectors.ndim == x.ndim + 1:
        return vectors
    if len(vectors) == 0:
        return jnp.zeros((0,) + x.shape, dtype=x.dtype)
    return jnp.stack([jnp.asarray(v, dtype=x.dtype) for v in vectors])


def history_init(
    x: Point,
    capacity: int,
    steps: Optional[TangentSequence] = None,
    gradient_differences: Optional[TangentSequence] = None,
) -> CorrectionHistory:
    """Create a correction history anchored at ``x``.

    Args:
        x: Current iterate. Fixes the shape and dtype of the buffers.
        capacity: Maximum number of pairs to store (typically 5-30).
        steps: Optional initial steps, oldest first, anchored at ``x``.
        gradient_differences: Optional initial gradient differences matching
            ``steps``.

    Returns:
        A history holding the supplied pairs, padded with zeros up to
        ``capacity``.

    Raises:
        ConfigurationError: If ``capacity < 1``, only one of the initial
            sequences is given, the sequences differ in length, or they hold
            more than ``capacity`` vectors.
    """
    if capacity < 1:
        raise ConfigurationError(
            f"The history capacity must be at least 1, but it is {capacity}."
        )
    if (steps is None) != (gradient_differences is None):
        raise ConfigurationError(
            "Initial steps and gradient differences must be given together."
        )

    if steps is None:
        s_stack = jnp.zeros((0,) + x.shape, dtype=x.dtype)
        y_stack = jnp.zeros((0,) + x.shape, dtype=x.dtype)
    else:
        s_stack = _stack(steps, x)
        y_stack = _stack(gradient_differences, x)

    if s_stack.shape[0] != y_stack.shape[0]:
        raise ConfigurationError(
            f"The number of initial steps ({s_stack.shape[0]}) must equal the "
            f"number of initial gradient differences ({y_stack.shape[0]})."
        )
    if s_stack.shape[0] > capacity:
        raise ConfigurationError(
            f"The number of initial pairs must be less than or equal to "
            f"{capacity}, but it is {s_stack.shape[0]}."
        )

    count = s_stack.shape[0]
    padding = jnp.zeros((capacity - count,) + x.shape, dtype=x.dtype)
    return CorrectionHistory(
        steps=jnp.concatenate([s_stack, padding]),
        gradient_differences=jnp.concatenate([y_stack, padding]),
        count=jnp.array(count),
    )


def history_transport(
    manifold: AbstractManifold,
    history: CorrectionHistory,
    x_old: Point,
    x_new: Point,
    method: str = "parallel",
) -> CorrectionHistory:
    """Transport every valid pair from ``T_{x_old} M`` to ``T_{x_new} M``."""
    mask = history.valid_mask().reshape((-1,) + (1,) * (history.steps.ndim - 1))
    steps = manifold.transport_stack(x_old, x_new, history.steps, method)
    gradient_differences = manifold.transport_stack(
        x_old, x_new, history.gradient_differences, method
    )
    return CorrectionHistory(
        steps=jnp.where(mask, steps, 0.0),
        gradient_differences=jnp.where(mask, gradient_differences, 0.0),
        count=history.count,
    )


@jaxtyped(typechecker=beartype)
def history_append(
    history: CorrectionHistory,
    s: Float[Array, "*shape"],
    y: Float[Array, "*shape"],
) -> CorrectionHistory:
    """Append a curvature pair, evicting the oldest one when full.

    Both vectors must already be anchored at the same point as the stored
    pairs. The caller is responsible for the curvature safeguard
    (<s, y> != 0); see :func:`rqn_jax.update.accept_update`.

    Args:
        history: Current correction history.
        s: Transported step s_k.
        y: Gradient difference y_k.

    Returns:
        Updated history with (s, y) as the newest pair.
    """
    capacity = history.capacity
    full = history.count >= capacity

    # Shift everything one slot towards index 0 when full (FIFO eviction)
    steps = jnp.where(full, jnp.roll(history.steps, -1, axis=0), history.steps)
    gradient_differences = jnp.where(
        full,
        jnp.roll(history.gradient_differences, -1, axis=0),
        history.gradient_differences,
    )

    idx = jnp.minimum(history.count, capacity - 1)
    return CorrectionHistory(
        steps=steps.at[idx].set(s),
        gradient_differences=gradient_differences.at[idx].set(y),
        count=jnp.minimum(history.count + 1, capacity),
    )


def _two_loop(manifold, x, history, grad):
    capacity = history.capacity
    count = history.count
    valid = history.valid_mask()

    def inner(u, v):
        return manifold.inner(x, u, v)

    sy = jax.vmap(inner)(history.steps, history.gradient_differences)
    safe_sy = jnp.where(valid, sy, 1.0)

    # Backward pass: newest to oldest
    def backward_iter(j, carry):
        q, rho = carry
        i = capacity - 1 - j
        rho_i = jnp.where(valid[i], inner(history.steps[i], q) / safe_sy[i], 0.0)
        q = q - rho_i * history.gradient_differences[i]
        return q, rho.at[i].set(rho_i)

    q, rho = jax.lax.fori_loop(
        0, capacity, backward_iter, (grad, jnp.zeros(capacity, dtype=grad.dtype))
    )

    # Initial scaling from the second newest pair; identity with <= 1 pair
    idx = jnp.maximum(count - 2, 0)
    y_prev = history.gradient_differences[idx]
    yy = inner(y_prev, y_prev)
    gamma = jnp.where(
        (count > 1) & (yy > 0), sy[idx] / jnp.where(yy > 0, yy, 1.0), 1.0
    )
    r = gamma * q

    # Forward pass: oldest to newest
    def forward_iter(i, r):
        omega = inner(history.gradient_differences[i], r) / safe_sy[i]
        coefficient = jnp.where(valid[i], rho[i] + omega, 0.0)
        return r + coefficient * history.steps[i]

    r = jax.lax.fori_loop(0, capacity, forward_iter, r)
    return -r


def two_loop_recursion(
    manifold: AbstractManifold,
    x: Point,
    history: CorrectionHistory,
    grad: Float[Array, "*shape"],
) -> Float[Array, "*shape"]:
    """Compute the L-BFGS direction ``-H grad`` with the two-loop recursion.

    With pairs indexed 1..count (1 = oldest):

    1. Backward pass, i = count..1:
       ``rho_i = <s_i, q> / <s_i, y_i>``, ``q = q - rho_i y_i``.
    2. Initial scaling: ``r = q`` if ``count <= 1``, otherwise
       ``r = (<s_{count-1}, y_{count-1}> / ||y_{count-1}||^2) q``.
    3. Forward pass, i = 1..count:
       ``omega_i = <y_i, r> / <s_i, y_i>``, ``r = r + (rho_i + omega_i) s_i``.

    An empty history returns ``-grad`` (steepest descent).

    Args:
        manifold: Manifold providing the inner product.
        x: Current iterate; all pairs must be anchored here.
        history: Correction history.
        grad: Riemannian gradient at ``x``.

    Returns:
        The search direction ``-r``.
    """
    return jax.lax.cond(
        history.count == 0,
        lambda: -grad,
        lambda: _two_loop(manifold, x, history, grad),
    )
