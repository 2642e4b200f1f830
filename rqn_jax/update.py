"""Update engine for the Riemannian quasi-Newton memories.

After the driver has retracted from ``x_old`` to ``x_new`` along the step
``alpha * eta``, the engine:

1. computes the length-compensation factor
   ``beta = ||alpha eta||_{x_old} / ||T(alpha eta)||_{x_new}``,
   which is 1 for isometric transports such as parallel transport;
2. forms the curvature pair at ``x_new``:
   ``s_k = T(alpha eta)`` and ``y_k = beta grad f(x_new) - T(grad f(x_old))``;
3. decides whether the pair is safe to incorporate (cautious update);
4. transports the stored memory to ``x_new`` and, if accepted, adds the pair.

A rejected pair never stops the solver: the memory is only transported, so
no new curvature information enters the approximation for that iteration.
"""

import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool

from rqn_jax.manifolds import AbstractManifold
from rqn_jax.operator import AbstractInverseHessianMemory
from rqn_jax.types import CautiousFn, Point, Scalar, Tangent


def default_cautious_function(t: Scalar) -> Scalar:
    """Default cautious bound ``t -> 1e-4 * t``."""
    return 1e-4 * t


def curvature_pair(
    manifold: AbstractManifold,
    x_old: Point,
    x_new: Point,
    step: Tangent,
    grad_old: Tangent,
    grad_new: Tangent,
    method: str = "parallel",
) -> tuple[Tangent, Tangent]:
    """Compute the curvature pair (s_k, y_k) anchored at ``x_new``.

    Args:
        manifold: Manifold providing norms and vector transport.
        x_old: Previous iterate.
        x_new: New iterate, ``retract(x_old, step)``.
        step: The step ``alpha * eta`` taken, anchored at ``x_old``.
        grad_old: Riemannian gradient at ``x_old``.
        grad_new: Riemannian gradient at ``x_new``.
        method: Vector transport method.

    Returns:
        Tuple ``(s_k, y_k)`` of tangent vectors at ``x_new``.
    """
    s = manifold.transport(x_old, x_new, step, method)

    step_norm = manifold.norm(x_old, step)
    transported_norm = manifold.norm(x_new, s)
    beta = jnp.where(
        transported_norm > 0,
        step_norm / jnp.where(transported_norm > 0, transported_norm, 1.0),
        1.0,
    )

    y = beta * grad_new - manifold.transport(x_old, x_new, grad_old, method)
    return s, y


def accept_update(
    manifold: AbstractManifold,
    x_old: Point,
    x_new: Point,
    s: Tangent,
    y: Tangent,
    grad_old: Tangent,
    cautious: bool = False,
    cautious_function: CautiousFn = default_cautious_function,
) -> Bool[Array, ""]:
    """Decide whether the curvature pair may be incorporated.

    A pair is always rejected when ``s_k = 0``, ``<s_k, y_k> = 0`` or any of
    these quantities is non-finite, since the updates divide by them. With
    ``cautious=True`` it must additionally satisfy

        <s_k, y_k> / ||s_k|| >= cautious_function(||grad f(x_old)||)

    Args:
        manifold: Manifold providing inner products and norms.
        x_old: Previous iterate.
        x_new: New iterate, where ``s`` and ``y`` are anchored.
        s: Transported step.
        y: Gradient difference.
        grad_old: Riemannian gradient at ``x_old``.
        cautious: Whether the cautious bound is enforced.
        cautious_function: Monotone bound vanishing at 0.

    Returns:
        Boolean scalar, True when the pair is accepted.
    """
    sy = manifold.inner(x_new, s, y)
    s_norm = manifold.norm(x_new, s)
    well_defined = (
        (s_norm != 0) & (sy != 0) & jnp.isfinite(sy) & jnp.isfinite(s_norm)
    )
    if not cautious:
        return well_defined

    bound = cautious_function(manifold.norm(x_old, grad_old))
    ratio = sy / jnp.where(s_norm != 0, s_norm, 1.0)
    return well_defined & (ratio >= bound)


def update_memory(
    manifold: AbstractManifold,
    memory: AbstractInverseHessianMemory,
    x_old: Point,
    x_new: Point,
    s: Tangent,
    y: Tangent,
    accepted: Bool[Array, ""],
    broyden_factor: float = 0.0,
    method: str = "parallel",
) -> AbstractInverseHessianMemory:
    """Transport the memory to ``x_new`` and incorporate (s, y) if accepted.

    Args:
        manifold: Manifold providing vector transport.
        memory: Inverse Hessian memory anchored at ``x_old``.
        x_old: Previous iterate.
        x_new: New iterate.
        s: Transported step, anchored at ``x_new``.
        y: Gradient difference, anchored at ``x_new``.
        accepted: Result of :func:`accept_update`.
        broyden_factor: Broyden mixing factor (full-memory only).
        method: Vector transport method.

    Returns:
        The memory anchored at ``x_new``.
    """
    transported = memory.transport(manifold, x_old, x_new, method)
    return jax.lax.cond(
        accepted,
        lambda: transported.incorporate(manifold, x_new, s, y, broyden_factor),
        lambda: transported,
    )
