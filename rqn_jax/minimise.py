"""Python-level driver for the Riemannian quasi-Newton solver.

:func:`quasi_newton` runs the init / terminate / step loop of
:class:`~rqn_jax.solver.RiemannianQuasiNewton` from Python, with the step
compiled by ``equinox.filter_jit``. Unlike ``optimistix.minimise`` it reports
progress through the standard :mod:`logging` module, which makes rejected
curvature updates and step-size fallbacks visible while the solver runs.
"""

import logging
from typing import Any, Optional, Union

import equinox as eqx

from rqn_jax.manifolds import AbstractManifold
from rqn_jax.solver import QuasiNewtonState, RiemannianQuasiNewton
from rqn_jax.types import CostFn, GradFn, Point

logger = logging.getLogger(__name__)


def quasi_newton(
    manifold: AbstractManifold,
    cost: CostFn,
    x0: Point,
    *,
    args: Any = None,
    grad_fn: Optional[GradFn] = None,
    return_state: bool = False,
    **solver_options: Any,
) -> Union[Point, tuple[Point, QuasiNewtonState]]:
    """Minimise ``cost`` over ``manifold`` with a Riemannian quasi-Newton method.

    Args:
        manifold: Manifold to optimise over.
        cost: Cost function ``cost(x, args) -> (f_val, aux)``.
        x0: Starting point on the manifold.
        args: Additional arguments passed to ``cost`` and ``grad_fn``.
        grad_fn: Optional Riemannian gradient ``grad_fn(x, args)``. When
            omitted, the Euclidean gradient from jax.grad is projected onto
            the tangent space.
        return_state: Also return the final solver state.
        **solver_options: Remaining fields of
            :class:`~rqn_jax.solver.RiemannianQuasiNewton`, e.g.
            ``memory_size``, ``broyden_factor``, ``cautious_update``,
            ``stepsize``, ``max_steps``.

    Returns:
        The last iterate, or ``(iterate, state)`` if ``return_state`` is True.

    Raises:
        ConfigurationError: If the solver options are invalid.
    """
    solver = RiemannianQuasiNewton(manifold=manifold, grad_fn=grad_fn, **solver_options)
    logger.debug(
        "Starting %s quasi-Newton on %s (memory_size=%d, broyden_factor=%g, "
        "cautious=%s)",
        "limited-memory" if solver.limited_memory else "full-memory",
        type(manifold).__name__,
        solver.memory_size,
        solver.broyden_factor,
        solver.cautious_update,
    )

    @eqx.filter_jit
    def step(y, state):
        return solver.step(cost, y, args, {}, state, frozenset())

    @eqx.filter_jit
    def terminate(y, state):
        return solver.terminate(cost, y, args, {}, state, frozenset())

    state = solver.init(cost, x0, args, {}, None, None, frozenset())
    y = x0
    num_rejected = 0
    num_failures = 0

    while True:
        done, _ = terminate(y, state)
        if done:
            break
        y, state, _ = step(y, state)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "iteration %d: cost=%.6e grad_norm=%.6e",
                int(state.step_count),
                float(state.f_val),
                float(manifold.norm(y, state.grad)),
            )

        rejected = int(state.num_rejected_updates)
        if rejected > num_rejected:
            logger.warning(
                "Curvature update rejected at iteration %d; the inverse Hessian "
                "approximation was only transported.",
                int(state.step_count),
            )
            num_rejected = rejected

        failures = int(state.num_stepsize_failures)
        if failures > num_failures:
            logger.warning(
                "No acceptable step along the quasi-Newton direction at iteration "
                "%d; fell back to steepest descent.",
                int(state.step_count),
            )
            num_failures = failures

    grad_norm = float(manifold.norm(y, state.grad))
    if int(state.step_count) >= solver.max_steps:
        logger.info(
            "Stopped after reaching max_steps=%d (cost=%.6e, grad_norm=%.6e)",
            solver.max_steps,
            float(state.f_val),
            grad_norm,
        )
    else:
        logger.info(
            "Converged after %d iterations (cost=%.6e, grad_norm=%.6e)",
            int(state.step_count),
            float(state.f_val),
            grad_norm,
        )

    if return_state:
        return y, state
    return y
