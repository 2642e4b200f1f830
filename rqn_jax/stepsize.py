"""Step-size policies for the Riemannian quasi-Newton solver.

A policy receives the current iterate, cost value, gradient and search
direction and returns the scalar step length ``alpha`` together with a success
flag. The solver then moves to ``retract(x, alpha * direction)``. When the flag
is false the solver retries along the steepest-descent direction.

Two policies are provided:

* :class:`ConstantStepsize` - always the same length.
* :class:`ArmijoBacktracking` - backtracking until the Riemannian Armijo
  condition holds along the retraction curve:

      f(R_x(alpha eta)) <= f(x) + c1 * alpha * <grad f(x), eta>_x
"""

import abc
from typing import Any, NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Int

from rqn_jax.manifolds import AbstractManifold
from rqn_jax.types import CostFn, Point, Scalar, Tangent


class AbstractStepsize(eqx.Module):
    """Interface of a step-size policy."""

    @abc.abstractmethod
    def __call__(
        self,
        manifold: AbstractManifold,
        fn: CostFn,
        x: Point,
        args: Any,
        f_val: Scalar,
        grad: Tangent,
        direction: Tangent,
        retraction_method: str = "exp",
    ) -> tuple[Scalar, Bool[Array, ""]]:
        """Return the step length along ``direction`` and whether it is usable.

        Args:
            manifold: Manifold to retract on.
            fn: Cost function ``fn(x, args) -> (f_val, aux)``.
            x: Current iterate.
            args: Arguments passed to ``fn``.
            f_val: Cost at ``x``.
            grad: Riemannian gradient at ``x``.
            direction: Search direction at ``x``.
            retraction_method: Retraction used to take the step.

        Returns:
            Tuple of (alpha, success). ``success`` is false when no
            acceptable step was found along ``direction``.
        """


class ConstantStepsize(AbstractStepsize):
    """Fixed step length.

    Attributes:
        length: Step length returned on every call (default 1.0).
    """

    length: float = 1.0

    def __call__(
        self, manifold, fn, x, args, f_val, grad, direction, retraction_method="exp"
    ):
        return jnp.asarray(self.length, dtype=f_val.dtype), jnp.array(True)


class ArmijoBacktracking(AbstractStepsize):
    """Backtracking line search with the Riemannian Armijo condition.

    Starting from ``initial``, the step is multiplied by ``contraction`` until

        f(R_x(alpha eta)) <= f(x) + sufficient_decrease * alpha * <grad, eta>

    or ``max_steps`` reductions have been tried, in which case the last trial
    step is returned. The success flag is then true only if that step still
    lowers the cost, so non-descent directions are reported as failures.

    Attributes:
        initial: First trial step (default 1.0).
        contraction: Step reduction factor (default 0.5).
        sufficient_decrease: Armijo parameter c1 (default 1e-4).
        max_steps: Maximum number of reductions (default 25).
    """

    initial: float = 1.0
    contraction: float = 0.5
    sufficient_decrease: float = 1e-4
    max_steps: int = eqx.field(static=True, default=25)

    def __call__(
        self, manifold, fn, x, args, f_val, grad, direction, retraction_method="exp"
    ):
        slope = manifold.inner(x, grad, direction)

        class LSState(NamedTuple):
            alpha: Scalar
            f_val: Scalar
            iteration: Int[Array, ""]
            done: Bool[Array, ""]

        def evaluate_at_alpha(alpha):
            """Evaluate the cost at R_x(alpha * direction)."""
            x_new = manifold.retract(x, alpha * direction, retraction_method)
            f_new, _ = fn(x_new, args)
            return f_new

        alpha_init = jnp.asarray(self.initial, dtype=f_val.dtype)
        init_state = LSState(
            alpha=alpha_init,
            f_val=evaluate_at_alpha(alpha_init),
            iteration=jnp.array(0),
            done=jnp.array(False),
        )

        def cond_fn(state: LSState) -> Bool[Array, ""]:
            """Continue while not done and under iteration limit."""
            return ~state.done & (state.iteration < self.max_steps)

        def body_fn(state: LSState) -> LSState:
            armijo_satisfied = (
                state.f_val <= f_val + self.sufficient_decrease * state.alpha * slope
            )

            def accept_branch():
                return LSState(
                    alpha=state.alpha,
                    f_val=state.f_val,
                    iteration=state.iteration + 1,
                    done=jnp.array(True),
                )

            def reject_branch():
                new_alpha = self.contraction * state.alpha
                return LSState(
                    alpha=new_alpha,
                    f_val=evaluate_at_alpha(new_alpha),
                    iteration=state.iteration + 1,
                    done=jnp.array(False),
                )

            return jax.lax.cond(armijo_satisfied, accept_branch, reject_branch)

        final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)
        success = final_state.done | (final_state.f_val < f_val)
        return final_state.alpha, success
