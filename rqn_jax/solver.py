"""Riemannian quasi-Newton solver implementation using Optimistix.

This module contains the main solver class, which extends
optimistix.AbstractMinimiser to minimise a cost function over a Riemannian
manifold with quasi-Newton directions.

The solver supports two modes for the inverse Hessian approximation:

1. Limited memory (default, ``memory_size > 0``): Riemannian L-BFGS. The last
   ``memory_size`` curvature pairs are stored and transported to every new
   iterate; directions come from the two-loop recursion.
2. Full memory (``memory_size <= 0``): a dense Broyden-class operator stored by
   its columns on an orthonormal basis of the tangent space. Only viable for
   small manifold dimensions.

Both modes can be combined with the cautious update, which rejects curvature
pairs whose curvature ``<s, y> / ||s||`` falls below a bound depending on the
gradient norm.

Riemannian gradients can be user-supplied or computed automatically by
projecting the Euclidean gradient from jax.grad onto the tangent space.
"""

from collections.abc import Callable, Sequence
from typing import Any, Optional, Union

import equinox as eqx
import jax
import jax.numpy as jnp
import optimistix as optx
import optimistix._misc as optx_misc
from jaxtyping import Array, Bool, Float, Int

from rqn_jax.errors import ConfigurationError
from rqn_jax.history import history_init
from rqn_jax.manifolds import AbstractManifold
from rqn_jax.operator import AbstractInverseHessianMemory, InverseHessianApproximation
from rqn_jax.stepsize import AbstractStepsize, ConstantStepsize
from rqn_jax.types import (
    RETRACTION_METHODS,
    TRANSPORT_METHODS,
    CautiousFn,
    CostFn,
    GradFn,
    Point,
    RetractionMethod,
    Tangent,
    TransportMethod,
)
from rqn_jax.update import (
    accept_update,
    curvature_pair,
    default_cautious_function,
    update_memory,
)
from rqn_jax.utils import args_closure


def _as_stack(
    vectors: Optional[Union[Sequence[Array], Array]],
) -> Optional[Array]:
    """Stack a sequence of tangent vectors along a new leading axis."""
    if vectors is None:
        return None
    if isinstance(vectors, jax.Array):
        return vectors
    return jnp.stack([jnp.asarray(v) for v in vectors]) if len(vectors) else None


class QuasiNewtonState(eqx.Module):
    """State for the Riemannian quasi-Newton solver.

    This is a JAX PyTree (via eqx.Module) that holds all state needed across
    iterations. Each step returns a new state; the driver owns it exclusively.

    Attributes:
        step_count: Current iteration number.
        f_val: Cost at the current iterate.
        grad: Riemannian gradient at the current iterate.
        memory: Inverse Hessian approximation (dense operator or correction
            history) anchored at the current iterate.
        initial_grad_norm: Gradient norm at the starting point.
        num_accepted_updates: Curvature pairs incorporated so far.
        num_rejected_updates: Curvature pairs rejected so far (cautious gate
            or numerical degeneracy).
        num_stepsize_failures: Iterations where the step-size policy found no
            acceptable step along the quasi-Newton direction and the solver
            fell back to steepest descent.
    """

    step_count: Int[Array, ""]
    f_val: Float[Array, ""]
    grad: Float[Array, "*shape"]
    memory: AbstractInverseHessianMemory
    initial_grad_norm: Float[Array, ""]
    num_accepted_updates: Int[Array, ""]
    num_rejected_updates: Int[Array, ""]
    num_stepsize_failures: Int[Array, ""]


class RiemannianQuasiNewton(optx.AbstractMinimiser):
    """Quasi-Newton minimiser on a Riemannian manifold.

    At each iteration, it:

    1. Computes the search direction ``eta = -H grad f(x)`` from the inverse
       Hessian approximation (two-loop recursion or dense operator).
    2. Picks a step length ``alpha`` with the step-size policy. If the policy
       finds no acceptable step, ``eta`` is replaced by ``-grad f(x)`` and the
       policy is run again.
    3. Retracts to ``x_new = R_x(alpha eta)``.
    4. Builds the curvature pair at ``x_new``, transports the stored memory
       there and incorporates the pair unless it is rejected.

    Attributes:
        manifold: Manifold to optimise over.
        rtol: Relative gradient-norm tolerance (w.r.t. the initial gradient).
        atol: Absolute gradient-norm tolerance.
        max_steps: Maximum number of iterations.
        grad_fn: Optional Riemannian gradient ``grad_fn(x, args)``.
        memory_size: Number of curvature pairs for L-BFGS; ``<= 0`` selects the
            full-memory operator.
        broyden_factor: Broyden mixing factor in [0, 1] for the full-memory
            update: 0 is BFGS, 1 is DFP.
        cautious_update: Whether to enforce the cautious bound.
        cautious_function: Bound on ``<s, y> / ||s||`` as a function of the
            previous gradient norm.
        retraction_method: ``"exp"`` or ``"projection"``.
        vector_transport_method: ``"parallel"`` or ``"projection"``.
        stepsize: Step-size policy.
        initial_steps: Optional initial steps for the L-BFGS history, oldest
            first, anchored at the starting point.
        initial_gradient_differences: Optional initial gradient differences
            matching ``initial_steps``.

    Example:
        >>> import jax.numpy as jnp
        >>> from rqn_jax import RiemannianQuasiNewton, Sphere
        >>>
        >>> A = jnp.diag(jnp.array([3.0, 2.0, 1.0]))
        >>>
        >>> def rayleigh(x, args):
        ...     return x @ A @ x, None
        >>>
        >>> solver = RiemannianQuasiNewton(manifold=Sphere(3), memory_size=5)
    """

    manifold: AbstractManifold

    # Convergence tolerances on the gradient norm
    rtol: float = 0.0
    atol: float = 1e-6

    # Norm function (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=optx_misc.max_norm)

    # Maximum iterations
    max_steps: int = 1000

    # Optional user-supplied Riemannian gradient
    grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)

    # Quasi-Newton memory
    memory_size: int = eqx.field(static=True, default=20)
    broyden_factor: float = eqx.field(static=True, default=0.0)

    # Cautious update
    cautious_update: bool = eqx.field(static=True, default=False)
    cautious_function: CautiousFn = eqx.field(
        static=True, default=default_cautious_function
    )

    # Geometry
    retraction_method: RetractionMethod = eqx.field(static=True, default="exp")
    vector_transport_method: TransportMethod = eqx.field(
        static=True, default="parallel"
    )

    stepsize: AbstractStepsize = eqx.field(default_factory=ConstantStepsize)

    # Optional initial correction history
    initial_steps: Optional[Array] = eqx.field(default=None, converter=_as_stack)
    initial_gradient_differences: Optional[Array] = eqx.field(
        default=None, converter=_as_stack
    )

    def __check_init__(self):
        """Reject invalid configurations before any iteration runs."""
        if not 0.0 <= self.broyden_factor <= 1.0:
            raise ConfigurationError(
                f"broyden_factor must be in the interval [0,1], but it is "
                f"{self.broyden_factor}."
            )
        if self.retraction_method not in RETRACTION_METHODS:
            raise ConfigurationError(
                f"Unknown retraction method {self.retraction_method!r}; "
                f"expected one of {RETRACTION_METHODS}."
            )
        if self.vector_transport_method not in TRANSPORT_METHODS:
            raise ConfigurationError(
                f"Unknown vector transport method {self.vector_transport_method!r}; "
                f"expected one of {TRANSPORT_METHODS}."
            )

        steps = self.initial_steps
        grads = self.initial_gradient_differences
        if steps is None and grads is None:
            return
        if self.memory_size <= 0:
            raise ConfigurationError(
                "An initial correction history was given, but memory_size <= 0 "
                "selects the full-memory operator."
            )
        n_steps = 0 if steps is None else steps.shape[0]
        n_grads = 0 if grads is None else grads.shape[0]
        if n_steps != n_grads:
            raise ConfigurationError(
                f"The number of given vectors in initial_steps ({n_steps}) must "
                f"equal the number in initial_gradient_differences ({n_grads})."
            )
        if n_steps > self.memory_size:
            raise ConfigurationError(
                f"The number of given vectors in initial_steps must be less than "
                f"or equal to {self.memory_size}, but it is {n_steps}."
            )

    @property
    def limited_memory(self) -> bool:
        return self.memory_size > 0

    def _compute_grad(
        self,
        fn: CostFn,
        y: Point,
        args: Any,
    ) -> Tangent:
        """Compute the Riemannian gradient using user-supplied fn or AD."""
        if self.grad_fn is not None:
            return self.grad_fn(y, args)
        egrad, _ = jax.grad(args_closure(fn, args), has_aux=True)(y)
        return self.manifold.egrad2rgrad(y, egrad)

    def _init_memory(self, y: Point) -> AbstractInverseHessianMemory:
        if not self.limited_memory:
            return InverseHessianApproximation.identity(self.manifold, y)
        return history_init(
            y,
            self.memory_size,
            self.initial_steps,
            self.initial_gradient_differences,
        )

    def init(
        self,
        fn: CostFn,
        y: Point,
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> QuasiNewtonState:
        """Initialize the solver state.

        Evaluates the cost and Riemannian gradient at the starting point and
        builds the identity operator (full memory) or the correction history
        (limited memory, possibly pre-filled).

        Args:
            fn: Cost function with signature fn(y, args) -> (f_val, aux).
            y: Starting point on the manifold.
            args: Additional arguments passed to fn.
            options: Runtime options dictionary.
            f_struct: Structure of function output (for type inference).
            aux_struct: Structure of auxiliary output.
            tags: Lineax tags for the problem.

        Returns:
            Initial QuasiNewtonState.
        """
        f_val, _aux = fn(y, args)
        grad = self._compute_grad(fn, y, args)

        return QuasiNewtonState(
            step_count=jnp.array(0),
            f_val=f_val,
            grad=grad,
            memory=self._init_memory(y),
            initial_grad_norm=self.manifold.norm(y, grad),
            num_accepted_updates=jnp.array(0),
            num_rejected_updates=jnp.array(0),
            num_stepsize_failures=jnp.array(0),
        )

    def compute_direction(
        self,
        fn: CostFn,
        y: Point,
        args: Any,
        state: QuasiNewtonState,
    ) -> Tangent:
        """Quasi-Newton search direction at the current iterate.

        Pure function of the state: ``-H grad f(y)``.
        """
        return state.memory.direction(self.manifold, y, state.grad)

    def apply_step(
        self,
        fn: CostFn,
        y: Point,
        y_new: Point,
        step: Tangent,
        args: Any,
        state: QuasiNewtonState,
    ) -> tuple[QuasiNewtonState, Any]:
        """Run the update engine after moving from ``y`` to ``y_new``.

        Args:
            fn: Cost function.
            y: Previous iterate.
            y_new: New iterate, ``retract(y, step)``.
            step: The step ``alpha * eta`` taken, anchored at ``y``.
            args: Additional arguments.
            state: State anchored at ``y``.

        Returns:
            Tuple of (new_state, aux) with the state anchored at ``y_new``.
        """
        f_val_new, aux = fn(y_new, args)
        grad_new = self._compute_grad(fn, y_new, args)

        s_k, y_k = curvature_pair(
            self.manifold,
            y,
            y_new,
            step,
            state.grad,
            grad_new,
            self.vector_transport_method,
        )
        accepted = accept_update(
            self.manifold,
            y,
            y_new,
            s_k,
            y_k,
            state.grad,
            cautious=self.cautious_update,
            cautious_function=self.cautious_function,
        )
        memory = update_memory(
            self.manifold,
            state.memory,
            y,
            y_new,
            s_k,
            y_k,
            accepted,
            broyden_factor=self.broyden_factor,
            method=self.vector_transport_method,
        )

        new_state = QuasiNewtonState(
            step_count=state.step_count + 1,
            f_val=f_val_new,
            grad=grad_new,
            memory=memory,
            initial_grad_norm=state.initial_grad_norm,
            num_accepted_updates=state.num_accepted_updates + accepted,
            num_rejected_updates=state.num_rejected_updates + ~accepted,
            num_stepsize_failures=state.num_stepsize_failures,
        )
        return new_state, aux

    def step(
        self,
        fn: CostFn,
        y: Point,
        args: Any,
        options: dict[str, Any],
        state: QuasiNewtonState,
        tags: frozenset[object],
    ) -> tuple[Point, QuasiNewtonState, Any]:
        """Perform one quasi-Newton iteration.

        Args:
            fn: Cost function.
            y: Current iterate.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (new_y, new_state, aux).
        """
        direction = self.compute_direction(fn, y, args, state)

        def line_search(eta):
            return self.stepsize(
                self.manifold,
                fn,
                y,
                args,
                state.f_val,
                state.grad,
                eta,
                self.retraction_method,
            )

        qn_alpha, success = line_search(direction)

        # An indefinite approximation can give a non-descent direction.
        def steepest_descent():
            eta = -state.grad
            alpha_sd, _ = line_search(eta)
            return alpha_sd, eta

        alpha, direction = jax.lax.cond(
            success, lambda: (qn_alpha, direction), steepest_descent
        )
        step = alpha * direction
        y_new = self.manifold.retract(y, step, self.retraction_method)

        new_state, aux = self.apply_step(fn, y, y_new, step, args, state)
        new_state = eqx.tree_at(
            lambda s: s.num_stepsize_failures,
            new_state,
            state.num_stepsize_failures + ~success,
        )
        return y_new, new_state, aux

    def terminate(
        self,
        fn: CostFn,
        y: Point,
        args: Any,
        options: dict[str, Any],
        state: QuasiNewtonState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Check if the solver should terminate.

        Stops when the gradient norm falls below
        ``atol + rtol * ||grad f(x_0)||`` or the iteration budget is spent.

        Returns:
            Tuple of (done, result) where done is a bool indicating
            termination and result is the termination status code.
        """
        grad_norm = self.manifold.norm(y, state.grad)
        converged = grad_norm <= self.atol + self.rtol * state.initial_grad_norm
        max_iters_reached = state.step_count >= self.max_steps
        done = converged | max_iters_reached

        result = jax.lax.cond(
            converged,
            lambda: optx.RESULTS.successful,
            lambda: jax.lax.cond(
                max_iters_reached,
                lambda: optx.RESULTS.max_steps_reached,
                lambda: optx.RESULTS.successful,  # Still running
            ),
        )

        return done, result

    def postprocess(
        self,
        fn: CostFn,
        y: Point,
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: QuasiNewtonState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Point, Any, dict[str, Any]]:
        """Return the final iterate together with solver statistics."""
        stats = {
            "num_steps": state.step_count,
            "final_cost": state.f_val,
            "final_grad_norm": self.manifold.norm(y, state.grad),
            "num_accepted_updates": state.num_accepted_updates,
            "num_rejected_updates": state.num_rejected_updates,
            "num_stepsize_failures": state.num_stepsize_failures,
        }

        return y, aux, stats
