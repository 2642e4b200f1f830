"""rqn-jax: Riemannian quasi-Newton optimisation in pure JAX.

This package provides Riemannian BFGS/DFP (Broyden class) and Riemannian
L-BFGS solvers built on JAX and the Optimistix framework. All curvature
information is anchored at the current iterate and explicitly transported to
the tangent space of every new iterate before it is combined with new
information.
"""

from rqn_jax.errors import (
    ConfigurationError,
    DimensionMismatchError,
    RiemannianOptimizationError,
)
from rqn_jax.history import (
    CorrectionHistory,
    history_append,
    history_init,
    history_transport,
    two_loop_recursion,
)
from rqn_jax.manifolds import AbstractManifold, Euclidean, Sphere
from rqn_jax.minimise import quasi_newton
from rqn_jax.operator import (
    AbstractInverseHessianMemory,
    InverseHessianApproximation,
    square_matrix_vector_product,
)
from rqn_jax.solver import QuasiNewtonState, RiemannianQuasiNewton
from rqn_jax.stepsize import AbstractStepsize, ArmijoBacktracking, ConstantStepsize
from rqn_jax.types import CautiousFn, CostFn, GradFn
from rqn_jax.update import (
    accept_update,
    curvature_pair,
    default_cautious_function,
    update_memory,
)

__all__ = [
    # Main solver
    "RiemannianQuasiNewton",
    "QuasiNewtonState",
    "quasi_newton",
    # Types
    "CostFn",
    "GradFn",
    "CautiousFn",
    # Manifolds
    "AbstractManifold",
    "Euclidean",
    "Sphere",
    # Full-memory operator
    "AbstractInverseHessianMemory",
    "InverseHessianApproximation",
    "square_matrix_vector_product",
    # L-BFGS
    "CorrectionHistory",
    "history_init",
    "history_append",
    "history_transport",
    "two_loop_recursion",
    # Update engine
    "curvature_pair",
    "accept_update",
    "update_memory",
    "default_cautious_function",
    # Step sizes
    "AbstractStepsize",
    "ConstantStepsize",
    "ArmijoBacktracking",
    # Errors
    "RiemannianOptimizationError",
    "ConfigurationError",
    "DimensionMismatchError",
]
