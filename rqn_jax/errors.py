"""Exceptions raised by rqn-jax.

Configuration and dimension problems are detected before any iteration runs
(at construction or at trace time, from static shapes). Numerical degeneracy
inside an update is never raised: the update is rejected and counted in the
solver state instead.
"""


class RiemannianOptimizationError(Exception):
    """Base exception for all rqn-jax errors."""


class ConfigurationError(RiemannianOptimizationError, ValueError):
    """Raised when a solver or memory is constructed with invalid settings.

    Examples are a Broyden factor outside ``[0, 1]`` or an initial correction
    history whose sequences differ in length or exceed the memory capacity.
    """


class DimensionMismatchError(RiemannianOptimizationError, ValueError):
    """Raised when a stored operator does not match the tangent space basis.

    Attributes:
        expected: Number of basis vectors of the current tangent space.
        actual: Number of stored operator columns.
    """

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"The inverse Hessian approximation has {actual} columns but the "
            f"tangent space has {expected} basis vectors."
        )
        self.expected = expected
        self.actual = actual
