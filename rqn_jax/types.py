"""Type definitions for rqn-jax.

This module contains type aliases and method names used throughout the
package. Array types use jaxtyping for runtime type checking with beartype.
"""

from collections.abc import Callable
from typing import Any, Literal

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]

# Points and tangent vectors share the ambient shape of the manifold
# representation (a vector for the sphere, a matrix for Stiefel, ...).
Point = Float[Array, "*shape"]
Tangent = Float[Array, "*shape"]

# Stacked tangent vectors: one per basis direction or history slot
TangentStack = Float[Array, "k *shape"]

# Cost function type: takes a point and args, returns (cost, aux)
CostFn = Callable[[Point, Any], tuple[Scalar, Any]]

# Riemannian gradient function type: takes a point and args and returns a
# tangent vector anchored at that point.
# grad_fn(x, args) -> grad f(x) in T_x M
GradFn = Callable[[Point, Any], Tangent]

# Cautious update bound: maps the gradient norm at the previous iterate to the
# minimum accepted value of <s, y> / ||s||. Must vanish at 0.
CautiousFn = Callable[[Scalar], Scalar]

RetractionMethod = Literal["exp", "projection"]
TransportMethod = Literal["parallel", "projection"]

RETRACTION_METHODS = ("exp", "projection")
TRANSPORT_METHODS = ("parallel", "projection")
