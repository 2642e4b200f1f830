from typing import Any, Callable, TypeVar

from rqn_jax.types import Point

Args = TypeVar("Args")


def args_closure(
    fn: Callable[[Point, Args], Any], args: Args
) -> Callable[[Point], Any]:
    """Bind ``args`` so that ``fn`` can be differentiated w.r.t. the point only."""

    def wrapped(x: Point) -> Any:
        return fn(x, args)

    return wrapped
