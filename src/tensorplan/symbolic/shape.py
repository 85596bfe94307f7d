from __future__ import annotations

from typing import Iterable, Mapping

from .expr import Const, Expr, ExprLike, sym

Shape = tuple[Expr, ...]


def as_shape(dims: Iterable[ExprLike]) -> Shape:
    """Coerce a sequence of ints / variable names / expressions into a
    canonical `Shape`."""
    return tuple(sym(d).simplify() for d in dims)


def numel(shape: Shape) -> Expr:
    total: Expr = Const(1)
    for dim in shape:
        total = total * dim
    return total.simplify()


def is_concrete(shape: Shape) -> bool:
    return all(d.is_constant for d in shape)


def shapes_equal(a: Shape, b: Shape) -> bool:
    return len(a) == len(b) and all(x.equals(y) for x, y in zip(a, b))


def evaluate_shape(shape: Shape, bindings: Mapping[str, ExprLike] | None = None) -> tuple[int, ...]:
    return tuple(d.evaluate(bindings) for d in shape)


def substitute_shape(shape: Shape, bindings: Mapping[str, ExprLike]) -> Shape:
    return tuple(d.substitute(bindings) for d in shape)


def format_shape(shape: Shape) -> str:
    return "[" + ", ".join(str(d) for d in shape) + "]"
