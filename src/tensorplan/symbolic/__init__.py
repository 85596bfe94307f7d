"""Symbolic expression engine for tensor dimensions and buffer sizes."""

from .expr import (
    Const,
    Expr,
    ExprLike,
    FloorDiv,
    Var,
    equals,
    expr_from_json,
    maximum,
    minimum,
    simplify,
    sym,
)
from .shape import (
    Shape,
    as_shape,
    evaluate_shape,
    format_shape,
    is_concrete,
    numel,
    shapes_equal,
    substitute_shape,
)

__all__ = [
    # expr.py
    "Expr",
    "ExprLike",
    "Const",
    "Var",
    "FloorDiv",
    "sym",
    "minimum",
    "maximum",
    "equals",
    "simplify",
    "expr_from_json",
    # shape.py
    "Shape",
    "as_shape",
    "numel",
    "is_concrete",
    "shapes_equal",
    "evaluate_shape",
    "substitute_shape",
    "format_shape",
]
