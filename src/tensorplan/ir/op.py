"""Operation kinds and their shape-inference rules.

The set of operations is closed: `OpKind` enumerates every tag and
`OP_TABLE` maps each tag to an `OpSpec` holding its arity, its category and
a pure inference function `(input shapes, input dtypes, params) -> (shape,
dtype)`. `check_op_table()` runs at import so a new tag without a rule fails
loudly instead of falling through at compile time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from tensorplan.symbolic import Const, Expr, Shape, as_shape, format_shape, minimum, numel, sym

from .dtypes import DType, bool_, dtype_from_numpy


class OpCategory(enum.Enum):
	SOURCE = "source"
	UNARY = "unary"
	BINARY = "binary"
	REDUCE = "reduce"
	MOVEMENT = "movement"
	MATMUL = "matmul"
	FUSED = "fused"


class OpKind(enum.Enum):
	INPUT = "input"
	CONSTANT = "constant"

	# Elementwise unary
	NEG = "neg"
	RELU = "relu"
	EXP = "exp"
	LOG = "log"
	SQRT = "sqrt"
	RECIP = "recip"
	SIN = "sin"
	EXP2 = "exp2"
	LOG2 = "log2"

	# Elementwise binary
	ADD = "add"
	SUB = "sub"
	MUL = "mul"
	DIV = "div"
	MAXIMUM = "maximum"
	MOD = "mod"
	LESS_THAN = "less_than"

	# Reductions: params axis, keepdim
	SUM_REDUCE = "sum_reduce"
	MAX_REDUCE = "max_reduce"

	# Movement
	RESHAPE = "reshape"    # params shape
	PERMUTE = "permute"    # params axes
	EXPAND = "expand"      # params shape
	SLICE = "slice"        # params axis, start, stop
	PAD = "pad"            # params axis, before, after

	MATMUL = "matmul"

	# Fused Kernel Group: params group
	FUSED = "fused"

	def __str__(self) -> str:  # pragma: no cover
		return self.value


class ShapeRuleViolation(Exception):
	"""Raised by inference rules; the graph turns it into `ShapeMismatch`
	once node IDs are known.

	Attributes:
		operands: Positions (into the op's input list) of the conflicting inputs.
		shapes: Rendered conflicting shapes.
	"""

	def __init__(self, message: str, operands: Sequence[int] = (), shapes: Sequence[Shape] = ()) -> None:
		super().__init__(message)
		self.message = message
		self.operands = tuple(operands)
		self.shapes = tuple(format_shape(s) for s in shapes)


InferFn = Callable[[Sequence[Shape], Sequence[DType], Mapping[str, Any]], tuple[Shape, DType]]
NormalizeFn = Callable[[Sequence[Shape], dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class OpSpec:
	kind: OpKind
	category: OpCategory
	arity: int | None  # None = variadic (FUSED)
	infer: InferFn
	normalize: NormalizeFn | None = None


# =============================================================================
# Helpers
# =============================================================================


def _normalize_axis(axis: int, rank: int) -> int:
	if not -rank <= axis < rank:
		raise ShapeRuleViolation(f"axis {axis} out of range for rank {rank}")
	return axis % rank


def _same_dtype(dtypes: Sequence[DType], what: str) -> DType:
	first = dtypes[0]
	for d in dtypes[1:]:
		if d != first:
			raise ShapeRuleViolation(f"{what} dtype mismatch: {first.name} vs {d.name}")
	return first


def _require_rank(shape: Shape, rank: int, operand: int, what: str) -> None:
	if len(shape) < rank:
		raise ShapeRuleViolation(
			f"{what} expects rank >= {rank}, got rank {len(shape)}",
			operands=(operand,),
			shapes=(shape,),
		)


# =============================================================================
# Inference rules
# =============================================================================


def _infer_input(in_shapes, in_dtypes, params):
	return as_shape(params["shape"]), params["dtype"]


def _infer_constant(in_shapes, in_dtypes, params):
	value = params["value"]
	return as_shape(value.shape), dtype_from_numpy(value.dtype)


def _infer_unary(in_shapes, in_dtypes, params):
	return in_shapes[0], in_dtypes[0]


def _make_infer_binary(result_dtype: DType | None):
	def infer(in_shapes, in_dtypes, params):
		a, b = in_shapes
		if len(a) != len(b):
			raise ShapeRuleViolation(
				f"elementwise operands have different ranks ({len(a)} vs {len(b)})",
				operands=(0, 1),
				shapes=(a, b),
			)
		for x, y in zip(a, b):
			if not x.equals(y):
				raise ShapeRuleViolation(
					f"elementwise operands differ in dimension {x} vs {y}",
					operands=(0, 1),
					shapes=(a, b),
				)
		dtype = _same_dtype(in_dtypes, "elementwise")
		return a, result_dtype or dtype

	return infer


def _normalize_reduce(in_shapes, params):
	params["axis"] = _normalize_axis(int(params["axis"]), len(in_shapes[0]))
	params["keepdim"] = bool(params.get("keepdim", False))
	return params


def _infer_reduce(in_shapes, in_dtypes, params):
	shape = list(in_shapes[0])
	axis = params["axis"]
	if not 0 <= axis < len(shape):
		raise ShapeRuleViolation(f"reduce axis {axis} out of range", operands=(0,), shapes=(in_shapes[0],))
	if params["keepdim"]:
		shape[axis] = Const(1)
	else:
		shape.pop(axis)
	return tuple(shape), in_dtypes[0]


def _normalize_shape_param(in_shapes, params):
	params["shape"] = as_shape(params["shape"])
	return params


def _infer_reshape(in_shapes, in_dtypes, params):
	src = in_shapes[0]
	target = params["shape"]
	if not numel(src).equals(numel(target)):
		raise ShapeRuleViolation(
			f"reshape changes the element count ({numel(src)} vs {numel(target)})",
			operands=(0,),
			shapes=(src, target),
		)
	return target, in_dtypes[0]


def _normalize_permute(in_shapes, params):
	rank = len(in_shapes[0])
	params["axes"] = tuple(_normalize_axis(int(a), rank) for a in params["axes"])
	return params


def _infer_permute(in_shapes, in_dtypes, params):
	src = in_shapes[0]
	axes = params["axes"]
	if sorted(axes) != list(range(len(src))):
		raise ShapeRuleViolation(f"permute axes {axes} are not a permutation of rank {len(src)}")
	return tuple(src[a] for a in axes), in_dtypes[0]


def _infer_expand(in_shapes, in_dtypes, params):
	src = in_shapes[0]
	target = params["shape"]
	if len(src) != len(target):
		raise ShapeRuleViolation(
			f"expand needs equal ranks ({len(src)} vs {len(target)})",
			operands=(0,),
			shapes=(src, target),
		)
	for x, y in zip(src, target):
		if not (x.equals(y) or x.equals(1)):
			raise ShapeRuleViolation(
				f"cannot expand dimension {x} to {y}",
				operands=(0,),
				shapes=(src, target),
			)
	return target, in_dtypes[0]


def _normalize_slice(in_shapes, params):
	params["axis"] = _normalize_axis(int(params["axis"]), len(in_shapes[0]))
	params["start"] = sym(params.get("start", 0)).simplify()
	stop = params.get("stop")
	params["stop"] = in_shapes[0][params["axis"]] if stop is None else sym(stop).simplify()
	return params


def _infer_slice(in_shapes, in_dtypes, params):
	src = in_shapes[0]
	axis = params["axis"]
	start: Expr = params["start"]
	extent = minimum(params["stop"], src[axis]).simplify()
	if start.is_constant and extent.is_constant and not 0 <= start.as_int() <= extent.as_int():
		raise ShapeRuleViolation(
			f"slice [{start}:{params['stop']}] is empty or out of range for dimension {src[axis]}",
			operands=(0,),
			shapes=(src,),
		)
	shape = list(src)
	shape[axis] = (extent - start).simplify()
	return tuple(shape), in_dtypes[0]


def _normalize_pad(in_shapes, params):
	params["axis"] = _normalize_axis(int(params["axis"]), len(in_shapes[0]))
	params["before"] = sym(params.get("before", 0)).simplify()
	params["after"] = sym(params.get("after", 0)).simplify()
	return params


def _infer_pad(in_shapes, in_dtypes, params):
	shape = list(in_shapes[0])
	axis = params["axis"]
	shape[axis] = (shape[axis] + params["before"] + params["after"]).simplify()
	return tuple(shape), in_dtypes[0]


def _infer_matmul(in_shapes, in_dtypes, params):
	a, b = in_shapes
	_require_rank(a, 2, 0, "matmul")
	_require_rank(b, 2, 1, "matmul")
	if not a[-1].equals(b[-2]):
		raise ShapeRuleViolation(
			f"matmul inner dimensions differ ({a[-1]} vs {b[-2]})",
			operands=(0, 1),
			shapes=(a, b),
		)
	if len(b) > 2:
		batch_a, batch_b = a[:-2], b[:-2]
		if len(batch_a) != len(batch_b) or not all(x.equals(y) for x, y in zip(batch_a, batch_b)):
			raise ShapeRuleViolation(
				"batched matmul operands have different batch dimensions",
				operands=(0, 1),
				shapes=(a, b),
			)
	dtype = _same_dtype(in_dtypes, "matmul")
	return (*a[:-1], b[-1]), dtype


def _infer_fused(in_shapes, in_dtypes, params):
	return params["group"].infer(in_shapes, in_dtypes)


# =============================================================================
# Op table
# =============================================================================


def _table() -> dict[OpKind, OpSpec]:
	table: dict[OpKind, OpSpec] = {
		OpKind.INPUT: OpSpec(OpKind.INPUT, OpCategory.SOURCE, 0, _infer_input),
		OpKind.CONSTANT: OpSpec(OpKind.CONSTANT, OpCategory.SOURCE, 0, _infer_constant),
		OpKind.SUM_REDUCE: OpSpec(OpKind.SUM_REDUCE, OpCategory.REDUCE, 1, _infer_reduce, _normalize_reduce),
		OpKind.MAX_REDUCE: OpSpec(OpKind.MAX_REDUCE, OpCategory.REDUCE, 1, _infer_reduce, _normalize_reduce),
		OpKind.RESHAPE: OpSpec(OpKind.RESHAPE, OpCategory.MOVEMENT, 1, _infer_reshape, _normalize_shape_param),
		OpKind.PERMUTE: OpSpec(OpKind.PERMUTE, OpCategory.MOVEMENT, 1, _infer_permute, _normalize_permute),
		OpKind.EXPAND: OpSpec(OpKind.EXPAND, OpCategory.MOVEMENT, 1, _infer_expand, _normalize_shape_param),
		OpKind.SLICE: OpSpec(OpKind.SLICE, OpCategory.MOVEMENT, 1, _infer_slice, _normalize_slice),
		OpKind.PAD: OpSpec(OpKind.PAD, OpCategory.MOVEMENT, 1, _infer_pad, _normalize_pad),
		OpKind.MATMUL: OpSpec(OpKind.MATMUL, OpCategory.MATMUL, 2, _infer_matmul),
		OpKind.FUSED: OpSpec(OpKind.FUSED, OpCategory.FUSED, None, _infer_fused),
	}
	for kind in (OpKind.NEG, OpKind.RELU, OpKind.EXP, OpKind.LOG, OpKind.SQRT,
				 OpKind.RECIP, OpKind.SIN, OpKind.EXP2, OpKind.LOG2):
		table[kind] = OpSpec(kind, OpCategory.UNARY, 1, _infer_unary)
	for kind in (OpKind.ADD, OpKind.SUB, OpKind.MUL, OpKind.DIV, OpKind.MAXIMUM, OpKind.MOD):
		table[kind] = OpSpec(kind, OpCategory.BINARY, 2, _make_infer_binary(None))
	table[OpKind.LESS_THAN] = OpSpec(OpKind.LESS_THAN, OpCategory.BINARY, 2, _make_infer_binary(bool_))
	return table


OP_TABLE: dict[OpKind, OpSpec] = _table()

ELEMENTWISE = frozenset(k for k, s in OP_TABLE.items() if s.category in (OpCategory.UNARY, OpCategory.BINARY))
MOVEMENT = frozenset(k for k, s in OP_TABLE.items() if s.category is OpCategory.MOVEMENT)


def check_op_table() -> None:
	missing = [k.name for k in OpKind if k not in OP_TABLE]
	if missing:
		raise RuntimeError(f"op table has no shape rule for: {', '.join(missing)}")
	for kind, spec in OP_TABLE.items():
		if spec.kind is not kind:
			raise RuntimeError(f"op table entry {kind.name} is registered as {spec.kind.name}")


def category_of(kind: OpKind) -> OpCategory:
	return OP_TABLE[kind].category


check_op_table()
