"""Fused Kernel Groups.

A group is a small straight-line program: each `FusedOp` reads operands that
are either group inputs or results of earlier ops, and the last op is the
group result. The group is carried by one `OpKind.FUSED` node whose inputs
are the group inputs, so the rest of the graph sees a single node while code
generation still sees every original op and its parameters.

When a matmul/reduce producer is fused with elementwise consumers, the group
is *anchored*: `anchor` indexes that op and the ops after it form the
epilogue applied to its result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Hashable, Sequence

from tensorplan.symbolic import Shape, format_shape, shapes_equal

from .dtypes import DType
from .node import freeze_params
from .op import OP_TABLE, OpKind, ShapeRuleViolation

if TYPE_CHECKING:
	from .graph import Graph


@dataclass(frozen=True, slots=True)
class Operand:
	"""`source` is "input" (group input position) or "op" (earlier op index)."""

	source: str
	index: int

	def __repr__(self) -> str:  # pragma: no cover
		return f"{'in' if self.source == 'input' else 'op'}{self.index}"


@dataclass(slots=True)
class FusedOp:
	kind: OpKind
	operands: tuple[Operand, ...]
	shape: Shape
	dtype: DType
	params: dict[str, Any] = field(default_factory=dict)
	source_id: int | None = None

	def key(self) -> Hashable:
		return (self.kind, self.operands, freeze_params(self.params))


@dataclass(slots=True)
class FusedKernelGroup:
	ops: tuple[FusedOp, ...]
	num_inputs: int
	anchor: int | None = None

	@property
	def source_ids(self) -> tuple[int, ...]:
		return tuple(op.source_id for op in self.ops if op.source_id is not None)

	@property
	def result(self) -> FusedOp:
		return self.ops[-1]

	@property
	def anchor_op(self) -> FusedOp | None:
		return None if self.anchor is None else self.ops[self.anchor]

	@property
	def epilogue(self) -> tuple[FusedOp, ...]:
		if self.anchor is None:
			return ()
		return self.ops[self.anchor + 1:]

	def key(self) -> Hashable:
		return ("fused", self.num_inputs, self.anchor, tuple(op.key() for op in self.ops))

	def describe(self) -> str:
		names = [op.kind.value for op in self.ops]
		if self.anchor is not None:
			names[self.anchor] = f"<{names[self.anchor]}>"
		return "fused[" + " -> ".join(names) + "]"

	def infer(self, in_shapes: Sequence[Shape], in_dtypes: Sequence[DType]) -> tuple[Shape, DType]:
		"""Re-run every constituent rule over the group program and check
		the recorded shapes still hold."""
		if len(in_shapes) != self.num_inputs:
			raise ShapeRuleViolation(
				f"fused group expects {self.num_inputs} inputs, got {len(in_shapes)}"
			)
		shapes: list[Shape] = []
		dtypes: list[DType] = []
		for i, op in enumerate(self.ops):
			op_shapes = []
			op_dtypes = []
			for operand in op.operands:
				if operand.source == "input":
					op_shapes.append(in_shapes[operand.index])
					op_dtypes.append(in_dtypes[operand.index])
				else:
					if operand.index >= i:
						raise ShapeRuleViolation(f"fused op {i} reads a later op {operand.index}")
					op_shapes.append(shapes[operand.index])
					op_dtypes.append(dtypes[operand.index])
			shape, dtype = OP_TABLE[op.kind].infer(op_shapes, op_dtypes, op.params)
			if not shapes_equal(shape, op.shape):
				raise ShapeRuleViolation(
					f"fused op {i} ({op.kind.value}) shape drifted: "
					f"recorded {format_shape(op.shape)}, inferred {format_shape(shape)}",
					shapes=(op.shape, shape),
				)
			shapes.append(shape)
			dtypes.append(dtype)
		return shapes[-1], dtypes[-1]


def group_from_nodes(
	graph: Graph,
	member_ids: Sequence[int],
	*,
	anchor_id: int | None = None,
) -> tuple[FusedKernelGroup, list[int]]:
	"""Build a group from graph nodes given in topological order.

	Returns the group and the external input node IDs in group-input order
	(first use order, duplicates collapsed).
	"""
	position = {nid: i for i, nid in enumerate(member_ids)}
	external: list[int] = []
	external_pos: dict[int, int] = {}
	ops: list[FusedOp] = []
	for nid in member_ids:
		node = graph.node(nid)
		operands = []
		for src in node.inputs:
			if src in position:
				operands.append(Operand("op", position[src]))
			else:
				if src not in external_pos:
					external_pos[src] = len(external)
					external.append(src)
				operands.append(Operand("input", external_pos[src]))
		ops.append(
			FusedOp(
				kind=node.kind,
				operands=tuple(operands),
				shape=node.shape,
				dtype=node.dtype,
				params=dict(node.params),
				source_id=nid,
			)
		)
	anchor = None if anchor_id is None else position[anchor_id]
	return FusedKernelGroup(ops=tuple(ops), num_inputs=len(external), anchor=anchor), external
