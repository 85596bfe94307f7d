from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Hashable

import numpy as np

from tensorplan.symbolic import Expr, Shape, format_shape, numel

from .dtypes import DType
from .op import OpCategory, OpKind, category_of


@dataclass(slots=True)
class Node:
	"""One operation in the graph arena.

	A node is an SSA value: `inputs` lists producer node IDs in operand order
	and `shape` is the canonical output shape. Nodes are only mutated by the
	owning `Graph` (input rewiring during passes).
	"""

	id: int
	kind: OpKind
	inputs: list[int]
	shape: Shape
	dtype: DType
	params: dict[str, Any] = field(default_factory=dict)

	@property
	def category(self) -> OpCategory:
		return category_of(self.kind)

	@property
	def rank(self) -> int:
		return len(self.shape)

	@property
	def numel(self) -> Expr:
		return numel(self.shape)

	@property
	def nbytes(self) -> Expr:
		return (self.numel * self.dtype.itemsize).simplify()

	@property
	def label(self) -> str:
		name = self.params.get("name")
		return f"%{self.id}:{name}" if name else f"%{self.id}"

	def params_key(self) -> Hashable:
		return freeze_params(self.params)

	def __repr__(self) -> str:  # pragma: no cover
		return f"Node(id={self.id}, kind={self.kind.value}, inputs={self.inputs}, shape={format_shape(self.shape)})"


def freeze_params(value: Any) -> Hashable:
	"""Exact, hashable key for op parameters.

	Arrays are keyed by dtype, shape and raw bytes, never by approximate
	value comparison.
	"""
	if isinstance(value, np.ndarray):
		return ("ndarray", value.dtype.str, value.shape, value.tobytes())
	if isinstance(value, dict):
		return tuple(sorted((k, freeze_params(v)) for k, v in value.items()))
	if isinstance(value, (list, tuple)):
		return tuple(freeze_params(v) for v in value)
	key = getattr(value, "key", None)
	if callable(key):
		return key()
	return value
