from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from typing import Any, Iterator, Sequence

import numpy as np

from tensorplan.errors import CyclicDependency, IRValidationError, ShapeMismatch
from tensorplan.symbolic import ExprLike, Shape, as_shape, format_shape, shapes_equal

from .dtypes import DType, dtype_from_numpy, float32
from .node import Node
from .op import OP_TABLE, OpCategory, OpKind, ShapeRuleViolation


@dataclass
class Graph:
	"""Arena of operation nodes addressed by stable integer IDs.

	Design choices:
	- IDs are handed out in creation order and never reused, so a node that
	  survives a pass keeps the ID the caller holds.
	- `_users` is the reverse-adjacency index: producer -> {consumer: number of
	  input slots that read the producer}. Rewiring touches only the
	  incoming edges of the replaced node.
	- `outputs` are external uses: they keep nodes alive across DCE and are
	  rewired by `replace_uses` like any consumer.
	"""

	name: str = "graph"
	nodes: dict[int, Node] = field(default_factory=dict)
	outputs: list[int] = field(default_factory=list)
	_users: dict[int, dict[int, int]] = field(default_factory=dict, repr=False)
	_inputs_by_name: dict[str, int] = field(default_factory=dict, repr=False)
	_next_id: int = 0

	# -------------------------------------------------------------------------
	# Construction
	# -------------------------------------------------------------------------

	def add_input(self, name: str, shape: Sequence[ExprLike], dtype: DType = float32) -> int:
		return self.add_node(OpKind.INPUT, [], {"name": name, "shape": as_shape(shape), "dtype": dtype})

	def add_constant(self, value: Any, *, name: str | None = None, dtype: DType | None = None) -> int:
		array = np.asarray(value, dtype=dtype.np if dtype is not None else None)
		if dtype is None and array.dtype == np.float64:
			array = array.astype(np.float32)
		elif dtype is None and array.dtype == np.int64:
			array = array.astype(np.int32)
		array = np.ascontiguousarray(array)
		array.setflags(write=False)
		params: dict[str, Any] = {"value": array}
		if name is not None:
			params["name"] = name
		return self.add_node(OpKind.CONSTANT, [], params)

	def add_node(
		self,
		kind: OpKind,
		inputs: Sequence[int],
		params: dict[str, Any] | None = None,
		*,
		shape: Sequence[ExprLike] | None = None,
		dtype: DType | None = None,
		node_id: int | None = None,
	) -> int:
		"""Create a node after validating it against the kind's shape rule.

		`shape`/`dtype`, when given, are the caller's declared output and must
		agree with the inferred one. `node_id` restores a node under a known
		ID (plan loading); it must not be lower than any ID handed out so far.

		Raises:
			IRValidationError: unknown input IDs, wrong arity, a duplicate
				input name or a reused node ID.
			ShapeMismatch: inputs violate the shape rule, or the declared
				shape disagrees with the inferred shape.
		"""
		inputs = list(inputs)
		for src in inputs:
			if src not in self.nodes:
				raise IRValidationError(f"{kind.value}: input %{src} is not a node of graph {self.name!r}")
		if node_id is not None and node_id < self._next_id:
			raise IRValidationError(f"node ID %{node_id} was already handed out in graph {self.name!r}")
		params = dict(params or {})
		if kind is OpKind.INPUT and params.get("name") in self._inputs_by_name:
			raise IRValidationError(f"duplicate graph input name {params['name']!r}")
		out_shape, out_dtype = self._infer(kind, inputs, params)

		if shape is not None:
			declared = as_shape(shape)
			if not shapes_equal(declared, out_shape):
				raise ShapeMismatch(
					f"{kind.value}: declared output shape disagrees with inferred shape",
					node_ids=inputs,
					shapes=(format_shape(declared), format_shape(out_shape)),
				)
		if dtype is not None and dtype != out_dtype:
			raise IRValidationError(f"{kind.value}: declared dtype {dtype.name} but inferred {out_dtype.name}")

		new_id = self._next_id if node_id is None else node_id
		node = Node(id=new_id, kind=kind, inputs=inputs, shape=out_shape, dtype=out_dtype, params=params)
		self._next_id = new_id + 1
		self.nodes[node.id] = node
		self._users[node.id] = {}
		for src in inputs:
			users = self._users[src]
			users[node.id] = users.get(node.id, 0) + 1
		if kind is OpKind.INPUT:
			self._inputs_by_name[params["name"]] = node.id
		return node.id

	def _infer(self, kind: OpKind, inputs: list[int], params: dict[str, Any]) -> tuple[Shape, DType]:
		spec = OP_TABLE[kind]
		if spec.arity is not None and len(inputs) != spec.arity:
			raise IRValidationError(f"{kind.value} expects {spec.arity} input(s), got {len(inputs)}")
		in_shapes = [self.nodes[i].shape for i in inputs]
		in_dtypes = [self.nodes[i].dtype for i in inputs]
		try:
			if spec.normalize is not None:
				params.update(spec.normalize(in_shapes, params))
			return spec.infer(in_shapes, in_dtypes, params)
		except ShapeRuleViolation as exc:
			culprits = [inputs[i] for i in exc.operands] if exc.operands else inputs
			shapes = exc.shapes or tuple(format_shape(s) for s in in_shapes)
			raise ShapeMismatch(f"{kind.value}: {exc.message}", node_ids=culprits, shapes=shapes) from None

	def mark_output(self, node_id: int) -> int:
		self.node(node_id)
		self.outputs.append(node_id)
		return node_id

	# Builders ---------------------------------------------------------------

	def _unary(kind: OpKind):  # noqa: N805
		def build(self: Graph, x: int) -> int:
			return self.add_node(kind, [x])

		build.__name__ = kind.value
		build.__doc__ = f"Elementwise {kind.value}."
		return build

	def _binary(kind: OpKind):  # noqa: N805
		def build(self: Graph, a: int, b: int) -> int:
			return self.add_node(kind, [a, b])

		build.__name__ = kind.value
		build.__doc__ = f"Elementwise {kind.value}; operands must have equal shapes."
		return build

	neg = _unary(OpKind.NEG)
	relu = _unary(OpKind.RELU)
	exp = _unary(OpKind.EXP)
	log = _unary(OpKind.LOG)
	sqrt = _unary(OpKind.SQRT)
	recip = _unary(OpKind.RECIP)
	sin = _unary(OpKind.SIN)
	exp2 = _unary(OpKind.EXP2)
	log2 = _unary(OpKind.LOG2)

	add = _binary(OpKind.ADD)
	sub = _binary(OpKind.SUB)
	mul = _binary(OpKind.MUL)
	div = _binary(OpKind.DIV)
	maximum = _binary(OpKind.MAXIMUM)
	mod = _binary(OpKind.MOD)
	less_than = _binary(OpKind.LESS_THAN)

	del _unary, _binary

	def sum(self, x: int, axis: int, *, keepdim: bool = False) -> int:
		return self.add_node(OpKind.SUM_REDUCE, [x], {"axis": axis, "keepdim": keepdim})

	def max(self, x: int, axis: int, *, keepdim: bool = False) -> int:
		return self.add_node(OpKind.MAX_REDUCE, [x], {"axis": axis, "keepdim": keepdim})

	def reshape(self, x: int, shape: Sequence[ExprLike]) -> int:
		return self.add_node(OpKind.RESHAPE, [x], {"shape": shape})

	def permute(self, x: int, axes: Sequence[int]) -> int:
		return self.add_node(OpKind.PERMUTE, [x], {"axes": tuple(axes)})

	def expand(self, x: int, shape: Sequence[ExprLike]) -> int:
		return self.add_node(OpKind.EXPAND, [x], {"shape": shape})

	def slice(self, x: int, axis: int, start: ExprLike = 0, stop: ExprLike | None = None) -> int:
		return self.add_node(OpKind.SLICE, [x], {"axis": axis, "start": start, "stop": stop})

	def pad(self, x: int, axis: int, before: ExprLike = 0, after: ExprLike = 0) -> int:
		return self.add_node(OpKind.PAD, [x], {"axis": axis, "before": before, "after": after})

	def matmul(self, a: int, b: int) -> int:
		return self.add_node(OpKind.MATMUL, [a, b])

	# -------------------------------------------------------------------------
	# Queries
	# -------------------------------------------------------------------------

	def node(self, node_id: int) -> Node:
		try:
			return self.nodes[node_id]
		except KeyError:
			raise IRValidationError(f"%{node_id} is not a node of graph {self.name!r}") from None

	def users(self, node_id: int) -> list[int]:
		"""Consumers of `node_id` in creation order (each listed once)."""
		return sorted(self._users[node_id])

	def num_users(self, node_id: int) -> int:
		return len(self._users[node_id])

	def is_output(self, node_id: int) -> bool:
		return node_id in self.outputs

	def input_id(self, name: str) -> int:
		return self._inputs_by_name[name]

	@property
	def input_names(self) -> list[str]:
		return list(self._inputs_by_name)

	@property
	def input_ids(self) -> list[int]:
		return list(self._inputs_by_name.values())

	def __contains__(self, node_id: object) -> bool:
		return node_id in self.nodes

	def __len__(self) -> int:
		return len(self.nodes)

	def __iter__(self) -> Iterator[Node]:
		"""Nodes in deterministic topological order."""
		for nid in self.toposort():
			yield self.nodes[nid]

	# -------------------------------------------------------------------------
	# Mutation (used by passes)
	# -------------------------------------------------------------------------

	def replace_uses(self, old_id: int, new_id: int) -> int:
		"""Point every edge (and output slot) that reads `old_id` at `new_id`.

		Cost is proportional to the incoming edges of `old_id`. The
		replacement must produce the same shape and dtype. Returns the
		number of rewired edges.
		"""
		if old_id == new_id:
			return 0
		old = self.node(old_id)
		new = self.node(new_id)
		if not shapes_equal(old.shape, new.shape) or old.dtype != new.dtype:
			raise ShapeMismatch(
				"replacement node has a different shape or dtype",
				node_ids=(old_id, new_id),
				shapes=(format_shape(old.shape), format_shape(new.shape)),
			)
		consumers = self._users[old_id]
		# A consumer that `new_id` already depends on would end up reading its own descendant.
		upstream = self.ancestors(new_id) | {new_id}
		closing = sorted(c for c in consumers if c in upstream)
		if closing:
			raise CyclicDependency(
				f"%{new_id} depends on %{old_id} through %{closing[0]} and cannot replace it",
				node_ids=(old_id, new_id, *closing),
			)

		rewired = 0
		new_users = self._users[new_id]
		for consumer_id, count in consumers.items():
			consumer = self.nodes[consumer_id]
			consumer.inputs = [new_id if src == old_id else src for src in consumer.inputs]
			new_users[consumer_id] = new_users.get(consumer_id, 0) + count
			rewired += count
		consumers.clear()

		if old_id in self.outputs:
			self.outputs = [new_id if o == old_id else o for o in self.outputs]
		return rewired

	def set_input(self, node_id: int, index: int, new_input: int) -> None:
		"""Rewire a single operand, rejecting edges that would close a cycle."""
		node = self.node(node_id)
		self.node(new_input)
		if new_input == node_id or node_id in self.ancestors(new_input):
			raise CyclicDependency(f"edge %{new_input} -> %{node_id} would create a cycle", node_ids=(node_id, new_input))
		old_input = node.inputs[index]
		candidate = list(node.inputs)
		candidate[index] = new_input
		self._infer(node.kind, candidate, dict(node.params))
		node.inputs = candidate

		old_users = self._users[old_input]
		old_users[node_id] -= 1
		if not old_users[node_id]:
			del old_users[node_id]
		new_users = self._users[new_input]
		new_users[node_id] = new_users.get(node_id, 0) + 1

	def ancestors(self, node_id: int) -> set[int]:
		seen: set[int] = set()
		stack = list(self.node(node_id).inputs)
		while stack:
			nid = stack.pop()
			if nid in seen:
				continue
			seen.add(nid)
			stack.extend(self.nodes[nid].inputs)
		return seen

	def remove_node(self, node_id: int) -> None:
		if self._users.get(node_id):
			raise IRValidationError(f"cannot remove %{node_id}: still used by {self.users(node_id)}")
		if node_id in self.outputs:
			raise IRValidationError(f"cannot remove %{node_id}: it is a graph output")
		self._drop(node_id)

	def _drop(self, node_id: int) -> None:
		node = self.nodes.pop(node_id)
		for src in set(node.inputs):
			users = self._users.get(src)
			if users is not None:
				users.pop(node_id, None)
		del self._users[node_id]
		if node.kind is OpKind.INPUT:
			self._inputs_by_name.pop(node.params["name"], None)

	def remove_unreachable(self) -> int:
		"""Dead-code elimination: delete every node the outputs do not reach."""
		live: set[int] = set()
		stack = list(self.outputs)
		while stack:
			nid = stack.pop()
			if nid in live:
				continue
			live.add(nid)
			stack.extend(self.nodes[nid].inputs)
		dead = [nid for nid in self.nodes if nid not in live]
		for nid in reversed(dead):
			self._drop(nid)
		return len(dead)

	# -------------------------------------------------------------------------
	# Ordering and validation
	# -------------------------------------------------------------------------

	def toposort(self) -> list[int]:
		"""Kahn's algorithm; among ready nodes the oldest (smallest ID) goes first."""
		indegree = {nid: len(node.inputs) for nid, node in self.nodes.items()}
		ready = [nid for nid, deg in indegree.items() if deg == 0]
		heapq.heapify(ready)
		order: list[int] = []
		while ready:
			nid = heapq.heappop(ready)
			order.append(nid)
			for consumer_id, count in self._users[nid].items():
				indegree[consumer_id] -= count
				if indegree[consumer_id] == 0:
					heapq.heappush(ready, consumer_id)
		if len(order) != len(self.nodes):
			stuck = [nid for nid in self.nodes if indegree[nid] > 0]
			raise CyclicDependency(f"graph {self.name!r} has a cycle", node_ids=stuck)
		return order

	def infer_node_shape(self, node_id: int) -> tuple[Shape, DType]:
		node = self.node(node_id)
		return self._infer(node.kind, node.inputs, dict(node.params))

	def validate(self) -> None:
		"""Re-check every structural and shape invariant.

		Raises:
			IRValidationError: dangling edges, bad arity or a stale reverse index.
			ShapeMismatch: a stored shape no longer matches its rule.
			CyclicDependency: the edges contain a cycle.
		"""
		expected: dict[int, dict[int, int]] = {nid: {} for nid in self.nodes}
		for node in self.nodes.values():
			for src in node.inputs:
				if src not in self.nodes:
					raise IRValidationError(f"%{node.id} reads missing node %{src}")
				expected[src][node.id] = expected[src].get(node.id, 0) + 1
		for nid, users in expected.items():
			if self._users.get(nid) != users:
				raise IRValidationError(f"reverse index of %{nid} is stale")
		for out in self.outputs:
			if out not in self.nodes:
				raise IRValidationError(f"graph output %{out} was removed")

		for nid in self.toposort():
			node = self.nodes[nid]
			shape, dtype = self.infer_node_shape(nid)
			if not shapes_equal(shape, node.shape) or dtype != node.dtype:
				raise ShapeMismatch(
					f"{node.kind.value} %{nid}: stored shape no longer matches its inputs",
					node_ids=(nid, *node.inputs),
					shapes=(format_shape(node.shape), format_shape(shape)),
				)

	def copy(self) -> Graph:
		clone = Graph(name=self.name)
		for nid, node in self.nodes.items():
			clone.nodes[nid] = Node(
				id=node.id,
				kind=node.kind,
				inputs=list(node.inputs),
				shape=node.shape,
				dtype=node.dtype,
				params=dict(node.params),
			)
			clone._users[nid] = dict(self._users[nid])
		clone.outputs = list(self.outputs)
		clone._inputs_by_name = dict(self._inputs_by_name)
		clone._next_id = self._next_id
		return clone

	def count(self, category: OpCategory | None = None) -> int:
		if category is None:
			return len(self.nodes)
		return sum(1 for node in self.nodes.values() if node.category is category)

	def summary(self) -> str:
		lines: list[str] = [f"Graph(name={self.name!r}, nodes={len(self.nodes)}, outputs={self.outputs})"]
		for node in self:
			ins = ", ".join(f"%{i}" for i in node.inputs)
			kind = node.kind.value
			group = node.params.get("group")
			if group is not None:
				kind = group.describe()
			lines.append(f"- {node.label}: {kind}({ins}) -> {format_shape(node.shape)} {node.dtype.name}")
		return "\n".join(lines)
