"""Execution engine.

`compile` turns a user graph into a `CompiledPlan`: it optimizes a private
copy of the graph, plans buffer memory, asks the backend to compile one
kernel per compute node and emits the instruction list. The plan keeps every
size symbolic; `CompiledPlan.execute` binds dimension variables from the
concrete input arrays, resolves the memory layout for that binding and runs
the instructions. Executing again with other compatible shapes reuses the
same plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Sequence

import numpy as np

from tensorplan.backend import Backend, BufferView, KernelHandle
from tensorplan.config import CompilerConfig
from tensorplan.errors import BackendFailure, IRValidationError, ShapeMismatch, UnresolvedSymbol
from tensorplan.ir import DType, FusedKernelGroup, Graph, OpKind, group_from_nodes
from tensorplan.log import get_logger
from tensorplan.passes import PassManager, PipelineReport
from tensorplan.scheduler import (
    CopyIn,
    Instruction,
    Launch,
    LRUCache,
    MemoryLayout,
    MemoryPlan,
    MemoryPlanner,
    PlanStats,
    format_instructions,
    format_stats,
)
from tensorplan.symbolic import Expr, Shape, Var, evaluate_shape, format_shape

if TYPE_CHECKING:
    from tensorplan.ir import Node

__all__ = ["compile", "lower", "CompiledPlan", "ExecutionContext", "InputSpec", "bind_symbols"]

logger = get_logger(__name__)


# =============================================================================
# Compilation
# =============================================================================


@dataclass(frozen=True, slots=True)
class InputSpec:
    """A graph input the plan expects at execution."""

    name: str
    node_id: int
    shape: Shape
    dtype: DType


def compile(graph: Graph, backend: Backend, config: CompilerConfig | None = None) -> CompiledPlan:  # noqa: A001
    """Optimize, plan and lower `graph` for `backend`.

    The caller's graph is not modified.

    Raises:
        ShapeMismatch / CyclicDependency / IRValidationError: the graph is invalid.
        BackendFailure: the backend could not compile a kernel.
    """
    config = config or CompilerConfig()
    if not isinstance(backend, Backend):
        raise TypeError(f"{type(backend).__name__} does not implement the backend contract")
    if not graph.outputs:
        raise IRValidationError(f"graph {graph.name!r} has no outputs")

    declared = tuple(graph.input_names)
    work = graph.copy()
    report = PassManager.from_config(config).run(work)
    memory = MemoryPlanner(config.memory).run(work)
    plan = lower(work, backend, memory, config=config, declared_inputs=declared, report=report)

    logger.info(
        "compiled %r for %s: %d -> %d node(s) in %d round(s), %d launch(es) (%d fused), arena %s bytes",
        graph.name, backend.name, report.nodes_before, report.nodes_after, report.rounds,
        plan.stats.launches, plan.stats.fused_launches, memory.total_bytes,
    )
    return plan


def lower(
    graph: Graph,
    backend: Backend,
    memory: MemoryPlan,
    *,
    config: CompilerConfig | None = None,
    declared_inputs: Sequence[str] | None = None,
    report: PipelineReport | None = None,
) -> CompiledPlan:
    """Emit instructions for an already optimized and planned graph."""
    stats = PlanStats(
        storages=len(memory.storage_sizes),
        reused_slots=len(memory.slots) - len(memory.storage_sizes),
        arena_bytes=str(memory.total_bytes),
    )
    instructions: list[Instruction] = []

    for step, nid in enumerate(memory.schedule):
        node = graph.node(nid)
        offset = memory.offset_of(nid)
        size = memory.slots[nid].size

        if node.kind is OpKind.INPUT:
            instructions.append(CopyIn(step, nid, offset, size, source="input", name=node.params["name"]))
            stats.copies += 1
        elif node.kind is OpKind.CONSTANT:
            instructions.append(CopyIn(step, nid, offset, size, source="constant", value=node.params["value"]))
            stats.copies += 1
        else:
            group, operands = _kernel_group(graph, node)
            kernel = _compile_kernel(backend, group, nid)
            instructions.append(
                Launch(step, nid, offset, size, kernel=kernel, inputs=tuple(operands), label=kernel.label)
            )
            stats.launches += 1
            if node.kind is OpKind.FUSED:
                stats.fused_launches += 1

    stats.instructions = len(instructions)
    inputs = {
        name: InputSpec(name=name, node_id=nid, shape=graph.node(nid).shape, dtype=graph.node(nid).dtype)
        for name, nid in zip(graph.input_names, graph.input_ids)
    }
    return CompiledPlan(
        graph=graph,
        backend=backend,
        memory=memory,
        instructions=instructions,
        outputs=list(graph.outputs),
        inputs=inputs,
        declared_inputs=frozenset(declared_inputs if declared_inputs is not None else inputs),
        required_symbols=_required_symbols(graph),
        stats=stats,
        config=config or CompilerConfig(),
        report=report,
    )


def _kernel_group(graph: Graph, node: Node) -> tuple[FusedKernelGroup, list[int]]:
    if node.kind is OpKind.FUSED:
        return node.params["group"], list(node.inputs)
    return group_from_nodes(graph, [node.id])


def _compile_kernel(backend: Backend, group: FusedKernelGroup, node_id: int) -> KernelHandle:
    try:
        return backend.compile(group, node_id=node_id)
    except BackendFailure:
        raise
    except Exception as exc:
        raise BackendFailure(
            f"cannot compile {group.describe()}: {exc}",
            backend=backend.name,
            node_id=node_id,
        ) from exc


def _expr_symbols(value: Any) -> set[str]:
    if isinstance(value, Expr):
        return set(value.free_symbols())
    if isinstance(value, (tuple, list)):
        names: set[str] = set()
        for item in value:
            names |= _expr_symbols(item)
        return names
    if isinstance(value, FusedKernelGroup):
        names = set()
        for op in value.ops:
            names |= _expr_symbols(op.shape)
            for param in op.params.values():
                names |= _expr_symbols(param)
        return names
    return set()


def _required_symbols(graph: Graph) -> frozenset[str]:
    names: set[str] = set()
    for node in graph.nodes.values():
        names |= _expr_symbols(node.shape)
        for param in node.params.values():
            names |= _expr_symbols(param)
    return frozenset(names)


# =============================================================================
# Symbol binding
# =============================================================================


def _solve_linear(expr: Expr, value: int) -> tuple[str, int] | None:
    """Solve `expr == value` for `a*v + b` forms of a single variable."""
    names = expr.free_symbols()
    if len(names) != 1:
        return None
    (name,) = names
    b = expr.substitute({name: 0})
    a_plus_b = expr.substitute({name: 1})
    if not (b.is_constant and a_plus_b.is_constant):
        return None
    a = a_plus_b.as_int() - b.as_int()
    if a == 0 or not expr.equals(Var(name) * a + b):
        return None
    solution, rem = divmod(value - b.as_int(), a)
    if rem or solution < 0:
        raise ValueError(f"no non-negative integer {name} satisfies {expr} == {value}")
    return name, solution


def bind_symbols(specs: Sequence[InputSpec], shapes: Sequence[tuple[int, ...]]) -> dict[str, int]:
    """Unify concrete input shapes with the declared symbolic shapes.

    Plain variables bind directly; single-variable linear dimensions such as
    `2*n + 1` are solved once nothing simpler is left; every other dimension
    is checked after substitution.

    Raises:
        ShapeMismatch: wrong rank, wrong concrete dim or conflicting bindings.
        UnresolvedSymbol: a dimension could not be solved for its variables.
    """
    bindings: dict[str, int] = {}
    pending: list[tuple[InputSpec, int, tuple[int, ...]]] = []
    for spec, dims in zip(specs, shapes):
        if len(spec.shape) != len(dims):
            raise ShapeMismatch(
                f"input {spec.name!r} has rank {len(dims)}, expected rank {len(spec.shape)}",
                node_ids=(spec.node_id,),
                shapes=(format_shape(spec.shape), str(list(dims))),
            )
        pending.extend((spec, axis, tuple(dims)) for axis in range(len(dims)))

    while pending:
        progress = False
        deferred = []
        for spec, axis, dims in pending:
            expr = spec.shape[axis].substitute(bindings)
            actual = dims[axis]
            if expr.is_constant:
                if expr.as_int() != actual:
                    raise ShapeMismatch(
                        f"input {spec.name!r} dimension {axis} is {actual}, "
                        f"expected {spec.shape[axis]} = {expr.as_int()}",
                        node_ids=(spec.node_id,),
                        shapes=(format_shape(spec.shape), str(list(dims))),
                    )
                progress = True
            elif isinstance(expr, Var):
                bindings[expr.name] = actual
                progress = True
            else:
                deferred.append((spec, axis, dims))
        if not progress:
            break
        pending = deferred

    for spec, axis, dims in pending:
        expr = spec.shape[axis].substitute(bindings)
        try:
            solved = _solve_linear(expr, dims[axis])
        except ValueError as exc:
            raise ShapeMismatch(
                f"input {spec.name!r} dimension {axis}: {exc}",
                node_ids=(spec.node_id,),
                shapes=(format_shape(spec.shape), str(list(dims))),
            ) from None
        if solved is None:
            raise UnresolvedSymbol(
                expr.free_symbols(),
                f"cannot bind {', '.join(sorted(expr.free_symbols()))} from input {spec.name!r} "
                f"dimension {axis} ({spec.shape[axis]} = {dims[axis]})",
            )
        bindings[solved[0]] = solved[1]
        # Re-run so every remaining dimension is checked against the new binding.
        return _rebind(specs, shapes, bindings)
    return bindings


def _rebind(specs: Sequence[InputSpec], shapes: Sequence[tuple[int, ...]], bindings: dict[str, int]) -> dict[str, int]:
    substituted = [
        InputSpec(spec.name, spec.node_id, tuple(d.substitute(bindings) for d in spec.shape), spec.dtype)
        for spec in specs
    ]
    return {**bindings, **bind_symbols(substituted, shapes)}


# =============================================================================
# Execution
# =============================================================================


class ExecutionContext:
    """Owns the arena of one execution; releases it on exit.

    Example:
        >>> with ExecutionContext(backend, layout.total_bytes) as ctx:
        ...     backend.copy_in(ctx.view(offset, shape, dtype), array)
    """

    def __init__(self, backend: Backend, nbytes: int) -> None:
        self.backend = backend
        self.nbytes = nbytes
        self.buffer: Any = None

    def __enter__(self) -> ExecutionContext:
        self.buffer = self.backend.allocate(self.nbytes)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None:
                self._drain()
        finally:
            self.backend.release(self.buffer)
            self.buffer = None

    def _drain(self) -> None:
        try:
            self.backend.synchronize()
        except BackendFailure as secondary:
            logger.debug("discarding backend failure during unwind: %s", secondary)

    def view(self, offset: int, shape: tuple[int, ...], dtype: DType) -> BufferView:
        return BufferView(buffer=self.buffer, offset=offset, shape=shape, dtype=dtype)


@dataclass(slots=True)
class _Binding:
    symbols: dict[str, int]
    layout: MemoryLayout
    shapes: dict[int, tuple[int, ...]]


@dataclass
class CompiledPlan:
    """An optimized, memory-planned, backend-lowered graph.

    Attributes:
        graph: The optimized graph (a private copy).
        backend: Backend the kernels were compiled for.
        memory: Symbolic memory plan.
        instructions: Instructions in execution order.
        outputs: Output node IDs in declaration order.
        inputs: Inputs the optimized graph still reads, by name.
        declared_inputs: Every input name of the source graph.
        required_symbols: Dimension variables execution must bind.
    """

    graph: Graph
    backend: Backend
    memory: MemoryPlan
    instructions: list[Instruction]
    outputs: list[int]
    inputs: dict[str, InputSpec]
    declared_inputs: frozenset[str]
    required_symbols: frozenset[str]
    stats: PlanStats
    config: CompilerConfig = field(default_factory=CompilerConfig)
    report: PipelineReport | None = None
    executions: int = 0
    _bindings: LRUCache[tuple, _Binding] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._bindings = LRUCache(self.config.memory.layout_cache_size)

    def bind(self, shapes: Mapping[str, tuple[int, ...]]) -> dict[str, int]:
        """Dimension bindings implied by concrete input shapes."""
        specs = list(self.inputs.values())
        missing = [spec.name for spec in specs if spec.name not in shapes]
        if missing:
            raise IRValidationError(f"missing graph input(s): {', '.join(missing)}")
        bindings = bind_symbols(specs, [tuple(shapes[spec.name]) for spec in specs])
        unbound = self.required_symbols - bindings.keys()
        if unbound:
            raise UnresolvedSymbol(
                unbound,
                f"inputs do not bind {', '.join(sorted(unbound))}, which the plan needs",
            )
        return {name: bindings[name] for name in sorted(self.required_symbols)}

    def layout(self, bindings: Mapping[str, int]) -> MemoryLayout:
        return self._binding(dict(bindings)).layout

    def _binding(self, bindings: dict[str, int]) -> _Binding:
        key = tuple(sorted(bindings.items()))
        cached = self._bindings.get(key)
        if cached is None:
            layout = self.memory.resolve(bindings)
            shapes = {nid: evaluate_shape(node.shape, bindings) for nid, node in self.graph.nodes.items()}
            cached = _Binding(symbols=bindings, layout=layout, shapes=shapes)
            self._bindings.put(key, cached)
        return cached

    def execute(self, inputs: Mapping[str, Any]) -> list[np.ndarray]:
        """Run the plan on concrete inputs and return the outputs.

        Inputs the optimizer proved unused may be passed and are ignored.

        Raises:
            IRValidationError: unknown or missing input names, or an input
                whose dtype cannot be cast to the declared one.
            ShapeMismatch: input shapes conflict with the declared shapes.
            UnresolvedSymbol: a needed dimension variable stays unbound.
            BackendFailure: a kernel failed.
        """
        unknown = sorted(set(inputs) - self.declared_inputs)
        if unknown:
            raise IRValidationError(f"unknown graph input(s): {', '.join(unknown)}")

        arrays: dict[str, np.ndarray] = {}
        for name, spec in self.inputs.items():
            if name not in inputs:
                continue
            array = np.asarray(inputs[name])
            if not np.can_cast(array.dtype, spec.dtype.np, casting="same_kind"):
                raise IRValidationError(
                    f"input {name!r} has dtype {array.dtype}, cannot cast to {spec.dtype.name}"
                )
            arrays[name] = array.astype(spec.dtype.np, copy=False)

        bound = self._binding(self.bind({name: a.shape for name, a in arrays.items()}))
        layout = bound.layout
        backend = self.backend

        with ExecutionContext(backend, layout.total_bytes) as ctx:

            def view(nid: int) -> BufferView:
                node = self.graph.nodes[nid]
                return ctx.view(layout.offsets[nid], bound.shapes[nid], node.dtype)

            for inst in self.instructions:
                if isinstance(inst, CopyIn):
                    data = arrays[inst.name] if inst.source == "input" else inst.value
                    backend.copy_in(view(inst.node_id), data)
                elif isinstance(inst, Launch):
                    backend.run(inst.kernel, [view(i) for i in inst.inputs], view(inst.node_id), bound.symbols)
                else:
                    raise TypeError(f"Unknown instruction type: {type(inst)}")

            backend.synchronize()
            results = [backend.copy_out(view(nid)) for nid in self.outputs]

        self.executions += 1
        logger.info(
            "executed %r on %s with %s: arena %d bytes",
            self.graph.name, backend.name, bound.symbols or "{}", layout.total_bytes,
        )
        return results

    def describe(self, bindings: Mapping[str, int] | None = None, *, max_lines: int | None = None) -> str:
        layout = self.layout(bindings) if bindings is not None else None
        lines = [f"CompiledPlan {self.graph.name!r} on {self.backend.name}"]
        if self.required_symbols:
            lines.append(f"  Symbols: {', '.join(sorted(self.required_symbols))}")
        lines.append("Instructions:")
        lines.append(format_instructions(self.instructions, layout=layout, max_lines=max_lines))
        lines.append("Statistics:")
        lines.append(format_stats(self.stats, layout=layout))
        if self.report is not None:
            lines.append("Passes:")
            lines.append(self.report.format())
        return "\n".join(lines)
