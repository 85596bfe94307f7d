"""Compiled plan persistence.

A saved plan records the optimized graph (nodes with their tags, params,
dtypes and shapes; edges as input ID lists; outputs) and the memory plan
(buffer slots, storage assignment, storage offsets and arena size). Sizes
stay symbolic and are encoded losslessly with `Expr.to_json`. Loading
rebuilds the graph under its original node IDs and lowers it again for a
backend without re-running the pass pipeline.
"""

from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Any

import numpy as np

from tensorplan.backend import Backend
from tensorplan.config import CompilerConfig
from tensorplan.ir import DType, FusedKernelGroup, FusedOp, Graph, OpKind, Operand, dtype_by_name
from tensorplan.runtime import CompiledPlan, lower
from tensorplan.scheduler import BufferSlot, MemoryConfig, MemoryPlan
from tensorplan.symbolic import Expr, expr_from_json

FORMAT = "tensorplan.plan"
VERSION = 1


# =============================================================================
# Values
# =============================================================================


def _encode(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Expr):
        return {"$expr": value.to_json()}
    if isinstance(value, DType):
        return {"$dtype": value.name}
    if isinstance(value, np.ndarray):
        return {
            "$array": {
                "dtype": value.dtype.str,
                "shape": list(value.shape),
                "data": base64.b64encode(np.ascontiguousarray(value).tobytes()).decode("ascii"),
            }
        }
    if isinstance(value, FusedKernelGroup):
        return {"$group": _encode_group(value)}
    if isinstance(value, (tuple, list)):
        return {"$tuple": [_encode(v) for v in value]}
    if isinstance(value, dict):
        return {"$dict": {k: _encode(v) for k, v in value.items()}}
    raise TypeError(f"cannot serialize parameter of type {type(value).__name__}")


def _decode(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    if "$expr" in value:
        return expr_from_json(value["$expr"])
    if "$dtype" in value:
        return dtype_by_name(value["$dtype"])
    if "$array" in value:
        spec = value["$array"]
        raw = base64.b64decode(spec["data"])
        array = np.frombuffer(raw, dtype=np.dtype(spec["dtype"])).reshape(spec["shape"]).copy()
        array.setflags(write=False)
        return array
    if "$group" in value:
        return _decode_group(value["$group"])
    if "$tuple" in value:
        return tuple(_decode(v) for v in value["$tuple"])
    if "$dict" in value:
        return {k: _decode(v) for k, v in value["$dict"].items()}
    raise ValueError(f"malformed parameter encoding: {sorted(value)}")


def _encode_group(group: FusedKernelGroup) -> dict:
    return {
        "num_inputs": group.num_inputs,
        "anchor": group.anchor,
        "ops": [
            {
                "kind": op.kind.value,
                "operands": [[o.source, o.index] for o in op.operands],
                "shape": [d.to_json() for d in op.shape],
                "dtype": op.dtype.name,
                "params": {k: _encode(v) for k, v in op.params.items()},
                "source_id": op.source_id,
            }
            for op in group.ops
        ],
    }


def _decode_group(data: dict) -> FusedKernelGroup:
    ops = tuple(
        FusedOp(
            kind=OpKind(op["kind"]),
            operands=tuple(Operand(source, index) for source, index in op["operands"]),
            shape=tuple(expr_from_json(d) for d in op["shape"]),
            dtype=dtype_by_name(op["dtype"]),
            params={k: _decode(v) for k, v in op["params"].items()},
            source_id=op["source_id"],
        )
        for op in data["ops"]
    )
    return FusedKernelGroup(ops=ops, num_inputs=data["num_inputs"], anchor=data["anchor"])


# =============================================================================
# Plans
# =============================================================================


def plan_to_dict(plan: CompiledPlan) -> dict:
    graph = plan.graph
    memory = plan.memory
    nodes = []
    for nid in sorted(graph.nodes):
        node = graph.nodes[nid]
        nodes.append({
            "id": nid,
            "kind": node.kind.value,
            "inputs": list(node.inputs),
            "shape": [d.to_json() for d in node.shape],
            "dtype": node.dtype.name,
            "params": {k: _encode(v) for k, v in node.params.items()},
        })
    slots = [
        {
            "node_id": slot.node_id,
            "size": slot.size.to_json(),
            "start": slot.start,
            "end": slot.end,
            "storage": memory.assignment[nid],
        }
        for nid, slot in memory.slots.items()
    ]
    return {
        "format": FORMAT,
        "version": VERSION,
        "name": graph.name,
        "backend": plan.backend.name,
        "declared_inputs": sorted(plan.declared_inputs),
        "nodes": nodes,
        "outputs": list(plan.outputs),
        "memory": {
            "alignment": memory.config.alignment,
            "capacity_bytes": memory.config.capacity_bytes,
            "schedule": list(memory.schedule),
            "slots": slots,
            "storages": [
                {"size": size.to_json(), "offset": offset.to_json()}
                for size, offset in zip(memory.storage_sizes, memory.storage_offsets)
            ],
            "total_bytes": memory.total_bytes.to_json(),
        },
    }


def plan_from_dict(data: dict, backend: Backend, config: CompilerConfig | None = None) -> CompiledPlan:
    """Rebuild a runnable plan; kernels are compiled again by `backend`.

    Raises:
        ValueError: the data is not a supported plan encoding.
        ShapeMismatch: a recorded shape disagrees with shape inference.
    """
    if data.get("format") != FORMAT:
        raise ValueError(f"not a serialized plan (format={data.get('format')!r})")
    if data.get("version") != VERSION:
        raise ValueError(f"unsupported plan version {data.get('version')!r}, expected {VERSION}")

    graph = Graph(name=data["name"])
    for entry in sorted(data["nodes"], key=lambda e: e["id"]):
        graph.add_node(
            OpKind(entry["kind"]),
            entry["inputs"],
            {k: _decode(v) for k, v in entry["params"].items()},
            shape=[expr_from_json(d) for d in entry["shape"]],
            dtype=dtype_by_name(entry["dtype"]),
            node_id=entry["id"],
        )
    for out in data["outputs"]:
        graph.mark_output(out)
    graph.validate()

    mem = data["memory"]
    memory_config = MemoryConfig(alignment=mem["alignment"], capacity_bytes=mem["capacity_bytes"])
    slots = {
        s["node_id"]: BufferSlot(node_id=s["node_id"], size=expr_from_json(s["size"]), start=s["start"], end=s["end"])
        for s in mem["slots"]
    }
    memory = MemoryPlan(
        schedule=list(mem["schedule"]),
        slots=slots,
        assignment={s["node_id"]: s["storage"] for s in mem["slots"]},
        storage_sizes=[expr_from_json(s["size"]) for s in mem["storages"]],
        storage_offsets=[expr_from_json(s["offset"]) for s in mem["storages"]],
        total_bytes=expr_from_json(mem["total_bytes"]),
        config=memory_config,
    )
    if sorted(memory.schedule) != sorted(graph.nodes):
        raise ValueError("memory plan schedule does not cover the graph nodes")

    config = config or CompilerConfig(memory=memory_config)
    return lower(graph, backend, memory, config=config, declared_inputs=data["declared_inputs"])


def dump_plan(plan: CompiledPlan, path: str | Path) -> None:
    Path(path).write_text(json.dumps(plan_to_dict(plan), indent=2))


def load_plan(path: str | Path, backend: Backend, config: CompilerConfig | None = None) -> CompiledPlan:
    return plan_from_dict(json.loads(Path(path).read_text()), backend, config)
