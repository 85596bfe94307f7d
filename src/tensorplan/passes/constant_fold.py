from __future__ import annotations

from dataclasses import dataclass

from tensorplan.backend.kernels import run_group, run_op
from tensorplan.errors import UnresolvedSymbol
from tensorplan.ir import Graph, OpCategory, OpKind
from tensorplan.log import get_logger
from tensorplan.symbolic import is_concrete

logger = get_logger(__name__)


@dataclass(slots=True)
class ConstantFoldingPass:
    """Evaluates nodes whose inputs are all constants.

    Each folded node is replaced by one CONSTANT node holding the evaluated
    array; its consumers and output slots move to the new node. Nodes are
    visited in topological order, so a chain of constant ops folds in a
    single run. Results with more than `max_elements` elements stay as
    runtime computation.
    """

    max_elements: int = 1 << 16

    def run(self, graph: Graph) -> int:
        folded = 0
        for nid in graph.toposort():
            node = graph.node(nid)
            if node.category is OpCategory.SOURCE or not node.inputs:
                continue
            if any(graph.node(src).kind is not OpKind.CONSTANT for src in node.inputs):
                continue
            if not is_concrete(node.shape) or node.numel.as_int() > self.max_elements:
                continue

            args = [graph.node(src).params["value"] for src in node.inputs]
            try:
                if node.kind is OpKind.FUSED:
                    value = run_group(node.params["group"], args)
                else:
                    value = run_op(node.kind, args, node.params, node.dtype.np)
            except UnresolvedSymbol:
                # Symbolic parameters (e.g. slice bounds) keep the node at runtime.
                continue

            const_id = graph.add_constant(value, dtype=node.dtype)
            graph.replace_uses(nid, const_id)
            graph.remove_node(nid)
            folded += 1
            logger.debug("folded %s %s into constant %%%d", node.kind.value, node.label, const_id)
        return folded
