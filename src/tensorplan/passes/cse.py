from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable

from tensorplan.ir import Graph, OpKind
from tensorplan.log import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class CommonSubexpressionPass:
    """Merges nodes that compute the same value.

    Two nodes merge iff they have the same kind, exact parameter key, dtype
    and input IDs. The node reached later in topological order is removed
    and its uses move to the earlier one. Graph inputs never merge.
    """

    def run(self, graph: Graph) -> int:
        seen: dict[Hashable, int] = {}
        merged = 0
        for nid in graph.toposort():
            node = graph.node(nid)
            if node.kind is OpKind.INPUT:
                continue
            key = (node.kind, node.dtype, tuple(node.inputs), node.params_key())
            keep = seen.get(key)
            if keep is None:
                seen[key] = nid
                continue
            graph.replace_uses(nid, keep)
            graph.remove_node(nid)
            merged += 1
            logger.debug("merged %s into %s (%s)", node.label, graph.node(keep).label, node.kind.value)
        return merged
