from __future__ import annotations

from dataclasses import dataclass

from tensorplan.ir import Graph
from tensorplan.log import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class DeadCodeEliminationPass:
    """Removes every node the declared outputs do not reach."""

    def run(self, graph: Graph) -> int:
        removed = graph.remove_unreachable()
        if removed:
            logger.debug("removed %d unreachable node(s) from %r", removed, graph.name)
        return removed
