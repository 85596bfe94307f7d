from __future__ import annotations

from dataclasses import dataclass, field

from tensorplan.config import DEFAULT_EPILOGUE_WHITELIST
from tensorplan.ir import ELEMENTWISE, MOVEMENT, Graph, OpKind, group_from_nodes
from tensorplan.log import get_logger

logger = get_logger(__name__)

ANCHOR_KINDS = frozenset({OpKind.MATMUL, OpKind.SUM_REDUCE, OpKind.MAX_REDUCE})


@dataclass(slots=True)
class _Candidate:
    root: int
    members: list[int]
    anchor: int | None = None


@dataclass(slots=True)
class FusionPass:
    """Fuses elementwise/movement chains into Fused Kernel Groups.

    Groups grow backward from a root, visited in reverse topological order:
    a producer joins only if every one of its consumers is already in the
    group, so the group result (the root) is the only value that escapes.
    A matmul/reduce producer whose single consumer is in a group made only
    of whitelisted elementwise ops joins as the group's anchor; its result
    then flows through the rest of the group as an epilogue.

    FUSED nodes are never fused again.
    """

    epilogue_whitelist: frozenset[OpKind] = field(default=DEFAULT_EPILOGUE_WHITELIST)

    def run(self, graph: Graph) -> int:
        # 1. Identify candidates on the unmodified graph
        order = graph.toposort()
        position = {nid: i for i, nid in enumerate(order)}
        assigned: set[int] = set()
        candidates: list[_Candidate] = []

        for root in reversed(order):
            if root in assigned or not self._fusible(graph, root):
                continue
            members = self._grow(graph, root, assigned)
            anchor = self._find_anchor(graph, members, assigned, position)
            if len(members) < 2 and anchor is None:
                continue

            ordered = sorted(members, key=position.__getitem__)
            if anchor is not None:
                ordered.insert(0, anchor)
                members.add(anchor)
            assigned |= members
            candidates.append(_Candidate(root=root, members=ordered, anchor=anchor))

        if not candidates:
            return 0

        # 2. Apply: later groups first, so an earlier group's root that feeds
        #    a later group is rewired by replace_uses when it is replaced.
        for cand in candidates:
            group, external = group_from_nodes(graph, cand.members, anchor_id=cand.anchor)
            fused_id = graph.add_node(OpKind.FUSED, external, {"group": group})
            graph.replace_uses(cand.root, fused_id)
            for nid in reversed(cand.members):
                graph.remove_node(nid)
            logger.debug("fused %s into %%%d: %s", [f"%{m}" for m in cand.members], fused_id, group.describe())
        return len(candidates)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _fusible(graph: Graph, nid: int) -> bool:
        kind = graph.node(nid).kind
        return kind in ELEMENTWISE or kind in MOVEMENT

    def _grow(self, graph: Graph, root: int, assigned: set[int]) -> set[int]:
        members = {root}
        frontier = [root]
        while frontier:
            nid = frontier.pop()
            for src in graph.node(nid).inputs:
                if src in members or src in assigned or not self._fusible(graph, src):
                    continue
                if graph.is_output(src):
                    continue
                if all(user in members for user in graph.users(src)):
                    members.add(src)
                    frontier.append(src)
        return members

    def _find_anchor(
        self,
        graph: Graph,
        members: set[int],
        assigned: set[int],
        position: dict[int, int],
    ) -> int | None:
        for nid in members:
            kind = graph.node(nid).kind
            if kind not in ELEMENTWISE or kind not in self.epilogue_whitelist:
                return None
        for nid in sorted(members, key=position.__getitem__):
            for src in graph.node(nid).inputs:
                producer = graph.node(src)
                if producer.kind not in ANCHOR_KINDS or src in assigned:
                    continue
                if graph.is_output(src) or graph.num_users(src) != 1:
                    continue
                return src
        return None
