"""Pass manager.

The rewrite passes run in a fixed order (constant folding, CSE, fusion,
DCE) and the whole round repeats until it reports no change or the
iteration cap is hit. The graph is re-validated after every pass, so a pass
that breaks an invariant fails at the pass that broke it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from tensorplan.ir import Graph
from tensorplan.log import get_logger

from .constant_fold import ConstantFoldingPass
from .cse import CommonSubexpressionPass
from .dce import DeadCodeEliminationPass
from .fusion import FusionPass

if TYPE_CHECKING:
    from tensorplan.config import CompilerConfig

logger = get_logger(__name__)


class GraphPass(Protocol):
    def run(self, graph: Graph) -> int: ...


@dataclass(frozen=True, slots=True)
class PassRecord:
    """One pass invocation: which pass, in which round, how many rewrites."""

    name: str
    round: int
    rewrites: int
    nodes_after: int


@dataclass(slots=True)
class PipelineReport:
    """Statistics of one pipeline run.

    Attributes:
        rounds: Rounds executed (a round runs every pass once).
        converged: False when the iteration cap stopped a still-changing graph.
        records: Every pass invocation in execution order.
        nodes_before: Node count before the first pass.
        nodes_after: Node count after the last pass.
    """

    rounds: int = 0
    converged: bool = False
    records: list[PassRecord] = field(default_factory=list)
    nodes_before: int = 0
    nodes_after: int = 0

    def totals(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for rec in self.records:
            totals[rec.name] = totals.get(rec.name, 0) + rec.rewrites
        return totals

    def format(self, *, indent: str = "  ") -> str:
        status = "converged" if self.converged else "stopped at iteration cap"
        lines = [
            f"{indent}Rounds: {self.rounds} ({status})",
            f"{indent}Nodes:  {self.nodes_before} -> {self.nodes_after}",
        ]
        for name, count in self.totals().items():
            lines.append(f"{indent}{name:<32} {count} rewrite(s)")
        return "\n".join(lines)


@dataclass
class PassManager:
    passes: list[GraphPass]
    max_iterations: int = 8
    validate: bool = True

    @classmethod
    def from_config(cls, config: CompilerConfig) -> PassManager:
        passes: list[GraphPass] = []
        if config.fold_constants:
            passes.append(ConstantFoldingPass(max_elements=config.fold_max_elements))
        if config.eliminate_common_subexpressions:
            passes.append(CommonSubexpressionPass())
        if config.fuse:
            passes.append(FusionPass(epilogue_whitelist=config.epilogue_whitelist))
        passes.append(DeadCodeEliminationPass())
        return cls(passes=passes, max_iterations=config.max_pass_iterations)

    def run(self, graph: Graph) -> PipelineReport:
        report = PipelineReport(nodes_before=len(graph))
        if self.validate:
            graph.validate()

        for round_no in range(1, self.max_iterations + 1):
            changed = 0
            for p in self.passes:
                rewrites = p.run(graph)
                if self.validate:
                    graph.validate()
                name = type(p).__name__
                report.records.append(PassRecord(name, round_no, rewrites, len(graph)))
                logger.debug("round %d: %s -> %d rewrite(s), %d node(s)", round_no, name, rewrites, len(graph))
                changed += rewrites
            report.rounds = round_no
            if changed == 0:
                report.converged = True
                break
        else:
            logger.warning(
                "pass pipeline on %r still changing after %d round(s); stopping",
                graph.name, self.max_iterations,
            )

        report.nodes_after = len(graph)
        return report
