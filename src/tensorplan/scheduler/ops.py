"""Instruction IR: the flat program a compiled plan executes.

Each scheduled node becomes exactly one instruction. Sources (graph inputs
and constants) become `CopyIn`, everything else becomes `Launch` of a
backend kernel. List order is execution order. Offsets and sizes are
dimension expressions; they are resolved against a `MemoryLayout` when the
plan runs with concrete input shapes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from tensorplan.symbolic import Expr

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np

    from .memory import MemoryLayout


# =============================================================================
# Instructions
# =============================================================================


@dataclass(slots=True)
class Instruction:
    """Base class for all instructions.

    Attributes:
        step: Position in the schedule.
        node_id: Node whose output buffer the instruction writes.
        offset: Arena offset of that buffer (bytes).
        size: Aligned size of that buffer (bytes).
    """

    step: int
    node_id: int
    offset: Expr
    size: Expr

    def describe(self, layout: MemoryLayout | None = None) -> str:
        raise NotImplementedError

    def _where(self, layout: MemoryLayout | None) -> str:
        if layout is None:
            return f"@{self.offset} ({self.size}B)"
        return f"@0x{layout.offsets[self.node_id]:04X} ({layout.sizes[self.node_id]}B)"


@dataclass(slots=True)
class CopyIn(Instruction):
    """Copy host data into the node's buffer.

    Attributes:
        source: "input" for a named graph input, "constant" for an embedded value.
        name: Graph input name (inputs only).
        value: Embedded array (constants only).
    """

    source: str = field(kw_only=True)
    name: str | None = field(default=None, kw_only=True)
    value: np.ndarray | None = field(default=None, kw_only=True, repr=False)

    def describe(self, layout: MemoryLayout | None = None) -> str:
        what = self.name if self.source == "input" else f"const{tuple(self.value.shape)}"
        return f"COPYIN {what} -> %{self.node_id} {self._where(layout)}"

    def __repr__(self) -> str:
        return self.describe()


@dataclass(slots=True)
class Launch(Instruction):
    """Run a compiled kernel.

    Attributes:
        kernel: Handle returned by `Backend.compile`.
        inputs: Node IDs whose buffers the kernel reads, in operand order.
        label: Human-readable kernel description.
    """

    kernel: Any = field(kw_only=True, repr=False)
    inputs: tuple[int, ...] = field(kw_only=True)
    label: str = field(default="", kw_only=True)

    def describe(self, layout: MemoryLayout | None = None) -> str:
        args = ", ".join(f"%{i}" for i in self.inputs)
        return f"LAUNCH {self.label}({args}) -> %{self.node_id} {self._where(layout)}"

    def __repr__(self) -> str:
        return self.describe()


# =============================================================================
# Statistics
# =============================================================================


@dataclass(slots=True)
class PlanStats:
    """Statistics collected while lowering a graph to instructions.

    Attributes:
        instructions: Total number of instructions emitted.
        copies: Number of COPYIN instructions.
        launches: Number of LAUNCH instructions.
        fused_launches: Launches of fused kernel groups.
        storages: Physical regions in the arena.
        reused_slots: Buffer slots placed in an already used storage.
        arena_bytes: Arena size (may be symbolic).
    """

    instructions: int = 0
    copies: int = 0
    launches: int = 0
    fused_launches: int = 0
    storages: int = 0
    reused_slots: int = 0
    arena_bytes: str = "0"

    def as_dict(self) -> dict[str, int | str]:
        return {
            "instructions": self.instructions,
            "copies": self.copies,
            "launches": self.launches,
            "fused_launches": self.fused_launches,
            "storages": self.storages,
            "reused_slots": self.reused_slots,
            "arena_bytes": self.arena_bytes,
        }


# =============================================================================
# Pretty Printing Utilities
# =============================================================================


def format_instructions(
    instructions: Sequence[Instruction],
    *,
    layout: MemoryLayout | None = None,
    max_lines: int | None = None,
    indent: str = "  ",
) -> str:
    """Format an instruction list as a human-readable string.

    Args:
        instructions: Instructions in execution order.
        layout: Resolved layout; when given, offsets print as concrete bytes.
        max_lines: Maximum number of instructions to print. None for all.
        indent: Indentation prefix for each line.

    Example output:
        COPYIN x -> %0 @0 (128B)
        LAUNCH fused[<matmul> -> relu](%0, %1) -> %3 @128 (128B)
    """
    lines: list[str] = []
    shown = instructions[:max_lines] if max_lines else instructions

    for inst in shown:
        lines.append(f"{indent}{inst.describe(layout)}")

    if max_lines and len(instructions) > max_lines:
        remaining = len(instructions) - max_lines
        lines.append(f"{indent}... ({remaining} more instructions)")

    return "\n".join(lines)


def format_stats(stats: PlanStats, *, layout: MemoryLayout | None = None, indent: str = "  ") -> str:
    lines = [
        f"{indent}Instructions:   {stats.instructions}",
        f"{indent}Copies:         {stats.copies}",
        f"{indent}Launches:       {stats.launches} ({stats.fused_launches} fused)",
        f"{indent}Storages:       {stats.storages} ({stats.reused_slots} slots reused)",
        f"{indent}Arena size:     {stats.arena_bytes} bytes",
    ]
    if layout is not None:
        saved = layout.naive_bytes - layout.total_bytes
        lines += [
            f"{indent}Resolved arena: {layout.total_bytes:,} bytes ({layout.total_bytes / 1024:.1f} KiB)",
            f"{indent}Peak live:      {layout.peak_live_bytes:,} bytes",
            f"{indent}Saved by reuse: {saved:,} bytes",
        ]
    return "\n".join(lines)
