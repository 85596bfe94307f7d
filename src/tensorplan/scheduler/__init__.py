from .memory import (
    BufferSlot,
    MemoryConfig,
    MemoryLayout,
    MemoryPlan,
    LRUCache,
    MemoryPlanner,
    Storage,
    StoragePool,
    align_up,
    provable_waste,
)
from .ops import CopyIn, Instruction, Launch, PlanStats, format_instructions, format_stats

__all__ = [
    # Memory planning
    "MemoryConfig",
    "MemoryPlanner",
    "MemoryPlan",
    "MemoryLayout",
    "BufferSlot",
    "Storage",
    "StoragePool",
    "LRUCache",
    "align_up",
    "provable_waste",
    # Instructions
    "Instruction",
    "CopyIn",
    "Launch",
    "PlanStats",
    "format_instructions",
    "format_stats",
]
