"""Compiler configuration.

`CompilerConfig` is an immutable value passed to `tensorplan.compile`;
`CompilerConfig.from_env()` builds one from TENSORPLAN_* environment
variables for tooling that cannot pass arguments through.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Mapping

from tensorplan.ir.op import OpKind
from tensorplan.scheduler.memory import MemoryConfig

DEFAULT_EPILOGUE_WHITELIST = frozenset({
    OpKind.RELU,
    OpKind.NEG,
    OpKind.ADD,
    OpKind.SUB,
    OpKind.MUL,
    OpKind.MAXIMUM,
    OpKind.EXP,
    OpKind.SQRT,
    OpKind.RECIP,
})


@dataclass(frozen=True, slots=True)
class CompilerConfig:
    """Knobs for the pass pipeline.

    Attributes:
        max_pass_iterations: Cap on fixpoint rounds of the rewrite passes.
        fold_constants / eliminate_common_subexpressions / fuse: Pass toggles.
        fold_max_elements: Constant-folding results larger than this stay as
            runtime computation.
        epilogue_whitelist: Elementwise kinds allowed in an epilogue fused
            after a matmul/reduce.
        memory: Arena alignment and optional capacity.
    """

    max_pass_iterations: int = 8
    fold_constants: bool = True
    eliminate_common_subexpressions: bool = True
    fuse: bool = True
    fold_max_elements: int = 1 << 16
    epilogue_whitelist: frozenset[OpKind] = DEFAULT_EPILOGUE_WHITELIST
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    def __post_init__(self) -> None:
        if self.max_pass_iterations < 1:
            raise ValueError(f"max_pass_iterations must be >= 1, got {self.max_pass_iterations}")
        if self.fold_max_elements < 0:
            raise ValueError(f"fold_max_elements must be >= 0, got {self.fold_max_elements}")
        unknown = [k for k in self.epilogue_whitelist if not isinstance(k, OpKind)]
        if unknown:
            raise ValueError(f"epilogue_whitelist holds non-OpKind entries: {unknown}")

    def replace(self, **changes) -> CompilerConfig:
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CompilerConfig:
        env = os.environ if environ is None else environ
        kwargs: dict = {}
        if "TENSORPLAN_MAX_PASS_ITERATIONS" in env:
            kwargs["max_pass_iterations"] = int(env["TENSORPLAN_MAX_PASS_ITERATIONS"])
        if _flag(env, "TENSORPLAN_DISABLE_FUSION"):
            kwargs["fuse"] = False
        if _flag(env, "TENSORPLAN_DISABLE_CSE"):
            kwargs["eliminate_common_subexpressions"] = False
        if _flag(env, "TENSORPLAN_DISABLE_CONSTANT_FOLDING"):
            kwargs["fold_constants"] = False

        memory_kwargs: dict = {}
        if "TENSORPLAN_ALIGNMENT" in env:
            memory_kwargs["alignment"] = int(env["TENSORPLAN_ALIGNMENT"])
        if "TENSORPLAN_ARENA_CAPACITY" in env:
            memory_kwargs["capacity_bytes"] = int(env["TENSORPLAN_ARENA_CAPACITY"])
        if memory_kwargs:
            kwargs["memory"] = MemoryConfig(**memory_kwargs)
        return cls(**kwargs)


def _flag(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in ("1", "true", "yes", "on")
