"""
Backend contract.

A backend is anything that provides the members of `Backend`. The execution
engine never checks class identity; it relies on structural typing
(`typing.Protocol` with `@runtime_checkable`), so a backend does not inherit
from anything in this package.

Design notes
------------
- Kernels are compiled once per `CompiledPlan`; the handle is opaque to the
  engine and passed back to `run`.
- Buffers are whole arenas. The engine addresses regions of an arena with
  `BufferView`, so backends only ever allocate once per execution.
- `run` may return before the kernel finishes. `synchronize` must block
  until every submitted kernel and copy has completed; the engine calls it
  before any copy-out.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

import numpy as np

from tensorplan.ir import DType, FusedKernelGroup


@dataclass(frozen=True, slots=True)
class BufferView:
    """A typed, concretely shaped region of an allocated arena."""

    buffer: Any
    offset: int
    shape: tuple[int, ...]
    dtype: DType

    @property
    def nbytes(self) -> int:
        return math.prod(self.shape) * self.dtype.itemsize

    @property
    def end(self) -> int:
        return self.offset + self.nbytes

    def overlaps(self, other: BufferView) -> bool:
        if self.buffer is not other.buffer:
            return False
        if self.nbytes == 0 or other.nbytes == 0:
            return False
        return self.offset < other.end and other.offset < self.end


@dataclass(frozen=True, slots=True)
class KernelHandle:
    """Executable kernel for one fused group.

    Attributes:
        node_id: Graph node the kernel computes.
        group: The group program (single-op for unfused nodes).
        backend: Name of the backend that compiled it.
        payload: Backend-specific compiled artifact.
    """

    node_id: int
    group: FusedKernelGroup
    backend: str
    payload: Any = None

    @property
    def label(self) -> str:
        if len(self.group.ops) == 1:
            return self.group.ops[0].kind.value
        return self.group.describe()


@runtime_checkable
class Backend(Protocol):
    """
    Duck-typed backend contract.

    Any object that provides these members can execute a `CompiledPlan`.
    """

    name: str

    def compile(self, group: FusedKernelGroup, *, node_id: int) -> KernelHandle: ...

    def allocate(self, nbytes: int) -> Any: ...

    def copy_in(self, view: BufferView, data: np.ndarray) -> None: ...

    def copy_out(self, view: BufferView) -> np.ndarray: ...

    def run(
        self,
        kernel: KernelHandle,
        inputs: Sequence[BufferView],
        output: BufferView,
        symbols: Mapping[str, int],
    ) -> None: ...

    def synchronize(self) -> None: ...

    def release(self, buffer: Any) -> None: ...
