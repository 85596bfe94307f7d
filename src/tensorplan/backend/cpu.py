from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from tensorplan.errors import BackendFailure
from tensorplan.ir import FusedKernelGroup
from tensorplan.log import get_logger

from .base import BufferView, KernelHandle
from .kernels import KERNELS, run_group

logger = get_logger(__name__)


@dataclass
class CPUBackend:
    """In-process, synchronous backend over NumPy.

    The arena is one flat `uint8` array; a `BufferView` becomes a typed,
    reshaped view of a byte range of it. Kernels interpret the group program
    with the reference kernels and write the result into the output view.

    Example:
        >>> backend = CPUBackend()
        >>> plan = tensorplan.compile(graph, backend)
        >>> (y,) = plan.execute({"x": x})
    """

    name: str = "cpu"
    kernels_compiled: int = 0
    kernel_launches: int = 0
    bytes_allocated: int = 0

    def compile(self, group: FusedKernelGroup, *, node_id: int) -> KernelHandle:
        missing = sorted({op.kind.value for op in group.ops if op.kind not in KERNELS})
        if missing:
            raise BackendFailure(
                f"no kernel for {', '.join(missing)} in {group.describe()}",
                backend=self.name,
                node_id=node_id,
            )
        self.kernels_compiled += 1
        return KernelHandle(node_id=node_id, group=group, backend=self.name)

    def allocate(self, nbytes: int) -> np.ndarray:
        self.bytes_allocated += nbytes
        logger.debug("allocate arena of %d bytes", nbytes)
        return np.zeros(nbytes, dtype=np.uint8)

    def array(self, view: BufferView) -> np.ndarray:
        """Typed NumPy view of a region (no copy)."""
        region = view.buffer[view.offset:view.end]
        return region.view(view.dtype.np).reshape(view.shape)

    def copy_in(self, view: BufferView, data: np.ndarray) -> None:
        np.copyto(self.array(view), np.asarray(data, dtype=view.dtype.np).reshape(view.shape))

    def copy_out(self, view: BufferView) -> np.ndarray:
        return self.array(view).copy()

    def run(
        self,
        kernel: KernelHandle,
        inputs: Sequence[BufferView],
        output: BufferView,
        symbols: Mapping[str, int],
    ) -> None:
        try:
            result = run_group(kernel.group, [self.array(v) for v in inputs], symbols)
        except Exception as exc:
            raise BackendFailure(
                f"{kernel.label} failed: {exc}",
                backend=self.name,
                node_id=kernel.node_id,
            ) from exc
        if result.shape != output.shape:
            raise BackendFailure(
                f"{kernel.label} produced shape {result.shape}, expected {output.shape}",
                backend=self.name,
                node_id=kernel.node_id,
            )
        np.copyto(self.array(output), result)
        self.kernel_launches += 1

    def synchronize(self) -> None:
        pass

    def release(self, buffer: np.ndarray) -> None:
        logger.debug("release arena of %d bytes", buffer.nbytes)
