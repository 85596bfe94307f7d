from .base import Backend, BufferView, KernelHandle
from .cpu import CPUBackend
from .kernels import KERNELS, run_group, run_op
from .threaded import ThreadedBackend

__all__ = [
    "Backend",
    "BufferView",
    "KernelHandle",
    "CPUBackend",
    "ThreadedBackend",
    "KERNELS",
    "run_op",
    "run_group",
]
