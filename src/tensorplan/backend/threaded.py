"""Asynchronous CPU backend.

`run` submits the kernel to a worker pool and returns immediately. Ordering
is enforced by data dependencies instead of submission order: each task
first waits on the futures of earlier tasks that

- wrote a region overlapping one of its inputs (read after write),
- read or wrote a region overlapping its output (write after read/write).

`copy_in` blocks on outstanding users of its region, and `synchronize`
drains every pending task, re-raising the first failure.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Mapping, Sequence

import numpy as np

from tensorplan.errors import BackendFailure
from tensorplan.ir import FusedKernelGroup
from tensorplan.log import get_logger

from .base import BufferView, KernelHandle
from .cpu import CPUBackend

logger = get_logger(__name__)


@dataclass(slots=True)
class _Pending:
    future: Future
    reads: tuple[BufferView, ...]
    write: BufferView


@dataclass
class ThreadedBackend:
    """Worker-pool backend that runs independent kernels concurrently.

    Kernel numerics are the CPU backend's; only submission differs.
    Usable as a context manager to shut the pool down.
    """

    max_workers: int = 4
    name: str = "threaded"
    _cpu: CPUBackend = field(default_factory=CPUBackend, repr=False)
    _executor: ThreadPoolExecutor | None = field(default=None, repr=False)
    _pending: list[_Pending] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    tasks_submitted: int = 0
    max_dependencies: int = 0

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        self._cpu.name = self.name

    # -------------------------------------------------------------------------
    # Backend contract
    # -------------------------------------------------------------------------

    def compile(self, group: FusedKernelGroup, *, node_id: int) -> KernelHandle:
        return self._cpu.compile(group, node_id=node_id)

    def allocate(self, nbytes: int) -> np.ndarray:
        return self._cpu.allocate(nbytes)

    def copy_in(self, view: BufferView, data: np.ndarray) -> None:
        deps = self._dependencies((), view)
        self._wait(deps)
        self._cpu.copy_in(view, data)

    def copy_out(self, view: BufferView) -> np.ndarray:
        self._wait([p.future for p in self._pending if p.write.overlaps(view)])
        return self._cpu.copy_out(view)

    def run(
        self,
        kernel: KernelHandle,
        inputs: Sequence[BufferView],
        output: BufferView,
        symbols: Mapping[str, int],
    ) -> None:
        reads = tuple(inputs)
        deps = self._dependencies(reads, output)
        symbols = dict(symbols)

        def task() -> None:
            for dep in deps:
                dep.result()
            self._cpu.run(kernel, reads, output, symbols)

        future = self._pool().submit(task)
        self._prune()
        self._pending.append(_Pending(future=future, reads=reads, write=output))
        with self._lock:
            self.tasks_submitted += 1
            self.max_dependencies = max(self.max_dependencies, len(deps))

    def synchronize(self) -> None:
        pending, self._pending = self._pending, []
        if not pending:
            return
        wait([p.future for p in pending])
        for p in pending:
            exc = p.future.exception()
            if exc is None:
                continue
            if isinstance(exc, BackendFailure):
                raise exc
            raise BackendFailure(f"worker task failed: {exc}", backend=self.name) from exc

    def release(self, buffer: np.ndarray) -> None:
        self._cpu.release(buffer)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        self.synchronize()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> ThreadedBackend:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="tensorplan",
            )
        return self._executor

    def _dependencies(self, reads: Sequence[BufferView], write: BufferView) -> list[Future]:
        deps: list[Future] = []
        for p in self._pending:
            raw = any(p.write.overlaps(r) for r in reads)
            war = any(r.overlaps(write) for r in p.reads)
            waw = p.write.overlaps(write)
            if raw or war or waw:
                deps.append(p.future)
        return deps

    def _prune(self) -> None:
        # Failed tasks stay so synchronize() can report them.
        self._pending = [
            p for p in self._pending
            if not p.future.done() or p.future.exception() is not None
        ]

    def _wait(self, futures: Sequence[Future]) -> None:
        if not futures:
            return
        wait(futures)
        if any(f.exception() is not None for f in futures):
            logger.debug("a dependency failed; draining the pool")
            self.synchronize()
