#!/usr/bin/env python3
"""Benchmark: CPU vs. threaded backend on a wide MLP.

Compares the synchronous CPU backend and the worker-pool backend:
  - Correctness: bit-identical output verification
  - Performance: latency per iteration, speedup ratio, per batch size
  - Stability: repeated-execution stress test

Run with:
    python -m benchmarks.mlp_threaded
"""

import sys
import time

import numpy as np

import tensorplan
from tensorplan import CompilerConfig, CPUBackend, Graph, ThreadedBackend


def build_wide_mlp(rng, branches: int = 4, features: int = 256) -> Graph:
    """`branches` independent 2-layer towers over one input, summed at the end."""
    g = Graph(name="wide_mlp")
    x = g.add_input("x", ("batch", features))
    total = None
    for _ in range(branches):
        w1 = g.add_constant(rng.standard_normal((features, features)).astype(np.float32) * 0.05)
        w2 = g.add_constant(rng.standard_normal((features, 64)).astype(np.float32) * 0.05)
        tower = g.matmul(g.relu(g.matmul(x, w1)), w2)
        total = tower if total is None else g.add(total, tower)
    g.mark_output(total)
    return g


def benchmark(plan, inputs, n_iters: int = 100) -> float:
    """Average milliseconds per `execute`."""
    for _ in range(5):
        plan.execute(inputs)

    start = time.perf_counter()
    for _ in range(n_iters):
        plan.execute(inputs)
    elapsed = time.perf_counter() - start

    return elapsed / n_iters * 1000


def main() -> int:
    print("=" * 70)
    print("Benchmark: CPU vs. threaded backend")
    print("=" * 70)

    rng = np.random.default_rng(42)
    g = build_wide_mlp(rng)

    # -------------------------------------------------------------------------
    # Step 1: Compile for both backends
    # -------------------------------------------------------------------------
    print("\n[1] Compiling...")
    cpu = CPUBackend()
    cpu_plan = tensorplan.compile(g, cpu)
    ok = True

    with ThreadedBackend(max_workers=4) as threaded:
        thr_plan = tensorplan.compile(g, threaded)
        unfused_plan = tensorplan.compile(g, CPUBackend(), CompilerConfig(fuse=False))
        print(f"    Nodes: {len(g)} -> {len(cpu_plan.graph)}")
        print(f"    Launches: {cpu_plan.stats.launches} fused plan, {unfused_plan.stats.launches} unfused plan")

        # ---------------------------------------------------------------------
        # Step 2: Correctness
        # ---------------------------------------------------------------------
        print("\n[2] Comparing outputs...")
        for batch in (1, 64, 256):
            inputs = {"x": rng.standard_normal((batch, 256)).astype(np.float32)}
            (a,) = cpu_plan.execute(inputs)
            (b,) = thr_plan.execute(inputs)
            (c,) = unfused_plan.execute(inputs)
            match = np.array_equal(a, b) and np.array_equal(a, c)
            ok &= match
            print(f"    batch={batch:4d}  {'PASS' if match else 'FAIL'}")

        # ---------------------------------------------------------------------
        # Step 3: Latency
        # ---------------------------------------------------------------------
        print("\n[3] Benchmarking (100 iterations each)...")
        for batch in (16, 256, 1024):
            inputs = {"x": rng.standard_normal((batch, 256)).astype(np.float32)}
            cpu_ms = benchmark(cpu_plan, inputs)
            thr_ms = benchmark(thr_plan, inputs)
            speedup = cpu_ms / thr_ms if thr_ms > 0 else float("inf")
            print(f"    batch={batch:5d}  cpu {cpu_ms:8.3f} ms  threaded {thr_ms:8.3f} ms  speedup {speedup:.2f}x")
        print(f"    Max dependencies per task: {threaded.max_dependencies}")

        # ---------------------------------------------------------------------
        # Step 4: Stress test
        # ---------------------------------------------------------------------
        print("\n[4] Stress test (500 threaded iterations)...")
        inputs = {"x": rng.standard_normal((32, 256)).astype(np.float32)}
        (expected,) = cpu_plan.execute(inputs)
        start = time.perf_counter()
        for _ in range(500):
            (result,) = thr_plan.execute(inputs)
        stress_elapsed = time.perf_counter() - start
        stable = np.array_equal(result, expected)
        ok &= stable
        print(f"    Total time:  {stress_elapsed:.2f}s")
        print(f"    Correctness: {'PASS' if stable else 'FAIL'}")
        print(f"    Tasks submitted: {threaded.tasks_submitted:,}")

    print("\n" + "=" * 70)
    print(f"Result: {'PASS' if ok else 'FAIL'}")
    print("=" * 70)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
