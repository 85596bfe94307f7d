#!/usr/bin/env python3
"""Dynamic-batch MLP: compile once, execute with several batch sizes.

This script walks through the whole pipeline:
1. Build a graph whose batch dimension is the variable `batch`
2. Compile it (constant folding, CSE, fusion, DCE, memory planning)
3. Print the instruction list and the symbolic memory plan
4. Execute with several batch sizes and check against NumPy
5. Save the plan, load it back and run it again

Run with:
    python -m examples.mlp_dynamic_batch
"""

import sys
import tempfile
from pathlib import Path

import numpy as np

import tensorplan
from tensorplan import CPUBackend, Graph


def build_mlp_graph(weights: list[np.ndarray]) -> Graph:
    """3-layer MLP; ReLU after every layer but the last."""
    g = Graph(name="mlp_3layer")
    h = g.add_input("x", ("batch", weights[0].shape[0]))
    for i, w in enumerate(weights):
        h = g.matmul(h, g.add_constant(w, name=f"w{i + 1}"))
        if i < len(weights) - 1:
            h = g.relu(h)
    g.mark_output(h)
    return g


def numpy_reference(x: np.ndarray, weights: list[np.ndarray]) -> np.ndarray:
    h = x
    for i, w in enumerate(weights):
        h = h @ w
        if i < len(weights) - 1:
            h = np.maximum(h, 0)
    return h


def main() -> int:
    tensorplan.setup_logging("INFO")
    rng = np.random.default_rng(42)
    weights = [
        rng.standard_normal((128, 64)).astype(np.float32) * 0.1,
        rng.standard_normal((64, 32)).astype(np.float32) * 0.1,
        rng.standard_normal((32, 32)).astype(np.float32) * 0.1,
    ]

    print("=" * 70)
    print("Dynamic-batch MLP")
    print("=" * 70)

    # -------------------------------------------------------------------------
    # Step 1-2: Build and compile
    # -------------------------------------------------------------------------
    g = build_mlp_graph(weights)
    print(f"\n[1] Graph: {len(g)} nodes")
    print(g.summary())

    backend = CPUBackend()
    plan = tensorplan.compile(g, backend)
    print(f"\n[2] Compiled: {len(plan.graph)} nodes, {backend.kernels_compiled} kernels")

    # -------------------------------------------------------------------------
    # Step 3: Plan
    # -------------------------------------------------------------------------
    print("\n[3] Plan")
    print(plan.describe())
    print("\n  Memory plan:")
    print(plan.memory.format_plan(indent="    "))

    # -------------------------------------------------------------------------
    # Step 4: Execute
    # -------------------------------------------------------------------------
    print("\n[4] Execution")
    ok = True
    for batch in (1, 32, 128, 7):
        x = rng.standard_normal((batch, 128)).astype(np.float32) * 0.1
        (out,) = plan.execute({"x": x})
        expected = numpy_reference(x, weights)
        close = np.allclose(out, expected, rtol=1e-4, atol=1e-5)
        ok &= close
        layout = plan.layout({"batch": batch})
        print(
            f"  batch={batch:4d}  out={out.shape}  arena={layout.total_bytes:,} B "
            f"(no reuse: {layout.naive_bytes:,} B)  {'PASS' if close else 'FAIL'}"
        )
    print(f"  Kernels compiled: {backend.kernels_compiled} (unchanged across batch sizes)")

    # -------------------------------------------------------------------------
    # Step 5: Save and reload
    # -------------------------------------------------------------------------
    print("\n[5] Save / load")
    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "mlp.plan.json"
        tensorplan.dump_plan(plan, path)
        loaded = tensorplan.load_plan(path, CPUBackend())
        print(f"  Saved {path.stat().st_size:,} bytes")
    x = rng.standard_normal((16, 128)).astype(np.float32)
    same = np.array_equal(loaded.execute({"x": x})[0], plan.execute({"x": x})[0])
    ok &= same
    print(f"  Reloaded plan matches: {'PASS' if same else 'FAIL'}")

    print("\n" + "=" * 70)
    print(f"Result: {'VERIFIED' if ok else 'FAILED'}")
    print("=" * 70)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
