"""Threaded backend correctness and stress tests.

Tests cover:
1. Threaded plans match the CPU backend bit for bit
2. Data-dependency ordering on overlapping buffer regions
3. Independent branches and repeated execution (no hangs or races)
4. Failure propagation through synchronize and recovery afterwards
5. Pool lifecycle
"""

import numpy as np
import pytest

import tensorplan
from tensorplan import Graph
from tensorplan.backend import BufferView, CPUBackend, ThreadedBackend
from tensorplan.errors import BackendFailure
from tensorplan.ir import float32, group_from_nodes


# =============================================================================
# Helpers
# =============================================================================


def build_mlp_graph(rng):
    """3-layer MLP with a dynamic batch and constant weights."""
    g = Graph(name="mlp_3layer")
    x = g.add_input("x", ("batch", 64))
    weights = [
        rng.standard_normal((64, 32)).astype(np.float32) * 0.1,
        rng.standard_normal((32, 32)).astype(np.float32) * 0.1,
        rng.standard_normal((32, 16)).astype(np.float32) * 0.1,
    ]
    h = x
    for i, w in enumerate(weights):
        h = g.matmul(h, g.add_constant(w, name=f"w{i + 1}"))
        if i < len(weights) - 1:
            h = g.relu(h)
    g.mark_output(h)
    return g, weights


def numpy_reference(x, weights):
    h1 = np.maximum(x @ weights[0], 0)
    h2 = np.maximum(h1 @ weights[1], 0)
    return h2 @ weights[2]


def build_branches():
    """Four independent elementwise chains joined at the end."""
    g = Graph(name="branches")
    x = g.add_input("x", ("n", 16))
    heads = []
    for _ in range(4):
        h = g.matmul(x, g.add_input(f"w{len(heads)}", (16, 16)))
        heads.append(g.mark_output(g.exp(g.neg(g.relu(h)))))
    return g


def kernel_for(backend, build, shape):
    g = Graph()
    x = g.add_input("x", shape)
    nid = build(g, x)
    group, _ = group_from_nodes(g, [nid])
    return backend.compile(group, node_id=nid)


# =============================================================================
# 1. Threaded matches CPU
# =============================================================================


class TestThreadedMatchesCPU:
    def test_mlp_matches(self, rng, threaded_backend):
        g, weights = build_mlp_graph(rng)
        cpu_plan = tensorplan.compile(g, CPUBackend())
        threaded_plan = tensorplan.compile(g, threaded_backend)

        for batch in (1, 32, 128):
            x = rng.standard_normal((batch, 64)).astype(np.float32)
            (expected,) = cpu_plan.execute({"x": x})
            (actual,) = threaded_plan.execute({"x": x})
            np.testing.assert_array_equal(actual, expected)
            np.testing.assert_allclose(actual, numpy_reference(x, weights), rtol=1e-5, atol=1e-6)

    def test_branches_match(self, rng, threaded_backend):
        g = build_branches()
        inputs = {"x": rng.standard_normal((8, 16)).astype(np.float32)}
        for i in range(4):
            inputs[f"w{i}"] = rng.standard_normal((16, 16)).astype(np.float32)

        expected = tensorplan.compile(g, CPUBackend()).execute(inputs)
        actual = tensorplan.compile(g, threaded_backend).execute(inputs)
        assert len(actual) == 4
        for a, e in zip(actual, expected):
            np.testing.assert_array_equal(a, e)
        assert threaded_backend.tasks_submitted >= 4


# =============================================================================
# 2. Dependency ordering
# =============================================================================


class TestDependencyOrdering:
    def test_ping_pong_buffers(self, threaded_backend):
        """Kernels alternate between two regions: RAW, WAR and WAW hazards."""
        backend = threaded_backend
        shape = (64,)
        neg = kernel_for(backend, lambda g, x: g.neg(x), shape)
        exp = kernel_for(backend, lambda g, x: g.exp(x), shape)
        relu = kernel_for(backend, lambda g, x: g.relu(x), shape)

        buf = backend.allocate(512)
        a = BufferView(buf, 0, shape, float32)
        b = BufferView(buf, 256, shape, float32)
        data = np.linspace(-2.0, 2.0, 64, dtype=np.float32)
        backend.copy_in(a, data)

        backend.run(neg, [a], b, {})
        backend.run(exp, [b], a, {})
        backend.run(relu, [a], b, {})
        backend.run(neg, [b], a, {})
        backend.synchronize()

        expected = -np.maximum(np.exp(-data), 0)
        np.testing.assert_array_equal(backend.copy_out(a), expected)
        assert backend.max_dependencies >= 1
        backend.release(buf)

    def test_copy_in_waits_for_readers(self, threaded_backend):
        backend = threaded_backend
        shape = (1024,)
        exp = kernel_for(backend, lambda g, x: g.exp(x), shape)
        buf = backend.allocate(8192)
        a = BufferView(buf, 0, shape, float32)
        b = BufferView(buf, 4096, shape, float32)

        backend.copy_in(a, np.zeros(shape, dtype=np.float32))
        backend.run(exp, [a], b, {})
        # Overwriting the input must not race the kernel still reading it
        backend.copy_in(a, np.full(shape, 5.0, dtype=np.float32))
        backend.synchronize()
        np.testing.assert_array_equal(backend.copy_out(b), np.ones(shape, dtype=np.float32))

    def test_disjoint_kernels_have_no_dependencies(self):
        with ThreadedBackend(max_workers=2) as backend:
            neg = kernel_for(backend, lambda g, x: g.neg(x), (4,))
            buf = backend.allocate(256)
            views = [BufferView(buf, 64 * i, (4,), float32) for i in range(4)]
            backend.run(neg, [views[0]], views[1], {})
            backend.run(neg, [views[2]], views[3], {})
            backend.synchronize()
            assert backend.max_dependencies == 0


# =============================================================================
# 3. Stress
# =============================================================================


class TestThreadedStress:
    def test_repeated_execution(self, rng, threaded_backend):
        g, weights = build_mlp_graph(rng)
        plan = tensorplan.compile(g, threaded_backend)
        x = rng.standard_normal((64, 64)).astype(np.float32)
        (first,) = plan.execute({"x": x})
        for _ in range(25):
            (again,) = plan.execute({"x": x})
            np.testing.assert_array_equal(again, first)
        assert plan.executions == 26

    def test_varying_batch(self, rng, threaded_backend):
        g, weights = build_mlp_graph(rng)
        plan = tensorplan.compile(g, threaded_backend)
        for batch in (3, 17, 64, 5, 128, 1):
            x = rng.standard_normal((batch, 64)).astype(np.float32)
            (y,) = plan.execute({"x": x})
            assert y.shape == (batch, 16)
            np.testing.assert_allclose(y, numpy_reference(x, weights), rtol=1e-5, atol=1e-6)

    def test_single_worker(self, rng):
        g = build_branches()
        inputs = {"x": rng.standard_normal((4, 16)).astype(np.float32)}
        for i in range(4):
            inputs[f"w{i}"] = rng.standard_normal((16, 16)).astype(np.float32)
        with ThreadedBackend(max_workers=1) as backend:
            outputs = tensorplan.compile(g, backend).execute(inputs)
        expected = tensorplan.compile(g, CPUBackend()).execute(inputs)
        for a, e in zip(outputs, expected):
            np.testing.assert_array_equal(a, e)


# =============================================================================
# 4. Failures
# =============================================================================


class TestThreadedFailures:
    def test_failure_surfaces_and_backend_recovers(self, monkeypatch, rng, threaded_backend):
        g, weights = build_mlp_graph(rng)
        plan = tensorplan.compile(g, threaded_backend)
        x = rng.standard_normal((4, 64)).astype(np.float32)

        def broken(group, args, symbols=None):
            raise FloatingPointError("worker exploded")

        with monkeypatch.context() as m:
            m.setattr("tensorplan.backend.cpu.run_group", broken)
            with pytest.raises(BackendFailure, match="worker exploded") as exc_info:
                plan.execute({"x": x})
        assert exc_info.value.backend == "threaded"
        assert plan.executions == 0

        (y,) = plan.execute({"x": x})
        np.testing.assert_allclose(y, numpy_reference(x, weights), rtol=1e-5, atol=1e-6)

    def test_synchronize_reports_first_failure(self, monkeypatch, threaded_backend):
        backend = threaded_backend
        neg = kernel_for(backend, lambda g, x: g.neg(x), (4,))
        buf = backend.allocate(128)
        a = BufferView(buf, 0, (4,), float32)
        b = BufferView(buf, 64, (4,), float32)

        def broken(group, args, symbols=None):
            raise ValueError("bad operand")

        monkeypatch.setattr("tensorplan.backend.cpu.run_group", broken)
        backend.run(neg, [a], b, {})
        with pytest.raises(BackendFailure, match="bad operand") as exc_info:
            backend.synchronize()
        assert exc_info.value.node_id == neg.node_id
        # Failures are reported once
        backend.synchronize()


# =============================================================================
# 5. Lifecycle
# =============================================================================


class TestLifecycle:
    def test_close_and_reuse(self):
        backend = ThreadedBackend(max_workers=2)
        neg = kernel_for(backend, lambda g, x: g.neg(x), (4,))
        buf = backend.allocate(128)
        a = BufferView(buf, 0, (4,), float32)
        b = BufferView(buf, 64, (4,), float32)
        backend.copy_in(a, np.ones(4, dtype=np.float32))
        backend.run(neg, [a], b, {})
        backend.close()
        np.testing.assert_array_equal(backend.copy_out(b), -np.ones(4, dtype=np.float32))

        backend.run(neg, [b], a, {})
        backend.close()
        np.testing.assert_array_equal(backend.copy_out(a), np.ones(4, dtype=np.float32))

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            ThreadedBackend(max_workers=0)
