"""Execution engine tests.

Tests cover:
1. Compile once, execute with several batch sizes (no recompilation, bounded
   binding cache)
2. Fused and unfused plans produce bit-identical results
3. Symbol binding: plain variables, linear dimensions, conflicts, rank errors
4. Input validation: unknown, missing, unused and mistyped inputs
5. Plan description, capacity limits and backend failures
"""

import logging

import numpy as np
import pytest

import tensorplan
from tensorplan import CompilerConfig, Graph, MemoryConfig
from tensorplan.errors import (
    ArenaOutOfMemoryError,
    BackendFailure,
    IRValidationError,
    ShapeMismatch,
    UnresolvedSymbol,
)
from tensorplan.ir import OpKind, int32
from tensorplan.runtime import InputSpec, bind_symbols
from tensorplan.scheduler import CopyIn, Launch
from tensorplan.symbolic import Var, as_shape


# =============================================================================
# Helpers
# =============================================================================


def build_dense(rng, features=4):
    """relu(x @ w) with a dynamic batch dimension and a constant weight."""
    g = Graph(name="dense")
    x = g.add_input("x", ("n", features))
    w_value = rng.standard_normal((features, features)).astype(np.float32)
    w = g.add_constant(w_value)
    g.mark_output(g.relu(g.matmul(x, w)))
    return g, w_value


def build_block(rng):
    """sum(exp(-relu(x @ w + bias)), axis=1) with an expanded bias."""
    g = Graph(name="block")
    x = g.add_input("x", ("n", 8))
    w = g.add_input("w", (8, 8))
    bias_value = rng.standard_normal((1, 8)).astype(np.float32)
    bias = g.expand(g.add_constant(bias_value), ("n", 8))
    h = g.relu(g.add(g.matmul(x, w), bias))
    g.mark_output(g.sum(g.exp(g.neg(h)), 1))
    return g, bias_value


# =============================================================================
# 1. Compile once, run many
# =============================================================================


class TestDynamicBatch:
    def test_reuses_plan_across_batch_sizes(self, rng, cpu_backend):
        g, w = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        assert plan.required_symbols == frozenset({"n"})
        assert plan.stats.launches == 1
        assert plan.stats.fused_launches == 1
        compiled = cpu_backend.kernels_compiled

        for n in (8, 16, 1):
            x = rng.standard_normal((n, 4)).astype(np.float32)
            (y,) = plan.execute({"x": x})
            assert y.shape == (n, 4)
            np.testing.assert_allclose(y, np.maximum(x @ w, 0), rtol=1e-6)

        assert cpu_backend.kernels_compiled == compiled
        assert plan.executions == 3
        assert plan.layout({"n": 8}).total_bytes < plan.layout({"n": 16}).total_bytes

    def test_source_graph_is_not_modified(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        before = len(g)
        tensorplan.compile(g, cpu_backend)
        assert len(g) == before
        assert not any(node.kind is OpKind.FUSED for node in g)

    def test_instructions_follow_schedule(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        assert [inst.node_id for inst in plan.instructions] == plan.memory.schedule
        assert [inst.step for inst in plan.instructions] == list(range(len(plan.instructions)))
        kinds = [type(inst) for inst in plan.instructions]
        assert kinds.count(CopyIn) == 2
        assert kinds[-1] is Launch

    def test_binding_cache_is_bounded(self, rng, cpu_backend):
        g, w = build_dense(rng)
        config = CompilerConfig(memory=MemoryConfig(layout_cache_size=3))
        plan = tensorplan.compile(g, cpu_backend, config)
        for n in range(1, 11):
            x = rng.standard_normal((n, 4)).astype(np.float32)
            (y,) = plan.execute({"x": x})
            np.testing.assert_allclose(y, np.maximum(x @ w, 0), rtol=1e-6)
        assert len(plan._bindings) == 3
        assert len(plan.memory._layouts) == 3
        assert plan.executions == 10

    def test_zero_batch(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        (y,) = plan.execute({"x": np.zeros((0, 4), dtype=np.float32)})
        assert y.shape == (0, 4)


# =============================================================================
# 2. Fusion does not change numerics
# =============================================================================


class TestFusionEquivalence:
    def test_fused_and_unfused_are_bit_identical(self, rng, cpu_backend):
        g, bias = build_block(rng)
        fused = tensorplan.compile(g, cpu_backend)
        unfused = tensorplan.compile(g, cpu_backend, CompilerConfig(fuse=False))
        assert fused.stats.fused_launches >= 1
        assert unfused.stats.fused_launches == 0
        assert fused.stats.launches < unfused.stats.launches

        x = rng.standard_normal((5, 8)).astype(np.float32)
        w = rng.standard_normal((8, 8)).astype(np.float32)
        (a,) = fused.execute({"x": x, "w": w})
        (b,) = unfused.execute({"x": x, "w": w})
        np.testing.assert_array_equal(a, b)

        expected = np.exp(-np.maximum(x @ w + bias, 0)).sum(axis=1)
        np.testing.assert_allclose(a, expected, rtol=1e-5)

    def test_dead_code_removal_preserves_outputs(self, rng, cpu_backend):
        g, _ = build_block(rng)
        x_id = g.input_id("x")
        g.sqrt(g.exp(x_id))
        g.sum(g.add_input("spare", (3, 3)), 0)
        pruned = g.copy()
        assert pruned.remove_unreachable() == 4

        inputs = {
            "x": rng.standard_normal((6, 8)).astype(np.float32),
            "w": rng.standard_normal((8, 8)).astype(np.float32),
        }
        config = CompilerConfig(fold_constants=False, eliminate_common_subexpressions=False, fuse=False)
        (a,) = tensorplan.compile(g, cpu_backend, config).execute(inputs)
        (b,) = tensorplan.compile(pruned, cpu_backend, config).execute(inputs)
        np.testing.assert_array_equal(a, b)

    def test_threaded_matches_cpu(self, rng, cpu_backend, threaded_backend):
        g, _ = build_block(rng)
        x = rng.standard_normal((7, 8)).astype(np.float32)
        w = rng.standard_normal((8, 8)).astype(np.float32)
        (a,) = tensorplan.compile(g, cpu_backend).execute({"x": x, "w": w})
        (b,) = tensorplan.compile(g, threaded_backend).execute({"x": x, "w": w})
        np.testing.assert_array_equal(a, b)


# =============================================================================
# 3. Symbol binding
# =============================================================================


class TestBindSymbols:
    def test_binds_plain_variables(self):
        specs = [
            InputSpec("x", 0, as_shape(["n", 4]), tensorplan.float32),
            InputSpec("y", 1, as_shape(["m", "n"]), tensorplan.float32),
        ]
        assert bind_symbols(specs, [(8, 4), (3, 8)]) == {"n": 8, "m": 3}

    def test_conflicting_binding(self):
        specs = [
            InputSpec("x", 0, as_shape(["n", 4]), tensorplan.float32),
            InputSpec("y", 1, as_shape(["n", 4]), tensorplan.float32),
        ]
        with pytest.raises(ShapeMismatch, match="'y' dimension 0 is 9"):
            bind_symbols(specs, [(8, 4), (9, 4)])

    def test_concrete_dimension_checked(self):
        specs = [InputSpec("x", 0, as_shape(["n", 4]), tensorplan.float32)]
        with pytest.raises(ShapeMismatch) as exc_info:
            bind_symbols(specs, [(8, 5)])
        assert exc_info.value.node_ids == (0,)

    def test_rank_mismatch(self):
        specs = [InputSpec("x", 0, as_shape(["n", 4]), tensorplan.float32)]
        with pytest.raises(ShapeMismatch, match="rank 1, expected rank 2"):
            bind_symbols(specs, [(8,)])

    def test_solves_linear_dimension(self):
        n = Var("n")
        specs = [InputSpec("x", 0, as_shape([2 * n + 1]), tensorplan.float32)]
        assert bind_symbols(specs, [(7,)]) == {"n": 3}
        with pytest.raises(ShapeMismatch, match="no non-negative integer"):
            bind_symbols(specs, [(8,)])

    def test_linear_dimension_checked_after_plain_binding(self):
        n = Var("n")
        specs = [
            InputSpec("x", 0, as_shape([2 * n]), tensorplan.float32),
            InputSpec("y", 1, as_shape([n]), tensorplan.float32),
        ]
        assert bind_symbols(specs, [(6,), (3,)]) == {"n": 3}
        with pytest.raises(ShapeMismatch):
            bind_symbols(specs, [(8,), (3,)])

    def test_nonlinear_dimension_is_unresolved(self):
        n = Var("n")
        specs = [InputSpec("x", 0, as_shape([n * n]), tensorplan.float32)]
        with pytest.raises(UnresolvedSymbol) as exc_info:
            bind_symbols(specs, [(9,)])
        assert exc_info.value.symbols == ("n",)

    def test_execute_with_linear_input(self, cpu_backend):
        g = Graph()
        x = g.add_input("x", (2 * Var("n"),))
        g.mark_output(g.reshape(x, ("n", 2)))
        plan = tensorplan.compile(g, cpu_backend)
        (y,) = plan.execute({"x": np.arange(6, dtype=np.float32)})
        np.testing.assert_array_equal(y, np.arange(6, dtype=np.float32).reshape(3, 2))

    def test_symbol_only_in_output_is_unresolved(self, cpu_backend):
        g = Graph()
        x = g.add_input("x", (4,))
        g.mark_output(g.neg(x))
        g.mark_output(g.expand(g.add_constant(np.ones(1, dtype=np.float32)), ("m",)))
        plan = tensorplan.compile(g, cpu_backend)
        with pytest.raises(UnresolvedSymbol) as exc_info:
            plan.execute({"x": np.ones(4, dtype=np.float32)})
        assert "m" in exc_info.value.symbols


# =============================================================================
# 4. Input validation
# =============================================================================


class TestInputValidation:
    def test_unknown_input(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        with pytest.raises(IRValidationError, match="unknown graph input"):
            plan.execute({"x": np.zeros((2, 4), dtype=np.float32), "z": np.zeros(1)})

    def test_missing_input(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        with pytest.raises(IRValidationError, match="missing graph input"):
            plan.execute({})

    def test_unused_input_is_accepted(self, cpu_backend):
        g = Graph()
        x = g.add_input("x", (4,))
        g.add_input("unused", (3,))
        g.mark_output(g.neg(x))
        plan = tensorplan.compile(g, cpu_backend)
        assert set(plan.inputs) == {"x"}
        assert plan.declared_inputs == frozenset({"x", "unused"})
        data = np.arange(4, dtype=np.float32)
        (y,) = plan.execute({"x": data, "unused": np.zeros(3)})
        np.testing.assert_array_equal(y, -data)
        (y,) = plan.execute({"x": data})
        np.testing.assert_array_equal(y, -data)

    def test_wrong_shape(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        with pytest.raises(ShapeMismatch):
            plan.execute({"x": np.zeros((8, 5), dtype=np.float32)})
        with pytest.raises(ShapeMismatch):
            plan.execute({"x": np.zeros(8, dtype=np.float32)})

    def test_dtype_cast(self, cpu_backend):
        g = Graph()
        i = g.add_input("i", (3,), dtype=int32)
        g.mark_output(g.add(i, i))
        plan = tensorplan.compile(g, cpu_backend)
        (y,) = plan.execute({"i": np.array([1, 2, 3], dtype=np.int64)})
        assert y.dtype == np.int32
        np.testing.assert_array_equal(y, [2, 4, 6])
        with pytest.raises(IRValidationError, match="cannot cast"):
            plan.execute({"i": np.array([1.5, 2.0, 3.0])})

    def test_graph_without_outputs(self, cpu_backend):
        g = Graph(name="empty")
        g.add_input("x", (4,))
        with pytest.raises(IRValidationError, match="no outputs"):
            tensorplan.compile(g, cpu_backend)

    def test_rejects_non_backend(self, rng):
        g, _ = build_dense(rng)
        with pytest.raises(TypeError, match="backend contract"):
            tensorplan.compile(g, object())


# =============================================================================
# 5. Outputs, description, limits and failures
# =============================================================================


class TestPlanBehaviour:
    def test_constant_only_graph(self, cpu_backend):
        g = Graph()
        c = g.add_constant(np.array([1.0, -2.0], dtype=np.float32))
        g.mark_output(g.relu(g.neg(c)))
        plan = tensorplan.compile(g, cpu_backend)
        assert plan.stats.launches == 0
        (y,) = plan.execute({})
        np.testing.assert_array_equal(y, [0.0, 2.0])

    def test_input_as_output_and_repeated_output(self, cpu_backend):
        g = Graph()
        x = g.add_input("x", (2,))
        y = g.exp(x)
        g.mark_output(x)
        g.mark_output(y)
        g.mark_output(y)
        plan = tensorplan.compile(g, cpu_backend)
        data = np.array([0.0, 1.0], dtype=np.float32)
        a, b, c = plan.execute({"x": data})
        np.testing.assert_array_equal(a, data)
        np.testing.assert_array_equal(b, c)
        b[0] = 42.0
        assert c[0] == 1.0

    def test_describe(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        text = plan.describe()
        assert "CompiledPlan 'dense' on cpu" in text
        assert "Symbols: n" in text
        assert "COPYIN x" in text
        assert "LAUNCH fused[<matmul> -> relu]" in text
        assert "converged" in text

        resolved = plan.describe({"n": 8})
        assert "@0x" in resolved
        assert "Resolved arena" in resolved

    def test_capacity_enforced_per_execution(self, rng, cpu_backend):
        g, _ = build_dense(rng)
        config = CompilerConfig(memory=MemoryConfig(capacity_bytes=400))
        plan = tensorplan.compile(g, cpu_backend, config)
        plan.execute({"x": np.ones((8, 4), dtype=np.float32)})
        with pytest.raises(ArenaOutOfMemoryError, match="capacity is 400 bytes"):
            plan.execute({"x": np.ones((16, 4), dtype=np.float32)})
        assert plan.executions == 1

    def test_backend_failure_releases_arena(self, monkeypatch, rng, cpu_backend):
        g, _ = build_dense(rng)
        plan = tensorplan.compile(g, cpu_backend)
        released = []
        monkeypatch.setattr(cpu_backend, "release", released.append)

        def broken(group, args, symbols=None):
            raise FloatingPointError("kernel exploded")

        monkeypatch.setattr("tensorplan.backend.cpu.run_group", broken)
        with pytest.raises(BackendFailure, match="kernel exploded") as exc_info:
            plan.execute({"x": np.ones((2, 4), dtype=np.float32)})
        assert exc_info.value.node_id == plan.outputs[0]
        assert len(released) == 1
        assert plan.executions == 0

    def test_compile_logs_summary(self, caplog, rng, cpu_backend):
        caplog.set_level(logging.INFO, logger="tensorplan")
        g, _ = build_dense(rng)
        tensorplan.compile(g, cpu_backend)
        messages = [r.getMessage() for r in caplog.records if r.name == "tensorplan.runtime"]
        assert any(m.startswith("compiled 'dense' for cpu") for m in messages)
