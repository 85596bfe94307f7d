"""NumPy reference kernels.

`KERNELS` maps every computing `OpKind` to a function
`(args, params, symbols) -> ndarray`. `symbols` binds the dimension
variables that appear in op parameters (reshape targets, slice bounds, pad
widths). The CPU backends run fused groups by interpreting the group program
op by op, casting every intermediate to its recorded dtype, so fused and
unfused execution give bit-identical results. Constant folding uses the same
functions.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

import numpy as np

from tensorplan.ir import FusedKernelGroup, OpKind
from tensorplan.symbolic import Expr, evaluate_shape

Kernel = Callable[[Sequence[np.ndarray], Mapping[str, Any], Mapping[str, int]], np.ndarray]


def _value(expr: Expr, symbols: Mapping[str, int]) -> int:
    return expr.evaluate(symbols)


# =============================================================================
# Elementwise
# =============================================================================


def _unary(fn: Callable[[np.ndarray], np.ndarray]) -> Kernel:
    def kernel(args, params, symbols):
        return fn(args[0])

    return kernel


def _binary(fn: Callable[[np.ndarray, np.ndarray], np.ndarray]) -> Kernel:
    def kernel(args, params, symbols):
        return fn(args[0], args[1])

    return kernel


def _relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, np.zeros((), dtype=x.dtype))


def _recip(x: np.ndarray) -> np.ndarray:
    return np.divide(np.ones((), dtype=x.dtype), x)


def _div(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    if np.issubdtype(a.dtype, np.integer):
        return np.floor_divide(a, b)
    return np.divide(a, b)


# =============================================================================
# Reductions
# =============================================================================


def _lowest(dtype: np.dtype):
    if np.issubdtype(dtype, np.floating):
        return -np.inf
    if dtype == np.bool_:
        return False
    return np.iinfo(dtype).min


def _sum_reduce(args, params, symbols):
    x = args[0]
    return np.sum(x, axis=params["axis"], keepdims=params["keepdim"], dtype=x.dtype)


def _max_reduce(args, params, symbols):
    x = args[0]
    return np.max(x, axis=params["axis"], keepdims=params["keepdim"], initial=_lowest(x.dtype))


# =============================================================================
# Movement
# =============================================================================


def _reshape(args, params, symbols):
    return np.reshape(args[0], evaluate_shape(params["shape"], symbols))


def _permute(args, params, symbols):
    return np.transpose(args[0], params["axes"])


def _expand(args, params, symbols):
    return np.broadcast_to(args[0], evaluate_shape(params["shape"], symbols))


def _slice(args, params, symbols):
    x = args[0]
    axis = params["axis"]
    start = _value(params["start"], symbols)
    stop = min(_value(params["stop"], symbols), x.shape[axis])
    index = [slice(None)] * x.ndim
    index[axis] = slice(start, stop)
    return x[tuple(index)]


def _pad(args, params, symbols):
    x = args[0]
    widths = [(0, 0)] * x.ndim
    widths[params["axis"]] = (_value(params["before"], symbols), _value(params["after"], symbols))
    return np.pad(x, widths, mode="constant", constant_values=0)


def _matmul(args, params, symbols):
    return np.matmul(args[0], args[1])


KERNELS: dict[OpKind, Kernel] = {
    OpKind.NEG: _unary(np.negative),
    OpKind.RELU: _unary(_relu),
    OpKind.EXP: _unary(np.exp),
    OpKind.LOG: _unary(np.log),
    OpKind.SQRT: _unary(np.sqrt),
    OpKind.RECIP: _unary(_recip),
    OpKind.SIN: _unary(np.sin),
    OpKind.EXP2: _unary(np.exp2),
    OpKind.LOG2: _unary(np.log2),
    OpKind.ADD: _binary(np.add),
    OpKind.SUB: _binary(np.subtract),
    OpKind.MUL: _binary(np.multiply),
    OpKind.DIV: _binary(_div),
    OpKind.MAXIMUM: _binary(np.maximum),
    OpKind.MOD: _binary(np.fmod),
    OpKind.LESS_THAN: _binary(np.less),
    OpKind.SUM_REDUCE: _sum_reduce,
    OpKind.MAX_REDUCE: _max_reduce,
    OpKind.RESHAPE: _reshape,
    OpKind.PERMUTE: _permute,
    OpKind.EXPAND: _expand,
    OpKind.SLICE: _slice,
    OpKind.PAD: _pad,
    OpKind.MATMUL: _matmul,
}


# =============================================================================
# Entry points
# =============================================================================


def run_op(
    kind: OpKind,
    args: Sequence[np.ndarray],
    params: Mapping[str, Any],
    dtype: np.dtype,
    symbols: Mapping[str, int] | None = None,
) -> np.ndarray:
    """Evaluate one op and cast the result to `dtype`."""
    try:
        kernel = KERNELS[kind]
    except KeyError:
        raise NotImplementedError(f"no reference kernel for {kind.value}") from None
    with np.errstate(all="ignore"):
        result = kernel(args, params, symbols or {})
    return np.asarray(result).astype(dtype, copy=False)


def run_group(
    group: FusedKernelGroup,
    args: Sequence[np.ndarray],
    symbols: Mapping[str, int] | None = None,
) -> np.ndarray:
    """Interpret a fused group program over its input arrays."""
    if len(args) != group.num_inputs:
        raise ValueError(f"{group.describe()} expects {group.num_inputs} inputs, got {len(args)}")
    results: list[np.ndarray] = []
    for op in group.ops:
        operands = [
            args[operand.index] if operand.source == "input" else results[operand.index]
            for operand in op.operands
        ]
        results.append(run_op(op.kind, operands, op.params, op.dtype.np, symbols))
    return results[-1]
