"""tensorplan: symbolic-shape tensor graph compiler and executor."""

from .backend import Backend, BufferView, CPUBackend, KernelHandle, ThreadedBackend
from .config import CompilerConfig
from .errors import (
    ArenaOutOfMemoryError,
    BackendFailure,
    CyclicDependency,
    DeferredAllocation,
    IRValidationError,
    ShapeMismatch,
    UnresolvedSymbol,
)
from .ir import DType, Graph, OpKind, bool_, float16, float32, int32
from .log import get_logger, setup_logging
from .runtime import CompiledPlan, ExecutionContext, compile
from .scheduler import MemoryConfig
from .serialize import dump_plan, load_plan, plan_from_dict, plan_to_dict
from .symbolic import Expr, Var, sym

__version__ = "0.1.0"

__all__ = [
    "Graph",
    "OpKind",
    "DType",
    "float32",
    "float16",
    "int32",
    "bool_",
    "Expr",
    "Var",
    "sym",
    "CompilerConfig",
    "MemoryConfig",
    "compile",
    "CompiledPlan",
    "ExecutionContext",
    "Backend",
    "BufferView",
    "KernelHandle",
    "CPUBackend",
    "ThreadedBackend",
    "plan_to_dict",
    "plan_from_dict",
    "dump_plan",
    "load_plan",
    "setup_logging",
    "get_logger",
    "IRValidationError",
    "ShapeMismatch",
    "CyclicDependency",
    "UnresolvedSymbol",
    "DeferredAllocation",
    "BackendFailure",
    "ArenaOutOfMemoryError",
]
