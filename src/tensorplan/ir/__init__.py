from .dtypes import DType, bool_, dtype_by_name, dtype_from_numpy, float16, float32, int32
from .fused import FusedKernelGroup, FusedOp, Operand, group_from_nodes
from .graph import Graph
from .node import Node, freeze_params
from .op import ELEMENTWISE, MOVEMENT, OP_TABLE, OpCategory, OpKind, OpSpec, ShapeRuleViolation, check_op_table

__all__ = [
    "DType",
    "float32",
    "float16",
    "int32",
    "bool_",
    "dtype_by_name",
    "dtype_from_numpy",
    "Graph",
    "Node",
    "freeze_params",
    "OpKind",
    "OpCategory",
    "OpSpec",
    "OP_TABLE",
    "ELEMENTWISE",
    "MOVEMENT",
    "ShapeRuleViolation",
    "check_op_table",
    "FusedKernelGroup",
    "FusedOp",
    "Operand",
    "group_from_nodes",
]
