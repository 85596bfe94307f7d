from .constant_fold import ConstantFoldingPass
from .cse import CommonSubexpressionPass
from .dce import DeadCodeEliminationPass
from .fusion import ANCHOR_KINDS, FusionPass
from .pipeline import GraphPass, PassManager, PassRecord, PipelineReport

__all__ = [
    "ConstantFoldingPass",
    "CommonSubexpressionPass",
    "FusionPass",
    "DeadCodeEliminationPass",
    "ANCHOR_KINDS",
    "GraphPass",
    "PassManager",
    "PassRecord",
    "PipelineReport",
]
