"""
流水线模块 - 行级转写编排

子模块：
- stages: 流水线状态与阶段定义
- orchestrator: 流水线编排器
"""

from .orchestrator import PipelineOrchestrator
from .stages import ROW_STAGES, PipelineStage, PipelineState, can_transition, progress_percent

__all__ = [
    "PipelineOrchestrator",
    "PipelineStage",
    "PipelineState",
    "ROW_STAGES",
    "can_transition",
    "progress_percent",
]
