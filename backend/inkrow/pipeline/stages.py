"""
流水线阶段定义

行级状态机：
idle → extracting → checkingCache → dispatching → merging → cleaning → updating → idle|error

新触发到来时在途运行被取消，并从 extracting 重新开始。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class PipelineState(str, Enum):
    """行流水线状态"""
    IDLE = "idle"
    EXTRACTING = "extracting"
    CHECKING_CACHE = "checkingCache"
    DISPATCHING = "dispatching"
    MERGING = "merging"
    CLEANING = "cleaning"
    UPDATING = "updating"
    ERROR = "error"


@dataclass(frozen=True)
class PipelineStage:
    """流水线阶段"""
    state: PipelineState
    progress_start: int  # 进度起点（0-100）
    progress_end: int    # 进度终点

    @property
    def name(self) -> str:
        return self.state.value


# 行转写流水线各阶段配置
ROW_STAGES: list[PipelineStage] = [
    PipelineStage(PipelineState.EXTRACTING, 0, 15),
    PipelineStage(PipelineState.CHECKING_CACHE, 15, 25),
    PipelineStage(PipelineState.DISPATCHING, 25, 80),
    PipelineStage(PipelineState.MERGING, 80, 90),
    PipelineStage(PipelineState.CLEANING, 90, 95),
    PipelineStage(PipelineState.UPDATING, 95, 100),
]

STAGE_BY_STATE: dict[PipelineState, PipelineStage] = {s.state: s for s in ROW_STAGES}

# 合法迁移（任何运行态都可以因新触发回到 extracting）
TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.EXTRACTING}),
    PipelineState.EXTRACTING: frozenset({
        PipelineState.CHECKING_CACHE, PipelineState.UPDATING, PipelineState.ERROR,
    }),
    PipelineState.CHECKING_CACHE: frozenset({
        PipelineState.DISPATCHING, PipelineState.MERGING, PipelineState.ERROR,
    }),
    PipelineState.DISPATCHING: frozenset({PipelineState.MERGING, PipelineState.ERROR}),
    PipelineState.MERGING: frozenset({PipelineState.CLEANING, PipelineState.ERROR}),
    PipelineState.CLEANING: frozenset({PipelineState.UPDATING, PipelineState.ERROR}),
    PipelineState.UPDATING: frozenset({PipelineState.IDLE, PipelineState.ERROR}),
    PipelineState.ERROR: frozenset({PipelineState.EXTRACTING}),
}


def can_transition(current: PipelineState, target: PipelineState) -> bool:
    """判断迁移是否合法"""
    if target is PipelineState.EXTRACTING:
        return True
    if target is PipelineState.IDLE and current is not PipelineState.IDLE:
        # 取消后回到空闲
        return True
    return target in TRANSITIONS[current]


def progress_percent(state: PipelineState, tiles_total: int = 0, tiles_complete: int = 0) -> int:
    """
    行级整体进度

    阶段内按已完成切片数线性插值；idle（运行结束）为 100，error 为 0。
    """
    stage = STAGE_BY_STATE.get(state)
    if stage is None:
        return 100 if state is PipelineState.IDLE else 0
    if tiles_total <= 0:
        return stage.progress_start
    done = min(tiles_complete, tiles_total)
    span = stage.progress_end - stage.progress_start
    return stage.progress_start + span * done // tiles_total
