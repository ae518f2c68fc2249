"""
流水线阶段单元测试
"""

import pytest

from inkrow.pipeline import ROW_STAGES, PipelineState, can_transition, progress_percent


class TestTransitions:
    """状态迁移测试"""

    def test_happy_path(self):
        path = [
            PipelineState.IDLE,
            PipelineState.EXTRACTING,
            PipelineState.CHECKING_CACHE,
            PipelineState.DISPATCHING,
            PipelineState.MERGING,
            PipelineState.CLEANING,
            PipelineState.UPDATING,
            PipelineState.IDLE,
        ]
        for current, target in zip(path, path[1:]):
            assert can_transition(current, target), f"{current} → {target}"

    def test_restart_from_any_state(self):
        """新触发：任何状态都可以回到 extracting"""
        for state in PipelineState:
            assert can_transition(state, PipelineState.EXTRACTING)

    def test_skip_not_allowed(self):
        assert not can_transition(PipelineState.IDLE, PipelineState.MERGING)
        assert not can_transition(PipelineState.DISPATCHING, PipelineState.UPDATING)

    def test_all_cached_skips_dispatch(self):
        assert can_transition(PipelineState.CHECKING_CACHE, PipelineState.MERGING)


class TestProgress:
    """整体进度测试"""

    def test_stages_contiguous(self):
        assert ROW_STAGES[0].progress_start == 0
        assert ROW_STAGES[-1].progress_end == 100
        for prev, nxt in zip(ROW_STAGES, ROW_STAGES[1:]):
            assert prev.progress_end == nxt.progress_start

    @pytest.mark.parametrize(
        ("state", "total", "complete", "expected"),
        [
            (PipelineState.EXTRACTING, 0, 0, 0),
            (PipelineState.DISPATCHING, 4, 0, 25),
            (PipelineState.DISPATCHING, 4, 2, 52),
            (PipelineState.DISPATCHING, 4, 9, 80),
            (PipelineState.IDLE, 0, 0, 100),
            (PipelineState.ERROR, 0, 0, 0),
        ],
    )
    def test_percent(self, state, total, complete, expected):
        assert progress_percent(state, total, complete) == expected
