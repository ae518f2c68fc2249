"""
流水线编排器单元测试

使用真实的切片/缓存/合并/后处理组件与假识别器，异步用例通过 asyncio.run 执行。
"""

import asyncio
import threading

import numpy as np

from inkrow.config import PipelineConfig, RuntimeConfig, WorkerConfig
from inkrow.interfaces import IRecognizer
from inkrow.models import ElementGeometry, OcrStatus, ValidationStatus
from inkrow.ocr import InferenceWorkerPool, MemoryCacheBackend, PillowRasterizer, TileCache, TileExtractor
from inkrow.pipeline import PipelineOrchestrator, PipelineState
from inkrow.rows import RowStore, StrokeGeometryIndex

# 白色切片左上角像素为 255，脚本识别器据此返回 "t255"
BLANK_KEY = 255


class InkSideRecognizer(IRecognizer):
    """按墨迹所在半边返回 "1"/"2"；空白切片抛错"""

    def __init__(self):
        self.blank_calls = 0

    async def recognize(self, pixels: np.ndarray) -> tuple[str, float]:
        columns = np.where(pixels.min(axis=0) < 128)[0]
        if columns.size == 0:
            self.blank_calls += 1
            raise RuntimeError("空白切片")
        return ("1" if columns.mean() < pixels.shape[1] / 2 else "2"), 0.9


class ThreadRecordingBackend(MemoryCacheBackend):
    """记录每次读写所在线程"""

    def __init__(self):
        super().__init__()
        self.threads: set[int] = set()

    def get(self, key):
        self.threads.add(threading.get_ident())
        return super().get(key)

    def put(self, key, value):
        self.threads.add(threading.get_ident())
        super().put(key, value)


def _config(**pipeline_fields) -> RuntimeConfig:
    pipeline = {"debounce_sec": 0.05, "budget_sec": 5.0, "max_overruns": 3, "backoff_sec": 30.0}
    pipeline.update(pipeline_fields)
    return RuntimeConfig(
        workers=WorkerConfig(pool_size=2, queue_capacity=8, tile_timeout_sec=2.0, max_attempts=2),
        pipeline=PipelineConfig(**pipeline),
    )


def _build(config: RuntimeConfig, recognizer_factory, backend=None):
    store = RowStore(config)
    geometry = StrokeGeometryIndex(store)
    orchestrator = PipelineOrchestrator(
        store,
        geometry,
        TileExtractor(PillowRasterizer(), config),
        TileCache(backend if backend is not None else MemoryCacheBackend(), config),
        InferenceWorkerPool(recognizer_factory, config),
        config=config,
    )
    return orchestrator, store, geometry


def _stroke(eid: str = "e1", x: float = 10, y: float = 100) -> ElementGeometry:
    return ElementGeometry(id=eid, x=x, y=y, width=40, height=40, points=[(0, 0), (40, 40)])


async def _shutdown(orchestrator: PipelineOrchestrator) -> None:
    await orchestrator.close()
    await orchestrator.pool.close()


class TestRun:
    """单次运行测试"""

    def test_run_now_writes_transcription(self, constant_factory):
        factory, calls = constant_factory("x+1")
        orchestrator, store, geometry = _build(_config(), factory)
        geometry.add(_stroke())
        store.update_row("row-0", validation_status=ValidationStatus.VALIDATED)

        async def scenario():
            row = await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.transcription == "x + 1"
        assert row.ocr_status == OcrStatus.COMPLETE
        assert row.validation_status == ValidationStatus.PENDING
        assert row.transcription_valid is True
        assert orchestrator.state_of("row-0") == PipelineState.IDLE
        assert calls["total"] == 1

    def test_cached_tiles_skip_recognizer(self, constant_factory):
        """第二次运行全部命中缓存"""
        factory, calls = constant_factory("x+1")
        orchestrator, _, geometry = _build(_config(), factory)
        geometry.add(_stroke())

        async def scenario():
            await orchestrator.run_now("row-0")
            row = await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.transcription == "x + 1"
        assert calls["total"] == 1
        assert orchestrator.cache.stats()["hits"] == 1

    def test_cache_io_off_event_loop(self, constant_factory):
        """缓存读写在工作线程中执行，不占用事件循环线程"""
        factory, _ = constant_factory("x")
        backend = ThreadRecordingBackend()
        orchestrator, _, geometry = _build(_config(), factory, backend=backend)
        geometry.add(_stroke())

        async def scenario():
            loop_thread = threading.get_ident()
            await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return loop_thread

        loop_thread = asyncio.run(scenario())
        assert backend.threads
        assert loop_thread not in backend.threads

    def test_empty_row(self, constant_factory):
        """空行：写回空转写"""
        factory, calls = constant_factory()
        orchestrator, store, _ = _build(_config(), factory)
        store.create_row()

        async def scenario():
            row = await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.transcription == ""
        assert row.ocr_status == OcrStatus.COMPLETE
        assert calls["total"] == 0

    def test_invalid_geometry_writes_error(self, constant_factory):
        """损坏几何：写回 error，成员关系不变"""
        factory, _ = constant_factory()
        orchestrator, store, geometry = _build(_config(), factory)
        geometry.add(ElementGeometry(id="e1", x=10, y=100, width=0, height=0))

        async def scenario():
            row = await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.ocr_status == OcrStatus.ERROR
        assert "InvalidGeometryError" in row.error_message
        assert row.element_ids == {"e1"}
        assert orchestrator.state_of("row-0") == PipelineState.ERROR

    def test_all_tiles_failed_writes_error(self, scripted_factory):
        factory, _ = scripted_factory({BLANK_KEY: ["fail", "fail"]})
        orchestrator, _, geometry = _build(_config(), factory)
        geometry.add(_stroke())

        async def scenario():
            row = await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.ocr_status == OcrStatus.ERROR
        assert "WorkerFailureError" in row.error_message

    def test_partial_failure_keeps_surviving_fragments(self):
        """中间切片失败两次：行仍完成，保留其余片段并记录失败告警"""
        recognizer = InkSideRecognizer()
        orchestrator, store, geometry = _build(_config(), lambda: recognizer)
        # 两端各一笔，行宽 1000 切成 3 片，中间一片为空白
        geometry.add(_stroke("left", x=0))
        geometry.add(_stroke("right", x=960))

        async def scenario():
            row = await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.ocr_status == OcrStatus.COMPLETE
        assert row.transcription.replace(" ", "") == "12"
        assert row.transcription_valid is False
        assert row.error_message is None
        assert any("row-0:1" in w and "识别失败" in w for w in row.ocr_warnings)
        assert recognizer.blank_calls == 2
        assert orchestrator.state_of("row-0") == PipelineState.IDLE

    def test_stale_run_dropped(self, constant_factory):
        """版本落后的运行不覆盖新状态"""
        factory, calls = constant_factory("old")
        orchestrator, store, geometry = _build(_config(), factory)
        geometry.add(_stroke())
        store.commit_transcription("row-0", 100, "newer")

        async def scenario():
            row = await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.transcription == "newer"
        assert row.ocr_status == OcrStatus.COMPLETE
        assert calls["total"] == 0

    def test_progress_events(self, constant_factory):
        factory, _ = constant_factory("x")
        orchestrator, _, geometry = _build(_config(), factory)
        geometry.add(_stroke())

        async def scenario():
            events = orchestrator.progress.subscribe()
            await orchestrator.run_now("row-0")
            await _shutdown(orchestrator)
            received = []
            while not events.empty():
                received.append(events.get_nowait())
            return received

        received = asyncio.run(scenario())
        stages = [e.stage for e in received]
        assert stages[0] == "extracting"
        assert stages[-1] == "idle"
        assert received[-1].percent == 100
        for stage in ("checkingCache", "dispatching", "merging", "cleaning", "updating"):
            assert stage in stages


class TestTriggers:
    """防抖与取消测试"""

    def test_debounce_fires_once(self, constant_factory):
        """多次变化只触发一次运行"""
        factory, calls = constant_factory("x")
        orchestrator, store, geometry = _build(_config(debounce_sec=0.05), factory)
        geometry.listener = orchestrator.notify_content_changed

        async def scenario():
            geometry.add(_stroke("e1"))
            geometry.move(_stroke("e1", x=20))
            geometry.add(_stroke("e2", x=80))
            await asyncio.sleep(0.5)
            row = store.get_row("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert calls["total"] == 1
        assert row.ocr_status == OcrStatus.COMPLETE

    def test_retrigger_cancels_in_flight(self, scripted_factory):
        """新触发取消在途运行并重新开始"""
        factory, calls = scripted_factory({BLANK_KEY: ["slow"]}, slow_sec=10.0)
        orchestrator, store, geometry = _build(_config(debounce_sec=0.05), factory)
        geometry.listener = orchestrator.notify_content_changed

        async def scenario():
            geometry.add(_stroke())
            await asyncio.sleep(0.2)
            in_flight = orchestrator.state_of("row-0")
            orchestrator.notify_content_changed("row-0")
            await asyncio.sleep(0.5)
            row = store.get_row("row-0")
            status = orchestrator.pool.status()
            await _shutdown(orchestrator)
            return in_flight, row, status

        in_flight, row, status = asyncio.run(scenario())
        assert in_flight == PipelineState.DISPATCHING
        assert row.transcription == f"t{BLANK_KEY}"
        assert row.ocr_status == OcrStatus.COMPLETE
        assert calls[BLANK_KEY] == 2
        assert status["busy"] == 0

    def test_leaving_row_triggers_run(self, constant_factory):
        """离开激活行立即触发转写（不等待防抖）"""
        factory, _ = constant_factory("x")
        orchestrator, store, geometry = _build(_config(debounce_sec=10.0), factory)
        geometry.add(_stroke())
        store.create_row()

        async def scenario():
            orchestrator.activate("row-0")
            orchestrator.activate("row-1")
            await asyncio.sleep(0.3)
            row = store.get_row("row-0")
            await _shutdown(orchestrator)
            return row

        row = asyncio.run(scenario())
        assert row.transcription == "x"
        assert store.active_row_id == "row-1"

    def test_entering_row_cancels_run(self, scripted_factory):
        """进入的行取消在途运行，状态退回 pending"""
        factory, _ = scripted_factory({BLANK_KEY: ["slow"]}, slow_sec=10.0)
        orchestrator, store, geometry = _build(_config(), factory)
        geometry.add(_stroke())

        async def scenario():
            run = asyncio.create_task(orchestrator.run_now("row-0"))
            await asyncio.sleep(0.1)
            orchestrator.on_active_row_changed(None, "row-0")
            row = await run
            await asyncio.sleep(0.05)
            status = orchestrator.pool.status()
            await _shutdown(orchestrator)
            return row, status

        row, status = asyncio.run(scenario())
        assert row.ocr_status == OcrStatus.PENDING
        assert row.transcription is None
        assert status["busy"] == 0
        assert orchestrator.state_of("row-0") == PipelineState.IDLE


class TestBackoff:
    """预算超限退避测试"""

    def test_pause_after_repeated_overruns(self, constant_factory):
        factory, calls = constant_factory("x")
        orchestrator, _, geometry = _build(_config(budget_sec=0.0, max_overruns=2), factory)
        geometry.add(_stroke())

        async def scenario():
            await orchestrator.run_now("row-0")
            assert not orchestrator.is_paused
            await orchestrator.run_now("row-0")
            paused = orchestrator.is_paused
            orchestrator.notify_content_changed("row-0")
            await asyncio.sleep(0.2)
            await _shutdown(orchestrator)
            return paused

        assert asyncio.run(scenario()) is True
        assert calls["total"] == 1
