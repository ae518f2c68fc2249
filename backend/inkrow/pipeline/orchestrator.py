"""
流水线编排器 - 防抖触发 → 切片 → 查缓存 → 识别 → 合并 → 清理 → 写回

职责：
1. 每行独立防抖计时器，内容变化时重置，静默期后触发一次
2. 在途运行遇到新触发：取消（工作池 cancel + 任务 cancel）并从 extracting 重新开始
3. 成功：原子写回 {transcription, ocr_status=complete}，下游校验重置为 pending
4. 不可恢复失败：写回 {ocr_status=error, error_message}，笔画与成员关系不变
5. 写回按单调版本号后写胜出，过期写丢弃并记录
6. 单行预算是软目标：连续超预算达到上限后暂停自动触发一段时间

测试要点：
- test_debounce: 多次变化只触发一次
- test_retrigger_cancels: 新触发取消在途运行
- test_cached_tiles: 缓存命中跳过识别
- test_error_writeback: 损坏几何写回 error
- test_backoff: 连续超预算后暂停
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from functools import partial
from typing import Callable

from ..config import RuntimeConfig, get_config
from ..events import ProgressBus, ProgressEvent
from ..interfaces import (
    IStrokeGeometryProvider,
    PipelineCancelledError,
    RowNotFoundError,
    VersionConflictError,
    WorkerFailureError,
)
from ..models import CacheEntry, OcrStatus, Row, Tile, TileResult
from ..ocr.cache import TileCache
from ..ocr.merger import FragmentMerger
from ..ocr.postprocess import PostProcessor
from ..ocr.tiling import TileExtractor
from ..ocr.worker_pool import InferenceWorkerPool
from ..rows.store import RowStore
from .stages import PipelineState, can_transition, progress_percent

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """行级流水线编排器（asyncio，需在事件循环内调用）"""

    def __init__(
        self,
        store: RowStore,
        geometry: IStrokeGeometryProvider,
        extractor: TileExtractor,
        cache: TileCache,
        pool: InferenceWorkerPool,
        merger: FragmentMerger | None = None,
        postprocessor: PostProcessor | None = None,
        config: RuntimeConfig | None = None,
        progress: ProgressBus | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        runtime = config or get_config()
        cfg = runtime.pipeline
        self.store = store
        self.geometry = geometry
        self.extractor = extractor
        self.cache = cache
        self.pool = pool
        self.merger = merger or FragmentMerger(config=runtime)
        self.postprocessor = postprocessor or PostProcessor()
        self.progress = progress or pool.progress
        self.clock = clock

        self.debounce_sec = cfg.debounce_sec
        self.budget_sec = cfg.budget_sec
        self.max_overruns = cfg.max_overruns
        self.backoff_sec = cfg.backoff_sec

        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._runs: dict[str, asyncio.Task] = {}
        self._states: dict[str, PipelineState] = {}

        # 版本号从已写回的最大版本之后开始（快照恢复后依然单调）
        start = max((row.ocr_version for row in store.list_rows()), default=0) + 1
        self._versions = itertools.count(start)

        self._overruns = 0
        self._resume_handle: asyncio.TimerHandle | None = None
        self._held_rows: set[str] = set()

    # ------------------------------------------------------------------
    # 触发
    # ------------------------------------------------------------------

    def notify_content_changed(self, row_id: str) -> None:
        """内容变化：重置该行防抖计时器（可直接作为几何索引的监听器）"""
        if self.is_paused:
            self._held_rows.add(row_id)
            logger.debug(f"[{row_id}] 自动触发已暂停，延后处理")
            return
        loop = asyncio.get_running_loop()
        timer = self._timers.pop(row_id, None)
        if timer is not None:
            timer.cancel()
        self._timers[row_id] = loop.call_later(self.debounce_sec, self._fire, row_id)

    async def run_now(self, row_id: str) -> Row:
        """跳过防抖立即运行（不受暂停影响），返回写回后的行"""
        self.store.get_row(row_id)
        self._cancel_timer(row_id)
        # 被新触发接替时不向调用方抛取消
        await asyncio.wait({self._start_run(row_id)})
        return self.store.get_row(row_id)

    def on_active_row_changed(self, previous: str | None, current: str | None) -> None:
        """
        激活行切换

        离开的行立即触发转写；进入的行取消在途运行（用户将继续编辑）。
        """
        if current is not None:
            self.cancel(current)
        if previous is not None and previous != current:
            self._cancel_timer(previous)
            self._start_run(previous)

    def activate(self, row_id: str) -> None:
        """切换激活行并联动流水线"""
        previous = self.store.active_row_id
        self.store.set_active(row_id)
        if previous != row_id:
            self.on_active_row_changed(previous, row_id)

    def cancel(self, row_id: str) -> None:
        """取消该行的计时器与在途运行"""
        self._cancel_timer(row_id)
        task = self._runs.get(row_id)
        if task is not None and not task.done():
            self.pool.cancel(row_id)
            task.cancel()

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def state_of(self, row_id: str) -> PipelineState:
        return self._states.get(row_id, PipelineState.IDLE)

    @property
    def is_paused(self) -> bool:
        return self._resume_handle is not None

    async def close(self) -> None:
        """取消全部计时器与在途运行"""
        for row_id in list(self._timers):
            self._cancel_timer(row_id)
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None
        tasks = [t for t in self._runs.values() if not t.done()]
        for row_id, task in list(self._runs.items()):
            if not task.done():
                self.pool.cancel(row_id)
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()

    # ------------------------------------------------------------------
    # 运行
    # ------------------------------------------------------------------

    def _fire(self, row_id: str) -> None:
        self._timers.pop(row_id, None)
        self._start_run(row_id)

    def _cancel_timer(self, row_id: str) -> None:
        timer = self._timers.pop(row_id, None)
        if timer is not None:
            timer.cancel()

    def _start_run(self, row_id: str) -> asyncio.Task:
        previous = self._runs.get(row_id)
        if previous is not None and not previous.done():
            logger.info(f"[{row_id}] 新触发，取消在途运行并重新开始")
            self.pool.cancel(row_id)
            previous.cancel()

        task = asyncio.get_running_loop().create_task(self._run(row_id), name=f"inkrow-row-{row_id}")
        self._runs[row_id] = task
        task.add_done_callback(partial(self._on_run_done, row_id))
        return task

    def _on_run_done(self, row_id: str, task: asyncio.Task) -> None:
        if self._runs.get(row_id) is task:
            del self._runs[row_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{row_id}] 流水线任务异常结束: {task.exception()!r}")

    async def _run(self, row_id: str) -> None:
        version = next(self._versions)
        started = self.clock()
        logger.info(f"[{row_id}] 开始转写 (version={version})")

        try:
            self.store.mark_processing(row_id, version)

            self._enter(row_id, PipelineState.EXTRACTING)
            row = self.store.get_row(row_id)
            elements = self.geometry.get_geometry(row.element_ids)
            tiles = self.extractor.extract(row, elements)

            if not tiles:
                self._enter(row_id, PipelineState.UPDATING)
                self._commit(row_id, version, "", [])
                self._enter(row_id, PipelineState.IDLE)
                return

            self._enter(row_id, PipelineState.CHECKING_CACHE, len(tiles))
            # 缓存 I/O 放到线程中执行，不阻塞事件循环
            entries = await asyncio.to_thread(self._lookup_all, tiles)
            results: list[TileResult] = []
            misses = []
            for tile, entry in zip(tiles, entries):
                if entry is None:
                    misses.append(tile)
                else:
                    results.append(TileResult.from_tile(
                        tile, text=entry.text, confidence=entry.confidence, cache_hit=True,
                    ))
            logger.debug(f"[{row_id}] 缓存命中 {len(results)}/{len(tiles)}")

            if misses:
                self._enter(row_id, PipelineState.DISPATCHING, len(tiles), len(results))
                fresh = await self.pool.submit(misses)
                hashes = {tile.tile_index: tile.content_hash for tile in misses}
                await asyncio.to_thread(
                    self._store_all, [(hashes[result.tile_index], result) for result in fresh]
                )
                results.extend(fresh)

            failed = [r for r in results if not r.ok]
            if failed and len(failed) == len(results):
                raise WorkerFailureError(f"全部 {len(results)} 个切片识别失败: {failed[0].error}")

            self._enter(row_id, PipelineState.MERGING, len(tiles), len(tiles))
            merged = self.merger.merge(results)

            self._enter(row_id, PipelineState.CLEANING)
            cleaned = self.postprocessor.clean(merged.text)
            warnings = list(dict.fromkeys(merged.warnings + cleaned.warnings))

            self._enter(row_id, PipelineState.UPDATING)
            self._commit(row_id, version, cleaned.text, warnings, merged.is_valid)
            self._enter(row_id, PipelineState.IDLE)

        except (asyncio.CancelledError, PipelineCancelledError):
            self._on_cancelled(row_id)
            if asyncio.current_task().cancelling():
                raise
            return

        except VersionConflictError as e:
            logger.warning(f"[{row_id}] 运行版本已过期，放弃: {e}")
            self._states[row_id] = PipelineState.IDLE
            return

        except RowNotFoundError:
            logger.error(f"[{row_id}] 行不存在，放弃转写")
            self._enter(row_id, PipelineState.ERROR)
            return

        except Exception as e:
            logger.exception(f"[{row_id}] 转写失败")
            self._enter(row_id, PipelineState.ERROR)
            try:
                self.store.commit_error(row_id, version, f"{type(e).__name__}: {e}")
            except VersionConflictError as conflict:
                logger.warning(f"[{row_id}] 丢弃过期错误写回: {conflict}")
            return

        self._check_budget(row_id, self.clock() - started)

    def _lookup_all(self, tiles: list[Tile]) -> list[CacheEntry | None]:
        return [self.cache.lookup(tile.content_hash) for tile in tiles]

    def _store_all(self, pairs: list[tuple[str, TileResult]]) -> None:
        for content_hash, result in pairs:
            self.cache.store(content_hash, result)

    def _commit(
        self, row_id: str, version: int, text: str, warnings: list[str], is_valid: bool = True,
    ) -> None:
        try:
            self.store.commit_transcription(row_id, version, text, warnings, is_valid)
        except VersionConflictError as e:
            logger.warning(f"[{row_id}] 丢弃过期写回: {e}")
            return
        logger.info(f"[{row_id}] 转写完成: {text!r} ({len(warnings)} 条告警)")

    def _on_cancelled(self, row_id: str) -> None:
        """被取消：未被新运行接替时把状态退回 pending"""
        if self._runs.get(row_id) is not asyncio.current_task():
            logger.debug(f"[{row_id}] 旧运行已被接替")
            return
        logger.info(f"[{row_id}] 转写已取消")
        self._states[row_id] = PipelineState.IDLE
        row = self.store.get_row(row_id)
        if row.ocr_status == OcrStatus.PROCESSING:
            self.store.update_row(row_id, ocr_status=OcrStatus.PENDING)

    def _enter(
        self,
        row_id: str,
        state: PipelineState,
        tiles_total: int = 0,
        tiles_complete: int = 0,
    ) -> None:
        current = self.state_of(row_id)
        if not can_transition(current, state):
            logger.warning(f"[{row_id}] 非法状态迁移 {current.value} → {state.value}")
        self._states[row_id] = state
        logger.debug(f"[{row_id}] {current.value} → {state.value}")
        self.progress.publish(ProgressEvent(
            row_id=row_id,
            stage=state.value,
            tiles_total=tiles_total,
            tiles_complete=tiles_complete,
            percent=progress_percent(state, tiles_total, tiles_complete),
        ))

    # ------------------------------------------------------------------
    # 预算与退避
    # ------------------------------------------------------------------

    def _check_budget(self, row_id: str, elapsed: float) -> None:
        if elapsed <= self.budget_sec:
            self._overruns = 0
            return
        self._overruns += 1
        logger.warning(
            f"[{row_id}] 转写耗时 {elapsed:.2f}s 超出预算 {self.budget_sec:.2f}s "
            f"(连续 {self._overruns}/{self.max_overruns})"
        )
        if self._overruns >= self.max_overruns and not self.is_paused:
            self._overruns = 0
            self._resume_handle = asyncio.get_running_loop().call_later(self.backoff_sec, self._resume)
            logger.warning(f"连续超出预算，暂停自动触发 {self.backoff_sec:.0f}s")

    def _resume(self) -> None:
        self._resume_handle = None
        held = sorted(self._held_rows)
        self._held_rows.clear()
        logger.info(f"恢复自动触发，补发 {len(held)} 行")
        for row_id in held:
            self.notify_content_changed(row_id)
