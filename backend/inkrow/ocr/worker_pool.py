"""
识别工作池 - 固定数量的并发识别工作者

职责：
1. FIFO 分发：有界队列（容量 Q），溢出任务进入延后队列，容量释放后补入；
   只发出 overloaded 信号，不拒绝提交
2. 每片独立超时；超时或出错重试一次（可能落到其他工作者），再次失败返回单片失败结果
3. 识别器抛 RecognizerCrashedError 时工作者退出并以新识别器重启，在途切片重新入队一次
   同步识别器的调用超时或被取消后无法中断，工作者换上新的识别器与独占线程
4. cancel(row_id) 只中止该行的排队/在途切片，不影响其他行
5. 进度经 ProgressBus 非阻塞发布 {row_id, tiles_total, tiles_complete}

识别器可以是普通函数（在线程池中执行）或协程函数。

测试要点：
- test_timeout_then_success: 超时一次后重试成功
- test_fail_twice: 单片失败不影响兄弟片
- test_crash_restart: 崩溃重启且在途切片重新入队
- test_sync_timeout_renews_thread: 同步识别器超时后重试拿到空闲线程
- test_cancel_row: 取消只影响目标行
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

import numpy as np

from ..config import RuntimeConfig, get_config
from ..events import ProgressBus, ProgressEvent
from ..interfaces import IRecognizer, PipelineCancelledError, QueueOverloadedError, RecognizerCrashedError
from ..models import Tile, TileResult

logger = logging.getLogger(__name__)


@dataclass
class _Batch:
    """一次 submit 的进度计数"""
    row_id: str
    total: int
    completed: int = 0


@dataclass(eq=False)
class _TileJob:
    """单片任务"""
    tile: Tile
    future: asyncio.Future
    batch: _Batch
    attempts: int = 0
    crash_requeued: bool = False
    cancelled: bool = False
    started_at: float = field(default=0.0)


class InferenceWorkerPool:
    """识别工作池（asyncio）"""

    def __init__(
        self,
        recognizer_factory: Callable[[], IRecognizer],
        config: RuntimeConfig | None = None,
        progress: ProgressBus | None = None,
    ):
        cfg = (config or get_config()).workers
        self.recognizer_factory = recognizer_factory
        self.pool_size = cfg.pool_size
        self.queue_capacity = cfg.queue_capacity
        self.tile_timeout_sec = cfg.tile_timeout_sec
        self.max_attempts = cfg.max_attempts
        self.progress = progress or ProgressBus()

        self._queue: asyncio.Queue[_TileJob] | None = None
        self._deferred: deque[_TileJob] = deque()
        self._workers: dict[int, asyncio.Task] = {}
        self._recognizers: dict[int, IRecognizer] = {}
        self._inflight: dict[int, tuple[_TileJob, asyncio.Future]] = {}
        self._jobs_by_row: dict[str, set[_TileJob]] = {}
        # 每个工作者独占一个单线程执行器（同步识别器使用）
        self._executors: dict[int, ThreadPoolExecutor] = {}
        self._closing = False

        self.overloaded = False
        self.restarts = 0

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """启动工作者（幂等）"""
        if self._queue is not None:
            return
        self._closing = False
        self._queue = asyncio.Queue(maxsize=self.queue_capacity)
        for worker_id in range(self.pool_size):
            self._spawn(worker_id)
        logger.info(f"识别工作池已启动: {self.pool_size} 个工作者, 队列容量 {self.queue_capacity}")

    async def close(self) -> None:
        """停止工作者，未完成的任务以取消结束"""
        if self._queue is None:
            return
        self._closing = True
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        for row_id in list(self._jobs_by_row):
            self._reject_row(row_id)
        self._deferred.clear()
        self._workers.clear()
        self._inflight.clear()
        for executor in self._executors.values():
            executor.shutdown(wait=False, cancel_futures=True)
        self._executors.clear()
        self._queue = None
        logger.info("识别工作池已关闭")

    async def __aenter__(self) -> InferenceWorkerPool:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _spawn(self, worker_id: int) -> None:
        self._renew_recognizer(worker_id)
        task = asyncio.create_task(self._worker_loop(worker_id), name=f"inkrow-worker-{worker_id}")
        task.add_done_callback(partial(self._on_worker_exit, worker_id))
        self._workers[worker_id] = task

    def _renew_recognizer(self, worker_id: int) -> None:
        """为工作者换上新的识别器与执行线程（旧线程上的调用无法中断，直接弃用）"""
        old = self._executors.pop(worker_id, None)
        if old is not None:
            old.shutdown(wait=False, cancel_futures=True)
        self._recognizers[worker_id] = self.recognizer_factory()
        self._executors[worker_id] = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"inkrow-ocr-{worker_id}"
        )

    def _on_worker_exit(self, worker_id: int, task: asyncio.Task) -> None:
        """工作者退出监督：非关闭期间的退出一律重启"""
        if self._closing or task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, RecognizerCrashedError):
            logger.error(f"工作者 {worker_id} 异常退出: {error!r}")
        self.restarts += 1
        logger.warning(f"重启工作者 {worker_id} (累计重启 {self.restarts} 次)")
        self._spawn(worker_id)

    # ------------------------------------------------------------------
    # 提交与取消
    # ------------------------------------------------------------------

    async def submit(self, tiles: list[Tile]) -> list[TileResult]:
        """
        提交一批切片并等待全部结束

        Returns:
            按 tile_index 排序的结果（成功或终态失败）

        Raises:
            PipelineCancelledError: 该行任务被 cancel
        """
        if not tiles:
            return []
        await self.start()

        loop = asyncio.get_running_loop()
        batch = _Batch(row_id=tiles[0].row_id, total=len(tiles))
        jobs = [_TileJob(tile=tile, future=loop.create_future(), batch=batch) for tile in tiles]
        for job in jobs:
            self._jobs_by_row.setdefault(job.tile.row_id, set()).add(job)
            self._enqueue(job)
        self._publish(batch)

        outcomes = await asyncio.gather(*(job.future for job in jobs), return_exceptions=True)
        results: list[TileResult] = []
        for outcome in outcomes:
            if isinstance(outcome, PipelineCancelledError):
                raise outcome
            if isinstance(outcome, asyncio.CancelledError):
                raise PipelineCancelledError(batch.row_id)
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        return sorted(results, key=lambda r: r.tile_index)

    def cancel(self, row_id: str) -> int:
        """
        取消某行全部排队/在途切片

        Returns:
            被取消的切片数
        """
        count = self._reject_row(row_id)
        for job, inner in list(self._inflight.values()):
            if job.tile.row_id == row_id and not inner.done():
                inner.cancel()
        if self._deferred:
            self._deferred = deque(job for job in self._deferred if job.tile.row_id != row_id)
        if count:
            logger.info(f"[{row_id}] 已取消 {count} 个切片任务")
        return count

    def _reject_row(self, row_id: str) -> int:
        count = 0
        for job in self._jobs_by_row.pop(row_id, set()):
            job.cancelled = True
            if not job.future.done():
                job.future.set_exception(PipelineCancelledError(row_id))
                count += 1
        return count

    # ------------------------------------------------------------------
    # 队列
    # ------------------------------------------------------------------

    def _enqueue(self, job: _TileJob) -> None:
        """入队；队列满或已有延后任务时进入延后队列（保持 FIFO）"""
        if not self._deferred:
            try:
                self._queue.put_nowait(job)
                return
            except asyncio.QueueFull:
                pass
        self._deferred.append(job)
        if not self.overloaded:
            self.overloaded = True
            # 仅作信号记录，不向提交方抛出
            signal = QueueOverloadedError(
                f"识别队列已满 ({self.queue_capacity})，任务延后执行 [{job.tile.row_id}]"
            )
            logger.warning(str(signal))
            self.progress.publish(ProgressEvent(row_id=job.tile.row_id, stage="overloaded"))

    def _refill(self) -> None:
        while self._deferred:
            try:
                self._queue.put_nowait(self._deferred[0])
            except asyncio.QueueFull:
                return
            self._deferred.popleft()
        if self.overloaded:
            self.overloaded = False
            logger.info("识别队列压力已解除")

    # ------------------------------------------------------------------
    # 工作者
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: int) -> None:
        queue = self._queue
        while True:
            job = await queue.get()
            try:
                self._refill()
                if job.cancelled or job.future.done():
                    self._forget(job)
                    continue
                await self._run_job(worker_id, job)
            finally:
                queue.task_done()

    async def _run_job(self, worker_id: int, job: _TileJob) -> None:
        tile = job.tile
        job.attempts += 1
        job.started_at = time.perf_counter()

        recognizer = self._recognizers[worker_id]
        blocking = not inspect.iscoroutinefunction(recognizer.recognize)
        inner = asyncio.ensure_future(self._call_recognizer(worker_id, recognizer, tile.pixels))
        self._inflight[worker_id] = (job, inner)
        try:
            done, _ = await asyncio.wait({inner}, timeout=self.tile_timeout_sec)
        finally:
            self._inflight.pop(worker_id, None)
            if not inner.done():
                inner.cancel()

        if blocking and (inner not in done or inner.cancelled()):
            # 同步调用无法中断，仍占着线程：换新识别器与线程后再处理重试
            logger.warning(f"[{tile.tile_id}] 工作者 {worker_id} 同步识别调用被放弃，更换识别器与线程")
            self._renew_recognizer(worker_id)

        if inner not in done:
            self._retry_or_fail(job, f"识别超时 ({self.tile_timeout_sec}s)")
            return
        if inner.cancelled():
            # cancel(row_id) 已拒绝该任务
            return

        try:
            text, confidence = inner.result()
        except RecognizerCrashedError as e:
            if job.crash_requeued:
                self._fail(job, f"识别器崩溃: {e}")
            else:
                logger.warning(f"[{tile.tile_id}] 工作者 {worker_id} 识别器崩溃，切片重新入队: {e}")
                job.crash_requeued = True
                job.attempts -= 1
                self._enqueue(job)
            raise
        except Exception as e:
            self._retry_or_fail(job, f"{type(e).__name__}: {e}")
            return

        duration_ms = (time.perf_counter() - job.started_at) * 1000
        self._complete(job, TileResult.from_tile(
            tile,
            text=text,
            confidence=min(max(confidence, 0.0), 1.0),
            duration_ms=duration_ms,
            attempts=job.attempts,
        ))

    async def _call_recognizer(
        self, worker_id: int, recognizer: IRecognizer, pixels: np.ndarray,
    ) -> tuple[str, float]:
        if inspect.iscoroutinefunction(recognizer.recognize):
            text, confidence = await recognizer.recognize(pixels)
        else:
            executor = self._executors[worker_id]
            loop = asyncio.get_running_loop()
            text, confidence = await loop.run_in_executor(executor, recognizer.recognize, pixels)
        return str(text), float(confidence)

    def _retry_or_fail(self, job: _TileJob, reason: str) -> None:
        if job.cancelled or job.future.done():
            self._forget(job)
            return
        if job.attempts < self.max_attempts:
            logger.warning(f"[{job.tile.tile_id}] 第 {job.attempts} 次识别失败，重试: {reason}")
            self._enqueue(job)
        else:
            self._fail(job, reason)

    def _fail(self, job: _TileJob, reason: str) -> None:
        logger.warning(f"[{job.tile.tile_id}] 识别失败（{job.attempts} 次尝试）: {reason}")
        self._complete(job, TileResult.from_tile(job.tile, error=reason, attempts=job.attempts))

    def _forget(self, job: _TileJob) -> None:
        row_jobs = self._jobs_by_row.get(job.tile.row_id)
        if row_jobs is not None:
            row_jobs.discard(job)
            if not row_jobs:
                del self._jobs_by_row[job.tile.row_id]

    def _complete(self, job: _TileJob, result: TileResult) -> None:
        self._forget(job)
        if job.future.done():
            return
        job.future.set_result(result)
        job.batch.completed += 1
        self._publish(job.batch)

    def _publish(self, batch: _Batch) -> None:
        self.progress.publish(ProgressEvent(
            row_id=batch.row_id,
            stage="dispatching",
            tiles_total=batch.total,
            tiles_complete=batch.completed,
        ))

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "pool_size": self.pool_size,
            "busy": len(self._inflight),
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "deferred": len(self._deferred),
            "restarts": self.restarts,
            "overloaded": self.overloaded,
        }
