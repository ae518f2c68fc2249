"""
pytest 配置与公共 fixtures

使用方式：
    def test_something(store, make_tile):
        row_id = store.create_row()
        tile = make_tile(row_id, 0, key=1)
"""

from __future__ import annotations

import asyncio
import tempfile
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Callable, Generator

import numpy as np
import pytest

from inkrow.config import (
    MergeConfig,
    PipelineConfig,
    RuntimeConfig,
    WorkerConfig,
)
from inkrow.interfaces import IRecognizer, RecognizerCrashedError
from inkrow.models import ElementGeometry, Tile
from inkrow.ocr import MemoryCacheBackend, PillowRasterizer, TileCache
from inkrow.rows import RowStore, StrokeGeometryIndex


# ============================================================================
# 配置 Fixtures
# ============================================================================

@pytest.fixture
def runtime_config() -> RuntimeConfig:
    """运行期配置（测试用短超时/短防抖）"""
    return RuntimeConfig(
        workers=WorkerConfig(pool_size=2, queue_capacity=8, tile_timeout_sec=0.2, max_attempts=2),
        merge=MergeConfig(gap_single=10.0, gap_double=30.0),
        pipeline=PipelineConfig(debounce_sec=0.05, budget_sec=5.0, max_overruns=3, backoff_sec=30.0),
    )


# ============================================================================
# 行与几何 Fixtures
# ============================================================================

@pytest.fixture
def store(runtime_config: RuntimeConfig) -> RowStore:
    """空行存储（行高 384）"""
    return RowStore(runtime_config)


@pytest.fixture
def geometry(store: RowStore) -> StrokeGeometryIndex:
    """笔画几何索引"""
    return StrokeGeometryIndex(store)


@pytest.fixture
def rasterizer() -> PillowRasterizer:
    return PillowRasterizer()


@pytest.fixture
def cache(runtime_config: RuntimeConfig) -> TileCache:
    """内存切片缓存"""
    return TileCache(MemoryCacheBackend(capacity=64), runtime_config)


def element(eid: str, x: float, y: float, width: float = 40.0, height: float = 40.0) -> ElementGeometry:
    """构造带对角折线的元素"""
    return ElementGeometry(
        id=eid, x=x, y=y, width=width, height=height,
        points=[(0.0, 0.0), (width, height)],
    )


@pytest.fixture
def make_element() -> Callable[..., ElementGeometry]:
    return element


# ============================================================================
# 切片与识别器 Fixtures
# ============================================================================

@pytest.fixture
def make_tile() -> Callable[..., Tile]:
    """
    构造切片：像素全部填充 key，识别器据此区分切片

    make_tile("row-0", 1, key=7)
    """
    def _make(row_id: str, index: int, key: int, *, ink_left: float | None = None,
              ink_right: float | None = None) -> Tile:
        return Tile(
            row_id=row_id,
            tile_index=index,
            offset_x=float(index * 320),
            offset_y=0.0,
            width=4,
            height=4,
            overlap_with_previous=0 if index == 0 else 64,
            pixels=np.full((4, 4), key, dtype=np.uint8),
            content_hash=f"hash-{row_id}-{key}",
            ink_left=ink_left,
            ink_right=ink_right,
        )
    return _make


class ScriptedRecognizer(IRecognizer):
    """
    按脚本执行的识别器

    plan[key] 给出第 n 次调用的动作：ok / slow / fail / crash，
    超出脚本长度后一律 ok（返回 "t{key}"）。
    """

    def __init__(self, plan: dict[int, list[str]], calls: Counter, slow_sec: float = 5.0):
        self.plan = plan
        self.calls = calls
        self.slow_sec = slow_sec

    async def recognize(self, pixels: np.ndarray) -> tuple[str, float]:
        key = int(pixels.flat[0])
        attempt = self.calls[key]
        self.calls[key] += 1
        script = self.plan.get(key, [])
        action = script[attempt] if attempt < len(script) else "ok"

        if action == "slow":
            await asyncio.sleep(self.slow_sec)
        elif action == "fail":
            raise RuntimeError(f"模拟识别失败 key={key}")
        elif action == "crash":
            raise RecognizerCrashedError(f"模拟识别器崩溃 key={key}")
        return f"t{key}", 0.9


class ConstantRecognizer(IRecognizer):
    """同步识别器：总是返回固定文本（在线程池中执行）"""

    def __init__(self, text: str, calls: Counter):
        self.text = text
        self.calls = calls

    def recognize(self, pixels: np.ndarray) -> tuple[str, float]:
        self.calls["total"] += 1
        return self.text, 0.8


class HangingRecognizer(IRecognizer):
    """同步识别器：全局前 hang_calls 次调用阻塞 hang_sec（模拟卡住的推理线程）"""

    def __init__(self, calls: Counter, lock: threading.Lock, hang_sec: float, hang_calls: int):
        self.calls = calls
        self.lock = lock
        self.hang_sec = hang_sec
        self.hang_calls = hang_calls

    def recognize(self, pixels: np.ndarray) -> tuple[str, float]:
        with self.lock:
            self.calls["total"] += 1
            nth = self.calls["total"]
        if nth <= self.hang_calls:
            time.sleep(self.hang_sec)
        return "h", 0.7


@pytest.fixture
def scripted_factory() -> Callable[..., tuple[Callable[[], IRecognizer], Counter]]:
    """
    构造 (recognizer_factory, calls)

    factory, calls = scripted_factory({1: ["slow"]})
    """
    def _build(plan: dict[int, list[str]] | None = None, slow_sec: float = 5.0):
        calls: Counter = Counter()
        created: list[ScriptedRecognizer] = []

        def factory() -> IRecognizer:
            recognizer = ScriptedRecognizer(plan or {}, calls, slow_sec)
            created.append(recognizer)
            return recognizer

        factory.created = created  # type: ignore[attr-defined]
        return factory, calls
    return _build


@pytest.fixture
def constant_factory() -> Callable[..., tuple[Callable[[], IRecognizer], Counter]]:
    def _build(text: str = "x+1"):
        calls: Counter = Counter()
        return (lambda: ConstantRecognizer(text, calls)), calls
    return _build


@pytest.fixture
def hanging_factory() -> Callable[..., tuple[Callable[[], IRecognizer], Counter]]:
    """
    构造 (recognizer_factory, calls)，factory.created 记录创建的识别器

    factory, calls = hanging_factory(hang_sec=0.6)
    """
    def _build(hang_sec: float = 0.6, hang_calls: int = 1):
        calls: Counter = Counter()
        lock = threading.Lock()
        created: list[HangingRecognizer] = []

        def factory() -> IRecognizer:
            recognizer = HangingRecognizer(calls, lock, hang_sec, hang_calls)
            created.append(recognizer)
            return recognizer

        factory.created = created  # type: ignore[attr-defined]
        return factory, calls
    return _build


# ============================================================================
# 文件 Fixtures
# ============================================================================

@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """临时目录"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
