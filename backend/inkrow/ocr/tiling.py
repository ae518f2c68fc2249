"""
切片提取器 - 行外接框 + 笔画几何 → 有序重叠切片

规则：
- 行无成员元素：返回 []（合法空状态）
- 有元素但外接框宽/高 <= 0：抛 InvalidGeometryError
- 宽度 <= T：单片，水平居中/裁切到 T×T
- 否则 stride = T - O，tile_count = ceil((width - O) / stride)，
  第 i 片 offset_x = i * stride（首片 overlap=0，其余 overlap=O）

像素由外部光栅化器提供，这里统一转为单通道灰度并计算内容哈希（仅作缓存键）。

测试要点：
- test_plan_three_tiles: 800/64/384 → [0, 320, 640]
- test_single_tile: 宽度小于 T
- test_empty_row / test_zero_width: 空行与损坏几何
"""

from __future__ import annotations

import hashlib
import logging
import math
import time

import numpy as np

from ..config import RuntimeConfig, get_config
from ..interfaces import InvalidGeometryError, IRasterizer
from ..models import BBox, ElementGeometry, Row, Tile

logger = logging.getLogger(__name__)

_LUMA = np.array([0.299, 0.587, 0.114])


def plan_tiles(width: float, tile_size: int, overlap: int) -> list[tuple[float, int]]:
    """
    计算切片布局

    Returns:
        [(offset_x, overlap_with_previous), ...]
    """
    if width <= tile_size:
        return [(0.0, 0)]
    stride = tile_size - overlap
    count = math.ceil((width - overlap) / stride)
    return [(float(i * stride), 0 if i == 0 else overlap) for i in range(count)]


def to_grayscale(pixels: np.ndarray) -> np.ndarray:
    """转为 uint8 单通道灰度（RGBA 先按 alpha 合成到白底）"""
    arr = np.asarray(pixels)
    if arr.dtype.kind == "f":
        scale = 255.0 if arr.size and float(arr.max()) <= 1.0 else 1.0
        arr = arr.astype(np.float64) * scale
    else:
        arr = arr.astype(np.float64)

    if arr.ndim == 3:
        channels = arr.shape[2]
        if channels == 4:
            alpha = arr[..., 3:4] / 255.0
            arr = arr[..., :3] * alpha + 255.0 * (1.0 - alpha)
        elif channels == 1:
            arr = arr[..., :1].repeat(3, axis=2)
        elif channels != 3:
            raise ValueError(f"不支持的通道数: {channels}")
        arr = arr @ _LUMA
    elif arr.ndim != 2:
        raise ValueError(f"不支持的像素维度: {arr.shape}")

    return np.clip(np.rint(arr), 0, 255).astype(np.uint8)


def fit_to_tile(gray: np.ndarray, size: int) -> np.ndarray:
    """居中裁切/白色填充到 size×size"""
    h, w = gray.shape
    if h == size and w == size:
        return gray
    out = np.full((size, size), 255, dtype=np.uint8)
    src_y = max(0, (h - size) // 2)
    src_x = max(0, (w - size) // 2)
    dst_y = max(0, (size - h) // 2)
    dst_x = max(0, (size - w) // 2)
    ch = min(h, size)
    cw = min(w, size)
    out[dst_y:dst_y + ch, dst_x:dst_x + cw] = gray[src_y:src_y + ch, src_x:src_x + cw]
    return out


def content_hash(gray: np.ndarray) -> str:
    """64位非加密用途内容哈希：相同像素 ⇒ 相同哈希"""
    h = hashlib.blake2b(digest_size=8)
    h.update(f"{gray.shape[0]}x{gray.shape[1]}".encode("ascii"))
    h.update(np.ascontiguousarray(gray).tobytes())
    return h.hexdigest()


class TileExtractor:
    """切片提取器（纯函数语义，无内部状态变更）"""

    def __init__(self, rasterizer: IRasterizer, config: RuntimeConfig | None = None):
        cfg = (config or get_config()).tiling
        self.rasterizer = rasterizer
        self.tile_size = cfg.tile_size
        self.overlap = cfg.overlap
        self.budget_ms = cfg.budget_ms
        self.warn_ratio = cfg.warn_ratio

    def extract(self, row: Row, elements: list[ElementGeometry]) -> list[Tile]:
        """
        提取行切片

        Args:
            row: 行记录（读取成员与垂直范围）
            elements: 笔画几何（只使用属于该行的元素）

        Returns:
            按 offset_x 严格递增的切片列表

        Raises:
            InvalidGeometryError: 外接框宽或高非正
        """
        start = time.perf_counter()

        members = [el for el in elements if el.id in row.element_ids]
        if not members:
            logger.debug(f"[{row.id}] 无成员元素，跳过切片")
            return []

        bbox = BBox.union([el.bbox for el in members])
        if not (bbox.width > 0 and bbox.height > 0):
            raise InvalidGeometryError(
                f"[{row.id}] 外接框非法: width={bbox.width}, height={bbox.height}"
            )

        T = self.tile_size
        plan = plan_tiles(bbox.width, T, self.overlap)
        single = len(plan) == 1
        y0 = row.y_center - T / 2

        tiles: list[Tile] = []
        for index, (offset_x, overlap_prev) in enumerate(plan):
            if single:
                # 水平居中
                offset_x = (bbox.width - T) / 2
            left = bbox.xmin + offset_x
            region = BBox(xmin=left, ymin=y0, xmax=left + T, ymax=y0 + T)

            in_region = [el for el in members if el.bbox.intersects(region)]
            gray = fit_to_tile(to_grayscale(self.rasterizer.rasterize(region, in_region, T)), T)

            own = members if single else self._own_elements(members, left + overlap_prev, left + T)
            ink_left = min((el.x for el in own), default=None)
            ink_right = max((el.x + el.width for el in own), default=None)

            tiles.append(Tile(
                row_id=row.id,
                tile_index=index,
                offset_x=offset_x,
                offset_y=y0,
                width=T,
                height=T,
                overlap_with_previous=overlap_prev,
                origin_x=bbox.xmin,
                pixels=gray,
                content_hash=content_hash(gray),
                ink_left=ink_left,
                ink_right=ink_right,
            ))

        elapsed_ms = (time.perf_counter() - start) * 1000
        if elapsed_ms >= self.budget_ms * self.warn_ratio:
            logger.warning(
                f"[{row.id}] 切片耗时 {elapsed_ms:.1f}ms 接近预算 {self.budget_ms:.0f}ms "
                f"({len(tiles)} 片)"
            )
        else:
            logger.debug(f"[{row.id}] 生成 {len(tiles)} 片, 耗时 {elapsed_ms:.1f}ms")
        return tiles

    @staticmethod
    def _own_elements(members: list[ElementGeometry], lo: float, hi: float) -> list[ElementGeometry]:
        """中心落在本片独占区间 [lo, hi) 的元素"""
        return [el for el in members if lo <= el.center_x < hi]
