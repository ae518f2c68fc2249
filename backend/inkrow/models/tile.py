"""
切片模型 - 笔画几何、切片、单片识别结果、合并结果与缓存条目

Tile / TileResult / MergedResult 仅在一次流水线运行内有效；
CacheEntry 的生命周期独立于任何行。
"""

from __future__ import annotations

from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


class BBox(BaseModel):
    """边界框（画布坐标，y 向下）"""
    xmin: float
    ymin: float
    xmax: float
    ymax: float

    @property
    def width(self) -> float:
        return self.xmax - self.xmin

    @property
    def height(self) -> float:
        return self.ymax - self.ymin

    @property
    def center_x(self) -> float:
        return (self.xmin + self.xmax) / 2

    @property
    def center_y(self) -> float:
        return (self.ymin + self.ymax) / 2

    def intersects(self, other: BBox) -> bool:
        """判断是否相交"""
        return not (
            self.xmax < other.xmin or
            self.xmin > other.xmax or
            self.ymax < other.ymin or
            self.ymin > other.ymax
        )

    @classmethod
    def union(cls, boxes: list[BBox]) -> BBox:
        return cls(
            xmin=min(b.xmin for b in boxes),
            ymin=min(b.ymin for b in boxes),
            xmax=max(b.xmax for b in boxes),
            ymax=max(b.ymax for b in boxes),
        )


class ElementGeometry(BaseModel):
    """笔画元素几何（外部几何提供方给出）"""
    id: str
    x: float
    y: float
    width: float = 0.0
    height: float = 0.0
    # 相对 (x, y) 的折线点；为空时按外接矩形处理
    points: list[tuple[float, float]] = Field(default_factory=list)

    @property
    def bbox(self) -> BBox:
        return BBox(xmin=self.x, ymin=self.y, xmax=self.x + self.width, ymax=self.y + self.height)

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2


class Tile(BaseModel):
    """识别切片（T×T 灰度）"""
    row_id: str
    tile_index: int
    offset_x: float = Field(..., description="相对行内容左缘的偏移")
    offset_y: float
    width: int
    height: int
    overlap_with_previous: int = 0
    origin_x: float = Field(0.0, description="行内容左缘（画布坐标）")
    pixels: np.ndarray = Field(..., repr=False)
    content_hash: str

    # 本片独占区间内墨迹的水平范围（画布坐标），用于合并间距判定
    ink_left: float | None = None
    ink_right: float | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def tile_id(self) -> str:
        return f"{self.row_id}:{self.tile_index}"

    @property
    def canvas_x(self) -> float:
        """切片左缘的画布坐标"""
        return self.origin_x + self.offset_x


class TileResult(BaseModel):
    """单片识别结果（成功或终态失败）"""
    tile_id: str
    row_id: str
    tile_index: int
    text: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    duration_ms: float = 0.0
    cache_hit: bool = False
    error: str | None = None
    attempts: int = 0

    # 几何信息（来自切片）
    offset_x: float = 0.0
    overlap_with_previous: int = 0
    ink_left: float | None = None
    ink_right: float | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def from_tile(cls, tile: Tile, **fields: Any) -> TileResult:
        return cls(
            tile_id=tile.tile_id,
            row_id=tile.row_id,
            tile_index=tile.tile_index,
            offset_x=tile.offset_x,
            overlap_with_previous=tile.overlap_with_previous,
            ink_left=tile.ink_left,
            ink_right=tile.ink_right,
            **fields,
        )


class MergedResult(BaseModel):
    """合并结果"""
    text: str
    is_valid: bool
    warnings: list[str] = Field(default_factory=list)
    tile_count: int = 0


class CacheEntry(BaseModel):
    """切片缓存条目（TTL 自创建起算）"""
    hash: str
    text: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    timestamp: float
