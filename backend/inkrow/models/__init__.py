"""
数据模型层 - 定义系统核心数据结构

所有模块通过这些模型交互，实现解耦：
- Row / ActivationEvent: 行状态与激活时间线
- RowStoreSnapshot: 版本化持久化快照
- ElementGeometry / BBox: 笔画几何
- Tile / TileResult / MergedResult: 单次流水线内的切片与识别结果
- CacheEntry: 切片缓存条目
"""

from .row import (
    ActivationEvent,
    OcrStatus,
    Row,
    RowStoreSettings,
    RowStoreSnapshot,
    ValidationStatus,
    make_row_id,
)
from .tile import BBox, CacheEntry, ElementGeometry, MergedResult, Tile, TileResult

__all__ = [
    "Row",
    "OcrStatus",
    "ValidationStatus",
    "ActivationEvent",
    "RowStoreSettings",
    "RowStoreSnapshot",
    "make_row_id",
    "BBox",
    "ElementGeometry",
    "Tile",
    "TileResult",
    "MergedResult",
    "CacheEntry",
]
