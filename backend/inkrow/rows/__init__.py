"""
行模块 - 行状态机与笔画成员分配

子模块：
- store: 行存储（单激活行约束/激活时间线/快照）
- geometry: 笔画几何索引（几何提供方实现）
"""

from .geometry import StrokeGeometryIndex
from .store import SNAPSHOT_SCHEMA_VERSION, RowStore

__all__ = [
    "RowStore",
    "SNAPSHOT_SCHEMA_VERSION",
    "StrokeGeometryIndex",
]
