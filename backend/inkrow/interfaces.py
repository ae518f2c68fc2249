"""
模块接口契约 - 定义外部协作方的抽象接口与异常分类

设计原则：
1. 模块间通过接口通信，不直接依赖具体实现
2. 每个接口定义清晰的输入输出类型
3. 便于单元测试和mock替换

使用方式：
    from inkrow.interfaces import IRecognizer

    class MyRecognizer(IRecognizer):
        async def recognize(self, pixels: np.ndarray) -> tuple[str, float]:
            ...
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    import numpy as np

    from .models import BBox, ElementGeometry


# ============================================================================
# 外部协作方接口
# ============================================================================

class IStrokeGeometryProvider(ABC):
    """笔画几何提供方 - 按元素ID给出当前几何"""

    @abstractmethod
    def get_geometry(self, element_ids: Iterable[str]) -> list[ElementGeometry]:
        """
        获取元素几何

        Args:
            element_ids: 行成员元素ID

        Returns:
            仍存在的元素几何（已删除的元素静默跳过）
        """
        ...


class IRasterizer(ABC):
    """光栅化器接口 - 把矩形区域内的笔画渲染为灰度像素"""

    @abstractmethod
    def rasterize(
        self,
        region: BBox,
        elements: list[ElementGeometry],
        size: int,
    ) -> np.ndarray:
        """
        渲染区域

        Args:
            region: 画布坐标区域（宽高均为 size）
            elements: 参与渲染的元素
            size: 输出边长 T

        Returns:
            uint8 像素数组，(T, T) 灰度或 (T, T, 3|4) 彩色
        """
        ...


class IRecognizer(ABC):
    """识别器接口 - 单片图像到表达式文本"""

    @abstractmethod
    def recognize(self, pixels: np.ndarray) -> Any:
        """
        识别单片

        可实现为普通函数（在线程池中执行）或协程函数。

        Returns:
            (text, confidence)

        Raises:
            RecognizerCrashedError: 识别器进程/模型已失效，需要重启
        """
        ...


class ISyntaxValidator(ABC):
    """语法校验器接口（仅诊断）"""

    @abstractmethod
    def validate(self, text: str) -> list[str]:
        """返回问题描述列表，空列表表示通过"""
        ...


# ============================================================================
# 异常定义
# ============================================================================

class InkRowError(Exception):
    """基础异常"""
    pass


class RowNotFoundError(InkRowError, KeyError):
    """行不存在（硬错误）"""

    def __init__(self, row_id: str):
        super().__init__(row_id)
        self.row_id = row_id

    def __str__(self) -> str:
        return f"行不存在: {self.row_id}"


class InvalidGeometryError(InkRowError):
    """元素存在但外接框宽或高非正（硬错误，区别于合法的空行）"""
    pass


class WorkerFailureError(InkRowError):
    """单片识别在重试后仍失败（软错误，按片处理）"""
    pass


class RecognizerCrashedError(WorkerFailureError):
    """识别器崩溃，工作者需重启"""
    pass


class QueueOverloadedError(InkRowError):
    """队列已满，任务延后（软错误，仅作信号）"""
    pass


class CacheUnavailableError(InkRowError):
    """缓存存储不可用，降级为直通（软错误）"""
    pass


class StorageQuotaExceededError(InkRowError):
    """缓存容量不足，触发淘汰（非致命）"""
    pass


class VersionConflictError(InkRowError):
    """过期写回（丢弃并记录）"""

    def __init__(self, row_id: str, version: int, current: int):
        super().__init__(f"过期写回: {row_id} version={version} <= current={current}")
        self.row_id = row_id
        self.version = version
        self.current = current


class SchemaVersionMismatchError(InkRowError):
    """快照版本不匹配（硬错误，不做静默迁移）"""
    pass


class PipelineCancelledError(InkRowError):
    """该行的切片任务已被取消"""

    def __init__(self, row_id: str):
        super().__init__(f"行任务已取消: {row_id}")
        self.row_id = row_id
