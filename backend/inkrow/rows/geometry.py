"""
笔画几何索引 - 保存元素几何并把增/移/删事件路由到行存储

几何提供方接口的内存实现；元素移动时按新的垂直中心重新分配行，
旧行与新行都标记为需要重新识别，并通知监听方（通常是流水线编排器）。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

from ..interfaces import IStrokeGeometryProvider
from ..models import ElementGeometry
from .store import RowStore

logger = logging.getLogger(__name__)

DirtyListener = Callable[[str], None]


class StrokeGeometryIndex(IStrokeGeometryProvider):
    """元素几何索引"""

    def __init__(self, store: RowStore, listener: DirtyListener | None = None):
        self.store = store
        self.listener = listener
        self._elements: dict[str, ElementGeometry] = {}
        self._lock = threading.Lock()

    def get_geometry(self, element_ids: Iterable[str]) -> list[ElementGeometry]:
        with self._lock:
            return [self._elements[eid] for eid in element_ids if eid in self._elements]

    def __len__(self) -> int:
        return len(self._elements)

    def add(self, element: ElementGeometry) -> set[str]:
        """新增元素（几何非法时抛 InvalidGeometryError，索引不变）"""
        dirty = self.store.assign_element(element)
        with self._lock:
            self._elements[element.id] = element
        return self._notify(dirty)

    def move(self, element: ElementGeometry) -> set[str]:
        """元素移动/变形：按新的垂直中心重新分配，旧行与新行都标记"""
        dirty = self.store.assign_element(element)
        with self._lock:
            self._elements[element.id] = element
        return self._notify(dirty)

    def delete(self, element_id: str) -> set[str]:
        """删除元素"""
        with self._lock:
            self._elements.pop(element_id, None)
        return self._notify(self.store.remove_element(element_id))

    def _notify(self, dirty: set[str]) -> set[str]:
        if self.listener is not None:
            for row_id in sorted(dirty):
                self.listener(row_id)
        return dirty
