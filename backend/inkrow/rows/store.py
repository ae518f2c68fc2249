"""
行存储 - 行记录、成员分配、单激活行约束与激活时间线

职责：
1. 分配确定性行ID（row-{n}，单调递增，不复用、不重排）
2. 维护单激活行约束与追加写激活时间线
3. 按元素垂直中心分配行成员
4. 版本化写回识别结果（后写胜出，过期写丢弃）
5. 版本化快照序列化/反序列化

并发：所有变更在同一把可重入锁下完成，setActive/updateRow 与流水线写回互斥。

测试要点：
- test_set_active: 激活切换与时间线
- test_create_row_insert: 插入行时的范围平移
- test_update_row_active: isActive 经由 setActive 语义
- test_round_trip: 快照往返
"""

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime
from typing import Any, Iterable

from ..config import RuntimeConfig, get_config
from ..interfaces import (
    InvalidGeometryError,
    RowNotFoundError,
    SchemaVersionMismatchError,
    VersionConflictError,
)
from ..models import (
    ActivationEvent,
    ElementGeometry,
    OcrStatus,
    Row,
    RowStoreSettings,
    RowStoreSnapshot,
    ValidationStatus,
    make_row_id,
)

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA_VERSION = 1

# 不允许通过 update_row 修改的字段：
# 身份、垂直范围与成员（经 create_row / assign_element 维护）、版本号（经写回维护）
_IMMUTABLE_FIELDS = frozenset({
    "id", "index",
    "y_start", "y_end",
    "element_ids",
    "content_version", "ocr_version",
})


class RowStore:
    """行存储实现（显式持有，无全局实例）"""

    def __init__(self, config: RuntimeConfig | None = None, *, settings: RowStoreSettings | None = None):
        if settings is None:
            rows_cfg = (config or get_config()).rows
            settings = RowStoreSettings(row_height=rows_cfg.row_height, origin_y=rows_cfg.origin_y)
        self.settings = settings
        self._lock = threading.RLock()

        # 按垂直位置排列的行
        self._rows: dict[str, Row] = {}
        self._order: list[str] = []
        self._element_to_row: dict[str, str] = {}

        self._active_row_id: str | None = None
        self._timeline: list[ActivationEvent] = []
        self._next_index = 0

    @property
    def row_height(self) -> float:
        return self.settings.row_height

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def get_row(self, row_id: str) -> Row:
        """获取行（返回副本）"""
        with self._lock:
            return self._require(row_id).model_copy(deep=True)

    def has_row(self, row_id: str) -> bool:
        with self._lock:
            return row_id in self._rows

    def list_rows(self) -> list[Row]:
        """按垂直位置列出所有行（副本）"""
        with self._lock:
            return [self._rows[rid].model_copy(deep=True) for rid in self._order]

    @property
    def active_row_id(self) -> str | None:
        with self._lock:
            return self._active_row_id

    def get_active_row(self) -> Row | None:
        with self._lock:
            if self._active_row_id is None:
                return None
            return self.get_row(self._active_row_id)

    def get_activation_timeline(self) -> tuple[ActivationEvent, ...]:
        """按时间顺序返回激活时间线的不可变副本"""
        with self._lock:
            return tuple(e.model_copy() for e in self._timeline)

    def element_row(self, element_id: str) -> str | None:
        with self._lock:
            return self._element_to_row.get(element_id)

    def rows_in_viewport(self, y: float, height: float) -> list[Row]:
        """与垂直窗口 [y, y+height) 相交的行"""
        bottom = y + height
        with self._lock:
            return [
                self._rows[rid].model_copy(deep=True)
                for rid in self._order
                if self._rows[rid].y_start < bottom and self._rows[rid].y_end > y
            ]

    # ------------------------------------------------------------------
    # 行创建
    # ------------------------------------------------------------------

    def create_row(self, after_row_id: str | None = None) -> str:
        """
        创建新行（不自动激活）

        Args:
            after_row_id: 指定时插入到该行之后，后续行整体下移一个行高；
                          否则追加到最后一行之后

        Returns:
            新行ID
        """
        with self._lock:
            if after_row_id is None:
                y_start = self._rows[self._order[-1]].y_end if self._order else self.settings.origin_y
                position = len(self._order)
            else:
                anchor = self._require(after_row_id)
                y_start = anchor.y_end
                position = self._order.index(after_row_id) + 1
                for rid in self._order[position:]:
                    shifted = self._rows[rid]
                    shifted.y_start += self.row_height
                    shifted.y_end += self.row_height
                    shifted.touch()

            row = self._new_row(y_start)
            self._order.insert(position, row.id)
            logger.info(f"创建行 {row.id}: y=[{row.y_start}, {row.y_end}) after={after_row_id}")
            return row.id

    def row_for_y(self, y: float) -> str:
        """
        返回 [y_start, y_end) 包含 y 的行ID

        y 位于最后一行之下时按序追加行；位于首行之上时归入首行。

        Raises:
            InvalidGeometryError: y 不是有限数（状态保持不变）
        """
        if not math.isfinite(y):
            raise InvalidGeometryError(f"垂直坐标非法: y={y}")
        with self._lock:
            if not self._order:
                self.create_row()
            first = self._rows[self._order[0]]
            if y < first.y_start:
                return first.id
            for rid in self._order:
                if self._rows[rid].contains_y(y):
                    return rid

            # 位于最后一行之下：直接算出需要追加的行数
            last = self._rows[self._order[-1]]
            missing = math.floor((y - last.y_end) / self.row_height) + 1
            for _ in range(missing):
                self.create_row()
            return self._order[-1]

    # ------------------------------------------------------------------
    # 激活
    # ------------------------------------------------------------------

    def set_active(self, row_id: str) -> None:
        """
        激活行：关闭当前打开的激活事件并为目标行打开新事件

        Raises:
            RowNotFoundError: 行不存在（状态保持不变）
        """
        with self._lock:
            row = self._require(row_id)
            if self._active_row_id == row_id:
                return

            now = self._next_timestamp()
            previous = self._active_row_id
            self._close_open_event(now)

            self._active_row_id = row_id
            row.is_active = True
            row.last_activated_at = now
            row.touch()
            self._timeline.append(ActivationEvent(row_id=row_id, activated_at=now))

            logger.debug(f"激活行切换: {previous} -> {row_id} (时间线 {len(self._timeline)} 条)")

    def deactivate(self) -> None:
        """取消激活（关闭打开的激活事件，不打开新事件）"""
        with self._lock:
            if self._active_row_id is None:
                return
            self._close_open_event(self._next_timestamp())
            self._active_row_id = None

    # ------------------------------------------------------------------
    # 更新
    # ------------------------------------------------------------------

    def update_row(self, row_id: str, **fields: Any) -> Row:
        """
        合并更新行字段

        is_active 经由 set_active/deactivate 语义处理，以保持单激活行约束。

        Raises:
            RowNotFoundError: 行不存在
            ValueError: 尝试修改身份、垂直范围、成员、版本号或未知字段
        """
        with self._lock:
            row = self._require(row_id)

            illegal = _IMMUTABLE_FIELDS & fields.keys()
            if illegal:
                raise ValueError(f"不可修改字段: {sorted(illegal)}")
            unknown = set(fields) - set(Row.model_fields)
            if unknown:
                raise ValueError(f"未知字段: {sorted(unknown)}")

            is_active = fields.pop("is_active", None)
            if fields:
                merged = row.model_dump()
                merged.update(fields)
                updated = Row.model_validate(merged)
                updated.is_active = row.is_active
                updated.touch()
                self._rows[row_id] = updated
                row = updated

            if is_active is True:
                self.set_active(row_id)
            elif is_active is False and self._active_row_id == row_id:
                self.deactivate()

            return row.model_copy(deep=True)

    # ------------------------------------------------------------------
    # 成员分配（按元素垂直中心）
    # ------------------------------------------------------------------

    def assign_element(self, element: ElementGeometry) -> set[str]:
        """
        按垂直中心把元素分配到行

        Returns:
            需要重新识别的行ID（旧行与新行）

        Raises:
            InvalidGeometryError: 垂直中心不是有限数（成员关系保持不变）
        """
        with self._lock:
            target_id = self.row_for_y(element.center_y)
            previous_id = self._element_to_row.get(element.id)

            dirty = {target_id}
            if previous_id is not None and previous_id != target_id:
                self._detach(element.id, previous_id)
                dirty.add(previous_id)

            self._rows[target_id].element_ids.add(element.id)
            self._element_to_row[element.id] = target_id
            for rid in dirty:
                self._rows[rid].mark_dirty()

            logger.debug(f"元素 {element.id} 分配到 {target_id} (center_y={element.center_y:.1f})")
            return dirty

    def remove_element(self, element_id: str) -> set[str]:
        """移除元素成员关系，返回受影响的行"""
        with self._lock:
            previous_id = self._element_to_row.pop(element_id, None)
            if previous_id is None:
                return set()
            self._detach(element_id, previous_id)
            self._rows[previous_id].mark_dirty()
            return {previous_id}

    # ------------------------------------------------------------------
    # 流水线写回
    # ------------------------------------------------------------------

    def mark_processing(self, row_id: str, version: int | None = None) -> None:
        """
        标记识别中

        Raises:
            VersionConflictError: 指定的 version 不新于已写回版本
        """
        with self._lock:
            row = self._require(row_id) if version is None else self._check_version(row_id, version)
            row.ocr_status = OcrStatus.PROCESSING
            row.error_message = None
            row.touch()

    def commit_transcription(
        self,
        row_id: str,
        version: int,
        text: str,
        warnings: Iterable[str] = (),
        is_valid: bool = True,
    ) -> None:
        """
        原子写回识别结果，并把下游校验重置为 pending

        Raises:
            RowNotFoundError: 行不存在
            VersionConflictError: version 不新于已写回版本
        """
        with self._lock:
            row = self._check_version(row_id, version)
            row.transcription = text
            row.transcription_valid = is_valid
            row.ocr_status = OcrStatus.COMPLETE
            row.ocr_warnings = list(warnings)
            row.error_message = None
            row.validation_status = ValidationStatus.PENDING
            row.ocr_version = version
            row.touch()

    def commit_error(self, row_id: str, version: int, message: str) -> None:
        """写回失败状态，笔画与成员关系保持不变"""
        with self._lock:
            row = self._check_version(row_id, version)
            row.ocr_status = OcrStatus.ERROR
            row.error_message = message
            row.ocr_version = version
            row.touch()

    # ------------------------------------------------------------------
    # 快照
    # ------------------------------------------------------------------

    def serialize(self) -> dict[str, Any]:
        """导出版本化快照（JSON 兼容字典）"""
        with self._lock:
            snapshot = RowStoreSnapshot(
                schema_version=SNAPSHOT_SCHEMA_VERSION,
                config=self.settings.model_copy(),
                rows=[self._rows[rid] for rid in self._order],
                active_row_id=self._active_row_id,
                timeline=list(self._timeline),
                element_to_row=dict(self._element_to_row),
                next_index=self._next_index,
            )
            return snapshot.model_dump(mode="json")

    @classmethod
    def deserialize(cls, data: dict[str, Any]) -> RowStore:
        """
        从快照恢复

        Raises:
            SchemaVersionMismatchError: 快照版本与当前不一致
            ValueError: 快照内容违反单激活行约束或成员引用不存在的行
        """
        version = data.get("schema_version") if isinstance(data, dict) else None
        if version != SNAPSHOT_SCHEMA_VERSION:
            raise SchemaVersionMismatchError(
                f"快照版本不匹配: {version!r} != {SNAPSHOT_SCHEMA_VERSION}"
            )

        snapshot = RowStoreSnapshot.model_validate(data)
        cls._check_snapshot(snapshot)
        store = cls(settings=snapshot.config)
        for row in snapshot.rows:
            store._rows[row.id] = row
            store._order.append(row.id)
        store._active_row_id = snapshot.active_row_id
        store._timeline = list(snapshot.timeline)
        store._element_to_row = dict(snapshot.element_to_row)
        store._next_index = max(
            snapshot.next_index, max((r.index + 1 for r in snapshot.rows), default=0)
        )

        logger.info(
            f"快照已恢复: {len(store._rows)} 行, active={store._active_row_id}, "
            f"时间线 {len(store._timeline)} 条"
        )
        return store

    @staticmethod
    def _check_snapshot(snapshot: RowStoreSnapshot) -> None:
        """激活行、is_active 标记与打开的激活事件三者必须一致"""
        row_ids = {row.id for row in snapshot.rows}
        active = snapshot.active_row_id
        if active is not None and active not in row_ids:
            raise ValueError(f"快照激活行不存在: {active}")

        flagged = sorted(row.id for row in snapshot.rows if row.is_active)
        expected = [active] if active is not None else []
        if flagged != expected:
            raise ValueError(f"快照激活标记不一致: active={active}, is_active={flagged}")

        open_events = [i for i, e in enumerate(snapshot.timeline) if e.is_open]
        if active is None:
            if open_events:
                raise ValueError(f"快照无激活行但存在 {len(open_events)} 个打开的激活事件")
        elif open_events != [len(snapshot.timeline) - 1] or snapshot.timeline[-1].row_id != active:
            raise ValueError(f"快照激活时间线不一致: active={active}, 打开事件位置={open_events}")

        dangling = sorted(eid for eid, rid in snapshot.element_to_row.items() if rid not in row_ids)
        if dangling:
            raise ValueError(f"快照成员引用不存在的行: {dangling}")

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    def _require(self, row_id: str) -> Row:
        row = self._rows.get(row_id)
        if row is None:
            raise RowNotFoundError(row_id)
        return row

    def _new_row(self, y_start: float) -> Row:
        index = self._next_index
        self._next_index += 1
        row = Row(
            id=make_row_id(index),
            index=index,
            y_start=y_start,
            y_end=y_start + self.row_height,
        )
        self._rows[row.id] = row
        return row

    def _detach(self, element_id: str, row_id: str) -> None:
        row = self._rows.get(row_id)
        if row is not None:
            row.element_ids.discard(element_id)

    def _close_open_event(self, now: datetime) -> None:
        if self._active_row_id is not None:
            previous = self._rows.get(self._active_row_id)
            if previous is not None:
                previous.is_active = False
                previous.touch()
        for event in reversed(self._timeline):
            if event.is_open:
                event.deactivated_at = now
                break

    def _next_timestamp(self) -> datetime:
        """时间线时间戳单调不减"""
        now = datetime.now()
        if self._timeline:
            last = self._timeline[-1]
            latest = last.deactivated_at or last.activated_at
            if now < latest:
                now = latest
        return now

    def _check_version(self, row_id: str, version: int) -> Row:
        row = self._require(row_id)
        if version <= row.ocr_version:
            raise VersionConflictError(row_id, version, row.ocr_version)
        return row
