"""
行模型 - 定义行状态、激活事件与快照结构

行（Row）是画布上固定高度的水平带，承载一行手写数学表达式。
RowStore 拥有 Row 与 ActivationEvent 的生命周期。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

ROW_ID_PREFIX = "row-"


def make_row_id(index: int) -> str:
    """按序号生成行ID（row-{n}）"""
    return f"{ROW_ID_PREFIX}{index}"


class OcrStatus(str, Enum):
    """识别状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class ValidationStatus(str, Enum):
    """下游等价校验状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    VALIDATED = "validated"
    INVALID = "invalid"
    ERROR = "error"


class Row(BaseModel):
    """行实体"""
    id: str = Field(..., description="row-{n}，单调分配，永不复用")
    index: int = Field(..., description="分配序号（与id对应，不随插入重排）")

    # 垂直范围 [y_start, y_end)
    y_start: float
    y_end: float

    # 成员笔画元素
    element_ids: set[str] = Field(default_factory=set)

    # 状态
    is_active: bool = False
    ocr_status: OcrStatus = OcrStatus.PENDING
    validation_status: ValidationStatus = ValidationStatus.PENDING
    transcription: str | None = None
    # 合并结果是否完整且通过语法校验（尽力而为的文本为 False）
    transcription_valid: bool | None = None
    ocr_warnings: list[str] = Field(default_factory=list)
    error_message: str | None = None

    # 版本：内容变更计数 / 最近一次写回的流水线版本
    content_version: int = 0
    ocr_version: int = 0

    # 时间戳
    last_activated_at: datetime | None = None
    last_modified: datetime = Field(default_factory=datetime.now)

    @property
    def height(self) -> float:
        return self.y_end - self.y_start

    @property
    def y_center(self) -> float:
        return (self.y_start + self.y_end) / 2

    def contains_y(self, y: float) -> bool:
        """y 是否落在 [y_start, y_end) 内"""
        return self.y_start <= y < self.y_end

    def touch(self) -> None:
        self.last_modified = datetime.now()

    def mark_dirty(self) -> None:
        """成员变化：重置识别状态并递增内容版本"""
        self.content_version += 1
        self.ocr_status = OcrStatus.PENDING
        self.touch()


class ActivationEvent(BaseModel):
    """激活事件（追加写，仅最后一条可处于打开状态）"""
    row_id: str
    activated_at: datetime
    deactivated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.deactivated_at is None


class RowStoreSettings(BaseModel):
    """随快照持久化的行配置"""
    row_height: float = 384.0
    origin_y: float = 0.0


class RowStoreSnapshot(BaseModel):
    """RowStore 版本化快照（外部持久化契约）"""
    schema_version: int
    config: RowStoreSettings
    rows: list[Row] = Field(default_factory=list)
    active_row_id: str | None = None
    timeline: list[ActivationEvent] = Field(default_factory=list)
    element_to_row: dict[str, str] = Field(default_factory=dict)
    next_index: int = 0
