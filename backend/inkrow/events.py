"""
进度事件流 - 非阻塞广播 {row_id, stage, tiles_total, tiles_complete, percent}

订阅方各自持有有界队列；队列满时丢弃最旧事件，发布方永不阻塞。
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass


@dataclass(frozen=True)
class ProgressEvent:
    """进度事件"""
    row_id: str
    stage: str
    tiles_total: int = 0
    tiles_complete: int = 0
    # 行级整体进度（0-100），工作池事件不填
    percent: int = 0


class ProgressBus:
    """进度广播"""

    def __init__(self, maxsize: int = 256):
        self.maxsize = maxsize
        self._subscribers: list[asyncio.Queue[ProgressEvent]] = []

    def subscribe(self) -> asyncio.Queue[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ProgressEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: ProgressEvent) -> None:
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
