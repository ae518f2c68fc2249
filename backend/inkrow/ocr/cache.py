"""
切片缓存 - 内容哈希 → 识别结果，TTL + 淘汰

职责：
1. lookup: 命中返回条目；过期或结构损坏的条目视为未命中并删除
2. store: 发后即忘，不向调用方抛错
3. 容量不足：淘汰最旧约 25% 后继续
4. 存储整体不可用：降级为直通（始终未命中）

TTL 从创建时刻起算（读取不续期）。
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable

from pydantic import ValidationError

from ..config import RuntimeConfig, get_config
from ..interfaces import CacheUnavailableError, StorageQuotaExceededError
from ..models import CacheEntry, TileResult

logger = logging.getLogger(__name__)


# ============================================================================
# 存储后端
# ============================================================================

class CacheBackend(ABC):
    """缓存存储后端（原始字典读写）"""

    @abstractmethod
    def get(self, key: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    def put(self, key: str, value: dict[str, Any]) -> None:
        """
        Raises:
            StorageQuotaExceededError: 容量不足
            CacheUnavailableError: 存储不可用
        """
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def items(self) -> list[tuple[str, dict[str, Any]]]:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryCacheBackend(CacheBackend):
    """内存后端（固定容量）"""

    def __init__(self, capacity: int = 512):
        self.capacity = capacity
        self._data: OrderedDict[str, dict[str, Any]] = OrderedDict()

    def get(self, key: str) -> dict[str, Any] | None:
        return self._data.get(key)

    def put(self, key: str, value: dict[str, Any]) -> None:
        if key not in self._data and len(self._data) >= self.capacity:
            raise StorageQuotaExceededError(f"缓存已满: {len(self._data)}/{self.capacity}")
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> list[tuple[str, dict[str, Any]]]:
        return list(self._data.items())

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class DirectoryCacheBackend(CacheBackend):
    """目录后端：每个哈希一个 JSON 文件"""

    def __init__(self, root: str | Path, capacity: int = 512):
        self.root = Path(root)
        self.capacity = capacity
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheUnavailableError(f"缓存目录不可用: {self.root}: {e}") from e
        # 文件数只在构造时扫描一次，之后随 put/delete 增减
        self._count = sum(1 for _ in self.root.glob("*.json"))

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError:
            # 损坏内容交给上层校验并清除
            return {"corrupted": True}
        except OSError as e:
            raise CacheUnavailableError(f"读取缓存失败: {path}: {e}") from e
        return data if isinstance(data, dict) else {"corrupted": True}

    def put(self, key: str, value: dict[str, Any]) -> None:
        path = self._path(key)
        try:
            is_new = not path.exists()
            if is_new and self._count >= self.capacity:
                raise StorageQuotaExceededError(f"缓存目录已满: {self.root}")
            with open(path, "w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False)
            if is_new:
                self._count += 1
        except OSError as e:
            raise CacheUnavailableError(f"写入缓存失败: {path}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            path = self._path(key)
            if path.exists():
                path.unlink()
                self._count = max(0, self._count - 1)
        except OSError as e:
            raise CacheUnavailableError(f"删除缓存失败: {key}: {e}") from e

    def items(self) -> list[tuple[str, dict[str, Any]]]:
        result = []
        for path in sorted(self.root.glob("*.json")):
            entry = self.get(path.stem)
            if entry is not None:
                result.append((path.stem, entry))
        return result

    def clear(self) -> None:
        for path in self.root.glob("*.json"):
            path.unlink(missing_ok=True)
        self._count = 0

    def __len__(self) -> int:
        return self._count


# ============================================================================
# 切片缓存
# ============================================================================

class TileCache:
    """切片缓存（线程安全，可被多条流水线并发使用）"""

    def __init__(
        self,
        backend: CacheBackend | None = None,
        config: RuntimeConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        cfg = (config or get_config()).cache
        self.ttl_sec = cfg.ttl_sec
        self.evict_fraction = cfg.evict_fraction
        self.clock = clock
        self._lock = threading.Lock()
        self._degraded = False
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "purged": 0}

        if backend is None:
            backend = self._build_backend(cfg)
        self.backend = backend

    def _build_backend(self, cfg) -> CacheBackend | None:
        if cfg.backend == "directory" and cfg.directory:
            try:
                return DirectoryCacheBackend(cfg.directory, capacity=cfg.capacity)
            except CacheUnavailableError as e:
                logger.warning(f"缓存降级为直通: {e}")
                self._degraded = True
                return None
        return MemoryCacheBackend(capacity=cfg.capacity)

    @property
    def degraded(self) -> bool:
        return self._degraded

    def lookup(self, content_hash: str) -> CacheEntry | None:
        """查询缓存；未命中返回 None"""
        with self._lock:
            if self._degraded or self.backend is None:
                self._stats["misses"] += 1
                return None
            try:
                raw = self.backend.get(content_hash)
                if raw is None:
                    self._stats["misses"] += 1
                    return None

                try:
                    entry = CacheEntry.model_validate(raw)
                except ValidationError:
                    entry = None
                if entry is None or entry.hash != content_hash:
                    logger.warning(f"缓存条目损坏，已清除: {content_hash}")
                    self.backend.delete(content_hash)
                    self._stats["purged"] += 1
                    self._stats["misses"] += 1
                    return None

                if self.clock() - entry.timestamp >= self.ttl_sec:
                    self.backend.delete(content_hash)
                    self._stats["misses"] += 1
                    return None
            except CacheUnavailableError as e:
                self._degrade(e)
                self._stats["misses"] += 1
                return None

            self._stats["hits"] += 1
            return entry

    def store(self, content_hash: str, result: TileResult) -> None:
        """写入缓存（发后即忘；失败结果不缓存）"""
        if not result.ok:
            return
        with self._lock:
            if self._degraded or self.backend is None:
                return
            entry = CacheEntry(
                hash=content_hash,
                text=result.text,
                confidence=result.confidence,
                timestamp=self.clock(),
            )
            value = entry.model_dump()
            try:
                try:
                    self.backend.put(content_hash, value)
                except StorageQuotaExceededError:
                    self._evict_oldest()
                    self.backend.put(content_hash, value)
            except StorageQuotaExceededError as e:
                logger.warning(f"淘汰后仍无法写入缓存，丢弃: {content_hash}: {e}")
            except CacheUnavailableError as e:
                self._degrade(e)

    def clear(self) -> None:
        with self._lock:
            if self.backend is not None and not self._degraded:
                self.backend.clear()

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {**self._stats, "degraded": self._degraded}

    def _evict_oldest(self) -> None:
        """按创建时间淘汰最旧的约 evict_fraction 条目（损坏条目优先清除）"""
        items = self.backend.items()
        if not items:
            return

        def _age_key(item: tuple[str, dict[str, Any]]) -> float:
            ts = item[1].get("timestamp")
            return ts if isinstance(ts, (int, float)) else float("-inf")

        items.sort(key=_age_key)
        count = max(1, math.ceil(len(items) * self.evict_fraction))
        for key, _ in items[:count]:
            self.backend.delete(key)
        self._stats["evictions"] += count
        logger.info(f"缓存容量不足，淘汰 {count}/{len(items)} 条")

    def _degrade(self, error: Exception) -> None:
        if not self._degraded:
            logger.warning(f"缓存存储不可用，降级为直通: {error}")
        self._degraded = True
