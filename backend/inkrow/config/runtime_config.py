"""
运行期配置 - 读取 config/inkrow_runtime.yaml

职责：
- 加载行高/切片/缓存/并发/超时等运行参数
- 提供环境变量覆盖机制（INKROW_ 前缀）
- 类型安全的配置访问
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings


class RowsConfig(BaseModel):
    """行几何配置"""

    row_height: float = 384.0
    origin_y: float = 0.0


class TilingConfig(BaseModel):
    """切片配置"""

    tile_size: int = 384
    overlap: int = 64
    budget_ms: float = 200.0
    warn_ratio: float = 0.8

    @model_validator(mode="after")
    def _check_overlap(self) -> TilingConfig:
        if self.tile_size <= 0:
            raise ValueError("tile_size 必须为正数")
        if not 0 <= self.overlap < self.tile_size:
            raise ValueError(f"overlap({self.overlap}) 必须满足 0 <= overlap < tile_size({self.tile_size})")
        return self

    @property
    def stride(self) -> int:
        return self.tile_size - self.overlap


class CacheConfig(BaseModel):
    """切片缓存配置"""

    ttl_sec: float = 3600.0
    capacity: int = 512
    evict_fraction: float = 0.25
    backend: str = "memory"  # memory | directory
    directory: Path | None = None


class WorkerConfig(BaseModel):
    """识别工作池配置"""

    pool_size: int = 2
    queue_capacity: int = 32
    tile_timeout_sec: float = 10.0
    max_attempts: int = 2


class MergeConfig(BaseModel):
    """片段合并间距阈值（像素）"""

    gap_single: float = 10.0
    gap_double: float = 30.0

    @model_validator(mode="after")
    def _check_gaps(self) -> MergeConfig:
        if self.gap_single > self.gap_double:
            raise ValueError("gap_single 不能大于 gap_double")
        return self


class PipelineConfig(BaseModel):
    """流水线防抖与预算配置"""

    debounce_sec: float = 1.5
    budget_sec: float = 5.0
    max_overruns: int = 3
    backoff_sec: float = 30.0


class LoggingConfig(BaseModel):
    """日志配置"""

    log_level: str = "INFO"
    fmt: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RuntimeConfig(BaseSettings):
    """运行期配置（支持环境变量覆盖）"""

    rows: RowsConfig = Field(default_factory=RowsConfig)
    tiling: TilingConfig = Field(default_factory=TilingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {
        "env_prefix": "INKROW_",
        "env_nested_delimiter": "__",
    }

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> RuntimeConfig:
        """从YAML文件加载配置"""
        path = Path(yaml_path)
        if not path.exists():
            return cls()

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        runtime_opts = data.get("runtime_options", {})

        config = cls(
            rows=RowsConfig(**cls._extract(runtime_opts, "rows")),
            tiling=TilingConfig(**cls._extract(runtime_opts, "tiling")),
            cache=CacheConfig(**cls._extract(runtime_opts, "cache")),
            workers=WorkerConfig(**cls._extract(runtime_opts, "workers")),
            merge=MergeConfig(**cls._extract(runtime_opts, "merge")),
            pipeline=PipelineConfig(**cls._extract(runtime_opts, "pipeline")),
            logging=LoggingConfig(**cls._extract(runtime_opts, "logging")),
        )

        config._resolve_paths(base_dir=path.parent)
        return config

    @staticmethod
    def _extract(data: dict[str, Any], key: str) -> dict[str, Any]:
        """提取并展平配置"""
        section = data.get(key) or {}
        result = {}
        for k, v in section.items():
            if isinstance(v, dict) and "default" in v:
                result[k] = v["default"]
            elif not isinstance(v, dict):
                result[k] = v
        return result

    def _resolve_paths(self, base_dir: Path) -> None:
        """缓存目录的相对路径按配置文件所在目录解析"""
        if self.cache.directory and not self.cache.directory.is_absolute():
            self.cache.directory = (base_dir / self.cache.directory).resolve()

    def configure_logging(self) -> None:
        """按 logging 段初始化根日志"""
        logging.basicConfig(
            level=getattr(logging, self.logging.log_level.upper(), logging.INFO),
            format=self.logging.fmt,
        )


# 全局配置实例
_config: RuntimeConfig | None = None

DEFAULT_CONFIG_PATH = Path("config/inkrow_runtime.yaml")


def get_config() -> RuntimeConfig:
    """获取全局配置（惰性加载）"""
    global _config
    if _config is None:
        _config = RuntimeConfig.from_yaml(DEFAULT_CONFIG_PATH)
    return _config


def reload_config(yaml_path: str | Path | None = None) -> RuntimeConfig:
    """重新加载配置"""
    global _config
    path = yaml_path or DEFAULT_CONFIG_PATH
    _config = RuntimeConfig.from_yaml(path)
    return _config
