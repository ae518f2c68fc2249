"""
配置层 - 加载运行期配置

职责：
- 加载 config/inkrow_runtime.yaml（运行期参数）
- 提供类型安全的配置访问接口
"""

from .runtime_config import (
    CacheConfig,
    LoggingConfig,
    MergeConfig,
    PipelineConfig,
    RowsConfig,
    RuntimeConfig,
    TilingConfig,
    WorkerConfig,
    get_config,
    reload_config,
)

__all__ = [
    "RuntimeConfig",
    "RowsConfig",
    "TilingConfig",
    "CacheConfig",
    "WorkerConfig",
    "MergeConfig",
    "PipelineConfig",
    "LoggingConfig",
    "get_config",
    "reload_config",
]
