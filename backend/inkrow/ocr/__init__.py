"""
识别模块 - 切片、缓存、并发识别、合并与后处理

子模块：
- tiling: 切片提取器
- raster: 参考光栅化器（Pillow）
- cache: 切片缓存与存储后端
- worker_pool: 识别工作池
- merger: 片段合并器
- postprocess: 识别后处理
- syntax: 默认语法校验器
"""

from .cache import CacheBackend, DirectoryCacheBackend, MemoryCacheBackend, TileCache
from .merger import FragmentMerger
from .postprocess import CleanedText, PostProcessor, clean
from .raster import PillowRasterizer
from .syntax import DelimiterSyntaxValidator, find_unbalanced_delimiters
from .tiling import TileExtractor, content_hash, plan_tiles, to_grayscale
from .worker_pool import InferenceWorkerPool

__all__ = [
    "CacheBackend",
    "CleanedText",
    "DelimiterSyntaxValidator",
    "DirectoryCacheBackend",
    "FragmentMerger",
    "InferenceWorkerPool",
    "MemoryCacheBackend",
    "PillowRasterizer",
    "PostProcessor",
    "TileCache",
    "TileExtractor",
    "clean",
    "content_hash",
    "find_unbalanced_delimiters",
    "plan_tiles",
    "to_grayscale",
]
