"""
配置加载单元测试

每个模块完成后必须运行：pytest backend/tests/unit/test_config.py -v
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from inkrow.config import MergeConfig, RuntimeConfig, TilingConfig


class TestRuntimeConfig:
    """运行期配置测试"""

    def test_default_config(self):
        """测试默认配置"""
        config = RuntimeConfig()
        assert config.rows.row_height == 384
        assert config.tiling.tile_size == 384
        assert config.tiling.overlap == 64
        assert config.tiling.stride == 320
        assert config.workers.pool_size == 2
        assert config.pipeline.debounce_sec == 1.5
        assert config.cache.backend == "memory"

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch):
        """测试环境变量覆盖"""
        monkeypatch.setenv("INKROW_WORKERS__POOL_SIZE", "4")
        config = RuntimeConfig()
        assert config.workers.pool_size == 4

    def test_missing_yaml_uses_defaults(self, temp_dir: Path):
        """测试配置文件缺失"""
        config = RuntimeConfig.from_yaml(temp_dir / "missing.yaml")
        assert config.merge.gap_double == 30.0

    def test_from_yaml(self, temp_dir: Path):
        """测试YAML加载（标量与 default/desc 两种写法）"""
        path = temp_dir / "inkrow_runtime.yaml"
        path.write_text(
            "runtime_options:\n"
            "  tiling:\n"
            "    tile_size: 256\n"
            "    overlap:\n"
            "      default: 32\n"
            "      desc: 相邻切片重叠像素\n"
            "  cache:\n"
            "    backend: directory\n"
            "    directory: cache\n",
            encoding="utf-8",
        )
        config = RuntimeConfig.from_yaml(path)
        assert config.tiling.tile_size == 256
        assert config.tiling.overlap == 32
        assert config.cache.directory == (temp_dir / "cache").resolve()


class TestConfigValidation:
    """配置校验测试"""

    def test_overlap_must_be_smaller_than_tile(self):
        with pytest.raises(ValidationError):
            TilingConfig(tile_size=64, overlap=64)

    def test_gap_order(self):
        with pytest.raises(ValidationError):
            MergeConfig(gap_single=40, gap_double=30)
