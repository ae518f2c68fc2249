"""
片段合并器 - 有序单片结果 → 行表达式

流程：
1. 按 tile_index 排序；失败片记告警并跳过，空文本片直接跳过
2. 相邻片间距 gap = 后片墨迹左缘 - 前片墨迹右缘（任一缺失视为 0）
   gap < g1 → 不加空格；g1 <= gap < g2 → 一个空格；gap >= g2 → 两个空格
3. 仅在相邻接缝处折叠重复的运算符（重叠区被两片同时识别）
4. 外部语法校验器只用于诊断：设置 is_valid，并返回尽力而为的文本与告警

从不抛出异常。
"""

from __future__ import annotations

import logging
import re

from ..config import RuntimeConfig, get_config
from ..interfaces import ISyntaxValidator
from ..models import MergedResult, TileResult
from .syntax import DelimiterSyntaxValidator

logger = logging.getLogger(__name__)

# 接缝处可折叠的运算符（长的优先匹配）
SEAM_OPERATORS = ("\\times", "\\cdot", "\\div", "+", "-", "=", "*", "/")

_TRAILING_OP = re.compile(
    r"(" + "|".join(re.escape(op) for op in SEAM_OPERATORS) + r")\s*$"
)


def _leading_operator(text: str) -> str | None:
    stripped = text.lstrip()
    for op in SEAM_OPERATORS:
        if stripped.startswith(op):
            # \times 后面紧跟字母说明是其他命令
            if op.startswith("\\") and stripped[len(op):len(op) + 1].isalpha():
                continue
            return op
    return None


def _trailing_operator(text: str) -> str | None:
    match = _TRAILING_OP.search(text)
    return match.group(1) if match else None


class FragmentMerger:
    """片段合并器（纯函数语义）"""

    def __init__(
        self,
        validator: ISyntaxValidator | None = None,
        config: RuntimeConfig | None = None,
    ):
        cfg = (config or get_config()).merge
        self.gap_single = cfg.gap_single
        self.gap_double = cfg.gap_double
        self.validator = validator or DelimiterSyntaxValidator()

    def spacing_for_gap(self, gap: float) -> str:
        """间距策略"""
        if gap < self.gap_single:
            return ""
        if gap < self.gap_double:
            return " "
        return "  "

    @staticmethod
    def measure_gap(prev: TileResult, nxt: TileResult) -> float:
        """相邻片墨迹间距（画布坐标）"""
        if prev.ink_right is None or nxt.ink_left is None:
            return 0.0
        return nxt.ink_left - prev.ink_right

    def merge(self, results: list[TileResult]) -> MergedResult:
        """
        合并单片结果

        Args:
            results: 同一次运行的全部单片结果（成功或终态失败）

        Returns:
            MergedResult
        """
        if not results:
            return MergedResult(text="", is_valid=False, warnings=["no tiles"], tile_count=0)

        ordered = sorted(results, key=lambda r: r.tile_index)
        warnings: list[str] = []

        fragments: list[TileResult] = []
        for result in ordered:
            if not result.ok:
                warnings.append(f"切片 {result.tile_id} 识别失败: {result.error}")
                continue
            if not result.text.strip():
                continue
            fragments.append(result)

        text = ""
        prev: TileResult | None = None
        for frag in fragments:
            piece = frag.text.strip()
            if prev is None:
                text = piece
            else:
                # 仅当两片在切片序列中相邻时才视为同一接缝
                adjacent = frag.tile_index == prev.tile_index + 1
                lead = _leading_operator(piece)
                if adjacent and lead is not None and _trailing_operator(text) == lead:
                    logger.debug(f"接缝 {prev.tile_id}|{frag.tile_id} 折叠重复运算符 {lead!r}")
                    piece = piece[len(lead):]
                    if not piece.strip():
                        prev = frag
                        continue
                else:
                    text += self.spacing_for_gap(self.measure_gap(prev, frag))
                text += piece
            prev = frag

        issues = self.validator.validate(text) if text else []
        warnings.extend(f"语法诊断: {issue}" for issue in issues)
        if not text:
            warnings.append("合并结果为空")

        failed = len(ordered) - sum(1 for r in ordered if r.ok)
        is_valid = bool(text) and not issues and failed == 0
        if warnings:
            logger.debug(f"合并告警 ({len(warnings)}): {warnings}")

        return MergedResult(text=text, is_valid=is_valid, warnings=warnings, tile_count=len(ordered))
