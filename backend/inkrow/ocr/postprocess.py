"""
识别后处理 - 确定性清理识别器常见伪影

规则（反复应用直至不动点，保证 clean(clean(x)) == clean(x)）：
1. 空白规范化：制表/换行 → 空格，连续 3 个以上空格 → 2 个
2. 结构紧凑：`\\cmd {` → `\\cmd{`，`} {` → `}{`，`{ a }` → `{a}`，`x ^ 2` → `x^2`
3. 易混字形：数字之间的 O/o → 0、l/I → 1、S → 5；`O.5` → `0.5`；`2 x 3` → `2 \\times 3`
4. 折叠重复运算符：`++` → `+`，`\\times\\times` → `\\times`
5. 二元运算符两侧各留一个空格（前面是操作数时）
6. 定界符不匹配：只告警，不修复
"""

from __future__ import annotations

import logging
import re
from typing import NamedTuple

from .syntax import find_unbalanced_delimiters

logger = logging.getLogger(__name__)

_MAX_PASSES = 10

_WS_CONTROL = re.compile(r"[\t\r\n\f\v]+")
_WS_RUN = re.compile(r" {3,}")
_OP_COMMANDS = r"times|cdot|div|pm|leq|geq|neq"
_CMD_BRACE = re.compile(r"(\\(?!(?:" + _OP_COMMANDS + r")(?![A-Za-z]))[A-Za-z]+) +\{")
_BRACE_OPEN = re.compile(r"\{ +")
_BRACE_CLOSE = re.compile(r" +\}")
_BRACE_GAP = re.compile(r"\} +\{")
_SCRIPT = re.compile(r" *([\^_]) *")

# (pattern, replacement, 描述)
_GLYPH_RULES: list[tuple[re.Pattern[str], str, str]] = [
    (re.compile(r"(?<=\d)[Oo](?=\d)"), "0", "O→0"),
    (re.compile(r"(?<=\d)[lI](?=\d)"), "1", "l→1"),
    (re.compile(r"(?<=\d)S(?=\d)"), "5", "S→5"),
    (re.compile(r"(?<![\w\\.])[Oo](?=\.\d)"), "0", "O.→0."),
    (re.compile(r"(?<=\d) [xX] (?=\d)"), r" \\times ", "x→\\times"),
]

_REPEATED_OP = re.compile(r"([+\-=*/])(?:\s*\1)+")
_REPEATED_CMD_OP = re.compile(r"(\\(?:times|cdot|div|pm))(?![A-Za-z])(?:\s*\1(?![A-Za-z]))+")

_OPERAND_BEFORE = r"(?<=[0-9A-Za-z)\]}!'])"
_OPERAND_AFTER = r"(?=[^\s)\]}^_])"
_BINARY_OP = re.compile(_OPERAND_BEFORE + r" *([+=<>]|-) *" + _OPERAND_AFTER)
_BINARY_CMD_OP = re.compile(
    _OPERAND_BEFORE + r" *(\\(?:" + _OP_COMMANDS + r"))(?![A-Za-z]) *" + _OPERAND_AFTER
)


class CleanedText(NamedTuple):
    """清理结果"""
    text: str
    warnings: list[str]


def _normalize_whitespace(text: str) -> str:
    text = _WS_CONTROL.sub(" ", text)
    text = _WS_RUN.sub("  ", text)
    return text.strip()


def _single_pass(text: str) -> str:
    text = _normalize_whitespace(text)

    text = _CMD_BRACE.sub(r"\1{", text)
    text = _BRACE_OPEN.sub("{", text)
    text = _BRACE_CLOSE.sub("}", text)
    text = _BRACE_GAP.sub("}{", text)
    text = _SCRIPT.sub(r"\1", text)

    for pattern, replacement, label in _GLYPH_RULES:
        text, n = pattern.subn(replacement, text)
        if n:
            logger.debug(f"字形修正 {label} x{n}")

    text = _REPEATED_OP.sub(r"\1", text)
    text = _REPEATED_CMD_OP.sub(r"\1", text)

    text = _BINARY_OP.sub(r" \1 ", text)
    text = _BINARY_CMD_OP.sub(r" \1 ", text)

    return _normalize_whitespace(text)


class PostProcessor:
    """后处理器（无状态）"""

    def clean(self, text: str) -> CleanedText:
        """
        清理识别文本

        Returns:
            CleanedText(text, warnings)，warnings 仅包含定界符诊断
        """
        current = text or ""
        for _ in range(_MAX_PASSES):
            cleaned = _single_pass(current)
            if cleaned == current:
                break
            current = cleaned
        else:
            logger.warning(f"后处理未在 {_MAX_PASSES} 轮内收敛: {text!r}")

        warnings = [f"定界符不匹配: {issue}" for issue in find_unbalanced_delimiters(current)]
        return CleanedText(current, warnings)


def clean(text: str) -> CleanedText:
    """模块级便捷函数"""
    return PostProcessor().clean(text)
