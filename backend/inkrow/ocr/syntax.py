"""
默认语法校验器 - 分组定界符配对检查（仅诊断，不修复）
"""

from __future__ import annotations

from ..interfaces import ISyntaxValidator

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {v: k for k, v in _OPENERS.items()}


def _has_command(text: str, pos: int, name: str) -> bool:
    """pos 处是否为完整命令 name（后面不紧跟字母，排除 \\leftarrow 等）"""
    end = pos + len(name)
    return text.startswith(name, pos) and not (end < len(text) and text[end].isalpha())


def find_unbalanced_delimiters(text: str) -> list[str]:
    """
    检查 () [] {} 以及 \\left/\\right 配对

    转义的 \\{ \\} 视为普通字符。

    Returns:
        问题描述列表
    """
    issues: list[str] = []
    stack: list[tuple[str, int]] = []
    left_right = 0

    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            if _has_command(text, i, "\\left"):
                left_right += 1
                i += len("\\left")
                continue
            if _has_command(text, i, "\\right"):
                left_right -= 1
                if left_right < 0:
                    issues.append(f"位置 {i}: 多余的 \\right")
                    left_right = 0
                i += len("\\right")
                continue
            # 跳过转义字符
            i += 2
            continue

        if ch in _OPENERS:
            stack.append((ch, i))
        elif ch in _CLOSERS:
            if stack and stack[-1][0] == _CLOSERS[ch]:
                stack.pop()
            else:
                issues.append(f"位置 {i}: 未匹配的 '{ch}'")
        i += 1

    for ch, pos in stack:
        issues.append(f"位置 {pos}: 未闭合的 '{ch}'")
    if left_right > 0:
        issues.append(f"缺少 {left_right} 个 \\right")
    return issues


class DelimiterSyntaxValidator(ISyntaxValidator):
    """定界符配对校验器"""

    def validate(self, text: str) -> list[str]:
        return find_unbalanced_delimiters(text)
