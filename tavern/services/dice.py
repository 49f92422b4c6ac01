"""
tavern.services.dice
~~~~~~~~~~~~~~~~~~~~

骰子表达式求值器 —— 纯函数，无 I/O、无全局状态。

支持由 ``+`` / ``-`` 连接的多项表达式，每一项是 ``NdM`` 骰子组或整数修正值::

    >>> roll = evaluate("1d20+1d4+2")
    >>> roll.breakdown
    '1d20[15]+1d4[2]+2 = 19'

``result`` 只累计骰子组（带符号），``modifier`` 只累计整数项，
``total = result + modifier``。
"""
from __future__ import annotations

import random
import re
from dataclasses import dataclass

from tavern.core.errors import InvalidDiceRange, InvalidExpression

MIN_DICE = 1
MAX_DICE = 100
MIN_SIDES = 2
MAX_SIDES = 1000

_DICE_RE = re.compile(r"^(?P<count>\d+)d(?P<sides>\d+)$")
_NUMBER_RE = re.compile(r"^\d+$")
_TOKEN_RE = re.compile(r"([+-])")


@dataclass(frozen=True)
class DiceGroup:
    """一组骰子的掷骰结果。

    Attributes:
        notation: 原始写法，如 ``2d6``。
        sign: ``1`` 或 ``-1``。
        faces: 每颗骰子的点数。
    """

    notation: str
    sign: int
    faces: tuple[int, ...]

    @property
    def subtotal(self) -> int:
        return self.sign * sum(self.faces)

    def render(self) -> str:
        return f"{self.notation}[{','.join(str(f) for f in self.faces)}]"


@dataclass(frozen=True)
class DiceRoll:
    expression: str
    groups: tuple[DiceGroup, ...]
    result: int
    modifier: int
    total: int
    breakdown: str


def _split_terms(expression: str) -> list[tuple[int, str]]:
    """把表达式拆成 ``(符号, 项)`` 列表。"""
    tokens = _TOKEN_RE.split(expression)
    terms: list[tuple[int, str]] = []

    # 首项前允许出现一个符号：split 结果以 "" 开头
    sign = 1
    expect_term = True
    for index, token in enumerate(tokens):
        if token in ("+", "-"):
            if expect_term and not (index == 1 and tokens[0] == ""):
                raise InvalidExpression(f"Invalid expression: {expression!r}")
            sign = -1 if token == "-" else 1
            expect_term = True
            continue
        if token == "":
            if index == 0:
                continue
            raise InvalidExpression(f"Invalid expression: {expression!r}")
        terms.append((sign, token))
        sign = 1
        expect_term = False

    if expect_term:
        # 空表达式或以运算符结尾
        raise InvalidExpression(f"Invalid expression: {expression!r}")
    return terms


def evaluate(expression: str, rng: random.Random | None = None) -> DiceRoll:
    """解析并掷出一个骰子表达式。

    Args:
        expression: 例如 ``"1d20+4"``、``"2d6+1d4-1"``。忽略空白，大小写不敏感。
        rng: 随机源，测试时可传入固定种子的 ``random.Random``。

    Returns:
        ``DiceRoll``，包含每组骰子的点数与可读的明细字符串。

    Raises:
        InvalidExpression: 出现既不是 ``NdM`` 也不是整数的片段。
        InvalidDiceRange: 骰子数不在 [1, 100] 或面数不在 [2, 1000]。
    """
    rng = rng or random
    clean = re.sub(r"\s+", "", expression or "").lower()

    groups: list[DiceGroup] = []
    modifiers: list[int] = []
    parts: list[str] = []

    for sign, term in _split_terms(clean):
        dice = _DICE_RE.match(term)
        if dice:
            count = int(dice.group("count"))
            sides = int(dice.group("sides"))
            if not (MIN_DICE <= count <= MAX_DICE) or not (MIN_SIDES <= sides <= MAX_SIDES):
                raise InvalidDiceRange(
                    f"Invalid dice: {term} (count {MIN_DICE}-{MAX_DICE}, "
                    f"sides {MIN_SIDES}-{MAX_SIDES})",
                )
            group = DiceGroup(
                notation=term,
                sign=sign,
                faces=tuple(rng.randint(1, sides) for _ in range(count)),
            )
            groups.append(group)
            rendered = group.render()
        elif _NUMBER_RE.match(term):
            modifiers.append(sign * int(term))
            rendered = term
        else:
            raise InvalidExpression(f"Invalid expression part: {term!r}")

        if sign < 0:
            parts.append(f"-{rendered}")
        elif parts:
            parts.append(f"+{rendered}")
        else:
            parts.append(rendered)

    result = sum(g.subtotal for g in groups)
    modifier = sum(modifiers)
    total = result + modifier
    return DiceRoll(
        expression=clean,
        groups=tuple(groups),
        result=result,
        modifier=modifier,
        total=total,
        breakdown=f"{''.join(parts)} = {total}",
    )


def format_roll(roll: DiceRoll) -> str:
    """渲染为聊天频道里的一行掷骰记录。"""
    return f"🎲 {roll.expression} → {roll.breakdown}"
