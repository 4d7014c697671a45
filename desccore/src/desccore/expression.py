"""
Tokenizer for the nested `name(arg,arg,...)` syntax shared by policies,
miniscript and descriptors.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Expression:
    name: str
    args: tuple[Expression, ...] = ()

    @property
    def is_leaf(self) -> bool:
        return not self.args

    def __str__(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}({','.join(str(a) for a in self.args)})"


def parse_expression(text: str) -> Expression:
    """
    Parse `text` into an expression tree.

    Whitespace is removed first. Names may contain anything except
    parentheses and commas, so key expressions like `[d34db33f/84'/1'/0']tpub.../0/*`
    come through as leaf names.

    Raises:
        ValueError: On unbalanced parentheses, empty names or trailing input
    """
    source = "".join(text.split())
    if not source:
        raise ValueError("Empty expression")

    expr, pos = _parse(source, 0)
    if pos != len(source):
        raise ValueError(f"Unexpected '{source[pos]}' at position {pos}")
    return expr


def _parse(source: str, pos: int) -> tuple[Expression, int]:
    start = pos
    while pos < len(source) and source[pos] not in "(),":
        pos += 1
    name = source[start:pos]
    if not name:
        raise ValueError(f"Expected a name at position {start}")

    if pos >= len(source) or source[pos] != "(":
        return Expression(name), pos

    pos += 1
    args = []
    while True:
        arg, pos = _parse(source, pos)
        args.append(arg)
        if pos >= len(source):
            raise ValueError(f"Missing ')' after '{name}('")
        if source[pos] == ",":
            pos += 1
            continue
        if source[pos] == ")":
            pos += 1
            break
        raise ValueError(f"Unexpected '{source[pos]}' at position {pos}")
    return Expression(name, tuple(args)), pos
