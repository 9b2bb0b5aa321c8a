"""Split a script into individually executable statements.

A single left to right scan tracks whether the cursor is inside a single
quoted literal, a double quoted identifier, a ``--`` line comment or a
``/* */`` block comment. Only a semicolon seen outside all four ends a
statement. Comments are kept in the statement text; the provider strips
them before sending.

A fragment holding nothing but comments is not a statement and is dropped,
so ``SELECT 1; -- done`` yields only ``SELECT 1``. Emitting it would send
the provider an empty statement once its comments are stripped.
"""
from typing import List

from models.types import DatabaseType

_DEFAULT = 0
_SINGLE_QUOTE = 1
_DOUBLE_QUOTE = 2
_LINE_COMMENT = 3
_BLOCK_COMMENT = 4


def split_statements(script: str, dialect=None) -> List[str]:
    """Return the non-empty, trimmed statements of script in source order.

    Document store scripts are not semicolon delimited and come back as a
    single statement.
    """
    script = script or ""
    if dialect is not None and DatabaseType.parse(dialect) == DatabaseType.MONGODB:
        stripped = script.strip()
        return [stripped] if stripped else []

    statements: List[str] = []
    current: List[str] = []
    # fragments holding nothing but comments are dropped
    has_code = False
    mode = _DEFAULT
    i = 0
    n = len(script)

    def _flush():
        text = "".join(current).strip()
        if text and has_code:
            statements.append(text)
        current.clear()

    while i < n:
        ch = script[i]
        nxt = script[i + 1] if i + 1 < n else ""

        if mode == _DEFAULT:
            if ch == ";":
                _flush()
                has_code = False
                i += 1
                continue
            if ch == "-" and nxt == "-":
                mode = _LINE_COMMENT
                current.append("--")
                i += 2
                continue
            if ch == "/" and nxt == "*":
                mode = _BLOCK_COMMENT
                current.append("/*")
                i += 2
                continue
            if ch == "'":
                mode = _SINGLE_QUOTE
            elif ch == '"':
                mode = _DOUBLE_QUOTE
            if not ch.isspace():
                has_code = True
        elif mode == _SINGLE_QUOTE:
            # '' inside a literal closes and reopens, which lands in the same mode
            if ch == "'":
                mode = _DEFAULT
        elif mode == _DOUBLE_QUOTE:
            if ch == '"':
                mode = _DEFAULT
        elif mode == _LINE_COMMENT:
            if ch == "\n":
                mode = _DEFAULT
        elif mode == _BLOCK_COMMENT:
            if ch == "*" and nxt == "/":
                mode = _DEFAULT
                current.append("*/")
                i += 2
                continue

        current.append(ch)
        i += 1

    _flush()
    return statements
