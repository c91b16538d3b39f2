"""
Field Sanitizer — Reversible Escaping for Pipe-Delimited Lines

Backslash escape scheme applied to every field value before it is joined
into a line:

    \\  →  \\\\        |  →  \\|        LF  →  \\n        CR  →  \\r

The backslash itself is escaped first, which makes the mapping injective:
unsanitize(sanitize(x)) == x for every string x.  Only LF (and a trailing
CR before it) terminates a line in this format; other Unicode line
separators are ordinary characters.
"""

from __future__ import annotations

from typing import List

DELIMITER = "|"
ESCAPE = "\\"

_ESCAPES = {
    "\\": "\\\\",
    "|": "\\|",
    "\n": "\\n",
    "\r": "\\r",
}

_UNESCAPES = {
    "\\": "\\",
    "|": "|",
    "n": "\n",
    "r": "\r",
}

_TABLE = str.maketrans(_ESCAPES)
_LINE_TABLE = str.maketrans({"\n": "\\n", "\r": "\\r"})


def sanitize(value: object) -> str:
    """Escape delimiter, escape char and line terminators. Total, never raises."""
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.translate(_TABLE)


def unsanitize(value: str) -> str:
    """Inverse of sanitize().

    Unknown escapes (e.g. a hand-typed ``\\t``) and a trailing lone
    backslash are kept literally instead of failing.
    """
    if ESCAPE not in value:
        return value
    out: List[str] = []
    i, n = 0, len(value)
    while i < n:
        ch = value[i]
        if ch == ESCAPE and i + 1 < n:
            nxt = value[i + 1]
            if nxt in _UNESCAPES:
                out.append(_UNESCAPES[nxt])
            else:
                out.append(ch + nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def split_fields(line: str) -> List[str]:
    """Split a record line on unescaped delimiters.

    Returned fields are still escaped; pass each through unsanitize().
    Linear in len(line).
    """
    if ESCAPE not in line:
        return line.split(DELIMITER)
    parts: List[str] = []
    buf: List[str] = []
    i, n = 0, len(line)
    while i < n:
        ch = line[i]
        if ch == ESCAPE and i + 1 < n:
            buf.append(line[i:i + 2])
            i += 2
            continue
        if ch == DELIMITER:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    parts.append("".join(buf))
    return parts


def join_fields(values: List[object]) -> str:
    """Sanitize each value and join with the delimiter."""
    return DELIMITER.join(sanitize(v) for v in values)


def escape_line_terminators(line: str) -> str:
    """Escape only LF/CR. Used for caller-formatted raw lines."""
    return line.translate(_LINE_TABLE)
