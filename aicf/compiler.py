"""
Context Format Compiler — Document → Text

Deterministic: the same Document always yields byte-identical text.
Sections are emitted in canonical order, separated by one blank line;
empty sections are omitted.  Every field value goes through sanitize(),
so no value can introduce a delimiter or a line break.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from aicf.sanitize import join_fields, sanitize
from aicf.types import (
    CANONICAL_ORDER,
    Document,
    Metadata,
    OpaqueSection,
    SectionKind,
    Session,
    _WireRecord,
)


def section_header(kind: SectionKind, identifier: str = "") -> str:
    """Header line (without terminator) for a section kind."""
    return f"@{kind.value}:{identifier}"


def _trim_optionals(record: _WireRecord) -> List[Optional[str]]:
    values = record.wire_values()
    while len(values) > record.REQUIRED and values[-1] is None:
        values.pop()
    return values


def render_record(record) -> str:
    """Render one tabular record as a single line (no terminator)."""
    if not isinstance(record, _WireRecord):
        raise TypeError(f"Not a tabular record: {type(record).__name__}")
    return join_fields(_trim_optionals(record))


def render_lines(record) -> List[str]:
    """Body lines for any record kind (key=value records yield several)."""
    if isinstance(record, (Metadata, Session)):
        return [f"{key}={sanitize(value)}" for key, value in record.items()]
    if isinstance(record, OpaqueSection):
        record.check()
        return list(record.lines)
    return [render_record(record)]


def _compile_section(kind: SectionKind, records: Sequence) -> List[str]:
    lines = [section_header(kind)]
    for rec in records:
        lines.extend(render_lines(rec))
    return lines


def compile_section(kind: SectionKind, records: Sequence) -> str:
    """Compile one section (header + body), LF-terminated. Empty → ''."""
    if not records:
        return ""
    return "\n".join(_compile_section(kind, records)) + "\n"


def compile_document(doc: Document) -> str:
    """Compile a Document to canonical context-format text."""
    blocks: List[List[str]] = []
    for kind in CANONICAL_ORDER:
        records = doc.records(kind)
        if records:
            blocks.append(_compile_section(kind, records))
    for opaque in doc.unknown:
        blocks.append([f"@{opaque.name}:{opaque.identifier}"] + render_lines(opaque))
    if not blocks:
        return ""
    return "\n\n".join("\n".join(block) for block in blocks) + "\n"
