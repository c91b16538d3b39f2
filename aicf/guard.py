"""
Path Guard — Target File Validation and Size Caps

Keeps every write inside the writer's base directory: rejects '..'
segments, absolute paths and symlinks escaping the root, and oversized
appends.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union


class GuardError(ValueError):
    """Raised when a guard check fails (path violation, size cap, etc.)."""


class PathGuard:
    """Path validation and size guardrails for the secure writer."""

    def __init__(self, root: Union[str, Path], max_write_bytes: int = 1_048_576):
        self._root = Path(root).resolve()
        self._max_write_bytes = max_write_bytes

    @property
    def root(self) -> Path:
        """Return the canonical root directory."""
        return self._root

    def resolve(self, file_name: Union[str, Path]) -> Path:
        """
        Resolve a target file name against the root.

        Algorithm:
        1. Pre-check: reject empty names and any '..' segment
        2. Resolve: (root / name).resolve(strict=False), following symlinks
        3. Containment: resolved must be under root

        Raises GuardError on violation.
        """
        raw = Path(file_name)
        if not str(file_name).strip() or raw.name in ("", "."):
            raise GuardError(f"Invalid file name: {str(file_name)!r}")
        for part in raw.parts:
            if part == "..":
                raise GuardError(
                    f"Path traversal rejected: '..' in path '{file_name}'"
                )

        resolved = (self._root / raw).resolve()
        try:
            resolved.relative_to(self._root)
        except ValueError:
            raise GuardError(
                f"Path outside root: '{resolved}' is not under '{self._root}'"
            )
        return resolved

    def relative(self, resolved: Path) -> str:
        """Root-relative path string for logs (never leaks absolute paths)."""
        try:
            return str(resolved.relative_to(self._root))
        except ValueError:
            return resolved.name

    def check_write_size(self, content: str) -> None:
        """Raise GuardError if content exceeds max_write_bytes."""
        size = len(content.encode("utf-8"))
        if size > self._max_write_bytes:
            raise GuardError(
                f"Write size {size} bytes exceeds limit of {self._max_write_bytes} bytes"
            )
