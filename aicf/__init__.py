"""
aicf — AI Context Format: an appendable, greppable text format for LLM context.

Typed records are compiled to pipe-delimited sections, parsed back without
loss, and written through a secure writer that masks secrets and PII before
anything reaches the disk.
"""

__version__ = "3.1.1"

from aicf.types import (
    FORMAT_VERSION,
    Conversation,
    Decision,
    Document,
    Insight,
    Link,
    Memory,
    Metadata,
    OpaqueSection,
    SectionKind,
    Session,
    State,
    Work,
)
from aicf.parser import ParseError, ParseResult, ParseWarning, parse, read, validate
from aicf.compiler import compile_document
from aicf.detect import Detection, SecretDetector, detect, smart_mask
from aicf.writer import SecretsDetectedError, SecureWriter, WriteError, WriteResult
from aicf.config import AicfConfig, load_config

__all__ = [
    "__version__",
    "FORMAT_VERSION",
    "Conversation",
    "Decision",
    "Document",
    "Insight",
    "Link",
    "Memory",
    "Metadata",
    "OpaqueSection",
    "SectionKind",
    "Session",
    "State",
    "Work",
    "ParseError",
    "ParseResult",
    "ParseWarning",
    "parse",
    "read",
    "validate",
    "compile_document",
    "Detection",
    "SecretDetector",
    "detect",
    "smart_mask",
    "SecretsDetectedError",
    "SecureWriter",
    "WriteError",
    "WriteResult",
    "AicfConfig",
    "load_config",
]
