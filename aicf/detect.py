"""
Secret / PII Detector — Pattern Matchers and Smart Masking

A capability set of independent matchers, each implementing
``scan(text) -> List[Detection]``.  Matchers are precompiled regexes with an
optional validator (Luhn for card numbers, range rules for SSNs).  New
formats are added with SecretDetector.add_matcher(); nothing is special-cased.

Detection is best-effort pattern matching: unknown secret formats are not
found.  Treat it as a mitigation layer in front of the disk, never as a
guarantee.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Literal, Optional, Pattern, Sequence

from aicf.config import DetectorConfig

logger = logging.getLogger(__name__)

Category = Literal["secret", "pii"]

MASK = "****"
FULL_MASK = "********"


# ---------------------------------------------------------------------------
# Masking
# ---------------------------------------------------------------------------


def smart_mask(value: str, show: int = 4) -> str:
    """Keep the first and last ``show`` chars of long values; hide short ones.

    The middle is replaced by a fixed-width mask and short values by a
    fixed-width full mask, so the output does not reveal the value length.
    """
    if show <= 0 or len(value) <= show * 2:
        return FULL_MASK
    return f"{value[:show]}{MASK}{value[-show:]}"


# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def luhn_valid(number: str) -> bool:
    """Luhn checksum over the digits of ``number`` (13..19 digits)."""
    digits = [int(c) for c in number if c.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for i, d in enumerate(reversed(digits)):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def ssn_valid(ssn: str) -> bool:
    """Reject SSN area/group/serial values that are never issued."""
    digits = re.sub(r"\D", "", ssn)
    if len(digits) != 9:
        return False
    area, group, serial = digits[:3], digits[3:5], digits[5:]
    if area in ("000", "666") or area[0] == "9":
        return False
    return group != "00" and serial != "0000"


# ---------------------------------------------------------------------------
# Findings and matchers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Detection:
    """One finding. Carries the span and a masked preview, never the raw value."""

    type: str
    category: Category
    start: int
    end: int
    masked: str

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass
class PatternMatcher:
    """Regex matcher. A named group ``value`` narrows the reported span."""

    type: str
    category: Category
    pattern: Pattern[str]
    validator: Optional[Callable[[str], bool]] = None
    mask_show: int = 4

    def scan(self, text: str) -> List[Detection]:
        found: List[Detection] = []
        group = "value" if "value" in self.pattern.groupindex else 0
        for m in self.pattern.finditer(text):
            start, end = m.span(group)
            if start < 0 or start == end:
                continue
            value = text[start:end]
            if self.validator is not None and not self.validator(value):
                continue
            found.append(Detection(
                type=self.type,
                category=self.category,
                start=start,
                end=end,
                masked=smart_mask(value, self.mask_show),
            ))
        return found


# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

# Specific formats first: on identical spans the earlier matcher wins.
_SECRET_MATCHERS = [
    PatternMatcher("anthropicKey", "secret", re.compile(r"\bsk-ant-[A-Za-z0-9_\-]{32,}")),
    PatternMatcher(
        "openaiKey", "secret",
        re.compile(r"\bsk-(?!ant-)(?:proj-|svcacct-|admin-)?[A-Za-z0-9]{20,}[A-Za-z0-9_\-]*"),
    ),
    PatternMatcher(
        "githubToken", "secret",
        re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{36,}|github_pat_[A-Za-z0-9_]{22,})"),
    ),
    PatternMatcher("awsKey", "secret", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    PatternMatcher(
        "awsSecret", "secret",
        re.compile(
            r"aws_secret_access_key\s*[:=]\s*['\"]?(?P<value>[A-Za-z0-9/+=]{40})",
            re.IGNORECASE,
        ),
    ),
    PatternMatcher("slackToken", "secret", re.compile(r"\bxox[abprs]-[A-Za-z0-9\-]{10,}")),
    PatternMatcher(
        "jwt", "secret",
        re.compile(r"\beyJ[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]+"),
    ),
    PatternMatcher(
        "privateKey", "secret",
        re.compile(
            r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"
            r"(?:.*?-----END (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----)?",
            re.DOTALL,
        ),
    ),
    PatternMatcher(
        "apiKey", "secret",
        re.compile(
            r"(?<![A-Za-z0-9])(?:api[_-]?key|apikey|access[_-]?token|token|secret|password|passwd|bearer)"
            r"['\"]?\s*[:=\s]\s*['\"]?(?P<value>[A-Za-z0-9_\-./+]{20,})",
            re.IGNORECASE,
        ),
    ),
]

_PII_MATCHERS = [
    PatternMatcher("ssn", "pii", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), validator=ssn_valid),
    PatternMatcher(
        "creditCard", "pii",
        re.compile(r"\b(?:\d[ \-]?){12,18}\d\b"),
        validator=luhn_valid,
    ),
    PatternMatcher(
        "email", "pii",
        re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b"),
    ),
    PatternMatcher(
        "phone", "pii",
        re.compile(r"(?:\+?1[\-.\s]?)?(?:\(\d{3}\)\s?|\b\d{3}[\-.\s])\d{3}[\-.\s]\d{4}\b"),
    ),
    PatternMatcher(
        "ipAddress", "pii",
        re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b"),
    ),
    PatternMatcher("iban", "pii", re.compile(r"\b[A-Z]{2}\d{2}[A-Z0-9]{11,30}\b")),
    PatternMatcher(
        "dateOfBirth", "pii",
        re.compile(r"\b(?:0[1-9]|1[0-2])[/\-](?:0[1-9]|[12]\d|3[01])[/\-](?:19|20)\d{2}\b"),
    ),
]

SECRET_TYPES = frozenset(m.type for m in _SECRET_MATCHERS)
PII_TYPES = frozenset(m.type for m in _PII_MATCHERS)


def default_matchers() -> List[PatternMatcher]:
    """Fresh copy of the built-in matcher table."""
    return [
        PatternMatcher(m.type, m.category, m.pattern, m.validator, m.mask_show)
        for m in _SECRET_MATCHERS + _PII_MATCHERS
    ]


def resolve_overlaps(detections: Iterable[Detection]) -> List[Detection]:
    """Keep leftmost-longest, non-overlapping findings, in text order.

    sorted() is stable, so on identical spans the earlier matcher wins.
    """
    ordered = sorted(detections, key=lambda d: (d.start, -d.length))
    kept: List[Detection] = []
    cursor = -1
    for det in ordered:
        if det.start >= cursor:
            kept.append(det)
            cursor = det.end
    return kept


@dataclass
class RedactionResult:
    """Masked text plus the findings that were masked (text order)."""

    text: str
    detections: List[Detection] = field(default_factory=list)

    @property
    def redacted(self) -> bool:
        """Return True if anything was masked."""
        return bool(self.detections)

    @property
    def types(self) -> List[str]:
        return sorted({d.type for d in self.detections})


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class SecretDetector:
    """
    Stateless scanner over a configurable matcher set.

    Which categories run is decided by DetectorConfig; individual types can
    be switched off with ``disabled_types``.
    """

    def __init__(
        self,
        config: Optional[DetectorConfig] = None,
        matchers: Optional[Sequence[PatternMatcher]] = None,
    ):
        self._config = config or DetectorConfig()
        base = list(matchers) if matchers is not None else default_matchers()
        for m in base:
            m.mask_show = self._config.mask_show_chars
        self._matchers: List[PatternMatcher] = base

    @property
    def matchers(self) -> List[PatternMatcher]:
        return list(self._matchers)

    def add_matcher(self, matcher: PatternMatcher) -> None:
        """Register an extra matcher (scanned after the built-ins)."""
        self._matchers.append(matcher)
        logger.debug("Registered matcher %s (%s)", matcher.type, matcher.category)

    def _active(self) -> List[PatternMatcher]:
        cfg = self._config
        out = []
        for m in self._matchers:
            if m.type in cfg.disabled_types:
                continue
            if m.category == "secret" and not cfg.secret_patterns_enabled:
                continue
            if m.category == "pii" and not cfg.pii_patterns_enabled:
                continue
            out.append(m)
        return out

    def detect(self, text: str) -> List[Detection]:
        """All findings from every active matcher (may overlap), text order."""
        if not text:
            return []
        hits: List[Detection] = []
        for m in self._active():
            hits.extend(m.scan(text))
        hits.sort(key=lambda d: (d.start, d.end))
        return hits

    def has_secrets(self, text: str) -> bool:
        """Return True if any secret-category matcher fires."""
        return any(d.category == "secret" for d in self.detect(text))

    def redact(self, text: str, categories: Optional[Iterable[str]] = None) -> RedactionResult:
        """Replace each (non-overlapping) finding span with its masked form."""
        hits = self.detect(text)
        if categories is not None:
            allowed = set(categories)
            hits = [d for d in hits if d.category in allowed]
        kept = resolve_overlaps(hits)
        if not kept:
            return RedactionResult(text=text)
        parts: List[str] = []
        pos = 0
        for det in kept:
            parts.append(text[pos:det.start])
            parts.append(det.masked)
            pos = det.end
        parts.append(text[pos:])
        return RedactionResult(text="".join(parts), detections=kept)


_default_detector: Optional[SecretDetector] = None


def detect(text: str) -> List[Detection]:
    """Scan text with the default detector configuration."""
    global _default_detector
    if _default_detector is None:
        _default_detector = SecretDetector()
    return _default_detector.detect(text)
