"""
Context Format Configuration

Configuration dataclasses for the detector, the secure writer and the
parser.  Includes load_config() for reading a JSON config file with silent
fallback to compiled defaults; unknown keys are logged and ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class DetectorConfig:
    """Secret/PII detection configuration."""
    secret_patterns_enabled: bool = True
    pii_patterns_enabled: bool = True
    disabled_types: List[str] = field(default_factory=list)
    mask_show_chars: int = 4

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "detector.mask_show_chars",
                     self.mask_show_chars, 0, 16, int)
        return errors


@dataclass
class WriterConfig:
    """Secure writer configuration."""
    base_dir: str = ".aicf"
    enable_secret_redaction: bool = True
    throw_on_secrets: bool = False
    log_redactions: bool = True
    redact_pii: bool = True
    auto_metadata: bool = True
    fsync: bool = False
    max_line_bytes: int = 1_048_576

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.base_dir:
            errors.append("writer.base_dir: must not be empty")
        _check_range(errors, "writer.max_line_bytes",
                     self.max_line_bytes, 256, 64 * 1_048_576, int)
        return errors


@dataclass
class ParserConfig:
    """Parser configuration."""
    require_metadata: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        return []


def _build(cls, section: str, values: Dict[str, Any]):
    """Instantiate one config section, ignoring (and logging) unknown keys."""
    if not isinstance(values, dict):
        raise TypeError(f"{section}: expected object, got {type(values).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        logger.warning("Ignoring unknown %s config key(s): %s", section, ", ".join(unknown))
    return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class AicfConfig:
    """Top-level configuration."""
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    writer: WriterConfig = field(default_factory=WriterConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AicfConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "detector" in d:
            kwargs["detector"] = _build(DetectorConfig, "detector", d["detector"])
        if "writer" in d:
            kwargs["writer"] = _build(WriterConfig, "writer", d["writer"])
        if "parser" in d:
            kwargs["parser"] = _build(ParserConfig, "parser", d["parser"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.detector.validate())
        errors.extend(self.writer.validate())
        errors.extend(self.parser.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> AicfConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        AicfConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = AicfConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = AicfConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = AicfConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
