"""
Configuration

Four sections, each a dataclass, grouped under DibcordConfig:

    engine      chunk size, retrieval window
    channel     substrate limits mirrored by the local substrates
    store       SQLite substrate file
    rate_limit  client-side throttling of substrate calls (off by default)

config.json holds the same nesting.  Missing sections keep their defaults;
unreadable files and unknown keys fall back to defaults entirely unless
load_config(strict=True) is asked to validate.

Numeric fields declare their accepted range as field metadata, so
validation is generic across sections.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Type


class ValidationError(ValueError):
    """Config values outside their accepted range."""


def _bounded(default, lo, hi):
    """Dataclass field with an inclusive [lo, hi] range check."""
    return field(default=default, metadata={"range": (lo, hi)})


class _Section:
    """Validation shared by every config section."""

    _prefix = ""

    def validate(self) -> List[str]:
        """Error messages for out-of-range or mistyped fields (empty = valid)."""
        errors: List[str] = []
        for f in fields(self):
            bounds = f.metadata.get("range")
            if bounds is None:
                continue
            name = f"{self._prefix}.{f.name}"
            value = getattr(self, f.name)
            expected = type(f.default)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{name}: expected {expected.__name__}, got {type(value).__name__}")
                continue
            if expected is int and not isinstance(value, int):
                errors.append(f"{name}: expected int, got {type(value).__name__}")
                continue
            lo, hi = bounds
            if not lo <= value <= hi:
                errors.append(f"{name}: {value} not in [{lo}, {hi}]")
        return errors


@dataclass
class EngineConfig(_Section):
    _prefix = "engine"
    chunk_size: int = _bounded(3800, 1, 1_000_000)
    retrieval_window: int = _bounded(100, 1, 100_000)


@dataclass
class ChannelConfig(_Section):
    _prefix = "channel"
    max_payload_chars: int = _bounded(4096, 1, 1_000_000)
    bulk_delete_max_age_days: int = _bounded(14, 0, 3650)
    bulk_delete_max_ids: int = _bounded(100, 1, 10_000)


@dataclass
class StoreConfig(_Section):
    _prefix = "store"
    db_path: str = ".dibcord/dibcord.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        errors = super().validate()
        if not self.db_path:
            errors.append("store.db_path: must not be empty")
        return errors


@dataclass
class RateLimitConfig(_Section):
    _prefix = "rate_limit"
    enabled: bool = False
    writes_per_minute: int = _bounded(300, 1, 100_000)
    reads_per_minute: int = _bounded(600, 1, 100_000)
    burst_factor: float = _bounded(1.0, 1.0, 100.0)
    wait: bool = True


_SECTIONS: Dict[str, Type[_Section]] = {
    "engine": EngineConfig,
    "channel": ChannelConfig,
    "store": StoreConfig,
    "rate_limit": RateLimitConfig,
}


@dataclass
class DibcordConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> DibcordConfig:
        """Build from nested sections; absent sections keep defaults.

        Raises:
            TypeError: a section carries an unknown key.
        """
        return cls(**{
            name: section(**d[name]) for name, section in _SECTIONS.items() if name in d
        })

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def validate(self) -> List[str]:
        errors: List[str] = []
        for name in _SECTIONS:
            errors.extend(getattr(self, name).validate())
        # A chunk must fit in one message.
        chunk, limit = self.engine.chunk_size, self.channel.max_payload_chars
        if isinstance(chunk, int) and isinstance(limit, int) and chunk > limit:
            errors.append(
                f"engine.chunk_size: {chunk} exceeds channel.max_payload_chars ({limit})"
            )
        return errors


def load_config(path: Optional[str] = None, *, strict: bool = False) -> DibcordConfig:
    """Read config.json, falling back to defaults when it is absent or unusable.

    Raises:
        ValidationError: only with strict=True, when values are out of range.
    """
    cfg = DibcordConfig()
    if path is not None:
        try:
            with open(path, encoding="utf-8") as f:
                cfg = DibcordConfig.from_dict(json.load(f))
        except (FileNotFoundError, json.JSONDecodeError, TypeError):
            cfg = DibcordConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError("Invalid configuration: " + "; ".join(errors))
    return cfg
