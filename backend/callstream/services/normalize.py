from __future__ import annotations

import itertools
import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Set

import pandas as pd
import structlog

logger = structlog.get_logger(__name__)

INBOUND = "inbound"
OUTBOUND = "outbound"

_DIRECTION_ALIASES = {
    "inbound": INBOUND,
    "incoming": INBOUND,
    "in": INBOUND,
    "outbound": OUTBOUND,
    "outgoing": OUTBOUND,
    "out": OUTBOUND,
}

BINARY_FIELDS = frozenset({"binary_data", "audio_data", "file_data"})
BINARY_MARKER = "[removed - binary data]"
TRUNCATION_SUFFIX = "... [truncated]"
DEPTH_MARKER = "[max depth exceeded]"
CYCLE_MARKER = "[circular reference]"

# bounds of a 32-bit INTEGER column
_INT_MIN = -(2 ** 31)
_INT_MAX = 2 ** 31 - 1

# flat charge per emitted node (punctuation, separators)
_NODE_OVERHEAD = 4


# ---------------------------------------------------------------------------
# Direction
# ---------------------------------------------------------------------------

def normalize_direction(raw: Any) -> Optional[str]:
    """Map provider direction spellings onto ``inbound``/``outbound``.

    Empty input yields None quietly; anything unrecognized yields None and a
    warning so new provider spellings show up in the logs.
    """
    if raw is None:
        return None
    text = str(raw).strip().lower()
    if not text:
        return None
    direction = _DIRECTION_ALIASES.get(text)
    if direction is None:
        logger.warning("normalize_direction.unrecognized", value=str(raw)[:64])
    return direction


# ---------------------------------------------------------------------------
# Sanitizer
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SanitizeLimits:
    max_text_chars: int = 500
    max_array_items: int = 10
    max_object_keys: int = 20
    sample_keys: int = 5
    max_depth: int = 5
    max_key_chars: int = 64
    max_total_chars: int = 20000

    @classmethod
    def from_settings(cls, settings: Any) -> "SanitizeLimits":
        return cls(
            max_text_chars=settings.SANITIZE_MAX_TEXT_CHARS,
            max_array_items=settings.SANITIZE_MAX_ARRAY_ITEMS,
            max_object_keys=settings.SANITIZE_MAX_OBJECT_KEYS,
            sample_keys=settings.SANITIZE_SAMPLE_KEYS,
            max_depth=settings.SANITIZE_MAX_DEPTH,
            max_total_chars=settings.SANITIZE_MAX_TOTAL_CHARS,
        )


DEFAULT_LIMITS = SanitizeLimits()


class _Budget:
    def __init__(self, total: int) -> None:
        self.remaining = total

    def charge(self, amount: int) -> None:
        self.remaining -= amount

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def sanitize_payload(payload: Any, limits: Optional[SanitizeLimits] = None) -> Any:
    """
    Return a bounded, JSON-safe copy of ``payload`` for storage next to an entity.

    - strings longer than ``max_text_chars`` are cut and suffixed
    - binary fields, bytes and base64 data URIs are replaced by a marker
    - arrays keep ``max_array_items`` items plus a truncation marker
    - objects with more than ``max_object_keys`` keys collapse to a key sample
    - nesting deeper than ``max_depth`` and reference cycles become markers
    - a global character budget stops the walk once it runs out

    Deterministic for a given input and limits; never raises.
    """
    limits = limits or DEFAULT_LIMITS
    budget = _Budget(limits.max_total_chars)
    try:
        return _sanitize(payload, limits, budget, 0, set())
    except Exception as exc:  # noqa: BLE001 - sanitizing must never fail the caller
        logger.warning("sanitize_payload.failed", error=str(exc), exc_type=type(exc).__name__)
        return {"_truncated": True, "_error": "payload could not be sanitized"}


def _json_len(text: str) -> int:
    return len(json.dumps(text))


def _sanitize_text(text: str, limits: SanitizeLimits, budget: _Budget) -> str:
    if text.startswith("data:") and ";base64," in text[:128]:
        budget.charge(len(BINARY_MARKER))
        return BINARY_MARKER
    if len(text) > limits.max_text_chars:
        text = text[: limits.max_text_chars] + TRUNCATION_SUFFIX
    budget.charge(_json_len(text))
    return text


def _clip_key(key: Any, limits: SanitizeLimits) -> str:
    text = key if isinstance(key, str) else str(key)
    return text[: limits.max_key_chars]


def _sanitize(value: Any, limits: SanitizeLimits, budget: _Budget, depth: int, seen: Set[int]) -> Any:
    budget.charge(_NODE_OVERHEAD)

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return _sanitize_text(value, limits, budget)
    if isinstance(value, (bytes, bytearray, memoryview)):
        budget.charge(len(BINARY_MARKER))
        return BINARY_MARKER
    if isinstance(value, (datetime, date)):
        return _sanitize_text(value.isoformat(), limits, budget)

    if isinstance(value, Mapping):
        if depth > limits.max_depth:
            return DEPTH_MARKER
        if id(value) in seen:
            return CYCLE_MARKER
        return _sanitize_mapping(value, limits, budget, depth, seen)

    if isinstance(value, (list, tuple, set, frozenset)):
        if depth > limits.max_depth:
            return DEPTH_MARKER
        if id(value) in seen:
            return CYCLE_MARKER
        return _sanitize_sequence(value, limits, budget, depth, seen)

    return _sanitize_text(str(value), limits, budget)


def _sanitize_mapping(
    value: Mapping, limits: SanitizeLimits, budget: _Budget, depth: int, seen: Set[int]
) -> Dict[str, Any]:
    total = len(value)
    if total > limits.max_object_keys:
        sample = [_clip_key(k, limits) for k in itertools.islice(value.keys(), limits.sample_keys)]
        budget.charge(sum(_json_len(k) for k in sample) + 48)
        return {"_truncated": True, "sample_keys": sample, "total_keys": total}

    seen.add(id(value))
    out: Dict[str, Any] = {}
    try:
        for raw_key, item in value.items():
            if budget.exhausted:
                out["_truncated"] = True
                break
            key = _clip_key(raw_key, limits)
            budget.charge(_json_len(key) + 1)
            if key.lower() in BINARY_FIELDS:
                budget.charge(len(BINARY_MARKER))
                out[key] = BINARY_MARKER
                continue
            out[key] = _sanitize(item, limits, budget, depth + 1, seen)
    finally:
        seen.discard(id(value))
    return out


def _sanitize_sequence(
    value: Any, limits: SanitizeLimits, budget: _Budget, depth: int, seen: Set[int]
) -> list:
    total = len(value)
    if isinstance(value, (set, frozenset)):
        items = itertools.islice(sorted(value, key=repr), limits.max_array_items)
    else:
        items = itertools.islice(value, limits.max_array_items)

    seen.add(id(value))
    out: list = []
    try:
        for item in items:
            if budget.exhausted:
                out.append({"_truncated": True, "original_length": total})
                return out
            out.append(_sanitize(item, limits, budget, depth + 1, seen))
    finally:
        seen.discard(id(value))

    if total > limits.max_array_items:
        budget.charge(48)
        out.append({"_truncated": True, "original_length": total})
    return out


# ---------------------------------------------------------------------------
# Tolerant field coercion
# ---------------------------------------------------------------------------

def first_present(*candidates: Any) -> Any:
    """First candidate that is neither None nor an empty string."""
    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, str) and not candidate.strip():
            continue
        return candidate
    return None


def dig(source: Any, *path: str) -> Any:
    """Walk nested mappings; any missing or non-mapping hop yields None."""
    current = source
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def coerce_id(value: Any) -> Optional[str]:
    """Provider ids arrive as ints or strings; store them as strings (42 -> "42")."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        if value.is_integer():
            return str(int(value))
    if isinstance(value, (Mapping, list, tuple, set)):
        return None
    text = str(value).strip()
    return text or None


def coerce_text(value: Any, max_chars: int = 255) -> Optional[str]:
    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return None
    text = str(value).strip()
    return text[:max_chars] or None


def coerce_int(value: Any) -> Optional[int]:
    """Lenient integer read; non-scalars, non-finite and out-of-range values yield None."""
    if value is None or isinstance(value, (bool, Mapping, list, tuple, set, bytes, bytearray)):
        return None
    try:
        num = float(pd.to_numeric(value, errors="coerce"))
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    result = int(round(num))
    if result < _INT_MIN or result > _INT_MAX:
        logger.warning("coerce_int.out_of_range", value=str(value)[:64])
        return None
    return result


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """ISO strings, epoch seconds and epoch milliseconds -> aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        if isinstance(value, (int, float)):
            unit = "ms" if abs(value) > 1e11 else "s"
            ts = pd.to_datetime(value, unit=unit, utc=True, errors="coerce")
        else:
            text = str(value).strip()
            if not text:
                return None
            ts = pd.to_datetime(text, utc=True, errors="coerce")
    except (TypeError, ValueError, OverflowError):
        return None
    if pd.isna(ts):
        return None
    return ts.to_pydatetime()


def seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return min(_INT_MAX, max(0, int(round((as_utc(end) - as_utc(start)).total_seconds()))))
