"""Pulse — Metric Value Codec.

Stored metric values come from several providers in different shapes:

- plain numbers:                    42.5
- numeric strings:                  "42.5", "\"162.94\"", "64.2%"
- value payloads (text or dict):    '{"value": 42.5, "sessions": 120}'
- percentage payloads:              '{"percentage": 64.8, "sessions": 4439}'

decode() turns any of them into a tagged value. It never raises: anything it
cannot read becomes Unparseable, which callers must treat as absent, not zero.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from pulse.core.logging import get_logger

logger = get_logger("engine.codec")


@dataclass(frozen=True)
class NumberValue:
    value: float


@dataclass(frozen=True)
class PercentageValue:
    pct: float
    sessions: Optional[int] = None


@dataclass(frozen=True)
class Unparseable:
    raw: Any
    reason: str = ""


MetricValue = Union[NumberValue, PercentageValue, Unparseable]


# ── Primitive helpers ──


def _to_float(value: Any) -> Optional[float]:
    """Convert a number or numeric string to a finite float, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().strip("'\"").strip()
        if cleaned.endswith("%"):
            cleaned = cleaned[:-1].strip()
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _to_count(value: Any) -> Optional[int]:
    number = _to_float(value)
    if number is None or number < 0:
        return None
    return int(round(number))


def _parse_text(text: str) -> Any:
    """Attempt a structured parse of stored text; None when it is not JSON."""
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return None


def _from_mapping(payload: Mapping[str, Any], raw: Any) -> Optional[MetricValue]:
    if "value" in payload:
        number = _to_float(payload["value"])
        if number is None:
            return Unparseable(raw, "non-numeric 'value' field")
        return NumberValue(number)
    if "percentage" in payload:
        pct = _to_float(payload["percentage"])
        if pct is None:
            return Unparseable(raw, "non-numeric 'percentage' field")
        return PercentageValue(pct, _to_count(payload.get("sessions")))
    return None


# ── Decoding ──


def decode(raw: Any) -> MetricValue:
    """Decode a stored metric value into NumberValue / PercentageValue / Unparseable."""
    if raw is None:
        return Unparseable(raw, "missing value")

    if isinstance(raw, bool):
        return Unparseable(raw, "boolean value")

    if isinstance(raw, (int, float)):
        number = _to_float(raw)
        return NumberValue(number) if number is not None else Unparseable(raw, "non-finite number")

    if isinstance(raw, Mapping):
        decoded = _from_mapping(raw, raw)
        return decoded if decoded is not None else Unparseable(raw, "no value or percentage field")

    if isinstance(raw, str):
        parsed = _parse_text(raw)
        if isinstance(parsed, Mapping):
            decoded = _from_mapping(parsed, raw)
            if decoded is not None:
                return decoded
        number = _to_float(raw)
        if number is not None:
            return NumberValue(number)
        logger.debug(f"Undecodable metric text: {raw[:100]!r}")
        return Unparseable(raw, "not numeric or structured")

    return Unparseable(raw, f"unsupported type {type(raw).__name__}")


def decode_percentage(raw: Any) -> MetricValue:
    """Decode through the distribution path.

    Percentage payloads keep their session counts; bare numbers and value
    payloads are read as a percentage with no session count.
    """
    decoded = decode(raw)
    if isinstance(decoded, NumberValue):
        return PercentageValue(decoded.value)
    return decoded


def numeric_value(decoded: MetricValue) -> Optional[float]:
    """Collapse a decoded value to a float, None when Unparseable."""
    if isinstance(decoded, NumberValue):
        return decoded.value
    if isinstance(decoded, PercentageValue):
        return decoded.pct
    return None


def read_weight(raw: Any, field: str) -> Optional[float]:
    """Read a weighting field ("sessions", "users") from a stored payload."""
    payload = raw
    if isinstance(raw, str):
        payload = _parse_text(raw)
    if not isinstance(payload, Mapping):
        return None
    return _to_float(payload.get(field))


# ── Encoding ──


def encode(decoded: MetricValue) -> dict:
    """Serialize a decoded value so that decode(encode(x)) == x."""
    if isinstance(decoded, NumberValue):
        return {"value": decoded.value}
    if isinstance(decoded, PercentageValue):
        payload: dict = {"percentage": decoded.pct}
        if decoded.sessions is not None:
            payload["sessions"] = decoded.sessions
        return payload
    raise ValueError("Unparseable values cannot be encoded")


def encode_text(decoded: MetricValue) -> str:
    """Same as encode(), as JSON text for text-typed stores."""
    return json.dumps(encode(decoded))
