"""
Telemetry Sample Codec

Validates and normalizes one emotion/attention reading before it reaches
the aggregator. Upstream model noise is expected, so out-of-range scores are
clamped rather than rejected. Only a missing session id or an unusable
timestamp makes a sample malformed.

Accepted shapes:
    flat:   {sessionId, ts, emotionLabel, emotionConfidence, attentionScore, rawSignals}
    nested: {sessionId, ts, emotion: {label, scores}, attention: {score, signals}}
snake_case spellings of every key are accepted as well.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .errors import MalformedSample
from .models import TelemetrySample

logger = logging.getLogger(__name__)


# Base attention per emotion label, scaled by model confidence when the
# client did not send an attention score of its own.
LABEL_ATTENTION: Dict[str, float] = {
    "happy": 0.8,
    "surprise": 0.9,
    "neutral": 0.7,
    "fear": 0.6,
    "angry": 0.5,
    "sad": 0.4,
    "disgust": 0.3,
}
DEFAULT_LABEL_ATTENTION = 0.5
DEFAULT_LABEL = "neutral"

# Epoch values above this are milliseconds (browser Date.now()).
EPOCH_MS_CUTOFF = 1e11


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _as_float(value: Any) -> Optional[float]:
    """Coerce to a finite float, or None if that is not possible."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a sample timestamp into an aware UTC datetime.

    Raises:
        ValueError: if the value is not a finite, parseable timestamp
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, bool) or value is None:
        raise ValueError(f"not a timestamp: {value!r}")

    if isinstance(value, (int, float)):
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"non-finite timestamp: {value!r}")
        if abs(number) > EPOCH_MS_CUTOFF:
            number /= 1000.0
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"timestamp out of range: {value!r}") from e

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp")
        number = _as_float(text)
        if number is not None:
            return parse_timestamp(number)
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parse_timestamp(parsed)

    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


def derive_attention(label: str, confidence: Optional[float]) -> float:
    """Attention estimate from the emotion label alone."""
    base = LABEL_ATTENTION.get(label.lower(), DEFAULT_LABEL_ATTENTION)
    scale = confidence if confidence is not None else 1.0
    return clamp(base * scale)


class TelemetryCodec:
    """Decodes raw telemetry payloads into ``TelemetrySample`` values."""

    def decode(self, raw: Any, index: Optional[int] = None) -> TelemetrySample:
        """
        Decode a single raw sample.

        Args:
            raw: mapping received from the client
            index: position inside the batch, carried on the error

        Raises:
            MalformedSample: missing session id or unusable timestamp
        """
        if not isinstance(raw, Mapping):
            raise MalformedSample("sample must be an object", index=index)

        session_id = _pick(raw, "sessionId", "session_id")
        if not isinstance(session_id, str) or not session_id.strip():
            raise MalformedSample("missing sessionId", index=index)

        ts_raw = _pick(raw, "ts", "timestamp")
        try:
            ts = parse_timestamp(ts_raw)
        except ValueError as e:
            raise MalformedSample(f"unparseable timestamp: {e}", index=index) from e

        emotion = raw.get("emotion") if isinstance(raw.get("emotion"), Mapping) else {}
        attention = raw.get("attention") if isinstance(raw.get("attention"), Mapping) else {}

        label = _pick(raw, "emotionLabel", "emotion_label")
        if label is None:
            label = emotion.get("label")
        label = str(label).strip() if label is not None else ""
        if not label:
            label = DEFAULT_LABEL

        confidence = _as_float(_pick(raw, "emotionConfidence", "emotion_confidence"))
        if confidence is None:
            confidence = _as_float(emotion.get("confidence"))
        if confidence is None and isinstance(emotion.get("scores"), Mapping):
            confidence = _as_float(emotion["scores"].get(label))
        if confidence is not None:
            confidence = clamp(confidence)

        score = _as_float(_pick(raw, "attentionScore", "attention_score"))
        if score is None:
            score = _as_float(attention.get("score"))
        if score is None:
            score = derive_attention(label, confidence)
            logger.debug(f"Derived attention {score:.3f} from label '{label}'")
        else:
            score = clamp(score)

        raw_signals = _pick(raw, "rawSignals", "raw_signals")
        if raw_signals is None:
            raw_signals = attention.get("signals")

        return TelemetrySample(
            session_id=session_id.strip(),
            ts=ts,
            emotion_label=label,
            emotion_confidence=confidence if confidence is not None else 0.0,
            attention_score=score,
            raw_signals=raw_signals,
        )
