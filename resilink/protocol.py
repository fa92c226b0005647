# =============================================================================
# Resilink -- Frame Codec
# =============================================================================
#
# Both directions use the same JSON envelope:
#   {"type": str, "data": any, "timestamp": int (epoch ms)}
# =============================================================================

from __future__ import annotations

import json
import math

from ._logging import logger
from .types import Envelope


def encode(envelope: Envelope) -> str:
    """Serialize an envelope to a text frame."""
    return json.dumps(
        {"type": envelope.type, "data": envelope.data, "timestamp": envelope.timestamp},
        separators=(",", ":"),
    )


def decode(raw: str | bytes) -> Envelope | None:
    """Parse a text or binary frame.

    Returns ``None`` (and logs a warning) for anything that is not a JSON
    object with a string ``type``.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        message = json.loads(raw)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        logger.warning("Dropping malformed frame: %s", exc)
        return None

    if not isinstance(message, dict):
        logger.warning("Dropping non-object frame: %r", _preview(raw))
        return None

    msg_type = message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        logger.warning("Dropping frame without a type: %r", _preview(raw))
        return None

    timestamp = message.get("timestamp")
    if _is_finite_number(timestamp):
        return Envelope(msg_type, message.get("data", {}), int(timestamp))
    return Envelope(msg_type, message.get("data", {}))


def _preview(raw: str | bytes, limit: int = 80) -> str | bytes:
    return raw[:limit]


def _is_finite_number(value: object) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)
