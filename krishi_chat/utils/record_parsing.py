"""Tolerant parsing of backend records whose field names vary.

Each logical field has an ordered list of candidate names; the first present
non-empty value wins.
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from krishi_chat.chat_models import ChatMessage, DeliveryStatus, Direction

TEXT_FIELDS = ("message", "text", "body", "content")
SENDER_ID_FIELDS = ("senderId", "senderUserId", "fromId", "fromUserId", "userId", "creatorId")
SENDER_NAME_FIELDS = ("senderName", "fromName")
TIMESTAMP_FIELDS = ("sentAt", "createdAt", "timestamp")
COUNTERPART_ID_FIELDS = ("farmerId", "userId", "id")

# Envelopes larger than this are real content, not a wrapped scalar
_MAX_ENVELOPE_LENGTH = 800
# .NET emits up to 7 fractional digits; datetime accepts 6
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def first_present(record: dict, fields: Iterable[str]) -> Any:
    """Value of the first field in ``fields`` that is present and not empty."""
    for name in fields:
        value = record.get(name)
        if value is not None and value != "":
            return value
    return None


def clean_envelope(raw: Any) -> Any:
    """Unwrap JSON envelopes like ``{"success": true, "data": "Ram Pande"}``.

    Non-string input and strings that are not a small JSON object are
    returned unchanged.
    """
    if not isinstance(raw, str):
        return raw
    trimmed = raw.strip()
    if not trimmed.startswith("{") or len(trimmed) > _MAX_ENVELOPE_LENGTH:
        return raw
    try:
        obj = json.loads(trimmed)
    except json.JSONDecodeError:
        return raw
    if isinstance(obj, dict):
        data = obj.get("data")
        if isinstance(data, str) and data.strip():
            return data.strip()
        message = obj.get("message")
        if isinstance(message, str) and message.strip() and "data" not in obj:
            return message.strip()
    return raw


def strip_quotes(value: str) -> str:
    """Remove one pair of surrounding quotes left by text/plain JSON strings."""
    return re.sub(r"^['\"]|['\"]$", "", value.strip()).strip()


def unwrap_list(body: Any) -> list:
    """The list in ``body`` itself or in its ``data`` field, else empty."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        return body["data"]
    return []


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings and epoch numbers (seconds or milliseconds) as UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = _FRACTION_RE.sub(r"\1", value.strip())
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def initials(name: Optional[str]) -> str:
    """Up to two upper-case initials of a display name, ``?`` if there is none."""
    if not name or not name.strip():
        return "?"
    return "".join(part[0].upper() for part in name.strip().split()[:2])


def parse_counterpart_ids(body: Any) -> List[str]:
    """Non-empty string ids from a list or ``{"data": [...]}`` body."""
    return [v for v in unwrap_list(body) if isinstance(v, str) and v]


def parse_counterpart_id(body: Any) -> Optional[str]:
    """A single counterpart id from a string, list or object body."""
    if isinstance(body, str):
        return strip_quotes(body) or None
    if isinstance(body, list):
        return str(body[0]) if body else None
    if isinstance(body, dict):
        value = first_present(body, COUNTERPART_ID_FIELDS)
        if value is None and isinstance(body.get("data"), dict):
            value = body["data"].get("farmerId")
        if value is None and isinstance(body.get("data"), str):
            value = body["data"]
        return str(value) if value else None
    return None


def normalize_history_record(
    record: Any,
    *,
    local_user_id: str,
    local_display_name: str,
    counterpart_display_name: Optional[str] = None,
) -> Optional[ChatMessage]:
    """Map one heterogeneous history record to a ChatMessage.

    Returns None for records that are not objects or carry no text.
    """
    if not isinstance(record, dict):
        return None
    raw_text = first_present(record, TEXT_FIELDS)
    text = clean_envelope(str(raw_text)) if raw_text is not None else ""
    if not isinstance(text, str) or not text.strip():
        return None

    sender = first_present(record, SENDER_ID_FIELDS)
    sender_id = str(sender) if sender is not None else None
    is_own = sender_id is not None and sender_id == str(local_user_id)
    if is_own:
        display_name = local_display_name
    else:
        display_name = first_present(record, SENDER_NAME_FIELDS) or counterpart_display_name or "Unknown"

    return ChatMessage(
        sender_id=sender_id,
        sender_display_name=str(display_name),
        text=text,
        direction=Direction.OWN if is_own else Direction.COUNTERPART,
        delivery_status=DeliveryStatus.SENT,
        timestamp=parse_timestamp(first_present(record, TIMESTAMP_FIELDS)),
    )
