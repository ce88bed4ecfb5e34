"""
Map raw conversation and message documents onto canonical records.

Conversation documents exist in several historical shapes (participant id
array, ``participants`` array, two discrete legacy fields) and carry their
timestamps and cached previews under a handful of aliases. Everything here is
pure: no I/O, and the same input always yields an equal record.
"""

import math
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from rental_inbox.schemas.conversation import ConversationRecord


INVALID_ID_TOKENS = frozenset({"", "undefined", "null", "nan"})

LAST_ACTIVITY_FIELDS = (
    "updatedAt",
    "updated_at",
    "lastMessageAt",
    "last_message_at",
    "createdAt",
    "created_at",
)
CONVERSATION_TEXT_FIELDS = (
    "lastMessageText",
    "last_message_text",
    "lastMessage",
    "last_message",
    "lastMessageContent",
    "last_message_content",
    "last_message_preview",
)
CONVERSATION_TYPE_FIELDS = ("lastMessageType", "last_message_type")

MESSAGE_TEXT_FIELDS = (
    "content",
    "text",
    "message",
    "body",
    "lastMessageText",
    "last_message_text",
)
MESSAGE_TYPE_FIELDS = ("message_type", "messageType")
MESSAGE_TIMESTAMP_FIELDS = ("created_at", "createdAt", "sentAt", "timestamp")

MESSAGE_TYPE_LABELS = {
    "audio": "Voice message",
    "voice": "Voice message",
    "image": "Image",
    "file": "File",
    "location": "Location",
}


ParticipantExtractor = Callable[[Mapping[str, Any]], Sequence[Any]]


def _array_field(name: str) -> ParticipantExtractor:
    def extract(doc: Mapping[str, Any]) -> Sequence[Any]:
        value = doc.get(name)
        if isinstance(value, (list, tuple)):
            return value
        return ()

    extract.__name__ = f"extract_{name}"
    return extract


def _legacy_pair(doc: Mapping[str, Any]) -> Sequence[Any]:
    return (doc.get("participant1_id"), doc.get("participant2_id"))


# Candidates from every extractor are unioned, in this order. Partially
# migrated documents can carry ids in more than one shape at once.
PARTICIPANT_EXTRACTORS: Tuple[ParticipantExtractor, ...] = (
    _array_field("participantIds"),
    _array_field("participants"),
    _legacy_pair,
)


def clean_participant_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if text.lower() in INVALID_ID_TOKENS:
        return None
    return text


def extract_participant_ids(doc: Mapping[str, Any]) -> Tuple[str, ...]:
    seen: List[str] = []
    for extractor in PARTICIPANT_EXTRACTORS:
        for candidate in extractor(doc):
            participant_id = clean_participant_id(candidate)
            if participant_id is not None and participant_id not in seen:
                seen.append(participant_id)
    return tuple(seen)


def _as_millis(number: Any) -> Optional[int]:
    if isinstance(number, bool) or not isinstance(number, (int, float)):
        return None
    if isinstance(number, float) and not math.isfinite(number):
        return None
    return int(number)


def to_epoch_millis(value: Any) -> Optional[int]:
    """
    Convert a stored timestamp into epoch milliseconds.

    Supported encodings, first match wins:
    - plain number (already milliseconds)
    - object with ``to_millis()`` / ``toMillis()``
    - ``datetime`` (BSON dates come back naive, in UTC)
    - object or mapping exposing ``seconds``
    """
    if value is None:
        return None
    millis = _as_millis(value)
    if millis is not None:
        return millis

    for method_name in ("to_millis", "toMillis"):
        method = getattr(value, method_name, None)
        if callable(method):
            return _as_millis(method())

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)

    if isinstance(value, Mapping):
        seconds = value.get("seconds")
    else:
        seconds = getattr(value, "seconds", None)
    if _as_millis(seconds) is not None:
        return _as_millis(seconds * 1000)
    return None


def first_timestamp(doc: Mapping[str, Any], fields: Iterable[str]) -> Optional[int]:
    for field in fields:
        millis = to_epoch_millis(doc.get(field))
        if millis is not None:
            return millis
    return None


def extract_preview_text(
    doc: Mapping[str, Any],
    text_fields: Iterable[str],
    type_fields: Iterable[str],
) -> Optional[str]:
    for field in text_fields:
        value = doc.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()

    for field in type_fields:
        value = doc.get(field)
        if value is None:
            continue
        return MESSAGE_TYPE_LABELS.get(str(value).strip().lower())
    return None


def extract_message_preview(doc: Mapping[str, Any]) -> Optional[str]:
    text = extract_preview_text(doc, MESSAGE_TEXT_FIELDS, MESSAGE_TYPE_FIELDS)
    if text is not None:
        return text
    media = doc.get("media")
    if isinstance(media, (list, tuple)) and media:
        return "Media message"
    attachment_url = doc.get("attachment_url")
    if isinstance(attachment_url, str) and attachment_url:
        return "Attachment"
    return None


def extract_message_timestamp(doc: Mapping[str, Any]) -> Optional[int]:
    return first_timestamp(doc, MESSAGE_TIMESTAMP_FIELDS)


def _unread_counts(doc: Mapping[str, Any]) -> Optional[dict[str, int]]:
    counters = doc.get("unreadCountByUser")
    if not isinstance(counters, Mapping):
        counters = doc.get("unread_counters")
    if not isinstance(counters, Mapping):
        return None
    return {
        str(user_id): count
        for user_id, count in counters.items()
        if isinstance(count, int) and not isinstance(count, bool)
    }


def normalize_conversation(doc: Mapping[str, Any], doc_id: Any = None) -> Optional[ConversationRecord]:
    """Return the canonical record, or None when fewer than two valid participants remain."""
    raw_id = doc_id if doc_id is not None else doc.get("_id", doc.get("id"))
    if raw_id is None:
        return None
    participant_ids = extract_participant_ids(doc)
    if len(participant_ids) < 2:
        return None
    return ConversationRecord(
        id=str(raw_id),
        participant_ids=participant_ids,
        preview_text=extract_preview_text(doc, CONVERSATION_TEXT_FIELDS, CONVERSATION_TYPE_FIELDS),
        last_activity_at=first_timestamp(doc, LAST_ACTIVITY_FIELDS),
        unread_count_by_user=_unread_counts(doc),
    )


def normalize_conversations(docs: Iterable[Mapping[str, Any]]) -> List[ConversationRecord]:
    records = []
    for doc in docs:
        record = normalize_conversation(doc)
        if record is not None:
            records.append(record)
    return records
