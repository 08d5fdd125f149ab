"""Data models for chat messages and per-room polling state.

Defines the ChatMessage value type, the RoomSession state that the polling
loop keeps for every joined room, and parsing utilities for the JSON
payloads returned by the chat transport.
"""
import html
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.errors import MalformedResponseError

_FIXED_FONT_RE = re.compile(r"^<pre class='(?:full|partial)'>(.*?)</pre>$", re.DOTALL)
_MULTI_LINE_RE = re.compile(r"^<div class='(?:full|partial)'>(.*?)</div>$", re.DOTALL)


@dataclass(frozen=True)
class ChatMessage:  # pylint: disable=too-many-instance-attributes
    """Represents a single chat message as returned by the transport.

    Attributes:
        room_id: ID of the room the message was posted in
        message_id: Transport-assigned ID, unique and increasing within a room
        user_id: ID of the author
        username: Display name of the author
        timestamp: When the message was posted (UTC)
        content: Message text with HTML entities and wrapper markup removed
        raw_content: Content exactly as received, None if the message was deleted
        fixed_font: Whether the message is formatted in a monospace font
        edits: Number of times the message has been edited
    """
    room_id: int
    message_id: int
    user_id: int
    username: str
    timestamp: datetime
    content: Optional[str]
    raw_content: Optional[str] = None
    fixed_font: bool = False
    edits: int = 0


@dataclass
class RoomSession:
    """Mutable polling state for one joined room.

    Attributes:
        room_id: ID of the room
        fkey: Anti-forgery token used on every mutating request
        last_processed_id: Highest message ID already delivered, None if unknown
        last_batch: Messages returned by the most recent fetch, for edit diffing
    """
    room_id: int
    fkey: str
    last_processed_id: Optional[int] = None
    last_batch: Optional[Tuple[ChatMessage, ...]] = field(default=None)

    def advance(self, batch: Iterable[ChatMessage]) -> None:
        """Record a successfully processed batch.

        The processed boundary only moves forward; an empty batch leaves it
        where it was.
        """
        messages = tuple(batch)
        if messages:
            newest = messages[-1].message_id
            if self.last_processed_id is None or newest > self.last_processed_id:
                self.last_processed_id = newest
        self.last_batch = messages


def parse_content(raw: Optional[str]) -> Tuple[Optional[str], bool]:
    """Strip the transport's wrapper markup from message content.

    Returns:
        Tuple of (content, fixed_font)
    """
    if raw is None:
        return None, False

    m = _FIXED_FONT_RE.match(raw)
    if m:
        return html.unescape(m.group(1)), True

    m = _MULTI_LINE_RE.match(raw)
    if m:
        return html.unescape(m.group(1)), False

    return html.unescape(raw), False


def parse_chat_message(event: Dict[str, Any]) -> ChatMessage:
    """Parse one element of an ``events`` array into a ChatMessage.

    Args:
        event: Raw event dictionary from the transport

    Raises:
        MalformedResponseError: if required fields are missing or invalid
    """
    if not isinstance(event, dict):
        raise MalformedResponseError(f"Chat event is not a JSON object: {event!r}")

    raw = event.get("content")
    if raw is not None and not isinstance(raw, str):
        raise MalformedResponseError(f"Invalid content in chat event: {event!r}")
    content, fixed_font = parse_content(raw)

    try:
        return ChatMessage(
            room_id=int(event.get("room_id") or 0),
            message_id=int(event["message_id"]),
            user_id=int(event.get("user_id") or 0),
            username=str(event.get("user_name") or ""),
            timestamp=datetime.fromtimestamp(int(event["time_stamp"]), tz=timezone.utc),
            content=content,
            raw_content=raw,
            fixed_font=fixed_font,
            edits=int(event.get("edits") or 0),
        )
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedResponseError(f"Invalid chat event: {event!r}") from e


def parse_messages_response(data: Any) -> List[ChatMessage]:
    """Parse the body of a messages-window request.

    Args:
        data: Decoded JSON body, expected to look like ``{"events": [...]}``

    Returns:
        Messages in chronological order
    """
    if not isinstance(data, dict):
        raise MalformedResponseError("Messages response is not a JSON object")

    events = data.get("events")
    if events is None:
        return []
    if not isinstance(events, list):
        raise MalformedResponseError("'events' field is not a list")

    messages = [parse_chat_message(e) for e in events]
    messages.sort(key=lambda m: m.message_id)
    return messages
