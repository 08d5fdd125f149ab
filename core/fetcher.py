"""Adaptive retrieval of a room's next message batch.

The transport can only return "the N most recent messages" of a room. To
see everything posted since the last poll, and to re-examine every message
that is still young enough to be edited, the fetcher keeps doubling N until
the oldest returned message is past both boundaries.
"""
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from core.models import ChatMessage

logger = logging.getLogger(__name__)

# Messages can be edited for this long after they are posted
EDIT_TIME_LIMIT = timedelta(minutes=2)
INITIAL_FETCH_COUNT = 10

GetMessages = Callable[[int], Awaitable[List[ChatMessage]]]


async def fetch_next_batch(
    get_messages: GetMessages,
    last_processed_id: Optional[int],
    now: datetime,
    edit_time_limit: timedelta = EDIT_TIME_LIMIT,
    initial_count: int = INITIAL_FETCH_COUNT,
) -> List[ChatMessage]:
    """Retrieve the messages that the next polling cycle must look at.

    At the very least every message posted within the edit window is
    returned, plus any older message newer than the processed boundary.

    Args:
        get_messages: Coroutine returning the N most recent messages, oldest first
        last_processed_id: Newest message ID already delivered, None when priming
        now: Current time, timezone-aware
        edit_time_limit: How long messages remain editable
        initial_count: First value of N

    Returns:
        Messages in chronological order
    """
    edit_window_start = now - edit_time_limit
    count = initial_count

    while True:
        messages = await get_messages(count)
        if len(messages) < count:
            # whole room history retrieved
            break

        oldest = messages[0]
        time_boundary = oldest.timestamp < edit_window_start
        id_boundary = last_processed_id is None or oldest.message_id <= last_processed_id
        if time_boundary and id_boundary:
            break

        logger.debug(
            "Boundary not reached with %s messages (time=%s, id=%s), doubling",
            count, time_boundary, id_boundary,
        )
        count *= 2

    return _trim(messages, last_processed_id, edit_window_start)


def _trim(
    messages: List[ChatMessage],
    last_processed_id: Optional[int],
    edit_window_start: datetime,
) -> List[ChatMessage]:
    """Drop leading messages that can neither be new nor still be edited."""
    for i, message in enumerate(messages):
        if message.timestamp >= edit_window_start:
            return messages[i:]
        if last_processed_id is not None and message.message_id > last_processed_id:
            return messages[i:]
    return []
