"""Event dispatching for polled message batches.

Compares a freshly fetched batch with the batch from the previous cycle and
routes each message to the consumer's handler as either a new message or an
edit. Unchanged messages produce no callback.
"""
import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from core.models import ChatMessage, RoomSession

logger = logging.getLogger(__name__)

IsJoined = Callable[[int], Awaitable[bool]]


class MessageHandler:
    """
    Interface for consumers of chat events.
    """

    async def on_message(self, message: ChatMessage) -> None:
        """Called when a new message is posted.

        Args:
            message: The new message
        """
        raise NotImplementedError

    async def on_message_edited(self, message: ChatMessage) -> None:
        """Called when a recently posted message is edited or deleted.

        Args:
            message: The message with its updated content
        """
        raise NotImplementedError

    async def on_error(self, room_id: int, error: Exception) -> None:
        """Called when a room could not be polled.

        This can happen if the account is kicked from the room, if the room
        is frozen, or if the network is misbehaving.

        Args:
            room_id: ID of the room
            error: What went wrong
        """
        raise NotImplementedError


def _index(batch: Optional[Iterable[ChatMessage]]) -> Dict[int, ChatMessage]:
    return {m.message_id: m for m in batch or ()}


def classify(
    message: ChatMessage,
    last_processed_id: Optional[int],
    previous: Dict[int, ChatMessage],
) -> Optional[str]:
    """Decide what kind of event a message represents.

    Edits are detected on the content as received, so a change of
    formatting alone (such as toggling fixed font) counts as an edit.

    Returns:
        "new", "edited", or None if nothing changed
    """
    if last_processed_id is None or message.message_id > last_processed_id:
        return "new"

    before = previous.get(message.message_id)
    if before is not None and before.raw_content != message.raw_content:
        return "edited"
    return None


async def dispatch_batch(
    session: RoomSession,
    batch: Iterable[ChatMessage],
    handler: MessageHandler,
    is_joined: IsJoined,
) -> bool:
    """Deliver the events in a batch to the handler.

    A handler that raises is logged and does not stop the batch. If a
    handler makes the client leave the room, the rest of the batch is
    skipped and the caller must leave the session as it was.

    Args:
        session: State of the room the batch came from
        batch: Messages from the latest fetch
        handler: Consumer callbacks
        is_joined: Coroutine reporting whether a room is still joined

    Returns:
        False if the room was left while dispatching, True if the session
        should be advanced past the batch
    """
    messages = sorted(batch, key=lambda m: m.message_id)
    previous = _index(session.last_batch)

    for message in messages:
        kind = classify(message, session.last_processed_id, previous)
        if kind is None:
            continue

        try:
            if kind == "new":
                await handler.on_message(message)
            else:
                await handler.on_message_edited(message)
        except Exception:  # pylint: disable=broad-exception-caught
            # Intentionally catch all exceptions so one misbehaving handler
            # does not stall polling for the room
            logger.exception(
                "Error in handler %s for message %s in room %s",
                handler.__class__.__name__, message.message_id, session.room_id,
            )

        if not await is_joined(session.room_id):
            logger.info(
                "Room %s was left while processing message %s, "
                "skipping the rest of the batch",
                session.room_id, message.message_id,
            )
            return False

    return True
