"""Exception hierarchy for the chat synchronization engine.

Transient problems (network glitches, rate limits, HTML error pages) are
handled inside the request executor and only escape as RequestFailedError
once the attempt budget is spent. Room-level failures are raised directly.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the chat engine."""


class RoomNotFoundError(ChatError):
    """The room does not exist (or is hidden from the logged-in account)."""

    def __init__(self, room_id: int) -> None:
        super().__init__(f"Room {room_id} does not exist.")
        self.room_id = room_id


class RoomPermissionError(ChatError):
    """The room exists but messages cannot be posted to it.

    The room may be frozen or protected, or the account may have been
    banned from it.
    """

    def __init__(self, room_id: int) -> None:
        super().__init__(
            f"Cannot post messages to room {room_id} because it's frozen or "
            "protected, or because the account was banned from the room."
        )
        self.room_id = room_id


class MalformedResponseError(ChatError):
    """A response body could not be parsed into the expected structure."""


class RequestFailedError(ChatError):
    """A request could not be completed within its attempt budget.

    Attributes:
        description: Method and URL of the request
        attempts: Number of attempts that were made
    """

    def __init__(self, description: str, attempts: int) -> None:
        super().__init__(
            f"Request could not be sent after {attempts} attempts [{description}]."
        )
        self.description = description
        self.attempts = attempts


class RoomOperationError(ChatError):
    """A room-scoped operation failed; wraps the underlying cause."""

    action = "operate on"

    def __init__(self, room_id: int, cause: Optional[BaseException] = None) -> None:
        message = f"Could not {self.action} room {room_id}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
        self.room_id = room_id
        self.cause = cause


class FetchFailedError(RoomOperationError):
    """Retrieving a room's messages failed during a polling cycle."""

    action = "fetch messages from"


class SendFailedError(RoomOperationError):
    """Posting a message to a room failed."""

    action = "send a message to"
