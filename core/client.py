"""Trio-friendly polling client for Stack Exchange chat.

Polling Strategy:
----------------
The chat service offers no push channel that this client uses, so new
messages are discovered by polling every joined room once per heartbeat:

1. Priming: joining a room fetches the recent tail of the room once, so the
   first real poll does not replay old history as new messages.

2. Polling: each heartbeat, the message batch fetcher grows its request
   size until it has everything posted since the last poll as well as every
   message still young enough to be edited.

3. Dispatching: the fresh batch is compared with the previous one; messages
   above the processed boundary are new, messages whose content changed are
   edits.

4. Isolation: a room that fails to poll is reported to the handler and the
   loop moves on to the next room.

All room state lives in one dict guarded by a single trio.Lock. Network I/O
never happens while the lock is held.
"""
import logging
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import httpx
import trio

from core.dispatcher import MessageHandler, dispatch_batch
from core.errors import (
    ChatError,
    FetchFailedError,
    MalformedResponseError,
    RequestFailedError,
    RoomNotFoundError,
    RoomPermissionError,
    SendFailedError,
)
from core.fetcher import EDIT_TIME_LIMIT, fetch_next_batch
from core.http import RequestExecutor, Sleep
from core.models import ChatMessage, RoomSession, parse_messages_response
from core.retry import RetryPolicy
from utils.parsing import can_post_to_room, parse_fkey
from utils.splitting import SplitStrategy, split_none

if TYPE_CHECKING:
    from config import ChatSettings

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
HEARTBEAT_SECONDS = 3.0
MESSAGES_FETCH_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatClient:  # pylint: disable=too-many-instance-attributes
    """
    Polling connection to a Stack Exchange chat server.
    The HTTP client must already carry the cookies of a logged-in account.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        http: httpx.AsyncClient,
        site: str = "stackoverflow.com",
        *,
        policy: Optional[RetryPolicy] = None,
        heartbeat: float = HEARTBEAT_SECONDS,
        edit_time_limit: timedelta = EDIT_TIME_LIMIT,
        sleep: Sleep = trio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._http = http
        self._executor = RequestExecutor(http, policy, sleep)
        self.base_url = f"https://chat.{site}"
        self.heartbeat = heartbeat
        self.edit_time_limit = edit_time_limit
        self._now = now

        self._sessions: Dict[int, RoomSession] = {}
        # fkeys stay valid for the whole login session, so they outlive rooms
        self._fkeys: Dict[int, str] = {}
        self._lock = trio.Lock()
        self._stopping = trio.Event()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: "ChatSettings") -> "ChatClient":
        """Create a ChatClient with its own HTTP client from loaded settings."""
        http = httpx.AsyncClient(
            cookies=settings.cookies,
            headers={"User-Agent": settings.user_agent},
            timeout=settings.request_timeout,
        )
        return cls(
            http,
            settings.site,
            policy=settings.retry,
            heartbeat=settings.heartbeat,
            edit_time_limit=settings.edit_time_limit,
        )

    # ------------------------------------------------------------------ #
    # Room membership
    # ------------------------------------------------------------------ #

    async def rooms(self) -> List[int]:
        """Snapshot of the IDs of the rooms being polled."""
        async with self._lock:
            return list(self._sessions)

    async def is_in_room(self, room_id: int) -> bool:
        async with self._lock:
            return room_id in self._sessions

    async def join_room(self, room_id: int) -> RoomSession:
        """Join a room and start polling it.

        Args:
            room_id: ID of the room to join

        Returns:
            The room's session

        Raises:
            RoomNotFoundError: if the room does not exist
            RoomPermissionError: if messages cannot be posted to the room
            FetchFailedError: if the room page or the room's messages could not
                be retrieved
            RuntimeError: if the client has been closed
        """
        self._check_open()

        async with self._lock:
            existing = self._sessions.get(room_id)
        if existing is not None:
            return existing

        try:
            fkey = await self._get_fkey(room_id)
            messages = await fetch_next_batch(
                partial(self.get_messages, room_id),
                None,
                self._now(),
                self.edit_time_limit,
            )
        except (RequestFailedError, MalformedResponseError) as e:
            raise FetchFailedError(room_id, e) from e

        session = RoomSession(room_id=room_id, fkey=fkey)
        session.advance(messages)

        async with self._lock:
            session = self._sessions.setdefault(room_id, session)

        logger.info(
            "Joined room %s (last message id=%s, %s recent messages)",
            room_id, session.last_processed_id, len(messages),
        )
        return session

    async def leave_room(self, room_id: int) -> None:
        """Stop polling a room and tell the server the account left it."""
        async with self._lock:
            session = self._sessions.pop(room_id, None)
        if session is None:
            return

        logger.info("Leaving room %s", room_id)

        # Leaving only removes the account's avatar from the room's user
        # list, so a failure here is not worth surfacing.
        try:
            await self._executor.execute(
                "POST",
                f"{self.base_url}/chats/leave/{room_id}",
                data={"quiet": "true", "fkey": session.fkey},
                attempts=1,
            )
        except ChatError:
            logger.exception("Problem leaving room %s", room_id)

    # ------------------------------------------------------------------ #
    # Messages
    # ------------------------------------------------------------------ #

    async def get_messages(self, room_id: int, count: int) -> List[ChatMessage]:
        """Get the most recent messages of a room.

        Args:
            room_id: ID of the room
            count: Number of messages to retrieve

        Returns:
            Up to ``count`` messages, oldest first
        """
        fkey = await self._get_fkey(room_id)
        response = await self._executor.execute(
            "POST",
            f"{self.base_url}/chats/{room_id}/events",
            data={"mode": "messages", "msgCount": str(count), "fkey": fkey},
            attempts=MESSAGES_FETCH_ATTEMPTS,
            status_codes={200},
            expect_json=True,
        )
        if response.is_not_found:
            raise RoomNotFoundError(room_id)
        return parse_messages_response(response.data)

    async def send_message(
        self,
        room_id: int,
        text: str,
        split_strategy: SplitStrategy = split_none,
    ) -> List[int]:
        """Post a message to a room.

        Messages containing newlines have no length limit and are never
        split; other messages are split with ``split_strategy``.

        Returns:
            IDs of the posted messages, one per chunk

        Raises:
            RoomNotFoundError: if the room does not exist
            RoomPermissionError: if messages cannot be posted to the room
            SendFailedError: if a chunk could not be posted
        """
        fkey = await self._get_fkey(room_id)
        parts = [text] if "\n" in text else split_strategy(text, MAX_MESSAGE_LENGTH)

        message_ids: List[int] = []
        for part in parts:
            logger.info("Posting message to room %s: %s", room_id, part)
            try:
                response = await self._executor.execute(
                    "POST",
                    f"{self.base_url}/chats/{room_id}/messages/new",
                    data={"text": part, "fkey": fkey},
                    status_codes={200},
                    expect_json=True,
                )
            except RequestFailedError as e:
                raise SendFailedError(room_id, e) from e

            if response.is_not_found:
                # The room had an fkey, so it exists. A 404 here means
                # permission to post was revoked.
                raise RoomPermissionError(room_id)

            try:
                message_ids.append(int(response.data["id"]))
            except (KeyError, TypeError, ValueError) as e:
                raise SendFailedError(
                    room_id, MalformedResponseError(f"No message id in {response.body!r}")
                ) from e

        return message_ids

    async def edit_message(self, room_id: int, message_id: int, text: str) -> bool:
        """Edit one of the account's own messages.

        Returns:
            True if the edit was accepted
        """
        fkey = await self._get_fkey(room_id)
        response = await self._executor.execute(
            "POST",
            f"{self.base_url}/messages/{message_id}",
            data={"text": text, "fkey": fkey},
            status_codes={200},
        )
        if response.body == '"ok"':
            return True
        logger.warning("Failed to edit message_id=%s: %s", message_id, response.body)
        return False

    async def delete_message(self, room_id: int, message_id: int) -> bool:
        """Delete one of the account's own messages.

        Returns:
            True if the message was deleted
        """
        fkey = await self._get_fkey(room_id)
        response = await self._executor.execute(
            "POST",
            f"{self.base_url}/messages/{message_id}/delete",
            data={"fkey": fkey},
            status_codes={200, 302},
        )
        if response.status_code == 302:
            # message ID never existed
            logger.warning("Cannot delete message_id=%s: no such message", message_id)
            return False
        if response.body == '"ok"':
            return True
        logger.warning("Failed to delete message_id=%s: %s", message_id, response.body)
        return False

    # ------------------------------------------------------------------ #
    # Polling loop
    # ------------------------------------------------------------------ #

    async def listen(self, handler: MessageHandler) -> None:
        """Poll every joined room until stop() or close() is called.

        Handler callbacks are awaited on the polling task, in chronological
        order per room. A stopped client can listen again; a closed one
        cannot.

        Raises:
            RuntimeError: if the client has been closed
        """
        self._check_open()
        stopping = self._stopping = trio.Event()

        logger.info("Listening for messages (heartbeat=%ss)", self.heartbeat)
        while not stopping.is_set():
            start = trio.current_time()
            await self.poll_once(handler)

            elapsed = trio.current_time() - start
            delay = max(0.0, self.heartbeat - elapsed)
            if delay > 0:
                with trio.move_on_after(delay):
                    await stopping.wait()
        logger.info("Stopped listening for messages")

    async def poll_once(self, handler: MessageHandler) -> None:
        """Run one polling cycle over a snapshot of the joined rooms."""
        for room_id in await self.rooms():
            await self._poll_room(room_id, handler)

    async def _poll_room(self, room_id: int, handler: MessageHandler) -> None:
        async with self._lock:
            session = self._sessions.get(room_id)
        if session is None:
            # left by another task since the snapshot was taken
            return

        logger.debug("Pinging room %s", room_id)
        try:
            batch = await fetch_next_batch(
                partial(self.get_messages, room_id),
                session.last_processed_id,
                self._now(),
                self.edit_time_limit,
            )
        except ChatError as e:
            await self._report_error(handler, room_id, FetchFailedError(room_id, e))
            return

        completed = await dispatch_batch(session, batch, handler, self.is_in_room)
        if not completed:
            return

        async with self._lock:
            if self._sessions.get(room_id) is session:
                session.advance(batch)

    async def _report_error(
        self, handler: MessageHandler, room_id: int, error: Exception
    ) -> None:
        logger.error("Error polling room %s: %s", room_id, error)
        try:
            await handler.on_error(room_id, error)
        except Exception:  # pylint: disable=broad-exception-caught
            # Intentionally catch all exceptions to keep the polling loop alive
            logger.exception("Error in handler %s on_error", handler.__class__.__name__)

    def stop(self) -> None:
        """Ask the running polling loop to exit after the current cycle."""
        self._stopping.set()

    async def close(self) -> None:
        """Stop polling, leave every room and release the HTTP client."""
        self._closed = True
        self.stop()

        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        if sessions:
            try:
                await self._executor.execute(
                    "POST",
                    f"{self.base_url}/chats/leave/all",
                    data={"quiet": "true", "fkey": sessions[0].fkey},
                    attempts=1,
                )
            except ChatError:
                logger.exception("Problem leaving all rooms")

        await self._http.aclose()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("ChatClient has been closed")

    async def _get_fkey(self, room_id: int) -> str:
        """Get the anti-forgery token for a room, loading the room page once.

        Raises:
            RoomNotFoundError: if the room does not exist
            RoomPermissionError: if messages cannot be posted to the room
        """
        async with self._lock:
            fkey = self._fkeys.get(room_id)
        if fkey is not None:
            return fkey

        response = await self._executor.execute(
            "GET", f"{self.base_url}/rooms/{room_id}", status_codes={200}
        )
        if response.is_not_found:
            raise RoomNotFoundError(room_id)

        fkey = parse_fkey(response.body)
        if fkey is None:
            raise MalformedResponseError(f"Could not get fkey of room {room_id}.")

        if not can_post_to_room(response.body):
            raise RoomPermissionError(room_id)

        async with self._lock:
            self._fkeys[room_id] = fkey
        return fkey
