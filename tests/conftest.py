"""Shared fixtures: an in-memory chat server behind httpx.MockTransport."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import pytest

from core.client import ChatClient
from core.dispatcher import MessageHandler
from core.models import ChatMessage
from core.retry import RetryPolicy

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
FKEY = "0123456789abcdef0123456789abcdef"


def room_page(fkey: str = FKEY, can_post: bool = True) -> str:
    textarea = '<textarea id="input"></textarea>' if can_post else ""
    return (
        "<html><body>"
        f'<input id="fkey" name="fkey" type="hidden" value="{fkey}" />'
        f"<div id='chat'></div>{textarea}"
        "</body></html>"
    )


def make_message(
    message_id: int,
    age_seconds: float,
    content: Optional[str] = "hello",
    room_id: int = 1,
    raw_content: Optional[str] = None,
) -> ChatMessage:
    return ChatMessage(
        room_id=room_id,
        message_id=message_id,
        user_id=42,
        username="Oak",
        timestamp=NOW - timedelta(seconds=age_seconds),
        content=content,
        raw_content=raw_content if raw_content is not None else content,
    )


@dataclass
class FakeRoom:
    events: List[Dict[str, Any]] = field(default_factory=list)
    can_post: bool = True

    def post(self, message_id: int, age_seconds: float, content: Optional[str] = "hello") -> None:
        event: Dict[str, Any] = {
            "event_type": 1,
            "time_stamp": int((NOW - timedelta(seconds=age_seconds)).timestamp()),
            "user_id": 42,
            "user_name": "Oak",
            "room_id": 0,
            "message_id": message_id,
        }
        if content is not None:
            event["content"] = content
        self.events.append(event)

    def edit(self, message_id: int, content: Optional[str]) -> None:
        for event in self.events:
            if event["message_id"] == message_id:
                if content is None:
                    event.pop("content", None)
                else:
                    event["content"] = content
                event["edits"] = event.get("edits", 0) + 1


class FakeChatServer:
    """Minimal imitation of the chat endpoints the client uses."""

    def __init__(self) -> None:
        self.rooms: Dict[int, FakeRoom] = {}
        self.requests: List[httpx.Request] = []
        self.msg_counts: Dict[int, List[int]] = {}
        self.posted: List[Dict[str, str]] = []
        self.left: List[str] = []
        self.failing_rooms: set = set()
        self.undecodable_rooms: set = set()
        self.broken_pages: set = set()
        self.next_id = 1000

    def add_room(self, room_id: int, can_post: bool = True) -> FakeRoom:
        room = FakeRoom(can_post=can_post)
        self.rooms[room_id] = room
        return room

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}

        m = re.fullmatch(r"/rooms/(\d+)", path)
        if m:
            room_id = int(m.group(1))
            if room_id in self.broken_pages:
                return httpx.Response(500, text="<html>oops</html>")
            room = self.rooms.get(room_id)
            if room is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, text=room_page(can_post=room.can_post))

        m = re.fullmatch(r"/chats/(\d+)/events", path)
        if m:
            room_id = int(m.group(1))
            if room_id in self.failing_rooms:
                return httpx.Response(500, text="<html>oops</html>")
            if room_id in self.undecodable_rooms:
                # claims gzip but is not; decoding the body fails
                return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")
            room = self.rooms.get(room_id)
            if room is None:
                return httpx.Response(404, text="not found")
            count = int(form["msgCount"])
            self.msg_counts.setdefault(room_id, []).append(count)
            events = [dict(e, room_id=room_id) for e in room.events[-count:]]
            return httpx.Response(200, json={"events": events})

        m = re.fullmatch(r"/chats/(\d+)/messages/new", path)
        if m:
            room = self.rooms.get(int(m.group(1)))
            if room is None or not room.can_post:
                return httpx.Response(404, text="The room does not exist, or you do not have permission")
            self.posted.append(form)
            self.next_id += 1
            return httpx.Response(200, json={"id": self.next_id, "time": int(NOW.timestamp())})

        m = re.fullmatch(r"/messages/(\d+)(/delete)?", path)
        if m:
            message_id = int(m.group(1))
            if message_id > self.next_id:
                return httpx.Response(302, headers={"Location": "/"})
            if message_id < 1000:
                return httpx.Response(200, text='"It is too late to delete this message"')
            return httpx.Response(200, text='"ok"')

        m = re.fullmatch(r"/chats/leave/(\w+)", path)
        if m:
            self.left.append(m.group(1))
            return httpx.Response(200, text="ok")

        return httpx.Response(404, text="unknown endpoint")


class RecordingHandler(MessageHandler):
    """Records every callback; optionally runs a hook after on_message."""

    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.after_message = None

    async def on_message(self, message: ChatMessage) -> None:
        self.events.append(("new", message.message_id))
        if self.after_message is not None:
            await self.after_message(message)

    async def on_message_edited(self, message: ChatMessage) -> None:
        self.events.append(("edited", message.message_id))

    async def on_error(self, room_id: int, error: Exception) -> None:
        self.events.append(("error", room_id, error))


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def server() -> FakeChatServer:
    return FakeChatServer()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def client(server: FakeChatServer, sleeper: RecordingSleep) -> ChatClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return ChatClient(
        http,
        policy=RetryPolicy(base_delay=5.0, max_attempts=3),
        heartbeat=3.0,
        sleep=sleeper,
        now=lambda: NOW,
    )
