"""Tests for the adaptive message batch fetcher."""
from __future__ import annotations

from typing import List

import pytest

from core.fetcher import fetch_next_batch
from core.models import ChatMessage
from tests.conftest import NOW, make_message


class FakeHistory:
    """Room history served newest-last, recording every requested count."""

    def __init__(self, messages: List[ChatMessage]) -> None:
        self.messages = messages
        self.counts: List[int] = []

    async def __call__(self, count: int) -> List[ChatMessage]:
        self.counts.append(count)
        return self.messages[-count:]


def history(old: int, recent_ids: List[int] = (), start_id: int = 1) -> List[ChatMessage]:
    """``old`` ten-minute-old messages followed by 30-second-old ones."""
    messages = [make_message(start_id + i, 600) for i in range(old)]
    messages += [make_message(i, 30) for i in recent_ids]
    return messages


@pytest.mark.trio
async def test_fetches_every_message_in_a_large_backlog():
    # 50 old messages processed up to id 50, then 37 new ones
    messages = history(50) + [make_message(51 + i, 600) for i in range(37)]
    fake = FakeHistory(messages)

    batch = await fetch_next_batch(fake, 50, NOW)

    assert fake.counts == [10, 20, 40]
    assert fake.counts[-1] >= 40
    assert [m.message_id for m in batch] == list(range(51, 88))


@pytest.mark.trio
async def test_stops_when_history_is_exhausted():
    fake = FakeHistory([make_message(i, 10) for i in range(1, 8)])

    batch = await fetch_next_batch(fake, 3, NOW)

    assert fake.counts == [10]
    assert [m.message_id for m in batch] == list(range(1, 8))


@pytest.mark.trio
async def test_keeps_going_until_edit_window_is_covered():
    # nothing new, but 15 messages are still editable
    messages = history(30) + [make_message(100 + i, 60) for i in range(15)]
    fake = FakeHistory(messages)

    batch = await fetch_next_batch(fake, 114, NOW)

    assert fake.counts == [10, 20]
    assert [m.message_id for m in batch] == list(range(100, 115))


@pytest.mark.trio
async def test_trims_old_processed_messages():
    fake = FakeHistory(history(20, recent_ids=[21, 22]))

    batch = await fetch_next_batch(fake, 21, NOW)

    assert fake.counts == [10]
    assert [m.message_id for m in batch] == [21, 22]


@pytest.mark.trio
async def test_old_unprocessed_messages_are_kept():
    fake = FakeHistory(history(20))

    batch = await fetch_next_batch(fake, 17, NOW)

    assert [m.message_id for m in batch] == [18, 19, 20]


@pytest.mark.trio
async def test_priming_keeps_only_the_edit_window():
    fake = FakeHistory(history(20, recent_ids=[21, 22, 23]))

    batch = await fetch_next_batch(fake, None, NOW)

    assert fake.counts == [10]
    assert [m.message_id for m in batch] == [21, 22, 23]


@pytest.mark.trio
async def test_priming_quiet_room_returns_nothing():
    fake = FakeHistory(history(20))

    assert await fetch_next_batch(fake, None, NOW) == []


@pytest.mark.trio
async def test_empty_room():
    fake = FakeHistory([])

    assert await fetch_next_batch(fake, None, NOW) == []
    assert fake.counts == [10]
