"""
Unit tests for the offline request queue.
"""
from datetime import datetime, timedelta, timezone

import pytest

from replyengine.services.ai.offline_queue import OfflineQueue, build_preview
from replyengine.services.ai.schema import RequestType

FLIRT = RequestType.FLIRT_RESPONSE


class StepClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def test_fifo_order_and_peek_is_non_destructive():
    queue = OfflineQueue()
    first = queue.add(FLIRT, {"message": "one"})
    queue.add(FLIRT, {"message": "two"})

    assert queue.peek_next().id == first
    assert queue.peek_next().id == first
    assert queue.size() == 2


def test_remove():
    queue = OfflineQueue()
    queued_id = queue.add(FLIRT, {})
    assert queue.remove(queued_id) is True
    assert queue.remove(queued_id) is False
    assert queue.peek_next() is None


def test_capacity_evicts_oldest():
    queue = OfflineQueue(max_size=50)
    ids = [queue.add(FLIRT, {"i": i}) for i in range(50)]

    newest = queue.add(FLIRT, {"i": 50})

    assert queue.size() == 50
    assert queue.get(ids[0]) is None
    assert queue.peek_next().id == ids[1]
    assert queue.get(newest).params == {"i": 50}


def test_ids_are_unique():
    queue = OfflineQueue()
    ids = {queue.add(FLIRT, {}) for _ in range(20)}
    assert len(ids) == 20


def test_online_flag_is_advisory():
    queue = OfflineQueue()
    assert queue.is_online() is True
    queue.set_online(False)
    assert queue.is_online() is False
    queue.add(FLIRT, {})
    assert queue.size() == 1


def test_requeue_moves_to_tail_and_counts():
    queue = OfflineQueue()
    first = queue.add(FLIRT, {"i": 1})
    second = queue.add(FLIRT, {"i": 2})

    updated = queue.requeue(first)

    assert updated.retry_count == 1
    assert queue.peek_next().id == second
    assert [item.id for item in queue.list()] == [second, first]
    assert queue.requeue("missing") is None


def test_stats():
    clock = StepClock()
    queue = OfflineQueue(now=clock)
    queue.add(FLIRT, {})
    queue.add(FLIRT, {})
    queue.add(RequestType.SCREENSHOT_ANALYSIS, {})

    stats = queue.stats()
    assert stats.pending == 3
    assert stats.oldest == datetime(2026, 1, 1, 0, 0, 1, tzinfo=timezone.utc)
    assert stats.types == {"flirt-response": 2, "screenshot-analysis": 1}

    queue.clear()
    assert queue.stats().pending == 0
    assert queue.stats().oldest is None


def test_list_returns_copies():
    queue = OfflineQueue()
    queue.add(FLIRT, {"message": "hey"})
    items = queue.list()
    items[0].params["message"] = "changed"
    assert queue.peek_next().params["message"] == "hey"


@pytest.mark.parametrize(
    "request_type,params,expected",
    [
        (FLIRT, {"message": "Hey! How was your day?"}, 'Reply to: "Hey! How was your day?..."'),
        (FLIRT, {"cache_key_params": {"message": "hi"}}, 'Reply to: "hi..."'),
        (FLIRT, {}, "Generate reply"),
        (RequestType.SCREENSHOT_ANALYSIS, {}, "Analyze screenshot"),
        (RequestType.DATE_IDEA, {}, "Date ideas"),
    ],
)
def test_preview(request_type, params, expected):
    assert build_preview(request_type, params) == expected


def test_preview_truncates_long_messages():
    preview = build_preview(FLIRT, {"message": "x" * 100})
    assert preview == 'Reply to: "' + "x" * 30 + '..."'


def test_invalid_capacity():
    with pytest.raises(ValueError):
        OfflineQueue(max_size=0)
