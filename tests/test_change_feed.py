import asyncio

import pytest

from bot.change_feed import ORIGIN_LEDGER, ChangeEvent, ChangeFeed
from bot.errors import IncompleteEventPayload
from common.models import EntityKind, Operation


def test_parse_accepts_dashboard_aliases():
    ev = ChangeFeed.parse(
        {"table": "zones", "eventType": "UPDATE", "old": {"id": "z1", "name": "a"}, "new": {"id": "z1", "name": "b"}}
    )
    assert ev.entity_kind is EntityKind.ZONE
    assert ev.operation is Operation.UPDATE
    assert ev.before["name"] == "a"
    assert ev.after["name"] == "b"
    assert ev.entity_id == "z1"


def test_parse_canonical_keys():
    ev = ChangeFeed.parse({"entityKind": "category", "operation": "insert", "after": {"id": "c1"}})
    assert ev.entity_kind is EntityKind.CATEGORY
    assert ev.before is None


@pytest.mark.parametrize(
    "payload",
    [
        {"entityKind": "category", "operation": "delete", "before": None},
        {"entityKind": "category", "operation": "delete", "after": {"id": "c1"}},
        {"entityKind": "widget", "operation": "insert", "after": {"id": "w1"}},
        {"entityKind": "zone", "operation": "upsert", "after": {"id": "z1"}},
        {"entityKind": "zone", "operation": "update", "after": {"name": "no id"}},
        ["not", "an", "object"],
    ],
)
def test_parse_rejects_incomplete_payloads(payload):
    with pytest.raises(IncompleteEventPayload):
        ChangeFeed.parse(payload)


def test_pending_delete_ledger_row_becomes_delete_event():
    ev = ChangeFeed.parse(
        {
            "table": "discord_sync",
            "eventType": "INSERT",
            "new": {
                "id": "c1",
                "entity_type": "category",
                "sync_status": "pending_delete",
                "data": '{"discord_category_id": 44}',
            },
        }
    )
    assert ev.operation is Operation.DELETE
    assert ev.origin == ORIGIN_LEDGER
    assert ev.before == {"id": "c1", "discord_category_id": 44}


@pytest.mark.parametrize(
    "row",
    [
        {"id": "c1", "entity_type": "category", "sync_status": "synced"},
        {"id": "r1", "entity_type": "role", "sync_status": "pending_delete"},
    ],
)
def test_other_ledger_rows_are_ignored(row):
    assert ChangeFeed.parse({"table": "discord_sync", "eventType": "UPDATE", "new": row}) is None


@pytest.mark.asyncio
async def test_ingest_counts_drops_and_keeps_valid_events():
    feed = ChangeFeed()

    assert feed.ingest({"entityKind": "zone", "operation": "delete"}) is False
    assert feed.ingest({"entityKind": "zone", "operation": "insert", "after": {"id": "z1"}}) is True

    assert feed.dropped == 1
    assert feed.received == 1
    assert feed.pending() == 1


@pytest.mark.asyncio
async def test_publish_drops_when_full():
    feed = ChangeFeed(maxsize=1)
    ev = ChangeEvent(EntityKind.ZONE, Operation.INSERT, after={"id": "z1"})

    assert feed.publish(ev) is True
    assert feed.publish(ev) is False
    assert feed.dropped == 1


@pytest.mark.asyncio
async def test_run_dispatches_to_every_subscriber_even_if_one_fails():
    feed = ChangeFeed()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    async def collect(event):
        seen.append(event.entity_id)

    feed.subscribe(broken)
    feed.subscribe(collect)
    task = asyncio.create_task(feed.run())

    feed.publish(ChangeEvent(EntityKind.CATEGORY, Operation.INSERT, after={"id": "c1"}))
    feed.publish(ChangeEvent(EntityKind.CATEGORY, Operation.UPDATE, after={"id": "c2"}))
    await feed.stop()
    await asyncio.wait_for(task, timeout=1)

    assert seen == ["c1", "c2"]


@pytest.mark.asyncio
async def test_store_writes_reach_the_feed_with_origin(db):
    feed = ChangeFeed()
    db.add_change_listener(feed.on_store_change)

    row = db.insert_category(name="Lounge", guild_id=1)
    db.update_category(row["id"], name="Hall", origin="engine")
    db.delete_category(row["id"])

    events = [feed._queue.get_nowait() for _ in range(3)]
    assert [e.operation for e in events] == [Operation.INSERT, Operation.UPDATE, Operation.DELETE]
    assert events[1].origin == "engine"
    assert events[1].before["name"] == "Lounge"
    assert events[2].before["name"] == "Hall"
    assert events[2].after is None


class _FakeSocket:
    def __init__(self, frames):
        self._frames = list(frames)
        self.sent = []

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._frames:
            raise StopAsyncIteration
        return self._frames.pop(0)

    async def send(self, msg):
        self.sent.append(msg)


@pytest.mark.asyncio
async def test_websocket_frames_are_acknowledged():
    feed = ChangeFeed()
    ws = _FakeSocket(
        [
            "{nope",
            '{"entityKind": "zone", "operation": "update", "after": {"id": "z1"}}',
            '{"entityKind": "zone", "operation": "delete"}',
        ]
    )

    await feed._handle_ws(ws)

    assert [s.startswith('{"ok": true') for s in ws.sent] == [False, True, False]
    assert feed.pending() == 1
