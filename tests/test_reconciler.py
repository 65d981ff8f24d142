import asyncio
from dataclasses import replace

import pytest

from bot.change_feed import ChangeEvent, ChangeFeed
from bot.diff_engine import OutcomeKind
from bot.errors import PermanentFailure, RateLimited, TransientRemoteFailure
from bot.mutator import ResultStatus
from common.models import EntityKind, Operation, SyncStatus

CAT = EntityKind.CATEGORY
ZONE = EntityKind.ZONE


async def _synced_category(engine, make_category, name="Lounge", **fields):
    row = make_category(name, **fields)
    res = await engine.reconciler.reconcile_once(CAT, row["id"])
    assert res.status is ResultStatus.SYNCED
    return engine.db.get_category(row["id"])


@pytest.mark.asyncio
async def test_create_writes_remote_id_back(engine, make_category):
    row = make_category("Lounge", is_visible=False, allowed_roles=["77"])

    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.SYNCED
    assert res.outcome is OutcomeKind.CREATE
    stored = engine.db.get_category(row["id"])
    rid = stored["discord_category_id"]
    assert rid == res.remote_id
    remote = engine.platform.resources[rid]
    assert remote.name == "Lounge"
    assert remote.everyone_visible is False
    assert remote.role_overwrites == frozenset({77})
    assert engine.cache.remote_id_for(row["id"]) == rid
    assert engine.ledger.latest(row["id"], CAT).sync_status is SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_same_change_applied_twice_is_idempotent(engine, make_category):
    row = await _synced_category(engine, make_category)
    engine.db.update_category(row["id"], name="Lounge 2")

    first = await engine.reconciler.reconcile_once(CAT, row["id"])
    calls = len(engine.platform.calls)
    second = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert first.status is ResultStatus.SYNCED
    assert first.mutations == 1
    assert second.status is ResultStatus.NO_OP
    assert len(engine.platform.calls) == calls
    assert engine.platform.resources[row["discord_category_id"]].name == "Lounge 2"


@pytest.mark.asyncio
async def test_no_diff_does_not_grow_history(engine, make_category):
    row = await _synced_category(engine, make_category)
    n = len(engine.ledger.history(row["id"], CAT))

    await engine.reconciler.reconcile_once(CAT, row["id"])
    await engine.reconciler.reconcile_once(CAT, row["id"])

    assert len(engine.ledger.history(row["id"], CAT)) == n


@pytest.mark.asyncio
async def test_rename_ignores_stale_cache_entry(engine, make_category):
    row = await _synced_category(engine, make_category)
    rid = row["discord_category_id"]
    engine.cache.set(rid, None, name="Ancient", entity_id=row["id"], entity_kind=CAT)
    engine.platform.resources[rid] = replace(engine.platform.resources[rid], name="Edited in Discord")

    engine.db.update_category(row["id"], name="Lounge 2")
    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.SYNCED
    assert engine.platform.calls[-1] == ("rename", rid, "Lounge 2")
    assert engine.cache.entry(rid).name == "Lounge 2"


@pytest.mark.asyncio
async def test_remote_already_deleted_marks_ledger_deleted(engine, make_category):
    row = await _synced_category(engine, make_category)
    del engine.platform.resources[row["discord_category_id"]]
    calls = len(engine.platform.calls)

    engine.db.update_category(row["id"], name="Renamed")
    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.DELETED
    assert res.outcome is OutcomeKind.NOT_FOUND
    assert len(engine.platform.calls) == calls
    assert engine.ledger.latest(row["id"], CAT).sync_status is SyncStatus.DELETED
    assert engine.cache.remote_id_for(row["id"]) is None


@pytest.mark.asyncio
async def test_deletion_flag_takes_precedence(engine, make_category):
    row = await _synced_category(engine, make_category)
    rid = row["discord_category_id"]
    calls = len(engine.platform.calls)

    engine.db.update_category(row["id"], name="Renamed", is_visible=False, is_deleted_in_discord=True)
    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.DELETED
    new_calls = engine.platform.calls[calls:]
    assert [c[0] for c in new_calls] == ["delete"]
    assert new_calls[0][1] == rid
    assert rid not in engine.platform.resources

    statuses = [h.sync_status for h in engine.ledger.history(row["id"], CAT, limit=2)]
    assert statuses == [SyncStatus.DELETED, SyncStatus.PENDING_DELETE]

    stored = engine.db.get_category(row["id"])
    assert stored["discord_category_id"] is None
    assert stored["is_deleted_in_discord"] == 1

    again = await engine.reconciler.reconcile_once(CAT, row["id"])
    assert again.status is ResultStatus.DELETED
    assert len(engine.platform.calls) == calls + 1


@pytest.mark.asyncio
async def test_delete_of_vanished_remote_is_success(engine, make_category):
    row = await _synced_category(engine, make_category)
    del engine.platform.resources[row["discord_category_id"]]

    engine.db.update_category(row["id"], is_deleted_in_discord=True)
    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.DELETED
    rec = engine.ledger.latest(row["id"], CAT)
    assert rec.sync_status is SyncStatus.DELETED
    assert rec.data["message"] == "Already deleted"


@pytest.mark.asyncio
async def test_rate_limit_defers_and_deferred_pass_resubmits(engine, make_category, clock):
    row = await _synced_category(engine, make_category)
    engine.platform.fail("rename", RateLimited(retry_after=30))
    engine.db.update_category(row["id"], name="Later")

    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.DEFERRED
    assert res.retry_at == clock() + 30
    rec = engine.ledger.latest(row["id"], CAT)
    assert rec.sync_status is SyncStatus.PENDING
    assert rec.retry_at == clock() + 30
    assert engine.sleeps == []

    assert engine.reconciler.run_deferred_pass(now=clock() + 10) == 0

    clock.now["t"] += 31
    await engine.reconciler.start()
    try:
        assert engine.reconciler.run_deferred_pass() == 1
        await engine.reconciler.drain()
    finally:
        await engine.reconciler.close()

    assert engine.platform.resources[row["discord_category_id"]].name == "Later"
    assert engine.ledger.latest(row["id"], CAT).sync_status is SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_transient_failures_exhaust_into_error(engine, make_category):
    row = await _synced_category(engine, make_category)
    engine.platform.fail("rename", *[TransientRemoteFailure("bad gateway", status=502) for _ in range(4)])
    engine.db.update_category(row["id"], name="Never")

    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.ERROR
    assert engine.sleeps == [1.0, 2.0, 4.0]
    assert [c[0] for c in engine.platform.calls].count("rename") == 4
    rec = engine.ledger.latest(row["id"], CAT)
    assert rec.sync_status is SyncStatus.ERROR
    assert rec.data["attempts"] == 4
    assert rec.data["mutation"] == "rename"


@pytest.mark.asyncio
async def test_local_delete_recovers_remote_id_from_ledger(engine, make_category):
    row = await _synced_category(engine, make_category)
    rid = row["discord_category_id"]
    engine.cache.clear()
    engine.db.delete_category(row["id"])

    event = ChangeEvent(CAT, Operation.DELETE, before={"id": row["id"]})
    res = await engine.reconciler.reconcile_once(CAT, row["id"], event)

    assert res.status is ResultStatus.DELETED
    assert engine.platform.calls[-1][:2] == ("delete", rid)
    assert engine.ledger.latest(row["id"], CAT).sync_status is SyncStatus.DELETED


@pytest.mark.asyncio
async def test_local_delete_without_any_remote_id_is_skipped(engine, make_category):
    row = make_category("Never Synced")
    engine.db.delete_category(row["id"])

    event = ChangeEvent(CAT, Operation.DELETE, before={"id": row["id"]})
    res = await engine.reconciler.reconcile_once(CAT, row["id"], event)

    assert res.status is ResultStatus.SKIPPED
    assert engine.platform.calls == []


@pytest.mark.asyncio
async def test_ledger_pending_delete_row_triggers_deletion(engine, make_category):
    row = await _synced_category(engine, make_category)
    rid = row["discord_category_id"]
    event = ChangeFeed.parse(
        {
            "table": "discord_sync",
            "eventType": "UPDATE",
            "new": {
                "id": row["id"],
                "entity_type": "category",
                "sync_status": "pending_delete",
                "data": "{}",
            },
        }
    )

    res = await engine.reconciler.reconcile_once(CAT, row["id"], event)

    assert res.status is ResultStatus.DELETED
    assert rid not in engine.platform.resources
    assert engine.db.get_category(row["id"])["is_deleted_in_discord"] == 1


@pytest.mark.asyncio
async def test_zone_is_created_under_its_category(engine, make_category, make_zone):
    cat = await _synced_category(engine, make_category)
    zone = make_zone(cat["id"], "Quiet Room", settings={"is_visible": False})

    res = await engine.reconciler.reconcile_once(ZONE, zone["id"])

    assert res.status is ResultStatus.SYNCED
    vid = engine.db.get_zone(zone["id"])["discord_voice_id"]
    remote = engine.platform.resources[vid]
    assert remote.parent_id == cat["discord_category_id"]
    assert remote.everyone_visible is False
    assert engine.cache.resolve(vid) == cat["discord_category_id"]


@pytest.mark.asyncio
async def test_zone_waits_for_category_then_converges(engine, make_category, make_zone):
    cat = make_category("Fresh")
    zone = make_zone(cat["id"], "Studio")

    res = await engine.reconciler.reconcile_once(ZONE, zone["id"])
    assert res.status is ResultStatus.SKIPPED
    assert engine.ledger.latest(zone["id"], ZONE).sync_status is SyncStatus.PENDING

    await engine.reconciler.start()
    try:
        await engine.reconciler.drain()
    finally:
        await engine.reconciler.close()

    cat_rid = engine.db.get_category(cat["id"])["discord_category_id"]
    vid = engine.db.get_zone(zone["id"])["discord_voice_id"]
    assert cat_rid is not None and vid is not None
    assert engine.platform.resources[vid].parent_id == cat_rid


@pytest.mark.asyncio
async def test_zone_moved_in_discord_is_moved_back(engine, make_category, make_zone):
    cat = await _synced_category(engine, make_category)
    zone = make_zone(cat["id"])
    await engine.reconciler.reconcile_once(ZONE, zone["id"])
    vid = engine.db.get_zone(zone["id"])["discord_voice_id"]
    stray = engine.platform.add_category("Elsewhere")
    engine.platform.resources[vid] = replace(engine.platform.resources[vid], parent_id=stray.id)

    res = await engine.reconciler.reconcile_once(ZONE, zone["id"])

    assert res.status is ResultStatus.SYNCED
    assert engine.platform.calls[-1] == ("move", vid, cat["discord_category_id"])
    assert engine.platform.resources[vid].parent_id == cat["discord_category_id"]


@pytest.mark.asyncio
async def test_missing_required_field_is_rejected(engine, make_category):
    row = make_category("")

    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.ERROR
    assert engine.platform.calls == []
    rec = engine.ledger.latest(row["id"], CAT)
    assert rec.sync_status is SyncStatus.ERROR
    assert "name" in rec.data["error_message"]


@pytest.mark.asyncio
async def test_cache_miss_changes_only_fallback_counters(engine, make_category, make_zone):
    async def scenario(clear_cache):
        cat = await _synced_category(engine, make_category, name=f"Cat {clear_cache}")
        zone = make_zone(cat["id"], f"Room {clear_cache}")
        await engine.reconciler.reconcile_once(ZONE, zone["id"])
        if clear_cache:
            engine.cache.clear()
        vid = engine.db.get_zone(zone["id"])["discord_voice_id"]
        parent = engine.cache.resolve_or_load(vid, engine.db)
        engine.db.update_zone(zone["id"], name=f"Room {clear_cache} v2")
        start = len(engine.platform.calls)
        res = await engine.reconciler.reconcile_once(ZONE, zone["id"])
        ops = [c[0] for c in engine.platform.calls[start:]]
        return res.status, ops, parent == cat["discord_category_id"]

    before = engine.cache.stats()["fallback_lookups"]
    warm = await scenario(False)
    warm_fallbacks = engine.cache.stats()["fallback_lookups"]
    cold = await scenario(True)

    assert warm == cold
    assert warm_fallbacks == before
    assert engine.cache.stats()["fallback_lookups"] == warm_fallbacks + 1


@pytest.mark.asyncio
async def test_recreate_makes_a_new_remote(engine, make_category):
    row = await _synced_category(engine, make_category)
    old = row["discord_category_id"]

    await engine.reconciler.start()
    try:
        ticket = engine.reconciler.recreate(CAT, row["id"])
        result = await ticket
    finally:
        await engine.reconciler.close()

    assert result.status is ResultStatus.SYNCED
    new = engine.db.get_category(row["id"])["discord_category_id"]
    assert new is not None and new != old
    assert engine.cache.remote_id_for(row["id"]) == new


@pytest.mark.asyncio
async def test_events_for_one_entity_converge_to_latest_state(engine, make_category):
    row = await _synced_category(engine, make_category)
    seen = []
    engine.reconciler.add_completion_listener(seen.append)

    await engine.reconciler.start()
    try:
        tickets = []
        for i in range(5):
            engine.db.update_category(row["id"], name=f"Lounge {i}")
            tickets.append(engine.reconciler.submit(CAT, row["id"]))
            await asyncio.sleep(0)
        results = await asyncio.gather(*tickets)
        await engine.reconciler.drain()
    finally:
        await engine.reconciler.close()

    assert engine.platform.resources[row["discord_category_id"]].name == "Lounge 4"
    assert all(r.status in (ResultStatus.SYNCED, ResultStatus.NO_OP) for r in results)
    assert len(seen) <= 5
    assert engine.reconciler.stats()["failed"] == 0


@pytest.mark.asyncio
async def test_self_originated_events_are_not_resubmitted(engine):
    event = ChangeEvent(CAT, Operation.UPDATE, after={"id": "c1"}, origin="engine")
    engine.reconciler.on_event(event)
    assert engine.reconciler.stats()["queued"] == 0

    engine.reconciler.on_event(ChangeEvent(CAT, Operation.UPDATE, after={"id": "c1"}))
    assert engine.reconciler.stats()["queued"] == 1


@pytest.mark.asyncio
async def test_insert_with_existing_remote_id_is_confirmed_not_created(engine, make_category):
    remote = engine.platform.add_category("Imported")
    row = make_category("Imported", discord_category_id=remote.id)

    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.NO_OP
    assert engine.platform.calls == []
    assert engine.ledger.latest(row["id"], CAT).sync_status is SyncStatus.SYNCED
    assert engine.cache.remote_id_for(row["id"]) == remote.id


@pytest.mark.asyncio
async def test_orphan_zone_uses_default_parent_or_errors(engine, make_zone):
    zone = make_zone(None, "Lobby")

    res = await engine.reconciler.reconcile_once(ZONE, zone["id"])
    assert res.status is ResultStatus.ERROR
    assert engine.ledger.latest(zone["id"], ZONE).data["error_message"] == "No parent category available"

    fallback = engine.platform.add_category("Fallback")
    engine.reconciler.default_parent_id = fallback.id
    res = await engine.reconciler.reconcile_once(ZONE, zone["id"])

    assert res.status is ResultStatus.SYNCED
    vid = engine.db.get_zone(zone["id"])["discord_voice_id"]
    assert engine.platform.resources[vid].parent_id == fallback.id


def _pending_delete_event(kind, entity_id):
    return ChangeFeed.parse(
        {
            "table": "discord_sync",
            "eventType": "UPDATE",
            "new": {
                "id": entity_id,
                "entity_type": kind.value,
                "sync_status": "pending_delete",
                "data": "{}",
            },
        }
    )


@pytest.mark.asyncio
async def test_rate_limited_zone_delete_survives_deferral(engine, make_category, make_zone, clock):
    cat = await _synced_category(engine, make_category)
    zone = make_zone(cat["id"])
    await engine.reconciler.reconcile_once(ZONE, zone["id"])
    vid = engine.db.get_zone(zone["id"])["discord_voice_id"]
    engine.platform.fail("delete", RateLimited(retry_after=5))

    res = await engine.reconciler.reconcile_once(
        ZONE, zone["id"], _pending_delete_event(ZONE, zone["id"])
    )
    assert res.status is ResultStatus.DEFERRED
    rec = engine.ledger.latest(zone["id"], ZONE)
    assert rec.sync_status is SyncStatus.PENDING
    assert rec.data["intent"] == "delete"

    clock.now["t"] += 10
    await engine.reconciler.start()
    try:
        assert engine.reconciler.run_deferred_pass() == 1
        await engine.reconciler.drain()
    finally:
        await engine.reconciler.close()

    assert vid not in engine.platform.resources
    assert engine.db.get_zone(zone["id"])["discord_voice_id"] is None
    assert engine.ledger.latest(zone["id"], ZONE).sync_status is SyncStatus.DELETED


@pytest.mark.asyncio
async def test_zone_under_vanished_category_is_an_error_not_a_delete(
    engine, make_category, make_zone
):
    cat = await _synced_category(engine, make_category)
    del engine.platform.resources[cat["discord_category_id"]]
    zone = make_zone(cat["id"], "Studio")

    res = await engine.reconciler.reconcile_once(ZONE, zone["id"])

    assert res.status is ResultStatus.ERROR
    rec = engine.ledger.latest(zone["id"], ZONE)
    assert rec.sync_status is SyncStatus.ERROR
    assert rec.data["error"] == "MappingInconsistency"
    assert engine.db.get_zone(zone["id"])["discord_voice_id"] is None


@pytest.mark.asyncio
async def test_failure_after_create_keeps_remote_id(engine, make_category):
    row = make_category("Lounge", is_visible=False)
    engine.platform.fail("set_visibility", PermanentFailure("Missing Access", status=403))

    res = await engine.reconciler.reconcile_once(CAT, row["id"])

    assert res.status is ResultStatus.ERROR
    rid = engine.db.get_category(row["id"])["discord_category_id"]
    assert rid is not None and rid in engine.platform.resources
    rec = engine.ledger.latest(row["id"], CAT)
    assert rec.sync_status is SyncStatus.ERROR
    assert rec.data["discord_id"] == rid
    assert rec.data["mutation"] == "set_visibility"
    assert rec.data["applied"] == ["create"]

    # the next pass picks up from the created resource instead of creating again
    res = await engine.reconciler.reconcile_once(CAT, row["id"])
    assert res.status is ResultStatus.SYNCED
    assert [c[0] for c in engine.platform.calls].count("create_category") == 1
    assert engine.platform.resources[rid].everyone_visible is False
