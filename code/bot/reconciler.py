# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from bot import logctx
from bot.change_feed import ORIGIN_LEDGER, ChangeEvent
from bot.diff_engine import OutcomeKind, deletion_plan, diff, entity_from_row
from bot.errors import RateLimited, SyncError, classify_exception
from bot.ledger import SyncLedger
from bot.mapping_cache import MappingCache
from bot.mutator import ORIGIN_ENGINE, MutationResult, RemoteMutator, ResultStatus
from bot.platform import RemotePlatform
from bot.retry import RetryPolicy
from bot.reverse_sync import ORIGIN_REVERSE, ReverseSyncListener
from common.db import DBManager
from common.models import EntityKind, Operation, SyncStatus

logger = logging.getLogger("bot.reconciler")

Key = tuple[EntityKind, str]


@dataclass
class ReconcileResult:
    entity_kind: EntityKind
    entity_id: str
    status: ResultStatus
    outcome: Optional[OutcomeKind] = None
    remote_id: Optional[int] = None
    retry_at: Optional[float] = None
    error: Optional[SyncError] = None
    mutations: int = 0

    @classmethod
    def from_mutation(cls, res: MutationResult, outcome: OutcomeKind) -> "ReconcileResult":
        return cls(
            entity_kind=res.entity_kind,
            entity_id=res.entity_id,
            status=res.status,
            outcome=outcome,
            remote_id=res.remote_id,
            retry_at=res.retry_at,
            error=res.error,
            mutations=len(res.applied),
        )


class ReconcileTicket:
    """Handle returned by `Reconciler.submit`; await it for the result."""

    def __init__(self, kind: EntityKind, entity_id: str, future: asyncio.Future):
        self.entity_kind = kind
        self.entity_id = entity_id
        self.future = future

    def done(self) -> bool:
        return self.future.done()

    def result(self) -> ReconcileResult:
        return self.future.result()

    def __await__(self):
        return asyncio.shield(self.future).__await__()


class _Entry:
    __slots__ = ("future", "event", "running", "dirty", "next_future", "next_event")

    def __init__(self, future: asyncio.Future, event: Optional[ChangeEvent]):
        self.future = future
        self.event = event
        self.running = False
        self.dirty = False
        self.next_future: Optional[asyncio.Future] = None
        self.next_event: Optional[ChangeEvent] = None


def _merge(old: Optional[ChangeEvent], new: Optional[ChangeEvent]) -> Optional[ChangeEvent]:
    # a pending delete keeps its prior row; anything else is superseded
    if new is None:
        return old
    if old is not None and old.operation is Operation.DELETE and new.operation is not Operation.DELETE:
        return old
    return new


class Reconciler:
    """
    Worker pool that turns change events into converged Discord state.

    Each entity has at most one reconciliation in flight. Events that arrive
    while one is queued are coalesced into it; events that arrive while one
    is running mark the entity dirty and a fresh pass runs right after.
    """

    def __init__(
        self,
        *,
        db: DBManager,
        platform: RemotePlatform,
        cache: MappingCache,
        ledger: SyncLedger,
        mutator: RemoteMutator,
        reverse: ReverseSyncListener,
        retry: RetryPolicy,
        guild_id: int,
        worker_count: int = 4,
        default_parent_id: Optional[int] = None,
        deferred_scan_seconds: float = 5.0,
        clock=time.time,
    ):
        self.db = db
        self.platform = platform
        self.cache = cache
        self.ledger = ledger
        self.mutator = mutator
        self.reverse = reverse
        self.retry = retry
        self.guild_id = int(guild_id)
        self.worker_count = max(1, int(worker_count))
        self.default_parent_id = default_parent_id
        self.deferred_scan_seconds = float(deferred_scan_seconds)
        self._clock = clock

        self._queue: asyncio.Queue = asyncio.Queue()
        self._entries: dict[Key, _Entry] = {}
        self._locks: dict[Key, asyncio.Lock] = {}
        self._listeners: list[Callable[[ReconcileResult], None]] = []
        self._worker_tasks: list[asyncio.Task] = []
        self._scan_task: Optional[asyncio.Task] = None
        self._started = False
        self._closing = False

        self.processed = 0
        self.failed = 0
        self.deferred = 0
        self.reruns = 0

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._closing = False
        for idx in range(self.worker_count):
            self._worker_tasks.append(
                asyncio.create_task(self._worker(idx), name=f"reconcile_worker:{idx}")
            )
        self._scan_task = asyncio.create_task(self._deferred_loop(), name="reconcile_deferred_scan")
        logger.info("[✅] Reconciler started with %d workers", self.worker_count)

    async def drain(self) -> None:
        await self._queue.join()

    async def close(self, *, drain: bool = False, timeout: Optional[float] = 30.0) -> None:
        if not self._started or self._closing:
            return
        self._closing = True

        if drain:
            try:
                await asyncio.wait_for(self.drain(), timeout=timeout)
            except Exception:
                logger.warning("[⚠️] Drain timed out or failed; stopping anyway", exc_info=True)

        if self._scan_task:
            self._scan_task.cancel()
        for _ in self._worker_tasks:
            self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(
                asyncio.gather(*self._worker_tasks, return_exceptions=True), timeout=timeout
            )
        except Exception:
            logger.warning("[⚠️] Worker shutdown timed out", exc_info=True)
        if self._scan_task:
            await asyncio.gather(self._scan_task, return_exceptions=True)

        for e in self._entries.values():
            for fut in (e.future, e.next_future):
                if fut is not None and not fut.done():
                    fut.cancel()
        self._entries.clear()
        self._worker_tasks.clear()
        self._scan_task = None
        self._started = False

    # ------------------------------------------------------------------
    # intake
    # ------------------------------------------------------------------

    def add_completion_listener(self, cb: Callable[[ReconcileResult], None]) -> None:
        self._listeners.append(cb)

    def on_event(self, event: ChangeEvent) -> None:
        """Change feed subscriber."""
        if event.origin in (ORIGIN_ENGINE, ORIGIN_REVERSE):
            logger.debug("Skipping self-originated %r", event)
            return
        self.submit(event.entity_kind, event.entity_id, event=event)

    def submit(
        self,
        kind: EntityKind,
        entity_id: str,
        *,
        event: Optional[ChangeEvent] = None,
    ) -> ReconcileTicket:
        kind = EntityKind(kind)
        key = (kind, str(entity_id))
        loop = asyncio.get_running_loop()

        e = self._entries.get(key)
        if e is None:
            e = _Entry(loop.create_future(), event)
            self._entries[key] = e
            self._queue.put_nowait(key)
            return ReconcileTicket(kind, key[1], e.future)

        if not e.running:
            e.event = _merge(e.event, event)
            return ReconcileTicket(kind, key[1], e.future)

        e.dirty = True
        e.next_event = _merge(e.next_event, event)
        if e.next_future is None:
            e.next_future = loop.create_future()
        return ReconcileTicket(kind, key[1], e.next_future)

    def recreate(self, kind: EntityKind, entity_id: str) -> Optional[ReconcileTicket]:
        """Forget the current remote id so the next pass creates a fresh resource."""
        kind = EntityKind(kind)
        if kind is EntityKind.CATEGORY:
            row = self.db.clear_category_remote_id(entity_id, mark_deleted=False, origin=ORIGIN_ENGINE)
        else:
            row = self.db.get_zone(entity_id)
            if row is not None:
                self.db.set_zone_voice_id(entity_id, None, origin=ORIGIN_ENGINE)
        if row is None:
            return None
        self.cache.evict(entity_id, kind)
        return self.submit(kind, entity_id)

    def stats(self) -> dict:
        return {
            "queued": self._queue.qsize(),
            "in_flight": sum(1 for e in self._entries.values() if e.running),
            "processed": self.processed,
            "failed": self.failed,
            "deferred": self.deferred,
            "reruns": self.reruns,
        }

    # ------------------------------------------------------------------
    # workers
    # ------------------------------------------------------------------

    def _get_lock(self, key: Key) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _worker(self, idx: int) -> None:
        logctx.worker_name.set(f"worker-{idx}")
        while True:
            key = await self._queue.get()
            try:
                if key is None:
                    return
                await self._process(key)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[⛔] Reconcile worker %d crashed on %s; continuing", idx, key)
            finally:
                self._queue.task_done()

    async def _process(self, key: Key) -> None:
        e = self._entries.get(key)
        if e is None:
            return
        e.running = True
        kind, entity_id = key

        async with self._get_lock(key):
            while True:
                try:
                    result = await self.reconcile_once(kind, entity_id, e.event)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    err = classify_exception(exc)
                    logger.exception("[⛔] Reconciliation of %s:%s failed", kind.value, entity_id)
                    self.ledger.record(
                        entity_id, kind, self.guild_id, SyncStatus.ERROR, err.diagnostic()
                    )
                    result = ReconcileResult(kind, entity_id, ResultStatus.ERROR, error=err)

                self._finish(e.future, result)

                if not e.dirty:
                    break
                self.reruns += 1
                e.future, e.next_future = e.next_future, None
                e.event, e.next_event = e.next_event, None
                e.dirty = False

        self._entries.pop(key, None)

    def _finish(self, fut: asyncio.Future, result: ReconcileResult) -> None:
        self.processed += 1
        if result.status is ResultStatus.ERROR:
            self.failed += 1
        elif result.status is ResultStatus.DEFERRED:
            self.deferred += 1

        if not fut.done():
            fut.set_result(result)
        for cb in list(self._listeners):
            try:
                cb(result)
            except Exception:
                logger.exception("Completion listener %r failed", cb)

        if (
            result.entity_kind is EntityKind.CATEGORY
            and result.status in (ResultStatus.SYNCED, ResultStatus.NO_OP)
            and result.remote_id is not None
        ):
            for z in self.db.list_zones(category_id=result.entity_id):
                if z.get("discord_voice_id") is None:
                    self.submit(EntityKind.ZONE, z["id"])

    # ------------------------------------------------------------------
    # one pass
    # ------------------------------------------------------------------

    async def reconcile_once(
        self, kind: EntityKind, entity_id: str, event: Optional[ChangeEvent] = None
    ) -> ReconcileResult:
        with logctx.entity_scope(kind.value, entity_id):
            row = self.db.get_category(entity_id) if kind is EntityKind.CATEGORY else self.db.get_zone(entity_id)

            if row is None:
                return await self._reconcile_local_delete(kind, entity_id, event)

            if event is not None and event.operation is Operation.DELETE and event.origin == ORIGIN_LEDGER:
                return await self._reconcile_requested_delete(kind, row, event)

            if event is None and self._delete_was_deferred(kind, entity_id):
                return await self._reconcile_requested_delete(kind, row, None)

            return await self._reconcile_row(kind, row, event)

    def _guild_for(self, kind: EntityKind, row: Optional[dict]) -> int:
        if not row:
            return self.guild_id
        if kind is EntityKind.CATEGORY:
            return int(row.get("guild_id") or self.guild_id)
        if row.get("category_id"):
            cat = self.db.get_category(row["category_id"])
            if cat and cat.get("guild_id"):
                return int(cat["guild_id"])
        return self.guild_id

    async def _delete_remote(
        self, kind: EntityKind, entity_id: str, remote_id: int, guild_id: int, reason: str
    ) -> ReconcileResult:
        plan = deletion_plan(kind, entity_id, remote_id, reason)
        res = await self.mutator.apply(
            plan, entity_kind=kind, entity_id=entity_id, guild_id=guild_id, remote_id=remote_id
        )
        return ReconcileResult.from_mutation(res, plan.kind)

    async def _reconcile_local_delete(
        self, kind: EntityKind, entity_id: str, event: Optional[ChangeEvent]
    ) -> ReconcileResult:
        before = event.before if event else None
        rid = self.reverse.recover_remote_id(kind, entity_id, before)
        guild_id = int((before or {}).get("guild_id") or self.guild_id)
        if rid is None:
            logger.info(
                "%s %s deleted locally with no known Discord counterpart; nothing to do",
                kind.value, entity_id,
            )
            return ReconcileResult(kind, entity_id, ResultStatus.SKIPPED)
        name = (before or {}).get("name") or entity_id
        return await self._delete_remote(
            kind, entity_id, rid, guild_id, f'"{name}" was deleted in the dashboard'
        )

    def _delete_was_deferred(self, kind: EntityKind, entity_id: str) -> bool:
        # zones carry no deleted flag, so a rate-limited delete lives only in the ledger
        rec = self.ledger.latest(entity_id, kind)
        return (
            rec is not None
            and rec.sync_status is SyncStatus.PENDING
            and rec.data.get("intent") == "delete"
        )

    async def _reconcile_requested_delete(
        self, kind: EntityKind, row: dict, event: Optional[ChangeEvent]
    ) -> ReconcileResult:
        entity = entity_from_row(kind, row)
        guild_id = self._guild_for(kind, row)
        before = event.before if event else None
        rid = entity.remote_id or self.reverse.recover_remote_id(kind, entity.id, before)
        if rid is None:
            self.ledger.record(
                entity.id, kind, guild_id, SyncStatus.DELETED,
                {"message": "No Discord counterpart to delete"},
            )
            return ReconcileResult(kind, entity.id, ResultStatus.DELETED, OutcomeKind.NOT_FOUND)

        if kind is EntityKind.CATEGORY:
            self.db.update_category(entity.id, is_deleted_in_discord=True, origin=ORIGIN_ENGINE)
        result = await self._delete_remote(
            kind, entity.id, rid, guild_id, f'"{entity.name}" deletion requested'
        )
        if kind is EntityKind.ZONE and result.status is ResultStatus.DELETED:
            self.db.set_zone_voice_id(entity.id, None, origin=ORIGIN_ENGINE)
        return result

    def _expected_parent(self, zone_row: dict) -> tuple[Optional[int], Optional[dict]]:
        cat = self.db.get_category(zone_row["category_id"]) if zone_row.get("category_id") else None
        if cat and cat.get("discord_category_id") is not None and not cat.get("is_deleted_in_discord"):
            return int(cat["discord_category_id"]), cat
        return self.default_parent_id, cat

    async def _reconcile_row(
        self, kind: EntityKind, row: dict, event: Optional[ChangeEvent]
    ) -> ReconcileResult:
        entity = entity_from_row(kind, row)
        guild_id = self._guild_for(kind, row)

        expected_parent = None
        if kind is EntityKind.ZONE:
            expected_parent, cat = self._expected_parent(row)
            if expected_parent is None and entity.remote_id is None:
                if cat is not None and not cat.get("is_deleted_in_discord"):
                    logger.info("Zone waits for its category %s to exist on Discord", cat["id"])
                    self.ledger.record(
                        entity.id, kind, guild_id, SyncStatus.PENDING,
                        {"message": "Waiting for parent category", "category_id": cat["id"]},
                    )
                    self.submit(EntityKind.CATEGORY, cat["id"])
                    return ReconcileResult(kind, entity.id, ResultStatus.SKIPPED)
                return self._reject(kind, entity.id, guild_id, "No parent category available")

        if entity.remote_id is None and not getattr(entity, "is_deleted_in_discord", False):
            missing = [f for f in ("name",) if not getattr(entity, f)]
            if kind is EntityKind.CATEGORY and entity.guild_id is None:
                missing.append("guild_id")
            if missing:
                return self._reject(
                    kind, entity.id, guild_id, f"Missing required fields: {', '.join(missing)}"
                )

        remote = None
        if entity.remote_id is not None and not getattr(entity, "is_deleted_in_discord", False):
            try:
                remote = await self.retry.run(
                    lambda: self.platform.fetch_resource(entity.remote_id),
                    label=f"fetch {entity.remote_id}",
                )
            except Exception as exc:
                return self._fetch_failed(kind, entity.id, guild_id, entity.remote_id, exc)

        outcome = diff(
            entity, remote,
            expected_parent=expected_parent,
            before=event.before if event else None,
        )
        if outcome.mutations:
            logger.info(
                "Applying %s: %s", outcome.kind.value, ", ".join(m.describe() for m in outcome.mutations)
            )

        res = await self.mutator.apply(
            outcome,
            entity_kind=kind,
            entity_id=entity.id,
            guild_id=guild_id,
            name=entity.name,
            remote_id=entity.remote_id,
            parent_id=expected_parent,
        )
        return ReconcileResult.from_mutation(res, outcome.kind)

    def _reject(self, kind: EntityKind, entity_id: str, guild_id: int, message: str) -> ReconcileResult:
        logger.error("[⛔] %s %s: %s", kind.value, entity_id, message)
        self.ledger.record(entity_id, kind, guild_id, SyncStatus.ERROR, {"error_message": message})
        return ReconcileResult(kind, entity_id, ResultStatus.ERROR)

    def _fetch_failed(
        self, kind: EntityKind, entity_id: str, guild_id: int, remote_id: int, exc: Exception
    ) -> ReconcileResult:
        err = classify_exception(exc)
        if isinstance(err, RateLimited):
            retry_at = self._clock() + err.retry_after
            self.ledger.record(
                entity_id, kind, guild_id, SyncStatus.PENDING,
                {"discord_id": remote_id, **err.diagnostic()}, retry_at=retry_at,
            )
            return ReconcileResult(
                kind, entity_id, ResultStatus.DEFERRED, remote_id=remote_id,
                retry_at=retry_at, error=err,
            )
        logger.error("[⛔] Could not read %s from Discord: %s", remote_id, err)
        self.ledger.record(
            entity_id, kind, guild_id, SyncStatus.ERROR, {"discord_id": remote_id, **err.diagnostic()}
        )
        return ReconcileResult(kind, entity_id, ResultStatus.ERROR, remote_id=remote_id, error=err)

    # ------------------------------------------------------------------
    # deferred scheduling pass
    # ------------------------------------------------------------------

    def run_deferred_pass(self, now: Optional[float] = None) -> int:
        """Resubmit every rate-limited entity whose window has elapsed."""
        n = 0
        for rec in self.ledger.due_deferred(now):
            if rec.entity_type not in (EntityKind.CATEGORY, EntityKind.ZONE):
                continue
            if (rec.entity_type, rec.id) in self._entries:
                continue
            self.submit(rec.entity_type, rec.id)
            n += 1
        if n:
            logger.info("[⏱️] Rescheduled %d deferred reconciliation(s)", n)
        return n

    async def _deferred_loop(self) -> None:
        while True:
            await asyncio.sleep(self.deferred_scan_seconds)
            try:
                self.run_deferred_pass()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[⛔] Deferred scheduling pass failed")
