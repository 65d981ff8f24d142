# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from bot.diff_engine import DiffOutcome, Mutation, MutationKind, OutcomeKind
from bot.errors import (
    NotFoundRemote,
    RateLimited,
    SyncError,
    classify_exception,
)
from bot.ledger import SyncLedger
from bot.mapping_cache import MappingCache
from bot.platform import RemotePlatform
from bot.retry import RetryPolicy
from common.db import DBManager
from common.models import EntityKind, SyncStatus

logger = logging.getLogger("bot.mutator")

# Store writes made by the engine itself carry this origin and are not
# re-reconciled.
ORIGIN_ENGINE = "engine"


class ResultStatus(str, Enum):
    SYNCED = "synced"
    NO_OP = "no_op"
    DEFERRED = "deferred"
    DELETED = "deleted"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass
class MutationResult:
    status: ResultStatus
    entity_kind: EntityKind
    entity_id: str
    remote_id: Optional[int] = None
    applied: list[Mutation] = field(default_factory=list)
    retry_at: Optional[float] = None
    error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.status in (ResultStatus.SYNCED, ResultStatus.NO_OP, ResultStatus.DELETED)


class RemoteMutator:
    """
    Applies a diff outcome to Discord: in order, each mutation under the
    retry policy, stopping at the first failure that retries cannot fix.
    """

    def __init__(
        self,
        platform: RemotePlatform,
        db: DBManager,
        cache: MappingCache,
        ledger: SyncLedger,
        retry: RetryPolicy,
        *,
        clock=time.time,
    ):
        self.platform = platform
        self.db = db
        self.cache = cache
        self.ledger = ledger
        self.retry = retry
        self._clock = clock

    async def apply(
        self,
        outcome: DiffOutcome,
        *,
        entity_kind: EntityKind,
        entity_id: str,
        guild_id,
        name: str = "",
        remote_id: Optional[int] = None,
        parent_id: Optional[int] = None,
    ) -> MutationResult:
        if outcome.kind is OutcomeKind.NO_DIFF:
            self._confirm_synced(entity_kind, entity_id, guild_id, remote_id, name, parent_id)
            return MutationResult(ResultStatus.NO_OP, entity_kind, entity_id, remote_id)

        if outcome.kind is OutcomeKind.NOT_FOUND:
            return self._mark_gone(
                entity_kind, entity_id, guild_id, remote_id, "Remote resource not found"
            )

        applied: list[Mutation] = []
        current_id = remote_id

        for idx, m in enumerate(outcome.mutations):
            if m.remote_id is None and m.kind is not MutationKind.CREATE:
                m.remote_id = current_id

            if m.kind is MutationKind.DELETE:
                self.ledger.record(
                    entity_id, entity_kind, guild_id, SyncStatus.PENDING_DELETE,
                    {"discord_id": m.remote_id, "reason": m.reason},
                )

            try:
                created = await self.retry.run(
                    lambda m=m: self._apply_one(m), label=f"{m.kind.value} {entity_kind.value}:{entity_id}"
                )
            except Exception as e:
                err = classify_exception(e)

                if isinstance(err, NotFoundRemote):
                    if m.kind is MutationKind.DELETE:
                        self._forget_deleted_category(entity_kind, entity_id)
                        reason = "Already deleted"
                    else:
                        reason = "Remote resource vanished during update"
                    return self._mark_gone(entity_kind, entity_id, guild_id, m.remote_id, reason)

                if isinstance(err, RateLimited):
                    retry_at = self._clock() + err.retry_after
                    logger.warning(
                        "[⏱️] Rate limited on %s; deferring %s:%s for %.2fs",
                        m.kind.value, entity_kind.value, entity_id, err.retry_after,
                    )
                    self.ledger.record(
                        entity_id, entity_kind, guild_id, SyncStatus.PENDING,
                        {
                            "discord_id": current_id,
                            "deferred": [x.kind.value for x in outcome.mutations[idx:]],
                            **({"intent": "delete"} if outcome.kind is OutcomeKind.DELETE else {}),
                            **err.diagnostic(),
                        },
                        retry_at=retry_at,
                    )
                    return MutationResult(
                        ResultStatus.DEFERRED, entity_kind, entity_id, current_id,
                        applied, retry_at=retry_at, error=err,
                    )

                logger.error(
                    "[⛔] %s failed for %s:%s: %s", m.kind.value, entity_kind.value, entity_id, err
                )
                self.ledger.record(
                    entity_id, entity_kind, guild_id, SyncStatus.ERROR,
                    {
                        "discord_id": current_id,
                        "mutation": m.kind.value,
                        "applied": [x.kind.value for x in applied],
                        **err.diagnostic(),
                    },
                )
                return MutationResult(
                    ResultStatus.ERROR, entity_kind, entity_id, current_id, applied, error=err
                )

            applied.append(m)
            if m.kind is MutationKind.CREATE:
                current_id = created.id
                self._write_back_remote_id(entity_kind, entity_id, current_id)
                self.cache.set(
                    current_id, m.parent_id, name=m.name or name,
                    entity_id=entity_id, entity_kind=entity_kind,
                )
            if m.kind is MutationKind.MOVE:
                parent_id = m.parent_id
            if m.kind is MutationKind.RENAME:
                name = m.name or name

        if outcome.kind is OutcomeKind.DELETE:
            self._forget_deleted_category(entity_kind, entity_id)
            self.cache.evict(entity_id, entity_kind)
            self.ledger.record(
                entity_id, entity_kind, guild_id, SyncStatus.DELETED,
                {"discord_id": current_id, "message": "Deleted on Discord"},
            )
            return MutationResult(ResultStatus.DELETED, entity_kind, entity_id, current_id, applied)

        if current_id is not None:
            self.cache.set(
                current_id, parent_id, name=name, entity_id=entity_id, entity_kind=entity_kind
            )
        self.ledger.record(
            entity_id, entity_kind, guild_id, SyncStatus.SYNCED,
            {
                "discord_id": current_id,
                "name": name,
                "applied": [x.describe() for x in applied],
            },
        )
        return MutationResult(ResultStatus.SYNCED, entity_kind, entity_id, current_id, applied)

    async def _apply_one(self, m: Mutation):
        p = self.platform
        if m.kind is MutationKind.CREATE:
            if m.entity_kind is EntityKind.CATEGORY:
                return await p.create_category_resource(m.name)
            return await p.create_voice_resource(m.name, m.parent_id)
        if m.kind is MutationKind.RENAME:
            return await p.rename_resource(m.remote_id, m.name)
        if m.kind is MutationKind.SET_VISIBILITY:
            return await p.set_visibility(m.remote_id, p.everyone_role_id, bool(m.visible))
        if m.kind is MutationKind.SET_ROLE_OVERWRITES:
            for role_id in m.add_roles:
                await p.set_role_overwrite(m.remote_id, role_id, True)
            for role_id in m.remove_roles:
                await p.clear_role_overwrite(m.remote_id, role_id)
            return None
        if m.kind is MutationKind.MOVE:
            return await p.move_resource(m.remote_id, m.parent_id)
        if m.kind is MutationKind.DELETE:
            return await p.delete_resource(m.remote_id, m.reason)
        raise ValueError(f"unknown mutation kind {m.kind!r}")

    def _write_back_remote_id(self, kind: EntityKind, entity_id: str, remote_id: int) -> None:
        if kind is EntityKind.CATEGORY:
            ok = self.db.set_category_remote_id(entity_id, remote_id, origin=ORIGIN_ENGINE)
        else:
            ok = self.db.set_zone_voice_id(entity_id, remote_id, origin=ORIGIN_ENGINE)
        if not ok:
            logger.warning(
                "[⚠️] Created remote %s for %s:%s but could not store its id",
                remote_id, kind.value, entity_id,
            )

    def _forget_deleted_category(self, kind: EntityKind, entity_id: str) -> None:
        # the old id lives on in the ledger for recovery
        if kind is EntityKind.CATEGORY and self.db.get_category(entity_id) is not None:
            self.db.clear_category_remote_id(entity_id, mark_deleted=True, origin=ORIGIN_ENGINE)

    def _confirm_synced(
        self,
        kind: EntityKind,
        entity_id: str,
        guild_id,
        remote_id: Optional[int],
        name: str,
        parent_id: Optional[int],
    ) -> None:
        if remote_id is not None:
            self.cache.set(remote_id, parent_id, name=name, entity_id=entity_id, entity_kind=kind)
        latest = self.ledger.latest(entity_id, kind)
        if latest is not None and latest.sync_status is SyncStatus.SYNCED and latest.retry_at is None:
            return
        self.ledger.record(
            entity_id, kind, guild_id, SyncStatus.SYNCED,
            {"discord_id": remote_id, "name": name, "message": "Already in sync"},
        )

    def _mark_gone(
        self,
        kind: EntityKind,
        entity_id: str,
        guild_id,
        remote_id: Optional[int],
        message: str,
    ) -> MutationResult:
        logger.warning("[🗑️] %s:%s remote %s: %s", kind.value, entity_id, remote_id, message)
        self.cache.evict(entity_id, kind)
        self.ledger.record(
            entity_id, kind, guild_id, SyncStatus.DELETED,
            {"discord_id": remote_id, "message": message},
        )
        return MutationResult(ResultStatus.DELETED, kind, entity_id, remote_id)
