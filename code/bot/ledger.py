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
from typing import Optional

from common.db import DBManager
from common.models import EntityKind, SyncRecord, SyncStatus

logger = logging.getLogger("bot.ledger")

_REMOTE_ID_KEYS = ("discord_id", "discord_category_id", "discord_voice_id")


def _remote_id_from(data: dict) -> Optional[int]:
    for key in _REMOTE_ID_KEYS:
        v = data.get(key)
        if v in (None, ""):
            continue
        try:
            return int(v)
        except (TypeError, ValueError):
            continue
    return None


class SyncLedger:
    """
    Latest reconciliation outcome per entity (`discord_sync`) plus the
    append-only attempt log (`discord_sync_history`). Advisory only: a write
    failure is logged and never interrupts reconciliation.
    """

    def __init__(self, db: DBManager, *, clock=time.time):
        self.db = db
        self._clock = clock
        self.write_failures = 0

    def record(
        self,
        entity_id: str,
        entity_kind: EntityKind,
        guild_id,
        status: SyncStatus,
        data: Optional[dict] = None,
        retry_at: Optional[float] = None,
        *,
        history: bool = True,
    ) -> bool:
        try:
            self.db.upsert_sync_record(
                str(entity_id),
                EntityKind(entity_kind).value,
                str(guild_id or ""),
                SyncStatus(status).value,
                data or {},
                retry_at,
                history=history,
            )
        except Exception:
            self.write_failures += 1
            logger.exception(
                "[⚠️] Ledger write failed for %s:%s (%s)",
                EntityKind(entity_kind).value, entity_id, SyncStatus(status).value,
            )
            return False
        logger.debug("Ledger %s:%s → %s", EntityKind(entity_kind).value, entity_id, SyncStatus(status).value)
        return True

    def latest(self, entity_id: str, entity_kind: EntityKind) -> Optional[SyncRecord]:
        row = self.db.get_sync_record(str(entity_id), EntityKind(entity_kind).value)
        return SyncRecord.from_row(row) if row else None

    def history(
        self, entity_id: str, entity_kind: EntityKind, limit: int = 20
    ) -> list[SyncRecord]:
        rows = self.db.get_sync_history(str(entity_id), EntityKind(entity_kind).value, limit)
        return [SyncRecord.from_row(r) for r in rows]

    def last_known_remote_id(
        self, entity_id: str, entity_kind: EntityKind
    ) -> Optional[int]:
        """Latest ledger row first, then history newest-first."""
        rec = self.latest(entity_id, entity_kind)
        if rec is not None:
            rid = _remote_id_from(rec.data)
            if rid is not None:
                return rid
        for h in self.history(entity_id, entity_kind, limit=100):
            rid = _remote_id_from(h.data)
            if rid is not None:
                return rid
        return None

    def due_deferred(self, now: Optional[float] = None) -> list[SyncRecord]:
        now = self._clock() if now is None else now
        return [SyncRecord.from_row(r) for r in self.db.due_sync_records(now)]

    def by_status(
        self, status: SyncStatus, entity_kind: Optional[EntityKind] = None
    ) -> list[SyncRecord]:
        rows = self.db.list_sync_records(
            status=SyncStatus(status).value,
            entity_type=EntityKind(entity_kind).value if entity_kind else None,
        )
        return [SyncRecord.from_row(r) for r in rows]

    def counts(self) -> dict[str, int]:
        try:
            return self.db.count_sync_status()
        except Exception:
            logger.exception("[⚠️] Ledger count failed")
            return {}
