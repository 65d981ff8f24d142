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
from typing import Callable, Optional

from bot.ledger import SyncLedger
from bot.mapping_cache import MappingCache
from common.db import DBManager
from common.models import EntityKind, SyncStatus

logger = logging.getLogger("bot.reverse")

# Store writes made in response to Discord-side changes carry this origin.
ORIGIN_REVERSE = "reverse_sync"

_ROW_REMOTE_KEY = {
    EntityKind.CATEGORY: "discord_category_id",
    EntityKind.ZONE: "discord_voice_id",
}


class ReverseSyncListener:
    """
    Discord → store direction: reflects channels deleted or edited directly
    in Discord, and recovers the remote id of locally deleted rows.
    """

    def __init__(
        self,
        db: DBManager,
        cache: MappingCache,
        ledger: SyncLedger,
        *,
        guild_id: int,
        submit: Optional[Callable] = None,
    ):
        self.db = db
        self.cache = cache
        self.ledger = ledger
        self.guild_id = int(guild_id)
        self.submit = submit
        self.remote_deletes = 0
        self.remote_updates = 0

    def recover_remote_id(
        self, kind: EntityKind, entity_id: str, before: Optional[dict] = None
    ) -> Optional[int]:
        """
        Remote id of a row that no longer exists locally: the deleted row
        itself, then the mapping cache, then the ledger and its history.
        """
        raw = (before or {}).get(_ROW_REMOTE_KEY[kind])
        if raw not in (None, ""):
            try:
                return int(raw)
            except (TypeError, ValueError):
                pass

        rid = self.cache.remote_id_for(entity_id, kind)
        if rid is not None:
            return rid

        rid = self.ledger.last_known_remote_id(entity_id, kind)
        if rid is not None:
            logger.info(
                "Recovered remote id %s for deleted %s:%s from the sync ledger",
                rid, kind.value, entity_id,
            )
        return rid

    def _ours(self, channel) -> bool:
        guild = getattr(channel, "guild", None)
        return guild is not None and int(guild.id) == self.guild_id

    async def on_guild_channel_delete(self, channel) -> None:
        if not self._ours(channel):
            return
        cid = int(channel.id)

        cat = self.db.get_category_by_remote_id(cid)
        if cat is not None:
            self.remote_deletes += 1
            logger.warning(
                "[🗑️] Category %r (%s) was deleted in Discord; marking it deleted",
                cat["name"], cid,
            )
            self.db.clear_category_remote_id(cat["id"], mark_deleted=True, origin=ORIGIN_REVERSE)
            self.cache.evict(cat["id"], EntityKind.CATEGORY)
            self.ledger.record(
                cat["id"], EntityKind.CATEGORY, cat.get("guild_id"), SyncStatus.DELETED,
                {"discord_id": cid, "message": "Deleted directly in Discord"},
            )
            return

        zone = self.db.get_zone_by_remote_id(cid)
        if zone is not None:
            self.remote_deletes += 1
            logger.warning(
                "[🗑️] Voice channel %r (%s) of zone %s was deleted in Discord",
                zone["name"], cid, zone["id"],
            )
            self.db.set_zone_voice_id(zone["id"], None, origin=ORIGIN_REVERSE)
            self.cache.evict(zone["id"], EntityKind.ZONE)
            self.ledger.record(
                zone["id"], EntityKind.ZONE, self.guild_id, SyncStatus.DELETED,
                {"discord_id": cid, "message": "Deleted directly in Discord"},
            )
            return

        logger.debug("Ignoring delete of unmapped channel %s", cid)

    async def on_guild_channel_update(self, before, after) -> None:
        if not self._ours(after):
            return
        entry = self.cache.lookup_entity(int(after.id), self.db)
        if entry is None:
            return

        changed = (
            getattr(before, "name", None) != getattr(after, "name", None)
            or getattr(before, "category_id", None) != getattr(after, "category_id", None)
            or getattr(before, "overwrites", None) != getattr(after, "overwrites", None)
        )
        if not changed:
            return

        self.remote_updates += 1
        logger.info(
            "[✏️] %s %s was edited in Discord; scheduling reconciliation",
            entry.entity_kind.value, entry.entity_id,
        )
        if self.submit is not None:
            self.submit(entry.entity_kind, entry.entity_id)
