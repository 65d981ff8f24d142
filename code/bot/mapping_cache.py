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
import threading
from dataclasses import dataclass
from typing import Optional

from common.models import EntityKind

logger = logging.getLogger("bot.cache")


@dataclass(frozen=True)
class MappingCacheEntry:
    remote_id: int
    parent_id: Optional[int]
    name: str
    entity_id: str
    entity_kind: EntityKind


class MappingCache:
    """
    Remote child id → (remote parent id, name, owning entity).

    An accelerator only: every correctness decision re-reads the store or
    Discord. Writers build a new dict and swap it in under the lock, so
    readers never take the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_remote: dict[int, MappingCacheEntry] = {}
        self._by_entity: dict[str, int] = {}
        self.hits = 0
        self.misses = 0
        self.fallback_lookups = 0

    @staticmethod
    def _ekey(entity_kind: EntityKind, entity_id: str) -> str:
        return f"{EntityKind(entity_kind).value}:{entity_id}"

    def resolve(self, remote_child_id: int) -> Optional[int]:
        entry = self._by_remote.get(int(remote_child_id))
        if entry is None:
            self.misses += 1
            return None
        self.hits += 1
        return entry.parent_id

    def entry(self, remote_child_id: int) -> Optional[MappingCacheEntry]:
        return self._by_remote.get(int(remote_child_id))

    def remote_id_for(
        self, entity_id: str, entity_kind: EntityKind = EntityKind.CATEGORY
    ) -> Optional[int]:
        return self._by_entity.get(self._ekey(entity_kind, entity_id))

    def set(
        self,
        remote_child_id: int,
        remote_parent_id: Optional[int],
        *,
        name: str,
        entity_id: str,
        entity_kind: EntityKind,
    ) -> None:
        entry = MappingCacheEntry(
            remote_id=int(remote_child_id),
            parent_id=int(remote_parent_id) if remote_parent_id is not None else None,
            name=name,
            entity_id=str(entity_id),
            entity_kind=EntityKind(entity_kind),
        )
        ekey = self._ekey(entry.entity_kind, entry.entity_id)
        with self._lock:
            by_remote = dict(self._by_remote)
            by_entity = dict(self._by_entity)
            old = by_entity.get(ekey)
            if old is not None and old != entry.remote_id:
                by_remote.pop(old, None)
            by_remote[entry.remote_id] = entry
            by_entity[ekey] = entry.remote_id
            self._by_remote, self._by_entity = by_remote, by_entity

    def evict(
        self, entity_id: str, entity_kind: Optional[EntityKind] = None
    ) -> Optional[MappingCacheEntry]:
        """Drop the entry owned by `entity_id` (any kind when none is given)."""
        kinds = [EntityKind(entity_kind)] if entity_kind else [EntityKind.CATEGORY, EntityKind.ZONE]
        with self._lock:
            by_remote = dict(self._by_remote)
            by_entity = dict(self._by_entity)
            removed = None
            for k in kinds:
                rid = by_entity.pop(self._ekey(k, str(entity_id)), None)
                if rid is not None:
                    removed = by_remote.pop(rid, None) or removed
            self._by_remote, self._by_entity = by_remote, by_entity
        if removed:
            logger.debug("Evicted %s:%s (remote %s)", removed.entity_kind.value, entity_id, removed.remote_id)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._by_remote = {}
            self._by_entity = {}

    def __len__(self) -> int:
        return len(self._by_remote)

    def rebuild(self, db) -> int:
        """
        Re-seed from the store: every category with a remote id, then every
        zone with a voice id joined to its category's remote id.
        """
        by_remote: dict[int, MappingCacheEntry] = {}
        by_entity: dict[str, int] = {}

        for row in db.categories_with_remote_id():
            e = MappingCacheEntry(
                remote_id=int(row["discord_category_id"]),
                parent_id=None,
                name=row["name"] or "",
                entity_id=str(row["id"]),
                entity_kind=EntityKind.CATEGORY,
            )
            by_remote[e.remote_id] = e
            by_entity[self._ekey(e.entity_kind, e.entity_id)] = e.remote_id

        for row in db.zones_with_voice_ids():
            parent = row.get("discord_category_id")
            e = MappingCacheEntry(
                remote_id=int(row["discord_voice_id"]),
                parent_id=int(parent) if parent is not None else None,
                name=row.get("zone_name") or "",
                entity_id=str(row["zone_id"]),
                entity_kind=EntityKind.ZONE,
            )
            by_remote[e.remote_id] = e
            by_entity[self._ekey(e.entity_kind, e.entity_id)] = e.remote_id

        with self._lock:
            self._by_remote, self._by_entity = by_remote, by_entity
        logger.info("[✅] Mapping cache rebuilt with %d entries", len(by_remote))
        return len(by_remote)

    def resolve_or_load(self, remote_child_id: int, db) -> Optional[int]:
        """Cache first; on a miss look the channel up in the store and backfill."""
        rid = int(remote_child_id)
        entry = self._by_remote.get(rid)
        if entry is not None:
            self.hits += 1
            return entry.parent_id

        self.misses += 1
        self.fallback_lookups += 1

        zone = db.get_zone_by_remote_id(rid)
        if zone is not None:
            parent = None
            if zone.get("category_id"):
                cat = db.get_category(zone["category_id"])
                if cat is not None:
                    parent = cat.get("discord_category_id")
            self.set(rid, parent, name=zone.get("name") or "", entity_id=zone["id"],
                     entity_kind=EntityKind.ZONE)
            return int(parent) if parent is not None else None

        cat = db.get_category_by_remote_id(rid)
        if cat is not None:
            self.set(rid, None, name=cat.get("name") or "", entity_id=cat["id"],
                     entity_kind=EntityKind.CATEGORY)
        return None

    def lookup_entity(self, remote_child_id: int, db) -> Optional[MappingCacheEntry]:
        """Like `resolve_or_load` but returns the full entry."""
        rid = int(remote_child_id)
        if rid not in self._by_remote:
            self.resolve_or_load(rid, db)
        else:
            self.hits += 1
        return self._by_remote.get(rid)

    def stats(self) -> dict:
        return {
            "entries": len(self._by_remote),
            "hits": self.hits,
            "misses": self.misses,
            "fallback_lookups": self.fallback_lookups,
        }
