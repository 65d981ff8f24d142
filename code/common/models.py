# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class EntityKind(str, Enum):
    CATEGORY = "category"
    ZONE = "zone"
    ROLE = "role"


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    DELETED = "deleted"
    PENDING_DELETE = "pending_delete"


@dataclass
class CategoryEntity:
    """
    Desired state of one Discord category, as stored locally.

    `remote_id` stays None until the first successful create; after that it
    is the category's identity on Discord.
    """

    id: str
    guild_id: Optional[int]
    name: str
    category_type: str = "default"
    is_visible: bool = True
    is_tracking_active: bool = False
    is_send_setup: bool = False
    allowed_roles: list[int] = field(default_factory=list)
    remote_id: Optional[int] = None
    is_deleted_in_discord: bool = False
    settings: dict = field(default_factory=dict)
    total_seconds_in_category: int = 0
    last_usage_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def kind(self) -> EntityKind:
        return EntityKind.CATEGORY


@dataclass
class ZoneEntity:
    id: str
    category_id: Optional[str]
    zone_key: str
    name: str
    minutes_required: int = 0
    points_granted: int = 0
    remote_id: Optional[int] = None
    is_visible: bool = True
    allowed_roles: list[int] = field(default_factory=list)
    stats: dict = field(default_factory=dict)
    settings: dict = field(default_factory=dict)
    last_usage_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def kind(self) -> EntityKind:
        return EntityKind.ZONE


@dataclass
class SyncRecord:
    id: str
    entity_type: EntityKind
    guild_id: str
    sync_status: SyncStatus
    data: dict = field(default_factory=dict)
    last_synced_at: Optional[str] = None
    retry_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: Any) -> "SyncRecord":
        rr = row if isinstance(row, dict) else dict(row)
        data = rr.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                data = {"raw": data}
        return cls(
            id=str(rr["id"]),
            entity_type=EntityKind(rr["entity_type"]),
            guild_id=str(rr.get("guild_id") or ""),
            sync_status=SyncStatus(rr["sync_status"]),
            data=data if isinstance(data, dict) else {},
            last_synced_at=rr.get("last_synced_at"),
            retry_at=rr.get("retry_at"),
        )


@dataclass
class RemoteResource:
    """Live snapshot of a Discord category or voice channel."""

    id: int
    name: str
    kind: str
    parent_id: Optional[int] = None
    everyone_visible: bool = True
    role_overwrites: frozenset[int] = frozenset()
