# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import json
import logging
from typing import Any

from common.models import CategoryEntity, ZoneEntity

logger = logging.getLogger("common.helpers")


def rowdict(row) -> dict | None:
    """sqlite3.Row → dict; dict stays dict; None stays None."""
    if row is None:
        return None
    return row if isinstance(row, dict) else {k: row[k] for k in row.keys()}


def parse_settings(raw: Any) -> dict:
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            val = json.loads(raw)
        except ValueError:
            logger.debug("Unparseable settings blob: %r", raw[:200])
            return {}
        return val if isinstance(val, dict) else {}
    return {}


def _as_bool(val: Any, default: bool) -> bool:
    if val is None:
        return default
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "on")
    return bool(val)


def _opt_int(val: Any) -> int | None:
    if val is None or val == "":
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def role_ids(val: Any) -> list[int]:
    """
    Normalize an allowed-roles value (list of str/int, JSON text, or CSV)
    into a de-duplicated list of ints, keeping first-seen order.
    """
    if isinstance(val, str):
        s = val.strip()
        if s.startswith("["):
            try:
                val = json.loads(s)
            except ValueError:
                val = []
        else:
            val = [t for t in s.split(",")]
    if not isinstance(val, (list, tuple, set, frozenset)):
        return []

    out: list[int] = []
    seen: set[int] = set()
    for x in val:
        rid = _opt_int(str(x).strip()) if x is not None else None
        if rid is None or rid in seen:
            continue
        seen.add(rid)
        out.append(rid)
    return out


def _column_or_blob(row: dict, settings: dict, key: str):
    """
    Typed column wins; the legacy settings blob is only consulted when the
    column is absent from the row (or NULL).
    """
    val = row.get(key)
    if val is None:
        val = settings.get(key)
    return val


def category_from_row(row) -> CategoryEntity:
    """
    The one place a category row (full, partial, or legacy) becomes a typed
    CategoryEntity.
    """
    row = rowdict(row) or {}
    settings = parse_settings(row.get("settings"))

    roles_raw = _column_or_blob(row, settings, "allowed_roles")

    return CategoryEntity(
        id=str(row.get("id") or ""),
        guild_id=_opt_int(row.get("guild_id")),
        name=str(row.get("name") or "").strip(),
        category_type=str(
            _column_or_blob(row, settings, "category_type") or "default"
        ),
        is_visible=_as_bool(_column_or_blob(row, settings, "is_visible"), True),
        is_tracking_active=_as_bool(
            _column_or_blob(row, settings, "is_tracking_active"), False
        ),
        is_send_setup=_as_bool(_column_or_blob(row, settings, "is_send_setup"), False),
        allowed_roles=role_ids(roles_raw),
        remote_id=_opt_int(row.get("discord_category_id")),
        is_deleted_in_discord=_as_bool(
            _column_or_blob(row, settings, "is_deleted_in_discord"), False
        ),
        settings=settings,
        total_seconds_in_category=_opt_int(row.get("total_seconds_in_category")) or 0,
        last_usage_at=row.get("last_usage_at"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def zone_from_row(row) -> ZoneEntity:
    """Zones keep visibility and allowed roles in the settings blob only."""
    row = rowdict(row) or {}
    settings = parse_settings(row.get("settings"))
    stats = parse_settings(row.get("stats"))

    return ZoneEntity(
        id=str(row.get("id") or ""),
        category_id=(str(row["category_id"]) if row.get("category_id") else None),
        zone_key=str(row.get("zone_key") or ""),
        name=str(row.get("name") or "").strip(),
        minutes_required=_opt_int(row.get("minutes_required")) or 0,
        points_granted=_opt_int(row.get("points_granted")) or 0,
        remote_id=_opt_int(row.get("discord_voice_id")),
        is_visible=_as_bool(_column_or_blob(row, settings, "is_visible"), True),
        allowed_roles=role_ids(_column_or_blob(row, settings, "allowed_roles")),
        stats=stats,
        settings=settings,
        last_usage_at=row.get("last_usage_at"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def default_category_settings(
    *,
    is_visible: bool = True,
    is_tracking_active: bool = False,
    is_send_setup: bool = False,
) -> dict:
    return {
        "is_visible": is_visible,
        "is_tracking_active": is_tracking_active,
        "is_send_setup": is_send_setup,
        "is_deleted_in_discord": False,
    }
