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
import sqlite3, threading
import time
from typing import Callable, List, Optional
import uuid

from common.models import EntityKind, Operation, SyncStatus

logger = logging.getLogger("common.db")

# (kind, operation, before, after, origin)
ChangeListener = Callable[
    [EntityKind, Operation, Optional[dict], Optional[dict], Optional[str]], None
]

_CATEGORY_FIELDS = (
    "guild_id",
    "name",
    "category_type",
    "is_visible",
    "is_tracking_active",
    "is_send_setup",
    "allowed_roles",
    "discord_category_id",
    "is_deleted_in_discord",
    "settings",
    "total_seconds_in_category",
    "last_usage_at",
)

_ZONE_FIELDS = (
    "category_id",
    "zone_key",
    "name",
    "minutes_required",
    "points_granted",
    "discord_voice_id",
    "stats",
    "settings",
    "last_usage_at",
)

_JSON_FIELDS = {"allowed_roles", "settings", "stats"}
_BOOL_FIELDS = {"is_visible", "is_tracking_active", "is_send_setup", "is_deleted_in_discord"}


def _to_db(key: str, value):
    if key in _JSON_FIELDS and not isinstance(value, str):
        return json.dumps(value if value is not None else ({} if key != "allowed_roles" else []))
    if key in _BOOL_FIELDS and value is not None:
        return 1 if value else 0
    return value


class DBManager:
    def __init__(self, db_path: str, init_schema: bool = False):
        self.path = db_path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA foreign_keys = ON;")
        self.conn.execute("PRAGMA journal_mode = DELETE;")
        self.conn.execute("PRAGMA synchronous = FULL;")
        self.conn.execute("PRAGMA busy_timeout = 5000;")
        self.lock = threading.RLock()
        self._listeners: list[ChangeListener] = []
        if init_schema:
            self._init_schema()

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def _init_schema(self):
        """
        Creates the store tables, rebuilding any table whose columns have
        drifted from the current layout.
        """
        c = self.conn.cursor()

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS app_config(
        key           TEXT PRIMARY KEY,
        value         TEXT NOT NULL DEFAULT '',
        last_updated  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )

        self._ensure_table(
            name="categories",
            create_sql_template="""
                CREATE TABLE {table} (
                    id                         TEXT PRIMARY KEY,
                    guild_id                   INTEGER NOT NULL,
                    name                       TEXT NOT NULL,
                    category_type              TEXT NOT NULL DEFAULT 'default',
                    is_visible                 INTEGER NOT NULL DEFAULT 1,
                    is_tracking_active         INTEGER NOT NULL DEFAULT 0,
                    is_send_setup              INTEGER NOT NULL DEFAULT 0,
                    allowed_roles              TEXT NOT NULL DEFAULT '[]',
                    discord_category_id        INTEGER UNIQUE,
                    is_deleted_in_discord      INTEGER NOT NULL DEFAULT 0,
                    settings                   TEXT NOT NULL DEFAULT '{}',
                    total_seconds_in_category  INTEGER NOT NULL DEFAULT 0,
                    last_usage_at              TEXT,
                    created_at                 TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at                 TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """,
            required_columns={"id", "guild_id", "name", *_CATEGORY_FIELDS, "created_at", "updated_at"},
            copy_map={
                "id": "id",
                "guild_id": "guild_id",
                "name": "name",
                "discord_category_id": "discord_category_id",
                "settings": "COALESCE(settings, '{}')",
                "created_at": "created_at",
            },
            post_sql=[
                "CREATE INDEX IF NOT EXISTS ix_categories_guild ON categories(guild_id);",
            ],
        )

        self._ensure_table(
            name="zones",
            create_sql_template="""
                CREATE TABLE {table} (
                    id                TEXT PRIMARY KEY,
                    category_id       TEXT REFERENCES categories(id) ON DELETE CASCADE,
                    zone_key          TEXT NOT NULL,
                    name              TEXT NOT NULL,
                    minutes_required  INTEGER NOT NULL DEFAULT 0,
                    points_granted    INTEGER NOT NULL DEFAULT 0,
                    discord_voice_id  INTEGER UNIQUE,
                    stats             TEXT NOT NULL DEFAULT '{}',
                    settings          TEXT NOT NULL DEFAULT '{}',
                    last_usage_at     TEXT,
                    created_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """,
            required_columns={"id", *_ZONE_FIELDS, "created_at", "updated_at"},
            copy_map={
                "id": "id",
                "category_id": "category_id",
                "zone_key": "zone_key",
                "name": "name",
                "discord_voice_id": "discord_voice_id",
                "settings": "COALESCE(settings, '{}')",
                "created_at": "created_at",
            },
            post_sql=[
                "CREATE INDEX IF NOT EXISTS ix_zones_category ON zones(category_id);",
            ],
        )

        self._ensure_table(
            name="discord_sync",
            create_sql_template="""
                CREATE TABLE {table} (
                    id              TEXT NOT NULL,
                    entity_type     TEXT NOT NULL
                                    CHECK (entity_type IN ('category','zone','role')),
                    guild_id        TEXT NOT NULL DEFAULT '',
                    data            TEXT NOT NULL DEFAULT '{}',
                    sync_status     TEXT NOT NULL DEFAULT 'pending'
                                    CHECK (sync_status IN
                                        ('pending','synced','error','deleted','pending_delete')),
                    retry_at        REAL,
                    last_synced_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (id, entity_type)
                );
            """,
            required_columns={
                "id",
                "entity_type",
                "guild_id",
                "data",
                "sync_status",
                "retry_at",
                "last_synced_at",
            },
            copy_map={
                "id": "id",
                "entity_type": "entity_type",
                "guild_id": "COALESCE(guild_id, '')",
                "data": "COALESCE(data, '{}')",
                "sync_status": "sync_status",
                "last_synced_at": "last_synced_at",
            },
            post_sql=[
                "CREATE INDEX IF NOT EXISTS ix_sync_status ON discord_sync(sync_status);",
            ],
        )

        c.execute(
            """
        CREATE TABLE IF NOT EXISTS discord_sync_history(
        history_id      INTEGER PRIMARY KEY AUTOINCREMENT,
        id              TEXT NOT NULL,
        entity_type     TEXT NOT NULL,
        guild_id        TEXT NOT NULL DEFAULT '',
        data            TEXT NOT NULL DEFAULT '{}',
        sync_status     TEXT NOT NULL,
        retry_at        REAL,
        recorded_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )
        c.execute(
            "CREATE INDEX IF NOT EXISTS ix_sync_history_entity "
            "ON discord_sync_history(id, entity_type, history_id);"
        )

        self.conn.commit()

    def _table_exists(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
            (name,),
        ).fetchone()
        return row is not None

    def _table_columns(self, name: str) -> set[str]:
        return {
            r[1] for r in self.conn.execute(f"PRAGMA table_info({name})").fetchall()
        }

    def _ensure_table(
        self,
        *,
        name: str,
        create_sql_template: str,
        required_columns: set[str],
        copy_map: dict[str, str],
        post_sql: list[str] | None = None,
    ):
        """
        Create or rebuild table `name` to match the target schema.
        """
        post_sql = post_sql or []

        if not self._table_exists(name):
            self.conn.execute(create_sql_template.replace("{table}", name))
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        existing_cols = self._table_columns(name)
        if required_columns.issubset(existing_cols):
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        logger.info("Rebuilding table %s (missing %s)", name,
                    sorted(required_columns - existing_cols))
        temp = f"_{name}_new"

        prev_fk = self.conn.execute("PRAGMA foreign_keys").fetchone()[0]
        self.conn.execute("PRAGMA foreign_keys = OFF;")

        in_txn = self.conn.in_transaction
        sp_name = f"sp_rebuild_{name}"

        try:
            if in_txn:
                self.conn.execute(f"SAVEPOINT {sp_name};")
            else:
                self.conn.execute("BEGIN;")

            self.conn.execute(create_sql_template.replace("{table}", temp))

            new_cols = list(copy_map.keys())
            select_exprs = []
            for new_col in new_cols:
                expr = copy_map[new_col].strip()
                if expr.isidentifier() and expr not in existing_cols:
                    expr = "NULL"
                select_exprs.append(expr)

            self.conn.execute(
                f"INSERT OR IGNORE INTO {temp} ({', '.join(new_cols)}) "
                f"SELECT {', '.join(select_exprs)} FROM {name}"
            )

            self.conn.execute(f"DROP TABLE {name};")
            self.conn.execute(f"ALTER TABLE {temp} RENAME TO {name};")

            for stmt in post_sql:
                self.conn.execute(stmt)

            if in_txn:
                self.conn.execute(f"RELEASE SAVEPOINT {sp_name};")
            else:
                self.conn.execute("COMMIT;")

        except Exception:
            if in_txn:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {sp_name};")
                self.conn.execute(f"RELEASE SAVEPOINT {sp_name};")
            else:
                self.conn.execute("ROLLBACK;")
            raise
        finally:
            self.conn.execute(f"PRAGMA foreign_keys = {1 if prev_fk else 0};")

    # ------------------------------------------------------------------
    # Row-change hooks
    # ------------------------------------------------------------------

    def add_change_listener(self, cb: ChangeListener) -> None:
        """
        Register a callback fired after every committed category/zone write.
        `origin` is whatever tag the writer passed (None for ordinary edits).
        """
        self._listeners.append(cb)

    def remove_change_listener(self, cb: ChangeListener) -> None:
        try:
            self._listeners.remove(cb)
        except ValueError:
            pass

    def _emit(
        self,
        kind: EntityKind,
        op: Operation,
        before: Optional[dict],
        after: Optional[dict],
        origin: Optional[str],
    ) -> None:
        for cb in list(self._listeners):
            try:
                cb(kind, op, before, after, origin)
            except Exception:
                logger.exception("Change listener %r failed for %s %s", cb, kind.value, op.value)

    @staticmethod
    def _row(row) -> Optional[dict]:
        return {k: row[k] for k in row.keys()} if row is not None else None

    # ------------------------------------------------------------------
    # app_config
    # ------------------------------------------------------------------

    def set_config(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT INTO app_config(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, "
                "last_updated=CURRENT_TIMESTAMP",
                (key, value),
            )

    def get_config(self, key: str, default: str = "") -> str:
        row = self.conn.execute(
            "SELECT value FROM app_config WHERE key=?", (key,)
        ).fetchone()
        return row["value"] if row else default

    def get_all_config(self) -> dict[str, str]:
        return {
            r["key"]: r["value"]
            for r in self.conn.execute("SELECT key, value FROM app_config")
        }

    def delete_config(self, key: str) -> None:
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM app_config WHERE key=?", (key,))

    # ------------------------------------------------------------------
    # categories
    # ------------------------------------------------------------------

    def get_category(self, category_id: str) -> Optional[dict]:
        return self._row(
            self.conn.execute(
                "SELECT * FROM categories WHERE id = ?", (str(category_id),)
            ).fetchone()
        )

    def get_category_by_remote_id(self, remote_id: int) -> Optional[dict]:
        return self._row(
            self.conn.execute(
                "SELECT * FROM categories WHERE discord_category_id = ?",
                (int(remote_id),),
            ).fetchone()
        )

    def list_categories(self, guild_id: Optional[int] = None) -> List[dict]:
        if guild_id is None:
            rows = self.conn.execute("SELECT * FROM categories ORDER BY created_at").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM categories WHERE guild_id = ? ORDER BY created_at",
                (int(guild_id),),
            ).fetchall()
        return [self._row(r) for r in rows]

    def insert_category(self, *, origin: Optional[str] = None, **fields) -> dict:
        """
        Insert a category row. `id` is generated when absent. Emits an
        insert change event.
        """
        cid = str(fields.pop("id", None) or uuid.uuid4())
        cols = ["id"] + [k for k in _CATEGORY_FIELDS if k in fields]
        vals = [cid] + [_to_db(k, fields[k]) for k in cols[1:]]
        with self.lock, self.conn:
            self.conn.execute(
                f"INSERT INTO categories ({', '.join(cols)}) "
                f"VALUES ({', '.join('?' for _ in cols)})",
                vals,
            )
        after = self.get_category(cid)
        self._emit(EntityKind.CATEGORY, Operation.INSERT, None, after, origin)
        return after

    def update_category(
        self, category_id: str, *, origin: Optional[str] = None, **changes
    ) -> Optional[dict]:
        unknown = set(changes) - set(_CATEGORY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown category fields: {sorted(unknown)}")
        with self.lock:
            before = self.get_category(category_id)
            if before is None:
                return None
            if changes:
                sets = ", ".join(f"{k} = ?" for k in changes)
                with self.conn:
                    self.conn.execute(
                        f"UPDATE categories SET {sets}, updated_at = CURRENT_TIMESTAMP "
                        "WHERE id = ?",
                        [_to_db(k, v) for k, v in changes.items()] + [str(category_id)],
                    )
            after = self.get_category(category_id)
        self._emit(EntityKind.CATEGORY, Operation.UPDATE, before, after, origin)
        return after

    def delete_category(
        self, category_id: str, *, origin: Optional[str] = None
    ) -> Optional[dict]:
        """
        Delete a category and its zones. Each zone is deleted explicitly first
        so its own delete event fires before the category's.
        """
        for z in self.list_zones(category_id=category_id):
            self.delete_zone(z["id"], origin=origin)
        with self.lock:
            before = self.get_category(category_id)
            if before is None:
                return None
            with self.conn:
                self.conn.execute("DELETE FROM categories WHERE id = ?", (str(category_id),))
        self._emit(EntityKind.CATEGORY, Operation.DELETE, before, None, origin)
        return before

    def set_category_remote_id(
        self,
        category_id: str,
        remote_id: int,
        *,
        recreate: bool = False,
        origin: Optional[str] = None,
    ) -> bool:
        """
        Write back the Discord id after a successful create. An existing,
        different id is only replaced when `recreate` is set.
        """
        with self.lock:
            row = self.get_category(category_id)
            if row is None:
                return False
            current = row["discord_category_id"]
            if current is not None and int(current) == int(remote_id):
                return True
            if current is not None and not recreate:
                logger.warning(
                    "[⚠️] Refusing to overwrite remote id of category %s (%s → %s) without recreate",
                    category_id, current, remote_id,
                )
                return False
        self.update_category(
            category_id,
            discord_category_id=int(remote_id),
            is_deleted_in_discord=False,
            origin=origin,
        )
        return True

    def clear_category_remote_id(
        self, category_id: str, *, mark_deleted: bool, origin: Optional[str] = None
    ) -> Optional[dict]:
        return self.update_category(
            category_id,
            discord_category_id=None,
            is_deleted_in_discord=bool(mark_deleted),
            origin=origin,
        )

    def categories_with_remote_id(self) -> List[dict]:
        rows = self.conn.execute(
            "SELECT id, name, discord_category_id FROM categories "
            "WHERE discord_category_id IS NOT NULL"
        ).fetchall()
        return [self._row(r) for r in rows]

    # ------------------------------------------------------------------
    # zones
    # ------------------------------------------------------------------

    def get_zone(self, zone_id: str) -> Optional[dict]:
        return self._row(
            self.conn.execute("SELECT * FROM zones WHERE id = ?", (str(zone_id),)).fetchone()
        )

    def get_zone_by_remote_id(self, voice_id: int) -> Optional[dict]:
        return self._row(
            self.conn.execute(
                "SELECT * FROM zones WHERE discord_voice_id = ?", (int(voice_id),)
            ).fetchone()
        )

    def list_zones(self, category_id: Optional[str] = None) -> List[dict]:
        if category_id is None:
            rows = self.conn.execute("SELECT * FROM zones ORDER BY created_at").fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM zones WHERE category_id = ? ORDER BY created_at",
                (str(category_id),),
            ).fetchall()
        return [self._row(r) for r in rows]

    def insert_zone(self, *, origin: Optional[str] = None, **fields) -> dict:
        zid = str(fields.pop("id", None) or uuid.uuid4())
        cols = ["id"] + [k for k in _ZONE_FIELDS if k in fields]
        vals = [zid] + [_to_db(k, fields[k]) for k in cols[1:]]
        with self.lock, self.conn:
            self.conn.execute(
                f"INSERT INTO zones ({', '.join(cols)}) "
                f"VALUES ({', '.join('?' for _ in cols)})",
                vals,
            )
        after = self.get_zone(zid)
        self._emit(EntityKind.ZONE, Operation.INSERT, None, after, origin)
        return after

    def update_zone(
        self, zone_id: str, *, origin: Optional[str] = None, **changes
    ) -> Optional[dict]:
        unknown = set(changes) - set(_ZONE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown zone fields: {sorted(unknown)}")
        with self.lock:
            before = self.get_zone(zone_id)
            if before is None:
                return None
            if changes:
                sets = ", ".join(f"{k} = ?" for k in changes)
                with self.conn:
                    self.conn.execute(
                        f"UPDATE zones SET {sets}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                        [_to_db(k, v) for k, v in changes.items()] + [str(zone_id)],
                    )
            after = self.get_zone(zone_id)
        self._emit(EntityKind.ZONE, Operation.UPDATE, before, after, origin)
        return after

    def delete_zone(self, zone_id: str, *, origin: Optional[str] = None) -> Optional[dict]:
        with self.lock:
            before = self.get_zone(zone_id)
            if before is None:
                return None
            with self.conn:
                self.conn.execute("DELETE FROM zones WHERE id = ?", (str(zone_id),))
        self._emit(EntityKind.ZONE, Operation.DELETE, before, None, origin)
        return before

    def set_zone_voice_id(
        self,
        zone_id: str,
        voice_id: Optional[int],
        *,
        recreate: bool = False,
        origin: Optional[str] = None,
    ) -> bool:
        with self.lock:
            row = self.get_zone(zone_id)
            if row is None:
                return False
            current = row["discord_voice_id"]
            if voice_id is not None and current is not None:
                if int(current) == int(voice_id):
                    return True
                if not recreate:
                    logger.warning(
                        "[⚠️] Refusing to overwrite voice id of zone %s (%s → %s) without recreate",
                        zone_id, current, voice_id,
                    )
                    return False
        self.update_zone(
            zone_id,
            discord_voice_id=int(voice_id) if voice_id is not None else None,
            origin=origin,
        )
        return True

    def zones_with_voice_ids(self) -> List[dict]:
        """
        Every zone that owns a voice channel, joined to its category's remote id.
        """
        rows = self.conn.execute(
            """
            SELECT z.id AS zone_id, z.name AS zone_name, z.discord_voice_id,
                   c.id AS category_id, c.discord_category_id
            FROM zones z
            LEFT JOIN categories c ON c.id = z.category_id
            WHERE z.discord_voice_id IS NOT NULL
            """
        ).fetchall()
        return [self._row(r) for r in rows]

    # ------------------------------------------------------------------
    # discord_sync ledger
    # ------------------------------------------------------------------

    def upsert_sync_record(
        self,
        entity_id: str,
        entity_type: str,
        guild_id: str,
        status: str,
        data: dict,
        retry_at: Optional[float] = None,
        *,
        history: bool = True,
    ) -> None:
        payload = json.dumps(data or {}, default=str)
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO discord_sync (id, entity_type, guild_id, data, sync_status,
                                          retry_at, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(id, entity_type) DO UPDATE SET
                    guild_id       = excluded.guild_id,
                    data           = excluded.data,
                    sync_status    = excluded.sync_status,
                    retry_at       = excluded.retry_at,
                    last_synced_at = CURRENT_TIMESTAMP
                """,
                (str(entity_id), entity_type, str(guild_id or ""), payload, status, retry_at),
            )
            if not history:
                return
            self.conn.execute(
                """
                INSERT INTO discord_sync_history (id, entity_type, guild_id, data,
                                                  sync_status, retry_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(entity_id), entity_type, str(guild_id or ""), payload, status, retry_at),
            )

    def get_sync_record(self, entity_id: str, entity_type: str) -> Optional[dict]:
        return self._row(
            self.conn.execute(
                "SELECT * FROM discord_sync WHERE id = ? AND entity_type = ?",
                (str(entity_id), entity_type),
            ).fetchone()
        )

    def get_sync_history(
        self, entity_id: str, entity_type: str, limit: int = 50
    ) -> List[dict]:
        rows = self.conn.execute(
            """
            SELECT * FROM discord_sync_history
            WHERE id = ? AND entity_type = ?
            ORDER BY history_id DESC
            LIMIT ?
            """,
            (str(entity_id), entity_type, int(limit)),
        ).fetchall()
        return [self._row(r) for r in rows]

    def list_sync_records(
        self,
        *,
        entity_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[dict]:
        sql = "SELECT * FROM discord_sync WHERE 1=1"
        args: list = []
        if entity_type is not None:
            sql += " AND entity_type = ?"
            args.append(entity_type)
        if status is not None:
            sql += " AND sync_status = ?"
            args.append(status)
        sql += " ORDER BY last_synced_at DESC"
        return [self._row(r) for r in self.conn.execute(sql, args).fetchall()]

    def due_sync_records(self, now: Optional[float] = None) -> List[dict]:
        """Pending rows with an elapsed retry_at, oldest deadline first."""
        now = time.time() if now is None else now
        rows = self.conn.execute(
            """
            SELECT * FROM discord_sync
            WHERE sync_status = ? AND retry_at IS NOT NULL AND retry_at <= ?
            ORDER BY retry_at ASC
            """,
            (SyncStatus.PENDING.value, float(now)),
        ).fetchall()
        return [self._row(r) for r in rows]

    def delete_sync_records(self, entity_type: str, ids: list[str]) -> int:
        if not ids:
            return 0
        with self.lock, self.conn:
            cur = self.conn.executemany(
                "DELETE FROM discord_sync WHERE id = ? AND entity_type = ?",
                [(str(i), entity_type) for i in ids],
            )
            return cur.rowcount

    def count_sync_status(self) -> dict[str, int]:
        rows = self.conn.execute(
            "SELECT sync_status, COUNT(*) AS n FROM discord_sync "
            "WHERE entity_type != 'role' GROUP BY sync_status"
        ).fetchall()
        return {r["sync_status"]: int(r["n"]) for r in rows}
