# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


from __future__ import annotations
import asyncio, logging
from typing import Optional

from bot.errors import SyncError
from bot.ledger import SyncLedger
from bot.platform import RemotePlatform
from common.db import DBManager
from common.models import EntityKind, SyncStatus

logger = logging.getLogger("bot.roles")


class RoleMirror:
    """
    Keeps `discord_sync` role rows in step with the guild's roles so the
    dashboard can offer them as allowed roles.
    """

    def __init__(
        self,
        platform: RemotePlatform,
        db: DBManager,
        ledger: SyncLedger,
        *,
        guild_id: int,
        interval: float = 3600,
    ):
        self.platform = platform
        self.db = db
        self.ledger = ledger
        self.guild_id = int(guild_id)
        self.interval = float(interval)
        self._task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self.last_count = 0

    async def sync_once(self) -> tuple[int, int]:
        """Returns (roles written, stale rows removed)."""
        async with self._lock:
            roles = await self.platform.fetch_roles()
            written = 0
            for r in roles:
                ok = self.ledger.record(
                    r["id"], EntityKind.ROLE, self.guild_id, SyncStatus.SYNCED, r,
                    history=False,
                )
                written += 1 if ok else 0

            current = {str(r["id"]) for r in roles}
            stored = [
                row["id"]
                for row in self.db.list_sync_records(entity_type=EntityKind.ROLE.value)
                if str(row.get("guild_id") or "") == str(self.guild_id)
            ]
            stale = [rid for rid in stored if rid not in current]
            removed = self.db.delete_sync_records(EntityKind.ROLE.value, stale) if stale else 0

            self.last_count = len(roles)
            logger.info(
                "[✅] Role mirror: %d roles written, %d stale removed", written, removed
            )
            return written, removed

    def kickoff_sync(self) -> None:
        if self._task and not self._task.done():
            logger.debug("Role sync already running; skip kickoff.")
            return
        self._task = asyncio.create_task(self._run_logged(), name="role_mirror_sync")

    async def _run_logged(self) -> None:
        try:
            await self.sync_once()
        except asyncio.CancelledError:
            raise
        except SyncError as e:
            logger.warning("[⚠️] Role mirror failed: %s", e)
        except Exception:
            logger.exception("[⛔] Role mirror crashed")

    async def _periodic(self) -> None:
        while True:
            await self._run_logged()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._periodic(), name="role_mirror_loop")

    async def close(self) -> None:
        for t in (self._loop_task, self._task):
            if t and not t.done():
                t.cancel()
        await asyncio.gather(
            *(t for t in (self._loop_task, self._task) if t), return_exceptions=True
        )
        self._loop_task = self._task = None
