# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import discord
from discord.errors import Forbidden
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from common.config import Config, CURRENT_VERSION
from common.models import EntityKind, SyncStatus
from bot import logctx
from bot.change_feed import ChangeFeed
from bot.health import HealthServer
from bot.ledger import SyncLedger
from bot.mapping_cache import MappingCache
from bot.mutator import RemoteMutator
from bot.platform import DiscordPlatform
from bot.rate_limiter import RateLimitManager
from bot.reconciler import Reconciler
from bot.retry import RetryPolicy
from bot.reverse_sync import ReverseSyncListener
from bot.roles import RoleMirror

LEVEL_NAME = os.getenv("LOG_LEVEL", "INFO").upper()
LEVEL = getattr(logging, LEVEL_NAME, logging.INFO)

formatter = logging.Formatter(
    "%(asctime)s | %(levelname)-5s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

root = logging.getLogger()
root.setLevel(LEVEL)

ch = logging.StreamHandler()
ch.setFormatter(formatter)
ch.setLevel(LEVEL)
ch.addFilter(logctx.ContextFilter())
root.addHandler(ch)

for name in ("websockets.server", "websockets.protocol"):
    logging.getLogger(name).setLevel(logging.WARNING)
for lib in (
    "discord",
    "discord.client",
    "discord.gateway",
    "discord.state",
    "discord.http",
):
    logging.getLogger(lib).setLevel(logging.WARNING)
logging.getLogger("discord.client").setLevel(logging.ERROR)

logger = logging.getLogger("bot")


class ZonesyncBot:
    def __init__(self):
        self.config = Config(logger=logger)
        self.config.validate()
        self.db = self.config.db
        self.guild_id = int(self.config.GUILD_ID)

        intents = discord.Intents.default()
        intents.guilds = True
        self.bot = discord.Bot(intents=intents)
        self.bot.zonesync = self

        self.ratelimit = RateLimitManager()
        self.platform = DiscordPlatform(self.bot, self.guild_id, self.ratelimit)
        self.cache = MappingCache()
        self.ledger = SyncLedger(self.db)
        self.retry = RetryPolicy(
            max_retries=self.config.MAX_RETRY_ATTEMPTS,
            base_delay=self.config.BASE_RETRY_DELAY,
        )
        self.mutator = RemoteMutator(
            self.platform, self.db, self.cache, self.ledger, self.retry
        )
        self.reverse = ReverseSyncListener(
            self.db, self.cache, self.ledger, guild_id=self.guild_id
        )
        self.reconciler = Reconciler(
            db=self.db,
            platform=self.platform,
            cache=self.cache,
            ledger=self.ledger,
            mutator=self.mutator,
            reverse=self.reverse,
            retry=self.retry,
            guild_id=self.guild_id,
            worker_count=self.config.WORKER_COUNT,
            default_parent_id=self.config.DEFAULT_DISCORD_CATEGORY_ID,
            deferred_scan_seconds=self.config.DEFERRED_SCAN_SECONDS,
        )
        self.reverse.submit = self.reconciler.submit

        self.feed = ChangeFeed()
        self.db.add_change_listener(self.feed.on_store_change)
        self.feed.subscribe(self.reconciler.on_event)

        self.roles = RoleMirror(
            self.platform,
            self.db,
            self.ledger,
            guild_id=self.guild_id,
            interval=self.config.ROLE_SYNC_INTERVAL_SECONDS,
        )
        self.health = HealthServer(self.stats, ready=lambda: self._ready)

        self._ready = False
        self._started = False
        self._shutting_down = False
        self._feed_task: Optional[asyncio.Task] = None
        self._ws_task: Optional[asyncio.Task] = None

        self.bot.event(self.on_ready)
        self.bot.event(self.on_guild_channel_delete)
        self.bot.event(self.on_guild_channel_update)

        orig_on_connect = self.bot.on_connect

        async def _command_sync():
            try:
                await orig_on_connect()
            except Forbidden as e:
                logger.warning(
                    "[⚠️] Can't sync slash commands, make sure the bot is in the server: %s",
                    e,
                )

        self.bot.on_connect = _command_sync
        self.bot.load_extension("bot.commands")

    def stats(self) -> dict:
        return {
            "feed": {
                "received": self.feed.received,
                "dropped": self.feed.dropped,
                "pending": self.feed.pending(),
            },
            "reconciler": self.reconciler.stats(),
            "cache": self.cache.stats(),
            "ledger": self.ledger.counts(),
            "reverse_sync": {
                "remote_deletes": self.reverse.remote_deletes,
                "remote_updates": self.reverse.remote_updates,
            },
            "roles": self.roles.last_count,
        }

    async def on_ready(self):
        if self._started:
            logger.info("[🤖] Reconnected as %s", self.bot.user)
            return

        if self.bot.get_guild(self.guild_id) is None:
            logger.error("[⛔] Bot is not a member of guild %s", self.guild_id)
            await self._shutdown()
            return

        self._started = True
        self.cache.rebuild(self.db)
        await self.reconciler.start()
        self._feed_task = asyncio.create_task(self.feed.run(), name="change_feed")
        self._ws_task = asyncio.create_task(
            self.feed.serve(self.config.FEED_WS_HOST, self.config.FEED_WS_PORT),
            name="change_feed_ws",
        )
        self.roles.start()
        await self.health.start("0.0.0.0", self.config.HEALTH_PORT)

        queued = self._startup_sweep()
        self._ready = True
        logger.info(
            "[🤖] Logged in as %s; %d entities queued for reconciliation", self.bot.user, queued
        )

    def _startup_sweep(self) -> int:
        """
        Queue every row the ledger has no settled outcome for, so changes made
        while the bot was offline still converge.
        """
        unsettled = {SyncStatus.PENDING, SyncStatus.PENDING_DELETE}
        n = 0
        for kind, rows in (
            (EntityKind.CATEGORY, self.db.list_categories(self.guild_id)),
            (EntityKind.ZONE, self.db.list_zones()),
        ):
            for row in rows:
                rec = self.ledger.latest(row["id"], kind)
                if rec is None or rec.sync_status in unsettled:
                    self.reconciler.submit(kind, row["id"])
                    n += 1
        return n

    async def on_guild_channel_delete(self, channel):
        await self.reverse.on_guild_channel_delete(channel)

    async def on_guild_channel_update(self, before, after):
        await self.reverse.on_guild_channel_update(before, after)

    async def _shutdown(self):
        if self._shutting_down:
            return
        self._shutting_down = True
        self._ready = False
        logger.info("Shutting down Zonesync...")

        async def _cancel_and_wait(task, name: str):
            if not task:
                return
            try:
                task.cancel()
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("[shutdown] %s task error during cancel/wait", name, exc_info=True)

        with contextlib.suppress(Exception):
            await self.feed.stop()
        await _cancel_and_wait(self._ws_task, "feed-ws")
        await _cancel_and_wait(self._feed_task, "feed")
        await self.roles.close()
        await self.reconciler.close(drain=True, timeout=15)
        await self.health.close()

        try:
            if not self.bot.is_closed():
                await self.bot.close()
        except Exception:
            logger.debug("[shutdown] bot close failed", exc_info=True)

        with contextlib.suppress(Exception):
            self.db.close()
        logger.info("Shutdown complete.")

    def run(self):
        logger.info("[✨] Starting Zonesync %s", CURRENT_VERSION)
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(
                    sig, lambda s=sig: asyncio.create_task(self._shutdown())
                )
            except (NotImplementedError, RuntimeError):
                break

        try:
            loop.run_until_complete(self.bot.start(self.config.DISCORD_TOKEN))
        finally:
            pending = asyncio.all_tasks(loop=loop)
            for task in pending:
                task.cancel()
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()


def main():
    ZonesyncBot().run()


if __name__ == "__main__":
    main()
