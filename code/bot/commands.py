# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================


import asyncio
import logging
import os
import time
from datetime import datetime, timezone

import discord
from discord import Option
from discord.ext import commands
from discord import errors as discord_errors

from common.models import EntityKind, SyncStatus

logger = logging.getLogger("bot.commands")

GUILD_IDS: list[int] = [
    int(g) for g in [os.getenv("GUILD_ID", "").strip()] if g.isdigit()
]

STATUS_EMOJI = {
    SyncStatus.SYNCED: "✅",
    SyncStatus.PENDING: "⏳",
    SyncStatus.ERROR: "⛔",
    SyncStatus.DELETED: "🗑️",
    SyncStatus.PENDING_DELETE: "🧹",
}


def guild_scoped_slash_command(*dargs, **dkwargs):
    """Wrapper that always scopes slash commands to the managed guild."""
    if GUILD_IDS:
        dkwargs.setdefault("guild_ids", GUILD_IDS)
    return commands.slash_command(*dargs, **dkwargs)


def _ts(value) -> str:
    if not value:
        return "`?`"
    try:
        if isinstance(value, (int, float)):
            ts = int(value)
        else:
            dt = datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S")
            ts = int(dt.replace(tzinfo=timezone.utc).timestamp())
    except ValueError:
        return f"`{value}`"
    return f"<t:{ts}:R>"


class SyncCommands(commands.Cog):
    """
    Operator commands for inspecting and re-triggering reconciliation,
    restricted to COMMAND_USERS.
    """

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.start_time = time.time()

    @property
    def app(self):
        return self.bot.zonesync

    @property
    def allowed_users(self) -> list[int]:
        return getattr(self.app.config, "COMMAND_USERS", []) or []

    async def cog_check(self, ctx: commands.Context):
        cmd = ctx.command
        if ctx.user.id not in self.allowed_users:
            await ctx.respond("You are not authorized to use this command.", ephemeral=True)
            logger.warning(
                "[⚠️] Unauthorized access: %s (%s) attempted to run '%s'",
                ctx.user.name, ctx.user.id, cmd.name if cmd else "unknown",
            )
            return False
        logger.info(
            "[⚡] %s (%s) executed the '%s' command",
            ctx.user.name, ctx.user.id, getattr(cmd, "qualified_name", "unknown"),
        )
        return True

    @commands.Cog.listener()
    async def on_application_command_error(self, interaction, error):
        orig = getattr(error, "original", None)
        err = orig or error
        if isinstance(err, (commands.CheckFailure, discord_errors.CheckFailure)):
            return
        cmd = interaction.command.name if interaction.command else "<unknown>"
        logger.exception("Error in command '%s':", cmd, exc_info=err)

    @guild_scoped_slash_command(
        name="sync_status",
        description="Show reconciliation status, overall or for one category/zone.",
    )
    async def sync_status(
        self,
        ctx: discord.ApplicationContext,
        entity_kind: str = Option(
            str, "Entity kind", choices=["category", "zone"], required=False, default=None
        ),
        entity_id: str = Option(str, "Entity id (uuid)", required=False, default=None),
    ):
        app = self.app
        if entity_id:
            kind = EntityKind(entity_kind or "category")
            rec = app.ledger.latest(entity_id, kind)
            if rec is None:
                return await ctx.respond(
                    f"No sync record for {kind.value} `{entity_id}`.", ephemeral=True
                )
            embed = discord.Embed(
                title=f"{STATUS_EMOJI.get(rec.sync_status, '')} {kind.value} {entity_id}",
                timestamp=datetime.now(timezone.utc),
            )
            embed.add_field(name="Status", value=rec.sync_status.value, inline=True)
            embed.add_field(name="Last attempt", value=_ts(rec.last_synced_at), inline=True)
            if rec.retry_at:
                embed.add_field(name="Retry", value=_ts(rec.retry_at), inline=True)
            msg = rec.data.get("error_message") or rec.data.get("message")
            if msg:
                embed.add_field(name="Detail", value=str(msg)[:1000], inline=False)
            hist = app.ledger.history(entity_id, kind, limit=5)
            if hist:
                embed.add_field(
                    name="Recent attempts",
                    value="\n".join(
                        f"{STATUS_EMOJI.get(h.sync_status, '')} {h.sync_status.value}" for h in hist
                    ),
                    inline=False,
                )
            return await ctx.respond(embed=embed, ephemeral=True)

        counts = app.ledger.counts()
        stats = app.reconciler.stats()
        cache = app.cache.stats()
        uptime = int(time.time() - self.start_time)
        hours, rem = divmod(uptime, 3600)
        minutes, seconds = divmod(rem, 60)

        embed = discord.Embed(title="🔄 Sync status", timestamp=datetime.now(timezone.utc))
        embed.add_field(
            name="Ledger",
            value="\n".join(
                f"{STATUS_EMOJI.get(SyncStatus(k), '')} {k}: {v}" for k, v in sorted(counts.items())
            ) or "empty",
            inline=True,
        )
        embed.add_field(
            name="Workers",
            value=(
                f"queued: {stats['queued']}\nin flight: {stats['in_flight']}\n"
                f"processed: {stats['processed']}\nfailed: {stats['failed']}"
            ),
            inline=True,
        )
        embed.add_field(
            name="Cache",
            value=f"entries: {cache['entries']}\nfallbacks: {cache['fallback_lookups']}",
            inline=True,
        )
        embed.add_field(name="Uptime", value=f"{hours}h {minutes}m {seconds}s", inline=True)
        await ctx.respond(embed=embed, ephemeral=True)

    @guild_scoped_slash_command(
        name="resync",
        description="Re-run reconciliation for a category or zone.",
    )
    async def resync(
        self,
        ctx: discord.ApplicationContext,
        entity_kind: str = Option(str, "Entity kind", choices=["category", "zone"], required=True),
        entity_id: str = Option(str, "Entity id (uuid)", required=True),
        recreate: bool = Option(
            bool, "Forget the current Discord channel and create a new one", required=False, default=False
        ),
    ):
        await ctx.defer(ephemeral=True)
        kind = EntityKind(entity_kind)
        if recreate:
            ticket = self.app.reconciler.recreate(kind, entity_id)
            if ticket is None:
                return await ctx.followup.send(
                    f"⚠️ No {kind.value} `{entity_id}` in the store.", ephemeral=True
                )
        else:
            ticket = self.app.reconciler.submit(kind, entity_id)

        try:
            result = await asyncio.wait_for(ticket, timeout=60)
        except asyncio.TimeoutError:
            return await ctx.followup.send(
                "⏳ Still running; check `/sync_status` shortly.", ephemeral=True
            )

        line = f"{kind.value} `{entity_id}` → **{result.status.value}**"
        if result.outcome:
            line += f" ({result.outcome.value}, {result.mutations} change(s))"
        if result.error:
            line += f"\n`{result.error}`"
        await ctx.followup.send(line, ephemeral=True)


def setup(bot: commands.Bot):
    bot.add_cog(SyncCommands(bot))
