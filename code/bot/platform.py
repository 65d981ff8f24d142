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
from typing import Optional

import discord
from discord import CategoryChannel

from bot.errors import (
    MappingInconsistency,
    NotFoundRemote,
    PermanentFailure,
    RateLimited,
    classify_exception,
)
from bot.rate_limiter import ActionType, RateLimitManager
from common.models import RemoteResource

logger = logging.getLogger("bot.platform")


class RemotePlatform:
    """
    The remote operations the engine needs, with Discord failures already
    translated into `bot.errors` classes.
    """

    guild_id: int

    @property
    def everyone_role_id(self) -> int:
        # @everyone shares the guild's id
        return int(self.guild_id)

    async def create_category_resource(self, name: str) -> RemoteResource:
        raise NotImplementedError

    async def create_voice_resource(self, name: str, parent_id: Optional[int]) -> RemoteResource:
        raise NotImplementedError

    async def rename_resource(self, resource_id: int, name: str) -> None:
        raise NotImplementedError

    async def set_visibility(self, resource_id: int, role_id: int, visible: bool) -> None:
        raise NotImplementedError

    async def set_role_overwrite(self, resource_id: int, role_id: int, visible: bool) -> None:
        raise NotImplementedError

    async def clear_role_overwrite(self, resource_id: int, role_id: int) -> None:
        raise NotImplementedError

    async def move_resource(self, resource_id: int, parent_id: Optional[int]) -> None:
        raise NotImplementedError

    async def delete_resource(self, resource_id: int, reason: Optional[str] = None) -> None:
        raise NotImplementedError

    async def fetch_resource(self, resource_id: int) -> Optional[RemoteResource]:
        raise NotImplementedError

    async def fetch_roles(self) -> list[dict]:
        raise NotImplementedError


def snapshot(ch: discord.abc.GuildChannel) -> RemoteResource:
    default_role = ch.guild.default_role
    everyone_ow = ch.overwrites_for(default_role)
    roles = frozenset(
        int(target.id)
        for target, ow in ch.overwrites.items()
        if isinstance(target, discord.Role)
        and target.id != default_role.id
        and ow.view_channel is True
    )
    return RemoteResource(
        id=int(ch.id),
        name=ch.name,
        kind="category" if isinstance(ch, CategoryChannel) else "voice",
        parent_id=int(ch.category_id) if getattr(ch, "category_id", None) else None,
        everyone_visible=everyone_ow.view_channel is not False,
        role_overwrites=roles,
    )


def role_payload(role: discord.Role) -> dict:
    tags = None
    if role.tags is not None:
        tags = {
            "bot_id": role.tags.bot_id,
            "integration_id": role.tags.integration_id,
            "premium_subscriber": role.tags.is_premium_subscriber(),
        }
    return {
        "id": str(role.id),
        "name": role.name,
        "color": role.color.value,
        "hoist": role.hoist,
        "position": role.position,
        "permissions": str(role.permissions.value),
        "managed": role.managed,
        "mentionable": role.mentionable,
        "created_at": role.created_at.isoformat() if role.created_at else None,
        "tags": tags,
    }


class DiscordPlatform(RemotePlatform):
    """py-cord adapter bound to one guild."""

    def __init__(self, bot: discord.Bot, guild_id: int, ratelimit: RateLimitManager):
        self.bot = bot
        self.guild_id = int(guild_id)
        self.ratelimit = ratelimit

    async def _guild(self) -> discord.Guild:
        guild = self.bot.get_guild(self.guild_id)
        if guild is not None:
            return guild
        try:
            return await self.bot.fetch_guild(self.guild_id)
        except Exception as e:
            raise classify_exception(e) from e

    async def _channel(self, resource_id: int) -> discord.abc.GuildChannel:
        guild = await self._guild()
        try:
            ch = await guild.fetch_channel(int(resource_id))
        except Exception as e:
            raise classify_exception(e) from e
        return ch

    async def _parent(self, parent_id: int) -> CategoryChannel:
        # a vanished parent is a mapping problem, not a vanished child
        try:
            parent = await self._channel(parent_id)
        except NotFoundRemote as e:
            raise MappingInconsistency(
                f"parent category {parent_id} does not exist",
                expected_parent=parent_id,
                actual_parent=None,
            ) from e
        if not isinstance(parent, CategoryChannel):
            raise PermanentFailure(f"parent {parent_id} is not a category")
        return parent

    async def _role(self, guild: discord.Guild, role_id: int) -> discord.Role:
        if int(role_id) == guild.id:
            return guild.default_role
        role = guild.get_role(int(role_id))
        if role is None:
            raise PermanentFailure(f"role {role_id} does not exist in guild {guild.id}")
        return role

    async def _call(self, action: ActionType, coro_fn, *args, **kwargs):
        await self.ratelimit.acquire_for_guild(action, self.guild_id)
        try:
            return await coro_fn(*args, **kwargs)
        except Exception as e:
            err = classify_exception(e)
            if isinstance(err, RateLimited):
                self.ratelimit.penalize(action, self.guild_id, err.retry_after)
            if err is e:
                raise
            raise err from e

    async def create_category_resource(self, name: str) -> RemoteResource:
        guild = await self._guild()
        cat = await self._call(ActionType.CREATE_CHANNEL, guild.create_category, name)
        logger.info("[➕] Created category %r (%s)", cat.name, cat.id)
        return snapshot(cat)

    async def create_voice_resource(self, name: str, parent_id: Optional[int]) -> RemoteResource:
        guild = await self._guild()
        parent = await self._parent(parent_id) if parent_id is not None else None
        ch = await self._call(
            ActionType.CREATE_CHANNEL, guild.create_voice_channel, name, category=parent
        )
        logger.info("[➕] Created voice channel %r (%s) under %s", ch.name, ch.id, parent_id)
        return snapshot(ch)

    async def rename_resource(self, resource_id: int, name: str) -> None:
        ch = await self._channel(resource_id)
        old = ch.name
        await self._call(ActionType.EDIT_CHANNEL, ch.edit, name=name)
        logger.info("[✏️] Renamed %s: %r → %r", resource_id, old, name)

    async def set_visibility(self, resource_id: int, role_id: int, visible: bool) -> None:
        ch = await self._channel(resource_id)
        role = await self._role(ch.guild, role_id)
        if visible:
            await self._call(ActionType.EDIT_CHANNEL, ch.set_permissions, role, overwrite=None)
        else:
            await self._call(ActionType.EDIT_CHANNEL, ch.set_permissions, role, view_channel=False)
        logger.info("[✏️] %s visibility for %s → %s", resource_id, role.name, visible)

    async def set_role_overwrite(self, resource_id: int, role_id: int, visible: bool) -> None:
        ch = await self._channel(resource_id)
        role = await self._role(ch.guild, role_id)
        await self._call(ActionType.EDIT_CHANNEL, ch.set_permissions, role, view_channel=visible)

    async def clear_role_overwrite(self, resource_id: int, role_id: int) -> None:
        ch = await self._channel(resource_id)
        try:
            role = await self._role(ch.guild, role_id)
        except PermanentFailure:
            logger.debug("Role %s already gone; nothing to clear on %s", role_id, resource_id)
            return
        await self._call(ActionType.EDIT_CHANNEL, ch.set_permissions, role, overwrite=None)

    async def move_resource(self, resource_id: int, parent_id: Optional[int]) -> None:
        ch = await self._channel(resource_id)
        parent = await self._parent(parent_id) if parent_id is not None else None
        await self._call(ActionType.EDIT_CHANNEL, ch.edit, category=parent)
        logger.info("[✏️] Moved %s under %s", resource_id, parent_id)

    async def delete_resource(self, resource_id: int, reason: Optional[str] = None) -> None:
        ch = await self._channel(resource_id)
        await self._call(ActionType.DELETE_CHANNEL, ch.delete, reason=reason)
        logger.info("[🗑️] Deleted %s (%s)", resource_id, reason or "no reason")

    async def fetch_resource(self, resource_id: int) -> Optional[RemoteResource]:
        try:
            ch = await self._channel(resource_id)
        except NotFoundRemote:
            return None
        return snapshot(ch)

    async def fetch_roles(self) -> list[dict]:
        guild = await self._guild()
        try:
            roles = await self._call(ActionType.ROLE, guild.fetch_roles)
        except NotFoundRemote:
            return []
        return [role_payload(r) for r in roles]
