# =============================================================================
#  Zonesync
#  Copyright (C) 2025 Zonesync contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger("bot.ratelimit")


class ActionType(Enum):
    CREATE_CHANNEL = "create_channel"
    EDIT_CHANNEL = "edit_channel"
    DELETE_CHANNEL = "delete_channel"
    ROLE = "role"


@dataclass
class _Pace:
    interval: float
    next_at: float = 0.0


# Minimum spacing between two calls of the same kind against one guild.
DEFAULT_INTERVALS: Dict[ActionType, float] = {
    ActionType.CREATE_CHANNEL: 1.0,
    ActionType.EDIT_CHANNEL: 0.5,
    ActionType.DELETE_CHANNEL: 1.0,
    ActionType.ROLE: 0.5,
}


class RateLimitManager:
    """
    Proactive pacing of Discord structure calls so the bot rarely hits a 429
    in the first place. Reactive handling (deferring after a 429) lives in the
    mutator; `penalize` lets it push this pacer's window out as well.
    """

    def __init__(
        self,
        intervals: Optional[Dict[ActionType, float]] = None,
        *,
        clock=time.monotonic,
    ) -> None:
        self._intervals = dict(DEFAULT_INTERVALS)
        if intervals:
            self._intervals.update(intervals)
        self._clock = clock
        self._paces: Dict[Tuple[ActionType, str], _Pace] = {}
        self._locks: Dict[Tuple[ActionType, str], asyncio.Lock] = {}

    def _slot(self, action: ActionType, key: str) -> Tuple[_Pace, asyncio.Lock]:
        k = (action, key)
        pace = self._paces.get(k)
        if pace is None:
            pace = self._paces[k] = _Pace(interval=self._intervals.get(action, 0.0))
            self._locks[k] = asyncio.Lock()
        return pace, self._locks[k]

    async def acquire(self, action: ActionType, key: Optional[str] = None) -> float:
        """Wait for the next free slot. Returns the seconds waited."""
        pace, lock = self._slot(action, key or "global")
        async with lock:
            now = self._clock()
            wait = max(0.0, pace.next_at - now)
            if wait > 0:
                logger.debug("[⏱️] Pacing %s for %.2fs", action.value, wait)
                await asyncio.sleep(wait)
            pace.next_at = max(now, pace.next_at) + pace.interval
            return wait

    async def acquire_for_guild(self, action: ActionType, guild_id) -> float:
        return await self.acquire(action, key=f"guild:{guild_id}")

    def penalize(self, action: ActionType, guild_id, retry_after: float) -> None:
        pace, _ = self._slot(action, f"guild:{guild_id}")
        pace.next_at = max(pace.next_at, self._clock() + max(0.0, float(retry_after)))
        logger.warning(
            "[⏱️] %s paused for guild %s for %.2fs", action.value, guild_id, retry_after
        )

