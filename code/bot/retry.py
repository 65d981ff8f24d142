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
from typing import Awaitable, Callable, Optional, TypeVar

from bot.errors import PermanentFailure, TransientRemoteFailure, classify_exception

logger = logging.getLogger("bot.retry")

T = TypeVar("T")


class RetryPolicy:
    """
    Bounded exponential backoff for transient remote failures.

    With `max_retries=3` and `base_delay=b` an operation is attempted up to
    four times, sleeping b, 2b, 4b between attempts. Any other error class
    (not found, rate limited, permanent) is raised immediately.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        *,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.max_retries = max(0, int(max_retries))
        self.base_delay = max(0.0, float(base_delay))
        self._sleep = sleep

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (1-based)."""
        return self.base_delay * (2 ** (retry_number - 1))

    def schedule(self) -> list[float]:
        return [self.delay_for(i) for i in range(1, self.max_retries + 1)]

    async def _pause(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
        else:
            await asyncio.sleep(delay)

    async def run(self, op: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await op()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                err = classify_exception(e)
                if not isinstance(err, TransientRemoteFailure):
                    if err is e:
                        raise
                    raise err from e

                if attempt > self.max_retries:
                    logger.error(
                        "[⛔] %s failed after %d attempts: %s", label, attempt, err
                    )
                    raise PermanentFailure(
                        f"{label} failed after {attempt} attempts: {err}",
                        attempts=attempt,
                        status=err.status,
                        code=err.code,
                        body=err.body,
                    ) from e

                delay = self.delay_for(attempt)
                logger.warning(
                    "[⚠️] %s transient failure (attempt %d/%d), retrying in %.2fs: %s",
                    label, attempt, self.max_retries + 1, delay, err,
                )
                await self._pause(delay)
