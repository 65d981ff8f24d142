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
import json
from typing import Any, Optional

import aiohttp
import discord

UNKNOWN_CHANNEL = 10003
DEFAULT_RETRY_AFTER = 1.0


class SyncError(Exception):
    """Base for every failure the reconciliation engine knows how to route."""

    def __init__(
        self,
        msg: str = "",
        *,
        status: int | None = None,
        code: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(msg)
        self.status = status
        self.code = code
        self.body = body or ""

    def diagnostic(self) -> dict:
        d: dict[str, Any] = {"error": type(self).__name__, "error_message": str(self)}
        if self.status is not None:
            d["status"] = self.status
        if self.code is not None:
            d["code"] = self.code
        if self.body:
            d["body"] = self.body[:500]
        return d


class NotFoundRemote(SyncError):
    pass


class RateLimited(SyncError):
    def __init__(self, msg: str = "rate limited", *, retry_after: float, **kw) -> None:
        super().__init__(msg, **kw)
        self.retry_after = max(0.0, float(retry_after))

    def diagnostic(self) -> dict:
        d = super().diagnostic()
        d["retry_after"] = self.retry_after
        return d


class TransientRemoteFailure(SyncError):
    pass


class PermanentFailure(SyncError):
    def __init__(self, msg: str = "", *, attempts: int | None = None, **kw) -> None:
        super().__init__(msg, **kw)
        self.attempts = attempts

    def diagnostic(self) -> dict:
        d = super().diagnostic()
        if self.attempts is not None:
            d["attempts"] = self.attempts
        return d


class IncompleteEventPayload(SyncError):
    pass


class MappingInconsistency(SyncError):
    def __init__(
        self,
        msg: str,
        *,
        expected_parent: Optional[int],
        actual_parent: Optional[int],
    ) -> None:
        super().__init__(msg)
        self.expected_parent = expected_parent
        self.actual_parent = actual_parent


def _extract_retry_after_from_body(text: str) -> float | None:
    """Discord: {"retry_after": 1.23, ...}"""
    try:
        data = json.loads(text)
    except Exception:
        return None
    if not isinstance(data, dict):
        return None
    ra = data.get("retry_after")
    if isinstance(ra, (int, float)) and ra > 0:
        return float(ra)
    return None


def _extract_retry_after_from_headers(headers) -> float | None:
    """
    Discord provides:
    - Retry-After (seconds)
    - X-RateLimit-Reset-After (seconds)
    """
    if not headers:
        return None
    for key in ("Retry-After", "X-RateLimit-Reset-After"):
        raw = headers.get(key)
        if not raw:
            continue
        try:
            v = float(raw)
        except (TypeError, ValueError):
            continue
        if v > 0:
            return v
    return None


def retry_after_of(exc: BaseException) -> float:
    ra = getattr(exc, "retry_after", None)
    if isinstance(ra, (int, float)) and ra > 0:
        return float(ra)
    resp = getattr(exc, "response", None)
    ra = _extract_retry_after_from_headers(getattr(resp, "headers", None))
    if ra is None:
        ra = _extract_retry_after_from_body(getattr(exc, "text", "") or "")
    return ra if ra is not None else DEFAULT_RETRY_AFTER


def classify_exception(exc: BaseException) -> SyncError:
    """
    Translate a Discord/transport exception into the engine's taxonomy.
    Already-classified errors pass through unchanged.
    """
    if isinstance(exc, SyncError):
        return exc

    if isinstance(exc, discord.HTTPException):
        status = getattr(exc, "status", None)
        code = getattr(exc, "code", None)
        text = getattr(exc, "text", "") or ""
        kw = {"status": status, "code": code, "body": text}
        msg = str(exc)

        if isinstance(exc, discord.NotFound) or status == 404 or code == UNKNOWN_CHANNEL:
            return NotFoundRemote(msg, **kw)
        if status == 429:
            return RateLimited(msg, retry_after=retry_after_of(exc), **kw)
        if isinstance(exc, discord.DiscordServerError) or (status or 0) >= 500:
            return TransientRemoteFailure(msg, **kw)
        return PermanentFailure(msg, **kw)

    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        return TransientRemoteFailure(f"{type(exc).__name__}: {exc}")

    return PermanentFailure(f"{type(exc).__name__}: {exc}")
