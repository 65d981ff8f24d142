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
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import websockets

from bot.errors import IncompleteEventPayload
from common.models import EntityKind, Operation, SyncStatus

logger = logging.getLogger("bot.feed")

# Tag carried by events that a ledger `pending_delete` row produced.
ORIGIN_LEDGER = "ledger"

_KIND_ALIASES = {
    "category": EntityKind.CATEGORY,
    "categories": EntityKind.CATEGORY,
    "zone": EntityKind.ZONE,
    "zones": EntityKind.ZONE,
}

Subscriber = Callable[["ChangeEvent"], Union[None, Awaitable[None]]]


@dataclass
class ChangeEvent:
    entity_kind: EntityKind
    operation: Operation
    before: Optional[dict] = None
    after: Optional[dict] = None
    origin: Optional[str] = None
    received_at: float = field(default_factory=time.time)

    @property
    def entity_id(self) -> str:
        row = self.after or self.before or {}
        return str(row.get("id"))

    def __repr__(self) -> str:
        return (
            f"ChangeEvent({self.entity_kind.value}:{self.entity_id} "
            f"{self.operation.value} origin={self.origin})"
        )


def _first(payload: dict, *keys: str) -> Any:
    for k in keys:
        if k in payload and payload[k] is not None:
            return payload[k]
    return None


class ChangeFeed:
    """
    Row-level change notifications for categories and zones.

    Events arrive from the store's in-process hook or over the websocket
    ingress, are queued, and are handed to every subscriber by `run()`.
    Delivery is at-least-once and unordered across entities.
    """

    def __init__(self, *, maxsize: int = 10000) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers: list[Subscriber] = []
        self._stopped = asyncio.Event()
        self.received = 0
        self.dropped = 0

    @staticmethod
    def parse(payload: dict) -> Optional[ChangeEvent]:
        """
        Accepts `{entityKind|entity_kind|table, operation|eventType,
        before|old, after|new}`. Returns None for notifications that carry
        nothing to reconcile (ledger rows other than `pending_delete`).
        """
        if not isinstance(payload, dict):
            raise IncompleteEventPayload(f"payload must be an object, got {type(payload).__name__}")

        raw_kind = str(_first(payload, "entityKind", "entity_kind", "table") or "").strip().lower()
        raw_op = str(_first(payload, "operation", "eventType", "type") or "").strip().lower()
        before = _first(payload, "before", "old")
        after = _first(payload, "after", "new")
        before = before if isinstance(before, dict) and before else None
        after = after if isinstance(after, dict) and after else None

        try:
            op = Operation(raw_op)
        except ValueError:
            raise IncompleteEventPayload(f"unknown operation {raw_op!r}") from None

        if raw_kind == "discord_sync":
            return ChangeFeed._parse_ledger_row(op, after)

        kind = _KIND_ALIASES.get(raw_kind)
        if kind is None:
            raise IncompleteEventPayload(f"unknown entity kind {raw_kind!r}")

        if not ((after and after.get("id")) or (before and before.get("id"))):
            raise IncompleteEventPayload("no row carries an id")
        if op is Operation.DELETE and before is None:
            raise IncompleteEventPayload("delete without a prior row")

        return ChangeEvent(kind, op, before=before, after=after)

    @staticmethod
    def _parse_ledger_row(op: Operation, row: Optional[dict]) -> Optional[ChangeEvent]:
        if op is Operation.DELETE or not row:
            return None
        if str(row.get("sync_status") or "") != SyncStatus.PENDING_DELETE.value:
            return None
        kind = _KIND_ALIASES.get(str(row.get("entity_type") or "").lower())
        if kind is None or not row.get("id"):
            return None

        data = row.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                data = {}
        data = data if isinstance(data, dict) else {}

        before = {"id": str(row["id"])}
        for key in ("discord_category_id", "discord_voice_id", "guild_id"):
            if data.get(key) is not None:
                before[key] = data[key]
        return ChangeEvent(kind, Operation.DELETE, before=before, origin=ORIGIN_LEDGER)

    def subscribe(self, cb: Subscriber) -> None:
        self._subscribers.append(cb)

    def publish(self, event: ChangeEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error("[⛔] Change feed full; dropping %r", event)
            return False
        self.received += 1
        return True

    def ingest(self, payload: dict) -> bool:
        try:
            event = self.parse(payload)
        except IncompleteEventPayload as e:
            self.dropped += 1
            logger.warning("[⚠️] Dropping malformed change notification: %s", e)
            return False
        if event is None:
            return True
        return self.publish(event)

    def on_store_change(
        self,
        kind: EntityKind,
        op: Operation,
        before: Optional[dict],
        after: Optional[dict],
        origin: Optional[str],
    ) -> None:
        """DBManager change-listener adapter."""
        if kind not in (EntityKind.CATEGORY, EntityKind.ZONE):
            return
        self.publish(ChangeEvent(kind, op, before=before, after=after, origin=origin))

    def pending(self) -> int:
        return self._queue.qsize()

    async def _dispatch(self, event: ChangeEvent) -> None:
        for cb in list(self._subscribers):
            try:
                res = cb(event)
                if inspect.isawaitable(res):
                    await res
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Change feed subscriber %r failed on %r", cb, event)

    async def run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event is None:
                    return
                await self._dispatch(event)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        self._stopped.set()
        await self._queue.put(None)

    async def _handle_ws(self, websocket) -> None:
        async for raw in websocket:
            try:
                payload = json.loads(raw)
            except (TypeError, ValueError) as e:
                logger.warning("[⚠️] Non-JSON frame on change feed: %s", e)
                await websocket.send(json.dumps({"ok": False, "error": "invalid json"}))
                continue
            try:
                event = self.parse(payload)
            except IncompleteEventPayload as e:
                self.dropped += 1
                logger.warning("[⚠️] Dropping malformed change notification: %s", e)
                await websocket.send(json.dumps({"ok": False, "error": str(e)}))
                continue
            ok = True if event is None else self.publish(event)
            await websocket.send(
                json.dumps({"ok": True} if ok else {"ok": False, "error": "queue full"})
            )

    async def serve(self, host: str, port: int) -> None:
        """Websocket ingress; runs until `stop()`."""
        async with websockets.serve(self._handle_ws, host, port):
            logger.info("[✅] Change feed listening on ws://%s:%s", host, port)
            await self._stopped.wait()
