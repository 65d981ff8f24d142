import itertools
import types
from dataclasses import replace
from typing import Optional

import pytest

from bot.errors import MappingInconsistency, NotFoundRemote
from bot.ledger import SyncLedger
from bot.mapping_cache import MappingCache
from bot.mutator import RemoteMutator
from bot.platform import RemotePlatform
from bot.reconciler import Reconciler
from bot.retry import RetryPolicy
from bot.reverse_sync import ReverseSyncListener
from common.db import DBManager
from common.models import RemoteResource

GUILD_ID = 111


class FakePlatform(RemotePlatform):
    """In-memory Discord guild implementing the adapter surface."""

    def __init__(self, guild_id: int = GUILD_ID):
        self.guild_id = guild_id
        self.resources: dict[int, RemoteResource] = {}
        self.calls: list[tuple] = []
        self.fetches: list[int] = []
        self.failures: dict[str, list[Exception]] = {}
        self.roles: list[dict] = []
        self._ids = itertools.count(5000)

    def fail(self, op: str, *excs: Exception) -> None:
        self.failures.setdefault(op, []).extend(excs)

    def _maybe_fail(self, op: str) -> None:
        queue = self.failures.get(op)
        if queue:
            raise queue.pop(0)

    def _get(self, rid: int) -> RemoteResource:
        res = self.resources.get(rid)
        if res is None:
            raise NotFoundRemote(f"unknown channel {rid}", status=404, code=10003)
        return res

    def _check_parent(self, parent_id: Optional[int]) -> None:
        if parent_id is not None and parent_id not in self.resources:
            raise MappingInconsistency(
                f"parent category {parent_id} does not exist",
                expected_parent=parent_id,
                actual_parent=None,
            )

    def add_category(self, name: str, **kw) -> RemoteResource:
        res = RemoteResource(id=next(self._ids), name=name, kind="category", **kw)
        self.resources[res.id] = res
        return res

    async def create_category_resource(self, name: str) -> RemoteResource:
        self.calls.append(("create_category", name))
        self._maybe_fail("create_category")
        return self.add_category(name)

    async def create_voice_resource(self, name: str, parent_id: Optional[int]) -> RemoteResource:
        self.calls.append(("create_voice", name, parent_id))
        self._maybe_fail("create_voice")
        self._check_parent(parent_id)
        res = RemoteResource(id=next(self._ids), name=name, kind="voice", parent_id=parent_id)
        self.resources[res.id] = res
        return res

    async def rename_resource(self, resource_id: int, name: str) -> None:
        self.calls.append(("rename", resource_id, name))
        self._maybe_fail("rename")
        self.resources[resource_id] = replace(self._get(resource_id), name=name)

    async def set_visibility(self, resource_id: int, role_id: int, visible: bool) -> None:
        self.calls.append(("set_visibility", resource_id, role_id, visible))
        self._maybe_fail("set_visibility")
        self.resources[resource_id] = replace(self._get(resource_id), everyone_visible=visible)

    async def set_role_overwrite(self, resource_id: int, role_id: int, visible: bool) -> None:
        self.calls.append(("set_role", resource_id, role_id, visible))
        self._maybe_fail("set_role")
        res = self._get(resource_id)
        roles = set(res.role_overwrites)
        if visible:
            roles.add(role_id)
        else:
            roles.discard(role_id)
        self.resources[resource_id] = replace(res, role_overwrites=frozenset(roles))

    async def clear_role_overwrite(self, resource_id: int, role_id: int) -> None:
        self.calls.append(("clear_role", resource_id, role_id))
        self._maybe_fail("clear_role")
        res = self._get(resource_id)
        self.resources[resource_id] = replace(
            res, role_overwrites=frozenset(set(res.role_overwrites) - {role_id})
        )

    async def move_resource(self, resource_id: int, parent_id: Optional[int]) -> None:
        self.calls.append(("move", resource_id, parent_id))
        self._maybe_fail("move")
        self._check_parent(parent_id)
        self.resources[resource_id] = replace(self._get(resource_id), parent_id=parent_id)

    async def delete_resource(self, resource_id: int, reason: Optional[str] = None) -> None:
        self.calls.append(("delete", resource_id, reason))
        self._maybe_fail("delete")
        self._get(resource_id)
        del self.resources[resource_id]

    async def fetch_resource(self, resource_id: int) -> Optional[RemoteResource]:
        self.fetches.append(resource_id)
        self._maybe_fail("fetch")
        return self.resources.get(resource_id)

    async def fetch_roles(self) -> list[dict]:
        self._maybe_fail("fetch_roles")
        return list(self.roles)


@pytest.fixture
def db(tmp_path):
    store = DBManager(str(tmp_path / "zonesync.db"), init_schema=True)
    yield store
    store.close()


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def clock():
    now = {"t": 1_700_000_000.0}

    def _clock():
        return now["t"]

    _clock.now = now
    return _clock


@pytest.fixture
def engine(db, platform, clock):
    """Fully wired engine around the fake platform with recorded backoff sleeps."""
    sleeps: list[float] = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    cache = MappingCache()
    ledger = SyncLedger(db, clock=clock)
    retry = RetryPolicy(max_retries=3, base_delay=1.0, sleep=fake_sleep)
    mutator = RemoteMutator(platform, db, cache, ledger, retry, clock=clock)
    reverse = ReverseSyncListener(db, cache, ledger, guild_id=GUILD_ID)
    reconciler = Reconciler(
        db=db,
        platform=platform,
        cache=cache,
        ledger=ledger,
        mutator=mutator,
        reverse=reverse,
        retry=retry,
        guild_id=GUILD_ID,
        worker_count=2,
        clock=clock,
    )
    reverse.submit = reconciler.submit
    return types.SimpleNamespace(
        db=db,
        platform=platform,
        cache=cache,
        ledger=ledger,
        retry=retry,
        mutator=mutator,
        reverse=reverse,
        reconciler=reconciler,
        sleeps=sleeps,
        clock=clock,
    )


@pytest.fixture
def make_category(db):
    def _make(name="Lounge", **fields):
        fields.setdefault("guild_id", GUILD_ID)
        return db.insert_category(name=name, **fields)

    return _make


@pytest.fixture
def make_zone(db):
    def _make(category_id, name="Quiet Room", **fields):
        fields.setdefault("zone_key", name.lower().replace(" ", "-"))
        return db.insert_zone(category_id=category_id, name=name, **fields)

    return _make
