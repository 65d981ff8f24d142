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
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from bot.errors import MappingInconsistency
from common.common_helpers import category_from_row, zone_from_row
from common.models import CategoryEntity, EntityKind, RemoteResource, ZoneEntity

logger = logging.getLogger("bot.diff")

Entity = Union[CategoryEntity, ZoneEntity]


class MutationKind(str, Enum):
    CREATE = "create"
    RENAME = "rename"
    SET_VISIBILITY = "set_visibility"
    SET_ROLE_OVERWRITES = "set_role_overwrites"
    MOVE = "move"
    DELETE = "delete"


class OutcomeKind(str, Enum):
    CREATE = "create"
    DELETE = "delete"
    NOT_FOUND = "not_found"
    NO_DIFF = "no_diff"
    MUTATIONS = "mutations"


@dataclass
class Mutation:
    kind: MutationKind
    entity_kind: EntityKind
    entity_id: str
    remote_id: Optional[int] = None
    name: Optional[str] = None
    parent_id: Optional[int] = None
    visible: Optional[bool] = None
    add_roles: tuple[int, ...] = ()
    remove_roles: tuple[int, ...] = ()
    reason: Optional[str] = None

    def describe(self) -> str:
        if self.kind is MutationKind.RENAME:
            return f"rename → {self.name!r}"
        if self.kind is MutationKind.SET_VISIBILITY:
            return f"visible → {self.visible}"
        if self.kind is MutationKind.SET_ROLE_OVERWRITES:
            return f"roles +{list(self.add_roles)} -{list(self.remove_roles)}"
        if self.kind is MutationKind.MOVE:
            return f"move → {self.parent_id}"
        if self.kind is MutationKind.CREATE:
            return f"create {self.name!r}"
        return self.kind.value


@dataclass
class DiffOutcome:
    kind: OutcomeKind
    mutations: list[Mutation] = field(default_factory=list)
    changed_fields: list[str] = field(default_factory=list)
    inconsistency: Optional[MappingInconsistency] = None

    @property
    def needs_remote_call(self) -> bool:
        return bool(self.mutations)


# Fields that decide whether a `before` row can stand in for prior state.
_DIFF_FIELDS = {
    EntityKind.CATEGORY: ("name", "is_visible", "allowed_roles"),
    EntityKind.ZONE: ("name", "category_id", "settings"),
}


def entity_from_row(kind: EntityKind, row: Optional[dict]) -> Optional[Entity]:
    if not row:
        return None
    return category_from_row(row) if kind is EntityKind.CATEGORY else zone_from_row(row)


def before_is_complete(kind: EntityKind, before: Optional[dict]) -> bool:
    if not before:
        return False
    return all(k in before for k in _DIFF_FIELDS[kind])


def _summarize_prior(desired: Entity, prior: Entity) -> list[str]:
    changed = []
    if prior.name != desired.name:
        changed.append("name")
    if prior.is_visible != desired.is_visible:
        changed.append("is_visible")
    if set(prior.allowed_roles) != set(desired.allowed_roles):
        changed.append("allowed_roles")
    if isinstance(desired, ZoneEntity) and isinstance(prior, ZoneEntity):
        if prior.category_id != desired.category_id:
            changed.append("category_id")
    return changed


def _create_plan(desired: Entity, parent_id: Optional[int]) -> list[Mutation]:
    base = dict(entity_kind=desired.kind, entity_id=desired.id)
    plan = [Mutation(MutationKind.CREATE, name=desired.name, parent_id=parent_id, **base)]
    if not desired.is_visible:
        plan.append(Mutation(MutationKind.SET_VISIBILITY, visible=False, **base))
    if desired.allowed_roles:
        plan.append(
            Mutation(
                MutationKind.SET_ROLE_OVERWRITES,
                add_roles=tuple(desired.allowed_roles),
                **base,
            )
        )
    return plan


def diff(
    desired: Entity,
    remote: Optional[RemoteResource],
    *,
    expected_parent: Optional[int] = None,
    before: Optional[dict] = None,
) -> DiffOutcome:
    """
    Compare desired state against the live remote snapshot.

    `remote` must have been fetched for `desired.remote_id`; a None snapshot
    for an entity that has a remote id means the resource is gone. `before`
    never decides the outcome: when it is complete it only feeds the logged
    change summary.
    """
    kind = desired.kind
    deleted_flag = getattr(desired, "is_deleted_in_discord", False)

    if deleted_flag:
        if desired.remote_id is None:
            return DiffOutcome(OutcomeKind.NOT_FOUND)
        return deletion_plan(kind, desired.id, desired.remote_id, "Deleted in dashboard")

    if desired.remote_id is None:
        parent = expected_parent if kind is EntityKind.ZONE else None
        return DiffOutcome(OutcomeKind.CREATE, _create_plan(desired, parent), ["*"])

    if remote is None:
        return DiffOutcome(OutcomeKind.NOT_FOUND)

    rid = desired.remote_id
    base = dict(entity_kind=kind, entity_id=desired.id, remote_id=rid)
    muts: list[Mutation] = []
    changed: list[str] = []
    inconsistency = None

    if remote.name != desired.name:
        muts.append(Mutation(MutationKind.RENAME, name=desired.name, **base))
        changed.append("name")

    if remote.everyone_visible != desired.is_visible:
        muts.append(Mutation(MutationKind.SET_VISIBILITY, visible=desired.is_visible, **base))
        changed.append("is_visible")

    want = set(desired.allowed_roles)
    have = set(remote.role_overwrites)
    if want != have:
        muts.append(
            Mutation(
                MutationKind.SET_ROLE_OVERWRITES,
                add_roles=tuple(sorted(want - have)),
                remove_roles=tuple(sorted(have - want)),
                **base,
            )
        )
        changed.append("allowed_roles")

    if kind is EntityKind.ZONE and expected_parent is not None:
        if remote.parent_id != expected_parent:
            inconsistency = MappingInconsistency(
                f"voice channel {rid} sits under {remote.parent_id}, expected {expected_parent}",
                expected_parent=expected_parent,
                actual_parent=remote.parent_id,
            )
            logger.warning("[⚠️] Mapping inconsistency: %s", inconsistency)
            muts.append(Mutation(MutationKind.MOVE, parent_id=expected_parent, **base))
            changed.append("parent")

    if before_is_complete(kind, before):
        prior = entity_from_row(kind, before)
        summary = _summarize_prior(desired, prior)
        if summary:
            logger.debug("Row change summary for %s:%s: %s", kind.value, desired.id, summary)

    if not muts:
        return DiffOutcome(OutcomeKind.NO_DIFF)
    return DiffOutcome(OutcomeKind.MUTATIONS, muts, changed, inconsistency)


def deletion_plan(
    kind: EntityKind, entity_id: str, remote_id: int, reason: str
) -> DiffOutcome:
    return DiffOutcome(
        OutcomeKind.DELETE,
        [
            Mutation(
                MutationKind.DELETE,
                entity_kind=kind,
                entity_id=entity_id,
                remote_id=remote_id,
                reason=reason,
            )
        ],
    )
