"""Authorization evaluator.

Every read and write path in the services asks this module whether an actor
may perform an operation on an entity kind inside a workspace. Decisions are
derived only from two facts loaded fresh for each call:

- is the actor a member of the workspace, and
- is the actor the workspace owner (the "core member").

Core-ness is always recomputed from ``workspaces.owner_id``; there is no
stored role. The rule table lives in :func:`evaluate`, a pure function that
can be tested without a database. :class:`AccessEvaluator` binds it to a
session.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import NotFound, PermissionDenied
from .models import TemplateKind, Workspace, WorkspaceMember

__all__ = [
    "Actor",
    "AccessEvaluator",
    "AccessPolicy",
    "EntityKind",
    "Operation",
    "Target",
    "WorkspaceFacts",
    "evaluate",
    "is_core",
]


class EntityKind(str, Enum):
    WORKSPACE = "workspace"
    MEMBERSHIP = "membership"
    TEMPLATE = "template"
    VOCABULARY = "vocabulary"
    JOURNAL = "journal"
    INVITE = "invite"


class Operation(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated caller, resolved upstream."""

    id: Optional[uuid.UUID]
    email: Optional[str] = None
    is_system: bool = False

    @classmethod
    def system(cls) -> Actor:
        """The service's own elevated credential."""
        return cls(id=None, is_system=True)


@dataclass(frozen=True, slots=True)
class WorkspaceFacts:
    workspace_id: uuid.UUID
    owner_id: Optional[uuid.UUID]
    is_member: bool


@dataclass(frozen=True, slots=True)
class Target:
    """Row-level facts about the entity being accessed, when it exists."""

    created_by: Optional[uuid.UUID] = None
    account_id: Optional[uuid.UUID] = None
    template_kind: Optional[TemplateKind] = None


@dataclass(frozen=True, slots=True)
class AccessPolicy:
    vocabulary_member_write: bool = False


DEFAULT_POLICY = AccessPolicy()


def is_core(owner_id: Optional[uuid.UUID], account_id: Optional[uuid.UUID]) -> bool:
    return owner_id is not None and account_id is not None and owner_id == account_id


_Rule = Callable[[Operation, uuid.UUID, WorkspaceFacts, Target, AccessPolicy], bool]


def _workspace_rule(op, actor_id, facts, target, policy) -> bool:
    if op is Operation.READ:
        return facts.is_member
    if op is Operation.UPDATE:
        return is_core(facts.owner_id, actor_id)
    return False


def _membership_rule(op, actor_id, facts, target, policy) -> bool:
    core = is_core(facts.owner_id, actor_id)
    if op is Operation.READ:
        return core or (facts.is_member and target.account_id == actor_id)
    if op is Operation.DELETE:
        return core and target.account_id is not None
    return core


def _template_rule(op, actor_id, facts, target, policy) -> bool:
    core = is_core(facts.owner_id, actor_id)
    if op in (Operation.READ, Operation.CREATE):
        return facts.is_member
    if op is Operation.UPDATE:
        return core or (target.created_by is not None and target.created_by == actor_id)
    return core


def _vocabulary_rule(op, actor_id, facts, target, policy) -> bool:
    core = is_core(facts.owner_id, actor_id)
    if op in (Operation.READ, Operation.CREATE):
        return facts.is_member
    if op is Operation.UPDATE:
        return core or (policy.vocabulary_member_write and facts.is_member)
    return core


def _journal_rule(op, actor_id, facts, target, policy) -> bool:
    if not facts.is_member:
        return False
    if op is Operation.READ:
        return True
    if op is Operation.CREATE:
        return target.created_by == actor_id
    if op is Operation.UPDATE:
        return is_core(facts.owner_id, actor_id) or target.created_by == actor_id
    return is_core(facts.owner_id, actor_id)


def _invite_rule(op, actor_id, facts, target, policy) -> bool:
    return is_core(facts.owner_id, actor_id)


_RULES: dict[EntityKind, _Rule] = {
    EntityKind.WORKSPACE: _workspace_rule,
    EntityKind.MEMBERSHIP: _membership_rule,
    EntityKind.TEMPLATE: _template_rule,
    EntityKind.VOCABULARY: _vocabulary_rule,
    EntityKind.JOURNAL: _journal_rule,
    EntityKind.INVITE: _invite_rule,
}


def evaluate(
    actor: Actor,
    facts: Optional[WorkspaceFacts],
    kind: EntityKind,
    operation: Operation,
    target: Optional[Target] = None,
    policy: AccessPolicy = DEFAULT_POLICY,
) -> bool:
    """Return ``True`` when *actor* may perform *operation* on *kind*."""

    target = target or Target()

    # The owner's membership row is never deletable, not even by the system.
    if (
        kind is EntityKind.MEMBERSHIP
        and operation is Operation.DELETE
        and facts is not None
        and target.account_id is not None
        and target.account_id == facts.owner_id
    ):
        return False

    if actor.is_system:
        return True

    if kind is EntityKind.TEMPLATE and target.template_kind is TemplateKind.STD:
        return operation is Operation.READ

    if facts is None or actor.id is None:
        return False

    return _RULES[kind](operation, actor.id, facts, target, policy)


class AccessEvaluator:
    """Loads workspace facts per call and applies :func:`evaluate`."""

    def __init__(self, session: Session, policy: AccessPolicy = DEFAULT_POLICY):
        self.session = session
        self.policy = policy

    def facts(self, actor: Actor, workspace_id: Optional[uuid.UUID]) -> Optional[WorkspaceFacts]:
        if workspace_id is None:
            return None
        row = self.session.execute(
            select(Workspace.owner_id).where(Workspace.id == workspace_id)
        ).first()
        if row is None:
            return None
        is_member = False
        if actor.id is not None:
            is_member = (
                self.session.execute(
                    select(WorkspaceMember.id).where(
                        WorkspaceMember.workspace_id == workspace_id,
                        WorkspaceMember.user_id == actor.id,
                    )
                ).first()
                is not None
            )
        return WorkspaceFacts(workspace_id=workspace_id, owner_id=row.owner_id, is_member=is_member)

    def can_access(
        self,
        actor: Actor,
        workspace_id: Optional[uuid.UUID],
        kind: EntityKind,
        operation: Operation,
        target: Optional[Target] = None,
    ) -> bool:
        return evaluate(actor, self.facts(actor, workspace_id), kind, operation, target, self.policy)

    def require(
        self,
        actor: Actor,
        workspace_id: Optional[uuid.UUID],
        kind: EntityKind,
        operation: Operation,
        target: Optional[Target] = None,
    ) -> None:
        """Raise unless the operation is allowed.

        Entities the actor cannot see raise :class:`NotFound` so that existence
        does not leak across tenants; visible entities raise
        :class:`PermissionDenied`.
        """

        facts = self.facts(actor, workspace_id)
        if evaluate(actor, facts, kind, operation, target, self.policy):
            return
        if operation is Operation.CREATE:
            visible = evaluate(actor, facts, EntityKind.WORKSPACE, Operation.READ)
        else:
            visible = evaluate(actor, facts, kind, Operation.READ, target, self.policy)
        if visible:
            raise PermissionDenied(f"Not allowed to {operation.value} {kind.value}")
        raise NotFound(f"{kind.value.capitalize()} not found")
