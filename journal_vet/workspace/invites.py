"""Invite lifecycle.

State machine (no other transitions exist)::

    pending  --accept(token)-->  accepted
    pending  --decline(id)--->   declined
    pending|accepted --revoke--> revoked
    pending  --expires_at elapsed--> expired   (computed at read time)

Accept, decline and revoke run with the service's own credential but check the
caller's real identity first. Each one locks the invite row and applies its
change with a status-conditional UPDATE, so two concurrent callers can never
both win the same transition.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from .authz import AccessEvaluator, Actor, EntityKind, Operation, is_core
from .errors import InviteInvalid, NotFound, PermissionDenied, ProtectedOwnerMembership
from .models import Invite, InviteStatus, Workspace, WorkspaceMember, utcnow
from .service import WorkspaceSettings
from .tokens import generate_token

__all__ = ["InviteService", "InviteView", "normalize_email"]

logger = structlog.get_logger(__name__)

_CONFLICT_INSERTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


@dataclass(slots=True)
class InviteView:
    """Invite as seen by a caller, with lazy expiry applied."""

    invite: Invite
    status: InviteStatus
    workspace_name: Optional[str] = None
    show_token: bool = True

    @property
    def token(self) -> Optional[str]:
        return self.invite.token if self.show_token else None


class InviteService:
    """Creates invites and drives their state transitions."""

    def __init__(self, session: Session, settings: WorkspaceSettings):
        self.session = session
        self.settings = settings
        self.access = AccessEvaluator(session, settings.access_policy)

    # ------------------------------------------------------------------
    # core-member operations
    # ------------------------------------------------------------------

    def create_invite(
        self,
        actor: Actor,
        workspace_id: uuid.UUID,
        email: str,
        expires_at: Optional[dt.datetime] = None,
    ) -> Invite:
        email = normalize_email(email)
        if not email or "@" not in email:
            raise ValueError("A valid email address is required")
        self.access.require(actor, workspace_id, EntityKind.INVITE, Operation.CREATE)

        if expires_at is None and self.settings.invite_ttl_days is not None:
            expires_at = utcnow() + dt.timedelta(days=self.settings.invite_ttl_days)

        invite = Invite(
            workspace_id=workspace_id,
            email=email,
            token=generate_token(self.settings.invite_token_bytes),
            status=InviteStatus.PENDING,
            invited_by=actor.id,
            expires_at=expires_at,
        )
        self.session.add(invite)
        self.session.commit()
        logger.info(
            "invite.created",
            invite_id=str(invite.id),
            workspace_id=str(workspace_id),
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return invite

    def list_invites(self, actor: Actor, workspace_id: uuid.UUID) -> list[InviteView]:
        self.access.require(actor, workspace_id, EntityKind.INVITE, Operation.READ)
        now = utcnow()
        invites = self.session.execute(
            select(Invite)
            .where(Invite.workspace_id == workspace_id)
            .order_by(Invite.created_at.desc())
        ).scalars()
        return [InviteView(invite=i, status=i.effective_status(now)) for i in invites]

    def get_invite(self, actor: Actor, invite_id: uuid.UUID) -> InviteView:
        invite = self.session.get(Invite, invite_id)
        if invite is None or not self.access.can_access(
            actor, invite.workspace_id, EntityKind.INVITE, Operation.READ
        ):
            raise NotFound("Invite not found")
        return InviteView(invite=invite, status=invite.effective_status())

    # ------------------------------------------------------------------
    # invitee operations
    # ------------------------------------------------------------------

    def list_invites_for_user(self, actor: Actor) -> list[InviteView]:
        """Open invites addressed to the actor plus invites the actor accepted."""

        if actor.id is None:
            return []
        email = normalize_email(actor.email)
        now = utcnow()
        conditions = Invite.accepted_by == actor.id
        if email:
            conditions = conditions | (Invite.email == email)
        rows = self.session.execute(
            select(Invite, Workspace.name)
            .join(Workspace, Workspace.id == Invite.workspace_id)
            .where(conditions)
            .order_by(Invite.created_at.desc())
        ).all()

        views: list[InviteView] = []
        for invite, workspace_name in rows:
            status = invite.effective_status(now)
            if status is InviteStatus.PENDING and invite.email == email:
                views.append(InviteView(invite, status, workspace_name, show_token=True))
            elif status is InviteStatus.ACCEPTED and invite.accepted_by == actor.id:
                views.append(InviteView(invite, status, workspace_name, show_token=False))
        return views

    def accept(self, token: str, actor: Actor) -> Invite:
        """Join the invite's workspace.

        Raises :class:`InviteInvalid` unless the invite is pending and not
        expired. A caller who is already a member keeps their single
        membership row.
        """

        if actor.id is None:
            raise PermissionDenied("An authenticated account is required")
        invite = self._lock(Invite.token == token)
        if invite is None or invite.effective_status() is not InviteStatus.PENDING:
            self.session.rollback()
            raise InviteInvalid()

        self._ensure_membership(invite.workspace_id, actor.id)

        claimed = self._transition(
            invite,
            InviteStatus.PENDING,
            status=InviteStatus.ACCEPTED,
            accepted_by=actor.id,
        )
        if not claimed:
            self.session.rollback()
            raise InviteInvalid()

        self.session.commit()
        logger.info(
            "invite.accepted",
            invite_id=str(invite.id),
            workspace_id=str(invite.workspace_id),
            account_id=str(actor.id),
        )
        return invite

    def decline(self, invite_id: uuid.UUID, actor: Actor) -> Invite:
        invite = self._lock(Invite.id == invite_id)
        if (
            invite is None
            or invite.effective_status() is not InviteStatus.PENDING
            or not actor.email
            or normalize_email(actor.email) != invite.email
        ):
            self.session.rollback()
            raise InviteInvalid()

        if not self._transition(invite, InviteStatus.PENDING, status=InviteStatus.DECLINED):
            self.session.rollback()
            raise InviteInvalid()
        self.session.commit()
        logger.info("invite.declined", invite_id=str(invite.id))
        return invite

    # ------------------------------------------------------------------
    # revoke / leave
    # ------------------------------------------------------------------

    def revoke(self, invite_id: uuid.UUID, actor: Actor) -> Invite:
        """Withdraw an invite, or leave a workspace joined through it.

        Allowed for the workspace's core member and for the account that
        accepted the invite. Revoking an accepted invite removes that account's
        membership; the owner's membership is never removed.
        """

        invite = self._lock(Invite.id == invite_id)
        if invite is None:
            self.session.rollback()
            raise NotFound("Invite not found")

        owner_id = self.session.execute(
            select(Workspace.owner_id).where(Workspace.id == invite.workspace_id)
        ).scalar_one()
        is_invitee = actor.id is not None and invite.accepted_by == actor.id
        if not (actor.is_system or is_core(owner_id, actor.id) or is_invitee):
            self.session.rollback()
            raise PermissionDenied("You do not have permission to revoke this invite")

        previous = invite.status
        if previous is InviteStatus.REVOKED:
            self.session.rollback()
            return invite
        if invite.effective_status() not in (InviteStatus.PENDING, InviteStatus.ACCEPTED):
            self.session.rollback()
            raise InviteInvalid("Only pending or accepted invites can be revoked")

        if invite.accepted_by is not None:
            if invite.accepted_by == owner_id:
                self.session.rollback()
                raise ProtectedOwnerMembership()
            self.session.execute(
                delete(WorkspaceMember).where(
                    WorkspaceMember.workspace_id == invite.workspace_id,
                    WorkspaceMember.user_id == invite.accepted_by,
                    WorkspaceMember.user_id
                    != select(Workspace.owner_id)
                    .where(Workspace.id == invite.workspace_id)
                    .scalar_subquery(),
                ),
                execution_options={"synchronize_session": False},
            )

        if not self._transition(invite, previous, status=InviteStatus.REVOKED):
            self.session.rollback()
            raise InviteInvalid()
        self.session.commit()
        logger.info(
            "invite.revoked",
            invite_id=str(invite.id),
            workspace_id=str(invite.workspace_id),
            previous_status=previous.value,
            self_initiated=is_invitee,
        )
        return invite

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _lock(self, criterion) -> Optional[Invite]:
        """SELECT ... FOR UPDATE, overwriting any stale copy in the session."""

        stmt = (
            select(Invite)
            .where(criterion)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalars().first()

    def _ensure_membership(self, workspace_id: uuid.UUID, account_id: uuid.UUID) -> bool:
        """Insert the membership row unless it exists; returns True if inserted."""

        dialect_insert = _CONFLICT_INSERTS.get(self.session.get_bind().dialect.name)
        if dialect_insert is not None:
            result = self.session.execute(
                dialect_insert(WorkspaceMember)
                .values(workspace_id=workspace_id, user_id=account_id)
                .on_conflict_do_nothing(index_elements=["workspace_id", "user_id"])
            )
            return result.rowcount == 1

        try:
            with self.session.begin_nested():
                self.session.add(WorkspaceMember(workspace_id=workspace_id, user_id=account_id))
        except IntegrityError:
            return False
        return True

    def _transition(self, invite: Invite, expected: InviteStatus, **values) -> bool:
        result = self.session.execute(
            update(Invite)
            .where(Invite.id == invite.id, Invite.status == expected)
            .values(**values),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            return False
        for key, value in values.items():
            set_committed_value(invite, key, value)
        return True

