"""Service layer for workspace management.

Business logic:
- settings, engine and session management
- account bootstrap (profile, default workspace, owner membership)
- workspace context, membership, template and vocabulary operations
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Optional

import structlog
from sqlalchemy import create_engine, delete, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .authz import AccessEvaluator, AccessPolicy, Actor, EntityKind, Operation, Target
from .errors import NotFound, ProtectedOwnerMembership
from .models import (
    Base,
    Invite,
    InviteStatus,
    Language,
    Profile,
    Template,
    TemplateKind,
    VocabularyEntry,
    Workspace,
    WorkspaceMember,
    utcnow,
)

__all__ = [
    "WorkspaceSettings",
    "WorkspaceDatabase",
    "WorkspaceService",
    "WorkspaceContext",
    "init_engine",
    "bootstrap_account",
    "seed_reference_data",
    "STANDARD_TEMPLATES",
    "LANGUAGES",
]

logger = structlog.get_logger(__name__)

STANDARD_TEMPLATES: tuple[tuple[str, str], ...] = (
    ("Bulleted Points", "Standard bullet summary template placeholder."),
    ("Clean Transcript", "Clean transcript template placeholder."),
    ("Email", "Email summary template placeholder."),
    ("Post-Operative Report", "Post-operative report template placeholder."),
    ("Client Callback", "Client callback template placeholder."),
    ("Physical Exam", "Physical exam template placeholder."),
    ("SOAP Ezyvet", "SOAP Ezyvet template placeholder."),
    ("SOAP Framework", "SOAP framework template placeholder."),
)

LANGUAGES: tuple[tuple[str, str], ...] = (
    ("en", "English"),
    ("es", "Spanish"),
    ("fr", "French"),
    ("de", "German"),
    ("it", "Italian"),
    ("nl", "Dutch"),
    ("pt", "Portuguese"),
)

EMPTY_MEMBERSHIP_MESSAGE = "We couldn't find any workspaces linked to this account yet."


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in {"", "none", "null"}:
        return None
    return int(raw)


@dataclass(slots=True)
class WorkspaceSettings:
    """Runtime configuration for the workspace services."""

    database_url: str
    transcription_webhook_url: Optional[str] = None
    resummarize_webhook_url: Optional[str] = None
    pipeline_timeout: float = 10.0
    callback_secret: Optional[str] = None
    invite_ttl_days: Optional[int] = 7
    invite_token_bytes: int = 16
    vocabulary_member_write: bool = False
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )

    @classmethod
    def from_env(cls, database_url: Optional[str] = None) -> WorkspaceSettings:
        database_url = (
            database_url or os.getenv("JOURNAL_VET_DB_URL") or os.getenv("DATABASE_URL")
        )
        if not database_url:
            raise ValueError(
                "Database connection required: set JOURNAL_VET_DB_URL or DATABASE_URL"
            )
        origins = os.getenv("JOURNAL_VET_CORS_ORIGINS")
        return cls(
            database_url=database_url,
            transcription_webhook_url=os.getenv("JOURNAL_VET_TRANSCRIPTION_WEBHOOK_URL"),
            resummarize_webhook_url=os.getenv("JOURNAL_VET_RESUMMARIZE_WEBHOOK_URL"),
            pipeline_timeout=float(os.getenv("JOURNAL_VET_PIPELINE_TIMEOUT", "10")),
            callback_secret=os.getenv("JOURNAL_VET_CALLBACK_SECRET") or None,
            invite_ttl_days=_env_optional_int("JOURNAL_VET_INVITE_TTL_DAYS", 7),
            invite_token_bytes=int(os.getenv("JOURNAL_VET_INVITE_TOKEN_BYTES", "16")),
            vocabulary_member_write=_env_flag("JOURNAL_VET_VOCABULARY_MEMBER_WRITE", "false"),
            cors_origins=(
                [origin.strip() for origin in origins.split(",") if origin.strip()]
                if origins
                else ["http://localhost:3000", "http://127.0.0.1:3000"]
            ),
        )

    @property
    def access_policy(self) -> AccessPolicy:
        return AccessPolicy(vocabulary_member_write=self.vocabulary_member_write)


def init_engine(settings: WorkspaceSettings) -> Engine:
    """SQLAlchemy engine initialisation."""

    # SQLAlchemy requires 'postgresql://' not 'postgres://'; use the psycopg 3 driver
    database_url = settings.database_url
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+psycopg://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    engine_kwargs: dict = {"pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite:"):
            from sqlalchemy.pool import StaticPool

            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update(pool_size=10, max_overflow=20)

    return create_engine(database_url, **engine_kwargs)


class WorkspaceDatabase:
    """Database session management."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def session(self) -> Session:
        return self._session_factory()

    def create_all(self) -> None:
        """Create tables (development and tests)."""
        Base.metadata.create_all(self.engine)


# ============================================================================
# Bootstrap (runs with the service credential)
# ============================================================================


def _email_local_part(email: Optional[str]) -> str:
    local = (email or "").split("@", 1)[0].strip()
    return local or "Default"


def bootstrap_account(
    session: Session,
    account_id: uuid.UUID,
    email: Optional[str],
    full_name: Optional[str] = None,
) -> Workspace:
    """Create the profile, default workspace and owner membership of an account.

    The three rows are written in one transaction. Calling this again for an
    existing account returns its workspace unchanged.
    """

    created = False
    if session.get(Profile, account_id) is None:
        session.add(Profile(id=account_id, email=email, full_name=full_name))
        session.flush()
        created = True

    workspace = session.get(Workspace, account_id)
    if workspace is None:
        workspace = Workspace(
            id=account_id,
            owner_id=account_id,
            name=f"{_email_local_part(email)} Workspace",
        )
        session.add(workspace)
        session.flush()
        created = True

    membership = session.execute(
        select(WorkspaceMember.id).where(
            WorkspaceMember.workspace_id == account_id,
            WorkspaceMember.user_id == account_id,
        )
    ).first()
    if membership is None:
        session.add(WorkspaceMember(workspace_id=account_id, user_id=account_id))
        created = True

    session.commit()
    if created:
        logger.info("account.bootstrapped", account_id=str(account_id))
    return workspace


def seed_reference_data(session: Session) -> None:
    """Insert standard templates and languages if missing."""

    existing_templates = set(
        session.execute(
            select(Template.name).where(Template.kind == TemplateKind.STD)
        ).scalars()
    )
    for name, body in STANDARD_TEMPLATES:
        if name not in existing_templates:
            session.add(Template(name=name, body=body, kind=TemplateKind.STD))

    existing_languages = set(session.execute(select(Language.code)).scalars())
    for code, label in LANGUAGES:
        if code not in existing_languages:
            session.add(Language(code=code, label=label))
    session.commit()


# ============================================================================
# Workspace service
# ============================================================================


@dataclass(slots=True)
class WorkspaceContext:
    """Active workspace selection for a signed-in account."""

    workspaces: list[Workspace]
    active_workspace_id: Optional[uuid.UUID]
    status: str
    message: Optional[str] = None
    should_persist_selection: bool = False

    @property
    def active_workspace(self) -> Optional[Workspace]:
        return next((w for w in self.workspaces if w.id == self.active_workspace_id), None)


class WorkspaceService:
    """Workspace business logic."""

    def __init__(self, session: Session, settings: WorkspaceSettings):
        self.session = session
        self.settings = settings
        self.access = AccessEvaluator(session, settings.access_policy)

    # ========================================================================
    # Workspaces
    # ========================================================================

    def list_workspaces(self, actor: Actor) -> list[Workspace]:
        stmt = (
            select(Workspace)
            .join(WorkspaceMember, WorkspaceMember.workspace_id == Workspace.id)
            .where(WorkspaceMember.user_id == actor.id)
            .order_by(WorkspaceMember.created_at)
        )
        return list(self.session.execute(stmt).scalars())

    def resolve_context(
        self, actor: Actor, stored_workspace_id: Optional[uuid.UUID] = None
    ) -> WorkspaceContext:
        """Pick the active workspace: stored choice, then owned, then first."""

        workspaces = self.list_workspaces(actor)
        if not workspaces:
            return WorkspaceContext(
                workspaces=[],
                active_workspace_id=None,
                status="empty",
                message=EMPTY_MEMBERSHIP_MESSAGE,
                should_persist_selection=stored_workspace_id is not None,
            )

        valid_ids = {workspace.id for workspace in workspaces}
        if stored_workspace_id in valid_ids:
            return WorkspaceContext(
                workspaces=workspaces,
                active_workspace_id=stored_workspace_id,
                status="success",
            )

        owned = next((w.id for w in workspaces if w.is_core(actor.id)), None)
        active_id = owned or workspaces[0].id
        return WorkspaceContext(
            workspaces=workspaces,
            active_workspace_id=active_id,
            status="success",
            should_persist_selection=stored_workspace_id != active_id,
        )

    def current_workspace_id(self, actor: Actor) -> Optional[uuid.UUID]:
        profile = self.session.get(Profile, actor.id) if actor.id is not None else None
        return profile.current_workspace_id if profile else None

    def set_current_workspace(self, actor: Actor, workspace_id: uuid.UUID) -> Profile:
        self.access.require(actor, workspace_id, EntityKind.WORKSPACE, Operation.READ)
        profile = self.session.get(Profile, actor.id)
        if profile is None:
            raise NotFound("Profile not found")
        profile.current_workspace_id = workspace_id
        self.session.commit()
        return profile

    def rename_workspace(self, actor: Actor, workspace_id: uuid.UUID, name: str) -> Workspace:
        name = name.strip()
        if not name:
            raise ValueError("Workspace name is required")
        self.access.require(actor, workspace_id, EntityKind.WORKSPACE, Operation.UPDATE)
        workspace = self.session.get(Workspace, workspace_id)
        workspace.name = name
        self.session.commit()
        logger.info("workspace.renamed", workspace_id=str(workspace_id))
        return workspace

    def delete_workspace(self, actor: Actor, workspace_id: uuid.UUID) -> None:
        """System-only removal; cascades to everything the workspace owns."""

        self.access.require(actor, workspace_id, EntityKind.WORKSPACE, Operation.DELETE)
        workspace = self.session.get(Workspace, workspace_id)
        self.session.delete(workspace)
        self.session.commit()
        logger.info("workspace.deleted", workspace_id=str(workspace_id))

    # ========================================================================
    # Memberships
    # ========================================================================

    def list_members(self, actor: Actor, workspace_id: uuid.UUID) -> list[WorkspaceMember]:
        """Core members see every row; other members see only their own."""

        self.access.require(actor, workspace_id, EntityKind.WORKSPACE, Operation.READ)
        rows = self.session.execute(
            select(WorkspaceMember)
            .where(WorkspaceMember.workspace_id == workspace_id)
            .order_by(WorkspaceMember.created_at)
        ).scalars()
        return [
            row
            for row in rows
            if self.access.can_access(
                actor,
                workspace_id,
                EntityKind.MEMBERSHIP,
                Operation.READ,
                Target(account_id=row.user_id),
            )
        ]

    def remove_member(
        self, actor: Actor, workspace_id: uuid.UUID, account_id: uuid.UUID
    ) -> None:
        workspace = self.session.get(Workspace, workspace_id)
        if workspace is not None and workspace.is_core(account_id):
            self.access.require(actor, workspace_id, EntityKind.WORKSPACE, Operation.READ)
            raise ProtectedOwnerMembership()
        self.access.require(
            actor,
            workspace_id,
            EntityKind.MEMBERSHIP,
            Operation.DELETE,
            Target(account_id=account_id),
        )

        result = self.session.execute(
            delete(WorkspaceMember).where(
                WorkspaceMember.workspace_id == workspace_id,
                WorkspaceMember.user_id == account_id,
                WorkspaceMember.user_id
                != select(Workspace.owner_id).where(Workspace.id == workspace_id).scalar_subquery(),
            ),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("Membership not found")

        # The member no longer holds access through any invite they accepted.
        self.session.execute(
            update(Invite)
            .where(
                Invite.workspace_id == workspace_id,
                Invite.accepted_by == account_id,
                Invite.status == InviteStatus.ACCEPTED,
            )
            .values(status=InviteStatus.REVOKED),
            execution_options={"synchronize_session": False},
        )
        self.session.commit()
        self.session.expire_all()
        logger.info(
            "member.removed", workspace_id=str(workspace_id), account_id=str(account_id)
        )

    # ========================================================================
    # Templates
    # ========================================================================

    def list_templates(self, actor: Actor, workspace_id: uuid.UUID) -> list[Template]:
        """Standard templates plus the workspace's custom templates."""

        self.access.require(actor, workspace_id, EntityKind.TEMPLATE, Operation.READ)
        stmt = (
            select(Template)
            .where(
                (Template.kind == TemplateKind.STD)
                | ((Template.kind == TemplateKind.CUSTOM) & (Template.workspace_id == workspace_id))
            )
            .order_by(Template.kind.desc(), Template.name)
        )
        return list(self.session.execute(stmt).scalars())

    def get_template(self, actor: Actor, template_id: uuid.UUID) -> Template:
        template = self.session.get(Template, template_id)
        if template is None or not self.access.can_access(
            actor, template.workspace_id, EntityKind.TEMPLATE, Operation.READ, _template_target(template)
        ):
            raise NotFound("Template not found")
        return template

    def create_template(
        self,
        actor: Actor,
        workspace_id: uuid.UUID,
        name: str,
        body: str,
        language_code: Optional[str] = None,
    ) -> Template:
        name = name.strip()
        if not name or not body.strip():
            raise ValueError("Template name and body are required")
        self.access.require(
            actor,
            workspace_id,
            EntityKind.TEMPLATE,
            Operation.CREATE,
            Target(created_by=actor.id, template_kind=TemplateKind.CUSTOM),
        )
        template = Template(
            name=name,
            body=body,
            kind=TemplateKind.CUSTOM,
            language_code=language_code,
            workspace_id=workspace_id,
            created_by=actor.id,
        )
        self.session.add(template)
        self.session.commit()
        return template

    def update_template(
        self,
        actor: Actor,
        template_id: uuid.UUID,
        *,
        name: Optional[str] = None,
        body: Optional[str] = None,
        language_code: Optional[str] = None,
    ) -> Template:
        template = self.get_template(actor, template_id)
        self.access.require(
            actor, template.workspace_id, EntityKind.TEMPLATE, Operation.UPDATE, _template_target(template)
        )
        if name is not None:
            if not name.strip():
                raise ValueError("Template name cannot be empty")
            template.name = name.strip()
        if body is not None:
            template.body = body
        if language_code is not None:
            template.language_code = language_code or None
        template.updated_at = utcnow()
        self.session.commit()
        return template

    def delete_template(self, actor: Actor, template_id: uuid.UUID) -> None:
        template = self.get_template(actor, template_id)
        self.access.require(
            actor, template.workspace_id, EntityKind.TEMPLATE, Operation.DELETE, _template_target(template)
        )
        self.session.delete(template)
        self.session.commit()

    # ========================================================================
    # Vocabulary
    # ========================================================================

    def list_vocabulary(self, actor: Actor, workspace_id: uuid.UUID) -> list[VocabularyEntry]:
        self.access.require(actor, workspace_id, EntityKind.VOCABULARY, Operation.READ)
        return list(
            self.session.execute(
                select(VocabularyEntry)
                .where(VocabularyEntry.workspace_id == workspace_id)
                .order_by(VocabularyEntry.term)
            ).scalars()
        )

    def add_vocabulary_entry(
        self,
        actor: Actor,
        workspace_id: uuid.UUID,
        term: str,
        replacement: Optional[str] = None,
    ) -> VocabularyEntry:
        term = term.strip()
        if not term:
            raise ValueError("Vocabulary term is required")
        self.access.require(actor, workspace_id, EntityKind.VOCABULARY, Operation.CREATE)
        entry = VocabularyEntry(
            workspace_id=workspace_id,
            term=term,
            replacement=replacement,
            created_by=actor.id,
        )
        self.session.add(entry)
        self.session.commit()
        return entry

    def update_vocabulary_entry(
        self,
        actor: Actor,
        entry_id: uuid.UUID,
        *,
        term: Optional[str] = None,
        replacement: Optional[str] = None,
    ) -> VocabularyEntry:
        entry = self._get_vocabulary_entry(actor, entry_id)
        self.access.require(
            actor,
            entry.workspace_id,
            EntityKind.VOCABULARY,
            Operation.UPDATE,
            Target(created_by=entry.created_by),
        )
        if term is not None:
            if not term.strip():
                raise ValueError("Vocabulary term cannot be empty")
            entry.term = term.strip()
        if replacement is not None:
            entry.replacement = replacement or None
        self.session.commit()
        return entry

    def delete_vocabulary_entry(self, actor: Actor, entry_id: uuid.UUID) -> None:
        entry = self._get_vocabulary_entry(actor, entry_id)
        self.access.require(actor, entry.workspace_id, EntityKind.VOCABULARY, Operation.DELETE)
        self.session.delete(entry)
        self.session.commit()

    def _get_vocabulary_entry(self, actor: Actor, entry_id: uuid.UUID) -> VocabularyEntry:
        entry = self.session.get(VocabularyEntry, entry_id)
        if entry is None or not self.access.can_access(
            actor, entry.workspace_id, EntityKind.VOCABULARY, Operation.READ
        ):
            raise NotFound("Vocabulary entry not found")
        return entry

    # ========================================================================
    # Reference data
    # ========================================================================

    def list_languages(self) -> list[Language]:
        return list(self.session.execute(select(Language).order_by(Language.label)).scalars())


def _template_target(template: Template) -> Target:
    return Target(created_by=template.created_by, template_kind=template.kind)
