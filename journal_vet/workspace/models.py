"""SQLAlchemy ORM models for workspaces, invites and journals."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

__all__ = [
    "Base",
    "Profile",
    "Workspace",
    "WorkspaceMember",
    "Template",
    "VocabularyEntry",
    "Journal",
    "Invite",
    "Language",
    "InviteStatus",
    "JournalStatus",
    "TemplateKind",
    "utcnow",
    "as_utc",
]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Attach UTC to naive timestamps (SQLite drops the offset)."""

    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


class Base(DeclarativeBase):
    """Declarative base class shared by all workspace models."""


class InviteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    REVOKED = "revoked"
    EXPIRED = "expired"


class JournalStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class TemplateKind(str, Enum):
    STD = "Std"
    CUSTOM = "Custom"


def _text_enum(enum_cls: type[Enum], name: str) -> SqlEnum:
    """Store enum *values* as constrained text, matching the Supabase schema."""

    return SqlEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


_JSON = JSON().with_variant(JSONB(), "postgresql")


class Profile(Base):
    """Account profile. ``id`` is the externally issued account id."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    email: Mapped[str | None] = mapped_column(Text)
    full_name: Mapped[str | None] = mapped_column(Text)
    default_language_code: Mapped[str | None] = mapped_column(Text)
    default_template_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("templates.id", ondelete="SET NULL", use_alter=True)
    )
    current_workspace_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("workspaces.id", ondelete="SET NULL", use_alter=True)
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


class Workspace(Base):
    """Tenant boundary. The default workspace shares its owner's id."""

    __tablename__ = "workspaces"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"), index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    members: Mapped[list["WorkspaceMember"]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )
    invites: Mapped[list["Invite"]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )
    journals: Mapped[list["Journal"]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )
    templates: Mapped[list["Template"]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )
    vocabulary: Mapped[list["VocabularyEntry"]] = relationship(
        back_populates="workspace", cascade="all, delete-orphan"
    )

    def is_core(self, account_id: uuid.UUID | None) -> bool:
        return account_id is not None and self.owner_id == account_id


class WorkspaceMember(Base):
    """Membership join row; unique per (workspace, account)."""

    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    workspace: Mapped[Workspace] = relationship(back_populates="members")


class Template(Base):
    """Summary template; ``Std`` rows are global, ``Custom`` rows per workspace."""

    __tablename__ = "templates"
    __table_args__ = (Index("templates_workspace_kind_idx", "workspace_id", "kind"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[TemplateKind] = mapped_column(
        _text_enum(TemplateKind, "template_kind"), nullable=False
    )
    language_code: Mapped[str | None] = mapped_column(Text)
    workspace_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE")
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    workspace: Mapped[Workspace | None] = relationship(back_populates="templates")


class VocabularyEntry(Base):
    """Workspace vocabulary correction consumed by the pipeline."""

    __tablename__ = "vocabulary_entries"
    __table_args__ = (
        Index("vocabulary_entries_workspace_term_idx", "workspace_id", "term"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    term: Mapped[str] = mapped_column(Text, nullable=False)
    replacement: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    workspace: Mapped[Workspace] = relationship(back_populates="vocabulary")


class Journal(Base):
    """Audio capture moving through the transcription/summary pipeline."""

    __tablename__ = "journals"
    __table_args__ = (
        Index("journals_workspace_created_at_idx", "workspace_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL")
    )
    created_by_email: Mapped[str | None] = mapped_column(Text)
    status: Mapped[JournalStatus] = mapped_column(
        _text_enum(JournalStatus, "journal_status"),
        default=JournalStatus.DRAFT,
        nullable=False,
    )
    language_code: Mapped[str | None] = mapped_column(Text)
    template_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("templates.id", ondelete="SET NULL")
    )
    audio_path: Mapped[str] = mapped_column(Text, nullable=False)
    transcript: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict[str, Any]] = mapped_column(_JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    workspace: Mapped[Workspace] = relationship(back_populates="journals")


class Invite(Base):
    """Token-bearing offer of membership to an email address."""

    __tablename__ = "invites"
    __table_args__ = (Index("invites_workspace_status_idx", "workspace_id", "status"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[InviteStatus] = mapped_column(
        _text_enum(InviteStatus, "invite_status"),
        default=InviteStatus.PENDING,
        nullable=False,
    )
    token: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    invited_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL")
    )
    accepted_by: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL")
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    expires_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True))

    workspace: Mapped[Workspace] = relationship(back_populates="invites")

    def effective_status(self, now: dt.datetime | None = None) -> InviteStatus:
        """Stored status with lazy expiry applied to pending invites."""

        now = now or utcnow()
        expires_at = as_utc(self.expires_at)
        if self.status == InviteStatus.PENDING and expires_at is not None and expires_at <= now:
            return InviteStatus.EXPIRED
        return self.status


class Language(Base):
    """Public reference list of transcription languages."""

    __tablename__ = "languages"

    code: Mapped[str] = mapped_column(Text, primary_key=True)
    label: Mapped[str] = mapped_column(Text, nullable=False)
