"""Pydantic schemas for workspace API requests/responses."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .invites import InviteView
from .models import InviteStatus, JournalStatus, TemplateKind
from .progress import ProgressEstimate

__all__ = [
    "WorkspaceResponse",
    "WorkspaceContextResponse",
    "WorkspaceRenameRequest",
    "CurrentWorkspaceRequest",
    "MemberResponse",
    "InviteCreateRequest",
    "InviteAcceptRequest",
    "InviteResponse",
    "TemplateCreateRequest",
    "TemplateUpdateRequest",
    "TemplateResponse",
    "VocabularyCreateRequest",
    "VocabularyUpdateRequest",
    "VocabularyResponse",
    "JournalCreateRequest",
    "JournalResummarizeRequest",
    "JournalResponse",
    "JournalListResponse",
    "ProgressResponse",
    "AudioUploadRequest",
    "AudioUploadResponse",
    "PipelineCallbackRequest",
    "LanguageResponse",
    "ErrorResponse",
]


class _OrmModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ========================================================================
# Workspaces and members
# ========================================================================


class WorkspaceResponse(_OrmModel):
    id: uuid.UUID
    owner_id: Optional[uuid.UUID]
    name: str
    created_at: dt.datetime
    is_core: bool = False


class WorkspaceContextResponse(BaseModel):
    status: Literal["success", "empty"]
    workspaces: list[WorkspaceResponse]
    active_workspace_id: Optional[uuid.UUID] = None
    message: Optional[str] = None
    should_persist_selection: bool = False


class WorkspaceRenameRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class CurrentWorkspaceRequest(BaseModel):
    workspace_id: uuid.UUID


class MemberResponse(_OrmModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    user_id: uuid.UUID
    created_at: dt.datetime
    is_core: bool = False


# ========================================================================
# Invites
# ========================================================================


class InviteCreateRequest(BaseModel):
    email: str = Field(..., max_length=320)
    expires_at: Optional[dt.datetime] = None


class InviteAcceptRequest(BaseModel):
    token: str = Field(..., min_length=1)


class InviteResponse(BaseModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    workspace_name: Optional[str] = None
    email: str
    status: InviteStatus
    token: Optional[str] = None
    invited_by: Optional[uuid.UUID] = None
    accepted_by: Optional[uuid.UUID] = None
    created_at: dt.datetime
    expires_at: Optional[dt.datetime] = None

    @classmethod
    def from_view(cls, view: InviteView) -> InviteResponse:
        invite = view.invite
        return cls(
            id=invite.id,
            workspace_id=invite.workspace_id,
            workspace_name=view.workspace_name,
            email=invite.email,
            status=view.status,
            token=view.token,
            invited_by=invite.invited_by,
            accepted_by=invite.accepted_by,
            created_at=invite.created_at,
            expires_at=invite.expires_at,
        )


# ========================================================================
# Templates and vocabulary
# ========================================================================


class TemplateCreateRequest(BaseModel):
    name: str = Field(..., max_length=255)
    body: str
    language_code: Optional[str] = None


class TemplateUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    body: Optional[str] = None
    language_code: Optional[str] = None


class TemplateResponse(_OrmModel):
    id: uuid.UUID
    name: str
    body: str
    kind: TemplateKind
    language_code: Optional[str] = None
    workspace_id: Optional[uuid.UUID] = None
    created_by: Optional[uuid.UUID] = None
    created_at: dt.datetime
    updated_at: dt.datetime


class VocabularyCreateRequest(BaseModel):
    term: str = Field(..., max_length=255)
    replacement: Optional[str] = None


class VocabularyUpdateRequest(BaseModel):
    term: Optional[str] = Field(None, max_length=255)
    replacement: Optional[str] = None


class VocabularyResponse(_OrmModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    term: str
    replacement: Optional[str] = None
    created_by: Optional[uuid.UUID] = None
    created_at: dt.datetime


# ========================================================================
# Journals
# ========================================================================


class JournalCreateRequest(BaseModel):
    audio_path: str = Field(..., min_length=1)
    template_id: Optional[uuid.UUID] = None
    language_code: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)


class JournalResummarizeRequest(BaseModel):
    template_id: Optional[uuid.UUID] = None
    language_code: Optional[str] = None


class ProgressResponse(BaseModel):
    progress: float
    visual: float
    expected_seconds: float
    refresh_after: Optional[float] = None

    @classmethod
    def from_estimate(cls, estimate: Optional[ProgressEstimate]) -> Optional[ProgressResponse]:
        if estimate is None:
            return None
        return cls(
            progress=estimate.progress,
            visual=estimate.visual,
            expected_seconds=estimate.expected_seconds,
            refresh_after=estimate.refresh_after,
        )


class JournalResponse(_OrmModel):
    id: uuid.UUID
    workspace_id: uuid.UUID
    created_by: Optional[uuid.UUID] = None
    created_by_email: Optional[str] = None
    status: JournalStatus
    language_code: Optional[str] = None
    template_id: Optional[uuid.UUID] = None
    audio_path: str
    transcript: Optional[str] = None
    summary: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: dt.datetime
    updated_at: dt.datetime
    progress: Optional[ProgressResponse] = None


class JournalListResponse(BaseModel):
    items: list[JournalResponse]
    total: int
    page: int
    page_size: int


class AudioUploadRequest(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    content_type: Optional[str] = None


class AudioUploadResponse(BaseModel):
    audio_path: str
    upload_url: str


class PipelineCallbackRequest(BaseModel):
    journal_id: uuid.UUID
    transcript: Optional[str] = None
    summary: Optional[str] = None
    outcome: Literal["success", "failure"] = "success"


# ========================================================================
# Reference data / errors
# ========================================================================


class LanguageResponse(_OrmModel):
    code: str
    label: str


class ErrorResponse(BaseModel):
    detail: str
    journal_id: Optional[uuid.UUID] = None
