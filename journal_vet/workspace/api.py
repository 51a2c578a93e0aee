"""FastAPI application for the workspace core.

Caller identity is resolved upstream and forwarded in ``X-User-ID`` /
``X-User-Email``. Domain errors map to status codes in one place:

============================  ====
PermissionDenied              403
NotFound                      404
ProtectedOwnerMembership      409
InviteInvalid                 410
PipelineDispatchFailed        502
ValueError                    400
============================  ====
"""

from __future__ import annotations

import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Generator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlalchemy.orm import Session

from . import schemas
from .authz import Actor
from .errors import (
    InviteInvalid,
    NotFound,
    PermissionDenied,
    PipelineDispatchFailed,
    ProtectedOwnerMembership,
)
from .invites import InviteService, InviteView
from .journals import JournalService
from .models import Journal, JournalStatus, Workspace
from .pipeline import PipelineGateway
from .progress import estimate
from .security import verify_callback_signature
from .service import WorkspaceDatabase, WorkspaceService, WorkspaceSettings, init_engine
from .storage import AudioCleanup, R2Client, R2Config

__all__ = ["create_app", "WorkspaceSettings"]

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_ERROR_STATUS: dict[type[Exception], int] = {
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    NotFound: status.HTTP_404_NOT_FOUND,
    ProtectedOwnerMembership: status.HTTP_409_CONFLICT,
    InviteInvalid: status.HTTP_410_GONE,
    ValueError: status.HTTP_400_BAD_REQUEST,
}

_ERROR_RESPONSES: dict[int | str, dict] = {
    code: {"model": schemas.ErrorResponse} for code in sorted(set(_ERROR_STATUS.values()))
}
_ERROR_RESPONSES[status.HTTP_502_BAD_GATEWAY] = {
    "model": schemas.ErrorResponse,
    "description": "Pipeline dispatch failed; the journal was saved as processing",
}


def _default_store() -> Optional[R2Client]:
    try:
        config = R2Config.from_env()
    except ValueError:
        logger.info("storage.disabled", reason="R2 is not configured")
        return None
    return R2Client(config)


def _workspace_response(workspace: Workspace, actor: Actor) -> schemas.WorkspaceResponse:
    return schemas.WorkspaceResponse(
        id=workspace.id,
        owner_id=workspace.owner_id,
        name=workspace.name,
        created_at=workspace.created_at,
        is_core=workspace.is_core(actor.id),
    )


def _journal_response(journal: Journal, poll_attempt: int = 0) -> schemas.JournalResponse:
    response = schemas.JournalResponse.model_validate(journal)
    response.progress = schemas.ProgressResponse.from_estimate(
        estimate(journal, attempt=poll_attempt)
    )
    return response


def create_app(
    settings: WorkspaceSettings | None = None,
    *,
    gateway: PipelineGateway | None = None,
    store: R2Client | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or WorkspaceSettings.from_env()
    engine = init_engine(settings)
    database = WorkspaceDatabase(engine=engine)
    gateway = gateway or PipelineGateway.from_settings(settings)
    store = store if store is not None else _default_store()
    executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="audio-cleanup")
    cleanup = AudioCleanup(store, executor)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        executor.shutdown(wait=True)
        engine.dispose()

    app = FastAPI(
        title="Journal Vet Workspace API",
        version="1.0.0",
        description="Workspaces, invites and journal processing",
        lifespan=lifespan,
        responses=_ERROR_RESPONSES,
    )
    app.state.database = database
    app.state.cleanup = cleanup

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id, method=request.method, path=request.url.path
        )
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def get_session() -> Generator[Session, None, None]:
        session = database.session()
        try:
            yield session
        finally:
            session.close()

    def get_actor(request: Request) -> Actor:
        raw_id = request.headers.get("X-User-ID")
        if not raw_id:
            raise HTTPException(status_code=401, detail="Authentication required")
        try:
            account_id = uuid.UUID(raw_id)
        except ValueError:
            raise HTTPException(status_code=401, detail="Invalid user id") from None
        email = request.headers.get("X-User-Email") or None
        structlog.contextvars.bind_contextvars(account_id=str(account_id))
        return Actor(id=account_id, email=email)

    def get_workspaces(session: Session = Depends(get_session)) -> WorkspaceService:
        return WorkspaceService(session=session, settings=settings)

    def get_invites(session: Session = Depends(get_session)) -> InviteService:
        return InviteService(session=session, settings=settings)

    def get_journals(session: Session = Depends(get_session)) -> JournalService:
        return JournalService(session=session, settings=settings, gateway=gateway, cleanup=cleanup)

    # ========================================================================
    # Error mapping
    # ========================================================================

    def _domain_error(request: Request, exc: Exception) -> JSONResponse:
        code = next(
            (value for kind, value in _ERROR_STATUS.items() if isinstance(exc, kind)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        logger.info("request.rejected", error=type(exc).__name__, status_code=code)
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    for error_type in _ERROR_STATUS:
        app.add_exception_handler(error_type, _domain_error)

    @app.exception_handler(PipelineDispatchFailed)
    async def _dispatch_failed(request: Request, exc: PipelineDispatchFailed):
        logger.warning("journal.dispatch_failed", journal_id=str(exc.journal_id), detail=exc.detail)
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": str(exc), "journal_id": str(exc.journal_id)},
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("request.failed")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    # ========================================================================
    # Health / reference data
    # ========================================================================

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/languages", response_model=list[schemas.LanguageResponse])
    def list_languages(service: WorkspaceService = Depends(get_workspaces)):
        return [schemas.LanguageResponse.model_validate(lang) for lang in service.list_languages()]

    # ========================================================================
    # Workspaces
    # ========================================================================

    @app.get("/v1/workspaces", response_model=list[schemas.WorkspaceResponse])
    def list_workspaces(
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        return [_workspace_response(w, actor) for w in service.list_workspaces(actor)]

    @app.get("/v1/workspaces/context", response_model=schemas.WorkspaceContextResponse)
    def workspace_context(
        stored_workspace_id: Optional[uuid.UUID] = Query(None),
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        """Active workspace for the caller; persists a corrected selection."""
        stored = stored_workspace_id or service.current_workspace_id(actor)
        context = service.resolve_context(actor, stored)
        if context.should_persist_selection and context.active_workspace_id is not None:
            try:
                service.set_current_workspace(actor, context.active_workspace_id)
            except NotFound:
                logger.info("workspace.selection_not_persisted", reason="no profile")
        return schemas.WorkspaceContextResponse(
            status=context.status,
            workspaces=[_workspace_response(w, actor) for w in context.workspaces],
            active_workspace_id=context.active_workspace_id,
            message=context.message,
            should_persist_selection=context.should_persist_selection,
        )

    @app.put("/v1/profile/current-workspace", status_code=204)
    def set_current_workspace(
        request: schemas.CurrentWorkspaceRequest,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ) -> Response:
        service.set_current_workspace(actor, request.workspace_id)
        return Response(status_code=204)

    @app.patch("/v1/workspaces/{workspace_id}", response_model=schemas.WorkspaceResponse)
    def rename_workspace(
        workspace_id: uuid.UUID,
        request: schemas.WorkspaceRenameRequest,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        workspace = service.rename_workspace(actor, workspace_id, request.name)
        return _workspace_response(workspace, actor)

    # ========================================================================
    # Members
    # ========================================================================

    @app.get("/v1/workspaces/{workspace_id}/members", response_model=list[schemas.MemberResponse])
    def list_members(
        workspace_id: uuid.UUID,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        return [
            schemas.MemberResponse(
                id=row.id,
                workspace_id=row.workspace_id,
                user_id=row.user_id,
                created_at=row.created_at,
                is_core=row.workspace.is_core(row.user_id),
            )
            for row in service.list_members(actor, workspace_id)
        ]

    @app.delete("/v1/workspaces/{workspace_id}/members/{account_id}", status_code=204)
    def remove_member(
        workspace_id: uuid.UUID,
        account_id: uuid.UUID,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ) -> Response:
        service.remove_member(actor, workspace_id, account_id)
        return Response(status_code=204)

    # ========================================================================
    # Invites
    # ========================================================================

    @app.post(
        "/v1/workspaces/{workspace_id}/invites",
        response_model=schemas.InviteResponse,
        status_code=201,
    )
    def create_invite(
        workspace_id: uuid.UUID,
        request: schemas.InviteCreateRequest,
        service: InviteService = Depends(get_invites),
        actor: Actor = Depends(get_actor),
    ):
        invite = service.create_invite(actor, workspace_id, request.email, request.expires_at)
        return schemas.InviteResponse.from_view(InviteView(invite, invite.effective_status()))

    @app.get("/v1/workspaces/{workspace_id}/invites", response_model=list[schemas.InviteResponse])
    def list_invites(
        workspace_id: uuid.UUID,
        service: InviteService = Depends(get_invites),
        actor: Actor = Depends(get_actor),
    ):
        return [schemas.InviteResponse.from_view(v) for v in service.list_invites(actor, workspace_id)]

    @app.get("/v1/invites/mine", response_model=list[schemas.InviteResponse])
    def my_invites(
        service: InviteService = Depends(get_invites),
        actor: Actor = Depends(get_actor),
    ):
        return [schemas.InviteResponse.from_view(v) for v in service.list_invites_for_user(actor)]

    @app.post("/v1/invites/accept", response_model=schemas.InviteResponse)
    def accept_invite(
        request: schemas.InviteAcceptRequest,
        service: InviteService = Depends(get_invites),
        actor: Actor = Depends(get_actor),
    ):
        invite = service.accept(request.token, actor)
        return schemas.InviteResponse.from_view(
            InviteView(invite, invite.status, show_token=False)
        )

    @app.post("/v1/invites/{invite_id}/decline", response_model=schemas.InviteResponse)
    def decline_invite(
        invite_id: uuid.UUID,
        service: InviteService = Depends(get_invites),
        actor: Actor = Depends(get_actor),
    ):
        invite = service.decline(invite_id, actor)
        return schemas.InviteResponse.from_view(
            InviteView(invite, invite.status, show_token=False)
        )

    @app.post("/v1/invites/{invite_id}/revoke", response_model=schemas.InviteResponse)
    def revoke_invite(
        invite_id: uuid.UUID,
        service: InviteService = Depends(get_invites),
        actor: Actor = Depends(get_actor),
    ):
        invite = service.revoke(invite_id, actor)
        return schemas.InviteResponse.from_view(
            InviteView(invite, invite.status, show_token=False)
        )

    # ========================================================================
    # Templates
    # ========================================================================

    @app.get(
        "/v1/workspaces/{workspace_id}/templates", response_model=list[schemas.TemplateResponse]
    )
    def list_templates(
        workspace_id: uuid.UUID,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        return [
            schemas.TemplateResponse.model_validate(t)
            for t in service.list_templates(actor, workspace_id)
        ]

    @app.post(
        "/v1/workspaces/{workspace_id}/templates",
        response_model=schemas.TemplateResponse,
        status_code=201,
    )
    def create_template(
        workspace_id: uuid.UUID,
        request: schemas.TemplateCreateRequest,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        template = service.create_template(
            actor, workspace_id, request.name, request.body, request.language_code
        )
        return schemas.TemplateResponse.model_validate(template)

    @app.get("/v1/templates/{template_id}", response_model=schemas.TemplateResponse)
    def get_template(
        template_id: uuid.UUID,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        return schemas.TemplateResponse.model_validate(service.get_template(actor, template_id))

    @app.patch("/v1/templates/{template_id}", response_model=schemas.TemplateResponse)
    def update_template(
        template_id: uuid.UUID,
        request: schemas.TemplateUpdateRequest,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        template = service.update_template(
            actor,
            template_id,
            name=request.name,
            body=request.body,
            language_code=request.language_code,
        )
        return schemas.TemplateResponse.model_validate(template)

    @app.delete("/v1/templates/{template_id}", status_code=204)
    def delete_template(
        template_id: uuid.UUID,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ) -> Response:
        service.delete_template(actor, template_id)
        return Response(status_code=204)

    # ========================================================================
    # Vocabulary
    # ========================================================================

    @app.get(
        "/v1/workspaces/{workspace_id}/vocabulary",
        response_model=list[schemas.VocabularyResponse],
    )
    def list_vocabulary(
        workspace_id: uuid.UUID,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        return [
            schemas.VocabularyResponse.model_validate(entry)
            for entry in service.list_vocabulary(actor, workspace_id)
        ]

    @app.post(
        "/v1/workspaces/{workspace_id}/vocabulary",
        response_model=schemas.VocabularyResponse,
        status_code=201,
    )
    def add_vocabulary_entry(
        workspace_id: uuid.UUID,
        request: schemas.VocabularyCreateRequest,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        entry = service.add_vocabulary_entry(actor, workspace_id, request.term, request.replacement)
        return schemas.VocabularyResponse.model_validate(entry)

    @app.patch("/v1/vocabulary/{entry_id}", response_model=schemas.VocabularyResponse)
    def update_vocabulary_entry(
        entry_id: uuid.UUID,
        request: schemas.VocabularyUpdateRequest,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ):
        entry = service.update_vocabulary_entry(
            actor, entry_id, term=request.term, replacement=request.replacement
        )
        return schemas.VocabularyResponse.model_validate(entry)

    @app.delete("/v1/vocabulary/{entry_id}", status_code=204)
    def delete_vocabulary_entry(
        entry_id: uuid.UUID,
        service: WorkspaceService = Depends(get_workspaces),
        actor: Actor = Depends(get_actor),
    ) -> Response:
        service.delete_vocabulary_entry(actor, entry_id)
        return Response(status_code=204)

    # ========================================================================
    # Journals
    # ========================================================================

    @app.post(
        "/v1/workspaces/{workspace_id}/audio-uploads",
        response_model=schemas.AudioUploadResponse,
        status_code=201,
    )
    def create_audio_upload(
        workspace_id: uuid.UUID,
        request: schemas.AudioUploadRequest,
        service: JournalService = Depends(get_journals),
        actor: Actor = Depends(get_actor),
    ):
        """Presigned URL for uploading a recording before the journal is created."""
        if store is None:
            raise HTTPException(status_code=503, detail="Audio storage is not configured")
        key = service.audio_upload_key(actor, workspace_id, request.file_name)
        url = store.generate_presigned_upload_url(key, content_type=request.content_type)
        return schemas.AudioUploadResponse(audio_path=f"audio/{key}", upload_url=url)

    @app.post(
        "/v1/workspaces/{workspace_id}/journals",
        response_model=schemas.JournalResponse,
        status_code=201,
    )
    def create_journal(
        workspace_id: uuid.UUID,
        request: schemas.JournalCreateRequest,
        service: JournalService = Depends(get_journals),
        actor: Actor = Depends(get_actor),
    ):
        journal = service.create_journal(
            actor,
            workspace_id,
            request.audio_path,
            template_id=request.template_id,
            language_code=request.language_code,
            meta=request.meta,
        )
        return _journal_response(journal)

    @app.get("/v1/workspaces/{workspace_id}/journals", response_model=schemas.JournalListResponse)
    def list_journals(
        workspace_id: uuid.UUID,
        status_filter: list[JournalStatus] = Query(default=[], alias="status"),
        search: Optional[str] = Query(None),
        newest_first: bool = Query(True),
        page: int = Query(1, ge=1),
        page_size: int = Query(20, ge=1, le=100),
        service: JournalService = Depends(get_journals),
        actor: Actor = Depends(get_actor),
    ):
        result = service.list_journals(
            actor,
            workspace_id,
            statuses=status_filter,
            search=search,
            newest_first=newest_first,
            page=page,
            page_size=page_size,
        )
        return schemas.JournalListResponse(
            items=[_journal_response(j) for j in result.items],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
        )

    @app.get("/v1/journals/{journal_id}", response_model=schemas.JournalResponse)
    def get_journal(
        journal_id: uuid.UUID,
        poll_attempt: int = Query(0, ge=0),
        service: JournalService = Depends(get_journals),
        actor: Actor = Depends(get_actor),
    ):
        return _journal_response(service.get_journal(actor, journal_id), poll_attempt)

    @app.post("/v1/journals/{journal_id}/resummarize", response_model=schemas.JournalResponse)
    def resummarize_journal(
        journal_id: uuid.UUID,
        request: schemas.JournalResummarizeRequest,
        service: JournalService = Depends(get_journals),
        actor: Actor = Depends(get_actor),
    ):
        journal = service.resummarize(
            actor,
            journal_id,
            template_id=request.template_id,
            language_code=request.language_code,
        )
        return _journal_response(journal)

    @app.delete("/v1/journals/{journal_id}", status_code=204)
    def delete_journal(
        journal_id: uuid.UUID,
        service: JournalService = Depends(get_journals),
        actor: Actor = Depends(get_actor),
    ) -> Response:
        service.delete_journal(actor, journal_id)
        return Response(status_code=204)

    # ========================================================================
    # Pipeline callback
    # ========================================================================

    async def verified_callback(request: Request) -> schemas.PipelineCallbackRequest:
        body = await request.body()
        if not verify_callback_signature(
            headers=request.headers, body=body, secret=settings.callback_secret
        ):
            logger.warning("pipeline.callback_rejected", reason="bad signature")
            raise HTTPException(status_code=401, detail="Invalid signature")
        try:
            return schemas.PipelineCallbackRequest.model_validate_json(body)
        except ValidationError as e:
            raise HTTPException(
                status_code=422, detail=json.loads(e.json(include_url=False))
            ) from None

    @app.post("/v1/pipeline/callback", response_model=schemas.JournalResponse)
    def pipeline_callback(
        payload: schemas.PipelineCallbackRequest = Depends(verified_callback),
        service: JournalService = Depends(get_journals),
    ):
        journal = service.complete_processing(
            payload.journal_id,
            transcript=payload.transcript,
            summary=payload.summary,
            outcome=payload.outcome,
        )
        return _journal_response(journal)

    return app
