"""Journal processing coordinator.

::

    create ──> processing ──callback──> processed | error
                   ^                          │
                   └──────── resummarize ─────┘

The pipeline is external and not transactional: the row is committed before
the pipeline is notified, a failed notification leaves the row in
``processing`` (retry with :meth:`JournalService.resummarize`), and completion
callbacks may arrive more than once.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from .authz import AccessEvaluator, Actor, EntityKind, Operation, Target
from .errors import NotFound
from .models import Journal, JournalStatus, Language, Profile, Template, TemplateKind, utcnow
from .pipeline import DispatchRequest, PipelineGateway
from .service import WorkspaceSettings
from .storage import AudioCleanup

__all__ = ["JournalService", "JournalPage", "ProcessingOutcome"]

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_AUDIO_EXTENSION = "webm"


class ProcessingOutcome:
    SUCCESS = "success"
    FAILURE = "failure"

    ALL = (SUCCESS, FAILURE)


@dataclass(slots=True)
class JournalPage:
    items: list[Journal]
    total: int
    page: int
    page_size: int


class JournalService:
    """Creates journals and drives them through the pipeline."""

    def __init__(
        self,
        session: Session,
        settings: WorkspaceSettings,
        gateway: PipelineGateway,
        cleanup: Optional[AudioCleanup] = None,
    ):
        self.session = session
        self.settings = settings
        self.gateway = gateway
        self.cleanup = cleanup or AudioCleanup(None)
        self.access = AccessEvaluator(session, settings.access_policy)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_journal(self, actor: Actor, journal_id: uuid.UUID) -> Journal:
        journal = self.session.get(Journal, journal_id)
        if journal is None or not self.access.can_access(
            actor, journal.workspace_id, EntityKind.JOURNAL, Operation.READ
        ):
            raise NotFound("Journal not found")
        return journal

    def list_journals(
        self,
        actor: Actor,
        workspace_id: uuid.UUID,
        *,
        statuses: Optional[Iterable[JournalStatus]] = None,
        search: Optional[str] = None,
        newest_first: bool = True,
        page: int = 1,
        page_size: int = 20,
    ) -> JournalPage:
        if page < 1:
            raise ValueError("page must be >= 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        self.access.require(actor, workspace_id, EntityKind.JOURNAL, Operation.READ)

        conditions = [Journal.workspace_id == workspace_id]
        statuses = [JournalStatus(s) for s in statuses or ()]
        if statuses:
            conditions.append(Journal.status.in_(statuses))
        term = (search or "").strip()
        if term:
            pattern = f"%{term}%"
            conditions.append(
                or_(
                    Journal.summary.ilike(pattern),
                    Journal.transcript.ilike(pattern),
                    Journal.audio_path.ilike(pattern),
                )
            )

        total = self.session.execute(
            select(func.count()).select_from(Journal).where(*conditions)
        ).scalar_one()
        order = Journal.created_at.desc() if newest_first else Journal.created_at.asc()
        items = self.session.execute(
            select(Journal)
            .where(*conditions)
            .order_by(order, Journal.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).scalars()
        return JournalPage(items=list(items), total=total, page=page, page_size=page_size)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def create_journal(
        self,
        actor: Actor,
        workspace_id: uuid.UUID,
        audio_path: str,
        *,
        template_id: Optional[uuid.UUID] = None,
        language_code: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> Journal:
        """Persist a journal in ``processing`` and notify the pipeline.

        Raises :class:`PipelineDispatchFailed` when the pipeline does not
        acknowledge; the committed row stays in ``processing``.
        """

        audio_path = (audio_path or "").strip()
        if not audio_path:
            raise ValueError("audio_path is required")
        self.access.require(
            actor, workspace_id, EntityKind.JOURNAL, Operation.CREATE, Target(created_by=actor.id)
        )
        template = self._resolve_template(workspace_id, template_id)
        language_code = self._resolve_language(language_code)

        now = utcnow()
        journal = Journal(
            workspace_id=workspace_id,
            created_by=actor.id,
            created_by_email=actor.email,
            status=JournalStatus.PROCESSING,
            audio_path=audio_path,
            template_id=template.id if template else None,
            language_code=language_code,
            meta=dict(meta or {}),
            created_at=now,
            updated_at=now,
        )
        self.session.add(journal)
        self._remember_defaults(actor, journal.template_id, language_code)
        self.session.commit()
        log = logger.bind(journal_id=str(journal.id), workspace_id=str(workspace_id))
        log.info("journal.created")

        self.gateway.request_processing(self._dispatch_request(journal))
        log.info("journal.dispatched")
        return journal

    def complete_processing(
        self,
        journal_id: uuid.UUID,
        *,
        transcript: Optional[str] = None,
        summary: Optional[str] = None,
        outcome: str = ProcessingOutcome.SUCCESS,
    ) -> Journal:
        """Apply a pipeline completion callback.

        Only a journal in ``processing`` changes; repeated or late callbacks
        return the row unchanged.
        """

        if outcome not in ProcessingOutcome.ALL:
            raise ValueError(f"Unknown processing outcome: {outcome!r}")
        journal = self.session.execute(
            select(Journal)
            .where(Journal.id == journal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
        if journal is None:
            self.session.rollback()
            raise NotFound("Journal not found")

        log = logger.bind(journal_id=str(journal_id), outcome=outcome)
        if journal.status != JournalStatus.PROCESSING:
            status = journal.status
            self.session.rollback()
            log.info("journal.completion_ignored", status=status.value)
            return journal

        values: dict[str, Any] = {
            "status": (
                JournalStatus.PROCESSED
                if outcome == ProcessingOutcome.SUCCESS
                else JournalStatus.ERROR
            ),
            "updated_at": utcnow(),
        }
        if transcript is not None:
            values["transcript"] = transcript
        if summary is not None:
            values["summary"] = summary

        result = self.session.execute(
            update(Journal)
            .where(Journal.id == journal_id, Journal.status == JournalStatus.PROCESSING)
            .values(**values),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount != 1:
            self.session.rollback()
            log.info("journal.completion_ignored")
            return self.session.get(Journal, journal_id, populate_existing=True)
        for key, value in values.items():
            set_committed_value(journal, key, value)
        self.session.commit()
        log.info("journal.completed", status=values["status"].value)
        return journal

    def resummarize(
        self,
        actor: Actor,
        journal_id: uuid.UUID,
        *,
        template_id: Optional[uuid.UUID] = None,
        language_code: Optional[str] = None,
    ) -> Journal:
        """Send an existing journal back through summarization.

        Transcript and summary are kept until the pipeline reports back. Also
        the retry path after a failed dispatch.
        """

        journal = self.get_journal(actor, journal_id)
        self.access.require(
            actor,
            journal.workspace_id,
            EntityKind.JOURNAL,
            Operation.UPDATE,
            Target(created_by=journal.created_by),
        )
        if template_id is not None:
            journal.template_id = self._resolve_template(journal.workspace_id, template_id).id
        if language_code is not None:
            journal.language_code = self._resolve_language(language_code)
        journal.status = JournalStatus.PROCESSING
        journal.updated_at = utcnow()
        self.session.commit()
        logger.info("journal.resummarize_requested", journal_id=str(journal.id))

        self.gateway.request_resummarize(self._dispatch_request(journal))
        return journal

    def delete_journal(self, actor: Actor, journal_id: uuid.UUID) -> None:
        """Delete the row, then remove its audio on a best-effort basis."""

        journal = self.get_journal(actor, journal_id)
        self.access.require(
            actor,
            journal.workspace_id,
            EntityKind.JOURNAL,
            Operation.DELETE,
            Target(created_by=journal.created_by),
        )
        audio_path = journal.audio_path
        self.session.delete(journal)
        self.session.commit()
        logger.info("journal.deleted", journal_id=str(journal_id))
        self.cleanup.schedule(audio_path)

    def audio_upload_key(self, actor: Actor, workspace_id: uuid.UUID, file_name: str) -> str:
        """Bucket key for a new recording: ``<workspace_id>/<uuid>.<ext>``."""

        self.access.require(
            actor, workspace_id, EntityKind.JOURNAL, Operation.CREATE, Target(created_by=actor.id)
        )
        extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
        if not extension.isalnum() or len(extension) > 8:
            extension = DEFAULT_AUDIO_EXTENSION
        return f"{workspace_id}/{uuid.uuid4()}.{extension}"

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _resolve_template(
        self, workspace_id: uuid.UUID, template_id: Optional[uuid.UUID]
    ) -> Optional[Template]:
        if template_id is None:
            return None
        template = self.session.get(Template, template_id)
        if template is None or (
            template.kind == TemplateKind.CUSTOM and template.workspace_id != workspace_id
        ):
            raise NotFound("Template not found")
        return template

    def _resolve_language(self, language_code: Optional[str]) -> Optional[str]:
        code = (language_code or "").strip()
        if not code:
            return None
        if self.session.get(Language, code) is None:
            raise ValueError(f"Unsupported language: {code}")
        return code

    def _remember_defaults(
        self, actor: Actor, template_id: Optional[uuid.UUID], language_code: Optional[str]
    ) -> None:
        if actor.id is None:
            return
        profile = self.session.get(Profile, actor.id)
        if profile is None:
            return
        if template_id is not None:
            profile.default_template_id = template_id
        if language_code is not None:
            profile.default_language_code = language_code

    @staticmethod
    def _dispatch_request(journal: Journal) -> DispatchRequest:
        return DispatchRequest(
            journal_id=journal.id,
            template_id=journal.template_id,
            language=journal.language_code,
        )


