"""Outbound client for the transcription/summarization pipeline.

The pipeline is an external webhook service. A 2xx response only acknowledges
receipt; completion is reported later through the callback endpoint. There is
no retry here: a failed dispatch is surfaced to the caller immediately.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

import requests
import structlog

from .errors import PipelineDispatchFailed

__all__ = ["DispatchRequest", "PipelineGateway"]

logger = structlog.get_logger(__name__)

_MAX_DETAIL_CHARS = 300


@dataclass(frozen=True, slots=True)
class DispatchRequest:
    journal_id: uuid.UUID
    template_id: Optional[uuid.UUID] = None
    language: Optional[str] = None

    def payload(self) -> dict[str, Any]:
        return {
            "journal_id": str(self.journal_id),
            "template_id": str(self.template_id) if self.template_id else None,
            "language": self.language,
        }


def _target_origin(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}"
    return url[:120]


class PipelineGateway:
    """Posts processing requests to the pipeline webhooks."""

    def __init__(
        self,
        transcription_url: Optional[str],
        resummarize_url: Optional[str],
        *,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.transcription_url = transcription_url
        self.resummarize_url = resummarize_url
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> PipelineGateway:
        return cls(
            settings.transcription_webhook_url,
            settings.resummarize_webhook_url,
            timeout=settings.pipeline_timeout,
        )

    def request_processing(self, request: DispatchRequest) -> None:
        """Ask the pipeline to transcribe and summarize a new journal."""
        self._post(self.transcription_url, request, "journal.transcription")

    def request_resummarize(self, request: DispatchRequest) -> None:
        """Ask the pipeline to summarize an existing journal again."""
        self._post(self.resummarize_url, request, "journal.resummarize")

    def _post(self, url: Optional[str], request: DispatchRequest, event_type: str) -> None:
        log = logger.bind(journal_id=str(request.journal_id), event_type=event_type)
        if not url:
            log.error("webhook.error", reason="webhook URL is not configured")
            raise PipelineDispatchFailed(request.journal_id, "webhook URL is not configured")

        target = _target_origin(url)
        log.info("webhook.call", target_url=target)
        start = time.perf_counter()
        try:
            response = self._session.post(url, json=request.payload(), timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("webhook.error", target_url=target, error=str(exc))
            raise PipelineDispatchFailed(request.journal_id, str(exc)) from exc

        duration_ms = round((time.perf_counter() - start) * 1000)
        if not 200 <= response.status_code < 300:
            detail = (response.text or "").strip()[:_MAX_DETAIL_CHARS]
            log.error(
                "webhook.error",
                target_url=target,
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
            raise PipelineDispatchFailed(
                request.journal_id, detail or f"HTTP {response.status_code}"
            )

        log.info(
            "webhook.response",
            target_url=target,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
