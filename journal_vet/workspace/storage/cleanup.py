"""Best-effort removal of journal audio after the row is gone."""

from __future__ import annotations

from concurrent.futures import Executor, Future
from typing import Optional, Protocol

import structlog

from .r2_client import normalize_audio_key

__all__ = ["AudioCleanup", "ObjectStore"]

logger = structlog.get_logger(__name__)


class ObjectStore(Protocol):
    def delete_object(self, key: str) -> None: ...


class AudioCleanup:
    """Deletes audio objects without ever failing the caller.

    With an executor the deletion runs in the background and :meth:`schedule`
    returns the future; without one it runs inline.
    """

    def __init__(self, store: Optional[ObjectStore], executor: Optional[Executor] = None):
        self.store = store
        self.executor = executor

    def schedule(self, audio_path: Optional[str]) -> Optional[Future]:
        key = normalize_audio_key(audio_path)
        if key is None or self.store is None:
            logger.debug("audio.cleanup_skipped", audio_path=audio_path)
            return None
        if self.executor is None:
            self.delete(key)
            return None
        return self.executor.submit(self.delete, key)

    def delete(self, key: str) -> bool:
        try:
            self.store.delete_object(key)
        except Exception as exc:  # noqa: BLE001 - storage failures must not surface
            logger.warning("audio.cleanup_failed", key=key, error=str(exc))
            return False
        logger.info("audio.cleanup_done", key=key)
        return True
