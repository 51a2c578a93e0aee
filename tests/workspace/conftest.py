"""Shared fixtures for the workspace core tests."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Optional

import pytest

from journal_vet.workspace.authz import Actor
from journal_vet.workspace.errors import PipelineDispatchFailed
from journal_vet.workspace.pipeline import DispatchRequest
from journal_vet.workspace.service import (
    WorkspaceDatabase,
    WorkspaceSettings,
    bootstrap_account,
    init_engine,
    seed_reference_data,
)


class FakeGateway:
    """Records dispatches instead of calling the pipeline."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.processing: list[DispatchRequest] = []
        self.resummarize: list[DispatchRequest] = []

    def request_processing(self, request: DispatchRequest) -> None:
        if self.fail:
            raise PipelineDispatchFailed(request.journal_id, "HTTP 503")
        self.processing.append(request)

    def request_resummarize(self, request: DispatchRequest) -> None:
        if self.fail:
            raise PipelineDispatchFailed(request.journal_id, "HTTP 503")
        self.resummarize.append(request)


class RecordingStore:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.deleted: list[str] = []

    def delete_object(self, key: str) -> None:
        self.deleted.append(key)
        if self.error is not None:
            raise self.error


@pytest.fixture()
def temp_db_path(tmp_path: Path) -> Path:
    return tmp_path / "workspace.db"


@pytest.fixture()
def settings(temp_db_path: Path) -> WorkspaceSettings:
    return WorkspaceSettings(
        database_url=f"sqlite:///{temp_db_path}",
        transcription_webhook_url="https://pipeline.test/transcribe",
        resummarize_webhook_url="https://pipeline.test/resummarize",
    )


@pytest.fixture()
def database(settings: WorkspaceSettings):
    db = WorkspaceDatabase(init_engine(settings))
    db.create_all()
    with db.session() as session:
        seed_reference_data(session)
    yield db
    db.engine.dispose()


@pytest.fixture()
def session(database: WorkspaceDatabase):
    session = database.session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_account(session):
    """Sign up a new account and return its actor."""

    def _make(email: str) -> Actor:
        account_id = uuid.uuid4()
        bootstrap_account(session, account_id, email)
        return Actor(id=account_id, email=email)

    return _make
