import uuid
from unittest.mock import MagicMock

import pytest
import requests

from journal_vet.workspace.errors import PipelineDispatchFailed
from journal_vet.workspace.pipeline import DispatchRequest, PipelineGateway
from journal_vet.workspace.service import WorkspaceSettings


def _gateway(response=None, error=None, **kwargs):
    session = MagicMock(spec=requests.Session)
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    options = {"timeout": 3.0}
    options.update(kwargs)
    gateway = PipelineGateway(
        "https://pipeline.test/transcribe",
        "https://pipeline.test/resummarize",
        session=session,
        **options,
    )
    return gateway, session


def _response(status_code, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    return response


def test_request_processing_posts_payload():
    gateway, session = _gateway(_response(202))
    journal_id, template_id = uuid.uuid4(), uuid.uuid4()

    gateway.request_processing(DispatchRequest(journal_id, template_id, "en"))

    session.post.assert_called_once_with(
        "https://pipeline.test/transcribe",
        json={"journal_id": str(journal_id), "template_id": str(template_id), "language": "en"},
        timeout=3.0,
    )


def test_request_resummarize_uses_its_own_endpoint():
    gateway, session = _gateway(_response(200))
    journal_id = uuid.uuid4()

    gateway.request_resummarize(DispatchRequest(journal_id))

    url = session.post.call_args.args[0]
    assert url == "https://pipeline.test/resummarize"
    assert session.post.call_args.kwargs["json"] == {
        "journal_id": str(journal_id),
        "template_id": None,
        "language": None,
    }


def test_non_2xx_raises_dispatch_failed():
    gateway, _ = _gateway(_response(500, "workflow exploded"))
    journal_id = uuid.uuid4()

    with pytest.raises(PipelineDispatchFailed) as excinfo:
        gateway.request_processing(DispatchRequest(journal_id))

    assert excinfo.value.journal_id == journal_id
    assert "workflow exploded" in str(excinfo.value)


def test_network_error_raises_dispatch_failed():
    gateway, _ = _gateway(error=requests.ConnectionError("connection refused"))

    with pytest.raises(PipelineDispatchFailed, match="connection refused"):
        gateway.request_processing(DispatchRequest(uuid.uuid4()))


def test_missing_endpoint_raises_dispatch_failed():
    session = MagicMock(spec=requests.Session)
    gateway = PipelineGateway(None, None, session=session)

    with pytest.raises(PipelineDispatchFailed):
        gateway.request_resummarize(DispatchRequest(uuid.uuid4()))
    session.post.assert_not_called()


def test_from_settings():
    settings = WorkspaceSettings(
        database_url="sqlite://",
        transcription_webhook_url="https://a.test/t",
        resummarize_webhook_url="https://a.test/r",
        pipeline_timeout=4.0,
    )

    gateway = PipelineGateway.from_settings(settings)

    assert gateway.transcription_url == "https://a.test/t"
    assert gateway.resummarize_url == "https://a.test/r"
    assert gateway.timeout == 4.0
