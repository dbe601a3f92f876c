# =============================================================================
# tests/unit/test_remote_service.py
# Unit Tests for RemoteDataService
# =============================================================================

import json
from unittest.mock import MagicMock

import pytest
import requests

from madrasa_core.errors import PermanentRequestFailure, TransientNetworkFailure
from madrasa_core.offline import RemoteConfig, RemoteDataService


def make_response(status_code=200, body=None):
    """Build a mocked requests.Response"""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.ok = status_code < 400
    if body is None:
        response.content = b""
        response.text = ""
        response.json.side_effect = ValueError("no body")
    else:
        text = json.dumps(body)
        response.content = text.encode()
        response.text = text
        response.json.return_value = body
    return response


@pytest.fixture
def session():
    mock_session = MagicMock()
    mock_session.headers = {}
    return mock_session


@pytest.fixture
def service(session):
    config = RemoteConfig(base_url="http://madrasa.test/", timeout=7.0,
                          headers={"Cookie": "session=abc"})
    return RemoteDataService(config, session=session)


class TestRequests:
    """Test URL building and request payloads"""

    def test_headers_applied_to_session(self, service, session):
        assert session.headers["Content-Type"] == "application/json"
        assert session.headers["Cookie"] == "session=abc"

    def test_create_posts_to_collection(self, service, session):
        session.request.return_value = make_response(201, {"id": 12, "reason": "fever"})

        created = service.create("leaves", {"reason": "fever"})

        assert created == {"id": 12, "reason": "fever"}
        session.request.assert_called_once_with(
            method="POST",
            url="http://madrasa.test/api/leaves",
            json={"reason": "fever"},
            timeout=7.0,
        )

    def test_update_and_delete_address_record(self, service, session):
        session.request.side_effect = [make_response(200, {"id": 4}), make_response(204)]

        service.update("students", 4, {"name": "Bilal"})
        service.delete("students", 4)

        urls = [c.kwargs["url"] for c in session.request.call_args_list]
        methods = [c.kwargs["method"] for c in session.request.call_args_list]
        assert urls == ["http://madrasa.test/api/students/4"] * 2
        assert methods == ["PUT", "DELETE"]

    def test_fetch_all_accepts_list_or_envelope(self, service, session):
        session.request.side_effect = [
            make_response(200, [{"id": 1}]),
            make_response(200, {"data": [{"id": 2}]}),
        ]

        assert service.fetch_all("students") == [{"id": 1}]
        assert service.fetch_all("students") == [{"id": 2}]


class TestFailureClassification:
    """Test transient vs permanent failures"""

    def test_connection_error_is_transient(self, service, session):
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(TransientNetworkFailure) as exc_info:
            service.fetch_all("students")
        assert exc_info.value.code == "NET_001"

    def test_timeout_is_transient(self, service, session):
        session.request.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(TransientNetworkFailure):
            service.create("leaves", {})

    def test_server_error_is_transient(self, service, session):
        session.request.return_value = make_response(503)

        with pytest.raises(TransientNetworkFailure) as exc_info:
            service.update("leaves", 3, {})
        assert exc_info.value.status_code == 503

    def test_client_error_is_permanent(self, service, session):
        session.request.return_value = make_response(
            400, {"error": "validation_error", "message": "toDate is before fromDate"}
        )

        with pytest.raises(PermanentRequestFailure) as exc_info:
            service.create("leaves", {"fromDate": "2025-02-02", "toDate": "2025-02-01"})

        error = exc_info.value
        assert error.status_code == 400
        assert error.error == "validation_error"
        assert error.message == "toDate is before fromDate"

    def test_client_error_without_json_body(self, service, session):
        response = make_response(404)
        response.text = "Not Found"
        session.request.return_value = response

        with pytest.raises(PermanentRequestFailure) as exc_info:
            service.delete("leaves", 99)
        assert exc_info.value.message == "Not Found"

    def test_non_object_record_body_is_permanent(self, service, session):
        session.request.return_value = make_response(201, ["ok"])

        with pytest.raises(PermanentRequestFailure) as exc_info:
            service.create("leaves", {"reason": "fever"})
        assert exc_info.value.error == "invalid_response"

    def test_empty_update_body_is_accepted(self, service, session):
        session.request.return_value = make_response(204)

        assert service.update("leaves", 3, {"reason": "flu"}) == {}
