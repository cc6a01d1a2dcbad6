"""
HTTP upstream source tests against a stub aiohttp session.
"""

from datetime import date
from types import SimpleNamespace

import aiohttp
import pytest

from attendance_sync.errors import FatalSyncError, RetryableSyncError, UpstreamError, is_retryable
from attendance_sync.ingestion import HttpUpstreamSource


class StubResponse:
    def __init__(self, status=200, payload=None, body=""):
        self.status = status
        self._payload = payload
        self._body = body

    async def json(self, content_type=None):
        return self._payload

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class StubSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append({"url": url, "params": params, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


async def fetch(source, scope="001", offset=0):
    return await source.fetch_records(date(2024, 1, 1), date(2024, 1, 31), scope, limit=500, offset=offset)


class TestHttpUpstreamSource:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        session = StubSession(StubResponse(payload={"success": True, "data": []}))
        source = HttpUpstreamSource(session, "https://sis.example.org/api/", timeout=12.0)

        await fetch(source, offset=500)

        request = session.requests[0]
        assert request["url"] == "https://sis.example.org/api/attendance/daterange"
        assert request["params"] == {
            "startDate": "2024-01-01",
            "endDate": "2024-01-31",
            "limit": 500,
            "offset": 500,
            "schoolCode": "001",
        }
        assert isinstance(request["timeout"], aiohttp.ClientTimeout)
        assert request["timeout"].total == 12.0

    @pytest.mark.asyncio
    async def test_no_scope_no_school_code(self):
        session = StubSession(StubResponse(payload=[]))
        source = HttpUpstreamSource(session, "https://sis.example.org")

        await fetch(source, scope=None)

        assert "schoolCode" not in session.requests[0]["params"]

    @pytest.mark.asyncio
    async def test_envelope_payload(self):
        payload = {
            "success": True,
            "data": [{"studentId": "S1"}],
            "pagination": {"hasMore": False},
        }
        source = HttpUpstreamSource(StubSession(StubResponse(payload=payload)), "https://sis.example.org")

        response = await fetch(source)

        assert response.success
        assert response.data == [{"studentId": "S1"}]
        assert response.pagination == {"hasMore": False}

    @pytest.mark.asyncio
    async def test_bare_list_payload(self):
        source = HttpUpstreamSource(
            StubSession(StubResponse(payload=[{"studentId": "S1"}])), "https://sis.example.org"
        )

        response = await fetch(source)

        assert response.success
        assert len(response.data) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(503, True), (429, True), (401, False), (404, False)])
    async def test_http_errors_carry_status(self, status, retryable):
        source = HttpUpstreamSource(
            StubSession(StubResponse(status=status, body="nope")), "https://sis.example.org"
        )

        with pytest.raises(UpstreamError) as exc_info:
            await fetch(source)

        assert exc_info.value.status == status
        assert is_retryable(exc_info.value) is retryable

    @pytest.mark.asyncio
    async def test_server_disconnect_is_retryable(self):
        source = HttpUpstreamSource(
            StubSession(error=aiohttp.ServerDisconnectedError()), "https://sis.example.org"
        )

        with pytest.raises(RetryableSyncError):
            await fetch(source)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            aiohttp.ClientPayloadError("Response payload is not completed"),
            aiohttp.ClientOSError(104, "Connection reset by peer"),
        ],
    )
    async def test_transport_errors_are_retryable(self, error):
        source = HttpUpstreamSource(StubSession(error=error), "https://sis.example.org")

        with pytest.raises(RetryableSyncError) as exc_info:
            await fetch(source)

        assert is_retryable(exc_info.value)
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_connect_failure_is_fatal(self):
        error = aiohttp.ClientConnectorError(
            SimpleNamespace(host="sis.example.org", port=443, ssl=True),
            ConnectionRefusedError(111, "Connection refused"),
        )
        source = HttpUpstreamSource(StubSession(error=error), "https://sis.example.org")

        with pytest.raises(FatalSyncError):
            await fetch(source)
