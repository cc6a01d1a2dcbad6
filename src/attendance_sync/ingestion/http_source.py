"""
aiohttp-backed upstream source.

Wraps a pre-authenticated ``aiohttp.ClientSession`` and exposes the
``fetch_records`` protocol. HTTP failures are surfaced as errors carrying a
status code so the retry layer can classify them.
"""

import logging
from datetime import date
from typing import Any

import aiohttp

from ..errors import FatalSyncError, RetryableSyncError, UpstreamError
from ..interfaces import FetchResponse

logger = logging.getLogger(__name__)

DEFAULT_ATTENDANCE_PATH = "/attendance/daterange"


class HttpUpstreamSource:
    """Upstream source speaking the student-information HTTP API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str,
        path: str = DEFAULT_ATTENDANCE_PATH,
        timeout: float = 30.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.path = path if path.startswith("/") else f"/{path}"
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"

    def build_params(
        self, start: date, end: date, scope: str | None, limit: int, offset: int
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "startDate": start.isoformat(),
            "endDate": end.isoformat(),
            "limit": limit,
            "offset": offset,
        }
        if scope:
            params["schoolCode"] = scope
        return params

    async def fetch_records(
        self,
        start: date,
        end: date,
        scope: str | None,
        *,
        limit: int,
        offset: int,
    ) -> FetchResponse:
        params = self.build_params(start, end, scope, limit, offset)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with self.session.get(self.url, params=params, timeout=timeout) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    logger.warning(
                        "Upstream returned HTTP %d for %s (offset=%d)",
                        response.status,
                        self.path,
                        offset,
                    )
                    raise UpstreamError(
                        f"Upstream request failed with HTTP {response.status}: {body[:200]}",
                        status=response.status,
                    )
                payload = await response.json(content_type=None)
        except aiohttp.ServerDisconnectedError as e:
            raise RetryableSyncError(f"Upstream disconnected: {e}") from e
        except aiohttp.ClientConnectorError as e:
            # Refused connections, DNS and certificate failures happen at connect time.
            raise FatalSyncError(f"Cannot connect to upstream {self.base_url}: {e}") from e
        except aiohttp.ClientError as e:
            # Resets, truncated payloads and other transport errors mid-request.
            raise RetryableSyncError(f"Upstream request failed: {type(e).__name__}: {e}") from e

        return self._to_response(payload)

    @staticmethod
    def _to_response(payload: Any) -> FetchResponse:
        if isinstance(payload, list):
            return FetchResponse(success=True, data=payload)
        if not isinstance(payload, dict):
            return FetchResponse(success=False, error="Unexpected upstream payload")
        return FetchResponse(
            success=bool(payload.get("success", True)),
            data=list(payload.get("data") or []),
            pagination=payload.get("pagination"),
            error=payload.get("error"),
            status=payload.get("status"),
        )
