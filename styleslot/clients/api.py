from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from styleslot.services.exceptions import (
    DownstreamServiceError,
    NetworkError,
    PermissionDeniedError,
)

logger = logging.getLogger(__name__)


def extract_error_reason(response: httpx.Response, default: str) -> str:
    """Return the reason string the backend attached to an error response."""

    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text or default

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            return ", ".join(str(item) for item in errors)
        if isinstance(errors, dict) and errors:
            return ", ".join(
                f"{field} {message}"
                for field, messages in errors.items()
                for message in (messages if isinstance(messages, list) else [messages])
            )
        message = body.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    elif isinstance(body, str) and body.strip():
        return body.strip()
    return default


class BackendClient:
    """Async HTTP client responsible for communicating with the booking backend."""

    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float = 10.0,
        use_mock_data: bool = True,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = str(base_url).rstrip("/") if base_url else None
        self._timeout = timeout
        self.use_mock_data = use_mock_data or not self._base_url
        self.token = token
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        if not self.use_mock_data and self._base_url:
            self._client = self._build_client()

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self.use_mock_data or not self._base_url:
            raise RuntimeError("HTTP client requested while running in mock mode")
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Dict[str, Any] | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        if self.use_mock_data:
            raise RuntimeError("Real HTTP call requested while mock mode is enabled")
        client = await self._ensure_client()
        if params:
            params = {key: value for key, value in params.items() if value is not None}
        try:
            logger.debug("%s %s params=%s payload=%s", method, path, params, payload)
            response = await client.request(method, path, params=params or None, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            reason = extract_error_reason(exc.response, "Booking service returned an error response")
            logger.warning("Booking service returned %s for %s %s: %s", status, method, path, reason)
            error_cls = PermissionDeniedError if status in (401, 403) else DownstreamServiceError
            raise error_cls(
                "Booking service returned an error response",
                status_code=status,
                reason=reason,
                cause=exc,
            ) from exc
        except httpx.RequestError as exc:
            logger.exception("Unable to reach booking service: %s", exc)
            raise NetworkError(
                "Unable to reach booking service", status_code=None, cause=exc
            ) from exc

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise DownstreamServiceError(
                "Booking service returned a malformed response",
                status_code=response.status_code,
                cause=exc,
            ) from exc
        return data if isinstance(data, dict) else {"data": data}

    async def get(
        self, path: str, params: Dict[str, Any] | None = None
    ) -> Dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def post(self, path: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        return await self._request("POST", path, payload=payload)

    async def patch(self, path: str, payload: Dict[str, Any] | None = None) -> Dict[str, Any]:
        return await self._request("PATCH", path, payload=payload)

    async def delete(self, path: str) -> Dict[str, Any]:
        return await self._request("DELETE", path)

    async def simulate_latency(self) -> None:
        """Allow services to await for latency even when mocking responses."""

        await asyncio.sleep(0)
