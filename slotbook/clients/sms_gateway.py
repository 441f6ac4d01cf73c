from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from slotbook.services.exceptions import DownstreamServiceError
from slotbook.services.mock_store import OutboxRepository

logger = logging.getLogger(__name__)


class SmsGatewayClient:
    """Async HTTP client that delivers customer text messages.

    In mock mode nothing leaves the process: messages are recorded in the
    in-memory outbox so they can be inspected from tests and debug views.
    """

    def __init__(
        self,
        base_url: str | None,
        *,
        outbox: OutboxRepository | None = None,
        timeout: float = 10.0,
        use_mock_data: bool = True,
        token: str | None = None,
    ) -> None:
        self._base_url = str(base_url).rstrip("/") if base_url else None
        self._timeout = timeout
        self._outbox = outbox
        self.use_mock_data = use_mock_data or not self._base_url
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._client: Optional[httpx.AsyncClient] = None

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers,
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

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._ensure_client()
        try:
            response = await client.post(path, json=payload)
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.HTTPStatusError as exc:
            logger.exception("SMS gateway returned error %s", exc.response.status_code)
            raise DownstreamServiceError(
                "SMS gateway returned an error response",
                status_code=exc.response.status_code,
                cause=exc,
            ) from exc
        except httpx.RequestError as exc:
            logger.exception("Unable to reach SMS gateway: %s", exc)
            raise DownstreamServiceError(
                "Unable to reach SMS gateway", status_code=None, cause=exc
            ) from exc

    async def send(self, contact: str, message: str, *, kind: str | None = None) -> bool:
        if self.use_mock_data:
            if self._outbox is None:
                logger.info("SMS to %s (%s): %s", contact, kind or "message", message)
                return True
            record = await self._outbox.record(contact, message, kind=kind)
            logger.info("SMS %s queued in mock outbox for %s", record.notification_id, contact)
            return True

        try:
            await self._post("/messages", {"to": contact, "body": message, "kind": kind})
        except DownstreamServiceError:
            return False
        return True
