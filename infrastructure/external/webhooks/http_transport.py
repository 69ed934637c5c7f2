"""
httpx-based WebhookTransport.

Timeouts come from ``payment_settings.webhook.timeouts``. Only connection
failures are retried here (tenacity), since the request never reached the
receiver; any other outcome is reported back to the dispatcher as-is.
"""
from __future__ import annotations

from typing import Mapping, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from application.ports.webhook_transport import WebhookTransportError
from core.logging_config import get_logger
from core.settings import WebhookSettings, payment_settings


logger = get_logger(__name__)


class HttpxWebhookTransport:
    def __init__(
        self,
        settings: Optional[WebhookSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or payment_settings.webhook
        timeouts = self._settings.timeouts
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=timeouts.connect,
                read=timeouts.read,
                write=timeouts.write,
                pool=timeouts.connect,
            ),
            follow_redirects=False,
            transport=transport,
        )

    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> int:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.connect_retries + 1),
                wait=wait_exponential(multiplier=self._settings.connect_retry_backoff, max=2),
                retry=retry_if_exception_type(httpx.ConnectError),
                reraise=True,
            ):
                with attempt:
                    resp = await self._client.post(url, content=body, headers=dict(headers))
                    return resp.status_code
        except httpx.TimeoutException as exc:
            raise WebhookTransportError(f"timeout: {exc.__class__.__name__}") from exc
        except httpx.HTTPError as exc:
            logger.debug("webhook_http_error", url=url, error=str(exc))
            raise WebhookTransportError(f"network error: {exc.__class__.__name__}") from exc
        raise WebhookTransportError("no attempt was made")  # pragma: no cover

    async def aclose(self) -> None:
        await self._client.aclose()
