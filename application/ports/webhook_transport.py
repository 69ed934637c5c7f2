"""
Webhook transport port (application/ports).

The dispatcher only needs "POST these bytes, tell me the status code".
Infrastructure provides the httpx adapter; tests plug in a MockTransport.
"""
from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable


class WebhookTransportError(Exception):
    """请求未得到任何 HTTP 响应（超时、连接失败等）"""


@runtime_checkable
class WebhookTransport(Protocol):

    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> int:
        """Send one webhook request and return the HTTP status code.

        Raises:
            WebhookTransportError: no response was received.
        """
        ...

    async def aclose(self) -> None: ...
