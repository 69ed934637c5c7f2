"""
Webhook endpoint management: registration, explicit re-enable, delivery log.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from application.dtos.webhooks import RegisterWebhookEndpoint
from core.logging_config import get_logger
from domain.common.exceptions import ForbiddenException, WebhookEndpointNotFoundException
from domain.common.identifiers import generate_id, generate_secret
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.webhook.entity import WebhookDelivery, WebhookEndpoint


logger = get_logger(__name__)


class WebhookEndpointService:
    def __init__(self, uow_factory: Callable[[], AbstractUnitOfWork]) -> None:
        self._uow_factory = uow_factory

    async def register_endpoint(self, merchant_id: str, req: RegisterWebhookEndpoint) -> WebhookEndpoint:
        """创建端点并生成签名密钥（密钥只在创建时返回给调用方）"""
        endpoint = WebhookEndpoint(
            id=generate_id("we_"),
            merchant_id=merchant_id,
            url=str(req.url),
            secret=generate_secret(),
            events=list(dict.fromkeys(req.events)),
            description=req.description,
        )
        async with self._uow_factory() as uow:
            endpoint = await uow.webhook_endpoints.create(endpoint)
        logger.info("webhook_endpoint_registered", endpoint_id=endpoint.id, merchant_id=merchant_id, events=endpoint.events)
        return endpoint

    async def list_endpoints(self, merchant_id: str) -> List[WebhookEndpoint]:
        async with self._uow_factory() as uow:
            return await uow.webhook_endpoints.list_by_merchant(merchant_id)

    async def reactivate_endpoint(self, endpoint_id: str, merchant_id: str) -> WebhookEndpoint:
        async with self._uow_factory() as uow:
            endpoint = await self._get_owned(uow, endpoint_id, merchant_id)
            endpoint.reactivate()
            endpoint = await uow.webhook_endpoints.update(endpoint)
        logger.info("webhook_endpoint_reactivated", endpoint_id=endpoint_id, merchant_id=merchant_id)
        return endpoint

    async def disable_endpoint(self, endpoint_id: str, merchant_id: str) -> WebhookEndpoint:
        async with self._uow_factory() as uow:
            endpoint = await self._get_owned(uow, endpoint_id, merchant_id)
            endpoint.disable()
            endpoint = await uow.webhook_endpoints.update(endpoint)
        logger.info("webhook_endpoint_disabled_by_merchant", endpoint_id=endpoint_id, merchant_id=merchant_id)
        return endpoint

    async def list_deliveries(self, endpoint_id: str, merchant_id: str, limit: int = 50) -> List[WebhookDelivery]:
        async with self._uow_factory() as uow:
            await self._get_owned(uow, endpoint_id, merchant_id)
            return await uow.webhook_deliveries.list_by_endpoint(endpoint_id, limit=limit)

    @staticmethod
    async def _get_owned(uow: AbstractUnitOfWork, endpoint_id: str, merchant_id: str) -> WebhookEndpoint:
        endpoint: Optional[WebhookEndpoint] = await uow.webhook_endpoints.get_by_id(endpoint_id)
        if endpoint is None:
            raise WebhookEndpointNotFoundException(endpoint_id)
        if endpoint.merchant_id != merchant_id:
            raise ForbiddenException()
        return endpoint
