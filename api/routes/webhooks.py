"""
Gateway webhook routes.

The body is read raw, before any decoding, because signatures are computed
over the exact bytes the gateway sent.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_webhook_service
from application.dtos.payments import WebhookAck
from application.services.webhook_service import WebhookIngestionService
from core.response import Response as ApiResponse, success_response
from domain.payment.entity import PaymentMethod


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{provider}", summary="Gateway webhook", response_model=ApiResponse[WebhookAck])
async def gateway_webhook(
    provider: PaymentMethod,
    request: Request,
    service: WebhookIngestionService = Depends(get_webhook_service),
):
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    ack = await service.handle(provider, raw_body, headers)
    return success_response(data=ack, message="Webhook received")
