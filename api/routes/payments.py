"""
Payments API routes.

Thin layer over PaymentApplicationService: no gateway or SDK details here.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.middleware import get_client_ip
from api.dependencies import (
    get_current_caller,
    get_current_superuser,
    get_payment_service,
)
from application.dtos.payments import (
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentDTO,
    PaymentTransactionDTO,
    RefundPaymentRequest,
    RefundPaymentResponse,
)
from application.ports.identity import CallerIdentity
from application.services.payment_service import PaymentApplicationService
from core.config import settings
from core.response import PaginatedData, Response as ApiResponse, paginated_response, success_response


router = APIRouter(prefix="/payment", tags=["Payments"])


@router.post("/initiate", summary="Initiate payment", response_model=ApiResponse[InitiatePaymentResponse])
async def initiate_payment(
    payload: InitiatePaymentRequest,
    request: Request,
    caller: CallerIdentity = Depends(get_current_caller),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    """
    Start a payment attempt for an order.

    Depending on the gateway the response carries a `client_secret` (card),
    an `approval_url` (wallet) or an `action_url` plus signed `payment_data`
    (hash checkout form).
    """
    result = await service.initiate(
        caller,
        payload,
        ip_address=get_client_ip(),
        user_agent=request.headers.get("user-agent"),
    )
    return success_response(data=result, message="Payment initiated")


@router.post("/confirm", summary="Confirm payment", response_model=ApiResponse[ConfirmPaymentResponse])
async def confirm_payment(
    payload: ConfirmPaymentRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.confirm(caller, payload)
    return success_response(data=result)


@router.get("/status/{payment_id}", summary="Payment status", response_model=ApiResponse[PaymentDTO])
async def payment_status(
    payment_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    return success_response(data=await service.status(caller, payment_id))


@router.get("/history", summary="Payment history", response_model=ApiResponse[PaginatedData[PaymentDTO]])
async def payment_history(
    page: int = Query(1, ge=1),
    size: Optional[int] = Query(None, ge=1, le=settings.MAX_PAGE_SIZE),
    caller: CallerIdentity = Depends(get_current_caller),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    size = size or settings.DEFAULT_PAGE_SIZE
    items, total = await service.history(caller, page=page, size=size)
    return paginated_response(items=items, total=total, page=page, size=size)


@router.get(
    "/{payment_id}/transactions",
    summary="Payment ledger",
    response_model=ApiResponse[list[PaymentTransactionDTO]],
)
async def payment_transactions(
    payment_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    return success_response(data=await service.transactions(caller, payment_id))


@router.post(
    "/{payment_id}/refund",
    summary="Refund payment (admin)",
    response_model=ApiResponse[RefundPaymentResponse],
)
async def refund_payment(
    payment_id: str,
    payload: RefundPaymentRequest,
    admin: CallerIdentity = Depends(get_current_superuser),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.refund(admin, payment_id, payload)
    return success_response(data=result, message="Refund accepted")
