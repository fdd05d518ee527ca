"""
Payments router — GET /v1/payments/{id}, GET /v1/payments/rescue/{rescue_id},
                  POST /v1/payments/{id}/charge, POST /v1/payments/{id}/refund
"""
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from rescue_dispatch.dependencies import get_payment_service
from rescue_dispatch.errors import NotFoundError
from rescue_dispatch.middleware.auth import Principal, get_principal, require_roles
from rescue_dispatch.middleware.idempotency import check_idempotency, store_idempotency_result
from rescue_dispatch.models.payment import PaymentRecord
from rescue_dispatch.redis_client import get_redis
from rescue_dispatch.schemas.schemas import ChargeRequest, PaymentResponse, RefundRequest
from rescue_dispatch.services.payments import PaymentService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


def _ensure_party(payment: PaymentRecord, principal: Principal) -> None:
    if principal.role in ("admin", "system"):
        return
    if principal.id in (payment.rider_id, payment.driver_id):
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to access this payment")


@router.get("/rescue/{rescue_id}", response_model=PaymentResponse)
async def get_rescue_payment(
    rescue_id: str,
    payments: PaymentService = Depends(get_payment_service),
    principal: Principal = Depends(get_principal),
):
    payment = await payments.get_for_rescue(rescue_id)
    if payment is None:
        raise NotFoundError("Payment for rescue", rescue_id)
    _ensure_party(payment, principal)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    payments: PaymentService = Depends(get_payment_service),
    principal: Principal = Depends(get_principal),
):
    payment = await payments.get(payment_id)
    _ensure_party(payment, principal)
    return PaymentResponse.model_validate(payment)


@router.post("/{payment_id}/charge", response_model=PaymentResponse)
async def charge_payment(
    payment_id: str,
    payload: ChargeRequest,
    request: Request,
    payments: PaymentService = Depends(get_payment_service),
    redis: aioredis.Redis = Depends(get_redis),
    principal: Principal = Depends(require_roles("rider", "admin", "system")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Charge the server-side amount of a completed rescue.
    - Idempotent: repeated calls with the same key return the same result.
    - A payment already succeeded is returned as-is; the PSP is not called again.
    """
    # 1. Idempotency check
    if idempotency_key:
        cached = await check_idempotency(request, redis, scope=f"charge:{payment_id}")
        if cached:
            return cached

    # 2. Only the paying rider (or the platform) may trigger a charge
    payment = await payments.get(payment_id)
    if principal.role == "rider" and payment.rider_id != principal.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to charge this payment")

    # 3. Charge PSP (retries inside the gateway)
    payment = await payments.process_charge(payment_id, payload.payment_method)
    response = PaymentResponse.model_validate(payment)

    if idempotency_key:
        await store_idempotency_result(
            redis, f"charge:{payment_id}", idempotency_key, 200, response.model_dump(mode="json")
        )
    return response


@router.post("/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    payments: PaymentService = Depends(get_payment_service),
    principal: Principal = Depends(require_roles("admin")),
):
    payment = await payments.refund(payment_id, payload.amount, payload.reason)
    return PaymentResponse.model_validate(payment)
