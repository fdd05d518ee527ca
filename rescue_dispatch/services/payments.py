"""
Payment projection for completed rescues plus the PSP adapter.

PaymentRecord moves through
    pending -> processing -> succeeded | failed
    succeeded -> refunded
and every move is a conditional update on the current status, so a retried
`charge-customer` job can never charge twice or flip a refunded payment back.

The PSP is reached over httpx with up to `psp_max_attempts` tries and
exponential backoff. Without a `PSP_API_KEY` the gateway runs as a stub that
approves every positive amount (local development and tests).
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import httpx
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rescue_dispatch.concurrency import conditional_update
from rescue_dispatch.config import Settings, get_settings
from rescue_dispatch.domain.quote import to_money
from rescue_dispatch.domain.rescue import RescueRequest
from rescue_dispatch.errors import (
    NotFoundError,
    StateConflictError,
    UpstreamUnavailableError,
    ValidationError,
)
from rescue_dispatch.models.payment import PaymentRecord
from rescue_dispatch.services.jobs import JobScheduler, JobType
from rescue_dispatch.services.notifications import NotificationEvent, NotificationGateway

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class PSPError(Exception):
    """Retryable PSP failure (network, timeout, 5xx)."""


class GatewayResult(BaseModel):
    success: bool
    psp_ref: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


def _to_cents(amount: Decimal) -> int:
    return int(to_money(amount) * 100)


class PaymentGateway:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay_seconds: float = 1.0,
    ):
        self.settings = settings or get_settings()
        self.transport = transport
        self.retry_delay_seconds = retry_delay_seconds

    @property
    def is_stub(self) -> bool:
        return not self.settings.psp_api_key and self.transport is None

    async def charge(self, amount: Decimal, payer_ref: Optional[str], idempotency_key: str) -> GatewayResult:
        if amount <= 0:
            return GatewayResult(success=False, failure_code="invalid_amount", failure_message="Amount must be positive")
        data = {
            "amount": _to_cents(amount),
            "currency": self.settings.currency.lower(),
            "source": payer_ref or "",
        }
        result = await self._with_retry("/charges", data, idempotency_key)
        if result.success:
            logger.info("PSP charge success: ref=%s amount=%s", result.psp_ref, amount)
        return result

    async def refund(self, charge_ref: str, amount: Decimal, idempotency_key: str) -> GatewayResult:
        data = {"charge": charge_ref, "amount": _to_cents(amount)}
        result = await self._with_retry("/refunds", data, idempotency_key)
        if result.success:
            logger.info("PSP refund success: ref=%s amount=%s", result.psp_ref, amount)
        return result

    async def _with_retry(self, path: str, data: dict[str, Any], idempotency_key: str) -> GatewayResult:
        attempts = self.settings.psp_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._call_psp(path, data, idempotency_key)
            except PSPError as exc:
                if attempt == attempts:
                    logger.error("PSP %s failed after %d attempts: %s", path, attempts, exc)
                    return GatewayResult(success=False, failure_code="psp_unavailable", failure_message=str(exc))
                wait = self.retry_delay_seconds * 2 ** (attempt - 1)
                logger.warning("PSP %s attempt %d failed, retrying in %.1fs: %s", path, attempt, wait, exc)
                await asyncio.sleep(wait)
        return GatewayResult(success=False, failure_code="psp_unavailable")

    async def _call_psp(self, path: str, data: dict[str, Any], idempotency_key: str) -> GatewayResult:
        if self.is_stub:
            return GatewayResult(success=True, psp_ref=f"PSP-{uuid.uuid4().hex[:12].upper()}")

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.psp_base_url,
                timeout=self.settings.psp_timeout_seconds,
                transport=self.transport,
            ) as client:
                resp = await client.post(
                    path,
                    headers={
                        "Authorization": f"Bearer {self.settings.psp_api_key}",
                        "Idempotency-Key": idempotency_key,
                    },
                    data=data,
                )
        except httpx.HTTPError as exc:
            raise PSPError(f"PSP transport error: {exc}") from exc

        if resp.status_code >= 500:
            raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
        body = resp.json()
        if resp.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            return GatewayResult(
                success=False,
                failure_code=error.get("code") or f"http_{resp.status_code}",
                failure_message=error.get("message") or resp.text,
            )
        return GatewayResult(success=True, psp_ref=body["id"])


class PaymentService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        scheduler: Optional[JobScheduler] = None,
        notifier: Optional[NotificationGateway] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.gateway = gateway or PaymentGateway(self.settings)
        self.scheduler = scheduler
        self.notifier = notifier

    async def get(self, payment_id: str) -> PaymentRecord:
        payment = await self.db.get(PaymentRecord, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def get_for_rescue(self, rescue_id: str) -> Optional[PaymentRecord]:
        result = await self.db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.rescue_id == rescue_id)
            .order_by(PaymentRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_for_rescue(self, rescue: RescueRequest) -> PaymentRecord:
        """Pending record for a completed rescue. Flushed, not committed."""
        pricing = rescue.pricing
        payment = PaymentRecord(
            id=str(uuid.uuid4()),
            rescue_id=rescue.id,
            rider_id=rescue.rider_id,
            driver_id=rescue.driver_id,
            amount=pricing.total,
            currency=pricing.currency,
            status=PaymentStatus.PENDING.value,
            subtotal=pricing.subtotal,
            discount=pricing.discount,
            platform_fee=pricing.platform_fee,
            total=pricing.total,
            driver_payout=pricing.driver_payout,
            idempotency_key=f"charge-{rescue.id}",
        )
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def _move(
        self,
        payment_id: str,
        expected: tuple[PaymentStatus, ...],
        values: dict[str, Any],
    ) -> Optional[PaymentRecord]:
        return await conditional_update(
            self.db,
            PaymentRecord,
            payment_id,
            [PaymentRecord.status.in_([s.value for s in expected])],
            values,
        )

    async def process_charge(self, payment_id: str, payer_ref: Optional[str] = None) -> PaymentRecord:
        """
        Charge a pending payment. Safe to retry: a payment that already left
        `pending` is returned as-is when succeeded and rejected otherwise.
        """
        claimed = await self._move(
            payment_id, (PaymentStatus.PENDING,), {"status": PaymentStatus.PROCESSING.value}
        )
        if claimed is None:
            await self.db.rollback()
            current = await self.get(payment_id)
            if current.status == PaymentStatus.SUCCEEDED.value:
                return current
            raise StateConflictError(f"Payment is {current.status}, cannot charge", current)
        await self.db.commit()

        result = await self.gateway.charge(claimed.amount, payer_ref, claimed.idempotency_key or payment_id)
        if result.success:
            return await self.mark_succeeded(payment_id, result.psp_ref)
        return await self.mark_failed(payment_id, result.failure_code, result.failure_message)

    async def mark_succeeded(self, payment_id: str, psp_ref: Optional[str]) -> PaymentRecord:
        payment = await self._move(
            payment_id,
            (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
            {
                "status": PaymentStatus.SUCCEEDED.value,
                "psp_ref": psp_ref,
                "processed_at": datetime.now(timezone.utc),
            },
        )
        if payment is None:
            await self.db.rollback()
            current = await self.get(payment_id)
            raise StateConflictError(f"Payment is {current.status}, cannot succeed", current)
        await self.db.commit()
        logger.info("Payment %s succeeded ref=%s amount=%s", payment_id, psp_ref, payment.amount)

        if self.scheduler is not None and payment.driver_id:
            await self.scheduler.enqueue(
                JobType.PAYOUT_DUE,
                {
                    "payment_id": payment.id,
                    "driver_id": payment.driver_id,
                    "amount": str(payment.driver_payout),
                },
            )
        if self.notifier is not None:
            await self.notifier.notify(
                payment.rider_id,
                NotificationEvent.PAYMENT_SUCCEEDED,
                {"rescue_id": payment.rescue_id, "amount": str(payment.amount)},
            )
        return payment

    async def mark_failed(
        self,
        payment_id: str,
        failure_code: Optional[str],
        failure_message: Optional[str],
    ) -> PaymentRecord:
        payment = await self._move(
            payment_id,
            (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
            {
                "status": PaymentStatus.FAILED.value,
                "failure_code": failure_code,
                "failure_message": failure_message,
                "processed_at": datetime.now(timezone.utc),
            },
        )
        if payment is None:
            await self.db.rollback()
            current = await self.get(payment_id)
            raise StateConflictError(f"Payment is {current.status}, cannot fail", current)
        await self.db.commit()
        logger.warning("Payment %s failed code=%s: %s", payment_id, failure_code, failure_message)

        if self.notifier is not None:
            await self.notifier.notify(
                payment.rider_id,
                NotificationEvent.PAYMENT_FAILED,
                {"rescue_id": payment.rescue_id, "reason": failure_message},
            )
        return payment

    async def refund(
        self,
        payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> PaymentRecord:
        payment = await self.get(payment_id)
        if payment.status != PaymentStatus.SUCCEEDED.value:
            raise StateConflictError(f"Payment is {payment.status}, cannot refund", payment)
        refund_amount = to_money(amount if amount is not None else payment.amount)
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise ValidationError(
                "Refund amount must be positive and at most the charged amount",
                {"amount": str(refund_amount), "charged": str(payment.amount)},
            )

        result = await self.gateway.refund(payment.psp_ref or "", refund_amount, f"refund-{payment_id}")
        if not result.success:
            raise UpstreamUnavailableError(
                "Refund failed at payment provider",
                {"code": result.failure_code or "unknown"},
            )

        refunded = await self._move(
            payment_id,
            (PaymentStatus.SUCCEEDED,),
            {
                "status": PaymentStatus.REFUNDED.value,
                "refund_amount": refund_amount,
                "refund_reason": reason,
                "refund_ref": result.psp_ref,
                "refunded_at": datetime.now(timezone.utc),
            },
        )
        if refunded is None:
            await self.db.rollback()
            current = await self.get(payment_id)
            raise StateConflictError("Payment was refunded concurrently", current)
        await self.db.commit()
        logger.info("Payment %s refunded amount=%s", payment_id, refund_amount)

        if self.notifier is not None:
            await self.notifier.notify(
                refunded.rider_id,
                NotificationEvent.PAYMENT_REFUNDED,
                {"rescue_id": refunded.rescue_id, "amount": str(refund_amount)},
            )
        return refunded
