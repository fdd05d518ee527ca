"""
Integration tests for payments (PSP adapter with retries, charge / refund
state moves) and the job dispatcher that the external scheduler drives.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from rescue_dispatch.domain.rescue import RescueStatus
from rescue_dispatch.errors import StateConflictError, ValidationError
from rescue_dispatch.services.jobs import JobScheduler, JobType, RetryPolicy
from rescue_dispatch.services.lifecycle import RescueLifecycle
from rescue_dispatch.services.payments import PaymentGateway, PaymentService
from rescue_dispatch.workers import JobDispatcher
from tests.factories import SF_DROPOFF, SF_PICKUP, add_driver, flat_tire

QUIET_HOUR = datetime(2026, 10, 14, 11, 0, tzinfo=timezone.utc)


async def completed_payment_id(db, settings, redis, scheduler, notifier, final_price="30.00") -> str:
    driver = await add_driver(db)
    lifecycle = RescueLifecycle(db, redis, settings, scheduler=scheduler, notifier=notifier)
    rescue = await lifecycle.create("rider-1", SF_PICKUP, SF_DROPOFF, flat_tire(), now=QUIET_HOUR)
    await lifecycle.accept(rescue.id, driver.id)
    for status in (RescueStatus.EN_ROUTE, RescueStatus.ARRIVED, RescueStatus.IN_PROGRESS):
        await lifecycle.transition_to(rescue.id, status, actor=driver.id)
    outcome = await lifecycle.complete(rescue.id, Decimal(final_price), actor=driver.id)
    return outcome.payment_id


def live_gateway(settings, handler) -> PaymentGateway:
    psp_settings = settings.model_copy(update={"psp_api_key": "sk_test_123"})
    return PaymentGateway(psp_settings, transport=httpx.MockTransport(handler), retry_delay_seconds=0)


@pytest.mark.asyncio
class TestPaymentGateway:
    async def test_stub_approves_positive_amounts(self, settings):
        gateway = PaymentGateway(settings)
        assert gateway.is_stub
        result = await gateway.charge(Decimal("30.00"), "pm_card", "charge-r1")
        assert result.success
        assert result.psp_ref.startswith("PSP-")

    async def test_non_positive_amount_rejected(self, settings):
        result = await PaymentGateway(settings).charge(Decimal("0"), None, "charge-r1")
        assert not result.success
        assert result.failure_code == "invalid_amount"

    async def test_retries_server_errors_then_succeeds(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(502, text="bad gateway")
            return httpx.Response(200, json={"id": "ch_123"})

        result = await live_gateway(settings, handler).charge(Decimal("30.00"), "pm_card", "charge-r1")

        assert result.success
        assert result.psp_ref == "ch_123"
        assert len(calls) == 3
        assert calls[0].headers["Idempotency-Key"] == "charge-r1"
        assert calls[0].headers["Authorization"] == "Bearer sk_test_123"
        assert b"amount=3000" in calls[0].content

    async def test_card_decline_is_not_retried(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(402, json={"error": {"code": "card_declined", "message": "Card was declined"}})

        result = await live_gateway(settings, handler).charge(Decimal("30.00"), "pm_card", "charge-r1")

        assert not result.success
        assert result.failure_code == "card_declined"
        assert len(calls) == 1

    async def test_gives_up_after_max_attempts(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        result = await live_gateway(settings, handler).charge(Decimal("30.00"), "pm_card", "charge-r1")

        assert not result.success
        assert result.failure_code == "psp_unavailable"
        assert len(calls) == settings.psp_max_attempts


@pytest.mark.asyncio
class TestPaymentService:
    async def test_charge_then_partial_refund(self, db, settings, redis_down, scheduler, notifier):
        payment_id = await completed_payment_id(db, settings, redis_down, scheduler, notifier)
        service = PaymentService(db, PaymentGateway(settings), scheduler, notifier, settings)

        charged = await service.process_charge(payment_id, "pm_card")
        assert charged.status == "succeeded"
        assert charged.psp_ref.startswith("PSP-")
        payouts = [c for c in scheduler.enqueue.await_args_list if c.args[0] == JobType.PAYOUT_DUE]
        assert payouts[0].args[1]["amount"] == "24.00"

        # Replaying the charge returns the settled payment without a second PSP call
        replay = await service.process_charge(payment_id, "pm_card")
        assert replay.status == "succeeded"
        assert replay.psp_ref == charged.psp_ref

        refunded = await service.refund(payment_id, Decimal("10.00"), reason="Late arrival")
        assert refunded.status == "refunded"
        assert refunded.refund_amount == Decimal("10.00")

        with pytest.raises(StateConflictError):
            await service.refund(payment_id)

    async def test_declined_charge_marks_failed(self, db, settings, redis_down, scheduler, notifier):
        payment_id = await completed_payment_id(db, settings, redis_down, scheduler, notifier)

        def decline(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"error": {"code": "card_declined", "message": "Card was declined"}})

        service = PaymentService(db, live_gateway(settings, decline), scheduler, notifier, settings)
        failed = await service.process_charge(payment_id, "pm_card")

        assert failed.status == "failed"
        assert failed.failure_code == "card_declined"
        assert notifier.notify.await_args.args[1] == "payment_failed"
        with pytest.raises(StateConflictError):
            await service.process_charge(payment_id, "pm_card")

    async def test_refund_guards(self, db, settings, redis_down, scheduler, notifier):
        payment_id = await completed_payment_id(db, settings, redis_down, scheduler, notifier)
        service = PaymentService(db, PaymentGateway(settings), scheduler, notifier, settings)

        with pytest.raises(StateConflictError):
            await service.refund(payment_id)

        await service.process_charge(payment_id)
        with pytest.raises(ValidationError):
            await service.refund(payment_id, Decimal("31.00"))


@pytest.mark.asyncio
class TestJobDispatcher:
    async def test_charge_customer_job(self, db, settings, redis_up, scheduler, notifier):
        payment_id = await completed_payment_id(db, settings, redis_up, scheduler, notifier)
        dispatcher = JobDispatcher(db, redis_up, settings, gateway=PaymentGateway(settings))

        result = await dispatcher.handle("charge-customer", {"payment_id": payment_id})

        assert result == {"payment_id": payment_id, "status": "succeeded"}
        queued = [json.loads(next(iter(c.args[1]))) for c in redis_up.zadd.await_args_list]
        assert [job["type"] for job in queued if job["type"] == "payout-due"] == ["payout-due"]

    async def test_stale_sweep_job(self, db, settings, redis_up):
        now = datetime.now(timezone.utc)
        await add_driver(db, last_seen=now - timedelta(minutes=45))
        await add_driver(db, last_seen=now)

        result = await JobDispatcher(db, redis_up, settings).handle("stale-location-sweep", {"threshold_minutes": 30})
        assert result == {"marked_offline": 1}

    async def test_surge_job_for_one_cell(self, db, settings, redis_up):
        result = await JobDispatcher(db, redis_up, settings).handle(
            "surge-recompute", {"lat": SF_PICKUP.lat, "lng": SF_PICKUP.lng}
        )
        assert result == {"cells": 1, "multiplier": 1.0}

    async def test_delivery_jobs_are_acknowledged(self, db, settings, redis_up):
        result = await JobDispatcher(db, redis_up, settings).handle("notification", {"user_id": "rider-1"})
        assert result == {"type": "notification", "acknowledged": True}

    async def test_unknown_job_type(self, db, settings, redis_up):
        with pytest.raises(ValidationError):
            await JobDispatcher(db, redis_up, settings).handle("launch-rockets", {})

    async def test_failed_job_propagates_without_requeue(self, db, settings, redis_up):
        # Retries belong to the scheduler that pushed the job.
        with pytest.raises(ValidationError):
            await JobDispatcher(db, redis_up, settings).handle("charge-customer", {})
        redis_up.zadd.assert_not_awaited()


@pytest.mark.asyncio
class TestJobScheduler:
    async def test_envelope_carries_route_and_retry_policy(self, settings, redis_up):
        job_id = await JobScheduler(redis_up, settings).enqueue(JobType.CHARGE_CUSTOMER, {"payment_id": "p1"})

        key, members = redis_up.zadd.await_args.args
        assert key == "jobs:payments"
        envelope = json.loads(next(iter(members)))
        assert envelope["id"] == job_id
        assert envelope["type"] == "charge-customer"
        assert envelope["retry"] == RetryPolicy(attempts=5, delay_ms=3000).model_dump()

    async def test_publish_failure_is_reported_not_raised(self, settings, redis_down):
        assert await JobScheduler(redis_down, settings).enqueue(JobType.NOTIFICATION, {"user_id": "u1"}) is None
