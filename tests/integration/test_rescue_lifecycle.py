"""
Integration tests for the rescue lifecycle against a real (SQLite) database:
create, match, the accept race, cancellation, completion and the stale
location sweep.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select

from rescue_dispatch.domain.geo import Coordinates
from rescue_dispatch.domain.rescue import RescueStatus
from rescue_dispatch.errors import (
    InvalidTransitionError,
    NotFoundError,
    RateExceededError,
    StateConflictError,
)
from rescue_dispatch.models.rescue import Rescue
from rescue_dispatch.repositories.rescues import RescueRepository
from rescue_dispatch.services.geospatial_index import GeospatialIndex
from rescue_dispatch.services.jobs import JobType
from rescue_dispatch.services.lifecycle import RescueLifecycle
from rescue_dispatch.services.location_tracker import (
    LEG_TO_PICKUP,
    LEG_UNAVAILABLE,
    LocationTracker,
    LocationUpdate,
)
from rescue_dispatch.services.matching import MatchingEngine
from rescue_dispatch.services.payments import PaymentService
from rescue_dispatch.services.surge import SurgeLookup
from tests.factories import SF_DROPOFF, SF_PICKUP, add_driver, add_promo, flat_tire, simple_quote

S = RescueStatus
QUIET_HOUR = datetime(2026, 10, 14, 11, 0, tzinfo=timezone.utc)


def make_lifecycle(db, settings, redis, scheduler, notifier) -> RescueLifecycle:
    return RescueLifecycle(db, redis, settings, scheduler=scheduler, notifier=notifier)


async def create_rescue(lifecycle, rider_id="rider-1", **kwargs):
    return await lifecycle.create(rider_id, SF_PICKUP, SF_DROPOFF, flat_tire(), now=QUIET_HOUR, **kwargs)


async def drive_to_in_progress(lifecycle, rescue_id, driver_id):
    outcome = await lifecycle.accept(rescue_id, driver_id)
    assert outcome.committed
    for status in (S.EN_ROUTE, S.ARRIVED, S.IN_PROGRESS):
        outcome = await lifecycle.transition_to(rescue_id, status, actor=driver_id)
        assert outcome.committed
    return outcome.rescue


@pytest.mark.asyncio
class TestCreateRescue:
    async def test_new_rescue_is_priced_and_requested(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)

        assert rescue.status == S.REQUESTED
        assert rescue.pricing.subtotal == Decimal("30.00")
        assert rescue.pricing.driver_payout == Decimal("24.00")

        stored = await RescueRepository(db).get(rescue.id)
        assert stored.status == S.REQUESTED
        assert stored.pricing.total == Decimal("30.00")
        assert [e.status for e in stored.timeline] == [S.REQUESTED]
        assert notifier.notify.await_args.args[1] == "rescue_created"

    async def test_idempotency_key_replays(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        first = await create_rescue(lifecycle, idempotency_key="rider-1:abc")
        second = await create_rescue(lifecycle, idempotency_key="rider-1:abc")
        assert first.id == second.id
        assert len(await lifecycle.list_for_rider("rider-1")) == 1

    async def test_promo_redeemed_once_per_rider(self, db, settings, redis_down, scheduler, notifier):
        promo = await add_promo(db, code="SAVE10", usage_limit_per_user=1)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)

        first = await create_rescue(lifecycle, promo_code="save10")
        assert first.pricing.discount == Decimal("3.00")
        assert first.pricing.total == Decimal("27.00")

        second = await create_rescue(lifecycle, promo_code="SAVE10")
        assert second.pricing.discount == Decimal("0.00")
        assert second.pricing.promo_code is None

        await db.refresh(promo)
        assert promo.usage_count == 1

    async def test_promo_total_cap_enforced_at_redeem(self, db, settings, redis_down, scheduler, notifier):
        await add_promo(db, code="LAUNCH", usage_limit_total=1, usage_count=1)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        # Quote taken before the cap was hit
        stale_quote = simple_quote(discount="3.00", promo_code="LAUNCH")

        with pytest.raises(RateExceededError):
            await lifecycle.create("rider-9", SF_PICKUP, SF_DROPOFF, flat_tire(), stale_quote, now=QUIET_HOUR)
        assert await lifecycle.list_for_rider("rider-9") == []


@pytest.mark.asyncio
class TestMatching:
    async def test_match_ranks_nearby_drivers(self, db, settings, redis_down, scheduler, notifier):
        close = await add_driver(db, lat=37.7755, lng=-122.4190, rating_average=4.0)
        far = await add_driver(db, lat=37.8000, lng=-122.4194)
        await add_driver(db, lat=37.7760, lng=-122.4180, available=False)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)

        engine = MatchingEngine(db, redis_down, settings, scheduler=scheduler, notifier=notifier)
        result = await engine.match(rescue.id)

        assert result.matched
        assert result.rescue.status == S.MATCHED
        assert [c.driver_id for c in result.candidates] == [close.id, far.id]
        enqueued = [call.args[0] for call in scheduler.enqueue.await_args_list]
        assert JobType.RESCUE_MATCHED in enqueued
        offered = [call.args[0] for call in notifier.notify.await_args_list if call.args[1] == "rescue_offered"]
        assert offered == [close.id, far.id]

    async def test_no_drivers_leaves_rescue_requested(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)

        result = await MatchingEngine(db, redis_down, settings, scheduler=scheduler, notifier=notifier).match(rescue.id)

        assert not result.matched
        assert result.candidates == []
        assert (await lifecycle.get(rescue.id)).status == S.REQUESTED

    async def test_match_twice_is_invalid(self, db, settings, redis_down, scheduler, notifier):
        await add_driver(db)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        engine = MatchingEngine(db, redis_down, settings, scheduler=scheduler, notifier=notifier)
        await engine.match(rescue.id)

        with pytest.raises(InvalidTransitionError):
            await engine.match(rescue.id)


@pytest.mark.asyncio
class TestAcceptRace:
    async def test_exactly_one_concurrent_accept_wins(self, session_factory, settings, redis_down, scheduler, notifier):
        async with session_factory() as db:
            drivers = [await add_driver(db) for _ in range(5)]
            rescue = await create_rescue(make_lifecycle(db, settings, redis_down, scheduler, notifier))

        async def attempt(driver_id):
            async with session_factory() as session:
                lifecycle = make_lifecycle(session, settings, redis_down, scheduler, notifier)
                return await lifecycle.accept(rescue.id, driver_id)

        outcomes = await asyncio.gather(*(attempt(d.id) for d in drivers))

        winners = [o for o in outcomes if o.committed]
        losers = [o for o in outcomes if not o.committed]
        assert len(winners) == 1
        assert len(losers) == 4
        winner_id = winners[0].rescue.driver_id
        for outcome in losers:
            assert isinstance(outcome.conflict, StateConflictError)
            assert outcome.conflict.details["current_status"] == "accepted"
            assert outcome.rescue.driver_id == winner_id

        async with session_factory() as db:
            final = await RescueRepository(db).get(rescue.id)
        assert final.status == S.ACCEPTED
        assert final.driver_id == winner_id
        assert [e.status for e in final.timeline].count(S.ACCEPTED) == 1
        assigned = [c for c in scheduler.enqueue.await_args_list if c.args[0] == JobType.DRIVER_ASSIGNED]
        assert len(assigned) == 1

    async def test_cancel_racing_accept_has_one_winner(
        self, session_factory, settings, redis_down, scheduler, notifier
    ):
        async with session_factory() as db:
            driver = await add_driver(db)
            rescue = await create_rescue(make_lifecycle(db, settings, redis_down, scheduler, notifier))

        async def accept():
            async with session_factory() as session:
                return await make_lifecycle(session, settings, redis_down, scheduler, notifier).accept(
                    rescue.id, driver.id
                )

        async def cancel():
            # The rider cancels the rescue as they last saw it: requested, no driver
            async with session_factory() as session:
                return await make_lifecycle(session, settings, redis_down, scheduler, notifier).cancel(
                    rescue.id, "Found a ride home", "rider", actor="rider-1", observed=rescue
                )

        accepted, cancelled = await asyncio.gather(accept(), cancel())

        assert accepted.committed != cancelled.committed
        async with session_factory() as db:
            final = await RescueRepository(db).get(rescue.id)
        final.check_invariants()

        if accepted.committed:
            assert cancelled.conflict.details["current_status"] == "accepted"
            assert final.status == S.ACCEPTED
            assert final.driver_id == driver.id
        else:
            assert accepted.conflict.details["current_status"] == "cancelled"
            assert final.status == S.CANCELLED
            assert final.driver_id is None
            assert final.cancelled_by == "rider"

    async def test_stale_cancel_does_not_unassign_driver(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        driver = await add_driver(db)
        seen_by_rider = await create_rescue(lifecycle)
        assert (await lifecycle.accept(seen_by_rider.id, driver.id)).committed

        outcome = await lifecycle.cancel(
            seen_by_rider.id, "Too slow", "rider", actor="rider-1", observed=seen_by_rider
        )

        assert not outcome.committed
        assert outcome.conflict.details["current_status"] == "accepted"
        current = await lifecycle.get(seen_by_rider.id)
        assert current.status == S.ACCEPTED
        assert current.driver_id == driver.id

    async def test_cancel_after_seeing_accept_releases_driver(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        driver = await add_driver(db)
        rescue = await create_rescue(lifecycle)
        await lifecycle.accept(rescue.id, driver.id)

        outcome = await lifecycle.cancel(rescue.id, "Fixed it myself", "rider", actor="rider-1")

        assert outcome.committed
        assert outcome.rescue.status == S.CANCELLED
        assert outcome.rescue.driver_id is None
        released = [c for c in notifier.notify.await_args_list if c.args[0] == driver.id]
        assert len(released) == 1

    async def test_accept_unknown_driver(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        with pytest.raises(NotFoundError):
            await lifecycle.accept(rescue.id, "ghost-driver")


@pytest.mark.asyncio
class TestTransitions:
    async def test_full_happy_path_records_timeline(self, db, settings, redis_down, scheduler, notifier):
        driver = await add_driver(db)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)

        in_progress = await drive_to_in_progress(lifecycle, rescue.id, driver.id)
        assert in_progress.status == S.IN_PROGRESS
        assert in_progress.started_at is not None
        assert [e.status for e in in_progress.timeline] == [
            S.REQUESTED, S.ACCEPTED, S.EN_ROUTE, S.ARRIVED, S.IN_PROGRESS,
        ]

    async def test_skipping_a_step_is_rejected(self, db, settings, redis_down, scheduler, notifier):
        driver = await add_driver(db)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        await lifecycle.accept(rescue.id, driver.id)

        with pytest.raises(InvalidTransitionError):
            await lifecycle.transition_to(rescue.id, S.IN_PROGRESS, actor=driver.id)
        assert (await lifecycle.get(rescue.id)).status == S.ACCEPTED

    async def test_cancel_terminal_rescue_conflicts(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        assert (await lifecycle.cancel(rescue.id, "changed my mind", "rider")).committed

        again = await lifecycle.cancel(rescue.id, "still not needed", "rider")
        assert not again.committed
        assert again.conflict.details["current_status"] == "cancelled"

    async def test_complete_opens_pending_payment(self, db, settings, redis_down, scheduler, notifier):
        driver = await add_driver(db)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        await drive_to_in_progress(lifecycle, rescue.id, driver.id)

        outcome = await lifecycle.complete(rescue.id, Decimal("35.00"), actor=driver.id, payment_method="pm_card")

        assert outcome.committed
        completed = outcome.rescue
        assert completed.status == S.COMPLETED
        assert completed.final_price == Decimal("35.00")
        assert completed.pricing.platform_fee == Decimal("7.00")
        assert completed.pricing.driver_payout == Decimal("28.00")

        payment = await PaymentService(db, settings=settings).get(outcome.payment_id)
        assert payment.status == "pending"
        assert payment.amount == Decimal("35.00")
        assert payment.driver_id == driver.id

        charge_jobs = [c for c in scheduler.enqueue.await_args_list if c.args[0] == JobType.CHARGE_CUSTOMER]
        assert charge_jobs[0].args[1]["payment_id"] == outcome.payment_id

    async def test_complete_before_in_progress_is_invalid(self, db, settings, redis_down, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        with pytest.raises(InvalidTransitionError):
            await lifecycle.complete(rescue.id, Decimal("30.00"))


@pytest.mark.asyncio
class TestLocations:
    async def test_stale_driver_excluded_after_sweep(self, db, settings, redis_down):
        now = datetime.now(timezone.utc)
        fresh = await add_driver(db, lat=37.7755, lng=-122.4190, last_seen=now - timedelta(minutes=1))
        stale = await add_driver(db, lat=37.7752, lng=-122.4192, last_seen=now - timedelta(minutes=16))
        index = GeospatialIndex(db, redis_down, settings)

        before = await index.radius_query(SF_PICKUP.coordinates, 5)
        assert {d.driver_id for d in before} == {fresh.id, stale.id}

        assert await index.mark_stale_offline(now=now) == 1

        after = await index.radius_query(SF_PICKUP.coordinates, 5)
        assert [d.driver_id for d in after] == [fresh.id]

    async def test_durable_query_crosses_antimeridian(self, db, settings, redis_down):
        west = await add_driver(db, lat=0.0, lng=-179.99)
        east = await add_driver(db, lat=0.0, lng=179.995)
        await add_driver(db, lat=0.0, lng=179.0)
        index = GeospatialIndex(db, redis_down, settings)

        nearby = await index.radius_query(Coordinates(lat=0.0, lng=179.99), 5)

        assert [d.driver_id for d in nearby] == [east.id, west.id]
        assert nearby[1].distance_km == pytest.approx(2.22, abs=0.01)

    async def test_sweep_evicts_from_fast_index(self, db, settings, redis_up):
        now = datetime.now(timezone.utc)
        stale = await add_driver(db, last_seen=now - timedelta(minutes=30))
        index = GeospatialIndex(db, redis_up, settings)

        await index.mark_stale_offline(now=now)

        redis_up.zrem.assert_awaited_once_with("drivers:geo", stale.id)
        redis_up.delete.assert_awaited_once_with(f"driver:{stale.id}:loc")

    async def test_failed_geo_eviction_does_not_resurface_stale_driver(self, db, settings, redis_up):
        now = datetime.now(timezone.utc)
        fresh = await add_driver(db, lat=37.7755, lng=-122.4190, last_seen=now - timedelta(minutes=1))
        stale = await add_driver(db, lat=37.7752, lng=-122.4192, last_seen=now - timedelta(minutes=30))
        index = GeospatialIndex(db, redis_up, settings)
        redis_up.zrem.side_effect = RedisConnectionError("redis unavailable")

        assert await index.mark_stale_offline(now=now) == 1
        redis_up.delete.assert_awaited_once_with(f"driver:{stale.id}:loc")
        # The row is offline now, so a second sweep has nothing to evict.
        assert await index.mark_stale_offline(now=now) == 0

        # The GEO set still holds the stale member; only the fresh driver has a live record.
        redis_up.exists.return_value = 1
        redis_up.geosearch.return_value = [
            (stale.id, 0.05, (stale.lng, stale.lat)),
            (fresh.id, 0.06, (fresh.lng, fresh.lat)),
        ]
        redis_up.mget.side_effect = lambda keys: [
            json.dumps({"driver_id": fresh.id, "is_online": True, "is_available": True})
            if key == f"driver:{fresh.id}:loc" else None
            for key in keys
        ]

        nearby = await index.radius_query(SF_PICKUP.coordinates, 5)

        assert [d.driver_id for d in nearby] == [fresh.id]

    async def test_upsert_syncs_fast_index(self, db, settings, redis_up):
        driver = await add_driver(db, lat=None, lng=None)
        index = GeospatialIndex(db, redis_up, settings)

        record = await index.upsert(driver.id, Coordinates(lat=37.78, lng=-122.41), heading=90, speed=20)

        assert record.is_online
        redis_up.geoadd.assert_awaited_once_with("drivers:geo", [-122.41, 37.78, driver.id])

        await index.set_availability(driver.id, is_online=True, is_available=False)
        redis_up.zrem.assert_awaited_once_with("drivers:geo", driver.id)

    async def test_ping_on_active_rescue_appends_waypoint(self, db, settings, redis_up, scheduler, notifier):
        driver = await add_driver(db)
        lifecycle = make_lifecycle(db, settings, redis_up, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        await lifecycle.accept(rescue.id, driver.id)

        tracker = LocationTracker(db, redis_up, settings)
        now = datetime.now(timezone.utc)
        result = await tracker.ingest(driver.id, Coordinates(lat=37.7752, lng=-122.4190), now=now)

        assert result.success
        assert result.rescue_id == rescue.id
        key, members = redis_up.zadd.await_args.args
        assert key == f"journey:{rescue.id}"
        assert list(members.values()) == [now.timestamp()]
        retention = settings.waypoint_retention_seconds
        redis_up.zremrangebyscore.assert_awaited_once_with(key, "-inf", f"({now.timestamp() - retention}")
        redis_up.expire.assert_awaited_with(key, retention)

    async def test_batch_ingest_isolates_failures(self, db, settings, redis_down):
        driver = await add_driver(db)
        tracker = LocationTracker(db, redis_down, settings)
        results = await tracker.batch_ingest([
            LocationUpdate(driver_id=driver.id, lat=37.77, lng=-122.41),
            LocationUpdate(driver_id="ghost", lat=37.77, lng=-122.41),
            LocationUpdate(driver_id=driver.id, lat=137.0, lng=-122.41),
        ])
        assert [r.success for r in results] == [True, False, False]
        assert results[1].error == "Driver ghost not found"

    async def test_journey_leg_and_eta(self, db, settings, redis_down, scheduler, notifier):
        driver = await add_driver(db, lat=37.7850, lng=-122.4000)
        lifecycle = make_lifecycle(db, settings, redis_down, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        tracker = LocationTracker(db, redis_down, settings)

        assert (await tracker.track_journey(rescue.id)).leg == LEG_UNAVAILABLE

        await lifecycle.accept(rescue.id, driver.id)
        journey = await tracker.track_journey(rescue.id)
        assert journey.leg == LEG_TO_PICKUP
        assert journey.eta.distance_km == 2.0
        assert journey.eta.text == "4 mins"


@pytest.mark.asyncio
class TestSurge:
    async def test_demand_without_supply_surges(self, db, settings, redis_up, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_up, scheduler, notifier)
        for rider in ("r1", "r2", "r3"):
            await create_rescue(lifecycle, rider_id=rider)

        multiplier = await SurgeLookup(db, redis_up, settings).recompute_cell(SF_PICKUP.lat, SF_PICKUP.lng)

        # 3 rescues / max(1, 0 drivers) = 3.0 > 2.0
        assert multiplier == 3.0
        key, ttl, _ = redis_up.setex.await_args.args
        assert key == "surge:37.7000,-122.5000"
        assert ttl == 300

    async def test_cache_miss_recomputes_outside_callers_session(self, db, settings, redis_up, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_up, scheduler, notifier)
        for rider in ("r1", "r2", "r3"):
            await create_rescue(lifecycle, rider_id=rider)
        surge = SurgeLookup(db, redis_up, settings)
        sessions = []
        recompute = surge.recompute_cell

        async def spy(lat, lng, db=None):
            sessions.append(db)
            return await recompute(lat, lng, db=db)

        surge.recompute_cell = spy

        assert await surge.get_multiplier(SF_PICKUP.lat, SF_PICKUP.lng) == 3.0
        assert sessions[0] is not None and sessions[0] is not db

    async def test_timed_out_recompute_leaves_callers_session_usable(self, db, settings, redis_up, scheduler, notifier):
        lifecycle = make_lifecycle(db, settings, redis_up, scheduler, notifier)
        rescue = await create_rescue(lifecycle)
        tight = settings.model_copy(update={"surge_compute_timeout_seconds": 0.01})
        surge = SurgeLookup(db, redis_up, tight)

        async def stuck(lat, lng, db=None):
            await db.execute(select(func.count(Rescue.id)))
            await asyncio.sleep(10)

        surge.recompute_cell = stuck

        assert await surge.get_multiplier(SF_PICKUP.lat, SF_PICKUP.lng) == 1.0
        assert (await RescueRepository(db).get(rescue.id)).status == S.REQUESTED

    async def test_cached_multiplier_is_used(self, db, settings, redis_up):
        redis_up.get.return_value = '{"multiplier": 2.5}'
        assert await SurgeLookup(db, redis_up, settings).get_multiplier(SF_PICKUP.lat, SF_PICKUP.lng) == 2.5

    async def test_disabled_surge_is_flat(self, db, settings, redis_up):
        flat = settings.model_copy(update={"surge_pricing_enabled": False})
        assert await SurgeLookup(db, redis_up, flat).get_multiplier(SF_PICKUP.lat, SF_PICKUP.lng) == 1.0
        redis_up.get.assert_not_awaited()
