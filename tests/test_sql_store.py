import asyncio
from datetime import datetime

import pytest

from tests.helpers import RecordingPublisher, make_delivery, make_driver, run
from tracking_service.database import make_database, make_engine
from tracking_service.models import location_history
from tracking_service.schemas import (
    DeliveryStatus,
    GeoPoint,
    Identity,
    LastLocationUpdate,
    LocationHistoryEntry,
    LocationUpdatePayload,
    Role,
    StatusUpdatePayload,
)
from tracking_service.service import DeliveryTrackingService
from tracking_service.store import SqlDeliveryStore


@pytest.fixture
def url(tmp_path):
    return f"sqlite:///{tmp_path / 'tracking.db'}"


def with_store(url, work):
    async def go():
        store = SqlDeliveryStore(make_database(url), engine=make_engine(url))
        await store.connect()
        try:
            return await work(store)
        finally:
            await store.disconnect()
    return run(go())


def test_delivery_round_trip(url):
    stamp = datetime(2024, 5, 1, 12, 30, 0)

    async def work(store):
        delivery = make_delivery(last_location_update=LastLocationUpdate(coordinates=[2.0, 1.0], timestamp=stamp))
        await store.save_delivery(delivery)
        return await store.find_delivery_by_id("Del1"), await store.find_delivery_by_order_id("O1")

    by_id, by_order = with_store(url, work)

    assert by_id == by_order
    assert by_id.status == DeliveryStatus.assigned
    assert by_id.restaurant_location.coordinates == [2.1, 1.0]
    assert by_id.customer_location.coordinates == [0.18, 0.0]
    assert by_id.last_location_update.coordinates == [2.0, 1.0]
    assert by_id.last_location_update.timestamp == stamp
    assert by_id.delivery_fee == 5.0


def test_save_updates_existing_delivery(url):
    async def work(store):
        await store.save_delivery(make_delivery())
        await store.save_delivery(make_delivery(status=DeliveryStatus.picked_up, current_eta=12))
        return await store.find_delivery_by_id("Del1")

    delivery = with_store(url, work)
    assert delivery.status == DeliveryStatus.picked_up
    assert delivery.current_eta == 12


def test_missing_rows(url):
    async def work(store):
        return (
            await store.find_delivery_by_id("Nope"),
            await store.find_delivery_by_order_id("Nope"),
            await store.find_driver_by_user_id("Nope"),
        )

    assert with_store(url, work) == (None, None, None)


def test_upsert_driver_location(url):
    stamp = datetime(2024, 5, 1, 12, 0, 0)

    async def work(store):
        await store.save_driver(make_driver())
        await store.upsert_driver_location("D1", GeoPoint(coordinates=[2.0, 1.0]), stamp)
        await store.upsert_driver_location("D7", GeoPoint(coordinates=[4.0, 3.0]), stamp)
        return await store.find_driver_by_user_id("D1"), await store.find_driver_by_user_id("D7")

    known, fresh = with_store(url, work)

    assert known.name == "Dana"
    assert known.current_location.coordinates == [2.0, 1.0]
    assert known.last_location_update_time == stamp
    assert known.is_available is False
    assert fresh.current_location.coordinates == [4.0, 3.0]


def test_append_location_history(url):
    async def work(store):
        await store.append_location_history(LocationHistoryEntry(driver_id="D1", delivery_id="Del1", coordinates=[2.0, 1.0]))
        await store.append_location_history(LocationHistoryEntry(driver_id="D1", coordinates=[2.1, 1.1]))
        return await store.database.fetch_all(location_history.select().order_by(location_history.c.lng))

    rows = [row._mapping for row in with_store(url, work)]
    assert [(row["driver_id"], row["delivery_id"], row["lng"], row["lat"]) for row in rows] == [
        ("D1", "Del1", 2.0, 1.0),
        ("D1", None, 2.1, 1.1),
    ]


def test_location_upsert_leaves_availability_alone(url):
    async def work(store):
        await store.save_driver(make_driver(is_available=True))
        await store.upsert_driver_location("D1", GeoPoint(coordinates=[2.0, 1.0]), datetime(2024, 5, 1, 12, 0, 0))
        return await store.find_driver_by_user_id("D1")

    driver = with_store(url, work)
    assert driver.is_available is True
    assert driver.current_location.coordinates == [2.0, 1.0]


def test_set_driver_available(url):
    async def work(store):
        await store.save_driver(make_driver())
        released = await store.set_driver_available("D1", True)
        missing = await store.set_driver_available("Nope", True)
        return released, missing, await store.find_driver_by_user_id("D1")

    released, missing, stored = with_store(url, work)
    assert released.is_available is True
    assert missing is None
    assert stored.is_available is True
    assert stored.name == "Dana"


class SlowDriverReads(SqlDeliveryStore):
    """First driver read stalls after fetching, like a slow network round trip."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.stalled = False

    async def find_driver_by_user_id(self, user_id):
        driver = await super().find_driver_by_user_id(user_id)
        if not self.stalled:
            self.stalled = True
            await asyncio.sleep(0.05)
        return driver


def test_concurrent_location_push_keeps_driver_released(url):
    async def go():
        store = SlowDriverReads(make_database(url), engine=make_engine(url))
        await store.connect()
        try:
            await store.save_delivery(make_delivery(status=DeliveryStatus.in_transit))
            await store.save_driver(make_driver())
            service = DeliveryTrackingService(store, publisher=RecordingPublisher())
            driver = Identity(id="D1", role=Role.delivery)

            await asyncio.gather(
                service.locations.handle(driver, LocationUpdatePayload(latitude=1.0, longitude=2.0)),
                service.statuses.handle(driver, StatusUpdatePayload(delivery_id="Del1", status=DeliveryStatus.delivered)),
            )
            return await store.find_delivery_by_id("Del1"), await store.find_driver_by_user_id("D1")
        finally:
            await store.disconnect()

    delivery, driver = run(go())
    assert delivery.status == DeliveryStatus.delivered
    assert driver.is_available is True
    assert driver.current_location.coordinates == [2.0, 1.0]
