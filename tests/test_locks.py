import asyncio

from tests.helpers import RecordingPublisher, make_delivery, make_driver, run
from tracking_service.locks import DeliveryLocks
from tracking_service.schemas import DeliveryStatus, Identity, LocationUpdatePayload, Role, StatusUpdatePayload
from tracking_service.service import DeliveryTrackingService
from tracking_service.store import InMemoryDeliveryStore


class SlowDeliveryReads(InMemoryDeliveryStore):
    """Every delivery read yields to the loop after copying, so writers can interleave."""

    async def find_delivery_by_id(self, delivery_id):
        delivery = await super().find_delivery_by_id(delivery_id)
        await asyncio.sleep(0.01)
        return delivery


def test_same_delivery_shares_a_lock():
    locks = DeliveryLocks()
    first = locks.lock_for("Del1")
    assert locks.lock_for("Del1") is first
    assert locks.lock_for("Del2") is not first


def test_hold_serializes_work_on_one_delivery():
    locks = DeliveryLocks()
    trace = []

    async def work(name):
        async with locks.hold("Del1"):
            trace.append(f"{name}-in")
            await asyncio.sleep(0.01)
            trace.append(f"{name}-out")

    async def go():
        await asyncio.gather(work("a"), work("b"))

    run(go())
    assert trace == ["a-in", "a-out", "b-in", "b-out"]


def test_hold_lets_different_deliveries_overlap():
    locks = DeliveryLocks()
    trace = []

    async def work(delivery_id):
        async with locks.hold(delivery_id):
            trace.append(f"{delivery_id}-in")
            await asyncio.sleep(0.01)
            trace.append(f"{delivery_id}-out")

    async def go():
        await asyncio.gather(work("Del1"), work("Del2"))

    run(go())
    assert trace[:2] == ["Del1-in", "Del2-in"]


def test_concurrent_push_and_status_change_both_survive():
    store = SlowDeliveryReads()
    run(store.save_delivery(make_delivery(status=DeliveryStatus.picked_up)))
    run(store.save_driver(make_driver()))
    service = DeliveryTrackingService(store, publisher=RecordingPublisher())
    driver = Identity(id="D1", role=Role.delivery)

    async def go():
        await asyncio.gather(
            service.locations.handle(
                driver, LocationUpdatePayload(latitude=0.0, longitude=0.0, delivery_id="Del1")
            ),
            service.statuses.handle(
                driver, StatusUpdatePayload(delivery_id="Del1", status=DeliveryStatus.in_transit)
            ),
        )

    run(go())

    delivery = store.deliveries["Del1"]
    assert delivery.status == DeliveryStatus.in_transit
    assert delivery.last_location_update.coordinates == [0.0, 0.0]
    assert delivery.current_eta == 60
