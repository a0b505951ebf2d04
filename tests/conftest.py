import pytest

from tests.helpers import RecordingPublisher, make_delivery, make_driver, run
from tracking_service.service import DeliveryTrackingService
from tracking_service.store import InMemoryDeliveryStore


@pytest.fixture
def store():
    store = InMemoryDeliveryStore()
    run(store.save_delivery(make_delivery()))
    run(store.save_driver(make_driver()))
    return store


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def service(store, publisher):
    return DeliveryTrackingService(store, publisher=publisher)
