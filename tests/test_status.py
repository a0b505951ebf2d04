from datetime import datetime, timedelta

import pytest

from tests.helpers import connect, make_delivery, run
from tracking_service.errors import AuthorizationDenied, DeliveryNotFound, InvalidTransition
from tracking_service.schemas import DeliveryStatus, Identity, Role, StatusUpdatePayload
from tracking_service.status_handler import apply_transition, can_transition, minutes_between

S = DeliveryStatus


def driver(user_id="D1"):
    return Identity(id=user_id, role=Role.delivery)


def change(service, status, identity=None, notes=None, delivery_id="Del1"):
    payload = StatusUpdatePayload(delivery_id=delivery_id, status=status, notes=notes)
    return run(service.statuses.handle(identity or driver(), payload))


def test_full_lifecycle(service, store):
    change(service, S.picked_up)
    assert store.deliveries["Del1"].status == S.picked_up
    assert store.deliveries["Del1"].picked_up_at is not None
    assert store.drivers["D1"].is_available is False

    change(service, S.in_transit)
    assert store.deliveries["Del1"].status == S.in_transit
    assert store.drivers["D1"].is_available is False

    change(service, S.delivered)
    delivery = store.deliveries["Del1"]
    assert delivery.status == S.delivered
    assert delivery.delivered_at is not None
    assert delivery.actual_delivery_time == 30
    assert store.drivers["D1"].is_available is True


def test_actual_delivery_time_is_null_without_assignment_time(service, store):
    run(store.save_delivery(make_delivery(status=S.in_transit, assigned_at=None)))
    change(service, S.delivered)
    assert store.deliveries["Del1"].actual_delivery_time is None


def test_cancel_without_notes_uses_default_reason(service, store):
    change(service, S.cancelled)
    delivery = store.deliveries["Del1"]
    assert delivery.status == S.cancelled
    assert delivery.cancelled_at is not None
    assert delivery.cancellation_reason == "No reason provided"
    assert store.drivers["D1"].is_available is True


def test_cancel_with_notes_keeps_them_as_reason(service, store):
    change(service, S.cancelled, notes="Customer unreachable")
    delivery = store.deliveries["Del1"]
    assert delivery.cancellation_reason == "Customer unreachable"
    assert delivery.notes == "Customer unreachable"


@pytest.mark.parametrize("current,requested", [
    (S.picked_up, S.assigned),
    (S.in_transit, S.picked_up),
    (S.assigned, S.assigned),
    (S.assigned, S.pending),
    (S.delivered, S.in_transit),
    (S.delivered, S.cancelled),
    (S.cancelled, S.delivered),
    (S.pending, S.picked_up),
])
def test_illegal_transitions_leave_delivery_untouched(service, store, publisher, current, requested):
    run(store.save_delivery(make_delivery(status=current)))
    before = store.deliveries["Del1"].model_copy(deep=True)

    with pytest.raises(InvalidTransition):
        change(service, requested)

    assert store.deliveries["Del1"] == before
    assert publisher.published == []


def test_forward_skips_are_allowed():
    assert can_transition(S.assigned, S.in_transit)
    assert can_transition(S.assigned, S.delivered)
    assert can_transition(S.picked_up, S.delivered)
    assert not can_transition(S.in_transit, S.in_transit)


def test_other_driver_cannot_change_status(service, store, publisher):
    with pytest.raises(AuthorizationDenied):
        change(service, S.picked_up, identity=driver("D2"))
    assert store.deliveries["Del1"].status == S.assigned
    assert publisher.published == []


@pytest.mark.parametrize("role", [Role.customer, Role.restaurant, Role.admin])
def test_non_drivers_cannot_change_status(service, store, role):
    with pytest.raises(AuthorizationDenied):
        change(service, S.picked_up, identity=Identity(id="D1", role=role))
    assert store.deliveries["Del1"].status == S.assigned


def test_unknown_delivery(service):
    with pytest.raises(DeliveryNotFound):
        change(service, S.picked_up, delivery_id="Nope")


def test_status_change_reaches_delivery_customer_and_restaurant_rooms(service):
    follower = connect(service, "D1", Role.delivery)
    run(service.subscriptions.subscribe(follower, "Del1"))
    follower.websocket.sent.clear()
    customer = connect(service, "C1", Role.customer)
    restaurant = connect(service, "R1", Role.restaurant)
    stranger = connect(service, "C2", Role.customer)

    change(service, S.picked_up)

    for listener in (follower, customer, restaurant):
        updates = listener.websocket.events("delivery_status_update")
        assert len(updates) == 1
        assert updates[0]["data"]["deliveryId"] == "Del1"
        assert updates[0]["data"]["orderId"] == "O1"
        assert updates[0]["data"]["status"] == "picked_up"
    assert stranger.websocket.sent == []


def test_delivered_event_carries_economics(service, publisher):
    change(service, S.delivered)

    event_type, data = publisher.published[-1]
    assert event_type == "delivery.delivered"
    assert data["previous_status"] == "assigned"
    assert data["status"] == "delivered"
    assert data["delivery_fee"] == 5.0
    assert data["driver_earnings"] == 4.0
    assert data["actual_delivery_time"] == 30


def test_cancelled_event_carries_reason(service, publisher):
    change(service, S.cancelled, notes="Flat tyre")
    event_type, data = publisher.published[-1]
    assert event_type == "delivery.cancelled"
    assert data["cancellation_reason"] == "Flat tyre"


def test_publisher_failure_does_not_undo_transition(store):
    from tracking_service.service import DeliveryTrackingService

    async def failing(event_type, data, trace_id=None):
        raise RuntimeError("queue down")

    service = DeliveryTrackingService(store, publisher=failing)
    change(service, S.picked_up)
    assert store.deliveries["Del1"].status == S.picked_up


def test_minutes_between_rounds_half_up():
    start = datetime(2024, 1, 1, 12, 0, 0)
    assert minutes_between(start, start + timedelta(minutes=30)) == 30
    assert minutes_between(start, start + timedelta(minutes=2, seconds=30)) == 3
    assert minutes_between(start, start + timedelta(minutes=2, seconds=29)) == 2


def test_apply_transition_only_overwrites_notes_when_given():
    delivery = make_delivery(notes="Leave at door")
    apply_transition(delivery, S.picked_up, None, datetime.utcnow())
    assert delivery.notes == "Leave at door"
