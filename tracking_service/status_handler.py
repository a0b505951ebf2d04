# tracking_service/status_handler.py
import logging
import math
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Set

from tracking_service.errors import AuthorizationDenied, DeliveryNotFound, InvalidTransition
from tracking_service.events import publish_event
from tracking_service.locks import DeliveryLocks
from tracking_service.metrics import BROADCASTS_SENT, STATUS_TRANSITIONS
from tracking_service.schemas import Delivery, DeliveryStatus, Identity, Role, StatusBroadcast, StatusUpdatePayload
from tracking_service.store import DeliveryStateStore
from tracking_service.ws_manager import RoomRegistry, delivery_room, personal_room

logger = logging.getLogger("tracking-service.status")

Publisher = Callable[..., Awaitable[bool]]

DEFAULT_CANCELLATION_REASON = "No reason provided"

# Driver-initiated moves only. pending -> assigned belongs to dispatch.
ALLOWED_TRANSITIONS: Dict[DeliveryStatus, Set[DeliveryStatus]] = {
    DeliveryStatus.assigned: {
        DeliveryStatus.picked_up,
        DeliveryStatus.in_transit,
        DeliveryStatus.delivered,
        DeliveryStatus.cancelled,
    },
    DeliveryStatus.picked_up: {
        DeliveryStatus.in_transit,
        DeliveryStatus.delivered,
        DeliveryStatus.cancelled,
    },
    DeliveryStatus.in_transit: {
        DeliveryStatus.delivered,
        DeliveryStatus.cancelled,
    },
}

RELEASES_DRIVER = {DeliveryStatus.delivered, DeliveryStatus.cancelled}


def can_transition(current: DeliveryStatus, requested: DeliveryStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, set())


def minutes_between(start: datetime, end: datetime) -> int:
    # half-up, not banker's rounding
    return int(math.floor((end - start).total_seconds() / 60 + 0.5))


def apply_transition(delivery: Delivery, status: DeliveryStatus, notes: Optional[str], now: datetime) -> Delivery:
    """Set the status, its timestamp and the derived fields. Caller checks legality first."""
    delivery.status = status
    delivery.updated_at = now
    if notes:
        delivery.notes = notes

    if status == DeliveryStatus.picked_up:
        delivery.picked_up_at = now
    elif status == DeliveryStatus.delivered:
        delivery.delivered_at = now
        if delivery.assigned_at is not None:
            delivery.actual_delivery_time = minutes_between(delivery.assigned_at, now)
    elif status == DeliveryStatus.cancelled:
        delivery.cancelled_at = now
        delivery.cancellation_reason = notes or DEFAULT_CANCELLATION_REASON
    return delivery


class StatusTransitionHandler:
    def __init__(
        self,
        store: DeliveryStateStore,
        rooms: RoomRegistry,
        locks: Optional[DeliveryLocks] = None,
        publisher: Publisher = publish_event,
    ):
        self.store = store
        self.rooms = rooms
        self.locks = locks or DeliveryLocks()
        self.publisher = publisher

    async def handle(self, identity: Identity, payload: StatusUpdatePayload) -> Delivery:
        if identity.role != Role.delivery or not identity.id:
            raise AuthorizationDenied("Only delivery personnel can update delivery status")

        async with self.locks.hold(payload.delivery_id):
            delivery = await self.store.find_delivery_by_id(payload.delivery_id)
            if delivery is None:
                raise DeliveryNotFound(payload.delivery_id)

            if delivery.driver_id != identity.id:
                raise AuthorizationDenied("Not authorized to update this delivery status")

            previous = delivery.status
            if not can_transition(previous, payload.status):
                raise InvalidTransition(previous.value, payload.status.value)

            now = datetime.utcnow()
            apply_transition(delivery, payload.status, payload.notes, now)
            await self.store.save_delivery(delivery)

            if payload.status in RELEASES_DRIVER:
                await self._release_driver(identity)

        STATUS_TRANSITIONS.labels(status=payload.status.value).inc()
        logger.info(
            f"[STATUS][{identity.trace_id}] Delivery {delivery.id} status updated: "
            f"{previous.value} -> {payload.status.value}"
        )

        await self._broadcast(delivery, now)
        await self._publish(delivery, previous, identity)
        return delivery

    async def _release_driver(self, identity: Identity):
        driver = await self.store.set_driver_available(identity.id, True)
        if driver is None:
            logger.warning(f"[STATUS][{identity.trace_id}] No presence record for driver {identity.id}")

    async def _broadcast(self, delivery: Delivery, now: datetime):
        message = StatusBroadcast(
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            status=delivery.status,
            timestamp=now,
        ).to_wire()
        rooms = [
            delivery_room(delivery.id),
            personal_room(Role.customer.value, delivery.customer_id),
            personal_room(Role.restaurant.value, delivery.restaurant_id),
        ]
        for room in rooms:
            sent = await self.rooms.broadcast(room, "delivery_status_update", message)
            BROADCASTS_SENT.labels(event_type="delivery_status_update").inc(sent)

    async def _publish(self, delivery: Delivery, previous: DeliveryStatus, identity: Identity):
        data = {
            "delivery_id": delivery.id,
            "order_id": delivery.order_id,
            "driver_id": delivery.driver_id,
            "customer_id": delivery.customer_id,
            "restaurant_id": delivery.restaurant_id,
            "previous_status": previous.value,
            "status": delivery.status.value,
            "timestamp": delivery.updated_at.isoformat(),
        }
        if delivery.status == DeliveryStatus.delivered:
            data.update({
                "actual_delivery_time": delivery.actual_delivery_time,
                "distance": delivery.distance,
                "delivery_fee": delivery.delivery_fee,
                "driver_earnings": delivery.driver_earnings,
            })
        elif delivery.status == DeliveryStatus.cancelled:
            data["cancellation_reason"] = delivery.cancellation_reason

        try:
            await self.publisher(f"delivery.{delivery.status.value}", data, trace_id=identity.trace_id)
        except Exception:
            logger.exception(f"[STATUS][{identity.trace_id}] Failed to publish delivery.{delivery.status.value}")
