import logging
from datetime import datetime

from tracking_service.errors import AuthorizationDenied, DeliveryNotFound, ValidationFailed
from tracking_service.eta import AVERAGE_SPEED_KMH, estimate
from tracking_service.metrics import TRACKING_SUBSCRIPTIONS
from tracking_service.schemas import (
    Coordinates,
    Delivery,
    Identity,
    LocationBroadcast,
    Role,
    StatusBroadcast,
)
from tracking_service.store import DeliveryStateStore
from tracking_service.ws_manager import Connection, RoomRegistry, delivery_room

logger = logging.getLogger("tracking-service.subscription")


def can_track(identity: Identity, delivery: Delivery) -> bool:
    if identity.is_anonymous:
        return False
    if identity.role == Role.admin:
        return True
    if identity.role == Role.customer:
        return identity.id == delivery.customer_id
    if identity.role == Role.restaurant:
        return identity.id == delivery.restaurant_id
    if identity.role == Role.delivery:
        return identity.id == delivery.driver_id
    return False


class TrackingSubscriptionHandler:
    def __init__(self, store: DeliveryStateStore, rooms: RoomRegistry, average_speed_kmh: float = AVERAGE_SPEED_KMH):
        self.store = store
        self.rooms = rooms
        self.average_speed_kmh = average_speed_kmh

    async def subscribe(self, connection: Connection, delivery_id: str) -> Delivery:
        """
        Join the delivery's tracking room and send the caller a snapshot:
        the driver's last position with an ETA when one is known, the bare
        status otherwise.
        """
        identity = connection.identity
        if not delivery_id:
            raise ValidationFailed("Delivery ID is required")

        delivery = await self.store.find_delivery_by_id(delivery_id)
        if delivery is None:
            raise DeliveryNotFound(delivery_id)

        if not can_track(identity, delivery):
            raise AuthorizationDenied("Not authorized to track this delivery")

        self.rooms.join(connection, delivery_room(delivery_id))
        TRACKING_SUBSCRIPTIONS.inc()
        logger.info(
            f"[TRACK][{identity.trace_id}] User {identity.id} ({identity.role.value}) "
            f"joined delivery tracking: {delivery_id}"
        )

        await self._send_snapshot(connection, delivery)
        return delivery

    def unsubscribe(self, connection: Connection, delivery_id: str):
        if not delivery_id:
            return
        self.rooms.leave(connection, delivery_room(delivery_id))
        logger.info(
            f"[TRACK][{connection.identity.trace_id}] User {connection.identity.id} "
            f"stopped tracking delivery: {delivery_id}"
        )

    async def _send_snapshot(self, connection: Connection, delivery: Delivery):
        now = datetime.utcnow()
        driver = None
        if delivery.driver_id:
            driver = await self.store.find_driver_by_user_id(delivery.driver_id)

        if driver is not None and driver.current_location is not None:
            location = driver.current_location
            snapshot = LocationBroadcast(
                delivery_id=delivery.id,
                location=Coordinates(latitude=location.latitude, longitude=location.longitude),
                timestamp=driver.last_location_update_time or now,
                status=delivery.status,
                estimated_arrival=estimate(delivery, location.coordinates, self.average_speed_kmh, now=now),
            )
            await self.rooms.send_to(connection, "location_update", snapshot.to_wire())
            return

        snapshot = StatusBroadcast(
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            status=delivery.status,
            timestamp=now,
        )
        await self.rooms.send_to(connection, "delivery_status_update", snapshot.to_wire())
