# tracking_service/location_handler.py
import logging
from datetime import datetime
from typing import Optional, Tuple

from tracking_service.errors import AuthorizationDenied, ValidationFailed
from tracking_service.eta import AVERAGE_SPEED_KMH, estimate
from tracking_service.locks import DeliveryLocks
from tracking_service.metrics import BROADCASTS_SENT, LOCATION_UPDATES_PROCESSED
from tracking_service.schemas import (
    Coordinates,
    Delivery,
    DeliveryStatus,
    DeliveryTrackingBroadcast,
    DriverPresence,
    EstimatedArrival,
    GeoPoint,
    Identity,
    LastLocationUpdate,
    LocationBroadcast,
    LocationHistoryEntry,
    LocationUpdatePayload,
    Role,
)
from tracking_service.store import DeliveryStateStore
from tracking_service.ws_manager import RoomRegistry, delivery_room, personal_room

logger = logging.getLogger("tracking-service.location")

ETA_TRACKED_STATUSES = {DeliveryStatus.picked_up, DeliveryStatus.in_transit}


def validate_coordinates(latitude: float, longitude: float):
    # written so NaN fails both checks
    if not -90 <= latitude <= 90:
        raise ValidationFailed("Valid latitude is required (between -90 and 90)")
    if not -180 <= longitude <= 180:
        raise ValidationFailed("Valid longitude is required (between -180 and 180)")


class LocationIngestHandler:
    def __init__(
        self,
        store: DeliveryStateStore,
        rooms: RoomRegistry,
        locks: Optional[DeliveryLocks] = None,
        average_speed_kmh: float = AVERAGE_SPEED_KMH,
    ):
        self.store = store
        self.rooms = rooms
        self.locks = locks or DeliveryLocks()
        self.average_speed_kmh = average_speed_kmh

    async def handle(self, identity: Identity, payload: LocationUpdatePayload) -> DriverPresence:
        """
        Record a driver's position and fan it out to whoever follows the delivery.

        Presence and history are always written. The delivery is only
        touched when it exists and is assigned to this driver; otherwise
        the push is treated as a plain ping.
        """
        if identity.role != Role.delivery or not identity.id:
            raise AuthorizationDenied("Only delivery personnel can update location")

        validate_coordinates(payload.latitude, payload.longitude)

        now = datetime.utcnow()
        point = GeoPoint.from_lat_lng(payload.latitude, payload.longitude)

        driver = await self.store.upsert_driver_location(identity.id, point, now)
        await self.store.append_location_history(LocationHistoryEntry(
            driver_id=identity.id,
            delivery_id=payload.delivery_id,
            coordinates=list(point.coordinates),
            timestamp=now,
        ))

        tracked = None
        if payload.delivery_id:
            tracked = await self._update_delivery(identity, payload.delivery_id, point, now)

        LOCATION_UPDATES_PROCESSED.labels(with_delivery=str(tracked is not None).lower()).inc()
        logger.info(f"[LOCATION][{identity.trace_id}] Location updated for delivery personnel {identity.id}")

        if tracked is not None:
            delivery, arrival = tracked
            await self._broadcast(delivery, arrival, payload, now)
        return driver

    async def _update_delivery(
        self, identity: Identity, delivery_id: str, point: GeoPoint, now: datetime
    ) -> Optional[Tuple[Delivery, EstimatedArrival]]:
        async with self.locks.hold(delivery_id):
            delivery = await self.store.find_delivery_by_id(delivery_id)
            if delivery is None:
                logger.info(f"[LOCATION][{identity.trace_id}] Delivery {delivery_id} not found, ping only")
                return None
            if delivery.driver_id != identity.id:
                logger.warning(
                    f"[LOCATION][{identity.trace_id}] Driver {identity.id} is not assigned to delivery "
                    f"{delivery_id} (assigned: {delivery.driver_id}), ping only"
                )
                return None

            delivery.last_location_update = LastLocationUpdate(coordinates=list(point.coordinates), timestamp=now)
            arrival = estimate(delivery, point.coordinates, self.average_speed_kmh, now=now)
            if delivery.status in ETA_TRACKED_STATUSES:
                delivery.current_eta = arrival.estimated_minutes
            delivery.updated_at = now
            await self.store.save_delivery(delivery)

        return delivery, arrival

    async def _broadcast(
        self, delivery: Delivery, arrival: EstimatedArrival, payload: LocationUpdatePayload, now: datetime
    ):
        location = Coordinates(latitude=payload.latitude, longitude=payload.longitude)

        update = LocationBroadcast(
            delivery_id=delivery.id,
            location=location,
            timestamp=now,
            status=delivery.status,
            estimated_arrival=arrival,
        )
        sent = await self.rooms.broadcast(delivery_room(delivery.id), "location_update", update.to_wire())
        BROADCASTS_SENT.labels(event_type="location_update").inc(sent)

        tracking = DeliveryTrackingBroadcast(order_id=delivery.order_id, **update.model_dump())
        sent = await self.rooms.broadcast(
            personal_room(Role.customer.value, delivery.customer_id),
            "delivery_tracking_update",
            tracking.to_wire(),
        )
        BROADCASTS_SENT.labels(event_type="delivery_tracking_update").inc(sent)
