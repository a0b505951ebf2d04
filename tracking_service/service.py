# tracking_service/service.py
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import ValidationError

from tracking_service.errors import DeliveryNotFound, DriverNotFound, NotFound, TrackingError, ValidationFailed
from tracking_service.eta import AVERAGE_SPEED_KMH
from tracking_service.events import publish_event
from tracking_service.location_handler import LocationIngestHandler
from tracking_service.locks import DeliveryLocks
from tracking_service.metrics import ACTIVE_CONNECTIONS, PROTOCOL_ERRORS
from tracking_service.schemas import (
    DriverInfo,
    ErrorMessage,
    LocationUpdateMessage,
    PersonnelCoordinates,
    PersonnelLocation,
    PublicCoordinates,
    PublicEstimatedArrival,
    PublicLocation,
    StatusUpdateMessage,
    StopTrackingMessage,
    TrackDeliveryMessage,
    client_message_adapter,
)
from tracking_service.status_handler import Publisher, StatusTransitionHandler
from tracking_service.store import DeliveryStateStore
from tracking_service.subscription_handler import TrackingSubscriptionHandler
from tracking_service.ws_manager import Connection, RoomRegistry, personal_room

logger = logging.getLogger("tracking-service")

CLIENT_EVENTS = ("location_update", "delivery_status_update", "track_delivery", "stop_tracking")


def describe_validation_error(event_type: Optional[str], exc: ValidationError) -> str:
    if event_type not in CLIENT_EVENTS:
        return f"Unknown event type '{event_type}'"
    first = exc.errors()[0]
    where = ".".join(str(part) for part in first.get("loc", ()) if part != event_type)
    return f"Invalid {event_type} payload: {where or 'data'}: {first.get('msg')}"


class DeliveryTrackingService:
    """
    The real-time tracking protocol behind the socket endpoint.

    Every collaborator is handed in once at construction: the store, the
    room registry used for fan-out and the domain event publisher.
    """

    def __init__(
        self,
        store: DeliveryStateStore,
        rooms: Optional[RoomRegistry] = None,
        publisher: Publisher = publish_event,
        average_speed_kmh: float = AVERAGE_SPEED_KMH,
    ):
        self.store = store
        self.rooms = rooms or RoomRegistry()
        self.locks = DeliveryLocks()
        self.locations = LocationIngestHandler(store, self.rooms, self.locks, average_speed_kmh)
        self.statuses = StatusTransitionHandler(store, self.rooms, self.locks, publisher)
        self.subscriptions = TrackingSubscriptionHandler(store, self.rooms, average_speed_kmh)

    # -------------------------
    # Connection lifecycle
    # -------------------------
    def connect(self, connection: Connection):
        identity = connection.identity
        self.rooms.register(connection)
        if not identity.is_anonymous:
            self.rooms.join(connection, personal_room(identity.role.value, identity.id))
        ACTIVE_CONNECTIONS.inc()
        logger.info(f"[CONNECT][{identity.trace_id}] User connected: {identity.id or 'anonymous'}, role: {identity.role.value}")

    def disconnect(self, connection: Connection):
        self.rooms.unregister(connection)
        ACTIVE_CONNECTIONS.dec()
        logger.info(f"[DISCONNECT][{connection.identity.trace_id}] User disconnected: {connection.identity.id or 'anonymous'}")

    # -------------------------
    # Inbound messages
    # -------------------------
    async def handle_message(self, connection: Connection, raw: Any):
        """
        Validate one inbound frame and run its handler. Failures are logged
        and answered with an `error` event to this connection only.
        """
        event_type = None
        try:
            if isinstance(raw, (str, bytes)):
                try:
                    raw = json.loads(raw)
                except ValueError:
                    raise ValidationFailed("Malformed message: expected a JSON object")
            if not isinstance(raw, dict):
                raise ValidationFailed("Malformed message: expected a JSON object")

            event_type = raw.get("type")
            try:
                message = client_message_adapter.validate_python(raw)
            except ValidationError as exc:
                raise ValidationFailed(describe_validation_error(event_type, exc))

            await self.dispatch(connection, message)
        except TrackingError as exc:
            await self._reject(connection, event_type, raw, exc, str(exc))
        except Exception as exc:
            logger.exception(f"[ERROR][{connection.identity.trace_id}] Unhandled error in '{event_type}'")
            await self._reject(connection, event_type, raw, exc, "Internal server error")

    async def dispatch(self, connection: Connection, message):
        identity = connection.identity
        if isinstance(message, LocationUpdateMessage):
            await self.locations.handle(identity, message.data)
        elif isinstance(message, StatusUpdateMessage):
            await self.statuses.handle(identity, message.data)
        elif isinstance(message, TrackDeliveryMessage):
            await self.subscriptions.subscribe(connection, message.data)
        elif isinstance(message, StopTrackingMessage):
            self.subscriptions.unsubscribe(connection, message.data)

    async def _reject(self, connection: Connection, event_type, raw, exc: Exception, message: str):
        identity = connection.identity
        delivery_id = None
        if isinstance(raw, dict):
            data = raw.get("data")
            delivery_id = data.get("deliveryId") if isinstance(data, dict) else data
        PROTOCOL_ERRORS.labels(event_type=str(event_type), kind=type(exc).__name__).inc()
        logger.error(
            f"[ERROR][{identity.trace_id}] {type(exc).__name__} on '{event_type}' "
            f"conn={connection.id} user={identity.id or 'anonymous'} role={identity.role.value} "
            f"delivery={delivery_id}: {message}"
        )
        await self.rooms.send_to(connection, "error", ErrorMessage(message=message).to_wire())

    # -------------------------
    # Read model for the unauthenticated HTTP path
    # -------------------------
    async def public_location(self, delivery_id: Optional[str] = None, order_id: Optional[str] = None) -> PublicLocation:
        if delivery_id:
            delivery = await self.store.find_delivery_by_id(delivery_id)
        else:
            delivery = await self.store.find_delivery_by_order_id(order_id)
        if delivery is None:
            raise DeliveryNotFound(delivery_id)

        driver = await self.store.find_driver_by_user_id(delivery.driver_id) if delivery.driver_id else None
        if driver is None or driver.current_location is None:
            raise NotFound("Delivery personnel location not available")

        estimated_arrival = None
        if delivery.current_eta is not None:
            estimated_arrival = PublicEstimatedArrival(
                estimated_minutes=delivery.current_eta,
                estimated_time=datetime.utcnow() + timedelta(minutes=delivery.current_eta),
            )

        return PublicLocation(
            delivery_id=delivery.id,
            order_id=delivery.order_id,
            status=delivery.status,
            location=PublicCoordinates(
                latitude=driver.current_location.latitude,
                longitude=driver.current_location.longitude,
                last_update=driver.last_location_update_time,
            ),
            estimated_arrival=estimated_arrival,
            driver_info=DriverInfo(name=driver.name, phone=driver.phone, rating=driver.rating),
        )

    async def driver_location(self, user_id: str) -> PersonnelLocation:
        driver = await self.store.find_driver_by_user_id(user_id)
        if driver is None:
            raise DriverNotFound(user_id)
        if driver.current_location is None:
            raise NotFound("Delivery personnel location not available")

        return PersonnelLocation(
            location=PersonnelCoordinates(
                latitude=driver.current_location.latitude,
                longitude=driver.current_location.longitude,
                last_updated=driver.last_location_update_time,
            )
        )
