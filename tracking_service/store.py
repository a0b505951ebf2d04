# tracking_service/store.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from databases import Database
from sqlalchemy import select

from tracking_service.database import metadata
from tracking_service.models import deliveries, delivery_personnel, location_history
from tracking_service.schemas import (
    Delivery,
    DriverPresence,
    GeoPoint,
    LastLocationUpdate,
    LocationHistoryEntry,
)

logger = logging.getLogger("tracking-service.store")


class DeliveryStateStore:
    """
    Document-style access to deliveries, driver presence and location history.

    Reads hand back detached copies; nothing is persisted until the caller
    saves it.
    """

    async def connect(self):
        pass

    async def disconnect(self):
        pass

    async def find_delivery_by_id(self, delivery_id: str) -> Optional[Delivery]:
        raise NotImplementedError

    async def find_delivery_by_order_id(self, order_id: str) -> Optional[Delivery]:
        raise NotImplementedError

    async def save_delivery(self, delivery: Delivery) -> Delivery:
        raise NotImplementedError

    async def find_driver_by_user_id(self, user_id: str) -> Optional[DriverPresence]:
        raise NotImplementedError

    async def save_driver(self, driver: DriverPresence) -> DriverPresence:
        raise NotImplementedError

    async def upsert_driver_location(self, user_id: str, location: GeoPoint, timestamp: datetime) -> DriverPresence:
        raise NotImplementedError

    async def set_driver_available(self, user_id: str, available: bool) -> Optional[DriverPresence]:
        raise NotImplementedError

    async def append_location_history(self, entry: LocationHistoryEntry) -> LocationHistoryEntry:
        raise NotImplementedError


class InMemoryDeliveryStore(DeliveryStateStore):
    def __init__(self):
        self.deliveries: Dict[str, Delivery] = {}
        self.drivers: Dict[str, DriverPresence] = {}
        self.location_history: List[LocationHistoryEntry] = []

    async def find_delivery_by_id(self, delivery_id: str) -> Optional[Delivery]:
        delivery = self.deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def find_delivery_by_order_id(self, order_id: str) -> Optional[Delivery]:
        for delivery in self.deliveries.values():
            if delivery.order_id == order_id:
                return delivery.model_copy(deep=True)
        return None

    async def save_delivery(self, delivery: Delivery) -> Delivery:
        self.deliveries[delivery.id] = delivery.model_copy(deep=True)
        return delivery

    async def find_driver_by_user_id(self, user_id: str) -> Optional[DriverPresence]:
        driver = self.drivers.get(user_id)
        return driver.model_copy(deep=True) if driver else None

    async def save_driver(self, driver: DriverPresence) -> DriverPresence:
        self.drivers[driver.user_id] = driver.model_copy(deep=True)
        return driver

    async def upsert_driver_location(self, user_id: str, location: GeoPoint, timestamp: datetime) -> DriverPresence:
        driver = self.drivers.get(user_id) or DriverPresence(user_id=user_id)
        driver = driver.model_copy(update={
            "current_location": location.model_copy(),
            "last_location_update_time": timestamp,
        })
        self.drivers[user_id] = driver
        return driver.model_copy(deep=True)

    async def set_driver_available(self, user_id: str, available: bool) -> Optional[DriverPresence]:
        driver = self.drivers.get(user_id)
        if driver is None:
            return None
        driver = driver.model_copy(update={"is_available": available})
        self.drivers[user_id] = driver
        return driver.model_copy(deep=True)

    async def append_location_history(self, entry: LocationHistoryEntry) -> LocationHistoryEntry:
        self.location_history.append(entry.model_copy(deep=True))
        return entry


# -------------------------
# SQL (SQLAlchemy Core tables over the async `databases` client)
# -------------------------
def _point(lng: Optional[float], lat: Optional[float]) -> Optional[GeoPoint]:
    if lng is None or lat is None:
        return None
    return GeoPoint(coordinates=[lng, lat])


def _split(point: Optional[GeoPoint]):
    if point is None:
        return None, None
    return point.longitude, point.latitude


def delivery_from_row(row: Mapping[str, Any]) -> Delivery:
    data = dict(row)
    last_update = None
    if data.get("last_location_lng") is not None and data.get("last_location_lat") is not None:
        last_update = LastLocationUpdate(
            coordinates=[data["last_location_lng"], data["last_location_lat"]],
            timestamp=data.get("last_location_at") or data.get("updated_at"),
        )
    return Delivery(
        id=data["id"],
        order_id=data["order_id"],
        driver_id=data.get("driver_id"),
        restaurant_id=data["restaurant_id"],
        restaurant_name=data.get("restaurant_name") or "",
        restaurant_address=data.get("restaurant_address") or "",
        restaurant_location=_point(data.get("restaurant_lng"), data.get("restaurant_lat")),
        customer_id=data["customer_id"],
        customer_name=data.get("customer_name") or "",
        customer_address=data.get("customer_address") or "",
        customer_phone=data.get("customer_phone") or "",
        customer_location=_point(data.get("customer_lng"), data.get("customer_lat")),
        status=data["status"],
        distance=data.get("distance") or 0.0,
        estimated_delivery_time=data.get("estimated_delivery_time") or 0.0,
        delivery_fee=data.get("delivery_fee") or 0.0,
        driver_earnings=data.get("driver_earnings") or 0.0,
        current_eta=data.get("current_eta"),
        actual_delivery_time=data.get("actual_delivery_time"),
        assigned_at=data.get("assigned_at"),
        picked_up_at=data.get("picked_up_at"),
        delivered_at=data.get("delivered_at"),
        cancelled_at=data.get("cancelled_at"),
        cancellation_reason=data.get("cancellation_reason"),
        notes=data.get("notes"),
        last_location_update=last_update,
        created_at=data.get("created_at") or datetime.utcnow(),
        updated_at=data.get("updated_at") or datetime.utcnow(),
    )


def delivery_to_row(delivery: Delivery) -> Dict[str, Any]:
    restaurant_lng, restaurant_lat = _split(delivery.restaurant_location)
    customer_lng, customer_lat = _split(delivery.customer_location)
    last = delivery.last_location_update
    return {
        "id": delivery.id,
        "order_id": delivery.order_id,
        "driver_id": delivery.driver_id,
        "restaurant_id": delivery.restaurant_id,
        "restaurant_name": delivery.restaurant_name,
        "restaurant_address": delivery.restaurant_address,
        "restaurant_lng": restaurant_lng,
        "restaurant_lat": restaurant_lat,
        "customer_id": delivery.customer_id,
        "customer_name": delivery.customer_name,
        "customer_address": delivery.customer_address,
        "customer_phone": delivery.customer_phone,
        "customer_lng": customer_lng,
        "customer_lat": customer_lat,
        "status": delivery.status.value,
        "distance": delivery.distance,
        "estimated_delivery_time": delivery.estimated_delivery_time,
        "delivery_fee": delivery.delivery_fee,
        "driver_earnings": delivery.driver_earnings,
        "current_eta": delivery.current_eta,
        "actual_delivery_time": delivery.actual_delivery_time,
        "assigned_at": delivery.assigned_at,
        "picked_up_at": delivery.picked_up_at,
        "delivered_at": delivery.delivered_at,
        "cancelled_at": delivery.cancelled_at,
        "cancellation_reason": delivery.cancellation_reason,
        "notes": delivery.notes,
        "last_location_lng": last.coordinates[0] if last else None,
        "last_location_lat": last.coordinates[1] if last else None,
        "last_location_at": last.timestamp if last else None,
        "created_at": delivery.created_at,
        "updated_at": delivery.updated_at,
    }


def driver_from_row(row: Mapping[str, Any]) -> DriverPresence:
    data = dict(row)
    return DriverPresence(
        user_id=data["user_id"],
        name=data.get("name") or "",
        email=data.get("email") or "",
        phone=data.get("phone") or "",
        vehicle_type=data.get("vehicle_type") or "",
        license_number=data.get("license_number") or "",
        current_location=_point(data.get("current_lng"), data.get("current_lat")),
        is_available=bool(data.get("is_available")),
        is_active=bool(data.get("is_active")),
        rating=data.get("rating") or 0.0,
        last_location_update_time=data.get("last_location_update_time"),
    )


def driver_to_row(driver: DriverPresence) -> Dict[str, Any]:
    current_lng, current_lat = _split(driver.current_location)
    return {
        "user_id": driver.user_id,
        "name": driver.name,
        "email": driver.email,
        "phone": driver.phone,
        "vehicle_type": driver.vehicle_type,
        "license_number": driver.license_number,
        "current_lng": current_lng,
        "current_lat": current_lat,
        "is_available": driver.is_available,
        "is_active": driver.is_active,
        "rating": driver.rating,
        "last_location_update_time": driver.last_location_update_time,
    }


class SqlDeliveryStore(DeliveryStateStore):
    def __init__(self, database: Database, engine=None):
        self.database = database
        self.engine = engine

    async def connect(self):
        if self.engine is not None:
            metadata.create_all(self.engine)
        if not self.database.is_connected:
            await self.database.connect()
        logger.info("📦 Tracking store connected.")

    async def disconnect(self):
        if self.database.is_connected:
            await self.database.disconnect()

    async def find_delivery_by_id(self, delivery_id: str) -> Optional[Delivery]:
        row = await self.database.fetch_one(deliveries.select().where(deliveries.c.id == delivery_id))
        return delivery_from_row(row._mapping) if row else None

    async def find_delivery_by_order_id(self, order_id: str) -> Optional[Delivery]:
        row = await self.database.fetch_one(deliveries.select().where(deliveries.c.order_id == order_id))
        return delivery_from_row(row._mapping) if row else None

    async def save_delivery(self, delivery: Delivery) -> Delivery:
        values = delivery_to_row(delivery)
        existing = await self.database.fetch_one(select(deliveries.c.id).where(deliveries.c.id == delivery.id))
        if existing:
            await self.database.execute(
                deliveries.update().where(deliveries.c.id == delivery.id).values(**values)
            )
        else:
            await self.database.execute(deliveries.insert().values(**values))
        return delivery

    async def find_driver_by_user_id(self, user_id: str) -> Optional[DriverPresence]:
        row = await self.database.fetch_one(
            delivery_personnel.select().where(delivery_personnel.c.user_id == user_id)
        )
        return driver_from_row(row._mapping) if row else None

    async def save_driver(self, driver: DriverPresence) -> DriverPresence:
        values = driver_to_row(driver)
        existing = await self.database.fetch_one(
            select(delivery_personnel.c.user_id).where(delivery_personnel.c.user_id == driver.user_id)
        )
        if existing:
            await self.database.execute(
                delivery_personnel.update()
                .where(delivery_personnel.c.user_id == driver.user_id)
                .values(**values)
            )
        else:
            await self.database.execute(delivery_personnel.insert().values(**values))
        return driver

    async def upsert_driver_location(self, user_id: str, location: GeoPoint, timestamp: datetime) -> DriverPresence:
        # only the location columns are written; availability belongs to status changes
        existing = await self.database.fetch_one(
            select(delivery_personnel.c.user_id).where(delivery_personnel.c.user_id == user_id)
        )
        if existing:
            await self.database.execute(
                delivery_personnel.update()
                .where(delivery_personnel.c.user_id == user_id)
                .values(
                    current_lng=location.longitude,
                    current_lat=location.latitude,
                    last_location_update_time=timestamp,
                )
            )
        else:
            driver = DriverPresence(user_id=user_id, current_location=location, last_location_update_time=timestamp)
            await self.database.execute(delivery_personnel.insert().values(**driver_to_row(driver)))
        return await self.find_driver_by_user_id(user_id)

    async def set_driver_available(self, user_id: str, available: bool) -> Optional[DriverPresence]:
        existing = await self.database.fetch_one(
            select(delivery_personnel.c.user_id).where(delivery_personnel.c.user_id == user_id)
        )
        if not existing:
            return None
        await self.database.execute(
            delivery_personnel.update()
            .where(delivery_personnel.c.user_id == user_id)
            .values(is_available=available)
        )
        return await self.find_driver_by_user_id(user_id)

    async def append_location_history(self, entry: LocationHistoryEntry) -> LocationHistoryEntry:
        await self.database.execute(
            location_history.insert().values(
                id=entry.id,
                driver_id=entry.driver_id,
                delivery_id=entry.delivery_id,
                lng=entry.coordinates[0],
                lat=entry.coordinates[1],
                timestamp=entry.timestamp,
            )
        )
        return entry
