import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    customer = "customer"
    restaurant = "restaurant"
    delivery = "delivery"
    admin = "admin"
    anonymous = "anonymous"


class DeliveryStatus(str, Enum):
    pending = "pending"
    assigned = "assigned"
    picked_up = "picked_up"
    in_transit = "in_transit"
    delivered = "delivered"
    cancelled = "cancelled"


# -------------------------
# Domain records
# -------------------------
class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float]  # [longitude, latitude]

    @classmethod
    def from_lat_lng(cls, latitude: float, longitude: float) -> "GeoPoint":
        return cls(coordinates=[longitude, latitude])

    @property
    def longitude(self) -> float:
        return self.coordinates[0]

    @property
    def latitude(self) -> float:
        return self.coordinates[1]


class LastLocationUpdate(BaseModel):
    coordinates: List[float]  # [longitude, latitude]
    timestamp: datetime


class Delivery(BaseModel):
    id: str
    order_id: str
    driver_id: Optional[str] = None

    restaurant_id: str
    restaurant_name: str = ""
    restaurant_address: str = ""
    restaurant_location: Optional[GeoPoint] = None

    customer_id: str
    customer_name: str = ""
    customer_address: str = ""
    customer_phone: str = ""
    customer_location: Optional[GeoPoint] = None

    status: DeliveryStatus = DeliveryStatus.pending

    # set when the delivery is created, never touched by tracking
    distance: float = 0.0
    estimated_delivery_time: float = 0.0
    delivery_fee: float = 0.0
    driver_earnings: float = 0.0

    current_eta: Optional[int] = None
    actual_delivery_time: Optional[int] = None
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None
    last_location_update: Optional[LastLocationUpdate] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class DriverPresence(BaseModel):
    user_id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    vehicle_type: str = ""
    license_number: str = ""
    current_location: Optional[GeoPoint] = None
    is_available: bool = False
    is_active: bool = True
    rating: float = 0.0
    last_location_update_time: Optional[datetime] = None


class LocationHistoryEntry(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    driver_id: str
    delivery_id: Optional[str] = None
    coordinates: List[float]  # [longitude, latitude]
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class Identity(BaseModel):
    """Who is on the other end of a connection."""
    id: Optional[str] = None
    role: Role = Role.anonymous
    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_anonymous(self) -> bool:
        return self.role == Role.anonymous or not self.id


# -------------------------
# Wire models (camelCase on the socket and HTTP)
# -------------------------
class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class LocationUpdatePayload(WireModel):
    latitude: float
    longitude: float
    delivery_id: Optional[str] = None


class StatusUpdatePayload(WireModel):
    delivery_id: str
    status: DeliveryStatus
    notes: Optional[str] = None


class LocationUpdateMessage(BaseModel):
    type: Literal["location_update"]
    data: LocationUpdatePayload


class StatusUpdateMessage(BaseModel):
    type: Literal["delivery_status_update"]
    data: StatusUpdatePayload


class TrackDeliveryMessage(BaseModel):
    type: Literal["track_delivery"]
    data: str


class StopTrackingMessage(BaseModel):
    type: Literal["stop_tracking"]
    data: str


ClientMessage = Annotated[
    Union[LocationUpdateMessage, StatusUpdateMessage, TrackDeliveryMessage, StopTrackingMessage],
    Field(discriminator="type"),
]
client_message_adapter = TypeAdapter(ClientMessage)


class Coordinates(WireModel):
    latitude: float
    longitude: float


class EstimatedArrival(WireModel):
    estimated_minutes: Optional[int] = None
    estimated_arrival_time: Optional[datetime] = None
    remaining_distance: Optional[float] = None


class LocationBroadcast(WireModel):
    delivery_id: str
    location: Coordinates
    timestamp: datetime
    status: DeliveryStatus
    estimated_arrival: EstimatedArrival


class DeliveryTrackingBroadcast(LocationBroadcast):
    order_id: str


class StatusBroadcast(WireModel):
    delivery_id: str
    order_id: str
    status: DeliveryStatus
    timestamp: datetime


class ErrorMessage(WireModel):
    message: str


# -------------------------
# HTTP responses
# -------------------------
class PublicCoordinates(WireModel):
    latitude: float
    longitude: float
    last_update: Optional[datetime] = None


class PublicEstimatedArrival(WireModel):
    estimated_minutes: int
    estimated_time: datetime


class DriverInfo(WireModel):
    name: str
    phone: str
    rating: float


class PublicLocation(WireModel):
    delivery_id: str
    order_id: str
    status: DeliveryStatus
    location: PublicCoordinates
    estimated_arrival: Optional[PublicEstimatedArrival] = None
    driver_info: DriverInfo


class UpdatedLocation(WireModel):
    latitude: float
    longitude: float
    updated_at: datetime


class LocationPushResponse(WireModel):
    message: str
    location: UpdatedLocation


class PersonnelCoordinates(WireModel):
    latitude: float
    longitude: float
    last_updated: Optional[datetime] = None


class PersonnelLocation(WireModel):
    location: PersonnelCoordinates
