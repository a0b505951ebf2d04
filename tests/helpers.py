import asyncio
from datetime import datetime, timedelta

from jose import jwt

from tracking_service import auth
from tracking_service.schemas import Delivery, DeliveryStatus, DriverPresence, GeoPoint, Identity, Role
from tracking_service.ws_manager import Connection


def run(coro):
    return asyncio.run(coro)


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)

    def events(self, event_type=None):
        return [m for m in self.sent if event_type is None or m["type"] == event_type]


class BrokenSocket:
    async def send_json(self, message):
        raise RuntimeError("socket closed")


class RecordingPublisher:
    def __init__(self):
        self.published = []

    async def __call__(self, event_type, data, trace_id=None):
        self.published.append((event_type, data))
        return True


def make_token(sub, role, minutes=30, secret=None):
    payload = {"sub": sub, "role": role, "exp": datetime.utcnow() + timedelta(minutes=minutes)}
    return jwt.encode(payload, secret or auth.JWT_SECRET, algorithm=auth.JWT_ALGORITHM)


def make_delivery(**overrides):
    data = dict(
        id="Del1",
        order_id="O1",
        driver_id="D1",
        restaurant_id="R1",
        restaurant_name="Pasta Place",
        restaurant_address="1 Market St",
        restaurant_location=GeoPoint(coordinates=[2.1, 1.0]),
        customer_id="C1",
        customer_name="Chris",
        customer_address="9 Elm St",
        customer_phone="555-0100",
        customer_location=GeoPoint(coordinates=[0.18, 0.0]),
        status=DeliveryStatus.assigned,
        distance=4.2,
        estimated_delivery_time=25,
        delivery_fee=5.0,
        driver_earnings=4.0,
        assigned_at=datetime.utcnow() - timedelta(minutes=30),
    )
    data.update(overrides)
    return Delivery(**data)


def make_driver(**overrides):
    data = dict(user_id="D1", name="Dana", phone="555-0199", rating=4.8, is_available=False)
    data.update(overrides)
    return DriverPresence(**data)


def connect(service, user_id=None, role=Role.anonymous):
    connection = Connection(FakeSocket(), Identity(id=user_id, role=role))
    service.connect(connection)
    return connection
