# tracking_service/main.py
import os
import uuid
import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from tracking_service.auth import authenticate_connection, bearer_token, login_required
from tracking_service.database import DATABASE_URL, make_database, make_engine
from tracking_service.errors import AuthenticationFailed, TrackingError
from tracking_service.events import publish_event
from tracking_service.schemas import (
    Identity,
    LocationPushResponse,
    LocationUpdatePayload,
    PersonnelLocation,
    PublicLocation,
    UpdatedLocation,
)
from tracking_service.service import DeliveryTrackingService
from tracking_service.status_handler import Publisher
from tracking_service.store import DeliveryStateStore, SqlDeliveryStore
from tracking_service.ws_manager import Connection, RoomRegistry

load_dotenv()

logger = logging.getLogger("tracking-service")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    fmt = "[%(asctime)s] [%(levelname)s] %(message)s"
    handler.setFormatter(logging.Formatter(fmt))
    logger.addHandler(handler)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# WebSocket close code for policy violations (bad credential)
WS_POLICY_VIOLATION = 1008


def raise_http(exc: TrackingError):
    raise HTTPException(status_code=exc.status_code, detail=str(exc))


def create_app(
    store: Optional[DeliveryStateStore] = None,
    publisher: Publisher = publish_event,
) -> FastAPI:
    if store is None:
        store = SqlDeliveryStore(make_database(DATABASE_URL), engine=make_engine(DATABASE_URL))

    rooms = RoomRegistry()
    service = DeliveryTrackingService(store, rooms=rooms, publisher=publisher)

    app = FastAPI(title="Tracking Service")
    app.state.store = store
    app.state.rooms = rooms
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------
    # Startup / Shutdown
    # -------------------------
    @app.on_event("startup")
    async def startup():
        await store.connect()
        logger.info("🚀 Tracking service started.")

    @app.on_event("shutdown")
    async def shutdown():
        await store.disconnect()
        logger.info("Tracking service shut down.")

    # -------------------------
    # Middleware for trace_id
    # -------------------------
    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        trace_id = request.headers.get("x-trace-id") or str(uuid.uuid4())
        request.state.trace_id = trace_id
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id
        return response

    # -------------------------
    # Real-time tracking socket
    # -------------------------
    @app.websocket("/ws/tracking")
    async def tracking_ws(websocket: WebSocket):
        token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
        trace_id = websocket.headers.get("x-trace-id") or str(uuid.uuid4())

        try:
            identity = authenticate_connection(token, trace_id=trace_id)
        except AuthenticationFailed as exc:
            logger.error(f"[WS][{trace_id}] Socket authentication error: {exc}")
            await websocket.close(code=WS_POLICY_VIOLATION, reason=str(exc))
            return

        await websocket.accept()
        connection = Connection(websocket, identity)
        service.connect(connection)
        try:
            while True:
                message = await websocket.receive_text()
                await service.handle_message(connection, message)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception(f"[WS][{trace_id}] Socket error for user {identity.id or 'anonymous'}")
        finally:
            service.disconnect(connection)

    # -------------------------
    # HTTP location push (same path as the socket event) and driver read
    # -------------------------
    @app.post("/locations/update", response_model=LocationPushResponse)
    async def update_location(payload: LocationUpdatePayload, user: Identity = Depends(login_required)):
        try:
            driver = await service.locations.handle(user, payload)
        except TrackingError as exc:
            logger.error(f"[HTTP][{user.trace_id}] Update location error: {exc}")
            raise_http(exc)

        return LocationPushResponse(
            message="Location updated successfully",
            location=UpdatedLocation(
                latitude=payload.latitude,
                longitude=payload.longitude,
                updated_at=driver.last_location_update_time,
            ),
        )

    @app.get("/locations/personnel/{user_id}", response_model=PersonnelLocation)
    async def personnel_location(user_id: str, user: Identity = Depends(login_required)):
        try:
            return await service.driver_location(user_id)
        except TrackingError as exc:
            logger.error(f"[HTTP][{user.trace_id}] Get delivery personnel location error: {exc}")
            raise_http(exc)

    # -------------------------
    # Public read path for shared tracking links
    # -------------------------
    @app.get("/public/deliveries/{delivery_id}/location", response_model=PublicLocation)
    async def public_delivery_location(delivery_id: str):
        try:
            return await service.public_location(delivery_id=delivery_id)
        except TrackingError as exc:
            raise_http(exc)

    @app.get("/public/orders/{order_id}/location", response_model=PublicLocation)
    async def public_order_location(order_id: str):
        try:
            return await service.public_location(order_id=order_id)
        except TrackingError as exc:
            raise_http(exc)

    # -------------------------
    # Health / Metrics
    # -------------------------
    @app.get("/health")
    async def health():
        return {"status": "tracking-service healthy", "connections": len(rooms.connections)}

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
