# tracking_service/models.py
from datetime import datetime
from sqlalchemy import Table, Column, String, Float, Integer, Boolean, DateTime, Text

from tracking_service.database import metadata

# Geo-points are stored as (lng, lat) column pairs.

deliveries = Table(
    "deliveries",
    metadata,
    Column("id", String, primary_key=True),
    Column("order_id", String, nullable=False, unique=True),
    Column("driver_id", String, nullable=True, index=True),
    Column("restaurant_id", String, nullable=False, index=True),
    Column("restaurant_name", String, nullable=False, default=""),
    Column("restaurant_address", String, nullable=False, default=""),
    Column("restaurant_lng", Float, nullable=True),
    Column("restaurant_lat", Float, nullable=True),
    Column("customer_id", String, nullable=False, index=True),
    Column("customer_name", String, nullable=False, default=""),
    Column("customer_address", String, nullable=False, default=""),
    Column("customer_phone", String, nullable=False, default=""),
    Column("customer_lng", Float, nullable=True),
    Column("customer_lat", Float, nullable=True),
    Column("status", String, nullable=False, default="pending", index=True),
    Column("distance", Float, nullable=False, default=0.0),
    Column("estimated_delivery_time", Float, nullable=False, default=0.0),
    Column("delivery_fee", Float, nullable=False, default=0.0),
    Column("driver_earnings", Float, nullable=False, default=0.0),
    Column("current_eta", Integer, nullable=True),
    Column("actual_delivery_time", Integer, nullable=True),
    Column("assigned_at", DateTime, nullable=True),
    Column("picked_up_at", DateTime, nullable=True),
    Column("delivered_at", DateTime, nullable=True),
    Column("cancelled_at", DateTime, nullable=True),
    Column("cancellation_reason", String, nullable=True),
    Column("notes", Text, nullable=True),
    Column("last_location_lng", Float, nullable=True),
    Column("last_location_lat", Float, nullable=True),
    Column("last_location_at", DateTime, nullable=True),
    Column("created_at", DateTime, default=datetime.utcnow),
    Column("updated_at", DateTime, default=datetime.utcnow),
)

delivery_personnel = Table(
    "delivery_personnel",
    metadata,
    Column("user_id", String, primary_key=True),
    Column("name", String, nullable=False, default=""),
    Column("email", String, nullable=False, default=""),
    Column("phone", String, nullable=False, default=""),
    Column("vehicle_type", String, nullable=False, default=""),
    Column("license_number", String, nullable=False, default=""),
    Column("current_lng", Float, nullable=True),
    Column("current_lat", Float, nullable=True),
    Column("is_available", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("rating", Float, nullable=False, default=0.0),
    Column("last_location_update_time", DateTime, nullable=True),
)

location_history = Table(
    "location_history",
    metadata,
    Column("id", String, primary_key=True),
    Column("driver_id", String, nullable=False, index=True),
    Column("delivery_id", String, nullable=True, index=True),
    Column("lng", Float, nullable=False),
    Column("lat", Float, nullable=False),
    Column("timestamp", DateTime, default=datetime.utcnow),
)
