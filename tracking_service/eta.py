# tracking_service/eta.py
import math
import os
import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from tracking_service.schemas import Delivery, DeliveryStatus, EstimatedArrival

logger = logging.getLogger("tracking-service.eta")

EARTH_RADIUS_KM = 6371.0088
AVERAGE_SPEED_KMH = float(os.getenv("AVERAGE_SPEED_KMH", "20"))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def destination_for(delivery: Delivery):
    """Restaurant while the driver is still heading to pickup, customer afterwards."""
    if delivery.status == DeliveryStatus.assigned:
        return delivery.restaurant_location
    return delivery.customer_location


def estimate(
    delivery: Delivery,
    current_coordinates: Sequence[float],
    average_speed_kmh: float = AVERAGE_SPEED_KMH,
    now: Optional[datetime] = None,
) -> EstimatedArrival:
    """
    Remaining distance and minutes to the current destination.

    current_coordinates is [longitude, latitude]. Never raises: any failure
    gives an EstimatedArrival with every field set to None.
    """
    try:
        destination = destination_for(delivery)
        if destination is None:
            raise ValueError(f"delivery {delivery.id} has no destination for status {delivery.status.value}")

        longitude, latitude = float(current_coordinates[0]), float(current_coordinates[1])
        if not (math.isfinite(longitude) and math.isfinite(latitude)):
            raise ValueError(f"coordinates are not finite: {current_coordinates}")

        distance_km = round(haversine_km(latitude, longitude, destination.latitude, destination.longitude), 1)
        minutes = math.ceil(distance_km / average_speed_kmh * 60)
        arrival = (now or datetime.utcnow()) + timedelta(minutes=minutes)
        return EstimatedArrival(
            estimated_minutes=minutes,
            estimated_arrival_time=arrival,
            remaining_distance=distance_km,
        )
    except Exception as e:
        logger.error(f"[ETA] Error calculating estimated arrival for delivery {delivery.id}: {e}")
        return EstimatedArrival()
