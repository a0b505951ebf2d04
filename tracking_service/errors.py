# tracking_service/errors.py


class TrackingError(Exception):
    """Base class for failures that are reported back to the requester."""
    status_code = 400


class AuthenticationFailed(TrackingError):
    """Bad or expired credential presented at connect time."""
    status_code = 401


class AuthorizationDenied(TrackingError):
    """Role or ownership mismatch on a specific action."""
    status_code = 403


class NotFound(TrackingError):
    status_code = 404


class DeliveryNotFound(NotFound):
    def __init__(self, delivery_id=None):
        super().__init__("Delivery not found")
        self.delivery_id = delivery_id


class DriverNotFound(NotFound):
    def __init__(self, user_id=None):
        super().__init__("Delivery personnel not found")
        self.user_id = user_id


class ValidationFailed(TrackingError):
    """Malformed payload or out-of-range values."""


class InvalidTransition(TrackingError):
    """Requested status is not reachable from the current status."""
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change delivery status from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested
