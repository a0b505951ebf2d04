from prometheus_client import Counter, Gauge

LOCATION_UPDATES_PROCESSED = Counter(
    "tracking_location_updates_total",
    "Driver location pushes accepted",
    ["with_delivery"]
)

STATUS_TRANSITIONS = Counter(
    "tracking_status_transitions_total",
    "Delivery status transitions applied",
    ["status"]
)

TRACKING_SUBSCRIPTIONS = Counter(
    "tracking_subscriptions_total",
    "Successful track_delivery subscriptions"
)

PROTOCOL_ERRORS = Counter(
    "tracking_protocol_errors_total",
    "Requests answered with an error event",
    ["event_type", "kind"]
)

BROADCASTS_SENT = Counter(
    "tracking_broadcast_messages_total",
    "Messages fanned out to subscribers",
    ["event_type"]
)

ACTIVE_CONNECTIONS = Gauge(
    "tracking_active_connections",
    "Currently open tracking sockets"
)
