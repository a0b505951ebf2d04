# tracking_service/events.py
import os
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any

import aioboto3
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("tracking-service.events")
logger.setLevel(logging.INFO)

USE_AWS = os.getenv("USE_AWS", "False").lower() in ("true", "1", "yes")
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")

ORDER_QUEUE_URL = os.getenv("ORDER_QUEUE_URL")
NOTIFICATION_QUEUE_URL = os.getenv("NOTIFICATION_QUEUE_URL")
EVENT_BUS = os.getenv("EVENT_BUS_NAME")

SOURCE = "tracking-service"

session = aioboto3.Session()


def build_envelope(event_type: str, data: Dict[str, Any], trace_id: Optional[str] = None) -> Dict[str, Any]:
    now = datetime.utcnow()
    event_id = data.get("event_id") or f"{event_type}-{now.timestamp()}"
    data_with_id = dict(data)
    data_with_id["event_id"] = event_id
    return {
        "type": event_type,
        "data": data_with_id,
        "event_id": event_id,
        "timestamp": now.isoformat(),
        "source": SOURCE,
        "trace_id": trace_id,
    }


async def publish_event(event_type: str, data: Dict[str, Any], trace_id: Optional[str] = None) -> bool:
    """
    Publish a delivery event to the rest of the platform.

    Without AWS the event is only logged. With AWS it goes to the order and
    notification queues and, if configured, the EventBridge bus.
    Returns True when at least one remote target accepted it.
    """
    body = build_envelope(event_type, data, trace_id)

    if not USE_AWS:
        logger.info(f"[LOCAL EVENT] {event_type}: {json.dumps(body['data'], default=str)}")
        return True

    sent = False
    targets = [url for url in (ORDER_QUEUE_URL, NOTIFICATION_QUEUE_URL) if url]

    async with session.client("sqs", region_name=AWS_REGION) as sqs, \
               session.client("events", region_name=AWS_REGION) as evb:

        for queue in targets:
            try:
                await sqs.send_message(QueueUrl=queue, MessageBody=json.dumps(body, default=str))
                sent = True
                logger.info(f"[SQS] Event '{event_type}' sent to {queue}")
            except Exception as e:
                logger.warning(f"[SQS ERROR] Failed to send '{event_type}' to {queue}: {e}")

        if EVENT_BUS:
            try:
                await evb.put_events(Entries=[{
                    "Source": SOURCE,
                    "DetailType": event_type,
                    "Detail": json.dumps(body["data"], default=str),
                    "EventBusName": EVENT_BUS,
                }])
                sent = True
                logger.info(f"[EventBridge] Event '{event_type}' sent to {EVENT_BUS}")
            except Exception:
                logger.exception(f"[EventBridge ERROR] Failed to send '{event_type}'")

    return sent
