import os
import time
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

SPLUNK_REALM = os.getenv("SPLUNK_REALM", "us1")
SPLUNK_ACCESS_TOKEN = os.getenv("SPLUNK_ACCESS_TOKEN", "")

# Event types emitted by the draw services
EVENT_FINALIZE_RACE_LOST = "luckydraw.finalize_race_lost"
EVENT_POOL_CLEANUP_FAILED = "luckydraw.pool_cleanup_failed"
EVENT_LEASE_LOST = "luckydraw.lease_lost"


async def send_draw_event(
    event_type: str,
    service: str,
    dimensions: Optional[dict] = None,
    properties: Optional[dict] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Post a custom event to Splunk Observability. Returns False when skipped or rejected."""
    if not SPLUNK_ACCESS_TOKEN:
        logger.debug(f"SPLUNK_ACCESS_TOKEN not set, skipping event: {event_type}")
        return False

    url = f"https://ingest.{SPLUNK_REALM}.signalfx.com/v2/event"

    payload = [{
        "category": "USER_DEFINED",
        "eventType": event_type,
        "dimensions": {
            "service": service,
            "environment": os.getenv("DEPLOYMENT_ENV", "production"),
            **(dimensions or {}),
        },
        "properties": properties or {},
        "timestamp": int(time.time() * 1000),
    }]
    headers = {"Content-Type": "application/json", "X-SF-Token": SPLUNK_ACCESS_TOKEN}

    try:
        if client is not None:
            response = await client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as own_client:
                response = await own_client.post(url, json=payload, headers=headers)
    except httpx.HTTPError as e:
        logger.error(f"Error sending Splunk event: {e}")
        return False

    if response.status_code in (200, 202):
        logger.info(f"Sent Splunk event: {event_type}")
        return True

    logger.warning(f"Failed to send Splunk event {event_type}: {response.status_code}")
    return False
