"""Datadog Events API client used to page on alarms.

Events whose text mentions ``@pagerduty`` are forwarded by Datadog to the
linked PagerDuty service.
"""

import logging
import socket
import time
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_SITE = "datadoghq.com"


def build_stream_event(
    title: str,
    text: str,
    tags: Optional[Dict[str, str]] = None,
    alert_type: str = "error",
    priority: str = "normal",
    hostname: Optional[str] = None,
) -> dict:
    """Build the JSON body for ``POST /api/v1/events``."""
    return {
        "title": title,
        "text": text,
        "alert_type": alert_type,
        "priority": priority,
        "host": hostname or socket.gethostname(),
        "date_happened": int(time.time()),
        "tags": [f"{key}:{value}" for key, value in sorted((tags or {}).items())],
    }


def send_stream_event(event: dict, api_key: str, site: str = DEFAULT_SITE, timeout: float = 10):
    """
    Submit an event to Datadog.

    Raises requests.RequestException on network errors and non-2xx responses.
    """
    resp = requests.post(
        f"https://api.{site}/api/v1/events",
        json=event,
        headers={"DD-API-KEY": api_key, "Content-Type": "application/json"},
        timeout=timeout,
    )
    resp.raise_for_status()
    logger.debug(f"Datadog accepted event {event['title']!r}: HTTP {resp.status_code}")
