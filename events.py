import logging

import requests

from database import db

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"


def fire_webhooks(event: str, payload: dict):
    """POST the event to every active hook subscribed to it (or to everything)."""
    hooks = list(db["webhook"].find({"active": True}))
    for h in hooks:
        events = h.get("events") or []
        if events and event not in events:
            continue
        try:
            requests.post(h.get("url"), json={"event": event, "data": payload}, timeout=2)
        except requests.RequestException as e:
            logger.warning("Webhook %s failed for %s: %s", h.get("url"), event, e)
