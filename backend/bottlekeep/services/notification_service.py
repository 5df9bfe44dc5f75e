# Overview: Fire-and-forget customer/staff notifications for deposit events.

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Optional

import httpx
from flask import current_app


NEW_DEPOSIT = "new_deposit"
DEPOSIT_EXPIRED = "deposit_expired"
WITHDRAWAL_COMPLETED = "withdrawal_completed"
DEPOSIT_EXPIRING = "deposit_expiring"

NOTIFICATION_TYPES = frozenset({NEW_DEPOSIT, DEPOSIT_EXPIRED, WITHDRAWAL_COMPLETED, DEPOSIT_EXPIRING})


@dataclass
class NotificationEvent:
    type: str
    store_id: int
    title: str
    body: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def _post(url: str, event: NotificationEvent, timeout: float) -> None:
    response = httpx.post(url, json=event.to_dict(), timeout=timeout)
    response.raise_for_status()


def notify(event: NotificationEvent) -> bool:
    """
    Hand an event to the delivery collaborator.

    Delivery is best effort: failures are logged and reported as False,
    never raised into the business operation that triggered them.
    """
    if event.type not in NOTIFICATION_TYPES:
        current_app.logger.warning("Dropping notification with unknown type %r", event.type)
        return False

    url: Optional[str] = current_app.config.get("NOTIFICATION_WEBHOOK_URL")
    if not url:
        current_app.logger.info(
            "notification %s store=%s: %s", event.type, event.store_id, event.title
        )
        return True

    timeout = float(current_app.config.get("NOTIFICATION_TIMEOUT_SECONDS", 5.0))
    try:
        _post(url, event, timeout)
    except (httpx.HTTPError, httpx.InvalidURL):
        current_app.logger.warning(
            "Notification delivery failed: type=%s store=%s", event.type, event.store_id, exc_info=True
        )
        return False
    return True
