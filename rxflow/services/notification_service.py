"""rxflow — Notification / audit sink.

Core operations hand copies of what they did (status changes, refunds, commissions,
incidents) to a sink. Publishing is fire-and-forget: a sink failure is logged and never
propagates into the operation that produced the event.
"""
import logging
from typing import Any, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)

# ── Event types ──────────────────────────────────────────────────────────────
EVENT_ORDER_STATUS_CHANGED = "order.status_changed"
EVENT_ORDER_CANCELLED = "order.cancelled"
EVENT_ORDER_REFUNDED = "order.refunded"
EVENT_COMMISSION_CREATED = "commission.created"
EVENT_INCIDENT = "incident"


class NotificationSink(Protocol):
    def publish(self, event_type: str, payload: dict[str, Any]) -> None: ...


class CeleryNotificationSink:
    """Enqueues ``deliver_event`` on the worker."""

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        from rxflow.tasks.notification_tasks import deliver_event

        deliver_event.delay(event_type, payload)


def publish_event(sink: NotificationSink | None, event_type: str, payload: dict[str, Any]) -> None:
    """Publish to ``sink``; never raises."""
    if sink is None:
        return
    try:
        sink.publish(event_type, _jsonable(payload))
    except Exception as exc:
        # Sink failure must not break the main request
        logger.error("Notification publish failed for %s: %s", event_type, exc, exc_info=True)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
