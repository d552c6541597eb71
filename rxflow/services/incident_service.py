"""rxflow — Incident reporting for the admin-visible error stream.

Only external-service and unexpected failures are incidents. Validation, authorization
and conflict rejections are expected traffic and are never reported here.
"""
import logging
from typing import Any

from rxflow.services.notification_service import EVENT_INCIDENT, NotificationSink, publish_event

logger = logging.getLogger(__name__)


def report_incident(
    sink: NotificationSink | None,
    source: str,
    exc: BaseException,
    context: dict[str, Any] | None = None,
) -> None:
    """Log at ERROR and forward to the sink. Never raises."""
    logger.error("[%s] %s: %s", source, type(exc).__name__, exc, exc_info=exc)
    publish_event(
        sink,
        EVENT_INCIDENT,
        {
            "source": source,
            "error_type": type(exc).__name__,
            "message": str(exc),
            "context": context or {},
        },
    )
