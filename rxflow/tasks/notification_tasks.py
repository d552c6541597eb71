"""rxflow — Notification delivery Celery tasks.

``deliver_event`` fans one core event out to every subscribed endpoint and persists
incidents to the error log. Each endpoint delivery is its own task so that retries of
a slow subscriber do not re-send to the others.
"""
import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone

import httpx
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from rxflow.config import get_settings
from rxflow.db.session import async_session_maker, engine
from rxflow.models.notification import ErrorLog, NotificationDelivery, NotificationEndpoint
from rxflow.services.notification_service import EVENT_INCIDENT
from rxflow.worker import celery_app

logger = logging.getLogger(__name__)

WILDCARD = "*"


def sign_payload(secret: str, body: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def endpoint_wants(endpoint_events: list[str] | None, event_type: str) -> bool:
    events = endpoint_events or []
    return WILDCARD in events or event_type in events


@celery_app.task
def deliver_event(event_type: str, payload: dict) -> list[str]:
    """Record incidents and queue one delivery per subscribed endpoint."""
    delivery_ids = asyncio.run(_fan_out(event_type, payload))
    for delivery_id in delivery_ids:
        deliver_notification.delay(delivery_id)
    return delivery_ids


async def _fan_out(event_type: str, payload: dict) -> list[str]:
    try:
        async with async_session_maker() as db:
            if event_type == EVENT_INCIDENT:
                db.add(ErrorLog(
                    source=str(payload.get("source", "unknown"))[:100],
                    error_type=str(payload.get("error_type", "Exception"))[:100],
                    message=str(payload.get("message", "")),
                    context=payload.get("context") or {},
                ))

            result = await db.execute(select(NotificationEndpoint).where(NotificationEndpoint.is_active.is_(True)))
            deliveries = [
                NotificationDelivery(endpoint_id=ep.id, event_type=event_type, payload=payload, status="PENDING", attempts=0)
                for ep in result.scalars().all()
                if endpoint_wants(ep.events, event_type)
            ]
            db.add_all(deliveries)
            await db.commit()
            logger.info("Event %s queued for %d endpoint(s)", event_type, len(deliveries))
            return [str(d.id) for d in deliveries]
    finally:
        await engine.dispose()


@celery_app.task(bind=True, max_retries=3)
def deliver_notification(self, delivery_id: str) -> None:
    """POST one delivery; non-2xx and transport errors retry with backoff (5s, 10s, 20s)."""
    try:
        asyncio.run(_deliver_async(delivery_id))
    except (httpx.RequestError, httpx.HTTPStatusError) as exc:
        delay = (2 ** self.request.retries) * 5
        logger.warning("Notification %s failed, retrying in %ss: %s", delivery_id, delay, exc)
        raise self.retry(exc=exc, countdown=delay)


async def _deliver_async(delivery_id: str) -> None:
    try:
        async with async_session_maker() as db:
            stmt = (
                select(NotificationDelivery)
                .options(selectinload(NotificationDelivery.endpoint))
                .where(NotificationDelivery.id == delivery_id)
            )
            delivery = (await db.execute(stmt)).scalar_one_or_none()
            if not delivery or not delivery.endpoint or not delivery.endpoint.is_active:
                logger.info("Skipping notification %s: endpoint missing or inactive", delivery_id)
                return

            endpoint = delivery.endpoint
            body = json.dumps({"event": delivery.event_type, "data": delivery.payload}, separators=(",", ":"))
            headers = {
                "Content-Type": "application/json",
                "X-Rxflow-Signature": sign_payload(endpoint.secret, body),
                "X-Rxflow-Event": delivery.event_type,
                "X-Rxflow-Delivery": str(delivery.id),
            }

            delivery.attempts += 1
            delivery.last_attempt_at = datetime.now(tz=timezone.utc)
            await db.commit()

            try:
                async with httpx.AsyncClient(timeout=get_settings().NOTIFICATION_TIMEOUT_SECONDS) as client:
                    response = await client.post(endpoint.url, content=body, headers=headers)
            except httpx.RequestError:
                delivery.status = "FAILED"
                await db.commit()
                raise

            delivery.response_code = response.status_code
            delivery.response_body = response.text[:2000]
            if response.is_success:
                delivery.status = "SUCCESS"
                delivery.delivered_at = datetime.now(tz=timezone.utc)
                await db.commit()
                return

            delivery.status = "FAILED"
            await db.commit()
            response.raise_for_status()
    finally:
        await engine.dispose()
