"""rxflow — Data-integrity maintenance tasks."""
import asyncio
import logging

from rxflow.db.session import async_session_maker, engine
from rxflow.services.order_service import OrderService
from rxflow.worker import celery_app

logger = logging.getLogger(__name__)


@celery_app.task
def sweep_orphan_orders() -> int:
    """Remove orders left without any lines."""
    return asyncio.run(_sweep_async())


async def _sweep_async() -> int:
    try:
        async with async_session_maker() as db:
            removed = await OrderService.delete_orphan_orders(db)
            await db.commit()
            return removed
    finally:
        await engine.dispose()
