"""rxflow — Seed status registry, a dev admin and a routable product (run after migrations)."""
import asyncio
import logging
import os
import sys

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from rxflow.core.roles import Role
from rxflow.core.security import create_access_token
from rxflow.db.session import async_session_maker, engine
from rxflow.models import Pharmacy, Product, ProductPharmacy, User
from rxflow.services.status_registry import StatusRegistryService

logger = logging.getLogger("rxflow.seed")


async def seed():
    async with async_session_maker() as session:
        added = await StatusRegistryService.seed_defaults(session)
        logger.info("Seeded %d default status(es)", added)

        admin = (await session.execute(select(User).where(User.email == "admin@dev.local"))).scalar_one_or_none()
        if not admin:
            admin = User(email="admin@dev.local", full_name="Dev Admin", role=Role.ADMIN.value)
            session.add(admin)

            product = Product(name="Semaglutide 2.5mg/ml")
            pharmacy = Pharmacy(name="Dev Compounding Pharmacy", states_serviced=["CA", "NY", "TX"], priority_map={"CA": 1})
            session.add_all([product, pharmacy])
            await session.flush()
            session.add(ProductPharmacy(product_id=product.id, pharmacy_id=pharmacy.id))
            logger.info("Seeded admin@dev.local, product %s and pharmacy %s", product.id, pharmacy.id)

        await session.commit()
        print(f"Admin bearer token: {create_access_token(admin.id, Role.ADMIN.value, ttl_minutes=24 * 60)}")

    await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(seed())
