import sys, pathlib, asyncio
sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))

from sqlalchemy import func, select, text
from crm.core.config import settings
from crm.core.db import SessionLocal
from crm.models import Campaign, Customer

async def main():
    print("JWT_ISSUER:", settings.JWT_ISSUER)
    print("JWT_AUDIENCE:", settings.JWT_AUDIENCE)
    print("DB_POOL_SIZE:", settings.DB_POOL_SIZE)
    print("DB_ISOLATION_LEVEL:", settings.DB_ISOLATION_LEVEL)
    async with SessionLocal() as s:
        # Simple ping
        one = await s.execute(text("SELECT 1"))
        print("db-ping:", one.scalar())

        active = await s.scalar(select(func.count()).select_from(Customer).where(Customer.status == "active"))
        print("active customers:", active)
        running = await s.scalar(select(func.count()).select_from(Campaign).where(Campaign.status == "running"))
        print("running campaigns:", running)

        if s.bind.dialect.name == "mysql":
            iso = await s.execute(text("SELECT @@transaction_isolation"))
            print("transaction_isolation:", iso.scalar())

asyncio.run(main())
