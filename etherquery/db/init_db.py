import asyncio
from etherquery.db.database import Base, engine
from etherquery.db import models  # noqa: F401  registers the tables

async def init_models(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

if __name__ == "__main__":
    asyncio.run(init_models())
