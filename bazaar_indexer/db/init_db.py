from bazaar_indexer.core.database import Database
from bazaar_indexer.db.models import Base


async def init_db(db: Database, drop: bool = False):
    async with db.engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
