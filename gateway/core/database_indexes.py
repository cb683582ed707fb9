"""
Database indexes for the chat gateway.

Run this module once after setting up the database to create indexes.
You can run it with: python -m gateway.core.database_indexes
"""

from motor.motor_asyncio import AsyncIOMotorClient
from gateway.core.config import settings
from gateway.services.persistence import MongoChatStore
from gateway.services.rate_limit import MongoRateLimitStore
import asyncio
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def create_indexes():
    """Create all necessary database indexes"""
    client = AsyncIOMotorClient(settings.MONGODB_URL)
    db = client[settings.DATABASE_NAME]

    logger.info("Creating database indexes...")

    await MongoChatStore(db).ensure_indexes()
    logger.info("✓ Created indexes for 'chat_index' collection")

    await MongoRateLimitStore(db.rate_limits).ensure_indexes()
    logger.info("✓ Created TTL index for 'rate_limits' collection")

    logger.info("All indexes created successfully!")

    client.close()


if __name__ == "__main__":
    asyncio.run(create_indexes())
