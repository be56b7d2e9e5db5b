import logging

from motor.motor_asyncio import AsyncIOMotorClient

from .config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None


async def init_db():
    global client
    logger.info("Initializing database connection")
    client = AsyncIOMotorClient(settings.mongodb_url, tz_aware=True)


async def close_db_connection():
    global client
    if client:
        logger.info("Closing database connection")
        client.close()
        client = None


def get_database():
    return client[settings.mongodb_db]
