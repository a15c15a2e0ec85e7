import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from directmsg import config


logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None


async def connect_to_mongo() -> None:
    global _client
    if _client is not None:
        return
    _client = AsyncIOMotorClient(config.MONGODB_URL)
    logger.info("Connected to MongoDB database %s", config.MONGODB_DB)


async def close_mongo_connection() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB client is not connected")
    return _client[config.MONGODB_DB]


async def mongo_db_dependency() -> AsyncIOMotorDatabase:
    return get_database()
