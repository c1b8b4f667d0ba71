import logging
from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie

from journeyflow.config import settings
from journeyflow.models.documents import (
    ContactDocument,
    EnrollmentDocument,
    JourneyDocument,
    SegmentDocument,
)

logger = logging.getLogger(__name__)

_client = None


def get_database():
    if _client is None:
        raise RuntimeError("Database is not initialized; call init_db() first")
    return _client[settings.DB_NAME]


async def init_db():
    global _client
    try:
        logger.info("Initializing database connection...")
        client = AsyncIOMotorClient(settings.MONGO_URI)

        # Test the connection
        await client.admin.command("ping")
        logger.info("MongoDB connection test successful.")

        await init_beanie(
            database=client[settings.DB_NAME],
            document_models=[JourneyDocument, EnrollmentDocument, SegmentDocument, ContactDocument],
        )
        _client = client
        logger.info("MongoDB connection established and Beanie initialized.")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
