"""
MongoDB client for the API process.

MONGO_URL and DB_NAME are required; importing this module without them
raises a ValueError listing what is missing.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv(Path(__file__).parent / '.env')

REQUIRED_ENV = {
    "MONGO_URL": "MongoDB connection string, e.g. mongodb://localhost:27017",
    "DB_NAME": "database name, e.g. miniaturia",
}


def validate_required_env_vars():
    missing = [f"  {name}: {hint}" for name, hint in REQUIRED_ENV.items() if not os.environ.get(name)]
    if missing:
        raise ValueError(
            "Missing required environment variables (see backend/.env.example):\n"
            + "\n".join(missing)
        )


validate_required_env_vars()

DB_NAME = os.environ['DB_NAME']

client = AsyncIOMotorClient(
    os.environ['MONGO_URL'],
    maxPoolSize=50,
    connectTimeoutMS=5000,
    serverSelectionTimeoutMS=5000,
    retryWrites=True
)
db = client[DB_NAME]


async def check_db_connection():
    """
    Ping the server and touch the accounts collection.

    Returns:
        (ok, error_message)
    """
    try:
        await client.admin.command('ping')
        await db.accounts.estimated_document_count()
    except Exception as e:
        logger.error(f"Database check failed for {DB_NAME}: {e}")
        return False, f"Database connection failed: {e}"

    logger.info(f"Database reachable: {DB_NAME}")
    return True, None
