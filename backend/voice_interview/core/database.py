from pymongo import MongoClient, ASCENDING
from voice_interview.core.config import settings

import logging
import time
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

logger = logging.getLogger(__name__)

_client = None

def create_database_connection():
    """Create MongoDB connection with error handling and retries"""
    max_retries = 3
    retry_delay = 2

    for attempt in range(max_retries):
        try:
            client = MongoClient(
                settings.MONGO_URI,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000,
                socketTimeoutMS=20000,
                maxPoolSize=10,
                retryWrites=True
            )

            client.admin.command('ping')
            logger.info("✅ MongoDB connection established successfully")
            return client

        except (ConnectionFailure, ServerSelectionTimeoutError) as e:
            logger.error(f"❌ MongoDB connection attempt {attempt + 1} failed: {e}")
            if attempt < max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                time.sleep(retry_delay)
                retry_delay *= 2
            else:
                logger.critical("💥 All MongoDB connection attempts failed")
                return None

def get_database():
    """Return the application database, connecting on first use"""
    global _client
    if _client is None:
        _client = create_database_connection()
        if _client is None:
            raise ConnectionFailure("Database unavailable")
        _ensure_indexes(_client[settings.MONGO_DB_NAME])
    return _client[settings.MONGO_DB_NAME]

def _ensure_indexes(db):
    # One ledger entry per idempotency key
    db["credit_ledger"].create_index([("idempotency_key", ASCENDING)], unique=True, sparse=True)
    db["transcript_segments"].create_index(
        [("interview_id", ASCENDING), ("batch_id", ASCENDING), ("segment_index", ASCENDING)], unique=True
    )
    db["interviews"].create_index([("interview_id", ASCENDING)], unique=True)

def check_database_health():
    """Check if database connection is healthy"""
    global _client

    try:
        if _client is None:
            get_database()
        _client.admin.command('ping')
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        _client = None
        return False

def ledger_collection():
    return get_database()["credit_ledger"]

def interviews_collection():
    return get_database()["interviews"]

def transcript_segments_collection():
    return get_database()["transcript_segments"]

def interview_metrics_collection():
    return get_database()["interview_metrics"]
