"""
MongoDB connection (sync PyMongo, shared by the API and the Celery worker).
"""

import logging
from functools import lru_cache
from typing import Tuple
from urllib.parse import urlparse

import certifi
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from app.core.config import get_settings

logger = logging.getLogger(__name__)


def _effective_mongo_uri_and_db() -> Tuple[str, str]:
    settings = get_settings()
    uri = (settings.MONGO_URI or "").strip()
    parsed = urlparse(uri)
    path = (parsed.path or "").lstrip("/")
    # A database in the URI path wins over MONGO_DB_NAME.
    db = path.split("/")[0] if path else (settings.MONGO_DB_NAME or "mediajobs")
    return uri, db


@lru_cache
def get_client() -> MongoClient:
    """Create the process-wide Mongo client (TLS CA bundle for Atlas URIs)."""
    uri, _ = _effective_mongo_uri_and_db()
    client_kwargs = {}
    if "mongodb+srv://" in uri or "ssl=true" in uri.lower() or "tls=true" in uri.lower():
        client_kwargs["tlsCAFile"] = certifi.where()
    return MongoClient(uri, **client_kwargs)


def get_db() -> Database:
    """Get the database instance (also used as a FastAPI dependency)."""
    _, db_name = _effective_mongo_uri_and_db()
    return get_client()[db_name]


def create_indexes(db: Database) -> None:
    """Create database indexes for job lookups and ledger entries."""
    db.jobs.create_index("owner_id")
    db.jobs.create_index([("state", ASCENDING), ("updated_at", ASCENDING)])
    db.credit_ledger.create_index("user_id", unique=True)
    db.credit_transactions.create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    logger.info(f"Ensured indexes on MongoDB: {db.name}")


def close_client() -> None:
    """Disconnect from MongoDB."""
    if get_client.cache_info().currsize:
        get_client().close()
        get_client.cache_clear()
        logger.info("Disconnected from MongoDB")
