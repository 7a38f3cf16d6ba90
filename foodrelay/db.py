# foodrelay/db.py
from functools import lru_cache

from motor.motor_asyncio import AsyncIOMotorClient

from foodrelay.core.config import settings

# --------------------------------------------------
# MongoDB connection (no work at import time)
# --------------------------------------------------
@lru_cache(maxsize=1)
def get_client() -> AsyncIOMotorClient:
    # Cached to play nicely with uvicorn --reload; tz_aware keeps datetimes comparable with utcnow()
    return AsyncIOMotorClient(settings.mongo_uri, tz_aware=True)

def get_db():
    return get_client()[settings.mongo_db]

# --------------------------------------------------
# Collection names
# --------------------------------------------------
DONATIONS = "donations"
USERS = "users"
NOTIFICATIONS = "notifications"

__all__ = ["get_client", "get_db", "DONATIONS", "USERS", "NOTIFICATIONS"]
