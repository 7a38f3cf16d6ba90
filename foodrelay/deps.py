# foodrelay/deps.py
from functools import lru_cache

from foodrelay.core.config import settings
from foodrelay.services.routing import DistanceProvider, make_distance_provider

@lru_cache(maxsize=1)
def _store_singleton():
    if settings.use_mongo:
        from foodrelay.db import get_db
        from foodrelay.repos.mongo import MongoStore
        return MongoStore(get_db())
    from foodrelay.repos.inmemory import InMemoryStore
    return InMemoryStore()

def get_store():
    return _store_singleton()

@lru_cache(maxsize=1)
def _provider_singleton() -> DistanceProvider:
    return make_distance_provider(settings)

def get_distance_provider() -> DistanceProvider:
    return _provider_singleton()
