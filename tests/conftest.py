# tests/conftest.py
import itertools
from datetime import datetime, timedelta, timezone

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from foodrelay.core.config import settings
from foodrelay.core.security import Actor, create_token
from foodrelay.db import DONATIONS
from foodrelay.deps import get_distance_provider, get_store
from foodrelay.main import app
from foodrelay.repos.inmemory import InMemoryStore
from foodrelay.schemas import Quantity, UserIn
from foodrelay.services.geo import point
from foodrelay.services.routing import GeometricDistanceProvider
from foodrelay.services.users import create_user

# Metro Manila; 0.009 deg of latitude is roughly 1 km
BASE = (121.0, 14.6)

_ids = itertools.count(1)

def north(km: float, origin=BASE):
    return [origin[0], origin[1] + km / 111.2]

@pytest.fixture(scope="session")
def anyio_backend():
    # keep AnyIO on asyncio for the whole test session
    return "asyncio"

@pytest.fixture
def store():
    return InMemoryStore()

@pytest.fixture
def now():
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

def actor(user: dict) -> Actor:
    return Actor(id=user["_id"], role=user["role"])

def auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_token(user['_id'], user['role'])}"}

async def make_user(store, role: str, coords=None, now=None, **extra) -> dict:
    n = next(_ids)
    data = {
        "name": f"{role.title()} {n}",
        "email": f"{role}{n}@foodrelay.org",
        "role": role,
        "status": "active",
        "coordinates": coords,
        "organization": f"Org {n}" if role in ("donor", "ngo") else None,
    }
    data.update(extra)
    return await create_user(store, UserIn(**data), now=now)

async def make_donation(store, donor: dict, now: datetime, coords=BASE, hours_to_expiry: float = 24,
                        quantity: str = "10kg", **fields) -> dict:
    doc = {
        "title": "Surplus bread",
        "food_type": "bakery",
        "quantity": Quantity.parse(quantity).model_dump(),
        "perishability": "medium",
        "storage_req": None,
        "expiry_date": now + timedelta(hours=hours_to_expiry),
        "pickup_window": {"start": now, "end": now + timedelta(hours=1)},
        "geo": point(*coords),
        "donor": donor["_id"],
        "status": "active",
        "created_at": now,
    }
    doc.update(fields)
    return await store.insert(DONATIONS, doc)

@pytest.fixture
async def client(store, monkeypatch):
    monkeypatch.setattr(settings, "supervisor_enabled", False)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_distance_provider] = lambda: GeometricDistanceProvider()
    async with LifespanManager(app):
        transport = ASGITransport(app=app, raise_app_exceptions=True)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    app.dependency_overrides.clear()
