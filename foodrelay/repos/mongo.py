# foodrelay/repos/mongo.py
from typing import List, Optional, Sequence, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, GEOSPHERE, ReturnDocument

def _id() -> str:
    return str(ObjectId())

class MongoStore:
    """Entity store over Motor. update_one is a single find_one_and_update, so the
    precondition in ``query`` and the write land atomically on one document."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def ensure_indexes(self) -> None:
        async def ensure_index(col, keys, name: str, **kwargs):
            existing = [ix["name"] async for ix in col.list_indexes()]
            if name in existing:
                return
            await col.create_index(keys, name=name, **kwargs)

        db = self.db
        await ensure_index(db.donations, [("geo", GEOSPHERE)], "geo_2dsphere")
        await ensure_index(db.donations, [("status", ASCENDING), ("delivery_status", ASCENDING)], "status_1_delivery_status_1")
        await ensure_index(db.donations, [("claimed_by", ASCENDING), ("claimed_at", ASCENDING)], "claimed_by_1_claimed_at_1")
        await ensure_index(db.donations, [("volunteer", ASCENDING)], "volunteer_1", sparse=True)
        await ensure_index(db.donations, [("expiry_date", ASCENDING)], "expiry_date_1")
        await ensure_index(db.users, [("geo", GEOSPHERE)], "geo_2dsphere")
        await ensure_index(db.users, [("volunteer_profile.current_location", GEOSPHERE)], "current_location_2dsphere")
        await ensure_index(db.users, [("email", ASCENDING)], "email_1", unique=True)
        await ensure_index(db.notifications, [("recipient", ASCENDING), ("created_at", ASCENDING)], "recipient_1_created_at_1")

    async def close(self) -> None:
        self.db.client.close()

    async def insert(self, col: str, doc: dict) -> dict:
        doc = dict(doc)
        doc.setdefault("_id", _id())
        await self.db[col].insert_one(doc)
        return doc

    async def find_one(self, col: str, query: dict) -> Optional[dict]:
        return await self.db[col].find_one(query)

    async def find(self, col: str, query: Optional[dict] = None,
                   sort: Optional[Sequence[Tuple[str, int]]] = None,
                   limit: Optional[int] = None) -> List[dict]:
        cur = self.db[col].find(query or {})
        if sort:
            cur = cur.sort(list(sort))
        if limit:
            cur = cur.limit(limit)
        return [d async for d in cur]

    async def count(self, col: str, query: Optional[dict] = None) -> int:
        return await self.db[col].count_documents(query or {})

    async def update_one(self, col: str, query: dict, update: dict) -> Optional[dict]:
        return await self.db[col].find_one_and_update(query, update, return_document=ReturnDocument.AFTER)

    async def update_many(self, col: str, query: dict, update: dict) -> int:
        res = await self.db[col].update_many(query, update)
        return res.modified_count

    async def near(self, col: str, key: str, coordinates: Sequence[float], max_distance_m: float,
                   query: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
        pipeline = [{
            "$geoNear": {
                "near": {"type": "Point", "coordinates": [float(coordinates[0]), float(coordinates[1])]},
                "key": key,
                "distanceField": "distance",
                "maxDistance": float(max_distance_m),
                "spherical": True,
                "query": query or {},
            },
        }]
        if limit:
            pipeline.append({"$limit": limit})
        return [d async for d in self.db[col].aggregate(pipeline)]
