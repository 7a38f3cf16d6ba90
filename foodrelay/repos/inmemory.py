# foodrelay/repos/inmemory.py
import copy
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId

from foodrelay.services.geo import get_path, haversine_m

def _id() -> str:
    return str(ObjectId())

_MISSING = object()

def _lookup(doc: dict, path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur

def _eq(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected

def _cmp(value: Any, op: str, arg: Any) -> bool:
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op == "$ne":
        return not _eq(value, arg)
    if op == "$in":
        return any(_eq(value, a) for a in arg)
    if op == "$nin":
        return not any(_eq(value, a) for a in arg)
    if value is _MISSING or value is None:
        return False
    if op == "$gt":
        return value > arg
    if op == "$gte":
        return value >= arg
    if op == "$lt":
        return value < arg
    if op == "$lte":
        return value <= arg
    raise ValueError(f"Unsupported operator {op}")

def matches(doc: dict, query: Optional[dict]) -> bool:
    """Subset of the Mongo query language used by the services."""
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, q) for q in cond):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, q) for q in cond):
                return False
            continue
        value = _lookup(doc, key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            if not all(_cmp(value, op, arg) for op, arg in cond.items()):
                return False
        elif not _eq(value, cond):
            return False
    return True

def _set_path(doc: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            cur[part] = nxt
        cur = nxt
    cur[parts[-1]] = value

def _unset_path(doc: dict, path: str) -> None:
    parts = path.split(".")
    cur = doc
    for part in parts[:-1]:
        cur = cur.get(part)
        if not isinstance(cur, dict):
            return
    cur.pop(parts[-1], None)

def apply_update(doc: dict, update: dict) -> None:
    for op, fields in update.items():
        for path, value in fields.items():
            if op == "$set":
                _set_path(doc, path, copy.deepcopy(value))
            elif op == "$unset":
                _unset_path(doc, path)
            elif op == "$inc":
                cur = get_path(doc, path) or 0
                _set_path(doc, path, cur + value)
            else:
                raise ValueError(f"Unsupported update operator {op}")


class InMemoryStore:
    """
    Dict-backed entity store with the same async surface as MongoStore.
    Each method runs to completion without awaiting, so a conditional
    update can never interleave with another writer.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = defaultdict(dict)

    async def ensure_indexes(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def insert(self, col: str, doc: dict) -> dict:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", _id())
        if doc["_id"] in self.collections[col]:
            raise ValueError(f"Duplicate id {doc['_id']}")
        self.collections[col][doc["_id"]] = doc
        return copy.deepcopy(doc)

    async def find_one(self, col: str, query: dict) -> Optional[dict]:
        for doc in self.collections[col].values():
            if matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def find(self, col: str, query: Optional[dict] = None,
                   sort: Optional[Sequence[Tuple[str, int]]] = None,
                   limit: Optional[int] = None) -> List[dict]:
        out = [copy.deepcopy(d) for d in self.collections[col].values() if matches(d, query)]
        for field, direction in reversed(list(sort or [])):
            present = [d for d in out if get_path(d, field) is not None]
            absent = [d for d in out if get_path(d, field) is None]
            present.sort(key=lambda d: get_path(d, field), reverse=direction < 0)
            out = present + absent
        return out[:limit] if limit else out

    async def count(self, col: str, query: Optional[dict] = None) -> int:
        return sum(1 for d in self.collections[col].values() if matches(d, query))

    async def update_one(self, col: str, query: dict, update: dict) -> Optional[dict]:
        for doc in self.collections[col].values():
            if matches(doc, query):
                apply_update(doc, update)
                return copy.deepcopy(doc)
        return None

    async def update_many(self, col: str, query: dict, update: dict) -> int:
        n = 0
        for doc in self.collections[col].values():
            if matches(doc, query):
                apply_update(doc, update)
                n += 1
        return n

    async def near(self, col: str, key: str, coordinates: Sequence[float], max_distance_m: float,
                   query: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
        out = []
        for doc in self.collections[col].values():
            geo = get_path(doc, key)
            if not isinstance(geo, dict) or not geo.get("coordinates") or not matches(doc, query):
                continue
            dist = haversine_m(coordinates, geo["coordinates"])
            if dist <= max_distance_m:
                hit = copy.deepcopy(doc)
                hit["distance"] = dist
                out.append(hit)
        out.sort(key=lambda d: d["distance"])
        return out[:limit] if limit else out
