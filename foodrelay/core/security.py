# foodrelay/core/security.py
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from foodrelay.core.config import settings
from foodrelay.core.errors import AuthorizationError

bearer_scheme = HTTPBearer(auto_error=False)

ROLES = ("donor", "ngo", "volunteer", "admin")


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


def create_token(sub: str, role: str, minutes: int = 120) -> str:
    now = datetime.now(timezone.utc)
    payload: Dict[str, Any] = {"sub": sub, "role": role, "iat": now, "exp": now + timedelta(minutes=minutes)}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str) -> Actor:
    try:
        data = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except JWTError:
        raise AuthorizationError("Invalid token")
    sub, role = data.get("sub"), data.get("role")
    if not sub or role not in ROLES:
        raise AuthorizationError("Invalid token")
    return Actor(id=str(sub), role=role)


async def get_actor(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> Actor:
    if creds is None:
        raise AuthorizationError("Not authenticated")
    return decode_token(creds.credentials)


def ensure_role(actor: Actor, roles: Iterable[str]) -> None:
    roles = tuple(roles)
    if actor.role not in roles and actor.role != "admin":
        raise AuthorizationError(f"Only {'/'.join(roles)} accounts can do this")


def require_role(*roles: str):
    async def checker(actor: Actor = Depends(get_actor)) -> Actor:
        ensure_role(actor, roles)
        return actor
    return checker
