"""Actor identity supplied by the external identity service.

The engine trusts the bearer token's claims and never re-authenticates:
``sub`` (or ``username``) names the actor, ``role`` is carried along for
the audit trail and for scoping exports.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt

SECRET_KEY = os.getenv("BACKEND_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("BACKEND_JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("BACKEND_ACCESS_TOKEN_MINUTES", "60"))

DEFAULT_ROLE = "User"
ADMIN_ROLE = "Super_Admin"


@dataclass(frozen=True)
class Actor:
    username: str
    role: str = DEFAULT_ROLE

    @property
    def sees_all_records(self) -> bool:
        return self.role == ADMIN_ROLE


def issue_actor_token(actor: Actor, *, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token carrying ``actor``; used by operators and tests, the identity service issues the real ones."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": actor.username, "role": actor.role, "exp": expire}
    return jwt.encode(claims, SECRET_KEY, algorithm=JWT_ALGORITHM)


def actor_from_claims(payload: Mapping[str, Any]) -> Actor:
    username = str(payload.get("username") or payload.get("sub") or "").strip()
    if not username:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    role = str(payload.get("role") or DEFAULT_ROLE).strip() or DEFAULT_ROLE
    return Actor(username=username, role=role)


def actor_from_token(token: str) -> Actor:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return actor_from_claims(payload)
