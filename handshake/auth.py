from __future__ import annotations

import bcrypt
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from handshake.config import get_session
from handshake.models import User


def _check_api_key(api_key: str, api_key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(api_key.encode("utf-8"), api_key_hash.encode("utf-8"))
    except ValueError:
        return False


def authenticate_user(
    authorization: str | None = Header(default=None),
    session: Session = Depends(get_session),
) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid Authorization header. Use: Bearer hs_<your_api_key>",
        )
    api_key = authorization.split(" ", 1)[1].strip()
    if not api_key.startswith("hs_"):
        raise HTTPException(status_code=401, detail="Invalid API key format")

    with session.begin():
        users = session.execute(select(User)).scalars().all()
        for user in users:
            if _check_api_key(api_key, user.api_key_hash):
                return {"id": user.id, "username": user.username, "is_staff": user.is_staff}

    raise HTTPException(status_code=401, detail="Invalid API key")
