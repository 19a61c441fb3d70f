from __future__ import annotations

import secrets

import bcrypt
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from handshake.auth import authenticate_user
from handshake.config import get_session, settings
from handshake.events import ALL_EVENTS
from handshake.models import User, WebhookConfig
from handshake.schemas import (
    RegisterRequest,
    RegisterResponse,
    UserResponse,
    WebhookDeleteResponse,
    WebhookResponse,
    WebhookSetRequest,
)

router = APIRouter()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        passes=user.passes,
        total_usd_value=user.total_usd_value,
        total_deals=user.total_deals,
        is_staff=user.is_staff,
        created_at=user.created_at,
    )


@router.post("/users/register", status_code=201, response_model=RegisterResponse, tags=["Users"])
def register(req: RegisterRequest, session: Session = Depends(get_session)) -> RegisterResponse:
    api_key = f"hs_{secrets.token_hex(16)}"
    api_key_hash = bcrypt.hashpw(
        api_key.encode("utf-8"),
        bcrypt.gensalt(rounds=settings.api_key_salt_rounds),
    ).decode("utf-8")

    with session.begin():
        existing = session.execute(select(User.id).where(User.username == req.username)).scalar_one_or_none()
        if existing is not None:
            raise HTTPException(status_code=409, detail="That username is already taken")

        user = User(
            username=req.username,
            api_key_hash=api_key_hash,
            is_staff=req.username.lower() in settings.staff_usernames,
        )
        session.add(user)
        session.flush()
        response = _user_response(user)

    return RegisterResponse(user=response, api_key=api_key)


@router.get("/users/me", response_model=UserResponse, tags=["Users"])
def me(current: dict = Depends(authenticate_user), session: Session = Depends(get_session)) -> UserResponse:
    with session.begin():
        user = session.execute(select(User).where(User.id == current["id"])).scalar_one_or_none()
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return _user_response(user)


@router.put("/users/webhook", response_model=WebhookResponse, tags=["Users"])
def set_webhook(
    req: WebhookSetRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> WebhookResponse:
    unknown = sorted(set(req.events or []) - set(ALL_EVENTS))
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown events: {', '.join(unknown)}")
    events = req.events if req.events else ALL_EVENTS

    with session.begin():
        existing = session.execute(
            select(WebhookConfig).where(WebhookConfig.user_id == current["id"])
        ).scalar_one_or_none()

        if existing is not None:
            existing.url = req.url
            existing.events = list(events)
            existing.active = True
            return WebhookResponse(webhook_url=existing.url, secret=None, events=existing.events, active=True)

        webhook_secret = f"whsec_{secrets.token_hex(24)}"
        cfg = WebhookConfig(
            user_id=current["id"],
            url=req.url,
            secret=webhook_secret,
            events=list(events),
            active=True,
        )
        session.add(cfg)

    return WebhookResponse(webhook_url=cfg.url, secret=webhook_secret, events=cfg.events, active=True)


@router.delete("/users/webhook", response_model=WebhookDeleteResponse, tags=["Users"])
def delete_webhook(
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> WebhookDeleteResponse:
    with session.begin():
        existing = session.execute(
            select(WebhookConfig).where(WebhookConfig.user_id == current["id"])
        ).scalar_one_or_none()
        if existing is None:
            raise HTTPException(status_code=404, detail="No webhook configured")
        session.delete(existing)
    return WebhookDeleteResponse(status="removed")
