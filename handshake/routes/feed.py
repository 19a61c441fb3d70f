from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from handshake.config import get_session
from handshake.feed import recent_feed
from handshake.schemas import FeedItem, FeedResponse

router = APIRouter()


@router.get("/feed/recent", response_model=FeedResponse, tags=["Feed"])
def recent(limit: int = Query(default=20, ge=1, le=100), session: Session = Depends(get_session)) -> FeedResponse:
    with session.begin():
        items = [FeedItem(**item) for item in recent_feed(session, limit)]
    return FeedResponse(items=items, count=len(items))
