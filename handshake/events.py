from __future__ import annotations

import hashlib
import hmac
import json
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from threading import Thread
from time import sleep

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from handshake.config import SessionLocal, settings
from handshake.models import WebhookConfig
from handshake.workflow import party_ids

logger = logging.getLogger(__name__)

ALL_EVENTS = [
    "ticket.updated",
    "ticket.payment_detected",
    "ticket.payment_confirming",
    "ticket.payment_confirmed",
    "ticket.payment_timed_out",
    "ticket.payment_flagged",
    "ticket.payout_submitted",
    "ticket.payout_confirmed",
    "ticket.closing",
    "ticket.completed",
    "order.detected",
    "order.confirming",
    "order.completed",
    "order.failed",
    "order.awaiting_staff",
    "order.timedout",
    "order.expired",
    "feed.transaction_completed",
]

RETRY_BACKOFF = [5, 25, 125]

Listener = Callable[[str, str, dict], None]


class EventBus:
    """In-process fan-out of ``(topic, event, data)`` to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, topic: str, event: str, data: dict) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(topic, event, data)
            except Exception:
                logger.exception("Event listener failed for %s on %s", event, topic)


bus = EventBus()


def _sign_payload(secret: str, body: bytes) -> str:
    sig = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={sig}"


def _deliver(url: str, secret: str, event: str, payload: dict) -> None:
    body = json.dumps(payload, default=str).encode("utf-8")
    signature = _sign_payload(secret, body)
    delivery_id = f"evt_{uuid.uuid4().hex[:12]}"
    headers = {
        "Content-Type": "application/json",
        "X-Handshake-Signature": signature,
        "X-Handshake-Event": event,
        "X-Handshake-Delivery": delivery_id,
    }

    retries = settings.webhook_max_retries
    for attempt in range(1 + retries):
        try:
            resp = httpx.post(url, content=body, headers=headers, timeout=settings.webhook_timeout_seconds)
            if 200 <= resp.status_code < 300:
                return
            logger.warning("Webhook delivery to %s returned %s (attempt %d)", url, resp.status_code, attempt + 1)
        except Exception:
            logger.warning("Webhook delivery to %s failed (attempt %d)", url, attempt + 1, exc_info=True)
        if attempt < retries:
            backoff = RETRY_BACKOFF[attempt] if attempt < len(RETRY_BACKOFF) else RETRY_BACKOFF[-1]
            sleep(backoff)


def fire_webhooks(user_ids: list[str], event: str, data: dict) -> None:
    """Deliver an event to every listed user that has an active webhook for it."""
    if not user_ids:
        return
    db = SessionLocal()
    try:
        with db.begin():
            configs = (
                db.execute(
                    select(WebhookConfig).where(
                        WebhookConfig.user_id.in_(user_ids),
                        WebhookConfig.active.is_(True),
                    )
                )
                .scalars()
                .all()
            )
    finally:
        db.close()

    payload = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    for cfg in configs:
        if cfg.events and event not in cfg.events:
            continue
        thread = Thread(target=_deliver, args=(cfg.url, cfg.secret, event, payload), daemon=True)
        thread.start()


def emit(session: Session, topic: str, event: str, data: dict, user_ids: list[str] | None = None) -> None:
    """Queue an event on the session; it goes out once the caller commits and calls :func:`dispatch_pending`."""
    session.info.setdefault("pending_events", []).append((topic, event, data, list(user_ids or [])))


def after_commit(session: Session, fn: Callable[[], None]) -> None:
    session.info.setdefault("pending_hooks", []).append(fn)


def dispatch_pending(session: Session) -> None:
    events = session.info.pop("pending_events", [])
    hooks = session.info.pop("pending_hooks", [])
    for topic, event, data, user_ids in events:
        bus.publish(topic, event, data)
        try:
            fire_webhooks(user_ids, event, data)
        except Exception:
            logger.exception("Could not queue webhooks for %s", event)
    for hook in hooks:
        try:
            hook()
        except Exception:
            logger.exception("Post-commit hook failed")


def ticket_event(session: Session, ticket, event: str, **extra) -> None:
    data = {
        "ticket_id": ticket.id,
        "status": ticket.status,
        "payment_state": ticket.payment_state,
        "payout_state": ticket.payout_state,
    }
    data.update(extra)
    emit(session, f"ticket:{ticket.id}", event, data, party_ids(ticket))


def order_event(session: Session, order, event: str, **extra) -> None:
    data = {
        "order_id": order.id,
        "order_ref": order.order_ref,
        "status": order.status,
        "confirmations": order.confirmations,
    }
    data.update(extra)
    emit(session, f"order:{order.id}", event, data, [order.user_id])
