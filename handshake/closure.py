"""Ticket closure: an in-process timer per ticket plus a reconciliation sweep.

The timer is only a latency optimisation. ``close_scheduled_at`` on the ticket
is the durable record, and :func:`process_due_closures` finalizes anything the
timers missed (for example after a restart). Both paths call
:func:`finalize_ticket_closure`, whose steps are compare-and-swap updates, so
racing callers converge on the same single set of effects.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from handshake.config import SessionLocal
from handshake.events import dispatch_pending, emit, ticket_event
from handshake.feed import build_feed_item
from handshake.models import Ticket, User
from handshake.prompts import post_prompt, usernames
from handshake.workflow import party_ids

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(dt: datetime) -> datetime:
    """SQLite returns naive datetimes; assume UTC when tzinfo is absent."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class ClosureScheduler:
    """Keeps at most one pending timer per ticket."""

    def __init__(self) -> None:
        self._timers: dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def schedule(self, ticket_id: str, close_at: datetime) -> None:
        delay = (_ensure_aware(close_at) - _now()).total_seconds()
        with self._lock:
            previous = self._timers.pop(ticket_id, None)
            if previous is not None:
                previous.cancel()
            if delay > 0:
                timer = threading.Timer(delay, self._fire, args=(ticket_id,))
                timer.daemon = True
                self._timers[ticket_id] = timer
                timer.start()
                return
        self._fire(ticket_id)

    def cancel(self, ticket_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(ticket_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._timers)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _fire(self, ticket_id: str) -> None:
        with self._lock:
            self._timers.pop(ticket_id, None)
        try:
            finalize_ticket_closure(ticket_id)
        except Exception:
            logger.exception("Closure timer failed for ticket %s", ticket_id)


scheduler = ClosureScheduler()


def _apply_stats(session: Session, ticket_id: str) -> bool:
    claimed = session.execute(
        update(Ticket)
        .where(Ticket.id == ticket_id, Ticket.status == "completed", Ticket.stats_applied.is_(False))
        .values(stats_applied=True)
    ).rowcount == 1
    if not claimed:
        return False

    ticket = session.execute(select(Ticket).where(Ticket.id == ticket_id)).scalar_one()
    usd = Decimal(ticket.deal_amount or 0)
    for user_id in party_ids(ticket):
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(total_usd_value=User.total_usd_value + usd, total_deals=User.total_deals + 1)
        )
    return True


def _broadcast(session: Session, ticket_id: str) -> bool:
    claimed = session.execute(
        update(Ticket)
        .where(Ticket.id == ticket_id, Ticket.status == "completed", Ticket.broadcasted_at.is_(None))
        .values(broadcasted_at=_now())
    ).rowcount == 1
    if not claimed:
        return False

    ticket = session.execute(select(Ticket).where(Ticket.id == ticket_id)).scalar_one()
    item = build_feed_item(ticket, usernames(session, ticket))
    emit(session, "feed", "feed.transaction_completed", item)
    return True


def finalize_ticket_closure(ticket_id: str) -> bool:
    """Complete a closing ticket. Returns True only for the caller that completed it."""
    session = SessionLocal()
    try:
        with session.begin():
            now = _now()
            completed = session.execute(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.status == "closing")
                .values(status="completed", completed_at=now, close_scheduled_at=None)
            ).rowcount == 1
            if completed:
                ticket = session.execute(select(Ticket).where(Ticket.id == ticket_id)).scalar_one()
                post_prompt(ticket, "Ticket Closed", "This trade is complete and the ticket is now closed.", color="neutral")
                ticket_event(session, ticket, "ticket.completed")

        with session.begin():
            stats = _apply_stats(session, ticket_id)

        with session.begin():
            broadcast = _broadcast(session, ticket_id)

        dispatch_pending(session)
    finally:
        session.close()

    if completed:
        logger.info("Ticket %s finalized (stats=%s, broadcast=%s)", ticket_id, stats, broadcast)
    return completed


def process_due_closures() -> int:
    """Finalize every closing ticket whose close time has passed."""
    session = SessionLocal()
    try:
        with session.begin():
            due = (
                session.execute(
                    select(Ticket.id).where(Ticket.status == "closing", Ticket.close_scheduled_at <= _now())
                )
                .scalars()
                .all()
            )
    finally:
        session.close()

    finalized = 0
    for ticket_id in due:
        try:
            if finalize_ticket_closure(ticket_id):
                finalized += 1
        except Exception:
            logger.exception("Error finalizing ticket %s", ticket_id)
    return finalized


def backfill_completed_tickets() -> int:
    """Apply stats for completed tickets that never got them."""
    session = SessionLocal()
    try:
        with session.begin():
            ids = (
                session.execute(
                    select(Ticket.id).where(Ticket.status == "completed", Ticket.stats_applied.is_(False))
                )
                .scalars()
                .all()
            )
        applied = 0
        for ticket_id in ids:
            with session.begin():
                if _apply_stats(session, ticket_id):
                    applied += 1
        return applied
    finally:
        session.close()


def rearm_pending_closures() -> int:
    """Re-create timers for closing tickets after a restart."""
    session = SessionLocal()
    try:
        with session.begin():
            rows = session.execute(
                select(Ticket.id, Ticket.close_scheduled_at).where(
                    Ticket.status == "closing", Ticket.close_scheduled_at.is_not(None)
                )
            ).all()
    finally:
        session.close()
    for ticket_id, close_at in rows:
        scheduler.schedule(ticket_id, close_at)
    return len(rows)
