from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from handshake.chains.base import ChainPoller, ProviderError, ProviderRateLimited
from handshake.chains.registry import poller_for
from handshake.config import SessionLocal, chain_for, settings
from handshake.events import dispatch_pending, ticket_event
from handshake.matching import OVERPAYMENT
from handshake.models import Ticket
from handshake.orders import run_order_sweep, tx_hash_claimed
from handshake.payouts import CONFIRMED as PAYOUT_CONFIRMED
from handshake.payouts import check_payout_confirmation
from handshake.prompts import active_prompt, dismiss, mention, post_prompt, usernames
from handshake.workflow import PAYMENT, RECEIVER, SENDER, advance, party_with_role

logger = logging.getLogger(__name__)

DETECTED = "detected"
CONFIRMED = "confirmed"
CONFIRMING = "confirming"
TIMED_OUT = "timed_out"
FLAGGED = "flagged"
COOLDOWN = "cooldown"
SKIPPED = "skipped"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(dt: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; assume UTC when tzinfo is absent."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _lock(stmt):
    return stmt.with_for_update()


def _cool_down(ticket: Ticket, now: datetime, exc: ProviderError) -> str:
    ticket.provider_cooldown_until = now + timedelta(seconds=settings.provider_cooldown_seconds)
    if isinstance(exc, ProviderRateLimited):
        logger.warning("Provider rate limited while scanning ticket %s; cooling down", ticket.id)
    else:
        logger.warning("Provider error while scanning ticket %s: %s", ticket.id, exc)
    return COOLDOWN


def _flag(session: Session, ticket: Ticket, title: str, notes: str) -> str:
    advance(ticket, PAYMENT, "flagged")
    ticket.payment_notes = notes
    dismiss(ticket, "transaction-send")
    post_prompt(
        ticket,
        title,
        f"{notes}\nNothing has been credited. Staff will review this payment.",
        color="danger",
        requires_action=True,
        action_type="staff-review",
        meta={"tx_hash": ticket.tx_hash},
    )
    ticket_event(session, ticket, "ticket.payment_flagged", notes=notes)
    logger.warning("Ticket %s flagged for review: %s", ticket.id, notes)
    return FLAGGED


def _mark_confirmed(session: Session, ticket: Ticket, event: str) -> str:
    now = _now()
    advance(ticket, PAYMENT, event)
    ticket.confirmed_at = now
    dismiss(ticket, "transaction-confirming", "transaction-send")

    names = usernames(session, ticket)
    sender = party_with_role(ticket, SENDER)
    receiver = party_with_role(ticket, RECEIVER)
    post_prompt(
        ticket,
        "Sender Has Sent Funds",
        f"{mention(names, sender)} has sent the funds and they are confirmed in escrow. "
        f"{mention(names, sender)}, release them once {mention(names, receiver)} has delivered.",
        color="success",
        requires_action=True,
        action_type="release-funds",
        target_user_id=sender,
        meta={"tx_hash": ticket.tx_hash, "sender": sender, "receiver": receiver},
    )
    ticket_event(session, ticket, "ticket.payment_confirmed", tx_hash=ticket.tx_hash)
    logger.info("Payment %s confirmed for ticket %s", ticket.tx_hash, ticket.id)
    return CONFIRMED


def _time_out(session: Session, ticket: Ticket) -> str:
    advance(ticket, PAYMENT, "timeout")
    dismiss(ticket, "transaction-send")
    left = max(0, settings.max_rescans - ticket.rescan_count)
    post_prompt(
        ticket,
        "No Transaction Found",
        "We could not find your deposit within the time limit. "
        f"Request a rescan ({left} left) or cancel the transaction. Contact staff if you already sent the funds.",
        color="warning",
        requires_action=True,
        action_type="transaction-timeout",
        meta={"rescans_left": left},
    )
    ticket_event(session, ticket, "ticket.payment_timed_out")
    logger.info("Ticket %s timed out waiting for a deposit", ticket.id)
    return TIMED_OUT


def _scan_for_deposit(session: Session, ticket: Ticket, poller: ChainPoller, now: datetime) -> str | None:
    chain = chain_for(ticket.crypto)
    since = None
    if ticket.payment_requested_at is not None:
        since = _ensure_aware(ticket.payment_requested_at) - timedelta(minutes=settings.lookback_grace_minutes)

    ticket.last_scanned_at = now
    try:
        detection = poller.scan(
            ticket.deposit_address,
            ticket.expected_amount,
            ticket.expected_usd,
            since=since,
            claimed=lambda tx_hash: tx_hash_claimed(session, tx_hash, ticket_id=ticket.id),
            tolerance=settings.amount_tolerance,
        )
    except ProviderError as exc:
        return _cool_down(ticket, now, exc)
    if detection is None:
        return None

    obs = detection.observation
    match = detection.match
    if detection.duplicate:
        # Shared wallet: another ticket's or order's deposit is never this ticket's payment.
        logger.info("Ticket %s skipped %s, already claimed elsewhere", ticket.id, obs.tx_hash)
        return None
    if not match.accepted:
        ticket.received_amount = match.received_amount
        return _flag(session, ticket, "Underpayment Detected", match.note())

    ticket.tx_hash = obs.tx_hash
    ticket.received_amount = match.received_amount
    ticket.confirmations = obs.confirmations
    ticket.detected_at = now
    ticket.payment_deadline = None
    ticket.payment_notes = match.note()
    logger.info("Payment %s detected for ticket %s (%s)", obs.tx_hash, ticket.id, match.kind)

    if match.kind == OVERPAYMENT:
        post_prompt(
            ticket,
            "Overpayment Noted",
            f"{match.note()}. The deposit is accepted; staff can settle the excess.",
            color="warning",
            meta={"received_usd": str(match.received_usd) if match.received_usd is not None else None},
        )

    if obs.confirmations >= ticket.confirmations_required:
        ticket_event(session, ticket, "ticket.payment_detected", tx_hash=obs.tx_hash)
        return _mark_confirmed(session, ticket, "detected_confirmed")

    advance(ticket, PAYMENT, "detected")
    dismiss(ticket, "transaction-send")
    post_prompt(
        ticket,
        "Transaction Detected",
        f"Deposit of {match.received_amount.normalize():f} {chain.symbol} found. "
        f"Waiting for {ticket.confirmations_required} confirmations.",
        requires_action=False,
        action_type="transaction-confirming",
        meta={
            "tx_hash": obs.tx_hash,
            "confirmations": obs.confirmations,
            "required": ticket.confirmations_required,
            "explorer_url": chain.tx_link(obs.tx_hash),
        },
    )
    ticket_event(session, ticket, "ticket.payment_detected", tx_hash=obs.tx_hash)
    return DETECTED


def _refresh_confirmations(session: Session, ticket: Ticket, poller: ChainPoller, now: datetime) -> str | None:
    try:
        obs = poller.lookup(ticket.tx_hash, ticket.deposit_address)
    except ProviderError as exc:
        return _cool_down(ticket, now, exc)
    ticket.last_scanned_at = now
    if obs is None:
        return None

    if obs.confirmations != ticket.confirmations:
        ticket.confirmations = obs.confirmations
        prompt = active_prompt(ticket, "transaction-confirming")
        if prompt is not None:
            prompt.meta = {**(prompt.meta or {}), "confirmations": obs.confirmations}
        ticket_event(session, ticket, "ticket.payment_confirming", confirmations=obs.confirmations)

    if obs.confirmations >= ticket.confirmations_required:
        return _mark_confirmed(session, ticket, "confirmed")
    return CONFIRMING


def check_ticket_payment(session: Session, ticket: Ticket, poller: ChainPoller | None = None) -> str | None:
    """Advance one ticket's deposit tracking by a single poll."""
    if ticket.status != "in-progress" or ticket.payment_state not in ("awaiting", "detected"):
        return None

    now = _now()
    cooldown = _ensure_aware(ticket.provider_cooldown_until)
    if cooldown is not None and now < cooldown:
        return COOLDOWN

    poller = poller or poller_for(ticket.crypto)
    if ticket.payment_state == "detected":
        return _refresh_confirmations(session, ticket, poller, now)

    deadline = _ensure_aware(ticket.payment_deadline)
    if deadline is None:
        ticket.payment_deadline = now + timedelta(minutes=settings.payment_timeout_minutes)
    elif now >= deadline:
        return _time_out(session, ticket)

    last = _ensure_aware(ticket.last_scanned_at)
    if poller.kind == "account" and last is not None and now - last < timedelta(seconds=settings.payment_poll_seconds):
        return SKIPPED

    return _scan_for_deposit(session, ticket, poller, now)


def run_payment_sweep() -> dict[str, int]:
    """Poll every ticket waiting on a deposit, then submitted payouts and open orders."""
    counts: dict[str, int] = {"checked": 0, DETECTED: 0, CONFIRMED: 0, TIMED_OUT: 0, FLAGGED: 0, "payouts_confirmed": 0}

    session = SessionLocal()
    try:
        with session.begin():
            ticket_ids = (
                session.execute(
                    select(Ticket.id).where(
                        Ticket.status == "in-progress",
                        Ticket.payment_state.in_(("awaiting", "detected")),
                    )
                )
                .scalars()
                .all()
            )
            payout_ids = (
                session.execute(
                    select(Ticket.id).where(Ticket.status == "in-progress", Ticket.payout_state == "submitted")
                )
                .scalars()
                .all()
            )
    finally:
        session.close()

    for ticket_id in ticket_ids:
        session = SessionLocal()
        try:
            with session.begin():
                ticket = session.execute(_lock(select(Ticket).where(Ticket.id == ticket_id))).scalar_one_or_none()
                if ticket is None:
                    continue
                outcome = check_ticket_payment(session, ticket)
            dispatch_pending(session)
            counts["checked"] += 1
            if outcome in counts:
                counts[outcome] += 1
        except Exception:
            logger.exception("Payment check failed for ticket %s", ticket_id)
        finally:
            session.close()

    for ticket_id in payout_ids:
        try:
            if check_payout_confirmation(ticket_id) == PAYOUT_CONFIRMED:
                counts["payouts_confirmed"] += 1
        except Exception:
            logger.exception("Payout check failed for ticket %s", ticket_id)

    for key, value in run_order_sweep().items():
        counts[f"orders_{key}"] = value
    return counts
