from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from handshake.chains.base import ChainPoller, ProviderError
from handshake.chains.registry import poller_for
from handshake.config import PASS_CATALOGUE, SessionLocal, chain_for, settings
from handshake.errors import ActionRejected
from handshake.events import dispatch_pending, order_event
from handshake.fees import usd_to_crypto
from handshake.models import PurchaseOrder, Ticket, User

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "confirmed")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(dt: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; assume UTC when tzinfo is absent."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _lock(stmt):
    return stmt.with_for_update()


def tx_hash_claimed(session: Session, tx_hash: str, ticket_id: str | None = None, order_id: str | None = None) -> bool:
    """Whether any other ticket or order already owns ``tx_hash``."""
    tickets = select(Ticket.id).where(Ticket.tx_hash == tx_hash)
    if ticket_id is not None:
        tickets = tickets.where(Ticket.id != ticket_id)
    if session.execute(tickets.limit(1)).first() is not None:
        return True
    orders = select(PurchaseOrder.id).where(PurchaseOrder.tx_hash == tx_hash)
    if order_id is not None:
        orders = orders.where(PurchaseOrder.id != order_id)
    return session.execute(orders.limit(1)).first() is not None


def create_order(session: Session, user: dict, pass_id: str, crypto: str) -> PurchaseOrder:
    item = PASS_CATALOGUE.get(str(pass_id))
    if item is None:
        raise ActionRejected("invalid_option", f"Unknown pass: {pass_id}")
    crypto = (crypto or "").strip().lower()
    chain = chain_for(crypto)
    if chain is None:
        raise ActionRejected("invalid_option", f"Unsupported cryptocurrency: {crypto}")

    open_orders = (
        session.execute(
            _lock(
                select(PurchaseOrder).where(
                    PurchaseOrder.user_id == user["id"],
                    PurchaseOrder.status.in_(OPEN_STATUSES),
                )
            )
        )
        .scalars()
        .all()
    )
    if any(order.tx_hash for order in open_orders):
        raise ActionRejected("active_order_exists", "You have an order with a payment in progress")
    for order in open_orders:
        order.status = "cancelled"
        order.staff_notes = "Replaced by a newer order"

    address = None
    if chain.kind == "utxo":
        address = poller_for(crypto).generate_address()
    address = address or chain.wallet_address
    if not address:
        raise ActionRejected("wallet_not_configured", f"No deposit wallet is configured for {crypto}")

    now = _now()
    order = PurchaseOrder(
        order_ref=f"HS-{secrets.token_hex(4).upper()}",
        user_id=user["id"],
        pass_id=str(pass_id),
        pass_type=item["type"],
        pass_count=item["count"],
        price_usd=item["price"],
        crypto=crypto,
        crypto_amount=usd_to_crypto(item["price"], crypto),
        deposit_address=address,
        status="pending",
        confirmations_required=chain.confirmations_required,
        timeout_at=now + timedelta(minutes=settings.order_detection_timeout_minutes),
        expires_at=now + timedelta(minutes=settings.order_expiry_minutes),
    )
    session.add(order)
    session.flush()
    logger.info("Order %s created for %s (%s x%d)", order.order_ref, user["id"], item["type"], item["count"])
    return order


def complete_order(session: Session, order: PurchaseOrder) -> bool:
    """Credit the passes exactly once; only the caller that wins the status swap credits."""
    now = _now()
    won = session.execute(
        update(PurchaseOrder)
        .where(PurchaseOrder.id == order.id, PurchaseOrder.status.in_(OPEN_STATUSES))
        .values(status="completed", completed_at=now)
    ).rowcount == 1
    if not won:
        return False

    user = session.execute(_lock(select(User).where(User.id == order.user_id))).scalar_one()
    order.balance_before = user.passes
    user.passes = user.passes + order.pass_count
    order.balance_after = user.passes
    if order.confirmed_at is None:
        order.confirmed_at = now
    order_event(session, order, "order.completed", passes=user.passes)
    logger.info("Order %s completed, %d passes credited to %s", order.order_ref, order.pass_count, order.user_id)
    return True


def _record_observation(order: PurchaseOrder, detection, now: datetime) -> None:
    obs = detection.observation
    match = detection.match
    order.tx_hash = obs.tx_hash
    order.detected_at = now
    order.confirmations = obs.confirmations
    order.received_amount = match.received_amount
    order.amount_difference = match.difference
    order.percent_difference = match.percent_difference.quantize(Decimal("0.0001"))
    order.network_fee = obs.network_fee
    order.block_height = obs.block_height
    order.from_address = obs.from_address
    order.payment_notes = match.note()


def check_order(session: Session, order: PurchaseOrder, poller: ChainPoller | None = None) -> str | None:
    """Advance one purchase order by a single poll."""
    if order.status not in OPEN_STATUSES:
        return None
    now = _now()

    if order.tx_hash is None:
        if now >= _ensure_aware(order.expires_at):
            order.status = "expired"
            order_event(session, order, "order.expired")
            return "expired"
        if now >= _ensure_aware(order.timeout_at):
            order.status = "timedout"
            order_event(session, order, "order.timedout")
            return "timedout"

    cooldown = _ensure_aware(order.provider_cooldown_until)
    if cooldown is not None and now < cooldown:
        return "cooldown"

    poller = poller or poller_for(order.crypto)
    order.last_scanned_at = now

    if order.tx_hash is not None:
        try:
            obs = poller.lookup(order.tx_hash, order.deposit_address)
        except ProviderError:
            logger.warning("Provider error refreshing order %s", order.order_ref, exc_info=True)
            order.provider_cooldown_until = now + timedelta(seconds=settings.provider_cooldown_seconds)
            return "cooldown"
        if obs is None:
            return None
        if obs.confirmations != order.confirmations:
            order.confirmations = obs.confirmations
            order_event(session, order, "order.confirming")
        if obs.confirmations < order.confirmations_required:
            return "confirming"
        order.status = "confirmed"
        order.confirmed_at = now
        return "completed" if complete_order(session, order) else None

    since = _ensure_aware(order.created_at) - timedelta(minutes=settings.lookback_grace_minutes)
    try:
        detection = poller.scan(
            order.deposit_address,
            order.crypto_amount,
            order.price_usd,
            since=since,
            claimed=lambda tx_hash: tx_hash_claimed(session, tx_hash, order_id=order.id),
            tolerance=settings.amount_tolerance,
        )
    except ProviderError:
        logger.warning("Provider error scanning order %s", order.order_ref, exc_info=True)
        order.provider_cooldown_until = now + timedelta(seconds=settings.provider_cooldown_seconds)
        return "cooldown"
    if detection is None:
        return None

    if detection.duplicate:
        order.status = "awaiting-staff"
        order.staff_contact_requested = True
        order.staff_notes = (
            f"Transaction {detection.tx_hash} is already linked to another order. Manual verification required."
        )
        order_event(session, order, "order.awaiting_staff", tx_hash=detection.tx_hash)
        logger.warning("Order %s matched an already claimed transaction %s", order.order_ref, detection.tx_hash)
        return "awaiting_staff"

    _record_observation(order, detection, now)
    if not detection.match.accepted:
        order.status = "failed"
        order.is_underpayment = True
        order_event(session, order, "order.failed", notes=order.payment_notes)
        logger.warning("Order %s underpaid: %s", order.order_ref, order.payment_notes)
        return "failed"

    order.is_overpayment = detection.match.kind == "overpayment"
    order_event(session, order, "order.detected", tx_hash=order.tx_hash)
    if order.confirmations >= order.confirmations_required:
        order.status = "confirmed"
        order.confirmed_at = now
        return "completed" if complete_order(session, order) else None
    return "detected"


def run_order_sweep() -> dict[str, int]:
    counts: dict[str, int] = {"checked": 0, "completed": 0, "failed": 0, "awaiting_staff": 0, "expired": 0, "timedout": 0}

    session = SessionLocal()
    try:
        with session.begin():
            order_ids = (
                session.execute(select(PurchaseOrder.id).where(PurchaseOrder.status.in_(OPEN_STATUSES)))
                .scalars()
                .all()
            )
    finally:
        session.close()

    for order_id in order_ids:
        session = SessionLocal()
        try:
            with session.begin():
                order = session.execute(
                    _lock(select(PurchaseOrder).where(PurchaseOrder.id == order_id))
                ).scalar_one_or_none()
                if order is None:
                    continue
                outcome = check_order(session, order)
            dispatch_pending(session)
            counts["checked"] += 1
            if outcome in counts:
                counts[outcome] += 1
        except Exception:
            logger.exception("Order check failed for %s", order_id)
        finally:
            session.close()
    return counts
