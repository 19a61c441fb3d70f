from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from threading import Thread
from time import monotonic, sleep

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from web3 import Web3

from handshake.chains.base import ProviderError
from handshake.chains.registry import poller_for
from handshake.config import SessionLocal, chain_for, settings
from handshake.errors import ActionRejected
from handshake.events import after_commit, dispatch_pending, ticket_event
from handshake.fees import payout_usd, usd_to_crypto
from handshake.models import Ticket
from handshake.prompts import dismiss, post_prompt, post_unique
from handshake.workflow import PAYOUT, RECEIVER, advance, party_with_role

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"
PENDING = "pending"
FAILED = "failed"
IDLE = "idle"


class PayoutError(Exception):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lock(stmt):
    return stmt.with_for_update()


def submit_payout(ticket: Ticket, address: str) -> tuple[str, Decimal]:
    """Build, price and send the outbound transfer. Returns ``(tx_hash, amount)``."""
    chain = chain_for(ticket.crypto)
    rpc = poller_for(ticket.crypto).rpc

    amount = usd_to_crypto(payout_usd(ticket), ticket.crypto)
    value = int(Web3.to_wei(amount, "ether"))
    if value <= 0:
        raise PayoutError("Payout amount is zero")

    fees = rpc.fee_data()
    tx = {"from": chain.wallet_address, "to": address, "value": hex(value)}
    try:
        gas = rpc.estimate_gas(tx)
    except ProviderError:
        logger.warning("Gas estimate failed for ticket %s, using %d", ticket.id, settings.payout_fallback_gas)
        gas = settings.payout_fallback_gas

    unit_price = fees.get("maxFeePerGas") or fees.get("gasPrice") or 0
    balance = rpc.get_balance(chain.wallet_address)
    if balance < value + gas * unit_price:
        raise PayoutError("Escrow wallet balance is too low for this payout")

    tx["gas"] = hex(gas)
    for key, val in fees.items():
        tx[key] = hex(val)

    tx_hash = rpc.send_transaction(tx)
    if not tx_hash:
        raise PayoutError("Provider returned no transaction hash")
    return tx_hash, amount


def _ask_for_address(ticket: Ticket) -> None:
    post_prompt(
        ticket,
        "Enter Payout Address",
        f"Reply with the {ticket.crypto} address that should receive the funds.",
        requires_action=True,
        action_type="payout-address",
        target_user_id=party_with_role(ticket, RECEIVER),
    )


def _record_failure(ticket_id: str, reason: str) -> None:
    """Persist the revert in an independent session so it survives the caller's rollback."""
    db = SessionLocal()
    try:
        with db.begin():
            ticket = db.execute(_lock(select(Ticket).where(Ticket.id == ticket_id))).scalar_one_or_none()
            if ticket is None or ticket.payout_state not in ("awaiting_confirmation", "submitted"):
                return
            advance(ticket, PAYOUT, "failed")
            ticket.pending_payout_address = None
            ticket.payout_tx_hash = None
            dismiss(ticket, "payout-address-confirmation")
            post_prompt(
                ticket,
                "Payout Failed",
                f"The payout could not be completed: {reason}. Staff have been notified.",
                color="danger",
                meta={"reason": reason},
            )
            _ask_for_address(ticket)
            ticket_event(db, ticket, "ticket.updated", payout_error=reason)
        dispatch_pending(db)
    finally:
        db.close()


def dispatch_payout(session: Session, ticket: Ticket, address: str) -> Ticket:
    chain = chain_for(ticket.crypto)
    if chain is None or chain.kind != "account":
        raise ActionRejected("payout_unsupported", "Automatic payouts are not available for this chain")

    try:
        tx_hash, amount = submit_payout(ticket, address)
    except (ProviderError, PayoutError) as exc:
        logger.warning("Payout for ticket %s failed: %s", ticket.id, exc)
        _record_failure(ticket.id, str(exc))
        raise ActionRejected(
            "payout_failed",
            "The payout could not be sent. Submit your address again to retry.",
        ) from exc

    ticket.payout_address = address
    ticket.pending_payout_address = None
    ticket.payout_tx_hash = tx_hash
    ticket.payout_amount = amount
    ticket.payout_submitted_at = _now()
    advance(ticket, PAYOUT, "dispatched")
    dismiss(ticket, "payout-address-confirmation")
    post_prompt(
        ticket,
        "Payout Sent",
        f"{amount.normalize():f} {chain.symbol} is on its way to {address}. "
        f"Waiting for {chain.confirmations_required} confirmations.",
        color="success",
        meta={"tx_hash": tx_hash, "explorer_url": chain.tx_link(tx_hash)},
    )
    ticket_event(session, ticket, "ticket.payout_submitted", tx_hash=tx_hash)
    ticket_id = ticket.id
    after_commit(session, lambda: start_watcher(ticket_id))
    logger.info("Payout %s submitted for ticket %s", tx_hash, ticket.id)
    return ticket


def _complete_payout(session: Session, ticket: Ticket) -> bool:
    result = session.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.status == "in-progress", Ticket.payout_state == "submitted")
        .values(payout_state="confirmed", status="awaiting-close", payout_confirmed_at=_now())
    )
    if result.rowcount != 1:
        return False

    post_unique(
        ticket,
        "Trade Complete",
        "The payout is confirmed on-chain. Thank you for trading with Handshake.",
        color="success",
        meta={"tx_hash": ticket.payout_tx_hash},
    )
    post_unique(
        ticket,
        "Broadcast Privacy",
        "Choose how you appear on the public trade feed: anonymous or with your username.",
        requires_action=True,
        action_type="privacy-selection",
    )
    ticket_event(session, ticket, "ticket.payout_confirmed", tx_hash=ticket.payout_tx_hash)
    logger.info("Payout confirmed for ticket %s", ticket.id)
    return True


def check_payout_confirmation(ticket_id: str) -> str:
    """Check a submitted payout once. Returns confirmed, pending, failed or idle."""
    session = SessionLocal()
    try:
        with session.begin():
            ticket = session.execute(_lock(select(Ticket).where(Ticket.id == ticket_id))).scalar_one_or_none()
            if ticket is None:
                return IDLE
            if ticket.payout_state == "confirmed":
                return CONFIRMED
            if ticket.status != "in-progress" or ticket.payout_state != "submitted" or not ticket.payout_tx_hash:
                return IDLE

            chain = chain_for(ticket.crypto)
            try:
                depth = poller_for(ticket.crypto).confirmations(ticket.payout_tx_hash)
            except ProviderError:
                logger.warning("Payout confirmation check failed for ticket %s", ticket_id, exc_info=True)
                return PENDING

            if depth < 0:
                outcome = FAILED
            elif depth >= chain.confirmations_required:
                _complete_payout(session, ticket)
                outcome = CONFIRMED
            else:
                outcome = PENDING
        dispatch_pending(session)
    finally:
        session.close()

    if outcome == FAILED:
        logger.warning("Payout for ticket %s reverted on-chain", ticket_id)
        _record_failure(ticket_id, "the transaction reverted on-chain")
    return outcome


def _watch(ticket_id: str) -> None:
    deadline = monotonic() + settings.payout_watch_seconds
    while monotonic() < deadline:
        sleep(settings.payment_poll_seconds)
        try:
            if check_payout_confirmation(ticket_id) != PENDING:
                return
        except Exception:
            logger.exception("Payout watcher error for ticket %s", ticket_id)
    logger.info("Payout watcher for ticket %s stopped; the payment sweep keeps checking", ticket_id)


def start_watcher(ticket_id: str) -> Thread | None:
    if settings.payout_watch_seconds <= 0:
        return None
    thread = Thread(target=_watch, args=(ticket_id,), daemon=True, name=f"payout-{ticket_id[:8]}")
    thread.start()
    return thread
