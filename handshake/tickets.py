from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from handshake.closure import scheduler
from handshake.config import SessionLocal, chain_for, settings
from handshake.errors import ActionRejected
from handshake.events import after_commit, dispatch_pending, ticket_event
from handshake.fees import calculate_total_amount, platform_fee, usd_to_crypto
from handshake.models import Ticket, TicketParticipant, User
from handshake.parsing import ADDRESS_HINTS, NO_AMOUNT, TOO_MANY_DECIMALS, extract_payout_address, parse_deal_amount
from handshake.payouts import dispatch_payout
from handshake.prompts import (
    dismiss,
    dismiss_all_actions,
    mention,
    post_prompt,
    post_user_message,
    usernames,
)
from handshake.workflow import (
    ACTIVE_STATUSES,
    AMOUNT,
    FEE,
    PAYMENT,
    PAYOUT,
    RECEIVER,
    ROLE,
    ROLES,
    SENDER,
    accepted_participant,
    advance,
    all_parties_marked,
    can_advance,
    clear_roles,
    is_party,
    other_party,
    party_ids,
    party_with_role,
    require_stage,
    role_of,
    set_role,
)

logger = logging.getLogger(__name__)

FEE_OPTIONS = ("with-fees", "use-pass")
PRIVACY_OPTIONS = ("anonymous", "global")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _lock(stmt):
    return stmt.with_for_update()


def _money(value: Decimal) -> str:
    return f"${value:,.2f}"


def load_ticket(session: Session, ticket_id: str, lock: bool = True) -> Ticket:
    stmt = select(Ticket).where(Ticket.id == ticket_id)
    ticket = session.execute(_lock(stmt) if lock else stmt).scalar_one_or_none()
    if ticket is None:
        raise ActionRejected("not_found", "Ticket not found")
    return ticket


def _require_party(ticket: Ticket, user: dict) -> None:
    if not is_party(ticket, user["id"]):
        raise ActionRejected("forbidden", "You are not a party to this ticket")


def _record_staff_prompt(ticket_id: str, title: str, description: str) -> None:
    """Persist a staff-contact prompt in its own session so it outlives the rejected request."""
    db = SessionLocal()
    try:
        with db.begin():
            ticket = load_ticket(db, ticket_id)
            post_prompt(
                ticket,
                title,
                description,
                color="danger",
                requires_action=True,
                action_type="contact-staff",
            )
            ticket_event(db, ticket, "ticket.updated")
        dispatch_pending(db)
    finally:
        db.close()


# --- Creation and invitations ---


def count_active_tickets(session: Session, user_id: str) -> int:
    joined = select(TicketParticipant.ticket_id).where(
        TicketParticipant.user_id == user_id,
        TicketParticipant.status == "accepted",
    )
    return session.execute(
        select(func.count(Ticket.id)).where(
            Ticket.status.in_(ACTIVE_STATUSES),
            or_(Ticket.creator_id == user_id, Ticket.id.in_(joined)),
        )
    ).scalar_one()


def create_ticket(session: Session, user: dict, crypto: str) -> Ticket:
    crypto = (crypto or "").strip().lower()
    chain = chain_for(crypto)
    if chain is None:
        raise ActionRejected("invalid_option", f"Unsupported cryptocurrency: {crypto}")
    if count_active_tickets(session, user["id"]) >= settings.active_ticket_limit:
        raise ActionRejected(
            "active_ticket_limit",
            f"You already have {settings.active_ticket_limit} active tickets. Close one before opening another.",
        )

    ticket = Ticket(
        creator_id=user["id"],
        crypto=crypto,
        status="open",
        confirmations_required=chain.confirmations_required,
        role_confirmations={},
        amount_confirmations={},
        privacy_selections={},
    )
    session.add(ticket)
    session.flush()

    post_prompt(
        ticket,
        "Welcome to Handshake",
        f"This ticket settles a {chain.symbol} trade through escrow. "
        "Add the person you are trading with to get started.",
        requires_action=True,
        action_type="add-user",
        target_user_id=user["id"],
    )
    post_prompt(
        ticket,
        "Security Notice",
        "Staff will never message you first or ask you to send funds anywhere other than the address in this ticket.",
        color="warning",
    )
    ticket_event(session, ticket, "ticket.updated")
    logger.info("Ticket %s opened by %s for %s", ticket.id, user["id"], crypto)
    return ticket


def invite_participant(session: Session, ticket: Ticket, user: dict, username: str) -> Ticket:
    if ticket.creator_id != user["id"]:
        raise ActionRejected("forbidden", "Only the ticket creator can add users")
    if ticket.status != "open":
        raise ActionRejected("invalid_state", f"Ticket is {ticket.status}")

    target = session.execute(select(User).where(User.username == username.strip().lstrip("@"))).scalar_one_or_none()
    if target is None:
        raise ActionRejected("not_found", "User not found")
    if target.id == user["id"]:
        raise ActionRejected("self_add", "You cannot add yourself to your own ticket")
    for participant in ticket.participants:
        if participant.status in ("pending", "accepted"):
            raise ActionRejected("already_added", "This ticket already has a counterparty")

    ticket.participants.append(TicketParticipant(user_id=target.id, status="pending"))
    dismiss(ticket, "add-user")
    post_prompt(
        ticket,
        "Trade Invitation",
        f"@{user['username']} invited @{target.username} to this trade.",
        requires_action=True,
        action_type="invitation",
        target_user_id=target.id,
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def respond_invitation(session: Session, ticket: Ticket, user: dict, accept: bool) -> Ticket:
    participant = next(
        (p for p in ticket.participants if p.user_id == user["id"] and p.status == "pending"),
        None,
    )
    if participant is None:
        raise ActionRejected("forbidden", "You have no pending invitation on this ticket")
    if ticket.status != "open":
        raise ActionRejected("invalid_state", f"Ticket is {ticket.status}")

    dismiss(ticket, "invitation")
    if accept:
        participant.status = "accepted"
        ticket.status = "in-progress"
        post_prompt(
            ticket,
            "Select Your Role",
            "Choose whether you are sending or receiving crypto in this deal.",
            requires_action=True,
            action_type="role-selection",
        )
    else:
        ticket.participants.remove(participant)
        post_prompt(
            ticket,
            "Invitation Declined",
            f"@{user['username']} declined the invitation. Add someone else to continue.",
            color="warning",
            requires_action=True,
            action_type="add-user",
            target_user_id=ticket.creator_id,
        )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def post_message(session: Session, ticket: Ticket, user: dict, content: str) -> Ticket:
    if not user.get("is_staff"):
        _require_party(ticket, user)
    content = content.strip()
    if not content:
        raise ActionRejected("invalid_option", "Message is empty")
    post_user_message(ticket, user["id"], content)
    ticket_event(session, ticket, "ticket.updated")
    return ticket


# --- Roles ---


def _prompt_role_selection(ticket: Ticket) -> None:
    post_prompt(
        ticket,
        "Select Your Role",
        "Choose whether you are sending or receiving crypto in this deal.",
        requires_action=True,
        action_type="role-selection",
    )


def select_role(session: Session, ticket: Ticket, user: dict, role: str) -> Ticket:
    if role not in ROLES:
        raise ActionRejected("invalid_role", "Role must be sender or receiver")
    _require_party(ticket, user)
    require_stage(ticket, "role")

    other = other_party(ticket, user["id"])
    if other is not None and role_of(ticket, other) == role:
        raise ActionRejected("role_taken", f"The other party already selected {role}")
    if role_of(ticket, user["id"]) == role:
        return ticket
    if ticket.role_state != "selecting":
        raise ActionRejected("invalid_state", "Roles are already chosen; confirm or reject them")

    set_role(ticket, user["id"], role)
    ticket.role_confirmations = {}

    sender = party_with_role(ticket, SENDER)
    receiver = party_with_role(ticket, RECEIVER)
    if sender and receiver:
        advance(ticket, ROLE, "roles_chosen")
        dismiss(ticket, "role-selection")
        names = usernames(session, ticket)
        post_prompt(
            ticket,
            "Confirm Roles",
            f"Sender: {mention(names, sender)}\nReceiver: {mention(names, receiver)}\nBoth parties must confirm.",
            requires_action=True,
            action_type="role-confirmation",
            meta={"sender": sender, "receiver": receiver},
        )
    else:
        post_prompt(ticket, "Role Selected", f"@{user['username']} will be the {role}.", color="neutral")
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def confirm_roles(session: Session, ticket: Ticket, user: dict, confirmed: bool) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "role")
    if ticket.role_state != "confirming":
        raise ActionRejected("invalid_state", "There are no roles waiting for confirmation")

    if not confirmed:
        advance(ticket, ROLE, "rejected")
        clear_roles(ticket)
        ticket.role_confirmations = {}
        dismiss(ticket, "role-confirmation")
        post_prompt(
            ticket,
            "Roles Reset",
            f"@{user['username']} rejected the roles. Select your roles again.",
            color="warning",
        )
        _prompt_role_selection(ticket)
        ticket_event(session, ticket, "ticket.updated")
        return ticket

    ticket.role_confirmations = {**(ticket.role_confirmations or {}), user["id"]: True}
    if all_parties_marked(ticket, ticket.role_confirmations):
        advance(ticket, ROLE, "both_confirmed")
        advance(ticket, AMOUNT, "unlock")
        dismiss(ticket, "role-confirmation")
        sender = party_with_role(ticket, SENDER)
        names = usernames(session, ticket)
        post_prompt(
            ticket,
            "Enter Deal Amount",
            f"{mention(names, sender)}, enter the deal amount in USD (for example $100).",
            requires_action=True,
            action_type="amount-entry",
            target_user_id=sender,
        )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


# --- Amount ---


def _prompt_amount_entry(ticket: Ticket) -> None:
    post_prompt(
        ticket,
        "Enter Deal Amount",
        "Enter the deal amount in USD (for example $100).",
        requires_action=True,
        action_type="amount-entry",
        target_user_id=party_with_role(ticket, SENDER),
    )


def propose_amount(session: Session, ticket: Ticket, user: dict, text: str) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "amount")
    if ticket.amount_state not in ("awaiting_entry", "proposed"):
        raise ActionRejected("invalid_state", "The deal amount is already confirmed")
    if role_of(ticket, user["id"]) != SENDER:
        raise ActionRejected("not_sender", "Only the sender can enter the deal amount")

    parsed = parse_deal_amount(text)
    if not parsed.ok:
        if parsed.error == NO_AMOUNT:
            raise ActionRejected("amount_not_detected", "No amount found. Try something like $100 or 250.50")
        if parsed.error == TOO_MANY_DECIMALS:
            raise ActionRejected("invalid_amount", "Amounts can have at most 2 decimal places")
        raise ActionRejected("invalid_amount", "The deal amount must be greater than zero")

    post_user_message(ticket, user["id"], text.strip())
    ticket.deal_amount = parsed.amount
    ticket.amount_confirmations = {}
    advance(ticket, AMOUNT, "proposed")
    dismiss(ticket, "amount-entry", "amount-confirmation")
    post_prompt(
        ticket,
        "Confirm Deal Amount",
        f"Deal amount: {_money(parsed.amount)}. Both parties must confirm.",
        requires_action=True,
        action_type="amount-confirmation",
        meta={"amount": str(parsed.amount)},
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def confirm_amount(session: Session, ticket: Ticket, user: dict, confirmed: bool) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "amount")
    if ticket.amount_state != "proposed":
        raise ActionRejected("invalid_state", "There is no amount waiting for confirmation")

    if not confirmed:
        advance(ticket, AMOUNT, "rejected")
        ticket.deal_amount = None
        ticket.amount_confirmations = {}
        dismiss(ticket, "amount-confirmation")
        post_prompt(ticket, "Amount Rejected", f"@{user['username']} rejected the amount.", color="warning")
        _prompt_amount_entry(ticket)
        ticket_event(session, ticket, "ticket.updated")
        return ticket

    ticket.amount_confirmations = {**(ticket.amount_confirmations or {}), user["id"]: True}
    if all_parties_marked(ticket, ticket.amount_confirmations):
        advance(ticket, AMOUNT, "both_confirmed")
        advance(ticket, FEE, "unlock")
        dismiss(ticket, "amount-confirmation")
        _prompt_fee_selection(ticket)
    ticket_event(session, ticket, "ticket.updated")
    return ticket


# --- Fees ---


def _prompt_fee_selection(ticket: Ticket) -> None:
    fee = platform_fee(Decimal(ticket.deal_amount))
    post_prompt(
        ticket,
        "Use a Pass?",
        f"The platform fee for this deal is {_money(fee)}. Use a pass to waive it, or continue with fees.",
        requires_action=True,
        action_type="fee-selection",
        meta={"fee_usd": str(fee)},
    )


def select_fee_option(session: Session, ticket: Ticket, user: dict, option: str) -> Ticket:
    if option not in FEE_OPTIONS:
        raise ActionRejected("invalid_option", "Option must be with-fees or use-pass")
    _require_party(ticket, user)
    require_stage(ticket, "fee")
    if ticket.fee_state not in ("selecting", "awaiting_confirmation"):
        raise ActionRejected("invalid_state", "The fee decision is already confirmed")

    if option == "use-pass":
        if ticket.pass_used_by is not None:
            raise ActionRejected("pass_already_used", "A pass was already used on this ticket")
        passes = session.execute(select(User.passes).where(User.id == user["id"])).scalar_one()
        if passes <= 0:
            raise ActionRejected("no_passes", "You do not have any passes")
        post_prompt(
            ticket,
            "Confirm Pass Use",
            f"@{user['username']}, confirm to spend 1 of your {passes} passes and waive the fees.",
            requires_action=True,
            action_type="pass-confirmation",
            target_user_id=user["id"],
        )
        ticket_event(session, ticket, "ticket.updated")
        return ticket

    if ticket.fee_state != "selecting":
        raise ActionRejected("invalid_state", "A fee decision is already waiting for confirmation")
    ticket.fee_decision = "with-fees"
    ticket.fee_initiated_by = user["id"]
    advance(ticket, FEE, "fees_chosen")
    dismiss(ticket, "fee-selection", "pass-confirmation")
    quote = calculate_total_amount(Decimal(ticket.deal_amount), used_pass=False)
    post_prompt(
        ticket,
        "Confirm Fees",
        f"@{user['username']} chose to pay fees. Total to deposit: {_money(quote.total_usd)} "
        f"(fee {_money(quote.fee_usd)}). The other party must confirm.",
        requires_action=True,
        action_type="fee-confirmation",
        target_user_id=other_party(ticket, user["id"]),
        meta={"fee_usd": str(quote.fee_usd), "total_usd": str(quote.total_usd)},
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def confirm_pass_use(session: Session, ticket: Ticket, user: dict) -> Ticket:
    """Spend one pass on this ticket.

    Both guards are conditional updates in the caller's transaction: the user
    must still hold a pass and the ticket must not have one yet. If either
    misses, raising rolls back the whole transaction.
    """
    _require_party(ticket, user)
    require_stage(ticket, "fee")
    if not can_advance(ticket, FEE, "pass_used"):
        raise ActionRejected("invalid_state", "The fee decision is already confirmed")

    spent = session.execute(
        update(User).where(User.id == user["id"], User.passes > 0).values(passes=User.passes - 1)
    ).rowcount
    if spent != 1:
        raise ActionRejected("no_passes", "You do not have any passes")
    claimed = session.execute(
        update(Ticket)
        .where(Ticket.id == ticket.id, Ticket.pass_used_by.is_(None))
        .values(pass_used_by=user["id"])
    ).rowcount
    if claimed != 1:
        raise ActionRejected("pass_already_used", "A pass was already used on this ticket")

    ticket.pass_used_by = user["id"]
    ticket.fee_decision = "with-pass"
    ticket.fee_initiated_by = user["id"]
    advance(ticket, FEE, "pass_used")
    dismiss(ticket, "fee-selection", "pass-confirmation", "fee-confirmation")
    post_prompt(ticket, "Pass Used", f"@{user['username']} used a pass. No fees apply to this deal.", color="success")
    _request_payment(session, ticket)
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def confirm_fees(session: Session, ticket: Ticket, user: dict, confirmed: bool) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "fee")
    if ticket.fee_state != "awaiting_confirmation":
        raise ActionRejected("invalid_state", "There is no fee decision waiting for confirmation")
    if ticket.fee_initiated_by == user["id"]:
        raise ActionRejected("self_confirmation", "The other party must confirm the fee decision")

    if not confirmed:
        advance(ticket, FEE, "rejected")
        ticket.fee_decision = None
        ticket.fee_initiated_by = None
        dismiss(ticket, "fee-confirmation")
        _prompt_fee_selection(ticket)
        ticket_event(session, ticket, "ticket.updated")
        return ticket

    advance(ticket, FEE, "confirmed")
    dismiss(ticket, "fee-confirmation")
    _request_payment(session, ticket)
    ticket_event(session, ticket, "ticket.updated")
    return ticket


# --- Payment ---


def _request_payment(session: Session, ticket: Ticket) -> None:
    chain = chain_for(ticket.crypto)
    if chain is None or not chain.wallet_address:
        raise ActionRejected("wallet_not_configured", f"No deposit wallet is configured for {ticket.crypto}")

    quote = calculate_total_amount(Decimal(ticket.deal_amount), used_pass=ticket.pass_used_by is not None)
    amount = usd_to_crypto(quote.total_usd, ticket.crypto)
    ticket.expected_usd = quote.total_usd
    ticket.expected_amount = amount
    ticket.deposit_address = chain.wallet_address
    ticket.confirmations_required = chain.confirmations_required
    ticket.payment_requested_at = _now()
    ticket.payment_deadline = None
    advance(ticket, PAYMENT, "requested")

    sender = party_with_role(ticket, SENDER)
    names = usernames(session, ticket)
    post_prompt(
        ticket,
        "Send Funds to Handshake",
        f"{mention(names, sender)}, send exactly {amount.normalize():f} {chain.symbol} "
        f"({_money(quote.total_usd)}) to:\n{chain.wallet_address}",
        requires_action=True,
        action_type="transaction-send",
        target_user_id=sender,
        meta={
            "amount": str(amount),
            "symbol": chain.symbol,
            "address": chain.wallet_address,
            "total_usd": str(quote.total_usd),
            "fee_usd": str(quote.fee_usd),
        },
    )


def copy_transaction_details(session: Session, ticket: Ticket, user: dict) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "payment")
    if ticket.payment_state not in ("awaiting", "detected", "timed_out"):
        raise ActionRejected("invalid_state", "There is no pending deposit on this ticket")
    if ticket.copy_count >= settings.copy_details_limit:
        raise ActionRejected("copy_limit_reached", "The deposit details were already posted the maximum number of times")

    ticket.copy_count += 1
    post_prompt(
        ticket,
        "Deposit Details",
        f"{ticket.expected_amount.normalize():f} {ticket.crypto}",
        color="neutral",
        content=ticket.deposit_address or "",
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def request_rescan(session: Session, ticket: Ticket, user: dict) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "payment")
    if ticket.payment_state not in ("timed_out", "cancelled"):
        raise ActionRejected("invalid_state", "A rescan is only possible after the deposit window closed")

    if ticket.rescan_count >= settings.max_rescans:
        _record_staff_prompt(
            ticket.id,
            "Maximum Attempts Reached",
            f"This ticket has used all {settings.max_rescans} rescans. Ping staff with /ping staff so they can verify your payment manually.",
        )
        raise ActionRejected("rescan_limit_reached", "No rescans left. Contact staff to verify your payment.")

    ticket.rescan_count += 1
    windows = settings.rescan_windows_minutes
    window = windows[min(ticket.rescan_count, len(windows)) - 1]
    ticket.payment_deadline = _now() + timedelta(minutes=window)
    ticket.provider_cooldown_until = None
    ticket.last_scanned_at = None
    advance(ticket, PAYMENT, "rescan")
    dismiss(ticket, "transaction-timeout")
    post_prompt(
        ticket,
        "Rescanning",
        f"Rescan {ticket.rescan_count} of {settings.max_rescans}. Watching for your transaction for the next {window} minutes.",
        meta={"attempt": ticket.rescan_count, "window_minutes": window},
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def cancel_transaction(session: Session, ticket: Ticket, user: dict) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "payment")
    if ticket.payment_state not in ("awaiting", "timed_out"):
        raise ActionRejected("invalid_state", "There is no pending deposit to cancel")

    advance(ticket, PAYMENT, "cancel")
    dismiss(ticket, "transaction-send", "transaction-timeout")
    post_prompt(
        ticket,
        "Transaction Cancelled",
        f"@{user['username']} cancelled the pending deposit. Request a rescan if the funds were already sent.",
        color="warning",
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


# --- Release and payout ---


def request_release(session: Session, ticket: Ticket, user: dict) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "release")
    if ticket.payout_state != "idle":
        raise ActionRejected("invalid_state", "The funds were already released")
    if role_of(ticket, user["id"]) != SENDER:
        raise ActionRejected("not_sender", "Only the sender can release the funds")

    chain = chain_for(ticket.crypto)
    if chain is None or chain.kind != "account":
        _record_staff_prompt(
            ticket.id,
            "Manual Payout Required",
            f"Automatic payouts are not available for {ticket.crypto}. Staff will complete this payout manually.",
        )
        raise ActionRejected("payout_unsupported", "Automatic payouts are not available for this chain")

    advance(ticket, PAYOUT, "release")
    dismiss(ticket, "release-funds")
    receiver = party_with_role(ticket, RECEIVER)
    names = usernames(session, ticket)
    post_prompt(
        ticket,
        "Enter Payout Address",
        f"{mention(names, receiver)}, reply with the {ticket.crypto} address that should receive the funds.",
        requires_action=True,
        action_type="payout-address",
        target_user_id=receiver,
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def submit_payout_address(session: Session, ticket: Ticket, user: dict, address: str) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "payout")
    if ticket.payout_state not in ("awaiting_address", "awaiting_confirmation"):
        raise ActionRejected("invalid_state", "The payout address can no longer be changed")
    if role_of(ticket, user["id"]) != RECEIVER:
        raise ActionRejected("not_receiver", "Only the receiver can provide the payout address")

    normalized = extract_payout_address(address, ticket.crypto)
    if normalized is None:
        raise ActionRejected(
            "invalid_address",
            f"That is not a valid {ticket.crypto} address. {ADDRESS_HINTS.get(ticket.crypto, '')}".strip(),
        )

    ticket.pending_payout_address = normalized
    advance(ticket, PAYOUT, "address_submitted")
    dismiss(ticket, "payout-address", "payout-address-confirmation")
    post_prompt(
        ticket,
        "Confirm Payout Address",
        f"Funds will be sent to:\n{normalized}\nConfirm this address is correct.",
        requires_action=True,
        action_type="payout-address-confirmation",
        target_user_id=user["id"],
        meta={"address": normalized},
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def confirm_payout_address(session: Session, ticket: Ticket, user: dict, confirmed: bool) -> Ticket:
    _require_party(ticket, user)
    require_stage(ticket, "payout")
    if ticket.payout_state != "awaiting_confirmation":
        raise ActionRejected("invalid_state", "There is no payout address waiting for confirmation")
    if role_of(ticket, user["id"]) != RECEIVER:
        raise ActionRejected("not_receiver", "Only the receiver can confirm the payout address")

    if not confirmed:
        advance(ticket, PAYOUT, "rejected")
        ticket.pending_payout_address = None
        dismiss(ticket, "payout-address-confirmation")
        post_prompt(
            ticket,
            "Enter Payout Address",
            f"Reply with the {ticket.crypto} address that should receive the funds.",
            requires_action=True,
            action_type="payout-address",
            target_user_id=user["id"],
        )
        ticket_event(session, ticket, "ticket.updated")
        return ticket

    return dispatch_payout(session, ticket, ticket.pending_payout_address)


# --- Privacy and closure ---


def select_privacy(session: Session, ticket: Ticket, user: dict, choice: str) -> Ticket:
    if choice not in PRIVACY_OPTIONS:
        raise ActionRejected("invalid_option", "Choice must be anonymous or global")
    _require_party(ticket, user)
    require_stage(ticket, "privacy")

    ticket.privacy_selections = {**(ticket.privacy_selections or {}), user["id"]: choice}
    shown = "anonymously" if choice == "anonymous" else "with their username"
    post_prompt(ticket, "Privacy Selected", f"@{user['username']} will appear {shown} on the trade feed.", color="neutral")
    if all_parties_marked(ticket, ticket.privacy_selections):
        dismiss(ticket, "privacy-selection")
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def _funds_in_escrow(ticket: Ticket) -> bool:
    return ticket.payment_state in ("detected", "confirmed", "flagged") or ticket.payout_state != "idle"


def close_ticket(session: Session, ticket: Ticket, user: dict) -> Ticket:
    _require_party(ticket, user)

    if ticket.status == "awaiting-close":
        require_stage(ticket, "closure")
        if not all_parties_marked(ticket, ticket.privacy_selections or {}):
            raise ActionRejected("privacy_incomplete", "Every party must choose a privacy option before closing")
        close_at = _now() + timedelta(seconds=settings.close_delay_seconds)
        ticket.status = "closing"
        ticket.close_scheduled_at = close_at
        dismiss_all_actions(ticket)
        post_prompt(
            ticket,
            "Closing Ticket",
            f"This ticket will close in {settings.close_delay_seconds} seconds.",
            color="neutral",
            action_type="ticket-closing",
            meta={"close_at": close_at.isoformat()},
        )
        ticket_event(session, ticket, "ticket.closing", close_at=close_at.isoformat())
        ticket_id = ticket.id
        after_commit(session, lambda: scheduler.schedule(ticket_id, close_at))
        return ticket

    if ticket.status not in ("open", "in-progress"):
        raise ActionRejected("invalid_state", f"Ticket is {ticket.status}")
    if _funds_in_escrow(ticket):
        raise ActionRejected("funds_in_escrow", "Funds are in escrow; ask staff to cancel or refund this trade")

    if can_advance(ticket, PAYMENT, "abandon"):
        advance(ticket, PAYMENT, "abandon")
    ticket.status = "cancelled"
    dismiss_all_actions(ticket)
    post_prompt(ticket, "Ticket Cancelled", f"@{user['username']} cancelled this ticket.", color="danger")
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def open_dispute(session: Session, ticket: Ticket, user: dict, reason: str) -> Ticket:
    _require_party(ticket, user)
    if ticket.status not in ("in-progress", "awaiting-close"):
        raise ActionRejected("invalid_state", f"Ticket is {ticket.status}")

    ticket.status = "disputed"
    ticket.dispute_reason = reason
    post_prompt(
        ticket,
        "Dispute Opened",
        f"@{user['username']} opened a dispute: {reason}\nStaff will review this ticket.",
        color="danger",
        requires_action=True,
        action_type="staff-review",
    )
    ticket_event(session, ticket, "ticket.updated")
    return ticket


def staff_resolve(session: Session, ticket: Ticket, user: dict, outcome: str, note: str | None = None) -> Ticket:
    if not user.get("is_staff"):
        raise ActionRejected("forbidden", "Only staff can resolve tickets")
    if outcome not in ("cancelled", "refunded", "disputed"):
        raise ActionRejected("invalid_option", "Outcome must be cancelled, refunded or disputed")
    if ticket.status == "completed":
        raise ActionRejected("invalid_state", "Completed tickets cannot be changed")

    if can_advance(ticket, PAYMENT, "abandon"):
        advance(ticket, PAYMENT, "abandon")
    if can_advance(ticket, PAYOUT, "abandon"):
        advance(ticket, PAYOUT, "abandon")
    ticket.status = outcome
    ticket.close_scheduled_at = None
    ticket.resolved_by = user["id"]
    dismiss_all_actions(ticket)
    post_prompt(
        ticket,
        "Resolved by Staff",
        f"Staff marked this ticket as {outcome}." + (f"\n{note}" if note else ""),
        color="danger",
    )
    ticket_event(session, ticket, "ticket.updated")
    scheduler.cancel(ticket.id)
    return ticket
