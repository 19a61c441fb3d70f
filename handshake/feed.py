from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from handshake.config import chain_for
from handshake.models import Ticket
from handshake.prompts import usernames
from handshake.workflow import RECEIVER, SENDER, party_with_role

ANONYMOUS = "Anonymous"


def _display_name(ticket: Ticket, names: dict[str, str], user_id: str | None) -> str:
    if user_id is None:
        return ANONYMOUS
    if (ticket.privacy_selections or {}).get(user_id) == "global" and user_id in names:
        return f"@{names[user_id]}"
    return ANONYMOUS


def build_feed_item(ticket: Ticket, names: dict[str, str]) -> dict:
    """Public completed-trade entry, honouring each party's privacy choice."""
    chain = chain_for(ticket.crypto)
    usd = Decimal(ticket.deal_amount or 0)
    amount = ticket.payout_amount
    if amount is None and chain is not None:
        amount = (usd / chain.usd_rate).quantize(Decimal("0.00000001"), rounding=ROUND_HALF_UP)
    return {
        "ticket_id": ticket.id,
        "crypto": ticket.crypto,
        "symbol": chain.symbol if chain else ticket.crypto.upper(),
        "amount": amount or Decimal("0"),
        "usd_value": usd,
        "sender": _display_name(ticket, names, party_with_role(ticket, SENDER)),
        "receiver": _display_name(ticket, names, party_with_role(ticket, RECEIVER)),
        "transaction_id": ticket.payout_tx_hash,
        "explorer_url": chain.tx_link(ticket.payout_tx_hash) if chain else None,
        "completed_at": ticket.completed_at,
    }


def recent_feed(session: Session, limit: int = 20) -> list[dict]:
    tickets = (
        session.execute(
            select(Ticket)
            .where(Ticket.status == "completed", Ticket.broadcasted_at.is_not(None))
            .order_by(Ticket.completed_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )
    return [build_feed_item(ticket, usernames(session, ticket)) for ticket in tickets]
