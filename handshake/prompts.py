from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from handshake.models import Ticket, TicketMessage, User
from handshake.workflow import party_ids

COLORS = {
    "info": "#5865F2",
    "success": "#57F287",
    "warning": "#FEE75C",
    "danger": "#ED4245",
    "neutral": "#2B2D31",
}

FOOTER = "Handshake Escrow"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def post_prompt(
    ticket: Ticket,
    title: str,
    description: str,
    *,
    color: str = "info",
    footer: str | None = FOOTER,
    requires_action: bool = False,
    action_type: str | None = None,
    target_user_id: str | None = None,
    meta: dict | None = None,
    content: str = "",
) -> TicketMessage:
    message = TicketMessage(
        ticket_id=ticket.id,
        author_id=None,
        is_bot=True,
        content=content,
        title=title,
        description=description,
        color=COLORS.get(color, color),
        footer=footer,
        requires_action=requires_action,
        action_type=action_type,
        target_user_id=target_user_id,
        meta=dict(meta) if meta else None,
    )
    ticket.messages.append(message)
    return message


def post_unique(ticket: Ticket, title: str, description: str, **kwargs) -> TicketMessage | None:
    """Post a prompt unless an active bot prompt with the same title already exists."""
    for message in ticket.messages:
        if message.is_bot and message.title == title and message.dismissed_at is None:
            return None
    return post_prompt(ticket, title, description, **kwargs)


def post_user_message(ticket: Ticket, user_id: str, content: str) -> TicketMessage:
    message = TicketMessage(ticket_id=ticket.id, author_id=user_id, is_bot=False, content=content)
    ticket.messages.append(message)
    return message


def active_prompt(ticket: Ticket, action_type: str) -> TicketMessage | None:
    for message in reversed(ticket.messages):
        if message.action_type == action_type and message.dismissed_at is None:
            return message
    return None


def dismiss(ticket: Ticket, *action_types: str) -> int:
    now = _now()
    count = 0
    for message in ticket.messages:
        if message.dismissed_at is None and message.action_type in action_types:
            message.dismissed_at = now
            count += 1
    return count


def dismiss_all_actions(ticket: Ticket) -> int:
    now = _now()
    count = 0
    for message in ticket.messages:
        if message.dismissed_at is None and message.requires_action:
            message.dismissed_at = now
            count += 1
    return count


def usernames(session: Session, ticket: Ticket) -> dict[str, str]:
    ids = party_ids(ticket)
    rows = session.execute(select(User.id, User.username).where(User.id.in_(ids))).all()
    return {row.id: row.username for row in rows}


def mention(names: dict[str, str], user_id: str | None) -> str:
    if user_id is None:
        return "someone"
    return f"@{names.get(user_id, 'unknown')}"
