from __future__ import annotations

from collections.abc import Callable

from fastapi import APIRouter, Depends
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from handshake import tickets as ops
from handshake.auth import authenticate_user
from handshake.config import chain_for, get_session
from handshake.errors import ActionRejected
from handshake.events import dispatch_pending
from handshake.models import Ticket, TicketParticipant
from handshake.schemas import (
    ConfirmRequest,
    CreateTicketRequest,
    DisputeRequest,
    InviteRequest,
    MessageRequest,
    ParticipantItem,
    PaymentInfo,
    PayoutAddressRequest,
    PayoutInfo,
    PrivacyRequest,
    ProposeAmountRequest,
    RespondInvitationRequest,
    SelectFeeRequest,
    SelectRoleRequest,
    StaffResolveRequest,
    TicketFlags,
    TicketListResponse,
    TicketMessageItem,
    TicketResponse,
)

router = APIRouter()


def _ticket_response(ticket: Ticket, include_messages: bool = True) -> TicketResponse:
    chain = chain_for(ticket.crypto)
    messages = []
    if include_messages:
        messages = [
            TicketMessageItem(
                id=m.id,
                author_id=m.author_id,
                is_bot=m.is_bot,
                content=m.content or "",
                title=m.title,
                description=m.description,
                color=m.color,
                footer=m.footer,
                requires_action=m.requires_action,
                action_type=m.action_type,
                target_user_id=m.target_user_id,
                metadata=m.meta,
                created_at=m.created_at,
                dismissed_at=m.dismissed_at,
            )
            for m in ticket.messages
        ]
    return TicketResponse(
        id=ticket.id,
        crypto=ticket.crypto,
        status=ticket.status,
        creator_id=ticket.creator_id,
        creator_role=ticket.creator_role,
        participants=[
            ParticipantItem(user_id=p.user_id, status=p.status, role=p.role) for p in ticket.participants
        ],
        role_state=ticket.role_state,
        role_confirmations=ticket.role_confirmations or {},
        deal_amount=ticket.deal_amount,
        amount_state=ticket.amount_state,
        amount_confirmations=ticket.amount_confirmations or {},
        fee_decision=ticket.fee_decision,
        fee_initiated_by=ticket.fee_initiated_by,
        fee_state=ticket.fee_state,
        pass_used_by=ticket.pass_used_by,
        payment=PaymentInfo(
            state=ticket.payment_state,
            expected_usd=ticket.expected_usd,
            expected_amount=ticket.expected_amount,
            deposit_address=ticket.deposit_address,
            tx_hash=ticket.tx_hash,
            received_amount=ticket.received_amount,
            confirmations=ticket.confirmations,
            confirmations_required=ticket.confirmations_required,
            notes=ticket.payment_notes,
            deadline=ticket.payment_deadline,
            rescan_count=ticket.rescan_count,
        ),
        payout=PayoutInfo(
            state=ticket.payout_state,
            pending_address=ticket.pending_payout_address,
            address=ticket.payout_address,
            amount=ticket.payout_amount,
            tx_hash=ticket.payout_tx_hash,
            explorer_url=chain.tx_link(ticket.payout_tx_hash) if chain else None,
        ),
        flags=TicketFlags(
            roles_confirmed=ticket.roles_confirmed,
            deal_amount_confirmed=ticket.deal_amount_confirmed,
            fees_confirmed=ticket.fees_confirmed,
            awaiting_transaction=ticket.awaiting_transaction,
            transaction_confirmed=ticket.transaction_confirmed,
            transaction_timed_out=ticket.transaction_timed_out,
            release_initiated=ticket.release_initiated,
            funds_released=ticket.funds_released,
        ),
        privacy_selections=ticket.privacy_selections or {},
        close_scheduled_at=ticket.close_scheduled_at,
        completed_at=ticket.completed_at,
        dispute_reason=ticket.dispute_reason,
        created_at=ticket.created_at,
        messages=messages,
    )


def _can_view(ticket: Ticket, current: dict) -> bool:
    if current.get("is_staff") or ticket.creator_id == current["id"]:
        return True
    return any(p.user_id == current["id"] for p in ticket.participants)


def _act(session: Session, ticket_id: str, current: dict, action: Callable[..., Ticket], *args) -> TicketResponse:
    """Run one ticket operation in a transaction and publish its events after commit."""
    with session.begin():
        ticket = ops.load_ticket(session, ticket_id)
        action(session, ticket, current, *args)
        session.flush()
        response = _ticket_response(ticket)
    dispatch_pending(session)
    return response


@router.post("/tickets", status_code=201, response_model=TicketResponse, tags=["Tickets"])
def create_ticket(
    req: CreateTicketRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    with session.begin():
        ticket = ops.create_ticket(session, current, req.crypto)
        session.flush()
        response = _ticket_response(ticket)
    dispatch_pending(session)
    return response


@router.get("/tickets", response_model=TicketListResponse, tags=["Tickets"])
def list_tickets(
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketListResponse:
    with session.begin():
        joined = select(TicketParticipant.ticket_id).where(TicketParticipant.user_id == current["id"])
        q = select(Ticket).where(or_(Ticket.creator_id == current["id"], Ticket.id.in_(joined)))
        if status:
            q = q.where(Ticket.status == status)
        q = q.order_by(Ticket.created_at.desc()).limit(limit).offset(offset)
        rows = session.execute(q).scalars().all()
        items = [_ticket_response(t, include_messages=False) for t in rows]
    return TicketListResponse(tickets=items, count=len(items))


@router.get("/tickets/{ticket_id}", response_model=TicketResponse, tags=["Tickets"])
def get_ticket(
    ticket_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    with session.begin():
        ticket = ops.load_ticket(session, ticket_id, lock=False)
        if not _can_view(ticket, current):
            raise ActionRejected("forbidden", "You are not a party to this ticket")
        return _ticket_response(ticket)


@router.post("/tickets/{ticket_id}/invite", response_model=TicketResponse, tags=["Tickets"])
def invite(
    ticket_id: str,
    req: InviteRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.invite_participant, req.username)


@router.post("/tickets/{ticket_id}/respond", response_model=TicketResponse, tags=["Tickets"])
def respond(
    ticket_id: str,
    req: RespondInvitationRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.respond_invitation, req.accept)


@router.post("/tickets/{ticket_id}/messages", response_model=TicketResponse, tags=["Tickets"])
def post_message(
    ticket_id: str,
    req: MessageRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.post_message, req.content)


@router.post("/tickets/{ticket_id}/select-role", response_model=TicketResponse, tags=["Tickets"])
def select_role(
    ticket_id: str,
    req: SelectRoleRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.select_role, req.role)


@router.post("/tickets/{ticket_id}/confirm-roles", response_model=TicketResponse, tags=["Tickets"])
def confirm_roles(
    ticket_id: str,
    req: ConfirmRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.confirm_roles, req.confirmed)


@router.post("/tickets/{ticket_id}/propose-amount", response_model=TicketResponse, tags=["Tickets"])
def propose_amount(
    ticket_id: str,
    req: ProposeAmountRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.propose_amount, req.text)


@router.post("/tickets/{ticket_id}/confirm-amount", response_model=TicketResponse, tags=["Tickets"])
def confirm_amount(
    ticket_id: str,
    req: ConfirmRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.confirm_amount, req.confirmed)


@router.post("/tickets/{ticket_id}/select-fee", response_model=TicketResponse, tags=["Tickets"])
def select_fee(
    ticket_id: str,
    req: SelectFeeRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.select_fee_option, req.option)


@router.post("/tickets/{ticket_id}/confirm-pass", response_model=TicketResponse, tags=["Tickets"])
def confirm_pass(
    ticket_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.confirm_pass_use)


@router.post("/tickets/{ticket_id}/confirm-fees", response_model=TicketResponse, tags=["Tickets"])
def confirm_fees(
    ticket_id: str,
    req: ConfirmRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.confirm_fees, req.confirmed)


@router.post("/tickets/{ticket_id}/copy-details", response_model=TicketResponse, tags=["Tickets"])
def copy_details(
    ticket_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.copy_transaction_details)


@router.post("/tickets/{ticket_id}/rescan", response_model=TicketResponse, tags=["Tickets"])
def rescan(
    ticket_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.request_rescan)


@router.post("/tickets/{ticket_id}/cancel-transaction", response_model=TicketResponse, tags=["Tickets"])
def cancel_transaction(
    ticket_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.cancel_transaction)


@router.post("/tickets/{ticket_id}/release", response_model=TicketResponse, tags=["Tickets"])
def release(
    ticket_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.request_release)


@router.post("/tickets/{ticket_id}/payout-address", response_model=TicketResponse, tags=["Tickets"])
def payout_address(
    ticket_id: str,
    req: PayoutAddressRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.submit_payout_address, req.address)


@router.post("/tickets/{ticket_id}/confirm-payout-address", response_model=TicketResponse, tags=["Tickets"])
def confirm_payout_address(
    ticket_id: str,
    req: ConfirmRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.confirm_payout_address, req.confirmed)


@router.post("/tickets/{ticket_id}/privacy", response_model=TicketResponse, tags=["Tickets"])
def privacy(
    ticket_id: str,
    req: PrivacyRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.select_privacy, req.choice)


@router.post("/tickets/{ticket_id}/close", response_model=TicketResponse, tags=["Tickets"])
def close(
    ticket_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.close_ticket)


@router.post("/tickets/{ticket_id}/dispute", response_model=TicketResponse, tags=["Tickets"])
def dispute(
    ticket_id: str,
    req: DisputeRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.open_dispute, req.reason)


@router.post("/tickets/{ticket_id}/staff/resolve", response_model=TicketResponse, tags=["Tickets"])
def staff_resolve(
    ticket_id: str,
    req: StaffResolveRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> TicketResponse:
    return _act(session, ticket_id, current, ops.staff_resolve, req.outcome, req.note)
