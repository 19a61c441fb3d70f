"""Sub-workflow state machines for a ticket.

Each negotiation stage (roles, amount, fees, payment, payout) is a small
finite-state machine whose state lives in its own column. Transitions not
listed in a machine's table are rejected, so no stage can be re-entered or
skipped by a stray request.
"""
from __future__ import annotations

from dataclasses import dataclass

from handshake.errors import ActionRejected
from handshake.models import Ticket

SENDER = "sender"
RECEIVER = "receiver"
ROLES = (SENDER, RECEIVER)

ACTIVE_STATUSES = ("open", "in-progress", "awaiting-close", "closing")
TERMINAL_STATUSES = ("completed", "cancelled", "disputed", "refunded")


@dataclass(frozen=True)
class Machine:
    name: str
    field: str
    transitions: dict[tuple[str, str], str]

    def target(self, state: str, event: str) -> str | None:
        return self.transitions.get((state, event))


ROLE = Machine(
    "role",
    "role_state",
    {
        ("selecting", "roles_chosen"): "confirming",
        ("confirming", "rejected"): "selecting",
        ("confirming", "both_confirmed"): "confirmed",
    },
)

AMOUNT = Machine(
    "amount",
    "amount_state",
    {
        ("locked", "unlock"): "awaiting_entry",
        ("awaiting_entry", "proposed"): "proposed",
        ("proposed", "proposed"): "proposed",
        ("proposed", "rejected"): "awaiting_entry",
        ("proposed", "both_confirmed"): "confirmed",
    },
)

FEE = Machine(
    "fee",
    "fee_state",
    {
        ("locked", "unlock"): "selecting",
        ("selecting", "fees_chosen"): "awaiting_confirmation",
        ("selecting", "pass_used"): "confirmed",
        ("awaiting_confirmation", "pass_used"): "confirmed",
        ("awaiting_confirmation", "rejected"): "selecting",
        ("awaiting_confirmation", "confirmed"): "confirmed",
    },
)

PAYMENT = Machine(
    "payment",
    "payment_state",
    {
        ("idle", "requested"): "awaiting",
        ("awaiting", "detected"): "detected",
        ("awaiting", "detected_confirmed"): "confirmed",
        ("detected", "confirmed"): "confirmed",
        ("awaiting", "timeout"): "timed_out",
        ("awaiting", "flagged"): "flagged",
        ("awaiting", "cancel"): "cancelled",
        ("timed_out", "cancel"): "cancelled",
        ("timed_out", "rescan"): "awaiting",
        ("cancelled", "rescan"): "awaiting",
        ("awaiting", "abandon"): "cancelled",
        ("detected", "abandon"): "cancelled",
        ("timed_out", "abandon"): "cancelled",
    },
)

PAYOUT = Machine(
    "payout",
    "payout_state",
    {
        ("idle", "release"): "awaiting_address",
        ("awaiting_address", "address_submitted"): "awaiting_confirmation",
        ("awaiting_confirmation", "address_submitted"): "awaiting_confirmation",
        ("awaiting_confirmation", "rejected"): "awaiting_address",
        ("awaiting_confirmation", "failed"): "awaiting_address",
        ("awaiting_confirmation", "dispatched"): "submitted",
        ("submitted", "failed"): "awaiting_address",
        ("submitted", "confirmed"): "confirmed",
        ("awaiting_address", "abandon"): "idle",
        ("awaiting_confirmation", "abandon"): "idle",
    },
)


def advance(ticket: Ticket, machine: Machine, event: str) -> str:
    state = getattr(ticket, machine.field)
    target = machine.target(state, event)
    if target is None:
        raise ActionRejected(
            "invalid_state",
            f"Cannot {event.replace('_', ' ')} while {machine.name} is {state.replace('_', ' ')}",
        )
    setattr(ticket, machine.field, target)
    return target


def can_advance(ticket: Ticket, machine: Machine, event: str) -> bool:
    return machine.target(getattr(ticket, machine.field), event) is not None


STAGES = ("role", "amount", "fee", "payment", "release", "payout", "privacy", "closure")

_STAGE_GATES = {
    "amount": ("roles_confirmed", "Both parties must confirm their roles first"),
    "fee": ("deal_amount_confirmed", "The deal amount must be confirmed first"),
    "payment": ("fees_confirmed", "The fee decision must be confirmed first"),
    "release": ("transaction_confirmed", "The deposit has not been confirmed yet"),
    "payout": ("release_initiated", "The sender has not released the funds yet"),
    "privacy": ("funds_released", "The payout has not been confirmed yet"),
}


def require_stage(ticket: Ticket, stage: str) -> None:
    """Reject actions on a stage whose predecessors are not complete."""
    if stage in ("privacy", "closure"):
        if ticket.status != "awaiting-close":
            raise ActionRejected("stage_locked", "The trade is not ready to close yet")
    elif ticket.status != "in-progress":
        raise ActionRejected("invalid_state", f"Ticket is {ticket.status}")

    for earlier in STAGES[1 : STAGES.index(stage) + 1]:
        gate = _STAGE_GATES.get(earlier)
        if gate is not None and not getattr(ticket, gate[0]):
            raise ActionRejected("stage_locked", gate[1])


# --- Parties ---


def accepted_participant(ticket: Ticket):
    for participant in ticket.participants:
        if participant.status == "accepted":
            return participant
    return None


def party_ids(ticket: Ticket) -> list[str]:
    ids = [ticket.creator_id]
    ids.extend(p.user_id for p in ticket.participants if p.status == "accepted")
    return ids


def is_party(ticket: Ticket, user_id: str) -> bool:
    return user_id in party_ids(ticket)


def other_party(ticket: Ticket, user_id: str) -> str | None:
    for pid in party_ids(ticket):
        if pid != user_id:
            return pid
    return None


def role_of(ticket: Ticket, user_id: str) -> str | None:
    if user_id == ticket.creator_id:
        return ticket.creator_role
    for participant in ticket.participants:
        if participant.user_id == user_id and participant.status == "accepted":
            return participant.role
    return None


def set_role(ticket: Ticket, user_id: str, role: str | None) -> None:
    if user_id == ticket.creator_id:
        ticket.creator_role = role
        return
    for participant in ticket.participants:
        if participant.user_id == user_id:
            participant.role = role


def clear_roles(ticket: Ticket) -> None:
    ticket.creator_role = None
    for participant in ticket.participants:
        participant.role = None


def party_with_role(ticket: Ticket, role: str) -> str | None:
    for pid in party_ids(ticket):
        if role_of(ticket, pid) == role:
            return pid
    return None


def all_parties_marked(ticket: Ticket, marks: dict) -> bool:
    ids = party_ids(ticket)
    return len(ids) >= 2 and all(marks.get(pid) for pid in ids)
