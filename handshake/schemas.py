from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


# --- Error ---


class ErrorDetail(BaseModel):
    code: str
    message: str
    request_id: str = ""
    details: dict | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


# --- Users ---


class RegisterRequest(BaseModel):
    username: str = Field(..., pattern=r"^[A-Za-z0-9_]{3,32}$")


class UserResponse(BaseModel):
    id: str
    username: str
    passes: int
    total_usd_value: Decimal
    total_deals: int
    is_staff: bool = False
    created_at: datetime | None = None


class RegisterResponse(BaseModel):
    message: str = "Account created. Save your API key - it will not be shown again."
    user: UserResponse
    api_key: str


class WebhookSetRequest(BaseModel):
    url: str
    events: list[str] | None = None


class WebhookResponse(BaseModel):
    webhook_url: str
    secret: str | None = None
    events: list[str]
    active: bool


class WebhookDeleteResponse(BaseModel):
    status: str = "removed"


class WebhookEventPayload(BaseModel):
    event: str
    timestamp: datetime
    data: dict


# --- Tickets ---


class CreateTicketRequest(BaseModel):
    crypto: str = Field(..., min_length=1)


class InviteRequest(BaseModel):
    username: str = Field(..., min_length=1)


class RespondInvitationRequest(BaseModel):
    accept: bool


class MessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)


class SelectRoleRequest(BaseModel):
    role: str


class ConfirmRequest(BaseModel):
    confirmed: bool = True


class ProposeAmountRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=500)


class SelectFeeRequest(BaseModel):
    option: str


class PayoutAddressRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=256)


class PrivacyRequest(BaseModel):
    choice: str


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class StaffResolveRequest(BaseModel):
    outcome: Literal["cancelled", "refunded", "disputed"]
    note: str | None = None


class ParticipantItem(BaseModel):
    user_id: str
    status: str
    role: str | None = None


class TicketMessageItem(BaseModel):
    id: int
    author_id: str | None = None
    is_bot: bool
    content: str = ""
    title: str | None = None
    description: str | None = None
    color: str | None = None
    footer: str | None = None
    requires_action: bool = False
    action_type: str | None = None
    target_user_id: str | None = None
    metadata: dict | None = None
    created_at: datetime | None = None
    dismissed_at: datetime | None = None


class PaymentInfo(BaseModel):
    state: str
    expected_usd: Decimal | None = None
    expected_amount: Decimal | None = None
    deposit_address: str | None = None
    tx_hash: str | None = None
    received_amount: Decimal | None = None
    confirmations: int = 0
    confirmations_required: int = 0
    notes: str | None = None
    deadline: datetime | None = None
    rescan_count: int = 0


class PayoutInfo(BaseModel):
    state: str
    pending_address: str | None = None
    address: str | None = None
    amount: Decimal | None = None
    tx_hash: str | None = None
    explorer_url: str | None = None


class TicketFlags(BaseModel):
    roles_confirmed: bool
    deal_amount_confirmed: bool
    fees_confirmed: bool
    awaiting_transaction: bool
    transaction_confirmed: bool
    transaction_timed_out: bool
    release_initiated: bool
    funds_released: bool


class TicketResponse(BaseModel):
    id: str
    crypto: str
    status: str
    creator_id: str
    creator_role: str | None = None
    participants: list[ParticipantItem]
    role_state: str
    role_confirmations: dict
    deal_amount: Decimal | None = None
    amount_state: str
    amount_confirmations: dict
    fee_decision: str | None = None
    fee_initiated_by: str | None = None
    fee_state: str
    pass_used_by: str | None = None
    payment: PaymentInfo
    payout: PayoutInfo
    flags: TicketFlags
    privacy_selections: dict
    close_scheduled_at: datetime | None = None
    completed_at: datetime | None = None
    dispute_reason: str | None = None
    created_at: datetime | None = None
    messages: list[TicketMessageItem] = []


class TicketListResponse(BaseModel):
    tickets: list[TicketResponse]
    count: int


# --- Orders ---


class CreateOrderRequest(BaseModel):
    pass_id: str
    crypto: str


class OrderResponse(BaseModel):
    id: str
    order_ref: str
    user_id: str
    pass_type: str
    pass_count: int
    price_usd: Decimal
    crypto: str
    crypto_amount: Decimal
    deposit_address: str
    status: str
    tx_hash: str | None = None
    confirmations: int = 0
    confirmations_required: int = 0
    received_amount: Decimal | None = None
    percent_difference: Decimal | None = None
    network_fee: Decimal | None = None
    is_overpayment: bool = False
    is_underpayment: bool = False
    payment_notes: str | None = None
    staff_notes: str | None = None
    timeout_at: datetime | None = None
    expires_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]
    count: int


# --- Feed ---


class FeedItem(BaseModel):
    ticket_id: str
    crypto: str
    symbol: str
    amount: Decimal
    usd_value: Decimal
    sender: str
    receiver: str
    transaction_id: str | None = None
    explorer_url: str | None = None
    completed_at: datetime | None = None


class FeedResponse(BaseModel):
    items: list[FeedItem]
    count: int


# --- Health ---


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "handshake-escrow"
    version: str = "0.4.0"
