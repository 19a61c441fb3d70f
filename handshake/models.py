from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

USD = Numeric(18, 2)
COIN = Numeric(28, 8)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    api_key_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    passes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_usd_value: Mapped[Decimal] = mapped_column(USD, nullable=False, default=Decimal("0"))
    total_deals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_staff: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    creator_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    crypto: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open", index=True)

    # Roles
    creator_role: Mapped[str | None] = mapped_column(String(10), nullable=True)
    role_state: Mapped[str] = mapped_column(String(20), nullable=False, default="selecting")
    role_confirmations: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Deal amount
    deal_amount: Mapped[Decimal | None] = mapped_column(USD, nullable=True)
    amount_state: Mapped[str] = mapped_column(String(20), nullable=False, default="locked")
    amount_confirmations: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # Fees
    fee_decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    fee_initiated_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    fee_state: Mapped[str] = mapped_column(String(30), nullable=False, default="locked")
    pass_used_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    # Inbound payment
    payment_state: Mapped[str] = mapped_column(String(20), nullable=False, default="idle", index=True)
    expected_usd: Mapped[Decimal | None] = mapped_column(USD, nullable=True)
    expected_amount: Mapped[Decimal | None] = mapped_column(COIN, nullable=True)
    deposit_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    received_amount: Mapped[Decimal | None] = mapped_column(COIN, nullable=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmations_required: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    detected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rescan_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    copy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_cooldown_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Release and payout
    payout_state: Mapped[str] = mapped_column(String(30), nullable=False, default="idle", index=True)
    pending_payout_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payout_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payout_amount: Mapped[Decimal | None] = mapped_column(COIN, nullable=True)
    payout_tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payout_submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payout_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Closure
    privacy_selections: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    close_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stats_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    broadcasted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    participants: Mapped[list["TicketParticipant"]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketParticipant.created_at",
        lazy="selectin",
    )
    messages: Mapped[list["TicketMessage"]] = relationship(
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketMessage.id",
        lazy="selectin",
    )

    # Read-only views over the sub-workflow states.

    @property
    def roles_confirmed(self) -> bool:
        return self.role_state == "confirmed"

    @property
    def deal_amount_confirmed(self) -> bool:
        return self.amount_state == "confirmed"

    @property
    def fees_confirmed(self) -> bool:
        return self.fee_state == "confirmed"

    @property
    def awaiting_transaction(self) -> bool:
        return self.payment_state in ("awaiting", "detected")

    @property
    def transaction_confirmed(self) -> bool:
        return self.payment_state == "confirmed"

    @property
    def transaction_timed_out(self) -> bool:
        return self.payment_state == "timed_out"

    @property
    def release_initiated(self) -> bool:
        return self.payout_state != "idle"

    @property
    def funds_released(self) -> bool:
        return self.payout_state == "confirmed"


class TicketParticipant(Base):
    __tablename__ = "ticket_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    ticket_id: Mapped[str] = mapped_column(String(36), ForeignKey("tickets.id"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    role: Mapped[str | None] = mapped_column(String(10), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    ticket: Mapped[Ticket] = relationship(back_populates="participants")


class TicketMessage(Base):
    __tablename__ = "ticket_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(String(36), ForeignKey("tickets.id"), nullable=False, index=True)
    author_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    is_bot: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(16), nullable=True)
    footer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requires_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    action_type: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    target_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    ticket: Mapped[Ticket] = relationship(back_populates="messages")


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_ref: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    pass_id: Mapped[str] = mapped_column(String(8), nullable=False)
    pass_type: Mapped[str] = mapped_column(String(32), nullable=False)
    pass_count: Mapped[int] = mapped_column(Integer, nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(USD, nullable=False)
    crypto: Mapped[str] = mapped_column(String(32), nullable=False)
    crypto_amount: Mapped[Decimal] = mapped_column(COIN, nullable=False)
    deposit_address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confirmations_required: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    detected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    received_amount: Mapped[Decimal | None] = mapped_column(COIN, nullable=True)
    amount_difference: Mapped[Decimal | None] = mapped_column(COIN, nullable=True)
    percent_difference: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    network_fee: Mapped[Decimal | None] = mapped_column(COIN, nullable=True)
    block_height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_overpayment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_underpayment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    balance_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    balance_after: Mapped[int | None] = mapped_column(Integer, nullable=True)

    timeout_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    staff_contact_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    staff_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_cooldown_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index(
            "uq_order_tx_hash",
            "tx_hash",
            unique=True,
            postgresql_where=text("tx_hash IS NOT NULL"),
            sqlite_where=text("tx_hash IS NOT NULL"),
        ),
    )


class WebhookConfig(Base):
    __tablename__ = "webhook_configs"

    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response_body: Mapped[str] = mapped_column(Text, nullable=False)
    status_code: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
