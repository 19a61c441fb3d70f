from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from handshake import orders as ops
from handshake.auth import authenticate_user
from handshake.config import get_session
from handshake.events import dispatch_pending
from handshake.models import PurchaseOrder
from handshake.schemas import CreateOrderRequest, OrderListResponse, OrderResponse

router = APIRouter()


def _order_response(order: PurchaseOrder) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        order_ref=order.order_ref,
        user_id=order.user_id,
        pass_type=order.pass_type,
        pass_count=order.pass_count,
        price_usd=order.price_usd,
        crypto=order.crypto,
        crypto_amount=order.crypto_amount,
        deposit_address=order.deposit_address,
        status=order.status,
        tx_hash=order.tx_hash,
        confirmations=order.confirmations or 0,
        confirmations_required=order.confirmations_required or 0,
        received_amount=order.received_amount,
        percent_difference=order.percent_difference,
        network_fee=order.network_fee,
        is_overpayment=bool(order.is_overpayment),
        is_underpayment=bool(order.is_underpayment),
        payment_notes=order.payment_notes,
        staff_notes=order.staff_notes,
        timeout_at=order.timeout_at,
        expires_at=order.expires_at,
        completed_at=order.completed_at,
        created_at=order.created_at,
    )


@router.post("/orders", status_code=201, response_model=OrderResponse, tags=["Orders"])
def create_order(
    req: CreateOrderRequest,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> OrderResponse:
    with session.begin():
        order = ops.create_order(session, current, req.pass_id, req.crypto)
        response = _order_response(order)
    dispatch_pending(session)
    return response


@router.get("/orders", response_model=OrderListResponse, tags=["Orders"])
def list_orders(
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> OrderListResponse:
    with session.begin():
        q = select(PurchaseOrder).where(PurchaseOrder.user_id == current["id"])
        if status:
            q = q.where(PurchaseOrder.status == status)
        q = q.order_by(PurchaseOrder.created_at.desc()).limit(limit).offset(offset)
        orders = session.execute(q).scalars().all()
        items = [_order_response(o) for o in orders]
    return OrderListResponse(orders=items, count=len(items))


@router.get("/orders/{order_id}", response_model=OrderResponse, tags=["Orders"])
def get_order(
    order_id: str,
    current: dict = Depends(authenticate_user),
    session: Session = Depends(get_session),
) -> OrderResponse:
    with session.begin():
        order = session.execute(select(PurchaseOrder).where(PurchaseOrder.id == order_id)).scalar_one_or_none()
        if order is None or (order.user_id != current["id"] and not current.get("is_staff")):
            raise HTTPException(status_code=404, detail="Order not found")
        return _order_response(order)
