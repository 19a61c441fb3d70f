from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from fastapi.testclient import TestClient


def _obs(tx_hash: str, amount: str, confirmations: int = 0):
    from handshake.chains.base import Observation

    return Observation(tx_hash=tx_hash, amount=Decimal(amount), confirmations=confirmations)


def _active(ticket: dict, action_type: str) -> list[dict]:
    return [m for m in ticket["messages"] if m["action_type"] == action_type and m["dismissed_at"] is None]


def test_deposit_is_detected_then_confirmed_once(handshake_app, open_trade, fake_poller):
    from handshake.events import bus
    from handshake.monitor import run_payment_sweep

    seen: list[str] = []
    unsubscribe = bus.subscribe(lambda topic, event, data: seen.append(event))
    try:
        with TestClient(handshake_app) as client:
            trade = open_trade(client)
            poller = fake_poller("bitcoin")
            poller.seen = [_obs("tx1", str(trade["expected_amount"]))]

            assert run_payment_sweep()["detected"] == 1
            ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
            assert ticket["payment"]["state"] == "detected"
            assert ticket["payment"]["tx_hash"] == "tx1"
            assert len(_active(ticket, "transaction-confirming")) == 1
            assert _active(ticket, "transaction-send") == []

            counts = run_payment_sweep()
            assert counts["checked"] == 1
            assert counts["confirmed"] == 0

            poller.depths["tx1"] = 2
            assert run_payment_sweep()["confirmed"] == 1
            assert run_payment_sweep()["checked"] == 0

            ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
            assert ticket["payment"]["state"] == "confirmed"
            assert ticket["payment"]["confirmations"] == 2
            assert ticket["flags"]["transaction_confirmed"] is True
            release = _active(ticket, "release-funds")
            assert len(release) == 1
            assert release[0]["target_user_id"] == trade["sender_id"]
            assert _active(ticket, "transaction-confirming") == []
    finally:
        unsubscribe()

    assert seen.count("ticket.payment_detected") == 1
    assert seen.count("ticket.payment_confirmed") == 1


def test_deep_deposit_confirms_in_one_sweep(handshake_app, open_trade, fake_poller):
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        fake_poller("bitcoin").seen = [_obs("tx1", str(trade["expected_amount"]), confirmations=6)]

        assert run_payment_sweep()["confirmed"] == 1
        ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
        assert ticket["payment"]["state"] == "confirmed"


def test_overpayment_is_accepted_with_a_note(handshake_app, open_trade, fake_poller):
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        over = (trade["expected_amount"] * Decimal("1.10")).quantize(Decimal("0.00000001"))
        fake_poller("bitcoin").seen = [_obs("tx1", str(over), confirmations=2)]

        run_payment_sweep()
        ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
        assert ticket["payment"]["state"] == "confirmed"
        assert ticket["payment"]["notes"].startswith("Overpayment of")
        assert "Overpayment Noted" in [m["title"] for m in ticket["messages"]]


def test_underpayment_is_flagged_not_credited(handshake_app, open_trade, fake_poller):
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        short = (trade["expected_amount"] * Decimal("0.97")).quantize(Decimal("0.00000001"))
        fake_poller("bitcoin").seen = [_obs("tx1", str(short), confirmations=6)]

        assert run_payment_sweep()["flagged"] == 1
        ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
        assert ticket["payment"]["state"] == "flagged"
        assert ticket["payment"]["tx_hash"] is None
        assert ticket["flags"]["transaction_confirmed"] is False
        assert len(_active(ticket, "staff-review")) == 1

        closing = client.post(f"/v1/tickets/{trade['id']}/close", headers=trade["sender"])
        assert closing.json()["error"]["code"] == "funds_in_escrow"


def test_deposit_claimed_by_an_order_is_not_credited(handshake_app, open_trade, fake_poller):
    from handshake.config import SessionLocal
    from handshake.models import PurchaseOrder
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        with SessionLocal() as db, db.begin():
            db.add(
                PurchaseOrder(
                    order_ref="HS-OLD",
                    user_id=trade["sender_id"],
                    pass_id="0",
                    pass_type="Single",
                    pass_count=1,
                    price_usd=Decimal("1"),
                    crypto="bitcoin",
                    crypto_amount=trade["expected_amount"],
                    deposit_address="mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn",
                    status="completed",
                    tx_hash="reused",
                    timeout_at=datetime.now(timezone.utc),
                    expires_at=datetime.now(timezone.utc),
                )
            )
        fake_poller("bitcoin").seen = [_obs("reused", str(trade["expected_amount"]), confirmations=6)]

        counts = run_payment_sweep()
        assert counts["flagged"] == 0
        assert counts["confirmed"] == 0
        ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
        assert ticket["payment"]["state"] == "awaiting"
        assert ticket["payment"]["tx_hash"] is None


def test_tickets_sharing_the_wallet_keep_their_own_deposits(handshake_app, open_trade, fake_poller):
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        first = open_trade(client)
        poller = fake_poller("bitcoin")
        poller.seen = [_obs("tx-first", str(first["expected_amount"]), confirmations=2)]
        assert run_payment_sweep()["confirmed"] == 1

        second = open_trade(client, sender_name="carol", receiver_name="dave")
        assert second["expected_amount"] == first["expected_amount"]

        run_payment_sweep()
        waiting = client.get(f"/v1/tickets/{second['id']}", headers=second["sender"]).json()
        assert waiting["payment"]["state"] == "awaiting"
        assert waiting["payment"]["tx_hash"] is None
        assert _active(waiting, "staff-review") == []

        cancelled = client.post(f"/v1/tickets/{second['id']}/cancel-transaction", headers=second["sender"])
        assert cancelled.status_code == 200
        rescanned = client.post(f"/v1/tickets/{second['id']}/rescan", headers=second["sender"])
        assert rescanned.json()["payment"]["state"] == "awaiting"

        poller.seen.append(_obs("tx-second", str(second["expected_amount"]), confirmations=2))
        assert run_payment_sweep()["confirmed"] == 1
        paid = client.get(f"/v1/tickets/{second['id']}", headers=second["sender"]).json()
        assert paid["payment"]["state"] == "confirmed"
        assert paid["payment"]["tx_hash"] == "tx-second"

        kept = client.get(f"/v1/tickets/{first['id']}", headers=first["sender"]).json()
        assert kept["payment"]["tx_hash"] == "tx-first"


def test_no_deposit_times_out(handshake_app, open_trade, fake_poller):
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        fake_poller("bitcoin")

        run_payment_sweep()
        later = datetime.now(timezone.utc) + timedelta(minutes=21)
        with patch("handshake.monitor._now", return_value=later):
            assert run_payment_sweep()["timed_out"] == 1

        ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
        assert ticket["payment"]["state"] == "timed_out"
        assert ticket["flags"]["transaction_timed_out"] is True
        assert len(_active(ticket, "transaction-timeout")) == 1

        rescanned = client.post(f"/v1/tickets/{trade['id']}/rescan", headers=trade["sender"]).json()
        assert rescanned["payment"]["state"] == "awaiting"
        deadline = datetime.fromisoformat(rescanned["payment"]["deadline"])
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        assert timedelta(minutes=9) < deadline - datetime.now(timezone.utc) <= timedelta(minutes=10)


def test_provider_errors_cool_the_ticket_down(handshake_app, open_trade, fake_poller):
    from handshake.chains.base import ProviderRateLimited
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        poller = fake_poller("bitcoin")
        poller.error = ProviderRateLimited("slow down")

        run_payment_sweep()
        assert poller.scans == 1
        run_payment_sweep()
        assert poller.scans == 1

        later = datetime.now(timezone.utc) + timedelta(seconds=31)
        poller.error = None
        poller.seen = [_obs("tx1", str(trade["expected_amount"]))]
        with patch("handshake.monitor._now", return_value=later):
            assert run_payment_sweep()["detected"] == 1
        assert poller.scans == 2


def test_utxo_release_is_routed_to_staff(handshake_app, open_trade, fake_poller):
    from handshake.monitor import run_payment_sweep

    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        fake_poller("bitcoin").seen = [_obs("tx1", str(trade["expected_amount"]), confirmations=2)]
        run_payment_sweep()

        by_receiver = client.post(f"/v1/tickets/{trade['id']}/release", headers=trade["receiver"])
        assert by_receiver.json()["error"]["code"] == "not_sender"

        resp = client.post(f"/v1/tickets/{trade['id']}/release", headers=trade["sender"])
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "payout_unsupported"

        ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
        assert ticket["payout"]["state"] == "idle"
        assert [m["title"] for m in _active(ticket, "contact-staff")] == ["Manual Payout Required"]
