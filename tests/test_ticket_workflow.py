from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient


def _prompts(ticket: dict, action_type: str, active_only: bool = True) -> list[dict]:
    return [
        m
        for m in ticket["messages"]
        if m["action_type"] == action_type and (not active_only or m["dismissed_at"] is None)
    ]


def test_new_ticket_posts_welcome_and_security_notice(handshake_app, register):
    with TestClient(handshake_app) as client:
        _uid, headers = register(client, "alice")
        resp = client.post("/v1/tickets", headers=headers, json={"crypto": "Bitcoin"})
        assert resp.status_code == 201, resp.text
        ticket = resp.json()
        assert ticket["status"] == "open"
        assert ticket["crypto"] == "bitcoin"
        titles = [m["title"] for m in ticket["messages"]]
        assert titles == ["Welcome to Handshake", "Security Notice"]
        assert len(_prompts(ticket, "add-user")) == 1


def test_unsupported_crypto_is_rejected(handshake_app, register):
    with TestClient(handshake_app) as client:
        _uid, headers = register(client, "alice")
        resp = client.post("/v1/tickets", headers=headers, json={"crypto": "dogecoin"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_option"


def test_invite_guards(handshake_app, register):
    with TestClient(handshake_app) as client:
        _a, alice = register(client, "alice")
        _b, bob = register(client, "bob")
        register(client, "carol")
        tid = client.post("/v1/tickets", headers=alice, json={"crypto": "bitcoin"}).json()["id"]

        assert client.post(f"/v1/tickets/{tid}/invite", headers=bob, json={"username": "carol"}).status_code == 403
        missing = client.post(f"/v1/tickets/{tid}/invite", headers=alice, json={"username": "nobody"})
        assert missing.json()["error"]["code"] == "not_found"
        own = client.post(f"/v1/tickets/{tid}/invite", headers=alice, json={"username": "alice"})
        assert own.json()["error"]["code"] == "self_add"

        ok = client.post(f"/v1/tickets/{tid}/invite", headers=alice, json={"username": "@bob"})
        assert ok.status_code == 200, ok.text
        again = client.post(f"/v1/tickets/{tid}/invite", headers=alice, json={"username": "carol"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "already_added"


def test_declined_invitation_lets_creator_invite_again(handshake_app, register):
    with TestClient(handshake_app) as client:
        _a, alice = register(client, "alice")
        _b, bob = register(client, "bob")
        register(client, "carol")
        tid = client.post("/v1/tickets", headers=alice, json={"crypto": "bitcoin"}).json()["id"]
        client.post(f"/v1/tickets/{tid}/invite", headers=alice, json={"username": "bob"})

        declined = client.post(f"/v1/tickets/{tid}/respond", headers=bob, json={"accept": False}).json()
        assert declined["participants"] == []
        assert declined["status"] == "open"
        assert len(_prompts(declined, "add-user")) == 1

        again = client.post(f"/v1/tickets/{tid}/invite", headers=alice, json={"username": "carol"})
        assert again.status_code == 200, again.text


def test_role_taken_and_reselect(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="accepted")
        tid, buyer, seller = trade["id"], trade["sender"], trade["receiver"]

        first = client.post(f"/v1/tickets/{tid}/select-role", headers=buyer, json={"role": "sender"})
        assert first.status_code == 200
        repeat = client.post(f"/v1/tickets/{tid}/select-role", headers=buyer, json={"role": "sender"})
        assert repeat.status_code == 200
        assert repeat.json()["role_state"] == "selecting"

        taken = client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "sender"})
        assert taken.status_code == 409
        assert taken.json()["error"]["code"] == "role_taken"

        bad = client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "broker"})
        assert bad.json()["error"]["code"] == "invalid_role"

        done = client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "receiver"}).json()
        assert done["role_state"] == "confirming"
        assert len(_prompts(done, "role-confirmation")) == 1


def test_taken_role_is_reported_while_roles_await_confirmation(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="accepted")
        tid, buyer, seller = trade["id"], trade["sender"], trade["receiver"]
        client.post(f"/v1/tickets/{tid}/select-role", headers=buyer, json={"role": "sender"})
        client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "receiver"})

        taken = client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "sender"})
        assert taken.status_code == 409
        assert taken.json()["error"]["code"] == "role_taken"

        same = client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "receiver"})
        assert same.status_code == 200
        assert same.json()["role_state"] == "confirming"


def test_rejecting_roles_resets_both(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="accepted")
        tid, buyer, seller = trade["id"], trade["sender"], trade["receiver"]
        client.post(f"/v1/tickets/{tid}/select-role", headers=buyer, json={"role": "sender"})
        client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "receiver"})

        reset = client.post(f"/v1/tickets/{tid}/confirm-roles", headers=seller, json={"confirmed": False}).json()
        assert reset["role_state"] == "selecting"
        assert reset["creator_role"] is None
        assert all(p["role"] is None for p in reset["participants"])
        assert reset["role_confirmations"] == {}


def test_amount_stage_is_locked_until_roles_confirmed(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="accepted")
        resp = client.post(f"/v1/tickets/{trade['id']}/propose-amount", headers=trade["sender"], json={"text": "$50"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "stage_locked"


def test_amount_entry_rules(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="roles")
        tid, buyer, seller = trade["id"], trade["sender"], trade["receiver"]

        by_receiver = client.post(f"/v1/tickets/{tid}/propose-amount", headers=seller, json={"text": "$50"})
        assert by_receiver.status_code == 403
        assert by_receiver.json()["error"]["code"] == "not_sender"

        nothing = client.post(f"/v1/tickets/{tid}/propose-amount", headers=buyer, json={"text": "fifty"})
        assert nothing.json()["error"]["code"] == "amount_not_detected"
        fractional = client.post(f"/v1/tickets/{tid}/propose-amount", headers=buyer, json={"text": "$50.001"})
        assert fractional.json()["error"]["code"] == "invalid_amount"

        ok = client.post(f"/v1/tickets/{tid}/propose-amount", headers=buyer, json={"text": "around $1,200.5"}).json()
        assert ok["deal_amount"] == "1200.50"
        assert ok["amount_state"] == "proposed"

        rejected = client.post(f"/v1/tickets/{tid}/confirm-amount", headers=seller, json={"confirmed": False}).json()
        assert rejected["amount_state"] == "awaiting_entry"
        assert rejected["deal_amount"] is None


def test_fee_confirmation_must_come_from_the_other_party(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="amount")
        tid, buyer, seller = trade["id"], trade["sender"], trade["receiver"]

        chosen = client.post(f"/v1/tickets/{tid}/select-fee", headers=buyer, json={"option": "with-fees"}).json()
        assert chosen["fee_state"] == "awaiting_confirmation"
        assert len(_prompts(chosen, "fee-confirmation")) == 1

        own = client.post(f"/v1/tickets/{tid}/confirm-fees", headers=buyer, json={"confirmed": True})
        assert own.status_code == 403
        assert own.json()["error"]["code"] == "self_confirmation"

        ok = client.post(f"/v1/tickets/{tid}/confirm-fees", headers=seller, json={"confirmed": True}).json()
        assert ok["fee_state"] == "confirmed"
        assert ok["payment"]["state"] == "awaiting"
        assert ok["payment"]["expected_usd"] == "102.00"
        assert ok["flags"]["awaiting_transaction"] is True
        assert len(_prompts(ok, "transaction-send")) == 1


def test_pass_can_only_be_spent_once(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="amount")
        tid, buyer, seller = trade["id"], trade["sender"], trade["receiver"]

        none = client.post(f"/v1/tickets/{tid}/select-fee", headers=buyer, json={"option": "use-pass"})
        assert none.json()["error"]["code"] == "no_passes"

        from sqlalchemy import update

        from handshake.config import SessionLocal
        from handshake.models import User

        with SessionLocal() as db, db.begin():
            db.execute(update(User).values(passes=2))

        offered = client.post(f"/v1/tickets/{tid}/select-fee", headers=buyer, json={"option": "use-pass"})
        assert offered.status_code == 200
        used = client.post(f"/v1/tickets/{tid}/confirm-pass", headers=buyer).json()
        assert used["pass_used_by"] == trade["sender_id"]
        assert used["fee_state"] == "confirmed"
        assert used["payment"]["expected_usd"] == "100.00"

        twice = client.post(f"/v1/tickets/{tid}/confirm-pass", headers=seller)
        assert twice.status_code == 400
        assert twice.json()["error"]["code"] == "invalid_state"

        me = client.get("/v1/users/me", headers=buyer).json()
        other = client.get("/v1/users/me", headers=seller).json()
        assert me["passes"] == 1
        assert other["passes"] == 2


def test_outsiders_cannot_act_or_read(handshake_app, open_trade, register):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="accepted")
        _m, mallory = register(client, "mallory")
        assert client.get(f"/v1/tickets/{trade['id']}", headers=mallory).status_code == 403
        resp = client.post(f"/v1/tickets/{trade['id']}/messages", headers=mallory, json={"content": "hi"})
        assert resp.json()["error"]["code"] == "forbidden"


def test_active_ticket_limit(handshake_app, register, monkeypatch):
    from handshake.config import settings

    monkeypatch.setattr(settings, "active_ticket_limit", 2)
    with TestClient(handshake_app) as client:
        _a, alice = register(client, "alice")
        for _ in range(2):
            assert client.post("/v1/tickets", headers=alice, json={"crypto": "bitcoin"}).status_code == 201
        blocked = client.post("/v1/tickets", headers=alice, json={"crypto": "bitcoin"})
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "active_ticket_limit"


def test_party_can_cancel_before_funds_arrive(handshake_app, open_trade):
    with TestClient(handshake_app) as client:
        trade = open_trade(client, stop="roles")
        cancelled = client.post(f"/v1/tickets/{trade['id']}/close", headers=trade["receiver"]).json()
        assert cancelled["status"] == "cancelled"
        assert all(m["dismissed_at"] is not None for m in cancelled["messages"] if m["requires_action"])


def test_rescan_limit_posts_staff_prompt(handshake_app, open_trade, monkeypatch):
    from handshake.config import settings

    monkeypatch.setattr(settings, "max_rescans", 1)
    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        tid, buyer = trade["id"], trade["sender"]

        early = client.post(f"/v1/tickets/{tid}/rescan", headers=buyer)
        assert early.json()["error"]["code"] == "invalid_state"

        client.post(f"/v1/tickets/{tid}/cancel-transaction", headers=buyer)
        first = client.post(f"/v1/tickets/{tid}/rescan", headers=buyer).json()
        assert first["payment"]["state"] == "awaiting"
        assert first["payment"]["rescan_count"] == 1

        client.post(f"/v1/tickets/{tid}/cancel-transaction", headers=buyer)
        limited = client.post(f"/v1/tickets/{tid}/rescan", headers=buyer)
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rescan_limit_reached"

        ticket = client.get(f"/v1/tickets/{tid}", headers=buyer).json()
        staff = _prompts(ticket, "contact-staff")
        assert [m["title"] for m in staff] == ["Maximum Attempts Reached"]
        assert ticket["payment"]["rescan_count"] == 1


def test_three_rescans_with_their_windows_then_refused(handshake_app, open_trade):
    start = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        tid, buyer = trade["id"], trade["sender"]

        windows = []
        with patch("handshake.tickets._now", return_value=start):
            for attempt in (1, 2, 3):
                client.post(f"/v1/tickets/{tid}/cancel-transaction", headers=buyer)
                resp = client.post(f"/v1/tickets/{tid}/rescan", headers=buyer)
                assert resp.status_code == 200, resp.text
                ticket = resp.json()
                assert ticket["payment"]["rescan_count"] == attempt
                deadline = datetime.fromisoformat(ticket["payment"]["deadline"])
                if deadline.tzinfo is None:
                    deadline = deadline.replace(tzinfo=timezone.utc)
                windows.append(deadline - start)

            client.post(f"/v1/tickets/{tid}/cancel-transaction", headers=buyer)
            fourth = client.post(f"/v1/tickets/{tid}/rescan", headers=buyer)

        assert windows == [timedelta(minutes=10), timedelta(minutes=8), timedelta(minutes=12)]
        assert fourth.status_code == 429
        assert fourth.json()["error"]["code"] == "rescan_limit_reached"
        ticket = client.get(f"/v1/tickets/{tid}", headers=buyer).json()
        assert ticket["payment"]["rescan_count"] == 3
        attempts = [m["metadata"]["window_minutes"] for m in ticket["messages"] if m["title"] == "Rescanning"]
        assert attempts == [10, 8, 12]


def test_copy_details_is_limited(handshake_app, open_trade, monkeypatch):
    from handshake.config import settings

    monkeypatch.setattr(settings, "copy_details_limit", 1)
    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        tid = trade["id"]
        copied = client.post(f"/v1/tickets/{tid}/copy-details", headers=trade["receiver"]).json()
        assert copied["messages"][-1]["content"] == copied["payment"]["deposit_address"]
        again = client.post(f"/v1/tickets/{tid}/copy-details", headers=trade["sender"])
        assert again.json()["error"]["code"] == "copy_limit_reached"


def test_staff_resolution(handshake_app, open_trade, register):
    with TestClient(handshake_app) as client:
        trade = open_trade(client)
        _staff_id, staff = register(client, "staffer")
        assert client.get("/v1/users/me", headers=staff).json()["is_staff"] is True

        denied = client.post(f"/v1/tickets/{trade['id']}/staff/resolve", headers=trade["sender"], json={"outcome": "refunded"})
        assert denied.status_code == 403

        resolved = client.post(
            f"/v1/tickets/{trade['id']}/staff/resolve",
            headers=staff,
            json={"outcome": "refunded", "note": "Refunded on-chain by staff"},
        ).json()
        assert resolved["status"] == "refunded"
        assert resolved["payment"]["state"] == "cancelled"
        assert resolved["messages"][-1]["title"] == "Resolved by Staff"
