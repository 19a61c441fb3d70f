from __future__ import annotations

import importlib
import sys
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import httpx
import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

RELOAD_ORDER = [
    "handshake.config",
    "handshake.workflow",
    "handshake.events",
    "handshake.chains.base",
    "handshake.chains.utxo",
    "handshake.chains.account",
    "handshake.chains.registry",
    "handshake.fees",
    "handshake.prompts",
    "handshake.payouts",
    "handshake.feed",
    "handshake.closure",
    "handshake.tickets",
    "handshake.orders",
    "handshake.monitor",
    "handshake.auth",
    "handshake.middleware",
    "handshake.tasks",
    "handshake.routes.users",
    "handshake.routes.tickets",
    "handshake.routes.orders",
    "handshake.routes.feed",
    "handshake.app",
]


@pytest.fixture()
def handshake_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    # Isolated DB per test.
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("HANDSHAKE_DATABASE_URL", f"sqlite:///{tmp_path / 'handshake.db'}")
    monkeypatch.setenv("HANDSHAKE_AUTO_CREATE_SCHEMA", "true")
    monkeypatch.setenv("HANDSHAKE_BACKGROUND_TASKS", "false")
    monkeypatch.setenv("HANDSHAKE_API_KEY_SALT_ROUNDS", "4")
    monkeypatch.setenv("HANDSHAKE_PAYOUT_WATCH_SECONDS", "0")
    monkeypatch.setenv("HANDSHAKE_BLOCKCYPHER_TOKEN", "")
    monkeypatch.setenv("HANDSHAKE_STAFF_USERNAMES", "staffer")

    modules = [importlib.import_module(name) for name in RELOAD_ORDER]
    for module in modules:
        importlib.reload(module)

    app_mod = sys.modules["handshake.app"]
    yield app_mod.create_app()
    sys.modules["handshake.closure"].scheduler.shutdown()


@pytest.fixture()
def auth_header():
    def _auth(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    return _auth


@pytest.fixture()
def register(auth_header):
    """Register a user and return ``(user_id, headers)``."""

    def _register(client, username: str) -> tuple[str, dict[str, str]]:
        resp = client.post("/v1/users/register", json={"username": username})
        assert resp.status_code == 201, resp.text
        body = resp.json()
        return body["user"]["id"], auth_header(body["api_key"])

    return _register


@pytest.fixture()
def open_trade(register):
    """Walk a fresh ticket to the point where ``stop`` says to stop.

    ``stop`` is one of ``accepted``, ``roles``, ``amount`` or ``payment``.
    """

    def _open(
        client,
        crypto: str = "bitcoin",
        amount: str = "$100",
        stop: str = "payment",
        sender_name: str = "buyer",
        receiver_name: str = "seller",
    ) -> dict:
        seller_id, seller = register(client, receiver_name)
        buyer_id, buyer = register(client, sender_name)

        ticket = client.post("/v1/tickets", headers=buyer, json={"crypto": crypto}).json()
        tid = ticket["id"]
        client.post(f"/v1/tickets/{tid}/invite", headers=buyer, json={"username": receiver_name})
        client.post(f"/v1/tickets/{tid}/respond", headers=seller, json={"accept": True})
        trade = {
            "id": tid,
            "sender_id": buyer_id,
            "sender": buyer,
            "receiver_id": seller_id,
            "receiver": seller,
        }
        if stop == "accepted":
            return trade

        client.post(f"/v1/tickets/{tid}/select-role", headers=buyer, json={"role": "sender"})
        client.post(f"/v1/tickets/{tid}/select-role", headers=seller, json={"role": "receiver"})
        client.post(f"/v1/tickets/{tid}/confirm-roles", headers=buyer, json={"confirmed": True})
        client.post(f"/v1/tickets/{tid}/confirm-roles", headers=seller, json={"confirmed": True})
        if stop == "roles":
            return trade

        client.post(f"/v1/tickets/{tid}/propose-amount", headers=buyer, json={"text": amount})
        client.post(f"/v1/tickets/{tid}/confirm-amount", headers=buyer, json={"confirmed": True})
        client.post(f"/v1/tickets/{tid}/confirm-amount", headers=seller, json={"confirmed": True})
        if stop == "amount":
            return trade

        client.post(f"/v1/tickets/{tid}/select-fee", headers=buyer, json={"option": "with-fees"})
        resp = client.post(f"/v1/tickets/{tid}/confirm-fees", headers=seller, json={"confirmed": True})
        assert resp.status_code == 200, resp.text
        assert resp.json()["payment"]["state"] == "awaiting"
        trade["expected_amount"] = Decimal(resp.json()["payment"]["expected_amount"])
        return trade

    return _open


@pytest.fixture()
def fake_poller():
    """Build a chain poller that serves canned observations instead of calling a provider."""
    from handshake.chains.base import ChainPoller

    class FakePoller(ChainPoller):
        def __init__(self, chain, kind: str) -> None:
            super().__init__(chain, httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))))
            self.kind = kind
            self.seen: list = []
            self.error: Exception | None = None
            self.depths: dict[str, int] = {}
            self.scans = 0

        def observations(self, address: str, since: datetime | None = None):
            self.scans += 1
            if self.error is not None:
                raise self.error
            return list(self.seen)

        def lookup(self, tx_hash: str, address: str):
            if self.error is not None:
                raise self.error
            for obs in self.seen:
                if obs.tx_hash == tx_hash:
                    depth = self.depths.get(tx_hash, obs.confirmations)
                    return replace(obs, confirmations=depth)
            return None

    def _build(crypto: str = "bitcoin") -> FakePoller:
        from handshake.chains.registry import register_poller
        from handshake.config import chain_for

        chain = chain_for(crypto)
        poller = FakePoller(chain, chain.kind)
        register_poller(crypto, poller)
        return poller

    return _build
