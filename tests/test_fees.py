from __future__ import annotations

from decimal import Decimal

import pytest


@pytest.mark.parametrize(
    "deal, fee",
    [
        ("5", "0.00"),
        ("10", "0.50"),
        ("49.99", "0.50"),
        ("50", "2.00"),
        ("249.99", "2.00"),
        ("250", "2.50"),
        ("1000", "10.00"),
    ],
)
def test_fee_tiers(handshake_app, deal, fee):
    from handshake.fees import platform_fee

    assert platform_fee(Decimal(deal)) == Decimal(fee)


@pytest.mark.parametrize("crypto", ["bitcoin", "litecoin", "ethereum"])
def test_ticket_fee_is_the_same_on_every_chain(handshake_app, open_trade, crypto):
    from fastapi.testclient import TestClient

    with TestClient(handshake_app) as client:
        trade = open_trade(client, crypto=crypto)
        ticket = client.get(f"/v1/tickets/{trade['id']}", headers=trade["sender"]).json()
        assert Decimal(ticket["payment"]["expected_usd"]) == Decimal("102.00")


def test_pass_waives_fees(handshake_app):
    from handshake.fees import calculate_total_amount

    with_fees = calculate_total_amount(Decimal("100"), used_pass=False)
    with_pass = calculate_total_amount(Decimal("100"), used_pass=True)
    assert with_fees.total_usd == Decimal("102.00")
    assert with_pass.fee_usd == 0
    assert with_pass.total_usd == Decimal("100")


def test_usd_to_crypto_uses_configured_rate(handshake_app):
    from handshake.fees import usd_to_crypto

    assert usd_to_crypto(Decimal("102"), "bitcoin") == Decimal("0.00242857")
    assert usd_to_crypto(Decimal("102"), "ethereum") == Decimal("0.42500000")
    with pytest.raises(ValueError):
        usd_to_crypto(Decimal("1"), "dogecoin")
