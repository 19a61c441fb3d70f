from __future__ import annotations

from decimal import Decimal

import pytest
from web3 import Web3

from handshake.parsing import NO_AMOUNT, NON_POSITIVE, TOO_MANY_DECIMALS, extract_payout_address, parse_deal_amount


@pytest.mark.parametrize(
    "text, expected",
    [
        ("$100", "100.00"),
        ("100", "100.00"),
        ("$ 1,250.50", "1250.50"),
        ("the deal is 75.5 dollars", "75.50"),
        ("12,345,678.90", "12345678.90"),
    ],
)
def test_amounts_are_found_in_free_text(text, expected):
    parsed = parse_deal_amount(text)
    assert parsed.ok
    assert parsed.amount == Decimal(expected)


@pytest.mark.parametrize(
    "text, error",
    [
        ("", NO_AMOUNT),
        (None, NO_AMOUNT),
        ("a hundred bucks", NO_AMOUNT),
        ("$10.999", TOO_MANY_DECIMALS),
        ("$0", NON_POSITIVE),
        ("-$5", NON_POSITIVE),
        ("$-5", NON_POSITIVE),
    ],
)
def test_rejected_amounts(text, error):
    parsed = parse_deal_amount(text)
    assert not parsed.ok
    assert parsed.error == error


def test_ethereum_address_is_checksummed():
    raw = "0x55058382068deb5e4efddbdd5a69d2771c7cf80e"
    assert extract_payout_address(f"  {raw} ", "ethereum") == Web3.to_checksum_address(raw)


def test_ethereum_address_with_bad_checksum_is_rejected():
    good = Web3.to_checksum_address("0x55058382068deb5e4efddbdd5a69d2771c7cf80e")
    pos = next(i for i, ch in enumerate(good) if i > 1 and ch.isalpha())
    bad = good[:pos] + good[pos].swapcase() + good[pos + 1 :]
    assert extract_payout_address(bad, "ethereum") is None


def test_mistyped_mixed_case_address_is_rejected():
    assert extract_payout_address("0x55058382068DEB5E4EFDDbdd5A69D2771C7Cf80E", "ethereum") is None


def test_single_case_and_checksummed_addresses_are_accepted():
    raw = "0x55058382068deb5e4efddbdd5a69d2771c7cf80e"
    checksummed = Web3.to_checksum_address(raw)
    assert extract_payout_address(checksummed, "ethereum") == checksummed
    assert extract_payout_address("0x" + raw[2:].upper(), "ethereum") == checksummed


@pytest.mark.parametrize(
    "address, crypto",
    [
        ("mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn", "bitcoin"),
        ("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", "bitcoin"),
        ("miJwGUNLFGhFVfr7kDqskVotW4HgY1ePmP", "litecoin"),
        ("ltc1qw508d6qejxtdg4y5r3zarvary0c5xw7kgmn4n9", "litecoin"),
    ],
)
def test_utxo_addresses(address, crypto):
    assert extract_payout_address(address, crypto) == address


@pytest.mark.parametrize(
    "address, crypto",
    [
        ("0x1234", "ethereum"),
        ("mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn", "ethereum"),
        ("0x55058382068dEB5E4EFDDbdd5A69D2771C7Cf80E", "bitcoin"),
        ("send it to mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn please", "bitcoin"),
        ("anything", "dogecoin"),
    ],
)
def test_invalid_addresses(address, crypto):
    assert extract_payout_address(address, crypto) is None
