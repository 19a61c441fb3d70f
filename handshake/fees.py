from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from handshake.config import chain_for

_CENT = Decimal("0.01")
_COIN_PLACES = Decimal("0.00000001")


@dataclass(frozen=True)
class FeeQuote:
    deal_usd: Decimal
    fee_usd: Decimal
    total_usd: Decimal


def platform_fee(deal_usd: Decimal) -> Decimal:
    """Flat tiers below $250, 1% from $250 up. The same on every chain."""
    if deal_usd >= 250:
        return (deal_usd * Decimal("0.01")).quantize(_CENT, rounding=ROUND_HALF_UP)
    if deal_usd >= 50:
        return Decimal("2.00")
    if deal_usd >= 10:
        return Decimal("0.50")
    return Decimal("0.00")


def calculate_total_amount(deal_usd: Decimal, used_pass: bool) -> FeeQuote:
    """Total the depositor has to send. A pass waives every fee."""
    deal_usd = Decimal(deal_usd)
    fee = Decimal("0.00") if used_pass else platform_fee(deal_usd)
    return FeeQuote(deal_usd=deal_usd, fee_usd=fee, total_usd=deal_usd + fee)


def usd_to_crypto(usd: Decimal, crypto: str) -> Decimal:
    chain = chain_for(crypto)
    if chain is None:
        raise ValueError(f"Unsupported cryptocurrency: {crypto}")
    return (Decimal(usd) / chain.usd_rate).quantize(_COIN_PLACES, rounding=ROUND_HALF_UP)


def payout_usd(ticket) -> Decimal:
    """The receiver gets the deal value; fees stay with the platform."""
    return Decimal(ticket.deal_amount or 0)
