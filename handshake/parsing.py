from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from web3 import Web3

_AMOUNT_RE = re.compile(
    r"(?P<sign>-\s*)?\$?\s*(?P<sign_after>-\s*)?"
    r"(?P<whole>\d{1,3}(?:,\d{3})+|\d+)"
    r"(?:\.(?P<frac>\d+))?"
)

NO_AMOUNT = "no_amount"
TOO_MANY_DECIMALS = "too_many_decimals"
NON_POSITIVE = "non_positive"


@dataclass(frozen=True)
class AmountParse:
    amount: Decimal | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.amount is not None


def parse_deal_amount(text: str | None) -> AmountParse:
    """Pull a USD amount out of free text such as ``$ 1,250.50``."""
    if not text:
        return AmountParse(error=NO_AMOUNT)

    match = _AMOUNT_RE.search(text)
    if match is None:
        return AmountParse(error=NO_AMOUNT)

    frac = match.group("frac")
    if frac is not None and len(frac) > 2:
        return AmountParse(error=TOO_MANY_DECIMALS)

    raw = match.group("whole").replace(",", "")
    if frac:
        raw = f"{raw}.{frac}"
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return AmountParse(error=NO_AMOUNT)

    if match.group("sign") or match.group("sign_after") or amount <= 0:
        return AmountParse(error=NON_POSITIVE)

    return AmountParse(amount=amount.quantize(Decimal("0.01")))


_BASE58 = "1-9A-HJ-NP-Za-km-z"

ADDRESS_PATTERNS: dict[str, re.Pattern[str]] = {
    "ethereum": re.compile(r"0x[a-fA-F0-9]{40}"),
    "bitcoin": re.compile(rf"(?:bc1|tb1)[0-9a-z]{{20,}}|[13mn2][{_BASE58}]{{25,34}}"),
    "litecoin": re.compile(rf"(?:ltc1|tltc1)[0-9a-z]{{20,}}|[LM3mn2Q][{_BASE58}]{{25,34}}"),
}

ADDRESS_HINTS = {
    "ethereum": "Ethereum addresses start with 0x followed by 40 hexadecimal characters.",
    "bitcoin": "Bitcoin addresses start with bc1, tb1, 1, 3, m, n or 2.",
    "litecoin": "Litecoin addresses start with ltc1, tltc1, L, M, 3, m, n, 2 or Q.",
}


def extract_payout_address(raw: str | None, crypto: str) -> str | None:
    """Return the normalised address, or None when it is not valid for ``crypto``."""
    pattern = ADDRESS_PATTERNS.get(crypto)
    if pattern is None or not raw:
        return None
    candidate = raw.strip()
    if not pattern.fullmatch(candidate):
        return None
    if crypto == "ethereum":
        # Mixed-case input must carry a valid EIP-55 checksum.
        body = candidate[2:]
        if body != body.lower() and body != body.upper() and not Web3.is_checksum_address(candidate):
            return None
        return Web3.to_checksum_address(candidate)
    return candidate
