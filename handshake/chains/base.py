from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal

import httpx

from handshake.config import ChainConfig, settings
from handshake.matching import DEFAULT_TOLERANCE, MatchResult, match_amount

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The explorer or RPC provider failed or returned something unusable."""


class ProviderRateLimited(ProviderError):
    """The provider throttled us; back off before the next scan."""


@dataclass(frozen=True)
class Observation:
    tx_hash: str
    amount: Decimal
    confirmations: int = 0
    block_height: int | None = None
    from_address: str | None = None
    network_fee: Decimal | None = None
    timestamp: datetime | None = None


@dataclass(frozen=True)
class Detection:
    observation: Observation
    match: MatchResult
    duplicate: bool = False

    @property
    def tx_hash(self) -> str:
        return self.observation.tx_hash


def parse_timestamp(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ChainPoller:
    """Watches one deposit address on one chain.

    Subclasses fetch raw observations; the shared :meth:`scan` applies the
    amount matcher and picks which observation to report.
    """

    kind = ""

    def __init__(self, chain: ChainConfig, client: httpx.Client | None = None) -> None:
        self.chain = chain
        self.client = client or httpx.Client(timeout=settings.provider_timeout_seconds)

    def observations(self, address: str, since: datetime | None = None) -> list[Observation]:
        raise NotImplementedError

    def lookup(self, tx_hash: str, address: str) -> Observation | None:
        """Re-read a known transaction to refresh its confirmation depth."""
        raise NotImplementedError

    def network_fee(self, tx_hash: str) -> Decimal | None:
        return None

    def generate_address(self) -> str | None:
        return None

    def scan(
        self,
        address: str,
        expected_amount: Decimal,
        reference_usd: Decimal | None = None,
        since: datetime | None = None,
        claimed: Callable[[str], bool] | None = None,
        tolerance: Decimal = DEFAULT_TOLERANCE,
    ) -> Detection | None:
        matches: list[Detection] = []
        overpaid: list[Detection] = []
        underpaid: list[Detection] = []
        duplicates: list[Detection] = []

        for obs in self.observations(address, since):
            if since is not None and obs.timestamp is not None and obs.timestamp < since:
                continue
            result = match_amount(obs.amount, expected_amount, reference_usd, tolerance)
            if result.accepted and claimed is not None and claimed(obs.tx_hash):
                duplicates.append(Detection(obs, result, duplicate=True))
            elif result.is_match:
                matches.append(Detection(obs, result))
            elif result.accepted:
                overpaid.append(Detection(obs, result))
            elif claimed is None or not claimed(obs.tx_hash):
                underpaid.append(Detection(obs, result))

        for bucket in (matches, overpaid, underpaid, duplicates):
            if bucket:
                return self._with_fee(bucket[0])
        return None

    def _with_fee(self, detection: Detection) -> Detection:
        if detection.duplicate or detection.observation.network_fee is not None:
            return detection
        try:
            fee = self.network_fee(detection.tx_hash)
        except ProviderError:
            logger.warning("Fee lookup failed for %s on %s", detection.tx_hash, self.chain.name, exc_info=True)
            return detection
        if fee is None:
            return detection
        return replace(detection, observation=replace(detection.observation, network_fee=fee))
