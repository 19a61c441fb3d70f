from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import httpx

from handshake.chains.base import ChainPoller, Observation, ProviderError, ProviderRateLimited, parse_timestamp
from handshake.config import settings
from handshake.matching import from_base_units

logger = logging.getLogger(__name__)


class UtxoPoller(ChainPoller):
    """Polls a BlockCypher-style explorer for outputs paying an address."""

    kind = "utxo"

    def _params(self, **extra) -> dict:
        params = dict(extra)
        if settings.blockcypher_token:
            params["token"] = settings.blockcypher_token
        return params

    def _request(self, method: str, path: str, **params) -> dict:
        url = f"{self.chain.endpoint.rstrip('/')}{path}"
        try:
            resp = self.client.request(method, url, params=self._params(**params))
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.chain.name} explorer unreachable: {exc}") from exc
        if resp.status_code == 429:
            raise ProviderRateLimited(f"{self.chain.name} explorer rate limited")
        if resp.status_code >= 400:
            raise ProviderError(f"{self.chain.name} explorer returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"{self.chain.name} explorer returned invalid JSON") from exc

    def _observations_for(self, tx: dict, address: str) -> list[Observation]:
        block_height = tx.get("block_height")
        if block_height is not None and block_height < 0:
            block_height = None
        inputs = tx.get("inputs") or []
        sender = None
        if inputs and inputs[0].get("addresses"):
            sender = inputs[0]["addresses"][0]
        timestamp = parse_timestamp(tx.get("received") or tx.get("confirmed"))

        found = []
        for output in tx.get("outputs") or []:
            if address not in (output.get("addresses") or []):
                continue
            found.append(
                Observation(
                    tx_hash=tx["hash"],
                    amount=from_base_units(output.get("value", 0), self.chain.decimals),
                    confirmations=int(tx.get("confirmations") or 0),
                    block_height=block_height,
                    from_address=sender,
                    timestamp=timestamp,
                )
            )
        return found

    def observations(self, address: str, since: datetime | None = None) -> list[Observation]:
        data = self._request("GET", f"/addrs/{address}/full", limit=50)
        found: list[Observation] = []
        for tx in data.get("txs") or []:
            found.extend(self._observations_for(tx, address))
        return found

    def transaction(self, tx_hash: str) -> dict:
        return self._request("GET", f"/txs/{tx_hash}")

    def lookup(self, tx_hash: str, address: str) -> Observation | None:
        tx = self.transaction(tx_hash)
        found = self._observations_for(tx, address)
        if not found:
            return None
        fee = tx.get("fees")
        if fee is None:
            return found[0]
        return replace(found[0], network_fee=from_base_units(fee, self.chain.decimals))

    def network_fee(self, tx_hash: str) -> Decimal | None:
        fee = self.transaction(tx_hash).get("fees")
        if fee is None:
            return None
        return from_base_units(fee, self.chain.decimals)

    def generate_address(self) -> str | None:
        if not settings.blockcypher_token:
            return None
        try:
            data = self._request("POST", "/addrs")
        except ProviderError:
            logger.warning("Address generation failed on %s, using master wallet", self.chain.name, exc_info=True)
            return None
        return data.get("address")
