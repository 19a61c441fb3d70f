from __future__ import annotations

import itertools
import logging
from datetime import datetime
from decimal import Decimal

import httpx
from web3 import Web3

from handshake.chains.base import ChainPoller, Observation, ProviderError, ProviderRateLimited, parse_timestamp
from handshake.config import ChainConfig, settings

logger = logging.getLogger(__name__)

TRANSFER_LOOKBACK_BLOCKS = 120
BLOCK_SCAN_LOOKBACK = 60
BLOCK_SCAN_MAX_BLOCKS = 8


def _hex_int(value) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client for an Ethereum-compatible provider."""

    def __init__(self, url: str, client: httpx.Client | None = None) -> None:
        self.url = url
        self.client = client or httpx.Client(timeout=settings.provider_timeout_seconds)
        self._ids = itertools.count(1)

    def call(self, method: str, params: list | None = None):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            resp = self.client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(f"RPC provider unreachable: {exc}") from exc
        if resp.status_code == 429:
            raise ProviderRateLimited(f"RPC provider rate limited on {method}")
        if resp.status_code >= 400:
            raise ProviderError(f"RPC provider returned {resp.status_code} on {method}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError(f"RPC provider returned invalid JSON on {method}") from exc

        error = body.get("error")
        if error:
            message = str(error.get("message", ""))
            if error.get("code") == 429 or "exceeded its compute units" in message:
                raise ProviderRateLimited(message or f"rate limited on {method}")
            raise ProviderError(f"{method} failed: {message}")
        return body.get("result")

    def block_number(self) -> int:
        return _hex_int(self.call("eth_blockNumber"))

    def get_block(self, number: int | str, full: bool = True) -> dict | None:
        tag = hex(number) if isinstance(number, int) else number
        return self.call("eth_getBlockByNumber", [tag, full])

    def get_transaction(self, tx_hash: str) -> dict | None:
        return self.call("eth_getTransactionByHash", [tx_hash])

    def get_receipt(self, tx_hash: str) -> dict | None:
        return self.call("eth_getTransactionReceipt", [tx_hash])

    def get_balance(self, address: str) -> int:
        return _hex_int(self.call("eth_getBalance", [address, "latest"]))

    def gas_price(self) -> int:
        return _hex_int(self.call("eth_gasPrice"))

    def fee_data(self) -> dict:
        """EIP-1559 fee caps when the chain reports a base fee, else legacy gas price."""
        latest = self.get_block("latest", False) or {}
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": self.gas_price()}
        try:
            priority = _hex_int(self.call("eth_maxPriorityFeePerGas"))
        except ProviderRateLimited:
            raise
        except ProviderError:
            priority = Web3.to_wei(1.5, "gwei")
        return {
            "maxFeePerGas": _hex_int(base_fee) * 2 + priority,
            "maxPriorityFeePerGas": priority,
        }

    def estimate_gas(self, tx: dict) -> int:
        return _hex_int(self.call("eth_estimateGas", [tx]))

    def send_transaction(self, tx: dict) -> str:
        return self.call("eth_sendTransaction", [tx])

    def asset_transfers(self, to_address: str, from_block: int) -> list[dict]:
        result = self.call(
            "alchemy_getAssetTransfers",
            [
                {
                    "fromBlock": hex(from_block),
                    "toBlock": "latest",
                    "toAddress": to_address,
                    "category": ["external"],
                    "withMetadata": True,
                    "excludeZeroValue": True,
                    "maxCount": "0x64",
                }
            ],
        )
        return (result or {}).get("transfers") or []


class AccountPoller(ChainPoller):
    kind = "account"

    def __init__(self, chain: ChainConfig, client: httpx.Client | None = None, rpc: JsonRpcClient | None = None) -> None:
        super().__init__(chain, client)
        self.rpc = rpc or JsonRpcClient(chain.endpoint, self.client)

    def _candidates(self, address: str, current: int) -> list[tuple[dict, datetime | None]]:
        """Incoming transactions as ``(tx, timestamp)``, from the transfer index if available."""
        watched = address.lower()
        try:
            transfers = self.rpc.asset_transfers(address, max(0, current - TRANSFER_LOOKBACK_BLOCKS))
        except ProviderRateLimited:
            raise
        except ProviderError:
            logger.info("Transfer index unavailable on %s, scanning recent blocks", self.chain.name)
        else:
            found = []
            for transfer in transfers:
                tx = self.rpc.get_transaction(transfer["hash"])
                if tx is None or (tx.get("to") or "").lower() != watched:
                    continue
                meta = transfer.get("metadata") or {}
                found.append((tx, parse_timestamp(meta.get("blockTimestamp"))))
            return found

        found = []
        start = max(0, current - BLOCK_SCAN_LOOKBACK)
        for number in range(current, start - 1, -1)[:BLOCK_SCAN_MAX_BLOCKS]:
            block = self.rpc.get_block(number, True)
            if not block:
                continue
            timestamp = parse_timestamp(_hex_int(block.get("timestamp")))
            for tx in block.get("transactions") or []:
                if isinstance(tx, dict) and (tx.get("to") or "").lower() == watched and _hex_int(tx.get("value")) > 0:
                    found.append((tx, timestamp))
        return found

    def _observe(self, tx: dict, current: int, timestamp: datetime | None) -> Observation | None:
        receipt = self.rpc.get_receipt(tx["hash"])
        if receipt is None or receipt.get("blockNumber") is None:
            return None
        if _hex_int(receipt.get("status")) != 1:
            return None
        block = _hex_int(receipt["blockNumber"])
        gas_price = receipt.get("effectiveGasPrice") or tx.get("gasPrice")
        fee_wei = _hex_int(receipt.get("gasUsed")) * _hex_int(gas_price)
        return Observation(
            tx_hash=tx["hash"],
            amount=Decimal(Web3.from_wei(_hex_int(tx.get("value")), "ether")),
            confirmations=max(0, current - block + 1),
            block_height=block,
            from_address=tx.get("from"),
            network_fee=Decimal(Web3.from_wei(fee_wei, "ether")),
            timestamp=timestamp,
        )

    def observations(self, address: str, since: datetime | None = None) -> list[Observation]:
        current = self.rpc.block_number()
        found = []
        for tx, timestamp in self._candidates(address, current):
            obs = self._observe(tx, current, timestamp)
            if obs is not None:
                found.append(obs)
        return found

    def lookup(self, tx_hash: str, address: str) -> Observation | None:
        tx = self.rpc.get_transaction(tx_hash)
        if tx is None:
            return None
        return self._observe(tx, self.rpc.block_number(), None)

    def confirmations(self, tx_hash: str) -> int:
        """Depth of an outbound transaction; 0 while pending, -1 if it reverted."""
        receipt = self.rpc.get_receipt(tx_hash)
        if receipt is None or receipt.get("blockNumber") is None:
            return 0
        if _hex_int(receipt.get("status")) != 1:
            return -1
        return max(0, self.rpc.block_number() - _hex_int(receipt["blockNumber"]) + 1)
