from __future__ import annotations

import threading

from handshake.chains.account import AccountPoller
from handshake.chains.base import ChainPoller
from handshake.chains.utxo import UtxoPoller
from handshake.config import chain_for

_lock = threading.Lock()
_pollers: dict[str, ChainPoller] = {}


def poller_for(crypto: str) -> ChainPoller:
    with _lock:
        poller = _pollers.get(crypto)
        if poller is not None:
            return poller
        chain = chain_for(crypto)
        if chain is None:
            raise ValueError(f"Unsupported cryptocurrency: {crypto}")
        poller = AccountPoller(chain) if chain.kind == "account" else UtxoPoller(chain)
        _pollers[crypto] = poller
        return poller


def register_poller(crypto: str, poller: ChainPoller) -> None:
    with _lock:
        _pollers[crypto] = poller


def reset_pollers() -> None:
    with _lock:
        _pollers.clear()
