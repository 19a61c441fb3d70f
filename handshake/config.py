from __future__ import annotations

import os
from collections.abc import Generator
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


def _get_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return int(val)


def _get_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return float(val)


def _get_decimal(name: str, default: str) -> Decimal:
    val = os.getenv(name)
    if val is None or val == "":
        return Decimal(default)
    return Decimal(val)


def _get_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_ints(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return tuple(int(part) for part in val.split(",") if part.strip())


class Settings:
    database_url: str = os.getenv("DATABASE_URL") or os.getenv("HANDSHAKE_DATABASE_URL", "sqlite:///./handshake.db")

    auto_create_schema: bool = _get_bool("HANDSHAKE_AUTO_CREATE_SCHEMA", True)

    host: str = os.getenv("HANDSHAKE_HOST", "127.0.0.1")
    port: int = _get_int("HANDSHAKE_PORT", 3000)

    api_key_salt_rounds: int = _get_int("HANDSHAKE_API_KEY_SALT_ROUNDS", 10)
    staff_usernames: frozenset[str] = frozenset(
        name.strip().lower() for name in os.getenv("HANDSHAKE_STAFF_USERNAMES", "").split(",") if name.strip()
    )

    # Background loops
    background_tasks: bool = _get_bool("HANDSHAKE_BACKGROUND_TASKS", True)
    payment_poll_seconds: int = _get_int("HANDSHAKE_PAYMENT_POLL_SECONDS", 15)
    closure_sweep_seconds: int = _get_int("HANDSHAKE_CLOSURE_SWEEP_SECONDS", 30)
    provider_cooldown_seconds: int = _get_int("HANDSHAKE_PROVIDER_COOLDOWN_SECONDS", 30)
    provider_timeout_seconds: float = _get_float("HANDSHAKE_PROVIDER_TIMEOUT_SECONDS", 10.0)

    # Payment matching
    amount_tolerance: Decimal = _get_decimal("HANDSHAKE_AMOUNT_TOLERANCE", "0.02")
    payment_timeout_minutes: int = _get_int("HANDSHAKE_PAYMENT_TIMEOUT_MINUTES", 20)
    rescan_windows_minutes: tuple[int, ...] = _get_ints("HANDSHAKE_RESCAN_WINDOWS_MINUTES", (10, 8, 12))
    max_rescans: int = _get_int("HANDSHAKE_MAX_RESCANS", 3)
    lookback_grace_minutes: int = _get_int("HANDSHAKE_LOOKBACK_GRACE_MINUTES", 2)

    # Tickets
    active_ticket_limit: int = _get_int("HANDSHAKE_ACTIVE_TICKET_LIMIT", 12)
    close_delay_seconds: int = _get_int("HANDSHAKE_CLOSE_DELAY_SECONDS", 60)
    copy_details_limit: int = _get_int("HANDSHAKE_COPY_DETAILS_LIMIT", 3)
    payout_watch_seconds: int = _get_int("HANDSHAKE_PAYOUT_WATCH_SECONDS", 1800)
    payout_fallback_gas: int = _get_int("HANDSHAKE_PAYOUT_FALLBACK_GAS", 21000)

    # Pass orders
    order_expiry_minutes: int = _get_int("HANDSHAKE_ORDER_EXPIRY_MINUTES", 30)
    order_detection_timeout_minutes: int = _get_int("HANDSHAKE_ORDER_DETECTION_TIMEOUT_MINUTES", 10)

    # Webhooks
    webhook_timeout_seconds: int = _get_int("HANDSHAKE_WEBHOOK_TIMEOUT", 10)
    webhook_max_retries: int = _get_int("HANDSHAKE_WEBHOOK_MAX_RETRIES", 3)

    # Chain endpoints
    blockcypher_token: str = os.getenv("HANDSHAKE_BLOCKCYPHER_TOKEN", "")
    eth_rpc_url: str = os.getenv("HANDSHAKE_ETH_RPC_URL", "https://ethereum-sepolia-rpc.publicnode.com")
    eth_chain_id: int = _get_int("HANDSHAKE_ETH_CHAIN_ID", 11155111)


settings = Settings()


@dataclass(frozen=True)
class ChainConfig:
    name: str
    kind: str  # "utxo" or "account"
    symbol: str
    decimals: int
    usd_rate: Decimal
    confirmations_required: int
    wallet_address: str
    endpoint: str
    explorer_url: str

    def tx_link(self, tx_hash: str | None) -> str | None:
        if not tx_hash:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


def _chain(
    name: str,
    kind: str,
    symbol: str,
    decimals: int,
    rate: str,
    confirmations: int,
    wallet: str,
    endpoint: str,
    explorer: str,
) -> ChainConfig:
    env = name.upper()
    return ChainConfig(
        name=name,
        kind=kind,
        symbol=symbol,
        decimals=decimals,
        usd_rate=_get_decimal(f"HANDSHAKE_{env}_USD_RATE", rate),
        confirmations_required=_get_int(f"HANDSHAKE_{env}_CONFIRMATIONS", confirmations),
        wallet_address=os.getenv(f"HANDSHAKE_{env}_WALLET", wallet),
        endpoint=os.getenv(f"HANDSHAKE_{env}_ENDPOINT", endpoint),
        explorer_url=os.getenv(f"HANDSHAKE_{env}_EXPLORER", explorer),
    )


CHAINS: dict[str, ChainConfig] = {
    "bitcoin": _chain(
        "bitcoin",
        "utxo",
        "BTC",
        8,
        "42000",
        2,
        "mipcBbFg9gMiCh81Kj8tqqdgoZub1ZJRfn",
        "https://api.blockcypher.com/v1/btc/test3",
        "https://live.blockcypher.com/btc-testnet",
    ),
    "litecoin": _chain(
        "litecoin",
        "utxo",
        "LTC",
        8,
        "75",
        2,
        "miJwGUNLFGhFVfr7kDqskVotW4HgY1ePmP",
        "https://api.blockcypher.com/v1/ltc/test3",
        "https://live.blockcypher.com/ltc-testnet",
    ),
    "ethereum": _chain(
        "ethereum",
        "account",
        "ETH",
        18,
        "240",
        2,
        "0x55058382068dEB5E4EFDDbdd5A69D2771C7Cf80E",
        settings.eth_rpc_url,
        "https://sepolia.etherscan.io",
    ),
}


PASS_CATALOGUE: dict[str, dict] = {
    "0": {"type": "Single", "count": 1, "price": Decimal("1")},
    "1": {"type": "Premium", "count": 3, "price": Decimal("5")},
    "2": {"type": "Rhino", "count": 8, "price": Decimal("12")},
}


def chain_for(crypto: str) -> ChainConfig | None:
    return CHAINS.get((crypto or "").strip().lower())


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite:"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

SessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    expire_on_commit=False,
    autoflush=False,
    autobegin=False,
)


def get_session() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
