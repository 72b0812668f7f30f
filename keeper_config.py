import os
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv
from web3 import Web3

from abis import ZERO_ADDRESS
from keeper_errors import ConfigError

logger = logging.getLogger("KeeperConfig")

# Minimum collateralization ratio, 110% in 1e18 fixed point.
MCR_ICR = 1_100_000_000_000_000_000

NETWORK_ALIASES = {"testnet": "mezo-testnet", "mainnet": "mezo"}

LIQUIDATION = "liquidation"
REDEMPTION = "redemption"
POLLER = "poller"

# Addresses each agent cannot run without. The rest are optional for that agent.
REQUIRED_ADDRESSES = {
    LIQUIDATION: ("trove_manager", "sorted_troves", "trove_pilot_engine", "price_feed"),
    REDEMPTION: ("trove_pilot_engine", "hint_helpers", "sorted_troves", "price_feed", "musd"),
    POLLER: ("trove_manager", "sorted_troves", "price_feed"),
}

ADDRESS_ENV = {
    "trove_manager": "TROVE_MANAGER_ADDRESS",
    "sorted_troves": "SORTED_TROVES_ADDRESS",
    "hint_helpers": "HINT_HELPERS_ADDRESS",
    "price_feed": "PRICE_FEED_ADDRESS",
    "musd": "MUSD_ADDRESS",
    "trove_pilot_engine": "TROVE_PILOT_ENGINE_ADDRESS",
}


@dataclass
class KeeperConfig:
    agent: str
    rpc_url: str
    fallback_rpcs: List[str] = field(default_factory=list)
    network: str = "mezo-testnet"
    chain_id: Optional[int] = None
    private_key: str = ""
    unlocked_rpc_url: Optional[str] = None
    keeper_address: Optional[str] = None

    addresses: Dict[str, str] = field(default_factory=dict)

    # Discovery
    max_troves_to_scan: int = 500
    max_troves_per_job: int = 20
    early_exit_scan_threshold: int = 50
    discovery_stop_after_safe: bool = False
    mcr_icr: int = MCR_ICR

    # Price gate
    max_price_age_seconds: int = 0
    min_btc_price: int = 0
    max_btc_price: int = 0

    # Execution caps
    max_tx_retries: int = 2
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    max_native_spent_per_run: Optional[int] = None
    max_gas_per_tx: Optional[int] = None
    min_keeper_balance_wei: Optional[int] = None
    gas_buffer_pct: int = 20
    retry_backoff_ms: int = 500
    receipt_timeout_sec: int = 120
    dry_run: bool = True

    # Liquidation jobs
    liquidation_fallback: bool = True
    strict_batch: bool = False
    adopt_alternate_order: bool = False

    # Redemption strategy
    redeem_musd_amount: int = 0
    redeem_max_chunk_musd: Optional[int] = None
    max_iterations: int = 50
    strict_truncation: bool = False
    upper_seed: Optional[str] = None
    lower_seed: Optional[str] = None
    seed_scan_window: int = 10
    auto_approve: bool = False
    approve_exact: bool = True

    # Runtime plumbing
    loop_interval_sec: float = 0
    state_dir: str = "state"
    db_path: Optional[str] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    discord_webhook: Optional[str] = None

    def address(self, name):
        return self.addresses.get(name)

    @property
    def has_signer(self):
        return bool(self.private_key and len(self.private_key) > 2) or bool(self.unlocked_rpc_url)


# --- ENV PARSING ---

def env_str(name, default=None):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().strip('"').strip("'")


def env_int(name, default=0):
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def env_float(name, default=0.0):
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def env_optional_int(name):
    """Unset, empty and "0" all mean "not configured"."""
    value = env_int(name, 0)
    return value if value != 0 else None


def env_bool(name, default):
    raw = env_str(name)
    if raw is None:
        return default
    return raw.lower() in ("true", "1", "yes")


def env_optional_address(name):
    raw = env_str(name)
    if not raw or raw == "0":
        return None
    if not Web3.is_address(raw):
        logger.warning(f"⚠️ Ignoring invalid {name}: {raw}")
        return None
    if raw.lower() == ZERO_ADDRESS:
        return None
    return Web3.to_checksum_address(raw)


def require_env(name):
    value = env_str(name)
    if not value:
        raise ConfigError(f"Missing required env: {name}")
    return value


def normalize_network(raw):
    return NETWORK_ALIASES.get(raw, raw)


# --- ADDRESS BOOK ---

def load_address_book(config_path, network):
    """
    Reads default contract addresses from a JSON address book.

    A missing/unreadable file or a network mismatch is not fatal: env vars can
    still provide every address.
    """
    if not config_path:
        return {}, None
    try:
        with open(config_path, "r") as f:
            book = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"⚠️ Failed to load CONFIG_PATH {config_path}: {e}")
        return {}, None

    if not isinstance(book, dict) or book.get("network") != network:
        got = book.get("network") if isinstance(book, dict) else None
        logger.warning(f"⚠️ CONFIG_PATH network mismatch (expected {network}, got {got})")
        return {}, None

    mezo = book.get("mezo") or {}
    core = mezo.get("core") or {}
    trove_pilot = book.get("trovePilot") or {}
    defaults = {
        "trove_manager": core.get("troveManager"),
        "sorted_troves": core.get("sortedTroves"),
        "hint_helpers": core.get("hintHelpers"),
        "price_feed": (mezo.get("price") or {}).get("priceFeed"),
        "musd": (mezo.get("tokens") or {}).get("musd"),
        "trove_pilot_engine": trove_pilot.get("trovePilotEngine") or trove_pilot.get("liquidationEngine"),
    }
    chain_id = book.get("chainId")
    return {k: v for k, v in defaults.items() if v}, int(chain_id) if chain_id else None


# --- LOAD & VALIDATE ---

def load_config(agent, env_path=None) -> KeeperConfig:
    """Builds the agent config from the environment (after .env) and validates it."""
    if agent not in REQUIRED_ADDRESSES:
        raise ConfigError(f"Unknown agent: {agent}")

    env_path = env_path or os.getenv("ENV_PATH") or ".env"
    if os.path.exists(env_path):
        load_dotenv(env_path)

    network = normalize_network(env_str("NETWORK", "mezo-testnet"))
    defaults, book_chain_id = load_address_book(env_str("CONFIG_PATH"), network)

    addresses = {}
    for name, env_name in ADDRESS_ENV.items():
        value = env_optional_address(env_name) or defaults.get(name)
        if value and Web3.is_address(value):
            value = Web3.to_checksum_address(value)
        if value:
            addresses[name] = value

    cfg = KeeperConfig(
        agent=agent,
        rpc_url=require_env("MEZO_RPC_URL"),
        fallback_rpcs=[r.strip() for r in env_str("FALLBACK_RPCS", "").split(",") if r.strip()],
        network=network,
        chain_id=env_int("CHAIN_ID", 0) or book_chain_id,
        private_key=env_str("KEEPER_PRIVATE_KEY", ""),
        unlocked_rpc_url=env_str("UNLOCKED_RPC_URL"),
        keeper_address=env_optional_address("KEEPER_ADDRESS"),
        addresses=addresses,

        max_troves_to_scan=env_int("MAX_TROVES_TO_SCAN_PER_RUN", 500),
        max_troves_per_job=env_int("MAX_TROVES_PER_JOB", 20),
        early_exit_scan_threshold=env_int("EARLY_EXIT_SCAN_THRESHOLD", 50),
        discovery_stop_after_safe=env_bool("DISCOVERY_STOP_AFTER_SAFE", False),

        max_price_age_seconds=env_int("MAX_PRICE_AGE_SECONDS", 0),
        min_btc_price=env_int("MIN_BTC_PRICE", 0),
        max_btc_price=env_int("MAX_BTC_PRICE", 0),

        max_tx_retries=env_int("MAX_TX_RETRIES", 2),
        max_fee_per_gas=env_optional_int("MAX_FEE_PER_GAS"),
        max_priority_fee_per_gas=env_optional_int("MAX_PRIORITY_FEE_PER_GAS"),
        max_native_spent_per_run=env_optional_int("MAX_NATIVE_SPENT_PER_RUN"),
        max_gas_per_tx=env_optional_int("MAX_GAS_PER_TX"),
        min_keeper_balance_wei=env_optional_int("MIN_KEEPER_BALANCE_WEI"),
        gas_buffer_pct=env_int("GAS_BUFFER_PCT", 20),
        retry_backoff_ms=env_int("RETRY_BACKOFF_MS", 500),
        receipt_timeout_sec=env_int("RECEIPT_TIMEOUT_SEC", 120),
        dry_run=env_bool("DRY_RUN", True),

        liquidation_fallback=env_bool("LIQUIDATION_FALLBACK", True),
        strict_batch=env_bool("STRICT_BATCH", False),
        adopt_alternate_order=env_bool("ADOPT_ALTERNATE_ORDER", False),

        redeem_musd_amount=env_int("REDEEM_MUSD_AMOUNT", 0),
        redeem_max_chunk_musd=env_optional_int("REDEEM_MAX_CHUNK_MUSD"),
        max_iterations=env_int("MAX_ITERATIONS", 50),
        strict_truncation=env_bool("STRICT_TRUNCATION", False),
        upper_seed=env_optional_address("UPPER_SEED"),
        lower_seed=env_optional_address("LOWER_SEED"),
        seed_scan_window=env_int("SEED_SCAN_WINDOW", 10),
        auto_approve=env_bool("AUTO_APPROVE", False),
        approve_exact=env_bool("APPROVE_EXACT", True),

        loop_interval_sec=env_float("LOOP_INTERVAL_SEC", 0),
        state_dir=env_str("STATE_DIR", os.path.join("state", agent)),
        db_path=env_str("KEEPER_DB_PATH"),
        telegram_bot_token=env_str("TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=env_str("TELEGRAM_CHAT_ID"),
        discord_webhook=env_str("DISCORD_WEBHOOK"),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: KeeperConfig):
    for name in REQUIRED_ADDRESSES[cfg.agent]:
        addr = cfg.addresses.get(name)
        if not addr or not Web3.is_address(addr) or addr.lower() == ZERO_ADDRESS:
            raise ConfigError(f"Invalid address for {ADDRESS_ENV[name]}")

    if cfg.max_troves_to_scan <= 0:
        raise ConfigError("MAX_TROVES_TO_SCAN_PER_RUN must be > 0")
    if cfg.max_troves_per_job <= 0:
        raise ConfigError("MAX_TROVES_PER_JOB must be > 0")
    if cfg.max_troves_per_job > cfg.max_troves_to_scan:
        raise ConfigError("MAX_TROVES_PER_JOB cannot exceed MAX_TROVES_TO_SCAN_PER_RUN")
    if cfg.early_exit_scan_threshold < 0:
        raise ConfigError("EARLY_EXIT_SCAN_THRESHOLD must be >= 0")
    if cfg.max_price_age_seconds < 0:
        raise ConfigError("MAX_PRICE_AGE_SECONDS must be >= 0")
    if cfg.min_btc_price < 0 or cfg.max_btc_price < 0:
        raise ConfigError("MIN_BTC_PRICE / MAX_BTC_PRICE must be >= 0")
    if cfg.min_btc_price > 0 and cfg.max_btc_price > 0 and cfg.min_btc_price > cfg.max_btc_price:
        raise ConfigError("MIN_BTC_PRICE cannot be greater than MAX_BTC_PRICE")

    if cfg.max_tx_retries < 0:
        raise ConfigError("MAX_TX_RETRIES must be >= 0")
    if cfg.gas_buffer_pct < 0 or cfg.gas_buffer_pct > 500:
        raise ConfigError("GAS_BUFFER_PCT must be between 0 and 500")
    if cfg.retry_backoff_ms < 0:
        raise ConfigError("RETRY_BACKOFF_MS must be >= 0")
    for label, bound in (
        ("MIN_KEEPER_BALANCE_WEI", cfg.min_keeper_balance_wei),
        ("MAX_FEE_PER_GAS", cfg.max_fee_per_gas),
        ("MAX_PRIORITY_FEE_PER_GAS", cfg.max_priority_fee_per_gas),
        ("MAX_NATIVE_SPENT_PER_RUN", cfg.max_native_spent_per_run),
        ("MAX_GAS_PER_TX", cfg.max_gas_per_tx),
    ):
        if bound is not None and bound < 0:
            raise ConfigError(f"{label} must be non-negative")

    if cfg.redeem_musd_amount < 0:
        raise ConfigError("REDEEM_MUSD_AMOUNT must be >= 0")
    if cfg.max_iterations < 0:
        raise ConfigError("MAX_ITERATIONS must be >= 0")
    if cfg.seed_scan_window < 0:
        raise ConfigError("SEED_SCAN_WINDOW must be >= 0")

    if cfg.agent == POLLER:
        return
    if not cfg.has_signer:
        if cfg.dry_run:
            logger.warning("⚠️ DRY_RUN with no signer configured; running read-only.")
            return
        raise ConfigError("Provide either KEEPER_PRIVATE_KEY or UNLOCKED_RPC_URL + KEEPER_ADDRESS")
    if cfg.unlocked_rpc_url and not cfg.private_key:
        if not cfg.keeper_address:
            raise ConfigError("KEEPER_ADDRESS is required when using UNLOCKED_RPC_URL")
    if cfg.unlocked_rpc_url and cfg.private_key:
        logger.warning("⚠️ Both KEEPER_PRIVATE_KEY and UNLOCKED_RPC_URL set; using the local private key.")
