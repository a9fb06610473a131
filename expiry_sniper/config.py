"""
Configuration for the Expiry Sniper - contracts, ABIs and env vars.
"""
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .errors import ConfigError
from .rpc import rpc_endpoints

load_dotenv()


# ─── Contracts (Polygon mainnet) ──────────────────────────────────────────────

UMA_ORACLE_ADDRESS = "0xee3af10ebb505d975377d620ccfc098e9168858a"
UMA_CTF_ADAPTER_ADDRESS = "0xd91E80cF2E7be2e162c6513ceD06f1dD0dA35296"
CTF_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
CHAIN_ID = 137

CLOB_BASE_URL = "https://clob.polymarket.com"
GAMMA_BASE_URL = "https://gamma-api.polymarket.com"

# Both singleton outcome sets of a binary condition (bit 0 = Yes, bit 1 = No)
BINARY_INDEX_SETS = (1, 2)


# ─── Minimal ABIs ─────────────────────────────────────────────────────────────

UMA_ORACLE_ABI = [
    {
        "type": "function",
        "name": "getRequest",
        "inputs": [{"name": "questionID", "type": "bytes32"}],
        "outputs": [
            {"name": "requestTimestamp", "type": "uint256"},
            {"name": "liveness", "type": "uint256"},
            {"name": "ancillaryData", "type": "bytes"},
        ],
        "stateMutability": "view",
    }
]

UMA_CTF_ADAPTER_ABI = [
    {
        "type": "function",
        "name": "resolve",
        "inputs": [{"name": "questionID", "type": "bytes32"}],
        "outputs": [],
        "stateMutability": "nonpayable",
    }
]

CTF_ABI = [
    {
        "type": "function",
        "name": "redeemPositions",
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "indexSets", "type": "uint256[]"},
        ],
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "payoutDenominator",
        "inputs": [{"name": "conditionId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "payoutNumerators",
        "inputs": [
            {"name": "conditionId", "type": "bytes32"},
            {"name": "index", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
]

WINNER_STRATEGIES = ("none", "payout", "book")


# ─── Env helpers ──────────────────────────────────────────────────────────────

def _env_str(name: str, default: str = ""):
    return field(default_factory=lambda: os.getenv(name, default).strip())


def _parse_env(name: str, default, cast):
    raw = os.getenv(name, str(default))
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError([f"{name} must be {cast.__name__}, got {raw!r}"])


def _env_float(name: str, default: float):
    return field(default_factory=lambda: _parse_env(name, default, float))


def _env_int(name: str, default: int):
    return field(default_factory=lambda: _parse_env(name, default, int))


def _env_bool(name: str, default: bool):
    return field(default_factory=lambda: os.getenv(name, str(default)).lower() in ("1", "true", "yes"))


# ─── Config dataclass ─────────────────────────────────────────────────────────

@dataclass
class SniperConfig:
    """Runtime configuration for discovery, execution and settlement."""

    # Chain
    rpc_url_wss: str = _env_str("RPC_URL_WSS")
    rpc_url_http: str = _env_str("RPC_URL_HTTP")
    rpc_urls: list = field(default_factory=list)
    chain_id: int = CHAIN_ID
    private_key: str = _env_str("PRIVATE_KEY")

    # Contracts
    oracle_address: str = UMA_ORACLE_ADDRESS
    adapter_address: str = UMA_CTF_ADAPTER_ADDRESS
    ctf_address: str = CTF_ADDRESS
    collateral_address: str = USDC_ADDRESS

    # Execution venue (CLOB L2 creds)
    api_key: str = _env_str("POLYMARKET_API_KEY")
    api_secret: str = _env_str("POLYMARKET_SECRET")
    api_passphrase: str = _env_str("POLYMARKET_PASSPHRASE")
    funder: str = _env_str("POLYMARKET_FUNDER")
    clob_base_url: str = _env_str("CLOB_BASE_URL", CLOB_BASE_URL)
    gamma_base_url: str = _env_str("GAMMA_BASE_URL", GAMMA_BASE_URL)

    # Gas / transactions
    gas_price_multiplier: float = _env_float("GAS_PRICE_MULTIPLIER", 1.1)
    gas_limit: int = _env_int("GAS_LIMIT", 300000)
    receipt_timeout_s: float = _env_float("RECEIPT_TIMEOUT_S", 120.0)
    resolve_grace_s: float = _env_float("RESOLVE_GRACE_S", 5.0)
    settlement_retention_s: float = _env_float("SETTLEMENT_RETENTION_S", 3600.0)

    # Trading
    target_price: float = _env_float("TARGET_PRICE", 0.99)
    order_size: float = _env_float("ORDER_SIZE_USD", 1.0)
    winner_strategy: str = _env_str("WINNER_STRATEGY", "none")
    book_skew_threshold: float = _env_float("BOOK_SKEW_THRESHOLD", 0.90)

    # Timing
    expiry_window_s: int = _env_int("EXPIRY_WINDOW_S", 15 * 60)
    discovery_interval_s: float = _env_float("DISCOVERY_INTERVAL_S", 60.0)
    discovery_page_size: int = _env_int("DISCOVERY_PAGE_SIZE", 500)
    discovery_max_pages: int = _env_int("DISCOVERY_MAX_PAGES", 20)
    tick_interval_s: float = _env_float("TICK_INTERVAL_S", 2.0)
    request_timeout: float = _env_float("REQUEST_TIMEOUT_S", 15.0)

    # Modes / output
    dry_run: bool = _env_bool("SNIPER_DRY_RUN", False)
    event_dir: str = _env_str("SNIPER_EVENT_DIR", "logs/sniper")
    log_level: str = _env_str("LOG_LEVEL", "INFO")

    def __post_init__(self):
        if not self.rpc_urls:
            self.rpc_urls = rpc_endpoints(self.rpc_url_http)
        if self.private_key and not self.private_key.startswith("0x") and len(self.private_key) == 64:
            self.private_key = "0x" + self.private_key
        self.winner_strategy = self.winner_strategy.lower()

    @property
    def has_api_creds(self) -> bool:
        return bool(self.api_key and self.api_secret and self.api_passphrase)

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors.

        Keys and the WebSocket endpoint are only required outside dry-run.
        """
        errors = []

        if self.private_key and len(self.private_key) != 66:
            errors.append("Invalid PRIVATE_KEY format")
        if not self.dry_run:
            if not self.rpc_url_wss:
                errors.append("RPC_URL_WSS not set")
            if not self.private_key:
                errors.append("PRIVATE_KEY not set")
            if not self.api_key:
                errors.append("POLYMARKET_API_KEY not set")
            if not self.api_secret:
                errors.append("POLYMARKET_SECRET not set")
            if not self.api_passphrase:
                errors.append("POLYMARKET_PASSPHRASE not set")

        if self.gas_price_multiplier < 1.0:
            errors.append(f"GAS_PRICE_MULTIPLIER {self.gas_price_multiplier} < 1.0")
        if not 0 < self.target_price <= 1:
            errors.append(f"TARGET_PRICE {self.target_price} outside (0, 1]")
        if self.order_size <= 0:
            errors.append("ORDER_SIZE_USD must be positive")
        if self.expiry_window_s <= 0:
            errors.append("EXPIRY_WINDOW_S must be positive")
        if self.discovery_interval_s <= 0 or self.tick_interval_s <= 0:
            errors.append("DISCOVERY_INTERVAL_S and TICK_INTERVAL_S must be positive")
        if self.winner_strategy not in WINNER_STRATEGIES:
            errors.append(f"WINNER_STRATEGY must be one of {', '.join(WINNER_STRATEGIES)}")

        return errors

    def require_valid(self):
        """Raise ConfigError when validate() reports anything."""
        errors = self.validate()
        if errors:
            raise ConfigError(errors)

    def __str__(self):
        mode = "DRY_RUN" if self.dry_run else "LIVE"
        return (
            f"SniperConfig(mode={mode}, target={self.target_price:.2f}, "
            f"size=${self.order_size:.2f}, gas_x={self.gas_price_multiplier:.2f}, "
            f"window={self.expiry_window_s}s, winner={self.winner_strategy})"
        )
