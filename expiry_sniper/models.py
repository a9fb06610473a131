"""
Data models for the expiry sniper.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional


class Outcome(Enum):
    YES = "Yes"
    NO = "No"

    @classmethod
    def parse(cls, label: str) -> Optional["Outcome"]:
        """Map a feed outcome label ("Yes", "no", ...) to an Outcome."""
        normalized = (label or "").strip().lower()
        for outcome in cls:
            if outcome.value.lower() == normalized:
                return outcome
        return None


class Winner(Enum):
    YES = "Yes"
    NO = "No"
    UNKNOWN = "Unknown"

    @property
    def outcome(self) -> Optional[Outcome]:
        if self is Winner.UNKNOWN:
            return None
        return Outcome(self.value)


@dataclass(frozen=True)
class OutcomeToken:
    outcome: Outcome
    token_id: str
    winner: bool = False


@dataclass(frozen=True)
class Market:
    """A market near (or past) its oracle resolution deadline."""

    question_id: str
    condition_id: str
    slug: str
    expiration_timestamp: int
    tokens: tuple[OutcomeToken, ...] = ()
    market_id: str = ""

    def token_for(self, outcome: Outcome) -> Optional[OutcomeToken]:
        for token in self.tokens:
            if token.outcome is outcome:
                return token
        return None

    def is_expiring(self, now: float, window_s: float) -> bool:
        """True when the deadline is in the future and at most window_s away."""
        return now < self.expiration_timestamp <= now + window_s


@dataclass
class BookTop:
    """Best levels of one token's order book."""

    best_ask: float
    best_bid: float = 0.0
    ask_size: float = 0.0
    bid_size: float = 0.0


@dataclass
class OrderResult:
    success: bool
    order_id: str = ""
    error: str = ""
    insufficient_balance: bool = False
    dry_run: bool = False


class TxStatus(Enum):
    SUCCESS = "success"
    REVERTED = "reverted"            # preflight or send reverted
    MINED_FAILURE = "mined_failure"  # included with status 0
    PENDING = "pending"              # sent, receipt not observed yet
    DROPPED = "dropped"              # unknown to the node: never mined
    UNCLASSIFIED = "unclassified"


class RevertKind(Enum):
    ALREADY_RESOLVED = "already_resolved"
    ALREADY_REDEEMED = "already_redeemed"
    INSUFFICIENT_BALANCE = "insufficient_balance"


@dataclass
class TxOutcome:
    """Result of submitting (and possibly confirming) one transaction."""

    status: TxStatus
    tx_hash: str = ""
    revert: Optional[RevertKind] = None
    error: str = ""
    gas_price: int = 0
    block_number: Optional[int] = None

    @property
    def done(self) -> bool:
        return self.status is not TxStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "revert": self.revert.value if self.revert else None,
            "error": self.error[:200],
            "gas_price": self.gas_price,
            "block_number": self.block_number,
        }


class SettlementState(Enum):
    UNEXPIRED = "unexpired"
    EXPIRED_UNRESOLVED = "expired_unresolved"
    RESOLVED_UNREDEEMED = "resolved_unredeemed"
    SETTLED = "settled"


@dataclass
class MarketStatus:
    expiration_timestamp: int
    is_expired: bool
    is_resolved: bool = False


@dataclass
class SettlementRecord:
    """Per-question settlement bookkeeping owned by the settlement engine."""

    question_id: str
    condition_id: str
    slug: str = ""
    state: SettlementState = SettlementState.UNEXPIRED
    resolve_tx: Optional[str] = None
    redeem_tx: Optional[str] = None
    resolve_attempts: int = 0
    redeem_attempts: int = 0
    last_seen: float = 0.0

    @property
    def outstanding(self) -> bool:
        return self.resolve_tx is not None or self.redeem_tx is not None


@dataclass
class TickReport:
    block_number: Optional[int] = None
    markets: int = 0
    orders: int = 0
    errors: int = 0
    states: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)
