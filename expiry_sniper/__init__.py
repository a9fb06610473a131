# Expiry Sniper
# Buys winning outcomes of markets near their oracle deadline, then forces
# resolution and redeems the positions on Polygon.

from expiry_sniper.config import SniperConfig
from expiry_sniper.models import Market, OutcomeToken, SettlementState, TxOutcome, TxStatus
from expiry_sniper.registry import MarketRegistry
from expiry_sniper.discovery import GammaDiscovery
from expiry_sniper.chain import ChainClient
from expiry_sniper.execution import ExecutionEngine
from expiry_sniper.settlement import SettlementEngine
from expiry_sniper.pipeline import Pipeline

__all__ = [
    "SniperConfig",
    "Market",
    "OutcomeToken",
    "SettlementState",
    "TxOutcome",
    "TxStatus",
    "MarketRegistry",
    "GammaDiscovery",
    "ChainClient",
    "ExecutionEngine",
    "SettlementEngine",
    "Pipeline",
]
