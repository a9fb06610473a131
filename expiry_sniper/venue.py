"""
CLOB venue - order book reads and fill-or-kill buys via py-clob-client.
"""
import logging
from typing import Optional

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds, MarketOrderArgs, OrderType
from py_clob_client.order_builder.constants import BUY

from .config import SniperConfig
from .models import BookTop, OrderResult

log = logging.getLogger(__name__)

INSUFFICIENT_BALANCE_MARKERS = ("insufficient", "balance")


def is_insufficient_balance(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in INSUFFICIENT_BALANCE_MARKERS)


def _level(entry) -> tuple[float, float]:
    """(price, size) from an OrderSummary object or a raw dict level."""
    if isinstance(entry, dict):
        return float(entry["price"]), float(entry.get("size") or 0)
    return float(entry.price), float(entry.size or 0)


def book_top(book) -> Optional[BookTop]:
    """Best ask (lowest) and best bid (highest) of an order book, None without asks."""
    if book is None:
        return None
    asks = getattr(book, "asks", None) if not isinstance(book, dict) else book.get("asks")
    bids = getattr(book, "bids", None) if not isinstance(book, dict) else book.get("bids")
    if not asks:
        return None

    ask_price, ask_size = min((_level(a) for a in asks), key=lambda lvl: lvl[0])
    bid_price, bid_size = 0.0, 0.0
    if bids:
        bid_price, bid_size = max((_level(b) for b in bids), key=lambda lvl: lvl[0])
    return BookTop(best_ask=ask_price, best_bid=bid_price, ask_size=ask_size, bid_size=bid_size)


class ClobVenue:
    """Thin wrapper over ClobClient with error classification."""

    def __init__(self, config: SniperConfig, client: Optional[ClobClient] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> ClobClient:
        if self._client is None:
            self._client = ClobClient(
                self.config.clob_base_url,
                key=self.config.private_key,
                chain_id=self.config.chain_id,
                funder=self.config.funder or None,
            )
            if self.config.has_api_creds:
                self._client.set_api_creds(ApiCreds(
                    api_key=self.config.api_key,
                    api_secret=self.config.api_secret,
                    api_passphrase=self.config.api_passphrase,
                ))
                log.info("CLOB client initialized")
            else:
                # Book reads are public; orders need L2 creds
                log.info("CLOB client initialized without API creds (read-only)")
        return self._client

    def get_book_top(self, token_id: str) -> Optional[BookTop]:
        """Best bid/ask for a token. Any failure is reported as no data."""
        try:
            return book_top(self.client.get_order_book(token_id))
        except Exception as e:
            log.warning(f"Error fetching order book for {token_id[:16]}...: {e}")
            return None

    def buy_fok(self, token_id: str, price: float, amount: float) -> OrderResult:
        """Fill-or-kill BUY of ``amount`` USD at limit ``price``."""
        try:
            order_args = MarketOrderArgs(
                token_id=token_id,
                amount=amount,
                side=BUY,
                price=price,
                order_type=OrderType.FOK,
            )
            signed_order = self.client.create_market_order(order_args)
            resp = self.client.post_order(signed_order, OrderType.FOK)
        except Exception as e:
            message = str(e)
            return OrderResult(
                success=False,
                error=message,
                insufficient_balance=is_insufficient_balance(message),
            )

        if resp and resp.get("success"):
            return OrderResult(success=True, order_id=resp.get("orderID", ""))

        message = str((resp or {}).get("errorMsg") or resp)
        return OrderResult(
            success=False,
            error=message,
            insufficient_balance=is_insufficient_balance(message),
        )
