"""
Execution Engine - buys the winning outcome before the book reprices.

Per tick and per market:
1. Ask the winner strategy which outcome wins (Unknown -> skip)
2. Read the winning token's best ask (no book -> skip)
3. If best ask < target price, send one fill-or-kill BUY at that ask

Nothing is remembered between ticks except the global halt flag, which is set
once the venue reports insufficient balance.
"""
import logging
import time
from typing import Optional

from .config import SniperConfig
from .journal import EventJournal, NullJournal
from .models import Market, OrderResult, Winner
from .venue import ClobVenue
from .winner import WinnerStrategy

log = logging.getLogger(__name__)


class ExecutionEngine:

    def __init__(
        self,
        config: SniperConfig,
        venue: ClobVenue,
        winner: WinnerStrategy,
        journal: Optional[EventJournal] = None,
    ):
        self.config = config
        self.venue = venue
        self.winner = winner
        self.journal = journal or NullJournal()
        self.running = False
        self.halted = False

    def start(self):
        self.running = True
        log.info(
            f"Execution started (target < {self.config.target_price:.3f}, "
            f"size ${self.config.order_size:.2f})"
        )

    def stop(self):
        self.running = False
        log.info("Execution stopped")

    def _determine_winner(self, market: Market) -> Winner:
        try:
            return self.winner.determine(market)
        except Exception as e:
            log.warning(f"Winner check failed for {market.slug}: {e}")
            return Winner.UNKNOWN

    def process_market(self, market: Market) -> Optional[OrderResult]:
        """Evaluate one market; returns the order result when a buy was attempted."""
        if not self.running or self.halted:
            return None

        winner = self._determine_winner(market)
        if winner is Winner.UNKNOWN:
            log.debug(f"Could not determine winner for {market.slug}, skipping")
            return None

        token = market.token_for(winner.outcome)
        if token is None:
            log.warning(f"Winning token not found: {market.slug} ({winner.value})")
            return None

        top = self.venue.get_book_top(token.token_id)
        if top is None:
            log.debug(f"No order book data for {market.slug} {winner.value}")
            return None

        if top.best_ask >= self.config.target_price:
            log.debug(
                f"Price not favorable: {market.slug} {winner.value} "
                f"ask={top.best_ask:.3f} target={self.config.target_price:.3f}"
            )
            return None

        log.info(
            f"Trigger: {market.slug} {winner.value} ask={top.best_ask:.3f} "
            f"< {self.config.target_price:.3f}, buying ${self.config.order_size:.2f} FOK"
        )
        return self._buy(market, token.token_id, top.best_ask)

    def _buy(self, market: Market, token_id: str, price: float) -> OrderResult:
        size = self.config.order_size

        if self.config.dry_run:
            log.info(f"[DRY-RUN] Would BUY {token_id[:16]}... ${size:.2f} @ {price:.3f} FOK")
            return OrderResult(success=True, order_id=f"dry_run_{int(time.time() * 1000)}", dry_run=True)

        result = self.venue.buy_fok(token_id, price, size)

        if result.success:
            log.info(f"Buy order placed: {market.slug} order_id={result.order_id}")
            self.journal.record(
                "order_submitted",
                question_id=market.question_id,
                slug=market.slug,
                token_id=token_id,
                price=price,
                size=size,
                order_id=result.order_id,
            )
        elif result.insufficient_balance:
            log.warning(f"Insufficient balance, stopping buys: {result.error}")
            self.halted = True
            self.journal.record("buys_halted", question_id=market.question_id, error=result.error)
        else:
            log.error(f"Error placing buy order for {market.slug}: {result.error}")
            self.journal.record(
                "order_failed",
                question_id=market.question_id,
                slug=market.slug,
                token_id=token_id,
                error=result.error,
            )
        return result
