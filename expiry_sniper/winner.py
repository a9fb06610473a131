"""
Winner determination strategies.

The execution engine only buys when a strategy names the winning outcome.
Every strategy answers Yes, No or Unknown; Unknown means "do not trade".
"""
import logging
from typing import Optional, Protocol

from .models import Market, Outcome, Winner

log = logging.getLogger(__name__)


class WinnerStrategy(Protocol):
    name: str

    def determine(self, market: Market) -> Winner:
        ...


class NoWinner:
    """Never commits to an outcome, so no buy is ever placed."""

    name = "none"

    def determine(self, market: Market) -> Winner:
        return Winner.UNKNOWN


class PayoutWinner:
    """Reads the reported payout vector from the ConditionalTokens contract.

    Outcome index 0 is Yes and index 1 is No. Until the oracle reports, the
    numerators are all zero and the winner is Unknown.
    """

    name = "payout"

    def __init__(self, chain):
        self.chain = chain

    def determine(self, market: Market) -> Winner:
        yes, no = self.chain.payout_numerators(market.condition_id, 2)
        if yes > 0 and no == 0:
            return Winner.YES
        if no > 0 and yes == 0:
            return Winner.NO
        return Winner.UNKNOWN


class BookSkewWinner:
    """Infers a winner from a sharply one-sided book.

    Yes wins when its best bid is at least ``threshold`` and No is offered at
    no more than ``1 - threshold`` (or not offered at all); symmetric for No.
    """

    name = "book"

    def __init__(self, venue, threshold: float = 0.90):
        self.venue = venue
        self.threshold = threshold

    def _skewed_towards(self, market: Market, winner: Outcome, loser: Outcome) -> bool:
        win_token = market.token_for(winner)
        lose_token = market.token_for(loser)
        if win_token is None or lose_token is None:
            return False
        win_top = self.venue.get_book_top(win_token.token_id)
        if win_top is None or win_top.best_bid < self.threshold:
            return False
        lose_top = self.venue.get_book_top(lose_token.token_id)
        return lose_top is None or lose_top.best_ask <= 1 - self.threshold

    def determine(self, market: Market) -> Winner:
        if self._skewed_towards(market, Outcome.YES, Outcome.NO):
            return Winner.YES
        if self._skewed_towards(market, Outcome.NO, Outcome.YES):
            return Winner.NO
        return Winner.UNKNOWN


def build_winner_strategy(config, chain=None, venue=None) -> WinnerStrategy:
    """Strategy selected by config.winner_strategy."""
    name = config.winner_strategy
    strategy: Optional[WinnerStrategy] = None
    if name == "payout":
        strategy = PayoutWinner(chain)
    elif name == "book":
        strategy = BookSkewWinner(venue, config.book_skew_threshold)
    elif name == "none":
        strategy = NoWinner()
    if strategy is None:
        raise ValueError(f"Unknown winner strategy: {name}")
    log.info(f"Winner strategy: {strategy.name}")
    return strategy
