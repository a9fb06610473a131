"""
Market Registry - the live set of markets near their resolution deadline.

Written by the discovery feed (one full replacement per refresh) and read by
the pipeline tick. The set is copy-on-write: replace_all builds a new tuple and
swaps it under a lock, so a snapshot is always a complete point-in-time view.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .models import Market

log = logging.getLogger(__name__)


@dataclass
class RegistryDiff:
    added: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)


class MarketRegistry:
    """Insertion-ordered, question_id-keyed set of live markets."""

    def __init__(self):
        self._lock = threading.Lock()
        self._markets: tuple[Market, ...] = ()
        self._index: dict[str, Market] = {}

    def replace_all(self, markets: Iterable[Market]) -> RegistryDiff:
        """Atomically swap the entire live set.

        A repeated question_id keeps the position of its first occurrence and
        the value of its last.
        """
        index: dict[str, Market] = {}
        for market in markets:
            index[market.question_id] = market
        ordered = tuple(index.values())

        with self._lock:
            previous = self._index
            self._markets = ordered
            self._index = index

        return RegistryDiff(
            added=[qid for qid in index if qid not in previous],
            dropped=[qid for qid in previous if qid not in index],
        )

    def snapshot(self) -> tuple[Market, ...]:
        with self._lock:
            return self._markets

    def get(self, question_id: str) -> Optional[Market]:
        with self._lock:
            return self._index.get(question_id)

    def question_ids(self) -> set[str]:
        with self._lock:
            return set(self._index)

    def __len__(self) -> int:
        return len(self.snapshot())

    def __contains__(self, question_id: str) -> bool:
        return self.get(question_id) is not None
