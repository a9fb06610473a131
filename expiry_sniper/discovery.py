"""
Discovery Feed - finds active markets whose oracle deadline is close.

Flow:
1. Fetch every active market from the Gamma API (paginated)
2. Parse identity, expiry and the Yes/No outcome tokens of each record
3. Keep only markets expiring within the configured window
4. Replace the registry contents with the result
"""
import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Iterable, Optional

import httpx

from .config import SniperConfig
from .errors import DiscoveryError
from .journal import EventJournal, NullJournal
from .models import Market, Outcome, OutcomeToken
from .registry import MarketRegistry, RegistryDiff

log = logging.getLogger(__name__)

QUESTION_ID_KEYS = ("question_id", "questionID", "questionId")
CONDITION_ID_KEYS = ("condition_id", "conditionID", "conditionId")
EXPIRY_KEYS = ("uma_end_date", "umaEndDate", "expiration", "expirationTimestamp", "endDate")


def _first(record: dict, keys: Iterable[str]):
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_timestamp(value) -> Optional[int]:
    """Unix seconds from an ISO-8601 string or an epoch number (s or ms)."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        ts = float(value)
        if ts > 1e12:
            ts /= 1000.0
        return int(ts)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _json_list(value) -> list:
    """Gamma returns some list fields as JSON-encoded strings."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    return value if isinstance(value, list) else []


def parse_tokens(record: dict) -> tuple[OutcomeToken, ...]:
    """Extract the outcome tokens from either ``tokens`` or ``outcomes`` + ``clobTokenIds``."""
    tokens = []
    if record.get("tokens"):
        for raw in record["tokens"]:
            outcome = Outcome.parse(raw.get("outcome", ""))
            token_id = raw.get("token_id") or raw.get("tokenID") or raw.get("tokenId")
            if outcome and token_id:
                tokens.append(OutcomeToken(outcome=outcome, token_id=str(token_id)))
    else:
        outcomes = _json_list(record.get("outcomes"))
        token_ids = _json_list(record.get("clobTokenIds"))
        for label, token_id in zip(outcomes, token_ids):
            outcome = Outcome.parse(label)
            if outcome and token_id:
                tokens.append(OutcomeToken(outcome=outcome, token_id=str(token_id)))
    return tuple(tokens)


def parse_market(record: dict) -> Optional[Market]:
    """Build a Market from one Gamma record, or None when it is unusable."""
    market_id = str(record.get("id") or record.get("slug") or "?")
    question_id = _first(record, QUESTION_ID_KEYS)
    condition_id = _first(record, CONDITION_ID_KEYS)
    slug = record.get("slug")

    if not question_id or not condition_id or not slug:
        log.debug(f"Skipping market {market_id}: missing identity fields")
        return None

    expiration = parse_timestamp(_first(record, EXPIRY_KEYS))
    if not expiration:
        log.debug(f"Skipping market {market_id}: missing expiration")
        return None

    tokens = parse_tokens(record)
    outcomes = sorted(t.outcome.value for t in tokens)
    if outcomes != [Outcome.NO.value, Outcome.YES.value]:
        log.debug(f"Skipping market {market_id}: not a Yes/No market ({outcomes})")
        return None

    return Market(
        question_id=question_id,
        condition_id=condition_id,
        slug=slug,
        expiration_timestamp=expiration,
        tokens=tuple(sorted(tokens, key=lambda t: t.outcome is not Outcome.YES)),
        market_id=market_id,
    )


def filter_expiring(markets: Iterable[Market], now: float, window_s: float) -> list[Market]:
    """Markets whose deadline falls in (now, now + window_s]."""
    expiring = []
    for market in markets:
        if market.is_expiring(now, window_s):
            log.debug(
                f"Expiring market {market.slug}: "
                f"{market.expiration_timestamp - int(now)}s to deadline"
            )
            expiring.append(market)
    return expiring


class GammaDiscovery:
    """Polls the Gamma market catalog and keeps the registry current."""

    def __init__(
        self,
        config: SniperConfig,
        registry: MarketRegistry,
        client: Optional[httpx.AsyncClient] = None,
        journal: Optional[EventJournal] = None,
    ):
        self.config = config
        self.registry = registry
        self.client = client or httpx.AsyncClient(timeout=config.request_timeout)
        self.journal = journal or NullJournal()
        self.running = False

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def fetch_markets(self) -> list[dict]:
        """Fetch all active market records. Raises DiscoveryError on failure."""
        url = f"{self.config.gamma_base_url.rstrip('/')}/markets"
        limit = self.config.discovery_page_size
        records: list[dict] = []

        for page in range(self.config.discovery_max_pages):
            params = {"active": "true", "closed": "false", "limit": limit, "offset": page * limit}
            try:
                resp = await self.client.get(url, params=params)
                resp.raise_for_status()
                batch = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                raise DiscoveryError(f"Gamma fetch failed: {e}") from e

            if not isinstance(batch, list):
                raise DiscoveryError(f"Unexpected Gamma payload: {type(batch).__name__}")

            records.extend(batch)
            if len(batch) < limit:
                break
        else:
            log.warning(f"Stopped after {self.config.discovery_max_pages} pages ({len(records)} markets)")

        return records

    def _parse_all(self, records: list) -> list[Market]:
        markets = []
        for record in records:
            try:
                market = parse_market(record)
            except (AttributeError, TypeError, ValueError) as e:
                log.warning(f"Error parsing market record: {e}")
                continue
            if market is not None:
                markets.append(market)
        return markets

    async def refresh(self, now: Optional[float] = None) -> Optional[RegistryDiff]:
        """One discovery pass. Leaves the registry untouched when the fetch fails."""
        try:
            records = await self.fetch_markets()
        except DiscoveryError as e:
            log.error(f"Error updating target markets: {e}")
            return None

        now = time.time() if now is None else now
        markets = self._parse_all(records)
        expiring = filter_expiring(markets, now, self.config.expiry_window_s)
        previous = {m.question_id: m for m in self.registry.snapshot()}
        diff = self.registry.replace_all(expiring)
        current = {m.question_id: m for m in expiring}

        for qid in diff.added:
            market = current[qid]
            log.info(
                f"New target market: {market.slug} "
                f"(expires in {market.expiration_timestamp - int(now)}s)"
            )
            self.journal.record(
                "market_added",
                question_id=qid,
                slug=market.slug,
                expiration=market.expiration_timestamp,
            )
        for qid in diff.dropped:
            slug = previous[qid].slug
            log.info(f"Market left expiration window: {slug}")
            self.journal.record("market_dropped", question_id=qid, slug=slug)

        log.info(
            f"Target markets updated: {len(self.registry)} expiring "
            f"of {len(markets)} parsed / {len(records)} fetched"
        )
        return diff

    async def run(self, stop_event: asyncio.Event):
        """Refresh every discovery_interval_s until stop_event is set."""
        self.running = True
        log.info(f"Discovery polling every {self.config.discovery_interval_s:.0f}s")
        while self.running and not stop_event.is_set():
            await self.refresh()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.discovery_interval_s)
            except asyncio.TimeoutError:
                pass
        log.info("Discovery polling stopped")

    def stop(self):
        self.running = False
