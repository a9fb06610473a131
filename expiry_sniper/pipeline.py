"""
Pipeline - the three-stage runtime.

- Discovery task: refreshes the registry every discovery_interval_s
- Clock task: waits for a new block head (or tick_interval_s without one)
- Tick: over a registry snapshot, runs execution then settlement per market

Ticks run in a worker thread because web3 and py-clob-client are blocking.
The clock awaits each tick before taking the next head, and the head stream
keeps only the newest block, so ticks never overlap and a slow tick skips
stale heads instead of queueing them.
"""
import asyncio
import logging
import threading
import time
from typing import Optional

import aiohttp

from .config import SniperConfig
from .discovery import GammaDiscovery
from .errors import SettlementError
from .execution import ExecutionEngine
from .heads import HeadStream
from .journal import EventJournal, NullJournal
from .models import TickReport
from .registry import MarketRegistry
from .settlement import SettlementEngine

log = logging.getLogger(__name__)


class Pipeline:

    def __init__(
        self,
        config: SniperConfig,
        registry: MarketRegistry,
        discovery: GammaDiscovery,
        execution: ExecutionEngine,
        settlement: SettlementEngine,
        heads: Optional[HeadStream] = None,
        journal: Optional[EventJournal] = None,
    ):
        self.config = config
        self.registry = registry
        self.discovery = discovery
        self.execution = execution
        self.settlement = settlement
        self.heads = heads
        self.journal = journal or NullJournal()
        self.ticks = 0
        self.skipped_ticks = 0
        self._tick_lock = threading.Lock()

    # ─── Tick ─────────────────────────────────────────────────────────────────

    def run_tick(self, block_number: Optional[int] = None) -> Optional[TickReport]:
        """One pass over the registry. Returns None if a tick is already running."""
        if not self._tick_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            log.debug(f"Tick for block {block_number} skipped, previous tick still running")
            return None
        try:
            return self._tick(block_number)
        finally:
            self._tick_lock.release()

    def _tick(self, block_number: Optional[int]) -> TickReport:
        started = time.time()
        markets = self.registry.snapshot()
        report = TickReport(block_number=block_number, markets=len(markets))

        for market in markets:
            try:
                result = self.execution.process_market(market)
                if result is not None and result.success:
                    report.orders += 1
                    self.settlement.reopen(market.question_id)
            except Exception as e:
                self._market_error(report, "execution", market.question_id, market.slug, e)

            try:
                state = self.settlement.process_market(market)
                report.states[market.question_id] = state.value
            except Exception as e:
                self._market_error(report, "settlement", market.question_id, market.slug, e)

        active_ids = {m.question_id for m in markets}
        for record in self.settlement.orphans(active_ids):
            try:
                state = self.settlement.process_record(record)
                report.states[record.question_id] = state.value
            except Exception as e:
                self._market_error(report, "settlement", record.question_id, record.slug, e)

        self.ticks += 1
        elapsed = time.time() - started
        if report.orders or report.errors:
            log.info(
                f"Tick block={block_number} markets={report.markets} "
                f"orders={report.orders} errors={report.errors} ({elapsed:.2f}s)"
            )
            self.journal.record("tick", elapsed=round(elapsed, 3), **report.to_dict())
        else:
            log.debug(f"Tick block={block_number} markets={report.markets} ({elapsed:.2f}s)")
        return report

    def _market_error(self, report: TickReport, stage: str, question_id: str, slug: str, error: Exception):
        report.errors += 1
        if isinstance(error, SettlementError):
            log.error(f"Settlement failed for {slug}: {error}")
        else:
            log.exception(f"Unexpected {stage} error for {slug}: {error}")
        self.journal.record("market_error", stage=stage, question_id=question_id, slug=slug, error=str(error))

    # ─── Runtime ──────────────────────────────────────────────────────────────

    async def run_once(self) -> Optional[TickReport]:
        """Single discovery refresh followed by a single tick."""
        await self.discovery.refresh()
        return await asyncio.to_thread(self.run_tick, None)

    async def _clock_loop(self, stop_event: asyncio.Event):
        interval = self.config.tick_interval_s
        while not stop_event.is_set():
            block_number = None
            if self.heads is not None:
                block_number = await self.heads.next_head(timeout=interval)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
            if stop_event.is_set():
                break
            await asyncio.to_thread(self.run_tick, block_number)

    async def run(self, stop_event: asyncio.Event):
        """Run discovery, the head stream and the clock until stop_event is set."""
        self.execution.start()
        log.info(
            f"Pipeline started ({len(self.registry)} markets, "
            f"heads={'ws' if self.heads else 'timer'}, fallback {self.config.tick_interval_s:.1f}s)"
        )

        async with aiohttp.ClientSession() as session:
            tasks = [
                asyncio.create_task(self.discovery.run(stop_event), name="discovery"),
                asyncio.create_task(self._clock_loop(stop_event), name="clock"),
            ]
            heads_task = None
            if self.heads is not None:
                heads_task = asyncio.create_task(self.heads.start(session), name="heads")

            stopper = asyncio.create_task(stop_event.wait())
            try:
                # A crashed stage stops the whole pipeline
                await asyncio.wait([stopper, *tasks], return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop_event.set()
                stopper.cancel()
                self.execution.stop()
                self.discovery.stop()
                if self.heads is not None:
                    await self.heads.stop()
                if heads_task is not None:
                    heads_task.cancel()
                results = await asyncio.gather(*tasks, return_exceptions=True)
                if heads_task is not None:
                    await asyncio.gather(heads_task, return_exceptions=True)
                for task, result in zip(tasks, results):
                    if isinstance(result, Exception):
                        log.error(f"Task {task.get_name()} failed: {result}")

        log.info(f"Pipeline stopped after {self.ticks} ticks ({self.skipped_ticks} skipped)")
