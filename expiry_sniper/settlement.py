"""
Settlement Engine - forces oracle resolution and redeems positions.

State per question id:

    UNEXPIRED -> EXPIRED_UNRESOLVED -> RESOLVED_UNREDEEMED -> SETTLED

Each tick re-reads the oracle deadline and the CTF payout state, so the chain
is the source of truth for "already done". Locally the engine only remembers
outstanding transaction hashes (at most one resolve and one redeem per
question id) and which questions reached SETTLED. A later buy on a SETTLED
question reopens it for another redeem.

Resolution is a public race: a reverted resolve means someone else got there
first and the engine moves straight on to redemption.
"""
import logging
import time
from typing import Callable, Iterable, Optional

from .chain import ChainClient
from .config import BINARY_INDEX_SETS, SniperConfig
from .errors import SettlementError
from .journal import EventJournal, NullJournal
from .models import (
    Market,
    MarketStatus,
    RevertKind,
    SettlementRecord,
    SettlementState,
    TxOutcome,
    TxStatus,
)

log = logging.getLogger(__name__)


class SettlementEngine:

    def __init__(
        self,
        config: SniperConfig,
        chain: ChainClient,
        journal: Optional[EventJournal] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.chain = chain
        self.journal = journal or NullJournal()
        self.clock = clock
        self.sleep = sleep
        self.records: dict[str, SettlementRecord] = {}

    # ─── Bookkeeping ──────────────────────────────────────────────────────────

    def record_for(self, market: Market) -> SettlementRecord:
        record = self.records.get(market.question_id)
        if record is None:
            record = SettlementRecord(
                question_id=market.question_id,
                condition_id=market.condition_id,
                slug=market.slug,
            )
            self.records[market.question_id] = record
        record.last_seen = self.clock()
        return record

    def state_of(self, question_id: str) -> Optional[SettlementState]:
        record = self.records.get(question_id)
        return record.state if record else None

    def reopen(self, question_id: str) -> bool:
        """Send a SETTLED question back to redemption after new tokens were bought."""
        if self.state_of(question_id) is not SettlementState.SETTLED:
            return False
        record = self.records[question_id]
        log.info(f"New position in {record.slug}, redeeming again")
        record.state = SettlementState.RESOLVED_UNREDEEMED
        return True

    def orphans(self, active_ids: Iterable[str]) -> list[SettlementRecord]:
        """Records whose market left the registry but still need settling.

        Settled records and records unseen for longer than the retention
        window are forgotten.
        """
        active = set(active_ids)
        now = self.clock()
        pending = []
        for question_id, record in list(self.records.items()):
            if question_id in active:
                continue
            if record.state is SettlementState.SETTLED:
                del self.records[question_id]
                continue
            if now - record.last_seen > self.config.settlement_retention_s:
                if record.outstanding:
                    log.warning(
                        f"Giving up on {record.slug}: tx still unconfirmed "
                        f"(resolve={record.resolve_tx} redeem={record.redeem_tx})"
                    )
                else:
                    log.info(f"Forgetting {record.slug} in state {record.state.value}")
                del self.records[question_id]
                continue
            pending.append(record)
        return pending

    # ─── Oracle status ────────────────────────────────────────────────────────

    def check_market_status(self, question_id: str, condition_id: str) -> MarketStatus:
        """Deadline from the oracle request (timestamp + liveness) and CTF resolution."""
        request_ts, liveness, _ = self.chain.get_request(question_id)
        expiration = request_ts + liveness
        # No request yet means there is nothing to finalize
        is_expired = request_ts > 0 and int(self.clock()) > expiration
        is_resolved = self.chain.is_condition_resolved(condition_id)
        return MarketStatus(expiration_timestamp=expiration, is_expired=is_expired, is_resolved=is_resolved)

    # ─── Transactions ─────────────────────────────────────────────────────────

    def resolve_market(self, record: SettlementRecord) -> TxOutcome:
        """Force-resolve through the CTF adapter and wait for the receipt."""
        if record.resolve_tx is not None:
            log.warning(f"Resolve already outstanding for {record.slug}: {record.resolve_tx}")
            return TxOutcome(status=TxStatus.PENDING, tx_hash=record.resolve_tx)

        if self.config.dry_run:
            log.info(f"[DRY-RUN] Would resolve {record.slug} ({record.question_id[:18]}...)")
            return TxOutcome(status=TxStatus.SUCCESS, tx_hash="DRY_RUN")

        log.info(f"Attempting to resolve market {record.slug}")
        record.resolve_attempts += 1
        outcome = self._submit_and_wait(record, "resolve", self.chain.send_resolve, record.question_id)
        self.journal.record("resolve_result", question_id=record.question_id, slug=record.slug, **outcome.to_dict())
        return outcome

    def redeem_positions(self, record: SettlementRecord) -> TxOutcome:
        """Redeem both binary outcome sets of the condition."""
        if record.redeem_tx is not None:
            log.warning(f"Redeem already outstanding for {record.slug}: {record.redeem_tx}")
            return TxOutcome(status=TxStatus.PENDING, tx_hash=record.redeem_tx)

        if self.config.dry_run:
            log.info(f"[DRY-RUN] Would redeem {record.slug} index_sets={list(BINARY_INDEX_SETS)}")
            return TxOutcome(status=TxStatus.SUCCESS, tx_hash="DRY_RUN")

        log.info(f"Attempting to redeem positions for {record.slug}")
        record.redeem_attempts += 1
        outcome = self._submit_and_wait(
            record, "redeem", self.chain.send_redeem, record.condition_id, BINARY_INDEX_SETS
        )
        self.journal.record("redeem_result", question_id=record.question_id, slug=record.slug, **outcome.to_dict())
        return outcome

    def _submit_and_wait(self, record: SettlementRecord, kind: str, send, *args) -> TxOutcome:
        attr = f"{kind}_tx"
        sent = send(*args)
        if sent.status is not TxStatus.PENDING:
            return sent

        setattr(record, attr, sent.tx_hash)
        log.info(f"{kind.capitalize()} tx submitted for {record.slug}: {sent.tx_hash} (gasPrice={sent.gas_price})")
        self.journal.record(
            f"{kind}_submitted",
            question_id=record.question_id,
            slug=record.slug,
            tx_hash=sent.tx_hash,
            gas_price=sent.gas_price,
        )

        outcome = self.chain.wait_for_receipt(sent.tx_hash, self.config.receipt_timeout_s)
        outcome.gas_price = sent.gas_price
        if outcome.done:
            setattr(record, attr, None)
        return outcome

    def _follow_up(self, record: SettlementRecord):
        """Poll receipts of transactions sent on earlier ticks."""
        if record.resolve_tx is not None:
            outcome = self.chain.poll_receipt(record.resolve_tx)
            if outcome.status is TxStatus.SUCCESS:
                log.info(f"Resolve confirmed for {record.slug} in block {outcome.block_number}")
                record.resolve_tx = None
                record.state = SettlementState.RESOLVED_UNREDEEMED
                self.sleep(self.config.resolve_grace_s)
            elif outcome.status in (TxStatus.MINED_FAILURE, TxStatus.DROPPED):
                log.warning(f"Resolve tx {record.resolve_tx} {outcome.status.value} for {record.slug}")
                record.resolve_tx = None

        if record.redeem_tx is not None:
            outcome = self.chain.poll_receipt(record.redeem_tx)
            if outcome.status is TxStatus.SUCCESS:
                log.info(f"Redeem confirmed for {record.slug} in block {outcome.block_number}")
                record.redeem_tx = None
                record.state = SettlementState.SETTLED
            elif outcome.status in (TxStatus.MINED_FAILURE, TxStatus.DROPPED):
                log.warning(f"Redeem tx {record.redeem_tx} {outcome.status.value} for {record.slug}")
                record.redeem_tx = None

    # ─── Per-tick processing ──────────────────────────────────────────────────

    def process_market(self, market: Market) -> SettlementState:
        return self.process_record(self.record_for(market))

    def process_record(self, record: SettlementRecord) -> SettlementState:
        """Advance one question as far as possible this tick.

        Raises SettlementError for failures that are neither a recognized
        revert nor a pending receipt.
        """
        if record.state is SettlementState.SETTLED:
            return record.state

        if record.outstanding:
            self._follow_up(record)
            if record.outstanding:
                log.debug(f"Awaiting receipt for {record.slug}")
                return record.state
            if record.state is SettlementState.SETTLED:
                return record.state

        try:
            status = self.check_market_status(record.question_id, record.condition_id)
        except Exception as e:
            raise SettlementError(record.question_id, f"status read failed: {e}") from e

        if not status.is_expired and not status.is_resolved:
            record.state = SettlementState.UNEXPIRED
            return record.state

        if not status.is_resolved:
            record.state = SettlementState.EXPIRED_UNRESOLVED
            if not self._resolve_step(record):
                return record.state
        else:
            record.state = SettlementState.RESOLVED_UNREDEEMED

        self._redeem_step(record)
        return record.state

    def _resolve_step(self, record: SettlementRecord) -> bool:
        """Returns True when redemption should be attempted in this pass."""
        outcome = self.resolve_market(record)

        if outcome.status is TxStatus.SUCCESS:
            log.info(f"Market resolved successfully: {record.slug} ({outcome.tx_hash})")
            record.state = SettlementState.RESOLVED_UNREDEEMED
            if not self.config.dry_run:
                self.sleep(self.config.resolve_grace_s)
            return True

        if outcome.revert is RevertKind.INSUFFICIENT_BALANCE:
            log.error(f"Cannot pay for resolve of {record.slug}: {outcome.error}")
            return False

        if outcome.status is TxStatus.REVERTED:
            log.info(f"Market already resolved, proceeding to redeem: {record.slug}")
            record.state = SettlementState.RESOLVED_UNREDEEMED
            return True

        if outcome.status is TxStatus.MINED_FAILURE:
            log.error(f"Market resolution transaction failed: {record.slug} ({outcome.tx_hash})")
            return True

        if outcome.status is TxStatus.PENDING:
            log.warning(f"Resolve for {record.slug} still pending, retrying next tick")
            return False

        raise SettlementError(record.question_id, f"resolve failed: {outcome.error}")

    def _redeem_step(self, record: SettlementRecord):
        outcome = self.redeem_positions(record)

        if outcome.status is TxStatus.SUCCESS:
            log.info(f"Positions redeemed successfully: {record.slug} ({outcome.tx_hash})")
            record.state = SettlementState.SETTLED
            return

        if outcome.revert is RevertKind.INSUFFICIENT_BALANCE:
            log.error(f"Cannot pay for redeem of {record.slug}: {outcome.error}")
            return

        if outcome.status is TxStatus.REVERTED:
            self._after_redeem_revert(record, outcome)
            return

        if outcome.status is TxStatus.MINED_FAILURE:
            log.error(f"Redemption transaction failed: {record.slug} ({outcome.tx_hash})")
            return

        if outcome.status is TxStatus.PENDING:
            log.warning(f"Redeem for {record.slug} still pending, retrying next tick")
            return

        raise SettlementError(record.question_id, f"redeem failed: {outcome.error}")

    def _after_redeem_revert(self, record: SettlementRecord, outcome: TxOutcome):
        """A reverted redeem on a resolved condition means nothing is left to redeem."""
        try:
            resolved = self.chain.is_condition_resolved(record.condition_id)
        except Exception as e:
            log.warning(f"Redemption failed for {record.slug}, resolution unknown: {e}")
            return

        if resolved:
            log.warning(f"Redemption failed, may already be redeemed: {record.slug}")
            record.state = SettlementState.SETTLED
        else:
            log.info(f"Redemption reverted, condition not resolved yet: {record.slug}")
            record.state = SettlementState.EXPIRED_UNRESOLVED
