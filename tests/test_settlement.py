"""
Tests for the settlement engine.

Drives the resolve/redeem state machine against a scripted fake chain.
"""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from expiry_sniper.errors import SettlementError
from expiry_sniper.models import RevertKind, SettlementState, TxOutcome, TxStatus
from expiry_sniper.settlement import SettlementEngine

from fakes import NOW, FakeChain, make_config, make_market


def _engine(chain, **overrides):
    sleeps = []
    engine = SettlementEngine(
        make_config(**overrides),
        chain,
        clock=lambda: NOW,
        sleep=sleeps.append,
    )
    return engine, sleeps


def _expired(chain, market):
    chain.requests[market.question_id] = (NOW - 7200, 3600)


def test_not_expired_submits_nothing():
    """Before the oracle deadline no transaction is sent."""
    chain = FakeChain()
    market = make_market()
    chain.requests[market.question_id] = (NOW - 100, 3600)
    engine, _ = _engine(chain)

    state = engine.process_market(market)

    assert state is SettlementState.UNEXPIRED
    assert chain.sent("resolve") == []
    assert chain.sent("redeem") == []


def test_deadline_is_strict():
    """now == requestTimestamp + liveness is not yet expired."""
    chain = FakeChain()
    market = make_market()
    chain.requests[market.question_id] = (NOW - 3600, 3600)
    engine, _ = _engine(chain)

    status = engine.check_market_status(market.question_id, market.condition_id)

    assert status.expiration_timestamp == NOW
    assert status.is_expired is False


def test_no_oracle_request_is_not_expired():
    chain = FakeChain()
    market = make_market()
    engine, _ = _engine(chain)

    assert engine.process_market(market) is SettlementState.UNEXPIRED
    assert chain.sent("resolve") == []


def test_expired_market_resolves_then_redeems():
    """One resolve, a grace pause, then one redeem of both index sets."""
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    engine, sleeps = _engine(chain)

    state = engine.process_market(market)

    assert state is SettlementState.SETTLED
    assert chain.sent("resolve") == [("resolve", market.question_id)]
    assert chain.sent("redeem") == [("redeem", market.condition_id, (1, 2))]
    kinds = [c[0] for c in chain.calls if c[0] in ("resolve", "redeem")]
    assert kinds == ["resolve", "redeem"]
    assert sleeps == [5.0]
    print("[OK] resolve -> redeem -> settled")


def test_settled_market_is_never_touched_again():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    engine, _ = _engine(chain)

    engine.process_market(market)
    calls_before = len(chain.calls)
    assert engine.process_market(market) is SettlementState.SETTLED
    assert len(chain.calls) == calls_before


def test_resolve_revert_still_redeems():
    """Losing the resolve race is expected: redeem anyway."""
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.resolve_results = [
        TxOutcome(status=TxStatus.REVERTED, revert=RevertKind.ALREADY_RESOLVED, error="execution reverted")
    ]
    engine, sleeps = _engine(chain)

    state = engine.process_market(market)

    assert state is SettlementState.SETTLED
    assert len(chain.sent("redeem")) == 1
    assert sleeps == []


def test_resolve_mined_failure_still_attempts_redeem():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.receipts["0xresolve"] = TxOutcome(status=TxStatus.MINED_FAILURE, tx_hash="0xresolve")
    engine, _ = _engine(chain)

    engine.process_market(market)

    assert len(chain.sent("redeem")) == 1


def test_already_resolved_skips_resolve():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.resolved.add(market.condition_id)
    engine, _ = _engine(chain)

    state = engine.process_market(market)

    assert state is SettlementState.SETTLED
    assert chain.sent("resolve") == []
    assert len(chain.sent("redeem")) == 1


def test_redeem_revert_on_resolved_condition_settles():
    """A reverted redeem is absorbed, never raised."""
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.resolved.add(market.condition_id)
    chain.redeem_results = [
        TxOutcome(status=TxStatus.REVERTED, revert=RevertKind.ALREADY_REDEEMED, error="execution reverted")
    ]
    engine, _ = _engine(chain)

    state = engine.process_market(market)

    assert state is SettlementState.SETTLED


def test_redeem_revert_on_unresolved_condition_retries_later():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.resolve_results = [TxOutcome(status=TxStatus.REVERTED, error="execution reverted")]
    chain.redeem_results = [TxOutcome(status=TxStatus.REVERTED, error="execution reverted")]
    engine, _ = _engine(chain)

    state = engine.process_market(market)

    assert state is SettlementState.EXPIRED_UNRESOLVED
    # Next tick tries again from the resolve step
    engine.process_market(market)
    assert len(chain.sent("resolve")) == 2


def test_unclassified_resolve_error_raises():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.resolve_results = [TxOutcome(status=TxStatus.UNCLASSIFIED, error="connection reset")]
    engine, _ = _engine(chain)

    with pytest.raises(SettlementError):
        engine.process_market(market)
    assert chain.sent("redeem") == []


def test_unclassified_redeem_error_raises():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.redeem_results = [TxOutcome(status=TxStatus.UNCLASSIFIED, error="nonce too low")]
    engine, _ = _engine(chain)

    with pytest.raises(SettlementError):
        engine.process_market(market)


def test_status_read_failure_raises_settlement_error():
    chain = FakeChain()
    market = make_market()

    def boom(question_id):
        raise ConnectionError("rpc down")

    chain.get_request = boom
    engine, _ = _engine(chain)

    with pytest.raises(SettlementError):
        engine.process_market(market)


def test_pending_resolve_blocks_duplicate_submission():
    """While a resolve receipt is outstanding no second resolve is sent."""
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.receipts["0xresolve"] = TxOutcome(status=TxStatus.PENDING, tx_hash="0xresolve")
    engine, _ = _engine(chain)

    assert engine.process_market(market) is SettlementState.EXPIRED_UNRESOLVED
    assert engine.records[market.question_id].resolve_tx == "0xresolve"

    # Still pending on the next two ticks
    engine.process_market(market)
    engine.process_market(market)

    assert len(chain.sent("resolve")) == 1
    assert len(chain.sent("poll")) == 2
    assert chain.sent("redeem") == []


def test_pending_resolve_confirmed_later_then_redeems():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.receipts["0xresolve"] = TxOutcome(status=TxStatus.PENDING, tx_hash="0xresolve")
    engine, sleeps = _engine(chain)
    engine.process_market(market)

    chain.polls["0xresolve"] = TxOutcome(status=TxStatus.SUCCESS, tx_hash="0xresolve", block_number=9)
    chain.resolved.add(market.condition_id)
    state = engine.process_market(market)

    assert state is SettlementState.SETTLED
    assert len(chain.sent("resolve")) == 1
    assert len(chain.sent("redeem")) == 1
    # Grace pause before redeeming, same as a resolve confirmed in-tick
    assert sleeps == [5.0]


def test_dropped_resolve_is_resubmitted():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.receipts["0xresolve"] = TxOutcome(status=TxStatus.PENDING, tx_hash="0xresolve")
    engine, _ = _engine(chain)
    engine.process_market(market)

    chain.polls["0xresolve"] = TxOutcome(status=TxStatus.DROPPED, tx_hash="0xresolve")
    chain.receipts["0xresolve"] = TxOutcome(status=TxStatus.SUCCESS, tx_hash="0xresolve")
    engine.process_market(market)

    assert len(chain.sent("resolve")) == 2


def test_dry_run_sends_nothing():
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    engine, sleeps = _engine(chain, dry_run=True)

    state = engine.process_market(market)

    assert state is SettlementState.SETTLED
    assert chain.sent("resolve") == []
    assert chain.sent("redeem") == []
    assert sleeps == []


def test_orphans_keep_unsettled_and_forget_settled():
    chain = FakeChain()
    settled = make_market(1)
    waiting = make_market(2)
    _expired(chain, settled)
    chain.requests[waiting.question_id] = (NOW - 100, 3600)
    engine, _ = _engine(chain)
    engine.process_market(settled)
    engine.process_market(waiting)

    orphans = engine.orphans(active_ids=set())

    assert [r.question_id for r in orphans] == [waiting.question_id]
    assert settled.question_id not in engine.records


def test_orphans_expire_after_retention():
    chain = FakeChain()
    market = make_market()
    chain.requests[market.question_id] = (NOW - 100, 3600)
    now = [NOW]
    engine = SettlementEngine(make_config(settlement_retention_s=600), chain, clock=lambda: now[0], sleep=lambda s: None)
    engine.process_market(market)

    now[0] += 601
    assert engine.orphans(active_ids=set()) == []
    assert engine.records == {}


def test_active_markets_are_not_orphans():
    chain = FakeChain()
    market = make_market()
    engine, _ = _engine(chain)
    engine.process_market(market)

    assert engine.orphans(active_ids={market.question_id}) == []
    assert market.question_id in engine.records


def test_expired_market_end_to_end_with_chain_client():
    """Deadline 60s ago, unresolved: one resolve at base gas x 1.10, then one redeem of {1, 2}."""
    from types import SimpleNamespace
    from unittest.mock import MagicMock

    from expiry_sniper.chain import ChainClient

    w3 = MagicMock()
    w3.eth.contract.side_effect = lambda address, abi: MagicMock(address=address)
    w3.eth.gas_price = 30_000_000_000
    w3.eth.get_transaction_count.return_value = 3
    w3.eth.send_raw_transaction.return_value = b"\x01" * 32
    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 10}
    account = MagicMock()
    account.address = "0x000000000000000000000000000000000000dEaD"
    account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"signed")
    chain = ChainClient(make_config(), w3=w3, account=account)

    market = make_market()
    chain.oracle.functions.getRequest.return_value.call.return_value = (NOW - 3660, 3600, b"")
    chain.ctf.functions.payoutDenominator.return_value.call.return_value = 0
    engine = SettlementEngine(make_config(), chain, clock=lambda: NOW, sleep=lambda s: None)

    state = engine.process_market(market)

    assert state is SettlementState.SETTLED
    resolve_fn = chain.adapter.functions.resolve.return_value
    assert resolve_fn.build_transaction.call_count == 1
    assert resolve_fn.build_transaction.call_args[0][0]["gasPrice"] == 33_000_000_000
    assert chain.ctf.functions.redeemPositions.call_count == 1
    assert chain.ctf.functions.redeemPositions.call_args[0][3] == [1, 2]
    redeem_fn = chain.ctf.functions.redeemPositions.return_value
    assert redeem_fn.build_transaction.call_args[0][0]["gasPrice"] == 33_000_000_000
    assert w3.eth.send_raw_transaction.call_count == 2
    assert not engine.records[market.question_id].outstanding


def test_reopen_sends_settled_question_back_to_redeem():
    chain = FakeChain()
    market = make_market()
    chain.resolved.add(market.condition_id)
    _expired(chain, market)
    engine, _ = _engine(chain)

    assert engine.reopen(market.question_id) is False
    engine.process_market(market)
    assert engine.state_of(market.question_id) is SettlementState.SETTLED

    assert engine.reopen(market.question_id) is True
    assert engine.state_of(market.question_id) is SettlementState.RESOLVED_UNREDEEMED
    assert engine.process_market(market) is SettlementState.SETTLED
    assert len(chain.sent("redeem")) == 2


def test_out_of_gas_funds_waits_for_next_tick():
    """A resolve that cannot be paid for is neither fatal nor treated as a lost race."""
    chain = FakeChain()
    market = make_market()
    _expired(chain, market)
    chain.resolve_results = [
        TxOutcome(
            status=TxStatus.REVERTED,
            revert=RevertKind.INSUFFICIENT_BALANCE,
            error="insufficient funds for gas * price + value",
        )
    ]
    engine, _ = _engine(chain)

    assert engine.process_market(market) is SettlementState.EXPIRED_UNRESOLVED
    assert chain.sent("redeem") == []

    assert engine.process_market(market) is SettlementState.SETTLED
    assert len(chain.sent("resolve")) == 2


def test_out_of_gas_funds_on_redeem_stays_unredeemed():
    chain = FakeChain()
    market = make_market()
    chain.resolved.add(market.condition_id)
    _expired(chain, market)
    chain.redeem_results = [
        TxOutcome(status=TxStatus.REVERTED, revert=RevertKind.INSUFFICIENT_BALANCE, error="insufficient funds")
    ]
    engine, _ = _engine(chain)

    assert engine.process_market(market) is SettlementState.RESOLVED_UNREDEEMED
    assert engine.process_market(market) is SettlementState.SETTLED
