"""
Tests for the chain client: gas pricing, preflight, send and receipt classification.

Web3 is replaced with MagicMock; contract binding uses the real checksum helpers.
"""

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from expiry_sniper.chain import (
    ZERO_BYTES32,
    ChainClient,
    classify_send_error,
    is_revert_error,
    premium_gas_price,
    to_bytes32,
)
from expiry_sniper.config import USDC_ADDRESS
from expiry_sniper.models import RevertKind, TxStatus

from fakes import CID, QID, make_config

BASE_GAS = 30_000_000_000


def _client(**overrides):
    w3 = MagicMock()
    w3.eth.contract.side_effect = lambda address, abi: MagicMock(address=address)
    w3.eth.gas_price = BASE_GAS
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.send_raw_transaction.return_value = b"\x12" * 32
    account = MagicMock()
    account.address = "0x000000000000000000000000000000000000dEaD"
    account.sign_transaction.return_value = SimpleNamespace(raw_transaction=b"signed")
    chain = ChainClient(make_config(**overrides), w3=w3, account=account)
    return chain, w3, account


def test_premium_gas_price():
    assert premium_gas_price(BASE_GAS, 1.1) == 33_000_000_000
    assert premium_gas_price(100, 1.0) == 100
    assert premium_gas_price(101, 1.25) == 126
    print("[OK] gas premium")


def test_to_bytes32_rejects_wrong_length():
    assert to_bytes32(QID) == b"\x11" * 32
    with pytest.raises(ValueError):
        to_bytes32("0x1234")


def test_revert_detection():
    assert is_revert_error(ContractLogicError("execution reverted: already resolved"))
    assert is_revert_error(ValueError("VM Exception: revert"))
    assert not is_revert_error(ConnectionError("connection reset"))


def test_classify_send_error():
    outcome = classify_send_error(ValueError("execution reverted"), RevertKind.ALREADY_REDEEMED, 5)
    assert outcome.status is TxStatus.REVERTED
    assert outcome.revert is RevertKind.ALREADY_REDEEMED
    assert outcome.gas_price == 5

    outcome = classify_send_error(TimeoutError("read timed out"), RevertKind.ALREADY_RESOLVED)
    assert outcome.status is TxStatus.UNCLASSIFIED
    assert outcome.revert is None


def test_send_resolve_uses_premium_gas_and_pending_nonce():
    chain, w3, account = _client()
    fn = chain.adapter.functions.resolve.return_value
    fn.build_transaction.return_value = {"to": "0xadapter"}

    outcome = chain.send_resolve(QID)

    assert outcome.status is TxStatus.PENDING
    assert outcome.tx_hash == "0x" + "12" * 32
    assert outcome.gas_price == 33_000_000_000
    chain.adapter.functions.resolve.assert_called_once_with(b"\x11" * 32)
    fn.call.assert_called_once_with({"from": account.address})
    tx = fn.build_transaction.call_args[0][0]
    assert tx["gasPrice"] == 33_000_000_000
    assert tx["gas"] == 300000
    assert tx["nonce"] == 7
    assert tx["chainId"] == 137
    w3.eth.get_transaction_count.assert_called_once_with(account.address, "pending")
    w3.eth.send_raw_transaction.assert_called_once_with(b"signed")


def test_send_redeem_targets_both_index_sets():
    chain, _, _ = _client()

    outcome = chain.send_redeem(CID)

    assert outcome.status is TxStatus.PENDING
    args = chain.ctf.functions.redeemPositions.call_args[0]
    assert args[0].lower() == USDC_ADDRESS.lower()
    assert args[1] == ZERO_BYTES32
    assert args[2] == b"\x22" * 32
    assert args[3] == [1, 2]


def test_preflight_revert_sends_nothing():
    """A reverted eth_call costs no gas: nothing is signed or broadcast."""
    chain, w3, account = _client()
    fn = chain.adapter.functions.resolve.return_value
    fn.call.side_effect = ContractLogicError("execution reverted: Question already resolved")

    outcome = chain.send_resolve(QID)

    assert outcome.status is TxStatus.REVERTED
    assert outcome.revert is RevertKind.ALREADY_RESOLVED
    account.sign_transaction.assert_not_called()
    w3.eth.send_raw_transaction.assert_not_called()


def test_network_error_is_unclassified():
    chain, w3, _ = _client()
    w3.eth.send_raw_transaction.side_effect = ConnectionError("connection reset by peer")

    outcome = chain.send_redeem(CID)

    assert outcome.status is TxStatus.UNCLASSIFIED
    assert "connection reset" in outcome.error


def test_bad_question_id_is_unclassified():
    chain, w3, _ = _client()

    outcome = chain.send_resolve("0xdead")

    assert outcome.status is TxStatus.UNCLASSIFIED
    w3.eth.send_raw_transaction.assert_not_called()


def test_wait_for_receipt_statuses():
    chain, w3, _ = _client()

    w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 42}
    outcome = chain.wait_for_receipt("0xabc")
    assert outcome.status is TxStatus.SUCCESS
    assert outcome.block_number == 42

    w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 43}
    assert chain.wait_for_receipt("0xabc").status is TxStatus.MINED_FAILURE

    w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("timed out")
    outcome = chain.wait_for_receipt("0xabc", timeout=1)
    assert outcome.status is TxStatus.PENDING
    assert outcome.tx_hash == "0xabc"


def test_poll_receipt_pending_and_dropped():
    chain, w3, _ = _client()
    w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not found")

    w3.eth.get_transaction.return_value = {"hash": "0xabc"}
    assert chain.poll_receipt("0xabc").status is TxStatus.PENDING

    w3.eth.get_transaction.side_effect = TransactionNotFound("not found")
    assert chain.poll_receipt("0xabc").status is TxStatus.DROPPED


def test_status_reads():
    chain, _, _ = _client()
    chain.oracle.functions.getRequest.return_value.call.return_value = (1000, 7200, b"q: ...")
    chain.ctf.functions.payoutDenominator.return_value.call.return_value = 1

    assert chain.get_request(QID) == (1000, 7200, b"q: ...")
    assert chain.is_condition_resolved(CID) is True

    chain.ctf.functions.payoutDenominator.return_value.call.return_value = 0
    assert chain.is_condition_resolved(CID) is False


# ─── RPC endpoints ────────────────────────────────────────────────────────────

def test_rpc_endpoints_order_and_dedupe(monkeypatch):
    from expiry_sniper.rpc import PUBLIC_POLYGON_RPCS, rpc_endpoints

    monkeypatch.delenv("INFURA_PROJECT_ID", raising=False)
    monkeypatch.delenv("INFURA_API_KEY", raising=False)
    monkeypatch.setenv("POLYGON_RPC_URLS", "https://a.example, https://b.example,https://a.example")

    assert rpc_endpoints("https://b.example") == ["https://b.example", "https://a.example"]

    monkeypatch.delenv("POLYGON_RPC_URLS")
    monkeypatch.setenv("INFURA_PROJECT_ID", "proj")
    urls = rpc_endpoints()
    assert urls[0] == "https://polygon-mainnet.infura.io/v3/proj"
    assert urls[1:] == PUBLIC_POLYGON_RPCS


def test_provider_kwargs_infura_auth(monkeypatch):
    from expiry_sniper.rpc import provider_kwargs

    monkeypatch.setenv("INFURA_PROJECT_ID", "proj")
    monkeypatch.setenv("INFURA_API_SECRET", "s3cret")

    kwargs = provider_kwargs("https://polygon-mainnet.infura.io/v3/proj", timeout=5)
    assert kwargs["timeout"] == 5
    assert kwargs["headers"]["Authorization"].startswith("Basic ")

    assert "headers" not in provider_kwargs("https://polygon-rpc.com")


def test_insufficient_gas_funds_is_recognized():
    chain, w3, _ = _client()
    w3.eth.send_raw_transaction.side_effect = ValueError(
        {"code": -32000, "message": "insufficient funds for gas * price + value"}
    )

    outcome = chain.send_resolve(QID)

    assert outcome.status is TxStatus.REVERTED
    assert outcome.revert is RevertKind.INSUFFICIENT_BALANCE

    outcome = classify_send_error(ContractLogicError("execution reverted"), RevertKind.ALREADY_REDEEMED)
    assert outcome.revert is RevertKind.ALREADY_REDEEMED
