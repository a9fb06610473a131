"""
Chain client - oracle reads and signed transactions on Polygon.

Uses only web3.py and eth-account: transactions are signed locally and sent
as raw transactions to the configured RPC. Every write goes through one lock
so nonces are never assigned concurrently for the signing account.
"""
import logging
import threading
from typing import Optional, Sequence

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from .config import (
    BINARY_INDEX_SETS,
    CTF_ABI,
    UMA_CTF_ADAPTER_ABI,
    UMA_ORACLE_ABI,
    SniperConfig,
)
from .models import RevertKind, TxOutcome, TxStatus
from .rpc import connect_web3

log = logging.getLogger(__name__)

# Parent collection id is always zero for Polymarket conditions
ZERO_BYTES32 = b"\x00" * 32


def to_bytes32(value: str) -> bytes:
    raw = Web3.to_bytes(hexstr=value)
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)} for {value[:20]}...")
    return raw


def premium_gas_price(base_gas_price: int, multiplier: float) -> int:
    """Suggested gas price scaled by the multiplier, in whole percent steps."""
    return base_gas_price * round(multiplier * 100) // 100


def is_revert_error(error: Exception) -> bool:
    if isinstance(error, ContractLogicError):
        return True
    return "revert" in str(error).lower()


def revert_kind_for(message: str, default: RevertKind) -> RevertKind:
    """Insufficient funds overrides the kind implied by the call being sent."""
    lowered = (message or "").lower()
    if "insufficient funds" in lowered or "insufficient balance" in lowered:
        return RevertKind.INSUFFICIENT_BALANCE
    return default


def classify_send_error(error: Exception, revert_kind: RevertKind, gas_price: int = 0) -> TxOutcome:
    """Map an exception raised while preflighting/sending into a TxOutcome."""
    message = str(error)
    kind = revert_kind_for(message, revert_kind)
    if is_revert_error(error) or kind is RevertKind.INSUFFICIENT_BALANCE:
        return TxOutcome(
            status=TxStatus.REVERTED,
            revert=kind,
            error=message,
            gas_price=gas_price,
        )
    return TxOutcome(status=TxStatus.UNCLASSIFIED, error=message, gas_price=gas_price)


class ChainClient:
    """Reads the UMA oracle / CTF and submits resolve and redeem transactions."""

    def __init__(self, config: SniperConfig, w3: Optional[Web3] = None, account=None):
        self.config = config
        self.w3 = w3
        self.account = account
        self.oracle = None
        self.adapter = None
        self.ctf = None
        self._tx_lock = threading.Lock()
        if self.account is None and config.private_key:
            self.account = Account.from_key(config.private_key)
        if self.w3 is not None:
            self._bind_contracts()

    def _bind_contracts(self):
        self.oracle = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.config.oracle_address), abi=UMA_ORACLE_ABI
        )
        self.adapter = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.config.adapter_address), abi=UMA_CTF_ADAPTER_ABI
        )
        self.ctf = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.config.ctf_address), abi=CTF_ABI
        )

    def initialize(self) -> bool:
        """Connect to the first reachable RPC and bind contracts."""
        if self.w3 is None:
            self.w3 = connect_web3(
                self.config.rpc_urls, timeout=self.config.request_timeout, chain_id=self.config.chain_id
            )
            if self.w3 is None:
                log.error("Could not connect to any Polygon RPC")
                return False
            self._bind_contracts()

        if self.account is not None:
            balance = self.w3.eth.get_balance(self.account.address) / 10**18
            log.info(f"Signer {self.account.address} | POL balance: {balance:.4f}")
            if balance < 0.05:
                log.warning(f"Low POL balance! Send POL for gas to: {self.account.address}")
        return True

    @property
    def address(self) -> str:
        return self.account.address

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get_request(self, question_id: str) -> tuple[int, int, bytes]:
        """(request_timestamp, liveness, ancillary_data) for a question."""
        request_ts, liveness, ancillary = self.oracle.functions.getRequest(to_bytes32(question_id)).call()
        return int(request_ts), int(liveness), bytes(ancillary)

    def is_condition_resolved(self, condition_id: str) -> bool:
        """A condition is resolved once its payout vector has been reported."""
        return self.ctf.functions.payoutDenominator(to_bytes32(condition_id)).call() > 0

    def payout_numerators(self, condition_id: str, outcome_count: int = 2) -> list[int]:
        cid = to_bytes32(condition_id)
        return [int(self.ctf.functions.payoutNumerators(cid, i).call()) for i in range(outcome_count)]

    def premium_gas_price(self) -> int:
        return premium_gas_price(self.w3.eth.gas_price, self.config.gas_price_multiplier)

    # ─── Writes ───────────────────────────────────────────────────────────────

    def send_resolve(self, question_id: str) -> TxOutcome:
        """Submit UmaCtfAdapter.resolve(questionID)."""
        try:
            fn = self.adapter.functions.resolve(to_bytes32(question_id))
        except ValueError as e:
            return TxOutcome(status=TxStatus.UNCLASSIFIED, error=str(e))
        return self._send(fn, RevertKind.ALREADY_RESOLVED)

    def send_redeem(self, condition_id: str, index_sets: Sequence[int] = BINARY_INDEX_SETS) -> TxOutcome:
        """Submit ConditionalTokens.redeemPositions for the given index sets."""
        try:
            fn = self.ctf.functions.redeemPositions(
                Web3.to_checksum_address(self.config.collateral_address),
                ZERO_BYTES32,
                to_bytes32(condition_id),
                list(index_sets),
            )
        except ValueError as e:
            return TxOutcome(status=TxStatus.UNCLASSIFIED, error=str(e))
        return self._send(fn, RevertKind.ALREADY_REDEEMED)

    def _send(self, fn, revert_kind: RevertKind) -> TxOutcome:
        """Preflight with eth_call, then sign and send. Returns PENDING with the hash."""
        gas_price = 0
        try:
            with self._tx_lock:
                gas_price = self.premium_gas_price()
                # Dry-run first so a lost race costs no gas
                fn.call({"from": self.address})
                tx = fn.build_transaction({
                    "from": self.address,
                    "nonce": self.w3.eth.get_transaction_count(self.address, "pending"),
                    "gas": self.config.gas_limit,
                    "gasPrice": gas_price,
                    "chainId": self.config.chain_id,
                })
                signed = self.account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as e:
            return classify_send_error(e, revert_kind, gas_price)

        return TxOutcome(status=TxStatus.PENDING, tx_hash=Web3.to_hex(tx_hash), gas_price=gas_price)

    # ─── Receipts ─────────────────────────────────────────────────────────────

    @staticmethod
    def _from_receipt(tx_hash: str, receipt) -> TxOutcome:
        status = TxStatus.SUCCESS if receipt["status"] == 1 else TxStatus.MINED_FAILURE
        return TxOutcome(status=status, tx_hash=tx_hash, block_number=receipt.get("blockNumber"))

    def wait_for_receipt(self, tx_hash: str, timeout: Optional[float] = None) -> TxOutcome:
        """Block until the receipt arrives or the timeout passes (then PENDING)."""
        timeout = self.config.receipt_timeout_s if timeout is None else timeout
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted:
            log.warning(f"No receipt for {tx_hash[:18]}... after {timeout:.0f}s")
            return TxOutcome(status=TxStatus.PENDING, tx_hash=tx_hash)
        except Exception as e:
            log.warning(f"Receipt wait failed for {tx_hash[:18]}...: {e}")
            return TxOutcome(status=TxStatus.PENDING, tx_hash=tx_hash, error=str(e))
        return self._from_receipt(tx_hash, receipt)

    def poll_receipt(self, tx_hash: str) -> TxOutcome:
        """Non-blocking receipt check for a transaction sent on an earlier tick."""
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return self._pending_or_dropped(tx_hash)
        except Exception as e:
            log.warning(f"Receipt poll failed for {tx_hash[:18]}...: {e}")
            return TxOutcome(status=TxStatus.PENDING, tx_hash=tx_hash, error=str(e))
        if receipt is None:
            return self._pending_or_dropped(tx_hash)
        return self._from_receipt(tx_hash, receipt)

    def _pending_or_dropped(self, tx_hash: str) -> TxOutcome:
        try:
            self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return TxOutcome(status=TxStatus.DROPPED, tx_hash=tx_hash)
        except Exception as e:
            return TxOutcome(status=TxStatus.PENDING, tx_hash=tx_hash, error=str(e))
        return TxOutcome(status=TxStatus.PENDING, tx_hash=tx_hash)
