# nanostorage/x402/chain.py
"""
Remote ledger client for the StorageCreditPool and PaymentContract.

This module translates credit operations into contract calls:
- read_balance: creditBalance(address) view
- authorize_deduction: owner-only deductCredit(address, uint256, bytes)
- parse_deposit_event: CreditDeposited event decoding from a receipt
- verify_payment_transaction: checks a one-shot payment transaction

Every failure surfaces as a RemoteLedgerError with a closed kind
(see nanostorage.x402.errors). Restricted, unreachable, timed out, or
unconfigured RPC is always RemoteUnavailable so callers can fall back
to local state.

The client is constructed explicitly and injected; there is no global
provider.
"""
import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from nanostorage.core.config import settings
from nanostorage.x402.errors import (
    InsufficientRemoteBalance,
    RemoteLedgerError,
    RemoteRejected,
    RemoteUnavailable,
)
from nanostorage.x402.pricing import from_token_units, to_token_units

logger = logging.getLogger(__name__)

STORAGE_CREDIT_POOL_ABI = [
    {
        "type": "function",
        "name": "creditBalance",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "deductCredit",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "CreditDeposited",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]

# HTTP statuses that mean "this RPC will not serve us right now"
UNAVAILABLE_HTTP_STATUSES = {401, 403, 408, 429}


@dataclass(frozen=True)
class DeductionReceipt:
    """Reference to a mined deductCredit transaction."""
    tx_ref: str


@dataclass(frozen=True)
class DepositEvent:
    """A decoded CreditDeposited event."""
    wallet_id: str
    raw_amount: int


def classify_error(exc: Exception) -> RemoteLedgerError:
    """
    Map an exception raised by web3/requests to a RemoteLedgerError.

    Args:
        exc: Exception raised while talking to the RPC endpoint

    Returns:
        RemoteUnavailable, InsufficientRemoteBalance or RemoteRejected
    """
    if isinstance(exc, RemoteLedgerError):
        return exc

    if isinstance(exc, requests.exceptions.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        if status is None or status in UNAVAILABLE_HTTP_STATUSES or status >= 500:
            return RemoteUnavailable(f"RPC method restricted or unavailable (HTTP {status})")
        return RemoteRejected(f"RPC rejected request (HTTP {status})")

    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout, TimeExhausted)):
        return RemoteUnavailable(f"RPC unreachable: {exc}")

    message = str(exc)
    if isinstance(exc, ContractLogicError):
        if "insufficient" in message.lower():
            return InsufficientRemoteBalance(message)
        return RemoteRejected(message)

    if "403" in message or "restricted" in message.lower():
        return RemoteUnavailable(f"RPC method restricted: {message}")

    return RemoteRejected(message or exc.__class__.__name__)


def _lower(address: Optional[str]) -> str:
    return str(address or "").lower()


class RemoteLedgerClient:
    """Client for the on-chain credit pool and payment contract."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        credit_pool_address: Optional[str] = None,
        payment_contract_address: Optional[str] = None,
        owner_private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        decimals: Optional[int] = None,
        timeout: Optional[float] = None,
        receipt_timeout: Optional[float] = None,
        web3: Optional[Web3] = None,
    ):
        self._credit_pool_address = credit_pool_address if credit_pool_address is not None else settings.STORAGE_CREDIT_POOL_ADDRESS
        self._payment_contract_address = (
            payment_contract_address if payment_contract_address is not None else settings.PAYMENT_CONTRACT_ADDRESS
        )
        self._owner_private_key = owner_private_key if owner_private_key is not None else settings.OWNER_PRIVATE_KEY
        self._chain_id = chain_id if chain_id is not None else settings.CHAIN_ID
        self._decimals = decimals if decimals is not None else settings.TOKEN_DECIMALS
        self._receipt_timeout = receipt_timeout if receipt_timeout is not None else settings.DEDUCTION_RECEIPT_TIMEOUT_SECONDS

        if web3 is None:
            url = str(rpc_url or settings.RPC_URL)
            request_timeout = timeout if timeout is not None else settings.RPC_TIMEOUT_SECONDS
            web3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": request_timeout}))
        self._web3 = web3
        self._credit_pool = None
        self._tx_lock = threading.Lock()
        self._next_nonce: Optional[int] = None

    @property
    def decimals(self) -> int:
        return self._decimals

    @property
    def payment_contract_address(self) -> Optional[str]:
        return self._payment_contract_address

    @property
    def credit_pool_address(self) -> Optional[str]:
        return self._credit_pool_address

    def _credit_pool_contract(self):
        if not self._credit_pool_address:
            raise RemoteUnavailable("STORAGE_CREDIT_POOL_ADDRESS not configured")
        if self._credit_pool is None:
            self._credit_pool = self._web3.eth.contract(
                address=Web3.to_checksum_address(self._credit_pool_address),
                abi=STORAGE_CREDIT_POOL_ABI,
            )
        return self._credit_pool

    def read_balance(self, wallet_id: str) -> Decimal:
        """
        Read a wallet's credit balance from the StorageCreditPool.

        Returns:
            Balance as a decimal amount of the payment token

        Raises:
            RemoteUnavailable: If the RPC is restricted, unreachable or unconfigured
            RemoteRejected: On any other failure
        """
        try:
            contract = self._credit_pool_contract()
            raw_balance = contract.functions.creditBalance(Web3.to_checksum_address(wallet_id)).call()
        except Exception as e:
            error = classify_error(e)
            logger.debug(f"Remote balance read failed for {_lower(wallet_id)}: {error.kind.value} ({error})")
            raise error from e

        return from_token_units(raw_balance, self._decimals)

    def authorize_deduction(self, wallet_id: str, amount: Decimal) -> DeductionReceipt:
        """
        Deduct credit on-chain using the server's owner key.

        The transaction is sent once and never retried: once mined the
        deduction is irreversible.

        Args:
            wallet_id: Wallet to deduct from
            amount: Decimal amount of the payment token

        Returns:
            DeductionReceipt with the transaction hash

        Raises:
            InsufficientRemoteBalance: If the contract reverts for insufficient balance
            RemoteUnavailable: If the RPC is restricted, unreachable, unconfigured, or times out
            RemoteRejected: On any other revert or a failed transaction
        """
        raw_amount = to_token_units(amount, self._decimals)
        if not self._owner_private_key:
            raise RemoteUnavailable("OWNER_PRIVATE_KEY not configured - cannot sign deductions")

        try:
            contract = self._credit_pool_contract()
            function = contract.functions.deductCredit(Web3.to_checksum_address(wallet_id), raw_amount, b"")
            receipt = self._send_transaction(function)
        except Exception as e:
            error = classify_error(e)
            logger.warning(
                f"On-chain deduction failed for {_lower(wallet_id)} ({raw_amount} units): "
                f"{error.kind.value} ({error})"
            )
            raise error from e

        tx_ref = Web3.to_hex(receipt["transactionHash"])
        if receipt.get("status") != 1:
            raise RemoteRejected(f"Deduction transaction {tx_ref} failed")

        logger.info(f"Credit deducted on-chain for {_lower(wallet_id)}: {raw_amount} units, tx {tx_ref}")
        return DeductionReceipt(tx_ref=tx_ref)

    def _send_transaction(self, function) -> Dict[str, Any]:
        """
        Build, sign, send and wait for a contract transaction.

        Owner nonces are allocated and sent under a per-client lock, which
        is released before waiting for the receipt.
        """
        signer = Account.from_key(self._owner_private_key)
        with self._tx_lock:
            nonce = self._web3.eth.get_transaction_count(signer.address, "pending")
            if self._next_nonce is not None and self._next_nonce > nonce:
                nonce = self._next_nonce
            transaction = function.build_transaction({
                "from": signer.address,
                "nonce": nonce,
                "chainId": self._chain_id,
            })
            signed = signer.sign_transaction(transaction)
            try:
                tx_hash = self._web3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception:
                self._next_nonce = None
                raise
            self._next_nonce = nonce + 1

        logger.info(f"Sent transaction {Web3.to_hex(tx_hash)} with nonce {nonce}")
        return self._web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)

    def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a transaction receipt.

        Returns:
            The receipt, or None if the transaction is unknown or still pending
        """
        try:
            return self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise classify_error(e) from e

    def _deposit_event_decoder(self):
        if self._credit_pool_address:
            return self._credit_pool_contract().events.CreditDeposited()
        return self._web3.eth.contract(abi=STORAGE_CREDIT_POOL_ABI).events.CreditDeposited()

    def parse_deposit_event(self, receipt: Dict[str, Any]) -> Optional[DepositEvent]:
        """
        Decode the first CreditDeposited event in a receipt.

        Logs that do not match the event ABI are discarded. Logs emitted by
        other contracts are ignored when the credit pool address is
        configured.

        Returns:
            DepositEvent, or None if the receipt holds no such event
        """
        pool_address = _lower(self._credit_pool_address)
        for event in self._deposit_event_decoder().process_receipt(receipt, errors=DISCARD):
            if pool_address and _lower(event["address"]) != pool_address:
                continue
            return DepositEvent(wallet_id=_lower(event["args"]["user"]), raw_amount=int(event["args"]["amount"]))

        return None

    def verify_payment_transaction(self, tx_hash: str, wallet_id: str) -> bool:
        """
        Check that a transaction is a successful payment from the wallet.

        The transaction must be mined, have status 1, be sent to the payment
        contract and originate from ``wallet_id``.

        Raises:
            RemoteUnavailable: If the RPC cannot be queried or no payment contract is configured
        """
        if not self._payment_contract_address:
            raise RemoteUnavailable("PAYMENT_CONTRACT_ADDRESS not configured")

        try:
            transaction = self._web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            logger.warning(f"Payment transaction {tx_hash} not found")
            return False
        except Exception as e:
            raise classify_error(e) from e

        receipt = self.get_receipt(tx_hash)
        if receipt is None:
            logger.warning(f"Payment transaction {tx_hash} is not mined yet")
            return False

        if receipt.get("status") != 1:
            logger.warning(f"Payment transaction {tx_hash} failed on-chain")
            return False

        if _lower(receipt.get("to")) != _lower(self._payment_contract_address):
            logger.warning(f"Payment transaction {tx_hash} is not sent to the payment contract")
            return False

        if _lower(transaction.get("from")) != _lower(wallet_id):
            logger.warning(f"Payment transaction {tx_hash} was not sent by {_lower(wallet_id)}")
            return False

        return True
