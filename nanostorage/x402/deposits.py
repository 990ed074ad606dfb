# nanostorage/x402/deposits.py
"""
Deposit confirmation.

Credits the local balance cache after a deposit into the StorageCreditPool:
- confirm_deposit_transaction: client-reported deposit, either trusting an
  explicit amount or verifying the receipt's CreditDeposited event
- apply_deposit_event: webhook/listener path with an already decoded event

A transaction hash is credited at most once. After crediting, the cached
balance is synced from chain when the remote ledger can be read.
"""
import logging
from decimal import Decimal
from pathlib import Path
from typing import Optional

from nanostorage.services.metadata import FileMetadataStore
from nanostorage.services.store import JsonStore
from nanostorage.x402 import audit
from nanostorage.x402.chain import RemoteLedgerClient
from nanostorage.x402.credit import CreditLedger
from nanostorage.x402.errors import DepositAlreadyProcessed, DepositError, RemoteLedgerError, RemoteUnavailable
from nanostorage.x402.locks import KeyedLock
from nanostorage.x402.models import utc_now
from nanostorage.x402.pricing import from_token_units, to_token_units

logger = logging.getLogger(__name__)


class DepositProcessor:
    """Confirms deposits and credits them exactly once per transaction."""

    def __init__(
        self,
        credit_ledger: CreditLedger,
        ledger_client: RemoteLedgerClient,
        metadata: FileMetadataStore,
        processed_path: Path,
    ):
        self._credit_ledger = credit_ledger
        self._ledger_client = ledger_client
        self._metadata = metadata
        self._processed = JsonStore(processed_path)
        self._tx_locks = KeyedLock()

    def is_processed(self, tx_hash: str) -> bool:
        return tx_hash.lower() in self._processed.read()

    def confirm_deposit_transaction(
        self,
        wallet_id: str,
        tx_hash: str,
        amount: Optional[Decimal] = None,
    ) -> Decimal:
        """
        Confirm a deposit reported by a client and credit it.

        Args:
            wallet_id: Depositing wallet
            tx_hash: Deposit transaction hash
            amount: Deposited amount in token units. When given and positive
                it is trusted; otherwise the receipt is verified.

        Returns:
            The wallet's balance after the deposit

        Raises:
            DepositAlreadyProcessed: If the transaction was already credited
            DepositError: If the deposit could not be confirmed
        """
        wallet_id = wallet_id.lower()
        if not tx_hash:
            raise DepositError("txHash is required")
        if self.is_processed(tx_hash):
            raise DepositAlreadyProcessed(f"Deposit {tx_hash} was already processed")

        if amount is not None and Decimal(amount) > 0:
            raw_amount = to_token_units(Decimal(amount), self._ledger_client.decimals)
            logger.info(f"Using provided deposit amount for {wallet_id}: {amount} ({raw_amount} units)")
        else:
            raw_amount = self._verify_deposit_receipt(wallet_id, tx_hash)

        return self._credit(wallet_id, raw_amount, tx_hash)

    def apply_deposit_event(self, wallet_id: str, raw_amount, tx_hash: Optional[str] = None) -> Decimal:
        """
        Credit a CreditDeposited event delivered by a listener or webhook.

        Args:
            wallet_id: Depositing wallet
            raw_amount: Amount in the token's smallest denomination (int or numeric string)
            tx_hash: Transaction hash, used to reject duplicates when given

        Raises:
            DepositAlreadyProcessed: If ``tx_hash`` was already credited
            DepositError: If the amount is not a positive integer
        """
        try:
            units = int(str(raw_amount))
        except (TypeError, ValueError) as e:
            raise DepositError(f"Invalid deposit amount: {raw_amount}") from e
        if units <= 0:
            raise DepositError(f"Invalid deposit amount: {raw_amount}")

        return self._credit(wallet_id.lower(), units, tx_hash)

    def _verify_deposit_receipt(self, wallet_id: str, tx_hash: str) -> int:
        try:
            receipt = self._ledger_client.get_receipt(tx_hash)
        except RemoteUnavailable as e:
            raise DepositError(f"RPC method restricted, retry with the deposit amount: {e}") from e
        except RemoteLedgerError as e:
            raise DepositError(f"Could not fetch deposit transaction: {e}") from e

        if receipt is None:
            raise DepositError("Transaction not found or still pending")
        if receipt.get("status") != 1:
            raise DepositError("Transaction failed")

        pool_address = (self._ledger_client.credit_pool_address or "").lower()
        if str(receipt.get("to") or "").lower() != pool_address:
            raise DepositError("Transaction is not to StorageCreditPool contract")

        event = self._ledger_client.parse_deposit_event(receipt)
        if event is None or event.raw_amount <= 0:
            raise DepositError("CreditDeposited event not found in transaction")
        if event.wallet_id != wallet_id:
            raise DepositError("Wallet ID mismatch")

        return event.raw_amount

    def _credit(self, wallet_id: str, raw_amount: int, tx_hash: Optional[str]) -> Decimal:
        if tx_hash:
            key = tx_hash.lower()
            with self._tx_locks.hold(key):
                if self.is_processed(key):
                    raise DepositAlreadyProcessed(f"Deposit {tx_hash} was already processed")
                self._credit_ledger.deposit(wallet_id, raw_amount)
                with self._processed.transaction() as data:
                    data[key] = {
                        "wallet_id": wallet_id,
                        "raw_amount": str(raw_amount),
                        "processed_at": utc_now().isoformat(),
                    }
        else:
            self._credit_ledger.deposit(wallet_id, raw_amount)

        self._metadata.set_prepaid_linked_by_wallet(wallet_id, True)
        balance = self._credit_ledger.sync_from_chain(wallet_id)
        if balance is None:
            balance = self._credit_ledger.cache.get_balance(wallet_id)

        amount = from_token_units(raw_amount, self._ledger_client.decimals)
        audit.log_credit_deposited(wallet_id, amount, balance, tx_hash)
        logger.info(f"Deposit processed for {wallet_id}: {amount}, balance {balance}")
        return balance
