# nanostorage/x402/credit.py
"""
Credit ledger: authoritative-with-fallback balance service.

The on-chain StorageCreditPool is the source of truth. The local balance
cache keeps the serving path available when the RPC is restricted or down:

- get_balance: remote read, written through to the cache; cache on failure
- deduct: on-chain deduction mirrored locally; local-only when the remote
  is unavailable or reports an insufficient balance
- deposit: additive local credit after a confirmed deposit

This is the only component that decides to fall back to local state.
"""
import logging
from decimal import Decimal
from typing import Optional

from nanostorage.x402.balances import LocalBalanceCache
from nanostorage.x402.chain import RemoteLedgerClient
from nanostorage.x402.errors import (
    InsufficientRemoteBalance,
    RemoteLedgerError,
    RemoteRejected,
    RemoteUnavailable,
)
from nanostorage.x402.locks import KeyedLock
from nanostorage.x402.models import utc_now
from nanostorage.x402.pricing import from_token_units

logger = logging.getLogger(__name__)


class CreditLedger:
    """Per-wallet credit balance backed by the remote ledger and a local cache."""

    def __init__(self, client: RemoteLedgerClient, cache: LocalBalanceCache):
        self._client = client
        self._cache = cache
        self._wallet_locks = KeyedLock()

    @property
    def cache(self) -> LocalBalanceCache:
        return self._cache

    def get_balance(self, wallet_id: str) -> Decimal:
        """
        Current balance of a wallet.

        Reads the remote ledger first. A non-zero remote value is written
        through to the cache; a zero read is not, so a stale read racing a
        fresh deposit cannot wipe the cached credit. The write-through does
        not wait for the wallet lock and is skipped when the cache changed
        after the read was taken. Any remote failure returns the cached
        balance (zero if unknown).
        """
        wallet_id = wallet_id.lower()
        observed_at = utc_now()
        try:
            balance = self._client.read_balance(wallet_id)
        except RemoteUnavailable:
            logger.debug(f"Remote ledger unavailable, using cached balance for {wallet_id}")
            return self._cache.get_balance(wallet_id)
        except Exception as e:
            logger.warning(f"Remote balance read failed for {wallet_id}, using cached balance: {e}")
            return self._cache.get_balance(wallet_id)

        if balance > 0:
            self._cache.set_observed_balance(wallet_id, balance, observed_at)
        return balance

    def has_sufficient(self, wallet_id: str, amount: Decimal) -> bool:
        return self.get_balance(wallet_id) >= amount

    def deposit(self, wallet_id: str, raw_amount: int) -> Decimal:
        """
        Credit a confirmed deposit to the local cache.

        Args:
            wallet_id: Depositing wallet
            raw_amount: Amount in the token's smallest denomination

        Returns:
            New cached balance
        """
        wallet_id = wallet_id.lower()
        amount = from_token_units(raw_amount, self._client.decimals)
        with self._wallet_locks.hold(wallet_id):
            new_balance = self._cache.add(wallet_id, amount)
        logger.info(f"Deposit credited for {wallet_id}: +{amount} (balance {new_balance})")
        return new_balance

    def deduct(self, wallet_id: str, amount: Decimal) -> Decimal:
        """
        Deduct credit from a wallet.

        The decision to charge was already made by the caller, so a failed
        remote deduction (unavailable or insufficient on-chain) still
        deducts locally. The local balance is clamped at zero.

        Returns:
            New balance

        Raises:
            RemoteRejected: If the contract rejected the deduction for any
                other reason. The local balance is left unchanged.
        """
        wallet_id = wallet_id.lower()
        if amount <= 0:
            return self._cache.get_balance(wallet_id)

        with self._wallet_locks.hold(wallet_id):
            try:
                receipt = self._client.authorize_deduction(wallet_id, amount)
            except (RemoteUnavailable, InsufficientRemoteBalance) as e:
                new_balance = self._cache.subtract(wallet_id, amount)
                logger.info(
                    f"Credit deducted (local fallback, {e.kind.value}) for {wallet_id}: "
                    f"{amount}, new balance {new_balance}"
                )
                return new_balance
            except RemoteRejected:
                logger.error(f"Remote ledger rejected deduction of {amount} for {wallet_id}")
                raise

            new_balance = self._cache.subtract(wallet_id, amount)
            logger.info(f"Credit deducted (on-chain) for {wallet_id}: {amount}, tx {receipt.tx_ref}, new balance {new_balance}")

            try:
                synced = self._client.read_balance(wallet_id)
            except RemoteUnavailable:
                return new_balance
            except RemoteLedgerError as e:
                logger.warning(f"Failed to sync balance from chain for {wallet_id}: {e}")
                return new_balance

            new_balance = self._cache.set_balance(wallet_id, synced)
            logger.info(f"Balance synced from chain for {wallet_id}: {new_balance}")
            return new_balance

    def sync_from_chain(self, wallet_id: str) -> Optional[Decimal]:
        """
        Overwrite the cached balance with the remote value, zero included.

        A cache update made after the remote read is kept.

        Returns:
            The cached balance after the sync, or None if the remote ledger
            could not be read
        """
        wallet_id = wallet_id.lower()
        observed_at = utc_now()
        try:
            balance = self._client.read_balance(wallet_id)
        except RemoteLedgerError as e:
            if not isinstance(e, RemoteUnavailable):
                logger.warning(f"Failed to sync balance from chain for {wallet_id}: {e}")
            return None

        return self._cache.set_observed_balance(wallet_id, balance, observed_at)
