# nanostorage/x402/balances.py
"""
Local balance cache.

Durable last-known credit balance per wallet. Written by deposits,
deductions and reconciliation with the remote ledger; read as the fallback
whenever the remote ledger cannot be reached. Balances are never stored
negative.
"""
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional

from nanostorage.services.store import JsonStore
from nanostorage.x402.models import WalletCreditRecord, utc_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class LocalBalanceCache:
    """Wallet credit records keyed by lowercase wallet address."""

    def __init__(self, path: Path):
        self._store = JsonStore(path)

    def get(self, wallet_id: str) -> Optional[WalletCreditRecord]:
        raw = self._store.read().get(wallet_id.lower())
        if raw is None:
            return None
        return WalletCreditRecord.model_validate(raw)

    def get_balance(self, wallet_id: str) -> Decimal:
        """Cached balance, or zero if the wallet has no record."""
        record = self.get(wallet_id)
        return record.credit_balance if record else ZERO

    def get_all(self) -> Dict[str, WalletCreditRecord]:
        return {
            wallet_id: WalletCreditRecord.model_validate(raw)
            for wallet_id, raw in self._store.read().items()
        }

    def set_balance(self, wallet_id: str, balance: Decimal) -> Decimal:
        """Overwrite the cached balance (clamped at zero)."""
        return self._apply(wallet_id, lambda _current: Decimal(balance))

    def set_observed_balance(self, wallet_id: str, balance: Decimal, observed_at: datetime) -> Decimal:
        """
        Store a remote balance read at ``observed_at``.

        The write is skipped if the record was updated after the read was
        taken; the cached balance is returned either way.
        """
        return self._apply(wallet_id, lambda _current: Decimal(balance), observed_at=observed_at)

    def add(self, wallet_id: str, amount: Decimal) -> Decimal:
        """Add credit and return the new balance."""
        return self._apply(wallet_id, lambda current: current + Decimal(amount))

    def subtract(self, wallet_id: str, amount: Decimal) -> Decimal:
        """Subtract credit, clamping at zero, and return the new balance."""
        return self._apply(wallet_id, lambda current: current - Decimal(amount))

    def _apply(self, wallet_id, update, observed_at: Optional[datetime] = None) -> Decimal:
        key = wallet_id.lower()
        with self._store.transaction() as data:
            existing = data.get(key)
            current = Decimal(existing["credit_balance"]) if existing else ZERO
            if existing and observed_at is not None:
                if WalletCreditRecord.model_validate(existing).last_updated > observed_at:
                    logger.debug(f"Skipped stale balance for {key}: record newer than read")
                    return current
            new_balance = max(ZERO, update(current))
            record = WalletCreditRecord(
                wallet_id=key,
                credit_balance=new_balance,
                last_updated=utc_now(),
            )
            data[key] = record.model_dump(mode="json")
        logger.debug(f"Cached balance for {key}: {current} -> {new_balance}")
        return new_balance
