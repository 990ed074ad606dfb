# nanostorage/x402/nonces.py
"""
Nonce registry for one-shot (x402) payment authorizations.

Recording a nonce is an exclusive create: if the nonce was ever recorded,
``record`` raises NonceAlreadyConsumed, so two concurrent requests carrying
the same authorization cannot both be settled.

Detailed consumption records are swept after a retention window to reclaim
space. The bare nonce is kept in a permanent ``retired`` list, so a swept
nonce is still rejected; the list grows by one nonce string per swept
record and is never pruned.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional

from nanostorage.core.config import settings
from nanostorage.services.store import JsonStore
from nanostorage.x402.errors import NonceAlreadyConsumed
from nanostorage.x402.models import PaymentRecord, utc_now

logger = logging.getLogger(__name__)

RECORDS_KEY = "records"
RETIRED_KEY = "retired"


class NonceRegistry:
    """Durable set of consumed payment nonces."""

    def __init__(self, path: Path):
        self._store = JsonStore(path)

    def is_consumed(self, nonce: str) -> bool:
        data = self._store.read()
        return nonce in data.get(RECORDS_KEY, {}) or nonce in data.get(RETIRED_KEY, [])

    def get(self, nonce: str) -> Optional[PaymentRecord]:
        raw = self._store.read().get(RECORDS_KEY, {}).get(nonce)
        return PaymentRecord.model_validate(raw) if raw else None

    def record(
        self,
        nonce: str,
        wallet_id: str,
        file_id: str,
        amount: Decimal,
        used_at: Optional[datetime] = None,
    ) -> PaymentRecord:
        """
        Record a nonce as consumed.

        Must only be called after the payment it authorizes was verified.

        Raises:
            NonceAlreadyConsumed: If the nonce was recorded before
        """
        record = PaymentRecord(
            nonce=nonce,
            wallet_id=wallet_id,
            file_id=file_id,
            amount=amount,
            used_at=used_at or utc_now(),
        )
        with self._store.transaction() as data:
            records = data.setdefault(RECORDS_KEY, {})
            retired = data.setdefault(RETIRED_KEY, [])
            if nonce in records or nonce in retired:
                raise NonceAlreadyConsumed(nonce)
            records[nonce] = record.model_dump(mode="json")

        logger.info(f"Recorded payment nonce {nonce[:16]} for wallet {record.wallet_id}, file {file_id}")
        return record

    def sweep_expired(self, retention: Optional[timedelta] = None, now: Optional[datetime] = None) -> int:
        """
        Delete consumption records older than the retention window.

        Swept nonces stay consumed; only their details are dropped.

        Returns:
            Number of records swept
        """
        window = retention if retention is not None else timedelta(hours=settings.NONCE_RETENTION_HOURS)
        cutoff = (now or utc_now()) - window

        swept = 0
        with self._store.transaction() as data:
            records = data.setdefault(RECORDS_KEY, {})
            retired = data.setdefault(RETIRED_KEY, [])
            for nonce in list(records):
                used_at = PaymentRecord.model_validate(records[nonce]).used_at
                if used_at < cutoff:
                    del records[nonce]
                    retired.append(nonce)
                    swept += 1

        if swept:
            logger.info(f"Swept {swept} payment records older than {window}")
        return swept

    def count(self) -> int:
        """Number of detailed consumption records currently held."""
        return len(self._store.read().get(RECORDS_KEY, {}))
