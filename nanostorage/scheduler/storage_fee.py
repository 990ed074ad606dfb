# nanostorage/scheduler/storage_fee.py
"""
Daily storage fee pass.

One pass:
1. Charges each prepaid wallet the daily storage fee of its files
2. Warns about wallets with fewer than LOW_BALANCE_DAYS of credit left
3. Locks downloads of wallets whose credit reached zero
4. Deletes free-storage files past their expiration date
   (locked files get a LOCKED_FILE_GRACE_DAYS grace period)

Scheduling lives outside this module: the pass is triggered by the cron
endpoint. Failures are isolated per wallet and per file.
"""
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from nanostorage.core.config import settings
from nanostorage.services.metadata import FileLedgerEntry, FileMetadataStore
from nanostorage.services.storage import BlobStore
from nanostorage.services.store import JsonStore
from nanostorage.x402 import audit
from nanostorage.x402.credit import CreditLedger
from nanostorage.x402.models import utc_now
from nanostorage.x402.pricing import daily_storage_fee, days_covered, monthly_storage_fee

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
LAST_CHARGED_DATE_KEY = "last_charged_date"


class PassAlreadyRunning(RuntimeError):
    """A storage fee pass is already in progress."""


@dataclass
class StorageFeePassResult:
    """What a storage fee pass did."""
    run_at: datetime
    fees_charged: bool = True
    charged_wallets: Dict[str, Decimal] = field(default_factory=dict)
    low_balance_wallets: List[str] = field(default_factory=list)
    locked_files: List[str] = field(default_factory=list)
    deleted_files: List[str] = field(default_factory=list)
    failed_wallets: Dict[str, str] = field(default_factory=dict)
    failed_files: Dict[str, str] = field(default_factory=dict)


class StorageFeeScheduler:
    """Runs storage fee passes one at a time."""

    def __init__(
        self,
        credit_ledger: CreditLedger,
        metadata: FileMetadataStore,
        blobs: BlobStore,
        state_path: Optional[Path] = None,
        once_per_day: Optional[bool] = None,
    ):
        self._credit_ledger = credit_ledger
        self._metadata = metadata
        self._blobs = blobs
        self._state = JsonStore(state_path) if state_path is not None else None
        self._once_per_day = once_per_day if once_per_day is not None else settings.STORAGE_FEE_ONCE_PER_DAY
        self._lock = threading.Lock()

    def run_pass(self, now: Optional[datetime] = None) -> StorageFeePassResult:
        """
        Run one storage fee pass.

        Raises:
            PassAlreadyRunning: If another pass holds the scheduler lock
        """
        if not self._lock.acquire(blocking=False):
            raise PassAlreadyRunning("Storage fee pass already running")
        try:
            return self._run(now or utc_now())
        finally:
            self._lock.release()

    def _run(self, now: datetime) -> StorageFeePassResult:
        logger.info("Starting storage fee processing...")
        result = StorageFeePassResult(run_at=now)

        if self._already_charged(now):
            logger.info(f"Storage fees already charged for {now.date().isoformat()}, skipping deductions")
            result.fees_charged = False
        else:
            self._charge_prepaid_wallets(result)
            self._mark_charged(now)

        self._expire_free_files(now, result)

        logger.info(
            f"Storage fee processing completed: {len(result.charged_wallets)} wallets charged, "
            f"{len(result.locked_files)} files locked, {len(result.deleted_files)} files deleted"
        )
        return result

    def _already_charged(self, now: datetime) -> bool:
        if not self._once_per_day or self._state is None:
            return False
        return self._state.read().get(LAST_CHARGED_DATE_KEY) == now.date().isoformat()

    def _mark_charged(self, now: datetime) -> None:
        if not self._once_per_day or self._state is None:
            return
        with self._state.transaction() as data:
            data[LAST_CHARGED_DATE_KEY] = now.date().isoformat()

    def _charge_prepaid_wallets(self, result: StorageFeePassResult) -> None:
        files = self._metadata.get_all()
        wallets = self._credit_ledger.cache.get_all()

        files_by_wallet: Dict[str, List[FileLedgerEntry]] = {}
        for entry in files.values():
            if entry.is_prepaid_linked:
                files_by_wallet.setdefault(entry.uploader_wallet_id.lower(), []).append(entry)

        for wallet_id, wallet_files in files_by_wallet.items():
            if wallet_id not in wallets:
                continue

            total_daily_fee = sum((daily_storage_fee(entry.file_size) for entry in wallet_files), ZERO)
            if total_daily_fee <= 0:
                continue

            try:
                new_balance = self._credit_ledger.deduct(wallet_id, total_daily_fee)
            except Exception as e:
                logger.error(f"Storage fee deduction failed for wallet {wallet_id}: {e}")
                result.failed_wallets[wallet_id] = str(e)
                audit.log_error(
                    error_type="storage_fee_failed",
                    error_message=str(e),
                    context={"amount": str(total_daily_fee)},
                    wallet_address=wallet_id,
                )
                continue

            result.charged_wallets[wallet_id] = total_daily_fee
            audit.log_storage_fee_charged(wallet_id, total_daily_fee, new_balance, len(wallet_files))

            days_left = float(new_balance / total_daily_fee)
            if 0 < days_left < settings.LOW_BALANCE_DAYS:
                logger.warning(f"Low balance warning for wallet {wallet_id}: {days_left:.2f} days covered")
                result.low_balance_wallets.append(wallet_id)
                audit.log_low_balance(wallet_id, new_balance, days_left)

            if new_balance == 0:
                self._lock_wallet_files(wallet_id, result)

    def _lock_wallet_files(self, wallet_id: str, result: StorageFeePassResult) -> None:
        locked = []
        for entry in self._metadata.get_by_wallet(wallet_id):
            try:
                self._metadata.update(entry.file_id, download_locked=True)
            except Exception as e:
                logger.error(f"Error locking file {entry.file_id}: {e}")
                result.failed_files[entry.file_id] = str(e)
                continue
            locked.append(entry.file_id)

        result.locked_files.extend(locked)
        audit.log_files_locked(wallet_id, locked)
        logger.info(f"Locked {len(locked)} files for wallet {wallet_id} due to zero balance")

    def _expire_free_files(self, now: datetime, result: StorageFeePassResult) -> None:
        grace = timedelta(days=settings.LOCKED_FILE_GRACE_DAYS)
        for entry in self._metadata.get_all().values():
            if entry.is_prepaid_linked:
                continue

            if entry.download_locked:
                if now <= entry.expiration_date + grace:
                    continue
                reason = "locked_grace_expired"
            else:
                if now <= entry.expiration_date:
                    continue
                reason = "free_storage_expired"

            try:
                self._blobs.delete(entry.file_id)
                self._metadata.delete(entry.file_id)
            except Exception as e:
                logger.error(f"Error deleting file {entry.file_id}: {e}")
                result.failed_files[entry.file_id] = str(e)
                continue

            result.deleted_files.append(entry.file_id)
            audit.log_file_deleted(entry.file_id, reason, wallet_address=entry.uploader_wallet_id)
            logger.info(f"Deleted expired file: {entry.file_id} ({reason})")


class FileFeeEstimate(BaseModel):
    file_id: str
    file_name: str
    file_size: int
    upload_date: datetime
    expiration_date: datetime
    is_prepaid_linked: bool
    storage_status: str
    daily_storage_fee: Decimal
    monthly_storage_fee: Decimal
    estimated_deletion_date: Optional[str] = None
    days_until_deletion: Optional[int] = None


class StorageFeeSummary(BaseModel):
    total_daily_fee: Decimal
    total_monthly_fee: Decimal
    days_covered: Optional[int] = None  # None when nothing is charged daily
    needs_deposit: bool


class StorageFeeEstimate(BaseModel):
    wallet_address: str
    credit_balance: Decimal
    files: List[FileFeeEstimate]
    summary: StorageFeeSummary


def _storage_status(entry: FileLedgerEntry, credit_balance: Decimal, now: datetime) -> str:
    if entry.download_locked:
        return "locked"
    if entry.is_prepaid_linked and credit_balance > 0:
        return "prepaid_storage"
    if entry.expiration_date < now:
        return "expired"
    return "free_storage"


def estimate_storage_fees(
    credit_ledger: CreditLedger,
    metadata: FileMetadataStore,
    wallet_id: str,
    now: Optional[datetime] = None,
) -> StorageFeeEstimate:
    """Storage fees, status and credit coverage for a wallet's files."""
    now = now or utc_now()
    wallet_id = wallet_id.lower()
    credit_balance = credit_ledger.get_balance(wallet_id)

    estimates = []
    for entry in metadata.get_by_wallet(wallet_id):
        status = _storage_status(entry, credit_balance, now)
        estimate = FileFeeEstimate(
            file_id=entry.file_id,
            file_name=entry.file_name,
            file_size=entry.file_size,
            upload_date=entry.upload_date,
            expiration_date=entry.expiration_date,
            is_prepaid_linked=entry.is_prepaid_linked,
            storage_status=status,
            daily_storage_fee=daily_storage_fee(entry.file_size),
            monthly_storage_fee=monthly_storage_fee(entry.file_size),
        )
        if status == "free_storage":
            seconds_left = (entry.expiration_date - now).total_seconds()
            estimate.estimated_deletion_date = entry.expiration_date.date().isoformat()
            estimate.days_until_deletion = max(0, math.ceil(seconds_left / 86400))
        estimates.append(estimate)

    total_daily = sum((estimate.daily_storage_fee for estimate in estimates), ZERO)
    total_monthly = sum((estimate.monthly_storage_fee for estimate in estimates), ZERO)
    covered = days_covered(credit_balance, total_daily)
    covered_days = None if covered == math.inf else covered

    return StorageFeeEstimate(
        wallet_address=wallet_id,
        credit_balance=credit_balance,
        files=estimates,
        summary=StorageFeeSummary(
            total_daily_fee=total_daily,
            total_monthly_fee=total_monthly,
            days_covered=covered_days,
            needs_deposit=credit_balance == 0 or (covered_days is not None and covered_days < settings.LOW_BALANCE_DAYS),
        ),
    )
