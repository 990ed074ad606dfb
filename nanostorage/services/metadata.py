# nanostorage/services/metadata.py
"""
File metadata store.

Keyed map of FileLedgerEntry records by file ID. The settlement core reads
entries to price downloads and storage, and drives lifecycle transitions
through ``update`` and ``delete``.
"""
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from nanostorage.core.config import settings
from nanostorage.services.store import JsonStore
from nanostorage.x402.models import utc_now

logger = logging.getLogger(__name__)


class FileLedgerEntry(BaseModel):
    """Billing and lifecycle state of a stored file."""
    file_id: str
    file_name: str
    file_size: int = Field(ge=0)
    uploader_wallet_id: str
    upload_date: datetime = Field(default_factory=utc_now)
    expiration_date: datetime
    is_prepaid_linked: bool = False
    download_locked: bool = False

    @field_validator("upload_date", "expiration_date")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    @classmethod
    def new(
        cls,
        file_id: str,
        file_name: str,
        file_size: int,
        uploader_wallet_id: str,
        upload_date: Optional[datetime] = None,
        free_storage_days: Optional[int] = None,
    ) -> "FileLedgerEntry":
        """Entry for a fresh upload, expiring after the free storage period."""
        uploaded = upload_date or utc_now()
        days = free_storage_days if free_storage_days is not None else settings.FREE_STORAGE_DAYS
        return cls(
            file_id=file_id,
            file_name=file_name,
            file_size=file_size,
            uploader_wallet_id=uploader_wallet_id.lower(),
            upload_date=uploaded,
            expiration_date=uploaded + timedelta(days=days),
        )


class FileMetadataStore:
    """File entries persisted as a JSON document keyed by file ID."""

    def __init__(self, path: Path):
        self._store = JsonStore(path)

    def get_all(self) -> Dict[str, FileLedgerEntry]:
        return {
            file_id: FileLedgerEntry.model_validate(raw)
            for file_id, raw in self._store.read().items()
        }

    def get(self, file_id: str) -> Optional[FileLedgerEntry]:
        raw = self._store.read().get(file_id)
        return FileLedgerEntry.model_validate(raw) if raw else None

    def get_by_wallet(self, wallet_id: str) -> List[FileLedgerEntry]:
        wallet_id = wallet_id.lower()
        return [
            entry for entry in self.get_all().values()
            if entry.uploader_wallet_id.lower() == wallet_id
        ]

    def save(self, entry: FileLedgerEntry) -> None:
        with self._store.transaction() as data:
            data[entry.file_id] = entry.model_dump(mode="json")

    def update(self, file_id: str, **changes: Any) -> Optional[FileLedgerEntry]:
        """
        Apply a partial update to an entry.

        Returns:
            The updated entry, or None if the file is unknown
        """
        with self._store.transaction() as data:
            raw = data.get(file_id)
            if raw is None:
                return None
            entry = FileLedgerEntry.model_validate({**raw, **changes})
            data[file_id] = entry.model_dump(mode="json")
        return entry

    def delete(self, file_id: str) -> bool:
        with self._store.transaction() as data:
            return data.pop(file_id, None) is not None

    def set_prepaid_linked_by_wallet(self, wallet_id: str, is_prepaid_linked: bool) -> int:
        """
        Link or unlink every file of a wallet to prepaid storage.

        Returns:
            Number of files updated
        """
        wallet_id = wallet_id.lower()
        updated = 0
        with self._store.transaction() as data:
            for file_id, raw in data.items():
                if str(raw.get("uploader_wallet_id", "")).lower() != wallet_id:
                    continue
                raw["is_prepaid_linked"] = is_prepaid_linked
                updated += 1
        if updated:
            logger.info(f"Set is_prepaid_linked={is_prepaid_linked} on {updated} files of {wallet_id}")
        return updated
