# tests/test_metadata_storage.py
"""
Unit tests for the file metadata store and blob storage.
"""
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from nanostorage.services.metadata import FileLedgerEntry, FileMetadataStore
from nanostorage.services.storage import BlobStore

WALLET = "0x00000000000000000000000000000000000000aa"
OTHER_WALLET = "0x00000000000000000000000000000000000000bb"
UPLOADED = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestFileLedgerEntry:
    """Test entry construction and validation."""

    def test_new_entry_expires_after_free_period(self):
        entry = FileLedgerEntry.new("file-1", "a.txt", 100, WALLET.upper().replace("0X", "0x"), upload_date=UPLOADED)

        assert entry.expiration_date == UPLOADED + timedelta(days=30)
        assert entry.uploader_wallet_id == WALLET
        assert entry.is_prepaid_linked is False
        assert entry.download_locked is False

    def test_custom_free_period(self):
        entry = FileLedgerEntry.new("file-1", "a.txt", 100, WALLET, upload_date=UPLOADED, free_storage_days=7)
        assert entry.expiration_date == UPLOADED + timedelta(days=7)

    def test_naive_datetimes_are_utc(self):
        entry = FileLedgerEntry(
            file_id="file-1",
            file_name="a.txt",
            file_size=1,
            uploader_wallet_id=WALLET,
            upload_date=datetime(2026, 1, 1),
            expiration_date=datetime(2026, 1, 31),
        )
        assert entry.expiration_date.tzinfo is not None

    def test_negative_size_rejected(self):
        with pytest.raises(ValidationError):
            FileLedgerEntry.new("file-1", "a.txt", -1, WALLET)


class TestFileMetadataStore:
    """Test persistence and lifecycle updates."""

    @pytest.fixture
    def store(self, tmp_path):
        return FileMetadataStore(tmp_path / "files.json")

    def test_save_and_get(self, store):
        store.save(FileLedgerEntry.new("file-1", "a.txt", 100, WALLET, upload_date=UPLOADED))

        entry = store.get("file-1")
        assert entry.file_name == "a.txt"
        assert entry.upload_date == UPLOADED
        assert store.get("missing") is None

    def test_survives_reload(self, tmp_path):
        FileMetadataStore(tmp_path / "files.json").save(FileLedgerEntry.new("file-1", "a.txt", 1, WALLET))
        assert FileMetadataStore(tmp_path / "files.json").get("file-1") is not None

    def test_get_by_wallet(self, store):
        store.save(FileLedgerEntry.new("file-1", "a.txt", 1, WALLET))
        store.save(FileLedgerEntry.new("file-2", "b.txt", 1, OTHER_WALLET))
        store.save(FileLedgerEntry.new("file-3", "c.txt", 1, WALLET))

        file_ids = sorted(entry.file_id for entry in store.get_by_wallet(WALLET.upper().replace("0X", "0x")))
        assert file_ids == ["file-1", "file-3"]

    def test_update(self, store):
        store.save(FileLedgerEntry.new("file-1", "a.txt", 1, WALLET))

        updated = store.update("file-1", download_locked=True)

        assert updated.download_locked is True
        assert store.get("file-1").download_locked is True

    def test_update_unknown_file(self, store):
        assert store.update("missing", download_locked=True) is None

    def test_delete(self, store):
        store.save(FileLedgerEntry.new("file-1", "a.txt", 1, WALLET))
        assert store.delete("file-1") is True
        assert store.delete("file-1") is False
        assert store.get_all() == {}

    def test_set_prepaid_linked_by_wallet(self, store):
        store.save(FileLedgerEntry.new("file-1", "a.txt", 1, WALLET))
        store.save(FileLedgerEntry.new("file-2", "b.txt", 1, OTHER_WALLET))

        assert store.set_prepaid_linked_by_wallet(WALLET, True) == 1
        assert store.get("file-1").is_prepaid_linked is True
        assert store.get("file-2").is_prepaid_linked is False


class TestBlobStore:
    """Test the on-disk blob layout."""

    def test_two_level_layout(self, tmp_path):
        blobs = BlobStore(tmp_path)
        assert blobs.path_for("abcdef") == tmp_path / "ab" / "abcdef"

    def test_save_exists_delete(self, tmp_path):
        blobs = BlobStore(tmp_path)
        path = blobs.save("abcdef", b"hello")

        assert path.read_bytes() == b"hello"
        assert blobs.exists("abcdef") is True
        assert blobs.delete("abcdef") is True
        assert blobs.exists("abcdef") is False

    def test_delete_missing_blob(self, tmp_path):
        assert BlobStore(tmp_path).delete("abcdef") is False

    @pytest.mark.parametrize("file_id", ["", "..", "../etc", "a/b"])
    def test_invalid_ids(self, tmp_path, file_id):
        blobs = BlobStore(tmp_path)
        with pytest.raises(ValueError):
            blobs.path_for(file_id)
        assert blobs.exists(file_id) is False
