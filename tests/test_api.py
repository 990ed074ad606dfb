# tests/test_api.py
"""
API tests for download, credit and cron endpoints.

Services are rebuilt per test around an in-memory ledger and a temporary
storage directory, and injected with dependency overrides.
"""
import time
from decimal import Decimal
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from nanostorage.core.config import settings
from nanostorage.dependencies import build_services, get_services
from nanostorage.main import app
from nanostorage.scheduler.storage_fee import PassAlreadyRunning
from nanostorage.services.metadata import FileLedgerEntry
from nanostorage.x402.errors import RemoteRejected, RemoteUnavailable

WALLET = "0x00000000000000000000000000000000000000aa"
GIB = 2 ** 30


def as_decimal(value):
    return Decimal(str(value))


@pytest.fixture
def services(tmp_path, fake_ledger):
    services = build_services(tmp_path / "storage", fake_ledger)
    app.dependency_overrides[get_services] = lambda: services
    yield services
    app.dependency_overrides.clear()


@pytest.fixture
def client(services):
    return TestClient(app)


def store_file(services, file_id="file-1", size=GIB, locked=False, content=b"hello world"):
    entry = FileLedgerEntry.new(file_id, "hello.txt", size, WALLET)
    entry.download_locked = locked
    services.metadata.save(entry)
    services.blobs.save(file_id, content)
    return entry


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestDownload:
    """Test GET /api/v1/files/{file_id}/download."""

    def test_unknown_file(self, client):
        response = client.get("/api/v1/files/missing/download", headers={"X-Wallet-Id": WALLET})
        assert response.status_code == 404
        assert response.json()["detail"] == "File not found"

    def test_missing_blob(self, client, services):
        services.metadata.save(FileLedgerEntry.new("file-1", "a.txt", 10, WALLET))
        response = client.get("/api/v1/files/file-1/download", headers={"X-Wallet-Id": WALLET})
        assert response.status_code == 404
        assert response.json()["detail"] == "File not found in storage"

    def test_locked_file(self, client, services):
        store_file(services, locked=True)
        response = client.get("/api/v1/files/file-1/download", headers={"X-Wallet-Id": WALLET})
        assert response.status_code == 403

    def test_missing_wallet(self, client, services):
        store_file(services)
        response = client.get("/api/v1/files/file-1/download")
        assert response.status_code == 400
        assert response.json()["detail"] == "Wallet ID is required"

    def test_challenge_without_credit(self, client, services):
        store_file(services)

        response = client.get("/api/v1/files/file-1/download", headers={"X-Wallet-Id": WALLET})

        assert response.status_code == 402
        body = response.json()
        assert body["amount"] == "0.01"
        assert len(body["nonce"]) == 64
        assert body["accepts"][0]["maxAmountRequired"] == "10000"
        assert response.headers["X-Payment-Nonce"] == body["nonce"]
        assert response.headers["X-Payment-Required-Amount"] == "0.01"

    def test_paid_from_credit(self, client, services, fake_ledger):
        store_file(services)
        fake_ledger.balances[WALLET] = Decimal("1")

        response = client.get("/api/v1/files/file-1/download", headers={"X-Payment-Wallet-Id": WALLET})

        assert response.status_code == 200
        assert response.content == b"hello world"
        assert response.headers["X-Payment-Mode"] == "credit"
        assert "hello.txt" in response.headers["content-disposition"]
        assert fake_ledger.balances[WALLET] == Decimal("0.99")

    def test_denied_payment(self, client, services):
        store_file(services)
        headers = {
            "X-Wallet-Id": WALLET,
            "X-Payment-Signature": "0x1234",
            "X-Payment-Nonce": "n1",
            "X-Payment-Timestamp": str(int(time.time() * 1000)),
        }

        response = client.get("/api/v1/files/file-1/download", headers=headers)

        assert response.status_code == 402
        assert response.json()["error"] == "Payment required"
        assert response.json()["reason"]
        assert services.nonce_registry.is_consumed("n1") is False

    def test_rejected_settlement(self, client, services, fake_ledger):
        store_file(services)
        fake_ledger.balances[WALLET] = Decimal("1")
        fake_ledger.deduct_error = RemoteRejected("revert")

        response = client.get("/api/v1/files/file-1/download", headers={"X-Wallet-Id": WALLET})

        assert response.status_code == 502
        assert response.json()["detail"] == "Payment settlement failed"


class TestCreditEndpoints:
    """Test balance, deposit, listener and estimate endpoints."""

    def test_balance(self, client, fake_ledger):
        fake_ledger.balances[WALLET] = Decimal("12.5")

        response = client.get(f"/api/v1/balance/{WALLET.upper().replace('0X', '0x')}")

        assert response.status_code == 200
        assert response.json()["walletId"] == WALLET
        assert as_decimal(response.json()["balance"]) == Decimal("12.5")

    def test_balance_falls_back_to_cache(self, client, services, fake_ledger):
        services.credit_ledger.cache.set_balance(WALLET, Decimal("3"))
        fake_ledger.read_error = RemoteUnavailable("403")

        response = client.get(f"/api/v1/balance/{WALLET}")
        assert as_decimal(response.json()["balance"]) == Decimal("3")

    def test_deposit(self, client, fake_ledger):
        fake_ledger.read_error = RemoteUnavailable("403")

        response = client.post("/api/v1/deposit", json={"walletId": WALLET, "txHash": "0xabc", "amount": "10"})

        assert response.status_code == 200
        assert response.json()["txId"] == "0xabc"
        assert as_decimal(response.json()["balance"]) == Decimal("10")

    def test_duplicate_deposit(self, client, fake_ledger):
        fake_ledger.read_error = RemoteUnavailable("403")
        payload = {"walletId": WALLET, "txHash": "0xabc", "amount": "10"}

        assert client.post("/api/v1/deposit", json=payload).status_code == 200
        response = client.post("/api/v1/deposit", json=payload)

        assert response.status_code == 400
        assert "already processed" in response.json()["detail"]

    def test_unconfirmed_deposit(self, client):
        response = client.post("/api/v1/deposit", json={"walletId": WALLET, "txHash": "0xabc"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Transaction not found or still pending"

    def test_deposit_validation(self, client):
        response = client.post("/api/v1/deposit", json={"walletId": WALLET, "txHash": "0xabc", "amount": "0"})
        assert response.status_code == 422

    def test_credit_deposited_listener(self, client, fake_ledger):
        fake_ledger.read_error = RemoteUnavailable("403")

        response = client.post(
            "/api/v1/listeners/credit-deposited",
            json={"walletId": WALLET, "amount": "5000000", "txHash": "0xdef"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert as_decimal(response.json()["balance"]) == Decimal("5")

    def test_credit_deposited_invalid_amount(self, client):
        response = client.post("/api/v1/listeners/credit-deposited", json={"walletId": WALLET, "amount": "-1"})
        assert response.status_code == 400

    def test_storage_fee_estimate(self, client, services):
        store_file(services)

        response = client.get("/api/v1/storage-fee/estimate", params={"walletAddress": WALLET})

        assert response.status_code == 200
        body = response.json()
        assert body["wallet_address"] == WALLET
        assert body["files"][0]["storage_status"] == "free_storage"
        assert body["summary"]["needs_deposit"] is True

    def test_storage_fee_estimate_requires_wallet(self, client):
        assert client.get("/api/v1/storage-fee/estimate").status_code == 422


class TestCron:
    """Test GET /api/v1/cron/storage-fee."""

    def test_runs_pass(self, client, services):
        services.metadata.save(FileLedgerEntry.new("old", "old.txt", 10, WALLET, free_storage_days=-1))

        response = client.get("/api/v1/cron/storage-fee")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["deletedFiles"] == ["old"]
        assert body["noncesSwept"] == 0

    def test_secret_required(self, client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")

        assert client.get("/api/v1/cron/storage-fee").status_code == 401
        assert client.get("/api/v1/cron/storage-fee", headers={"Authorization": "Bearer wrong"}).status_code == 401
        response = client.get("/api/v1/cron/storage-fee", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200

    def test_pass_already_running(self, client, services):
        with patch.object(services.scheduler, "run_pass", side_effect=PassAlreadyRunning("busy")):
            response = client.get("/api/v1/cron/storage-fee")
        assert response.status_code == 409

    def test_unexpected_failure(self, client, services):
        with patch.object(services.scheduler, "run_pass", side_effect=RuntimeError("boom")):
            response = client.get("/api/v1/cron/storage-fee")
        assert response.status_code == 500
