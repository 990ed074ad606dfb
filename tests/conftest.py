# tests/conftest.py
"""
Shared fixtures: an in-memory remote ledger and isolated storage paths.
"""
import json
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from nanostorage.core.config import settings
from nanostorage.x402.audit import AuditEventType
from nanostorage.x402.chain import DeductionReceipt, DepositEvent
from nanostorage.x402.errors import RemoteRejected
from nanostorage.x402.pricing import to_token_units

PAYMENT_CONTRACT = "0x1111111111111111111111111111111111111111"
CREDIT_POOL = "0x2222222222222222222222222222222222222222"


class FakeLedgerClient:
    """
    In-memory stand-in for RemoteLedgerClient.

    Set ``read_error``/``deduct_error`` to an exception instance to make the
    corresponding call fail.
    """

    def __init__(self, decimals: int = 6):
        self.decimals = decimals
        self.payment_contract_address = PAYMENT_CONTRACT
        self.credit_pool_address = CREDIT_POOL
        self.balances: Dict[str, Decimal] = {}
        self.read_error: Optional[Exception] = None
        self.deduct_error: Optional[Exception] = None
        self.deductions: List[tuple] = []
        self.receipts: Dict[str, dict] = {}
        self.deposit_events: Dict[str, DepositEvent] = {}
        self.confirmed_payments: Dict[str, str] = {}

    def read_balance(self, wallet_id: str) -> Decimal:
        if self.read_error is not None:
            raise self.read_error
        return self.balances.get(wallet_id.lower(), Decimal("0"))

    def authorize_deduction(self, wallet_id: str, amount: Decimal) -> DeductionReceipt:
        if self.deduct_error is not None:
            raise self.deduct_error
        wallet_id = wallet_id.lower()
        current = self.balances.get(wallet_id, Decimal("0"))
        if current < amount:
            raise RemoteRejected("unexpected deduction in fake ledger")
        self.balances[wallet_id] = current - amount
        self.deductions.append((wallet_id, amount, to_token_units(amount, self.decimals)))
        return DeductionReceipt(tx_ref=f"0x{len(self.deductions):064x}")

    def get_receipt(self, tx_hash: str) -> Optional[dict]:
        return self.receipts.get(tx_hash)

    def parse_deposit_event(self, receipt: dict) -> Optional[DepositEvent]:
        return self.deposit_events.get(receipt.get("transactionHash"))

    def verify_payment_transaction(self, tx_hash: str, wallet_id: str) -> bool:
        return self.confirmed_payments.get(tx_hash) == wallet_id.lower()


@pytest.fixture
def fake_ledger():
    return FakeLedgerClient()


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path, monkeypatch):
    """Write audit events to a per-test file."""
    path = tmp_path / "logs" / "settlement_audit.jsonl"
    monkeypatch.setattr(settings, "AUDIT_LOG_PATH", str(path))
    monkeypatch.setattr(settings, "AUDIT_LOG_ENABLED", True)
    return path


def read_audit_log(event_type: Optional[AuditEventType] = None) -> List[dict]:
    """Audit events written so far, most recent first."""
    path = Path(settings.AUDIT_LOG_PATH)
    if not path.exists():
        return []
    events = [json.loads(line) for line in path.read_text().splitlines() if line.strip()]
    if event_type is not None:
        events = [event for event in events if event["event_type"] == event_type.value]
    return list(reversed(events))
