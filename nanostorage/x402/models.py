# nanostorage/x402/models.py
"""Persisted settlement records."""
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WalletCreditRecord(BaseModel):
    """Last known credit balance of a wallet."""
    wallet_id: str
    credit_balance: Decimal = Field(default=Decimal("0"), ge=0)
    last_updated: datetime = Field(default_factory=utc_now)

    @field_validator("wallet_id")
    @classmethod
    def normalize_wallet_id(cls, value: str) -> str:
        return value.lower()


class PaymentRecord(BaseModel):
    """Consumption record of a one-shot payment authorization."""
    nonce: str
    wallet_id: str
    file_id: str
    amount: Decimal
    used_at: datetime = Field(default_factory=utc_now)

    @field_validator("wallet_id")
    @classmethod
    def normalize_wallet_id(cls, value: str) -> str:
        return value.lower()
