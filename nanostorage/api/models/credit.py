# nanostorage/api/models/credit.py
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class BalanceResponse(BaseModel):
    """
    Response model for the credit balance endpoint.
    """
    walletId: str = Field(..., description="Lowercase wallet address.")
    balance: Decimal = Field(..., description="Credit balance in token units (USDC).")


class DepositRequest(BaseModel):
    """
    A deposit into the StorageCreditPool reported by the client.

    When ``amount`` is omitted the deposit transaction receipt is verified
    on-chain.
    """
    walletId: str = Field(..., min_length=1, description="Depositing wallet address.")
    txHash: str = Field(..., min_length=1, description="Deposit transaction hash.")
    amount: Optional[Decimal] = Field(None, gt=0, description="Deposited amount in token units (USDC).")


class DepositResponse(BaseModel):
    txId: str
    balance: Decimal
    message: str = "Deposit processed successfully"


class CreditDepositedEvent(BaseModel):
    """
    A CreditDeposited event delivered by an external chain listener.
    """
    walletId: str = Field(..., min_length=1)
    amount: str = Field(..., description="Amount in the token's smallest denomination.")
    txHash: Optional[str] = None


class CreditDepositedResponse(BaseModel):
    success: bool = True
    message: str = "Credit deposit processed"
    walletId: str
    amount: str
    balance: Decimal


class StorageFeePassResponse(BaseModel):
    success: bool = True
    message: str = "Storage fees processed successfully"
    timestamp: str
    feesCharged: bool
    chargedWallets: Dict[str, Decimal] = Field(default_factory=dict)
    lowBalanceWallets: List[str] = Field(default_factory=list)
    lockedFiles: List[str] = Field(default_factory=list)
    deletedFiles: List[str] = Field(default_factory=list)
    failedWallets: Dict[str, str] = Field(default_factory=dict)
    failedFiles: Dict[str, str] = Field(default_factory=dict)
    noncesSwept: int = 0
