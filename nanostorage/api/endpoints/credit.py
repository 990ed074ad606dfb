# nanostorage/api/endpoints/credit.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from nanostorage.api.models.credit import (
    BalanceResponse,
    CreditDepositedEvent,
    CreditDepositedResponse,
    DepositRequest,
    DepositResponse,
)
from nanostorage.dependencies import Services, get_services
from nanostorage.scheduler.storage_fee import StorageFeeEstimate, estimate_storage_fees
from nanostorage.x402.errors import DepositAlreadyProcessed, DepositError

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/balance/{wallet_id}", response_model=BalanceResponse)
def get_balance(
    wallet_id: str = Path(..., description="Wallet address"),
    services: Services = Depends(get_services),
) -> BalanceResponse:
    """
    Get the credit balance of a wallet.

    Reads the on-chain StorageCreditPool and falls back to the cached
    balance when the RPC is unavailable.
    """
    balance = services.credit_ledger.get_balance(wallet_id)
    return BalanceResponse(walletId=wallet_id.lower(), balance=balance)


@router.post("/deposit", response_model=DepositResponse)
def post_deposit(
    deposit: DepositRequest,
    services: Services = Depends(get_services),
) -> DepositResponse:
    """
    Record a deposit into the StorageCreditPool.

    Raises:
        HTTPException: 400 if the deposit could not be confirmed or was
            already processed, 500 on unexpected errors
    """
    try:
        balance = services.deposits.confirm_deposit_transaction(deposit.walletId, deposit.txHash, deposit.amount)
        return DepositResponse(txId=deposit.txHash, balance=balance)

    except DepositAlreadyProcessed as e:
        logger.warning(f"Duplicate deposit {deposit.txHash}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except DepositError as e:
        logger.warning(f"Deposit {deposit.txHash} rejected: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Unexpected error processing deposit {deposit.txHash}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process deposit")


@router.post("/listeners/credit-deposited", response_model=CreditDepositedResponse)
def credit_deposited(
    event: CreditDepositedEvent,
    services: Services = Depends(get_services),
) -> CreditDepositedResponse:
    """
    Webhook for CreditDeposited events observed by an external chain listener.
    """
    try:
        balance = services.deposits.apply_deposit_event(event.walletId, event.amount, event.txHash)
        return CreditDepositedResponse(walletId=event.walletId.lower(), amount=event.amount, balance=balance)

    except DepositError as e:
        logger.warning(f"Credit deposit event rejected for {event.walletId}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Credit deposit webhook error: {e}")
        raise HTTPException(status_code=500, detail="Failed to process credit deposit")


@router.get("/storage-fee/estimate", response_model=StorageFeeEstimate)
def get_storage_fee_estimate(
    walletAddress: str = Query(..., min_length=1, description="Wallet address"),
    services: Services = Depends(get_services),
) -> StorageFeeEstimate:
    """
    Estimate storage fees and credit coverage for a wallet's files.
    """
    try:
        return estimate_storage_fees(services.credit_ledger, services.metadata, walletAddress)
    except Exception as e:
        logger.error(f"Storage fee estimate error for {walletAddress}: {e}")
        raise HTTPException(status_code=500, detail="Failed to estimate storage fee")
