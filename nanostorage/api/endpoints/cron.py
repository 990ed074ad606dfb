# nanostorage/api/endpoints/cron.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from nanostorage.api.models.credit import StorageFeePassResponse
from nanostorage.core.config import settings
from nanostorage.dependencies import Services, get_services
from nanostorage.scheduler.storage_fee import PassAlreadyRunning

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/storage-fee", response_model=StorageFeePassResponse)
def run_storage_fee_pass(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> StorageFeePassResponse:
    """
    Run the daily storage fee pass and sweep old payment nonce records.

    Meant to be called once a day by an external scheduler. When CRON_SECRET
    is set the request must carry ``Authorization: Bearer <CRON_SECRET>``.

    Raises:
        HTTPException: 401 bad secret, 409 pass already running, 500 on failure
    """
    if settings.CRON_SECRET and authorization != f"Bearer {settings.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        result = services.scheduler.run_pass()
        swept = services.nonce_registry.sweep_expired()
    except PassAlreadyRunning as e:
        logger.warning(f"Storage fee cron rejected: {e}")
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Storage fee cron error: {e}")
        raise HTTPException(status_code=500, detail="Failed to process storage fees")

    return StorageFeePassResponse(
        timestamp=result.run_at.isoformat(),
        feesCharged=result.fees_charged,
        chargedWallets=result.charged_wallets,
        lowBalanceWallets=result.low_balance_wallets,
        lockedFiles=result.locked_files,
        deletedFiles=result.deleted_files,
        failedWallets=result.failed_wallets,
        failedFiles=result.failed_files,
        noncesSwept=swept,
    )
