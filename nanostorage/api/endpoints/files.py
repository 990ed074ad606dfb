# nanostorage/api/endpoints/files.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from fastapi.responses import FileResponse, JSONResponse

from nanostorage.dependencies import Services, get_services
from nanostorage.x402.challenge import create_402_response
from nanostorage.x402.errors import RemoteRejected
from nanostorage.x402.resolver import ChallengeIssued, Denied

logger = logging.getLogger(__name__)
router = APIRouter()

WALLET_ID_HEADERS = ("x-wallet-id", "x-payment-wallet-id")


@router.get("/{file_id}/download", response_class=FileResponse)
def download_file(
    request: Request,
    file_id: str = Path(..., description="ID of the file to download"),
    services: Services = Depends(get_services),
):
    """
    Download a stored file, paid from prepaid credit or a one-shot payment.

    The requesting wallet is given in ``X-Wallet-Id`` (or ``X-Payment-Wallet-Id``).
    Credit downloads may carry ``X-Wallet-Signature`` over "Download {file_id}".
    One-shot payments carry ``X-Payment-Signature``/``X-Payment-Tx-Hash`` with
    ``X-Payment-Nonce`` and ``X-Payment-Timestamp``, or an ``X-PAYMENT`` envelope.

    Returns:
        The file content, with ``X-Payment-Mode`` naming how it was paid

    Raises:
        HTTPException: 404 unknown file, 403 locked, 400 missing wallet,
            402 payment required or denied, 502 settlement failure
    """
    entry = services.metadata.get(file_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="File not found")

    if not services.blobs.exists(file_id):
        raise HTTPException(status_code=404, detail="File not found in storage")

    if entry.download_locked:
        raise HTTPException(status_code=403, detail="File download is locked. Please recharge your credits.")

    wallet_id = next((request.headers.get(name) for name in WALLET_ID_HEADERS if request.headers.get(name)), None)
    if not wallet_id:
        raise HTTPException(status_code=400, detail="Wallet ID is required")

    try:
        outcome = services.resolver.process_download_payment(wallet_id, file_id, entry.file_size, request.headers)
    except RemoteRejected as e:
        logger.error(f"Settlement failed for download of {file_id} by {wallet_id}: {e}")
        raise HTTPException(status_code=502, detail="Payment settlement failed")
    except Exception as e:
        logger.error(f"Unexpected error settling download of {file_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to download file")

    if isinstance(outcome, ChallengeIssued):
        return create_402_response(outcome, str(request.url))

    if isinstance(outcome, Denied):
        return JSONResponse(status_code=402, content={"error": "Payment required", "reason": outcome.reason})

    logger.info(f"Serving {file_id} to {wallet_id.lower()} ({outcome.method})")
    return FileResponse(
        path=services.blobs.path_for(file_id),
        media_type="application/octet-stream",
        filename=entry.file_name,
        headers={"X-Payment-Mode": outcome.method},
    )
