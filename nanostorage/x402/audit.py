# nanostorage/x402/audit.py
"""
Audit logging for credit and payment settlement.

Every settlement outcome is appended to a JSON lines log for:
- Dispute resolution
- Reconciliation of the local balance cache against the remote ledger
- Debugging failed deductions and denied payments

Log format: JSON lines (one event per line)
Log location: Configured via AUDIT_LOG_PATH

Events logged:
- Challenge issued (amount, nonce, file)
- Credit deducted (amount, new balance, reason)
- Credit deposited (amount, tx hash, new balance)
- Payment verified / denied (nonce, method, reason)
- Storage fee charged, low balance, files locked (scheduler)
- File deleted (expiry processing)
- Error (type, context)

Writing an event never raises: failures are logged and swallowed.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from nanostorage.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    CHALLENGE_ISSUED = "challenge_issued"
    CREDIT_DEDUCTED = "credit_deducted"
    CREDIT_DEPOSITED = "credit_deposited"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_DENIED = "payment_denied"
    STORAGE_FEE_CHARGED = "storage_fee_charged"
    LOW_BALANCE = "low_balance"
    FILES_LOCKED = "files_locked"
    FILE_DELETED = "file_deleted"
    ERROR = "error"


def generate_event_id() -> str:
    """Generate a short unique ID for an audit event."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    """Get the path to the audit log file."""
    return Path(settings.AUDIT_LOG_PATH)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    wallet_address: Optional[str] = None,
    file_id: Optional[str] = None,
    event_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create an audit event dictionary.

    Args:
        event_type: Type of event to log
        data: Event-specific data
        wallet_address: Wallet concerned by the event (if any)
        file_id: File concerned by the event (if any)
        event_id: Identifier to correlate related events (if any)

    Returns:
        A structured event ready to be written to the audit log
    """
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "event_id": event_id or generate_event_id(),
        "wallet_address": wallet_address.lower() if wallet_address else None,
        "file_id": file_id,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    wallet_address: Optional[str] = None,
    file_id: Optional[str] = None,
    event_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an audit event to the settlement audit log.

    Returns:
        The event_id used for this event, or None if logging is disabled
        or the write failed
    """
    if not settings.AUDIT_LOG_ENABLED:
        return None

    event = create_audit_event(
        event_type=event_type,
        data=data,
        wallet_address=wallet_address,
        file_id=file_id,
        event_id=event_id
    )

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=_json_default) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['event_id']}]")
        return event["event_id"]

    except Exception as e:
        logger.error(f"Failed to write audit event: {e}")
        return None


# Convenience functions for specific event types

def log_challenge_issued(wallet_address: str, file_id: str, amount: Decimal, nonce: str) -> Optional[str]:
    """Log a 402 challenge issued for a download."""
    return log_audit_event(
        event_type=AuditEventType.CHALLENGE_ISSUED,
        data={"amount": amount, "nonce": nonce},
        wallet_address=wallet_address,
        file_id=file_id
    )


def log_credit_deducted(
    wallet_address: str,
    amount: Decimal,
    new_balance: Decimal,
    reason: str,
    file_id: Optional[str] = None
) -> Optional[str]:
    """Log a credit deduction (download or storage)."""
    return log_audit_event(
        event_type=AuditEventType.CREDIT_DEDUCTED,
        data={"amount": amount, "new_balance": new_balance, "reason": reason},
        wallet_address=wallet_address,
        file_id=file_id
    )


def log_credit_deposited(
    wallet_address: str,
    amount: Decimal,
    new_balance: Decimal,
    tx_hash: Optional[str] = None
) -> Optional[str]:
    """Log a confirmed credit deposit."""
    return log_audit_event(
        event_type=AuditEventType.CREDIT_DEPOSITED,
        data={"amount": amount, "new_balance": new_balance, "tx_hash": tx_hash},
        wallet_address=wallet_address
    )


def log_payment_verified(
    wallet_address: str,
    file_id: str,
    amount: Decimal,
    nonce: str,
    method: str
) -> Optional[str]:
    """Log an accepted one-shot payment."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_VERIFIED,
        data={"amount": amount, "nonce": nonce, "method": method},
        wallet_address=wallet_address,
        file_id=file_id
    )


def log_payment_denied(
    wallet_address: str,
    file_id: str,
    reason: str,
    nonce: Optional[str] = None
) -> Optional[str]:
    """Log a denied one-shot payment."""
    return log_audit_event(
        event_type=AuditEventType.PAYMENT_DENIED,
        data={"reason": reason, "nonce": nonce},
        wallet_address=wallet_address,
        file_id=file_id
    )


def log_storage_fee_charged(
    wallet_address: str,
    amount: Decimal,
    new_balance: Decimal,
    file_count: int
) -> Optional[str]:
    """Log a daily storage fee deduction."""
    return log_audit_event(
        event_type=AuditEventType.STORAGE_FEE_CHARGED,
        data={"amount": amount, "new_balance": new_balance, "file_count": file_count},
        wallet_address=wallet_address
    )


def log_low_balance(wallet_address: str, balance: Decimal, days_remaining: float) -> Optional[str]:
    """Log a low balance warning."""
    return log_audit_event(
        event_type=AuditEventType.LOW_BALANCE,
        data={"balance": balance, "days_remaining": round(days_remaining, 2)},
        wallet_address=wallet_address
    )


def log_files_locked(wallet_address: str, file_ids: List[str]) -> Optional[str]:
    """Log downloads locked for an exhausted wallet."""
    return log_audit_event(
        event_type=AuditEventType.FILES_LOCKED,
        data={"file_ids": file_ids, "count": len(file_ids)},
        wallet_address=wallet_address
    )


def log_file_deleted(file_id: str, reason: str, wallet_address: Optional[str] = None) -> Optional[str]:
    """Log an expired file deletion."""
    return log_audit_event(
        event_type=AuditEventType.FILE_DELETED,
        data={"reason": reason},
        wallet_address=wallet_address,
        file_id=file_id
    )


def log_error(
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None,
    file_id: Optional[str] = None
) -> Optional[str]:
    """Log an error event."""
    return log_audit_event(
        event_type=AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        wallet_address=wallet_address,
        file_id=file_id
    )
