# nanostorage/x402/signatures.py
"""
Signature verification for download payments.

Two kinds of signature are accepted:
- Wallet ownership: a personal_sign (EIP-191) signature over
  "Download {fileId}", used with prepaid credit
- One-shot payment: an EIP-712 typed signature over
  Payment{fileId, amount, nonce, timestamp}, bound to the payment contract

Timestamps are Unix milliseconds, as produced by browser wallets.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data

from nanostorage.core.config import settings
from nanostorage.x402.errors import InvalidAuthorization

logger = logging.getLogger(__name__)

PAYMENT_TYPES = {
    "Payment": [
        {"name": "fileId", "type": "string"},
        {"name": "amount", "type": "uint256"},
        {"name": "nonce", "type": "string"},
        {"name": "timestamp", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class PaymentMessage:
    """The typed message a client signs for a one-shot payment."""
    file_id: str
    amount: int  # token units
    nonce: str
    timestamp: int  # milliseconds

    def to_typed_data(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "amount": self.amount,
            "nonce": self.nonce,
            "timestamp": self.timestamp,
        }


def download_message(file_id: str) -> str:
    """Canonical message signed to prove wallet ownership for a download."""
    return f"Download {file_id}"


def get_payment_domain(
    chain_id: Optional[int] = None,
    verifying_contract: Optional[str] = None,
) -> Dict[str, Any]:
    """
    EIP-712 domain for payment messages.

    ``verifyingContract`` is omitted when no payment contract is configured.
    """
    domain = {
        "name": settings.EIP712_DOMAIN_NAME,
        "version": settings.EIP712_DOMAIN_VERSION,
        "chainId": chain_id if chain_id is not None else settings.CHAIN_ID,
    }
    contract = verifying_contract or settings.PAYMENT_CONTRACT_ADDRESS
    if contract:
        domain["verifyingContract"] = contract
    return domain


def encode_payment_message(message: PaymentMessage, domain: Optional[Dict[str, Any]] = None):
    """Build the signable EIP-712 message (shared by signing and recovery)."""
    return encode_typed_data(
        domain_data=domain or get_payment_domain(),
        message_types=PAYMENT_TYPES,
        message_data=message.to_typed_data(),
    )


def is_timestamp_valid(
    timestamp_ms: int,
    now_ms: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> bool:
    """
    Check that a timestamp is within the validity window.

    The window is symmetric: expired and future-dated timestamps beyond
    the window are both rejected.
    """
    window = window_seconds if window_seconds is not None else settings.SIGNATURE_VALIDITY_WINDOW_SECONDS
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    return abs(now - int(timestamp_ms)) <= window * 1000


def recover_wallet_signer(message: str, signature: str) -> str:
    """
    Recover the signer of a personal_sign message.

    Raises:
        InvalidAuthorization: If the signature is malformed
    """
    try:
        signer = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        raise InvalidAuthorization(f"Malformed wallet signature: {e}") from e
    return signer.lower()


def recover_payment_signer(
    message: PaymentMessage,
    signature: str,
    domain: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Recover the signer of an EIP-712 payment message.

    Raises:
        InvalidAuthorization: If the signature or domain is malformed
    """
    try:
        signable = encode_payment_message(message, domain)
        signer = Account.recover_message(signable, signature=signature)
    except Exception as e:
        raise InvalidAuthorization(f"Malformed payment signature: {e}") from e
    return signer.lower()


def verify_wallet_signature(message: str, signature: str, wallet_id: str) -> bool:
    """True if ``signature`` over ``message`` was produced by ``wallet_id``."""
    try:
        return recover_wallet_signer(message, signature) == wallet_id.lower()
    except InvalidAuthorization as e:
        logger.warning(f"Wallet signature verification error: {e}")
        return False


def verify_payment_signature(
    message: PaymentMessage,
    signature: str,
    wallet_id: str,
    domain: Optional[Dict[str, Any]] = None,
    now_ms: Optional[int] = None,
) -> None:
    """
    Verify a one-shot payment signature.

    Raises:
        InvalidAuthorization: If the timestamp is outside the validity window
            or the recovered signer is not ``wallet_id``
    """
    if not is_timestamp_valid(message.timestamp, now_ms=now_ms):
        raise InvalidAuthorization(f"Payment timestamp {message.timestamp} outside validity window")

    signer = recover_payment_signer(message, signature, domain)
    if signer != wallet_id.lower():
        raise InvalidAuthorization(f"Payment signed by {signer}, expected {wallet_id.lower()}")
