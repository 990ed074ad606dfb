# nanostorage/x402/challenge.py
"""
402 challenge encoding and X-PAYMENT envelope decoding.

A challenge is sent both as plain headers (for simple clients):
    X-Payment-Required-Amount, X-Payment-Address, X-Payment-Token,
    X-Payment-Nonce, X-Payment-Chain-Id
and as an x402 JSON body with PaymentRequirements in ``accepts``.

Clients answer with the individual X-Payment-* headers or with a base64
JSON ``X-PAYMENT`` envelope: {"signature", "txHash", "nonce", "timestamp"}.
"""
import json
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from starlette.responses import JSONResponse
from x402.encoding import safe_base64_decode, safe_base64_encode
from x402.types import PaymentRequirements

from nanostorage.core.config import settings
from nanostorage.x402.pricing import to_token_units

logger = logging.getLogger(__name__)

# x402 protocol constants
X402_VERSION = 1
X_PAYMENT_HEADER = "X-PAYMENT"
CHALLENGE_TIMEOUT_SECONDS = 300


@dataclass(frozen=True)
class PaymentEnvelope:
    """One-shot payment authorization decoded from X-PAYMENT."""
    signature: Optional[str] = None
    tx_hash: Optional[str] = None
    nonce: Optional[str] = None
    timestamp: Optional[int] = None


def create_x402_headers(challenge) -> Dict[str, str]:
    """Plain headers describing a payment challenge."""
    return {
        "X-Payment-Required-Amount": str(challenge.amount),
        "X-Payment-Address": challenge.payee_address or "",
        "X-Payment-Token": challenge.token_address or "",
        "X-Payment-Nonce": challenge.nonce,
        "X-Payment-Chain-Id": str(challenge.chain_id),
    }


def create_payment_requirements(
    challenge,
    resource: str,
    description: str = "File download"
) -> PaymentRequirements:
    """
    Create x402 PaymentRequirements for a challenge.

    Args:
        challenge: ChallengeIssued from the payment resolver
        resource: URL of the requested resource
        description: Description of the resource

    Returns:
        PaymentRequirements with the amount in the token's smallest units
    """
    pay_to = challenge.payee_address
    if not pay_to:
        logger.warning("PAYMENT_CONTRACT_ADDRESS not configured")
        pay_to = "0x0000000000000000000000000000000000000000"

    return PaymentRequirements(
        scheme="exact",
        network=settings.X402_NETWORK,
        max_amount_required=str(to_token_units(challenge.amount)),
        resource=resource,
        description=description,
        mime_type="application/octet-stream",
        pay_to=pay_to,
        max_timeout_seconds=CHALLENGE_TIMEOUT_SECONDS,
        asset=challenge.token_address,
        extra={
            "nonce": challenge.nonce,
            "chainId": challenge.chain_id,
            "name": settings.EIP712_DOMAIN_NAME,
            "version": settings.EIP712_DOMAIN_VERSION,
        }
    )


def create_402_response(
    challenge,
    resource: str,
    error_message: str = "Payment required"
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response for a challenge.

    Returns:
        JSONResponse with challenge headers and an x402 body
    """
    requirements = create_payment_requirements(challenge, resource)
    response_body = {
        "x402Version": X402_VERSION,
        "error": error_message,
        "amount": str(challenge.amount),
        "payeeAddress": challenge.payee_address,
        "tokenAddress": challenge.token_address,
        "nonce": challenge.nonce,
        "chainId": challenge.chain_id,
        "accepts": [requirements.model_dump(by_alias=True)],
    }

    return JSONResponse(
        status_code=402,
        content=response_body,
        headers=create_x402_headers(challenge)
    )


def encode_payment_header(envelope: PaymentEnvelope) -> str:
    """Encode an envelope as an X-PAYMENT header value."""
    payload = {
        "signature": envelope.signature,
        "txHash": envelope.tx_hash,
        "nonce": envelope.nonce,
        "timestamp": envelope.timestamp,
    }
    return safe_base64_encode(json.dumps(payload).encode("utf-8"))


def decode_payment_header(header_value: str) -> Optional[PaymentEnvelope]:
    """
    Decode the X-PAYMENT header into a PaymentEnvelope.

    Args:
        header_value: Base64-encoded JSON envelope

    Returns:
        PaymentEnvelope if successfully decoded, None otherwise
    """
    try:
        decoded_str = safe_base64_decode(header_value)
        if not decoded_str:
            logger.warning("Failed to decode X-PAYMENT header: invalid base64")
            return None

        payload = json.loads(decoded_str)
        if not isinstance(payload, dict):
            logger.warning("Failed to decode X-PAYMENT header: not a JSON object")
            return None

        timestamp = payload.get("timestamp")
        return PaymentEnvelope(
            signature=payload.get("signature"),
            tx_hash=payload.get("txHash"),
            nonce=payload.get("nonce"),
            timestamp=int(timestamp) if timestamp is not None else None,
        )

    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse X-PAYMENT header JSON: {e}")
        return None
    except Exception as e:
        logger.warning(f"Failed to decode X-PAYMENT header: {e}")
        return None
