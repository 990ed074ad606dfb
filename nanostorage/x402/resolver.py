# nanostorage/x402/resolver.py
"""
Payment resolver: the per-download settlement decision.

For a download of ``file_size_bytes`` the resolver decides between:
1. Prepaid credit: the wallet holds enough credit. An optional wallet
   signature over "Download {fileId}" is checked; without one, holding
   the credit is itself the authorization. The fee is deducted.
2. One-shot payment: an EIP-712 signature or a confirmed payment
   transaction, identified by a nonce that can be consumed only once.
   A payment transaction hash is consumed along with its nonce, so one
   on-chain payment pays for one download.
   Settles on-chain, so nothing is deducted from credit.
3. Challenge: no authorization at all. A fresh nonce and the fee are
   returned so the client can build the payment.

Outcomes are Granted, ChallengeIssued or Denied. A denial has no side
effects: nothing is deducted and no nonce is consumed.
"""
import logging
import secrets
from contextlib import ExitStack
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Mapping, Optional, Union

from nanostorage.x402 import audit
from nanostorage.x402.challenge import X_PAYMENT_HEADER, PaymentEnvelope, decode_payment_header
from nanostorage.x402.chain import RemoteLedgerClient
from nanostorage.x402.credit import CreditLedger
from nanostorage.x402.errors import (
    InvalidAuthorization,
    NonceAlreadyConsumed,
    RemoteLedgerError,
    RemoteRejected,
)
from nanostorage.x402.locks import KeyedLock
from nanostorage.x402.nonces import NonceRegistry
from nanostorage.x402.pricing import round_up_to_minimum_unit, to_token_units, transfer_fee
from nanostorage.x402.signatures import (
    PaymentMessage,
    download_message,
    get_payment_domain,
    verify_payment_signature,
    verify_wallet_signature,
)

logger = logging.getLogger(__name__)

WALLET_SIGNATURE_HEADER = "x-wallet-signature"
PAYMENT_SIGNATURE_HEADER = "x-payment-signature"
PAYMENT_TX_HASH_HEADER = "x-payment-tx-hash"
PAYMENT_NONCE_HEADER = "x-payment-nonce"
PAYMENT_TIMESTAMP_HEADER = "x-payment-timestamp"

METHOD_CREDIT = "credit"
METHOD_SIGNATURE = "x402-signature"
METHOD_TRANSACTION = "x402-transaction"


@dataclass(frozen=True)
class Granted:
    """Download allowed."""
    method: str
    amount: Decimal
    balance: Optional[Decimal] = None


@dataclass(frozen=True)
class ChallengeIssued:
    """Payment required; the client must pay ``amount`` using ``nonce``."""
    amount: Decimal
    payee_address: Optional[str]
    token_address: str
    nonce: str
    chain_id: int


@dataclass(frozen=True)
class Denied:
    """Authorization presented but rejected."""
    reason: str


PaymentOutcome = Union[Granted, ChallengeIssued, Denied]


def generate_nonce() -> str:
    """Fresh 32-byte nonce as hex."""
    return secrets.token_hex(32)


def _consumption_keys(envelope: PaymentEnvelope) -> List[str]:
    """Registry keys an accepted authorization consumes: the nonce, then the tx hash if any."""
    keys = [envelope.nonce]
    if envelope.tx_hash:
        keys.append(f"tx:{envelope.tx_hash.lower()}")
    return keys


def _parse_timestamp(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidAuthorization(f"Invalid payment timestamp: {value}") from e


def extract_payment_authorization(headers: Mapping[str, str]) -> Optional[PaymentEnvelope]:
    """
    Find a one-shot payment authorization in request headers.

    Individual X-Payment-* headers take precedence over an X-PAYMENT envelope.

    Returns:
        PaymentEnvelope, or None if no authorization was presented

    Raises:
        InvalidAuthorization: If an authorization is present but malformed
    """
    signature = headers.get(PAYMENT_SIGNATURE_HEADER)
    tx_hash = headers.get(PAYMENT_TX_HASH_HEADER)
    if signature or tx_hash:
        return PaymentEnvelope(
            signature=signature or None,
            tx_hash=tx_hash or None,
            nonce=headers.get(PAYMENT_NONCE_HEADER) or None,
            timestamp=_parse_timestamp(headers.get(PAYMENT_TIMESTAMP_HEADER)),
        )

    raw_envelope = headers.get(X_PAYMENT_HEADER.lower())
    if not raw_envelope:
        return None

    envelope = decode_payment_header(raw_envelope)
    if envelope is None:
        raise InvalidAuthorization("Malformed X-PAYMENT header")
    if not envelope.signature and not envelope.tx_hash:
        raise InvalidAuthorization("X-PAYMENT header carries neither signature nor txHash")
    return envelope


class PaymentResolver:
    """Decides how a download is paid for."""

    def __init__(
        self,
        credit_ledger: CreditLedger,
        nonce_registry: NonceRegistry,
        ledger_client: RemoteLedgerClient,
        payee_address: Optional[str],
        token_address: str,
        chain_id: int,
    ):
        self._credit_ledger = credit_ledger
        self._nonce_registry = nonce_registry
        self._ledger_client = ledger_client
        self._payee_address = payee_address
        self._token_address = token_address
        self._chain_id = chain_id
        self._nonce_locks = KeyedLock()

    def process_download_payment(
        self,
        wallet_id: str,
        file_id: str,
        file_size_bytes: int,
        headers: Mapping[str, str],
    ) -> PaymentOutcome:
        """
        Settle a download request.

        Args:
            wallet_id: Requesting wallet
            file_id: Requested file
            file_size_bytes: Size of the file, used for the transfer fee
            headers: Request headers (any case)

        Returns:
            Granted, ChallengeIssued or Denied

        Raises:
            RemoteRejected: If the credit deduction was rejected by the contract
        """
        wallet_id = wallet_id.lower()
        normalized = {key.lower(): value for key, value in headers.items()}
        fee = round_up_to_minimum_unit(transfer_fee(file_size_bytes))

        if self._credit_ledger.has_sufficient(wallet_id, fee):
            wallet_signature = normalized.get(WALLET_SIGNATURE_HEADER)
            if not wallet_signature:
                return self._grant_from_credit(wallet_id, file_id, fee)
            if verify_wallet_signature(download_message(file_id), wallet_signature, wallet_id):
                return self._grant_from_credit(wallet_id, file_id, fee)
            logger.warning(f"Invalid wallet signature for credit payment: wallet {wallet_id}, file {file_id}")
        else:
            logger.info(f"Insufficient credit for wallet {wallet_id}: required {fee}")

        try:
            envelope = extract_payment_authorization(normalized)
        except InvalidAuthorization as e:
            return self._deny(wallet_id, file_id, str(e))

        if envelope is None:
            return self._challenge(wallet_id, file_id, fee)

        if not envelope.nonce:
            return self._deny(wallet_id, file_id, "Payment authorization without nonce")

        return self._settle_one_shot(wallet_id, file_id, fee, envelope)

    def _grant_from_credit(self, wallet_id: str, file_id: str, fee: Decimal) -> Granted:
        try:
            new_balance = self._credit_ledger.deduct(wallet_id, fee)
        except RemoteRejected as e:
            audit.log_error(
                error_type="deduction_rejected",
                error_message=str(e),
                context={"amount": str(fee)},
                wallet_address=wallet_id,
                file_id=file_id,
            )
            raise

        audit.log_credit_deducted(wallet_id, fee, new_balance, reason="download", file_id=file_id)
        logger.info(f"Download of {file_id} paid from credit by {wallet_id}: {fee}, balance {new_balance}")
        return Granted(method=METHOD_CREDIT, amount=fee, balance=new_balance)

    def _settle_one_shot(
        self,
        wallet_id: str,
        file_id: str,
        fee: Decimal,
        envelope: PaymentEnvelope,
    ) -> PaymentOutcome:
        nonce = envelope.nonce
        keys = _consumption_keys(envelope)
        with ExitStack() as stack:
            for key in sorted(keys):
                stack.enter_context(self._nonce_locks.hold(key))

            if self._nonce_registry.is_consumed(nonce):
                return self._deny(wallet_id, file_id, "Nonce already consumed", nonce)
            if envelope.tx_hash and self._nonce_registry.is_consumed(keys[-1]):
                return self._deny(wallet_id, file_id, f"Payment transaction {envelope.tx_hash} already used", nonce)

            try:
                method = self._verify_one_shot(wallet_id, file_id, fee, envelope)
            except InvalidAuthorization as e:
                return self._deny(wallet_id, file_id, str(e), nonce)

            try:
                for key in reversed(keys):
                    self._nonce_registry.record(key, wallet_id, file_id, fee)
            except NonceAlreadyConsumed:
                return self._deny(wallet_id, file_id, "Payment authorization already consumed", nonce)

        audit.log_payment_verified(wallet_id, file_id, fee, nonce, method)
        logger.info(f"One-shot payment accepted for {file_id} by {wallet_id} ({method}), nonce {nonce[:16]}")
        return Granted(method=method, amount=fee)

    def _verify_one_shot(self, wallet_id: str, file_id: str, fee: Decimal, envelope: PaymentEnvelope) -> str:
        """
        Verify a one-shot authorization.

        Returns:
            The payment method that was verified

        Raises:
            InvalidAuthorization: On any verification failure
        """
        if envelope.tx_hash:
            try:
                confirmed = self._ledger_client.verify_payment_transaction(envelope.tx_hash, wallet_id)
            except RemoteLedgerError as e:
                raise InvalidAuthorization(f"Could not verify payment transaction: {e}") from e
            if not confirmed:
                raise InvalidAuthorization(f"Payment transaction {envelope.tx_hash} not confirmed")
            return METHOD_TRANSACTION

        if envelope.timestamp is None:
            raise InvalidAuthorization("Payment signature without timestamp")

        message = PaymentMessage(
            file_id=file_id,
            amount=to_token_units(fee, self._ledger_client.decimals),
            nonce=envelope.nonce,
            timestamp=envelope.timestamp,
        )
        domain = get_payment_domain(chain_id=self._chain_id, verifying_contract=self._payee_address)
        verify_payment_signature(message, envelope.signature, wallet_id, domain=domain)
        return METHOD_SIGNATURE

    def _challenge(self, wallet_id: str, file_id: str, fee: Decimal) -> ChallengeIssued:
        nonce = generate_nonce()
        audit.log_challenge_issued(wallet_id, file_id, fee, nonce)
        logger.info(f"Payment required for {file_id} by {wallet_id}: {fee}")
        return ChallengeIssued(
            amount=fee,
            payee_address=self._payee_address,
            token_address=self._token_address,
            nonce=nonce,
            chain_id=self._chain_id,
        )

    def _deny(self, wallet_id: str, file_id: str, reason: str, nonce: Optional[str] = None) -> Denied:
        audit.log_payment_denied(wallet_id, file_id, reason, nonce)
        logger.warning(f"Payment denied for {file_id} by {wallet_id}: {reason}")
        return Denied(reason=reason)
