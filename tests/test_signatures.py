# tests/test_signatures.py
"""
Unit tests for wallet and payment signature verification.
"""
import time
from unittest.mock import patch

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from nanostorage.x402.errors import InvalidAuthorization
from nanostorage.x402.signatures import (
    PaymentMessage,
    download_message,
    encode_payment_message,
    get_payment_domain,
    is_timestamp_valid,
    recover_payment_signer,
    verify_payment_signature,
    verify_wallet_signature,
)

PAYER = Account.from_key("0x" + "22" * 32)
OTHER = Account.from_key("0x" + "33" * 32)
PAYMENT_CONTRACT = "0x1111111111111111111111111111111111111111"


def sign_text(account, text):
    return Web3.to_hex(account.sign_message(encode_defunct(text=text)).signature)


def sign_payment(account, message, domain):
    return Web3.to_hex(account.sign_message(encode_payment_message(message, domain)).signature)


def now_ms():
    return int(time.time() * 1000)


class TestWalletSignature:
    """Test personal_sign ownership proofs."""

    def test_download_message(self):
        assert download_message("abc") == "Download abc"

    def test_valid_signature(self):
        signature = sign_text(PAYER, download_message("file-1"))
        assert verify_wallet_signature("Download file-1", signature, PAYER.address) is True

    def test_address_case_insensitive(self):
        signature = sign_text(PAYER, "Download file-1")
        assert verify_wallet_signature("Download file-1", signature, PAYER.address.lower()) is True

    def test_wrong_signer(self):
        signature = sign_text(OTHER, "Download file-1")
        assert verify_wallet_signature("Download file-1", signature, PAYER.address) is False

    def test_signature_for_other_file(self):
        signature = sign_text(PAYER, "Download file-2")
        assert verify_wallet_signature("Download file-1", signature, PAYER.address) is False

    def test_malformed_signature(self):
        assert verify_wallet_signature("Download file-1", "0xdeadbeef", PAYER.address) is False


class TestTimestampWindow:
    """Test the symmetric validity window (milliseconds)."""

    def test_current_timestamp_valid(self):
        assert is_timestamp_valid(now_ms()) is True

    def test_expired_timestamp(self):
        now = 1_700_000_000_000
        assert is_timestamp_valid(now - 301_000, now_ms=now) is False
        assert is_timestamp_valid(now - 299_000, now_ms=now) is True

    def test_future_timestamp(self):
        now = 1_700_000_000_000
        assert is_timestamp_valid(now + 301_000, now_ms=now) is False
        assert is_timestamp_valid(now + 299_000, now_ms=now) is True

    def test_custom_window(self):
        now = 1_700_000_000_000
        assert is_timestamp_valid(now - 20_000, now_ms=now, window_seconds=10) is False


class TestPaymentSignature:
    """Test EIP-712 payment signatures."""

    def setup_method(self):
        self.domain = get_payment_domain(chain_id=84532, verifying_contract=PAYMENT_CONTRACT)
        self.message = PaymentMessage(file_id="file-1", amount=10_000, nonce="ab" * 32, timestamp=now_ms())

    def test_domain_fields(self):
        assert self.domain == {
            "name": "Nano Storage",
            "version": "1",
            "chainId": 84532,
            "verifyingContract": PAYMENT_CONTRACT,
        }

    @patch("nanostorage.x402.signatures.settings")
    def test_domain_without_contract(self, mock_settings):
        mock_settings.EIP712_DOMAIN_NAME = "Nano Storage"
        mock_settings.EIP712_DOMAIN_VERSION = "1"
        mock_settings.CHAIN_ID = 84532
        mock_settings.PAYMENT_CONTRACT_ADDRESS = None
        assert "verifyingContract" not in get_payment_domain()

    def test_valid_signature(self):
        signature = sign_payment(PAYER, self.message, self.domain)
        verify_payment_signature(self.message, signature, PAYER.address, domain=self.domain)

    def test_recovers_signer(self):
        signature = sign_payment(PAYER, self.message, self.domain)
        assert recover_payment_signer(self.message, signature, self.domain) == PAYER.address.lower()

    def test_wrong_signer(self):
        signature = sign_payment(OTHER, self.message, self.domain)
        with pytest.raises(InvalidAuthorization):
            verify_payment_signature(self.message, signature, PAYER.address, domain=self.domain)

    def test_tampered_amount(self):
        signature = sign_payment(PAYER, self.message, self.domain)
        tampered = PaymentMessage(file_id="file-1", amount=1, nonce=self.message.nonce, timestamp=self.message.timestamp)
        with pytest.raises(InvalidAuthorization):
            verify_payment_signature(tampered, signature, PAYER.address, domain=self.domain)

    def test_other_chain_rejected(self):
        signature = sign_payment(PAYER, self.message, get_payment_domain(chain_id=1, verifying_contract=PAYMENT_CONTRACT))
        with pytest.raises(InvalidAuthorization):
            verify_payment_signature(self.message, signature, PAYER.address, domain=self.domain)

    def test_expired_timestamp_rejected_before_recovery(self):
        stale = PaymentMessage(file_id="file-1", amount=10_000, nonce="cd" * 32, timestamp=now_ms() - 600_000)
        signature = sign_payment(PAYER, stale, self.domain)
        with pytest.raises(InvalidAuthorization, match="validity window"):
            verify_payment_signature(stale, signature, PAYER.address, domain=self.domain)

    def test_malformed_signature(self):
        with pytest.raises(InvalidAuthorization):
            verify_payment_signature(self.message, "0x1234", PAYER.address, domain=self.domain)
