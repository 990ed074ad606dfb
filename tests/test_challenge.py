# tests/test_challenge.py
"""
Unit tests for 402 challenge responses and X-PAYMENT envelopes.
"""
import json
from decimal import Decimal

from x402.encoding import safe_base64_encode

from nanostorage.x402.challenge import (
    X402_VERSION,
    PaymentEnvelope,
    create_402_response,
    create_payment_requirements,
    create_x402_headers,
    decode_payment_header,
    encode_payment_header,
)
from nanostorage.x402.resolver import ChallengeIssued

PAYEE = "0x1111111111111111111111111111111111111111"
TOKEN = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
RESOURCE = "http://testserver/api/v1/files/file-1/download"


def make_challenge(**overrides):
    params = dict(
        amount=Decimal("0.01"),
        payee_address=PAYEE,
        token_address=TOKEN,
        nonce="ab" * 32,
        chain_id=84532,
    )
    params.update(overrides)
    return ChallengeIssued(**params)


class TestChallengeHeaders:
    """Test the plain challenge headers."""

    def test_headers(self):
        headers = create_x402_headers(make_challenge())

        assert headers == {
            "X-Payment-Required-Amount": "0.01",
            "X-Payment-Address": PAYEE,
            "X-Payment-Token": TOKEN,
            "X-Payment-Nonce": "ab" * 32,
            "X-Payment-Chain-Id": "84532",
        }

    def test_missing_payee_is_empty(self):
        headers = create_x402_headers(make_challenge(payee_address=None))
        assert headers["X-Payment-Address"] == ""


class TestPaymentRequirements:
    """Test x402 PaymentRequirements generation."""

    def test_amount_in_token_units(self):
        requirements = create_payment_requirements(make_challenge(), RESOURCE)

        assert requirements.max_amount_required == "10000"
        assert requirements.pay_to == PAYEE
        assert requirements.asset == TOKEN
        assert requirements.resource == RESOURCE
        assert requirements.scheme == "exact"

    def test_extra_carries_nonce_and_domain(self):
        requirements = create_payment_requirements(make_challenge(), RESOURCE)

        assert requirements.extra["nonce"] == "ab" * 32
        assert requirements.extra["chainId"] == 84532
        assert requirements.extra["name"] == "Nano Storage"

    def test_missing_payee_uses_zero_address(self):
        requirements = create_payment_requirements(make_challenge(payee_address=None), RESOURCE)
        assert requirements.pay_to == "0x0000000000000000000000000000000000000000"


class TestCreate402Response:
    """Test the full 402 response."""

    def test_status_headers_and_body(self):
        response = create_402_response(make_challenge(), RESOURCE)
        body = json.loads(response.body)

        assert response.status_code == 402
        assert response.headers["X-Payment-Nonce"] == "ab" * 32
        assert body["x402Version"] == X402_VERSION
        assert body["error"] == "Payment required"
        assert body["amount"] == "0.01"
        assert body["payeeAddress"] == PAYEE
        assert body["tokenAddress"] == TOKEN
        assert body["chainId"] == 84532
        assert body["accepts"][0]["maxAmountRequired"] == "10000"
        assert body["accepts"][0]["payTo"] == PAYEE


class TestPaymentEnvelope:
    """Test X-PAYMENT header encoding and decoding."""

    def test_encode_then_decode(self):
        envelope = PaymentEnvelope(signature="0xsig", nonce="n1", timestamp=1_700_000_000_000)
        assert decode_payment_header(encode_payment_header(envelope)) == envelope

    def test_decode_tx_hash_envelope(self):
        value = safe_base64_encode(json.dumps({"txHash": "0xabc", "nonce": "n1"}).encode("utf-8"))
        envelope = decode_payment_header(value)

        assert envelope.tx_hash == "0xabc"
        assert envelope.signature is None
        assert envelope.timestamp is None

    def test_invalid_base64(self):
        assert decode_payment_header("not-valid-base64!!!") is None

    def test_invalid_json(self):
        assert decode_payment_header(safe_base64_encode(b"not json")) is None

    def test_non_object_json(self):
        assert decode_payment_header(safe_base64_encode(b"[1, 2]")) is None

    def test_non_numeric_timestamp(self):
        value = safe_base64_encode(json.dumps({"signature": "0x", "timestamp": "soon"}).encode("utf-8"))
        assert decode_payment_header(value) is None
