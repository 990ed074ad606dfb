# nanostorage/x402/__init__.py
"""
Credit and payment settlement for Nano Storage.

Downloads are billed from a prepaid credit balance or through a one-shot
signed payment (x402).

Key components:
- pricing: Storage and transfer fee calculation
- chain: Remote ledger client (StorageCreditPool, PaymentContract)
- balances: Local balance cache
- credit: Credit ledger with local fallback
- nonces: At-most-once consumption of payment nonces
- signatures: EIP-712 and personal_sign verification
- resolver: Per-download settlement decision
- challenge: 402 responses and X-PAYMENT decoding
- deposits: Deposit confirmation
- audit: Settlement audit logging

Configuration is loaded from environment variables via nanostorage.core.config.
"""

__version__ = "0.1.0"
