# nanostorage/core/config.py
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Nano Storage"
    API_V1_STR: str = "/api/v1"

    # Local state (wallet cache, nonce registry, file metadata, blobs)
    STORAGE_DIR: str = "storage"
    FREE_STORAGE_DAYS: int = 30

    # Remote ledger (StorageCreditPool + PaymentContract)
    RPC_URL: AnyHttpUrl = "https://sepolia.base.org"
    RPC_TIMEOUT_SECONDS: float = 10.0
    DEDUCTION_RECEIPT_TIMEOUT_SECONDS: float = 120.0
    CHAIN_ID: int = 84532
    STORAGE_CREDIT_POOL_ADDRESS: Optional[str] = None
    PAYMENT_CONTRACT_ADDRESS: Optional[str] = None
    PAYMENT_TOKEN_ADDRESS: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"  # USDC on Base Sepolia
    TOKEN_DECIMALS: int = 6
    OWNER_PRIVATE_KEY: Optional[str] = None

    # Pricing (token units, USDC)
    STORAGE_FEE_PER_GB_PER_DAY: Decimal = Decimal("0.005")
    TRANSFER_FEE_PER_GB: Decimal = Decimal("0.01")
    MIN_PAYMENT_UNIT: Decimal = Decimal("0.0001")

    # x402 one-shot payments
    X402_NETWORK: str = "base-sepolia"
    SIGNATURE_VALIDITY_WINDOW_SECONDS: int = 300  # 5 minutes, symmetric
    EIP712_DOMAIN_NAME: str = "Nano Storage"
    EIP712_DOMAIN_VERSION: str = "1"
    NONCE_RETENTION_HOURS: int = 24

    # Storage fee pass
    LOCKED_FILE_GRACE_DAYS: int = 7
    LOW_BALANCE_DAYS: int = 3
    STORAGE_FEE_ONCE_PER_DAY: bool = False
    CRON_SECRET: Optional[str] = None

    # Settlement audit log (JSON lines)
    AUDIT_LOG_ENABLED: bool = True
    AUDIT_LOG_PATH: str = "logs/settlement_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
