# nanostorage/dependencies.py
"""
Service wiring.

Builds the settlement services once per process from settings. Endpoints
receive them through ``Depends(get_services)``; tests replace them with
``app.dependency_overrides``.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from nanostorage.core.config import settings
from nanostorage.scheduler.storage_fee import StorageFeeScheduler
from nanostorage.services.metadata import FileMetadataStore
from nanostorage.services.storage import BlobStore
from nanostorage.x402.balances import LocalBalanceCache
from nanostorage.x402.chain import RemoteLedgerClient
from nanostorage.x402.credit import CreditLedger
from nanostorage.x402.deposits import DepositProcessor
from nanostorage.x402.nonces import NonceRegistry
from nanostorage.x402.resolver import PaymentResolver

logger = logging.getLogger(__name__)


@dataclass
class Services:
    ledger_client: RemoteLedgerClient
    credit_ledger: CreditLedger
    nonce_registry: NonceRegistry
    resolver: PaymentResolver
    metadata: FileMetadataStore
    blobs: BlobStore
    deposits: DepositProcessor
    scheduler: StorageFeeScheduler


def build_services(storage_dir: Path, ledger_client: RemoteLedgerClient) -> Services:
    """
    Assemble the settlement services around a ledger client.

    Layout under ``storage_dir``:
        files/                  blobs
        metadata/files.json     file entries
        metadata/wallets.json   local balance cache
        metadata/payments.json  consumed payment nonces
        metadata/deposits.json  processed deposit transactions
        metadata/scheduler.json storage fee pass state
    """
    storage_dir = Path(storage_dir)
    metadata_dir = storage_dir / "metadata"

    metadata = FileMetadataStore(metadata_dir / "files.json")
    blobs = BlobStore(storage_dir / "files")
    credit_ledger = CreditLedger(ledger_client, LocalBalanceCache(metadata_dir / "wallets.json"))
    nonce_registry = NonceRegistry(metadata_dir / "payments.json")

    resolver = PaymentResolver(
        credit_ledger=credit_ledger,
        nonce_registry=nonce_registry,
        ledger_client=ledger_client,
        payee_address=ledger_client.payment_contract_address,
        token_address=settings.PAYMENT_TOKEN_ADDRESS,
        chain_id=settings.CHAIN_ID,
    )
    deposits = DepositProcessor(credit_ledger, ledger_client, metadata, metadata_dir / "deposits.json")
    scheduler = StorageFeeScheduler(credit_ledger, metadata, blobs, state_path=metadata_dir / "scheduler.json")

    return Services(
        ledger_client=ledger_client,
        credit_ledger=credit_ledger,
        nonce_registry=nonce_registry,
        resolver=resolver,
        metadata=metadata,
        blobs=blobs,
        deposits=deposits,
        scheduler=scheduler,
    )


@lru_cache()
def get_services() -> Services:
    logger.info(f"Initializing settlement services (storage: {settings.STORAGE_DIR}, chain: {settings.CHAIN_ID})")
    return build_services(Path(settings.STORAGE_DIR), RemoteLedgerClient())
