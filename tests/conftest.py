"""
Pytest configuration and shared fixtures.

Each test gets its own in-memory database, in-memory ledger, local object
store under tmp_path and a frozen clock, all owned by a fresh Supervisor.
"""

import asyncio
from datetime import datetime

import pytest

from credvault.core.clock import FrozenClock
from credvault.core.config import Settings
from credvault.core.database import build_engine
from credvault.core.resilience import CallContext, RetryPolicy
from credvault.models.enums import Role
from credvault.services.blockchain_service import InMemoryLedgerClient, service_account_address
from credvault.services.ipfs_service import GaugedObjectStore, LocalObjectStore
from credvault.services.registration_pipeline import RegistrationRequest
from credvault.services.supervisor import Supervisor

ISSUER = "0x" + "1" * 40
STUDENT = "0x" + "2" * 40
VERIFIER = "0x" + "3" * 40
OTHER_STUDENT = "0x" + "4" * 40
OUTSIDER = "0x" + "5" * 40

PDF_MIME = "application/pdf"


def make_pdf(seed: str = "S1", size: int = 1024) -> bytes:
    """Deterministic PDF-looking payload of exactly `size` bytes"""
    head = f"%PDF-1.4\n% credential {seed}\n".encode()
    return head + b"0" * (size - len(head))


def credential_metadata(**overrides) -> dict:
    metadata = {
        "student_name": "Alice Li",
        "student_id": "STU-001",
        "student_email": "alice@example.edu",
        "institution_name": "Example University",
        "document_type": "degree",
        "issue_date": "2024-06-15",
        "course": "BSc Computer Science",
        "grade": "First",
    }
    metadata.update(overrides)
    return metadata


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 6, 20, 12, 0, 0))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL="sqlite://",
        ENVIRONMENT="development",
        JWT_SECRET_KEY="test-secret-key",
        MASTER_ENCRYPTION_KEY="test-master-key",
        LEDGER_MODE="memory",
        IPFS_PROVIDER="local",
        LOCAL_IPFS_PATH=str(tmp_path / "ipfs"),
        VERIFICATION_BASE_URL="https://verify.credvault.test/verify",
        SCHEDULER_ENABLED=False,
        REQUEST_TIMEOUT=30.0,
        LEDGER_TX_TIMEOUT=10.0,
        RECONCILE_STALE_AFTER_SECONDS=600,
    )


@pytest.fixture
def local_store(settings):
    return LocalObjectStore(settings.LOCAL_IPFS_PATH)


@pytest.fixture
def supervisor(settings, clock, local_store):
    engine = build_engine("sqlite://")
    ledger = InMemoryLedgerClient(service_account_address(settings), settings.BLOCKCHAIN_EXPLORER_URL)
    sup = Supervisor(
        settings=settings,
        engine=engine,
        clock=clock,
        ledger=ledger,
        object_store=GaugedObjectStore(local_store),
        retry_policy=RetryPolicy(max_attempts=3, initial_delay=0.001, max_delay=0.01, jitter=0),
    )

    async def bootstrap():
        await ledger.batch_assign_roles(
            [ISSUER, STUDENT, VERIFIER, OTHER_STUDENT],
            [Role.ISSUER, Role.STUDENT, Role.VERIFIER, Role.STUDENT],
            CallContext(timeout=5),
        )
        await sup.startup()

    asyncio.run(bootstrap())
    yield sup
    engine.dispose()


@pytest.fixture
def admin(supervisor):
    """The custodial signer is the ledger deployer and first admin"""
    return supervisor.service_address


@pytest.fixture
def register(supervisor):
    """Register a credential synchronously; returns the RegistrationResult"""

    def _register(file_bytes=None, issuer=ISSUER, owner=None, mime_type=PDF_MIME, **metadata):
        request = RegistrationRequest(
            file_bytes=make_pdf() if file_bytes is None else file_bytes,
            file_name="diploma.pdf",
            mime_type=mime_type,
            metadata=credential_metadata(**metadata),
            owner_address=owner,
        )
        return asyncio.run(supervisor.pipeline().register(request, issuer))

    return _register


@pytest.fixture
def load_document(supervisor):
    """Fresh read of a Document row, detached from any session"""

    def _load(document_hash):
        with supervisor.session() as session:
            return supervisor.documents(session).get_by_hash(document_hash)

    return _load
