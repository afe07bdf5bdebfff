# =====================================================
# FILE: credvault/services/supervisor.py
# Process-wide state and service factories
# =====================================================
"""
The Supervisor owns everything that lives for the whole process: the
ledger and object-store clients, the role cache, the per-hash lock table,
the key wrapper and the detached pipeline tasks. Services are cheap objects
built per request from it.

The app builds one lazily through get_supervisor(); tests build their own.
"""

import asyncio
import logging
from typing import Any, ContextManager, Coroutine, Dict, Optional, Set

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from credvault.core.clock import SystemClock
from credvault.core.config import Settings, settings as default_settings
from credvault.core import database
from credvault.core.database import build_session_factory, check_connection, get_db_session, init_db
from credvault.core.resilience import RetryPolicy
from credvault.models.enums import Role
from credvault.services.blockchain_service import (
    LedgerClient, build_ledger_client, service_account_address,
)
from credvault.services.crypto_service import KeyWrapper
from credvault.services.document_store import DocumentRepository
from credvault.services.ipfs_service import ObjectStoreClient, build_object_store
from credvault.services.privacy_service import PrivacyService
from credvault.services.qrcode_service import QRCodeService
from credvault.services.reconciler import Reconciler
from credvault.services.registration_pipeline import DocumentLockTable, RegistrationPipeline
from credvault.services.role_service import DocumentAccessService, RoleCache, RoleService
from credvault.services.verification_service import VerificationService

logger = logging.getLogger(__name__)


class Supervisor:
    def __init__(
        self,
        settings: Settings = None,
        engine: Engine = None,
        session_factory: sessionmaker = None,
        clock=None,
        ledger: LedgerClient = None,
        object_store: ObjectStoreClient = None,
        retry_policy: RetryPolicy = None,
    ):
        self.settings = settings or default_settings
        if engine is None:
            engine, session_factory = database.engine, session_factory or database.SessionLocal
        self.engine = engine
        self.session_factory = session_factory or build_session_factory(self.engine)
        self.clock = clock or SystemClock()

        self.service_address = service_account_address(self.settings)
        self.ledger = ledger or build_ledger_client(self.settings, self.service_address)
        self.object_store = object_store or build_object_store(self.settings)
        self.qr = QRCodeService(self.settings.VERIFICATION_BASE_URL)
        self.key_wrapper = KeyWrapper(self.settings.MASTER_ENCRYPTION_KEY)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.RETRY_MAX_ATTEMPTS,
            initial_delay=self.settings.RETRY_INITIAL_DELAY,
            max_delay=self.settings.RETRY_MAX_DELAY,
        )

        self.role_cache = RoleCache()
        self.locks = DocumentLockTable()
        self._tasks: Set[asyncio.Task] = set()
        self.scheduler = None

    # ---- sessions ----

    def session(self) -> ContextManager[Session]:
        return get_db_session(self.session_factory)

    # ---- detached tasks ----

    def spawn(self, coro: Coroutine, name: str = None) -> asyncio.Task:
        """Run work that must finish even if the caller goes away"""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"⚠️ Task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"⚠️ Task {task.get_name()} ended with {type(error).__name__}: {error}")

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for detached tasks; their errors are already logged"""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    # ---- factories ----

    def roles(self, db: Session) -> RoleService:
        return RoleService(db, self.role_cache, self.ledger, self.clock)

    def documents(self, db: Session) -> DocumentRepository:
        return DocumentRepository(db, self.clock)

    def access(self, db: Session) -> DocumentAccessService:
        return DocumentAccessService(self.documents(db), self.roles(db), self.ledger)

    def pipeline(self) -> RegistrationPipeline:
        return RegistrationPipeline(self)

    def verifier(self, db: Session) -> VerificationService:
        return VerificationService(self, db)

    def privacy(self, db: Session) -> PrivacyService:
        return PrivacyService(self, db)

    def reconciler(self) -> Reconciler:
        return Reconciler(self)

    # ---- lifecycle ----

    async def startup(self) -> None:
        init_db(self.engine)
        with self.session() as db:
            await self.roles(db).sync_from_ledger()
        logger.info(
            f"✅ Supervisor ready (ledger={self.ledger.mode}, signer={self.ledger.signer_address}, "
            f"admins={self.role_cache.count(Role.ADMIN)})"
        )

    async def shutdown(self) -> None:
        await self.drain(timeout=self.settings.LEDGER_TX_TIMEOUT)
        for task in list(self._tasks):
            task.cancel()
        await self.object_store.aclose()
        logger.info("🛑 Supervisor stopped")

    async def health(self) -> Dict[str, Any]:
        database = check_connection(self.engine)
        try:
            ledger = await self.ledger.network_status()
        except Exception as e:
            ledger = {"status": "unhealthy", "error": str(e)}
        try:
            store = await self.object_store.health()
        except Exception as e:
            store = {"status": "unhealthy", "error": str(e)}

        scheduler_running = bool(self.scheduler is not None and self.scheduler.running)
        healthy = database and ledger.get("status") == "healthy" and store.get("status") == "healthy"
        return {
            "status": "healthy" if healthy else "degraded",
            "timestamp": self.clock.now().isoformat(),
            "services": {
                "database": {"status": "healthy" if database else "unhealthy"},
                "ledger": ledger,
                "object_store": store,
                "scheduler": {
                    "status": "running" if scheduler_running else "stopped",
                    "enabled": self.settings.SCHEDULER_ENABLED,
                },
            },
            "pipeline": {
                "detached_tasks": self.pending_tasks,
                "locked_documents": len(self.locks),
            },
        }


_supervisor: Optional[Supervisor] = None


def get_supervisor() -> Supervisor:
    global _supervisor
    if _supervisor is None:
        _supervisor = Supervisor()
    return _supervisor


def set_supervisor(supervisor: Optional[Supervisor]) -> None:
    global _supervisor
    _supervisor = supervisor
