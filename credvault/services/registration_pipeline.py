# =====================================================
# FILE: credvault/services/registration_pipeline.py
# Staged document registration: hash, encrypt, pin, draft, anchor, finalize, QR
# =====================================================
"""
Registration pipeline.

    1 admission     role, quota, MIME type, size, metadata ranges, backpressure
    2 hash          SHA-256 of the plaintext
    3 duplicate     existing record that is not `failed` -> DuplicateDocument
    4 key           fresh AES-256 key and nonce
    5 encrypt       AES-GCM, document hash as associated data
    6 pin           ciphertext to the object store (retried)
    7 draft         Document row in `uploaded` state (unpin on failure)
    8 anchor        registerDocument on the ledger
    9 finalize      tx details, status -> blockchain_stored
   10 qr            verification URL + PNG/SVG

Stages 3 to 10 run under a per-hash lock in a task owned by the supervisor.
Cancelling before stage 6 aborts with no side effects. Cancelling later makes
register() raise Cancelled while the task keeps going; anything left in
`uploaded` is picked up by the reconciler.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from credvault.core.exceptions import (
    Cancelled, CredVaultError, DatabaseUnavailable, DuplicateDocument, Forbidden,
    LedgerRejected, LedgerUnavailable, StorageUnavailable, TransientError, ValidationRejected,
)
from credvault.core.log_filters import redaction_filter
from credvault.core.resilience import CallContext
from credvault.models.enums import CredentialType, DocumentStatus, Role
from credvault.services.crypto_service import (
    ALGORITHM, compute_document_hash, encrypt_document, generate_document_key,
    generate_nonce, normalize_address,
)
from credvault.services.document_store import DocumentRepository

logger = logging.getLogger(__name__)

GAS_WARNING_RATIO = 1.5
ALREADY_EXISTS = "Document already exists"


class CredentialMetadata(BaseModel):
    """Declared credential metadata"""

    student_name: str = Field(..., min_length=1, max_length=100)
    student_id: str = Field(..., min_length=1, max_length=50)
    student_email: Optional[str] = Field(None, max_length=255)
    institution_name: str = Field(..., min_length=1, max_length=200)
    document_type: CredentialType
    issue_date: date
    expiry_date: Optional[date] = None
    grade: Optional[str] = Field(None, max_length=20)
    course: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator('student_name', 'student_id', 'institution_name')
    @classmethod
    def strip_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @model_validator(mode='after')
    def check_dates(self):
        if self.expiry_date is not None and self.expiry_date <= self.issue_date:
            raise ValueError("expiry_date must be after issue_date")
        return self

    def anchor_json(self) -> str:
        """Ledger metadata. Carries no personal data."""
        return json.dumps({
            "documentType": self.document_type.value,
            "institutionName": self.institution_name,
            "issueDate": self.issue_date.isoformat(),
        }, sort_keys=True)


@dataclass
class RegistrationRequest:
    file_bytes: bytes
    file_name: str
    mime_type: str
    metadata: Any
    owner_address: Optional[str] = None


class ActivityLog:
    """Step log returned with the result; never holds key material"""

    def __init__(self, document_ref: str = "pending"):
        self.document_ref = document_ref
        self.activities: List[Dict[str, Any]] = []

    def log_activity(self, step: str, status: str, details: str, metadata: dict = None) -> dict:
        activity = {
            "id": str(uuid.uuid4()),
            "timestamp": datetime.utcnow().isoformat(),
            "step": step,
            "status": status,  # 'processing', 'success', 'error'
            "details": details,
            "metadata": metadata or {},
        }
        self.activities.append(activity)
        log = logger.error if status == "error" else logger.info
        log(f"🔗 [{step}] {details}")
        return activity


@dataclass
class RegistrationResult:
    document_hash: str
    transaction_hash: str
    block_number: int
    ipfs_cid: str
    explorer_url: str
    gas_used: int
    status: str
    qr_code: Any
    document: Dict[str, Any]
    activities: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentHash": self.document_hash,
            "transactionId": self.transaction_hash,
            "blockNumber": self.block_number,
            "ipfsCid": self.ipfs_cid,
            "status": self.status,
            "explorerUrl": self.explorer_url,
            "blockchain": {
                "transactionHash": self.transaction_hash,
                "blockNumber": self.block_number,
                "gasUsed": self.gas_used,
                "explorerUrl": self.explorer_url,
            },
            "qrCode": self.qr_code.to_dict(),
            "fullDocument": self.document,
            "activities": self.activities,
        }


class DocumentLockTable:
    """Per-hash asyncio locks, dropped once nobody holds or waits on them"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


class RegistrationPipeline:
    def __init__(self, supervisor):
        self.supervisor = supervisor
        self.settings = supervisor.settings
        self.clock = supervisor.clock

    # ---- stage 1 ----

    def _parse_metadata(self, metadata) -> CredentialMetadata:
        if isinstance(metadata, CredentialMetadata):
            return metadata
        try:
            return CredentialMetadata.model_validate(metadata)
        except ValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) or "metadata" for err in e.errors()]
            raise ValidationRejected(f"Invalid metadata: {e.errors()[0]['msg']}", fields=fields)

    def _admit(self, request: RegistrationRequest, issuer: str, activity: ActivityLog) -> CredentialMetadata:
        activity.log_activity("admission", "processing", "Checking role, quota, file and metadata")

        with self.supervisor.session() as db:
            roles = self.supervisor.roles(db)
            role = roles.get_role(issuer)
            if role is None or role < Role.ISSUER:
                raise Forbidden(f"{issuer} may not register documents (role {role.name if role is not None else 'UNREGISTERED'})")

            quota = self.settings.ISSUER_DAILY_QUOTA
            if quota and DocumentRepository(db, self.clock).count_registered_today(issuer) >= quota:
                raise ValidationRejected(f"Daily registration quota of {quota} reached", issuer=issuer)

        size = len(request.file_bytes or b"")
        if size == 0:
            raise ValidationRejected("File is empty")
        if size > self.settings.MAX_UPLOAD_SIZE:
            raise ValidationRejected(
                f"File is {size} bytes, limit is {self.settings.MAX_UPLOAD_SIZE}", size=size
            )
        if request.mime_type not in self.settings.ALLOWED_MIME_TYPES:
            raise ValidationRejected(f"MIME type {request.mime_type!r} is not accepted")

        metadata = self._parse_metadata(request.metadata)
        if metadata.issue_date > self.clock.now().date():
            raise ValidationRejected("issue_date cannot be in the future")

        self.supervisor.object_store.gauge.ensure_capacity()
        self.supervisor.ledger.gauge.ensure_capacity()

        activity.log_activity("admission", "success", f"Admitted {size} bytes of {request.mime_type}")
        return metadata

    # ---- entry point ----

    async def register(self, request: RegistrationRequest, issuer: str, ctx: CallContext = None) -> RegistrationResult:
        ctx = ctx or CallContext(timeout=self.settings.REQUEST_TIMEOUT)
        issuer = normalize_address(issuer)
        owner = normalize_address(request.owner_address) if request.owner_address else issuer
        activity = ActivityLog()

        ctx.check("admission")
        metadata = self._admit(request, issuer, activity)

        ctx.check("hashing")
        document_hash = compute_document_hash(request.file_bytes)
        activity.document_ref = document_hash
        activity.log_activity(
            "hash_generation", "success",
            f"Generated SHA-256 hash: {document_hash[:18]}...{document_hash[-8:]}",
            {"hash_algorithm": "SHA-256"},
        )

        task = self.supervisor.spawn(
            self._run_locked(request, metadata, issuer, owner, document_hash, activity, ctx),
            name=f"register:{document_hash[:12]}",
        )
        cancel_wait = asyncio.ensure_future(ctx.wait_cancelled())
        try:
            done, _ = await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()

        if task in done:
            return task.result()
        raise Cancelled(
            f"Registration of {document_hash} cancelled by caller; any started work continues in the background",
            document_hash=document_hash,
        )

    # ---- stages 3 to 10 ----
    # Each database step uses its own short session so no connection is held
    # while the object store or the ledger is on the wire.

    def _with_record(self, document_hash: str, action):
        with self.supervisor.session() as db:
            documents = DocumentRepository(db, self.clock)
            document = documents.require(document_hash)
            return action(documents, document)

    async def _run_locked(self, request, metadata, issuer, owner, document_hash, activity, ctx) -> RegistrationResult:
        sup = self.supervisor
        async with sup.locks.hold(document_hash):
            # 3
            with sup.session() as db:
                existing = DocumentRepository(db, self.clock).get_by_hash(document_hash)
                existing_status = existing.status if existing is not None else None
            if existing_status is not None and existing_status != DocumentStatus.FAILED.value:
                activity.log_activity("duplicate_check", "error", "Document with this hash already exists")
                raise DuplicateDocument(f"{document_hash} is already {existing_status}", document_hash=document_hash)
            retrying = existing_status is not None
            activity.log_activity(
                "duplicate_check", "success",
                "Retrying previously failed record" if retrying else "No existing record",
            )

            # 4, 5
            ctx.check("key generation")
            key = generate_document_key()
            redaction_filter.register(key.hex())
            try:
                envelope = encrypt_document(request.file_bytes, key, document_hash, generate_nonce())
                activity.log_activity("encryption", "success", f"Encrypted with {ALGORITHM}")

                # Last point where cancellation is free
                ctx.check("object-store upload")
                stage_ctx = CallContext(deadline=ctx.deadline)
                return await self._persist_and_anchor(
                    retrying, request, metadata, issuer, owner,
                    document_hash, key, envelope.to_bytes(), activity, stage_ctx,
                )
            finally:
                redaction_filter.forget(key.hex())
                del key

    async def _persist_and_anchor(self, retrying, request, metadata, issuer, owner,
                                  document_hash, key, ciphertext, activity, ctx) -> RegistrationResult:
        sup = self.supervisor

        # 6
        activity.log_activity("ipfs_upload", "processing", f"Uploading {len(ciphertext)} bytes of ciphertext")
        try:
            stored = await sup.retry_policy.run(
                lambda: sup.object_store.put(ciphertext, f"{document_hash}.enc", ctx),
                ctx,
                description="object-store upload",
            )
        except TransientError as e:
            activity.log_activity("ipfs_upload", "error", "Object store unavailable")
            raise StorageUnavailable(f"Upload failed for {document_hash}: {e.detail}")
        activity.log_activity("ipfs_upload", "success", f"Stored as {stored.cid}", {"provider": stored.provider})

        # 7
        fields = {
            "document_hash": document_hash,
            "ipfs_cid": stored.cid,
            "wrapped_key": sup.key_wrapper.wrap(key, document_hash),
            "encryption_algorithm": ALGORITHM,
            "key_destroyed_at": None,
            "student_name": metadata.student_name,
            "student_id": metadata.student_id,
            "student_email": metadata.student_email,
            "institution_name": metadata.institution_name,
            "document_type": metadata.document_type.value,
            "issue_date": metadata.issue_date,
            "expiry_date": metadata.expiry_date,
            "grade": metadata.grade,
            "course": metadata.course,
            "description": metadata.description,
            "anchor_metadata": metadata.anchor_json(),
            "owner_address": owner,
            "issuer_address": sup.ledger.signer_address,
            "created_by": issuer,
            "original_name": request.file_name,
            "mime_type": request.mime_type,
            "size_bytes": len(request.file_bytes),
        }
        try:
            if retrying:
                self._with_record(document_hash, lambda documents, document: documents.reset_failed(document, fields))
            else:
                with sup.session() as db:
                    DocumentRepository(db, self.clock).insert_draft(fields)
        except (DuplicateDocument, DatabaseUnavailable) as e:
            activity.log_activity("database_storage", "error", f"Draft not persisted: {e.code}")
            await self._unpin_quietly(stored.cid)
            raise
        activity.log_activity("database_storage", "success", "Draft record stored (status uploaded)")

        # 8
        activity.log_activity("blockchain_submission", "processing", "Submitting registerDocument transaction")
        try:
            receipt = await sup.ledger.register_document(
                document_hash, owner, stored.cid, metadata.document_type.value, fields["anchor_metadata"], ctx
            )
        except LedgerRejected as e:
            activity.log_activity("blockchain_submission", "error", f"Transaction reverted: {e.reason}")
            self._with_record(
                document_hash, lambda documents, document: documents.mark_failed(document, f"LedgerRejected: {e.reason}")
            )
            if e.reason == ALREADY_EXISTS:
                raise DuplicateDocument(f"{document_hash} is already anchored", document_hash=document_hash)
            raise
        except LedgerUnavailable as e:
            # Status stays `uploaded`; the reconciler resolves it
            activity.log_activity("blockchain_submission", "error", "No receipt yet, handed to reconciler")
            self._with_record(
                document_hash, lambda documents, document: documents.note_error(document, f"{e.code}: {e.detail}")
            )
            raise

        if receipt.gas_used > GAS_WARNING_RATIO * receipt.gas_estimate:
            logger.warning(
                f"⚠️ registerDocument used {receipt.gas_used} gas, estimate was {receipt.gas_estimate}"
            )
        activity.log_activity(
            "blockchain_submission", "success", f"Anchored in block {receipt.block_number}",
            {"transaction_hash": receipt.transaction_hash, "gas_used": receipt.gas_used},
        )

        # 9
        explorer_url = sup.ledger.explorer_url(receipt.transaction_hash)

        def _finalize(documents, document):
            documents.finalize(document, receipt, explorer_url)
            return document.status, DocumentRepository.to_response(document)

        status, response = self._with_record(document_hash, _finalize)
        activity.log_activity("finalize", "success", "Record marked blockchain_stored")

        # 10
        qr = sup.qr.generate(document_hash, receipt.transaction_hash)
        activity.log_activity("qr_generation", "success", "Verification QR code generated")

        activity.log_activity(
            "completion", "success", "Credential secured on blockchain",
            {"transaction_hash": receipt.transaction_hash, "document_hash": document_hash},
        )
        return RegistrationResult(
            document_hash=document_hash,
            transaction_hash=receipt.transaction_hash,
            block_number=receipt.block_number,
            ipfs_cid=stored.cid,
            explorer_url=explorer_url,
            gas_used=receipt.gas_used,
            status=status,
            qr_code=qr,
            document=response,
            activities=activity.activities,
        )

    async def _unpin_quietly(self, cid: str) -> None:
        try:
            await self.supervisor.object_store.unpin(cid, CallContext.background(timeout=30))
        except CredVaultError as e:
            logger.warning(f"⚠️ Could not unpin {cid} after failed draft: {e.detail}")
