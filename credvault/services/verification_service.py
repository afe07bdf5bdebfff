# =====================================================
# FILE: credvault/services/verification_service.py
# Verification of anchored credentials and the decrypt path for holders
# =====================================================
"""
verify(hash) joins the ledger, the document store and the caller's access:

    a  ledger read by hash          absent   -> verified False, not_anchored
    b  document store read          absent   -> verified "true_on_chain", offchain_missing
    c  cross-check issuer/owner/cid mismatch -> verified False, divergence
    d  caller supplied bytes        mismatch -> verified False, tampered
    e  audit count incremented, attempt logged

The ledger is authoritative. A document deactivated on the ledger is
reported as verified False with reason `deactivated` and its details.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from credvault.core.exceptions import Forbidden, InternalError, NotFound, ValidationRejected
from credvault.core.resilience import CallContext
from credvault.models.document import Document
from credvault.models.enums import Role
from credvault.services.blockchain_service import LedgerDocument
from credvault.services.crypto_service import (
    compute_document_hash, constant_time_equals, decrypt_document, normalize_hash,
)
from credvault.services.document_store import DocumentRepository
from credvault.services.qrcode_service import parse_verification_url

logger = logging.getLogger(__name__)

TRUE_ON_CHAIN = "true_on_chain"

SUSPICIOUS_WINDOW_MINUTES = 10
SUSPICIOUS_THRESHOLD = 5


@dataclass
class VerificationResult:
    document_hash: str
    verified: Union[bool, str]
    reason: Optional[str]
    method: str
    verifier: str
    checked_at: datetime
    offchain_missing: bool = False
    is_active: Optional[bool] = None
    expired: bool = False
    access_granted: bool = False
    verification_count: int = 0
    ledger: Optional[Dict[str, Any]] = None
    document: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)
    warning: Optional[Dict[str, Any]] = None

    @property
    def outcome(self) -> str:
        """Value written to the verification log"""
        if self.verified is True:
            return "authentic"
        if self.verified == TRUE_ON_CHAIN:
            return "on_chain_only"
        return self.reason or "failed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentHash": self.document_hash,
            "verified": self.verified,
            "reason": self.reason,
            "state": self.outcome,
            "method": self.method,
            "verifier": self.verifier,
            "timestamp": self.checked_at.isoformat(),
            "offchainMissing": self.offchain_missing,
            "isActive": self.is_active,
            "expired": self.expired,
            "accessGranted": self.access_granted,
            "verificationCount": self.verification_count,
            "ledger": self.ledger,
            "document": self.document,
            "details": self.details,
            "warning": self.warning,
        }


@dataclass
class DownloadedDocument:
    file_bytes: bytes
    file_name: str
    mime_type: str
    document_hash: str


class VerificationService:
    def __init__(self, supervisor, db: Session):
        self.supervisor = supervisor
        self.settings = supervisor.settings
        self.clock = supervisor.clock
        self.ledger = supervisor.ledger
        self.documents = DocumentRepository(db, supervisor.clock)
        self.access = supervisor.access(db)

    def _ctx(self, ctx: Optional[CallContext]) -> CallContext:
        return ctx or CallContext(timeout=self.settings.REQUEST_TIMEOUT)

    async def verify(self, document_hash: Optional[str] = None, party: Optional[str] = None,
                     file_bytes: Optional[bytes] = None, method: str = "hash",
                     ctx: CallContext = None) -> VerificationResult:
        """Verify by hash, by uploaded bytes, or both"""
        if document_hash is None:
            if not file_bytes:
                raise ValidationRejected("Either document file, document hash, or QR code must be provided")
            document_hash = compute_document_hash(file_bytes)
            method = "upload" if method == "hash" else method
        return await self._verify(normalize_hash(document_hash), party, file_bytes, method, None, self._ctx(ctx))

    async def verify_qr(self, url: str, party: Optional[str] = None, ctx: CallContext = None) -> VerificationResult:
        """Verify a scanned QR payload; the stored transaction id must match `tx`"""
        document_hash, transaction_hash = parse_verification_url(url)
        return await self._verify(
            normalize_hash(document_hash), party, None, "qr", transaction_hash.lower(), self._ctx(ctx)
        )

    async def _verify(self, document_hash: str, party: Optional[str], file_bytes: Optional[bytes],
                      method: str, transaction_hash: Optional[str], ctx: CallContext) -> VerificationResult:
        verifier = party.lower() if party else "anonymous"
        result = VerificationResult(
            document_hash=document_hash,
            verified=False,
            reason=None,
            method=method,
            verifier=verifier,
            checked_at=self.clock.now(),
        )

        # a
        entry = await self.ledger.get_document(document_hash, ctx)
        if entry is None:
            result.reason = "not_anchored"
            return self._finish(result, None)
        result.ledger = entry.to_dict()
        result.is_active = entry.is_active

        # b
        document = self.documents.get_by_hash(document_hash)
        if document is None:
            result.verified = TRUE_ON_CHAIN
            result.offchain_missing = True
            self._check_bytes(result, file_bytes, document_hash)
            self._check_active(result, entry)
            return self._finish(result, None)

        result.access_granted = self.access.check_access(document, party)
        result.expired = document.expiry_date is not None and document.expiry_date < self.clock.now().date()

        # c
        mismatches = self._cross_check(entry, document, transaction_hash)
        if mismatches:
            result.reason = "divergence"
            result.details["mismatches"] = mismatches
            logger.warning(f"⚠️ Verification of {document_hash[:10]}... diverged on {', '.join(mismatches)}")
            return self._finish(result, document)

        # d
        result.verified = True
        self._check_bytes(result, file_bytes, document_hash)
        self._check_active(result, entry)
        return self._finish(result, document)

    @staticmethod
    def _cross_check(entry: LedgerDocument, document: Document, transaction_hash: Optional[str]) -> list:
        mismatches = []
        if entry.issuer.lower() != document.issuer_address:
            mismatches.append("issuer")
        if entry.owner.lower() != document.owner_address:
            mismatches.append("owner")
        if entry.ipfs_hash != document.ipfs_cid:
            mismatches.append("ipfsCid")
        if transaction_hash and document.transaction_hash and document.transaction_hash != transaction_hash:
            mismatches.append("transactionHash")
        return mismatches

    @staticmethod
    def _check_bytes(result: VerificationResult, file_bytes: Optional[bytes], document_hash: str) -> None:
        if file_bytes is None:
            return
        provided = compute_document_hash(file_bytes)
        matches = constant_time_equals(provided, document_hash)
        result.details["fileIntegrity"] = {"providedFileHash": provided, "hashesMatch": matches}
        if not matches:
            result.verified = False
            result.reason = "tampered"

    @staticmethod
    def _check_active(result: VerificationResult, entry: LedgerDocument) -> None:
        if result.reason is None and not entry.is_active:
            result.verified = False
            result.reason = "deactivated"
            result.details["deactivated"] = True

    def _finish(self, result: VerificationResult, document: Optional[Document]) -> VerificationResult:
        if document is not None:
            self.documents.record_verification(document)
            result.verification_count = document.verification_count
            if result.verified is True or result.reason == "deactivated":
                include_pii = result.access_granted and document.wrapped_key is not None
                result.document = DocumentRepository.to_response(document, include_pii=include_pii)

        self.documents.log_verification(
            result.document_hash, result.verifier, result.method, result.outcome, result.reason
        )

        since = self.clock.now() - timedelta(minutes=SUSPICIOUS_WINDOW_MINUTES)
        failed = self.documents.count_failed_verifications(result.document_hash, since)
        if failed >= SUSPICIOUS_THRESHOLD:
            logger.warning(f"⚠️ Suspicious verification activity on {result.document_hash[:10]}...: {failed} failures")
            result.warning = {
                "message": "Suspicious verification activity detected for this document",
                "failedAttempts": failed,
                "timeWindow": f"{SUSPICIOUS_WINDOW_MINUTES} minutes",
            }

        logger.info(f"🔍 Verification {result.document_hash[:10]}... by {result.verifier} via {result.method}: {result.outcome}")
        return result

    def history(self, document_hash: str, party: str, limit: int = 50) -> Dict[str, Any]:
        """Verification log for holders of the document and admins"""
        document = self.documents.require(normalize_hash(document_hash))
        party = party.lower()
        if not document.has_access(party) and not self.access.roles.has_role_or_higher(party, Role.ADMIN):
            raise Forbidden("Not authorized to view verification history")
        logs, stats = self.documents.verification_history(document.document_hash, limit)
        return {
            "documentHash": document.document_hash,
            "total": sum(stats.values()),
            "statistics": stats,
            "logs": [
                {
                    "verifier": log.verifier,
                    "method": log.method,
                    "result": log.result,
                    "reason": log.reason,
                    "timestamp": log.created_at.isoformat(),
                }
                for log in logs
            ],
        }

    async def download(self, document_hash: str, party: str, ctx: CallContext = None) -> DownloadedDocument:
        """Decrypt path for owner, issuer, explicit viewers and admins"""
        ctx = self._ctx(ctx)
        document = self.documents.require(normalize_hash(document_hash))
        party = party.lower()
        if not document.has_access(party) and not self.access.roles.has_role_or_higher(party, Role.ADMIN):
            raise Forbidden("No access to this document")
        if document.wrapped_key is None:
            raise NotFound("Document content is no longer available")

        ciphertext = await self.supervisor.retry_policy.run(
            lambda: self.supervisor.object_store.fetch(document.ipfs_cid, ctx),
            ctx,
            description="object-store fetch",
        )
        key = self.supervisor.key_wrapper.unwrap(document.wrapped_key, document.document_hash)
        plaintext = decrypt_document(ciphertext, key, document.document_hash)
        del key

        if not constant_time_equals(compute_document_hash(plaintext), document.document_hash):
            logger.error(f"❌ Decrypted content of {document.document_hash[:10]}... does not match its hash")
            raise InternalError("Decrypted content failed integrity check")

        logger.info(f"📥 {party} downloaded {document.document_hash[:10]}...")
        return DownloadedDocument(
            file_bytes=plaintext,
            file_name=document.original_name,
            mime_type=document.mime_type,
            document_hash=document.document_hash,
        )
