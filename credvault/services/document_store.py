# =====================================================
# FILE: credvault/services/document_store.py
# Document repository over the operational database
# =====================================================

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from credvault.core.exceptions import DatabaseUnavailable, DuplicateDocument, NotFound
from credvault.models.document import Document, DocumentViewer, VerificationLog
from credvault.models.enums import DocumentStatus, Role

logger = logging.getLogger(__name__)

DELETED = "[DELETED]"
ANONYMIZED = "[ANONYMIZED]"


class DocumentRepository:
    """
    All reads and writes of Document rows go through here.

    Hashes and addresses are stored lowercase; callers normalize before
    reaching the repository.
    """

    def __init__(self, db: Session, clock):
        self.db = db
        self.clock = clock

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Database error while trying to {action}: {str(e)}")
            raise DatabaseUnavailable(f"Could not {action}")

    # ---- lookups ----

    def get_by_hash(self, document_hash: str) -> Optional[Document]:
        try:
            return self.db.query(Document).filter(Document.document_hash == document_hash.lower()).first()
        except SQLAlchemyError as e:
            logger.error(f"❌ Document lookup failed: {str(e)}")
            raise DatabaseUnavailable("Could not read document")

    def require(self, document_hash: str) -> Document:
        document = self.get_by_hash(document_hash)
        if document is None:
            raise NotFound(f"Document {document_hash} not found")
        return document

    def list_for_party(
        self,
        address: str,
        role: Role,
        status: Optional[str] = None,
        document_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Document], int]:
        query = self.db.query(Document)

        if role == Role.ISSUER:
            query = query.filter(or_(Document.created_by == address, Document.issuer_address == address))
        elif role < Role.VERIFIER:
            query = query.filter(or_(
                Document.owner_address == address,
                Document.viewers.any(DocumentViewer.viewer_address == address),
            ))

        if status:
            query = query.filter(Document.status == status)
        if document_type:
            query = query.filter(Document.document_type == document_type)

        total = query.count()
        items = (
            query.order_by(Document.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total

    def list_owned_by(self, address: str) -> List[Document]:
        return self.db.query(Document).filter(Document.owner_address == address).all()

    def list_stale_uploaded(self, older_than: datetime, limit: int = 50) -> List[Document]:
        return (
            self.db.query(Document)
            .filter(Document.status == DocumentStatus.UPLOADED.value, Document.updated_at < older_than)
            .order_by(Document.updated_at.asc())
            .limit(limit)
            .all()
        )

    def count_registered_today(self, created_by: str) -> int:
        now = self.clock.now()
        start = datetime(now.year, now.month, now.day)
        return (
            self.db.query(func.count(Document.id))
            .filter(
                Document.created_by == created_by,
                Document.created_at >= start,
                Document.created_at < start + timedelta(days=1),
                Document.status != DocumentStatus.FAILED.value,
            )
            .scalar()
        )

    # ---- writes ----

    def insert_draft(self, fields: Dict[str, Any]) -> Document:
        now = self.clock.now()
        document = Document(
            **fields,
            status=DocumentStatus.UPLOADED.value,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        self.db.add(document)
        try:
            self._commit("insert draft document")
        except IntegrityError:
            raise DuplicateDocument(f"Document {fields['document_hash']} already exists")
        return document

    def reset_failed(self, document: Document, fields: Dict[str, Any]) -> Document:
        """Reuse a failed record for a fresh attempt"""
        for key, value in fields.items():
            setattr(document, key, value)
        document.status = DocumentStatus.UPLOADED.value
        document.is_active = True
        document.transaction_hash = None
        document.block_number = None
        document.gas_used = None
        document.explorer_url = None
        document.last_error = None
        document.retry_count = (document.retry_count or 0) + 1
        document.updated_at = self.clock.now()
        self._commit("reset failed document")
        return document

    def mark_failed(self, document: Document, error: str) -> None:
        document.status = DocumentStatus.FAILED.value
        document.last_error = error[:1000]
        document.updated_at = self.clock.now()
        self._commit("mark document failed")

    def note_error(self, document: Document, error: str) -> None:
        document.last_error = error[:1000]
        document.updated_at = self.clock.now()
        self._commit("record document error")

    def touch(self, document: Document) -> None:
        document.retry_count = (document.retry_count or 0) + 1
        document.updated_at = self.clock.now()
        self._commit("update document")

    def finalize(self, document: Document, receipt, explorer_url: str) -> Document:
        """uploaded -> blockchain_stored. Repeating with the same receipt is a no-op."""
        if document.status == DocumentStatus.BLOCKCHAIN_STORED.value:
            if document.transaction_hash != receipt.transaction_hash:
                logger.warning(
                    f"⚠️ {document.document_hash[:10]}... already finalized with "
                    f"{document.transaction_hash}, ignoring {receipt.transaction_hash}"
                )
            return document

        document.transaction_hash = receipt.transaction_hash.lower()
        document.block_number = receipt.block_number
        document.gas_used = receipt.gas_used
        document.contract_address = receipt.contract_address
        document.explorer_url = explorer_url
        document.status = DocumentStatus.BLOCKCHAIN_STORED.value
        document.last_error = None
        document.updated_at = self.clock.now()
        self._commit("finalize document")
        return document

    def add_viewer(self, document: Document, viewer: str, granted_by: str) -> None:
        if viewer in document.viewer_addresses:
            return
        document.viewers.append(
            DocumentViewer(viewer_address=viewer, granted_by=granted_by, granted_at=self.clock.now())
        )
        document.updated_at = self.clock.now()
        self._commit("add viewer")

    def remove_viewer(self, document: Document, viewer: str) -> bool:
        for row in list(document.viewers):
            if row.viewer_address == viewer:
                document.viewers.remove(row)
                document.updated_at = self.clock.now()
                self._commit("remove viewer")
                return True
        return False

    def set_owner(self, document: Document, new_owner: str) -> None:
        document.owner_address = new_owner
        document.updated_at = self.clock.now()
        self._commit("transfer ownership")

    def deactivate(self, document: Document, reason: str, by: str) -> None:
        document.is_active = False
        document.deactivation_reason = reason
        document.deactivated_at = self.clock.now()
        document.deactivated_by = by
        document.updated_at = self.clock.now()
        self._commit("deactivate document")

    def record_verification(self, document: Document) -> None:
        document.verification_count = (document.verification_count or 0) + 1
        document.last_verified_at = self.clock.now()
        self._commit("record verification")

    def log_verification(self, document_hash: str, verifier: Optional[str], method: str,
                         result: str, reason: Optional[str] = None) -> None:
        self.db.add(VerificationLog(
            document_hash=document_hash,
            verifier=verifier or "anonymous",
            method=method,
            result=result,
            reason=reason,
            created_at=self.clock.now(),
        ))
        self._commit("log verification")

    def count_failed_verifications(self, document_hash: str, since: datetime) -> int:
        return (
            self.db.query(func.count(VerificationLog.id))
            .filter(
                VerificationLog.document_hash == document_hash,
                VerificationLog.result.in_(("tampered", "not_anchored", "divergence")),
                VerificationLog.created_at >= since,
            )
            .scalar()
        )

    def verification_history(self, document_hash: str, limit: int = 50) -> Tuple[List[VerificationLog], Dict[str, int]]:
        logs = (
            self.db.query(VerificationLog)
            .filter(VerificationLog.document_hash == document_hash)
            .order_by(VerificationLog.created_at.desc(), VerificationLog.id.desc())
            .limit(limit)
            .all()
        )
        stats = dict(
            self.db.query(VerificationLog.result, func.count(VerificationLog.id))
            .filter(VerificationLog.document_hash == document_hash)
            .group_by(VerificationLog.result)
            .all()
        )
        return logs, stats

    def anonymize(self, document: Document) -> None:
        """Replace subject PII with sentinels and retire the record. The ledger entry is untouched."""
        document.student_name = DELETED
        document.student_id = DELETED
        document.student_email = ANONYMIZED
        document.grade = None
        document.description = None
        document.is_active = False
        document.status = DocumentStatus.SOFT_DELETED.value
        document.updated_at = self.clock.now()
        self._commit("anonymize document")

    def destroy_key(self, document: Document) -> bool:
        """Crypto-shred: without the wrapped key the stored ciphertext is unreadable"""
        if document.wrapped_key is None:
            return False
        document.wrapped_key = None
        document.key_destroyed_at = self.clock.now()
        document.updated_at = self.clock.now()
        self._commit("destroy document key")
        return True

    # ---- serialisation ----

    @staticmethod
    def to_response(document: Document, include_pii: bool = True) -> Dict[str, Any]:
        """API view of a document. Key material is never included."""

        def _iso(value):
            if isinstance(value, (datetime, date)):
                return value.isoformat()
            return value

        metadata = {
            "institutionName": document.institution_name,
            "documentType": document.document_type,
            "issueDate": _iso(document.issue_date),
            "expiryDate": _iso(document.expiry_date),
            "course": document.course,
        }
        if include_pii:
            metadata.update({
                "studentName": document.student_name,
                "studentId": document.student_id,
                "studentEmail": document.student_email,
                "grade": document.grade,
                "description": document.description,
            })

        return {
            "documentHash": document.document_hash,
            "ipfsCid": document.ipfs_cid,
            "status": document.status,
            "isActive": document.is_active,
            "metadata": metadata,
            "access": {
                "owner": document.owner_address,
                "issuer": document.issuer_address,
                "createdBy": document.created_by,
                "viewers": document.viewer_addresses,
            },
            "audit": {
                "createdAt": _iso(document.created_at),
                "updatedAt": _iso(document.updated_at),
                "verificationCount": document.verification_count,
                "lastVerifiedAt": _iso(document.last_verified_at),
            },
            "blockchain": {
                "transactionHash": document.transaction_hash,
                "blockNumber": document.block_number,
                "gasUsed": document.gas_used,
                "contractAddress": document.contract_address,
                "explorerUrl": document.explorer_url,
            },
            "fileInfo": {
                "originalName": document.original_name,
                "mimeType": document.mime_type,
                "size": document.size_bytes,
            },
            "encryption": {
                "algorithm": document.encryption_algorithm,
                "keyDestroyed": document.wrapped_key is None,
            },
            "deactivation": {
                "reason": document.deactivation_reason,
                "deactivatedAt": _iso(document.deactivated_at),
                "deactivatedBy": document.deactivated_by,
            } if not document.is_active else None,
        }
