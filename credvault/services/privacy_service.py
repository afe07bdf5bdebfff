# =====================================================
# FILE: credvault/services/privacy_service.py
# Consent log, deletion (crypto-shredding), exports and retention sweeps
# =====================================================
"""
Privacy and compliance service.

The ledger is immutable and the object store is content addressed, so
"delete" here means off-chain anonymization plus destroying the per-document
key. Ciphertext may stay pinned somewhere; without the key it is unreadable.
Ledger entries carry only hashes, CIDs and addresses and are retained.
"""

import csv
import io
import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from xml.sax import saxutils

from sqlalchemy.orm import Session

from credvault.core.exceptions import (
    CredVaultError, NotFound, Unauthorized, ValidationRejected,
)
from credvault.core.log_filters import redaction_filter
from credvault.core.resilience import CallContext
from credvault.core.security import hash_secret, verify_secret
from credvault.models.enums import (
    ConsentStatus, ConsentType, DeletionReason, DeletionRequestType, DeletionStatus,
    ExportFormat, ExportStatus, LegalBasis,
)
from credvault.models.party import Party
from credvault.models.privacy import ConsentRecord, DeletionRequest, ExportRequest
from credvault.services.crypto_service import normalize_address, secure_token
from credvault.services.document_store import ANONYMIZED, DocumentRepository

logger = logging.getLogger(__name__)

CONSENT_VERSION = "1.0"

DEFAULT_PURPOSES = {
    ConsentType.DATA_PROCESSING: "Processing personal data for document verification services",
    ConsentType.DOCUMENT_STORAGE: "Storing encrypted documents on IPFS for verification purposes",
    ConsentType.BLOCKCHAIN_STORAGE: "Storing document hashes on blockchain for immutable verification",
    ConsentType.ANALYTICS: "Analyzing system usage for performance improvements",
    ConsentType.MARKETING: "Sending marketing communications about our services",
    ConsentType.THIRD_PARTY_SHARING: "Sharing data with authorized third parties for verification",
    ConsentType.AUDIT_LOGGING: "Maintaining audit logs for security and compliance purposes",
}

# Data category removed when consent of this type expires
RETENTION_CATEGORIES = {
    ConsentType.DATA_PROCESSING: "profile_data",
    ConsentType.DOCUMENT_STORAGE: "document_metadata",
    ConsentType.BLOCKCHAIN_STORAGE: "document_metadata",
    ConsentType.ANALYTICS: "performance_metrics",
    ConsentType.MARKETING: "profile_data",
    ConsentType.THIRD_PARTY_SHARING: "profile_data",
    ConsentType.AUDIT_LOGGING: "audit_logs",
}

EXPORT_CATEGORIES = (
    "profile_data", "document_metadata", "consent_history", "deletion_requests", "export_requests", "all",
)

WITHDRAWAL_CATEGORIES = ["profile_data", "document_metadata", "audit_logs"]


def _parse_enum(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationRejected(f"Invalid {label}: {value!r}")


def _jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class PrivacyService:
    def __init__(self, supervisor, db: Session):
        self.supervisor = supervisor
        self.settings = supervisor.settings
        self.clock = supervisor.clock
        self.db = db
        self.documents = DocumentRepository(db, supervisor.clock)

    # =====================================================
    # Consent
    # =====================================================

    def _active_consent(self, address: str, consent_type: ConsentType) -> Optional[ConsentRecord]:
        return (
            self.db.query(ConsentRecord)
            .filter(
                ConsentRecord.wallet_address == address,
                ConsentRecord.consent_type == consent_type.value,
                ConsentRecord.status == ConsentStatus.ACTIVE.value,
            )
            .first()
        )

    def record_consent(
        self,
        address: str,
        consent_type,
        consent_given: bool = True,
        purpose: Optional[str] = None,
        data_categories: Optional[List[str]] = None,
        legal_basis="consent",
        retention_period_days: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ConsentRecord:
        """Record consent; an existing active record for the same type is superseded"""
        address = normalize_address(address)
        consent_type = _parse_enum(ConsentType, consent_type, "consent type")
        legal_basis = _parse_enum(LegalBasis, legal_basis, "legal basis")
        retention = self.settings.DEFAULT_RETENTION_DAYS if retention_period_days is None else retention_period_days
        if retention <= 0:
            raise ValidationRejected("Retention period must be positive")
        now = self.clock.now()

        previous = self._active_consent(address, consent_type)
        if previous is not None:
            previous.status = ConsentStatus.WITHDRAWN.value
            previous.withdrawal_date = now

        consent = ConsentRecord(
            wallet_address=address,
            consent_type=consent_type.value,
            purpose=purpose or DEFAULT_PURPOSES[consent_type],
            data_categories=data_categories or [],
            legal_basis=legal_basis.value,
            consent_given=bool(consent_given),
            consent_version=CONSENT_VERSION,
            consent_date=now,
            retention_period_days=retention,
            status=ConsentStatus.ACTIVE.value,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.db.add(consent)
        self.db.commit()
        logger.info(f"📝 Consent {consent_type.value}={consent.consent_given} recorded for {address}")
        return consent

    def has_consent(self, address: str, consent_type) -> bool:
        consent_type = _parse_enum(ConsentType, consent_type, "consent type")
        consent = self._active_consent(address.lower(), consent_type)
        return consent is not None and consent.consent_given

    def withdraw_consent(self, address: str, consent_type) -> Tuple[ConsentRecord, Optional[Tuple[DeletionRequest, str]]]:
        """
        Withdraw an active consent.

        Returns the consent and, for `data_processing`, the deletion request
        opened on the party's behalf together with its one-time code.
        """
        address = normalize_address(address)
        consent_type = _parse_enum(ConsentType, consent_type, "consent type")
        consent = self._active_consent(address, consent_type)
        if consent is None or not consent.consent_given:
            raise NotFound("No active consent found to withdraw")

        consent.consent_given = False
        consent.status = ConsentStatus.WITHDRAWN.value
        consent.withdrawal_date = self.clock.now()
        self.db.commit()
        logger.info(f"📝 Consent {consent_type.value} withdrawn by {address}")

        # Withdrawing processing consent means the data has to go
        opened = None
        if consent_type == ConsentType.DATA_PROCESSING:
            opened = self.create_deletion_request(
                address,
                request_type=DeletionRequestType.FULL_DELETION,
                reason=DeletionReason.CONSENT_WITHDRAWN,
                data_categories=WITHDRAWAL_CATEGORIES,
                consent_type=consent_type.value,
            )
        return consent, opened

    def get_consent_history(self, address: str) -> List[ConsentRecord]:
        return (
            self.db.query(ConsentRecord)
            .filter(ConsentRecord.wallet_address == address.lower())
            .order_by(ConsentRecord.consent_date.desc(), ConsentRecord.id.desc())
            .all()
        )

    @staticmethod
    def consent_to_dict(consent: ConsentRecord) -> Dict[str, Any]:
        return {
            "id": consent.id,
            "walletAddress": consent.wallet_address,
            "consentType": consent.consent_type,
            "purpose": consent.purpose,
            "dataCategories": consent.data_categories or [],
            "legalBasis": consent.legal_basis,
            "consentGiven": consent.consent_given,
            "consentVersion": consent.consent_version,
            "consentDate": _jsonable(consent.consent_date),
            "retentionPeriod": consent.retention_period_days,
            "withdrawalDate": _jsonable(consent.withdrawal_date),
            "status": consent.status,
        }

    # =====================================================
    # Deletion
    # =====================================================

    def create_deletion_request(
        self,
        address: str,
        request_type=DeletionRequestType.FULL_DELETION,
        reason=DeletionReason.USER_REQUEST,
        data_categories: Optional[List[str]] = None,
        consent_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Tuple[DeletionRequest, str]:
        """
        Open a deletion request.

        Returns the request and the plaintext one-time code. The code is only
        ever visible here; the database keeps a pbkdf2 hash of it.
        """
        address = normalize_address(address)
        request_type = _parse_enum(DeletionRequestType, request_type, "request type")
        reason = _parse_enum(DeletionReason, reason, "deletion reason")

        request = DeletionRequest(
            wallet_address=address,
            request_type=request_type.value,
            reason=reason.value,
            data_categories=data_categories or [],
            consent_type=consent_type,
            status=DeletionStatus.PENDING.value,
            request_date=self.clock.now(),
            notes=notes,
        )
        code = self._issue_code(request)
        redaction_filter.register(code)
        try:
            self.db.add(request)
            self.db.commit()
            logger.info(f"🗑️ Deletion request {request.id} ({request_type.value}, {reason.value}) opened for {address}")
        finally:
            # only the hash outlives this call
            redaction_filter.forget(code)
        return request, code

    def _issue_code(self, request: DeletionRequest) -> str:
        code = secure_token(8)
        request.verification_code_hash = hash_secret(code)
        request.verification_expiry = self.clock.now() + timedelta(hours=self.settings.DELETION_CODE_TTL_HOURS)
        return code

    def reissue_deletion_code(self, request_id: int, address: str) -> Tuple[DeletionRequest, str]:
        """
        Give the owner a fresh code for a pending request. Requests opened by
        the system (retention sweep) reach the party this way.
        """
        request = self.get_deletion_request(request_id)
        if request.wallet_address != normalize_address(address):
            raise NotFound(f"Deletion request {request_id} not found")
        if request.status != DeletionStatus.PENDING.value:
            raise ValidationRejected(f"Request is {request.status}")

        code = self._issue_code(request)
        redaction_filter.register(code)
        try:
            self.db.commit()
            logger.info(f"🔑 New verification code issued for deletion request {request_id}")
        finally:
            redaction_filter.forget(code)
        return request, code

    def get_deletion_request(self, request_id: int) -> DeletionRequest:
        request = self.db.query(DeletionRequest).filter(DeletionRequest.id == request_id).first()
        if request is None:
            raise NotFound(f"Deletion request {request_id} not found")
        return request

    def list_deletion_requests(self, address: str) -> List[DeletionRequest]:
        return (
            self.db.query(DeletionRequest)
            .filter(DeletionRequest.wallet_address == address.lower())
            .order_by(DeletionRequest.request_date.desc(), DeletionRequest.id.desc())
            .all()
        )

    async def process_deletion_request(self, request_id: int, code: str,
                                       processed_by: Optional[str] = None) -> DeletionRequest:
        """
        Verify the one-time code and execute the deletion.

        Fails closed: a missing, expired or wrong code leaves every document
        untouched.
        """
        request = self.get_deletion_request(request_id)
        if request.status != DeletionStatus.PENDING.value:
            raise ValidationRejected("Request has already been processed")
        if request.verification_expiry < self.clock.now():
            raise Unauthorized("Verification code has expired")
        if not verify_secret(code, request.verification_code_hash):
            logger.warning(f"⚠️ Invalid verification code for deletion request {request_id}")
            raise Unauthorized("Invalid verification code")

        return await self._run_deletion(request, processed_by)

    async def enforce_retention_request(self, request_id: int, processed_by: str) -> DeletionRequest:
        """
        Execute a pending request opened by the retention sweep. Used by an
        administrator; no party code is involved because no party asked.
        """
        request = self.get_deletion_request(request_id)
        if request.reason != DeletionReason.DATA_RETENTION_EXPIRED.value:
            raise ValidationRejected("Only retention requests can be enforced without a verification code")
        if request.status != DeletionStatus.PENDING.value:
            raise ValidationRejected("Request has already been processed")

        logger.info(f"⚖️ Retention request {request_id} enforced by {processed_by}")
        return await self._run_deletion(request, processed_by)

    async def _run_deletion(self, request: DeletionRequest, processed_by: Optional[str]) -> DeletionRequest:
        request.status = DeletionStatus.IN_PROGRESS.value
        self.db.commit()

        try:
            results = await self._execute_deletion(request)
        except CredVaultError as e:
            request.status = DeletionStatus.FAILED.value
            request.notes = e.detail
            self.db.commit()
            logger.error(f"❌ Deletion request {request.id} failed: {e.detail}")
            raise

        request.status = DeletionStatus.COMPLETED.value
        request.completion_date = self.clock.now()
        request.processed_by = processed_by.lower() if processed_by else request.wallet_address
        request.deletion_results = results

        # the expired consent is settled, later sweeps must not reopen it
        if request.reason == DeletionReason.DATA_RETENTION_EXPIRED.value and request.consent_type:
            consent = self._active_consent(request.wallet_address, ConsentType(request.consent_type))
            if consent is not None:
                consent.status = ConsentStatus.EXPIRED.value
        self.db.commit()
        logger.info(f"✅ Deletion request {request.id} completed: {results}")
        return request

    def fail_expired_deletion_requests(self, now: datetime = None) -> int:
        """Pending requests whose code ran out can no longer be confirmed"""
        now = now or self.clock.now()
        stale = (
            self.db.query(DeletionRequest)
            .filter(
                DeletionRequest.status == DeletionStatus.PENDING.value,
                DeletionRequest.verification_expiry < now,
            )
            .all()
        )
        for request in stale:
            request.status = DeletionStatus.FAILED.value
            request.notes = "Verification code expired before the request was confirmed"
        self.db.commit()
        if stale:
            logger.info(f"🧹 Closed {len(stale)} deletion request(s) with expired codes")
        return len(stale)

    def _wants(self, request: DeletionRequest, category: str) -> bool:
        return request.request_type == DeletionRequestType.FULL_DELETION.value or category in (request.data_categories or [])

    async def _execute_deletion(self, request: DeletionRequest) -> Dict[str, Any]:
        results = {
            "profile_anonymized": False,
            "documents_anonymized": 0,
            "keys_destroyed": 0,
            "ipfs_unpinned": 0,
            "ledger_entries_retained": 0,
        }
        address = request.wallet_address

        if self._wants(request, "document_metadata"):
            ctx = CallContext.background(timeout=self.settings.REQUEST_TIMEOUT)
            for document in self.documents.list_owned_by(address):
                # Each document is handled on its own; a failing unpin does not stop the rest
                if document.status != "soft_deleted":
                    self.documents.anonymize(document)
                    results["documents_anonymized"] += 1
                if self.documents.destroy_key(document):
                    results["keys_destroyed"] += 1
                if document.transaction_hash:
                    results["ledger_entries_retained"] += 1
                try:
                    if await self.supervisor.object_store.unpin(document.ipfs_cid, ctx):
                        results["ipfs_unpinned"] += 1
                except CredVaultError as e:
                    logger.warning(f"⚠️ Failed to unpin {document.ipfs_cid}: {e.detail}")

        if self._wants(request, "profile_data"):
            party = self.db.query(Party).filter(Party.wallet_address == address).first()
            if party is not None:
                party.display_name = ANONYMIZED
                party.email = ANONYMIZED
                party.organization = ANONYMIZED
                party.updated_at = self.clock.now()
                self.db.commit()
            results["profile_anonymized"] = True

        return results

    @staticmethod
    def deletion_to_dict(request: DeletionRequest) -> Dict[str, Any]:
        return {
            "id": request.id,
            "walletAddress": request.wallet_address,
            "requestType": request.request_type,
            "reason": request.reason,
            "dataCategories": request.data_categories or [],
            "consentType": request.consent_type,
            "status": request.status,
            "requestDate": _jsonable(request.request_date),
            "verificationExpiry": _jsonable(request.verification_expiry),
            "completionDate": _jsonable(request.completion_date),
            "deletionResults": request.deletion_results,
        }

    # =====================================================
    # Export
    # =====================================================

    def create_export_request(self, address: str, export_format="json",
                              data_categories: Optional[List[str]] = None) -> ExportRequest:
        """Create and immediately generate an export"""
        address = normalize_address(address)
        export_format = _parse_enum(ExportFormat, export_format, "export format")
        categories = data_categories or ["all"]
        unknown = [c for c in categories if c not in EXPORT_CATEGORIES]
        if unknown:
            raise ValidationRejected(f"Unknown data categories: {', '.join(unknown)}")
        now = self.clock.now()

        request = ExportRequest(
            wallet_address=address,
            export_format=export_format.value,
            data_categories=categories,
            status=ExportStatus.PROCESSING.value,
            request_date=now,
            expiry_date=now + timedelta(days=self.settings.EXPORT_TTL_DAYS),
            download_count=0,
            max_downloads=self.settings.EXPORT_MAX_DOWNLOADS,
        )
        self.db.add(request)
        self.db.commit()

        try:
            data = self.gather_export_data(request)
            content = self.generate_export_file(data, export_format)
        except Exception as e:
            request.status = ExportStatus.FAILED.value
            self.db.commit()
            logger.error(f"❌ Export {request.id} for {address} failed: {str(e)}")
            raise

        request.generated_file = content
        request.file_size = len(content.encode("utf-8"))
        request.status = ExportStatus.COMPLETED.value
        request.completion_date = self.clock.now()
        self.db.commit()
        logger.info(f"📦 Export {request.id} ({export_format.value}, {request.file_size} bytes) ready for {address}")
        return request

    def gather_export_data(self, request: ExportRequest) -> Dict[str, Any]:
        categories = set(request.data_categories or ["all"])
        everything = "all" in categories
        address = request.wallet_address
        data: Dict[str, Any] = {}

        if everything or "profile_data" in categories:
            party = self.db.query(Party).filter(Party.wallet_address == address).first()
            data["profile"] = {
                "walletAddress": address,
                "role": party.role_enum.name if party else None,
                "displayName": party.display_name if party else None,
                "email": party.email if party else None,
                "organization": party.organization if party else None,
                "createdAt": _jsonable(party.created_at) if party else None,
            }

        if everything or "document_metadata" in categories:
            data["documents"] = [
                {
                    "documentHash": d.document_hash,
                    "documentType": d.document_type,
                    "institutionName": d.institution_name,
                    "studentName": d.student_name,
                    "studentId": d.student_id,
                    "issueDate": _jsonable(d.issue_date),
                    "status": d.status,
                    "isActive": d.is_active,
                    "transactionHash": d.transaction_hash,
                    "createdAt": _jsonable(d.created_at),
                }
                for d in self.documents.list_owned_by(address)
            ]

        if everything or "consent_history" in categories:
            data["consents"] = [self.consent_to_dict(c) for c in self.get_consent_history(address)]

        if everything or "deletion_requests" in categories:
            data["deletionRequests"] = [self.deletion_to_dict(r) for r in self.list_deletion_requests(address)]

        if everything or "export_requests" in categories:
            data["exportRequests"] = [
                {
                    "id": r.id,
                    "exportFormat": r.export_format,
                    "status": r.status,
                    "requestDate": _jsonable(r.request_date),
                    "expiryDate": _jsonable(r.expiry_date),
                    "downloadCount": r.download_count,
                }
                for r in self.db.query(ExportRequest).filter(ExportRequest.wallet_address == address).all()
                if r.id != request.id
            ]

        return data

    def generate_export_file(self, data: Dict[str, Any], export_format) -> str:
        export_format = _parse_enum(ExportFormat, export_format, "export format")
        if export_format == ExportFormat.CSV:
            return self._to_csv(data)
        if export_format == ExportFormat.XML:
            return self._to_xml(data)
        return json.dumps(data, indent=2, default=str)

    @staticmethod
    def _to_csv(data: Dict[str, Any]) -> str:
        """One section per entity; every field quoted and XML-escaped"""
        out = io.StringIO()
        writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
        for section, content in data.items():
            out.write(f"\n--- {section.upper()} ---\n")
            rows = content if isinstance(content, list) else ([content] if content else [])
            if not rows:
                continue
            headers = list(rows[0].keys())
            writer.writerow(headers)
            for row in rows:
                writer.writerow([escape_xml(_xml_text(row.get(h))) for h in headers])
        return out.getvalue()

    @staticmethod
    def _to_xml(data: Dict[str, Any]) -> str:
        lines = ['<?xml version="1.0" encoding="UTF-8"?>', "<export>"]
        for section, content in data.items():
            lines.append(f"  <{section}>")
            if isinstance(content, list):
                for index, item in enumerate(content):
                    lines.append(f"    <item_{index}>")
                    for key, value in item.items():
                        lines.append(f"      <{key}>{escape_xml(_xml_text(value))}</{key}>")
                    lines.append(f"    </item_{index}>")
            elif content:
                for key, value in content.items():
                    lines.append(f"    <{key}>{escape_xml(_xml_text(value))}</{key}>")
            lines.append(f"  </{section}>")
        lines.append("</export>")
        return "\n".join(lines)

    def get_export_request(self, export_id: int) -> ExportRequest:
        request = self.db.query(ExportRequest).filter(ExportRequest.id == export_id).first()
        if request is None:
            raise NotFound(f"Export request {export_id} not found")
        return request

    def download_export(self, export_id: int, address: str) -> Tuple[str, str]:
        """Returns (content, format). Counts against the download limit."""
        request = self.get_export_request(export_id)
        if request.wallet_address != address.lower():
            raise NotFound(f"Export request {export_id} not found")
        if request.status == ExportStatus.EXPIRED.value or request.expiry_date < self.clock.now():
            raise ValidationRejected("Export has expired")
        if request.status != ExportStatus.COMPLETED.value or request.generated_file is None:
            raise ValidationRejected(f"Export is {request.status}")
        if request.download_count >= request.max_downloads:
            raise ValidationRejected("Download limit reached")

        request.download_count += 1
        self.db.commit()
        return request.generated_file, request.export_format

    def cleanup_expired_exports(self, now: datetime = None) -> int:
        now = now or self.clock.now()
        expired = (
            self.db.query(ExportRequest)
            .filter(ExportRequest.expiry_date < now, ExportRequest.status != ExportStatus.EXPIRED.value)
            .all()
        )
        for request in expired:
            request.status = ExportStatus.EXPIRED.value
            request.generated_file = None
        self.db.commit()
        if expired:
            logger.info(f"🧹 Expired {len(expired)} export(s)")
        return len(expired)

    @staticmethod
    def export_to_dict(request: ExportRequest) -> Dict[str, Any]:
        return {
            "id": request.id,
            "exportFormat": request.export_format,
            "dataCategories": request.data_categories or [],
            "status": request.status,
            "requestDate": _jsonable(request.request_date),
            "completionDate": _jsonable(request.completion_date),
            "expiryDate": _jsonable(request.expiry_date),
            "fileSize": request.file_size,
            "downloadCount": request.download_count,
            "maxDownloads": request.max_downloads,
            "downloadUrl": f"/api/privacy/export/{request.id}/download",
        }

    # =====================================================
    # Retention
    # =====================================================

    def check_retention_compliance(self, now: datetime = None) -> Dict[str, int]:
        """
        Open a deletion request for every active consent past its retention
        period. A pending retention request for the same party and consent
        type suppresses a new one, so repeated sweeps are no-ops. Pending
        requests whose code has expired are failed first, so an unconfirmed
        request does not block enforcement forever.
        """
        now = now or self.clock.now()
        closed = self.fail_expired_deletion_requests(now)
        active = (
            self.db.query(ConsentRecord)
            .filter(ConsentRecord.status == ConsentStatus.ACTIVE.value, ConsentRecord.consent_given.is_(True))
            .all()
        )
        expired = [c for c in active if c.consent_date + timedelta(days=c.retention_period_days) < now]

        created = 0
        for consent in expired:
            pending = (
                self.db.query(DeletionRequest)
                .filter(
                    DeletionRequest.wallet_address == consent.wallet_address,
                    DeletionRequest.consent_type == consent.consent_type,
                    DeletionRequest.reason == DeletionReason.DATA_RETENTION_EXPIRED.value,
                    DeletionRequest.status == DeletionStatus.PENDING.value,
                )
                .first()
            )
            if pending is not None:
                continue
            category = RETENTION_CATEGORIES.get(ConsentType(consent.consent_type), "profile_data")
            # The party gets a code through reissue_deletion_code; an admin may enforce instead
            self.create_deletion_request(
                consent.wallet_address,
                request_type=DeletionRequestType.ANONYMIZATION,
                reason=DeletionReason.DATA_RETENTION_EXPIRED,
                data_categories=[category],
                consent_type=consent.consent_type,
                notes="Opened by retention sweep",
            )
            created += 1

        logger.info(
            f"🔄 Retention compliance check: {len(expired)} expired consent(s), {created} request(s) created, "
            f"{closed} stale request(s) closed"
        )
        return {"expiredConsents": len(expired), "deletionRequestsCreated": created, "staleRequestsClosed": closed}


def _xml_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return str(_jsonable(value))


def escape_xml(text: str) -> str:
    return saxutils.escape(str(text), {'"': "&quot;", "'": "&apos;"})
