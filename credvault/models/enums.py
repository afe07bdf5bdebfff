# =====================================================
# FILE: credvault/models/enums.py
# Domain enumerations shared by models, services and the ledger contracts
# =====================================================

from enum import Enum, IntEnum


class Role(IntEnum):
    """Capability lattice; ADMIN dominates. Values match the on-chain enum."""
    STUDENT = 0
    VERIFIER = 1
    ISSUER = 2
    ADMIN = 3

    @classmethod
    def parse(cls, value) -> "Role":
        if isinstance(value, Role):
            return value
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            cleaned = value.strip()
            if cleaned.isdigit():
                return cls(int(cleaned))
            return cls[cleaned.upper()]
        raise ValueError(f"Invalid role: {value!r}")


class CredentialType(str, Enum):
    DEGREE = "degree"
    DIPLOMA = "diploma"
    CERTIFICATE = "certificate"
    TRANSCRIPT = "transcript"
    OTHER = "other"


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    BLOCKCHAIN_STORED = "blockchain_stored"
    FAILED = "failed"
    SOFT_DELETED = "soft_deleted"


class ConsentType(str, Enum):
    DATA_PROCESSING = "data_processing"
    DOCUMENT_STORAGE = "document_storage"
    BLOCKCHAIN_STORAGE = "blockchain_storage"
    ANALYTICS = "analytics"
    MARKETING = "marketing"
    THIRD_PARTY_SHARING = "third_party_sharing"
    AUDIT_LOGGING = "audit_logging"


class LegalBasis(str, Enum):
    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTERESTS = "vital_interests"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTERESTS = "legitimate_interests"


class ConsentStatus(str, Enum):
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


class DeletionRequestType(str, Enum):
    FULL_DELETION = "full_deletion"
    ANONYMIZATION = "anonymization"


class DeletionReason(str, Enum):
    GDPR_RIGHT_TO_ERASURE = "gdpr_right_to_erasure"
    USER_REQUEST = "user_request"
    DATA_RETENTION_EXPIRED = "data_retention_expired"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    OTHER = "other"


class DeletionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    XML = "xml"


class ExportStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
