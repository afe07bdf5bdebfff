# =====================================================
# FILE: credvault/models/document.py
# Credential document records, viewer lists and verification logs
# =====================================================

from sqlalchemy import (
    Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from credvault.core.database import Base
from credvault.models.enums import DocumentStatus


class Document(Base):
    """Off-chain record of an anchored credential"""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_hash = Column(String(66), unique=True, nullable=False, index=True)
    ipfs_cid = Column(String(128), nullable=False)

    # Per-document key, wrapped under the master key. NULL once crypto-shredded.
    wrapped_key = Column(Text, nullable=True)
    encryption_algorithm = Column(String(32), default="AES-256-GCM")
    key_destroyed_at = Column(DateTime)

    # Credential metadata
    student_name = Column(String(100), nullable=False)
    student_id = Column(String(50), nullable=False, index=True)
    student_email = Column(String(255))
    institution_name = Column(String(200), nullable=False)
    document_type = Column(String(20), nullable=False, index=True)
    issue_date = Column(Date, nullable=False)
    expiry_date = Column(Date)
    grade = Column(String(20))
    course = Column(String(200))
    description = Column(String(500))
    # JSON string sent with the ledger transaction; kept for resubmission
    anchor_metadata = Column(Text)

    # Access
    owner_address = Column(String(42), nullable=False, index=True)
    issuer_address = Column(String(42), nullable=False, index=True)

    # Audit
    created_by = Column(String(42), nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    verification_count = Column(Integer, default=0, nullable=False)
    last_verified_at = Column(DateTime)

    # Blockchain
    transaction_hash = Column(String(66))
    block_number = Column(Integer)
    gas_used = Column(Integer)
    contract_address = Column(String(42))
    explorer_url = Column(String(255))

    # File info
    original_name = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False)
    size_bytes = Column(Integer, nullable=False)

    # Lifecycle
    status = Column(String(32), default=DocumentStatus.UPLOADED.value, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    deactivation_reason = Column(String(500))
    deactivated_at = Column(DateTime)
    deactivated_by = Column(String(42))
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)

    viewers = relationship(
        "DocumentViewer",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index('ix_documents_status_created', 'status', 'created_at'),
    )

    @property
    def viewer_addresses(self):
        return sorted(v.viewer_address for v in self.viewers)

    def has_access(self, address: str) -> bool:
        address = address.lower()
        return (
            address == self.owner_address
            or address == self.issuer_address
            or address == self.created_by
            or address in self.viewer_addresses
        )

    def __repr__(self):
        return f"<Document {self.document_hash[:10]}... status={self.status}>"


class DocumentViewer(Base):
    """Explicit viewers granted by the owner or issuer (mirror of the ledger list)"""
    __tablename__ = "document_viewers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    viewer_address = Column(String(42), nullable=False, index=True)
    granted_by = Column(String(42))
    granted_at = Column(DateTime)

    document = relationship("Document", back_populates="viewers")

    __table_args__ = (
        UniqueConstraint('document_id', 'viewer_address', name='uq_document_viewer'),
    )


class VerificationLog(Base):
    """One row per verification attempt"""
    __tablename__ = "verification_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_hash = Column(String(66), nullable=False, index=True)
    verifier = Column(String(42), nullable=False, default="anonymous")
    method = Column(String(20), nullable=False)
    result = Column(String(32), nullable=False)
    reason = Column(String(64))
    created_at = Column(DateTime, nullable=False)
