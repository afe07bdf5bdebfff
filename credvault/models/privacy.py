# =====================================================
# FILE: credvault/models/privacy.py
# Consent log, deletion requests and export requests
# =====================================================

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from credvault.core.database import Base
from credvault.models.enums import ConsentStatus, DeletionStatus, ExportStatus


class ConsentRecord(Base):
    __tablename__ = "consent_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False, index=True)
    consent_type = Column(String(50), nullable=False, index=True)
    purpose = Column(String(500), nullable=False)
    data_categories = Column(JSON, default=list)
    legal_basis = Column(String(50), nullable=False, default="consent")
    consent_given = Column(Boolean, nullable=False, default=False)
    consent_version = Column(String(10), nullable=False, default="1.0")
    consent_date = Column(DateTime, nullable=False)
    retention_period_days = Column(Integer, nullable=False, default=2555)
    withdrawal_date = Column(DateTime)
    status = Column(String(20), nullable=False, default=ConsentStatus.ACTIVE.value)
    ip_address = Column(String(64))
    user_agent = Column(String(255))

    __table_args__ = (
        Index('ix_consent_party_type_status', 'wallet_address', 'consent_type', 'status'),
    )


class DeletionRequest(Base):
    __tablename__ = "deletion_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False, index=True)
    request_type = Column(String(30), nullable=False)
    reason = Column(String(50), nullable=False)
    data_categories = Column(JSON, default=list)
    # Set for retention-driven requests so repeated sweeps stay idempotent
    consent_type = Column(String(50))
    status = Column(String(20), nullable=False, default=DeletionStatus.PENDING.value, index=True)
    verification_code_hash = Column(String(255), nullable=False)
    verification_expiry = Column(DateTime, nullable=False)
    request_date = Column(DateTime, nullable=False)
    completion_date = Column(DateTime)
    processed_by = Column(String(42))
    deletion_results = Column(JSON)
    notes = Column(Text)


class ExportRequest(Base):
    __tablename__ = "export_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False, index=True)
    export_format = Column(String(10), nullable=False, default="json")
    data_categories = Column(JSON, default=list)
    status = Column(String(20), nullable=False, default=ExportStatus.PENDING.value, index=True)
    request_date = Column(DateTime, nullable=False)
    completion_date = Column(DateTime)
    expiry_date = Column(DateTime, nullable=False)
    generated_file = Column(Text)
    file_size = Column(Integer)
    download_count = Column(Integer, nullable=False, default=0)
    max_downloads = Column(Integer, nullable=False, default=3)
