# =====================================================
# FILE: credvault/models/party.py
# Operational mirror of on-chain role assignments
# =====================================================

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from credvault.core.database import Base
from credvault.models.enums import Role


class Party(Base):
    """A wallet holder with exactly one role"""
    __tablename__ = "parties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), unique=True, nullable=False, index=True)
    role = Column(Integer, nullable=False, default=Role.STUDENT.value)

    # Profile
    display_name = Column(String(100))
    email = Column(String(255))
    organization = Column(String(200))

    # False once access was revoked on the ledger
    is_active = Column(Boolean, default=True, nullable=False)
    # Block height of the last ledger event applied to this row
    last_event_block = Column(Integer, default=-1, nullable=False)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    @property
    def role_enum(self) -> Role:
        return Role(self.role)

    def __repr__(self):
        return f"<Party {self.wallet_address} role={Role(self.role).name}>"


class WalletNonce(Base):
    """One-time nonce for wallet-signed login"""
    __tablename__ = "wallet_nonces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(42), unique=True, nullable=False)
    nonce = Column(String(64), nullable=False)
    created_at = Column(DateTime, nullable=False)
