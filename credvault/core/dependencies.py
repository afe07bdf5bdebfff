# =====================================================
# FILE: credvault/core/dependencies.py
# Bearer-token authentication and role gates for API routes
# =====================================================

from dataclasses import dataclass
from typing import Iterator, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
import logging

from credvault.core.exceptions import Forbidden, Unauthenticated
from credvault.core.security import verify_token
from credvault.models.enums import Role
from credvault.services.supervisor import Supervisor, get_supervisor

logger = logging.getLogger(__name__)

# Security scheme for API endpoints; missing credentials are handled below
security = HTTPBearer(auto_error=False)


@dataclass
class CurrentParty:
    address: str
    role: Optional[Role]

    @property
    def role_name(self) -> str:
        return self.role.name if self.role is not None else "UNREGISTERED"


def get_supervisor_dep() -> Supervisor:
    return get_supervisor()


def get_db(supervisor: Supervisor = Depends(get_supervisor_dep)) -> Iterator[Session]:
    """Request-scoped session from the supervisor's factory"""
    db = supervisor.session_factory()
    try:
        yield db
    finally:
        db.close()


def _resolve(token: str, supervisor: Supervisor, db: Session) -> CurrentParty:
    payload = verify_token(token, supervisor.settings)
    if not payload or not payload.get("sub"):
        raise Unauthenticated("Invalid or expired token")

    address = str(payload["sub"]).lower()
    # Role comes from the mirrored ledger state, not from the token claim
    role = supervisor.roles(db).get_role(address)
    return CurrentParty(address=address, role=role)


async def get_current_party(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    supervisor: Supervisor = Depends(get_supervisor_dep),
    db: Session = Depends(get_db),
) -> CurrentParty:
    """
    Authenticated caller from the Authorization header.

    Raises Unauthenticated when the header is missing or the token is bad.
    """
    if not credentials or not credentials.credentials:
        logger.warning(f"⚠️ Unauthenticated API access to: {request.url.path}")
        raise Unauthenticated("Not authenticated")
    return _resolve(credentials.credentials, supervisor, db)


async def get_current_party_optional(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    supervisor: Supervisor = Depends(get_supervisor_dep),
    db: Session = Depends(get_db),
) -> Optional[CurrentParty]:
    """Same as get_current_party, but anonymous callers get None"""
    if not credentials or not credentials.credentials:
        return None
    try:
        return _resolve(credentials.credentials, supervisor, db)
    except Unauthenticated:
        return None


def require_role(min_role: Role):
    """Dependency factory: caller must hold min_role or higher"""

    async def checker(party: CurrentParty = Depends(get_current_party)) -> CurrentParty:
        if party.role is None or party.role < min_role:
            logger.warning(f"⚠️ {party.address} ({party.role_name}) denied, {min_role.name} required")
            raise Forbidden(f"{min_role.name} role required")
        return party

    return checker
