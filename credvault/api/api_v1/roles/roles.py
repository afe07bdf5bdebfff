# =====================================================
# FILE: credvault/api/api_v1/roles/roles.py
# Role administration; every change is a ledger transaction
# =====================================================

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import List, Union
import logging

from credvault.core.dependencies import CurrentParty, get_current_party, get_db, get_supervisor_dep, require_role
from credvault.core.exceptions import CredVaultError, Forbidden
from credvault.core.resilience import CallContext
from credvault.models.enums import Role
from credvault.services.crypto_service import normalize_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/roles", tags=["roles"])

# =====================================================
# REQUEST SCHEMAS
# =====================================================

class AssignRoleRequest(BaseModel):
    userAddress: str
    role: Union[int, str]


class BatchAssignRequest(BaseModel):
    users: List[str] = Field(..., max_length=100)
    roles: List[Union[int, str]] = Field(..., max_length=100)


class TransferAdminRequest(BaseModel):
    newAdmin: str


def _ctx(supervisor) -> CallContext:
    return CallContext(timeout=supervisor.settings.REQUEST_TIMEOUT)


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"❌ Error while trying to {action}: {str(e)}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}"
    )

# =====================================================
# ENDPOINTS
# =====================================================

@router.post("/assign")
async def assign_role(
    request_data: AssignRoleRequest,
    current: CurrentParty = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        role = await supervisor.roles(db).assign_role(
            current.address, request_data.userAddress, request_data.role, _ctx(supervisor)
        )
        return {
            "success": True,
            "data": {"address": normalize_address(request_data.userAddress), "role": role.name},
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("assign role", e)


@router.post("/batch")
async def batch_assign_roles(
    request_data: BatchAssignRequest,
    current: CurrentParty = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        roles = await supervisor.roles(db).batch_assign_roles(
            current.address, request_data.users, request_data.roles, _ctx(supervisor)
        )
        return {
            "success": True,
            "data": [
                {"address": normalize_address(user), "role": role.name}
                for user, role in zip(request_data.users, roles)
            ],
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("batch assign roles", e)


@router.post("/transfer-admin")
async def transfer_admin(
    request_data: TransferAdminRequest,
    current: CurrentParty = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """Caller becomes ISSUER, newAdmin becomes ADMIN"""
    try:
        await supervisor.roles(db).transfer_admin(current.address, request_data.newAdmin, _ctx(supervisor))
        return {
            "success": True,
            "data": {"previousAdmin": current.address, "newAdmin": normalize_address(request_data.newAdmin)},
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("transfer admin role", e)


@router.delete("/{address}")
async def revoke_access(
    address: str,
    current: CurrentParty = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        await supervisor.roles(db).revoke_access(current.address, address, _ctx(supervisor))
        return {"success": True, "message": "Access revoked", "data": {"address": normalize_address(address)}}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("revoke access", e)


@router.get("/{address}")
async def get_role(
    address: str,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """Own role for anyone; other parties' roles for verifiers and above"""
    try:
        address = normalize_address(address)
        if address != current.address and (current.role is None or current.role < Role.VERIFIER):
            raise Forbidden("Not authorized to view other roles")
        role = supervisor.roles(db).get_role(address)
        return {
            "success": True,
            "data": {
                "address": address,
                "registered": role is not None,
                "role": role.name if role is not None else None,
            },
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("load role", e)
