# =====================================================
# FILE: credvault/api/api_v1/auth/login.py
# Wallet-signed login and the caller's profile
# =====================================================

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
import logging

from credvault.core.dependencies import CurrentParty, get_current_party, get_db, get_supervisor_dep
from credvault.core.exceptions import CredVaultError
from credvault.core.security import consume_login_nonce, create_access_token, issue_login_nonce, login_message
from credvault.services.crypto_service import normalize_address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["authentication"])

# =====================================================
# REQUEST SCHEMAS
# =====================================================

class NonceRequest(BaseModel):
    address: str


class LoginRequest(BaseModel):
    address: str
    signature: str


class ProfileRequest(BaseModel):
    display_name: Optional[str] = Field(None, max_length=100)
    email: Optional[str] = Field(None, max_length=255)
    organization: Optional[str] = Field(None, max_length=200)

# =====================================================
# NONCE + LOGIN
# =====================================================

@router.post("/nonce")
async def request_nonce(
    request_data: NonceRequest,
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """
    Issue a one-time nonce. The wallet signs `message` and posts it to /login.
    """
    try:
        address = normalize_address(request_data.address)
        nonce = issue_login_nonce(db, address, supervisor.clock.now())
        logger.info(f"🔑 Login nonce issued for {address}")
        return {
            "success": True,
            "address": address,
            "nonce": nonce,
            "message": login_message(nonce, supervisor.settings),
            "expiresInMinutes": supervisor.settings.LOGIN_NONCE_TTL_MINUTES,
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        logger.error(f"❌ Nonce error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not issue nonce"
        )


@router.post("/login")
async def login(
    request_data: LoginRequest,
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """
    Exchange a signed nonce for a bearer token
    """
    try:
        address = consume_login_nonce(
            db, request_data.address, request_data.signature, supervisor.clock.now(), supervisor.settings
        )
        role = supervisor.roles(db).get_role(address)
        role_name = role.name if role is not None else "UNREGISTERED"

        access_token = create_access_token(
            data={"sub": address, "role": role_name},
            settings=supervisor.settings
        )
        logger.info(f"✅ Login successful: {address} ({role_name})")
        return {
            "success": True,
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": supervisor.settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            "address": address,
            "role": role_name,
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        logger.error(f"❌ Login error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Login failed"
        )

# =====================================================
# PROFILE
# =====================================================

def _party_profile(party) -> dict:
    if party is None:
        return None
    return {
        "displayName": party.display_name,
        "email": party.email,
        "organization": party.organization,
        "isActive": party.is_active,
    }


@router.get("/me")
async def get_me(
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    party = supervisor.roles(db).get_party(current.address)
    return {
        "success": True,
        "address": current.address,
        "role": current.role_name,
        "profile": _party_profile(party),
    }


@router.put("/me")
async def update_me(
    request_data: ProfileRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """Off-chain profile fields; the role itself only changes on the ledger"""
    try:
        party = supervisor.roles(db).register_profile(
            current.address,
            display_name=request_data.display_name,
            email=request_data.email,
            organization=request_data.organization,
        )
        logger.info(f"👤 Profile updated for {current.address}")
        return {"success": True, "address": current.address, "profile": _party_profile(party)}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        logger.error(f"❌ Profile update error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not update profile"
        )
