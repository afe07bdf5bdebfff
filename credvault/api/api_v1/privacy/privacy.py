# =====================================================
# FILE: credvault/api/api_v1/privacy/privacy.py
# Consent, erasure and data export endpoints
# =====================================================

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import List, Optional
import logging

from credvault.core.dependencies import CurrentParty, get_current_party, get_db, get_supervisor_dep, require_role
from credvault.core.exceptions import CredVaultError, NotFound
from credvault.models.enums import DeletionReason, DeletionRequestType, Role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/privacy", tags=["privacy"])

EXPORT_MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv",
    "xml": "application/xml",
}

# =====================================================
# REQUEST SCHEMAS
# =====================================================

class ConsentRequest(BaseModel):
    consentType: str
    consentGiven: bool = True
    purpose: Optional[str] = Field(None, max_length=500)
    dataCategories: Optional[List[str]] = None
    legalBasis: str = "consent"
    retentionPeriodDays: Optional[int] = Field(None, ge=1)


class DeletionCreateRequest(BaseModel):
    requestType: str = DeletionRequestType.FULL_DELETION.value
    reason: str = DeletionReason.USER_REQUEST.value
    dataCategories: Optional[List[str]] = None
    notes: Optional[str] = Field(None, max_length=1000)


class DeletionProcessRequest(BaseModel):
    verificationCode: str


class ExportCreateRequest(BaseModel):
    exportFormat: str = "json"
    dataCategories: Optional[List[str]] = None


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"❌ Error while trying to {action}: {str(e)}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}"
    )

# =====================================================
# CONSENT
# =====================================================

@router.post("/consent", status_code=status.HTTP_201_CREATED)
async def record_consent(
    request_data: ConsentRequest,
    request: Request,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        privacy = supervisor.privacy(db)
        consent = privacy.record_consent(
            current.address,
            request_data.consentType,
            consent_given=request_data.consentGiven,
            purpose=request_data.purpose,
            data_categories=request_data.dataCategories,
            legal_basis=request_data.legalBasis,
            retention_period_days=request_data.retentionPeriodDays,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        return {"success": True, "data": privacy.consent_to_dict(consent)}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("record consent", e)


@router.delete("/consent/{consent_type}")
async def withdraw_consent(
    consent_type: str,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        privacy = supervisor.privacy(db)
        consent, opened = privacy.withdraw_consent(current.address, consent_type)
        data = privacy.consent_to_dict(consent)
        if opened is not None:
            deletion, code = opened
            # Only chance to see this code; confirm it via /deletion/{id}/process
            data["deletionRequest"] = privacy.deletion_to_dict(deletion)
            data["deletionRequest"]["verificationCode"] = code
        return {"success": True, "message": "Consent withdrawn", "data": data}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("withdraw consent", e)


@router.get("/consent")
async def get_consent_history(
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        privacy = supervisor.privacy(db)
        history = privacy.get_consent_history(current.address)
        return {"success": True, "data": [privacy.consent_to_dict(c) for c in history]}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("load consent history", e)

# =====================================================
# DELETION
# =====================================================

@router.post("/deletion", status_code=status.HTTP_201_CREATED)
async def create_deletion_request(
    request_data: DeletionCreateRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """
    Open an erasure request. The one-time verification code is returned
    once, in this response only.
    """
    try:
        privacy = supervisor.privacy(db)
        deletion, code = privacy.create_deletion_request(
            current.address,
            request_type=request_data.requestType,
            reason=request_data.reason,
            data_categories=request_data.dataCategories,
            notes=request_data.notes,
        )
        data = privacy.deletion_to_dict(deletion)
        data["verificationCode"] = code
        return {"success": True, "data": data}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("create deletion request", e)


@router.get("/deletion")
async def list_deletion_requests(
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        privacy = supervisor.privacy(db)
        return {
            "success": True,
            "data": [privacy.deletion_to_dict(r) for r in privacy.list_deletion_requests(current.address)],
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("list deletion requests", e)


@router.post("/deletion/{request_id}/process")
async def process_deletion_request(
    request_id: int,
    request_data: DeletionProcessRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        privacy = supervisor.privacy(db)
        deletion = privacy.get_deletion_request(request_id)
        is_admin = current.role is not None and current.role >= Role.ADMIN
        if deletion.wallet_address != current.address and not is_admin:
            raise NotFound(f"Deletion request {request_id} not found")

        deletion = await privacy.process_deletion_request(
            request_id, request_data.verificationCode, processed_by=current.address
        )
        return {"success": True, "message": "Deletion request processed", "data": privacy.deletion_to_dict(deletion)}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("process deletion request", e)


@router.post("/deletion/{request_id}/code")
async def reissue_deletion_code(
    request_id: int,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """
    Issue a fresh verification code for one of the caller's pending
    requests, including those opened by the retention sweep.
    """
    try:
        privacy = supervisor.privacy(db)
        deletion, code = privacy.reissue_deletion_code(request_id, current.address)
        data = privacy.deletion_to_dict(deletion)
        data["verificationCode"] = code
        return {"success": True, "data": data}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("reissue verification code", e)


@router.post("/deletion/{request_id}/enforce")
async def enforce_retention_request(
    request_id: int,
    current: CurrentParty = Depends(require_role(Role.ADMIN)),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        privacy = supervisor.privacy(db)
        deletion = await privacy.enforce_retention_request(request_id, processed_by=current.address)
        return {"success": True, "message": "Retention request enforced", "data": privacy.deletion_to_dict(deletion)}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("enforce retention request", e)

# =====================================================
# EXPORT
# =====================================================

@router.post("/export", status_code=status.HTTP_201_CREATED)
async def create_export(
    request_data: ExportCreateRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        privacy = supervisor.privacy(db)
        export = privacy.create_export_request(
            current.address, request_data.exportFormat, request_data.dataCategories
        )
        return {"success": True, "data": privacy.export_to_dict(export)}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("create export", e)


@router.get("/export/{export_id}/download")
async def download_export(
    export_id: int,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        content, export_format = supervisor.privacy(db).download_export(export_id, current.address)
        logger.info(f"📥 Export {export_id} downloaded by {current.address}")
        return Response(
            content=content,
            media_type=EXPORT_MEDIA_TYPES.get(export_format, "application/octet-stream"),
            headers={"Content-Disposition": f'attachment; filename="credvault-export-{export_id}.{export_format}"'}
        )
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("download export", e)
