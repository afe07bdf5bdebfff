# =====================================================
# FILE: credvault/api/api_v1/documents/documents.py
# Credential registration, listing, sharing and lifecycle endpoints
# =====================================================

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
import logging

from credvault.core.dependencies import CurrentParty, get_current_party, get_db, get_supervisor_dep, require_role
from credvault.core.exceptions import CredVaultError, Forbidden, ValidationRejected
from credvault.core.resilience import CallContext
from credvault.models.enums import Role
from credvault.services.crypto_service import normalize_hash
from credvault.services.document_store import DocumentRepository
from credvault.services.registration_pipeline import RegistrationRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/documents", tags=["documents"])


async def read_upload(file: UploadFile, limit: int) -> bytes:
    """Read at most one byte past the limit, so an oversized body is never buffered whole"""
    file_bytes = await file.read(limit + 1)
    if len(file_bytes) > limit:
        raise ValidationRejected(f"File exceeds the upload limit of {limit} bytes", limit=limit)
    return file_bytes

# =====================================================
# REQUEST SCHEMAS
# =====================================================

class ShareRequest(BaseModel):
    viewerAddress: str


class TransferRequest(BaseModel):
    newOwner: str


class DeactivateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


def _ctx(supervisor) -> CallContext:
    return CallContext(timeout=supervisor.settings.REQUEST_TIMEOUT)


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"❌ Error while trying to {action}: {str(e)}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}"
    )

# =====================================================
# REGISTER
# =====================================================

@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_document(
    file: UploadFile = File(...),
    studentName: str = Form(...),
    studentId: str = Form(...),
    institutionName: str = Form(...),
    documentType: str = Form(...),
    issueDate: str = Form(...),
    studentEmail: Optional[str] = Form(None),
    expiryDate: Optional[str] = Form(None),
    grade: Optional[str] = Form(None),
    course: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    ownerAddress: Optional[str] = Form(None),
    current: CurrentParty = Depends(require_role(Role.ISSUER)),
    supervisor=Depends(get_supervisor_dep)
):
    """
    Register a credential: hash, encrypt, pin, anchor on the ledger and
    return the verification QR code
    """
    try:
        file_bytes = await read_upload(file, supervisor.settings.MAX_UPLOAD_SIZE)
        logger.info(f"📝 Registration request from {current.address}: {file.filename} ({len(file_bytes)} bytes)")

        request = RegistrationRequest(
            file_bytes=file_bytes,
            file_name=file.filename or "document",
            mime_type=file.content_type or "application/octet-stream",
            metadata={
                "student_name": studentName,
                "student_id": studentId,
                "student_email": studentEmail or None,
                "institution_name": institutionName,
                "document_type": documentType,
                "issue_date": issueDate,
                "expiry_date": expiryDate or None,
                "grade": grade or None,
                "course": course or None,
                "description": description or None,
            },
            owner_address=ownerAddress or None,
        )
        result = await supervisor.pipeline().register(request, current.address, _ctx(supervisor))

        return {
            "success": True,
            "message": "Document registered successfully",
            "data": result.to_dict(),
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("register document", e)

# =====================================================
# READ
# =====================================================

@router.get("")
async def list_documents(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    documentType: Optional[str] = Query(None),
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """Paginated list of the documents the caller can see"""
    try:
        documents = supervisor.documents(db)
        items, total = documents.list_for_party(
            current.address,
            current.role if current.role is not None else Role.STUDENT,
            status=status_filter,
            document_type=documentType,
            page=page,
            limit=limit,
        )
        return {
            "success": True,
            "data": {
                "documents": [DocumentRepository.to_response(d) for d in items],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            },
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("list documents", e)


@router.get("/{document_hash}")
async def get_document(
    document_hash: str,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """Full record, for callers with access to the document"""
    try:
        access = supervisor.access(db)
        document = access.documents.require(normalize_hash(document_hash))
        if not access.check_access(document, current.address):
            raise Forbidden("No access to this document")
        return {"success": True, "data": DocumentRepository.to_response(document)}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("load document", e)

# =====================================================
# SHARING + LIFECYCLE
# =====================================================

@router.post("/{document_hash}/share")
async def share_document(
    document_hash: str,
    request_data: ShareRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        document = await supervisor.access(db).grant_viewer(
            document_hash, current.address, request_data.viewerAddress, _ctx(supervisor)
        )
        return {
            "success": True,
            "message": "Access granted",
            "data": {"documentHash": document.document_hash, "viewers": document.viewer_addresses},
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("share document", e)


@router.delete("/{document_hash}/share")
async def unshare_document(
    document_hash: str,
    request_data: ShareRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        document = await supervisor.access(db).revoke_viewer(
            document_hash, current.address, request_data.viewerAddress, _ctx(supervisor)
        )
        return {
            "success": True,
            "message": "Access revoked",
            "data": {"documentHash": document.document_hash, "viewers": document.viewer_addresses},
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("revoke document access", e)


@router.post("/{document_hash}/transfer")
async def transfer_document(
    document_hash: str,
    request_data: TransferRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        document = await supervisor.access(db).transfer_ownership(
            document_hash, current.address, request_data.newOwner, _ctx(supervisor)
        )
        return {
            "success": True,
            "message": "Ownership transferred",
            "data": {"documentHash": document.document_hash, "owner": document.owner_address},
        }
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("transfer ownership", e)


@router.post("/{document_hash}/deactivate")
async def deactivate_document(
    document_hash: str,
    request_data: DeactivateRequest,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        document = await supervisor.access(db).deactivate(
            document_hash, current.address, request_data.reason, _ctx(supervisor)
        )
        return {"success": True, "message": "Document deactivated", "data": DocumentRepository.to_response(document)}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("deactivate document", e)


@router.post("/{document_hash}/download")
async def download_document(
    document_hash: str,
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """Decrypted original bytes for owner, issuer, viewers and admins"""
    try:
        downloaded = await supervisor.verifier(db).download(document_hash, current.address, _ctx(supervisor))
        return Response(
            content=downloaded.file_bytes,
            media_type=downloaded.mime_type,
            headers={
                "Content-Disposition": f'attachment; filename="{downloaded.file_name}"',
                "X-Document-Hash": downloaded.document_hash,
            }
        )
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("download document", e)


@router.get("/{document_hash}/verifications")
async def verification_history(
    document_hash: str,
    limit: int = Query(50, ge=1, le=500),
    current: CurrentParty = Depends(get_current_party),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    try:
        history = supervisor.verifier(db).history(document_hash, current.address, limit)
        return {"success": True, "data": history}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        raise _internal_error("load verification history", e)
