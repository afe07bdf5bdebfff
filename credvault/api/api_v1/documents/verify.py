# =====================================================
# FILE: credvault/api/api_v1/documents/verify.py
# Public verification endpoints (hash, QR payload or uploaded file)
# =====================================================

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.orm import Session
from typing import Optional
import logging

from credvault.api.api_v1.documents.documents import read_upload
from credvault.core.dependencies import CurrentParty, get_current_party_optional, get_db, get_supervisor_dep
from credvault.core.exceptions import CredVaultError
from credvault.core.resilience import CallContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/documents", tags=["verification"])


@router.post("/verify")
async def verify_document(
    file: Optional[UploadFile] = File(None),
    documentHash: Optional[str] = Form(None),
    qrCode: Optional[str] = Form(None),
    current: Optional[CurrentParty] = Depends(get_current_party_optional),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """
    Verify a credential. Priority: QR payload, then explicit hash, then the
    hash of the uploaded file. A file sent with a hash is checked against it.
    """
    try:
        verifier = supervisor.verifier(db)
        party = current.address if current else None
        ctx = CallContext(timeout=supervisor.settings.REQUEST_TIMEOUT)
        file_bytes = await read_upload(file, supervisor.settings.MAX_UPLOAD_SIZE) if file is not None else None

        if qrCode:
            result = await verifier.verify_qr(qrCode, party, ctx)
        else:
            result = await verifier.verify(
                document_hash=documentHash or None,
                party=party,
                file_bytes=file_bytes,
                method="hash" if documentHash else "upload",
                ctx=ctx,
            )
        return {"success": True, "data": result.to_dict()}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        logger.error(f"❌ Verification error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Verification failed"
        )


@router.get("/verify/{document_hash}")
async def verify_document_by_hash(
    document_hash: str,
    current: Optional[CurrentParty] = Depends(get_current_party_optional),
    db: Session = Depends(get_db),
    supervisor=Depends(get_supervisor_dep)
):
    """Link target of the QR verification URL"""
    try:
        result = await supervisor.verifier(db).verify(
            document_hash=document_hash,
            party=current.address if current else None,
            method="link",
            ctx=CallContext(timeout=supervisor.settings.REQUEST_TIMEOUT),
        )
        return {"success": True, "data": result.to_dict()}
    except (HTTPException, CredVaultError):
        raise
    except Exception as e:
        logger.error(f"❌ Verification error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Verification failed"
        )
