# =====================================================
# FILE: credvault/core/exceptions.py
# Error taxonomy shared by services, jobs and routers
# =====================================================

from typing import Optional, Dict, Any


class CredVaultError(Exception):
    """
    Base class for every domain error.

    `code` is machine readable, `user_message` is safe to show to callers,
    and `detail` is the developer message (only surfaced outside production).
    """

    code = "internal_error"
    http_status = 500
    user_message = "An internal error occurred"

    def __init__(self, detail: Optional[str] = None, **context: Any):
        self.detail = detail or self.user_message
        self.context = context
        super().__init__(self.detail)

    def to_dict(self, include_detail: bool = False) -> Dict[str, Any]:
        payload = {"code": self.code, "message": self.user_message}
        if include_detail:
            payload["detail"] = self.detail
            if self.context:
                payload["context"] = self.context
        return payload


class ValidationRejected(CredVaultError):
    code = "validation_rejected"
    http_status = 400
    user_message = "The request failed validation"


class Unauthorized(CredVaultError):
    code = "unauthorized"
    http_status = 403
    user_message = "You do not have permission to perform this action"


class Unauthenticated(Unauthorized):
    code = "unauthenticated"
    http_status = 401
    user_message = "Authentication required"


class Forbidden(Unauthorized):
    code = "forbidden"
    http_status = 403


class NotFound(CredVaultError):
    code = "not_found"
    http_status = 404
    user_message = "The requested resource was not found"


class DuplicateDocument(CredVaultError):
    code = "duplicate_document"
    http_status = 409
    user_message = "Document with this hash already exists"


class TransientError(CredVaultError):
    """External dependency failed in a way that may succeed on retry"""
    http_status = 503


class StorageUnavailable(TransientError):
    code = "storage_unavailable"
    user_message = "Document storage is temporarily unavailable"


class LedgerUnavailable(TransientError):
    code = "ledger_unavailable"
    user_message = "The blockchain network is temporarily unavailable"


class LedgerTimeout(LedgerUnavailable):
    """No receipt arrived before the deadline; the transaction may still land"""
    code = "ledger_timeout"
    user_message = "The blockchain transaction is still pending"


class DatabaseUnavailable(TransientError):
    code = "database_unavailable"
    user_message = "The database is temporarily unavailable"


class Busy(TransientError):
    code = "busy"
    user_message = "The service is busy, please retry shortly"

    def __init__(self, detail: Optional[str] = None, retry_after: int = 2, **context: Any):
        super().__init__(detail, **context)
        self.retry_after = retry_after


class LedgerRejected(CredVaultError):
    code = "ledger_rejected"
    http_status = 422
    user_message = "The blockchain rejected the transaction"

    def __init__(self, reason: str, **context: Any):
        super().__init__(f"Transaction reverted: {reason}", **context)
        self.reason = reason

    def to_dict(self, include_detail: bool = False) -> Dict[str, Any]:
        payload = super().to_dict(include_detail)
        payload["reason"] = self.reason
        return payload


class LedgerDiverged(CredVaultError):
    code = "ledger_diverged"
    http_status = 500
    user_message = "An internal error occurred"


class InvalidQR(CredVaultError):
    code = "invalid_qr"
    http_status = 400
    user_message = "Invalid QR code format"


class InvalidHash(CredVaultError):
    code = "invalid_hash"
    http_status = 400
    user_message = "Invalid document hash format"


class InvalidAddress(CredVaultError):
    code = "invalid_address"
    http_status = 400
    user_message = "Invalid wallet address format"


class Cancelled(CredVaultError):
    code = "cancelled"
    http_status = 499
    user_message = "The request was cancelled"


class InternalError(CredVaultError):
    code = "internal_error"
    http_status = 500
