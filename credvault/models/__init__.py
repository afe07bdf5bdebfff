from credvault.core.database import Base
from credvault.models.document import Document, DocumentViewer, VerificationLog
from credvault.models.party import Party, WalletNonce
from credvault.models.privacy import ConsentRecord, DeletionRequest, ExportRequest

__all__ = [
    "Base",
    "Document",
    "DocumentViewer",
    "VerificationLog",
    "Party",
    "WalletNonce",
    "ConsentRecord",
    "DeletionRequest",
    "ExportRequest",
]
