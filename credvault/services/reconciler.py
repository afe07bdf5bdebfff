# =====================================================
# FILE: credvault/services/reconciler.py
# Drives records stuck in `uploaded` to a terminal state
# =====================================================

import logging
from datetime import datetime, timedelta
from typing import Dict

from credvault.core.exceptions import CredVaultError, LedgerDiverged, LedgerRejected
from credvault.core.resilience import CallContext
from credvault.models.document import Document
from credvault.models.enums import DocumentStatus
from credvault.services.blockchain_service import LedgerDocument, TransactionReceipt
from credvault.services.document_store import DocumentRepository

logger = logging.getLogger(__name__)

ALREADY_EXISTS = "Document already exists"


class Reconciler:
    """
    For each stale `uploaded` record, under the same per-hash lock the
    pipeline uses:

    * ledger entry with our issuer and CID -> finalize
    * ledger entry with a different issuer or CID -> LedgerDiverged alert
    * no ledger entry -> resubmit; an explicit revert marks the record failed
    """

    def __init__(self, supervisor):
        self.supervisor = supervisor
        self.settings = supervisor.settings

    async def reconcile_once(self, now: datetime = None) -> Dict[str, int]:
        sup = self.supervisor
        now = now or sup.clock.now()
        cutoff = now - timedelta(seconds=self.settings.RECONCILE_STALE_AFTER_SECONDS)
        summary = {"scanned": 0, "finalized": 0, "resubmitted": 0, "failed": 0, "diverged": 0, "errors": 0}

        try:
            with sup.session() as db:
                hashes = [
                    d.document_hash
                    for d in DocumentRepository(db, sup.clock).list_stale_uploaded(cutoff, self.settings.RECONCILE_BATCH_SIZE)
                ]
        except CredVaultError as e:
            logger.error(f"ALERT reconciler could not list stale records: {e.detail}")
            summary["errors"] += 1
            return summary

        for document_hash in hashes:
            summary["scanned"] += 1
            try:
                outcome = await self._reconcile_document(document_hash, cutoff)
            except LedgerDiverged as e:
                logger.critical(f"ALERT ledger diverged for {document_hash}: {e.detail}")
                summary["diverged"] += 1
                continue
            except CredVaultError as e:
                logger.error(f"ALERT reconciler failed for {document_hash}: {e.code} {e.detail}")
                summary["errors"] += 1
                continue
            except Exception as e:
                logger.exception(f"ALERT unexpected reconciler error for {document_hash}: {str(e)}")
                summary["errors"] += 1
                continue
            if outcome:
                summary[outcome] += 1

        if summary["scanned"]:
            logger.info(f"🔄 Reconciliation pass: {summary}")
        return summary

    async def _reconcile_document(self, document_hash: str, cutoff: datetime) -> str:
        sup = self.supervisor
        ctx = CallContext.background(timeout=self.settings.LEDGER_TX_TIMEOUT)

        async with sup.locks.hold(document_hash):
            with sup.session() as db:
                documents = DocumentRepository(db, sup.clock)
                document = documents.get_by_hash(document_hash)
                # Finished by the pipeline while we waited for the lock
                if document is None or document.status != DocumentStatus.UPLOADED.value:
                    return ""
                if document.updated_at >= cutoff:
                    return ""

                entry = await sup.ledger.get_document(document_hash, ctx)
                if entry is not None:
                    return await self._adopt(documents, document, entry)

                try:
                    receipt = await sup.ledger.register_document(
                        document.document_hash,
                        document.owner_address,
                        document.ipfs_cid,
                        document.document_type,
                        document.anchor_metadata or "{}",
                        ctx,
                    )
                except LedgerRejected as e:
                    if e.reason == ALREADY_EXISTS:
                        entry = await sup.ledger.get_document(document_hash, ctx)
                        if entry is not None:
                            return await self._adopt(documents, document, entry)
                    documents.mark_failed(document, f"LedgerRejected on resubmit: {e.reason}")
                    logger.error(f"ALERT resubmission of {document_hash} reverted: {e.reason}")
                    return "failed"
                except CredVaultError as e:
                    documents.touch(document)
                    documents.note_error(document, f"{e.code}: {e.detail}")
                    raise

                documents.finalize(document, receipt, sup.ledger.explorer_url(receipt.transaction_hash))
                logger.info(f"✅ Resubmitted and finalized {document_hash} in block {receipt.block_number}")
                return "resubmitted"

    async def _adopt(self, documents: DocumentRepository, document: Document, entry: LedgerDocument) -> str:
        if entry.issuer != document.issuer_address or entry.ipfs_hash != document.ipfs_cid:
            documents.note_error(
                document,
                f"LedgerDiverged: ledger issuer={entry.issuer} cid={entry.ipfs_hash}",
            )
            raise LedgerDiverged(
                f"local issuer={document.issuer_address} cid={document.ipfs_cid}, "
                f"ledger issuer={entry.issuer} cid={entry.ipfs_hash}",
                document_hash=document.document_hash,
            )

        ledger = self.supervisor.ledger
        event = await ledger.find_registration(document.document_hash)
        if event is None:
            documents.note_error(document, "Anchored on ledger but registration event not found")
            raise LedgerDiverged(
                "ledger entry present without a DocumentRegistered event",
                document_hash=document.document_hash,
            )

        receipt = TransactionReceipt(
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            gas_used=None,
            gas_estimate=None,
            gas_limit=None,
            contract_address=document.contract_address,
        )
        documents.finalize(document, receipt, ledger.explorer_url(event.transaction_hash))
        logger.info(f"✅ Reconciled {document.document_hash} from existing ledger entry (tx {event.transaction_hash})")
        return "finalized"
