"""
Tests for credential verification, verification history and the decrypt path.
"""

import asyncio

import pytest

from conftest import ISSUER, OTHER_STUDENT, STUDENT, VERIFIER, make_pdf
from credvault.core.exceptions import Forbidden, InvalidQR, NotFound, ValidationRejected
from credvault.core.resilience import CallContext
from credvault.services.crypto_service import compute_document_hash
from credvault.services.verification_service import SUSPICIOUS_THRESHOLD, TRUE_ON_CHAIN


def verify(supervisor, *args, **kwargs):
    with supervisor.session() as db:
        return asyncio.run(supervisor.verifier(db).verify(*args, **kwargs))


class TestVerify:
    """Ledger, store and access joined into one answer."""

    def test_authentic_for_owner(self, supervisor, register):
        result = register(owner=STUDENT)
        outcome = verify(supervisor, result.document_hash, STUDENT)

        assert outcome.verified is True
        assert outcome.reason is None
        assert outcome.access_granted
        assert outcome.document["metadata"]["studentName"] == "Alice Li"
        assert outcome.ledger["owner"] == STUDENT

    def test_anonymous_sees_no_personal_data(self, supervisor, register):
        result = register(owner=STUDENT)
        outcome = verify(supervisor, result.document_hash)

        assert outcome.verified is True
        assert outcome.verifier == "anonymous"
        assert not outcome.access_granted
        assert "studentName" not in outcome.document["metadata"]
        assert outcome.document["metadata"]["institutionName"] == "Example University"

    def test_not_anchored(self, supervisor):
        outcome = verify(supervisor, "0x" + "ee" * 32)
        assert outcome.verified is False
        assert outcome.reason == "not_anchored"
        assert outcome.document is None

    def test_tampered_upload(self, supervisor, register):
        result = register(file_bytes=make_pdf("original"))
        outcome = verify(supervisor, result.document_hash, VERIFIER, make_pdf("forged"))

        assert outcome.verified is False
        assert outcome.reason == "tampered"
        assert outcome.details["fileIntegrity"]["hashesMatch"] is False

    def test_verify_by_upload_only(self, supervisor, register):
        data = make_pdf("upload")
        register(file_bytes=data)
        outcome = verify(supervisor, None, VERIFIER, data)

        assert outcome.verified is True
        assert outcome.method == "upload"
        assert outcome.document_hash == compute_document_hash(data)

    def test_requires_hash_or_file(self, supervisor):
        with pytest.raises(ValidationRejected):
            verify(supervisor, None, VERIFIER, None)

    def test_anchored_but_missing_offchain(self, supervisor):
        data = make_pdf("orphan")
        document_hash = compute_document_hash(data)
        asyncio.run(supervisor.ledger.register_document(
            document_hash, STUDENT, "Qm" + "o" * 44, "degree", "{}", CallContext(timeout=5)
        ))

        outcome = verify(supervisor, document_hash, VERIFIER)
        assert outcome.verified == TRUE_ON_CHAIN
        assert outcome.offchain_missing
        assert outcome.document is None

    def test_owner_divergence(self, supervisor, register):
        result = register(owner=STUDENT)
        # ledger moves on without the document store
        asyncio.run(supervisor.ledger.transfer_ownership(result.document_hash, OTHER_STUDENT, CallContext(timeout=5)))

        outcome = verify(supervisor, result.document_hash, VERIFIER)
        assert outcome.verified is False
        assert outcome.reason == "divergence"
        assert outcome.details["mismatches"] == ["owner"]

    def test_deactivated(self, supervisor, register):
        result = register(owner=STUDENT)
        with supervisor.session() as db:
            asyncio.run(supervisor.access(db).deactivate(
                result.document_hash, ISSUER, "Revoked by registrar", CallContext(timeout=5)
            ))

        outcome = verify(supervisor, result.document_hash, VERIFIER)
        assert outcome.verified is False
        assert outcome.reason == "deactivated"
        assert outcome.is_active is False
        assert outcome.document["deactivation"]["reason"] == "Revoked by registrar"

    def test_count_increments(self, supervisor, register, load_document):
        result = register()
        verify(supervisor, result.document_hash)
        second = verify(supervisor, result.document_hash, VERIFIER)
        assert second.verification_count == 2
        assert load_document(result.document_hash).verification_count == 2

    def test_suspicious_activity_warning(self, supervisor):
        unknown = "0x" + "dd" * 32
        outcomes = [verify(supervisor, unknown) for _ in range(SUSPICIOUS_THRESHOLD)]
        assert all(o.warning is None for o in outcomes[:-1])
        assert outcomes[-1].warning["failedAttempts"] == SUSPICIOUS_THRESHOLD


class TestVerifyQR:
    """Scanned QR payloads."""

    def test_qr_round_trip(self, supervisor, register):
        result = register()
        with supervisor.session() as db:
            outcome = asyncio.run(supervisor.verifier(db).verify_qr(result.qr_code.verification_url))
        assert outcome.verified is True
        assert outcome.method == "qr"

    def test_qr_with_foreign_transaction(self, supervisor, register):
        result = register()
        url = supervisor.qr.verification_url(result.document_hash, "0x" + "9" * 64)
        with supervisor.session() as db:
            outcome = asyncio.run(supervisor.verifier(db).verify_qr(url))
        assert outcome.reason == "divergence"
        assert "transactionHash" in outcome.details["mismatches"]

    def test_malformed_qr(self, supervisor):
        with supervisor.session() as db:
            with pytest.raises(InvalidQR):
                asyncio.run(supervisor.verifier(db).verify_qr("https://evil.test/?hash=0x12"))


class TestHistoryAndDownload:
    """Holder-only views."""

    def test_history_for_owner(self, supervisor, register):
        result = register(owner=STUDENT)
        verify(supervisor, result.document_hash, VERIFIER)
        verify(supervisor, result.document_hash, VERIFIER, make_pdf("forged"))

        with supervisor.session() as db:
            history = supervisor.verifier(db).history(result.document_hash, STUDENT)
        assert history["total"] == 2
        assert history["statistics"] == {"authentic": 1, "tampered": 1}
        assert history["logs"][0]["verifier"] == VERIFIER

    def test_history_forbidden_for_strangers(self, supervisor, register, admin):
        result = register(owner=STUDENT)
        with supervisor.session() as db:
            verifier = supervisor.verifier(db)
            with pytest.raises(Forbidden):
                verifier.history(result.document_hash, OTHER_STUDENT)
            assert verifier.history(result.document_hash, admin)["total"] == 0

    def test_owner_downloads_plaintext(self, supervisor, register):
        data = make_pdf("download")
        result = register(file_bytes=data, owner=STUDENT)
        with supervisor.session() as db:
            downloaded = asyncio.run(supervisor.verifier(db).download(result.document_hash, STUDENT))
        assert downloaded.file_bytes == data
        assert downloaded.file_name == "diploma.pdf"

    def test_stranger_cannot_download(self, supervisor, register):
        result = register(owner=STUDENT)
        with supervisor.session() as db:
            with pytest.raises(Forbidden):
                asyncio.run(supervisor.verifier(db).download(result.document_hash, OTHER_STUDENT))

    def test_destroyed_key_means_gone(self, supervisor, register):
        result = register(owner=STUDENT)
        with supervisor.session() as db:
            documents = supervisor.documents(db)
            documents.destroy_key(documents.require(result.document_hash))
            with pytest.raises(NotFound):
                asyncio.run(supervisor.verifier(db).download(result.document_hash, STUDENT))
