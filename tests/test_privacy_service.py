"""
Tests for consent, deletion requests, exports and retention sweeps.
"""

import asyncio
import csv
import io
import json
import logging
from datetime import timedelta

import pytest

from conftest import ISSUER, STUDENT, VERIFIER
from credvault.core.exceptions import NotFound, Unauthorized, ValidationRejected
from credvault.core.log_filters import redaction_filter
from credvault.models.enums import ConsentStatus, DeletionReason, DeletionStatus, DocumentStatus
from credvault.services.document_store import ANONYMIZED, DELETED


@pytest.fixture
def privacy(supervisor):
    with supervisor.session() as db:
        yield supervisor.privacy(db)


class TestConsent:
    """Consent log."""

    def test_record_and_check(self, privacy):
        consent = privacy.record_consent(STUDENT, "data_processing", ip_address="10.0.0.1")
        assert consent.status == "active"
        assert consent.purpose.startswith("Processing personal data")
        assert privacy.has_consent(STUDENT, "data_processing")
        assert not privacy.has_consent(STUDENT, "marketing")

    def test_new_consent_supersedes_old(self, privacy):
        first = privacy.record_consent(STUDENT, "analytics")
        second = privacy.record_consent(STUDENT, "analytics", consent_given=False)
        assert first.status == "withdrawn"
        assert second.status == "active"
        assert not privacy.has_consent(STUDENT, "analytics")
        assert len(privacy.get_consent_history(STUDENT)) == 2

    def test_invalid_consent_type(self, privacy):
        with pytest.raises(ValidationRejected):
            privacy.record_consent(STUDENT, "mind_reading")

    def test_withdraw(self, privacy):
        privacy.record_consent(STUDENT, "marketing")
        withdrawn, opened = privacy.withdraw_consent(STUDENT, "marketing")
        assert opened is None
        assert withdrawn.withdrawal_date is not None
        assert not privacy.has_consent(STUDENT, "marketing")
        assert privacy.list_deletion_requests(STUDENT) == []

    def test_withdraw_without_consent(self, privacy):
        with pytest.raises(NotFound):
            privacy.withdraw_consent(STUDENT, "marketing")

    def test_withdrawing_processing_consent_opens_deletion(self, privacy):
        privacy.record_consent(STUDENT, "data_processing")
        _, (request, code) = privacy.withdraw_consent(STUDENT, "data_processing")
        assert privacy.list_deletion_requests(STUDENT) == [request]
        assert request.reason == DeletionReason.CONSENT_WITHDRAWN.value
        assert request.consent_type == "data_processing"
        assert request.status == DeletionStatus.PENDING.value

        processed = asyncio.run(privacy.process_deletion_request(request.id, code))
        assert processed.status == DeletionStatus.COMPLETED.value


class TestDeletion:
    """Crypto-shredding behind a one-time code."""

    def test_full_deletion(self, supervisor, privacy, register, load_document, local_store):
        result = register(owner=STUDENT)
        supervisor.roles(privacy.db).register_profile(STUDENT, display_name="Alice", email="alice@example.edu")
        entry_before = asyncio.run(supervisor.ledger.get_document(result.document_hash))

        request, code = privacy.create_deletion_request(STUDENT)
        assert request.verification_code_hash != code
        processed = asyncio.run(privacy.process_deletion_request(request.id, code))

        assert processed.status == DeletionStatus.COMPLETED.value
        assert processed.deletion_results["documents_anonymized"] == 1
        assert processed.deletion_results["keys_destroyed"] == 1
        assert processed.deletion_results["ledger_entries_retained"] == 1
        assert result.ipfs_cid not in local_store.pins

        document = load_document(result.document_hash)
        assert document.student_name == DELETED
        assert document.student_id == DELETED
        assert document.student_email == ANONYMIZED
        assert document.wrapped_key is None
        assert not document.is_active
        assert document.status == DocumentStatus.SOFT_DELETED.value

        assert supervisor.roles(privacy.db).get_party(STUDENT).display_name == ANONYMIZED
        assert asyncio.run(supervisor.ledger.get_document(result.document_hash)) == entry_before

    def test_wrong_code_changes_nothing(self, privacy, register, load_document):
        result = register(owner=STUDENT)
        request, _ = privacy.create_deletion_request(STUDENT)

        with pytest.raises(Unauthorized):
            asyncio.run(privacy.process_deletion_request(request.id, "not-the-code"))

        assert privacy.get_deletion_request(request.id).status == DeletionStatus.PENDING.value
        document = load_document(result.document_hash)
        assert document.student_name == "Alice Li"
        assert document.wrapped_key is not None

    def test_expired_code(self, privacy, clock):
        request, code = privacy.create_deletion_request(STUDENT)
        clock.advance(hours=25)
        with pytest.raises(Unauthorized):
            asyncio.run(privacy.process_deletion_request(request.id, code))

    def test_processed_only_once(self, privacy):
        request, code = privacy.create_deletion_request(STUDENT)
        asyncio.run(privacy.process_deletion_request(request.id, code))
        with pytest.raises(ValidationRejected):
            asyncio.run(privacy.process_deletion_request(request.id, code))

    def test_unknown_request(self, privacy):
        with pytest.raises(NotFound):
            asyncio.run(privacy.process_deletion_request(9999, "code"))

    def test_anonymization_scoped_to_categories(self, supervisor, privacy, register, load_document):
        result = register(owner=STUDENT)
        supervisor.roles(privacy.db).register_profile(STUDENT, display_name="Alice")
        request, code = privacy.create_deletion_request(
            STUDENT, request_type="anonymization", data_categories=["profile_data"]
        )
        asyncio.run(privacy.process_deletion_request(request.id, code))

        assert supervisor.roles(privacy.db).get_party(STUDENT).display_name == ANONYMIZED
        assert load_document(result.document_hash).student_name == "Alice Li"

    def test_code_never_logged(self, privacy, caplog):
        with caplog.at_level(logging.DEBUG):
            request, code = privacy.create_deletion_request(STUDENT)
            asyncio.run(privacy.process_deletion_request(request.id, code))
        assert code not in caplog.text

    def test_codes_do_not_accumulate_in_log_filter(self, privacy):
        before = len(redaction_filter)
        requests = [privacy.create_deletion_request(STUDENT)[0] for _ in range(5)]
        privacy.reissue_deletion_code(requests[0].id, STUDENT)
        assert len(redaction_filter) == before

    def test_reissue_replaces_code(self, privacy, clock):
        request, old_code = privacy.create_deletion_request(STUDENT)
        clock.advance(hours=25)
        _, new_code = privacy.reissue_deletion_code(request.id, STUDENT)

        with pytest.raises(Unauthorized):
            asyncio.run(privacy.process_deletion_request(request.id, old_code))
        processed = asyncio.run(privacy.process_deletion_request(request.id, new_code))
        assert processed.status == DeletionStatus.COMPLETED.value

    def test_reissue_only_for_owner(self, privacy):
        request, _ = privacy.create_deletion_request(STUDENT)
        with pytest.raises(NotFound):
            privacy.reissue_deletion_code(request.id, VERIFIER)

    def test_reissue_only_while_pending(self, privacy):
        request, code = privacy.create_deletion_request(STUDENT)
        asyncio.run(privacy.process_deletion_request(request.id, code))
        with pytest.raises(ValidationRejected):
            privacy.reissue_deletion_code(request.id, STUDENT)

    def test_only_retention_requests_are_enforced(self, privacy, admin):
        request, _ = privacy.create_deletion_request(STUDENT)
        with pytest.raises(ValidationRejected):
            asyncio.run(privacy.enforce_retention_request(request.id, admin))
        assert privacy.get_deletion_request(request.id).status == DeletionStatus.PENDING.value


class TestExport:
    """Portable copies of a party's data."""

    def test_json_export(self, privacy, register):
        register(owner=STUDENT)
        privacy.record_consent(STUDENT, "data_processing")
        export = privacy.create_export_request(STUDENT, "json")

        assert export.status == "completed"
        data = json.loads(export.generated_file)
        assert data["documents"][0]["studentName"] == "Alice Li"
        assert data["consents"][0]["consentType"] == "data_processing"
        assert export.file_size == len(export.generated_file.encode("utf-8"))

    def test_csv_export_is_quoted(self, privacy):
        privacy.record_consent(STUDENT, "analytics", purpose='Usage <stats> & "trends"')
        export = privacy.create_export_request(STUDENT, "csv", ["consent_history"])

        assert "--- CONSENTS ---" in export.generated_file
        section = export.generated_file.split("--- CONSENTS ---\n", 1)[1]
        rows = list(csv.reader(io.StringIO(section)))
        assert rows[0][0] == "id"
        assert "Usage &lt;stats&gt; &amp; &quot;trends&quot;" in rows[1]

    def test_xml_export_escapes(self, privacy):
        privacy.record_consent(STUDENT, "analytics", purpose="a < b")
        export = privacy.create_export_request(STUDENT, "xml", ["consent_history"])
        assert export.generated_file.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert "<purpose>a &lt; b</purpose>" in export.generated_file

    def test_unknown_category(self, privacy):
        with pytest.raises(ValidationRejected):
            privacy.create_export_request(STUDENT, "json", ["browser_history"])

    def test_download_limit(self, privacy):
        export = privacy.create_export_request(STUDENT)
        for _ in range(export.max_downloads):
            content, export_format = privacy.download_export(export.id, STUDENT)
            assert export_format == "json"
        with pytest.raises(ValidationRejected):
            privacy.download_export(export.id, STUDENT)

    def test_only_owner_downloads(self, privacy):
        export = privacy.create_export_request(STUDENT)
        with pytest.raises(NotFound):
            privacy.download_export(export.id, VERIFIER)

    def test_cleanup_expires(self, privacy, clock):
        export = privacy.create_export_request(STUDENT)
        clock.advance(days=8)
        assert privacy.cleanup_expired_exports() == 1
        assert export.generated_file is None
        with pytest.raises(ValidationRejected):
            privacy.download_export(export.id, STUDENT)
        assert privacy.cleanup_expired_exports() == 0


class TestRetention:
    """Retention sweep."""

    def test_sweep_opens_one_request_per_expired_consent(self, privacy, clock):
        privacy.record_consent(STUDENT, "analytics", retention_period_days=30)
        privacy.record_consent(ISSUER, "analytics")
        clock.advance(days=31)

        summary = privacy.check_retention_compliance()
        assert summary == {"expiredConsents": 1, "deletionRequestsCreated": 1, "staleRequestsClosed": 0}
        request = privacy.list_deletion_requests(STUDENT)[0]
        assert request.reason == DeletionReason.DATA_RETENTION_EXPIRED.value
        assert request.data_categories == ["performance_metrics"]

        # a second sweep finds the pending request
        assert privacy.check_retention_compliance()["deletionRequestsCreated"] == 0

    def test_lapsed_processing_consent(self, privacy, clock):
        privacy.record_consent(STUDENT, "data_processing")
        privacy.withdraw_consent(STUDENT, "data_processing")
        privacy.record_consent(STUDENT, "data_processing", retention_period_days=5)
        clock.advance(days=6)

        first = privacy.check_retention_compliance()
        second = privacy.check_retention_compliance()
        assert first["deletionRequestsCreated"] == 1
        assert second["deletionRequestsCreated"] == 0

        retention = [
            r for r in privacy.list_deletion_requests(STUDENT)
            if r.reason == DeletionReason.DATA_RETENTION_EXPIRED.value
        ]
        assert len(retention) == 1
        assert retention[0].status == DeletionStatus.PENDING.value
        assert retention[0].consent_type == "data_processing"

    def test_party_confirms_sweep_request(self, privacy, clock):
        privacy.record_consent(STUDENT, "analytics", retention_period_days=30)
        clock.advance(days=31)
        privacy.check_retention_compliance()
        request = privacy.list_deletion_requests(STUDENT)[0]

        _, code = privacy.reissue_deletion_code(request.id, STUDENT)
        processed = asyncio.run(privacy.process_deletion_request(request.id, code))

        assert processed.status == DeletionStatus.COMPLETED.value
        assert privacy.get_consent_history(STUDENT)[0].status == ConsentStatus.EXPIRED.value
        assert privacy.check_retention_compliance() == {
            "expiredConsents": 0, "deletionRequestsCreated": 0, "staleRequestsClosed": 0,
        }

    def test_admin_enforces_sweep_request(self, privacy, clock, admin):
        privacy.record_consent(STUDENT, "analytics", retention_period_days=30)
        clock.advance(days=31)
        privacy.check_retention_compliance()
        request = privacy.list_deletion_requests(STUDENT)[0]

        processed = asyncio.run(privacy.enforce_retention_request(request.id, admin))

        assert processed.status == DeletionStatus.COMPLETED.value
        assert processed.processed_by == admin.lower()
        assert not privacy.has_consent(STUDENT, "analytics")
        assert privacy.check_retention_compliance()["deletionRequestsCreated"] == 0

    def test_unconfirmed_request_is_replaced(self, privacy, clock):
        privacy.record_consent(STUDENT, "analytics", retention_period_days=30)
        clock.advance(days=31)
        privacy.check_retention_compliance()
        clock.advance(hours=25)

        summary = privacy.check_retention_compliance()
        assert summary["staleRequestsClosed"] == 1
        assert summary["deletionRequestsCreated"] == 1
        statuses = sorted(r.status for r in privacy.list_deletion_requests(STUDENT))
        assert statuses == [DeletionStatus.FAILED.value, DeletionStatus.PENDING.value]

    def test_nothing_expired(self, privacy, clock):
        privacy.record_consent(STUDENT, "analytics", retention_period_days=30)
        clock.advance(days=29)
        assert privacy.check_retention_compliance()["expiredConsents"] == 0

    def test_retention_must_be_positive(self, privacy):
        with pytest.raises(ValidationRejected):
            privacy.record_consent(STUDENT, "analytics", retention_period_days=0)
