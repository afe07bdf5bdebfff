"""
HTTP tests through the FastAPI app with the test supervisor installed.
"""

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient
from web3 import Web3

from conftest import ISSUER, OTHER_STUDENT, OUTSIDER, PDF_MIME, STUDENT, make_pdf
from credvault.core.security import create_access_token
from credvault.main import app
from credvault.services.supervisor import set_supervisor


@pytest.fixture
def client(supervisor):
    set_supervisor(supervisor)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        set_supervisor(None)


@pytest.fixture
def auth(settings):
    def _auth(address):
        token = create_access_token({"sub": address}, settings=settings)
        return {"Authorization": f"Bearer {token}"}

    return _auth


def upload(client, headers, data=None, owner=STUDENT, seed="api"):
    return client.post(
        "/api/documents/register",
        headers=headers,
        files={"file": ("diploma.pdf", data or make_pdf(seed), PDF_MIME)},
        data={
            "studentName": "Alice Li",
            "studentId": "STU-001",
            "institutionName": "Example University",
            "documentType": "degree",
            "issueDate": "2024-06-15",
            "ownerAddress": owner,
        },
    )


class TestHealthAndAuth:
    """Monitoring and wallet login."""

    def test_health(self, client):
        response = client.get("/api/monitoring/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"]["ledger"]["mode"] == "memory"

    def test_wallet_login(self, client, supervisor):
        wallet = Account.create()
        nonce = client.post("/api/auth/nonce", json={"address": wallet.address})
        assert nonce.status_code == 200

        signed = wallet.sign_message(encode_defunct(text=nonce.json()["message"]))
        login = client.post(
            "/api/auth/login",
            json={"address": wallet.address, "signature": Web3.to_hex(signed.signature)},
        )
        assert login.status_code == 200
        body = login.json()
        assert body["address"] == wallet.address.lower()
        assert body["role"] == "UNREGISTERED"

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.json()["address"] == wallet.address.lower()

    def test_nonce_is_single_use(self, client):
        wallet = Account.create()
        message = client.post("/api/auth/nonce", json={"address": wallet.address}).json()["message"]
        signature = Web3.to_hex(wallet.sign_message(encode_defunct(text=message)).signature)
        payload = {"address": wallet.address, "signature": signature}

        assert client.post("/api/auth/login", json=payload).status_code == 200
        assert client.post("/api/auth/login", json=payload).status_code == 401

    def test_signature_from_another_wallet(self, client):
        wallet, impostor = Account.create(), Account.create()
        message = client.post("/api/auth/nonce", json={"address": wallet.address}).json()["message"]
        signature = Web3.to_hex(impostor.sign_message(encode_defunct(text=message)).signature)

        response = client.post("/api/auth/login", json={"address": wallet.address, "signature": signature})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthenticated"

    def test_missing_token(self, client):
        assert client.get("/api/documents").status_code == 401

    def test_garbage_token(self, client):
        response = client.get("/api/documents", headers={"Authorization": "Bearer nonsense"})
        assert response.status_code == 401

    def test_profile_update(self, client, auth):
        response = client.put("/api/auth/me", headers=auth(STUDENT), json={"display_name": "Alice"})
        assert response.status_code == 200
        assert response.json()["profile"]["displayName"] == "Alice"


class TestDocumentsApi:
    """Registration and reads over HTTP."""

    def test_register_and_read(self, client, auth):
        response = upload(client, auth(ISSUER))
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "blockchain_stored"
        assert data["qrCode"]["dataUrl"].startswith("data:image/png;base64,")
        document_hash = data["documentHash"]

        owner_view = client.get(f"/api/documents/{document_hash}", headers=auth(STUDENT))
        assert owner_view.status_code == 200
        assert owner_view.json()["data"]["metadata"]["studentName"] == "Alice Li"

        stranger_view = client.get(f"/api/documents/{document_hash}", headers=auth(OTHER_STUDENT))
        assert stranger_view.status_code == 403

        listing = client.get("/api/documents", headers=auth(STUDENT))
        assert listing.json()["data"]["pagination"]["total"] == 1

    def test_anonymous_verification(self, client, auth):
        document_hash = upload(client, auth(ISSUER)).json()["data"]["documentHash"]

        response = client.get(f"/api/documents/verify/{document_hash}")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["verified"] is True
        assert data["verifier"] == "anonymous"
        assert "studentName" not in data["document"]["metadata"]

    def test_verify_by_upload(self, client, auth):
        payload = make_pdf("upload-check")
        upload(client, auth(ISSUER), data=payload)

        response = client.post(
            "/api/documents/verify",
            files={"file": ("copy.pdf", payload, PDF_MIME)},
        )
        assert response.json()["data"]["verified"] is True
        assert response.json()["data"]["method"] == "upload"

    def test_verify_by_qr(self, client, auth):
        url = upload(client, auth(ISSUER)).json()["data"]["qrCode"]["verificationUrl"]
        response = client.post("/api/documents/verify", data={"qrCode": url})
        assert response.json()["data"]["method"] == "qr"
        assert response.json()["data"]["verified"] is True

    def test_student_cannot_register(self, client, auth):
        response = upload(client, auth(STUDENT))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_duplicate_registration(self, client, auth):
        payload = make_pdf("twice")
        assert upload(client, auth(ISSUER), data=payload).status_code == 201
        response = upload(client, auth(ISSUER), data=payload)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "duplicate_document"

    def test_oversized_upload(self, client, auth, supervisor):
        supervisor.settings.MAX_UPLOAD_SIZE = 64
        response = upload(client, auth(ISSUER), data=b"%PDF-" + b"x" * 200)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_rejected"

        verify = client.post(
            "/api/documents/verify", files={"file": ("big.pdf", b"x" * 65, PDF_MIME)}
        )
        assert verify.status_code == 400

    def test_invalid_hash(self, client):
        response = client.get("/api/documents/verify/0x1234")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_hash"

    def test_share_and_download(self, client, auth):
        payload = make_pdf("shared")
        document_hash = upload(client, auth(ISSUER), data=payload).json()["data"]["documentHash"]

        assert client.post(f"/api/documents/{document_hash}/download", headers=auth(OTHER_STUDENT)).status_code == 403
        shared = client.post(
            f"/api/documents/{document_hash}/share",
            headers=auth(STUDENT),
            json={"viewerAddress": OTHER_STUDENT},
        )
        assert shared.json()["data"]["viewers"] == [OTHER_STUDENT]

        download = client.post(f"/api/documents/{document_hash}/download", headers=auth(OTHER_STUDENT))
        assert download.status_code == 200
        assert download.content == payload
        assert download.headers["x-document-hash"] == document_hash


class TestRolesAndPrivacyApi:
    """Role administration and privacy endpoints."""

    def test_admin_assigns_role(self, client, auth, admin):
        response = client.post(
            "/api/roles/assign", headers=auth(admin), json={"userAddress": OUTSIDER, "role": "verifier"}
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "VERIFIER"

        lookup = client.get(f"/api/roles/{OUTSIDER}", headers=auth(OUTSIDER))
        assert lookup.json()["data"]["role"] == "VERIFIER"

    def test_issuer_cannot_assign(self, client, auth):
        response = client.post(
            "/api/roles/assign", headers=auth(ISSUER), json={"userAddress": OUTSIDER, "role": "issuer"}
        )
        assert response.status_code == 403

    def test_student_cannot_look_up_others(self, client, auth):
        assert client.get(f"/api/roles/{ISSUER}", headers=auth(STUDENT)).status_code == 403

    def test_malformed_body(self, client, auth, admin):
        response = client.post("/api/roles/assign", headers=auth(admin), json={"role": "issuer"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_rejected"

    def test_consent_round_trip(self, client, auth):
        created = client.post(
            "/api/privacy/consent", headers=auth(STUDENT), json={"consentType": "analytics"}
        )
        assert created.status_code == 201
        history = client.get("/api/privacy/consent", headers=auth(STUDENT))
        assert history.json()["data"][0]["consentType"] == "analytics"

        withdrawn = client.delete("/api/privacy/consent/analytics", headers=auth(STUDENT))
        assert withdrawn.json()["data"]["status"] == "withdrawn"

    def test_deletion_requires_code(self, client, auth):
        created = client.post("/api/privacy/deletion", headers=auth(STUDENT), json={})
        assert created.status_code == 201
        request_id = created.json()["data"]["id"]
        code = created.json()["data"]["verificationCode"]

        wrong = client.post(
            f"/api/privacy/deletion/{request_id}/process",
            headers=auth(STUDENT),
            json={"verificationCode": "wrong-code"},
        )
        assert wrong.status_code == 403

        right = client.post(
            f"/api/privacy/deletion/{request_id}/process",
            headers=auth(STUDENT),
            json={"verificationCode": code},
        )
        assert right.status_code == 200
        assert right.json()["data"]["status"] == "completed"

        listed = client.get("/api/privacy/deletion", headers=auth(STUDENT)).json()
        assert "verificationCode" not in repr(listed)

    def test_withdrawal_returns_deletion_code(self, client, auth):
        client.post("/api/privacy/consent", headers=auth(STUDENT), json={"consentType": "data_processing"})
        withdrawn = client.delete("/api/privacy/consent/data_processing", headers=auth(STUDENT))
        deletion = withdrawn.json()["data"]["deletionRequest"]
        assert deletion["reason"] == "consent_withdrawn"

        processed = client.post(
            f"/api/privacy/deletion/{deletion['id']}/process",
            headers=auth(STUDENT),
            json={"verificationCode": deletion["verificationCode"]},
        )
        assert processed.status_code == 200
        assert processed.json()["data"]["status"] == "completed"

    def test_sweep_request_reissue_and_enforce(self, client, auth, admin, supervisor, clock):
        with supervisor.session() as db:
            privacy = supervisor.privacy(db)
            privacy.record_consent(STUDENT, "analytics", retention_period_days=30)
            privacy.record_consent(OTHER_STUDENT, "analytics", retention_period_days=30)
            clock.advance(days=31)
            privacy.check_retention_compliance()
            own_id = privacy.list_deletion_requests(STUDENT)[0].id
            other_id = privacy.list_deletion_requests(OTHER_STUDENT)[0].id

        reissued = client.post(f"/api/privacy/deletion/{own_id}/code", headers=auth(STUDENT))
        assert reissued.status_code == 200
        processed = client.post(
            f"/api/privacy/deletion/{own_id}/process",
            headers=auth(STUDENT),
            json={"verificationCode": reissued.json()["data"]["verificationCode"]},
        )
        assert processed.json()["data"]["status"] == "completed"

        assert client.post(f"/api/privacy/deletion/{other_id}/code", headers=auth(STUDENT)).status_code == 404
        assert client.post(f"/api/privacy/deletion/{other_id}/enforce", headers=auth(STUDENT)).status_code == 403
        enforced = client.post(f"/api/privacy/deletion/{other_id}/enforce", headers=auth(admin))
        assert enforced.status_code == 200
        assert enforced.json()["data"]["status"] == "completed"

    def test_export_download(self, client, auth):
        created = client.post("/api/privacy/export", headers=auth(STUDENT), json={"exportFormat": "csv"})
        assert created.status_code == 201
        export_id = created.json()["data"]["id"]

        response = client.get(f"/api/privacy/export/{export_id}/download", headers=auth(STUDENT))
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
