"""API tests using FastAPI's TestClient.

Runs are never started for real here: start_batch is replaced so the route
only registers the handle, and finished handles are built by hand.
"""

import httpx
import pytest
import respx
from fastapi.testclient import TestClient

from certbatch import main
from certbatch.background_processor import BatchHandle, get_batch_registry
from certbatch.database.services import BatchRunService
from certbatch.errors import DeliveryError
from certbatch.history import CredentialStore, HistoryRecorder
from certbatch.models import (
    ArchiveResult,
    BatchLedger,
    BatchProgress,
    BatchReport,
    BatchState,
    BatchStatus,
    GenerationKind,
    GenerationOutcome,
    OutputMode,
    RowRecord,
)

CERTIFICATE_CSV = b"name,email\nAlice,alice@x.com\nBob,\nCarol,not-an-email\n"
CREDENTIAL_CSV = b"name,email,phone\nAlice,alice@x.com,9876543210\nBob,bob@x.com,123\n"


@pytest.fixture
def started(monkeypatch):
    calls = []

    def fake_start_batch(handle, rows, **kwargs):
        get_batch_registry().register(handle)
        calls.append((handle, rows, kwargs))

    monkeypatch.setattr(main, "start_batch", fake_start_batch)
    return calls


@pytest.fixture
def client(db_manager, kv_store, started, monkeypatch):
    monkeypatch.setattr(main.get_settings(), "proxy_allowed_hosts", ("certs.example.com",))
    main.app.dependency_overrides[main.get_key_value_store] = lambda: kv_store
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _upload(content, filename="roster.csv"):
    return {"file": (filename, content, "text/csv")}


def _finished_handle(output_mode=OutputMode.ARCHIVE_DOWNLOAD, archive=None, batch_id="done0001"):
    ledger = BatchLedger(1)
    ledger.append(GenerationOutcome.success(RowRecord("Alice"), "https://certs.example.com/alice.pdf"))
    handle = BatchHandle(
        batch_id=batch_id,
        kind=GenerationKind.CERTIFICATE,
        output_mode=output_mode,
        total_rows=1,
        state=BatchState.COMPLETE,
        progress=BatchProgress(1, 1, 100, phase="complete"),
    )
    handle.report = BatchReport(
        batch_id=batch_id,
        kind=GenerationKind.CERTIFICATE,
        output_mode=output_mode,
        status=BatchStatus.SUCCESS,
        ledger=ledger,
        archive=archive,
    )
    return get_batch_registry().register(handle)


class TestInfoEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["endpoints"]["batches"] == "/batches"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["capabilities"]["database"] == "available"

    def test_templates(self, client):
        data = client.get("/templates").json()
        assert data["total_templates"] == 2
        assert {t["kind"] for t in data["available_templates"]} == {"certificate", "credential"}


class TestPreview:
    def test_certificate_preview(self, client):
        response = client.post("/preview", files=_upload(CERTIFICATE_CSV))

        assert response.status_code == 200
        data = response.json()
        assert data["state"] == "preview"
        assert [row["name"] for row in data["rows"]] == ["Alice", "Bob"]
        assert data["rejected_rows"][0]["reason"] == "email format is invalid"
        assert data["sheet_info"]["rows_with_email"] == 1

    def test_credential_preview_checks_phone(self, client):
        response = client.post("/preview", files=_upload(CREDENTIAL_CSV), data={"kind": "credential"})

        data = response.json()
        assert [row["name"] for row in data["rows"]] == ["Alice"]
        assert data["rejected_rows"][0]["reason"] == "phone must be a 10-digit number"

    def test_unsupported_extension(self, client):
        response = client.post("/preview", files=_upload(b"name\nAlice\n", filename="roster.xls"))
        assert response.status_code == 400


class TestCreateBatch:
    def test_starts_email_run_with_stored_credentials(self, client, kv_store, auth_tokens, started):
        CredentialStore(kv_store).save(auth_tokens)

        response = client.post("/batches", files=_upload(CERTIFICATE_CSV), data={"output_mode": "email"})

        assert response.status_code == 200
        data = response.json()
        assert data["processing_info"]["email_enabled"] is True
        assert data["processing_info"]["total_rows"] == 2
        assert data["processing_info"]["rejected_rows"] == 1

        handle, rows, kwargs = started[0]
        assert handle.batch_id == data["batch_id"]
        assert [row.name for row in rows] == ["Alice", "Bob"]
        assert kwargs["auth_credential"] == auth_tokens
        assert kwargs["subject"] == "Your Certificate"
        assert isinstance(kwargs["history"], HistoryRecorder)
        assert BatchRunService.get_run(handle.batch_id)["state"] == "processing"

    def test_email_run_without_credentials_still_starts(self, client, started):
        response = client.post("/batches", files=_upload(CERTIFICATE_CSV), data={"output_mode": "email"})

        assert response.json()["processing_info"]["email_enabled"] is False
        assert started[0][2]["auth_credential"] is None

    def test_credential_archive_is_rejected(self, client, started):
        response = client.post(
            "/batches", files=_upload(CREDENTIAL_CSV), data={"output_mode": "zip", "kind": "credential"}
        )

        assert response.status_code == 400
        assert started == []

    def test_no_valid_rows(self, client, started):
        response = client.post("/batches", files=_upload(b"name,email\n,\n"), data={"output_mode": "zip"})

        assert response.status_code == 400
        assert started == []

    def test_unknown_output_mode(self, client):
        response = client.post("/batches", files=_upload(CERTIFICATE_CSV), data={"output_mode": "fax"})
        assert response.status_code == 422

    @pytest.mark.parametrize("template", ["Dear ${first name}", "${ cycler.__init__.__globals__.os.getcwd() }"])
    def test_bad_message_template_is_rejected(self, client, started, template):
        response = client.post(
            "/batches", files=_upload(CERTIFICATE_CSV), data={"output_mode": "email", "message_template": template}
        )

        assert response.status_code == 400
        assert started == []

    def test_literal_braces_in_template_are_accepted(self, client, started):
        template = "Dear ${name}, 50% off {% today"
        response = client.post(
            "/batches", files=_upload(CERTIFICATE_CSV), data={"output_mode": "email", "message_template": template}
        )

        assert response.status_code == 200
        assert started[0][2]["message_template"] == template

    def test_starts_when_store_is_unavailable(self, client, started, unavailable_store_factory):
        store = unavailable_store_factory(fail_get=True)
        main.app.dependency_overrides[main.get_key_value_store] = lambda: store

        response = client.post("/batches", files=_upload(CERTIFICATE_CSV), data={"output_mode": "email"})

        assert response.status_code == 200
        assert response.json()["processing_info"]["email_enabled"] is False
        assert started[0][2]["history"].loaded is False


class TestBatchStatus:
    def test_unknown_batch(self, client):
        assert client.get("/batches/nope").status_code == 404

    def test_live_handle(self, client):
        _finished_handle()

        data = client.get("/batches/done0001").json()
        assert data["state"] == "complete"
        assert data["report"]["status"] == "success"

    def test_falls_back_to_database(self, client):
        ledger = BatchLedger(1)
        ledger.append(GenerationOutcome.failure(RowRecord("Bob"), "rate limited"))
        BatchRunService.create_run("old00001", "certificate", "zip", total_rows=1)
        BatchRunService.record_report(BatchReport(
            batch_id="old00001",
            kind=GenerationKind.CERTIFICATE,
            output_mode=OutputMode.ARCHIVE_DOWNLOAD,
            status=BatchStatus.FATAL,
            ledger=ledger,
            error_message="Failed to generate any certificates",
        ))

        data = client.get("/batches/old00001").json()
        assert data["status"] == "fatal"
        assert data["ledger"][0]["error_message"] == "rate limited"

        listed = client.get("/batches").json()
        assert [run["batch_id"] for run in listed["batches"]] == ["old00001"]


class TestArchiveDownload:
    def test_download(self, client):
        archive = ArchiveResult(filename="certificates-2024-05-01.zip", content=b"PK\x03\x04zip",
                                entry_paths=["certificates/Alice.pdf"])
        _finished_handle(archive=archive)

        response = client.get("/batches/done0001/archive")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert "certificates-2024-05-01.zip" in response.headers["content-disposition"]
        assert response.content == b"PK\x03\x04zip"

    def test_still_processing(self, client):
        handle = _finished_handle()
        handle.state = BatchState.PROCESSING

        assert client.get("/batches/done0001/archive").status_code == 409

    def test_email_runs_have_no_archive(self, client):
        _finished_handle(output_mode=OutputMode.EMAIL_DELIVERY)

        assert client.get("/batches/done0001/archive").status_code == 400

    def test_evicted_archive_is_gone(self, client):
        ledger = BatchLedger(1)
        ledger.append(GenerationOutcome.success(RowRecord("Alice"), "https://certs.example.com/alice.pdf"))
        BatchRunService.create_run("old00002", "certificate", "zip", total_rows=1)
        BatchRunService.record_report(BatchReport(
            batch_id="old00002",
            kind=GenerationKind.CERTIFICATE,
            output_mode=OutputMode.ARCHIVE_DOWNLOAD,
            status=BatchStatus.SUCCESS,
            ledger=ledger,
            archive=ArchiveResult(filename="certificates-2024-05-01.zip", content=b"PK", entry_paths=["certificates/Alice.pdf"]),
        ))

        response = client.get("/batches/old00002/archive")

        assert response.status_code == 410
        assert client.get("/batches/missing1/archive").status_code == 404


class TestProgressStream:
    def test_finished_batch_stream(self, client):
        _finished_handle()

        response = client.get("/stream/batches/done0001")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        body = response.text
        assert "connection_established" in body
        assert "event: progress_update" in body
        assert "event: processing_complete" in body
        assert body.index("event: processing_complete") < body.index("event: connection_closing")

    def test_unknown_batch(self, client):
        assert client.get("/stream/batches/nope").status_code == 404


class TestHistory:
    def test_read_and_clear(self, client, kv_store):
        ledger = BatchLedger(1)
        ledger.append(GenerationOutcome.success(RowRecord("Alice"), "https://certs.example.com/alice.pdf"))
        HistoryRecorder(kv_store, limit=10).record_batch(BatchReport(
            batch_id="h1", kind=GenerationKind.CERTIFICATE, output_mode=OutputMode.ARCHIVE_DOWNLOAD,
            status=BatchStatus.SUCCESS, ledger=ledger,
        ))

        data = client.get("/history").json()
        assert data["total"] == 1
        assert data["entries"][0]["status"] == "downloaded"
        assert client.get("/history", params={"kind": "credential"}).json()["total"] == 0

        assert client.delete("/history").json()["success"] is True
        assert client.get("/history").json()["total"] == 0


class TestAuth:
    def test_store_status_and_logout(self, client, auth_tokens):
        assert client.get("/auth/status").json()["authenticated"] is False

        assert client.post("/auth/credentials", json=auth_tokens).status_code == 200
        status = client.get("/auth/status").json()
        assert status == {"authenticated": True, "has_refresh_token": True}

        client.delete("/auth/credentials")
        assert client.get("/auth/status").json()["authenticated"] is False

    def test_tokens_need_access_token(self, client):
        assert client.post("/auth/credentials", json={"refresh_token": "r"}).status_code == 400


class FakeMailer:
    sent = []
    fail_with = None

    def __init__(self, http_client):
        pass

    async def send_certificate_email(self, to, subject, body, attachment_url, tokens):
        self._send("certificate", to, attachment_url)

    async def send_credentials_email(self, to, subject, body, tokens):
        self._send("credentials", to, None)

    def _send(self, kind, to, attachment_url):
        if FakeMailer.fail_with:
            raise DeliveryError(FakeMailer.fail_with, status_code=401)
        FakeMailer.sent.append((kind, to, attachment_url))


class TestSendEmail:
    @pytest.fixture(autouse=True)
    def fake_mailer(self, monkeypatch):
        FakeMailer.sent = []
        FakeMailer.fail_with = None
        monkeypatch.setattr(main, "GmailMailer", FakeMailer)

    def _payload(self, **overrides):
        payload = {
            "to": "alice@x.com",
            "subject": "Your Certificate",
            "body": "Dear Alice,",
            "authCredential": {"access_token": "ya29.test-token"},
            "type": "certificate",
            "attachmentUrl": "https://certs.example.com/alice.pdf",
        }
        payload.update(overrides)
        return payload

    def test_sends_certificate(self, client):
        response = client.post("/api/send-email", json=self._payload())

        assert response.json() == {"success": True}
        assert FakeMailer.sent == [("certificate", "alice@x.com", "https://certs.example.com/alice.pdf")]

    def test_legacy_tokens_key(self, client):
        payload = self._payload(type="credentials", attachmentUrl=None)
        payload["tokens"] = payload.pop("authCredential")

        assert client.post("/api/send-email", json=payload).status_code == 200
        assert FakeMailer.sent[0][0] == "credentials"

    @pytest.mark.parametrize("overrides,error", [
        ({"to": None}, "Missing required fields: to, subject, body, or authCredential"),
        ({"authCredential": None}, "Missing required fields: to, subject, body, or authCredential"),
        ({"attachmentUrl": None}, "Missing attachmentUrl for certificate email"),
        ({"type": "fax"}, "Invalid email type"),
    ])
    def test_rejects_incomplete_requests(self, client, overrides, error):
        response = client.post("/api/send-email", json=self._payload(**overrides))

        assert response.status_code == 400
        assert response.json()["error"] == error
        assert FakeMailer.sent == []

    def test_send_failure(self, client):
        FakeMailer.fail_with = "Invalid Credentials"

        response = client.post("/api/send-email", json=self._payload())

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to send email", "details": "Invalid Credentials"}

    def test_rejects_attachment_on_other_host(self, client):
        payload = self._payload(attachmentUrl="http://169.254.169.254/latest/meta-data")

        response = client.post("/api/send-email", json=payload)

        assert response.status_code == 400
        assert response.json() == {"error": "attachmentUrl host is not allowed"}
        assert FakeMailer.sent == []


class TestProxyPdf:
    PDF_URL = "https://certs.example.com/alice.pdf"

    def test_streams_pdf(self, client):
        with respx.mock:
            respx.get(self.PDF_URL).mock(return_value=httpx.Response(200, content=b"%PDF-1.4"))
            response = client.post("/api/proxy-pdf", json={"url": self.PDF_URL})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content == b"%PDF-1.4"

    def test_upstream_failure(self, client):
        with respx.mock:
            respx.get(self.PDF_URL).mock(return_value=httpx.Response(404))
            response = client.post("/api/proxy-pdf", json={"url": self.PDF_URL})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to fetch PDF"}

    def test_requires_http_url(self, client):
        assert client.post("/api/proxy-pdf", json={"url": "file:///etc/passwd"}).status_code == 400

    @pytest.mark.parametrize("url", [
        "http://169.254.169.254/latest/meta-data",
        "http://localhost:8000/history",
        "https://evilcerts.example.com/alice.pdf",
    ])
    def test_rejects_other_hosts(self, client, url):
        with respx.mock:
            response = client.post("/api/proxy-pdf", json={"url": url})

        assert response.status_code == 403
        assert response.json() == {"error": "URL host is not allowed"}

    def test_allows_subdomains(self, client):
        url = "https://cdn.certs.example.com/alice.pdf"
        with respx.mock:
            respx.get(url).mock(return_value=httpx.Response(200, content=b"%PDF-1.4"))
            response = client.post("/api/proxy-pdf", json={"url": url})

        assert response.status_code == 200
