"""Tests for background runs, the batch registry and report persistence."""

import json

import httpx
import pytest
import respx

from certbatch.background_processor import (
    BatchHandle,
    BatchRegistry,
    get_batch_registry,
    process_batch_background,
    record_run_started,
    start_batch,
)
from certbatch.config import Settings
from certbatch.database.services import BatchRunService
from certbatch.history import HistoryRecorder
from certbatch.models import BatchState, BatchStatus, GenerationKind, OutputMode, RowRecord

CERT_URL = "https://certs.example.com/generate"
CRED_URL = "https://creds.example.com/signup"
SEND_URL = "http://testserver/api/send-email"
PROXY_URL = "http://testserver/api/proxy-pdf"


@pytest.fixture
def settings():
    settings = Settings()
    settings.certificate_api_url = CERT_URL
    settings.credentials_api_url = CRED_URL
    settings.email_endpoint_url = SEND_URL
    settings.retrieval_proxy_url = PROXY_URL
    return settings


def _handle(output_mode, rows, kind=GenerationKind.CERTIFICATE):
    return BatchHandle(batch_id="bg000001", kind=kind, output_mode=output_mode, total_rows=len(rows))


def _certificate_response(request):
    name = json.loads(request.content)["name"]
    return httpx.Response(200, json={"url": f"https://files.example.com/{name.lower()}.pdf"})


@pytest.mark.asyncio
@respx.mock
async def test_email_run_publishes_report_and_saves_it(settings, db_manager, kv_store, auth_tokens):
    respx.post(CERT_URL).mock(side_effect=_certificate_response)
    send_route = respx.post(SEND_URL).mock(return_value=httpx.Response(200, json={"success": True}))
    rows = [RowRecord("Alice", "alice@x.com"), RowRecord("Bob")]
    handle = _handle(OutputMode.EMAIL_DELIVERY, rows)
    record_run_started(handle)

    async with httpx.AsyncClient() as client:
        report = await process_batch_background(
            handle, rows,
            auth_credential=auth_tokens,
            history=HistoryRecorder(kv_store, limit=10),
            http_client=client,
            settings=settings,
        )

    assert handle.state is BatchState.COMPLETE
    assert handle.report is report
    assert report.status is BatchStatus.SUCCESS
    assert report.emailed_count == 1
    assert send_route.call_count == 1
    assert handle.progress.percent == 100

    saved = BatchRunService.get_run("bg000001")
    assert saved["state"] == "complete"
    assert saved["status"] == "success"
    assert [o["name"] for o in BatchRunService.get_outcomes("bg000001")] == ["Alice", "Bob"]


@pytest.mark.asyncio
@respx.mock
async def test_archive_run_fetches_through_proxy(settings, db_manager, kv_store):
    respx.post(CERT_URL).mock(side_effect=_certificate_response)
    respx.post(PROXY_URL).mock(return_value=httpx.Response(200, content=b"%PDF-1.4"))
    rows = [RowRecord("Alice"), RowRecord("Bob")]
    handle = _handle(OutputMode.ARCHIVE_DOWNLOAD, rows)

    async with httpx.AsyncClient() as client:
        report = await process_batch_background(
            handle, rows, history=HistoryRecorder(kv_store, limit=10), http_client=client, settings=settings
        )

    assert report.status is BatchStatus.SUCCESS
    assert report.archive.entry_paths == ["certificates/Alice.pdf", "certificates/Bob.pdf"]
    assert handle.progress.phase == "complete"


@pytest.mark.asyncio
@respx.mock
async def test_generation_failures_become_a_fatal_report(settings, db_manager, kv_store):
    respx.post(CERT_URL).mock(return_value=httpx.Response(429, json={"error": "Rate limited"}))
    rows = [RowRecord("Alice")]
    handle = _handle(OutputMode.ARCHIVE_DOWNLOAD, rows)

    async with httpx.AsyncClient() as client:
        report = await process_batch_background(
            handle, rows, history=HistoryRecorder(kv_store, limit=10), http_client=client, settings=settings
        )

    assert report.status is BatchStatus.FATAL
    assert report.error_message == "Failed to generate any certificates"
    assert report.ledger[0].error_message == "Rate limited"
    assert handle.error is None


@pytest.mark.asyncio
@respx.mock
async def test_unexpected_error_is_recorded_on_handle(settings, db_manager, kv_store):
    respx.post(CERT_URL).mock(side_effect=RuntimeError("connection pool exploded"))
    rows = [RowRecord("Alice")]
    handle = _handle(OutputMode.ARCHIVE_DOWNLOAD, rows)

    async with httpx.AsyncClient() as client:
        report = await process_batch_background(
            handle, rows, history=HistoryRecorder(kv_store, limit=10), http_client=client, settings=settings
        )

    assert report is None
    assert handle.report is None
    assert handle.is_finished
    assert handle.finished_at is not None
    assert "connection pool exploded" in handle.error


@pytest.mark.asyncio
@respx.mock
async def test_start_batch_registers_and_schedules(settings, db_manager, kv_store):
    respx.post(CERT_URL).mock(side_effect=_certificate_response)
    respx.post(PROXY_URL).mock(return_value=httpx.Response(200, content=b"%PDF-1.4"))
    rows = [RowRecord("Alice")]
    handle = _handle(OutputMode.ARCHIVE_DOWNLOAD, rows)

    task = start_batch(handle, rows, history=HistoryRecorder(kv_store, limit=10), settings=settings)

    assert get_batch_registry().get("bg000001") is handle
    report = await task
    assert report.status is BatchStatus.SUCCESS
    assert handle.to_dict()["report"]["status"] == "success"


def test_handle_starts_in_preview_with_zero_progress():
    handle = BatchHandle(batch_id="x", kind=GenerationKind.CREDENTIAL, output_mode=OutputMode.EMAIL_DELIVERY, total_rows=3)

    data = handle.to_dict()
    assert data["state"] == "preview"
    assert data["progress"]["percent"] == 0
    assert "report" not in data


def _registry_handle(batch_id, finished_at=None):
    handle = BatchHandle(
        batch_id=batch_id, kind=GenerationKind.CERTIFICATE, output_mode=OutputMode.ARCHIVE_DOWNLOAD, total_rows=1
    )
    if finished_at is not None:
        handle.state = BatchState.COMPLETE
        handle.finished_at = finished_at
    else:
        handle.state = BatchState.PROCESSING
    return handle


class TestBatchRegistry:
    def test_mark_finished_records_time(self):
        handle = _registry_handle("run00001")

        handle.mark_finished()

        assert handle.is_finished
        assert handle.finished_at is not None

    def test_keeps_only_newest_finished_runs(self):
        now = [100.0]
        registry = BatchRegistry(max_finished=2, retention_seconds=3600, clock=lambda: now[0])
        for index, batch_id in enumerate(["run00001", "run00002", "run00003"]):
            registry.register(_registry_handle(batch_id, finished_at=10.0 + index))

        assert registry.get("run00001") is None
        assert [h.batch_id for h in registry.list()] == ["run00002", "run00003"]

    def test_expires_finished_runs_after_retention(self):
        now = [100.0]
        registry = BatchRegistry(max_finished=20, retention_seconds=60, clock=lambda: now[0])
        registry.register(_registry_handle("run00001", finished_at=100.0))
        assert registry.get("run00001") is not None

        now[0] = 161.0

        assert registry.get("run00001") is None
        assert registry.prune() == []

    def test_never_evicts_runs_in_progress(self):
        now = [0.0]
        registry = BatchRegistry(max_finished=0, retention_seconds=1, clock=lambda: now[0])
        registry.register(_registry_handle("run00001"))
        registry.register(_registry_handle("run00002", finished_at=0.0))

        now[0] = 1000.0

        assert [h.batch_id for h in registry.list()] == ["run00001"]

    def test_prune_returns_evicted_ids(self):
        now = [50.0]
        registry = BatchRegistry(max_finished=5, retention_seconds=10, clock=lambda: now[0])
        registry._handles["run00001"] = _registry_handle("run00001", finished_at=30.0)
        registry._handles["run00002"] = _registry_handle("run00002", finished_at=45.0)

        assert registry.prune() == ["run00001"]


def test_proxy_hosts_default_to_certificate_api_host(monkeypatch):
    monkeypatch.setenv("CERTIFICATE_API_URL", "https://Certs.Example.com/generate")
    monkeypatch.delenv("PROXY_ALLOWED_HOSTS", raising=False)

    assert Settings().proxy_allowed_hosts == ("certs.example.com",)


def test_proxy_hosts_from_environment(monkeypatch):
    monkeypatch.setenv("PROXY_ALLOWED_HOSTS", "certs.example.com, Files.Example.com ,")

    assert Settings().proxy_allowed_hosts == ("certs.example.com", "files.example.com")
