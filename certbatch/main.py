from fastapi import FastAPI, File, UploadFile, HTTPException, Form, Query, Body, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional
import asyncio
import json
import logging

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .background_processor import BatchHandle, get_batch_registry, record_run_started, start_batch
from .config import configure_logging, get_settings
from .database.connection import close_database, get_database_manager, init_database
from .database.services import BatchRunService
from .errors import DeliveryError
from .history import CredentialStore, DatabaseKeyValueStore, HistoryRecorder, KeyValueStore
from .mail_service import GmailMailer
from .models import BatchState, GenerationKind, OutputMode
from .sheet_processor import get_sheet_info, parse_sheet
from .templates import MessageTemplate, get_all_templates
from .utils import calculate_file_size_mb, generate_batch_id, is_allowed_url, utc_timestamp

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    ok, message = init_database()
    if ok:
        logger.info(message)
    else:
        logger.error(f"Database unavailable, history and run records will not be saved: {message}")
    yield
    close_database()


app = FastAPI(
    title="Certificate Batch Service",
    description="Generate certificates or Swayam credentials for every row of a spreadsheet, then email them or download them as one archive",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add CORS middleware to handle cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_key_value_store() -> KeyValueStore:
    """FastAPI dependency for the history and token store"""
    return DatabaseKeyValueStore()


@app.get("/")
async def root():
    """Root endpoint with basic information"""
    return {
        "message": "Welcome to the Certificate Batch Service API",
        "version": "1.0.0",
        "features": [
            "Spreadsheet upload with row validation (CSV and XLSX)",
            "Certificate and Swayam credential generation",
            "Email delivery through Gmail",
            "Zip archive download",
            "Real-time progress over Server-Sent Events",
            "Recent history per generation kind"
        ],
        "output_modes": {
            OutputMode.EMAIL_DELIVERY.value: "Email each generated artifact to its recipient",
            OutputMode.ARCHIVE_DOWNLOAD.value: "Bundle every certificate into one zip file"
        },
        "endpoints": {
            "health": "/health",
            "docs": "/docs",
            "templates": "/templates",
            "preview": "/preview",
            "batches": "/batches",
            "batch_status": "/batches/{batch_id}",
            "batch_archive": "/batches/{batch_id}/archive",
            "stream": "/stream/batches/{batch_id}",
            "history": "/history",
            "auth_status": "/auth/status"
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint to verify service is running"""
    settings = get_settings()
    config_ok, config_error = settings.validate_config()
    db_ok, db_error = get_database_manager().test_connection()

    return {
        "status": "healthy" if config_ok else "misconfigured",
        "message": "Certificate Batch Service is running",
        "version": "1.0.0",
        "config": {
            "certificate_api_url": settings.certificate_api_url,
            "credentials_api_url": settings.credentials_api_url,
            "http_timeout_seconds": settings.http_timeout_seconds,
            "max_sheet_rows": settings.max_sheet_rows,
            "history_limit": settings.history_limit,
            "config_error": config_error
        },
        "capabilities": {
            "database": "available" if db_ok else f"unavailable: {db_error}"
        }
    }


@app.get("/templates")
async def get_available_templates():
    """Get the default message templates for every generation kind"""
    templates = get_all_templates()
    return {
        "available_templates": templates,
        "default_kind": GenerationKind.CERTIFICATE.value,
        "total_templates": len(templates)
    }


@app.post("/preview")
async def preview_sheet(
    file: UploadFile = File(...),
    kind: GenerationKind = Form(GenerationKind.CERTIFICATE, description="certificate or credential")
):
    """
    Validate a spreadsheet without starting a run

    Returns the rows that would be processed, the rows that were filtered out
    and summary counts.
    """
    contents = await file.read()
    result = parse_sheet(contents, file.filename, kind=kind, max_rows=get_settings().max_sheet_rows)

    return {
        "success": True,
        "kind": kind.value,
        "state": BatchState.PREVIEW.value,
        "rows": [row.to_dict() for row in result.rows],
        "rejected_rows": [rejected.to_dict() for rejected in result.rejected],
        "sheet_info": get_sheet_info(result),
        "file_info": {
            "original_filename": file.filename,
            "size_bytes": len(contents),
            "size_mb": calculate_file_size_mb(contents)
        }
    }


@app.post("/batches")
async def create_batch(
    file: UploadFile = File(...),
    output_mode: OutputMode = Form(..., description="email or zip"),
    kind: GenerationKind = Form(GenerationKind.CERTIFICATE, description="certificate or credential"),
    subject: Optional[str] = Form(None, description="Email subject; defaults per kind"),
    message_template: Optional[str] = Form(None, description="Email body with ${name} placeholders"),
    store: KeyValueStore = Depends(get_key_value_store)
):
    """
    Upload a spreadsheet and start a batch run in the background

    Returns the batch ID plus the endpoints for polling, streaming and download.
    """
    if kind is GenerationKind.CREDENTIAL and output_mode is OutputMode.ARCHIVE_DOWNLOAD:
        raise HTTPException(status_code=400, detail="Credential batches only support email delivery")

    if message_template:
        try:
            MessageTemplate(message_template)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    settings = get_settings()
    contents = await file.read()
    result = parse_sheet(contents, file.filename, kind=kind, max_rows=settings.max_sheet_rows)
    if not result.rows:
        raise HTTPException(status_code=400, detail="No valid rows found in the spreadsheet")

    auth_credential = None
    history = HistoryRecorder(store, kind, limit=settings.history_limit)
    try:
        if output_mode is OutputMode.EMAIL_DELIVERY:
            auth_credential = CredentialStore(store).load()
        history.load()
    except SQLAlchemyError as e:
        # The run still starts; the orchestrator retries the history load
        logger.error(f"Key-value store unavailable while starting batch: {e}")

    if output_mode is OutputMode.EMAIL_DELIVERY and not auth_credential:
        logger.warning("Email batch requested without stored credentials; rows will be generated only")

    if not subject and kind is GenerationKind.CERTIFICATE:
        subject = settings.certificate_subject

    handle = BatchHandle(
        batch_id=generate_batch_id(),
        kind=kind,
        output_mode=output_mode,
        total_rows=len(result.rows),
        original_filename=file.filename,
        rejected_rows=[rejected.to_dict() for rejected in result.rejected],
    )
    logger.info(f"Batch {handle.batch_id}: {len(result.rows)} rows accepted, {len(result.rejected)} rejected")

    record_run_started(handle, file_size_bytes=len(contents))
    start_batch(
        handle,
        result.rows,
        message_template=message_template,
        subject=subject,
        auth_credential=auth_credential,
        history=history,
        settings=settings,
    )

    return {
        "success": True,
        "message": "Spreadsheet uploaded and processing started successfully",
        "batch_id": handle.batch_id,
        "processing_info": {
            "kind": kind.value,
            "output_mode": output_mode.value,
            "total_rows": handle.total_rows,
            "rejected_rows": len(handle.rejected_rows),
            "email_enabled": output_mode is OutputMode.EMAIL_DELIVERY and bool(auth_credential),
            "status": BatchState.PROCESSING.value
        },
        "rejected_rows": handle.rejected_rows,
        "streaming": {
            "sse_endpoint": f"/stream/batches/{handle.batch_id}",
            "status_endpoint": f"/batches/{handle.batch_id}",
            "archive_endpoint": f"/batches/{handle.batch_id}/archive"
        }
    }


@app.get("/batches")
async def list_batches(limit: int = Query(10, ge=1, le=100)):
    """Get recent batch runs from the database"""
    try:
        runs = BatchRunService.get_recent_runs(limit)
    except SQLAlchemyError as e:
        logger.error(f"Failed to list batch runs: {e}")
        raise HTTPException(status_code=500, detail="Error retrieving batch runs")

    return {"batches": runs, "total": len(runs)}


@app.get("/batches/{batch_id}")
async def get_batch(batch_id: str):
    """Status, progress and (once complete) the full report of a batch"""
    handle = get_batch_registry().get(batch_id)
    if handle:
        return handle.to_dict()

    try:
        run = BatchRunService.get_run(batch_id)
        outcomes = BatchRunService.get_outcomes(batch_id) if run else []
    except SQLAlchemyError as e:
        logger.error(f"Failed to load batch {batch_id}: {e}")
        raise HTTPException(status_code=500, detail="Error retrieving batch")

    if not run:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")

    return {**run, "ledger": outcomes}


@app.get("/batches/{batch_id}/archive")
async def download_archive(batch_id: str):
    """Download the zip produced by an archive run"""
    handle = get_batch_registry().get(batch_id)
    if not handle:
        try:
            run = BatchRunService.get_run(batch_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load batch {batch_id}: {e}")
            run = None
        if run and run["archive_filename"]:
            raise HTTPException(status_code=410, detail=f"Archive for batch {batch_id} is no longer held in memory")
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    if handle.output_mode is not OutputMode.ARCHIVE_DOWNLOAD:
        raise HTTPException(status_code=400, detail="Batch was not an archive download")
    if not handle.is_finished:
        raise HTTPException(status_code=409, detail="Batch is still processing")
    if not handle.report or not handle.report.archive:
        detail = handle.error or (handle.report.error_message if handle.report else None) or "No archive was produced"
        raise HTTPException(status_code=404, detail=detail)

    archive = handle.report.archive
    return Response(
        content=archive.content,
        media_type="application/zip",
        headers={
            "Content-Disposition": f"attachment; filename={archive.filename}",
            "X-Batch-ID": batch_id,
            "Cache-Control": "no-cache, no-store, must-revalidate"
        }
    )


@app.get("/stream/batches/{batch_id}")
async def stream_batch_progress(batch_id: str):
    """
    Stream batch progress using Server-Sent Events (SSE)

    Events:
    - progress_update: whenever the completion percentage changes
    - processing_complete: terminal status and counts
    - connection_closing: the server is about to close the stream

    Frontend Usage:
    ```javascript
    const eventSource = new EventSource(`/stream/batches/${batchId}`);

    eventSource.addEventListener('progress_update', (event) => {
        const progress = JSON.parse(event.data);
        updateProgressBar(progress.data.percent);
    });
    ```
    """
    handle = get_batch_registry().get(batch_id)
    if not handle:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")

    poll_interval = get_settings().sse_poll_interval_seconds

    async def event_stream() -> AsyncGenerator[str, None]:
        initial_data = {
            'type': 'connection_established',
            'batch_id': batch_id,
            'timestamp': utc_timestamp(),
            'message': 'SSE connection established successfully'
        }
        yield f"data: {json.dumps(initial_data)}\n\n"

        last_percent = None
        while True:
            progress = handle.progress
            if progress.percent != last_percent:
                progress_data = {
                    'type': 'progress_update',
                    'batch_id': batch_id,
                    'timestamp': utc_timestamp(),
                    'data': {**progress.to_dict(), 'state': handle.state.value}
                }
                yield f"event: progress_update\ndata: {json.dumps(progress_data)}\n\n"
                last_percent = progress.percent

            if handle.is_finished:
                report = handle.report
                final_data = {
                    'type': 'processing_complete',
                    'batch_id': batch_id,
                    'timestamp': utc_timestamp(),
                    'data': {
                        'final_status': report.status.value if report else 'fatal',
                        'completion_message': report.summary_message if report else handle.error,
                        'counts': report.to_dict()['counts'] if report else None,
                        'archive': report.archive.to_dict() if report and report.archive else None
                    }
                }
                yield f"event: processing_complete\ndata: {json.dumps(final_data)}\n\n"

                close_data = {
                    'type': 'connection_closing',
                    'batch_id': batch_id,
                    'timestamp': utc_timestamp(),
                    'message': 'Server closing SSE connection - processing complete'
                }
                yield f"event: connection_closing\ndata: {json.dumps(close_data)}\n\n"
                break

            await asyncio.sleep(poll_interval)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


@app.get("/history")
async def get_history(
    kind: GenerationKind = Query(GenerationKind.CERTIFICATE),
    store: KeyValueStore = Depends(get_key_value_store)
):
    """Most recent generated artifacts, newest first"""
    recorder = HistoryRecorder(store, kind, limit=get_settings().history_limit)
    entries = recorder.load()
    return {"kind": kind.value, "entries": [entry.to_dict() for entry in entries], "total": len(entries)}


@app.delete("/history")
async def clear_history(
    kind: GenerationKind = Query(GenerationKind.CERTIFICATE),
    store: KeyValueStore = Depends(get_key_value_store)
):
    HistoryRecorder(store, kind).clear()
    return {"success": True, "kind": kind.value}


@app.post("/auth/credentials")
async def store_credentials(
    tokens: Dict[str, Any] = Body(...),
    store: KeyValueStore = Depends(get_key_value_store)
):
    """Store OAuth tokens obtained by the external Google sign-in flow"""
    if not tokens.get("access_token"):
        raise HTTPException(status_code=400, detail="Tokens must include an access_token")
    CredentialStore(store).save(tokens)
    return {"success": True, "authenticated": True}


@app.delete("/auth/credentials")
async def clear_credentials(store: KeyValueStore = Depends(get_key_value_store)):
    """Log out: forget the stored OAuth tokens"""
    CredentialStore(store).clear()
    return {"success": True, "authenticated": False}


@app.get("/auth/status")
async def auth_status(store: KeyValueStore = Depends(get_key_value_store)):
    tokens = CredentialStore(store).load()
    return {
        "authenticated": bool(tokens),
        "has_refresh_token": bool(tokens and tokens.get("refresh_token"))
    }


@app.post("/api/proxy-pdf")
async def proxy_pdf(payload: Dict[str, Any] = Body(...)):
    """Fetch a generated PDF on behalf of the archive builder"""
    url = payload.get("url")
    if not isinstance(url, str) or not url.startswith(("http://", "https://")):
        return JSONResponse(status_code=400, content={"error": "A http(s) url is required"})
    if not is_allowed_url(url, get_settings().proxy_allowed_hosts):
        logger.warning(f"Refused to proxy PDF from a host outside PROXY_ALLOWED_HOSTS: {url}")
        return JSONResponse(status_code=403, content={"error": "URL host is not allowed"})

    try:
        async with httpx.AsyncClient(timeout=get_settings().http_timeout_seconds) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Failed to fetch PDF from {url}: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch PDF"})

    return Response(
        content=response.content,
        media_type="application/pdf",
        headers={"Content-Disposition": "attachment"}
    )


@app.post("/api/send-email")
async def send_email(payload: Dict[str, Any] = Body(...)):
    """
    Send one certificate or credentials email through Gmail

    Expects {to, subject, body, authCredential, type, attachmentUrl?}; the
    legacy "tokens" key is accepted in place of authCredential.
    """
    to = payload.get("to")
    subject = payload.get("subject")
    body = payload.get("body")
    tokens = payload.get("authCredential") or payload.get("tokens")
    email_type = payload.get("type") or "certificate"
    attachment_url = payload.get("attachmentUrl")

    if not to or not subject or not body or not tokens:
        return JSONResponse(
            status_code=400,
            content={"error": "Missing required fields: to, subject, body, or authCredential"}
        )

    if email_type == "certificate" and not attachment_url:
        return JSONResponse(status_code=400, content={"error": "Missing attachmentUrl for certificate email"})
    if email_type not in ("certificate", "credentials"):
        return JSONResponse(status_code=400, content={"error": "Invalid email type"})
    if email_type == "certificate" and not is_allowed_url(attachment_url, get_settings().proxy_allowed_hosts):
        return JSONResponse(status_code=400, content={"error": "attachmentUrl host is not allowed"})

    try:
        async with httpx.AsyncClient(timeout=get_settings().http_timeout_seconds) as client:
            mailer = GmailMailer(client)
            if email_type == "certificate":
                await mailer.send_certificate_email(to, subject, body, attachment_url, tokens)
            else:
                await mailer.send_credentials_email(to, subject, body, tokens)
    except DeliveryError as e:
        logger.error(f"Email sending error for {to}: {e.message}")
        return JSONResponse(status_code=500, content={"error": "Failed to send email", "details": e.message})

    return {"success": True}


def main():
    """Console entry point: run the API with uvicorn"""
    import uvicorn

    settings = get_settings()
    configure_logging()

    logger.info(f"Starting Certificate Batch Service on {settings.host}:{settings.port}")

    uvicorn.run(
        "certbatch.main:app",
        host=settings.host,
        port=settings.port,
        access_log=True,
        log_level=settings.log_level.lower()
    )


# Production runner
if __name__ == "__main__":
    main()
