"""FastAPI app exposing the single-user workspace over HTTP.

Four areas mirror the pipelines: CV parsing, Europass conversion, tender
matching, and the expert profile workflow.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, HTTPException, Path, Query, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .client import ExtractionServiceClient
from .config import settings
from .events import Notifier
from .logging_config import setup_logging
from .models import FileStatus, ProcessingState, TenderSubmission, TrackedFile, UploadDocument
from .pipelines.export import ExportArtifact, ExportError, ResultExporter, safe_filename
from .pipelines.ingest import AdmissionError, FileUploadTracker
from .pipelines.matching import BatchTenderMatcher
from .pipelines.workflow import SequentialWorkflowEngine, WorkflowStage

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class RejectionDTO(BaseModel):
    """A file refused by the admission policy."""
    filename: str
    message: str


class UploadBatchResponse(BaseModel):
    """Batch upload response."""
    files: list[TrackedFile] = Field(default_factory=list)
    rejected: list[RejectionDTO] = Field(default_factory=list)
    message: str


class StageResponse(BaseModel):
    """Workflow stage run response."""
    stage: int
    success: bool
    message: str
    state: ProcessingState


class NotificationDTO(BaseModel):
    kind: str
    message: str
    subject: str | None = None
    level: str
    created_at: datetime


class Workspace:
    """Holds the pipelines of one user session, wired to one service client."""

    def __init__(
        self,
        client: ExtractionServiceClient | None = None,
        *,
        notifier: Notifier | None = None,
        exporter: ResultExporter | None = None,
    ) -> None:
        self.notifier = notifier or Notifier()
        self.client = client or ExtractionServiceClient()
        self.cv_parsing = FileUploadTracker(self.client.upload_multiple_files, notifier=self.notifier)
        self.europass = FileUploadTracker(self.client.parse_structured, notifier=self.notifier)
        self.tender = BatchTenderMatcher(self.client.upload_single_document, notifier=self.notifier)
        self.profile = SequentialWorkflowEngine(self.client, notifier=self.notifier)
        self.exporter = exporter or ResultExporter()

    async def aclose(self) -> None:
        await self.client.aclose()


_workspace: Workspace | None = None


def get_workspace() -> Workspace:
    """Dependency returning the process-wide workspace, created on first use."""
    global _workspace
    if _workspace is None:
        _workspace = Workspace()
    return _workspace


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    global _workspace
    # Startup
    setup_logging()
    logger.info(f"Application starting up; extraction service at {settings.service.base_url}")

    yield

    # Shutdown
    if _workspace is not None:
        await _workspace.aclose()
        _workspace = None
    logger.info("Application shutting down")


app = FastAPI(
    title="Tenderflow",
    version=settings.version,
    description="CV parsing, Europass conversion, tender matching and expert profiles",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(AdmissionError)
async def admission_error_handler(request, exc: AdmissionError):
    """Handle files refused by the admission policy."""
    logger.info(f"Admission error: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="admission_error", detail=exc.message).model_dump(),
    )


@app.exception_handler(ExportError)
async def export_error_handler(request, exc: ExportError):
    """Handle artifacts that cannot be produced."""
    logger.error(f"Export error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(error="export_error", detail=str(exc)).model_dump(),
    )


async def _read_upload(file: UploadFile) -> UploadDocument:
    try:
        content = await file.read()
    finally:
        await file.close()
    return UploadDocument(name=file.filename or "upload", content=content, mime_type=file.content_type or "")


def _content_disposition(filename: str) -> str:
    # headers are latin-1; non-ASCII names travel in the RFC 5987 parameter
    fallback = safe_filename(filename.encode("ascii", "ignore").decode("ascii"))
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def _download(artifact: ExportArtifact) -> Response:
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={"Content-Disposition": _content_disposition(artifact.filename)},
    )


def _completed_entry(tracker: FileUploadTracker, file_id: str) -> TrackedFile:
    entry = tracker.get(file_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"File {file_id} not found")
    if entry.status != FileStatus.COMPLETED or entry.result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"File {file_id} has no result")
    return entry


async def _upload_batch(tracker: FileUploadTracker, files: list[UploadFile]) -> UploadBatchResponse:
    documents = [await _read_upload(f) for f in files]
    logger.info(f"Received {len(documents)} uploads")
    results, rejected = await tracker.submit(documents)
    completed = sum(1 for f in results if f.status == FileStatus.COMPLETED)
    return UploadBatchResponse(
        files=results,
        rejected=[RejectionDTO(filename=r.filename, message=r.message) for r in rejected],
        message=f"{completed} of {len(documents)} files processed successfully",
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "cv_parsing": "/cv-parsing/files",
            "europass": "/europass/files",
            "tender_matching": "/tender-matching",
            "expert_profile": "/expert-profile/state",
            "notifications": "/notifications",
            "docs": "/docs",
        },
    }


# CV parsing

@app.post("/cv-parsing/files", response_model=UploadBatchResponse)
async def upload_cvs(
    files: list[UploadFile] = File(..., description="CV files (PDF or Word)"),
    workspace: Workspace = Depends(get_workspace),
) -> UploadBatchResponse:
    """Parse CVs into candidate records; each file completes independently."""
    return await _upload_batch(workspace.cv_parsing, files)


@app.get("/cv-parsing/files", response_model=list[TrackedFile])
async def list_cvs(workspace: Workspace = Depends(get_workspace)) -> list[TrackedFile]:
    return workspace.cv_parsing.files


@app.delete("/cv-parsing/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_cv(file_id: str, workspace: Workspace = Depends(get_workspace)) -> Response:
    if not workspace.cv_parsing.remove(file_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"File {file_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Europass conversion

@app.post("/europass/files", response_model=UploadBatchResponse)
async def upload_europass(
    files: list[UploadFile] = File(..., description="CV files (PDF or Word)"),
    workspace: Workspace = Depends(get_workspace),
) -> UploadBatchResponse:
    """Parse CVs into structured Europass records."""
    return await _upload_batch(workspace.europass, files)


@app.get("/europass/files", response_model=list[TrackedFile])
async def list_europass(workspace: Workspace = Depends(get_workspace)) -> list[TrackedFile]:
    return workspace.europass.files


@app.delete("/europass/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_europass(file_id: str, workspace: Workspace = Depends(get_workspace)) -> Response:
    if not workspace.europass.remove(file_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"File {file_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/europass/files/{file_id}/json")
async def download_europass_json(file_id: str, workspace: Workspace = Depends(get_workspace)) -> Response:
    entry = _completed_entry(workspace.europass, file_id)
    stem = entry.name.rsplit(".", 1)[0]
    return _download(workspace.exporter.export_json(entry.result, f"{stem}_europass.json"))


@app.get("/europass/files/{file_id}/docx")
async def download_europass_docx(file_id: str, workspace: Workspace = Depends(get_workspace)) -> Response:
    """Merge the structured record into the Europass Word template."""
    entry = _completed_entry(workspace.europass, file_id)
    return _download(workspace.exporter.render_document(entry.result))


# Tender matching

@app.post("/tender-matching", response_model=TenderSubmission)
async def submit_tender(
    file: UploadFile = File(..., description="Tender document (PDF or Word)"),
    workspace: Workspace = Depends(get_workspace),
) -> TenderSubmission:
    """Match a tender against the candidate pool.

    Matching failures are reported in the submission's ``error`` field,
    not as an HTTP error.
    """
    document = await _read_upload(file)
    submission = await workspace.tender.submit(document)
    if submission is None:
        raise workspace.tender.last_rejection
    return submission


@app.get("/tender-matching", response_model=TenderSubmission)
async def get_tender(workspace: Workspace = Depends(get_workspace)) -> TenderSubmission:
    if workspace.tender.submission is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No tender submitted")
    return workspace.tender.submission


# Expert profile workflow

@app.post("/expert-profile/documents")
async def attach_profile_documents(
    cv: UploadFile | None = File(default=None, description="Expert CV"),
    tender: UploadFile | None = File(default=None, description="Tender document"),
    workspace: Workspace = Depends(get_workspace),
):
    """Attach the CV and/or tender used by step 1."""
    if cv is None and tender is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide a cv or tender file")
    documents = {
        "cv": await _read_upload(cv) if cv is not None else None,
        "tender": await _read_upload(tender) if tender is not None else None,
    }
    rejected = workspace.profile.attach_documents(**documents)
    if rejected:
        refused = {r.filename for r in rejected}
        kept = [f"{role} {doc.name}" for role, doc in documents.items() if doc is not None and doc.name not in refused]
        detail = " ".join(r.message for r in rejected)
        if kept:
            detail += f" Attached anyway: {', '.join(kept)}."
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(error="admission_error", detail=detail).model_dump(),
        )
    return workspace.profile.snapshot()


@app.post("/expert-profile/steps/{stage}", response_model=StageResponse)
async def run_profile_step(
    stage: int = Path(..., ge=1, le=4),
    workspace: Workspace = Depends(get_workspace),
) -> StageResponse:
    """Run one workflow stage.

    Gating rejections answer 409; service failures answer 502. The stage's
    error is also kept in ``state.last_error``.
    """
    outcome = await workspace.profile.run_stage(stage)
    if not outcome.success:
        code = status.HTTP_502_BAD_GATEWAY if outcome.network_called else status.HTTP_409_CONFLICT
        raise HTTPException(status_code=code, detail=outcome.message)
    return StageResponse(
        stage=int(outcome.stage),
        success=True,
        message=outcome.message,
        state=workspace.profile.state,
    )


@app.get("/expert-profile/state")
async def get_profile_state(workspace: Workspace = Depends(get_workspace)):
    return workspace.profile.snapshot()


@app.post("/expert-profile/reset")
async def reset_profile(workspace: Workspace = Depends(get_workspace)):
    workspace.profile.reset()
    return workspace.profile.snapshot()


@app.get("/expert-profile/steps/{stage}/download")
async def download_profile_step(
    stage: int = Path(..., ge=1, le=4),
    workspace: Workspace = Depends(get_workspace),
) -> Response:
    output = workspace.profile.session.output(WorkflowStage(stage))
    if output is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Step {stage} has no result")
    return _download(workspace.exporter.export_json(output, f"step{stage}_results.json"))


@app.get("/expert-profile/download")
async def download_profile(workspace: Workspace = Depends(get_workspace)) -> Response:
    """Download the whole workflow run, every stage included."""
    if workspace.profile.session.profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Expert profile not generated yet")
    return _download(workspace.exporter.export_json(workspace.profile.snapshot(), "expert_profile_complete.json"))


@app.get("/notifications", response_model=list[NotificationDTO])
async def list_notifications(
    limit: int | None = Query(default=None, ge=1, le=100),
    workspace: Workspace = Depends(get_workspace),
) -> list[NotificationDTO]:
    return [
        NotificationDTO(
            kind=n.kind.value,
            message=n.message,
            subject=n.subject,
            level=n.level,
            created_at=n.created_at,
        )
        for n in workspace.notifier.recent(limit)
    ]
