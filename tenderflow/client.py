"""HTTP client for the external extraction/matching service.

Wraps httpx with uniform error handling: batch and tender endpoints never
raise, and workflow endpoints raise only the ``ServiceError`` family.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, TypeVar

import httpx
from pydantic import BaseModel, Field, ValidationError

from .config import ServiceSettings, settings
from .models import (
    AssignmentExtraction,
    AssignmentSelection,
    ExpertProfile,
    UploadDocument,
    WriteUp,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ServiceError(Exception):
    """Base class for failures talking to the external service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransportError(ServiceError):
    """Raised when the service cannot be reached."""
    pass


class UpstreamError(ServiceError):
    """Raised when the service answers with a non-2xx status."""
    pass


class MalformedResponseError(ServiceError):
    """Raised when a 2xx response lacks the fields the caller needs."""
    pass


# Response envelopes

class ProcessedEntry(BaseModel):
    filename: str = ""
    parsed: dict[str, Any] | None = None
    result: dict[str, Any] | None = None

    @property
    def payload(self) -> dict[str, Any]:
        if self.parsed is not None:
            return self.parsed
        return self.result or {}


class ErrorEntry(BaseModel):
    filename: str = ""
    error: str | None = None

    @property
    def message(self) -> str:
        return self.error or "Unknown error"


class BatchParseResponse(BaseModel):
    """``{processed: [...], errors: [...]}`` returned by the parse endpoints."""
    processed: list[ProcessedEntry] = Field(default_factory=list)
    errors: list[ErrorEntry] = Field(default_factory=list)

    @classmethod
    def failure(cls, documents: Iterable[UploadDocument], message: str) -> BatchParseResponse:
        return cls(errors=[ErrorEntry(filename=doc.name, error=message) for doc in documents])


class TenderResponse(BaseModel):
    """``{status, result?}`` returned by the tender endpoint."""
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None


def _file_part(field: str, document: UploadDocument) -> tuple[str, tuple[str, bytes, str]]:
    return field, (document.name, document.content, document.mime_type or "application/octet-stream")


def _error_detail(response: httpx.Response) -> str | None:
    """Pull the upstream-provided message out of an error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    for key in ("detail", "error", "message"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if value:
            return str(value)
    return None


class ExtractionServiceClient:
    """Async client for every endpoint the pipelines consume.

    Usage:
        async with ExtractionServiceClient() as client:
            response = await client.upload_multiple_files([document])
    """

    def __init__(
        self,
        config: ServiceSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or settings.service
        self._http = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> ExtractionServiceClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(
        self,
        path: str,
        *,
        fallback: str,
        files: list[tuple[str, tuple[str, bytes, str]]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """POST and decode JSON, translating every failure into a ServiceError."""
        try:
            response = await self._http.post(path, files=files, json=json)
        except httpx.RequestError as e:
            logger.warning(f"Transport failure calling {path}: {e!r}")
            raise TransportError(str(e) or fallback) from e

        if not response.is_success:
            detail = _error_detail(response)
            logger.warning(f"{path} answered {response.status_code}: {detail or fallback}")
            raise UpstreamError(detail or fallback, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"{path} returned a non-JSON body") from e

    @staticmethod
    def _validate(model: type[ModelT], body: Any, what: str) -> ModelT:
        try:
            return model.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Malformed {what} response: {e.error_count()} validation errors")
            raise MalformedResponseError(f"Malformed {what} response: missing or invalid fields") from e

    async def _batch_parse(self, path: str, documents: list[UploadDocument]) -> BatchParseResponse:
        try:
            body = await self._post(
                path,
                fallback="Upload failed",
                files=[_file_part("files", doc) for doc in documents],
            )
            return self._validate(BatchParseResponse, body, "parse")
        except ServiceError as e:
            return BatchParseResponse.failure(documents, e.message)

    async def upload_multiple_files(self, documents: list[UploadDocument]) -> BatchParseResponse:
        """Parse CVs into candidate records (legacy key shape)."""
        return await self._batch_parse(self.config.upload_multiple_path, documents)

    async def parse_structured(self, documents: list[UploadDocument]) -> BatchParseResponse:
        """Parse CVs into structured (Europass) records."""
        return await self._batch_parse(self.config.structured_parse_path, documents)

    async def upload_single_document(self, document: UploadDocument) -> TenderResponse:
        """Submit a tender for candidate matching."""
        try:
            body = await self._post(
                self.config.tender_path,
                fallback="Tender processing failed",
                files=[_file_part("file", document)],
            )
            return self._validate(TenderResponse, body, "tender")
        except ServiceError as e:
            return TenderResponse(status="error", error=e.message)

    async def workflow_step1(self, cv: UploadDocument, tender: UploadDocument) -> AssignmentExtraction:
        body = await self._post(
            self.config.step1_path,
            fallback="Failed to process step 1",
            files=[_file_part("cv", cv), _file_part("tender", tender)],
        )
        return self._validate(AssignmentExtraction, body, "step 1")

    async def workflow_step2(self, cv_assignments: Any, tender_assignments: Any) -> AssignmentSelection:
        body = await self._post(
            self.config.step2_path,
            fallback="Failed to process step 2",
            json={"cv_assignments": cv_assignments, "tender_assignments": tender_assignments},
        )
        return self._validate(AssignmentSelection, body, "step 2")

    async def workflow_step3(self, selected_assignments: Any, cv_text: str) -> WriteUp:
        body = await self._post(
            self.config.step3_path,
            fallback="Failed to process step 3",
            json={"selected_assignments": selected_assignments, "cv_text": cv_text},
        )
        return self._validate(WriteUp, body, "step 3")

    async def workflow_step4(self, write_up: Any, cv_text: str, tender_assignments: Any) -> ExpertProfile:
        body = await self._post(
            self.config.step4_path,
            fallback="Failed to process step 4",
            json={"write_up": write_up, "cv_text": cv_text, "tender_assignments": tender_assignments},
        )
        return self._validate(ExpertProfile, body, "step 4")
