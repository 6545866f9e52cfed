"""Upload ingestion: admission policy and the per-file upload tracker.

Implementations here must:
- Reject oversized or unsupported files before any network call.
- Drive each accepted file through uploading -> processing -> completed/error
  independently, so one failure never touches a sibling entry.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Awaitable, Callable, Iterable

from ..client import BatchParseResponse, ErrorEntry, ProcessedEntry
from ..config import DOC_MIME, DOCX_MIME, PDF_MIME, AdmissionSettings, settings
from ..events import Notification, NotificationKind, Notifier
from ..models import FileStatus, TrackedFile, UploadDocument
from .normalization import NormalizationError, normalize

logger = logging.getLogger(__name__)

ParseCall = Callable[[list[UploadDocument]], Awaitable[BatchParseResponse]]

PROCESSING_PROGRESS = 50

_GENERIC_MIME = {"", "application/octet-stream"}


class AdmissionError(Exception):
    """Raised when a file violates the size/type admission policy."""

    def __init__(self, filename: str, message: str) -> None:
        super().__init__(message)
        self.filename = filename
        self.message = message


@dataclass
class AdmissionReport:
    """Outcome of applying the admission policy to a batch."""
    accepted: list[UploadDocument] = field(default_factory=list)
    rejected: list[AdmissionError] = field(default_factory=list)


def format_file_size(size: float) -> str:
    """Human-readable size, e.g. ``4.5 MB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{round(size, 2):g} {units[index]}"


def detect_mime_type(document: UploadDocument) -> str:
    """Resolve the MIME type from the declared type, extension, or magic number."""
    if document.mime_type not in _GENERIC_MIME:
        return document.mime_type

    suffix = PurePath(document.name).suffix.lower()
    by_extension = {".pdf": PDF_MIME, ".doc": DOC_MIME, ".docx": DOCX_MIME}
    if suffix in by_extension:
        return by_extension[suffix]

    head = document.content[:8]
    if head.startswith(b"%PDF"):
        return PDF_MIME
    if head.startswith(b"PK\x03\x04"):  # ZIP container (docx)
        return DOCX_MIME
    if head.startswith(b"\xd0\xcf\x11\xe0"):  # OLE2 (legacy doc)
        return DOC_MIME
    return document.mime_type or "application/octet-stream"


def check_admission(document: UploadDocument, policy: AdmissionSettings | None = None) -> str:
    """Validate one file against the admission policy.

    Returns:
        The resolved MIME type

    Raises:
        AdmissionError: If the file is too large or not a PDF/Word document
    """
    policy = policy or settings.admission
    limit = format_file_size(policy.max_file_size)

    if document.size > policy.max_file_size:
        raise AdmissionError(
            document.name,
            f'File "{document.name}" is too large. Please upload files less than or equal to {limit}.',
        )

    mime_type = detect_mime_type(document)
    if mime_type not in policy.allowed_mime_types:
        raise AdmissionError(
            document.name,
            f'File "{document.name}" has an unsupported type. '
            f"Allowed: {', '.join(policy.allowed_extensions)}",
        )
    return mime_type


def admit_files(documents: Iterable[UploadDocument], policy: AdmissionSettings | None = None) -> AdmissionReport:
    """Split a batch into accepted and rejected files; never raises."""
    report = AdmissionReport()
    for document in documents:
        try:
            mime_type = check_admission(document, policy)
        except AdmissionError as e:
            logger.info(f"Rejected upload: {e.message}")
            report.rejected.append(e)
            continue
        if mime_type != document.mime_type:
            document = UploadDocument(name=document.name, content=document.content, mime_type=mime_type)
        report.accepted.append(document)
    return report


def _correlate(response: BatchParseResponse, filename: str) -> ProcessedEntry | ErrorEntry | None:
    """Find the response entry for ``filename``.

    A named match wins; otherwise a lone entry belongs to the single file
    that was sent in the request.
    """
    entries = [*response.processed, *response.errors]
    for entry in entries:
        if entry.filename == filename:
            return entry
    if len(entries) == 1:
        return entries[0]
    return None


class FileUploadTracker:
    """Tracks a set of uploads through the per-file state machine.

    Each accepted file gets its own request to ``parse``; the response is
    bound back to the entry by the id that issued it, so duplicate file
    names in one batch cannot cross-wire results.
    """

    def __init__(
        self,
        parse: ParseCall,
        *,
        policy: AdmissionSettings | None = None,
        notifier: Notifier | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._parse = parse
        self._policy = policy or settings.admission
        self._notifier = notifier or Notifier()
        self._new_id = id_factory or (lambda: f"file-{uuid.uuid4().hex}")
        self._files: dict[str, TrackedFile] = {}

    @property
    def files(self) -> list[TrackedFile]:
        """Tracked entries in submission order."""
        return list(self._files.values())

    def get(self, file_id: str) -> TrackedFile | None:
        return self._files.get(file_id)

    def by_status(self, status: FileStatus) -> list[TrackedFile]:
        return [f for f in self._files.values() if f.status == status]

    def admit(self, documents: Iterable[UploadDocument]) -> tuple[list[tuple[TrackedFile, UploadDocument]], list[AdmissionError]]:
        """Apply the admission policy and register accepted files as ``uploading``."""
        report = admit_files(documents, self._policy)
        for rejection in report.rejected:
            self._notifier.emit(Notification(
                NotificationKind.FILE_REJECTED, rejection.message, subject=rejection.filename, level="warning",
            ))

        admitted = []
        for document in report.accepted:
            entry = TrackedFile(
                id=self._new_id(),
                name=document.name,
                size=document.size,
                mime_type=document.mime_type,
            )
            self._files[entry.id] = entry
            admitted.append((entry, document))
        return admitted, report.rejected

    async def submit(self, documents: Iterable[UploadDocument]) -> tuple[list[TrackedFile], list[AdmissionError]]:
        """Admit a batch and process every accepted file concurrently.

        Args:
            documents: Files to upload

        Returns:
            Tuple of (final state of each admitted entry, admission rejections).
            Entries removed while in flight are omitted.
        """
        admitted, rejected = self.admit(documents)
        if not admitted:
            return [], rejected

        logger.info(f"Dispatching {len(admitted)} uploads ({len(rejected)} rejected)")
        await asyncio.gather(*(self._process(entry.id, document) for entry, document in admitted))

        results = [self._files[entry.id] for entry, _ in admitted if entry.id in self._files]
        completed = sum(1 for f in results if f.status == FileStatus.COMPLETED)
        if completed:
            self._notifier.emit(Notification(
                NotificationKind.BATCH_COMPLETED,
                f"{completed} CV{'s' if completed > 1 else ''} processed successfully",
            ))
        return results, rejected

    async def _process(self, file_id: str, document: UploadDocument) -> None:
        if self._update(file_id, status=FileStatus.PROCESSING, progress=PROCESSING_PROGRESS) is None:
            return

        try:
            response = await self._parse([document])
        except Exception as e:
            logger.error(f"Upload of {document.name} failed: {e}", exc_info=True)
            self._fail(file_id, document.name, str(e) or "Upload failed")
            return

        entry = _correlate(response, document.name)
        if entry is None:
            self._fail(file_id, document.name, "No result returned for file")
            return
        if isinstance(entry, ErrorEntry):
            self._fail(file_id, document.name, entry.message)
            return

        payload = entry.payload
        try:
            candidate = normalize(payload)
        except NormalizationError as e:
            logger.warning(f"Quarantined parse result for {document.name}: {e}")
            self._fail(file_id, document.name, f"Malformed result: {e}")
            return

        updated = self._update(
            file_id,
            status=FileStatus.COMPLETED,
            progress=100,
            result=candidate,
            extracted_fields=len(payload),
        )
        if updated is not None:
            self._notifier.emit(Notification(
                NotificationKind.FILE_COMPLETED, f'"{document.name}" processed', subject=file_id,
            ))

    def _fail(self, file_id: str, filename: str, message: str) -> None:
        entry = self._update(file_id, status=FileStatus.ERROR, progress=100, result=None, error=message)
        if entry is not None:
            self._notifier.emit(Notification(
                NotificationKind.FILE_FAILED, f'"{filename}": {message}', subject=file_id, level="error",
            ))

    def _update(self, file_id: str, **changes) -> TrackedFile | None:
        """Merge ``changes`` into one entry, keyed by id.

        Updates for removed entries are dropped; terminal entries are frozen.
        """
        current = self._files.get(file_id)
        if current is None:
            logger.debug(f"Dropping update for removed entry {file_id}")
            return None
        if current.status.is_terminal:
            logger.debug(f"Refusing update for terminal entry {file_id}")
            return None
        updated = current.model_copy(update=changes)
        self._files[file_id] = updated
        return updated

    def remove(self, file_id: str) -> bool:
        """Drop an entry in any state; returns whether it existed."""
        return self._files.pop(file_id, None) is not None

    def clear(self) -> None:
        self._files.clear()
