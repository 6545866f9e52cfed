"""Tender matching: one tender in, a ranked candidate list and a curated subset out.

Scores from the service come in two notional scales: the full list carries a
similarity fraction and the curated subset a percentage. Both are mapped to
0-100 with ``score_to_percentage`` using the configured scale.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Awaitable, Callable, Mapping

from ..client import MalformedResponseError, TenderResponse
from ..config import AdmissionSettings, MatchingSettings, settings
from ..events import Notification, NotificationKind, Notifier
from ..models import (
    CuratedCandidate,
    FileStatus,
    MatchResult,
    ScoredCandidate,
    TenderSubmission,
    UploadDocument,
)
from .ingest import AdmissionError, check_admission
from .normalization import NormalizationError, as_text, normalize, score_to_percentage

logger = logging.getLogger(__name__)

TenderCall = Callable[[UploadDocument], Awaitable[TenderResponse]]

UPLOAD_PROGRESS = 30


def _first(record: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


def build_match_result(response: TenderResponse, config: MatchingSettings | None = None) -> MatchResult:
    """Validate a tender response and map it onto ``MatchResult``.

    Args:
        response: Envelope returned by the tender endpoint
        config: Score scaling configuration

    Returns:
        MatchResult with the full list ranked by score

    Raises:
        MalformedResponseError: If the status is not ``processed`` or either
            the match list or the curated subset is missing
    """
    config = config or settings.matching

    if response.status != "processed":
        raise MalformedResponseError(response.error or "Tender processing failed")
    result = response.result
    if not isinstance(result, Mapping):
        raise MalformedResponseError("Tender response has no result")
    matches = result.get("matches")
    agent_output = result.get("agent_output")
    selected = agent_output.get("selected_candidates") if isinstance(agent_output, Mapping) else None
    if not isinstance(matches, list):
        raise MalformedResponseError("Tender response is missing the match list")
    if not isinstance(selected, list):
        raise MalformedResponseError("Tender response is missing the curated candidates")

    quarantined = 0
    scored: list[tuple[str, float, Any]] = []
    for index, record in enumerate(matches):
        try:
            candidate = normalize(record)
        except NormalizationError as e:
            logger.warning(f"Quarantined match record #{index}: {e}")
            quarantined += 1
            continue
        candidate_id = as_text(record.get("id")) or str(index)
        score = score_to_percentage(record.get("score"), config.match_score_scale)
        scored.append((candidate_id, score, candidate))

    # stable: equal scores keep the service's order
    scored.sort(key=lambda item: item[1], reverse=True)
    full_list = [
        ScoredCandidate(candidate_id=candidate_id, rank=rank, score=score, candidate=candidate)
        for rank, (candidate_id, score, candidate) in enumerate(scored, start=1)
    ]

    curated = []
    for index, record in enumerate(selected):
        if not isinstance(record, Mapping):
            logger.warning(f"Quarantined curated record #{index}: not an object")
            quarantined += 1
            continue
        curated.append(CuratedCandidate(
            candidate_ref=as_text(_first(record, "id", "candidate_id")) or str(index),
            name=as_text(_first(record, "Name", "name")),
            score=score_to_percentage(record.get("score"), config.curated_score_scale),
            rationale=as_text(_first(record, "Reason", "reason", "rationale")),
        ))

    return MatchResult(full_match_list=full_list, curated_subset=curated, quarantined=quarantined)


class BatchTenderMatcher:
    """Submits one tender at a time and keeps the latest submission.

    Every failure, including a ``processed`` response without match data,
    ends in an ``error`` submission; nothing raises past ``submit``.
    """

    def __init__(
        self,
        match: TenderCall,
        *,
        config: MatchingSettings | None = None,
        policy: AdmissionSettings | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._match = match
        self._config = config or settings.matching
        self._policy = policy or settings.admission
        self._notifier = notifier or Notifier()
        self.submission: TenderSubmission | None = None
        self.last_rejection: AdmissionError | None = None

    async def submit(self, document: UploadDocument) -> TenderSubmission | None:
        """Match one tender document.

        Returns:
            The terminal submission, or None if the admission policy rejected
            the file (see ``last_rejection``)
        """
        try:
            mime_type = check_admission(document, self._policy)
        except AdmissionError as e:
            self.last_rejection = e
            self._notifier.emit(Notification(
                NotificationKind.FILE_REJECTED, e.message, subject=document.name, level="warning",
            ))
            return None
        self.last_rejection = None

        submission = TenderSubmission(
            id=f"tender-{uuid.uuid4().hex}",
            name=document.name,
            size=document.size,
            mime_type=mime_type,
            status=FileStatus.PROCESSING,
            progress=UPLOAD_PROGRESS,
        )
        self.submission = submission
        logger.info(f"Submitting tender {document.name} for matching")

        try:
            response = await self._match(document)
            result = build_match_result(response, self._config)
        except MalformedResponseError as e:
            return self._finish(submission, error=e.message)
        except Exception as e:
            logger.error(f"Tender matching crashed for {document.name}: {e}", exc_info=True)
            return self._finish(submission, error=str(e) or "Tender processing failed")

        logger.info(
            f"Tender {document.name}: {len(result.full_match_list)} matches, "
            f"{len(result.curated_subset)} curated, {result.quarantined} quarantined"
        )
        return self._finish(submission, result=result)

    def _finish(
        self,
        submission: TenderSubmission,
        *,
        result: MatchResult | None = None,
        error: str | None = None,
    ) -> TenderSubmission:
        status = FileStatus.COMPLETED if result is not None else FileStatus.ERROR
        finished = submission.model_copy(update={
            "status": status, "progress": 100, "result": result, "error": error,
        })
        # a newer submission replaces this one; its late result is not published
        if self.submission is not None and self.submission.id == submission.id:
            self.submission = finished
            if result is not None:
                self._notifier.emit(Notification(
                    NotificationKind.TENDER_COMPLETED,
                    "Tender processed successfully! Found matching candidates.",
                    subject=submission.name,
                ))
            else:
                self._notifier.emit(Notification(
                    NotificationKind.TENDER_FAILED, f"Tender processing failed: {error}",
                    subject=submission.name, level="error",
                ))
        return finished

    def clear(self) -> None:
        self.submission = None
        self.last_rejection = None
