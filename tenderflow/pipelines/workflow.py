"""Expert profile workflow: four dependent stages run strictly in order.

Stages:
1. Extract assignments from the CV and the tender
2. Select and rank assignments
3. Generate the assignment write-up
4. Assemble the expert profile
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Protocol

from ..client import ServiceError
from ..config import AdmissionSettings, WorkflowSettings, settings
from ..events import Notification, NotificationKind, Notifier
from ..models import (
    AssignmentExtraction,
    AssignmentSelection,
    ExpertProfile,
    ProcessingState,
    UploadDocument,
    WriteUp,
)
from .ingest import AdmissionError, check_admission

logger = logging.getLogger(__name__)


class WorkflowStage(IntEnum):
    EXTRACT_ASSIGNMENTS = 1
    SELECT_ASSIGNMENTS = 2
    GENERATE_WRITE_UP = 3
    ASSEMBLE_PROFILE = 4


STAGE_LABELS = {
    WorkflowStage.EXTRACT_ASSIGNMENTS: "CV and tender assignments extracted",
    WorkflowStage.SELECT_ASSIGNMENTS: "Assignment selection and ranking done",
    WorkflowStage.GENERATE_WRITE_UP: "Assignment write-up generated",
    WorkflowStage.ASSEMBLE_PROFILE: "Expert profile generated",
}


class WorkflowClient(Protocol):
    """The subset of ``ExtractionServiceClient`` the engine calls."""

    async def workflow_step1(self, cv: UploadDocument, tender: UploadDocument) -> AssignmentExtraction: ...

    async def workflow_step2(self, cv_assignments: Any, tender_assignments: Any) -> AssignmentSelection: ...

    async def workflow_step3(self, selected_assignments: Any, cv_text: str) -> WriteUp: ...

    async def workflow_step4(self, write_up: Any, cv_text: str, tender_assignments: Any) -> ExpertProfile: ...


@dataclass
class WorkflowSession:
    """Inputs and per-stage outputs of one profile generation run."""
    cv_document: UploadDocument | None = None
    tender_document: UploadDocument | None = None
    extraction: AssignmentExtraction | None = None
    selection: AssignmentSelection | None = None
    write_up: WriteUp | None = None
    profile: ExpertProfile | None = None
    state: ProcessingState = field(default_factory=ProcessingState)

    def output(self, stage: WorkflowStage):
        return getattr(self, _OUTPUT_ATTRS[stage])


_OUTPUT_ATTRS = {
    WorkflowStage.EXTRACT_ASSIGNMENTS: "extraction",
    WorkflowStage.SELECT_ASSIGNMENTS: "selection",
    WorkflowStage.GENERATE_WRITE_UP: "write_up",
    WorkflowStage.ASSEMBLE_PROFILE: "profile",
}


@dataclass
class StageOutcome:
    """Result of one ``run_stage`` call."""
    stage: WorkflowStage
    success: bool
    message: str
    network_called: bool = False


class SequentialWorkflowEngine:
    """Runs the four stages with strict gating.

    A stage starts only when its predecessor has completed and no other
    stage is in flight. Failures are stored in ``state.last_error``; they
    never advance completion flags and are never retried automatically.
    """

    def __init__(
        self,
        client: WorkflowClient,
        *,
        config: WorkflowSettings | None = None,
        policy: AdmissionSettings | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._client = client
        self._config = config or settings.workflow
        self._policy = policy or settings.admission
        self._notifier = notifier or Notifier()
        self.session = WorkflowSession()

    @property
    def state(self) -> ProcessingState:
        return self.session.state

    def attach_documents(
        self,
        *,
        cv: UploadDocument | None = None,
        tender: UploadDocument | None = None,
    ) -> list[AdmissionError]:
        """Hold the input documents for stage 1 after the admission check.

        Returns:
            Rejections; a rejected document leaves the previously held one in place
        """
        rejected = []
        for role, document in (("cv", cv), ("tender", tender)):
            if document is None:
                continue
            try:
                check_admission(document, self._policy)
            except AdmissionError as e:
                rejected.append(e)
                self._notifier.emit(Notification(
                    NotificationKind.FILE_REJECTED, e.message, subject=document.name, level="warning",
                ))
                continue
            setattr(self.session, f"{role}_document", document)
            logger.info(f"Attached {role} document {document.name}")
        return rejected

    def _precondition(self, stage: WorkflowStage) -> str | None:
        s = self.session
        done = s.state.completed
        if stage == WorkflowStage.EXTRACT_ASSIGNMENTS:
            if s.cv_document is None or s.tender_document is None:
                return "Please upload both CV and tender files"
        elif stage == WorkflowStage.SELECT_ASSIGNMENTS:
            if not done[0] or s.extraction is None:
                return "Please complete step 1 first"
        elif stage == WorkflowStage.GENERATE_WRITE_UP:
            if not done[1] or s.selection is None or s.extraction is None:
                return "Please complete step 2 first"
        elif stage == WorkflowStage.ASSEMBLE_PROFILE:
            if not done[2] or s.write_up is None or s.extraction is None:
                return "Please complete step 3 first"
        return None

    async def _call(self, session: WorkflowSession, stage: WorkflowStage):
        if stage == WorkflowStage.EXTRACT_ASSIGNMENTS:
            return await self._client.workflow_step1(session.cv_document, session.tender_document)
        if stage == WorkflowStage.SELECT_ASSIGNMENTS:
            return await self._client.workflow_step2(
                session.extraction.cv_assignments, session.extraction.tender_assignments,
            )
        if stage == WorkflowStage.GENERATE_WRITE_UP:
            return await self._client.workflow_step3(
                session.selection.selected_assignments, session.extraction.cv_text,
            )
        return await self._client.workflow_step4(
            session.write_up.write_up, session.extraction.cv_text, session.extraction.tender_assignments,
        )

    @staticmethod
    def _set_state(session: WorkflowSession, **changes) -> None:
        session.state = session.state.model_copy(update=changes)

    async def run_stage(self, stage: int | WorkflowStage) -> StageOutcome:
        """Execute one stage.

        Args:
            stage: Stage number 1-4

        Returns:
            StageOutcome; ``network_called`` is False when gating rejected it

        Raises:
            ValueError: If ``stage`` is not 1-4
        """
        stage = WorkflowStage(stage)
        # bound to the session that issued the call; a reset mid-flight
        # swaps in a fresh session the late result must not touch
        session = self.session

        if session.state.is_processing:
            return self._reject(stage, f"Step {session.state.current_stage} is still processing")
        problem = self._precondition(stage)
        if problem:
            return self._reject(stage, problem)

        self._set_state(session, current_stage=int(stage), is_processing=True, last_error=None)
        logger.info(f"Running workflow step {int(stage)}")
        try:
            output = await self._call(session, stage)
        except ServiceError as e:
            return self._failed(session, stage, e.message)
        except Exception as e:
            logger.error(f"Workflow step {int(stage)} crashed: {e}", exc_info=True)
            return self._failed(session, stage, str(e) or "Unknown error")
        finally:
            self._set_state(session, is_processing=False)

        self._store(session, stage, output)
        message = f"Step {int(stage)} completed: {STAGE_LABELS[stage]}"
        logger.info(message)
        if session is self.session:
            self._notifier.emit(Notification(NotificationKind.STAGE_COMPLETED, message, subject=str(int(stage))))
        return StageOutcome(stage, True, message, network_called=True)

    def _store(self, session: WorkflowSession, stage: WorkflowStage, output) -> None:
        setattr(session, _OUTPUT_ATTRS[stage], output)
        completed = list(session.state.completed)
        completed[stage - 1] = True
        if self._config.invalidate_downstream_on_redo:
            for later in WorkflowStage:
                if later > stage:
                    completed[later - 1] = False
                    setattr(session, _OUTPUT_ATTRS[later], None)
        self._set_state(session, completed=completed, last_error=None)

    def _reject(self, stage: WorkflowStage, message: str) -> StageOutcome:
        logger.info(f"Step {int(stage)} rejected: {message}")
        self._set_state(self.session, last_error=message)
        self._notifier.emit(Notification(
            NotificationKind.STAGE_REJECTED, message, subject=str(int(stage)), level="warning",
        ))
        return StageOutcome(stage, False, message)

    def _failed(self, session: WorkflowSession, stage: WorkflowStage, message: str) -> StageOutcome:
        logger.warning(f"Step {int(stage)} failed: {message}")
        self._set_state(session, last_error=message)
        if session is self.session:
            self._notifier.emit(Notification(
                NotificationKind.STAGE_FAILED, f"Error in step {int(stage)}: {message}",
                subject=str(int(stage)), level="error",
            ))
        return StageOutcome(stage, False, message, network_called=True)

    async def extract_assignments(self) -> StageOutcome:
        return await self.run_stage(WorkflowStage.EXTRACT_ASSIGNMENTS)

    async def select_assignments(self) -> StageOutcome:
        return await self.run_stage(WorkflowStage.SELECT_ASSIGNMENTS)

    async def generate_write_up(self) -> StageOutcome:
        return await self.run_stage(WorkflowStage.GENERATE_WRITE_UP)

    async def assemble_profile(self) -> StageOutcome:
        return await self.run_stage(WorkflowStage.ASSEMBLE_PROFILE)

    async def run_through(self, last: int | WorkflowStage = WorkflowStage.ASSEMBLE_PROFILE) -> list[StageOutcome]:
        """Run every stage not yet completed up to ``last``, stopping at the first failure."""
        outcomes = []
        for stage in WorkflowStage:
            if stage > WorkflowStage(last):
                break
            if self.state.completed[stage - 1]:
                continue
            outcome = await self.run_stage(stage)
            outcomes.append(outcome)
            if not outcome.success:
                break
        return outcomes

    def reset(self) -> None:
        """Return to the initial state: no documents, outputs, flags, or error."""
        self.session = WorkflowSession()
        logger.info("Workflow reset")
        self._notifier.emit(Notification(NotificationKind.WORKFLOW_RESET, "Process reset successfully"))

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the session for export and the HTTP surface."""
        s = self.session
        return {
            "cv_document": s.cv_document.name if s.cv_document else None,
            "tender_document": s.tender_document.name if s.tender_document else None,
            "state": s.state.model_dump(),
            "step1": s.extraction.model_dump() if s.extraction else None,
            "step2": s.selection.model_dump() if s.selection else None,
            "step3": s.write_up.model_dump() if s.write_up else None,
            "step4": s.profile.model_dump() if s.profile else None,
        }
