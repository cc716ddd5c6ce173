"""
engine.py

PhaseProgressionEngine — the embeddable entry point.

Wires the patient-progression use cases to a unit-of-work factory, a shared
TransitionEvaluator, the clock and an EventIngress.  Host applications that
do not want the HTTP surface construct one of these directly:

    engine = PhaseProgressionEngine(InMemoryUnitOfWork, template_catalog=catalog)
    engine.bootstrap_patient("P-001", study_id)
    engine.submit_completion("P-001", phase_id, "vitals").result(timeout=5)
    engine.get_progress("P-001", study_id)
    engine.close()
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future
from datetime import datetime, timezone
from typing import Callable, List, Optional

from application import (
    AbstractDeadLetterSink,
    AbstractEventSource,
    AbstractTemplateCatalog,
    AbstractUnitOfWork,
    ApplyCompletionCommand,
    ApplyCompletionUseCase,
    BootstrapPatientUseCase,
    Clock,
    EvaluateTransitionUseCase,
    GetFolderUseCase,
    GetPhaseTemplateStatusUseCase,
    GetProgressUseCase,
    GetStudyPhaseSummaryUseCase,
    LockPhaseUseCase,
    PhaseActionCommand,
    PhaseSummaryDTO,
    ProgressDTO,
    RebuildFoldersUseCase,
    SkipPhaseUseCase,
    TemplateProgressDTO,
    TransitionDecisionDTO,
    UnlockPhaseUseCase,
    VisitFolderDTO,
)
from config import Config
from ingress import EventIngress
from model import TemplateCompletionEvent
from service import CustomConditionEvaluator, TransitionEvaluator

logger = logging.getLogger(__name__)

UnitOfWorkFactory = Callable[[], AbstractUnitOfWork]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PhaseProgressionEngine:
    """Facade over bootstrap, completion ingress, progress queries and transition checks."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        template_catalog: Optional[AbstractTemplateCatalog] = None,
        custom_evaluator: Optional[CustomConditionEvaluator] = None,
        dead_letter: Optional[AbstractDeadLetterSink] = None,
        settings: Optional[Config] = None,
        clock: Optional[Clock] = None,
    ):
        self._uow_factory = uow_factory
        self._settings = settings or Config()
        self._clock = clock or _utcnow
        retry_max = self._settings.CONFLICT_RETRY_MAX

        evaluator = TransitionEvaluator(
            custom_evaluator, custom_fail_open=self._settings.CUSTOM_CONDITION_FAIL_OPEN
        )
        self._bootstrap = BootstrapPatientUseCase(template_catalog, evaluator, self._clock, retry_max)
        self._apply = ApplyCompletionUseCase(evaluator, self._clock, retry_max)
        self._evaluate = EvaluateTransitionUseCase(evaluator, self._clock)
        self._skip = SkipPhaseUseCase(evaluator, self._clock, retry_max)
        self._lock = LockPhaseUseCase(evaluator, self._clock, retry_max)
        self._unlock = UnlockPhaseUseCase(evaluator, self._clock, retry_max)
        self._summary = GetStudyPhaseSummaryUseCase(self._clock)
        self._template_status = GetPhaseTemplateStatusUseCase(self._clock)

        self._ingress = EventIngress(
            self.apply_event,
            dead_letter=dead_letter,
            max_workers=self._settings.INGRESS_WORKERS,
            retry_max=self._settings.INGRESS_RETRY_MAX,
            backoff_seconds=self._settings.INGRESS_BACKOFF_SECONDS,
        )

    def __enter__(self) -> "PhaseProgressionEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def bootstrap_patient(self, patient_id: str, study_id: uuid.UUID) -> List[ProgressDTO]:
        return self._bootstrap.execute(patient_id, study_id, self._uow_factory())

    # ------------------------------------------------------------------
    # Completion events
    # ------------------------------------------------------------------

    def submit_completion(
        self,
        patient_id: str,
        phase_id: uuid.UUID,
        template_id: str,
        completed: bool = True,
        form_instance_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Future:
        """Queue a completion fact.  The future resolves to the updated ProgressDTO."""
        event = TemplateCompletionEvent(
            patient_id=patient_id,
            phase_id=phase_id,
            template_id=template_id,
            completed=completed,
            form_instance_id=form_instance_id,
            occurred_at=self._clock(),
        )
        return self.submit_event(event, timeout=timeout)

    def submit_event(
        self, event: TemplateCompletionEvent, timeout: Optional[float] = None
    ) -> Future:
        return self._ingress.submit(event, timeout=timeout)

    def apply_event(self, event: TemplateCompletionEvent) -> ProgressDTO:
        """Apply one event synchronously, bypassing the queue (the ingress worker calls this)."""
        cmd = ApplyCompletionCommand(
            patient_id=event.patient_id,
            phase_id=event.phase_id,
            template_id=event.template_id,
            completed=event.completed,
            form_instance_id=event.form_instance_id,
        )
        return self._apply.execute(cmd, self._uow_factory())

    def attach(self, event_source: AbstractEventSource) -> None:
        """Subscribe to an external event source; every event goes through the ingress queue."""
        event_source.subscribe(self.submit_event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_progress(self, patient_id: str, study_id: uuid.UUID) -> List[ProgressDTO]:
        return GetProgressUseCase().execute(patient_id, study_id, self._uow_factory())

    def get_folder(self, patient_id: str, phase_id: uuid.UUID) -> VisitFolderDTO:
        return GetFolderUseCase().execute(patient_id, phase_id, self._uow_factory())

    def rebuild_folders(self, patient_id: str, study_id: uuid.UUID) -> List[VisitFolderDTO]:
        return RebuildFoldersUseCase().execute(patient_id, study_id, self._uow_factory())

    def evaluate_transition(
        self,
        patient_id: str,
        phase_id: uuid.UUID,
        to_phase: Optional[uuid.UUID] = None,
    ) -> TransitionDecisionDTO:
        return self._evaluate.execute(patient_id, phase_id, self._uow_factory(), to_phase_id=to_phase)

    def get_study_phase_summary(self, study_id: uuid.UUID) -> List[PhaseSummaryDTO]:
        return self._summary.execute(study_id, self._uow_factory())

    def get_template_status(
        self, patient_id: str, phase_id: uuid.UUID
    ) -> List[TemplateProgressDTO]:
        return self._template_status.execute(patient_id, phase_id, self._uow_factory())

    # ------------------------------------------------------------------
    # Administrative actions
    # ------------------------------------------------------------------

    def skip_phase(self, patient_id: str, phase_id: uuid.UUID, reason: str) -> ProgressDTO:
        return self._skip.execute(
            PhaseActionCommand(patient_id=patient_id, phase_id=phase_id, reason=reason),
            self._uow_factory(),
        )

    def lock_phase(self, patient_id: str, phase_id: uuid.UUID, reason: str = "") -> ProgressDTO:
        return self._lock.execute(
            PhaseActionCommand(patient_id=patient_id, phase_id=phase_id, reason=reason),
            self._uow_factory(),
        )

    def unlock_phase(self, patient_id: str, phase_id: uuid.UUID) -> ProgressDTO:
        return self._unlock.execute(
            PhaseActionCommand(patient_id=patient_id, phase_id=phase_id),
            self._uow_factory(),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def pending_events(self) -> int:
        return self._ingress.pending()

    def close(self, wait: bool = True) -> None:
        """Drain queued events (when `wait`) and stop the worker pool."""
        self._ingress.close(wait=wait)
        logger.info("Phase progression engine closed")
