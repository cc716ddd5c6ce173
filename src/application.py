"""
application.py

Application layer for the Study-Phase Progression Engine.

Overview
--------
The application layer sits between the presentation / embedding layer
(api.py, engine.py) and the domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     callers need — no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in infrastructure.py).
  3. Declaring the UnitOfWork abstraction: a transaction over the backing
     document store.  A progress record and its folder are always written
     in the same unit of work.
  4. Declaring the external collaborators the engine consumes (template
     catalog, dead-letter sink, event source).
  5. Implementing Use Case handlers — one class per operation — that
     orchestrate service calls and repository reads/writes in the correct order.

Structure
---------
DTOs
    StudyDTO, PhaseConfigDTO, TemplateAssignmentDTO, TransitionRuleDTO
    ProgressDTO, FormCompletionDTO, VisitFolderDTO
    TransitionDecisionDTO, PhaseSummaryDTO, TemplateProgressDTO

Repository interfaces
    AbstractStudyRepository
    AbstractPhaseConfigRepository
    AbstractProgressRepository
    AbstractFolderRepository

Unit of Work
    AbstractUnitOfWork

Collaborators
    AbstractTemplateCatalog
    AbstractDeadLetterSink
    AbstractEventSource

Use Cases
    --- Study & phase configuration ---
    RegisterStudyUseCase, GetStudyUseCase, ListStudiesUseCase
    CreatePhasesUseCase, ListPhasesUseCase, GetPhaseUseCase
    UpdatePhaseUseCase, AssignTemplatesUseCase, DeactivatePhaseUseCase

    --- Patient progression ---
    BootstrapPatientUseCase
    ApplyCompletionUseCase
    GetProgressUseCase
    GetFolderUseCase, RebuildFoldersUseCase
    EvaluateTransitionUseCase
    SkipPhaseUseCase, LockPhaseUseCase, UnlockPhaseUseCase

    --- Reporting ---
    GetStudyPhaseSummaryUseCase
    GetPhaseTemplateStatusUseCase

Conventions
-----------
- Every use case exposes a single `execute(...)` method.
- Commands are plain dataclasses; DTOs are plain dataclasses.
- Services raise ValueError; use cases translate it to ValidationError.
- Writes that can race with event processing are retried on ConflictError
  up to a bounded number of attempts, then the error is surfaced.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from model import (
    FormCompletionState,
    PatientPhaseProgress,
    PhaseConfig,
    PhaseSummary,
    Study,
    TemplateAssignment,
    TemplateCompletionEvent,
    TemplateMeta,
    TemplateProgress,
    TransitionCondition,
    TransitionRule,
    VisitFolder,
)
from service import (
    FolderProjector,
    PhaseBootstrapService,
    PhaseConfigService,
    PhaseSummaryService,
    ProgressTracker,
    TransitionEvaluator,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_RETRY_MAX = 3

T = TypeVar("T")
Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested study, phase, patient or template does not exist."""


class ValidationError(ApplicationError):
    """Raised when input violates a configuration invariant; nothing is written."""


class ConflictError(ApplicationError):
    """Raised when a transaction lost an optimistic-concurrency race."""


class DependencyError(ApplicationError):
    """Raised when the backing store or another collaborator is unavailable."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Study & phase DTOs
# ---------------------------------------------------------------------------

@dataclass
class StudyDTO:
    id: str
    name: str
    protocol_code: str
    is_active: bool
    created_at: str


@dataclass
class TemplateAssignmentDTO:
    template_id: str
    template_name: str
    is_required: bool
    due_after_days: Optional[int]
    category: Optional[str]
    description: str


@dataclass
class TransitionRuleDTO:
    from_phase_id: str
    to_phase_id: str
    conditions: List[Dict[str, Any]]
    requires_approval: bool
    approval_roles: List[str]


@dataclass
class PhaseConfigDTO:
    id: str
    study_id: str
    name: str
    code: str
    description: str
    order: int
    template_assignments: List[TemplateAssignmentDTO]
    total_templates: int
    required_templates: int
    planned_duration_days: Optional[int]
    window_start_days: Optional[int]
    window_end_days: Optional[int]
    allow_skip: bool
    allow_parallel: bool
    transition_rules: List[TransitionRuleDTO]
    entry_requirements: List[str]
    exit_requirements: List[str]
    is_active: bool
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Progress DTOs
# ---------------------------------------------------------------------------

@dataclass
class FormCompletionDTO:
    template_id: str
    is_completed: bool
    is_required: bool
    completed_date: Optional[str]
    form_instance_id: Optional[str]


@dataclass
class ProgressDTO:
    id: str
    patient_id: str
    study_id: str
    phase_id: str
    phase_name: str
    phase_code: str
    phase_order: int
    status: str
    total_templates: int
    required_templates: int
    completed_templates: int
    completed_required_templates: int
    progress_percentage: int
    form_completion_status: List[FormCompletionDTO]
    can_progress: bool
    blocking_reasons: List[str]
    started_date: Optional[str]
    completed_date: Optional[str]
    skipped_date: Optional[str]
    skipped_reason: Optional[str]
    locked_date: Optional[str]
    locked_reason: Optional[str]
    updated_at: str


@dataclass
class VisitFolderDTO:
    id: str
    patient_id: str
    study_id: str
    phase_id: str
    phase_name: str
    phase_code: str
    order: int
    visit_type: str
    status: str
    completion_percentage: int
    required_template_ids: List[str]
    optional_template_ids: List[str]
    completed_template_ids: List[str]
    blocking_template_ids: List[str]
    can_progress_to_next_phase: bool
    updated_at: str


@dataclass
class TransitionDecisionDTO:
    patient_id: str
    phase_id: str
    to_phase_id: Optional[str]
    can_advance: bool
    reasons: List[str]
    evaluated_at: str


# ---------------------------------------------------------------------------
# Reporting DTOs
# ---------------------------------------------------------------------------

@dataclass
class PhaseSummaryDTO:
    phase_id: str
    phase_name: str
    phase_code: str
    order: int
    total_patients: int
    patients_not_started: int
    patients_in_progress: int
    patients_completed: int
    patients_skipped: int
    patients_locked: int
    total_templates: int
    required_templates: int
    average_completion_rate: float
    average_duration_days: Optional[float]
    overdue_patients: int


@dataclass
class TemplateProgressDTO:
    template_id: str
    template_name: str
    is_required: bool
    status: str
    due_date: Optional[str]
    completed_date: Optional[str]
    form_instance_id: Optional[str]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def study(s: Study) -> StudyDTO:
        return StudyDTO(
            id=str(s.id),
            name=s.name,
            protocol_code=s.protocol_code,
            is_active=s.is_active,
            created_at=_fmt(s.created_at),
        )

    @staticmethod
    def condition(c: TransitionCondition) -> Dict[str, Any]:
        data = dataclasses.asdict(c)
        if "form_ids" in data:
            data["form_ids"] = list(data["form_ids"])
        data["type"] = c.type.value
        return data

    @staticmethod
    def rule(r: TransitionRule) -> TransitionRuleDTO:
        return TransitionRuleDTO(
            from_phase_id=str(r.from_phase),
            to_phase_id=str(r.to_phase),
            conditions=[_Assembler.condition(c) for c in r.conditions],
            requires_approval=r.requires_approval,
            approval_roles=list(r.approval_roles),
        )

    @staticmethod
    def phase(p: PhaseConfig) -> PhaseConfigDTO:
        return PhaseConfigDTO(
            id=str(p.id),
            study_id=str(p.study_id),
            name=p.name,
            code=p.code,
            description=p.description,
            order=p.order,
            template_assignments=[
                TemplateAssignmentDTO(
                    template_id=a.template_id,
                    template_name=a.template_name,
                    is_required=a.is_required,
                    due_after_days=a.due_after_days,
                    category=a.category,
                    description=a.description,
                )
                for a in p.template_assignments
            ],
            total_templates=p.total_templates,
            required_templates=p.required_templates,
            planned_duration_days=p.planned_duration_days,
            window_start_days=p.window_start_days,
            window_end_days=p.window_end_days,
            allow_skip=p.allow_skip,
            allow_parallel=p.allow_parallel,
            transition_rules=[_Assembler.rule(r) for r in p.transition_rules],
            entry_requirements=list(p.entry_requirements),
            exit_requirements=list(p.exit_requirements),
            is_active=p.is_active,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def form_completion(template_id: str, s: FormCompletionState) -> FormCompletionDTO:
        return FormCompletionDTO(
            template_id=template_id,
            is_completed=s.is_completed,
            is_required=s.is_required,
            completed_date=_fmt(s.completed_date),
            form_instance_id=s.form_instance_id,
        )

    @staticmethod
    def progress(p: PatientPhaseProgress) -> ProgressDTO:
        return ProgressDTO(
            id=str(p.id),
            patient_id=p.patient_id,
            study_id=str(p.study_id),
            phase_id=str(p.phase_id),
            phase_name=p.phase_name,
            phase_code=p.phase_code,
            phase_order=p.phase_order,
            status=p.status.value,
            total_templates=p.total_templates,
            required_templates=p.required_templates,
            completed_templates=p.completed_templates,
            completed_required_templates=p.completed_required_templates,
            progress_percentage=p.progress_percentage,
            form_completion_status=[
                _Assembler.form_completion(tid, s)
                for tid, s in p.form_completion_status.items()
            ],
            can_progress=p.can_progress,
            blocking_reasons=list(p.blocking_reasons),
            started_date=_fmt(p.started_date),
            completed_date=_fmt(p.completed_date),
            skipped_date=_fmt(p.skipped_date),
            skipped_reason=p.skipped_reason,
            locked_date=_fmt(p.locked_date),
            locked_reason=p.locked_reason,
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def folder(f: VisitFolder) -> VisitFolderDTO:
        return VisitFolderDTO(
            id=str(f.id),
            patient_id=f.patient_id,
            study_id=str(f.study_id),
            phase_id=str(f.phase_id),
            phase_name=f.phase_name,
            phase_code=f.phase_code,
            order=f.order,
            visit_type=f.visit_type.value,
            status=f.status.value,
            completion_percentage=f.completion_percentage,
            required_template_ids=list(f.required_template_ids),
            optional_template_ids=list(f.optional_template_ids),
            completed_template_ids=list(f.completed_template_ids),
            blocking_template_ids=list(f.blocking_template_ids),
            can_progress_to_next_phase=f.can_progress_to_next_phase,
            updated_at=_fmt(f.updated_at),
        )

    @staticmethod
    def summary(s: PhaseSummary) -> PhaseSummaryDTO:
        return PhaseSummaryDTO(
            phase_id=str(s.phase_id),
            phase_name=s.phase_name,
            phase_code=s.phase_code,
            order=s.order,
            total_patients=s.total_patients,
            patients_not_started=s.patients_not_started,
            patients_in_progress=s.patients_in_progress,
            patients_completed=s.patients_completed,
            patients_skipped=s.patients_skipped,
            patients_locked=s.patients_locked,
            total_templates=s.total_templates,
            required_templates=s.required_templates,
            average_completion_rate=s.average_completion_rate,
            average_duration_days=s.average_duration_days,
            overdue_patients=s.overdue_patients,
        )

    @staticmethod
    def template_progress(t: TemplateProgress) -> TemplateProgressDTO:
        return TemplateProgressDTO(
            template_id=t.template_id,
            template_name=t.template_name,
            is_required=t.is_required,
            status=t.status.value,
            due_date=_fmt(t.due_date),
            completed_date=_fmt(t.completed_date),
            form_instance_id=t.form_instance_id,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractStudyRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, study_id: uuid.UUID) -> Optional[Study]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Study]: ...
    @abc.abstractmethod
    def save(self, study: Study) -> None: ...


class AbstractPhaseConfigRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, phase_id: uuid.UUID) -> Optional[PhaseConfig]: ...
    @abc.abstractmethod
    def list_for_study(self, study_id: uuid.UUID) -> List[PhaseConfig]: ...
    @abc.abstractmethod
    def save(self, phase: PhaseConfig) -> None: ...


class AbstractProgressRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, patient_id: str, phase_id: uuid.UUID) -> Optional[PatientPhaseProgress]: ...
    @abc.abstractmethod
    def list_for_patient(
        self, patient_id: str, study_id: uuid.UUID
    ) -> List[PatientPhaseProgress]: ...
    @abc.abstractmethod
    def list_for_phase(self, phase_id: uuid.UUID) -> List[PatientPhaseProgress]: ...
    @abc.abstractmethod
    def save(self, progress: PatientPhaseProgress) -> None: ...
    @abc.abstractmethod
    def add(self, progress: PatientPhaseProgress) -> None:
        """Insert a new record; commit() raises ConflictError if the key already exists."""


class AbstractFolderRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, patient_id: str, phase_id: uuid.UUID) -> Optional[VisitFolder]: ...
    @abc.abstractmethod
    def list_for_patient(self, patient_id: str, study_id: uuid.UUID) -> List[VisitFolder]: ...
    @abc.abstractmethod
    def save(self, folder: VisitFolder) -> None: ...
    @abc.abstractmethod
    def add(self, folder: VisitFolder) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.progress.save(progress)
            uow.folders.save(folder)
            uow.commit()

    commit() raises ConflictError when another transaction changed a record
    this one read, and DependencyError when the store is unreachable.
    Nothing staged in a failed unit of work becomes visible to readers.
    """
    studies: AbstractStudyRepository
    phases: AbstractPhaseConfigRepository
    progress: AbstractProgressRepository
    folders: AbstractFolderRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# EXTERNAL COLLABORATORS
# ===========================================================================

class AbstractTemplateCatalog(abc.ABC):
    """Form-template lookup, used only at bootstrap to validate assignments."""

    @abc.abstractmethod
    def get_template(self, template_id: str) -> Optional[TemplateMeta]: ...


class AbstractDeadLetterSink(abc.ABC):
    """Receives completion events that could not be applied after all retries."""

    @abc.abstractmethod
    def report(self, event: TemplateCompletionEvent, error: BaseException, attempts: int) -> None: ...


class AbstractEventSource(abc.ABC):
    """
    Delivers TemplateCompletionEvents.  Transport (queue, pub/sub, direct
    call) is up to the implementation; the engine only subscribes.
    """

    @abc.abstractmethod
    def subscribe(self, handler: Callable[[TemplateCompletionEvent], Any]) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_phase_svc = PhaseConfigService()
_projector = FolderProjector()
_summary_svc = PhaseSummaryService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_study_or_raise(uow: AbstractUnitOfWork, study_id: uuid.UUID) -> Study:
    study = uow.studies.get(study_id)
    if study is None:
        raise NotFoundError(f"Study {study_id} not found.")
    return study


def _get_phase_or_raise(uow: AbstractUnitOfWork, phase_id: uuid.UUID) -> PhaseConfig:
    phase = uow.phases.get(phase_id)
    if phase is None:
        raise NotFoundError(f"Phase {phase_id} not found.")
    return phase


def _get_progress_or_raise(
    uow: AbstractUnitOfWork, patient_id: str, phase_id: uuid.UUID
) -> PatientPhaseProgress:
    progress = uow.progress.get(patient_id, phase_id)
    if progress is None:
        raise NotFoundError(
            f"No progress record for patient {patient_id} in phase {phase_id}."
        )
    return progress


def _rules_for(uow: AbstractUnitOfWork, phase_id: uuid.UUID) -> List[TransitionRule]:
    phase = uow.phases.get(phase_id)
    return list(phase.transition_rules) if phase else []


def _save_with_folder(uow: AbstractUnitOfWork, progress: PatientPhaseProgress) -> None:
    """Stage a progress record together with its resynced folder."""
    folder = uow.folders.get(progress.patient_id, progress.phase_id)
    uow.progress.save(progress)
    uow.folders.save(_projector.resync(progress, folder))


def _retry_on_conflict(operation: Callable[[], T], attempts: int, what: str) -> T:
    """Run `operation` (one full unit of work) again after a ConflictError."""
    attempts = max(attempts, 1)
    attempt = 1
    while True:
        try:
            return operation()
        except ConflictError:
            if attempt >= attempts:
                logger.warning("%s: conflict persisted after %d attempts", what, attempts)
                raise
            attempt += 1
            logger.info("%s: transaction conflict, retrying (attempt %d)", what, attempt)


# ===========================================================================
# USE CASES: STUDIES
# ===========================================================================

@dataclass
class RegisterStudyCommand:
    name: str
    protocol_code: str = ""


class RegisterStudyUseCase:
    def execute(self, cmd: RegisterStudyCommand, uow: AbstractUnitOfWork) -> StudyDTO:
        if not cmd.name.strip():
            raise ValidationError("Study name must not be blank.")
        with uow:
            study = Study(
                name=cmd.name,
                protocol_code=cmd.protocol_code,
                created_at=_utcnow(),
                updated_at=_utcnow(),
            )
            uow.studies.save(study)
            uow.commit()
            logger.info("Registered study %s", study.id, extra={"study_id": str(study.id)})
            return _Assembler.study(study)


class GetStudyUseCase:
    def execute(self, study_id: uuid.UUID, uow: AbstractUnitOfWork) -> StudyDTO:
        with uow:
            return _Assembler.study(_get_study_or_raise(uow, study_id))


class ListStudiesUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[StudyDTO]:
        with uow:
            studies = sorted(uow.studies.list_all(), key=lambda s: s.created_at)
            return [_Assembler.study(s) for s in studies]


# ===========================================================================
# USE CASES: PHASE CONFIGURATION
# ===========================================================================

@dataclass
class TransitionRuleInput:
    """
    A rule leaving the phase being created / updated.  The target may be
    given by id, or by code when it is created in the same batch.
    """
    conditions: List[TransitionCondition] = field(default_factory=list)
    to_phase_id: Optional[uuid.UUID] = None
    to_phase_code: Optional[str] = None
    requires_approval: bool = False
    approval_roles: List[str] = field(default_factory=list)


@dataclass
class PhaseInput:
    name: str
    code: str
    order: int
    template_assignments: List[TemplateAssignment]
    description: str = ""
    planned_duration_days: Optional[int] = None
    window_start_days: Optional[int] = None
    window_end_days: Optional[int] = None
    allow_skip: bool = False
    allow_parallel: bool = False
    transition_rules: List[TransitionRuleInput] = field(default_factory=list)
    entry_requirements: List[str] = field(default_factory=list)
    exit_requirements: List[str] = field(default_factory=list)


def _resolve_target(rule: TransitionRuleInput, phases: Sequence[PhaseConfig]) -> uuid.UUID:
    if rule.to_phase_id is not None:
        return rule.to_phase_id
    if not rule.to_phase_code:
        raise ValueError("A transition rule needs to_phase_id or to_phase_code.")
    matches = [p for p in phases if p.code == rule.to_phase_code and p.is_active]
    if len(matches) != 1:
        raise ValueError(
            f"Transition target code '{rule.to_phase_code}' matches "
            f"{len(matches)} active phases; use to_phase_id instead."
        )
    return matches[0].id


def _build_rules(
    phase: PhaseConfig,
    inputs: Sequence[TransitionRuleInput],
    phases: Sequence[PhaseConfig],
) -> List[TransitionRule]:
    return [
        _phase_svc.build_rule(
            phase,
            to_phase=_resolve_target(r, phases),
            conditions=r.conditions,
            requires_approval=r.requires_approval,
            approval_roles=r.approval_roles,
        )
        for r in inputs
    ]


@dataclass
class CreatePhasesCommand:
    study_id: uuid.UUID
    phases: List[PhaseInput]


class CreatePhasesUseCase:
    """
    Create a batch of phases for a study.  The batch is validated together
    with the study's existing phases and written all-or-nothing.
    """

    def execute(self, cmd: CreatePhasesCommand, uow: AbstractUnitOfWork) -> List[PhaseConfigDTO]:
        if not cmd.phases:
            raise ValidationError("At least one phase is required.")
        with uow:
            _get_study_or_raise(uow, cmd.study_id)
            existing = uow.phases.list_for_study(cmd.study_id)
            try:
                created = [
                    _phase_svc.create_phase(
                        study_id=cmd.study_id,
                        name=inp.name,
                        code=inp.code,
                        order=inp.order,
                        template_assignments=inp.template_assignments,
                        description=inp.description,
                        planned_duration_days=inp.planned_duration_days,
                        window_start_days=inp.window_start_days,
                        window_end_days=inp.window_end_days,
                        allow_skip=inp.allow_skip,
                        allow_parallel=inp.allow_parallel,
                        entry_requirements=inp.entry_requirements,
                        exit_requirements=inp.exit_requirements,
                    )
                    for inp in cmd.phases
                ]
                all_phases = existing + created
                for phase, inp in zip(created, cmd.phases):
                    phase.transition_rules = _build_rules(phase, inp.transition_rules, all_phases)
                _phase_svc.validate_study_phases(all_phases)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            for phase in created:
                uow.phases.save(phase)
            uow.commit()
            logger.info(
                "Created %d phase(s) for study %s", len(created), cmd.study_id,
                extra={"study_id": str(cmd.study_id)},
            )
            return [_Assembler.phase(p) for p in sorted(created, key=lambda p: p.order)]


class ListPhasesUseCase:
    def execute(
        self,
        study_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        include_inactive: bool = False,
    ) -> List[PhaseConfigDTO]:
        with uow:
            _get_study_or_raise(uow, study_id)
            phases = uow.phases.list_for_study(study_id)
            if not include_inactive:
                phases = [p for p in phases if p.is_active]
            return [_Assembler.phase(p) for p in sorted(phases, key=lambda p: p.order)]


class GetPhaseUseCase:
    def execute(self, phase_id: uuid.UUID, uow: AbstractUnitOfWork) -> PhaseConfigDTO:
        with uow:
            return _Assembler.phase(_get_phase_or_raise(uow, phase_id))


@dataclass
class UpdatePhaseCommand:
    phase_id: uuid.UUID
    name: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    order: Optional[int] = None
    template_assignments: Optional[List[TemplateAssignment]] = None
    planned_duration_days: Optional[int] = None
    window_start_days: Optional[int] = None
    window_end_days: Optional[int] = None
    allow_skip: Optional[bool] = None
    allow_parallel: Optional[bool] = None
    entry_requirements: Optional[List[str]] = None
    exit_requirements: Optional[List[str]] = None
    transition_rules: Optional[List[TransitionRuleInput]] = None


class UpdatePhaseUseCase:
    """
    Patch a phase definition.  Progress records already bootstrapped keep
    the template counts they were created with.
    """

    def execute(self, cmd: UpdatePhaseCommand, uow: AbstractUnitOfWork) -> PhaseConfigDTO:
        changes = {
            f.name: getattr(cmd, f.name)
            for f in dataclasses.fields(cmd)
            if f.name not in ("phase_id", "transition_rules") and getattr(cmd, f.name) is not None
        }
        with uow:
            phase = _get_phase_or_raise(uow, cmd.phase_id)
            siblings = [p for p in uow.phases.list_for_study(phase.study_id) if p.id != phase.id]
            try:
                phase = _phase_svc.apply_patch(phase, changes)
                if cmd.transition_rules is not None:
                    phase.transition_rules = _build_rules(
                        phase, cmd.transition_rules, siblings + [phase]
                    )
                _phase_svc.validate_study_phases(siblings + [phase])
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            uow.phases.save(phase)
            uow.commit()
            logger.info(
                "Updated phase %s (%s)", phase.id, ", ".join(sorted(changes)) or "rules",
                extra={"phase_id": str(phase.id), "study_id": str(phase.study_id)},
            )
            return _Assembler.phase(phase)


@dataclass
class AssignTemplatesCommand:
    phase_id: uuid.UUID
    template_assignments: List[TemplateAssignment]


class AssignTemplatesUseCase:
    """Replace the full template assignment list of a phase."""

    def execute(self, cmd: AssignTemplatesCommand, uow: AbstractUnitOfWork) -> PhaseConfigDTO:
        return UpdatePhaseUseCase().execute(
            UpdatePhaseCommand(
                phase_id=cmd.phase_id,
                template_assignments=list(cmd.template_assignments),
            ),
            uow,
        )


class DeactivatePhaseUseCase:
    """Soft-invalidate a phase.  Phase configs are never deleted."""

    def execute(self, phase_id: uuid.UUID, uow: AbstractUnitOfWork) -> PhaseConfigDTO:
        with uow:
            phase = _phase_svc.deactivate(_get_phase_or_raise(uow, phase_id))
            uow.phases.save(phase)
            uow.commit()
            logger.info("Deactivated phase %s", phase_id, extra={"phase_id": str(phase_id)})
            return _Assembler.phase(phase)


# ===========================================================================
# USE CASES: PATIENT PROGRESSION
# ===========================================================================

class BootstrapPatientUseCase:
    """
    Create one progress record and one visit folder per active phase of the
    study, atomically.  Re-running for an enrolled patient returns the
    existing records unchanged.
    """

    def __init__(
        self,
        template_catalog: Optional[AbstractTemplateCatalog] = None,
        evaluator: Optional[TransitionEvaluator] = None,
        clock: Clock = _utcnow,
        conflict_retry_max: int = DEFAULT_CONFLICT_RETRY_MAX,
    ):
        self._catalog = template_catalog
        self._bootstrap_svc = PhaseBootstrapService(evaluator or TransitionEvaluator(), _projector)
        self._clock = clock
        self._conflict_retry_max = conflict_retry_max

    def execute(
        self, patient_id: str, study_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[ProgressDTO]:
        return _retry_on_conflict(
            lambda: self._bootstrap(patient_id, study_id, uow),
            self._conflict_retry_max,
            f"bootstrap patient={patient_id}",
        )

    def _bootstrap(
        self, patient_id: str, study_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[ProgressDTO]:
        log_extra = {"patient_id": patient_id, "study_id": str(study_id)}
        with uow:
            _get_study_or_raise(uow, study_id)
            existing = uow.progress.list_for_patient(patient_id, study_id)
            if existing:
                logger.info("Patient %s already bootstrapped; no-op", patient_id, extra=log_extra)
                return [_Assembler.progress(p) for p in sorted(existing, key=lambda p: p.phase_order)]

            phases = [p for p in uow.phases.list_for_study(study_id) if p.is_active]
            if not phases:
                raise ValidationError(f"Study {study_id} has no active phases to bootstrap.")
            self._check_templates(phases)

            try:
                pairs = self._bootstrap_svc.build(patient_id, phases, self._clock())
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            for progress, folder in pairs:
                uow.progress.add(progress)
                uow.folders.add(folder)
            uow.commit()
            logger.info(
                "Bootstrapped patient %s into %d phase(s)", patient_id, len(pairs), extra=log_extra
            )
            return [_Assembler.progress(p) for p, _ in pairs]

    def _check_templates(self, phases: List[PhaseConfig]) -> None:
        if self._catalog is None:
            return
        missing = []
        for phase in phases:
            for assignment in phase.template_assignments:
                meta = self._catalog.get_template(assignment.template_id)
                if meta is None or not meta.is_published:
                    missing.append(f"{phase.code}/{assignment.template_id}")
        if missing:
            raise ValidationError(
                "Phase assignments reference unknown or unpublished templates: "
                + ", ".join(missing)
            )


@dataclass
class ApplyCompletionCommand:
    patient_id: str
    phase_id: uuid.UUID
    template_id: str
    completed: bool = True
    form_instance_id: Optional[str] = None


class ApplyCompletionUseCase:
    """
    Apply one template completion fact to a progress record, re-derive every
    aggregate, then resync the folder in the same transaction.
    """

    def __init__(
        self,
        evaluator: Optional[TransitionEvaluator] = None,
        clock: Clock = _utcnow,
        conflict_retry_max: int = DEFAULT_CONFLICT_RETRY_MAX,
    ):
        self._tracker = ProgressTracker(evaluator or TransitionEvaluator())
        self._clock = clock
        self._conflict_retry_max = conflict_retry_max

    def execute(self, cmd: ApplyCompletionCommand, uow: AbstractUnitOfWork) -> ProgressDTO:
        return _retry_on_conflict(
            lambda: self._apply(cmd, uow),
            self._conflict_retry_max,
            f"apply completion patient={cmd.patient_id} phase={cmd.phase_id}",
        )

    def _apply(self, cmd: ApplyCompletionCommand, uow: AbstractUnitOfWork) -> ProgressDTO:
        log_extra = {
            "patient_id": cmd.patient_id,
            "phase_id": str(cmd.phase_id),
            "template_id": cmd.template_id,
        }
        with uow:
            progress = _get_progress_or_raise(uow, cmd.patient_id, cmd.phase_id)
            if cmd.template_id not in progress.form_completion_status:
                raise NotFoundError(
                    f"Template '{cmd.template_id}' is not assigned to phase {cmd.phase_id}."
                )
            changed = self._tracker.apply_completion(
                progress,
                template_id=cmd.template_id,
                completed=cmd.completed,
                form_instance_id=cmd.form_instance_id,
                rules=_rules_for(uow, cmd.phase_id),
                now=self._clock(),
            )
            if not changed:
                logger.debug("Duplicate completion ignored", extra=log_extra)
                return _Assembler.progress(progress)
            _save_with_folder(uow, progress)
            uow.commit()
            logger.info(
                "Template %s marked %s: %d/%d complete, status=%s",
                cmd.template_id,
                "complete" if cmd.completed else "incomplete",
                progress.completed_templates,
                progress.total_templates,
                progress.status.value,
                extra=log_extra,
            )
            return _Assembler.progress(progress)


class GetProgressUseCase:
    def execute(
        self, patient_id: str, study_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[ProgressDTO]:
        with uow:
            _get_study_or_raise(uow, study_id)
            records = uow.progress.list_for_patient(patient_id, study_id)
            if not records:
                raise NotFoundError(f"Patient {patient_id} is not enrolled in study {study_id}.")
            return [_Assembler.progress(p) for p in sorted(records, key=lambda p: p.phase_order)]


class GetFolderUseCase:
    def execute(
        self, patient_id: str, phase_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> VisitFolderDTO:
        with uow:
            folder = uow.folders.get(patient_id, phase_id)
            if folder is None:
                raise NotFoundError(f"No folder for patient {patient_id} in phase {phase_id}.")
            return _Assembler.folder(folder)


class RebuildFoldersUseCase:
    """Re-derive every folder of a patient from the committed progress records."""

    def execute(
        self, patient_id: str, study_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[VisitFolderDTO]:
        with uow:
            _get_study_or_raise(uow, study_id)
            records = uow.progress.list_for_patient(patient_id, study_id)
            if not records:
                raise NotFoundError(f"Patient {patient_id} is not enrolled in study {study_id}.")
            folders = []
            for progress in sorted(records, key=lambda p: p.phase_order):
                folder = _projector.resync(progress, uow.folders.get(patient_id, progress.phase_id))
                uow.folders.save(folder)
                folders.append(folder)
            uow.commit()
            return [_Assembler.folder(f) for f in folders]


class EvaluateTransitionUseCase:
    """
    Evaluate the transition gate live.  Date-based rules depend on the
    current time, so this may differ from the stored `can_progress`.
    """

    def __init__(self, evaluator: Optional[TransitionEvaluator] = None, clock: Clock = _utcnow):
        self._evaluator = evaluator or TransitionEvaluator()
        self._clock = clock

    def execute(
        self,
        patient_id: str,
        phase_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        to_phase_id: Optional[uuid.UUID] = None,
    ) -> TransitionDecisionDTO:
        now = self._clock()
        with uow:
            progress = _get_progress_or_raise(uow, patient_id, phase_id)
            allowed, reasons = self._evaluator.can_advance(
                progress, _rules_for(uow, phase_id), now, to_phase=to_phase_id
            )
            return TransitionDecisionDTO(
                patient_id=patient_id,
                phase_id=str(phase_id),
                to_phase_id=str(to_phase_id) if to_phase_id else None,
                can_advance=allowed,
                reasons=reasons,
                evaluated_at=_fmt(now),
            )


# --- Administrative actions -------------------------------------------------

@dataclass
class PhaseActionCommand:
    patient_id: str
    phase_id: uuid.UUID
    reason: str = ""


class _ProgressActionUseCase:
    """Shared read-modify-write for administrative status changes."""

    action = ""

    def __init__(
        self,
        evaluator: Optional[TransitionEvaluator] = None,
        clock: Clock = _utcnow,
        conflict_retry_max: int = DEFAULT_CONFLICT_RETRY_MAX,
    ):
        self._tracker = ProgressTracker(evaluator or TransitionEvaluator())
        self._clock = clock
        self._conflict_retry_max = conflict_retry_max

    def execute(self, cmd: PhaseActionCommand, uow: AbstractUnitOfWork) -> ProgressDTO:
        return _retry_on_conflict(
            lambda: self._run(cmd, uow),
            self._conflict_retry_max,
            f"{self.action} patient={cmd.patient_id} phase={cmd.phase_id}",
        )

    def _run(self, cmd: PhaseActionCommand, uow: AbstractUnitOfWork) -> ProgressDTO:
        with uow:
            progress = _get_progress_or_raise(uow, cmd.patient_id, cmd.phase_id)
            phase = _get_phase_or_raise(uow, cmd.phase_id)
            try:
                self._apply(progress, phase, cmd, self._clock())
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            _save_with_folder(uow, progress)
            uow.commit()
            logger.info(
                "Phase %s for patient %s: %s", cmd.phase_id, cmd.patient_id, self.action,
                extra={"patient_id": cmd.patient_id, "phase_id": str(cmd.phase_id)},
            )
            return _Assembler.progress(progress)

    def _apply(
        self,
        progress: PatientPhaseProgress,
        phase: PhaseConfig,
        cmd: PhaseActionCommand,
        now: datetime,
    ) -> None:
        raise NotImplementedError


class SkipPhaseUseCase(_ProgressActionUseCase):
    action = "skip"

    def _apply(self, progress, phase, cmd, now):
        self._tracker.skip(progress, phase, cmd.reason, phase.transition_rules, now)


class LockPhaseUseCase(_ProgressActionUseCase):
    action = "lock"

    def _apply(self, progress, phase, cmd, now):
        self._tracker.lock(progress, phase.transition_rules, now, reason=cmd.reason)


class UnlockPhaseUseCase(_ProgressActionUseCase):
    action = "unlock"

    def _apply(self, progress, phase, cmd, now):
        self._tracker.unlock(progress, phase.transition_rules, now)


# ===========================================================================
# USE CASES: REPORTING
# ===========================================================================

class GetStudyPhaseSummaryUseCase:
    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock

    def execute(self, study_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[PhaseSummaryDTO]:
        now = self._clock()
        with uow:
            _get_study_or_raise(uow, study_id)
            phases = sorted(
                (p for p in uow.phases.list_for_study(study_id) if p.is_active),
                key=lambda p: p.order,
            )
            return [
                _Assembler.summary(
                    _summary_svc.summarize(phase, uow.progress.list_for_phase(phase.id), now)
                )
                for phase in phases
            ]


class GetPhaseTemplateStatusUseCase:
    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock

    def execute(
        self, patient_id: str, phase_id: uuid.UUID, uow: AbstractUnitOfWork
    ) -> List[TemplateProgressDTO]:
        with uow:
            progress = _get_progress_or_raise(uow, patient_id, phase_id)
            phase = uow.phases.get(phase_id)
            rows = _summary_svc.template_statuses(phase, progress, self._clock())
            return [_Assembler.template_progress(r) for r in rows]
