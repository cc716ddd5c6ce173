"""
model.py

Domain models for the Study-Phase Progression Engine.

Entities
--------
- Study
- TemplateAssignment
- TransitionCondition (AllRequiredFormsCompleted | SpecificFormsCompleted
                       | DateBased | CustomCondition)
- TransitionRule
- PhaseConfig
- FormCompletionState
- PatientPhaseProgress
- VisitFolder
- TemplateCompletionEvent
- TemplateMeta

All models use Python dataclasses for clean, framework-agnostic definitions.
Identifiers owned by the engine are UUIDs; identifiers owned by external
systems (patients, form templates, form instances) are plain strings.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple, Union


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class PhaseStatus(str, Enum):
    """
    Lifecycle status of a patient within one study phase.

    NOT_STARTED / IN_PROGRESS / COMPLETED are derived from completion counts.
    LOCKED and SKIPPED are only ever set by an explicit administrative action.
    """
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    LOCKED = "locked"
    SKIPPED = "skipped"


class ConditionType(str, Enum):
    """Discriminator of the TransitionCondition union."""
    ALL_REQUIRED_FORMS_COMPLETED = "all_required_forms_completed"
    SPECIFIC_FORMS_COMPLETED = "specific_forms_completed"
    DATE_BASED = "date_based"
    CUSTOM = "custom"


class VisitType(str, Enum):
    """Visit category shown on a patient's phase folder."""
    SCREENING = "screening"
    BASELINE = "baseline"
    TREATMENT = "treatment"
    FOLLOW_UP = "follow_up"
    ADVERSE_EVENT = "adverse_event"


class TemplateStatus(str, Enum):
    """Per-template display status within a patient phase."""
    NOT_STARTED = "not_started"
    COMPLETED = "completed"
    OVERDUE = "overdue"


# Phase code → visit type.  Unknown codes fall back to TREATMENT.
PHASE_CODE_VISIT_TYPES: Dict[str, VisitType] = {
    "SCR": VisitType.SCREENING,
    "BSL": VisitType.BASELINE,
    "TRT": VisitType.TREATMENT,
    "FUP": VisitType.FOLLOW_UP,
    "AE": VisitType.ADVERSE_EVENT,
}


def visit_type_for_code(code: str) -> VisitType:
    return PHASE_CODE_VISIT_TYPES.get(code.upper(), VisitType.TREATMENT)


# ---------------------------------------------------------------------------
# Study & phase configuration
# ---------------------------------------------------------------------------


@dataclass
class Study:
    """
    A clinical study that patients are enrolled into.

    Studies own an ordered set of PhaseConfig records.  A study is never
    deleted once phases reference it; `is_active` is cleared instead.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    protocol_code: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class TemplateAssignment:
    """A data-collection form template assigned to a phase."""
    template_id: str = ""
    template_name: str = ""
    is_required: bool = True
    due_after_days: Optional[int] = None    # Days after phase start
    category: Optional[str] = None          # e.g. 'vitals', 'labs', 'questionnaire'
    description: str = ""


# --- Transition conditions (closed tagged union) ----------------------------


@dataclass(frozen=True)
class AllRequiredFormsCompleted:
    """Met when every required template of the phase is complete."""
    type: ClassVar[ConditionType] = ConditionType.ALL_REQUIRED_FORMS_COMPLETED


@dataclass(frozen=True)
class SpecificFormsCompleted:
    """Met when every listed template is marked complete."""
    form_ids: Tuple[str, ...] = ()
    type: ClassVar[ConditionType] = ConditionType.SPECIFIC_FORMS_COMPLETED


@dataclass(frozen=True)
class DateBased:
    """Met once at least `days_after_enrollment` whole days have elapsed since phase start."""
    days_after_enrollment: int = 0
    type: ClassVar[ConditionType] = ConditionType.DATE_BASED


@dataclass(frozen=True)
class CustomCondition:
    """
    Opaque expression evaluated by an injected CustomConditionEvaluator.
    The engine attaches no meaning to `expression`.
    """
    expression: str = ""
    type: ClassVar[ConditionType] = ConditionType.CUSTOM


TransitionCondition = Union[
    AllRequiredFormsCompleted,
    SpecificFormsCompleted,
    DateBased,
    CustomCondition,
]


@dataclass
class TransitionRule:
    """
    A condition set gating advancement from `from_phase` to `to_phase`
    beyond basic required-form completion.  All conditions must hold.
    """
    from_phase: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → PhaseConfig.id
    to_phase: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → PhaseConfig.id
    conditions: List[TransitionCondition] = field(default_factory=list)
    requires_approval: bool = False
    approval_roles: List[str] = field(default_factory=list)


@dataclass
class PhaseConfig:
    """
    An ordered stage of a clinical study (e.g. Screening, Treatment) with the
    form templates a patient must complete while in it.

    `order` is unique per study and defines the default sequence.
    Existing progress records keep the template counts cached at bootstrap,
    so editing a config never rewrites patient progress.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    study_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → Study.id
    name: str = ""
    code: str = ""                  # Short code like 'SCR', 'BSL', 'TRT1'
    description: str = ""
    order: int = 0

    template_assignments: List[TemplateAssignment] = field(default_factory=list)

    # Scheduling
    planned_duration_days: Optional[int] = None
    window_start_days: Optional[int] = None     # Days before planned date
    window_end_days: Optional[int] = None       # Days after planned date

    allow_skip: bool = False
    allow_parallel: bool = False    # Can run in parallel with other phases

    transition_rules: List[TransitionRule] = field(default_factory=list)

    # Free-text requirement descriptions shown to site staff
    entry_requirements: List[str] = field(default_factory=list)
    exit_requirements: List[str] = field(default_factory=list)

    is_active: bool = True          # Soft-invalidation flag; configs are never deleted
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def total_templates(self) -> int:
        return len(self.template_assignments)

    @property
    def required_templates(self) -> int:
        return sum(1 for a in self.template_assignments if a.is_required)

    def assignment(self, template_id: str) -> Optional[TemplateAssignment]:
        return next(
            (a for a in self.template_assignments if a.template_id == template_id),
            None,
        )


# ---------------------------------------------------------------------------
# Patient progress
# ---------------------------------------------------------------------------


@dataclass
class FormCompletionState:
    """Completion fact for a single template within a patient phase."""
    is_completed: bool = False
    is_required: bool = False
    completed_date: Optional[datetime] = None
    form_instance_id: Optional[str] = None


@dataclass
class PatientPhaseProgress:
    """
    Per-patient, per-phase aggregate of completion state.

    The aggregate counters are always recomputed from
    `form_completion_status`; they are never incremented independently.
    `can_progress` and `blocking_reasons` are derived by the
    TransitionEvaluator and must not be set by external callers.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    patient_id: str = ""
    study_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → Study.id
    phase_id: uuid.UUID = field(default_factory=uuid.uuid4)     # FK → PhaseConfig.id

    # Cached from the phase config at bootstrap time
    phase_name: str = ""
    phase_code: str = ""
    phase_order: int = 0
    total_templates: int = 0
    required_templates: int = 0

    status: PhaseStatus = PhaseStatus.NOT_STARTED
    completed_templates: int = 0
    completed_required_templates: int = 0
    progress_percentage: int = 0

    form_completion_status: Dict[str, FormCompletionState] = field(default_factory=dict)

    can_progress: bool = False
    blocking_reasons: List[str] = field(default_factory=list)

    started_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    skipped_date: Optional[datetime] = None
    skipped_reason: Optional[str] = None
    locked_date: Optional[datetime] = None
    locked_reason: Optional[str] = None

    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def key(self) -> Tuple[str, uuid.UUID]:
        return (self.patient_id, self.phase_id)


@dataclass
class VisitFolder:
    """
    Read-optimised projection of a PatientPhaseProgress record.

    Folders are fully derived: they may be rebuilt from progress at any time
    and are never edited by hand.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    patient_id: str = ""
    study_id: uuid.UUID = field(default_factory=uuid.uuid4)
    phase_id: uuid.UUID = field(default_factory=uuid.uuid4)

    phase_name: str = ""
    phase_code: str = ""
    order: int = 0
    visit_type: VisitType = VisitType.TREATMENT

    status: PhaseStatus = PhaseStatus.NOT_STARTED
    completion_percentage: int = 0
    required_template_ids: List[str] = field(default_factory=list)
    optional_template_ids: List[str] = field(default_factory=list)
    completed_template_ids: List[str] = field(default_factory=list)
    blocking_template_ids: List[str] = field(default_factory=list)
    can_progress_to_next_phase: bool = False

    updated_at: datetime = field(default_factory=_now)

    @property
    def key(self) -> Tuple[str, uuid.UUID]:
        return (self.patient_id, self.phase_id)


@dataclass
class TemplateProgress:
    """Display status of one assigned template within a patient phase."""
    template_id: str
    template_name: str
    is_required: bool
    status: TemplateStatus = TemplateStatus.NOT_STARTED
    due_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    form_instance_id: Optional[str] = None


@dataclass
class PhaseSummary:
    """Study-level statistics for one phase (dashboard view)."""
    phase_id: uuid.UUID
    phase_name: str
    phase_code: str
    order: int

    total_patients: int = 0
    patients_not_started: int = 0
    patients_in_progress: int = 0
    patients_completed: int = 0
    patients_skipped: int = 0
    patients_locked: int = 0

    total_templates: int = 0
    required_templates: int = 0
    average_completion_rate: float = 0.0

    average_duration_days: Optional[float] = None
    overdue_patients: int = 0


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TemplateCompletionEvent:
    """A form instance for `template_id` was completed (or re-opened)."""
    patient_id: str
    phase_id: uuid.UUID
    template_id: str
    completed: bool = True
    form_instance_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def key(self) -> Tuple[str, uuid.UUID]:
        return (self.patient_id, self.phase_id)


@dataclass(frozen=True)
class TemplateMeta:
    """Template catalog entry, used to validate assignments at bootstrap."""
    template_id: str
    name: str = ""
    version: str = "1"
    is_published: bool = True
