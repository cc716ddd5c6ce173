"""
service.py

Service layer for the Study-Phase Progression Engine.

Responsibilities
----------------
Each service class encapsulates the business rules for its part of the
engine.  Services receive and return domain model instances (from model.py).
No persistence is handled here — use cases in application.py load and store
models through the unit of work.

Services
--------
- PhaseConfigService      – Phase definition construction, patching and validation
- PhaseBootstrapService   – Seeds progress records + folders for a newly enrolled patient
- TransitionEvaluator     – Basic completion gate plus cross-phase transition rules
- ProgressTracker         – Core state machine for completion events and admin actions
- FolderProjector         – Derives the read-optimised VisitFolder view
- PhaseSummaryService     – Dashboard statistics and per-template display status

Design notes
------------
- Every mutating method takes `now` so that callers control the clock.
- Business rule violations raise a ValueError with a descriptive message.
- Aggregate counters on PatientPhaseProgress are only ever recomputed from
  `form_completion_status`, never incremented.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from model import (
    AllRequiredFormsCompleted,
    CustomCondition,
    DateBased,
    FormCompletionState,
    PatientPhaseProgress,
    PhaseConfig,
    PhaseStatus,
    PhaseSummary,
    SpecificFormsCompleted,
    TemplateAssignment,
    TemplateProgress,
    TemplateStatus,
    TransitionCondition,
    TransitionRule,
    VisitFolder,
    visit_type_for_code,
)

logger = logging.getLogger(__name__)

# (expression, progress) -> satisfied?
CustomConditionEvaluator = Callable[[str, PatientPhaseProgress], bool]

NOT_STARTED_REASON = "Phase not started"
LOCKED_REASON = "Phase is locked"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _percentage(completed: int, total: int) -> int:
    """Half-up rounded integer percentage; an empty phase counts as 100%."""
    if total <= 0:
        return 100
    return (200 * completed + total) // (2 * total)


def _require_non_negative(value: Optional[int], name: str) -> None:
    if value is not None and value < 0:
        raise ValueError(f"{name} must not be negative.")


# ---------------------------------------------------------------------------
# PhaseConfigService
# ---------------------------------------------------------------------------

class PhaseConfigService:
    """
    Builds and validates phase definitions for a study.
    A study's phases must be valid as a set (unique order, resolvable rules),
    so validation always runs over every phase of the study.
    """

    def create_phase(
        self,
        study_id: uuid.UUID,
        name: str,
        code: str,
        order: int,
        template_assignments: List[TemplateAssignment],
        description: str = "",
        planned_duration_days: Optional[int] = None,
        window_start_days: Optional[int] = None,
        window_end_days: Optional[int] = None,
        allow_skip: bool = False,
        allow_parallel: bool = False,
        entry_requirements: Optional[List[str]] = None,
        exit_requirements: Optional[List[str]] = None,
    ) -> PhaseConfig:
        """Create and return a new PhaseConfig (unsaved, not yet validated against its siblings)."""
        phase = PhaseConfig(
            study_id=study_id,
            name=name,
            code=code,
            description=description,
            order=order,
            template_assignments=list(template_assignments),
            planned_duration_days=planned_duration_days,
            window_start_days=window_start_days,
            window_end_days=window_end_days,
            allow_skip=allow_skip,
            allow_parallel=allow_parallel,
            entry_requirements=list(entry_requirements or []),
            exit_requirements=list(exit_requirements or []),
            created_at=_utcnow(),
            updated_at=_utcnow(),
        )
        self.validate_phase(phase)
        return phase

    def build_rule(
        self,
        phase: PhaseConfig,
        to_phase: uuid.UUID,
        conditions: Sequence[TransitionCondition],
        requires_approval: bool = False,
        approval_roles: Optional[List[str]] = None,
    ) -> TransitionRule:
        return TransitionRule(
            from_phase=phase.id,
            to_phase=to_phase,
            conditions=list(conditions),
            requires_approval=requires_approval,
            approval_roles=list(approval_roles or []),
        )

    def apply_patch(self, phase: PhaseConfig, changes: Dict[str, object]) -> PhaseConfig:
        """
        Apply field-level updates to a phase.  Keys map 1:1 to PhaseConfig
        attributes; `id`, `study_id` and the audit timestamps are not patchable.
        """
        frozen = {"id", "study_id", "created_at", "updated_at"}
        for attr, value in changes.items():
            if attr in frozen:
                raise ValueError(f"{attr} cannot be changed.")
            if not hasattr(phase, attr):
                raise ValueError(f"Unknown phase attribute '{attr}'.")
            setattr(phase, attr, value)
        phase.updated_at = _utcnow()
        self.validate_phase(phase)
        return phase

    def deactivate(self, phase: PhaseConfig) -> PhaseConfig:
        phase.is_active = False
        phase.updated_at = _utcnow()
        return phase

    # --- Validation ---------------------------------------------------------

    def validate_phase(self, phase: PhaseConfig) -> None:
        """Single-phase invariants."""
        if not phase.name.strip():
            raise ValueError("Phase name must not be blank.")
        if not phase.code.strip():
            raise ValueError(f"Phase '{phase.name}' must have a code.")
        if phase.order < 1:
            raise ValueError(f"Phase '{phase.name}': order must be >= 1.")
        if not phase.template_assignments:
            raise ValueError(
                f"Phase '{phase.name}' must have at least one template assignment."
            )
        seen = set()
        for assignment in phase.template_assignments:
            if not assignment.template_id:
                raise ValueError(f"Phase '{phase.name}': template_id must not be blank.")
            if assignment.template_id in seen:
                raise ValueError(
                    f"Phase '{phase.name}': template '{assignment.template_id}' "
                    "is assigned more than once."
                )
            seen.add(assignment.template_id)
            _require_non_negative(assignment.due_after_days, "due_after_days")
        _require_non_negative(phase.planned_duration_days, "planned_duration_days")
        _require_non_negative(phase.window_start_days, "window_start_days")
        _require_non_negative(phase.window_end_days, "window_end_days")

    def validate_study_phases(self, phases: List[PhaseConfig]) -> None:
        """
        Cross-phase invariants over every phase of one study:
        - `order` is unique among active phases;
        - transition rules leave from their own phase and target another
          phase of the same study;
        - SpecificFormsCompleted only names templates assigned to the phase.
        """
        by_id = {p.id: p for p in phases}
        orders: Dict[int, str] = {}
        for phase in phases:
            self.validate_phase(phase)
            if phase.is_active:
                if phase.order in orders:
                    raise ValueError(
                        f"Phase order {phase.order} is used by both "
                        f"'{orders[phase.order]}' and '{phase.name}'."
                    )
                orders[phase.order] = phase.name
            for rule in phase.transition_rules:
                self._validate_rule(phase, rule, by_id)

    def _validate_rule(
        self,
        phase: PhaseConfig,
        rule: TransitionRule,
        by_id: Dict[uuid.UUID, PhaseConfig],
    ) -> None:
        if rule.from_phase != phase.id:
            raise ValueError(
                f"Phase '{phase.name}': transition rules must start from this phase."
            )
        if rule.to_phase == phase.id:
            raise ValueError(f"Phase '{phase.name}': a phase cannot transition to itself.")
        if rule.to_phase not in by_id:
            raise ValueError(
                f"Phase '{phase.name}': transition target {rule.to_phase} "
                "is not a phase of this study."
            )
        assigned = {a.template_id for a in phase.template_assignments}
        for condition in rule.conditions:
            if isinstance(condition, SpecificFormsCompleted):
                unknown = [f for f in condition.form_ids if f not in assigned]
                if unknown:
                    raise ValueError(
                        f"Phase '{phase.name}': transition rule references "
                        f"unassigned templates: {', '.join(unknown)}."
                    )
            elif isinstance(condition, DateBased):
                _require_non_negative(condition.days_after_enrollment, "days_after_enrollment")
            elif isinstance(condition, CustomCondition):
                if not condition.expression.strip():
                    raise ValueError(
                        f"Phase '{phase.name}': custom conditions need an expression."
                    )


# ---------------------------------------------------------------------------
# TransitionEvaluator
# ---------------------------------------------------------------------------

class TransitionEvaluator:
    """
    Decides whether a patient may advance out of a phase.

    1. Basic gate: every required template complete.  If not, one summary
       reason is returned and no rule is evaluated.
    2. Every condition of every rule leaving the phase must hold (AND).

    Custom conditions go to the injected evaluator.  Without one they are
    treated as satisfied when `custom_fail_open` is set.
    """

    def __init__(
        self,
        custom_evaluator: Optional[CustomConditionEvaluator] = None,
        custom_fail_open: bool = True,
    ):
        self._custom_evaluator = custom_evaluator
        self._custom_fail_open = custom_fail_open

    def can_advance(
        self,
        progress: PatientPhaseProgress,
        rules: Iterable[TransitionRule],
        now: datetime,
        to_phase: Optional[uuid.UUID] = None,
    ) -> Tuple[bool, List[str]]:
        if progress.status == PhaseStatus.SKIPPED:
            return True, []

        reasons: List[str] = []
        if progress.status == PhaseStatus.LOCKED:
            reasons.append(LOCKED_REASON)

        if progress.completed_required_templates != progress.required_templates:
            missing = progress.required_templates - progress.completed_required_templates
            reasons.append(f"{missing} required form(s) not completed")
            return False, reasons

        for rule in rules:
            if rule.from_phase != progress.phase_id:
                continue
            if to_phase is not None and rule.to_phase != to_phase:
                continue
            for condition in rule.conditions:
                reason = self.evaluate_condition(condition, progress, now)
                if reason:
                    reasons.append(reason)

        return not reasons, reasons

    def evaluate_condition(
        self,
        condition: TransitionCondition,
        progress: PatientPhaseProgress,
        now: datetime,
    ) -> Optional[str]:
        """Return None when the condition holds, otherwise a human-readable reason."""
        if isinstance(condition, AllRequiredFormsCompleted):
            if progress.completed_required_templates == progress.required_templates:
                return None
            return "Not all required forms are completed"

        if isinstance(condition, SpecificFormsCompleted):
            incomplete = [
                form_id
                for form_id in condition.form_ids
                if not (
                    form_id in progress.form_completion_status
                    and progress.form_completion_status[form_id].is_completed
                )
            ]
            if not incomplete:
                return None
            return f"Specific forms not completed: {', '.join(incomplete)}"

        if isinstance(condition, DateBased):
            # A phase that has not started is already blocked by the basic gate.
            if progress.started_date is None:
                return None
            elapsed_days = (now - progress.started_date) // timedelta(days=1)
            required = condition.days_after_enrollment
            if elapsed_days >= required:
                return None
            return (
                f"Must wait {required - elapsed_days} more day(s) "
                f"({elapsed_days} of {required} days elapsed since phase start)"
            )

        if isinstance(condition, CustomCondition):
            return self._evaluate_custom(condition, progress)

        raise ValueError(f"Unsupported transition condition: {condition!r}")

    def _evaluate_custom(
        self, condition: CustomCondition, progress: PatientPhaseProgress
    ) -> Optional[str]:
        if self._custom_evaluator is None:
            if self._custom_fail_open:
                return None
            return f"Custom condition has no evaluator configured: {condition.expression}"
        try:
            met = self._custom_evaluator(condition.expression, progress)
        except Exception:
            logger.warning(
                "Custom condition evaluation failed expression=%r patient=%s phase=%s",
                condition.expression, progress.patient_id, progress.phase_id,
                exc_info=True,
            )
            return f"Custom condition could not be evaluated: {condition.expression}"
        if met:
            return None
        return f"Custom condition not met: {condition.expression}"


# ---------------------------------------------------------------------------
# FolderProjector
# ---------------------------------------------------------------------------

class FolderProjector:
    """Pure derivation of a VisitFolder from a progress record.  No business logic."""

    def resync(
        self,
        progress: PatientPhaseProgress,
        folder: Optional[VisitFolder] = None,
    ) -> VisitFolder:
        states = progress.form_completion_status
        return VisitFolder(
            id=folder.id if folder else uuid.uuid4(),
            patient_id=progress.patient_id,
            study_id=progress.study_id,
            phase_id=progress.phase_id,
            phase_name=progress.phase_name,
            phase_code=progress.phase_code,
            order=progress.phase_order,
            visit_type=visit_type_for_code(progress.phase_code),
            status=progress.status,
            completion_percentage=progress.progress_percentage,
            required_template_ids=[t for t, s in states.items() if s.is_required],
            optional_template_ids=[t for t, s in states.items() if not s.is_required],
            completed_template_ids=[t for t, s in states.items() if s.is_completed],
            blocking_template_ids=[
                t for t, s in states.items() if s.is_required and not s.is_completed
            ],
            can_progress_to_next_phase=progress.can_progress,
            updated_at=progress.updated_at,
        )


# ---------------------------------------------------------------------------
# ProgressTracker
# ---------------------------------------------------------------------------

class ProgressTracker:
    """
    Core state machine for a single PatientPhaseProgress record.

    Status derivation (unless LOCKED or SKIPPED):
        completed_templates == 0                → NOT_STARTED
        completed_templates == total_templates  → COMPLETED
        otherwise                               → IN_PROGRESS
    """

    def __init__(self, evaluator: TransitionEvaluator):
        self._evaluator = evaluator

    def apply_completion(
        self,
        progress: PatientPhaseProgress,
        template_id: str,
        completed: bool,
        form_instance_id: Optional[str],
        rules: List[TransitionRule],
        now: datetime,
    ) -> bool:
        """
        Record a template completion fact and recompute every derived field.

        Returns False (record untouched) when the template already has the
        requested completion state, so redelivered events are harmless.
        """
        state = progress.form_completion_status.get(template_id)
        if state is None:
            raise ValueError(
                f"Template '{template_id}' is not assigned to phase {progress.phase_id}."
            )
        if state.is_completed == completed:
            return False

        state.is_completed = completed
        state.completed_date = now if completed else None
        state.form_instance_id = form_instance_id if completed else None

        if progress.status == PhaseStatus.SKIPPED:
            # Completions resumed: the skip no longer applies.
            progress.status = PhaseStatus.NOT_STARTED
            progress.skipped_date = None
            progress.skipped_reason = None

        self.recalculate(progress, rules, now)
        return True

    def recalculate(
        self,
        progress: PatientPhaseProgress,
        rules: List[TransitionRule],
        now: datetime,
    ) -> PatientPhaseProgress:
        states = list(progress.form_completion_status.values())
        progress.completed_templates = sum(1 for s in states if s.is_completed)
        progress.completed_required_templates = sum(
            1 for s in states if s.is_completed and s.is_required
        )
        progress.progress_percentage = _percentage(
            progress.completed_templates, progress.total_templates
        )
        if progress.status not in (PhaseStatus.LOCKED, PhaseStatus.SKIPPED):
            self._derive_status(progress, now)

        allowed, reasons = self._evaluator.can_advance(progress, rules, now)
        progress.can_progress = allowed
        progress.blocking_reasons = reasons
        progress.updated_at = now
        return progress

    def _derive_status(self, progress: PatientPhaseProgress, now: datetime) -> None:
        if progress.completed_templates == 0:
            progress.status = PhaseStatus.NOT_STARTED
            progress.completed_date = None
        elif progress.completed_templates == progress.total_templates:
            progress.status = PhaseStatus.COMPLETED
            if progress.started_date is None:
                progress.started_date = now
            if progress.completed_date is None:
                progress.completed_date = now
        else:
            progress.status = PhaseStatus.IN_PROGRESS
            if progress.started_date is None:
                progress.started_date = now
            progress.completed_date = None

    # --- Administrative actions --------------------------------------------

    def skip(
        self,
        progress: PatientPhaseProgress,
        phase: PhaseConfig,
        reason: str,
        rules: List[TransitionRule],
        now: datetime,
    ) -> PatientPhaseProgress:
        if not phase.allow_skip:
            raise ValueError(f"Phase '{phase.name}' does not allow skipping.")
        if progress.status == PhaseStatus.LOCKED:
            raise ValueError("A locked phase cannot be skipped; unlock it first.")
        if progress.status == PhaseStatus.COMPLETED:
            raise ValueError("A completed phase cannot be skipped.")
        if not reason.strip():
            raise ValueError("A reason is required to skip a phase.")
        progress.status = PhaseStatus.SKIPPED
        progress.skipped_date = now
        progress.skipped_reason = reason
        return self.recalculate(progress, rules, now)

    def lock(
        self,
        progress: PatientPhaseProgress,
        rules: List[TransitionRule],
        now: datetime,
        reason: str = "",
    ) -> PatientPhaseProgress:
        if progress.status == PhaseStatus.SKIPPED:
            raise ValueError("A skipped phase cannot be locked.")
        progress.status = PhaseStatus.LOCKED
        progress.locked_date = now
        progress.locked_reason = reason.strip() or None
        return self.recalculate(progress, rules, now)

    def unlock(
        self,
        progress: PatientPhaseProgress,
        rules: List[TransitionRule],
        now: datetime,
    ) -> PatientPhaseProgress:
        if progress.status != PhaseStatus.LOCKED:
            raise ValueError("Phase is not locked.")
        progress.status = PhaseStatus.NOT_STARTED
        progress.locked_date = None
        progress.locked_reason = None
        return self.recalculate(progress, rules, now)


# ---------------------------------------------------------------------------
# PhaseBootstrapService
# ---------------------------------------------------------------------------

class PhaseBootstrapService:
    """
    Materialises one progress record and one visit folder per active phase
    when a patient enters a study.
    """

    def __init__(self, evaluator: TransitionEvaluator, projector: FolderProjector):
        self._evaluator = evaluator
        self._projector = projector

    def build(
        self,
        patient_id: str,
        phases: List[PhaseConfig],
        now: datetime,
    ) -> List[Tuple[PatientPhaseProgress, VisitFolder]]:
        """Return (progress, folder) pairs in phase order (unsaved)."""
        if not patient_id:
            raise ValueError("patient_id must not be blank.")
        pairs = []
        for phase in sorted(phases, key=lambda p: p.order):
            if not phase.is_active or not phase.template_assignments:
                continue
            progress = self.seed_progress(patient_id, phase, now)
            pairs.append((progress, self._projector.resync(progress)))
        return pairs

    def seed_progress(
        self, patient_id: str, phase: PhaseConfig, now: datetime
    ) -> PatientPhaseProgress:
        progress = PatientPhaseProgress(
            patient_id=patient_id,
            study_id=phase.study_id,
            phase_id=phase.id,
            phase_name=phase.name,
            phase_code=phase.code,
            phase_order=phase.order,
            total_templates=phase.total_templates,
            required_templates=phase.required_templates,
            status=PhaseStatus.NOT_STARTED,
            progress_percentage=0,
            form_completion_status={
                a.template_id: FormCompletionState(is_completed=False, is_required=a.is_required)
                for a in phase.template_assignments
            },
            created_at=now,
            updated_at=now,
        )
        # Nothing may advance before the patient has started the phase.
        _, reasons = self._evaluator.can_advance(progress, phase.transition_rules, now)
        progress.can_progress = False
        progress.blocking_reasons = reasons or [NOT_STARTED_REASON]
        return progress


# ---------------------------------------------------------------------------
# PhaseSummaryService
# ---------------------------------------------------------------------------

class PhaseSummaryService:
    """Read-side statistics for dashboards and patient detail screens."""

    def summarize(
        self,
        phase: PhaseConfig,
        records: List[PatientPhaseProgress],
        now: datetime,
    ) -> PhaseSummary:
        summary = PhaseSummary(
            phase_id=phase.id,
            phase_name=phase.name,
            phase_code=phase.code,
            order=phase.order,
            total_patients=len(records),
            total_templates=phase.total_templates,
            required_templates=phase.required_templates,
        )
        counts = {status: 0 for status in PhaseStatus}
        for record in records:
            counts[record.status] += 1
        summary.patients_not_started = counts[PhaseStatus.NOT_STARTED]
        summary.patients_in_progress = counts[PhaseStatus.IN_PROGRESS]
        summary.patients_completed = counts[PhaseStatus.COMPLETED]
        summary.patients_skipped = counts[PhaseStatus.SKIPPED]
        summary.patients_locked = counts[PhaseStatus.LOCKED]

        if records:
            summary.average_completion_rate = round(
                sum(r.progress_percentage for r in records) / len(records), 2
            )

        durations = [
            (r.completed_date - r.started_date) / timedelta(days=1)
            for r in records
            if r.status == PhaseStatus.COMPLETED and r.started_date and r.completed_date
        ]
        if durations:
            summary.average_duration_days = round(sum(durations) / len(durations), 1)

        summary.overdue_patients = sum(1 for r in records if self.is_overdue(phase, r, now))
        return summary

    def is_overdue(
        self, phase: PhaseConfig, progress: PatientPhaseProgress, now: datetime
    ) -> bool:
        """In-progress past planned duration plus the late visit window."""
        if progress.status != PhaseStatus.IN_PROGRESS or progress.started_date is None:
            return False
        if phase.planned_duration_days is None:
            return False
        allowed = phase.planned_duration_days + (phase.window_end_days or 0)
        return now > progress.started_date + timedelta(days=allowed)

    def template_statuses(
        self,
        phase: Optional[PhaseConfig],
        progress: PatientPhaseProgress,
        now: datetime,
    ) -> List[TemplateProgress]:
        rows = []
        for template_id, state in progress.form_completion_status.items():
            assignment = phase.assignment(template_id) if phase else None
            due_date = None
            if assignment and assignment.due_after_days is not None and progress.started_date:
                due_date = progress.started_date + timedelta(days=assignment.due_after_days)
            if state.is_completed:
                status = TemplateStatus.COMPLETED
            elif due_date is not None and now > due_date:
                status = TemplateStatus.OVERDUE
            else:
                status = TemplateStatus.NOT_STARTED
            rows.append(
                TemplateProgress(
                    template_id=template_id,
                    template_name=assignment.template_name if assignment else template_id,
                    is_required=state.is_required,
                    status=status,
                    due_date=due_date,
                    completed_date=state.completed_date,
                    form_instance_id=state.form_instance_id,
                )
            )
        return rows
