"""
Use-case tests against the in-memory unit of work.

Tests cover:
  - Study registry and phase configuration (validation, batch atomicity)
  - Patient bootstrap: atomicity, idempotence, catalog validation
  - Completion application with folder resync and conflict retry
  - Live transition evaluation, skip / lock / unlock
  - Summary, template status and folder rebuild
"""
import uuid
from datetime import timedelta

import pytest

from application import (
    ApplyCompletionCommand,
    ApplyCompletionUseCase,
    AssignTemplatesCommand,
    AssignTemplatesUseCase,
    BootstrapPatientUseCase,
    ConflictError,
    CreatePhasesCommand,
    CreatePhasesUseCase,
    DeactivatePhaseUseCase,
    DependencyError,
    EvaluateTransitionUseCase,
    GetFolderUseCase,
    GetPhaseTemplateStatusUseCase,
    GetProgressUseCase,
    GetStudyPhaseSummaryUseCase,
    ListPhasesUseCase,
    ListStudiesUseCase,
    LockPhaseUseCase,
    NotFoundError,
    PhaseActionCommand,
    PhaseInput,
    TransitionRuleInput,
    RebuildFoldersUseCase,
    RegisterStudyCommand,
    RegisterStudyUseCase,
    SkipPhaseUseCase,
    UnlockPhaseUseCase,
    UpdatePhaseCommand,
    UpdatePhaseUseCase,
    ValidationError,
)
from conftest import T0
from infrastructure import InMemoryTemplateCatalog, InMemoryUnitOfWork
from model import CustomCondition, TemplateAssignment, TemplateMeta
from service import TransitionEvaluator

PATIENT = "P-001"


def _id(value):
    return uuid.UUID(value)


class FailingCommitUnitOfWork(InMemoryUnitOfWork):
    """Store that goes away at commit time."""

    def commit(self):
        self.rollback()
        raise DependencyError("store unavailable")


class InterferingUnitOfWork(InMemoryUnitOfWork):
    """Runs `interfere` right before the next `times` commits, simulating a racing writer."""

    def __init__(self, db, interfere, times=1):
        super().__init__(db)
        self._interfere = interfere
        self._times = times

    def commit(self):
        if self._times > 0 and self._staged:
            self._times -= 1
            self._interfere()
        super().commit()


@pytest.fixture()
def study_id(study):
    return _id(study.id)


@pytest.fixture()
def enrolled(phases, study_id, uow_factory, clock):
    return BootstrapPatientUseCase(clock=clock).execute(PATIENT, study_id, uow_factory())


def _apply(uow, phase_id, template_id, completed=True, clock=None):
    use_case = ApplyCompletionUseCase(clock=clock) if clock else ApplyCompletionUseCase()
    return use_case.execute(
        ApplyCompletionCommand(
            patient_id=PATIENT, phase_id=phase_id, template_id=template_id, completed=completed
        ),
        uow,
    )


# ═════════════════════════════════════════════════════════════════════════
# STUDIES & PHASES
# ═════════════════════════════════════════════════════════════════════════

class TestStudyAndPhaseConfig:
    def test_register_and_list_studies(self, study, uow):
        studies = ListStudiesUseCase().execute(uow)
        assert [s.id for s in studies] == [study.id]
        assert studies[0].protocol_code == "ONC-201"

    def test_blank_study_name_rejected(self, uow):
        with pytest.raises(ValidationError):
            RegisterStudyUseCase().execute(RegisterStudyCommand(name="  "), uow)

    def test_phases_listed_in_order(self, phases, study_id, uow):
        listed = ListPhasesUseCase().execute(study_id, uow)
        assert [p.code for p in listed] == ["SCR", "TRT", "FUP"]
        assert listed[0].required_templates == 2
        assert listed[0].total_templates == 3

    def test_rule_target_resolved_by_code(self, phases):
        rule = phases["TRT"].transition_rules[0]
        assert rule.from_phase_id == phases["TRT"].id
        assert rule.to_phase_id == phases["FUP"].id
        assert rule.conditions == [{"days_after_enrollment": 7, "type": "date_based"}]

    def test_unknown_study(self, uow):
        with pytest.raises(NotFoundError):
            CreatePhasesUseCase().execute(
                CreatePhasesCommand(
                    study_id=uuid.uuid4(),
                    phases=[PhaseInput("X", "X", 1, [TemplateAssignment("t", "T")])],
                ),
                uow,
            )

    def test_duplicate_order_rejects_whole_batch(self, phases, study_id, uow):
        batch = [
            PhaseInput("Extension", "EXT", 4, [TemplateAssignment("ext", "Ext")]),
            PhaseInput("Baseline", "BSL", 2, [TemplateAssignment("bsl", "Baseline")]),
        ]
        with pytest.raises(ValidationError, match="order 2"):
            CreatePhasesUseCase().execute(CreatePhasesCommand(study_id, batch), uow)
        assert len(ListPhasesUseCase().execute(study_id, uow)) == 3

    def test_empty_assignments_rejected(self, study_id, uow):
        with pytest.raises(ValidationError):
            CreatePhasesUseCase().execute(
                CreatePhasesCommand(study_id, [PhaseInput("Screening", "SCR", 1, [])]), uow
            )

    def test_update_phase(self, phases, uow):
        updated = UpdatePhaseUseCase().execute(
            UpdatePhaseCommand(phase_id=_id(phases["SCR"].id), name="Pre-screening"), uow
        )
        assert updated.name == "Pre-screening"
        assert updated.code == "SCR"

    def test_update_order_collision(self, phases, uow):
        with pytest.raises(ValidationError):
            UpdatePhaseUseCase().execute(
                UpdatePhaseCommand(phase_id=_id(phases["FUP"].id), order=1), uow
            )

    def test_update_unknown_phase(self, uow):
        with pytest.raises(NotFoundError):
            UpdatePhaseUseCase().execute(UpdatePhaseCommand(phase_id=uuid.uuid4(), name="x"), uow)

    def test_deactivated_phase_hidden_by_default(self, phases, study_id, uow):
        DeactivatePhaseUseCase().execute(_id(phases["FUP"].id), uow)
        assert [p.code for p in ListPhasesUseCase().execute(study_id, uow)] == ["SCR", "TRT"]
        assert len(ListPhasesUseCase().execute(study_id, uow, include_inactive=True)) == 3


# ═════════════════════════════════════════════════════════════════════════
# BOOTSTRAP
# ═════════════════════════════════════════════════════════════════════════

class TestBootstrap:
    def test_creates_progress_and_folders(self, enrolled, phases, uow):
        assert [p.phase_code for p in enrolled] == ["SCR", "TRT", "FUP"]
        assert all(p.status == "not_started" and not p.can_progress for p in enrolled)
        folder = GetFolderUseCase().execute(PATIENT, _id(phases["SCR"].id), uow)
        assert sorted(folder.blocking_template_ids) == ["consent", "demographics"]
        assert folder.visit_type == "screening"

    def test_idempotent(self, enrolled, study_id, uow_factory):
        again = BootstrapPatientUseCase().execute(PATIENT, study_id, uow_factory())
        assert [p.id for p in again] == [p.id for p in enrolled]

    def test_study_without_active_phases(self, study_id, uow):
        with pytest.raises(ValidationError, match="no active phases"):
            BootstrapPatientUseCase().execute(PATIENT, study_id, uow)

    def test_unknown_study(self, uow):
        with pytest.raises(NotFoundError):
            BootstrapPatientUseCase().execute(PATIENT, uuid.uuid4(), uow)

    def test_deactivated_phase_not_bootstrapped(self, phases, study_id, uow):
        DeactivatePhaseUseCase().execute(_id(phases["TRT"].id), uow)
        progress = BootstrapPatientUseCase().execute(PATIENT, study_id, uow)
        assert [p.phase_code for p in progress] == ["SCR", "FUP"]

    def test_catalog_rejects_unknown_templates(self, phases, study_id, uow):
        catalog = InMemoryTemplateCatalog(
            [TemplateMeta("consent"), TemplateMeta("demographics", is_published=False)]
        )
        with pytest.raises(ValidationError) as exc_info:
            BootstrapPatientUseCase(template_catalog=catalog).execute(PATIENT, study_id, uow)
        assert "SCR/demographics" in str(exc_info.value)
        assert "TRT/vitals" in str(exc_info.value)
        with pytest.raises(NotFoundError):
            GetProgressUseCase().execute(PATIENT, study_id, uow)

    def test_racing_bootstrap_keeps_the_winners_completions(
        self, phases, study_id, uow_factory, clock
    ):
        scr = _id(phases["SCR"].id)

        class RacingCatalog(InMemoryTemplateCatalog):
            """Another worker enrolls the patient and records consent mid-bootstrap."""

            raced = False

            def get_template(self, template_id):
                if not self.raced:
                    self.raced = True
                    BootstrapPatientUseCase(clock=clock).execute(PATIENT, study_id, uow_factory())
                    _apply(uow_factory(), scr, "consent", clock=clock)
                return super().get_template(template_id)

        catalog = RacingCatalog(
            TemplateMeta(t)
            for t in ("consent", "demographics", "medical_history", "vitals", "labs", "followup_visit")
        )
        result = BootstrapPatientUseCase(template_catalog=catalog, clock=clock).execute(
            PATIENT, study_id, uow_factory()
        )

        assert catalog.raced
        assert result[0].phase_code == "SCR"
        assert result[0].completed_templates == 1
        stored = GetProgressUseCase().execute(PATIENT, study_id, uow_factory())[0]
        consent = next(s for s in stored.form_completion_status if s.template_id == "consent")
        assert consent.is_completed is True
        folder = GetFolderUseCase().execute(PATIENT, scr, uow_factory())
        assert folder.completed_template_ids == ["consent"]

    def test_all_or_nothing_on_store_failure(self, phases, study_id, db, uow):
        with pytest.raises(DependencyError):
            BootstrapPatientUseCase().execute(PATIENT, study_id, FailingCommitUnitOfWork(db))
        assert len(db.progress) == 0
        assert len(db.folders) == 0
        with pytest.raises(NotFoundError):
            GetProgressUseCase().execute(PATIENT, study_id, uow)


# ═════════════════════════════════════════════════════════════════════════
# COMPLETIONS
# ═════════════════════════════════════════════════════════════════════════

class TestApplyCompletion:
    def test_updates_progress_and_folder_together(self, enrolled, phases, uow):
        scr = _id(phases["SCR"].id)
        _apply(uow, scr, "consent")
        result = _apply(uow, scr, "demographics")

        assert result.status == "in_progress"
        assert result.progress_percentage == 67
        assert result.can_progress is True

        folder = GetFolderUseCase().execute(PATIENT, scr, uow)
        assert folder.can_progress_to_next_phase is True
        assert folder.blocking_template_ids == []
        assert folder.completion_percentage == 67

    def test_not_bootstrapped(self, phases, study_id, db, uow):
        with pytest.raises(NotFoundError):
            _apply(uow, _id(phases["SCR"].id), "consent")
        assert len(db.progress) == 0

    def test_unassigned_template(self, enrolled, phases, uow):
        with pytest.raises(NotFoundError, match="not assigned"):
            _apply(uow, _id(phases["SCR"].id), "vitals")

    def test_duplicate_writes_nothing(self, enrolled, phases, db, uow):
        scr = _id(phases["SCR"].id)
        _apply(uow, scr, "consent")
        version = db.progress.version((PATIENT, scr))
        _apply(uow, scr, "consent")
        assert db.progress.version((PATIENT, scr)) == version

    def test_conflict_is_retried(self, enrolled, phases, db, uow_factory):
        scr = _id(phases["SCR"].id)
        racing = InterferingUnitOfWork(
            db, interfere=lambda: _apply(uow_factory(), scr, "demographics")
        )
        result = _apply(racing, scr, "consent")
        assert result.completed_templates == 2
        assert result.completed_required_templates == 2

    def test_conflict_surfaces_after_bounded_attempts(self, enrolled, phases, db, uow_factory):
        scr = _id(phases["SCR"].id)
        toggle = iter([True, False] * 5)
        racing = InterferingUnitOfWork(
            db,
            interfere=lambda: _apply(uow_factory(), scr, "medical_history", next(toggle)),
            times=10,
        )
        with pytest.raises(ConflictError):
            ApplyCompletionUseCase(conflict_retry_max=3).execute(
                ApplyCompletionCommand(PATIENT, scr, "consent"), racing
            )
        screening = GetProgressUseCase().execute(PATIENT, _id(phases["SCR"].study_id), uow_factory())[0]
        consent = next(s for s in screening.form_completion_status if s.template_id == "consent")
        assert consent.is_completed is False


# ═════════════════════════════════════════════════════════════════════════
# TRANSITIONS & ADMIN ACTIONS
# ═════════════════════════════════════════════════════════════════════════

class TestTransitions:
    def test_live_evaluation_sees_elapsed_days(self, enrolled, phases, uow, clock):
        trt = _id(phases["TRT"].id)
        _apply(uow, trt, "vitals", clock=clock)
        stored = _apply(uow, trt, "labs", clock=clock)
        assert stored.can_progress is False
        assert stored.blocking_reasons == [
            "Must wait 7 more day(s) (0 of 7 days elapsed since phase start)"
        ]

        clock.advance(days=3)
        decision = EvaluateTransitionUseCase(clock=clock).execute(PATIENT, trt, uow)
        assert decision.can_advance is False
        assert decision.reasons == ["Must wait 4 more day(s) (3 of 7 days elapsed since phase start)"]

        clock.advance(days=4)
        decision = EvaluateTransitionUseCase(clock=clock).execute(
            PATIENT, trt, uow, to_phase_id=_id(phases["FUP"].id)
        )
        assert decision.can_advance is True
        assert decision.to_phase_id == phases["FUP"].id
        assert decision.evaluated_at == (T0 + timedelta(days=7)).isoformat()

    def test_unknown_progress(self, phases, uow):
        with pytest.raises(NotFoundError):
            EvaluateTransitionUseCase().execute(PATIENT, _id(phases["SCR"].id), uow)

    def test_custom_condition_uses_injected_evaluator(self, study_id, uow):
        created = CreatePhasesUseCase().execute(
            CreatePhasesCommand(
                study_id,
                [
                    PhaseInput(
                        "Screening", "SCR", 1, [TemplateAssignment("consent", "Consent")],
                        transition_rules=[
                            TransitionRuleInput(
                                to_phase_code="TRT",
                                conditions=[CustomCondition("eligibility_confirmed")],
                            )
                        ],
                    ),
                    PhaseInput("Treatment", "TRT", 2, [TemplateAssignment("vitals", "Vitals")]),
                ],
            ),
            uow,
        )
        BootstrapPatientUseCase().execute(PATIENT, study_id, uow)
        scr = _id(created[0].id)
        _apply(uow, scr, "consent")

        decision = EvaluateTransitionUseCase(TransitionEvaluator(lambda e, p: False)).execute(
            PATIENT, scr, uow
        )
        assert decision.can_advance is False
        assert decision.reasons == ["Custom condition not met: eligibility_confirmed"]

        decision = EvaluateTransitionUseCase(TransitionEvaluator(lambda e, p: True)).execute(
            PATIENT, scr, uow
        )
        assert decision.can_advance is True

    def test_skip_only_where_allowed(self, enrolled, phases, uow):
        with pytest.raises(ValidationError, match="does not allow skipping"):
            SkipPhaseUseCase().execute(
                PhaseActionCommand(PATIENT, _id(phases["SCR"].id), "withdrawn"), uow
            )
        skipped = SkipPhaseUseCase().execute(
            PhaseActionCommand(PATIENT, _id(phases["FUP"].id), "Site does not run follow-up"), uow
        )
        assert skipped.status == "skipped"
        assert skipped.can_progress is True
        assert GetFolderUseCase().execute(PATIENT, _id(phases["FUP"].id), uow).status == "skipped"

    def test_lock_and_unlock(self, enrolled, phases, uow):
        scr = _id(phases["SCR"].id)
        locked = LockPhaseUseCase().execute(PhaseActionCommand(PATIENT, scr), uow)
        assert locked.status == "locked"
        assert "Phase is locked" in locked.blocking_reasons

        after = _apply(uow, scr, "consent")
        assert after.status == "locked"
        assert after.completed_templates == 1

        unlocked = UnlockPhaseUseCase().execute(PhaseActionCommand(PATIENT, scr), uow)
        assert unlocked.status == "in_progress"

    def test_unlock_unlocked_phase(self, enrolled, phases, uow):
        with pytest.raises(ValidationError):
            UnlockPhaseUseCase().execute(PhaseActionCommand(PATIENT, _id(phases["SCR"].id)), uow)


# ═════════════════════════════════════════════════════════════════════════
# REPORTING & MAINTENANCE
# ═════════════════════════════════════════════════════════════════════════

class TestReporting:
    def test_study_phase_summary(self, enrolled, phases, study_id, uow, uow_factory, clock):
        BootstrapPatientUseCase(clock=clock).execute("P-002", study_id, uow_factory())
        _apply(uow, _id(phases["SCR"].id), "consent", clock=clock)

        summaries = GetStudyPhaseSummaryUseCase(clock=clock).execute(study_id, uow)
        assert [s.phase_code for s in summaries] == ["SCR", "TRT", "FUP"]
        scr = summaries[0]
        assert scr.total_patients == 2
        assert scr.patients_in_progress == 1
        assert scr.patients_not_started == 1
        assert scr.average_completion_rate == 16.5

    def test_template_status(self, enrolled, phases, uow, clock):
        scr = _id(phases["SCR"].id)
        _apply(uow, scr, "consent", clock=clock)
        clock.advance(days=4)
        rows = {r.template_id: r for r in GetPhaseTemplateStatusUseCase(clock).execute(PATIENT, scr, uow)}
        assert rows["consent"].status == "completed"
        assert rows["medical_history"].status == "overdue"
        assert rows["medical_history"].template_name == "Medical History"

    def test_rebuild_folders(self, enrolled, phases, study_id, db, uow):
        scr = _id(phases["SCR"].id)
        _apply(uow, scr, "consent")
        db.folders.clear()

        rebuilt = RebuildFoldersUseCase().execute(PATIENT, study_id, uow)
        assert [f.phase_code for f in rebuilt] == ["SCR", "TRT", "FUP"]
        assert GetFolderUseCase().execute(PATIENT, scr, uow).completed_template_ids == ["consent"]

    def test_assign_templates_keeps_existing_progress(self, enrolled, phases, study_id, uow):
        scr = _id(phases["SCR"].id)
        updated = AssignTemplatesUseCase().execute(
            AssignTemplatesCommand(scr, [TemplateAssignment("consent", "Consent v2")]), uow
        )
        assert updated.total_templates == 1
        progress = GetProgressUseCase().execute(PATIENT, study_id, uow)
        assert progress[0].total_templates == 3

    def test_progress_for_unenrolled_patient(self, phases, study_id, uow):
        with pytest.raises(NotFoundError):
            GetProgressUseCase().execute("P-404", study_id, uow)
