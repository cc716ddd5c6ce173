"""
Shared pytest fixtures for the Study-Phase Progression Engine test suite.

Provides:
    - db / uow_factory / uow: a fresh in-memory store per test
    - clock: a controllable UTC clock
    - settings: TestingConfig (no retry sleeps)
    - study / phases: a registered study with SCR → TRT → FUP phases
    - engine: PhaseProgressionEngine over the per-test store
    - client: FastAPI TestClient wired to the same store and engine
"""

import os
import uuid

os.environ.setdefault("APP_ENV", "testing")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402

from application import (  # noqa: E402
    CreatePhasesCommand,
    CreatePhasesUseCase,
    PhaseInput,
    RegisterStudyCommand,
    RegisterStudyUseCase,
    TransitionRuleInput,
)
from config import TestingConfig  # noqa: E402
from engine import PhaseProgressionEngine  # noqa: E402
from infrastructure import (  # noqa: E402
    InMemoryDatabase,
    InMemoryDeadLetterSink,
    InMemoryUnitOfWork,
)
from model import DateBased, TemplateAssignment  # noqa: E402

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def standard_phase_inputs():
    """Screening (3 templates, 2 required) → Treatment (7-day rule) → Follow-up (skippable)."""
    return [
        PhaseInput(
            name="Screening",
            code="SCR",
            order=1,
            template_assignments=[
                TemplateAssignment("consent", "Informed Consent", is_required=True),
                TemplateAssignment("demographics", "Demographics", is_required=True),
                TemplateAssignment(
                    "medical_history", "Medical History", is_required=False, due_after_days=3
                ),
            ],
            planned_duration_days=14,
            window_end_days=3,
        ),
        PhaseInput(
            name="Treatment",
            code="TRT",
            order=2,
            template_assignments=[
                TemplateAssignment("vitals", "Vital Signs", is_required=True, category="vitals"),
                TemplateAssignment("labs", "Laboratory Panel", is_required=True, category="labs"),
            ],
            transition_rules=[
                TransitionRuleInput(
                    to_phase_code="FUP",
                    conditions=[DateBased(days_after_enrollment=7)],
                )
            ],
        ),
        PhaseInput(
            name="Follow-up",
            code="FUP",
            order=3,
            template_assignments=[
                TemplateAssignment("followup_visit", "Follow-up Visit", is_required=True),
            ],
            allow_skip=True,
        ),
    ]


# ── Store fixtures ───────────────────────────────────────────────────────


@pytest.fixture()
def db():
    return InMemoryDatabase()


@pytest.fixture()
def uow_factory(db):
    return lambda: InMemoryUnitOfWork(db)


@pytest.fixture()
def uow(uow_factory):
    return uow_factory()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def settings():
    return TestingConfig()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def study(uow):
    return RegisterStudyUseCase().execute(
        RegisterStudyCommand(name="ONC-201 Phase III", protocol_code="ONC-201"), uow
    )


@pytest.fixture()
def phases(study, uow):
    """Created phases keyed by code."""
    created = CreatePhasesUseCase().execute(
        CreatePhasesCommand(study_id=uuid.UUID(study.id), phases=standard_phase_inputs()), uow
    )
    return {p.code: p for p in created}


@pytest.fixture()
def dead_letter():
    return InMemoryDeadLetterSink()


@pytest.fixture()
def engine(uow_factory, settings, clock, dead_letter):
    eng = PhaseProgressionEngine(
        uow_factory, dead_letter=dead_letter, settings=settings, clock=clock
    )
    yield eng
    eng.close()


@pytest.fixture()
def client(uow_factory, engine):
    from fastapi.testclient import TestClient

    from api import app, get_engine, get_uow

    app.dependency_overrides[get_uow] = uow_factory
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()
