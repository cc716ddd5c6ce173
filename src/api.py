"""
api.py

REST API layer for the Study-Phase Progression Engine.

Framework : FastAPI
Auth      : none; authentication is the host application's concern.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /studies                                   — study registry
  │   ├── /{study_id}/phases                     — phase configuration
  │   ├── /{study_id}/summary                    — per-phase dashboard statistics
  │   └── /{study_id}/patients/{patient_id}      — bootstrap, progress, folder rebuild
  ├── /phases/{phase_id}                         — update, template assignment, deactivate
  └── /patients/{patient_id}/phases/{phase_id}   — completions, folder, transition check,
                                                   template status, skip / lock / unlock

Error handling
--------------
  NotFoundError      → 404
  ConflictError      → 409
  ValidationError    → 422
  ApplicationError   → 422
  ValueError         → 422
  DependencyError    → 503
  Unhandled          → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    ConflictError,
    DependencyError,
    NotFoundError,
    ValidationError,
    # Use-case commands and inputs
    AssignTemplatesCommand,
    CreatePhasesCommand,
    PhaseInput,
    RegisterStudyCommand,
    TransitionRuleInput,
    UpdatePhaseCommand,
    # Use-case classes
    AssignTemplatesUseCase,
    CreatePhasesUseCase,
    DeactivatePhaseUseCase,
    GetPhaseUseCase,
    GetStudyUseCase,
    ListPhasesUseCase,
    ListStudiesUseCase,
    RegisterStudyUseCase,
    UpdatePhaseUseCase,
    AbstractUnitOfWork,
)
from config import get_config
from engine import PhaseProgressionEngine
from infrastructure import InMemoryUnitOfWork
from model import (
    AllRequiredFormsCompleted,
    CustomCondition,
    DateBased,
    SpecificFormsCompleted,
    TemplateAssignment,
)

settings = get_config()


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Study-Phase Progression Engine API",
    version="1.0.0",
    description=(
        "REST API for clinical study phases: phase configuration, patient "
        "bootstrap, template completion tracking, transition checks, and "
        "visit folders."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(DependencyError)
async def dependency_handler(request, exc: DependencyError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


_engine: Optional[PhaseProgressionEngine] = None


def get_engine() -> PhaseProgressionEngine:
    """Returns the process-wide engine over the in-memory store."""
    global _engine
    if _engine is None:
        _engine = PhaseProgressionEngine(InMemoryUnitOfWork, settings=settings)
    return _engine


@app.on_event("shutdown")
def close_engine():
    if _engine is not None:
        _engine.close()


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# Study schemas
# ---------------------------------------------------------------------------

class RegisterStudyRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    protocol_code: str = Field(default="", max_length=100)


# ---------------------------------------------------------------------------
# Transition condition schemas (discriminated on "type")
# ---------------------------------------------------------------------------

class AllRequiredFormsConditionRequest(BaseModel):
    type: Literal["all_required_forms_completed"]

    def to_domain(self):
        return AllRequiredFormsCompleted()


class SpecificFormsConditionRequest(BaseModel):
    type: Literal["specific_forms_completed"]
    form_ids: List[str] = Field(..., min_length=1)

    def to_domain(self):
        return SpecificFormsCompleted(form_ids=tuple(self.form_ids))


class DateBasedConditionRequest(BaseModel):
    type: Literal["date_based"]
    days_after_enrollment: int = Field(..., ge=0)

    def to_domain(self):
        return DateBased(days_after_enrollment=self.days_after_enrollment)


class CustomConditionRequest(BaseModel):
    type: Literal["custom"]
    expression: str = Field(..., min_length=1)

    def to_domain(self):
        return CustomCondition(expression=self.expression)


ConditionRequest = Annotated[
    Union[
        AllRequiredFormsConditionRequest,
        SpecificFormsConditionRequest,
        DateBasedConditionRequest,
        CustomConditionRequest,
    ],
    Field(discriminator="type"),
]


class TransitionRuleRequest(BaseModel):
    to_phase_id: Optional[uuid.UUID] = None
    to_phase_code: Optional[str] = Field(
        default=None, description="Target by code when it is created in the same request."
    )
    conditions: List[ConditionRequest] = Field(default_factory=list)
    requires_approval: bool = False
    approval_roles: List[str] = Field(default_factory=list)

    @field_validator("to_phase_code")
    @classmethod
    def normalise_target_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v is not None else v

    def to_input(self) -> TransitionRuleInput:
        return TransitionRuleInput(
            conditions=[c.to_domain() for c in self.conditions],
            to_phase_id=self.to_phase_id,
            to_phase_code=self.to_phase_code,
            requires_approval=self.requires_approval,
            approval_roles=list(self.approval_roles),
        )


# ---------------------------------------------------------------------------
# Phase schemas
# ---------------------------------------------------------------------------

class TemplateAssignmentRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    template_name: str = Field(default="")
    is_required: bool = True
    due_after_days: Optional[int] = Field(default=None, ge=0)
    category: Optional[str] = None
    description: str = Field(default="")

    def to_domain(self) -> TemplateAssignment:
        return TemplateAssignment(
            template_id=self.template_id,
            template_name=self.template_name or self.template_id,
            is_required=self.is_required,
            due_after_days=self.due_after_days,
            category=self.category,
            description=self.description,
        )


class CreatePhaseRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    code: str = Field(..., min_length=1, max_length=20)
    order: int = Field(..., ge=1)
    description: str = Field(default="")
    template_assignments: List[TemplateAssignmentRequest] = Field(..., min_length=1)
    planned_duration_days: Optional[int] = Field(default=None, ge=0)
    window_start_days: Optional[int] = Field(default=None, ge=0)
    window_end_days: Optional[int] = Field(default=None, ge=0)
    allow_skip: bool = False
    allow_parallel: bool = False
    transition_rules: List[TransitionRuleRequest] = Field(default_factory=list)
    entry_requirements: List[str] = Field(default_factory=list)
    exit_requirements: List[str] = Field(default_factory=list)

    @field_validator("code")
    @classmethod
    def normalise_code(cls, v: str) -> str:
        return v.strip().upper()

    def to_input(self) -> PhaseInput:
        return PhaseInput(
            name=self.name,
            code=self.code,
            order=self.order,
            template_assignments=[a.to_domain() for a in self.template_assignments],
            description=self.description,
            planned_duration_days=self.planned_duration_days,
            window_start_days=self.window_start_days,
            window_end_days=self.window_end_days,
            allow_skip=self.allow_skip,
            allow_parallel=self.allow_parallel,
            transition_rules=[r.to_input() for r in self.transition_rules],
            entry_requirements=list(self.entry_requirements),
            exit_requirements=list(self.exit_requirements),
        )


class CreatePhasesRequest(BaseModel):
    phases: List[CreatePhaseRequest] = Field(..., min_length=1)


class UpdatePhaseRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    code: Optional[str] = Field(default=None, min_length=1, max_length=20)
    order: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = None
    template_assignments: Optional[List[TemplateAssignmentRequest]] = Field(
        default=None, min_length=1
    )
    planned_duration_days: Optional[int] = Field(default=None, ge=0)
    window_start_days: Optional[int] = Field(default=None, ge=0)
    window_end_days: Optional[int] = Field(default=None, ge=0)
    allow_skip: Optional[bool] = None
    allow_parallel: Optional[bool] = None
    transition_rules: Optional[List[TransitionRuleRequest]] = None
    entry_requirements: Optional[List[str]] = None
    exit_requirements: Optional[List[str]] = None

    @field_validator("code")
    @classmethod
    def normalise_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v is not None else v


class AssignTemplatesRequest(BaseModel):
    template_assignments: List[TemplateAssignmentRequest] = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Patient progression schemas
# ---------------------------------------------------------------------------

class SubmitCompletionRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    completed: bool = True
    form_instance_id: Optional[str] = None


class SkipPhaseRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class LockPhaseRequest(BaseModel):
    reason: str = Field(default="", max_length=2000)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Studies
# ---------------------------------------------------------------------------

study_router = APIRouter(prefix="/studies", tags=["Studies"])


@study_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a study",
)
def register_study(
    body: RegisterStudyRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = RegisterStudyCommand(name=body.name, protocol_code=body.protocol_code)
    return _ok(RegisterStudyUseCase().execute(cmd, uow))


@study_router.get("", summary="List all studies")
def list_studies(uow: AbstractUnitOfWork = Depends(get_uow)):
    return _ok(ListStudiesUseCase().execute(uow))


@study_router.get("/{study_id}", summary="Get a study by ID")
def get_study(
    study_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetStudyUseCase().execute(study_id, uow))


# ---------------------------------------------------------------------------
# Phase configuration
# ---------------------------------------------------------------------------

study_phase_router = APIRouter(prefix="/studies/{study_id}/phases", tags=["Phases"])


@study_phase_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create one or more phases for a study",
)
def create_phases(
    body: CreatePhasesRequest,
    study_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    The batch is validated together with the study's existing phases and
    stored all-or-nothing.  Transition rules may target a phase of the same
    batch by `to_phase_code`.
    """
    cmd = CreatePhasesCommand(study_id=study_id, phases=[p.to_input() for p in body.phases])
    return _ok(CreatePhasesUseCase().execute(cmd, uow))


@study_phase_router.get("", summary="List a study's phases in order")
def list_phases(
    study_id: uuid.UUID = Path(...),
    include_inactive: bool = Query(False, description="Include deactivated phases."),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListPhasesUseCase().execute(study_id, uow, include_inactive=include_inactive))


phase_router = APIRouter(prefix="/phases/{phase_id}", tags=["Phases"])


@phase_router.get("", summary="Get a phase by ID")
def get_phase(
    phase_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetPhaseUseCase().execute(phase_id, uow))


@phase_router.patch("", summary="Update a phase definition")
def update_phase(
    body: UpdatePhaseRequest,
    phase_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Patients already bootstrapped keep the template counts they started with."""
    cmd = UpdatePhaseCommand(
        phase_id=phase_id,
        name=body.name,
        code=body.code,
        description=body.description,
        order=body.order,
        template_assignments=(
            [a.to_domain() for a in body.template_assignments]
            if body.template_assignments is not None else None
        ),
        planned_duration_days=body.planned_duration_days,
        window_start_days=body.window_start_days,
        window_end_days=body.window_end_days,
        allow_skip=body.allow_skip,
        allow_parallel=body.allow_parallel,
        entry_requirements=body.entry_requirements,
        exit_requirements=body.exit_requirements,
        transition_rules=(
            [r.to_input() for r in body.transition_rules]
            if body.transition_rules is not None else None
        ),
    )
    return _ok(UpdatePhaseUseCase().execute(cmd, uow))


@phase_router.put("/templates", summary="Replace the template assignments of a phase")
def assign_templates(
    body: AssignTemplatesRequest,
    phase_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = AssignTemplatesCommand(
        phase_id=phase_id,
        template_assignments=[a.to_domain() for a in body.template_assignments],
    )
    return _ok(AssignTemplatesUseCase().execute(cmd, uow))


@phase_router.post("/deactivate", summary="Deactivate a phase")
def deactivate_phase(
    phase_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Deactivated phases are excluded from future bootstraps.  They are never deleted."""
    return _ok(DeactivatePhaseUseCase().execute(phase_id, uow))


# ---------------------------------------------------------------------------
# Study-level patient operations
# ---------------------------------------------------------------------------

enrollment_router = APIRouter(
    prefix="/studies/{study_id}",
    tags=["Enrollment"],
)


@enrollment_router.post(
    "/patients/{patient_id}/bootstrap",
    status_code=status.HTTP_201_CREATED,
    summary="Create progress records and folders for a newly enrolled patient",
)
def bootstrap_patient(
    study_id: uuid.UUID = Path(...),
    patient_id: str = Path(..., min_length=1),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    """Idempotent: calling it again for an enrolled patient returns the existing records."""
    return _ok(engine.bootstrap_patient(patient_id, study_id))


@enrollment_router.get(
    "/patients/{patient_id}/progress",
    summary="Get a patient's progress across all phases of a study",
)
def get_progress(
    study_id: uuid.UUID = Path(...),
    patient_id: str = Path(..., min_length=1),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.get_progress(patient_id, study_id))


@enrollment_router.post(
    "/patients/{patient_id}/folders/rebuild",
    summary="Re-derive all of a patient's visit folders from progress",
)
def rebuild_folders(
    study_id: uuid.UUID = Path(...),
    patient_id: str = Path(..., min_length=1),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.rebuild_folders(patient_id, study_id))


@enrollment_router.get("/summary", summary="Per-phase patient statistics for a study")
def get_study_summary(
    study_id: uuid.UUID = Path(...),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.get_study_phase_summary(study_id))


# ---------------------------------------------------------------------------
# Patient phase operations
# ---------------------------------------------------------------------------

progress_router = APIRouter(
    prefix="/patients/{patient_id}/phases/{phase_id}",
    tags=["Progress"],
)


@progress_router.post(
    "/completions",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a template completion (or re-open) event",
)
def submit_completion(
    body: SubmitCompletionRequest,
    patient_id: str = Path(..., min_length=1),
    phase_id: uuid.UUID = Path(...),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    """
    The event is queued behind earlier events for the same patient phase.
    If it is applied within SUBMIT_TIMEOUT_SECONDS the updated progress is
    returned with status "applied"; otherwise status is "queued" and the
    event is still processed later.
    """
    future = engine.submit_completion(
        patient_id,
        phase_id,
        body.template_id,
        completed=body.completed,
        form_instance_id=body.form_instance_id,
        timeout=settings.SUBMIT_TIMEOUT_SECONDS,
    )
    if not future.done():
        return _ok({"status": "queued", "progress": None})
    exc = future.exception()
    if isinstance(exc, ApplicationError):
        raise exc
    if exc is not None:
        raise DependencyError(f"Completion could not be applied: {exc}") from exc
    return _ok({"status": "applied", "progress": dataclasses.asdict(future.result())})


@progress_router.get("/folder", summary="Get the visit folder of a patient phase")
def get_folder(
    patient_id: str = Path(..., min_length=1),
    phase_id: uuid.UUID = Path(...),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.get_folder(patient_id, phase_id))


@progress_router.get("/transition", summary="Evaluate whether the patient may advance")
def evaluate_transition(
    patient_id: str = Path(..., min_length=1),
    phase_id: uuid.UUID = Path(...),
    to_phase_id: Optional[uuid.UUID] = Query(
        None, description="Only evaluate rules leading to this phase."
    ),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.evaluate_transition(patient_id, phase_id, to_phase=to_phase_id))


@progress_router.get("/templates", summary="Per-template status with due dates")
def get_template_status(
    patient_id: str = Path(..., min_length=1),
    phase_id: uuid.UUID = Path(...),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.get_template_status(patient_id, phase_id))


@progress_router.post("/skip", summary="Skip a phase that allows skipping")
def skip_phase(
    body: SkipPhaseRequest,
    patient_id: str = Path(..., min_length=1),
    phase_id: uuid.UUID = Path(...),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.skip_phase(patient_id, phase_id, body.reason))


@progress_router.post("/lock", summary="Lock a patient phase")
def lock_phase(
    body: LockPhaseRequest,
    patient_id: str = Path(..., min_length=1),
    phase_id: uuid.UUID = Path(...),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.lock_phase(patient_id, phase_id, body.reason))


@progress_router.post("/unlock", summary="Unlock a patient phase")
def unlock_phase(
    patient_id: str = Path(..., min_length=1),
    phase_id: uuid.UUID = Path(...),
    engine: PhaseProgressionEngine = Depends(get_engine),
):
    return _ok(engine.unlock_phase(patient_id, phase_id))


# ===========================================================================
# REGISTER ROUTERS
# ===========================================================================

api_v1.include_router(study_router)
api_v1.include_router(study_phase_router)
api_v1.include_router(phase_router)
api_v1.include_router(enrollment_router)
api_v1.include_router(progress_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server: exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok", "env": settings.ENV_NAME}


# ===========================================================================
# OPENAPI CUSTOMISATION: tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness probe.",
    },
    {
        "name": "Studies",
        "description": "Clinical studies that own an ordered set of phases.",
    },
    {
        "name": "Phases",
        "description": (
            "Ordered phase definitions (e.g. Screening, Treatment) with their "
            "assigned form templates and transition rules.  Phases are "
            "deactivated, never deleted."
        ),
    },
    {
        "name": "Enrollment",
        "description": (
            "Patient bootstrap into a study, cross-phase progress, folder "
            "rebuilds, and study-level phase statistics."
        ),
    },
    {
        "name": "Progress",
        "description": (
            "Template completion events, visit folders, transition checks with "
            "blocking reasons, and administrative skip / lock / unlock."
        ),
    },
]

app.openapi_tags = tags_metadata
