"""
main.py

Entry point for the Study-Phase Progression Engine API.

Configures logging, wires the in-memory infrastructure and the engine into
the FastAPI app, and starts uvicorn.

Usage
-----
    # Option 1: run directly
    python main.py

    # Option 2: run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

    # Production-style logging
    APP_ENV=production CORS_ORIGINS=https://edc.example.org uvicorn main:app

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
1.  POST /api/v1/studies                                   — register a study, copy its "id"
2.  POST /api/v1/studies/{id}/phases                       — create SCR / TRT / FUP phases
3.  POST /api/v1/studies/{id}/patients/P-001/bootstrap     — enroll a patient
4.  POST /api/v1/patients/P-001/phases/{pid}/completions   — complete a template
5.  GET  /api/v1/patients/P-001/phases/{pid}/transition    — may the patient advance? why not?
6.  GET  /api/v1/patients/P-001/phases/{pid}/folder        — visit folder view
7.  GET  /api/v1/studies/{id}/summary                      — per-phase statistics
"""

import uvicorn

from api import app, get_engine, get_uow, settings
from engine import PhaseProgressionEngine
from infrastructure import InMemoryDeadLetterSink, InMemoryUnitOfWork
from logging_config import configure_logging

configure_logging(settings)


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

dead_letter = InMemoryDeadLetterSink()
engine = PhaseProgressionEngine(InMemoryUnitOfWork, dead_letter=dead_letter, settings=settings)

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()
app.dependency_overrides[get_engine] = lambda: engine


@app.on_event("shutdown")
def shutdown_engine():
    engine.close()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.DEBUG,    # auto-reload on file changes during development
        log_level=settings.LOG_LEVEL.lower(),
    )
