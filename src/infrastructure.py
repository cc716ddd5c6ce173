"""
infrastructure.py

In-memory implementation of all repository interfaces, the Unit of Work and
the external collaborators declared in application.py.

This is a self-contained, zero-dependency backend that stores everything in
plain Python dicts.  Unlike a bare dict it behaves like a transactional
document store: every record carries a version number, reads return private
copies, writes are staged inside the unit of work and applied atomically on
commit, and a commit fails with ConflictError if another transaction has
written one of the same records in the meantime (optimistic concurrency).
That is what lets concurrent event workers share it safely.

To swap in a real store (e.g. Firestore or PostgreSQL) later, implement the
same Abstract* interfaces from application.py and pass a factory for that
unit of work to the engine / override get_uow() in api.py.

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from application import (
    AbstractDeadLetterSink,
    AbstractEventSource,
    AbstractFolderRepository,
    AbstractPhaseConfigRepository,
    AbstractProgressRepository,
    AbstractStudyRepository,
    AbstractTemplateCatalog,
    AbstractUnitOfWork,
    ConflictError,
)
from model import (
    PatientPhaseProgress,
    PhaseConfig,
    Study,
    TemplateCompletionEvent,
    TemplateMeta,
    VisitFolder,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic versioned in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A dict of key → (version, record) with copy-on-read helpers."""

    def fetch(self, key: Hashable) -> Tuple[int, Any]:
        version, obj = self.get(key, (0, None))
        return version, copy.deepcopy(obj)

    def version(self, key: Hashable) -> int:
        return self.get(key, (0, None))[0]

    def put(self, key: Hashable, version: int, obj: Any) -> None:
        self[key] = (version, copy.deepcopy(obj))

    def scan(self, predicate: Callable[[Any], bool]) -> List[Tuple[Hashable, int, Any]]:
        return [
            (key, version, copy.deepcopy(obj))
            for key, (version, obj) in self.items()
            if predicate(obj)
        ]


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process: restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.studies:  _Store = _Store()
        self.phases:   _Store = _Store()
        self.progress: _Store = _Store()
        self.folders:  _Store = _Store()

    def table(self, name: str) -> _Store:
        return getattr(self, name)


# Module-level singleton: shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryStudyRepository(AbstractStudyRepository):
    def __init__(self, uow: "InMemoryUnitOfWork"): self._uow = uow
    def get(self, study_id):          return self._uow.read("studies", study_id)
    def list_all(self):               return self._uow.scan("studies", lambda s: True)
    def save(self, study: Study):     self._uow.stage("studies", study.id, study)


class InMemoryPhaseConfigRepository(AbstractPhaseConfigRepository):
    def __init__(self, uow: "InMemoryUnitOfWork"): self._uow = uow
    def get(self, phase_id):          return self._uow.read("phases", phase_id)
    def list_for_study(self, study_id):
        return self._uow.scan("phases", lambda p: p.study_id == study_id)
    def save(self, phase: PhaseConfig): self._uow.stage("phases", phase.id, phase)


class InMemoryProgressRepository(AbstractProgressRepository):
    def __init__(self, uow: "InMemoryUnitOfWork"): self._uow = uow
    def get(self, patient_id, phase_id):
        return self._uow.read("progress", (patient_id, phase_id))
    def list_for_patient(self, patient_id, study_id):
        return self._uow.scan(
            "progress", lambda p: p.patient_id == patient_id and p.study_id == study_id
        )
    def list_for_phase(self, phase_id):
        return self._uow.scan("progress", lambda p: p.phase_id == phase_id)
    def save(self, progress: PatientPhaseProgress):
        self._uow.stage("progress", progress.key, progress)
    def add(self, progress: PatientPhaseProgress):
        self._uow.stage("progress", progress.key, progress, expect_absent=True)


class InMemoryFolderRepository(AbstractFolderRepository):
    def __init__(self, uow: "InMemoryUnitOfWork"): self._uow = uow
    def get(self, patient_id, phase_id):
        return self._uow.read("folders", (patient_id, phase_id))
    def list_for_patient(self, patient_id, study_id):
        return self._uow.scan(
            "folders", lambda f: f.patient_id == patient_id and f.study_id == study_id
        )
    def save(self, folder: VisitFolder):
        self._uow.stage("folders", folder.key, folder)
    def add(self, folder: VisitFolder):
        self._uow.stage("folders", folder.key, folder, expect_absent=True)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Optimistic transaction over an InMemoryDatabase.

    The first read (or blind write) of a record pins the version this
    transaction expects.  commit() checks every staged record against its
    pinned version under the database lock and then applies all of them,
    so either every staged write becomes visible or none does.  Inserts
    staged through a repository's add() expect version 0, so a record created
    by a concurrent transaction makes them conflict instead of overwriting it.

    Entering the context manager starts a fresh transaction, which is how
    use cases retry after a ConflictError with the same instance.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._pinned: Dict[Tuple[str, Hashable], int] = {}
        self._staged: Dict[Tuple[str, Hashable], Any] = {}
        self.studies  = InMemoryStudyRepository(self)
        self.phases   = InMemoryPhaseConfigRepository(self)
        self.progress = InMemoryProgressRepository(self)
        self.folders  = InMemoryFolderRepository(self)

    def __enter__(self) -> "InMemoryUnitOfWork":
        self.rollback()
        return self

    # --- transaction primitives used by the repositories ---------------------

    def read(self, table: str, key: Hashable) -> Optional[Any]:
        if (table, key) in self._staged:
            return copy.deepcopy(self._staged[(table, key)])
        with self._db.lock:
            version, obj = self._db.table(table).fetch(key)
        self._pinned.setdefault((table, key), version)
        return obj

    def scan(self, table: str, predicate: Callable[[Any], bool]) -> List[Any]:
        with self._db.lock:
            rows = self._db.table(table).scan(predicate)
        found: Dict[Hashable, Any] = {}
        for key, version, obj in rows:
            self._pinned.setdefault((table, key), version)
            found[key] = obj
        for (staged_table, key), obj in self._staged.items():
            if staged_table == table and predicate(obj):
                found[key] = copy.deepcopy(obj)
        return list(found.values())

    def stage(self, table: str, key: Hashable, obj: Any, expect_absent: bool = False) -> None:
        """
        Queue a write for commit().  With `expect_absent` the record must not
        exist when the transaction commits, whatever the store holds right now.
        """
        if expect_absent:
            if self._pinned.get((table, key), 0) != 0 or (table, key) in self._staged:
                raise ConflictError(f"{table} record {key} already exists.")
            self._pinned[(table, key)] = 0
        elif (table, key) not in self._pinned:
            with self._db.lock:
                self._pinned[(table, key)] = self._db.table(table).version(key)
        self._staged[(table, key)] = copy.deepcopy(obj)

    # --- AbstractUnitOfWork ---------------------------------------------------

    def commit(self) -> None:
        if not self._staged:
            return
        with self._db.lock:
            for table, key in self._staged:
                expected = self._pinned[(table, key)]
                current = self._db.table(table).version(key)
                if current != expected:
                    self.rollback()
                    raise ConflictError(
                        f"{table} record {key} changed concurrently "
                        f"(expected version {expected}, found {current})."
                    )
            for (table, key), obj in self._staged.items():
                self._db.table(table).put(key, self._pinned[(table, key)] + 1, obj)
        self.rollback()

    def rollback(self) -> None:
        self._staged.clear()
        self._pinned.clear()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class InMemoryTemplateCatalog(AbstractTemplateCatalog):
    """Template lookup backed by a dict; seeded by the caller."""

    def __init__(self, templates: Iterable[TemplateMeta] = ()):
        self._templates: Dict[str, TemplateMeta] = {t.template_id: t for t in templates}

    def register(self, template: TemplateMeta) -> None:
        self._templates[template.template_id] = template

    def get_template(self, template_id: str) -> Optional[TemplateMeta]:
        return self._templates.get(template_id)


class InMemoryDeadLetterSink(AbstractDeadLetterSink):
    """Keeps dead-lettered events in a list so operators can inspect and replay them."""

    def __init__(self):
        self._lock = threading.Lock()
        self.entries: List[Dict[str, Any]] = []

    def report(self, event: TemplateCompletionEvent, error: BaseException, attempts: int) -> None:
        logger.error(
            "Dead-lettered completion event %s after %d attempt(s): %s",
            event.event_id, attempts, error,
            extra={
                "event_id": str(event.event_id),
                "patient_id": event.patient_id,
                "phase_id": str(event.phase_id),
                "template_id": event.template_id,
            },
        )
        with self._lock:
            self.entries.append({"event": event, "error": error, "attempts": attempts})

    def drain(self) -> List[Dict[str, Any]]:
        with self._lock:
            entries, self.entries = self.entries, []
        return entries


class InMemoryEventSource(AbstractEventSource):
    """Direct-call event source: publish() hands the event to every subscriber."""

    def __init__(self):
        self._handlers: List[Callable[[TemplateCompletionEvent], Any]] = []

    def subscribe(self, handler: Callable[[TemplateCompletionEvent], Any]) -> None:
        self._handlers.append(handler)

    def publish(self, event: TemplateCompletionEvent) -> None:
        for handler in list(self._handlers):
            handler(event)
