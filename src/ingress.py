"""
ingress.py

EventIngress — serializes TemplateCompletionEvents per (patient_id, phase_id).

  - One FIFO queue per key; at most one worker drains a given queue at a
    time, so completions for the same patient phase never interleave.
  - Different keys are drained in parallel by a ThreadPoolExecutor.
  - Failures:
      NotFoundError / ValidationError → logged and dropped (not retryable)
      anything else                   → retried with backoff, then reported
                                        to the dead-letter sink
  - submit() returns a Future per event.  Waiting on it with a timeout
    never cancels the event; it stays queued and is applied later.
    Cancelling the future only discards the result; the event still applies.

Usage:
    ingress = EventIngress(handler, dead_letter=sink, max_workers=4)
    future = ingress.submit(event, timeout=2.0)
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from application import AbstractDeadLetterSink, NotFoundError, ValidationError
from model import TemplateCompletionEvent

logger = logging.getLogger(__name__)

# Retry config
_RETRY_MAX = 3                          # retries after the first attempt
_RETRY_BACKOFF_SECONDS = [0.1, 0.5, 2]  # sleep[i] after the (i+1)th failure; last value repeats
_DROP_ERRORS = (NotFoundError, ValidationError)

EventKey = Tuple[str, uuid.UUID]
Handler = Callable[[TemplateCompletionEvent], Any]


def _log_extra(event: TemplateCompletionEvent, attempt: Optional[int] = None) -> Dict[str, Any]:
    extra = {
        "event_id": str(event.event_id),
        "patient_id": event.patient_id,
        "phase_id": str(event.phase_id),
        "template_id": event.template_id,
    }
    if attempt is not None:
        extra["attempt"] = attempt
    return extra


class EventIngress:
    """Per-key serialization queue in front of a completion handler."""

    def __init__(
        self,
        handler: Handler,
        dead_letter: Optional[AbstractDeadLetterSink] = None,
        max_workers: int = 4,
        retry_max: int = _RETRY_MAX,
        backoff_seconds: Optional[List[float]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._handler = handler
        self._dead_letter = dead_letter
        self._retry_max = max(retry_max, 0)
        self._backoff = list(_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds)
        self._sleep = sleep

        self._lock = threading.Lock()
        self._queues: Dict[EventKey, Deque[Tuple[TemplateCompletionEvent, Future]]] = {}
        self._active: Set[EventKey] = set()
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=max(max_workers, 1), thread_name_prefix="phase-ingress"
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, event: TemplateCompletionEvent, timeout: Optional[float] = None) -> Future:
        """
        Queue `event` behind any earlier event for the same key.

        With `timeout`, block up to that many seconds for the event to be
        processed.  The returned future may still be pending afterwards.
        """
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("EventIngress is closed.")
            self._queues.setdefault(event.key, deque()).append((event, future))
            if event.key not in self._active:
                self._active.add(event.key)
                self._executor.submit(self._drain, event.key)
        logger.debug("Queued completion event", extra=_log_extra(event))
        if timeout is not None:
            done, _ = wait_futures([future], timeout=timeout)
            if not done:
                logger.info(
                    "Completion event still queued after %.2fs; processing continues",
                    timeout, extra=_log_extra(event),
                )
        return future

    def pending(self) -> int:
        """Number of events queued but not yet picked up by a worker."""
        with self._lock:
            return sum(len(q) for q in self._queues.values())

    def close(self, wait: bool = True) -> None:
        """Stop accepting events.  With `wait`, block until every queue is drained."""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _drain(self, key: EventKey) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(key)
                if not queue:
                    self._queues.pop(key, None)
                    self._active.discard(key)
                    return
                event, future = queue.popleft()
            try:
                self._process(event, future)
            except Exception as exc:
                logger.exception(
                    "Unexpected failure while processing completion event %s", event.event_id,
                    extra=_log_extra(event),
                )
                if not future.done():
                    future.set_exception(exc)

    def _process(self, event: TemplateCompletionEvent, future: Future) -> None:
        if not future.set_running_or_notify_cancel():
            # The caller gave up on the result, not on the event.
            logger.info(
                "Caller cancelled the future of completion event %s; applying it anyway",
                event.event_id, extra=_log_extra(event),
            )
            future = Future()
            future.set_running_or_notify_cancel()
        attempts = self._retry_max + 1
        for attempt in range(1, attempts + 1):
            try:
                result = self._handler(event)
            except _DROP_ERRORS as exc:
                logger.warning(
                    "Dropping completion event %s: %s", event.event_id, exc,
                    extra=_log_extra(event, attempt),
                )
                future.set_exception(exc)
                return
            except Exception as exc:
                if attempt >= attempts:
                    self._report_dead_letter(event, exc, attempt)
                    future.set_exception(exc)
                    return
                delay = self._backoff_for(attempt)
                logger.warning(
                    "Completion event %s failed (attempt %d/%d): %s. Retrying in %ss",
                    event.event_id, attempt, attempts, exc, delay,
                    extra=_log_extra(event, attempt),
                )
                self._sleep(delay)
            else:
                future.set_result(result)
                return

    def _backoff_for(self, attempt: int) -> float:
        if not self._backoff:
            return 0.0
        return self._backoff[min(attempt - 1, len(self._backoff) - 1)]

    def _report_dead_letter(
        self, event: TemplateCompletionEvent, error: Exception, attempts: int
    ) -> None:
        if self._dead_letter is None:
            logger.error(
                "Completion event %s failed after %d attempt(s) and no dead-letter sink "
                "is configured: %s", event.event_id, attempts, error,
                extra=_log_extra(event, attempts),
            )
            return
        try:
            self._dead_letter.report(event, error, attempts)
        except Exception:
            logger.exception(
                "Dead-letter sink rejected completion event %s", event.event_id,
                extra=_log_extra(event, attempts),
            )
