"""
EventIngress tests: per-key ordering, cross-key parallelism, retry/backoff,
drop-vs-dead-letter and the non-cancelling timeout.
"""
import threading
import uuid

import pytest

from application import DependencyError, NotFoundError, ValidationError
from infrastructure import InMemoryDeadLetterSink
from ingress import EventIngress
from model import TemplateCompletionEvent

PHASE = uuid.uuid4()


def _event(template_id="vitals", patient_id="P-001", phase_id=PHASE):
    return TemplateCompletionEvent(patient_id=patient_id, phase_id=phase_id, template_id=template_id)


class Recorder:
    def __init__(self):
        self.lock = threading.Lock()
        self.seen = []

    def __call__(self, event):
        with self.lock:
            self.seen.append((event.key, event.template_id))
        return event.template_id


class TestOrdering:
    def test_same_key_events_apply_in_submission_order(self):
        recorder = Recorder()
        ingress = EventIngress(recorder, max_workers=4)
        ids = [f"form-{i}" for i in range(25)]
        futures = [ingress.submit(_event(t)) for t in ids]
        ingress.close()
        assert [f.result() for f in futures] == ids
        assert [t for _, t in recorder.seen] == ids

    def test_ordering_holds_per_key_across_interleaved_keys(self):
        recorder = Recorder()
        ingress = EventIngress(recorder, max_workers=4)
        other = uuid.uuid4()
        for i in range(10):
            ingress.submit(_event(f"a-{i}"))
            ingress.submit(_event(f"b-{i}", phase_id=other))
        ingress.close()
        a = [t for key, t in recorder.seen if key == ("P-001", PHASE)]
        b = [t for key, t in recorder.seen if key == ("P-001", other)]
        assert a == [f"a-{i}" for i in range(10)]
        assert b == [f"b-{i}" for i in range(10)]

    def test_distinct_keys_run_in_parallel(self):
        barrier = threading.Barrier(2, timeout=5)

        def handler(event):
            barrier.wait()
            return event.patient_id

        ingress = EventIngress(handler, max_workers=2, retry_max=0)
        first = ingress.submit(_event(patient_id="P-001"))
        second = ingress.submit(_event(patient_id="P-002"))
        assert first.result(timeout=5) == "P-001"
        assert second.result(timeout=5) == "P-002"
        ingress.close()

    def test_later_events_wait_behind_a_busy_key(self):
        gate, started = threading.Event(), threading.Event()

        def handler(event):
            started.set()
            gate.wait(5)
            return event.template_id

        ingress = EventIngress(handler, max_workers=2)
        first = ingress.submit(_event("consent"))
        started.wait(5)
        ingress.submit(_event("demographics"))
        ingress.submit(_event("medical_history"))
        assert ingress.pending() == 2
        gate.set()
        ingress.close()
        assert first.result() == "consent"
        assert ingress.pending() == 0


class TestFailures:
    def test_transient_failure_is_retried_with_backoff(self):
        calls, sleeps = [], []

        def flaky(event):
            calls.append(event.event_id)
            if len(calls) < 3:
                raise DependencyError("store unavailable")
            return "ok"

        ingress = EventIngress(flaky, retry_max=3, backoff_seconds=[0.1, 0.5], sleep=sleeps.append)
        assert ingress.submit(_event()).result(timeout=5) == "ok"
        ingress.close()
        assert len(calls) == 3
        assert sleeps == [0.1, 0.5]

    def test_exhausted_retries_go_to_dead_letter(self):
        sink, sleeps = InMemoryDeadLetterSink(), []

        def broken(event):
            raise DependencyError("store unavailable")

        ingress = EventIngress(
            broken, dead_letter=sink, retry_max=3, backoff_seconds=[0.1, 0.5], sleep=sleeps.append
        )
        event = _event()
        future = ingress.submit(event)
        with pytest.raises(DependencyError):
            future.result(timeout=5)
        ingress.close()

        assert sleeps == [0.1, 0.5, 0.5]
        entries = sink.drain()
        assert len(entries) == 1
        assert entries[0]["event"] is event
        assert entries[0]["attempts"] == 4

    @pytest.mark.parametrize("error", [NotFoundError("no record"), ValidationError("bad")])
    def test_non_retryable_errors_are_dropped(self, error):
        sink, calls = InMemoryDeadLetterSink(), []

        def handler(event):
            calls.append(event)
            raise error

        ingress = EventIngress(handler, dead_letter=sink, retry_max=3, sleep=lambda s: None)
        future = ingress.submit(_event())
        with pytest.raises(type(error)):
            future.result(timeout=5)
        ingress.close()
        assert len(calls) == 1
        assert sink.entries == []

    def test_failure_does_not_block_the_queue(self):
        def handler(event):
            if event.template_id == "bad":
                raise NotFoundError("unknown template")
            return event.template_id

        ingress = EventIngress(handler)
        bad = ingress.submit(_event("bad"))
        good = ingress.submit(_event("vitals"))
        assert good.result(timeout=5) == "vitals"
        assert isinstance(bad.exception(timeout=5), NotFoundError)
        ingress.close()

    def test_broken_sink_is_contained(self):
        class ExplodingSink(InMemoryDeadLetterSink):
            def report(self, event, error, attempts):
                raise RuntimeError("sink down")

        def broken(event):
            raise DependencyError("store unavailable")

        ingress = EventIngress(broken, dead_letter=ExplodingSink(), retry_max=0)
        future = ingress.submit(_event())
        assert isinstance(future.exception(timeout=5), DependencyError)
        ingress.close()


class TestLifecycle:
    def test_timeout_does_not_cancel(self):
        gate = threading.Event()

        def handler(event):
            gate.wait(5)
            return "applied"

        ingress = EventIngress(handler)
        future = ingress.submit(_event(), timeout=0.05)
        assert not future.done()
        gate.set()
        assert future.result(timeout=5) == "applied"
        ingress.close()

    def test_cancelled_future_still_applies_and_keeps_the_key_moving(self):
        gate, started = threading.Event(), threading.Event()
        recorder = Recorder()

        def handler(event):
            if event.template_id == "consent":
                started.set()
                gate.wait(5)
            return recorder(event)

        ingress = EventIngress(handler)
        first = ingress.submit(_event("consent"))
        started.wait(5)
        abandoned = ingress.submit(_event("demographics"))
        last = ingress.submit(_event("medical_history"))
        assert abandoned.cancel() is True
        gate.set()

        assert last.result(timeout=5) == "medical_history"
        assert first.result(timeout=5) == "consent"
        assert [t for _, t in recorder.seen] == ["consent", "demographics", "medical_history"]
        assert ingress.pending() == 0

        follow_up = ingress.submit(_event("vitals"))
        assert follow_up.result(timeout=5) == "vitals"
        ingress.close()

    def test_running_future_cannot_be_cancelled(self):
        gate, started = threading.Event(), threading.Event()

        def handler(event):
            started.set()
            gate.wait(5)
            return "applied"

        ingress = EventIngress(handler)
        future = ingress.submit(_event())
        started.wait(5)
        assert future.cancel() is False
        gate.set()
        assert future.result(timeout=5) == "applied"
        ingress.close()

    def test_submit_after_close_is_rejected(self):
        ingress = EventIngress(Recorder())
        ingress.close()
        with pytest.raises(RuntimeError):
            ingress.submit(_event())

    def test_close_drains_queued_events(self):
        recorder = Recorder()
        ingress = EventIngress(recorder, max_workers=1)
        futures = [ingress.submit(_event(f"f-{i}", patient_id=f"P-{i}")) for i in range(8)]
        ingress.close(wait=True)
        assert all(f.done() for f in futures)
        assert len(recorder.seen) == 8
