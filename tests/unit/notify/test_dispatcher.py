import asyncio
import threading

from codemend.models import AttemptOutcome, Category, FixAttempt, Issue, IssueState, Severity
from codemend.notifications.dispatcher import NotificationDispatcher
from codemend.notifications.events import (
    NotificationEvent,
    applied_event,
    batch_completed_event,
    needs_review_event,
)
from codemend.notifications.sinks import CompositeSink, NotificationSink


class RecordingSink(NotificationSink):
    def __init__(self, delay=0.0):
        self.events = []
        self.delay = delay

    def emit(self, event):
        if self.delay:
            threading.Event().wait(self.delay)
        self.events.append(event)


class FailingSink(NotificationSink):
    def emit(self, event):
        raise RuntimeError("sink down")


def _issue(**overrides):
    values = dict(
        id="issue-1",
        project="proj",
        file_path="mod.py",
        fingerprint="fp",
        pattern_key="pk",
        rule_id="bare-except",
        category=Category.RELIABILITY,
        severity=Severity.MEDIUM,
        message="Bare except",
        line=3,
        state=IssueState.NEEDS_REVIEW,
    )
    values.update(overrides)
    return Issue(**values)


def test_close_delivers_everything_queued():
    sink = RecordingSink(delay=0.01)

    async def scenario():
        dispatcher = NotificationDispatcher(sink)
        dispatcher.start()
        for index in range(5):
            dispatcher.publish(NotificationEvent(event_type="applied", project="proj", payload={"n": index}))
        await dispatcher.close()
        return dispatcher

    dispatcher = asyncio.run(scenario())
    assert [e.payload["n"] for e in sink.events] == [0, 1, 2, 3, 4]
    assert not dispatcher.running


def test_publish_without_start_drops_the_event():
    sink = RecordingSink()
    NotificationDispatcher(sink).publish(NotificationEvent(event_type="applied", project="proj"))
    assert sink.events == []


def test_failing_sink_does_not_stop_delivery():
    recording = RecordingSink()

    async def scenario():
        dispatcher = NotificationDispatcher(CompositeSink([FailingSink(), recording]))
        dispatcher.start()
        dispatcher.publish(NotificationEvent(event_type="applied", project="proj"))
        dispatcher.publish(NotificationEvent(event_type="batch_completed", project="proj"))
        await dispatcher.close()

    asyncio.run(scenario())
    assert [e.event_type for e in recording.events] == ["applied", "batch_completed"]


def test_needs_review_event_carries_history():
    attempts = [
        FixAttempt(issue_id="issue-1", sequence=2, strategy="contextual", outcome=AttemptOutcome.VALIDATION_FAILED),
        FixAttempt(issue_id="issue-1", sequence=1, strategy="pattern_match", outcome=AttemptOutcome.NO_ATTEMPT),
    ]
    event = needs_review_event(_issue(attempts=attempts), reason="exhausted")

    assert event.event_type == "needs_review"
    assert event.payload["reason"] == "exhausted"
    assert [h["strategy"] for h in event.payload["history"]] == ["pattern_match", "contextual"]
    assert event.payload["history"][1]["outcome"] == "validation_failed"


def test_applied_and_batch_events():
    attempt = FixAttempt(issue_id="issue-1", strategy="contextual", calibrated_confidence=0.85)
    event = applied_event(_issue(state=IssueState.MONITORING), attempt)
    assert event.payload["strategy"] == "contextual"
    assert event.payload["confidence"] == 0.85
    assert event.payload["files"] == []

    batch = batch_completed_event("proj", {"applied": 2}, errors=["boom"])
    assert batch.payload == {"applied": 2, "errors": ["boom"]}
