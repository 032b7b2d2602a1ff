from __future__ import annotations

from undertekst.models import JobKind, JobProgressEvent, RecognitionResult, TimeWindow
from undertekst.progress import ProgressReporter
from undertekst.recognition import BackendLatch, BackendState, transcribe_windows


class FakeRecognizer:
    model_name = "fake"

    def __init__(self, declared: list[tuple[str, str]]):
        # One (language, text) per window for the auto-detect pass.
        self.declared = declared
        self.calls: list[tuple[int, str]] = []

    def recognize(self, window: TimeWindow, language: str) -> RecognitionResult:
        self.calls.append((window.index, language))
        detected, text = self.declared[window.index]
        if language != "auto":
            detected = language
        return RecognitionResult(
            language=detected,
            text=text,
            tokens=(f" {text}.",),
            timestamps=(10.0,),
        )


WINDOWS = [
    TimeWindow(index=0, start_ms=0, duration_ms=45_000),
    TimeWindow(index=1, start_ms=37_000, duration_ms=45_000),
]


def test_dominant_language_reruns_recognition_pinned():
    recognizer = FakeRecognizer([("en", "a" * 950), ("zh", "中" * 50)])

    outcome = transcribe_windows(WINDOWS, recognizer, "auto")

    assert recognizer.calls == [(0, "auto"), (1, "auto"), (0, "en"), (1, "en")]
    assert outcome.passes == 2
    assert outcome.pinned_language == "en"
    assert outcome.language == "en"
    assert {result.language for result in outcome.results} == {"en"}


def test_mixed_languages_keep_single_pass():
    recognizer = FakeRecognizer([("en", "a" * 600), ("zh", "中" * 400)])

    outcome = transcribe_windows(WINDOWS, recognizer, "auto")

    assert len(recognizer.calls) == 2
    assert outcome.passes == 1
    assert outcome.pinned_language is None
    assert outcome.language == "en"
    assert len(outcome.segments) == 2


def test_explicit_language_is_never_overridden():
    recognizer = FakeRecognizer([("en", "a" * 950), ("en", "b" * 950)])

    outcome = transcribe_windows(WINDOWS, recognizer, "da")

    assert recognizer.calls == [(0, "da"), (1, "da")]
    assert outcome.passes == 1
    assert outcome.language == "da"


def test_lock_in_requotes_progress():
    events: list[JobProgressEvent] = []
    reporter = ProgressReporter(
        events.append,
        job_id="job-1",
        media_id="media-1",
        job_kind=JobKind.TRANSCRIBE,
        clock=lambda: 0.0,
    )
    recognizer = FakeRecognizer([("en", "a" * 500), ("en", "b" * 500)])

    transcribe_windows(WINDOWS, recognizer, "auto", reporter)

    requotes = [event for event in events if (event.message or "").startswith("language locked to en")]
    assert len(requotes) == 1
    assert requotes[0].progress == 0.10
    assert not reporter.finished


def test_backend_latch_is_one_way():
    latch = BackendLatch()
    assert latch.state is BackendState.UNTESTED
    assert latch.should_try()

    latch.mark_available()
    assert latch.state is BackendState.AVAILABLE

    assert latch.mark_unavailable() is True
    assert latch.mark_unavailable() is False
    latch.mark_available()
    assert latch.state is BackendState.UNAVAILABLE
    assert not latch.should_try()


def test_latches_are_independent():
    first, second = BackendLatch(), BackendLatch()
    first.mark_unavailable()

    assert second.should_try()
