from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import Protocol, Sequence

from .config import ReconcileConfig
from .models import RecognitionResult, TimeWindow, TranscriptSegment
from .progress import ProgressReporter, ProgressSpan
from .reconcile import DEFAULT_CONFIG, language_weights, dominant_language, merge_window_results


logger = logging.getLogger(__name__)

AUTO_LANGUAGE = "auto"


class BackendState(str, enum.Enum):
    UNTESTED = "untested"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


class BackendLatch:
    """Remembers whether an accelerated backend works in this process.

    Once marked unavailable it stays unavailable.
    """

    def __init__(self, state: BackendState = BackendState.UNTESTED) -> None:
        self._state = state
        self._lock = threading.Lock()

    @property
    def state(self) -> BackendState:
        with self._lock:
            return self._state

    def should_try(self) -> bool:
        return self.state is not BackendState.UNAVAILABLE

    def mark_available(self) -> None:
        with self._lock:
            if self._state is BackendState.UNTESTED:
                self._state = BackendState.AVAILABLE

    def mark_unavailable(self) -> bool:
        """Returns True only for the call that flipped the latch."""
        with self._lock:
            if self._state is BackendState.UNAVAILABLE:
                return False
            self._state = BackendState.UNAVAILABLE
            return True


class Recognizer(Protocol):
    model_name: str

    def recognize(self, window: TimeWindow, language: str) -> RecognitionResult: ...


@dataclass(slots=True)
class TranscriptionOutcome:
    segments: list[TranscriptSegment]
    language: str
    pinned_language: str | None
    passes: int
    results: list[RecognitionResult]


def is_auto(language: str | None) -> bool:
    return not language or language.strip().lower() == AUTO_LANGUAGE


def recognize_windows(
    windows: Sequence[TimeWindow],
    recognizer: Recognizer,
    language: str,
    span: ProgressSpan | None = None,
) -> list[RecognitionResult]:
    results: list[RecognitionResult] = []
    total = len(windows)
    for done, window in enumerate(windows):
        if span is not None:
            span.report(done / max(1, total), f"recognizing {done + 1}/{total}")
        result = recognizer.recognize(window, language)
        logger.debug(
            "window %d (%d+%d ms): %d tokens, language=%s",
            window.index,
            window.start_ms,
            window.duration_ms,
            len(result.tokens),
            result.language or "?",
        )
        results.append(result)
    if span is not None:
        span.report(1.0, f"recognized {total}/{total}")
    return results


def _declared_language(results: Sequence[RecognitionResult]) -> str | None:
    for result in results:
        language = result.language.strip()
        if language and not is_auto(language):
            return language
    return None


def transcribe_windows(
    windows: Sequence[TimeWindow],
    recognizer: Recognizer,
    language: str = AUTO_LANGUAGE,
    reporter: ProgressReporter | None = None,
    config: ReconcileConfig | None = None,
    *,
    start: float = 0.10,
    end: float = 0.85,
) -> TranscriptionOutcome:
    config = config or DEFAULT_CONFIG
    requested = (language or AUTO_LANGUAGE).strip() or AUTO_LANGUAGE
    span = reporter.span(start, end) if reporter is not None else None

    results = recognize_windows(windows, recognizer, requested, span)
    passes = 1
    pinned: str | None = None

    if is_auto(requested):
        weights = language_weights(results)
        pinned = dominant_language(weights, config)
        if pinned is not None:
            logger.info("dominant language %s (weights %s), re-running recognition pinned", pinned, weights)
            if reporter is not None:
                reporter.running(start, f"language locked to {pinned}, re-running recognition", force=True)
            results = recognize_windows(windows, recognizer, pinned, span)
            passes = 2

    if pinned is not None:
        effective = pinned
    elif not is_auto(requested):
        effective = requested
    else:
        effective = _declared_language(results) or AUTO_LANGUAGE

    segments = merge_window_results(results, windows, effective, config)
    logger.info("reconciled %d windows into %d segments (language=%s)", len(windows), len(segments), effective)
    return TranscriptionOutcome(
        segments=segments,
        language=effective,
        pinned_language=pinned,
        passes=passes,
        results=results,
    )
