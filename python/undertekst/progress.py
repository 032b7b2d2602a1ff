from __future__ import annotations

import json
import logging
import time
from typing import Callable

from .models import JobKind, JobProgressEvent, JobStatus


logger = logging.getLogger(__name__)

ProgressSink = Callable[[JobProgressEvent], None]

MAX_MESSAGE_CHARS = 400


def stdout_sink(event: JobProgressEvent) -> None:
    print(json.dumps({"type": "progress", "payload": event.to_payload()}, ensure_ascii=False), flush=True)


class ProgressReporter:
    """Best-effort, throttled progress notifications for one job.

    Emission never raises: a failing sink is logged and ignored so the
    underlying work carries on.
    """

    def __init__(
        self,
        sink: ProgressSink | None,
        *,
        job_id: str,
        media_id: str,
        job_kind: JobKind,
        min_interval_s: float = 0.35,
        min_delta: float = 0.01,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.job_id = job_id
        self.media_id = media_id
        self.job_kind = job_kind
        self.min_interval_s = min_interval_s
        self.min_delta = min_delta
        self._clock = clock
        self._last_progress: float | None = None
        self._last_emit_at: float | None = None
        self._terminal: JobStatus | None = None
        self.emitted: int = 0

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    def running(self, progress: float, message: str | None = None, *, force: bool = False) -> bool:
        if self._terminal is not None:
            return False

        progress = max(0.0, min(progress, 0.999))
        now = self._clock()
        if not force and self._last_progress is not None and self._last_emit_at is not None:
            too_soon = (now - self._last_emit_at) < self.min_interval_s
            too_small = abs(progress - self._last_progress) < self.min_delta
            if too_soon or too_small:
                return False

        self._last_progress = progress
        self._last_emit_at = now
        return self._deliver(JobStatus.RUNNING, progress, message)

    def succeeded(self, message: str | None = None) -> bool:
        return self._finish(JobStatus.SUCCEEDED, message)

    def failed(self, message: str) -> bool:
        return self._finish(JobStatus.FAILED, message)

    def span(self, start: float, end: float) -> ProgressSpan:
        return ProgressSpan(self, start, end)

    def _finish(self, status: JobStatus, message: str | None) -> bool:
        if self._terminal is not None:
            return False
        self._terminal = status
        return self._deliver(status, 1.0, message)

    def _deliver(self, status: JobStatus, progress: float, message: str | None) -> bool:
        if message is not None and len(message) > MAX_MESSAGE_CHARS:
            message = message[:MAX_MESSAGE_CHARS]
        event = JobProgressEvent(
            job_id=self.job_id,
            media_id=self.media_id,
            job_kind=self.job_kind,
            status=status,
            progress=progress,
            message=message,
        )
        if event.is_terminal:
            logger.info("job %s %s: %s", self.job_id, status.value, message or "")
        if self.sink is None:
            return False
        try:
            self.sink(event)
        except Exception:  # noqa: BLE001 - notification is best-effort
            logger.debug("progress sink failed for job %s", self.job_id, exc_info=True)
            return False
        self.emitted += 1
        return True


class ProgressSpan:
    """Maps a 0..1 fraction of a sub-task onto [start, end] of the job."""

    def __init__(self, reporter: ProgressReporter | None, start: float, end: float) -> None:
        self.reporter = reporter
        self.start = start
        self.end = max(start, end)

    def at(self, fraction: float) -> float:
        fraction = max(0.0, min(1.0, fraction))
        return self.start + (self.end - self.start) * fraction

    def report(self, fraction: float, message: str | None = None, *, force: bool = False) -> None:
        if self.reporter is None:
            return
        self.reporter.running(self.at(fraction), message, force=force)
