from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobKind(str, Enum):
    TRANSCRIBE = "transcribe"
    SUBTITLE = "subtitle"


@dataclass(slots=True)
class TimeWindow:
    index: int
    start_ms: int
    duration_ms: int
    path: str | None = None

    @property
    def end_ms(self) -> int:
        return self.start_ms + max(0, self.duration_ms)


@dataclass(frozen=True, slots=True)
class RecognitionResult:
    language: str
    text: str
    tokens: tuple[str, ...] = ()
    # Seconds relative to the window start; may be shorter than tokens.
    timestamps: tuple[float, ...] = ()


@dataclass(slots=True)
class MergedToken:
    global_ts_ms: int
    text: str
    edge_margin_ms: int


@dataclass(slots=True)
class TranscriptSegment:
    id: str
    start_s: float
    end_s: float
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "start": self.start_s, "end": self.end_s, "text": self.text}


@dataclass(slots=True)
class TranslationUnit:
    id: str
    source_text: str
    start_s: float
    end_s: float


@dataclass(frozen=True, slots=True)
class TranslationRange:
    start_index: int
    end_index: int

    @property
    def size(self) -> int:
        return max(0, self.end_index - self.start_index)

    def midpoint(self) -> int:
        return self.start_index + self.size // 2

    def split(self) -> tuple[TranslationRange, TranslationRange] | None:
        mid = self.midpoint()
        if mid <= self.start_index or mid >= self.end_index:
            return None
        return TranslationRange(self.start_index, mid), TranslationRange(mid, self.end_index)


@dataclass(slots=True)
class JobProgressEvent:
    job_id: str
    media_id: str
    job_kind: JobKind
    status: JobStatus
    progress: float
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not JobStatus.RUNNING

    def to_payload(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "media_id": self.media_id,
            "job_kind": self.job_kind.value,
            "status": self.status.value,
            "progress": round(max(0.0, min(1.0, self.progress)), 4),
            "message": self.message,
        }
