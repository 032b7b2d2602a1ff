from __future__ import annotations

import logging
from typing import Any

from .models import RecognitionResult, TimeWindow
from .recognition import BackendLatch


logger = logging.getLogger(__name__)

LOCAL_MODEL = "large-v3"
CUDA_FAILURE_MARKERS = ("cuda", "cudnn", "cublas", "libcu", "nvidia")


class LocalEngineUnavailableError(RuntimeError):
    pass


def looks_like_cuda_failure(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in CUDA_FAILURE_MARKERS)


def _import_whisperx() -> Any:
    try:
        import whisperx
    except ImportError as exc:  # pragma: no cover - env dependent
        raise LocalEngineUnavailableError(
            "whisperx is not installed (the local engine is optional). "
            "Install the 'local' extra to use it."
        ) from exc
    return whisperx


def _cuda_available() -> bool:
    try:
        import torch
    except ImportError as exc:  # pragma: no cover - env dependent
        raise LocalEngineUnavailableError("torch is missing, install the 'local' extra") from exc
    return bool(torch.cuda.is_available())


def _word_tokens(segments: list[dict[str, Any]]) -> tuple[list[str], list[float]]:
    tokens: list[str] = []
    timestamps: list[float] = []
    for segment in segments:
        words = segment.get("words")
        if isinstance(words, list) and words:
            for word in words:
                if not isinstance(word, dict):
                    continue
                text = str(word.get("word") or "").strip()
                if not text:
                    continue
                try:
                    start = float(word.get("start", segment.get("start", 0.0)))
                except (TypeError, ValueError):
                    start = 0.0
                tokens.append(f" {text}")
                timestamps.append(max(0.0, start))
            continue

        # Alignment unavailable for this language: fall back to segment timing.
        text = str(segment.get("text") or "").strip()
        if not text:
            continue
        try:
            start = float(segment.get("start", 0.0))
        except (TypeError, ValueError):
            start = 0.0
        tokens.append(f" {text}")
        timestamps.append(max(0.0, start))
    return tokens, timestamps


class LocalWhisperRecognizer:
    """whisperx on the local machine, CUDA first while the latch allows it."""

    model_name = f"whisperx-{LOCAL_MODEL}"

    def __init__(self, latch: BackendLatch | None = None, *, model_size: str = LOCAL_MODEL) -> None:
        self.latch = latch or BackendLatch()
        self.model_size = model_size
        self._models: dict[str, Any] = {}

    def _model(self, whisperx: Any, device: str) -> Any:
        model = self._models.get(device)
        if model is None:
            compute_type = "float16" if device == "cuda" else "int8"
            model = whisperx.load_model(self.model_size, device, compute_type=compute_type)
            self._models[device] = model
        return model

    def recognize(self, window: TimeWindow, language: str) -> RecognitionResult:
        if not window.path:
            raise ValueError(f"window {window.index} has not been rendered")

        whisperx = _import_whisperx()
        if self.latch.should_try() and _cuda_available():
            try:
                result = self._run(whisperx, "cuda", window, language)
            except Exception as exc:  # noqa: BLE001 - only accelerator load failures are handled
                if not looks_like_cuda_failure(exc):
                    raise
                if self.latch.mark_unavailable():
                    logger.warning("CUDA backend unavailable, using CPU from now on: %s", exc)
                self._models.pop("cuda", None)
            else:
                self.latch.mark_available()
                return result

        return self._run(whisperx, "cpu", window, language)

    def _run(self, whisperx: Any, device: str, window: TimeWindow, language: str) -> RecognitionResult:
        model = self._model(whisperx, device)
        audio = whisperx.load_audio(str(window.path))
        kwargs = {"language": language} if language and language != "auto" else {}
        transcription = model.transcribe(audio, **kwargs)
        detected = str(transcription.get("language") or kwargs.get("language") or "")
        segments = transcription.get("segments", [])

        if detected:
            try:
                align_model, metadata = whisperx.load_align_model(language_code=detected, device=device)
                aligned = whisperx.align(
                    segments,
                    align_model,
                    metadata,
                    audio,
                    device,
                    return_char_alignments=False,
                )
                segments = aligned.get("segments", segments)
            except Exception as exc:  # noqa: BLE001 - alignment is optional
                logger.debug("alignment skipped for %s: %s", detected, exc)

        tokens, timestamps = _word_tokens(segments)
        text = " ".join(str(seg.get("text") or "").strip() for seg in segments).strip()
        return RecognitionResult(language=detected, text=text, tokens=tuple(tokens), timestamps=tuple(timestamps))
