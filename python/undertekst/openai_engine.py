from __future__ import annotations

import logging
import random
import time
from pathlib import Path
from typing import Any

from .config import Settings, load_settings
from .models import RecognitionResult, TimeWindow
from .response_parser import EmptyResponseError


logger = logging.getLogger(__name__)

TEXT_MODEL = "whisper-1"
TOKEN_LIMIT_PARAMS = ("max_tokens", "max_completion_tokens", None)
DEFAULT_SYSTEM_PROMPT = "You are a translation engine. Follow the requested output format exactly. Output ONLY JSON."


def _to_dict(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()  # pydantic style
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


def _get(value: Any, key: str, default: Any = None) -> Any:
    if isinstance(value, dict):
        return value.get(key, default)
    return getattr(value, key, default)


def _client(settings: Settings) -> Any:
    try:
        from openai import OpenAI
    except ImportError as exc:  # pragma: no cover - env dependent
        raise RuntimeError("the openai package is missing, install the project dependencies") from exc

    api_key = settings.openai_api_key.strip()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is missing")

    kwargs: dict[str, Any] = {"api_key": api_key}
    if settings.openai_base_url:
        kwargs["base_url"] = settings.openai_base_url
    return OpenAI(**kwargs)


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def result_from_verbose_json(payload: dict[str, Any], requested_language: str) -> RecognitionResult:
    text = str(payload.get("text") or "").strip()
    language = str(payload.get("language") or "").strip()
    if not language and requested_language != "auto":
        language = requested_language

    tokens: list[str] = []
    timestamps: list[float] = []
    words = payload.get("words") or []
    for raw in words:
        if not isinstance(raw, dict):
            raw = _to_dict(raw)
        word = str(raw.get("word") or "").strip()
        if not word:
            continue
        tokens.append(f" {word}")
        timestamps.append(max(0.0, _as_float(raw.get("start"))))

    if not tokens:
        # Providers without word granularity still return segment timings.
        for raw in payload.get("segments") or []:
            if not isinstance(raw, dict):
                raw = _to_dict(raw)
            segment_text = str(raw.get("text") or "").strip()
            if not segment_text:
                continue
            tokens.append(f" {segment_text}")
            timestamps.append(max(0.0, _as_float(raw.get("start"))))

    return RecognitionResult(language=language, text=text, tokens=tuple(tokens), timestamps=tuple(timestamps))


def transcribe_window_openai(
    window: TimeWindow,
    *,
    language: str = "auto",
    settings: Settings | None = None,
    max_retries: int = 5,
) -> RecognitionResult:
    if not window.path:
        raise ValueError(f"window {window.index} has not been rendered")

    settings = settings or load_settings()
    client = _client(settings)
    window_path = Path(window.path)
    backoff = 1.0
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 1):
        try:
            request: dict[str, Any] = {
                "model": TEXT_MODEL,
                "response_format": "verbose_json",
                "timestamp_granularities": ["word", "segment"],
                "timeout": settings.request_timeout_sec,
            }
            if language and language != "auto":
                request["language"] = language
            with window_path.open("rb") as audio_file:
                response = client.audio.transcriptions.create(file=audio_file, **request)
            return result_from_verbose_json(_to_dict(response), language)
        except Exception as exc:  # noqa: BLE001 - retry on provider errors
            last_error = exc
            if attempt >= max_retries:
                break
            logger.info("window %d transcription failed (attempt %d/%d): %s", window.index, attempt, max_retries, exc)
            jitter = random.uniform(0.05, 0.4)
            time.sleep(backoff + jitter)
            backoff = min(backoff * 2, 12.0)

    raise RuntimeError(f"OpenAI transcription failed after {max_retries} attempts: {last_error}")


class OpenAIRecognizer:
    model_name = TEXT_MODEL

    def __init__(self, settings: Settings | None = None, *, max_retries: int = 5) -> None:
        self.settings = settings or load_settings()
        self.max_retries = max_retries

    def recognize(self, window: TimeWindow, language: str) -> RecognitionResult:
        return transcribe_window_openai(
            window,
            language=language,
            settings=self.settings,
            max_retries=self.max_retries,
        )


def _is_unknown_token_param(exc: Exception) -> bool:
    message = str(exc).lower()
    mentions_param = "max_tokens" in message or "max_completion_tokens" in message
    rejected = any(word in message for word in ("unknown", "unrecognized", "unexpected", "unsupported"))
    return mentions_param and rejected


def _is_timeout(exc: Exception) -> bool:
    if "timeout" in type(exc).__name__.lower():
        return True
    message = str(exc).lower()
    return "timed out" in message or "timeout" in message


class OpenAITextGenerator:
    """Streams one chat completion and returns its text."""

    def __init__(self, settings: Settings | None = None, *, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self.settings = settings or load_settings()
        self.system_prompt = system_prompt
        self._client: Any = None

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _client(self.settings)
        return self._client

    def __call__(self, prompt: str, max_output_tokens: int | None = None) -> str:
        last_error: Exception | None = None
        params = TOKEN_LIMIT_PARAMS if max_output_tokens else (None,)

        for token_param in params:
            try:
                return self._complete(prompt, token_param, max_output_tokens)
            except Exception as exc:  # noqa: BLE001 - provider error typing is broad
                last_error = exc
                if token_param is not None and _is_unknown_token_param(exc):
                    logger.info("provider rejected %s, retrying without it", token_param)
                    continue
                raise

        if last_error:
            raise last_error
        raise RuntimeError("openai request failed")

    def _complete(self, prompt: str, token_param: str | None, max_output_tokens: int | None) -> str:
        request: dict[str, Any] = {
            "model": self.settings.chat_model,
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.0,
            "stream": True,
            # Per-read timeout, so a silent stream fails instead of hanging.
            "timeout": self.settings.stream_idle_timeout_sec,
        }
        if token_param is not None:
            request[token_param] = max_output_tokens

        content: list[str] = []
        reasoning: list[str] = []
        try:
            stream = self.client.chat.completions.create(**request)
            for chunk in stream:
                choices = _get(chunk, "choices") or []
                if not choices:
                    continue
                delta = _get(choices[0], "delta")
                if delta is None:
                    continue
                piece = _get(delta, "content")
                if piece:
                    content.append(piece)
                # Reasoning stays separate so it cannot corrupt JSON-only output.
                thought = _get(delta, "reasoning_content")
                if thought:
                    reasoning.append(thought)
        except Exception as exc:  # noqa: BLE001 - normalized for retry classification
            if _is_timeout(exc):
                raise RuntimeError("openai stream stalled: timeout") from exc
            raise

        text = "".join(content)
        if text.strip():
            return text
        fallback = "".join(reasoning)
        if fallback.strip():
            logger.debug("stream carried only reasoning content, using it")
            return fallback
        raise EmptyResponseError("openai event-stream returned no content")
