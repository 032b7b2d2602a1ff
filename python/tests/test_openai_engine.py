from __future__ import annotations

import sys
import types
from pathlib import Path

import pytest

from undertekst import openai_engine
from undertekst.config import Settings
from undertekst.models import TimeWindow
from undertekst.response_parser import EmptyResponseError


class FakeEndpoint:
    def __init__(self, actions: list[object]):
        self.actions = actions
        self.calls: list[dict[str, object]] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if not self.actions:
            raise RuntimeError("no more actions configured")
        action = self.actions.pop(0)
        if isinstance(action, Exception):
            raise action
        return action


class FakeClient:
    def __init__(self, *, transcriptions: list[object] | None = None, completions: list[object] | None = None):
        self.audio = types.SimpleNamespace(transcriptions=FakeEndpoint(transcriptions or []))
        self.chat = types.SimpleNamespace(completions=FakeEndpoint(completions or []))


def _install_fake_openai(monkeypatch, client: FakeClient) -> list[dict[str, object]]:
    constructed: list[dict[str, object]] = []

    class FakeOpenAIClass:
        def __init__(self, **kwargs):
            constructed.append(kwargs)
            self.audio = client.audio
            self.chat = client.chat

    fake_module = types.SimpleNamespace(OpenAI=FakeOpenAIClass)
    monkeypatch.setitem(sys.modules, "openai", fake_module)
    return constructed


def _window(tmp_path: Path) -> TimeWindow:
    path = tmp_path / "window_00000.wav"
    path.write_bytes(b"fake-audio")
    return TimeWindow(index=0, start_ms=0, duration_ms=45_000, path=str(path))


def _chunk(content: str | None = None, reasoning: str | None = None):
    delta = types.SimpleNamespace(content=content, reasoning_content=reasoning)
    return types.SimpleNamespace(choices=[types.SimpleNamespace(delta=delta)])


SETTINGS = Settings(openai_api_key="test-key")


def test_verbose_json_words_become_tokens(monkeypatch, tmp_path: Path):
    response = {
        "language": "english",
        "text": "Hello there.",
        "words": [
            {"word": "Hello", "start": 0.2, "end": 0.5},
            {"word": " ", "start": 0.5, "end": 0.5},
            {"word": "there.", "start": 0.6, "end": 0.9},
        ],
    }
    client = FakeClient(transcriptions=[response])
    _install_fake_openai(monkeypatch, client)

    result = openai_engine.transcribe_window_openai(_window(tmp_path), language="auto", settings=SETTINGS)

    assert result.tokens == (" Hello", " there.")
    assert result.timestamps == (0.2, 0.6)
    assert result.language == "english"
    call = client.audio.transcriptions.calls[0]
    assert call["response_format"] == "verbose_json"
    assert "language" not in call


def test_segment_timings_used_without_words(monkeypatch, tmp_path: Path):
    response = {
        "text": "Hej med dig. Farvel.",
        "segments": [
            {"start": 0.0, "end": 1.0, "text": " Hej med dig."},
            {"start": 1.2, "end": 2.0, "text": " Farvel."},
        ],
    }
    client = FakeClient(transcriptions=[response])
    _install_fake_openai(monkeypatch, client)

    result = openai_engine.OpenAIRecognizer(SETTINGS).recognize(_window(tmp_path), "da")

    assert result.tokens == (" Hej med dig.", " Farvel.")
    assert result.timestamps == (0.0, 1.2)
    assert result.language == "da"
    assert client.audio.transcriptions.calls[0]["language"] == "da"


def test_transcription_retries_then_succeeds(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(openai_engine.time, "sleep", lambda _seconds: None)
    client = FakeClient(transcriptions=[RuntimeError("The request timed out."), {"text": "ok", "words": []}])
    _install_fake_openai(monkeypatch, client)

    result = openai_engine.transcribe_window_openai(_window(tmp_path), settings=SETTINGS, max_retries=2)

    assert result.text == "ok"
    assert len(client.audio.transcriptions.calls) == 2


def test_transcription_raises_after_retry_exhaustion(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(openai_engine.time, "sleep", lambda _seconds: None)
    client = FakeClient(
        transcriptions=[RuntimeError("The request timed out."), RuntimeError("The request timed out.")]
    )
    _install_fake_openai(monkeypatch, client)

    with pytest.raises(RuntimeError, match="OpenAI transcription failed after 2 attempts"):
        openai_engine.transcribe_window_openai(_window(tmp_path), settings=SETTINGS, max_retries=2)


def test_missing_api_key(monkeypatch, tmp_path: Path):
    _install_fake_openai(monkeypatch, FakeClient())

    with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
        openai_engine.transcribe_window_openai(_window(tmp_path), settings=Settings())


def test_text_generator_concatenates_stream(monkeypatch):
    client = FakeClient(completions=[[_chunk("[[\"a\", "), _chunk(reasoning="thinking"), _chunk("\"x\"]]")]])
    constructed = _install_fake_openai(monkeypatch, client)
    settings = Settings(openai_api_key="test-key", openai_base_url="https://example.invalid/v1")

    text = openai_engine.OpenAITextGenerator(settings)("prompt", 512)

    assert text == '[["a", "x"]]'
    assert constructed == [{"api_key": "test-key", "base_url": "https://example.invalid/v1"}]
    call = client.chat.completions.calls[0]
    assert call["stream"] is True
    assert call["max_tokens"] == 512
    assert call["temperature"] == 0.0
    assert call["messages"][-1] == {"role": "user", "content": "prompt"}


def test_text_generator_falls_back_through_token_params(monkeypatch):
    client = FakeClient(
        completions=[
            RuntimeError("Unrecognized request argument supplied: max_tokens"),
            RuntimeError("Unsupported parameter: 'max_completion_tokens'"),
            [_chunk("done")],
        ]
    )
    _install_fake_openai(monkeypatch, client)

    text = openai_engine.OpenAITextGenerator(SETTINGS)("prompt", 256)

    calls = client.chat.completions.calls
    assert text == "done"
    assert calls[0]["max_tokens"] == 256
    assert calls[1]["max_completion_tokens"] == 256
    assert "max_tokens" not in calls[2] and "max_completion_tokens" not in calls[2]


def test_text_generator_uses_reasoning_when_no_content(monkeypatch):
    _install_fake_openai(monkeypatch, FakeClient(completions=[[_chunk(reasoning='{"id": "a", "text": "x"}')]]))

    assert openai_engine.OpenAITextGenerator(SETTINGS)("prompt", 64) == '{"id": "a", "text": "x"}'


def test_text_generator_empty_stream(monkeypatch):
    _install_fake_openai(monkeypatch, FakeClient(completions=[[_chunk(None), types.SimpleNamespace(choices=[])]]))

    with pytest.raises(EmptyResponseError):
        openai_engine.OpenAITextGenerator(SETTINGS)("prompt", 64)


def test_stalled_stream_is_reported_as_transient(monkeypatch):
    class ReadTimeout(Exception):
        pass

    def stalled():
        yield _chunk("partial")
        raise ReadTimeout("")

    _install_fake_openai(monkeypatch, FakeClient(completions=[stalled()]))

    with pytest.raises(RuntimeError, match="openai stream stalled: timeout"):
        openai_engine.OpenAITextGenerator(SETTINGS)("prompt", 64)


def test_other_errors_are_not_retried_with_other_params(monkeypatch):
    client = FakeClient(completions=[RuntimeError("invalid api key")])
    _install_fake_openai(monkeypatch, client)

    with pytest.raises(RuntimeError, match="invalid api key"):
        openai_engine.OpenAITextGenerator(SETTINGS)("prompt", 64)
    assert len(client.chat.completions.calls) == 1
