from __future__ import annotations

import sys
import types

import pytest

from undertekst.local_engine import LocalEngineUnavailableError, LocalWhisperRecognizer
from undertekst.models import TimeWindow
from undertekst.recognition import BackendLatch, BackendState


class FakeModel:
    def __init__(self, device: str, cuda_error: str | None):
        self.device = device
        self.cuda_error = cuda_error

    def transcribe(self, audio, **kwargs):
        if self.device == "cuda" and self.cuda_error:
            raise RuntimeError(self.cuda_error)
        return {
            "language": kwargs.get("language", "en"),
            "segments": [{"text": " hi there", "start": 0.5, "end": 1.0}],
        }


def _install_fakes(monkeypatch, *, cuda_available: bool = True, cuda_error: str | None = None) -> list[str]:
    loaded: list[str] = []

    def load_model(size, device, compute_type):
        loaded.append(device)
        return FakeModel(device, cuda_error)

    def load_align_model(language_code, device):
        raise RuntimeError(f"no align model for {language_code}")

    fake_whisperx = types.SimpleNamespace(
        load_model=load_model,
        load_audio=lambda path: f"audio:{path}",
        load_align_model=load_align_model,
        align=lambda *args, **kwargs: {"segments": []},
    )
    fake_torch = types.SimpleNamespace(cuda=types.SimpleNamespace(is_available=lambda: cuda_available))
    monkeypatch.setitem(sys.modules, "whisperx", fake_whisperx)
    monkeypatch.setitem(sys.modules, "torch", fake_torch)
    return loaded


WINDOW = TimeWindow(index=0, start_ms=0, duration_ms=45_000, path="/tmp/window_00000.wav")


def test_cuda_failure_flips_latch_and_falls_back_to_cpu(monkeypatch):
    loaded = _install_fakes(monkeypatch, cuda_error="libcudnn_ops_infer.so.8: cannot open shared object file")
    latch = BackendLatch()
    recognizer = LocalWhisperRecognizer(latch)

    result = recognizer.recognize(WINDOW, "auto")
    second = recognizer.recognize(WINDOW, "en")

    assert latch.state is BackendState.UNAVAILABLE
    assert loaded == ["cuda", "cpu"]
    assert result.tokens == (" hi there",)
    assert result.timestamps == (0.5,)
    assert result.language == "en"
    assert second.text == "hi there"


def test_working_cuda_marks_latch_available(monkeypatch):
    loaded = _install_fakes(monkeypatch)
    latch = BackendLatch()

    LocalWhisperRecognizer(latch).recognize(WINDOW, "da")

    assert latch.state is BackendState.AVAILABLE
    assert loaded == ["cuda"]


def test_unrelated_errors_propagate(monkeypatch):
    _install_fakes(monkeypatch, cuda_error="out of patience")
    latch = BackendLatch()

    with pytest.raises(RuntimeError, match="out of patience"):
        LocalWhisperRecognizer(latch).recognize(WINDOW, "en")
    assert latch.state is BackendState.UNTESTED


def test_missing_whisperx_is_reported(monkeypatch):
    monkeypatch.setitem(sys.modules, "whisperx", None)

    with pytest.raises(LocalEngineUnavailableError):
        LocalWhisperRecognizer().recognize(WINDOW, "en")
