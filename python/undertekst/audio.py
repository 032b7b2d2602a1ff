from __future__ import annotations

import json
import os
import shutil
import subprocess
from pathlib import Path

from .config import WindowConfig
from .models import TimeWindow


def run(cmd: list[str]) -> None:
    subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)


def ffmpeg_bin() -> str:
    return os.environ.get("FFMPEG_BIN", "ffmpeg")


def ffprobe_bin() -> str:
    return os.environ.get("FFPROBE_BIN", "ffprobe")


def plan_windows(
    total_ms: int | None,
    window_ms: int = WindowConfig().window_ms,
    overlap_ms: int = WindowConfig().overlap_ms,
    *,
    min_step_ms: int = WindowConfig().min_step_ms,
) -> list[TimeWindow]:
    window_ms = max(1, int(window_ms))
    overlap_ms = min(max(0, int(overlap_ms)), window_ms - 1)

    if not total_ms or total_ms <= 0:
        # Unknown duration: a single window, the recognizer reads what there is.
        return [TimeWindow(index=0, start_ms=0, duration_ms=window_ms)]

    # Floor capped at window_ms so consecutive windows always touch.
    step_ms = max(window_ms - overlap_ms, min(min_step_ms, window_ms))
    windows: list[TimeWindow] = []
    start = 0
    idx = 0
    while start < total_ms:
        length = max(1, min(window_ms, total_ms - start))
        windows.append(TimeWindow(index=idx, start_ms=start, duration_ms=length))
        idx += 1
        start += step_ms
    return windows


def probe_duration_ms(source: Path) -> int:
    cmd = [
        ffprobe_bin(),
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(source),
    ]
    completed = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    payload = json.loads(completed.stdout.decode("utf-8") or "{}")
    try:
        duration = float(payload.get("format", {}).get("duration", 0) or 0)
    except (TypeError, ValueError):
        duration = 0.0
    # Zero means unknown; the planner degrades to a single window.
    return max(0, round(duration * 1000))


def extract_audio_wav(source: Path, out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    run(
        [
            ffmpeg_bin(),
            "-y",
            "-i",
            str(source),
            "-vn",
            "-ac",
            "1",
            "-ar",
            "16000",
            "-c:a",
            "pcm_s16le",
            str(out_path),
        ]
    )


def render_window(source: Path, out_path: Path, window: TimeWindow) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        ffmpeg_bin(),
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        str(source),
        "-ss",
        f"{window.start_ms / 1000:.3f}",
        "-t",
        f"{max(1, window.duration_ms) / 1000:.3f}",
        "-c",
        "copy",
        str(out_path),
    ]
    run(cmd)


def render_windows(source_wav: Path, window_dir: Path, windows: list[TimeWindow]) -> list[TimeWindow]:
    shutil.rmtree(window_dir, ignore_errors=True)
    window_dir.mkdir(parents=True, exist_ok=True)

    rendered: list[TimeWindow] = []
    for window in windows:
        out_path = window_dir / f"window_{window.index:05d}.wav"
        render_window(source_wav, out_path, window)
        rendered.append(
            TimeWindow(
                index=window.index,
                start_ms=window.start_ms,
                duration_ms=window.duration_ms,
                path=str(out_path),
            )
        )
    return rendered
