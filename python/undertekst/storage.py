from __future__ import annotations

import json
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from .paths import subtitles_path, transcription_path

SUBTITLES_VERSION = 1
ORIGINAL_TRACK_ID = "original"


class StorageError(RuntimeError):
    pass


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def read_json(path: Path) -> dict[str, Any] | None:
    if not path.is_file():
        return None
    try:
        value = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise StorageError(f"parse {path.name} failed: {exc}") from exc
    return value if isinstance(value, dict) else None


def _segments_from_transcription(raw_segments: Any) -> list[dict[str, Any]]:
    segments: list[dict[str, Any]] = []
    if not isinstance(raw_segments, list):
        return segments

    for raw in raw_segments:
        if not isinstance(raw, dict):
            continue
        text = str(raw.get("text") or "").strip()
        if not text:
            continue
        seg_id = str(raw.get("id") or "").strip() or f"seg-{uuid.uuid4().hex[:10]}"
        try:
            start = float(raw.get("start") or 0.0)
        except (TypeError, ValueError):
            start = 0.0
        try:
            end = float(raw.get("end") if raw.get("end") is not None else start)
        except (TypeError, ValueError):
            end = start
        segments.append({"id": seg_id, "start": start, "end": max(start, end), "text": text})
    return segments


def build_subtitles_from_transcription(media_id: str, transcription: dict[str, Any]) -> dict[str, Any]:
    language = str(transcription.get("language") or "").strip()
    return {
        "version": SUBTITLES_VERSION,
        "mediaId": media_id,
        "generatedAt": now_iso(),
        "tracks": [
            {
                "id": ORIGINAL_TRACK_ID,
                "label": "Original",
                "language": language,
                "kind": "transcription",
                "segments": _segments_from_transcription(transcription.get("segments")),
            }
        ],
    }


def get_track(document: dict[str, Any], track_id: str) -> dict[str, Any] | None:
    for track in document.get("tracks") or []:
        if isinstance(track, dict) and track.get("id") == track_id:
            return track
    return None


def upsert_track(document: dict[str, Any], track: dict[str, Any]) -> None:
    track_id = str(track.get("id") or "").strip()
    if not track_id:
        return
    tracks = document.get("tracks")
    if not isinstance(tracks, list):
        document["tracks"] = [track]
        return
    for idx, existing in enumerate(tracks):
        if isinstance(existing, dict) and existing.get("id") == track_id:
            tracks[idx] = track
            return
    tracks.append(track)


def apply_translation(
    document: dict[str, Any],
    tracks: Sequence[dict[str, Any]],
    metadata: dict[str, Any],
) -> dict[str, Any]:
    for track in tracks:
        upsert_track(document, track)
    document["translation"] = metadata
    return document


def save_transcription(media_id: str, transcript: dict[str, Any]) -> Path:
    path = transcription_path(media_id)
    atomic_write_json(path, transcript)
    return path


def load_subtitles(media_id: str) -> dict[str, Any] | None:
    return read_json(subtitles_path(media_id))


def save_subtitles(media_id: str, document: dict[str, Any]) -> Path:
    path = subtitles_path(media_id)
    atomic_write_json(path, document)
    return path


def ensure_subtitles(media_id: str) -> dict[str, Any]:
    existing = load_subtitles(media_id)
    if existing is not None:
        return existing

    transcription = read_json(transcription_path(media_id))
    if transcription is None:
        raise StorageError("no transcription found")

    document = build_subtitles_from_transcription(media_id, transcription)
    save_subtitles(media_id, document)
    return document
