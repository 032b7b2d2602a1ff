from __future__ import annotations

import os
import re
from pathlib import Path

APP_NAME = "Undertekst"

_MEDIA_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def app_data_dir() -> Path:
    configured = os.environ.get("APP_DATA_DIR", "").strip()
    if configured:
        base = Path(configured).expanduser()
    else:
        base = Path.home() / ".local" / "share" / APP_NAME.lower()
    base.mkdir(parents=True, exist_ok=True)
    return base


def validate_media_id(media_id: str) -> str:
    media_id = (media_id or "").strip()
    if not _MEDIA_ID_RE.match(media_id):
        raise ValueError(f"invalid media id: {media_id!r}")
    return media_id


def media_root() -> Path:
    path = app_data_dir() / "media"
    path.mkdir(parents=True, exist_ok=True)
    return path


def media_dir(media_id: str) -> Path:
    path = media_root() / validate_media_id(media_id)
    path.mkdir(parents=True, exist_ok=True)
    return path


def windows_dir(media_id: str) -> Path:
    path = media_dir(media_id) / "windows"
    path.mkdir(parents=True, exist_ok=True)
    return path


def transcription_path(media_id: str) -> Path:
    return media_dir(media_id) / "transcription.json"


def subtitles_path(media_id: str) -> Path:
    return media_dir(media_id) / "subtitles.json"
