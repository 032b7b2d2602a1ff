from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping


class ConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class WindowConfig:
    window_ms: int = 45_000
    # Exceeds 2 * edge guard, so every moment is decoded once away from a window edge.
    overlap_ms: int = 8_000
    min_step_ms: int = 1_000


@dataclass(frozen=True, slots=True)
class ReconcileConfig:
    edge_guard_ms: int = 2_500
    min_guarded_span_ms: int = 500
    extrapolate_step_ms: int = 50
    dedupe_window_ms: int = 120
    min_split_chars: int = 16
    en_gap_ms: int = 700
    en_max_chars: int = 110
    default_gap_ms: int = 1_200
    default_max_chars: int = 140
    lock_in_share: float = 0.80
    lock_in_min_weight: int = 80


@dataclass(frozen=True, slots=True)
class TranslationLimits:
    max_items: int = 140
    max_chars: int = 14_000
    item_overhead_chars: int = 32
    concurrency: int = 4
    max_splits: int = 512
    max_iterations: int = 2_048
    retry_delays_sec: tuple[float, ...] = (0.35, 0.9, 1.7)
    max_output_tokens: int = 8_192
    error_preview_chars: int = 380


@dataclass(frozen=True, slots=True)
class Settings:
    openai_api_key: str = ""
    openai_base_url: str | None = None
    chat_model: str = "gpt-4o-mini"
    request_timeout_sec: float = 600.0
    stream_idle_timeout_sec: float = 60.0
    windows: WindowConfig = field(default_factory=WindowConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    translation: TranslationLimits = field(default_factory=TranslationLimits)


def _read_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return value


def _read_int(env: Mapping[str, str], key: str, default: int, *, allow_zero: bool = False) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    defaults = Settings()

    window_ms = _read_int(env, "UNDERTEKST_WINDOW_MS", defaults.windows.window_ms)
    overlap_ms = _read_int(env, "UNDERTEKST_OVERLAP_MS", defaults.windows.overlap_ms, allow_zero=True)
    if overlap_ms >= window_ms:
        raise ConfigError("UNDERTEKST_OVERLAP_MS must be smaller than UNDERTEKST_WINDOW_MS")

    limits = defaults.translation
    translation = TranslationLimits(
        max_items=_read_int(env, "UNDERTEKST_BATCH_MAX_ITEMS", limits.max_items),
        max_chars=_read_int(env, "UNDERTEKST_BATCH_MAX_CHARS", limits.max_chars),
        concurrency=_read_int(env, "UNDERTEKST_TRANSLATE_CONCURRENCY", limits.concurrency),
        max_output_tokens=_read_int(env, "UNDERTEKST_MAX_OUTPUT_TOKENS", limits.max_output_tokens),
    )

    base_url = env.get("OPENAI_BASE_URL", "").strip().rstrip("/")
    return Settings(
        openai_api_key=env.get("OPENAI_API_KEY", "").strip(),
        openai_base_url=base_url or None,
        chat_model=env.get("UNDERTEKST_CHAT_MODEL", "").strip() or defaults.chat_model,
        request_timeout_sec=_read_float(env, "OPENAI_REQUEST_TIMEOUT_SEC", defaults.request_timeout_sec),
        stream_idle_timeout_sec=_read_float(env, "UNDERTEKST_STREAM_IDLE_SEC", defaults.stream_idle_timeout_sec),
        windows=WindowConfig(window_ms=window_ms, overlap_ms=overlap_ms),
        translation=translation,
    )
