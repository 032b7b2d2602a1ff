from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Sequence

from .config import ReconcileConfig
from .models import MergedToken, RecognitionResult, TimeWindow, TranscriptSegment


logger = logging.getLogger(__name__)

SENTENCE_END = {"。", "！", "？", ".", "!", "?", "；", ";", "…", "……"}
ENGLISH_HINTS = {"en", "en-us", "en-gb", "english"}

DEFAULT_CONFIG = ReconcileConfig()


class NoUsableInputError(ValueError):
    """Raised when no window produced anything to reconcile."""


def _normalize_token(token: str) -> str | None:
    trimmed = token.strip()
    if not trimmed:
        return None
    # Recognizer control tokens such as <|en|> or <|EMO_UNKNOWN|>.
    if trimmed.startswith("<|") and trimmed.endswith("|>"):
        return None
    return token


def project_tokens(
    result: RecognitionResult,
    window: TimeWindow,
    config: ReconcileConfig = DEFAULT_CONFIG,
) -> list[tuple[int, str]]:
    """Window-relative (ms, token) pairs for one recognition result.

    Tokens past the end of the timestamp list are kept with timestamps
    extrapolated from the last known one, so text is never dropped.
    """
    if not result.tokens:
        return []

    timestamps = result.timestamps
    base_ms = round(timestamps[-1] * 1000) if timestamps else 0
    projected: list[tuple[int, str]] = []
    prev_ms = 0

    for i, raw_token in enumerate(result.tokens):
        token = _normalize_token(raw_token)
        if token is None:
            continue

        if i < len(timestamps):
            ts_ms = round(float(timestamps[i]) * 1000)
        else:
            extra = i - len(timestamps) + 1
            ts_ms = base_ms + extra * config.extrapolate_step_ms

        ts_ms = max(ts_ms, prev_ms, 0)
        if window.duration_ms > 0:
            ts_ms = min(ts_ms, window.duration_ms)
        prev_ms = ts_ms
        projected.append((ts_ms, token))

    return projected


def place_tokens(
    results: Sequence[RecognitionResult],
    windows: Sequence[TimeWindow],
    config: ReconcileConfig = DEFAULT_CONFIG,
) -> list[MergedToken]:
    total = len(windows)
    placed: list[MergedToken] = []

    for idx, result in enumerate(results):
        if idx >= total:
            break
        window = windows[idx]
        duration = window.duration_ms

        # The first window keeps its leading edge and the last keeps its trailing edge.
        keep_left = 0 if idx == 0 else config.edge_guard_ms
        keep_right = duration if idx + 1 >= total else duration - config.edge_guard_ms
        use_guard = duration > 0 and keep_right > keep_left + config.min_guarded_span_ms

        for rel_ms, token in project_tokens(result, window, config):
            if use_guard and (rel_ms < keep_left or rel_ms > keep_right):
                continue
            margin = min(rel_ms, duration - rel_ms) if duration > 0 else 0
            placed.append(
                MergedToken(
                    global_ts_ms=window.start_ms + rel_ms,
                    text=token,
                    edge_margin_ms=margin,
                )
            )

    return placed


def sort_and_dedupe(tokens: Sequence[MergedToken], config: ReconcileConfig = DEFAULT_CONFIG) -> list[MergedToken]:
    ordered = sorted(tokens, key=lambda tok: (tok.global_ts_ms, -tok.edge_margin_ms))
    kept: list[MergedToken] = []

    for token in ordered:
        if kept:
            last = kept[-1]
            if token.text == last.text and abs(token.global_ts_ms - last.global_ts_ms) <= config.dedupe_window_ms:
                continue
        kept.append(token)

    return kept


def _is_english(language_hint: str | None) -> bool:
    return (language_hint or "").strip().lower() in ENGLISH_HINTS


def segment_tokens(
    tokens: Sequence[MergedToken],
    language_hint: str | None = None,
    config: ReconcileConfig = DEFAULT_CONFIG,
) -> list[TranscriptSegment]:
    if not tokens:
        return []

    # Boundary deletions hurt space-delimited text more, so English splits sooner.
    if _is_english(language_hint):
        gap_threshold, max_chars = config.en_gap_ms, config.en_max_chars
    else:
        gap_threshold, max_chars = config.default_gap_ms, config.default_max_chars

    spans: list[tuple[int, int, str]] = []
    current: list[str] = []
    current_len = 0
    start_ms: int | None = None

    for i, token in enumerate(tokens):
        if start_ms is None:
            start_ms = token.global_ts_ms
        current.append(token.text)
        current_len += len(token.text)

        next_gap = tokens[i + 1].global_ts_ms - token.global_ts_ms if i + 1 < len(tokens) else 0
        should_split = (
            token.text.strip() in SENTENCE_END
            or (next_gap > gap_threshold and current_len >= config.min_split_chars)
            or current_len >= max_chars
        )
        if should_split:
            text = "".join(current).strip()
            if text:
                spans.append((start_ms, token.global_ts_ms, text))
            current = []
            current_len = 0
            start_ms = None

    text = "".join(current).strip()
    if text:
        last_ms = tokens[-1].global_ts_ms
        spans.append((last_ms if start_ms is None else start_ms, last_ms, text))

    return _to_segments(spans)


def _to_segments(spans: Sequence[tuple[int, int, str]]) -> list[TranscriptSegment]:
    segments: list[TranscriptSegment] = []
    for idx, (start_ms, end_ms, text) in enumerate(spans, start=1):
        start_s = round(start_ms / 1000, 3)
        end_s = max(start_s, round(end_ms / 1000, 3))
        segments.append(TranscriptSegment(id=f"seg-{idx}", start_s=start_s, end_s=end_s, text=text))
    return segments


def _fallback_segments(
    results: Sequence[RecognitionResult],
    windows: Sequence[TimeWindow],
) -> list[TranscriptSegment]:
    spans: list[tuple[int, int, str]] = []
    for result, window in zip(results, windows):
        text = result.text.strip()
        if not text:
            continue
        spans.append((window.start_ms, window.end_ms, text))
    return _to_segments(spans)


def merge_window_results(
    results: Sequence[RecognitionResult],
    windows: Sequence[TimeWindow],
    language_hint: str | None = None,
    config: ReconcileConfig = DEFAULT_CONFIG,
) -> list[TranscriptSegment]:
    if not results or not windows:
        raise NoUsableInputError("no recognition results to reconcile")
    if len(results) != len(windows):
        logger.warning("reconcile got %d results for %d windows", len(results), len(windows))

    placed = place_tokens(results, windows, config)
    if not placed:
        # No usable token stream (e.g. no timestamps at all): one segment per window.
        segments = _fallback_segments(results, windows)
        if not segments:
            raise NoUsableInputError("recognizer returned no text for any window")
        logger.info("token stream empty, fell back to %d per-window segments", len(segments))
        return segments

    merged = sort_and_dedupe(placed, config)
    logger.debug("reconciled %d placed tokens into %d", len(placed), len(merged))
    return segment_tokens(merged, language_hint, config)


def language_weights(results: Sequence[RecognitionResult]) -> dict[str, int]:
    weights: dict[str, int] = defaultdict(int)
    for result in results:
        language = result.language.strip()
        if not language or language == "auto":
            continue
        # Non-whitespace characters; tiny windows still count for something.
        weights[language] += max(1, sum(1 for ch in result.text if not ch.isspace()))
    return dict(weights)


def dominant_language(weights: dict[str, int], config: ReconcileConfig = DEFAULT_CONFIG) -> str | None:
    total = sum(weights.values())
    if not weights or total < config.lock_in_min_weight:
        return None

    best_lang, best_weight = max(weights.items(), key=lambda item: item[1])
    if best_weight / total >= config.lock_in_share:
        return best_lang
    return None


def pick_dominant_language(
    results: Sequence[RecognitionResult],
    config: ReconcileConfig = DEFAULT_CONFIG,
) -> str | None:
    return dominant_language(language_weights(results), config)


def build_transcript(
    media_id: str,
    segments: Sequence[TranscriptSegment],
    *,
    language: str | None,
    model: str,
) -> dict[str, Any]:
    word_count = sum(len(seg.text.split()) for seg in segments)
    char_count = sum(1 for seg in segments for ch in seg.text if not ch.isspace())
    return {
        "id": f"trans-{uuid.uuid4().hex[:12]}",
        "mediaId": media_id,
        "language": language or "auto",
        "segments": [seg.to_dict() for seg in segments],
        "wordCount": word_count if word_count > 0 else char_count,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "model": model,
    }
