from __future__ import annotations

import asyncio
import functools
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence

from .config import TranslationLimits
from .models import TranscriptSegment, TranslationRange, TranslationUnit
from .progress import ProgressReporter
from .response_parser import (
    EmptyResponseError,
    MissingItemsError,
    Pair,
    ResponseParseError,
    ResponseValidationError,
    TranslationError,
    parse_translation_pairs_with_strategy,
    validate_translation_pairs,
)


logger = logging.getLogger(__name__)

TextGenerator = Callable[[str, "int | None"], str]
Sleep = Callable[[float], Awaitable[None]]

TRANSIENT_MARKERS = (
    "429",
    "rate limit",
    "502",
    "503",
    "504",
    "timeout",
    "timed out",
    "temporarily",
    "try again",
    "connection reset",
    "connection error",
    "stream stalled",
)
PROMPT_FORMATS = ("ndjson", "pairs", "object")


class TranslationFailedError(TranslationError):
    """Nothing at all could be translated."""


def is_transient_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def is_truncation_like(exc: BaseException) -> bool:
    return isinstance(exc, (ResponseParseError, ResponseValidationError, MissingItemsError, EmptyResponseError))


def _preview(text: str | None, limit: int) -> str:
    cleaned = (text or "").strip()
    return cleaned[:limit] if cleaned else "unknown error"


def units_from_segments(segments: Iterable[TranscriptSegment | dict[str, Any]]) -> list[TranslationUnit]:
    units: list[TranslationUnit] = []
    seen: set[str] = set()
    for segment in segments:
        if isinstance(segment, TranscriptSegment):
            seg_id, text, start, end = segment.id, segment.text, segment.start_s, segment.end_s
        else:
            seg_id = str(segment.get("id") or "")
            text = str(segment.get("text") or "")
            start = float(segment.get("start") or 0.0)
            end = float(segment.get("end") or start)

        text = text.strip()
        if not text:
            continue
        seg_id = seg_id.strip() or f"seg-{uuid.uuid4().hex[:10]}"
        if seg_id in seen:
            continue
        seen.add(seg_id)
        units.append(TranslationUnit(id=seg_id, source_text=text, start_s=start, end_s=max(start, end)))
    return units


def build_batches(units: Sequence[TranslationUnit], limits: TranslationLimits) -> list[list[TranslationUnit]]:
    batches: list[list[TranslationUnit]] = []
    current: list[TranslationUnit] = []
    current_chars = 0

    for unit in units:
        cost = len(unit.source_text) + limits.item_overhead_chars
        if current and (len(current) >= limits.max_items or current_chars + cost > limits.max_chars):
            batches.append(current)
            current = []
            current_chars = 0
        current.append(unit)
        current_chars += cost

    if current:
        batches.append(current)
    return batches


def language_label(target_lang: str) -> str:
    return "Simplified Chinese" if target_lang.lower().startswith("zh") else target_lang


def build_prompt(output_format: str, target_lang: str, payload: str) -> str:
    label = language_label(target_lang)
    if output_format == "ndjson":
        return (
            f"You are a translation engine. Translate each item to {label}.\n"
            "Output format: JSONL (one JSON object per line).\n"
            'Each line MUST be: {"id":"...","text":"..."}\n'
            "Rules:\n"
            "- Output ONLY JSONL lines. No markdown, no extra text.\n"
            "- Keep ids unchanged. Do NOT add/remove items.\n"
            "- Translate naturally.\n\n"
            f"Input JSON array:\n{payload}\n"
        )
    if output_format == "pairs":
        return (
            f"Translate to {label}. Output ONLY JSON. No markdown.\n"
            'Format: [["id","text"], ...] (array of 2-item arrays).\n'
            "Keep ids unchanged. Do NOT add/remove items.\n\n"
            f"Input:\n{payload}\n"
        )
    if output_format == "object":
        return (
            f"Translate to {label}. Output ONLY JSON object (no markdown).\n"
            'Schema: {"segments":[{"id":string,"text":string}]}\n'
            "Keep ids unchanged. Do NOT add/remove items.\n\n"
            f"Input:\n{payload}\n"
        )
    raise ValueError(f"unknown output format: {output_format}")


async def retry_transient(
    call: Callable[[], Awaitable[str]],
    delays: Sequence[float],
    sleep: Sleep = asyncio.sleep,
) -> str:
    delays = tuple(delays) or (0.0,)
    last_error: Exception | None = None
    for attempt, delay in enumerate(delays, start=1):
        try:
            return await call()
        except Exception as exc:  # noqa: BLE001 - classified below, provider error typing is broad
            if not is_transient_error(exc) or attempt >= len(delays):
                raise
            last_error = exc
            logger.info("transient provider error (attempt %d/%d): %s", attempt, len(delays), exc)
            await sleep(delay)

    if last_error:
        raise last_error
    raise RuntimeError("provider request failed without an error")


@dataclass
class TranslationOutcome:
    order: list[str]
    translations: dict[str, str]
    strategy: str
    last_error: str | None = None
    missing_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.order)

    @property
    def translated(self) -> int:
        return sum(1 for unit_id in self.order if unit_id in self.translations)

    @property
    def coverage(self) -> float:
        return self.translated / max(1, self.total)


class TranslationOrchestrator:
    """Translates units in parallel batches, bisecting any batch that comes back short."""

    def __init__(
        self,
        generate_text: TextGenerator,
        target_lang: str,
        *,
        limits: TranslationLimits | None = None,
        reporter: ProgressReporter | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.generate_text = generate_text
        self.target_lang = target_lang.strip().lower()
        self.limits = limits or TranslationLimits()
        self.reporter = reporter
        self._sleep = sleep
        self._total = 0
        self._translated_ids: set[str] = set()
        self.calls = 0

    @property
    def strategy(self) -> str:
        return f"parallel_auto_split:c{self.limits.concurrency}"

    async def translate(self, units: Sequence[TranslationUnit]) -> TranslationOutcome:
        if not self.target_lang:
            raise TranslationFailedError("target_lang is empty")

        id_to_unit: dict[str, TranslationUnit] = {}
        for unit in units:
            id_to_unit.setdefault(unit.id, unit)
        order = list(id_to_unit)
        if not order:
            raise TranslationFailedError("no usable segments to translate")

        self._total = len(order)
        self._translated_ids = set()
        batches = build_batches(list(id_to_unit.values()), self.limits)
        self._report(0.05, f"translating (batches={len(batches)})", force=True)
        logger.info(
            "translating %d units to %s in %d batches (%s)",
            len(order),
            self.target_lang,
            len(batches),
            self.strategy,
        )

        semaphore = asyncio.Semaphore(max(1, self.limits.concurrency))

        async def run_batch(index: int, batch: list[TranslationUnit]) -> tuple[dict[str, str], str | None]:
            async with semaphore:
                local: dict[str, str] = {}
                err = await self._translate_ids(
                    [unit.id for unit in batch],
                    id_to_unit,
                    local,
                    label=f"batch {index + 1}/{len(batches)}",
                )
                return local, err

        results = await asyncio.gather(*(run_batch(i, batch) for i, batch in enumerate(batches)))

        translations: dict[str, str] = {}
        last_error: str | None = None
        for local, err in results:
            translations.update(local)
            if err:
                last_error = err

        missing = [unit_id for unit_id in order if unit_id not in translations]
        if missing:
            logger.info("repair pass for %d/%d missing translations", len(missing), len(order))
            self._report(0.92, f"repairing missing translations ({len(missing)}/{len(order)})", force=True)
            repair_batches = build_batches([id_to_unit[unit_id] for unit_id in missing], self.limits)
            for index, batch in enumerate(repair_batches):
                err = await self._translate_ids(
                    [unit.id for unit in batch],
                    id_to_unit,
                    translations,
                    label=f"repair {index + 1}/{len(repair_batches)}",
                )
                if err:
                    last_error = err

        outcome = TranslationOutcome(
            order=order,
            translations=translations,
            strategy=self.strategy,
            last_error=last_error,
            missing_ids=[unit_id for unit_id in order if unit_id not in translations],
        )
        if outcome.translated == 0:
            hint = _preview(last_error, self.limits.error_preview_chars)
            raise TranslationFailedError(
                f"translation produced no segments\n\nlast error (first {self.limits.error_preview_chars} chars):\n{hint}"
            )
        if outcome.missing_ids:
            logger.warning(
                "translation shortfall: %d/%d untranslated, last error: %s",
                len(outcome.missing_ids),
                outcome.total,
                _preview(last_error, 200),
            )
        return outcome

    async def _translate_ids(
        self,
        ids: Sequence[str],
        id_to_unit: dict[str, TranslationUnit],
        out_map: dict[str, str],
        *,
        label: str,
    ) -> str | None:
        work: deque[TranslationRange] = deque([TranslationRange(0, len(ids))])
        last_error: str | None = None
        splits = 0
        iterations = 0

        while work:
            iterations += 1
            if iterations > self.limits.max_iterations:
                logger.warning("%s: iteration ceiling (%d) reached", label, self.limits.max_iterations)
                break

            rng = work.popleft()
            end = min(rng.end_index, len(ids))
            if rng.start_index >= end:
                continue
            rng = TranslationRange(rng.start_index, end)

            pending = [
                id_to_unit[unit_id]
                for unit_id in ids[rng.start_index : rng.end_index]
                if unit_id not in out_map and unit_id in id_to_unit
            ]
            if not pending:
                continue

            done = len(self._translated_ids)
            self._report(0.10 + 0.80 * done / max(1, self._total), f"{label} {done}/{self._total}")

            try:
                pairs = await self._translate_batch(pending)
            except Exception as exc:  # noqa: BLE001 - every failure degrades to split or shortfall
                last_error = str(exc)
                if len(pending) > 1 and is_truncation_like(exc):
                    if self._push_split(work, rng, splits, label):
                        splits += 1
                        continue
                logger.warning("%s: %d items left untranslated: %s", label, len(pending), _preview(last_error, 200))
                continue

            requested = {unit.id for unit in pending}
            for unit_id, text in pairs:
                if unit_id in requested:
                    out_map[unit_id] = text
                    self._translated_ids.add(unit_id)

            remaining = sum(1 for unit in pending if unit.id not in out_map)
            if remaining:
                last_error = f"translate output too few items ({remaining} of {len(pending)} missing)"
                if len(pending) > 1 and self._push_split(work, rng, splits, label):
                    splits += 1

        return last_error

    def _push_split(self, work: deque[TranslationRange], rng: TranslationRange, splits: int, label: str) -> bool:
        if splits >= self.limits.max_splits:
            logger.warning("%s: split ceiling (%d) reached", label, self.limits.max_splits)
            return False
        halves = rng.split()
        if halves is None:
            return False
        left, right = halves
        # Earlier half first.
        work.appendleft(right)
        work.appendleft(left)
        logger.debug("%s: split %s into %s + %s", label, rng, left, right)
        return True

    async def _translate_batch(self, pending: Sequence[TranslationUnit]) -> list[Pair]:
        payload = json.dumps([{"id": unit.id, "text": unit.source_text} for unit in pending], ensure_ascii=False)
        requested = {unit.id for unit in pending}
        last_exc: Exception | None = None

        for output_format in PROMPT_FORMATS:
            prompt = build_prompt(output_format, self.target_lang, payload)
            try:
                raw = await retry_transient(
                    functools.partial(self._generate, prompt),
                    self.limits.retry_delays_sec,
                    self._sleep,
                )
            except Exception as exc:  # noqa: BLE001 - next output format
                logger.info("%s request failed for %d items: %s", output_format, len(pending), exc)
                last_exc = exc
                continue

            try:
                strategy, pairs = parse_translation_pairs_with_strategy(raw)
                validate_translation_pairs(pairs, self.target_lang, len(pending))
            except ResponseParseError as exc:
                logger.warning("%s output unparsable for %d items: %s", output_format, len(pending), exc)
                last_exc = exc
                continue
            except ResponseValidationError as exc:
                logger.info("%s output rejected: %s", output_format, exc)
                last_exc = exc
                continue

            if not any(unit_id in requested for unit_id, _text in pairs):
                last_exc = MissingItemsError(f"translate output too few items (0 of {len(pending)} ids matched)")
                continue

            logger.debug("%s output parsed via %s: %d/%d items", output_format, strategy, len(pairs), len(pending))
            return pairs

        raise last_exc or TranslationError("translate failed")

    async def _generate(self, prompt: str) -> str:
        self.calls += 1
        return await asyncio.to_thread(self.generate_text, prompt, self.limits.max_output_tokens)

    def _report(self, progress: float, message: str, *, force: bool = False) -> None:
        if self.reporter is None:
            return
        self.reporter.running(min(progress, 0.95), message, force=force)


def assemble_tracks(
    units: Sequence[TranslationUnit],
    outcome: TranslationOutcome,
    *,
    source_lang: str,
    target_lang: str,
) -> tuple[dict[str, Any], dict[str, Any]]:
    target_lang = target_lang.strip().lower()
    track_id = "zh" if target_lang.startswith("zh") else target_lang
    track_label = "中文" if track_id == "zh" else track_id
    generated_at = datetime.now(timezone.utc).isoformat()

    translated_segments: list[dict[str, Any]] = []
    bilingual_segments: list[dict[str, Any]] = []
    for unit in units:
        # Untranslated units keep their source text, never blank.
        text = outcome.translations.get(unit.id) or unit.source_text
        translated_segments.append({"id": unit.id, "start": unit.start_s, "end": unit.end_s, "text": text})
        bilingual_segments.append(
            {"id": unit.id, "start": unit.start_s, "end": unit.end_s, "text": f"{unit.source_text}\n{text}"}
        )

    translated_track = {
        "id": track_id,
        "label": track_label,
        "language": target_lang,
        "kind": "ai_translate",
        "generatedAt": generated_at,
        "segments": translated_segments,
    }
    bilingual_track = {
        "id": "bilingual",
        "label": "Bilingual",
        "language": f"{source_lang}+{target_lang}",
        "kind": "derived",
        "generatedAt": generated_at,
        "segments": bilingual_segments,
    }
    return translated_track, bilingual_track


def translation_metadata(outcome: TranslationOutcome, target_lang: str) -> dict[str, Any]:
    return {
        "targetLang": target_lang.strip().lower(),
        "strategy": outcome.strategy,
        "totalSegments": outcome.total,
        "translatedSegments": outcome.translated,
        "coverage": outcome.coverage,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
