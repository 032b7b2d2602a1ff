#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from uuid import uuid4

# Ensure local package is importable when running from source and packaged app resources.
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from undertekst.audio import extract_audio_wav, plan_windows, probe_duration_ms, render_windows
from undertekst.config import ConfigError, load_settings
from undertekst.local_engine import LocalWhisperRecognizer
from undertekst.models import JobKind
from undertekst.openai_engine import OpenAIRecognizer, OpenAITextGenerator
from undertekst.paths import media_dir, validate_media_id, windows_dir
from undertekst.progress import ProgressReporter, stdout_sink
from undertekst.reconcile import build_transcript
from undertekst.recognition import BackendLatch, transcribe_windows
from undertekst.storage import (
    ORIGINAL_TRACK_ID,
    apply_translation,
    build_subtitles_from_transcription,
    ensure_subtitles,
    get_track,
    save_subtitles,
    save_transcription,
)
from undertekst.translation import (
    TranslationOrchestrator,
    assemble_tracks,
    translation_metadata,
    units_from_segments,
)


logger = logging.getLogger("undertekst.worker")

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s:%(lineno)d] - %(message)s"


def configure_logging(verbose: bool) -> None:
    # stdout carries the JSON event stream.
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def emit(event_type: str, payload: object) -> None:
    print(json.dumps({"type": event_type, "payload": payload}, ensure_ascii=False), flush=True)


def _fail(reporter: ProgressReporter, media_id: str, message: str) -> int:
    reporter.failed(message)
    emit("error", {"mediaId": media_id, "message": message})
    return 1


def command_transcribe(args: argparse.Namespace) -> int:
    job_id = str(uuid4())
    reporter = ProgressReporter(stdout_sink, job_id=job_id, media_id=args.media_id, job_kind=JobKind.TRANSCRIBE)

    try:
        media_id = validate_media_id(args.media_id)
        settings = load_settings()
    except (ValueError, ConfigError) as exc:
        return _fail(reporter, args.media_id, str(exc))

    source_path = Path(args.source).expanduser().resolve()
    if not source_path.exists():
        return _fail(reporter, media_id, f"source file not found: {source_path}")

    if args.engine == "local":
        recognizer = LocalWhisperRecognizer(BackendLatch())
    else:
        recognizer = OpenAIRecognizer(settings)

    try:
        reporter.running(0.02, "extracting audio", force=True)
        audio_path = media_dir(media_id) / "audio.wav"
        extract_audio_wav(source_path, audio_path)

        duration_ms = probe_duration_ms(audio_path)
        windows = plan_windows(
            duration_ms,
            settings.windows.window_ms,
            settings.windows.overlap_ms,
            min_step_ms=settings.windows.min_step_ms,
        )
        logger.info("media %s: %d ms, %d windows", media_id, duration_ms, len(windows))
        reporter.running(0.06, f"rendering {len(windows)} windows", force=True)
        windows = render_windows(audio_path, windows_dir(media_id), windows)

        outcome = transcribe_windows(
            windows,
            recognizer,
            args.language,
            reporter,
            settings.reconcile,
        )

        reporter.running(0.92, "saving transcription", force=True)
        transcript = build_transcript(
            media_id,
            outcome.segments,
            language=outcome.language,
            model=recognizer.model_name,
        )
        save_transcription(media_id, transcript)
        save_subtitles(media_id, build_subtitles_from_transcription(media_id, transcript))
    except Exception as exc:  # noqa: BLE001 - reported to the host as a failed job
        logger.exception("transcription failed for %s", media_id)
        return _fail(reporter, media_id, f"transcription failed: {exc}")

    reporter.succeeded(f"{len(outcome.segments)} segments ({outcome.language})")
    emit("result", transcript)
    return 0


def command_translate(args: argparse.Namespace) -> int:
    job_id = str(uuid4())
    reporter = ProgressReporter(stdout_sink, job_id=job_id, media_id=args.media_id, job_kind=JobKind.SUBTITLE)

    try:
        media_id = validate_media_id(args.media_id)
        settings = load_settings()
    except (ValueError, ConfigError) as exc:
        return _fail(reporter, args.media_id, str(exc))

    target_lang = args.target_lang.strip().lower()
    if not target_lang:
        return _fail(reporter, media_id, "target language is empty")

    try:
        reporter.running(0.01, "loading subtitles", force=True)
        document = ensure_subtitles(media_id)
        original = get_track(document, ORIGINAL_TRACK_ID)
        if original is None:
            return _fail(reporter, media_id, "original track missing")

        units = units_from_segments(original.get("segments") or [])
        if not units:
            return _fail(reporter, media_id, "original track has no segments")

        orchestrator = TranslationOrchestrator(
            OpenAITextGenerator(settings),
            target_lang,
            limits=settings.translation,
            reporter=reporter,
        )
        outcome = asyncio.run(orchestrator.translate(units))

        reporter.running(0.96, "saving subtitles", force=True)
        source_lang = str(original.get("language") or "").strip() or "auto"
        tracks = assemble_tracks(units, outcome, source_lang=source_lang, target_lang=target_lang)
        apply_translation(document, tracks, translation_metadata(outcome, target_lang))
        save_subtitles(media_id, document)
    except Exception as exc:  # noqa: BLE001 - reported to the host as a failed job
        logger.exception("translation failed for %s", media_id)
        return _fail(reporter, media_id, f"translation failed: {exc}")

    reporter.succeeded(f"translated {outcome.translated}/{outcome.total} ({outcome.coverage:.0%})")
    emit("result", document)
    return 0


def command_plan_windows(args: argparse.Namespace) -> int:
    windows = plan_windows(args.duration_ms, args.window_ms, args.overlap_ms)
    emit(
        "result",
        [{"index": w.index, "startMs": w.start_ms, "durationMs": w.duration_ms} for w in windows],
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    defaults = load_settings({}).windows

    parser = argparse.ArgumentParser(description="Undertekst worker")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    transcribe = sub.add_parser("transcribe")
    transcribe.add_argument("--media-id", required=True)
    transcribe.add_argument("--source", required=True)
    transcribe.add_argument("--language", default="auto")
    transcribe.add_argument("--engine", choices=("openai", "local"), default="openai")
    transcribe.set_defaults(func=command_transcribe)

    translate = sub.add_parser("translate")
    translate.add_argument("--media-id", required=True)
    translate.add_argument("--target-lang", required=True)
    translate.set_defaults(func=command_translate)

    plan = sub.add_parser("plan-windows")
    plan.add_argument("--duration-ms", type=int, required=True)
    plan.add_argument("--window-ms", type=int, default=defaults.window_ms)
    plan.add_argument("--overlap-ms", type=int, default=defaults.overlap_ms)
    plan.set_defaults(func=command_plan_windows)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
