"""Command line entry point for streaming chapter generations."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

import httpx

from .billing import BalanceStore
from .generation import (
    ChapterDocument,
    GenerationKind,
    GenerationOrchestrator,
    GenerationOutcome,
    GenerationResult,
    GenerationState,
    NoticeLevel,
)
from .progress import ProgressChannelListener
from .services.api import ApiError, GenerationApiClient
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


class ConsoleNotifier:
    """Writes user-facing notices to a text stream (stderr by default)."""

    _PREFIXES = {
        NoticeLevel.INFO: "info",
        NoticeLevel.SUCCESS: "ok",
        NoticeLevel.WARNING: "warning",
        NoticeLevel.ERROR: "error",
    }

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stderr

    def notify(self, level: NoticeLevel, title: str, description: str = "") -> None:
        line = f"[{self._PREFIXES.get(level, 'info')}] {title}"
        if description:
            line = f"{line}: {description}"
        self._stream.write(line + "\n")
        self._stream.flush()


class TextEcho:
    """Echoes newly rendered chapter text as the stream grows it."""

    def __init__(self, document: ChapterDocument, stream: TextIO | None = None) -> None:
        self._document = document
        self._stream = stream or sys.stdout
        self._printed = document.text

    def __call__(self, state: GenerationState) -> None:
        del state
        text = self._document.text
        if text == self._printed:
            return
        if text.startswith(self._printed):
            self._stream.write(text[len(self._printed) :])
            self._stream.flush()
        self._printed = text


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``chapterstream`` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("CHAPTERSTREAM_DEBUG")
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("CHAPTERSTREAM_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=store, overrides=cli_overrides or None)
    if args.dump_settings:
        _dump_settings(settings, store, overrides=cli_overrides)
        return 0
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if not args.project:
        print("A project slug is required.", file=sys.stderr)
        return 2
    try:
        args.selection = _parse_selection(args.selection)
    except ValueError:
        print(f"Invalid --selection {args.selection!r}: expected START:END offsets.", file=sys.stderr)
        return 2

    try:
        if args.status:
            return asyncio.run(_show_status(settings, args.project))
        return asyncio.run(_generate(settings, args))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130


async def _generate(settings: Settings, args: argparse.Namespace) -> int:
    input_path: Path | None = args.input
    output_path: Path | None = args.output
    text = input_path.read_text(encoding="utf-8") if input_path else ""
    document = ChapterDocument(
        chapter_id=args.chapter,
        chapter_number=args.chapter,
        title=args.title or f"Chapter {args.chapter}",
        text=text,
        target_word_count=args.target_words,
    )

    async def save(chapter: ChapterDocument) -> None:
        if output_path is None:
            return
        output_path.write_text(chapter.text, encoding="utf-8")
        _LOGGER.info("Chapter saved to %s (%s words)", output_path, chapter.word_count)

    api = GenerationApiClient(settings.client_settings())
    balance = BalanceStore()
    orchestrator = GenerationOrchestrator(
        api,
        document,
        project=args.project,
        balance=balance,
        notifier=ConsoleNotifier(),
        saver=save,
        stream_config=settings.stream_config(),
        paper_poll_interval=settings.paper_poll_interval,
        paper_poll_max_attempts=settings.paper_poll_max_attempts,
        default_style=settings.default_rephrase_style,
        on_state=TextEcho(document),
    )
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop_generation)
    try:
        if await balance.refresh(api) is None:
            print("Could not load the word balance.", file=sys.stderr)
            return 1
        result = await orchestrator.handle_generation(
            args.action,
            section=args.section,
            selection=args.selection,
            style=args.style,
        )
        await orchestrator.wait_for_background_tasks()
        return _report(result, orchestrator)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await orchestrator.aclose()
        balance.close()
        await api.aclose()


def _report(result: GenerationResult, orchestrator: GenerationOrchestrator) -> int:
    sys.stdout.write("\n")
    if result.outcome is GenerationOutcome.NEEDS_MANUAL_INSERT:
        print("The selection changed; insert this text manually:", file=sys.stderr)
        print(orchestrator.state.pending_manual_insert or "")
        return 0
    if result.success:
        print(f"Done: {result.word_count} words ({result.kind.value if result.kind else 'generation'})", file=sys.stderr)
        return 0
    print(f"{result.outcome.value}: {result.message}", file=sys.stderr)
    return 1


async def _show_status(settings: Settings, project: str) -> int:
    api = GenerationApiClient(settings.client_settings())
    listener = ProgressChannelListener(project, _NullConnector())
    try:
        data = await api.bulk_generation_status(project)
    except (ApiError, httpx.HTTPError) as exc:
        print(f"Status unavailable: {exc}", file=sys.stderr)
        return 1
    finally:
        await api.aclose()

    listener.restore_from_api_data(data)
    state = listener.state
    print(f"{state.status.value} {state.progress:.0f}% {state.message}".rstrip())
    for stage in listener.stages:
        print(f"  {stage.name:<20} {stage.status.value:<10} {stage.progress:.0f}%")
    print(listener.estimated_time_remaining())
    listener.disconnect()
    return 0


class _NullConnector:
    def subscribe(self, channel: str, handler: Any) -> Any:
        del channel, handler
        return lambda: None


def _parse_selection(raw: str | None) -> Dict[str, int] | None:
    if not raw:
        return None
    start, _, end = raw.partition(":")
    return {"start": int(start), "end": int(end)}


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="chapterstream",
        description="Stream an AI chapter generation from the thesis backend.",
    )
    parser.add_argument("project", nargs="?", help="Project slug.")
    parser.add_argument("--chapter", type=int, default=1, help="Chapter number (default: 1).")
    parser.add_argument(
        "--action",
        choices=[kind.value for kind in GenerationKind],
        default=GenerationKind.PROGRESSIVE.value,
        help="Generation type to run.",
    )
    parser.add_argument("--section", help="Section type for --action section.")
    parser.add_argument("--selection", metavar="START:END", help="Character range for rephrase/expand.")
    parser.add_argument("--style", help="Rephrase style.")
    parser.add_argument("--title", help="Chapter title.")
    parser.add_argument("--target-words", type=int, default=3000, help="Target chapter length in words.")
    parser.add_argument("--input", type=Path, help="File holding the current chapter text.")
    parser.add_argument("--output", type=Path, help="Where to save the chapter text.")
    parser.add_argument("--status", action="store_true", help="Show bulk generation progress and exit.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on the console.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.chapterstream/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    if type(None) in get_args(annotation) and raw_value.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return raw_value
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target is dict:
        try:
            return json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return raw_value


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin is dict:
        return dict
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    return args[0] if args else origin


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_token"] = redact_secret(settings.api_token)
    output = {
        "settings": payload,
        "meta": {
            "path": str(store.path),
            "cli_overrides": sorted(overrides.keys()),
            "environment_variables": sorted(name for name in os.environ if name.startswith("CHAPTERSTREAM_")),
        },
    }
    json.dump(output, destination, indent=2)
    destination.write("\n")
