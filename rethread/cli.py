"""Command line interface for the rethread translator."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import re
import sys
from typing import Iterable, List, Optional, Sequence

from .configuration import RethreadConfig, get_settings
from .errors import (
    OverwriteRefusedError,
    RethreadError,
    TranslationJobError,
    TranslationProviderConfigurationError,
)
from .logging_config import setup_logging
from .providers import build_provider
from .structures import BufferHolder, JobState
from .translator import TranslationRunner, TranslationSummary

logger = logging.getLogger(__name__)

DEFAULT_SEPARATOR = "---"
STRATEGY_CHOICES = ["single", "smart", "fixed", "character-budget"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rethread",
        description=(
            "Translate a plain-text file block by block while preserving line "
            "breaks and blank lines."
        ),
    )
    parser.add_argument(
        "input_file",
        help="Path to the UTF-8 text file to translate.",
    )
    parser.add_argument(
        "-t",
        "--target-language",
        required=True,
        help="Destination language (name or ISO-639 code).",
    )
    parser.add_argument(
        "-s",
        "--source-language",
        help="Optional source language hint (name or ISO-639 code).",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Output file path. Defaults to appending the target language code.",
    )
    parser.add_argument(
        "-p",
        "--provider",
        help="Translation provider identifier (default: openai).",
    )
    parser.add_argument(
        "-m",
        "--model",
        help="Provider-specific model or deployment identifier.",
    )
    parser.add_argument(
        "--strategy",
        choices=STRATEGY_CHOICES,
        help="Batching strategy (default: configured, else the provider's preference).",
    )
    parser.add_argument(
        "--char-budget",
        type=int,
        help="Maximum characters per batch for the character-budget strategy.",
    )
    parser.add_argument(
        "--separator",
        default=DEFAULT_SEPARATOR,
        help=f"Line that separates text blocks in the input (default: {DEFAULT_SEPARATOR}).",
    )
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Allow overwriting the output file if it already exists.",
    )
    failure_mode = parser.add_mutually_exclusive_group()
    failure_mode.add_argument(
        "--fail-fast",
        dest="fail_fast",
        action="store_const",
        const=True,
        help="Stop at the first block that cannot be translated.",
    )
    failure_mode.add_argument(
        "--skip-failed",
        dest="fail_fast",
        action="store_const",
        const=False,
        help="Leave untranslatable blocks unchanged and keep going.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed progress information.",
    )
    parser.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )
    return parser


def sanitise_language_for_filename(language: str) -> str:
    """Generate a filesystem-friendly suffix from a language descriptor."""

    collapsed = re.sub(r"\s+", "-", language.strip())
    ascii_only = collapsed.encode("ascii", "ignore").decode("ascii")
    cleaned = re.sub(r"[^A-Za-z0-9\-]+", "", ascii_only)
    return cleaned or "translated"


def derive_output_path(input_path: pathlib.Path, language: str) -> pathlib.Path:
    suffix = input_path.suffix
    stem = input_path.stem
    addition = sanitise_language_for_filename(language)
    candidate = f"{stem}_{addition}{suffix}"
    return input_path.with_name(candidate)


def validate_paths(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> None:
    """Validate input/output path combinations and overwrite policy."""

    if not input_path.exists():
        raise FileNotFoundError(
            "Input file not found. Please provide a readable text file."
        )
    if not input_path.is_file():
        raise RethreadError("Input path must be a file.")

    if input_path.resolve() == output_path.resolve():
        raise OverwriteRefusedError(
            "The output path matches the input file. Refusing to overwrite the source file."
        )

    if output_path.exists() and not force_overwrite:
        raise OverwriteRefusedError(
            "The output file already exists. Rename it or use the overwrite flag."
        )


def split_units(text: str, separator: str = DEFAULT_SEPARATOR) -> List[str]:
    """Split file content into blocks delimited by separator lines."""

    units: List[str] = []
    current: List[str] = []
    for line in text.split("\n"):
        if line.strip() == separator:
            units.append("\n".join(current))
            current = []
        else:
            current.append(line)
    units.append("\n".join(current))
    return units


def join_units(units: Sequence[str], separator: str = DEFAULT_SEPARATOR) -> str:
    return f"\n{separator}\n".join(units)


def execute_translation(
    *,
    input_file: str,
    output_file: str | None,
    target_language: str,
    source_language: str | None,
    provider: str | None,
    model: str | None,
    strategy: str | None,
    char_budget: int | None,
    separator: str,
    force_overwrite: bool,
    fail_fast: bool | None,
    provider_debug: bool,
    settings: RethreadConfig,
) -> tuple[int, TranslationSummary | None, str | None]:
    """Execute a translation run and return the exit code, summary, and message."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    output_path = (
        pathlib.Path(output_file).expanduser().resolve()
        if output_file
        else derive_output_path(input_path, target_language)
    )

    try:
        validate_paths(input_path, output_path, force_overwrite=force_overwrite)
        content = input_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        return 1, None, str(exc)
    except RethreadError as exc:
        return 1, None, str(exc)

    holders = [
        BufferHolder(text, location=f"{input_path.name} block {index + 1}")
        for index, text in enumerate(split_units(content, separator))
    ]

    try:
        runner = TranslationRunner(
            provider=build_provider(
                provider, settings=settings, model=model, debug=provider_debug
            ),
            target_language=target_language,
            source_language=source_language,
            settings=settings,
            strategy=strategy,
            char_budget=char_budget,
            fail_fast=fail_fast,
        )
        summary = asyncio.run(runner.run(holders, surface=str(input_path)))
    except TranslationProviderConfigurationError as exc:
        return 1, None, str(exc)
    except TranslationJobError as exc:
        return 1, exc.summary, str(exc)
    except RethreadError as exc:
        return 1, None, str(exc)
    except KeyboardInterrupt:
        return 2, None, "Translation interrupted by user."
    except Exception as exc:  # pragma: no cover
        logger.debug("Unexpected failure", exc_info=True)
        error_message = (
            f"{exc}\n"
            "An unexpected error occurred. Please rerun with --verbose for more details."
        )
        return 1, None, error_message

    if summary.state is JobState.CANCELLED:
        return 2, summary, "Translation cancelled; no output was written."

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(
            join_units([holder.text for holder in holders], separator),
            encoding="utf-8",
        )
    except OSError as exc:
        return 1, summary, f"Could not write {output_path}: {exc}"

    print(f"Wrote {output_path}")
    return 0, summary, None


def print_summary(summary: TranslationSummary) -> None:
    """Output a friendly report once processing completes."""

    print(f"\nTranslation {summary.state.value}.")
    print(
        "  Text blocks:     "
        f"{summary.applied_holders} translated / {summary.total_units} total "
        f"({len(summary.unmatched_holders)} unmatched)"
    )
    print(
        f"  Segments:        {summary.translated_segments} of {summary.total_segments} "
        f"in {summary.total_batches} {summary.strategy} batches"
    )
    print(f"  Provider:        {summary.provider_name}")
    if summary.source_language:
        print(f"  Source language: {summary.source_language}")
    print(f"  Target language: {summary.target_language}")
    print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if summary.error_messages:
        print("  Notes:")
        for message in summary.error_messages:
            print(f"    - {message}")


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        settings = get_settings()
    except TranslationProviderConfigurationError as exc:
        print(exc)
        return 1

    provider_debug = bool(args.debug_provider or settings.RETHREAD_PROVIDER_DEBUG)
    level = "DEBUG" if args.verbose or provider_debug else settings.RETHREAD_LOG_LEVEL
    setup_logging(level, settings.RETHREAD_LOG_FILE)

    exit_code, summary, message = execute_translation(
        input_file=args.input_file,
        output_file=args.output,
        target_language=args.target_language,
        source_language=args.source_language,
        provider=args.provider,
        model=args.model,
        strategy=args.strategy,
        char_budget=args.char_budget,
        separator=args.separator,
        force_overwrite=args.force,
        fail_fast=args.fail_fast,
        provider_debug=provider_debug,
        settings=settings,
    )

    if message:
        print(message)
    if summary:
        print_summary(summary)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
