"""
Command line interface for voxanalyze.

Subcommands:
- voxanalyze generate-key: Print a new hex encryption key
- voxanalyze mask: Mask PII in a transcript JSON file
- voxanalyze process: Run one audio file through the full pipeline
- voxanalyze audit: Run the security self-check
- voxanalyze serve: Start the HTTP service
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from . import __version__
from .audit import run_security_audit
from .auth import Principal, Role
from .config import PipelineConfig
from .crypto import generate_key
from .exceptions import ConfigurationError, VoxAnalyzeError
from .llm_client import LLMConfig, provider_factory
from .masking import PIIMasker
from .models import Transcript
from .privacy import mask_transcript_with_regex

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="voxanalyze",
        description="Confidential call recording analysis.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON config file (default: VOXANALYZE_* environment variables).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("generate-key", help="Print a new 256-bit encryption key as hex.")

    p_mask = subparsers.add_parser("mask", help="Mask PII in a transcript JSON file.")
    p_mask.add_argument("transcript", type=Path, help="Transcript JSON file.")
    p_mask.add_argument(
        "--ai",
        action="store_true",
        help="Use the configured masking models (falls back to regex on failure).",
    )
    p_mask.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output path (default: stdout).",
    )

    p_process = subparsers.add_parser(
        "process", help="Transcribe, mask, store and analyze one audio file."
    )
    p_process.add_argument("audio", type=Path, help="Audio file to process.")
    p_process.add_argument(
        "--user",
        default="local",
        help="Owner id recorded on the created record (default: local).",
    )

    p_audit = subparsers.add_parser("audit", help="Run the security self-check.")
    p_audit.add_argument("--json", action="store_true", help="Print the report as JSON.")

    p_serve = subparsers.add_parser("serve", help="Start the HTTP service.")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    p_serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000).")

    return parser


def _load_config(args: argparse.Namespace) -> PipelineConfig:
    if args.config is not None:
        return PipelineConfig.from_file(args.config)
    return PipelineConfig.from_env()


def _write_output(payload: dict, output: Path | None) -> None:
    text = json.dumps(payload, ensure_ascii=False, indent=2)
    if output is None:
        print(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text + "\n", encoding="utf-8")
    print(f"[done] Wrote masked transcript to {output}", file=sys.stderr)


def _handle_mask_command(args: argparse.Namespace, config: PipelineConfig) -> int:
    try:
        data = json.loads(args.transcript.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read transcript {args.transcript}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Transcript {args.transcript} must be a JSON object")
    transcript = Transcript.from_dict(data)

    if not args.ai:
        masked = mask_transcript_with_regex(transcript)
        _write_output(masked.to_dict(), args.output)
        return 0

    factory = provider_factory(
        LLMConfig(
            provider=config.llm_provider,
            api_key=config.llm_api_key,
            base_url=config.llm_base_url,
        )
    )
    masker = PIIMasker(
        factory,
        models=config.masking_models,
        timeout_s=config.masking_timeout_s,
        segment_strategy=config.segment_strategy,
    )
    outcome = asyncio.run(masker.mask(transcript))
    print(f"[info] Masking method: {outcome.method}", file=sys.stderr)
    _write_output(outcome.transcript.to_dict(), args.output)
    return 0


def _handle_process_command(args: argparse.Namespace, config: PipelineConfig) -> int:
    from .pipeline import build_pipeline

    try:
        content = args.audio.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Cannot read audio file {args.audio}: {e}") from e

    pipeline = build_pipeline(config)
    principal = Principal(user_id=args.user, role=Role.USER)
    try:
        result = asyncio.run(pipeline.process_upload(principal, args.audio.name, content))
    finally:
        pipeline.store.close()
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 0


def _handle_audit_command(args: argparse.Namespace, config: PipelineConfig) -> int:
    from .store import SQLiteRecordStore

    store = None
    db_path = config.resolved_db_path()
    if db_path.exists():
        store = SQLiteRecordStore.open(db_path, create=False)
    try:
        report = run_security_audit(config, store)
    finally:
        if store is not None:
            store.close()

    if args.json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        for result in report.results:
            print(f"[{result.status}] {result.check}: {result.message}")
            for detail in result.details:
                print(f"    - {detail}")
        print(f"\nOverall: {report.overall}")
    return 1 if report.overall == "failed" else 0


def _handle_serve_command(args: argparse.Namespace, config: PipelineConfig) -> int:
    import uvicorn

    from .service import create_app

    uvicorn.run(create_app(config), host=args.host, port=args.port)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """
    Main CLI entry point.

    Returns:
        0 on success, 1 on VoxAnalyzeError (or a failed audit), 2 on unexpected error.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "generate-key":
            print(generate_key())
            return 0

        config = _load_config(args)

        if args.command == "mask":
            return _handle_mask_command(args, config)
        elif args.command == "process":
            return _handle_process_command(args, config)
        elif args.command == "audit":
            return _handle_audit_command(args, config)
        elif args.command == "serve":
            return _handle_serve_command(args, config)
        else:
            parser.error(f"Unknown command: {args.command}")

        return 0

    except VoxAnalyzeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    except Exception as e:
        logger.debug("Unexpected error", exc_info=e)
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
