# src/main.py - v1
"""CLI entry point: generate, status, retry, sweep, metrics commands.

Usage:
    chunkzip generate <container> <order> [--kind final] [--keys a.jpg b.jpg]
    chunkzip status <container> <order> [--kind final]
    chunkzip retry <container> <order> [--kind final]
    chunkzip sweep
    chunkzip metrics [--since 2026-01-01T00:00:00+00:00]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime

from chunkzip.config.settings import ConfigurationError, Settings, load_settings
from chunkzip.core.errors import ArchiveError
from chunkzip.core.models import ARCHIVE_KINDS, ArchiveRequest, OrderKey
from chunkzip.logging.logger import setup_logging_from_settings
from chunkzip.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        settings = load_settings()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    _setup_logging(settings, args.verbose)

    try:
        return asyncio.run(args.func(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except ArchiveError as exc:
        logger.error("%s: %s", exc.reason_code, exc.message)
        return 1
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def entrypoint() -> None:
    sys.exit(main())


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="chunkzip",
        description=f"chunkzip v{__version__} - chunked ZIP archive generation",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- generate ---
    p_generate = subparsers.add_parser("generate", help="Generate one archive")
    _add_order_args(p_generate)
    p_generate.add_argument(
        "--keys", nargs="+", default=None,
        help="Explicit member names (default: derived from storage)",
    )
    p_generate.set_defaults(func=_cmd_generate)

    # --- status ---
    p_status = subparsers.add_parser("status", help="Show generation status")
    _add_order_args(p_status)
    p_status.set_defaults(func=_cmd_status)

    # --- retry ---
    p_retry = subparsers.add_parser("retry", help="Retry a failed generation")
    _add_order_args(p_retry)
    p_retry.set_defaults(func=_cmd_retry)

    # --- sweep ---
    p_sweep = subparsers.add_parser("sweep", help="Delete expired archives")
    p_sweep.set_defaults(func=_cmd_sweep)

    # --- metrics ---
    p_metrics = subparsers.add_parser("metrics", help="Summarize recorded metrics")
    p_metrics.add_argument(
        "--since", type=datetime.fromisoformat, default=None,
        help="ISO timestamp lower bound",
    )
    p_metrics.add_argument(
        "--until", type=datetime.fromisoformat, default=None,
        help="ISO timestamp upper bound",
    )
    p_metrics.set_defaults(func=_cmd_metrics)

    return parser


def _add_order_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("container_id", help="Container (gallery) id")
    parser.add_argument("order_id", help="Order id")
    parser.add_argument(
        "--kind", choices=ARCHIVE_KINDS, default="original",
        help="Archive kind (default: original)",
    )


def _order_key(args: argparse.Namespace) -> OrderKey:
    return OrderKey(container_id=args.container_id, order_id=args.order_id, archive_kind=args.kind)


def _service(settings: Settings):
    from chunkzip.api.facade import ArchiveService

    return ArchiveService.from_settings(settings)


async def _cmd_generate(args: argparse.Namespace, settings: Settings) -> int:
    """Trigger a generation and wait for local work to finish."""
    service = _service(settings)
    request = ArchiveRequest(
        container_id=args.container_id,
        order_id=args.order_id,
        archive_kind=args.kind,
        keys=tuple(args.keys) if args.keys else None,
    )
    response = await service.trigger(request)
    await service.drain()
    _print_json(response.model_dump(mode="json", exclude_none=True))
    report = await service.status(request.order_key)
    _print_json(report.model_dump(mode="json", exclude_none=True))
    return 0 if report.status in ("ready", "generating") else 1


async def _cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    report = await _service(settings).status(_order_key(args))
    _print_json(report.model_dump(mode="json", exclude_none=True))
    return 0


async def _cmd_retry(args: argparse.Namespace, settings: Settings) -> int:
    service = _service(settings)
    response = await service.retry(_order_key(args))
    await service.drain()
    _print_json(response.model_dump(mode="json", exclude_none=True))
    return 0


async def _cmd_sweep(args: argparse.Namespace, settings: Settings) -> int:
    report = await _service(settings).sweep()
    print("\nSweep complete:")
    print(f"  Deleted:  {report.deleted_count}")
    print(f"  Errors:   {report.error_count}")
    for error in report.errors:
        print(f"    - {error}")
    return 0 if report.error_count == 0 else 1


async def _cmd_metrics(args: argparse.Namespace, settings: Settings) -> int:
    summary = _service(settings).metrics_summary(since=args.since, until=args.until)
    _print_json(summary.model_dump(mode="json"))
    return 0


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _setup_logging(settings: Settings, verbose: bool) -> None:
    """Configure logging for CLI usage."""
    setup_logging_from_settings(settings, verbose=verbose)


if __name__ == "__main__":
    sys.exit(main())
