#!/usr/bin/env python3
"""
Speedtest -- self-hosted network speed test server and terminal client.

Usage::

    python speedtest.py serve                       # listen on 0.0.0.0:64580
    python speedtest.py serve --port 8080 --config my.json
    python speedtest.py run                         # rich dashboard
    python speedtest.py run --server http://host:64580 --simple
    python speedtest.py run --json                  # JSON to stdout
    python speedtest.py run -o result.json          # save to file
    python speedtest.py run --csv log.csv           # append CSV row
    python speedtest.py run --no-share              # don't ask for a share code
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional

from aiohttp import ClientError, web
from rich.logging import RichHandler

from client.api import ServerRejected, SpeedServerAPI
from client.live import LiveSummary, TestStreamError, run_live_test
from engine.config import load_settings
from engine.constants import DEFAULT_SERVER_URL, VERSION
from engine.errors import ConfigurationError
from engine.progress import ProgressUpdate, Stage
from server.app import create_app
from ui.dashboard import (
    ProgressDisplay,
    console,
    print_failure,
    print_final_results,
    print_header,
    print_rejection,
    print_server_info,
)
from ui.output import (
    create_result_json,
    format_csv_header,
    format_csv_row,
    format_text_result,
    save_json,
)

logger = logging.getLogger("speedtest")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

def serve(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(
            args.config,
            host=args.host,
            port=args.port,
            log_level=args.log_level,
            results_file=args.results,
        )
    except ConfigurationError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        return 1

    _configure_logging(settings.log_level)
    logger.info(
        "speedtest %s on %s:%d (workers %d, chunk %d bytes, %g s per phase)",
        VERSION, settings.host, settings.port,
        settings.workers, settings.chunk_size, settings.duration,
    )
    web.run_app(create_app(settings), host=settings.host, port=settings.port, print=None)
    return 0


# ---------------------------------------------------------------------------
# Client run
# ---------------------------------------------------------------------------

def _print_simple(update: ProgressUpdate) -> None:
    if update.stage is Stage.COMPLETE or update.progress < 1.0:
        return
    print(update.message)


async def run_speedtest(
    server_url: str,
    *,
    json_output: bool = False,
    simple: bool = False,
    output_file: Optional[str] = None,
    csv_file: Optional[str] = None,
    share: bool = True,
) -> LiveSummary:
    """Run one test against *server_url* and render it."""
    show_ui = not json_output and not simple

    if show_ui:
        print_header(server_url)

    async with SpeedServerAPI(server_url) as api:
        health = await api.health()
        if show_ui:
            print_server_info(health)
        await api.start_test()

    display = ProgressDisplay()
    if show_ui:
        display.start()
        on_update = display.update
    elif simple:
        on_update = _print_simple
    else:
        on_update = display.update

    try:
        summary = await run_live_test(server_url, share=share, on_update=on_update)
    finally:
        if show_ui:
            display.stop()

    if show_ui:
        print_final_results(summary, display.samples)
    elif simple:
        print(format_text_result(summary, server_url))

    result_json = create_result_json(summary, server_url, display.samples)
    if json_output:
        print(json.dumps(result_json, indent=2))

    if output_file:
        save_json(result_json, output_file)
        if not json_output:
            console.print(f"\n[green]Results saved to:[/green] {output_file}")

    if csv_file:
        _append_csv(csv_file, summary, server_url)
        if not json_output:
            console.print(f"[green]CSV row appended to:[/green] {csv_file}")

    return summary


def _append_csv(path: str, summary: LiveSummary, server_url: str) -> None:
    """Append a single CSV row, writing the header if the file is new."""
    write_header = not os.path.isfile(path) or os.path.getsize(path) == 0
    with open(path, "a", encoding="utf-8") as fh:
        if write_header:
            fh.write(format_csv_header() + "\n")
        fh.write(format_csv_row(summary, server_url) + "\n")


def run(args: argparse.Namespace) -> int:
    try:
        asyncio.run(
            run_speedtest(
                args.server,
                json_output=args.json,
                simple=args.simple,
                output_file=args.output,
                csv_file=args.csv,
                share=not args.no_share,
            )
        )
    except ServerRejected as exc:
        print_rejection(exc.reason, exc.retry_after)
        return 1
    except TestStreamError as exc:
        print_failure(exc.reason)
        return 1
    except (ClientError, OSError) as exc:
        console.print(f"\n[red]Error: cannot reach {args.server}: {exc}[/red]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Test cancelled by user[/yellow]")
        return 1
    return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Speedtest -- self-hosted network speed testing",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the speed test server")
    p_serve.add_argument("--host", type=str, help="Address to bind (default: from config)")
    p_serve.add_argument("--port", type=int, help="Port to listen on (default: 64580)")
    p_serve.add_argument("--config", type=str, metavar="FILE", help="Configuration JSON file")
    p_serve.add_argument("--results", type=str, metavar="FILE", help="Append-only JSONL results file")
    p_serve.add_argument(
        "--log-level", type=str.upper, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    p_serve.set_defaults(func=serve)

    p_run = sub.add_parser("run", help="Run a test against a server")
    p_run.add_argument("--server", type=str, default=DEFAULT_SERVER_URL, metavar="URL", help=f"Server URL (default: {DEFAULT_SERVER_URL})")
    p_run.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    p_run.add_argument("--output", "-o", type=str, metavar="FILE", help="Save results to JSON file")
    p_run.add_argument("--csv", type=str, metavar="FILE", help="Append results as CSV row")
    p_run.add_argument("--simple", "-s", action="store_true", help="Simple output mode (no dashboard)")
    p_run.add_argument("--no-share", action="store_true", help="Don't request a share code")
    p_run.set_defaults(func=run)

    return parser


def main(argv: Optional[list] = None) -> None:
    args = build_parser().parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
