from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Optional

import typer

from .workflows.aggregator import VERDICT_BLOCK, RiskResult
from .workflows.doctor import build_doctor_report, format_doctor_report
from .workflows.inspector import InspectionEngine, InvalidCandidateError, validate_candidate
from .workflows.resolver import RedirectExpansion
from .workflows.settings import EngineSettings

app = typer.Typer(add_help_option=False, no_args_is_help=False)


def _minimal_help() -> str:
    return """qrcheck (QR link trust engine)

Usage:
  qrcheck analyze <url> [--json] [--bypass-cache] [--label-host <HOST>] [--progress] [--fail-on-block]
  qrcheck resolve <url> [--json] [--bypass-cache]
  qrcheck serve [--host <HOST>] [--port <PORT>]
  qrcheck doctor

Common options:
  --json          Print the result as JSON to stdout only.
  --bypass-cache  Force a fresh redirect expansion.
  --verbose, -v   Debug logging (default level from QRCHECK_LOG_LEVEL).

Discoverability:
  --help-full     Expanded help + env vars + exit codes.
  --find <query>  Search commands, flags, env vars.
  --doctor        Run environment diagnostics and exit.
"""


def _help_full() -> str:
    return """qrcheck CLI

Commands:
  analyze   Score a URL: local signals, redirect expansion, reputation.
  resolve   Expand a URL's redirect chain only.
  serve     Run the HTTP API (POST /api/resolve, POST /api/analyze, GET /health).
  doctor    Print environment diagnostics.

Verdicts:
  safe   score < 40
  warn   40 <= score < 70
  block  score >= 70

Exit codes:
  0  success
  1  verdict was block (analyze --fail-on-block only)
  2  invalid input, or doctor found problems
  3  unexpected failure

Important env vars:
  QRCHECK_MAX_HOPS
  QRCHECK_HOP_TIMEOUT
  QRCHECK_DEADLINE
  QRCHECK_CACHE_PATH
  QRCHECK_CACHE_DISABLE
  QRCHECK_RATE_LIMIT
  QRCHECK_RATE_WINDOW
  QRCHECK_SHORTENERS_PATH
  QRCHECK_MALICIOUS_HOSTS_PATH
  QRCHECK_URLHAUS_ENABLE
  QRCHECK_URLHAUS_AUTH_KEY
  QRCHECK_DOMAIN_AGE_ENDPOINT
  QRCHECK_LOG_LEVEL
"""


_FIND_INDEX = [
    ("command", "analyze", "Score a URL and print the verdict."),
    ("command", "resolve", "Expand a URL's redirect chain."),
    ("command", "serve", "Run the HTTP API."),
    ("command", "doctor", "Print environment diagnostics."),
    ("flag", "--json", "Print the result as JSON to stdout only."),
    ("flag", "--bypass-cache", "Force a fresh redirect expansion."),
    ("flag", "--label-host", "Visible link text host to compare with the destination."),
    ("flag", "--progress", "Print the local-only result before the resolved one."),
    ("flag", "--fail-on-block", "Exit 1 when the verdict is block."),
    ("flag", "--verbose", "Debug logging."),
    ("flag", "--help-full", "Expanded help, env vars, exit codes."),
    ("flag", "--find", "Search commands, flags, env vars."),
    ("flag", "--doctor", "Run environment diagnostics and exit."),
    ("env", "QRCHECK_MAX_HOPS", "Maximum redirects followed (10)."),
    ("env", "QRCHECK_HOP_TIMEOUT", "Per-hop timeout in seconds (1.0)."),
    ("env", "QRCHECK_DEADLINE", "Total expansion deadline in seconds (10.0)."),
    ("env", "QRCHECK_CACHE_PATH", "Directory for durable caches (unset: in-memory)."),
    ("env", "QRCHECK_CACHE_DISABLE", "Disable expansion and domain-age caches."),
    ("env", "QRCHECK_RATE_LIMIT", "Requests per client per window (10)."),
    ("env", "QRCHECK_RATE_WINDOW", "Rate-limit window in seconds (60)."),
    ("env", "QRCHECK_SHORTENERS_PATH", "Override shorteners.json path."),
    ("env", "QRCHECK_MALICIOUS_HOSTS_PATH", "Override malicious_hosts.json path."),
    ("env", "QRCHECK_URLHAUS_ENABLE", "Query URLhaus for destinations."),
    ("env", "QRCHECK_URLHAUS_AUTH_KEY", "URLhaus Auth-Key header."),
    ("env", "QRCHECK_DOMAIN_AGE_ENDPOINT", "Domain-age service URL."),
    ("env", "QRCHECK_LOG_LEVEL", "Default log level (CLI: WARNING, server: INFO)."),
]


def _run_find(query: str) -> str:
    needle = (query or "").strip().lower()
    if not needle:
        return ""
    lines = []
    for category, name, desc in _FIND_INDEX:
        haystack = f"{category} {name} {desc}".lower()
        if needle in haystack:
            lines.append(f"{category} {name} - {desc}")
    return "\n".join(lines)


def _configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else (os.getenv("QRCHECK_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(level=getattr(logging, level, logging.WARNING), format="%(levelname)s %(name)s: %(message)s")


def _format_result(result: RiskResult) -> str:
    payload = result.to_dict()
    lines = [f"[{result.stage}] {result.verdict.upper()} (score {result.score})"]
    chain = payload["redirect_chain"]
    if len(chain) > 1:
        lines.append("  chain: " + " -> ".join(chain))
    for reason in result.reasons:
        lines.append(f"  - {reason}")
    for warning in result.warnings:
        lines.append(f"  ! {warning}")
    return "\n".join(lines)


def _format_expansion(expansion: RedirectExpansion) -> str:
    lines = [f"{hop_index}: {hop}" for hop_index, hop in enumerate(expansion.chain)]
    status = expansion.failure_reason.value if expansion.failure_reason else "complete"
    lines.append(f"hops: {expansion.hop_count} ({status})")
    return "\n".join(lines)


def _with_engine(coro_factory):
    engine = InspectionEngine.from_settings(EngineSettings.from_env())

    async def _run():
        try:
            return await coro_factory(engine)
        finally:
            await engine.close()

    return asyncio.run(_run())


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    help: bool = typer.Option(False, "--help", "-h", is_eager=True, help="Show minimal help."),
    help_full: bool = typer.Option(False, "--help-full", is_eager=True, help="Show expanded help."),
    find: Optional[str] = typer.Option(None, "--find", is_eager=True, help="Search commands, flags, env vars."),
    doctor: bool = typer.Option(False, "--doctor", is_eager=True, help="Run environment diagnostics and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    if help_full:
        typer.echo(_help_full())
        raise typer.Exit(code=0)
    if find is not None:
        output = _run_find(find)
        if output:
            typer.echo(output)
        raise typer.Exit(code=0)
    if doctor:
        report = build_doctor_report()
        typer.echo(format_doctor_report(report))
        raise typer.Exit(code=0 if report.get("ok", True) else 2)
    if help or ctx.invoked_subcommand is None:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)
    _configure_logging(verbose)


@app.command("doctor", add_help_option=True)
def doctor_cmd() -> None:
    """Print environment diagnostics."""
    report = build_doctor_report()
    typer.echo(format_doctor_report(report))
    raise typer.Exit(code=0 if report.get("ok", True) else 2)


@app.command("analyze", add_help_option=True)
def analyze_cmd(
    url: str = typer.Argument(..., help="URL (or raw QR text) to analyze."),
    json_out: bool = typer.Option(False, "--json", help="Print the result as JSON to stdout only."),
    bypass_cache: bool = typer.Option(False, "--bypass-cache", help="Force a fresh redirect expansion."),
    label_host: Optional[str] = typer.Option(None, "--label-host", help="Visible link text host."),
    progress: bool = typer.Option(False, "--progress", help="Print the local-only result first."),
    fail_on_block: bool = typer.Option(False, "--fail-on-block", help="Exit 1 when the verdict is block."),
) -> None:
    def on_partial(partial: RiskResult) -> None:
        if json_out:
            sys.stdout.write(json.dumps(partial.to_dict(), ensure_ascii=False) + "\n")
        else:
            typer.echo(_format_result(partial))

    try:
        result = _with_engine(
            lambda engine: engine.analyze(
                url,
                bypass_cache=bypass_cache,
                label_host=label_host,
                on_partial=on_partial if progress else None,
            )
        )
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if json_out:
        sys.stdout.write(json.dumps(result.to_dict(), ensure_ascii=False) + "\n")
    else:
        typer.echo(_format_result(result))
    if result.signal("invalid_url") is not None:
        raise typer.Exit(code=2)
    raise typer.Exit(code=1 if fail_on_block and result.verdict == VERDICT_BLOCK else 0)


@app.command("resolve", add_help_option=True)
def resolve_cmd(
    url: str = typer.Argument(..., help="http(s) URL to expand."),
    json_out: bool = typer.Option(False, "--json", help="Print the expansion as JSON to stdout only."),
    bypass_cache: bool = typer.Option(False, "--bypass-cache", help="Force a fresh redirect expansion."),
) -> None:
    try:
        target = validate_candidate(url)
    except InvalidCandidateError as exc:
        if not json_out:
            typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=2)
    try:
        expansion = _with_engine(lambda engine: engine.resolver.resolve(target, bypass_cache=bypass_cache))
    except Exception as exc:
        if not json_out:
            typer.echo(f"fatal: {exc}", err=True)
        raise typer.Exit(code=3)
    if json_out:
        sys.stdout.write(json.dumps(expansion.to_dict(), ensure_ascii=False) + "\n")
    else:
        typer.echo(_format_expansion(expansion))
    raise typer.Exit(code=0)


@app.command("serve", add_help_option=True)
def serve_cmd(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", help="Bind port."),
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from .server import create_app

    settings = EngineSettings.from_env()
    uvicorn.run(create_app(settings=settings), host=host, port=port, log_level=settings.log_level.lower())
