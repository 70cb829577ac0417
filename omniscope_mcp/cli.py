"""Command line entry point: serve the MCP gateway or run a workflow to completion.

Usage:
    # HTTP server
    omniscope-mcp serve --host 0.0.0.0 --port 3000

    # Execute a workflow and poll its job state until it finishes
    omniscope-mcp run /Reports/Sales.iox --blocks "Load,Report" --refresh-from-source

    # Same, as a lambda copy with parameter overrides
    omniscope-mcp run /Reports/Sales.iox --lambda --param Region=EMEA --delete-on-finish
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

import httpx
from dotenv import load_dotenv

from omniscope_mcp.clients.workflow import JobState, create_workflow_client, wait_for_job
from omniscope_mcp.config import ServerConfig, load_config
from omniscope_mcp.constants import DEFAULT_HOST, DEFAULT_POLL_INTERVAL_S, DEFAULT_PORT, ENV_HOST, ENV_PORT
from omniscope_mcp.errors import ConfigError, OmniscopeError
from omniscope_mcp.server import main_http


def _parse_param(raw: str) -> tuple[str, Any]:
    """Parse ``NAME=VALUE``; VALUE is read as JSON when possible, else kept as text."""
    name, sep, value = raw.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {raw!r}")
    try:
        return name.strip(), json.loads(value)
    except ValueError:
        return name.strip(), value


def _default_port() -> int:
    raw = os.getenv(ENV_PORT)
    if not raw:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"Invalid {ENV_PORT} value: {raw}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="omniscope-mcp", description="Omniscope Workflow MCP gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the MCP server over HTTP")
    serve.add_argument("--host", default=None, help=f"Listen host (default: ${ENV_HOST} or {DEFAULT_HOST})")
    serve.add_argument("--port", type=int, default=None, help=f"Listen port (default: ${ENV_PORT} or {DEFAULT_PORT})")

    run = subparsers.add_parser("run", help="Execute a workflow and wait for the job to finish")
    run.add_argument("project_path", help='Project path, e.g. "/mcptest/demo.iox"')
    run.add_argument("--lambda", dest="use_lambda", action="store_true", help="Run a lambda copy of the project")
    run.add_argument("--blocks", default="", help="Comma-separated block names to execute")
    run.add_argument("--param", dest="params", action="append", type=_parse_param, default=[], help="NAME=VALUE (lambda only)")
    run.add_argument("--delete-on-finish", action="store_true", help="Delete the lambda copy when it finishes")
    run.add_argument("--refresh-from-source", action="store_true")
    run.add_argument("--cancel-existing", action="store_true")
    run.add_argument("--interval", type=float, default=DEFAULT_POLL_INTERVAL_S, help="Seconds between job state polls")
    run.add_argument("--max-wait", type=float, default=None, help="Give up after this many seconds")
    run.add_argument("--dry-run", action="store_true", help="Print the request that would be sent and exit")
    run.add_argument("--base-url", default=None, help="Allow-listed Omniscope server to call instead of the default")
    return parser


def _print_state(response: dict[str, Any]) -> None:
    line = f"Job state: {response.get('jobState', 'UNKNOWN')}"
    if response.get("errorType"):
        line += f" (errorType={response['errorType']})"
    if response.get("errorMessage"):
        line += f" - {response['errorMessage']}"
    print(line)


async def run_workflow(
    config: ServerConfig,
    args: argparse.Namespace,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """Execute a workflow, poll it to a terminal state and return the exit code."""
    blocks = [b.strip() for b in args.blocks.split(",") if b.strip()] or None
    refresh = True if args.refresh_from_source else None
    cancel = True if args.cancel_existing else None

    async with httpx.AsyncClient(transport=transport, timeout=None) as http:
        client = create_workflow_client(config, http, args.base_url)
        if args.use_lambda:
            started = await client.lambda_execute_workflow(
                args.project_path,
                blocks=blocks,
                refresh_from_source=refresh,
                cancel_existing=cancel,
                params=dict(args.params) or None,
                delete_execution_on_finish=True if args.delete_on_finish else None,
                dry_run=args.dry_run,
            )
        else:
            started = await client.execute_workflow(
                args.project_path,
                blocks=blocks,
                refresh_from_source=refresh,
                cancel_existing=cancel,
                dry_run=args.dry_run,
            )

        if args.dry_run:
            print(json.dumps(started, indent=2))
            return 0

        job_id = str(started.get("jobId", ""))
        if not job_id:
            print(f"Workflow API did not return a jobId: {started}", file=sys.stderr)
            return 1
        print(f"Started job {job_id}")

        final = await wait_for_job(
            client,
            args.project_path,
            job_id,
            interval=args.interval,
            max_wait=args.max_wait,
            on_state=_print_state,
        )

    succeeded = final.get("jobState") == JobState.COMPLETED.value
    print(f"Job {job_id} finished with state: {final.get('jobState', 'UNKNOWN')}")
    return 0 if succeeded else 1


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    try:
        config = load_config()
        if args.command == "serve":
            host = args.host or os.getenv(ENV_HOST) or DEFAULT_HOST
            port = args.port if args.port is not None else _default_port()
            main_http(config, host=host, port=port)
            return 0
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    try:
        return asyncio.run(run_workflow(config, args))
    except OmniscopeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
