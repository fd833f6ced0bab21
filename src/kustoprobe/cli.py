"""
kustoprobe CLI.

    kustoprobe run      # ingest one synthetic row, read the newest rows back
    kustoprobe ingest   # ingest only
    kustoprobe query    # read the newest rows only
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any

import click
import structlog

from kustoprobe.auth import AuthMode
from kustoprobe.config import ProbeConfig, load_config, load_probe_config
from kustoprobe.errors import ProbeError

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    env_level = os.environ.get("KUSTOPROBE_LOG_LEVEL", "").strip().lower()
    if verbose or env_level in {"debug", "trace"}:
        level = logging.DEBUG
    elif env_level in {"warning", "warn"}:
        level = logging.WARNING
    elif env_level == "error":
        level = logging.ERROR
    elif env_level == "critical":
        level = logging.CRITICAL
    else:
        level = logging.INFO
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # Logs go to stderr so `--json` output on stdout stays machine-readable.
    logging.basicConfig(format="%(message)s", level=level, handlers=[logging.StreamHandler(sys.stderr)], force=True)
    # Keep SDK transport chatter out of the run log unless explicitly needed.
    for name in ("azure", "urllib3", "msal"):
        logging.getLogger(name).setLevel(logging.INFO if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------


_AUTH_CHOICES = [m.value for m in AuthMode]


def _cluster_options(fn):
    fn = click.option("--cluster", "endpoint", default="", help="Cluster URL (default: KUSTOPROBE_CLUSTER_URL)")(fn)
    fn = click.option("--ingest-cluster", "ingest_endpoint", default="", help="Ingestion URL (default: https://ingest-<cluster host>)")(fn)
    fn = click.option("--database", default="", help="Database name (default: env/config)")(fn)
    fn = click.option("--table", default="", help="Table name (default: env/config)")(fn)
    fn = click.option(
        "--auth",
        "auth_mode",
        type=click.Choice(_AUTH_CHOICES, case_sensitive=False),
        default=None,
        help="token: device-code login + bearer token; ambient: existing az login / credential chain",
    )(fn)
    fn = click.option("--timeout", "run_timeout_s", default=None, type=float, help="Whole-run deadline in seconds (0 = none)")(fn)
    return fn


def _resolve_config(**options: Any) -> ProbeConfig:
    overrides = {k: (v if not isinstance(v, str) else (v.strip() or None)) for k, v in options.items()}
    return load_probe_config(**overrides)


def _echo_json(obj: dict[str, Any]) -> None:
    click.echo(json.dumps(obj, default=str))


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """kustoprobe: telemetry round-trip smoke test for a Kusto cluster."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)
    load_config()


@main.command("run")
@_cluster_options
@click.option("--rows", "row_limit", default=None, type=int, help="How many of the newest rows to read back")
@click.option("--first-name", default="", help="FirstName of the synthetic record")
@click.option("--second-name", default="", help="LastName of the synthetic record")
@click.option("--flag/--no-flag", default=None, help="Isgood value of the synthetic record")
@click.option("--visibility-timeout", "visibility_timeout_s", default=None, type=float, help="Seconds to wait for the row to become queryable (0 = query once)")
@click.option("--status-timeout", "status_timeout_s", default=None, type=float, help="Seconds to wait for the ingestion status")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
def run_cmd(as_json: bool, **options: Any) -> None:
    """Ingest one synthetic record, then read the newest rows back."""
    from kustoprobe.orchestrator import RoundTrip

    log = structlog.get_logger()
    cfg = _resolve_config(**options)
    log.info("roundtrip.start", cluster=cfg.endpoint, database=cfg.database, table=cfg.table, auth=cfg.auth_mode.display_name)
    report = RoundTrip(cfg).run()
    if as_json:
        _echo_json(report.as_dict())
    else:
        for row in report.rows:
            click.echo(" | ".join(str(v) for v in row.values))


@main.command("ingest")
@_cluster_options
@click.option("--first-name", default="", help="FirstName of the synthetic record")
@click.option("--second-name", default="", help="LastName of the synthetic record")
@click.option("--flag/--no-flag", default=None, help="Isgood value of the synthetic record")
@click.option("--status-timeout", "status_timeout_s", default=None, type=float, help="Seconds to wait for the ingestion status")
@click.option("--wait/--no-wait", default=True, show_default=True, help="Wait for the terminal ingestion status")
def ingest_cmd(wait: bool, **options: Any) -> None:
    """Ingest one synthetic record and report the ingestion outcome."""
    from kustoprobe.deadline import Deadline
    from kustoprobe.ingest import IngestOptions, ingest_one
    from kustoprobe.orchestrator import connect
    from kustoprobe.records import TelemetryRecord

    cfg = _resolve_config(**options)
    deadline = Deadline(cfg.run_timeout_s)
    descriptor = connect(cfg)
    record = TelemetryRecord.now(cfg.first_name, cfg.second_name, cfg.flag)
    outcome = ingest_one(
        descriptor,
        cfg.database,
        cfg.table,
        record,
        options=IngestOptions(
            staging_dir=cfg.staging_dir,
            wait_for_status=wait,
            status_timeout_s=cfg.status_timeout_s,
            status_poll_interval_s=cfg.status_poll_interval_s,
        ),
        deadline=deadline,
    )
    _echo_json({"record": record.as_dict(), **outcome.as_dict()})
    outcome.raise_for_error()


@main.command("query")
@_cluster_options
@click.option("--rows", "row_limit", default=None, type=int, help="How many of the newest rows to read")
def query_cmd(**options: Any) -> None:
    """Print the newest rows of the table."""
    from kustoprobe.connection import make_query_client
    from kustoprobe.deadline import Deadline
    from kustoprobe.orchestrator import connect
    from kustoprobe.query import last_n_query, query_last_n

    cfg = _resolve_config(**options)
    deadline = Deadline(cfg.run_timeout_s)
    descriptor = connect(cfg)
    client = make_query_client(descriptor)
    try:
        query_text = last_n_query(cfg.table, cfg.row_limit)
        with query_last_n(client, cfg.database, query_text, limit=cfg.row_limit, deadline=deadline) as stream:
            for row in stream:
                _echo_json(row.as_dict())
    finally:
        client.close()


def entrypoint() -> None:
    """
    Console entrypoint: run the click group and map the outcome to an exit code.

    0 = success, 1 = any failure, 130 = interrupted.
    """
    exit_code = 0
    try:
        main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        exit_code = int(e.exit_code)
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        exit_code = 1
    except SystemExit as e:
        try:
            exit_code = int(e.code or 0)
        except Exception:
            exit_code = 1
    except KeyboardInterrupt:
        exit_code = 130
    except ProbeError as e:
        exit_code = 1
        structlog.get_logger().error("kustoprobe.failed", stage=e.stage, error=str(e))
        click.echo(f"error: {e}", err=True)
    except Exception as e:
        exit_code = 1
        structlog.get_logger().exception("kustoprobe.failed", error=str(e))
        click.echo(f"error: {e}", err=True)

    raise SystemExit(exit_code)


if __name__ == "__main__":
    entrypoint()
