"""
Round trip: authenticate -> ingest one synthetic record -> read the newest rows back.

Any failure is fatal to the run and propagates unchanged to the caller.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from kustoprobe.auth import AuthMode, Credential, obtain_credential, scope_for
from kustoprobe.config import ProbeConfig
from kustoprobe.connection import ConnectionDescriptor, build_descriptor, make_query_client
from kustoprobe.deadline import Deadline
from kustoprobe.errors import AuthError, QueryError
from kustoprobe.ingest import IngestionOutcome, IngestOptions, ingest_one
from kustoprobe.query import RowResult, last_n_query, query_last_n
from kustoprobe.records import TelemetryRecord, format_timestamp, parse_timestamp

log = structlog.get_logger()

TIMESTAMP_COLUMN = "Timestamp"


@dataclass
class RoundTripReport:
    auth_mode: AuthMode
    database: str
    table: str
    record: TelemetryRecord
    outcome: IngestionOutcome
    rows: list[RowResult] = field(default_factory=list)
    visible: bool = False
    elapsed_s: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": bool(self.outcome.success and self.visible),
            "auth_mode": self.auth_mode.display_name,
            "database": self.database,
            "table": self.table,
            "record": self.record.as_dict(),
            "ingest": self.outcome.as_dict(),
            "visible": bool(self.visible),
            "rows": [r.as_dict() for r in self.rows],
            "elapsed_s": round(float(self.elapsed_s), 3),
        }


def row_timestamp(row: RowResult) -> Any:
    value = row.get(TIMESTAMP_COLUMN)
    if value is None and len(row):
        value = row[0]
    return parse_timestamp(value)


def contains_record(rows: list[RowResult], record: TelemetryRecord) -> bool:
    return any(row_timestamp(r) == record.timestamp for r in rows)


def connect(config: ProbeConfig) -> ConnectionDescriptor:
    """Obtain a credential and build the shared connection descriptor."""
    log.info("roundtrip.auth", mode=config.auth_mode.display_name)
    credential: Credential = obtain_credential(config.auth_mode, scope_for(config.endpoint))
    return build_descriptor(config.endpoint, credential, ingest_endpoint=config.ingest_endpoint)


class RoundTrip:
    """
    Sequences one ingest-then-read run for a ProbeConfig.
    """

    def __init__(
        self,
        config: ProbeConfig,
        *,
        record_factory: Callable[[], TelemetryRecord] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._record_factory = record_factory or (
            lambda: TelemetryRecord.now(config.first_name, config.second_name, config.flag)
        )
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock

    def ingest_options(self) -> IngestOptions:
        return IngestOptions(
            staging_dir=self.config.staging_dir,
            wait_for_status=True,
            status_timeout_s=self.config.status_timeout_s,
            status_poll_interval_s=self.config.status_poll_interval_s,
        )

    def run(self) -> RoundTripReport:
        cfg = self.config
        deadline = Deadline(cfg.run_timeout_s)
        descriptor = connect(cfg)

        client = make_query_client(descriptor)
        try:
            record = self._record_factory()
            self._check_token(descriptor, "ingest")
            log.info("roundtrip.ingest", database=cfg.database, table=cfg.table, timestamp=format_timestamp(record.timestamp))
            outcome = ingest_one(descriptor, cfg.database, cfg.table, record, options=self.ingest_options(), deadline=deadline)
            outcome.raise_for_error()

            log.info("roundtrip.query", database=cfg.database, table=cfg.table, limit=cfg.row_limit)
            rows, visible = self._read_back(client, descriptor, record, deadline)
            report = RoundTripReport(
                auth_mode=descriptor.auth_mode,
                database=cfg.database,
                table=cfg.table,
                record=record,
                outcome=outcome,
                rows=rows,
                visible=visible,
            )
        finally:
            client.close()

        for row in rows:
            log.info("roundtrip.row", row={k: _loggable(v) for k, v in row.as_dict().items()})
        report.elapsed_s = deadline.elapsed()
        log.info("roundtrip.done", visible=visible, rows=len(rows), elapsed_s=round(report.elapsed_s, 3))
        return report

    def _check_token(self, descriptor: ConnectionDescriptor, stage: str) -> None:
        cred = descriptor.credential
        if cred.expired(self._wall_clock()):
            log.error("roundtrip.token_expired", stage=stage, expires_on=cred.expires_on)
            raise AuthError(f"bearer token expired before {stage}")

    def _read_back(
        self, client: Any, descriptor: ConnectionDescriptor, record: TelemetryRecord, deadline: Deadline
    ) -> tuple[list[RowResult], bool]:
        """
        Re-query until the ingested record shows up or the visibility timeout passes.
        """
        cfg = self.config
        query_text = last_n_query(cfg.table, cfg.row_limit)
        wait_s = deadline.cap(cfg.visibility_timeout_s)
        started_at = self._clock()
        attempt = 0
        while True:
            attempt += 1
            self._check_token(descriptor, "query")
            with query_last_n(client, cfg.database, query_text, limit=cfg.row_limit, deadline=deadline) as stream:
                rows = list(stream)
            visible = contains_record(rows, record)
            if visible or cfg.visibility_timeout_s <= 0:
                log.info("roundtrip.visibility", visible=visible, attempts=attempt)
                return rows, visible
            elapsed = self._clock() - started_at
            if elapsed >= wait_s:
                raise QueryError(
                    f"ingested record not visible after {elapsed:.1f}s "
                    f"(timestamp={format_timestamp(record.timestamp)}, attempts={attempt})"
                )
            log.info("roundtrip.waiting_for_visibility", attempt=attempt, elapsed_s=round(elapsed, 3))
            self._sleep(min(cfg.visibility_poll_interval_s, max(0.0, wait_s - elapsed)))


def _loggable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def run_round_trip(config: ProbeConfig, **kwargs: Any) -> RoundTripReport:
    return RoundTrip(config, **kwargs).run()
