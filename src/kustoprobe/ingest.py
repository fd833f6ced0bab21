"""
Managed (queued) ingestion of a single telemetry record.

Flow: stage CSV payload -> submit via QueuedIngestClient -> delete staged file
-> poll the ingestion status queues until this source_id reaches a terminal
status. The ingest client is closed on every exit path.
"""

from __future__ import annotations

import os
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
from azure.kusto.data.data_format import DataFormat
from azure.kusto.ingest import FileDescriptor, IngestionProperties, QueuedIngestClient, ReportLevel, ReportMethod
from azure.kusto.ingest.status import KustoIngestStatusQueues

from kustoprobe.connection import ConnectionDescriptor, connection_string
from kustoprobe.deadline import Deadline
from kustoprobe.errors import IngestError
from kustoprobe.records import TelemetryRecord

log = structlog.get_logger()

_STATUS_POP_BATCH = 32


@dataclass(frozen=True)
class IngestOptions:
    staging_dir: Path | None = None
    wait_for_status: bool = True
    status_timeout_s: float = 300.0
    status_poll_interval_s: float = 5.0


@dataclass(frozen=True)
class IngestionOutcome:
    success: bool
    source_id: str
    status: str
    error: IngestError | None = None

    @classmethod
    def succeeded(cls, source_id: str, status: str = "succeeded") -> "IngestionOutcome":
        return cls(success=True, source_id=source_id, status=status)

    @classmethod
    def failed(cls, source_id: str, error: IngestError, status: str = "failed") -> "IngestionOutcome":
        return cls(success=False, source_id=source_id, status=status, error=error)

    def raise_for_error(self) -> None:
        if self.success:
            return
        raise self.error or IngestError(f"ingestion {self.status}")

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": bool(self.success),
            "source_id": self.source_id,
            "status": self.status,
            "error": (str(self.error) if self.error is not None else None),
        }


def make_ingest_client(descriptor: ConnectionDescriptor) -> QueuedIngestClient:
    return QueuedIngestClient(connection_string(descriptor, descriptor.ingest_endpoint))


def make_status_queues(client: Any) -> Any:
    return KustoIngestStatusQueues(client)


def ingestion_properties(database: str, table: str) -> IngestionProperties:
    return IngestionProperties(
        database=database,
        table=table,
        data_format=DataFormat.CSV,
        flush_immediately=True,
        report_level=ReportLevel.FailuresAndSuccesses,
        report_method=ReportMethod.Queue,
    )


def stage_record(record: TelemetryRecord, *, source_id: str, staging_dir: Path | None = None) -> Path:
    """Write the CSV payload to `ingest-<source_id>.csv`."""
    base = Path(staging_dir) if staging_dir else Path(tempfile.gettempdir())
    base.mkdir(parents=True, exist_ok=True)
    path = base / f"ingest-{source_id}.csv"
    path.write_text(record.to_csv(), encoding="utf-8")
    return path


def _discard_staging(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("ingest.staging_cleanup_failed", path=str(path), error=str(e))


def ingest_one(
    descriptor: ConnectionDescriptor,
    database: str,
    table: str,
    record: TelemetryRecord,
    *,
    options: IngestOptions | None = None,
    deadline: Deadline | None = None,
) -> IngestionOutcome:
    """
    Ingest exactly one record and report its terminal status.

    Failures (client construction, rejected submission, failed or missing
    terminal status) come back as a failure outcome carrying IngestError.
    Nothing is retried.
    """
    opts = options or IngestOptions()
    dl = deadline or Deadline.unbounded()
    source_id = str(uuid.uuid4())

    try:
        client = make_ingest_client(descriptor)
    except Exception as e:
        err = IngestError("error creating ingest client", cause=e)
        log.error("ingest.client_failed", error=str(err))
        return IngestionOutcome.failed(source_id, err)

    try:
        dl.check("ingest")
        props = ingestion_properties(database, table)
        path = stage_record(record, source_id=source_id, staging_dir=opts.staging_dir)
        log.info("ingest.staged", path=str(path), payload=record.to_csv().strip())
        try:
            file_descriptor = FileDescriptor(str(path), source_id=uuid.UUID(source_id))
            # Only the SDK call counts as a rejected submission.
            try:
                client.ingest_from_file(file_descriptor, ingestion_properties=props)
            except Exception as e:
                err = IngestError("error ingesting data", cause=e)
                log.error("ingest.submit_failed", source_id=source_id, error=str(err))
                return IngestionOutcome.failed(source_id, err, status="rejected")
        finally:
            _discard_staging(path)

        log.info("ingest.submitted", source_id=source_id, database=database, table=table)
        if not opts.wait_for_status:
            return IngestionOutcome.succeeded(source_id, status="queued")
        return wait_for_terminal_status(
            client,
            source_id,
            timeout_s=dl.cap(opts.status_timeout_s),
            poll_interval_s=opts.status_poll_interval_s,
            deadline=dl,
        )
    finally:
        client.close()


def _message_source_id(msg: Any) -> str:
    return str(getattr(msg, "IngestionSourceId", "") or "").strip().lower()


def _failure_detail(msg: Any) -> str:
    parts = []
    for attr in ("ErrorCode", "FailureStatus", "Details"):
        val = getattr(msg, attr, None)
        if val:
            parts.append(f"{attr}={val}")
    return "; ".join(parts) or "ingestion failed"


def _status_unavailable(source_id: str, cause: Exception) -> IngestionOutcome:
    err = IngestError("error waiting for ingest", cause=cause)
    log.error("ingest.status_unavailable", source_id=source_id, error=str(err))
    return IngestionOutcome.failed(source_id, err)


def wait_for_terminal_status(
    client: Any,
    source_id: str,
    *,
    timeout_s: float,
    poll_interval_s: float,
    deadline: Deadline | None = None,
    sleep=time.sleep,
) -> IngestionOutcome:
    """
    Block until the status queues report success or failure for `source_id`.

    Failure messages are drained before success messages.
    """
    wanted = str(source_id).strip().lower()
    started_at = time.monotonic()
    poll = max(0.01, float(poll_interval_s))
    try:
        queues = make_status_queues(client)
    except Exception as e:
        return _status_unavailable(source_id, e)

    while True:
        try:
            failures = queues.failure.pop(_STATUS_POP_BATCH)
            successes = queues.success.pop(_STATUS_POP_BATCH)
        except Exception as e:
            return _status_unavailable(source_id, e)
        for msg in failures:
            if _message_source_id(msg) == wanted:
                err = IngestError("error waiting for ingest", cause=RuntimeError(_failure_detail(msg)))
                log.error("ingest.failed", source_id=source_id, error=str(err))
                return IngestionOutcome.failed(source_id, err)
            log.debug("ingest.status_other_source", kind="failure", source_id=_message_source_id(msg))
        for msg in successes:
            if _message_source_id(msg) == wanted:
                log.info("ingest.succeeded", source_id=source_id, elapsed_s=round(time.monotonic() - started_at, 3))
                return IngestionOutcome.succeeded(source_id)
            log.debug("ingest.status_other_source", kind="success", source_id=_message_source_id(msg))

        elapsed = time.monotonic() - started_at
        if elapsed >= float(timeout_s) or (deadline is not None and deadline.expired()):
            err = IngestError(f"no terminal ingestion status after {elapsed:.1f}s")
            log.error("ingest.status_timeout", source_id=source_id, elapsed_s=round(elapsed, 3))
            return IngestionOutcome.failed(source_id, err, status="timeout")
        log.debug("ingest.waiting", source_id=source_id, elapsed_s=round(elapsed, 3))
        sleep(poll)
