from __future__ import annotations

import csv
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
import structlog

from kustoprobe.auth import Credential
from kustoprobe.records import COLUMNS, parse_timestamp


def _has_cluster() -> bool:
    return bool(os.environ.get("KUSTOPROBE_CLUSTER_URL"))


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "integration: requires a live cluster and credentials")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if not _has_cluster():
        skip_integration = pytest.mark.skip(reason="Missing KUSTOPROBE_CLUSTER_URL (.env not configured)")
        for item in items:
            if "integration" in item.keywords:
                item.add_marker(skip_integration)


# ---------------------------------------------------------------------------
# In-memory cluster
# ---------------------------------------------------------------------------


class FakeQueue:
    def __init__(self) -> None:
        self.messages: list[Any] = []

    def pop(self, n: int = 1) -> list[Any]:
        out, self.messages = self.messages[:n], self.messages[n:]
        return out


class FakeStatusQueues:
    def __init__(self, cluster: "FakeCluster") -> None:
        self.success = cluster.success_queue
        self.failure = cluster.failure_queue


class FakeIngestClient:
    def __init__(self, cluster: "FakeCluster") -> None:
        self.cluster = cluster
        self.closed = 0

    def ingest_from_file(self, file_descriptor: Any, ingestion_properties: Any) -> Any:
        cluster = self.cluster
        path = Path(getattr(file_descriptor, "path", file_descriptor))
        source_id = str(getattr(file_descriptor, "source_id", ""))
        cluster.submissions.append(
            {
                "path": path,
                "existed": path.exists(),
                "source_id": source_id,
                "properties": ingestion_properties,
            }
        )
        if cluster.reject_submit:
            raise RuntimeError("submission rejected: table not found")
        with path.open(newline="", encoding="utf-8") as f:
            rows = list(csv.reader(f))
        if cluster.terminal == "failure":
            cluster.failure_queue.messages.append(
                SimpleNamespace(IngestionSourceId=source_id, ErrorCode="BadRequest_InvalidCsv", Details="bad payload")
            )
            return SimpleNamespace(source_id=source_id)
        for ts, first, last, flag in rows:
            cluster.add_row(parse_timestamp(ts), first, last, flag == "true")
        if cluster.terminal == "success":
            cluster.success_queue.messages.append(SimpleNamespace(IngestionSourceId=source_id))
        return SimpleNamespace(source_id=source_id)

    def close(self) -> None:
        self.closed += 1


class FakeTable:
    def __init__(self, columns: tuple[str, ...], rows: list[Any]) -> None:
        self.columns = [SimpleNamespace(column_name=c) for c in columns]
        self._rows = rows

    def __iter__(self):
        for row in self._rows:
            if isinstance(row, Exception):
                raise row
            yield row


class FakeDataset:
    """Same surface as the buffered KustoResponseDataSet: `tables` and `primary_results`, no close()."""

    def __init__(self, tables: list[Any], *, primary_error: Exception | None = None) -> None:
        self.tables = tables
        self.primary_error = primary_error

    @property
    def primary_results(self) -> list[Any]:
        if self.primary_error is not None:
            raise self.primary_error
        return self.tables


class FakeQueryClient:
    _TAKE_RE = re.compile(r"\|\s*take\s+(\d+)\s*$")

    def __init__(self, cluster: "FakeCluster") -> None:
        self.cluster = cluster
        self.closed = 0
        self.queries: list[tuple[str, str]] = []
        self.datasets: list[FakeDataset] = []

    def execute_query(self, database: str, query: str, properties: Any = None) -> FakeDataset:
        cluster = self.cluster
        self.queries.append((database, query))
        if cluster.reject_query:
            raise RuntimeError("Semantic error: table not found")
        rows: list[Any] = sorted(cluster.rows, key=lambda r: r[0], reverse=True)
        m = self._TAKE_RE.search(query)
        if m and not cluster.ignore_take:
            rows = rows[: int(m.group(1))]
        if cluster.row_error_at is not None:
            rows = list(rows)
            rows.insert(cluster.row_error_at, RuntimeError("row-level failure"))
        ds = FakeDataset([FakeTable(COLUMNS, rows)], primary_error=cluster.primary_error)
        self.datasets.append(ds)
        return ds

    def close(self) -> None:
        self.closed += 1


@dataclass
class FakeCluster:
    rows: list[tuple[datetime, str, str, bool]] = field(default_factory=list)
    terminal: str | None = "success"
    reject_submit: bool = False
    reject_query: bool = False
    ignore_take: bool = False
    primary_error: Exception | None = None
    row_error_at: int | None = None
    success_queue: FakeQueue = field(default_factory=FakeQueue)
    failure_queue: FakeQueue = field(default_factory=FakeQueue)
    submissions: list[dict[str, Any]] = field(default_factory=list)
    ingest_clients: list[FakeIngestClient] = field(default_factory=list)
    query_clients: list[FakeQueryClient] = field(default_factory=list)

    def add_row(self, ts: datetime | None, first: str, last: str, flag: bool) -> None:
        assert ts is not None
        self.rows.append((ts, first, last, flag))

    def ingest_client(self, _descriptor: Any = None) -> FakeIngestClient:
        c = FakeIngestClient(self)
        self.ingest_clients.append(c)
        return c

    def query_client(self, _descriptor: Any = None) -> FakeQueryClient:
        c = FakeQueryClient(self)
        self.query_clients.append(c)
        return c

    def status_queues(self, _client: Any = None) -> FakeStatusQueues:
        return FakeStatusQueues(self)

    def dataset(self, tables: list[Any] | None = None) -> FakeDataset:
        return FakeDataset(list(tables or []))


@pytest.fixture()
def fake_cluster(monkeypatch: pytest.MonkeyPatch) -> FakeCluster:
    """
    Wire the in-memory cluster into every SDK seam (auth, ingest, status, query).
    """
    cluster = FakeCluster()
    monkeypatch.setattr("kustoprobe.ingest.make_ingest_client", cluster.ingest_client)
    monkeypatch.setattr("kustoprobe.ingest.make_status_queues", cluster.status_queues)
    monkeypatch.setattr("kustoprobe.orchestrator.make_query_client", cluster.query_client)
    monkeypatch.setattr("kustoprobe.connection.make_query_client", cluster.query_client)
    monkeypatch.setattr("kustoprobe.orchestrator.obtain_credential", lambda mode, scope: Credential.bearer("test-token"))
    return cluster


@pytest.fixture()
def cluster_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("KUSTOPROBE_CLUSTER_URL", "https://probe.eastus.kusto.windows.net")
    monkeypatch.setenv("KUSTOPROBE_STAGING_DIR", str(tmp_path / "staging"))
    for key in ("KUSTOPROBE_DATABASE", "KUSTOPROBE_TABLE", "KUSTOPROBE_AUTH_MODE", "KUSTOPROBE_ROW_LIMIT", "KUSTOPROBE_INGEST_URL", "KUSTOPROBE_FLAG"):
        monkeypatch.delenv(key, raising=False)
    return tmp_path / "staging"


@pytest.fixture(autouse=True)
def _reset_logging():
    """CLI tests configure structlog/root handlers against CliRunner streams; undo that."""
    yield
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
