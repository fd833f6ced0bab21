"""
Read path: run a KQL query and iterate the primary result table.

Queries go through `execute_query`, which reads the whole response before it
returns. No transport handle outlives the call; a RowStream only holds the
buffered dataset.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterator

import structlog
from azure.kusto.data import ClientRequestProperties

from kustoprobe.deadline import Deadline
from kustoprobe.errors import QueryError

log = structlog.get_logger()


def last_n_query(table: str, n: int) -> str:
    """KQL for the newest `n` rows of `table` by Timestamp."""
    limit = int(n)
    if limit < 1:
        raise ValueError(f"n must be >= 1 (got {n})")
    name = str(table or "").strip()
    if not name:
        raise ValueError("table is required")
    return f"{name} | order by Timestamp desc | take {limit}"


@dataclass(frozen=True)
class RowResult:
    columns: tuple[str, ...]
    values: tuple[Any, ...]

    def __getitem__(self, key: int | str) -> Any:
        if isinstance(key, str):
            try:
                return self.values[self.columns.index(key)]
            except ValueError:
                raise KeyError(key) from None
        return self.values[key]

    def __len__(self) -> int:
        return len(self.values)

    def get(self, name: str, default: Any = None) -> Any:
        try:
            return self[name]
        except (KeyError, IndexError):
            return default

    def as_dict(self) -> dict[str, Any]:
        if len(self.columns) == len(self.values):
            return dict(zip(self.columns, self.values))
        return {str(i): v for i, v in enumerate(self.values)}


def _column_names(table: Any) -> tuple[str, ...]:
    cols = getattr(table, "columns", None) or []
    return tuple(str(getattr(c, "column_name", c)) for c in cols)


def _row_values(row: Any) -> tuple[Any, ...]:
    to_list = getattr(row, "to_list", None)
    if callable(to_list):
        return tuple(to_list())
    return tuple(row)


class RowStream:
    """
    One-shot iterator over the primary table's rows.

    Yields at most `limit` rows. A row-level error raises QueryError and ends
    the stream. Closing drops the buffered dataset exactly once.
    """

    def __init__(self, dataset: Any, table: Any, *, limit: int | None = None) -> None:
        self.dataset = dataset
        self._rows: Iterator[Any] = iter(table)
        self.columns = _column_names(table)
        self.limit = int(limit) if limit is not None else None
        self.yielded = 0
        self.releases = 0
        self._closed = False

    def __iter__(self) -> "RowStream":
        return self

    def __next__(self) -> RowResult:
        if self._closed:
            raise StopIteration
        if self.limit is not None and self.yielded >= self.limit:
            self.close()
            raise StopIteration
        try:
            raw = next(self._rows)
        except StopIteration:
            self.close()
            raise
        except Exception as e:
            self.close()
            raise QueryError("error getting row result", cause=e) from e
        self.yielded += 1
        return RowResult(columns=self.columns, values=_row_values(raw))

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.releases += 1
        self.dataset = None
        self._rows = iter(())

    def __enter__(self) -> "RowStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def request_properties(deadline: Deadline | None) -> ClientRequestProperties:
    props = ClientRequestProperties()
    rem = deadline.remaining() if deadline is not None else None
    if rem is not None:
        props.set_option(ClientRequestProperties.request_timeout_option_name, timedelta(seconds=max(1.0, rem)))
    return props


def query_last_n(
    client: Any,
    database: str,
    query_text: str,
    *,
    limit: int | None = None,
    deadline: Deadline | None = None,
) -> RowStream:
    """
    Execute `query_text` against `database` and return a RowStream over the
    primary result table.
    """
    if deadline is not None:
        deadline.check("query")
    log.debug("query.execute", database=database, query=query_text)
    try:
        dataset = client.execute_query(database, query_text, properties=request_properties(deadline))
    except Exception as e:
        raise QueryError("error querying dataset", cause=e) from e

    try:
        primary = next(iter(dataset.primary_results), None)
    except Exception as e:
        raise QueryError("error getting primary result", cause=e) from e
    if primary is None:
        raise QueryError("error getting primary result", cause=RuntimeError("dataset has no primary table"))
    return RowStream(dataset, primary, limit=limit)
