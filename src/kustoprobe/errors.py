"""
Stage-tagged error taxonomy.

Every failure is wrapped once at the seam where it happens, tagged with the
stage that produced it, and propagated unchanged to the caller.
"""

from __future__ import annotations


class ProbeError(RuntimeError):
    """Base class for all kustoprobe failures."""

    default_stage = "probe"

    def __init__(self, message: str, *, cause: BaseException | None = None, stage: str | None = None) -> None:
        self.stage = str(stage or self.default_stage)
        self.message = str(message)
        self.cause = cause
        super().__init__(self._render())
        if cause is not None:
            self.__cause__ = cause

    def _render(self) -> str:
        text = f"{self.stage}: {self.message}"
        if self.cause is not None:
            detail = str(self.cause).strip() or type(self.cause).__name__
            text = f"{text}: {detail}"
        return text


class AuthError(ProbeError):
    default_stage = "auth"


class ClusterConnectionError(ProbeError):
    default_stage = "connect"


class IngestError(ProbeError):
    default_stage = "ingest"


class QueryError(ProbeError):
    default_stage = "query"


class DeadlineExceeded(ProbeError):
    default_stage = "deadline"
