"""Exception hierarchy shared by the fetch, reconcile and job layers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .jobs import JobRecord
    from .reconciler import ReconcileReport


class IngestError(Exception):
    """Base class for every error raised by the ingestion engine."""


class FetchError(IngestError):
    """The provider could not deliver records (bad response, auth, quota exhausted)."""


class TransientFetchError(FetchError):
    """A retryable provider failure that outlived the adapter's retry budget."""


class DuplicateRecord(IngestError):
    """A natural key already exists in storage."""

    def __init__(self, kind: str, key: object) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} already stored")


class MalformedRecord(IngestError):
    """A record failed shape validation or references a missing parent."""

    def __init__(self, message: str, record: object | None = None) -> None:
        self.record = record
        super().__init__(message)


class SystemicStorageError(IngestError):
    """Storage failed for reasons unrelated to constraints; the batch was aborted."""

    def __init__(self, message: str, report: "ReconcileReport | None" = None) -> None:
        self.report = report
        super().__init__(message)


class InvalidJobState(IngestError):
    """A job lifecycle operation was applied to a job in the wrong state."""


class ActiveJobConflict(InvalidJobState):
    """Another run of the same proc type is still open."""

    def __init__(self, proc_type: str, active: Sequence["JobRecord"] = ()) -> None:
        self.proc_type = proc_type
        self.active = list(active)
        spids = ", ".join(str(job.spid) for job in self.active) or "unknown"
        super().__init__(f"{proc_type} already running (spid {spids})")


class JobCancelled(IngestError):
    """Raised between batches when a job has been asked to stop."""


__all__ = [
    "ActiveJobConflict",
    "DuplicateRecord",
    "FetchError",
    "IngestError",
    "InvalidJobState",
    "JobCancelled",
    "MalformedRecord",
    "SystemicStorageError",
    "TransientFetchError",
]
