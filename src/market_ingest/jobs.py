"""Job lifecycle tracking backed by the procstates table."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterator

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, sessionmaker

from .config import get_settings
from .db import session_scope, utcnow
from .errors import ActiveJobConflict, InvalidJobState, JobCancelled
from .models import ProcState, ProcType, State
from .reconciler import ReconcileReport
from .repository import get_or_create_proc_type, get_or_create_state


logger = logging.getLogger(__name__)

NOTE_CANCELLED = "cancelled"
NOTE_RECOVERED = "recovered"
NOTE_STALE = "stale"
MAX_NOTE_LENGTH = 2000


class JobOutcome(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ConflictPolicy(str, Enum):
    RAISE = "raise"
    SKIP = "skip"
    WAIT = "wait"
    FORCE_STALE = "force_stale"


@dataclass(slots=True, frozen=True)
class JobHandle:
    spid: int
    proc_type: str
    started_at: datetime


@dataclass(slots=True, frozen=True)
class JobRecord:
    spid: int
    proc_type: str
    started_at: datetime
    state: JobOutcome
    ended_at: datetime | None = None
    inserted: int | None = None
    updated: int | None = None
    skipped: int | None = None
    failed: int | None = None
    note: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state is JobOutcome.RUNNING

    @property
    def duration_seconds(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds())


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled("job cancelled")


@dataclass(slots=True)
class JobContext:
    handle: JobHandle
    token: CancellationToken = field(default_factory=CancellationToken)
    report: ReconcileReport = field(default_factory=ReconcileReport)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, report: ReconcileReport) -> None:
        with self._lock:
            self.report.merge(report)

    def checkpoint(self) -> None:
        self.token.raise_if_cancelled()


def _describe(exc: BaseException) -> str:
    text = f"{type(exc).__name__}: {exc}"
    return text[:MAX_NOTE_LENGTH]


class JobOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        stale_after: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self._session_factory = session_factory
        if stale_after is None:
            stale_after = timedelta(seconds=get_settings().stale_after_seconds)
        self._stale_after = stale_after
        self._clock = clock or utcnow
        self._poll_interval = poll_interval

    def _scope(self):
        return session_scope(self._session_factory)

    def _ensure_proc_type(self, proc_type: str) -> int:
        try:
            with self._scope() as session:
                return get_or_create_proc_type(session, proc_type).id
        except IntegrityError:
            with self._scope() as session:
                return get_or_create_proc_type(session, proc_type).id

    def _insert_running(self, proc_type: str, proc_id: int) -> JobHandle:
        with self._scope() as session:
            row = ProcState(proc_id=proc_id, start_time=self._clock(), end_state=None)
            session.add(row)
            session.flush()
            handle = JobHandle(spid=row.spid, proc_type=proc_type, started_at=row.start_time)
        logger.info("Started %s (spid %s)", proc_type, handle.spid)
        return handle

    def begin(
        self,
        proc_type: str,
        *,
        on_conflict: ConflictPolicy | str = ConflictPolicy.RAISE,
        wait_timeout: float | None = None,
    ) -> JobHandle | None:
        """Open a run of ``proc_type``.

        Only one run per type may be open. The partial unique index on
        procstates decides races between processes; the loser sees an
        IntegrityError and ``on_conflict`` chooses what happens next. Returns
        None only under ``ConflictPolicy.SKIP``.
        """
        policy = ConflictPolicy(on_conflict)
        proc_id = self._ensure_proc_type(proc_type)
        deadline: float | None = None
        vanished = 0
        while True:
            try:
                return self._insert_running(proc_type, proc_id)
            except IntegrityError:
                active = self.list_active(proc_type)
            if not active:
                # The blocking run closed before we could look at it.
                vanished += 1
                if vanished > 3:
                    raise InvalidJobState(f"could not start {proc_type}")
                continue

            if policy is ConflictPolicy.SKIP:
                logger.info("Skipping %s: spid %s still running", proc_type, active[0].spid)
                return None
            if policy is ConflictPolicy.RAISE:
                raise ActiveJobConflict(proc_type, active)
            if policy is ConflictPolicy.FORCE_STALE:
                closed = self._close_stale(proc_type, self._stale_after, NOTE_STALE)
                if not closed:
                    raise ActiveJobConflict(proc_type, active)
                logger.warning("Force-closed stale %s runs %s", proc_type, closed)
                continue

            if deadline is None:
                timeout = wait_timeout if wait_timeout is not None else self._stale_after.total_seconds()
                deadline = time.monotonic() + timeout
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ActiveJobConflict(proc_type, active)
            logger.debug("Waiting for %s spid %s to finish", proc_type, active[0].spid)
            time.sleep(min(self._poll_interval, remaining))

    def complete(
        self,
        handle: JobHandle,
        outcome: JobOutcome | str,
        *,
        report: ReconcileReport | None = None,
        note: str | None = None,
    ) -> None:
        try:
            outcome = JobOutcome(outcome)
        except ValueError as exc:
            raise InvalidJobState(f"unknown job outcome {outcome!r}") from exc
        if outcome is JobOutcome.RUNNING:
            raise InvalidJobState("a job can only be completed as success or failed")

        values: dict[str, object] = {"end_time": self._clock(), "note": note}
        if report is not None:
            values.update(report.as_dict())
        with self._scope() as session:
            values["end_state"] = get_or_create_state(session, outcome.value).id
            stmt = (
                update(ProcState)
                .where(ProcState.spid == handle.spid, ProcState.end_state.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = session.execute(stmt)
            if result.rowcount != 1:
                if session.get(ProcState, handle.spid) is None:
                    raise InvalidJobState(f"unknown job spid {handle.spid}")
                raise InvalidJobState(f"job spid {handle.spid} is already closed")
        logger.info(
            "Closed %s (spid %s) as %s%s",
            handle.proc_type,
            handle.spid,
            outcome.value,
            f": {note}" if note else "",
        )

    def _select_jobs(self):
        end_state = aliased(State)
        return (
            select(ProcState, ProcType.name, end_state.name)
            .join(ProcType, ProcType.id == ProcState.proc_id)
            .outerjoin(end_state, end_state.id == ProcState.end_state)
        )

    @staticmethod
    def _to_record(row: ProcState, proc_name: str, state_name: str | None) -> JobRecord:
        return JobRecord(
            spid=row.spid,
            proc_type=proc_name,
            started_at=row.start_time,
            state=JobOutcome(state_name) if state_name else JobOutcome.RUNNING,
            ended_at=row.end_time,
            inserted=row.inserted,
            updated=row.updated,
            skipped=row.skipped,
            failed=row.failed,
            note=row.note,
        )

    def list_active(self, proc_type: str | None = None) -> list[JobRecord]:
        stmt = self._select_jobs().where(ProcState.end_state.is_(None)).order_by(ProcState.spid)
        if proc_type is not None:
            stmt = stmt.where(ProcType.name == proc_type)
        with self._scope() as session:
            return [self._to_record(*row) for row in session.execute(stmt)]

    def get_job(self, spid: int) -> JobRecord:
        stmt = self._select_jobs().where(ProcState.spid == spid)
        with self._scope() as session:
            row = session.execute(stmt).first()
        if row is None:
            raise InvalidJobState(f"unknown job spid {spid}")
        return self._to_record(*row)

    def list_recent(self, limit: int = 20, proc_type: str | None = None) -> list[JobRecord]:
        stmt = self._select_jobs()
        if proc_type is not None:
            stmt = stmt.where(ProcType.name == proc_type)
        stmt = stmt.order_by(ProcState.start_time.desc(), ProcState.spid.desc()).limit(limit)
        with self._scope() as session:
            return [self._to_record(*row) for row in session.execute(stmt)]

    def _close_stale(self, proc_type: str | None, older_than: timedelta, note: str) -> list[int]:
        now = self._clock()
        cutoff = now - older_than
        closed: list[int] = []
        with self._scope() as session:
            failed_id = get_or_create_state(session, JobOutcome.FAILED.value).id
            stmt = select(ProcState.spid).where(
                ProcState.end_state.is_(None), ProcState.start_time <= cutoff
            )
            if proc_type is not None:
                stmt = stmt.join(ProcType, ProcType.id == ProcState.proc_id).where(ProcType.name == proc_type)
            for spid in list(session.execute(stmt).scalars()):
                result = session.execute(
                    update(ProcState)
                    .where(ProcState.spid == spid, ProcState.end_state.is_(None))
                    .values(end_state=failed_id, end_time=now, note=note)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    closed.append(spid)
        return closed

    def recover_stale(
        self, proc_type: str | None = None, *, older_than: timedelta | None = None
    ) -> list[int]:
        """Close abandoned runs as failed. ``older_than=timedelta(0)`` closes every open run."""
        closed = self._close_stale(
            proc_type, self._stale_after if older_than is None else older_than, NOTE_RECOVERED
        )
        if closed:
            logger.warning("Recovered stale jobs %s", closed)
        return closed

    @contextmanager
    def track(
        self,
        proc_type: str,
        *,
        on_conflict: ConflictPolicy | str = ConflictPolicy.RAISE,
        wait_timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> Iterator[JobContext | None]:
        """Run the body as one job. Yields None when the run was skipped."""
        handle = self.begin(proc_type, on_conflict=on_conflict, wait_timeout=wait_timeout)
        if handle is None:
            yield None
            return
        context = JobContext(handle=handle, token=token or CancellationToken())
        try:
            yield context
        except JobCancelled:
            self.complete(handle, JobOutcome.FAILED, report=context.report, note=NOTE_CANCELLED)
            raise
        except BaseException as exc:
            self.complete(handle, JobOutcome.FAILED, report=context.report, note=_describe(exc))
            raise
        self.complete(handle, JobOutcome.SUCCESS, report=context.report)


__all__ = [
    "CancellationToken",
    "ConflictPolicy",
    "JobContext",
    "JobHandle",
    "JobOrchestrator",
    "JobOutcome",
    "JobRecord",
    "NOTE_CANCELLED",
    "NOTE_RECOVERED",
    "NOTE_STALE",
]
