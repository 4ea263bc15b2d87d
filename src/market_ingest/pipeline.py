"""Load jobs: fetch per symbol, reconcile, and record the outcome."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable, Sequence, TypedDict

from .alphavantage_client import AlphaVantageClient
from .config import Settings, get_settings
from .db import init_db, session_scope
from .errors import FetchError, IngestError, SystemicStorageError, TransientFetchError
from .fetch import FetchAdapter, log_missed_symbol, read_missed_symbols, read_symbol_file
from .jobs import CancellationToken, ConflictPolicy, JobContext, JobOrchestrator
from .rate_limit import get_rate_limiter
from .reconciler import Reconciler
from .records import SymbolFlag
from .repository import SidAllocator, known_tickers, list_symbols, list_symbols_missing_overview


logger = logging.getLogger(__name__)

Target = tuple[int, str]


class PipelineStats(TypedDict):
    proc_type: str
    spid: int
    targets: int
    inserted: int
    updated: int
    skipped: int
    failed: int
    transient_failures: int


class TransientBudget:
    """Counts provider failures that survived retries; past the limit the job fails."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.count = 0
        self._lock = threading.Lock()

    def spend(self, ticker: str, exc: TransientFetchError) -> None:
        with self._lock:
            self.count += 1
            count = self.count
        logger.warning("No records for %s after retries (%s/%s): %s", ticker, count, self.limit, exc)
        if count > self.limit:
            raise FetchError(f"too many transient provider failures ({count})") from exc


def build_client(settings: Settings | None = None) -> AlphaVantageClient:
    settings = settings or get_settings()
    return AlphaVantageClient(
        api_key=settings.alpha_vantage_api_key,
        base_url=str(settings.alpha_vantage_base_url),
        timeout=settings.provider_timeout_seconds,
        max_retries=settings.provider_max_retries,
        backoff_base=settings.provider_backoff_base_seconds,
        backoff_cap=settings.provider_backoff_cap_seconds,
        rate_limiter=get_rate_limiter(),
    )


class IngestPipeline:
    def __init__(
        self,
        *,
        adapter: FetchAdapter | None = None,
        reconciler: Reconciler | None = None,
        orchestrator: JobOrchestrator | None = None,
        settings: Settings | None = None,
        workers: int | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._adapter = adapter or FetchAdapter(
            build_client(self._settings),
            sid_allocator=SidAllocator(),
            news_limit=self._settings.news_limit,
        )
        self._reconciler = reconciler or Reconciler()
        self._orchestrator = orchestrator or JobOrchestrator()
        self._workers = workers or self._settings.worker_count
        self._runners: dict[str, Callable[[JobContext, Sequence[str] | None, TransientBudget], int]] = {
            "load_symbols": self._load_symbols,
            "load_missed": self._load_missed,
            "load_overviews": self._load_overviews,
            "load_missed_overviews": self._load_missed_overviews,
            "load_intraday": self._load_intraday,
            "load_open_close": self._load_open_close,
            "load_tops": self._load_tops,
            "load_news": self._load_news,
        }

    @property
    def proc_types(self) -> list[str]:
        return sorted(self._runners)

    def run(
        self,
        proc_type: str,
        *,
        symbols: Sequence[str] | None = None,
        on_conflict: ConflictPolicy | str = ConflictPolicy.RAISE,
        wait_timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> PipelineStats | None:
        runner = self._runners.get(proc_type)
        if runner is None:
            raise IngestError(f"unknown proc type {proc_type!r}")
        budget = TransientBudget(self._settings.max_transient_failures)
        with self._orchestrator.track(
            proc_type, on_conflict=on_conflict, wait_timeout=wait_timeout, token=token
        ) as job:
            if job is None:
                return None
            logger.info("Running %s (spid %s)", proc_type, job.handle.spid)
            targets = runner(job, symbols, budget)

        stats: PipelineStats = PipelineStats(
            proc_type=proc_type,
            spid=job.handle.spid,
            targets=targets,
            transient_failures=budget.count,
            **job.report.as_dict(),
        )
        logger.info(
            "%s finished: targets=%s inserted=%s updated=%s skipped=%s failed=%s transient=%s",
            proc_type,
            targets,
            stats["inserted"],
            stats["updated"],
            stats["skipped"],
            stats["failed"],
            budget.count,
        )
        return stats

    def _fan_out(
        self,
        job: JobContext,
        targets: Sequence[Target],
        budget: TransientBudget,
        work: Callable[[int, str], Iterable],
    ) -> int:
        abort = threading.Event()

        def task(sid: int, ticker: str) -> None:
            if abort.is_set():
                return
            job.checkpoint()
            try:
                records = list(work(sid, ticker))
            except TransientFetchError as exc:
                budget.spend(ticker, exc)
                return
            try:
                job.record(self._reconciler.reconcile(records))
            except SystemicStorageError as exc:
                if exc.report is not None:
                    job.record(exc.report)
                raise

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix=job.handle.proc_type) as pool:
            futures = [pool.submit(task, sid, ticker) for sid, ticker in targets]
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                abort.set()
                for future in futures:
                    future.cancel()
                raise
        return len(targets)

    def _targets(self, symbols: Sequence[str] | None, *, flag: SymbolFlag | None = None) -> list[Target]:
        with session_scope() as session:
            return list_symbols(session, tickers=symbols, flag=flag)

    def _load_symbols(self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget) -> int:
        keywords = list(symbols) if symbols else self._listed_tickers()
        for ticker in self._search_symbols(job, keywords, budget, region=None):
            log_missed_symbol(self._settings.missed_symbols_path, ticker)
        return len(keywords)

    def _load_missed(self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget) -> int:
        path = Path(self._settings.missed_symbols_path)
        keywords = list(symbols) if symbols else read_missed_symbols(path)
        unresolved = self._search_symbols(job, keywords, budget, region=self._settings.symbol_region)
        if not symbols and path.exists():
            path.write_text("".join(f"{ticker}\n" for ticker in unresolved), encoding="utf-8")
        return len(keywords)

    def _listed_tickers(self) -> list[str]:
        tickers: list[str] = []
        for path in self._settings.symbol_files_list():
            if not Path(path).exists():
                logger.warning("Symbol listing %s not found", path)
                continue
            tickers.extend(read_symbol_file(path))
        if not tickers:
            raise IngestError("no tickers to load; pass --symbols or provide SYMBOL_FILES")
        return list(dict.fromkeys(tickers))

    def _search_symbols(
        self,
        job: JobContext,
        keywords: Sequence[str],
        budget: TransientBudget,
        *,
        region: str | None,
    ) -> list[str]:
        """Search each keyword and store new listings. Returns keywords that stayed unresolved."""
        with session_scope() as session:
            known = known_tickers(session)
        resolved = set(known)
        resolved_lock = threading.Lock()

        def work(_sid: int, keyword: str):
            records = list(self._adapter.symbols(keyword, exclude=known, region=region))
            if any(record.symbol == keyword for record in records):
                with resolved_lock:
                    resolved.add(keyword)
            return records

        self._fan_out(job, [(0, keyword) for keyword in keywords], budget, work)
        return [keyword for keyword in keywords if keyword not in resolved]

    def _load_overviews(self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget) -> int:
        with session_scope() as session:
            targets = list_symbols(
                session,
                region=self._settings.symbol_region,
                sec_type=self._settings.symbol_sec_type,
                tickers=symbols,
            )
        return self._fan_out(job, targets, budget, self._adapter.overview)

    def _load_missed_overviews(
        self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget
    ) -> int:
        with session_scope() as session:
            targets = list_symbols_missing_overview(
                session, region=self._settings.symbol_region, sec_type=self._settings.symbol_sec_type
            )
        if symbols:
            wanted = set(symbols)
            targets = [target for target in targets if target[1] in wanted]
        return self._fan_out(job, targets, budget, self._adapter.overview)

    def _load_intraday(self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget) -> int:
        targets = self._targets(symbols, flag=SymbolFlag.OVERVIEW)
        return self._fan_out(job, targets, budget, self._adapter.intraday)

    def _load_open_close(self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget) -> int:
        targets = self._targets(symbols, flag=SymbolFlag.OVERVIEW)
        return self._fan_out(job, targets, budget, self._adapter.daily)

    def _load_news(self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget) -> int:
        targets = self._targets(symbols, flag=SymbolFlag.OVERVIEW)
        return self._fan_out(job, targets, budget, self._adapter.news)

    def _load_tops(self, job: JobContext, symbols: Sequence[str] | None, budget: TransientBudget) -> int:
        return self._fan_out(job, [(0, "TOP_GAINERS_LOSERS")], budget, lambda _sid, _name: self._adapter.top_stats())


def run_job(
    proc_type: str,
    *,
    symbols: Sequence[str] | None = None,
    on_conflict: ConflictPolicy | str = ConflictPolicy.RAISE,
    workers: int | None = None,
    wait_timeout: float | None = None,
    token: CancellationToken | None = None,
) -> PipelineStats | None:
    init_db()
    pipeline = IngestPipeline(workers=workers)
    return pipeline.run(
        proc_type, symbols=symbols, on_conflict=on_conflict, wait_timeout=wait_timeout, token=token
    )


__all__ = ["IngestPipeline", "PipelineStats", "TransientBudget", "build_client", "run_job"]
