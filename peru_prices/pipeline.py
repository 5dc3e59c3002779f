"""Pipeline orchestrator.

Runs fetch -> extract -> normalize -> write for every target in a catalog
under a bounded worker pool:

1. Targets are queued on an asyncio.Queue consumed by ``concurrency``
   worker tasks
2. Fetches are retried with exponential backoff according to RETRY_POLICY
3. Each target ends with exactly one TargetOutcome; failures in one target
   never stop the others
4. A storage failure aborts the run: workers are cancelled and the
   remaining targets are skipped
5. A global deadline cancels in-flight fetches but lets commits that
   already started finish, so what was written is also reported

The fetcher and store are passed in explicitly; the pipeline holds no
global state.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime, timezone

from peru_prices.catalog import Catalog
from peru_prices.common.exceptions import (
    ExtractionError,
    ExtractionErrorKind,
    FetchError,
    FetchErrorKind,
    WriteError,
    WriteErrorKind,
)
from peru_prices.configuration import PipelineSettings
from peru_prices.data_types import (
    PriceRecord,
    RenderedContent,
    Target,
    WriteResult,
)
from peru_prices.extractor import extract
from peru_prices.normalizer import normalize_all
from peru_prices.report import (
    DEADLINE_EXCEEDED,
    RUN_ABORTED,
    UNEXPECTED,
    Rejection,
    RunRecorder,
    RunReport,
    TargetOutcome,
    TargetStatus,
)
from peru_prices.session.base import Fetcher
from peru_prices.store import CsvStore

logger = logging.getLogger(__name__)

# Whether a fetch error kind is worth another attempt.
RETRY_POLICY: dict[FetchErrorKind, bool] = {
    FetchErrorKind.TIMEOUT: True,
    FetchErrorKind.CONNECTION: True,
    FetchErrorKind.NAVIGATION: False,
}


def backoff_delay(attempt: int, settings: PipelineSettings) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    delay = settings.backoff_initial * (
        settings.backoff_multiplier ** (attempt - 1)
    )
    return min(delay, settings.backoff_max)


class FetchFailed(Exception):
    """All fetch attempts for a target failed."""

    def __init__(self, error: FetchError, attempts: int) -> None:
        self.error = error
        self.attempts = attempts
        super().__init__(str(error))


class Pipeline:
    """Processes a catalog of targets into the store.

    Example::

        async with BrowserSession.open(settings.browser) as session:
            pipeline = Pipeline(session, CsvStore(out_path), settings.pipeline)
            report = await pipeline.run(catalog)
    """

    def __init__(
        self,
        fetcher: Fetcher,
        store: CsvStore,
        settings: PipelineSettings | None = None,
        environment: str = "local",
    ) -> None:
        """Initialize the pipeline.

        Args:
            fetcher: Renders targets (browser, HTTP or router).
            store: Output store; its merge policy applies to the whole run.
            settings: Concurrency, retry, deadline and threshold knobs.
            environment: Name recorded in the run report.
        """
        self.fetcher = fetcher
        self.store = store
        self.settings = settings or PipelineSettings()
        self.environment = environment

        self._queue: asyncio.Queue[Target] = asyncio.Queue()
        self._recorder: RunRecorder | None = None
        self._commits: set[asyncio.Task] = set()
        self._abort_event = asyncio.Event()
        self._abort_error: WriteError | None = None

    @property
    def recorder(self) -> RunRecorder:
        assert self._recorder is not None, "run() has not started"
        return self._recorder

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, catalog: Catalog | Iterable[Target]) -> RunReport:
        """Process every target and return the finalized run report.

        Raises nothing for per-target failures; they are recorded in the
        report. The report is persisted through the store; if that fails
        the error is logged and the report is still returned.
        """
        targets = list(catalog)
        started_at = datetime.now(timezone.utc)
        self._recorder = RunRecorder(
            run_id=uuid.uuid4().hex[:12],
            environment=self.environment,
            started_at=started_at,
            merge_policy=self.store.merge_policy.value,
            target_ids=[t.id for t in targets],
        )
        self._queue = asyncio.Queue()
        self._commits = set()
        self._abort_event = asyncio.Event()
        self._abort_error = None
        for target in targets:
            self._queue.put_nowait(target)

        logger.info(
            f"Starting run {self.recorder.run_id}: {len(targets)} targets, "
            f"concurrency={self.settings.concurrency}",
            extra={"run_id": self.recorder.run_id},
        )
        start = time.monotonic()

        workers = [
            asyncio.create_task(self._worker(i))
            for i in range(min(self.settings.concurrency, len(targets)))
        ]
        deadline_hit = False
        if workers:
            deadline_hit = await self._wait_for_workers(workers)

        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        # Commits that started before a deadline or abort run to completion.
        if self._commits:
            await asyncio.gather(*self._commits, return_exceptions=True)

        aborted = self._abort_error is not None
        if aborted:
            self.recorder.skip_remaining(
                RUN_ABORTED, f"Run aborted: {self._abort_error.message}"
            )
        elif deadline_hit:
            self.recorder.skip_remaining(
                DEADLINE_EXCEEDED,
                f"Run deadline of {self.settings.deadline}s exceeded",
            )

        report = self.recorder.finalize(
            finished_at=datetime.now(timezone.utc),
            fail_threshold=self.settings.fail_threshold,
            aborted=aborted,
        )
        logger.info(
            f"Finished in {time.monotonic() - start:.1f}s "
            f"({report.totals['written']} items): {report.status.value}",
            extra={"run_id": report.run_id, "status": report.status.value},
        )

        try:
            path = await self.store.write_report(report)
            logger.info(f"Run report written to {path}")
        except WriteError:
            logger.exception("Could not persist the run report")
        return report

    async def _wait_for_workers(self, workers: list[asyncio.Task]) -> bool:
        """Wait until the work is done, the run aborts or the deadline hits.

        Returns:
            True if the deadline elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = (
            loop.time() + self.settings.deadline
            if self.settings.deadline is not None
            else None
        )
        abort_waiter = asyncio.create_task(self._abort_event.wait())
        pending = set(workers)
        try:
            while pending:
                timeout = None
                if deadline is not None:
                    timeout = max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    pending | {abort_waiter},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if abort_waiter in done:
                    logger.error("Storage unavailable; aborting run")
                    return False
                pending -= done
                if not done:
                    logger.warning(
                        f"Run deadline of {self.settings.deadline}s "
                        f"exceeded; cancelling {len(pending)} workers"
                    )
                    return True
            return False
        finally:
            abort_waiter.cancel()

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        """Take targets off the queue until it is empty or the run aborts.

        Args:
            worker_id: Identifier for this worker (for debugging).
        """
        while not self._abort_event.is_set():
            try:
                target = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                outcome = await self.process_target(target)
            except WriteError as e:
                if e.kind is WriteErrorKind.STORAGE_UNAVAILABLE:
                    self._abort(e, target.id)
                    break
                outcome = TargetOutcome(
                    target_id=target.id,
                    status=TargetStatus.FAILED,
                    error_kind=e.kind.value,
                    error_message=e.message,
                )
            except Exception as e:
                logger.exception(
                    f"Unexpected error processing {target.id}",
                    extra={"target_id": target.id},
                )
                outcome = TargetOutcome(
                    target_id=target.id,
                    status=TargetStatus.FAILED,
                    error_kind=UNEXPECTED,
                    error_message=f"{type(e).__name__}: {e}",
                )
            finally:
                self._queue.task_done()
            self.recorder.record(outcome)
        logger.debug(f"Worker {worker_id} exiting")

    def _abort(self, error: WriteError, target_id: str) -> None:
        logger.error(
            f"Fatal storage error on {target_id}: {error.message}",
            extra={"target_id": target_id, "error_kind": error.kind.value},
        )
        if not self.recorder.is_final(target_id):
            self.recorder.record(
                TargetOutcome(
                    target_id=target_id,
                    status=TargetStatus.FAILED,
                    error_kind=error.kind.value,
                    error_message=error.message,
                )
            )
        if self._abort_error is None:
            self._abort_error = error
        self._abort_event.set()

    async def fetch_with_retry(
        self, target: Target
    ) -> tuple[RenderedContent, int]:
        """Fetch a target, retrying transient failures.

        Returns:
            The rendered content and the number of attempts made.

        Raises:
            FetchFailed: When the error is not retryable or attempts ran out.
        """
        max_attempts = self.settings.max_retries
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.fetcher.fetch(target), attempt
            except FetchError as e:
                retryable = RETRY_POLICY[e.kind]
                if not retryable or attempt >= max_attempts:
                    logger.warning(
                        f"Giving up on {target.id} after {attempt} "
                        f"attempt(s): {e.kind.value}",
                        extra={
                            "target_id": target.id,
                            "attempt": attempt,
                            "error_kind": e.kind.value,
                        },
                    )
                    raise FetchFailed(e, attempt) from e
                delay = backoff_delay(attempt, self.settings)
                logger.warning(
                    f"Attempt {attempt} for {target.id} failed "
                    f"({e.kind.value}); retrying in {delay:.1f}s",
                    extra={
                        "target_id": target.id,
                        "attempt": attempt,
                        "error_kind": e.kind.value,
                    },
                )
                await asyncio.sleep(delay)

    async def process_target(self, target: Target) -> TargetOutcome:
        """Run one target through fetch, extract, normalize and write.

        Returns:
            The target's final outcome.

        Raises:
            WriteError: STORAGE_UNAVAILABLE, which aborts the run.
        """
        try:
            content, attempts = await self.fetch_with_retry(target)
        except FetchFailed as e:
            return TargetOutcome(
                target_id=target.id,
                status=TargetStatus.FAILED,
                attempts=e.attempts,
                error_kind=e.error.kind.value,
                error_message=e.error.message,
            )

        try:
            candidates = extract(target, content)
        except ExtractionError as e:
            status = (
                TargetStatus.NO_DATA
                if e.kind is ExtractionErrorKind.NO_RECORDS_FOUND
                else TargetStatus.FAILED
            )
            logger.warning(
                f"Extraction failed for {target.id}: {e.kind.value}",
                extra={"target_id": target.id, "error_kind": e.kind.value},
            )
            return TargetOutcome(
                target_id=target.id,
                status=status,
                attempts=attempts,
                error_kind=e.kind.value,
                error_message=e.message,
            )

        records, rejected = normalize_all(
            target, candidates, content.fetched_at, self.settings.timezone
        )
        rejections = tuple(Rejection.from_error(e) for e in rejected)

        if not records:
            return TargetOutcome(
                target_id=target.id,
                status=TargetStatus.FAILED,
                attempts=attempts,
                extracted=len(candidates),
                rejected=rejections,
                error_kind=rejections[0].kind if rejections else None,
                error_message="All extracted records were rejected",
            )

        outcome = TargetOutcome(
            target_id=target.id,
            status=TargetStatus.SUCCEEDED,
            attempts=attempts,
            extracted=len(candidates),
            validated=len(records),
            rejected=rejections,
        )
        result = await self._commit(records, outcome)
        logger.info(
            f"{target.id}: {len(records)} valid, {result.written} written, "
            f"{result.unchanged} unchanged, {len(result.conflicts)} conflicts",
            extra={"target_id": target.id},
        )
        return with_write_result(outcome, result)

    async def _commit(
        self, records: list[PriceRecord], outcome: TargetOutcome
    ) -> WriteResult:
        """Write records in a task that survives cancellation of the worker.

        If the worker is cancelled by the deadline while the write is in
        progress, the commit still completes and ``outcome`` is recorded
        with its write counts once it does.
        """
        commit = asyncio.create_task(self.store.write(records))
        self._commits.add(commit)
        commit.add_done_callback(self._commits.discard)
        try:
            return await asyncio.shield(commit)
        except asyncio.CancelledError:
            commit.add_done_callback(
                lambda task: self._record_late_commit(outcome, task)
            )
            raise

    def _record_late_commit(
        self, outcome: TargetOutcome, task: asyncio.Task
    ) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, WriteError):
            self._abort(error, outcome.target_id)
        elif error is not None:
            self.recorder.record(
                replace(
                    outcome,
                    status=TargetStatus.FAILED,
                    error_kind=UNEXPECTED,
                    error_message=f"{type(error).__name__}: {error}",
                )
            )
        else:
            self.recorder.record(with_write_result(outcome, task.result()))


def with_write_result(
    outcome: TargetOutcome, result: WriteResult
) -> TargetOutcome:
    return replace(
        outcome,
        written=result.written,
        superseded=result.superseded,
        unchanged=result.unchanged,
        conflicts=tuple(result.conflicts),
    )


async def run_pipeline(
    catalog: Catalog,
    fetcher: Fetcher,
    store: CsvStore,
    settings: PipelineSettings | None = None,
    environment: str = "local",
) -> RunReport:
    return await Pipeline(fetcher, store, settings, environment).run(catalog)
