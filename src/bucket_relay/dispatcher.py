"""
Bounded-concurrency dispatch of copy tasks.

The dispatcher consumes pages of source keys as they are listed, admits one
copy worker per key whenever a concurrency slot is free and waits for every
launched worker before the batch is considered complete.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional, Set

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from bucket_relay.config import Config, join_key
from bucket_relay.deadline import BatchDeadline
from bucket_relay.exceptions import DeadlineExceeded, ListingError
from bucket_relay.slots import ConcurrencySlots
from bucket_relay.worker import CopyOutcome, CopyTask, OutcomeStatus, copy_worker

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    """
    Aggregate outcome counts of a batch, computed at the dispatcher.

    Attributes:
        listed (int): Number of keys handed to the dispatcher.
        counts (Dict[OutcomeStatus, int]): Number of outcomes per status.
        peak_in_flight (int): Highest number of copies in flight at once.
    """

    listed: int = 0
    counts: Dict[OutcomeStatus, int] = field(
        default_factory=lambda: {status: 0 for status in OutcomeStatus}
    )
    peak_in_flight: int = 0

    def record(self, outcome: CopyOutcome) -> None:
        self.counts[outcome.status] += 1

    @property
    def total(self) -> int:
        """Number of outcomes recorded."""
        return sum(self.counts.values())

    @property
    def copied(self) -> int:
        return self.counts[OutcomeStatus.COPIED]

    @property
    def failed(self) -> int:
        return self.total - self.copied


class Dispatcher:
    """Drives copy workers for a stream of source keys under a slot limit."""

    def __init__(
        self,
        client: "S3Client",
        config: Config,
        deadline: BatchDeadline,
    ) -> None:
        """
        Initializes the dispatcher.

        Args:
            client (S3Client): The aiobotocore S3 client shared by all workers.
            config (Config): The application configuration.
            deadline (BatchDeadline): The batch deadline.
        """
        self._client: "S3Client" = client
        self._config: Config = config
        self._deadline: BatchDeadline = deadline
        self._slots: ConcurrencySlots = ConcurrencySlots(config.app.concurrency)
        self._pending: Set[asyncio.Task[CopyOutcome]] = set()
        self._progress: Optional[Progress] = None
        self._progress_task: Optional[TaskID] = None

    @property
    def slots(self) -> ConcurrencySlots:
        return self._slots

    def make_task(self, source_key: str) -> CopyTask:
        """
        Derives the copy task for a source key.

        Args:
            source_key (str): A key produced by the lister.

        Returns:
            CopyTask: The task copying the key beneath the destination prefix.
        """
        return CopyTask(
            source_bucket=self._config.source.bucket,
            source_key=source_key,
            target_bucket=self._config.destination.bucket,
            target_key=join_key(self._config.destination.key, source_key),
        )

    async def run(self, pages: AsyncIterator[List[str]]) -> BatchSummary:
        """
        Copies every key from `pages` and waits for all copies to finish.

        Args:
            pages (AsyncIterator[List[str]]): Pages of source keys, as listed.

        Returns:
            BatchSummary: Outcome counts; `total` always equals `listed`.

        Raises:
            ListingError: If the listing fails. In-flight copies are aborted
                and drained before it propagates.
        """
        summary: BatchSummary = BatchSummary()
        progress: Optional[Progress] = None
        if self._config.app.show_progress:
            progress = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                TextColumn("([bold cyan]In flight: {task.fields[in_flight]})"),
                console=Console(stderr=True),
                transient=True,
                # Piped stdout keeps its records out of the bar's stream.
                redirect_stdout=sys.stdout.isatty(),
            )
            progress.start()
            self._progress = progress
            self._progress_task = progress.add_task(
                "Copying...",
                total=None if self._config.app.recursive else 1,
                in_flight=0,
            )

        try:
            async for keys in pages:
                for key in keys:
                    summary.listed += 1
                    await self._admit(self.make_task(key), summary)
            if progress is not None and self._progress_task is not None:
                progress.update(self._progress_task, total=summary.listed)
        except ListingError as e:
            self._deadline.fire(f"listing failed: {e}")
            raise
        except BaseException:
            self._deadline.fire("batch interrupted")
            raise
        finally:
            await self._drain(summary)
            summary.peak_in_flight = self._slots.peak_in_flight
            if progress is not None:
                progress.stop()
            self._progress = None
            self._progress_task = None

        return summary

    async def _admit(self, task: CopyTask, summary: BatchSummary) -> None:
        """
        Waits for a free slot, then launches a worker for `task`.

        If the deadline fires first, the task is reported as aborted without
        a worker ever being started.
        """
        try:
            await self._deadline.bound(self._slots.acquire())
        except DeadlineExceeded as e:
            logger.error(
                f"Aborted copy of object '{task.source_key}': deadline exceeded ({e})"
            )
            self._record(
                CopyOutcome(task=task, status=OutcomeStatus.ABORTED, error=str(e)),
                summary,
            )
            return

        worker: asyncio.Task[CopyOutcome] = asyncio.create_task(
            copy_worker(
                task,
                self._client,
                self._config.app,
                self._deadline,
                self._slots,
            )
        )
        self._pending.add(worker)
        self._reap(summary)

    def _reap(self, summary: BatchSummary) -> None:
        """Records the outcomes of finished workers and forgets them."""
        finished: List[asyncio.Task[CopyOutcome]] = [
            worker for worker in self._pending if worker.done()
        ]
        for worker in finished:
            self._pending.discard(worker)
            self._record(worker.result(), summary)

    async def _drain(self, summary: BatchSummary) -> None:
        """Waits for every outstanding worker and records its outcome."""
        if self._pending:
            logger.debug(f"Waiting for {len(self._pending)} in-flight copies...")
            await asyncio.wait(self._pending)
        self._reap(summary)

    def _record(self, outcome: CopyOutcome, summary: BatchSummary) -> None:
        summary.record(outcome)
        if self._progress is not None and self._progress_task is not None:
            self._progress.update(
                self._progress_task, advance=1, in_flight=self._slots.in_flight
            )
