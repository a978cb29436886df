"""
Bulk deletion of every key in one or more buckets.

Keys are enumerated from each bucket concurrently and funnelled into a
single task channel. A fixed pool of worker slots bounds how many deletes
are in flight; each slot carries its own connection, so a connection is
only ever used by the worker holding that slot. Failed deletes are recorded
per key and never stop the rest of the batch.
"""

from __future__ import annotations

import logging
import os
import queue
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Event, Lock
from typing import Any

from riakhttp.channel import Channel
from riakhttp.client import DEFAULT_ROOT_URL, Client
from riakhttp.errors import (
    ConfigurationError,
    PipelineCancelled,
    RiakError,
    ServiceUnavailableError,
    TransportError,
    UnknownKeyError,
)

logger = logging.getLogger(__name__)

# errors worth another attempt; 4xx answers will not change on retry
RETRYABLE_ERRORS = (TransportError, ServiceUnavailableError)


@dataclass
class CleanerConfig:
    """Configuration settings for bulk deletion."""

    root_url: str = DEFAULT_ROOT_URL
    client_id: str = ""
    concurrency: int = 1
    verbose: bool = False
    timeout: float | None = 30.0
    max_retries: int = 0
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0

    @classmethod
    def from_environment(cls) -> CleanerConfig:
        """Create configuration from environment variables."""
        return cls(
            root_url=os.environ.get("RIAK_URL", DEFAULT_ROOT_URL),
            client_id=os.environ.get("RIAK_CLIENT_ID", ""),
        )

    def validate(self) -> None:
        """
        Reject settings the pipeline cannot run with.

        Raises:
            ConfigurationError: For a concurrency below one or negative
                retry settings.
        """
        if self.concurrency < 1:
            raise ConfigurationError(
                f"Concurrency must be at least 1 (got {self.concurrency})"
            )
        if self.max_retries < 0:
            raise ConfigurationError(f"Retries cannot be negative (got {self.max_retries})")
        if self.retry_delay < 0 or self.max_retry_delay < 0:
            raise ConfigurationError("Retry delays cannot be negative")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"Timeout must be positive (got {self.timeout})")


@dataclass
class DeletionStats:
    """Statistics for tracking deletion progress."""

    deleted: int = 0
    missing: int = 0
    failed: int = 0
    retried: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def increment_deleted(self, count: int = 1) -> None:
        """Thread-safe increment of deleted count."""
        with self._lock:
            self.deleted += count

    def increment_missing(self, count: int = 1) -> None:
        """Thread-safe increment of missing count."""
        with self._lock:
            self.missing += count

    def increment_failed(self, count: int = 1) -> None:
        """Thread-safe increment of failed count."""
        with self._lock:
            self.failed += count

    def increment_retried(self, count: int = 1) -> None:
        """Thread-safe increment of retried count."""
        with self._lock:
            self.retried += count


@dataclass(frozen=True)
class DeleteTask:
    bucket: str
    key: str


@dataclass(frozen=True)
class DeleteFailure:
    task: DeleteTask
    error: Exception


@dataclass
class DeleteReport:
    """What a bulk delete did, key by key where it matters."""

    deleted: int = 0
    missing: list[DeleteTask] = field(default_factory=list)
    failures: list[DeleteFailure] = field(default_factory=list)
    failed_buckets: dict[str, Exception] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """True when every bucket was listed and no delete failed."""
        return not self.failures and not self.failed_buckets and not self.cancelled


class WorkerSlot:
    """One concurrency token, owning the connection its holder uses."""

    def __init__(self, index: int, connect: Callable[[], Any]) -> None:
        self.index = index
        self.uses = 0
        self._connect = connect
        self._connection: Any = None

    @property
    def connection(self) -> Any:
        if self._connection is None:
            self._connection = self._connect()
        return self._connection

    def close(self) -> None:
        if self._connection is not None and hasattr(self._connection, "close"):
            self._connection.close()
        self._connection = None


class SlotPool:
    """
    A fixed set of worker slots handed out one holder at a time.

    ``acquire`` blocks while every slot is taken, so no more than ``size``
    operations run under the pool at once. ``in_flight`` and ``peak``
    record how many slots are held now and at most.
    """

    def __init__(self, size: int, connect: Callable[[], Any]) -> None:
        if size < 1:
            raise ConfigurationError(f"A slot pool needs at least one slot (got {size})")
        self.size = size
        self.slots = [WorkerSlot(i, connect) for i in range(size)]
        self._free: queue.Queue[WorkerSlot] = queue.Queue(maxsize=size)
        for slot in self.slots:
            self._free.put(slot)
        self._lock = Lock()
        self.in_flight = 0
        self.peak = 0

    @contextmanager
    def acquire(self) -> Iterator[WorkerSlot]:
        slot = self._free.get()
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            yield slot
        finally:
            with self._lock:
                self.in_flight -= 1
            slot.uses += 1
            self._free.put(slot)

    def close(self) -> None:
        for slot in self.slots:
            slot.close()


class _BucketFeed:
    """Adapts one bucket's key stream onto the shared task channel."""

    def __init__(
        self, bucket: str, tasks: Channel, done: Callable[[], None], cancelled: Event
    ) -> None:
        self.bucket = bucket
        self._tasks = tasks
        self._done = done
        self._cancelled = cancelled

    def put(self, key: str) -> None:
        if self._cancelled.is_set():
            raise PipelineCancelled(f"Listing of {self.bucket} cancelled")
        self._tasks.put(DeleteTask(self.bucket, key))

    def close(self) -> None:
        self._done()


class BucketCleaner:
    """
    Deletes every key in a set of buckets with bounded concurrency.

    Attributes:
        config: Configuration settings for the cleaner.
        client: Client used for listing and deleting.
        stats: Statistics tracking deletion progress.
        slots: The worker slot pool of the last or current run.
    """

    def __init__(self, config: CleanerConfig, client: Client | None = None) -> None:
        config.validate()
        self.config = config
        self.client = client or Client(
            config.root_url, client_id=config.client_id, timeout=config.timeout
        )
        self.stats = DeletionStats()
        self.slots: SlotPool | None = None
        self._cancelled = Event()

    def cancel(self) -> None:
        """Stop listing and issuing deletes; deletes in flight still finish."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def delete_all(self, buckets: Iterable[str]) -> DeleteReport:
        """
        Delete every key of every bucket in ``buckets``.

        Returns only after every enumerated key has been handled. Keys that
        were already gone are reported as missing, not as failures, and a
        bucket that could not be listed does not stop the others.

        Args:
            buckets: Names of the buckets to empty.

        Returns:
            The report of deleted, missing and failed keys.
        """
        buckets = list(dict.fromkeys(buckets))
        report = DeleteReport()
        if not buckets:
            return report

        start_time = time.time()
        self.stats = DeletionStats()
        slots = SlotPool(self.config.concurrency, self.client.connect)
        self.slots = slots
        tasks = Channel()
        remaining = len(buckets)
        remaining_lock = Lock()

        def feed_done() -> None:
            nonlocal remaining
            with remaining_lock:
                remaining -= 1
                last = remaining == 0
            if last:
                tasks.close()

        try:
            with ThreadPoolExecutor(
                max_workers=len(buckets), thread_name_prefix="list"
            ) as listers, ThreadPoolExecutor(
                max_workers=self.config.concurrency, thread_name_prefix="delete"
            ) as workers:
                listings = {
                    listers.submit(
                        self.client.list_keys,
                        bucket,
                        _BucketFeed(bucket, tasks, feed_done, self._cancelled),
                    ): bucket
                    for bucket in buckets
                }
                try:
                    deletes = self._submit_deletes(tasks, workers, slots)
                    self._collect(deletes, report)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; letting deletes in flight finish")
                    self.cancel()
                    raise
                self._collect_listings(listings, report)
        finally:
            slots.close()

        report.deleted = self.stats.deleted
        report.cancelled = self.cancelled
        self._log_statistics(buckets, report, time.time() - start_time)
        return report

    def _submit_deletes(
        self, tasks: Channel, workers: ThreadPoolExecutor, slots: SlotPool
    ) -> dict[Future, DeleteTask]:
        """
        Hand every task from the channel to the worker executor.

        Args:
            tasks: Channel fed by the bucket listings.
            workers: Executor running the deletes.
            slots: Pool bounding how many deletes are in flight.

        Returns:
            Dictionary mapping each submitted future to its task.
        """
        deletes: dict[Future, DeleteTask] = {}
        for task in tasks:
            if self.cancelled:
                # keep draining so every listing can finish
                continue
            deletes[workers.submit(self._delete, task, slots)] = task
        logger.info(f"Waiting on {len(deletes)} deletes..")
        return deletes

    def _collect(self, deletes: dict[Future, DeleteTask], report: DeleteReport) -> None:
        """
        Record the outcome of every delete as it completes.

        Args:
            deletes: Futures returned by ``_submit_deletes``.
            report: Report receiving missing keys and failures.
        """
        for future in as_completed(deletes):
            outcome = future.result()
            if isinstance(outcome, DeleteFailure):
                report.failures.append(outcome)
            elif outcome is not None:
                report.missing.append(outcome)

    def _collect_listings(self, listings: dict[Future, str], report: DeleteReport) -> None:
        """
        Record buckets whose key listing failed.

        Args:
            listings: Listing futures mapped to their bucket names.
            report: Report receiving the failed buckets.

        Raises:
            Exception: Any non-store error raised by a listing.
        """
        for future, bucket in listings.items():
            error = future.exception()
            if error is None or isinstance(error, PipelineCancelled):
                continue
            if not isinstance(error, RiakError):
                raise error
            logger.error(f"Couldn't get bucket {bucket}: {error}")
            report.failed_buckets[bucket] = error

    def _delete(self, task: DeleteTask, slots: SlotPool) -> DeleteTask | DeleteFailure | None:
        """
        Delete one key while holding a worker slot.

        Args:
            task: The key to delete.
            slots: Pool the worker slot is taken from.

        Returns:
            None when deleted, the task itself when the key was already
            gone, or a DeleteFailure.
        """
        if self.cancelled:
            return None
        with slots.acquire() as slot:
            if self.config.verbose:
                logger.info(f"Calling delete on {task.bucket} - {task.key}")
            try:
                self._delete_with_retry(task, slot.connection)
            except UnknownKeyError:
                self.stats.increment_missing()
                logger.info(f"Already absent: {task.bucket} - {task.key}")
                return task
            except RiakError as e:
                self.stats.increment_failed()
                logger.error(f"Error deleting {task.bucket} - {task.key}: {e}")
                return DeleteFailure(task, e)
        self.stats.increment_deleted()
        return None

    def _delete_with_retry(self, task: DeleteTask, connection: Any) -> None:
        """
        Delete one key, retrying transport failures and 503s with backoff.

        Args:
            task: The key to delete.
            connection: Connection owned by the caller's worker slot.

        Raises:
            RiakError: The last error once retries are used up, or any
                error that is not worth retrying.
        """
        attempt = 0
        while True:
            try:
                self.client.delete_item(task.bucket, task.key, connection=connection)
                return
            except RETRYABLE_ERRORS as e:
                if attempt >= self.config.max_retries or self.cancelled:
                    raise
                delay = min(
                    self.config.retry_delay * (2**attempt), self.config.max_retry_delay
                )
                logger.warning(
                    f"Delete of {task.bucket} - {task.key} failed ({e}), retrying in "
                    f"{delay:.1f}s (attempt {attempt + 1}/{self.config.max_retries})"
                )
                self.stats.increment_retried()
                time.sleep(delay)
                attempt += 1

    def _log_statistics(self, buckets: list[str], report: DeleteReport, elapsed: float) -> None:
        rate = self.stats.deleted / elapsed if elapsed > 0 else 0
        logger.info(f"{'=' * 50}")
        logger.info(f"Cleaning of {', '.join(buckets)} completed")
        logger.info(f"Keys deleted: {self.stats.deleted}")
        logger.info(f"Keys already absent: {self.stats.missing}")
        logger.info(f"Failed deletes: {self.stats.failed}")
        logger.info(f"Retried deletes: {self.stats.retried}")
        if report.failed_buckets:
            logger.info(f"Buckets not listed: {', '.join(sorted(report.failed_buckets))}")
        logger.info(f"Time elapsed: {elapsed:.2f} seconds")
        logger.info(f"Average rate: {rate:.1f} keys/sec")
        logger.info(f"{'=' * 50}")
