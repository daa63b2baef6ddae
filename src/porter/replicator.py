"""Bucket-to-bucket replication with an existence cache, bounded retry and a failure ledger."""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterator, Optional

import structlog

from porter.config import ReplicationConfig
from porter.exceptions import ReplicationError, StorageError
from porter.metrics import PorterMetrics
from porter.storage import ObjectMetadata, ObjectStore
from utils.cancellation import CancellationToken, OperationCancelled
from utils.logging import get_logger
from utils.retry import RetryConfig, retry_sync


class ExistenceCache:
    """Key -> observed existence in the target; authoritative for one run."""

    def __init__(self) -> None:
        self._known: dict[str, bool] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bool]:
        with self._lock:
            return self._known.get(key)

    def set(self, key: str, exists: bool) -> None:
        with self._lock:
            self._known[key] = exists

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._known

    def __len__(self) -> int:
        with self._lock:
            return len(self._known)


class FailureLedger:
    """Objects whose copy exhausted its retries, mapped to the last error message."""

    def __init__(self) -> None:
        self._failures: dict[str, str] = {}
        self._lock = threading.Lock()

    def record(self, key: str, error: str) -> None:
        with self._lock:
            self._failures[key] = error

    def items(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._failures.items())

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._failures.get(key)

    def to_dict(self) -> dict[str, str]:
        with self._lock:
            return dict(self._failures)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._failures

    def __iter__(self) -> Iterator[str]:
        return iter(self.to_dict())

    def __len__(self) -> int:
        with self._lock:
            return len(self._failures)

    def __bool__(self) -> bool:
        return len(self) > 0


def batched(keys: list[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(keys), size):
        yield keys[start : start + size]


class BucketReplicator:
    """Copies every object missing from a target bucket.

    The run is idempotent: objects already present in the target are skipped,
    so re-running converges toward a fully replicated target. A single object's
    failure never aborts the batch or the run; it is recorded in the returned
    FailureLedger instead.
    """

    def __init__(
        self,
        config: Optional[ReplicationConfig] = None,
        metrics: Optional[PorterMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize bucket replicator.

        Args:
            config: Batch size, retry and concurrency settings
            metrics: Optional metrics sink
            logger: Optional logger instance
        """
        self.config = config or ReplicationConfig()
        self.metrics = metrics
        self.logger = logger or get_logger("replicator")
        self.retry_config = RetryConfig.fixed(
            max_attempts=self.config.retry_attempts,
            delay=self.config.retry_delay_seconds,
            retryable_exceptions=(StorageError,),
        )
        self.stats = self._empty_stats()
        self._stats_lock = threading.Lock()

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {"listed": 0, "skipped": 0, "copied": 0, "failed": 0, "copy_attempts": 0}

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self.stats[name] += amount

    def verify_connections(self, source: ObjectStore, target: ObjectStore) -> None:
        """Check access to both buckets before a run.

        Raises:
            StorageError: If either bucket is unreachable
        """
        for role, store in (("source", source), ("target", target)):
            store.check_access()
            self.logger.info("Bucket reachable", role=role, bucket=store.bucket)

    def replicate(
        self,
        source: ObjectStore,
        target: ObjectStore,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FailureLedger:
        """Copy all objects missing from ``target``.

        Args:
            source: Bucket to read from
            target: Bucket to write to
            cancel_token: Checked between batches

        Returns:
            FailureLedger of objects that could not be copied

        Raises:
            ReplicationError: If the source cannot be listed or the run is cancelled
        """
        self.stats = self._empty_stats()
        cache = ExistenceCache()
        ledger = FailureLedger()

        try:
            keys = source.list_keys(self.config.prefix)
        except StorageError as e:
            raise ReplicationError(
                f"Failed to list source bucket: {e.message}",
                context={"bucket": source.bucket},
            ) from e

        self.stats["listed"] = len(keys)
        self.logger.info(
            "Starting replication",
            source_bucket=source.bucket,
            target_bucket=target.bucket,
            objects=len(keys),
            batch_size=self.config.batch_size,
        )
        if self.metrics:
            self.metrics.start_timer("replicate")

        try:
            for number, batch in enumerate(batched(keys, self.config.batch_size), start=1):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                self._process_batch(number, batch, source, target, cache, ledger)
        except OperationCancelled as e:
            if self.metrics:
                self.metrics.finish_run("replicate", "cancelled")
            raise ReplicationError(
                f"Replication cancelled: {e}",
                context={"stats": dict(self.stats), "failures": len(ledger)},
            ) from e

        if self.metrics:
            self.metrics.finish_run("replicate", "partial" if ledger else "success")

        log = self.logger.warning if ledger else self.logger.info
        log("Replication finished", **self.stats)
        return ledger

    def _process_batch(
        self,
        number: int,
        batch: list[str],
        source: ObjectStore,
        target: ObjectStore,
        cache: ExistenceCache,
        ledger: FailureLedger,
    ) -> None:
        missing = []
        for key in batch:
            exists = cache.get(key)
            if exists is None:
                exists = self._exists(target, key)
                cache.set(key, exists)
            if exists:
                self._bump("skipped")
                if self.metrics:
                    self.metrics.record_object("skipped")
            else:
                missing.append(key)

        self.logger.debug(
            "Processing batch",
            batch=number,
            size=len(batch),
            missing=len(missing),
        )

        if self.config.max_workers > 1 and len(missing) > 1:
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                list(pool.map(lambda k: self._copy(k, source, target, cache, ledger), missing))
        else:
            for key in missing:
                self._copy(key, source, target, cache, ledger)

    def _exists(self, target: ObjectStore, key: str) -> bool:
        try:
            return target.exists(key)
        except StorageError as e:
            # Assume absent; a redundant copy is cheaper than a lost object
            self.logger.warning("Existence check failed, will copy", key=key, error=str(e))
            return False

    def _metadata(self, source: ObjectStore, key: str) -> ObjectMetadata:
        try:
            return source.get_metadata(key)
        except StorageError as e:
            self.logger.warning("Metadata unavailable, using defaults", key=key, error=str(e))
            return ObjectMetadata()

    def _copy(
        self,
        key: str,
        source: ObjectStore,
        target: ObjectStore,
        cache: ExistenceCache,
        ledger: FailureLedger,
    ) -> None:
        def _attempt() -> None:
            self._bump("copy_attempts")
            body = source.get_bytes(key)
            metadata = self._metadata(source, key)
            target.put_bytes(key, body, metadata, set_acl=self.config.preserve_visibility)

        try:
            retry_sync(
                _attempt,
                config=self.retry_config,
                logger=self.logger.bind(key=key),
            )
        except StorageError as e:
            ledger.record(key, e.message)
            self._bump("failed")
            if self.metrics:
                self.metrics.record_object("failed")
            self.logger.error("Object copy failed", key=key, error=e.message)
            return

        cache.set(key, True)
        self._bump("copied")
        if self.metrics:
            self.metrics.record_object("copied")
        self.logger.debug("Object copied", key=key)
