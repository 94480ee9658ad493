"""
Backfill - Generates the rest of the mip ladder after a response is sent.
"""

import logging
import threading
import time
from concurrent.futures import Future
from typing import Callable, Optional, Tuple

from .backfill_stats import BackfillStats
from .exceptions import ThumbnailError
from .thumbnail_record import ThumbnailRecord
from .variant_key import variant_key


class BackfillPass:
    """
    One paced, sequential pass over a source's mip ladder.

    Each size is re-checked against the stored record immediately before
    generating, so work done meanwhile by a concurrent request is skipped
    rather than repeated. A pass runs at most once.
    """

    def __init__(
        self,
        pipeline,
        asset,
        config,
        fmt: str,
        content: Optional[bytes],
        dimensions: Optional[Tuple[int, int]],
        record: ThumbnailRecord,
        exclude_key: Optional[str] = None,
        initial_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize a backfill pass.

        Args:
            pipeline: GenerationPipeline providing render() and persist()
            asset: SourceAsset being backfilled
            config: ThumbConfig snapshot for the whole pass
            fmt: Output format for every rung
            content: Source bytes, or None to re-read the asset when the pass starts
            dimensions: Native (width, height), or None if unknown
            record: Working copy of the source's record
            exclude_key: Variant key just generated synchronously
            initial_delay: Seconds to wait before starting (defaults to config)
            sleep: Sleep function, replaceable in tests
            logger: Optional logger instance
        """
        self.pipeline = pipeline
        self.asset = asset
        self.config = config
        self.fmt = fmt
        self.content = content
        self.dimensions = dimensions
        self.record = record
        self.exclude_key = exclude_key
        self.initial_delay = config.backfill_initial_delay if initial_delay is None else initial_delay
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)
        self.stats = BackfillStats()
        self._started = False
        self._stop_requested = False

    def stop(self) -> None:
        """Request the pass to stop after the current size."""
        self._stop_requested = True

    def planned_sizes(self) -> list:
        original_long = max(self.dimensions) if self.dimensions else None
        return [s for s in self.config.ladder(original_long)
                if variant_key(self.fmt, s) != self.exclude_key]

    def run(self) -> BackfillStats:
        """Execute the pass. Failures are logged, never raised."""
        if self._started:
            self.logger.warning(f"Backfill for {self.asset.identity} already ran")
            return self.stats
        self._started = True

        try:
            self._run()
        except Exception as e:
            self.logger.error(f"Backfill for {self.asset.identity} failed: {e}")
            self.stats.record_error(str(e))
        return self.stats

    def _run(self) -> None:
        if self.initial_delay > 0:
            self.sleep(self.initial_delay)

        sizes = self.planned_sizes()
        self.stats = BackfillStats(total_to_process=len(sizes))
        identity = self.asset.identity

        if self.content is None:
            self.content = self.asset.read_bounded(self.config.max_source_bytes)

        for size in sizes:
            if self._stop_requested:
                self.logger.info(f"Stop requested, halting backfill for {identity}")
                break

            key = variant_key(self.fmt, size)
            if self.record.has_variant(key) or self._generated_elsewhere(key):
                self.stats.skipped += 1
                continue

            self._generate(size)
            if self.config.backfill_interval > 0:
                self.sleep(self.config.backfill_interval)

        self.pipeline.records.store(identity, self.record)
        if self.asset.path and not self.asset.restore_mtime():
            self.logger.debug(f"thumbnails: could not restore mtime of {self.asset.path}")

        self.content = None
        self.logger.info(
            f"Backfill complete for {identity}: {self.stats.generated} generated, "
            f"{self.stats.skipped} skipped, {self.stats.errors} errors "
            f"({self.stats.elapsed_seconds:.1f}s)"
        )

    def _generated_elsewhere(self, key: str) -> bool:
        """Reload the record and check whether someone else produced key."""
        current = self.pipeline.records.load(self.asset.identity)
        if not current.is_fresh(self.asset.mtime, self.config.regenerate_before):
            return False
        self.record.merge(current)
        if not current.has_variant(key):
            return False
        location = self.pipeline.blobs.path_for(self.asset.identity, key)
        try:
            return self.pipeline.blobs.exists(location)
        except Exception as e:
            self.logger.debug(f"thumbnails: existence check failed for {location}: {e}")
            return False

    def _generate(self, size: int) -> bool:
        identity = self.asset.identity
        try:
            rendition = self.pipeline.render(self.config, self.content, self.fmt, size, self.dimensions)
        except ThumbnailError as e:
            self.stats.record_error(f"{identity}@{size}: {e}")
            self.logger.debug(f"thumbnails: backfill error for {identity}@{size}: {e}")
            return False

        self.record.add_variant(rendition.key, rendition.descriptor, self.asset.mtime)
        if not self.pipeline.persist(identity, self.asset.mtime, self.record.copy(), rendition):
            self.stats.record_error(f"{identity}@{size}: persist failed")
            return False

        self.stats.generated += 1
        self.stats.bytes_generated += len(rendition.data)
        self.logger.debug(f"Backfilled: {identity} {rendition.key} ({len(rendition.data)} bytes)")
        return True


class BackfillScheduler:
    """
    Submits backfill passes to the task runner.

    At most one pass per identity is queued or running at a time; a
    request for an identity that already has one is dropped.
    """

    def __init__(self, pipeline, runner, logger: Optional[logging.Logger] = None):
        self.pipeline = pipeline
        self.runner = runner
        self.logger = logger or logging.getLogger(__name__)
        self._pending = set()
        self._lock = threading.Lock()

    def is_pending(self, identity: str) -> bool:
        with self._lock:
            return identity in self._pending

    def schedule(
        self,
        ctx,
        dimensions: Optional[Tuple[int, int]],
        generated_key: str,
        record: ThumbnailRecord
    ) -> Optional[Future]:
        """
        Schedule a pass for the ladder sizes not served by this request.

        The pass re-reads the source when it starts instead of holding the
        bytes of the triggering request while it waits in the queue.

        Returns:
            Future resolving to the pass's BackfillStats, or None when a
            pass for the same identity is already pending
        """
        identity = ctx.asset.identity
        with self._lock:
            if identity in self._pending:
                self.logger.debug(f"Backfill already pending for {identity}")
                return None
            self._pending.add(identity)

        backfill_pass = BackfillPass(
            self.pipeline,
            asset=ctx.asset,
            config=ctx.config,
            fmt=ctx.out_format,
            content=None,
            dimensions=dimensions,
            record=record,
            exclude_key=generated_key,
            logger=self.logger,
        )
        self.logger.debug(f"Scheduling backfill for {identity}")
        try:
            future = self.runner.submit(backfill_pass.run)
        except Exception:
            self._release(identity)
            raise
        future.add_done_callback(lambda _: self._release(identity))
        return future

    def _release(self, identity: str) -> None:
        with self._lock:
            self._pending.discard(identity)
