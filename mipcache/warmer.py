"""
Warmer - Pre-generates the full mip ladder for a directory of images.
"""

import logging
import os
from typing import Iterator, Optional

from .backfill import BackfillPass
from .backfill_stats import BackfillStats
from .pipeline import GenerationPipeline, SourceAsset
from .thumb_config import ThumbConfig
from .thumbnail_record import ThumbnailRecord


class Warmer:
    """
    Walks a source directory and backfills every image synchronously.

    Identities are paths relative to the root with forward slashes, the
    same identities the server derives from request paths.
    """

    IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.tif', '.tiff', '.bmp', '.webp', '.avif'}

    def __init__(
        self,
        pipeline: GenerationPipeline,
        config: ThumbConfig,
        fmt: Optional[str] = None,
        dry_run: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize warmer.

        Args:
            pipeline: Pipeline whose stores and codec are used
            config: Configuration snapshot for the whole run
            fmt: Output format (default from config)
            dry_run: If True, only report the sizes that would be generated
            logger: Optional logger instance
        """
        self.pipeline = pipeline
        self.config = config
        self.fmt = fmt
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)
        self.totals = BackfillStats()
        self._current: Optional[BackfillPass] = None
        self._stop_requested = False

    def stop(self) -> None:
        """Request the warmer to stop after the current size."""
        self._stop_requested = True
        if self._current:
            self._current.stop()

    @classmethod
    def identity_for(cls, root: str, path: str) -> str:
        return os.path.relpath(path, root).replace(os.sep, '/')

    def iter_images(self, root: str) -> Iterator[str]:
        """Yield image paths under root in a stable order."""
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                if os.path.splitext(name)[1].lower() in self.IMAGE_EXTENSIONS:
                    yield os.path.join(dirpath, name)

    def warm(self, root: str, limit: Optional[int] = None) -> BackfillStats:
        """
        Generate missing ladder renditions for images under root.

        Args:
            root: Source directory (the server's BASE_DIR)
            limit: Optional limit on number of images (for testing)

        Returns:
            Aggregated BackfillStats
        """
        self.totals = BackfillStats()
        count = 0
        for path in self.iter_images(root):
            if self._stop_requested:
                self.logger.info("Stop requested, halting warm-up")
                break
            if limit and count >= limit:
                break
            count += 1
            self.warm_file(root, path)

        self.logger.info(
            f"Warm-up complete: {self.totals.generated} generated, "
            f"{self.totals.skipped} skipped, {self.totals.errors} errors "
            f"({self.totals.elapsed_seconds:.1f}s)"
        )
        return self.totals

    def warm_file(self, root: str, path: str) -> Optional[BackfillStats]:
        """Backfill one image. Returns None when the image is skipped."""
        asset = SourceAsset.from_path(path, identity=self.identity_for(root, path))
        if asset.size < self.config.full_threshold_bytes:
            self.logger.debug(f"Below threshold, skipping: {asset.identity}")
            return None

        query = {'format': self.fmt} if self.fmt else {}
        ctx = self.pipeline.resolve_request(asset, query, self.config)
        try:
            content = asset.read_bounded(self.config.max_source_bytes)
        except Exception as e:
            self.logger.error(f"Error reading {asset.identity}: {e}")
            self.totals.record_error(f"{asset.identity}: {e}")
            return None

        dimensions = self.pipeline.probe(ctx, content)
        if self.dry_run:
            sizes = self.config.ladder(max(dimensions) if dimensions else None)
            self.logger.info(f"[DRY RUN] Would backfill {asset.identity}: {sizes}")
            return None

        record = self.pipeline.records.load(asset.identity)
        if not record.is_fresh(asset.mtime, self.config.regenerate_before):
            record = ThumbnailRecord()

        self._current = BackfillPass(
            self.pipeline,
            asset=asset,
            config=self.config,
            fmt=ctx.out_format,
            content=content,
            dimensions=dimensions,
            record=record,
            initial_delay=0,
            logger=self.logger,
        )
        stats = self._current.run()
        self._current = None

        self.totals.total_to_process += stats.total_to_process
        self.totals.generated += stats.generated
        self.totals.skipped += stats.skipped
        self.totals.errors += stats.errors
        self.totals.bytes_generated += stats.bytes_generated
        self.totals.error_details.extend(stats.error_details)
        return stats
