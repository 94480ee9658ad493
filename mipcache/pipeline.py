"""
GenerationPipeline - Serves a thumbnail request from cache or generates it.

A request moves through named stages: threshold check, request
resolution, provisional selection (cache probe without touching the
source), fetch and probe, final selection, encode with degradation,
persist, respond. Persistence and ladder backfill run on their own task
runners so neither delays the response or waits behind the other.
"""

import logging
import math
import os
import time
from dataclasses import dataclass, field
from typing import (
    BinaryIO, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union
)

from .background import TaskRunner
from .backfill import BackfillScheduler
from .blob_store import BlobStore
from .exceptions import (
    CodecUnavailableError, EncodeError, SourceTooLargeError, ThumbnailError
)
from .mip_ladder import round_half_up, select_for
from .record_store import RecordStore
from .thumb_config import BASELINE_FORMAT, ThumbConfig
from .thumbnail_record import ThumbnailRecord, VariantDescriptor
from .variant_key import variant_key

CACHE_HEADER = 'X-Thumbnail'
SELECTOR_PARAM = 'get'
SELECTOR_VALUE = 'thumb'

FORMAT_ALIASES = {
    'jpg': 'jpeg',
    'jpeg': 'jpeg',
    'webp': 'webp',
    'avif': 'avif',
    'av1': 'avif',
}

Dimensions = Tuple[int, int]


def is_thumb_request(query: Mapping) -> bool:
    """True when the request selector marks this as a thumbnail request."""
    return query.get(SELECTOR_PARAM) == SELECTOR_VALUE


def normalize_format(value) -> Optional[str]:
    """Map a requested format alias to its canonical name, or None."""
    if not value:
        return None
    return FORMAT_ALIASES.get(str(value).strip().lower())


def parse_dimension(value) -> Optional[int]:
    """Parse a positive pixel value; anything else is treated as absent."""
    if value in (None, ''):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return max(1, round_half_up(number))


@dataclass(frozen=True)
class SourceAsset:
    """
    Source asset as supplied by the host.

    Attributes:
        identity: Stable identity (e.g. the logical path)
        size: Size in bytes
        mtime: Modification time in epoch seconds
        opener: Callable returning a fresh binary stream of the content
        path: Local filesystem path, when the source lives on disk
    """
    identity: str
    size: int
    mtime: float
    opener: Callable[[], BinaryIO]
    path: Optional[str] = None

    @classmethod
    def from_path(cls, path: str, identity: Optional[str] = None) -> 'SourceAsset':
        """Describe a file on disk."""
        stat = os.stat(path)
        return cls(
            identity=identity or path,
            size=stat.st_size,
            mtime=stat.st_mtime,
            opener=lambda: open(path, 'rb'),
            path=path,
        )

    def read_bounded(self, limit: int) -> bytes:
        """Read the whole source, failing if it exceeds limit bytes."""
        if self.size > limit:
            raise SourceTooLargeError(limit)
        with self.opener() as stream:
            data = stream.read(limit + 1)
        if len(data) > limit:
            raise SourceTooLargeError(limit)
        return data

    def restore_mtime(self) -> bool:
        """Set the source's mtime back to the recorded value (best-effort)."""
        if not self.path:
            return False
        try:
            os.utime(self.path, (self.mtime, self.mtime))
            return True
        except OSError:
            return False


@dataclass(frozen=True)
class ThumbRequest:
    """
    Parsed thumbnail request parameters.

    Attributes:
        fmt: Canonical requested format, or None for the default
        size: Explicit long side ('s')
        width: Explicit width ('w')
        height: Explicit height ('h')
    """
    fmt: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    @classmethod
    def from_query(cls, query: Mapping) -> 'ThumbRequest':
        fmt = query.get('format') or query.get('fmt') or query.get('f')
        return cls(
            fmt=normalize_format(fmt),
            size=parse_dimension(query.get('s')),
            width=parse_dimension(query.get('w')),
            height=parse_dimension(query.get('h')),
        )

    @property
    def has_box(self) -> bool:
        return bool(self.width or self.height)

    def requested_long(self) -> Optional[int]:
        """Long side implied by the size hints, or None to use the base size."""
        if self.size:
            return self.size
        if self.width or self.height:
            return max(self.width or 0, self.height or 0)
        return None


@dataclass
class ThumbResponse:
    """
    Response for the host to send.

    Attributes:
        status: HTTP status code
        content_type: Media type of the body
        body: Bytes, or an iterator of chunks when streaming from cache
        headers: Extra response headers
        count_download: Whether the host should count this as a download
        log_request: Whether the host should log this request
        key: Variant key served
    """
    status: int
    content_type: str
    body: Union[bytes, Iterator[bytes]]
    headers: Dict[str, str] = field(default_factory=dict)
    count_download: bool = False
    log_request: bool = False
    key: Optional[str] = None

    @property
    def origin(self) -> Optional[str]:
        return self.headers.get(CACHE_HEADER)


@dataclass(frozen=True)
class RequestContext:
    """Immutable inputs of one request: asset, parsed hints and config snapshot."""
    asset: SourceAsset
    request: ThumbRequest
    config: ThumbConfig
    out_format: str


@dataclass
class Selection:
    """Mutable accumulator advanced through the pipeline stages."""
    ladder: List[int]
    size: int
    key: str
    dimensions: Optional[Dimensions] = None
    provisional: bool = True


@dataclass(frozen=True)
class Rendition:
    """Encoded bytes plus the key and descriptor they are cached under."""
    key: str
    descriptor: VariantDescriptor
    data: bytes


def resize_box(
    size: int,
    width: Optional[int],
    height: Optional[int],
    dimensions: Optional[Dimensions]
) -> Tuple[Optional[int], Optional[int]]:
    """
    Box the rendition must fit inside.

    Without explicit dimensions the long side is bounded by size in both
    directions. With them, the selected size drives the source's long
    side (width for landscape, square or unknown sources, height for
    portrait) and the other explicit value bounds the other side.
    """
    if not (width or height):
        return size, size
    if dimensions is None or dimensions[0] >= dimensions[1]:
        return size, height
    return width, size


def _scale(value: Optional[int], factor: float) -> Optional[int]:
    if not value:
        return value
    return max(1, round_half_up(value * factor))


class GenerationPipeline:
    """
    Serves thumbnail requests for one host.

    Stores, codec and task runner are shared across requests; per-request
    state lives in RequestContext and Selection only.
    """

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        codec,
        runner: TaskRunner,
        backfill_runner: Optional[TaskRunner] = None,
        config_provider: Callable[[], ThumbConfig] = ThumbConfig,
        backfill: bool = True,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the pipeline.

        Args:
            record_store: Metadata record persistence
            blob_store: Encoded rendition storage
            codec: Codec capability (probe/supports/encode/mime_type), or None
            runner: Task runner for persistence of generated renditions
            backfill_runner: Task runner for backfill passes, separate from the
                persistence runner in production (defaults to runner)
            config_provider: Returns the current configuration snapshot
            backfill: Schedule ladder backfill after generated responses
            clock: Time source for descriptor timestamps
            logger: Optional logger instance
        """
        self.records = record_store
        self.blobs = blob_store
        self.codec = codec
        self.runner = runner
        self.config_provider = config_provider
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self.backfill_runner = backfill_runner or runner
        self.backfill = BackfillScheduler(self, self.backfill_runner, logger=self.logger) if backfill else None

    def _report(self, config: ThumbConfig, msg: str) -> None:
        if config.verbose:
            self.logger.warning(msg)
        else:
            self.logger.debug(msg)

    # --- Request handling --------------------------------------------------------

    def handle(self, asset: Optional[SourceAsset], query: Mapping) -> Optional[ThumbResponse]:
        """
        Answer a thumbnail request.

        Returns:
            ThumbResponse, or None when the host should serve its default
            (no asset, no identity, or source below the size threshold)
        """
        if asset is None or not asset.identity:
            return None

        config = self.config_provider()
        if asset.size < config.full_threshold_bytes:
            return None

        ctx = self.resolve_request(asset, query, config)

        record = self.records.load(asset.identity)
        fresh = record.is_fresh(asset.mtime, config.regenerate_before)
        if not fresh:
            record = ThumbnailRecord()

        selection = self.provisional_select(ctx)
        cached = self.serve_cached(ctx, record, fresh, selection.key)
        if cached:
            return cached

        try:
            content = asset.read_bounded(config.max_source_bytes)
        except SourceTooLargeError as e:
            return self.error_response(ctx, f"thumbnail generation failed: {e}")
        except OSError as e:
            self.logger.error(f"thumbnails: cannot read {asset.identity}: {e}")
            return self.error_response(ctx, "thumbnail generation failed: source unreadable")

        selection = self.final_select(ctx, self.probe(ctx, content))
        cached = self.serve_cached(ctx, record, fresh, selection.key)
        if cached:
            return cached

        try:
            rendition = self.render(
                ctx.config, content, ctx.out_format, selection.size,
                selection.dimensions, ctx.request.width, ctx.request.height,
            )
        except ThumbnailError as e:
            self.logger.error(f"thumbnails: generate error for {asset.identity}: {e}")
            return self.error_response(ctx, f"thumbnail generation failed: {e}")

        record.add_variant(rendition.key, rendition.descriptor, asset.mtime)
        self.runner.submit(self.persist, asset.identity, asset.mtime, record.copy(), rendition)

        if self.backfill and config.backfill_enabled:
            self.backfill.schedule(ctx, selection.dimensions, rendition.key, record.copy())

        return ThumbResponse(
            status=200,
            content_type=rendition.descriptor.mime_type,
            body=rendition.data,
            headers={CACHE_HEADER: 'generated'},
            log_request=config.log_requests,
            key=rendition.key,
        )

    def resolve_request(self, asset: SourceAsset, query: Mapping, config: ThumbConfig) -> RequestContext:
        """Parse hints and settle the output format actually producible."""
        request = ThumbRequest.from_query(query)
        out_format = request.fmt or normalize_format(config.default_format) or BASELINE_FORMAT
        if self.codec is not None and not self.codec.supports(out_format):
            self._report(config, f"thumbnails: format {out_format} unsupported, using {BASELINE_FORMAT}")
            out_format = BASELINE_FORMAT
        return RequestContext(asset=asset, request=request, config=config, out_format=out_format)

    def _select(self, ctx: RequestContext, ladder: List[int]) -> int:
        requested = ctx.request.requested_long() or ctx.config.base_size
        return select_for(requested, ladder)

    def provisional_select(self, ctx: RequestContext) -> Selection:
        """Select a size before the native resolution is known."""
        ladder = ctx.config.ladder()
        size = self._select(ctx, ladder)
        key = variant_key(ctx.out_format, size, ctx.request.width, ctx.request.height)
        return Selection(ladder=ladder, size=size, key=key)

    def final_select(self, ctx: RequestContext, dimensions: Optional[Dimensions]) -> Selection:
        """Select the size to generate, capped at the native resolution when known."""
        original_long = max(dimensions) if dimensions else None
        ladder = ctx.config.ladder(original_long)
        size = self._select(ctx, ladder)
        key = variant_key(ctx.out_format, size, ctx.request.width, ctx.request.height)
        return Selection(ladder=ladder, size=size, key=key, dimensions=dimensions, provisional=False)

    def probe(self, ctx: RequestContext, content: bytes) -> Optional[Dimensions]:
        """Native (width, height), or None if the codec cannot tell."""
        if self.codec is None:
            return None
        try:
            width, height = self.codec.probe(content)
        except Exception as e:
            self._report(ctx.config, f"thumbnails: metadata error for {ctx.asset.identity}: {e}")
            return None
        if not width or not height:
            return None
        return int(width), int(height)

    def serve_cached(
        self,
        ctx: RequestContext,
        record: ThumbnailRecord,
        fresh: bool,
        key: str
    ) -> Optional[ThumbResponse]:
        """Stream a cached rendition if the record is fresh and the blob exists."""
        if not fresh:
            return None
        descriptor = record.get_variant(key)
        if descriptor is None:
            return None

        location = self.blobs.path_for(ctx.asset.identity, key)
        try:
            if not self.blobs.exists(location):
                return None
            body = self.blobs.read(location)
        except Exception as e:
            self._report(ctx.config, f"thumbnails: cache read failed for {location}: {e}")
            return None

        return ThumbResponse(
            status=200,
            content_type=descriptor.mime_type,
            body=body,
            headers={CACHE_HEADER: 'cache'},
            log_request=ctx.config.log_requests,
            key=key,
        )

    def error_response(self, ctx: RequestContext, message: str) -> ThumbResponse:
        return ThumbResponse(
            status=500,
            content_type='text/plain; charset=utf-8',
            body=message.encode('utf-8'),
            log_request=ctx.config.log_requests,
        )

    # --- Generate and persist, shared with backfill -----------------------------

    def render(
        self,
        config: ThumbConfig,
        content: bytes,
        fmt: str,
        size: int,
        dimensions: Optional[Dimensions] = None,
        width: Optional[int] = None,
        height: Optional[int] = None
    ) -> Rendition:
        """
        Encode a rendition, halving the size on failure.

        Retries at most config.max_degrade_depth times and never below
        config.min_size. The rendition is keyed by the selected size and
        requested dimensions; its descriptor records the size actually used.

        Raises:
            CodecUnavailableError: No codec is configured
            EncodeError: Every attempt failed
        """
        if self.codec is None:
            raise CodecUnavailableError("missing codec")

        if not self.codec.supports(fmt):
            fmt = BASELINE_FORMAT
        key = variant_key(fmt, size, width, height)

        attempt_size, box_w, box_h = size, width, height
        last_error = None
        for depth in range(config.max_degrade_depth + 1):
            box = resize_box(attempt_size, box_w, box_h, dimensions)
            try:
                data = self.codec.encode(content, box[0], box[1], fmt, config.quality)
            except Exception as e:
                last_error = e
                self._report(config, f"thumbnails: encode failed at {attempt_size}px (attempt {depth + 1}): {e}")
            else:
                descriptor = VariantDescriptor(
                    mime_type=self.codec.mime_type(fmt),
                    size_long=attempt_size,
                    created_at=self.clock(),
                )
                return Rendition(key=key, descriptor=descriptor, data=data)

            next_size = max(config.min_size, round_half_up(attempt_size / 2))
            if next_size >= attempt_size:
                break
            factor = next_size / attempt_size
            box_w, box_h = _scale(box_w, factor), _scale(box_h, factor)
            attempt_size = next_size

        raise EncodeError(f"could not encode {key}: {last_error}")

    def persist(
        self,
        identity: str,
        mtime: float,
        record: ThumbnailRecord,
        rendition: Rendition
    ) -> bool:
        """Write the blob, then the record that points at it."""
        location = self.blobs.path_for(identity, rendition.key)
        if not self.blobs.write(location, rendition.data, source_mtime=mtime):
            self.logger.debug(f"thumbnails: blob write failed for {location}")
            return False
        return self.records.store(identity, record)
