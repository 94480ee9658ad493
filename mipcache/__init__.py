"""
Thumbnail mip ladder cache.

Serves reduced-size renditions of large source assets:
    1. Select a size from a geometric ladder of candidates
    2. Serve it from a two-tier cache (metadata record + blob store)
       when fresh, otherwise generate it
    3. Backfill the remaining ladder sizes in the background

Supports both local filesystem and S3 blob storage.
"""

__version__ = "1.0.0"

from .thumb_config import ThumbConfig
from .s3_config import S3Config
from .variant_key import variant_key, sanitize_key
from .mip_ladder import build_ladder, select_for
from .thumbnail_record import ThumbnailRecord, VariantDescriptor
from .attr_store import AttrStore, LocalAttrStore
from .record_store import RecordStore
from .blob_store import BlobStore, LocalBlobStore
from .codec import PillowCodec
from .background import TaskRunner
from .backfill import BackfillPass, BackfillScheduler
from .backfill_stats import BackfillStats
from .pipeline import GenerationPipeline, SourceAsset, ThumbRequest, ThumbResponse

__all__ = [
    "ThumbConfig",
    "S3Config",
    "variant_key",
    "sanitize_key",
    "build_ladder",
    "select_for",
    "ThumbnailRecord",
    "VariantDescriptor",
    "AttrStore",
    "LocalAttrStore",
    "RecordStore",
    "BlobStore",
    "LocalBlobStore",
    "PillowCodec",
    "TaskRunner",
    "BackfillPass",
    "BackfillScheduler",
    "BackfillStats",
    "GenerationPipeline",
    "SourceAsset",
    "ThumbRequest",
    "ThumbResponse",
]
