"""
ThumbnailRecord - Per-source metadata record and its variant descriptors.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Union


@dataclass(frozen=True)
class VariantDescriptor:
    """
    Description of one generated rendition.

    Attributes:
        mime_type: Media type of the encoded bytes (the format actually used)
        size_long: Long side in pixels actually used for encoding
        created_at: Epoch seconds when the rendition was generated
    """
    mime_type: str
    size_long: int
    created_at: float

    def to_dict(self) -> dict:
        return {
            'type': self.mime_type,
            'sizeLong': self.size_long,
            'created': self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'VariantDescriptor':
        return cls(
            mime_type=data.get('type') or 'image/jpeg',
            size_long=int(data.get('sizeLong') or 0),
            created_at=float(data.get('created') or 0),
        )


def to_epoch(value: Union[None, float, int, datetime]) -> Optional[float]:
    """Convert a datetime or number to epoch seconds."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    return float(value)


@dataclass
class ThumbnailRecord:
    """
    Metadata record kept for each source asset.

    Attributes:
        content_timestamp: Source mtime at the last successful generation pass
        last_regenerated_at: Epoch seconds of the most recent variant write
        variants: Dict mapping variant key -> VariantDescriptor
    """
    content_timestamp: float = 0
    last_regenerated_at: Optional[float] = None
    variants: Dict[str, VariantDescriptor] = field(default_factory=dict)

    def is_fresh(
        self,
        mtime: float,
        regenerate_before: Union[None, float, datetime] = None
    ) -> bool:
        """
        Check whether cached variants may be trusted.

        Args:
            mtime: Current modification time of the source asset
            regenerate_before: Invalidation threshold; variants written
                before it are considered stale

        Returns:
            True if the record describes the current source version
        """
        if self.content_timestamp != mtime:
            return False
        threshold = to_epoch(regenerate_before)
        if threshold is None:
            return True
        return self.last_regenerated_at is not None and self.last_regenerated_at >= threshold

    def has_variant(self, key: str) -> bool:
        return key in self.variants

    def get_variant(self, key: str) -> Optional[VariantDescriptor]:
        return self.variants.get(key)

    def add_variant(self, key: str, descriptor: VariantDescriptor, mtime: float) -> None:
        """Record a freshly written variant for the given source mtime."""
        self.variants[key] = descriptor
        self.content_timestamp = mtime
        self.last_regenerated_at = descriptor.created_at

    def merge(self, other: 'ThumbnailRecord') -> None:
        """Adopt variants from another copy of the same record that we lack."""
        for key, descriptor in other.variants.items():
            self.variants.setdefault(key, descriptor)
        if other.last_regenerated_at and (
            self.last_regenerated_at is None or other.last_regenerated_at > self.last_regenerated_at
        ):
            self.last_regenerated_at = other.last_regenerated_at

    def copy(self) -> 'ThumbnailRecord':
        return ThumbnailRecord(
            content_timestamp=self.content_timestamp,
            last_regenerated_at=self.last_regenerated_at,
            variants=dict(self.variants),
        )

    @property
    def available_sizes(self) -> list:
        """Sorted list of generated long-side sizes."""
        return sorted({d.size_long for d in self.variants.values()})

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'ts': self.content_timestamp,
            'thumbTs': self.last_regenerated_at,
            'variants': {
                key: descriptor.to_dict()
                for key, descriptor in self.variants.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ThumbnailRecord':
        """Create from dictionary; missing or malformed fields fall back to empty."""
        if not isinstance(data, dict):
            return cls()

        variants = {}
        raw_variants = data.get('variants')
        if isinstance(raw_variants, dict):
            for key, info in raw_variants.items():
                if isinstance(info, dict):
                    variants[key] = VariantDescriptor.from_dict(info)

        thumb_ts = data.get('thumbTs')
        return cls(
            content_timestamp=float(data.get('ts') or 0),
            last_regenerated_at=float(thumb_ts) if thumb_ts is not None else None,
            variants=variants,
        )
