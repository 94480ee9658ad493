"""
ThumbConfig - Immutable thumbnail configuration snapshot.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .mip_ladder import base_size_for, build_ladder, parse_seed_sizes

FORMATS = ('jpeg', 'webp', 'avif')
BASELINE_FORMAT = 'jpeg'


def str2bool(value, default: bool = False) -> bool:
    """Interpret common truthy/falsy strings."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value = str(value).strip().lower()
    if value in {'yes', 'true', 't', 'y', '1', 'on'}:
        return True
    if value in {'no', 'false', 'f', 'n', '0', 'off'}:
        return False
    return default


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO timestamp or epoch seconds; naive values are taken as UTC."""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            return datetime.fromtimestamp(float(text), tz=timezone.utc)
        except ValueError:
            pass
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ThumbConfig:
    """
    Thumbnail settings, captured once per request or backfill pass.

    Attributes:
        quality: Encoder quality, 1-100
        pixels: Seed long-side sizes; the lower median is the base size
        default_format: Output format when the request names none
        step_multiplier: Geometric step between ladder rungs
        min_size: Floor for the downward ladder walk and degradation
        full_threshold_kb: Sources smaller than this are served unthinned
        regenerate_before: Variants written before this are stale
        backfill_enabled: Schedule background generation of the ladder
        backfill_initial_delay: Seconds before a backfill pass starts
        backfill_interval: Seconds between backfill generations
        log_requests: Include thumbnail responses in request logging
        verbose: Log non-fatal failures at warning level
        max_source_bytes: Hard ceiling on source bytes read
    """
    quality: int = 20
    pixels: Tuple[int, ...] = (250,)
    default_format: str = 'jpeg'
    step_multiplier: float = 2.0
    min_size: int = 32
    full_threshold_kb: float = 100
    regenerate_before: Optional[datetime] = None
    backfill_enabled: bool = True
    backfill_initial_delay: float = 5.0
    backfill_interval: float = 1.0
    log_requests: bool = False
    verbose: bool = False
    max_source_bytes: int = 1_000_000_000
    max_degrade_depth: int = field(default=3, repr=False)

    @property
    def base_size(self) -> int:
        return base_size_for(list(self.pixels))

    @property
    def full_threshold_bytes(self) -> int:
        return int(self.full_threshold_kb * 1024)

    def ladder(self, original_long: Optional[int] = None) -> List[int]:
        """Mip ladder for this configuration, capped at original_long when known."""
        return build_ladder(
            self.base_size,
            self.step_multiplier,
            self.min_size,
            original_long=original_long,
            seeds=self.pixels,
        )

    def with_overrides(self, **kwargs) -> 'ThumbConfig':
        """Return a copy with some fields replaced."""
        return replace(self, **kwargs)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []
        if not 1 <= self.quality <= 100:
            errors.append(f"THUMB_QUALITY must be between 1 and 100, got {self.quality}")
        if not self.pixels:
            errors.append("THUMB_PIXELS must contain at least one positive size")
        if self.default_format not in FORMATS:
            errors.append(f"THUMB_FORMAT must be one of {', '.join(FORMATS)}, got {self.default_format!r}")
        if self.step_multiplier <= 1:
            errors.append(f"THUMB_STEP_MULTIPLIER must be > 1, got {self.step_multiplier}")
        if self.min_size < 1:
            errors.append(f"THUMB_MIN_SIZE must be >= 1, got {self.min_size}")
        if self.full_threshold_kb < 0:
            errors.append("THUMB_FULL_THRESHOLD_KB must not be negative")
        if self.backfill_initial_delay < 0 or self.backfill_interval < 0:
            errors.append("Backfill delays must not be negative")
        if self.max_source_bytes <= 0:
            errors.append("THUMB_MAX_SOURCE_BYTES must be positive")
        return errors

    @classmethod
    def from_env(cls) -> 'ThumbConfig':
        """Load configuration from THUMB_* environment variables."""
        defaults = cls()
        pixels = parse_seed_sizes(os.getenv('THUMB_PIXELS', '').split(','))
        return cls(
            quality=int(os.getenv('THUMB_QUALITY', defaults.quality)),
            pixels=tuple(pixels) or defaults.pixels,
            default_format=os.getenv('THUMB_FORMAT', defaults.default_format).lower(),
            step_multiplier=float(os.getenv('THUMB_STEP_MULTIPLIER', defaults.step_multiplier)),
            min_size=int(os.getenv('THUMB_MIN_SIZE', defaults.min_size)),
            full_threshold_kb=float(os.getenv('THUMB_FULL_THRESHOLD_KB', defaults.full_threshold_kb)),
            regenerate_before=parse_datetime(os.getenv('THUMB_REGENERATE_BEFORE')),
            backfill_enabled=str2bool(os.getenv('THUMB_BACKFILL'), defaults.backfill_enabled),
            backfill_initial_delay=float(os.getenv('THUMB_BACKFILL_DELAY', defaults.backfill_initial_delay)),
            backfill_interval=float(os.getenv('THUMB_BACKFILL_INTERVAL', defaults.backfill_interval)),
            log_requests=str2bool(os.getenv('THUMB_LOG'), defaults.log_requests),
            verbose=str2bool(os.getenv('THUMB_VERBOSE'), defaults.verbose),
            max_source_bytes=int(float(os.getenv('THUMB_MAX_SOURCE_BYTES', defaults.max_source_bytes))),
        )
