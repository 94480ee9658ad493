"""
Variant keys - canonical names for one cached rendition of a source asset.
"""

import re
from typing import Optional

_UNSAFE_CHARS = re.compile(r'[^a-z0-9|\-x.]', re.IGNORECASE)


def variant_key(
    fmt: str,
    size: int,
    width: Optional[int] = None,
    height: Optional[int] = None
) -> str:
    """
    Build the cache key for a rendition.

    When either explicit dimension is given both are embedded, so that
    box-constrained renditions never share a key with plain long-side ones.

    Args:
        fmt: Output format (e.g. 'jpeg')
        size: Selected long side in pixels
        width: Explicit requested width, if any
        height: Explicit requested height, if any

    Returns:
        Key such as 'jpeg|256' or 'webp|512|300x'
    """
    if width or height:
        return f"{fmt}|{size}|{width or ''}x{height or ''}"
    return f"{fmt}|{size}"


def sanitize_key(key: str) -> str:
    """Restrict a variant key to characters safe for file and object names."""
    return _UNSAFE_CHARS.sub('_', str(key))
