"""
PillowCodec - Probes and encodes thumbnails with Pillow.
"""

import io
import logging
from typing import Optional, Tuple

from PIL import Image, ImageOps

# EXIF orientations that swap width and height
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}
_EXIF_ORIENTATION = 0x0112
_UNBOUNDED = 1 << 20


class PillowCodec:
    """
    Codec capability backed by Pillow.

    The pipeline only ever sees bytes in and bytes out: probe() reports
    native dimensions, encode() produces a rendition fitted inside a box.
    """

    FORMATS = {
        'jpeg': ('JPEG', 'image/jpeg'),
        'webp': ('WEBP', 'image/webp'),
        'avif': ('AVIF', 'image/avif'),
    }

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        Image.init()

    def supports(self, fmt: str) -> bool:
        """Check whether this Pillow build can write the given format."""
        entry = self.FORMATS.get(fmt)
        return entry is not None and entry[0] in Image.SAVE

    def mime_type(self, fmt: str) -> str:
        """Get the media type for an output format."""
        return self.FORMATS.get(fmt, self.FORMATS['jpeg'])[1]

    def probe(self, image_data: bytes) -> Tuple[int, int]:
        """
        Read native dimensions without decoding pixel data.

        Returns:
            Tuple of (width, height) as displayed, i.e. after EXIF rotation
        """
        with Image.open(io.BytesIO(image_data)) as img:
            width, height = img.size
            orientation = img.getexif().get(_EXIF_ORIENTATION)
        if orientation in _TRANSPOSED_ORIENTATIONS:
            width, height = height, width
        return width, height

    def encode(
        self,
        image_data: bytes,
        width: Optional[int],
        height: Optional[int],
        fmt: str,
        quality: int
    ) -> bytes:
        """
        Encode a rendition fitted inside a width/height box.

        Args:
            image_data: Original image as bytes
            width: Box width, or None for unconstrained
            height: Box height, or None for unconstrained
            fmt: Output format key ('jpeg', 'webp' or 'avif')
            quality: Encoder quality 1-100

        Returns:
            Encoded bytes
        """
        pil_format, _ = self.FORMATS[fmt]
        if width is not None and width < 1 or height is not None and height < 1:
            raise ValueError(f"invalid resize box {width}x{height}")

        with Image.open(io.BytesIO(image_data)) as source:
            img = ImageOps.exif_transpose(source)
            img = self._convert_color_mode(img, keep_alpha=pil_format != 'JPEG')
            img.thumbnail((width or _UNBOUNDED, height or _UNBOUNDED), Image.Resampling.LANCZOS)

            output = io.BytesIO()
            if pil_format == 'JPEG':
                img.save(output, format='JPEG', quality=quality, optimize=True)
            else:
                img.save(output, format=pil_format, quality=quality)
            return output.getvalue()

    def _convert_color_mode(self, img: Image.Image, keep_alpha: bool) -> Image.Image:
        """Convert image to a color mode the output format can hold."""
        if img.mode == 'P':
            img = img.convert('RGBA')
        if img.mode in ('RGBA', 'LA'):
            if keep_alpha:
                return img.convert('RGBA')
            if img.mode == 'LA':
                img = img.convert('RGBA')
            background = Image.new('RGB', img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            return background
        if img.mode != 'RGB':
            return img.convert('RGB')
        return img
