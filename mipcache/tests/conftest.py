"""
Pytest fixtures for mipcache tests.
"""

import io
import logging
import os
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from mipcache.attr_store import LocalAttrStore
from mipcache.blob_store import LocalBlobStore
from mipcache.codec import PillowCodec
from mipcache.pipeline import GenerationPipeline
from mipcache.record_store import RecordStore
from mipcache.thumb_config import ThumbConfig


class InlineRunner:
    """Task runner that executes submissions immediately on the calling thread."""

    def __init__(self):
        self.submitted = []

    def submit(self, func, *args, **kwargs):
        self.submitted.append(func)
        future = Future()
        try:
            future.set_result(func(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    @property
    def pending_count(self):
        return 0

    def wait(self, timeout=None):
        return True

    def shutdown(self, wait_for_tasks=True):
        pass


def make_image_bytes(width, height, fmt='JPEG', mode='RGB', color='red', exif=None):
    """Encode a solid-color image with Pillow."""
    from PIL import Image

    img = Image.new(mode, (width, height), color=color)
    buffer = io.BytesIO()
    if exif is not None:
        img.save(buffer, format=fmt, exif=exif)
    else:
        img.save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def logger():
    """Fixture providing a logger."""
    return logging.getLogger('test')


@pytest.fixture
def sample_image_bytes():
    """Fixture providing a 1000x600 landscape JPEG."""
    return make_image_bytes(1000, 600)


@pytest.fixture
def sample_png_bytes():
    """Fixture providing sample PNG image bytes with transparency."""
    return make_image_bytes(100, 100, fmt='PNG', mode='RGBA', color=(255, 0, 0, 128))


@pytest.fixture
def source_file(tmp_path, sample_image_bytes):
    """Fixture providing a source image on disk with a fixed mtime."""
    path = tmp_path / 'files' / 'photos' / 'cat.jpg'
    path.parent.mkdir(parents=True)
    path.write_bytes(sample_image_bytes)
    os.utime(path, (1700000000, 1700000000))
    return str(path)


@pytest.fixture
def config():
    """Fixture providing a config with a 256 base, no threshold and no pacing."""
    return ThumbConfig(
        pixels=(256,),
        step_multiplier=2.0,
        min_size=32,
        full_threshold_kb=0,
        backfill_enabled=False,
        backfill_initial_delay=0,
        backfill_interval=0,
    )


@pytest.fixture
def runner():
    """Fixture providing an inline task runner."""
    return InlineRunner()


@pytest.fixture
def attr_store(tmp_path):
    return LocalAttrStore(str(tmp_path / 'attrs'))


@pytest.fixture
def record_store(attr_store):
    return RecordStore(attr_store)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / 'cache'))


@pytest.fixture
def mock_codec():
    """Fixture providing a codec mock that always succeeds."""
    codec = MagicMock(spec=PillowCodec)
    codec.supports.return_value = True
    codec.mime_type.side_effect = lambda fmt: f"image/{fmt}"
    codec.probe.return_value = (1000, 600)
    codec.encode.return_value = b'encoded thumbnail'
    return codec


@pytest.fixture
def make_pipeline(record_store, blob_store, runner, config):
    """Fixture providing a factory for pipelines over the tmp stores."""
    def factory(codec=None, cfg=None, **kwargs):
        current = cfg or config
        return GenerationPipeline(
            record_store=record_store,
            blob_store=blob_store,
            codec=codec if codec is not None else PillowCodec(),
            runner=runner,
            config_provider=lambda: current,
            clock=kwargs.pop('clock', lambda: 1800000000.0),
            **kwargs
        )
    return factory


@pytest.fixture
def image_factory():
    """Fixture providing make_image_bytes(width, height, ...)."""
    return make_image_bytes
