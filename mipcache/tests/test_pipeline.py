"""Tests for GenerationPipeline."""

import io
import os
from concurrent.futures import Future
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from PIL import Image

from mipcache.background import TaskRunner
from mipcache.exceptions import CodecUnavailableError, EncodeError, SourceTooLargeError
from mipcache.pipeline import (
    CACHE_HEADER, GenerationPipeline, SourceAsset, ThumbRequest, is_thumb_request, normalize_format,
    parse_dimension, resize_box
)
from mipcache.thumbnail_record import ThumbnailRecord


def body_bytes(response):
    if isinstance(response.body, bytes):
        return response.body
    return b''.join(response.body)


@pytest.fixture
def asset(source_file):
    return SourceAsset.from_path(source_file, identity='photos/cat.jpg')


class TestRequestParsing:
    """Tests for request helpers."""

    def test_is_thumb_request(self):
        assert is_thumb_request({'get': 'thumb'})
        assert not is_thumb_request({'get': 'file'})
        assert not is_thumb_request({})

    @pytest.mark.parametrize('value,expected', [
        ('jpg', 'jpeg'), ('JPEG', 'jpeg'), ('webp', 'webp'), ('av1', 'avif'),
        ('gif', None), ('', None), (None, None),
    ])
    def test_normalize_format(self, value, expected):
        assert normalize_format(value) == expected

    @pytest.mark.parametrize('value,expected', [
        ('300', 300), ('299.5', 300), ('0', None), ('-5', None), ('abc', None),
        ('inf', None), ('nan', None), ('', None), (None, None),
    ])
    def test_parse_dimension(self, value, expected):
        assert parse_dimension(value) == expected

    def test_from_query(self):
        request = ThumbRequest.from_query({'get': 'thumb', 'fmt': 'jpg', 'w': '300', 'h': '200'})

        assert request == ThumbRequest(fmt='jpeg', width=300, height=200)
        assert request.has_box
        assert request.requested_long() == 300

    def test_size_takes_precedence(self):
        assert ThumbRequest(size=128, width=600).requested_long() == 128

    def test_no_hints(self):
        assert ThumbRequest().requested_long() is None


class TestResizeBox:
    """Tests for resize_box()."""

    def test_no_explicit_dimensions(self):
        assert resize_box(256, None, None, (1000, 600)) == (256, 256)

    def test_landscape_drives_width(self):
        assert resize_box(512, 300, 200, (1000, 600)) == (512, 200)

    def test_portrait_drives_height(self):
        assert resize_box(512, 300, 200, (600, 1000)) == (300, 512)

    def test_square_drives_width(self):
        assert resize_box(512, None, 200, (800, 800)) == (512, 200)

    def test_unknown_dimensions_drive_width(self):
        assert resize_box(512, 300, None, None) == (512, None)


class TestSourceAsset:
    """Tests for SourceAsset."""

    def test_from_path(self, source_file, sample_image_bytes):
        asset = SourceAsset.from_path(source_file)

        assert asset.identity == source_file
        assert asset.size == len(sample_image_bytes)
        assert asset.mtime == 1700000000

    def test_read_bounded(self, asset, sample_image_bytes):
        assert asset.read_bounded(10 ** 9) == sample_image_bytes

    def test_read_exceeds_limit(self, asset):
        with pytest.raises(SourceTooLargeError):
            asset.read_bounded(100)

    def test_read_grew_past_limit(self):
        """A stream longer than the declared size is still cut off."""
        asset = SourceAsset('x', size=10, mtime=0, opener=lambda: io.BytesIO(b'x' * 500))

        with pytest.raises(SourceTooLargeError):
            asset.read_bounded(100)

    def test_restore_mtime(self, asset, source_file):
        os.utime(source_file, (5, 5))

        assert asset.restore_mtime() is True
        assert os.stat(source_file).st_mtime == 1700000000

    def test_restore_mtime_without_path(self):
        asset = SourceAsset('x', size=0, mtime=0, opener=lambda: io.BytesIO())
        assert asset.restore_mtime() is False


class TestHandle:
    """End-to-end tests for GenerationPipeline.handle()."""

    def test_generate_then_cache(self, make_pipeline, asset):
        pipeline = make_pipeline()

        first = pipeline.handle(asset, {'get': 'thumb'})
        second = pipeline.handle(asset, {'get': 'thumb'})

        assert first.status == 200
        assert first.headers[CACHE_HEADER] == 'generated'
        assert first.content_type == 'image/jpeg'
        assert first.key == 'jpeg|256'
        assert Image.open(io.BytesIO(first.body)).size == (256, 154)

        assert second.headers[CACHE_HEADER] == 'cache'
        assert second.key == 'jpeg|256'
        assert body_bytes(second) == first.body

    def test_response_not_counted(self, make_pipeline, asset):
        response = make_pipeline().handle(asset, {})

        assert response.count_download is False
        assert response.log_request is False

    def test_log_requests_configured(self, make_pipeline, asset, config):
        response = make_pipeline(cfg=config.with_overrides(log_requests=True)).handle(asset, {})

        assert response.log_request is True

    def test_record_and_blob_persisted(self, make_pipeline, asset, record_store, blob_store):
        make_pipeline().handle(asset, {})

        record = record_store.load('photos/cat.jpg')
        assert record.is_fresh(asset.mtime)
        descriptor = record.get_variant('jpeg|256')
        assert descriptor.size_long == 256
        assert descriptor.created_at == 1800000000.0
        assert record.last_regenerated_at == 1800000000.0
        assert blob_store.exists(blob_store.path_for('photos/cat.jpg', 'jpeg|256'))

    def test_oversized_request_capped_at_native(self, make_pipeline, asset):
        response = make_pipeline().handle(asset, {'s': '5000'})

        assert response.status == 200
        assert response.key == 'jpeg|1000'
        assert Image.open(io.BytesIO(response.body)).size == (1000, 600)

    def test_requested_size_selects_next_rung(self, make_pipeline, asset):
        response = make_pipeline().handle(asset, {'s': '300'})

        assert response.key == 'jpeg|512'

    def test_explicit_width(self, make_pipeline, asset):
        response = make_pipeline().handle(asset, {'w': '300'})

        assert response.key == 'jpeg|512|300x'
        assert Image.open(io.BytesIO(response.body)).size[0] == 512

    def test_below_threshold_serves_original(self, make_pipeline, asset, config):
        pipeline = make_pipeline(cfg=config.with_overrides(full_threshold_kb=10 ** 6))

        assert pipeline.handle(asset, {'get': 'thumb'}) is None

    def test_no_asset(self, make_pipeline):
        assert make_pipeline().handle(None, {}) is None

    def test_idempotent(self, make_pipeline, asset, mock_codec):
        pipeline = make_pipeline(codec=mock_codec)

        pipeline.handle(asset, {})
        pipeline.handle(asset, {})

        assert mock_codec.encode.call_count == 1

    def test_source_change_regenerates(self, make_pipeline, source_file, mock_codec):
        pipeline = make_pipeline(codec=mock_codec)
        pipeline.handle(SourceAsset.from_path(source_file, identity='photos/cat.jpg'), {})

        os.utime(source_file, (1700000500, 1700000500))
        response = pipeline.handle(SourceAsset.from_path(source_file, identity='photos/cat.jpg'), {})

        assert response.origin == 'generated'
        assert mock_codec.encode.call_count == 2

    def test_stale_record_reset(self, make_pipeline, source_file, mock_codec, record_store):
        pipeline = make_pipeline(codec=mock_codec)
        pipeline.handle(SourceAsset.from_path(source_file, identity='photos/cat.jpg'), {'s': '64'})

        os.utime(source_file, (1700000500, 1700000500))
        pipeline.handle(SourceAsset.from_path(source_file, identity='photos/cat.jpg'), {})

        record = record_store.load('photos/cat.jpg')
        assert list(record.variants) == ['jpeg|256']
        assert record.content_timestamp == 1700000500

    def test_regenerate_before(self, make_pipeline, asset, mock_codec, config):
        future = datetime(2100, 1, 1, tzinfo=timezone.utc)
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(regenerate_before=future))

        pipeline.handle(asset, {})
        response = pipeline.handle(asset, {})

        assert response.origin == 'generated'
        assert mock_codec.encode.call_count == 2

    def test_missing_blob_regenerates(self, make_pipeline, asset, mock_codec, blob_store):
        pipeline = make_pipeline(codec=mock_codec)
        pipeline.handle(asset, {})
        blob_store.full_path(blob_store.path_for('photos/cat.jpg', 'jpeg|256')).unlink()

        response = pipeline.handle(asset, {})

        assert response.origin == 'generated'

    def test_cache_hit_skips_source_read(self, make_pipeline, asset, mock_codec):
        pipeline = make_pipeline(codec=mock_codec)
        pipeline.handle(asset, {})
        unreadable = SourceAsset(
            asset.identity, asset.size, asset.mtime,
            opener=MagicMock(side_effect=AssertionError("source read")),
        )

        response = pipeline.handle(unreadable, {})

        assert response.origin == 'cache'
        mock_codec.probe.assert_called_once()

    def test_final_select_rechecks_cache(self, make_pipeline, asset, mock_codec):
        """A provisional miss may still hit once native size is known."""
        pipeline = make_pipeline(codec=mock_codec)
        pipeline.handle(asset, {'s': '5000'})

        response = pipeline.handle(asset, {'s': '5000'})

        assert response.origin == 'cache'
        assert response.key == 'jpeg|1000'
        assert mock_codec.encode.call_count == 1

    def test_unsupported_format_falls_back(self, make_pipeline, asset, mock_codec, record_store):
        mock_codec.supports.side_effect = lambda fmt: fmt == 'jpeg'
        pipeline = make_pipeline(codec=mock_codec)

        response = pipeline.handle(asset, {'format': 'avif'})

        assert response.content_type == 'image/jpeg'
        assert response.key == 'jpeg|256'
        assert mock_codec.encode.call_args.args[3] == 'jpeg'
        assert record_store.load('photos/cat.jpg').has_variant('jpeg|256')

    def test_default_format_from_config(self, make_pipeline, asset, mock_codec, config):
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(default_format='webp'))

        response = pipeline.handle(asset, {})

        assert response.key == 'webp|256'
        assert response.content_type == 'image/webp'

    def test_probe_failure_is_non_fatal(self, make_pipeline, asset, mock_codec):
        mock_codec.probe.side_effect = ValueError("no header")
        pipeline = make_pipeline(codec=mock_codec)

        response = pipeline.handle(asset, {'s': '5000'})

        assert response.status == 200
        assert response.key == 'jpeg|256'
        assert mock_codec.encode.call_args.args[1:3] == (256, 256)

    def test_source_too_large(self, make_pipeline, asset, config, record_store):
        pipeline = make_pipeline(cfg=config.with_overrides(max_source_bytes=100))

        response = pipeline.handle(asset, {})

        assert response.status == 500
        assert b'thumbnail generation failed' in response.body
        assert record_store.load('photos/cat.jpg') == ThumbnailRecord()

    def test_source_unreadable(self, make_pipeline, asset):
        broken = SourceAsset(asset.identity, asset.size, asset.mtime, opener=MagicMock(side_effect=OSError("gone")))

        response = make_pipeline().handle(broken, {})

        assert response.status == 500

    def test_backfill_scheduled_after_generate(self, make_pipeline, asset, mock_codec, config, record_store):
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(backfill_enabled=True))

        pipeline.handle(asset, {})

        record = record_store.load('photos/cat.jpg')
        assert sorted(record.variants) == sorted(
            f"jpeg|{size}" for size in (32, 64, 128, 256, 512, 1000)
        )
        assert mock_codec.encode.call_count == 6

    def test_backfill_not_scheduled_on_cache_hit(self, make_pipeline, asset, mock_codec, config, runner):
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(backfill_enabled=True))
        pipeline.handle(asset, {})
        submitted = len(runner.submitted)

        pipeline.handle(asset, {})

        assert len(runner.submitted) == submitted

    def test_backfill_after_box_request_includes_plain_size(self, make_pipeline, asset, mock_codec, config,
                                                            record_store):
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(backfill_enabled=True))

        response = pipeline.handle(asset, {'w': '300'})

        assert response.key == 'jpeg|512|300x'
        record = record_store.load('photos/cat.jpg')
        assert record.has_variant('jpeg|512|300x')
        assert record.has_variant('jpeg|512')
        assert mock_codec.encode.call_count == 7

    def test_backfill_uses_its_own_runner(self, make_pipeline, asset, mock_codec, config, runner):
        backfill_runner = MagicMock()
        backfill_runner.submit.return_value = Future()
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(backfill_enabled=True),
                                 backfill_runner=backfill_runner)

        pipeline.handle(asset, {})

        assert [f.__name__ for f in runner.submitted] == ['persist']
        backfill_runner.submit.assert_called_once()

    def test_backfill_disabled_on_pipeline(self, make_pipeline, asset, mock_codec, config):
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(backfill_enabled=True), backfill=False)

        pipeline.handle(asset, {})

        assert mock_codec.encode.call_count == 1


class TestBackgroundRunners:
    """Persistence and backfill on real thread pools."""

    @pytest.fixture
    def runners(self):
        persist_runner = TaskRunner(max_workers=1, name='persist')
        backfill_runner = TaskRunner(max_workers=1, name='backfill')
        yield persist_runner, backfill_runner
        persist_runner.shutdown()
        backfill_runner.shutdown()

    def test_repeat_request_cached_while_backfill_waits(self, runners, tmp_path, sample_image_bytes,
                                                       record_store, blob_store, mock_codec, config):
        """Paced backfill passes never hold up persistence of later requests."""
        persist_runner, backfill_runner = runners
        cfg = config.with_overrides(backfill_enabled=True, backfill_initial_delay=1.0)
        pipeline = GenerationPipeline(
            record_store=record_store,
            blob_store=blob_store,
            codec=mock_codec,
            runner=persist_runner,
            backfill_runner=backfill_runner,
            config_provider=lambda: cfg,
        )
        assets = {}
        for name in ('a', 'b', 'c'):
            path = tmp_path / f"{name}.jpg"
            path.write_bytes(sample_image_bytes)
            assets[name] = SourceAsset.from_path(str(path), identity=f"{name}.jpg")

        for name in ('a', 'b', 'c'):
            assert pipeline.handle(assets[name], {}).origin == 'generated'

        assert persist_runner.wait(timeout=5) is True
        assert backfill_runner.pending_count >= 2
        assert pipeline.handle(assets['c'], {}).origin == 'cache'


class TestDegradation:
    """Tests for the encode retry-with-shrink fallback."""

    def test_all_attempts_fail(self, make_pipeline, asset, mock_codec, record_store, blob_store):
        mock_codec.encode.side_effect = RuntimeError("corrupt")
        pipeline = make_pipeline(codec=mock_codec)

        response = pipeline.handle(asset, {})

        assert response.status == 500
        assert [c.args[1] for c in mock_codec.encode.call_args_list] == [256, 128, 64, 32]
        assert record_store.load('photos/cat.jpg') == ThumbnailRecord()
        assert list(blob_store.cache_dir.iterdir()) == []

    def test_recovers_at_smaller_size(self, make_pipeline, asset, mock_codec, record_store):
        mock_codec.encode.side_effect = [RuntimeError("fail"), RuntimeError("fail"), b'small']
        pipeline = make_pipeline(codec=mock_codec)

        response = pipeline.handle(asset, {})

        assert response.status == 200
        assert response.body == b'small'
        assert response.key == 'jpeg|256'
        assert record_store.load('photos/cat.jpg').get_variant('jpeg|256').size_long == 64

    def test_never_below_min_size(self, make_pipeline, asset, mock_codec, config):
        mock_codec.encode.side_effect = RuntimeError("corrupt")
        pipeline = make_pipeline(codec=mock_codec, cfg=config.with_overrides(min_size=100))

        pipeline.handle(asset, {})

        assert [c.args[1] for c in mock_codec.encode.call_args_list] == [256, 128, 100]

    def test_box_scaled_proportionally(self, make_pipeline, mock_codec, config):
        mock_codec.encode.side_effect = [RuntimeError("fail"), b'ok']
        pipeline = make_pipeline(codec=mock_codec)

        pipeline.render(config, b'data', 'jpeg', 512, (1000, 600), width=300, height=200)

        boxes = [c.args[1:3] for c in mock_codec.encode.call_args_list]
        assert boxes == [(512, 200), (256, 100)]

    def test_render_without_codec(self, make_pipeline, config):
        pipeline = make_pipeline()
        pipeline.codec = None

        with pytest.raises(CodecUnavailableError):
            pipeline.render(config, b'data', 'jpeg', 256)

    def test_render_raises_encode_error(self, make_pipeline, mock_codec, config):
        mock_codec.encode.side_effect = RuntimeError("corrupt")

        with pytest.raises(EncodeError):
            make_pipeline(codec=mock_codec).render(config, b'data', 'jpeg', 256)


class TestPersist:
    """Tests for GenerationPipeline.persist()."""

    def test_blob_failure_skips_record(self, make_pipeline, mock_codec, config, record_store):
        pipeline = make_pipeline(codec=mock_codec)
        rendition = pipeline.render(config, b'data', 'jpeg', 256)
        pipeline.blobs = MagicMock()
        pipeline.blobs.write.return_value = False
        record = ThumbnailRecord()
        record.add_variant(rendition.key, rendition.descriptor, 5)

        assert pipeline.persist('a.jpg', 5, record, rendition) is False
        assert record_store.load('a.jpg') == ThumbnailRecord()


def test_missing_codec_is_server_error(make_pipeline, source_file, record_store):
    pipeline = make_pipeline()
    pipeline.codec = None

    response = pipeline.handle(SourceAsset.from_path(source_file, identity='photos/cat.jpg'), {})

    assert response.status == 500
    assert record_store.load('photos/cat.jpg') == ThumbnailRecord()
