#!/usr/bin/env python3

import json
import logging
import os
from collections import Counter
from functools import wraps
from os import path
from threading import Lock

from bottle import Bottle

import settings
from mipcache.attr_store import LocalAttrStore
from mipcache.background import TaskRunner
from mipcache.blob_store import LocalBlobStore
from mipcache.codec import PillowCodec
from mipcache.exceptions import ConfigurationError
from mipcache.pipeline import GenerationPipeline, SourceAsset, is_thumb_request
from mipcache.record_store import RecordStore
from mipcache.s3_config import S3Config
from mipcache.thumb_config import ThumbConfig

app = application = Bottle()

# Configure logging
level = logging.getLevelName(settings.LOG_LEVEL)
logging.basicConfig(filename='app.log', level=level)

from bottle import (
    Response, request, response, static_file, abort, HTTPResponse)

# Serves of original files, keyed by request path.
DOWNLOAD_COUNTS = Counter()
_counts_lock = Lock()

_pipeline = None
_pipeline_lock = Lock()


def log(msg):
    logging.debug(msg)


def build_record_store():
    """Metadata record backend selected by settings.RECORD_BACKEND."""
    if settings.RECORD_BACKEND == 'mysql':
        from mipcache.mysql_attr_store import MysqlAttrStore
        attrs = MysqlAttrStore.from_settings(settings)
        attrs.create_tables()
    elif settings.RECORD_BACKEND == 'local':
        attrs = LocalAttrStore(settings.ATTR_DIR)
    else:
        raise ConfigurationError(f"Unknown RECORD_BACKEND: {settings.RECORD_BACKEND}")
    return RecordStore(attrs, verbose=ThumbConfig.from_env().verbose)


def build_blob_store():
    """Rendition blob backend selected by settings.BLOB_BACKEND."""
    if settings.BLOB_BACKEND == 's3':
        from mipcache.s3_blob_store import S3BlobStore
        config = S3Config.from_env()
        errors = config.validate()
        if errors:
            raise ConfigurationError('; '.join(errors))
        return S3BlobStore(config)
    if settings.BLOB_BACKEND == 'local':
        return LocalBlobStore(settings.CACHE_DIR)
    raise ConfigurationError(f"Unknown BLOB_BACKEND: {settings.BLOB_BACKEND}")


def get_pipeline():
    """Return the shared pipeline, creating it on first use."""
    global _pipeline
    with _pipeline_lock:
        if _pipeline is None:
            _pipeline = GenerationPipeline(
                record_store=build_record_store(),
                blob_store=build_blob_store(),
                codec=PillowCodec(),
                runner=TaskRunner(max_workers=settings.PERSIST_WORKERS, name='persist'),
                backfill_runner=TaskRunner(max_workers=settings.BACKFILL_WORKERS, name='backfill'),
                config_provider=ThumbConfig.from_env,
            )
            log("Thumbnail pipeline ready")
        return _pipeline


def count_download(rel_path):
    with _counts_lock:
        DOWNLOAD_COUNTS[rel_path] += 1


def resolve_source(rel_path):
    """Map a request path to a file under BASE_DIR, aborting on escape or absence."""
    base = path.realpath(settings.BASE_DIR)
    full = path.realpath(path.join(base, rel_path))
    if full != base and not full.startswith(base + os.sep):
        log(f"Rejected path outside base dir: {rel_path}")
        abort(403, "Forbidden")
    if not path.isfile(full):
        abort(404, f"Missing file: {rel_path}")
    return full


def allow_cross_origin(func):
    """Decorate a view function to allow cross domain access."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            result = func(*args, **kwargs)
        except HTTPResponse as r:
            r.set_header('Access-Control-Allow-Origin', '*')
            raise
        (result if isinstance(result, Response) else response) \
            .set_header('Access-Control-Allow-Origin', '*')
        return result
    return wrapper


@app.route('/files/<rel_path:path>')
@allow_cross_origin
def files(rel_path):
    """Serve a file; with ?get=thumb serve a thumbnail of it instead."""
    if not settings.ALLOW_STATIC_FILE_ACCESS:
        abort(404)
    full = resolve_source(rel_path)

    if is_thumb_request(request.query):
        asset = SourceAsset.from_path(full, identity=rel_path)
        thumb = get_pipeline().handle(asset, request.query)
        if thumb is not None:
            if thumb.count_download:
                count_download(rel_path)
            if thumb.log_request:
                logging.info(f"thumb {rel_path} {thumb.status} {thumb.origin or '-'} {thumb.key or '-'}")
            return HTTPResponse(
                body=thumb.body,
                status=thumb.status,
                headers=dict(thumb.headers, **{'Content-Type': thumb.content_type}),
            )
        log(f"Serving original for thumbnail request: {rel_path}")
        return static_file(rel_path, root=settings.BASE_DIR)

    count_download(rel_path)
    return static_file(rel_path, root=settings.BASE_DIR)


@app.route('/thumbstatus/<rel_path:path>')
def thumbstatus(rel_path):
    """Diagnostics: the stored thumbnail record for a file."""
    full = resolve_source(rel_path)
    mtime = os.stat(full).st_mtime
    record = get_pipeline().records.load(rel_path)

    output = {'identity': rel_path}
    output.update(record.to_dict())
    output['fresh'] = record.is_fresh(mtime, ThumbConfig.from_env().regenerate_before)
    output['downloads'] = DOWNLOAD_COUNTS.get(rel_path, 0)

    response.content_type = 'application/json'
    return json.dumps(output, indent=4, sort_keys=True)


@app.route('/')
def main_page():
    log("Hit root")
    return 'Thumbnail server'


if __name__ == '__main__':
    from bottle import run
    log("Starting up....")
    errors = ThumbConfig.from_env().validate()
    for error in errors:
        logging.error(error)
    get_pipeline()
    log("running server...")

    run(app=application,
        host='0.0.0.0',
        port=settings.PORT,
        server=settings.SERVER,
        debug=settings.DEBUG_APP,
        reloader=settings.DEBUG_APP
    )

    log("Exiting.")
