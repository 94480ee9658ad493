"""
Command Line Interface for thumbnail cache maintenance.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

import urllib3

from .attr_store import LocalAttrStore
from .background import TaskRunner
from .blob_store import LocalBlobStore
from .codec import PillowCodec
from .mip_ladder import build_ladder, select_for
from .pipeline import GenerationPipeline
from .record_store import RecordStore
from .s3_blob_store import S3BlobStore
from .s3_config import S3Config
from .thumb_config import FORMATS, ThumbConfig
from .warmer import Warmer


def setup_logging(verbose: bool) -> logging.Logger:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('PIL').setLevel(logging.WARNING)

    return logging.getLogger('mipcache')


def get_s3_config(args: argparse.Namespace) -> S3Config:
    """Get S3 configuration from environment and CLI overrides."""
    config = S3Config.from_env()

    if getattr(args, 's3_endpoint', None):
        config.endpoint = args.s3_endpoint
    if getattr(args, 's3_bucket', None):
        config.bucket = args.s3_bucket
    if getattr(args, 's3_prefix', None):
        config.prefix = args.s3_prefix
    if getattr(args, 's3_access_key', None):
        config.access_key = args.s3_access_key
    if getattr(args, 's3_secret_key', None):
        config.secret_key = args.s3_secret_key

    return config


def get_blob_store(args: argparse.Namespace, logger: logging.Logger):
    """Local cache directory, or S3 when --s3 is given."""
    if getattr(args, 's3', False):
        config = get_s3_config(args)
        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(error)
            raise ValueError("S3 configuration invalid")
        if not config.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        logger.info(f"Blob storage: S3 {config.endpoint} {config.bucket}/{config.prefix}")
        return S3BlobStore(config, logger)

    logger.info(f"Blob storage: {args.cache_dir}")
    return LocalBlobStore(args.cache_dir, logger)


def build_pipeline(args: argparse.Namespace, config: ThumbConfig, logger: logging.Logger) -> GenerationPipeline:
    """Wire stores, codec and runner for offline use (no background backfill)."""
    records = RecordStore(LocalAttrStore(args.attr_dir, logger), verbose=config.verbose, logger=logger)
    return GenerationPipeline(
        record_store=records,
        blob_store=get_blob_store(args, logger),
        codec=PillowCodec(logger),
        runner=TaskRunner(max_workers=1),
        config_provider=lambda: config,
        backfill=False,
        logger=logger,
    )


def add_storage_arguments(parser: argparse.ArgumentParser) -> None:
    """Add storage configuration arguments to a parser."""
    local_group = parser.add_argument_group('Local Storage')
    local_group.add_argument('--cache-dir', default=os.getenv('THUMB_CACHE_DIR', 'thumb_cache'),
                             help='Directory for rendition blobs (default: $THUMB_CACHE_DIR or thumb_cache)')
    local_group.add_argument('--attr-dir', default=os.getenv('THUMB_ATTR_DIR', 'thumb_attrs'),
                             help='Directory for metadata records (default: $THUMB_ATTR_DIR or thumb_attrs)')

    s3_group = parser.add_argument_group('S3 Storage')
    s3_group.add_argument('--s3', action='store_true', help='Store blobs in S3 instead of --cache-dir')
    s3_group.add_argument('--s3-endpoint', help='Override S3_ENDPOINT')
    s3_group.add_argument('--s3-bucket', help='Override S3_BUCKET')
    s3_group.add_argument('--s3-prefix', help='Override S3_PREFIX')
    s3_group.add_argument('--s3-access-key', help='Override S3_ACCESS_KEY')
    s3_group.add_argument('--s3-secret-key', help='Override S3_SECRET_KEY')


def cmd_ladder(args: argparse.Namespace) -> int:
    """Print the mip ladder for the given parameters."""
    defaults = ThumbConfig.from_env()
    base = args.base or defaults.base_size
    step = args.step or defaults.step_multiplier
    min_size = args.min or defaults.min_size

    try:
        ladder = build_ladder(base, step, min_size, original_long=args.original)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(' '.join(str(s) for s in ladder))
    if args.request:
        print(f"{args.request} -> {select_for(args.request, ladder)}")
    return 0


def cmd_warm(args: argparse.Namespace) -> int:
    """Pre-generate ladders for every image under a directory."""
    logger = setup_logging(args.verbose)

    if not os.path.isdir(args.root):
        logger.error(f"Not a directory: {args.root}")
        return 1

    config = ThumbConfig.from_env().with_overrides(
        backfill_initial_delay=0,
        backfill_interval=args.cadence,
    )
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(error)
        return 1

    try:
        pipeline = build_pipeline(args, config, logger)
    except ValueError:
        return 1

    logger.info(f"Root: {args.root}")
    logger.info(f"Ladder base: {config.base_size}px, step {config.step_multiplier}, min {config.min_size}px")
    logger.info(f"Cadence: {args.cadence}s")
    if args.limit:
        logger.info(f"Test mode: limiting to {args.limit} images")

    warmer = Warmer(pipeline, config, fmt=args.format, dry_run=args.dry_run, logger=logger)
    try:
        stats = warmer.warm(args.root, limit=args.limit)
    except KeyboardInterrupt:
        warmer.stop()
        logger.info("Interrupted by user")
        return 130
    finally:
        pipeline.runner.shutdown()

    if not args.quiet:
        print()
        print(f"Generated: {stats.generated}")
        print(f"Skipped: {stats.skipped}")
        print(f"Errors: {stats.errors}")
        print(f"Time: {stats.elapsed_seconds:.1f}s")

    return 0 if stats.errors == 0 else 1


def cmd_inspect(args: argparse.Namespace) -> int:
    """Print the stored metadata record for one file."""
    logger = setup_logging(args.verbose)

    path = os.path.join(args.root, args.file)
    identity = Warmer.identity_for(args.root, path)
    records = RecordStore(LocalAttrStore(args.attr_dir, logger), verbose=True, logger=logger)
    record = records.load(identity)

    output = {'identity': identity}
    output.update(record.to_dict())
    if os.path.exists(path):
        mtime = os.stat(path).st_mtime
        output['fresh'] = record.is_fresh(mtime, ThumbConfig.from_env().regenerate_before)
    print(json.dumps(output, indent=2, sort_keys=True))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog='mipcache',
        description='Thumbnail mip ladder cache maintenance',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m mipcache ladder --base 256 --step 2 --min 32 --original 1000
  python -m mipcache -v warm --root /srv/files --cadence 0.5
  python -m mipcache inspect --root /srv/files photos/cat.jpg

Thumbnail settings come from THUMB_* environment variables.
"""
    )

    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    ladder_parser = subparsers.add_parser('ladder', help='Print the mip ladder')
    ladder_parser.add_argument('--base', type=int, help='Base size (default: from THUMB_PIXELS)')
    ladder_parser.add_argument('--step', type=float, help='Step multiplier (default: THUMB_STEP_MULTIPLIER)')
    ladder_parser.add_argument('--min', type=int, help='Minimum size (default: THUMB_MIN_SIZE)')
    ladder_parser.add_argument('--original', type=int, help='Native long side of the source')
    ladder_parser.add_argument('--request', type=int, help='Show the size selected for this request')

    warm_parser = subparsers.add_parser('warm', help='Generate ladders for a directory of images')
    warm_parser.add_argument('-r', '--root', required=True, help='Source directory')
    warm_parser.add_argument('--format', choices=FORMATS, help='Output format (default: THUMB_FORMAT)')
    warm_parser.add_argument('-c', '--cadence', type=float, default=1.0, help='Seconds between renditions')
    warm_parser.add_argument('-n', '--dry-run', action='store_true', help='Show what would be done')
    warm_parser.add_argument('-q', '--quiet', action='store_true', help='Suppress summary output')
    warm_parser.add_argument('--limit', type=int, metavar='N', help='Limit to N images (for testing)')
    add_storage_arguments(warm_parser)

    inspect_parser = subparsers.add_parser('inspect', help='Show the metadata record for a file')
    inspect_parser.add_argument('-r', '--root', required=True, help='Source directory')
    inspect_parser.add_argument('file', help='File path relative to root')
    inspect_parser.add_argument('--attr-dir', default=os.getenv('THUMB_ATTR_DIR', 'thumb_attrs'),
                                help='Directory for metadata records')

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'ladder':
        return cmd_ladder(parsed_args)
    elif parsed_args.command == 'warm':
        return cmd_warm(parsed_args)
    elif parsed_args.command == 'inspect':
        return cmd_inspect(parsed_args)

    return 1
