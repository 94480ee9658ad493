"""
S3BlobStore - Thumbnail blobs kept in an S3/MinIO bucket.
"""

import logging
from typing import Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .blob_store import BlobStore
from .s3_config import S3Config


class S3BlobStore(BlobStore):
    """
    Wrapper for S3/MinIO blob operations.

    Object mtimes cannot be set, so the source mtime is recorded in the
    object's user metadata as 'source-mtime'.
    """

    def __init__(self, config: S3Config, logger: Optional[logging.Logger] = None):
        """
        Initialize S3 blob store.

        Args:
            config: S3 configuration
            logger: Optional logger instance
        """
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

        self._client = boto3.client(
            's3',
            endpoint_url=config.endpoint,
            aws_access_key_id=config.access_key,
            aws_secret_access_key=config.secret_key,
            region_name=config.region,
            config=Config(
                signature_version='s3v4',
                s3={'addressing_style': 'path'}
            ),
            verify=config.verify_ssl
        )

    @property
    def client(self):
        """Return the underlying boto3 client."""
        return self._client

    def object_key(self, location: str) -> str:
        return f"{self.config.prefix}/{location}".lstrip('/')

    def exists(self, location: str) -> bool:
        try:
            self._client.head_object(Bucket=self.config.bucket, Key=self.object_key(location))
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise

    def read(self, location: str) -> Iterator[bytes]:
        response = self._client.get_object(Bucket=self.config.bucket, Key=self.object_key(location))
        return self._stream(response['Body'])

    def _stream(self, body) -> Iterator[bytes]:
        """Iterate a botocore StreamingBody by chunk size."""
        try:
            for chunk in iter(lambda: body.read(self.chunk_size), b''):
                yield chunk
        finally:
            body.close()

    def write(self, location: str, data: bytes, source_mtime: Optional[float] = None) -> bool:
        metadata = {}
        if source_mtime is not None:
            metadata['source-mtime'] = repr(float(source_mtime))
        try:
            self._client.put_object(
                Bucket=self.config.bucket,
                Key=self.object_key(location),
                Body=data,
                ContentType='application/octet-stream',
                Metadata=metadata,
            )
            return True
        except (ClientError, BotoCoreError) as e:
            self.logger.debug(f"thumbnails: failed to upload {location}: {e}")
            return False
