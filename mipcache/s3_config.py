"""
S3Config - Connection settings for S3/MinIO blob storage.
"""

import os
from dataclasses import dataclass
from typing import List, Optional

from .thumb_config import str2bool


@dataclass
class S3Config:
    """
    S3 connection settings.

    Attributes:
        endpoint: Endpoint URL (e.g. a MinIO server)
        bucket: Bucket holding cached thumbnails
        prefix: Key prefix within the bucket
        access_key: Access key id
        secret_key: Secret access key
        region: Optional region name
        verify_ssl: Verify TLS certificates
    """
    endpoint: Optional[str] = None
    bucket: Optional[str] = None
    prefix: str = 'thumbcache'
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: Optional[str] = None
    verify_ssl: bool = True

    @classmethod
    def from_env(cls) -> 'S3Config':
        """Load configuration from S3_* environment variables."""
        return cls(
            endpoint=os.getenv('S3_ENDPOINT'),
            bucket=os.getenv('S3_BUCKET'),
            prefix=os.getenv('S3_PREFIX', 'thumbcache'),
            access_key=os.getenv('S3_ACCESS_KEY'),
            secret_key=os.getenv('S3_SECRET_KEY'),
            region=os.getenv('S3_REGION'),
            verify_ssl=str2bool(os.getenv('S3_VERIFY_SSL'), True),
        )

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []
        if not self.endpoint:
            errors.append("S3_ENDPOINT is not set")
        if not self.bucket:
            errors.append("S3_BUCKET is not set")
        if not self.access_key:
            errors.append("S3_ACCESS_KEY is not set")
        if not self.secret_key:
            errors.append("S3_SECRET_KEY is not set")
        return errors
