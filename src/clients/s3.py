"""S3 object uploader."""

import logging
from typing import Any

from clients.base import new_client
from upload.base import object_url

logger = logging.getLogger(__name__)


class S3Uploader:
    """Uploads artifacts with ``put_object`` and returns their URL."""

    def __init__(self, client: Any, region: str = ''):
        self.client = client
        self.region = region

    @classmethod
    def for_region(cls, region: str) -> 'S3Uploader':
        return cls(new_client('s3', region), region)

    def upload(self, bucket: str, key: str, data: bytes) -> str:
        self.client.put_object(Bucket=bucket, Key=key, Body=data)
        logger.debug(f"Uploaded {len(data)} bytes to s3://{bucket}/{key}")
        return object_url(bucket, key, self.region)
