"""Shared upload types and object-store helpers.

Object keys are derived from content hashes so identical content always
lands under the same key and re-uploading it is idempotent:

    manual/env-files/{basename}/{sha256}.env
    manual/addons/{workload}/{sha256}.yml
    manual/addons/{workload}/assets/{sha256}
    manual/scripts/custom-resources/{function}/{sha256}.zip
    local/assets/{sha256}
    local/mappings/{workload}/{sha256}.json
    manual/templates/{stack}/{sha256}.yml
"""

import hashlib
import posixpath
import re
from typing import Protocol, runtime_checkable
from urllib.parse import unquote, urlparse


class UploadError(Exception):
    """An artifact could not be packaged or uploaded."""


@runtime_checkable
class Uploader(Protocol):
    """Writes bytes under a key in a bucket and returns the object URL."""

    def upload(self, bucket: str, key: str, data: bytes) -> str:
        ...


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# -----------------------------------------------------------------------------
# Artifact Keys
# -----------------------------------------------------------------------------

def env_file_key(path: str, content: bytes) -> str:
    return f'manual/env-files/{posixpath.basename(path)}/{content_hash(content)}.env'


def addons_key(workload: str, content: bytes) -> str:
    return f'manual/addons/{workload}/{content_hash(content)}.yml'


def addon_asset_key(workload: str, digest: str) -> str:
    return f'manual/addons/{workload}/assets/{digest}'


def custom_resource_key(function_name: str, content: bytes) -> str:
    return f'manual/scripts/custom-resources/{function_name.lower()}/{content_hash(content)}.zip'


def static_asset_key(content: bytes) -> str:
    return f'local/assets/{content_hash(content)}'


def asset_mapping_key(workload: str, content: bytes) -> str:
    return f'local/mappings/{workload}/{content_hash(content)}.json'


def stack_template_key(stack_name: str, content: bytes) -> str:
    return f'manual/templates/{stack_name}/{content_hash(content)}.yml'


# -----------------------------------------------------------------------------
# URL / ARN Helpers
# -----------------------------------------------------------------------------

def object_url(bucket: str, key: str, region: str = '') -> str:
    """Virtual-hosted style URL of an object."""
    if region:
        return f'https://{bucket}.s3.{region}.amazonaws.com/{key}'
    return f'https://{bucket}.s3.amazonaws.com/{key}'


# Bucket names may contain ".s3"; the last ".s3." or ".s3-" label starts the endpoint
_VIRTUAL_HOST_RE = re.compile(r'^(?P<bucket>.+)\.s3[.-]')


def parse_s3_url(url: str) -> tuple[str, str]:
    """Split an object URL into (bucket, key).

    Accepts s3://bucket/key, virtual-hosted and path-style https URLs.

    Raises:
        UploadError: If the URL is not an object URL
    """
    parsed = urlparse(url)
    key = unquote(parsed.path.lstrip('/'))
    virtual_host = _VIRTUAL_HOST_RE.match(parsed.netloc)
    if parsed.scheme == 's3':
        bucket = parsed.netloc
    elif parsed.scheme == 'https' and virtual_host:
        bucket = virtual_host.group('bucket')
    elif parsed.scheme == 'https' and parsed.netloc.startswith('s3'):
        bucket, _, key = key.partition('/')
    else:
        raise UploadError(f"cannot parse S3 URL {url}")
    if not bucket or not key:
        raise UploadError(f"cannot parse S3 URL {url}")
    return bucket, key


def s3_arn(partition: str, bucket: str, key: str) -> str:
    return f'arn:{partition}:s3:::{bucket}/{key}'


def s3_location(bucket: str, key: str) -> str:
    return f's3://{bucket}/{key}'
