"""Static site asset upload.

Files listed under ``files:`` in a static site manifest are uploaded under
content-derived keys. A JSON mapping from each object key to its
destination path in the site bucket is uploaded next to them; the stack
copies objects into place using that mapping.
"""

import fnmatch
import json
import logging
import mimetypes
import posixpath
from pathlib import Path

from manifest import FileUpload
from upload.base import (
    UploadError,
    Uploader,
    asset_mapping_key,
    parse_s3_url,
    s3_location,
    static_asset_key,
)

logger = logging.getLogger(__name__)


def _excluded(rel_path: str, upload: FileUpload) -> bool:
    excluded = any(fnmatch.fnmatch(rel_path, pat) for pat in upload.exclude)
    if excluded and any(fnmatch.fnmatch(rel_path, pat) for pat in upload.reinclude):
        return False
    return excluded


def collect_files(workspace: Path, upload: FileUpload) -> list[tuple[Path, str]]:
    """Return (local path, destination path) pairs for one files entry.

    Raises:
        UploadError: If the source does not exist
    """
    source = workspace / upload.source
    if not source.exists():
        raise UploadError(
            f'source "{upload.source}" must be a valid path relative to the workspace '
            f'root "{workspace}": {source} does not exist'
        )
    if source.is_file():
        dest = upload.destination or source.name
        return [(source, dest)]

    pattern = '**/*' if upload.recursive else '*'
    out = []
    for path in sorted(source.glob(pattern)):
        if not path.is_file():
            continue
        rel = path.relative_to(source).as_posix()
        if _excluded(rel, upload):
            continue
        out.append((path, posixpath.join(upload.destination, rel) if upload.destination else rel))
    return out


def upload_static_files(workspace: Path, workload: str, files: list[FileUpload],
                        uploader: Uploader, bucket: str) -> str:
    """Upload static assets and their mapping.

    Returns:
        s3:// location of the asset mapping, or '' when there are no files
    """
    if not files:
        return ''
    mapping = []
    for upload in files:
        for path, dest in collect_files(workspace, upload):
            data = path.read_bytes()
            key = static_asset_key(data)
            try:
                uploader.upload(bucket, key, data)
            except Exception as e:
                raise UploadError(f"upload static files: {e}") from e
            content_type, _ = mimetypes.guess_type(dest)
            mapping.append({
                'path': key,
                'destPath': dest,
                'contentType': content_type or 'application/octet-stream',
            })
    mapping.sort(key=lambda m: m['destPath'])
    body = json.dumps(mapping, sort_keys=True).encode('utf-8')
    try:
        url = uploader.upload(bucket, asset_mapping_key(workload, body), body)
    except Exception as e:
        raise UploadError(f"upload static files: {e}") from e
    obj_bucket, obj_key = parse_s3_url(url)
    logger.info(f"Uploaded {len(mapping)} static file(s) for {workload}")
    return s3_location(obj_bucket, obj_key)
