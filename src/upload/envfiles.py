"""Environment file upload.

Containers (main, sidecars, log router) may share an env file. Each
distinct file is read and uploaded once; every container that references
it receives the same object ARN.
"""

import logging
from pathlib import Path

from common import partition_for_region
from upload.base import UploadError, Uploader, env_file_key, parse_s3_url, s3_arn

logger = logging.getLogger(__name__)


def containers_by_env_file(env_files: dict[str, str]) -> dict[str, list[str]]:
    """Invert container -> path into path -> containers, dropping empty paths."""
    by_path: dict[str, list[str]] = {}
    for container, path in env_files.items():
        if not path:
            continue
        by_path.setdefault(path, []).append(container)
    return by_path


def push_env_files(env_files: dict[str, str], workspace: Path, uploader: Uploader,
                   bucket: str, region: str) -> dict[str, str]:
    """Upload each distinct env file once.

    Args:
        env_files: Map of container name to env file path (relative to workspace)
        workspace: Workspace root
        uploader: Object-store uploader
        bucket: Artifact bucket
        region: Region of the environment, used to pick the ARN partition

    Returns:
        Map of container name to env file ARN

    Raises:
        UploadError: If a file cannot be read or uploaded
    """
    by_path = containers_by_env_file(env_files)
    if not by_path:
        return {}

    partition = partition_for_region(region)
    arns: dict[str, str] = {}
    for path, containers in by_path.items():
        try:
            content = (workspace / path).read_bytes()
        except OSError as e:
            raise UploadError(f"read env file {path}: {e}") from e
        key = env_file_key(path, content)
        try:
            url = uploader.upload(bucket, key, content)
        except Exception as e:
            raise UploadError(f"put env file {path} artifact to bucket {bucket}: {e}") from e
        obj_bucket, obj_key = parse_s3_url(url)
        arn = s3_arn(partition, obj_bucket, obj_key)
        logger.info(f"Uploaded env file {path} for {', '.join(sorted(containers))}")
        logger.debug(f"Env file {path} -> {arn}")
        for container in containers:
            arns[container] = arn
    return arns
