"""Artifact upload: images, env files, addons, custom resources and static assets."""

from upload.base import UploadError, Uploader
from upload.pipeline import ArtifactPipeline, UploadArtifactsOutput, upload_artifacts

__all__ = [
    'ArtifactPipeline',
    'UploadArtifactsOutput',
    'UploadError',
    'Uploader',
    'upload_artifacts',
]
