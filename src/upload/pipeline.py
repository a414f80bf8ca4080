"""Artifact upload pipeline.

Runs upload steps in order, short-circuiting on the first error. Each step
fills its own fields of ``UploadArtifactsOutput``; a field that is already
populated is never overwritten by a later step.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Callable, Optional

from common import WorkloadIdentity
from manifest import ServiceManifest, StaticSite
from upload.addons import Addons, push_addons_template
from upload.customresources import CustomResource, upload_custom_resources
from upload.envfiles import push_env_files
from upload.images import (
    ContainerImageIdentifier,
    ImageBuilder,
    ImageBuildError,
    build_args_per_container,
    push_container_images,
)
from upload.base import UploadError, Uploader
from upload.static_assets import upload_static_files

logger = logging.getLogger(__name__)


@dataclass
class UploadArtifactsOutput:
    """Accumulated results of the upload steps."""
    image_digests: dict[str, ContainerImageIdentifier] = field(default_factory=dict)
    env_file_arns: dict[str, str] = field(default_factory=dict)
    addons_url: str = ''
    addons_parameters: dict = field(default_factory=dict)
    custom_resource_urls: dict[str, str] = field(default_factory=dict)
    static_site_asset_mapping_location: str = ''

    _populated: set = field(default_factory=set, repr=False, compare=False)

    def populate(self, **values) -> None:
        """Set fields owned by one step.

        Raises:
            ValueError: If a field was already populated by an earlier step
        """
        known = {f.name for f in fields(self) if not f.name.startswith('_')}
        for name, value in values.items():
            if name not in known:
                raise ValueError(f"unknown upload output field {name}")
            if name in self._populated:
                raise ValueError(f"upload output field {name} is already populated")
            setattr(self, name, value)
            self._populated.add(name)


UploadStep = Callable[[UploadArtifactsOutput], None]


def upload_artifacts(*steps: UploadStep) -> UploadArtifactsOutput:
    """Run steps sequentially and return the accumulated output."""
    out = UploadArtifactsOutput()
    for step in steps:
        step(out)
    return out


@dataclass
class ArtifactPipeline:
    """Upload steps for one workload.

    Attributes:
        identity: Workload being deployed
        manifest: Workload manifest
        workspace: Workspace root for relative paths
        bucket: Artifact bucket
        region: Environment region
        uploader: Object-store uploader
        image_builder: Builds and pushes container images
        repository_url: Image repository of the workload
        image: Custom and commit tags for pushed images
        addons: Parsed addons, None when the workload has none
        custom_resources: Function bundles the workload type needs
        version: Driver version recorded as an image label
    """
    identity: WorkloadIdentity
    manifest: ServiceManifest
    workspace: Path
    bucket: str
    region: str
    uploader: Uploader
    image_builder: Optional[ImageBuilder] = None
    repository_url: str = ''
    image: ContainerImageIdentifier = field(default_factory=ContainerImageIdentifier)
    addons: Optional[Addons] = None
    custom_resources: list[CustomResource] = field(default_factory=list)
    version: str = ''

    def build_and_push_images(self, out: UploadArtifactsOutput) -> None:
        build_args = self.manifest.build_args()
        if not build_args:
            return
        if self.image_builder is None:
            raise ImageBuildError(f"no image builder configured for {self.identity.name}")
        args = build_args_per_container(
            workload=self.identity.name,
            build_args=build_args,
            workspace=self.workspace,
            image=self.image,
            uri=self.repository_url,
            platform=getattr(self.manifest, 'platform', ''),
            version=self.version,
        )
        out.populate(image_digests=push_container_images(self.image_builder, args, self.image))

    def upload_env_files(self, out: UploadArtifactsOutput) -> None:
        arns = push_env_files(self.manifest.env_files(), self.workspace, self.uploader,
                              self.bucket, self.region)
        if arns:
            out.populate(env_file_arns=arns)

    def upload_addons(self, out: UploadArtifactsOutput) -> None:
        url = push_addons_template(self.addons, self.uploader, self.bucket, self.workspace)
        if url:
            out.populate(addons_url=url, addons_parameters=dict(self.addons.parameters))

    def upload_custom_resources(self, out: UploadArtifactsOutput) -> None:
        try:
            urls = upload_custom_resources(self.uploader, self.bucket, self.custom_resources)
        except UploadError as e:
            raise UploadError(f'upload custom resources for "{self.identity.name}": {e}') from e
        out.populate(custom_resource_urls=urls)

    def upload_static_assets(self, out: UploadArtifactsOutput) -> None:
        if not isinstance(self.manifest, StaticSite):
            return
        location = upload_static_files(self.workspace, self.identity.name, self.manifest.files,
                                       self.uploader, self.bucket)
        if location:
            out.populate(static_site_asset_mapping_location=location)

    def steps(self) -> list[UploadStep]:
        if isinstance(self.manifest, StaticSite):
            return [self.upload_static_assets, self.upload_custom_resources]
        return [
            self.build_and_push_images,
            self.upload_env_files,
            self.upload_addons,
            self.upload_custom_resources,
        ]

    def run(self) -> UploadArtifactsOutput:
        logger.info(f"Uploading artifacts for {self.identity}")
        return upload_artifacts(*self.steps())
