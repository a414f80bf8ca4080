"""Runtime configuration consumed by the stack template.

Built fresh for every deploy from the upload pipeline's output plus two
reads from the environment: its service discovery endpoint and its
template version. Either read failing aborts the deploy.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable

from common import WorkloadIdentity
from config import EnvironmentCapabilities
from upload.pipeline import UploadArtifactsOutput
from validation import VersionGetter

logger = logging.getLogger(__name__)


class StackConfigError(Exception):
    """Stack configuration could not be assembled."""


@runtime_checkable
class EndpointGetter(Protocol):
    """Returns the environment's service discovery endpoint."""

    def service_discovery_endpoint(self) -> str:
        ...


@dataclass
class ECRImage:
    """A pushed container image referenced by the task definition."""
    repo_url: str
    image_tag: str
    digest: str
    main_container_name: str
    container_name: str

    @property
    def uri(self) -> str:
        """Digest reference if known, otherwise tag reference."""
        if self.digest:
            return f'{self.repo_url}@{self.digest}'
        tag = self.image_tag or 'latest'
        if self.container_name != self.main_container_name:
            tag = f'{self.container_name}-{tag}'
        return f'{self.repo_url}:{tag}'


@dataclass
class StackRuntimeConfig:
    """Everything the template needs that is only known at deploy time."""
    pushed_images: dict[str, ECRImage] = field(default_factory=dict)
    env_file_arns: dict[str, str] = field(default_factory=dict)
    addons_template_url: str = ''
    addons_parameters: dict = field(default_factory=dict)
    custom_resource_urls: dict[str, str] = field(default_factory=dict)
    static_site_asset_mapping_location: str = ''
    service_discovery_endpoint: str = ''
    account_id: str = ''
    region: str = ''
    env_version: str = ''
    additional_tags: dict[str, str] = field(default_factory=dict)


def build_runtime_config(
    identity: WorkloadIdentity,
    env: EnvironmentCapabilities,
    artifacts: UploadArtifactsOutput,
    endpoint_getter: EndpointGetter,
    env_version_getter: VersionGetter,
    repository_url: str = '',
    tags: Optional[dict[str, str]] = None,
) -> StackRuntimeConfig:
    """Assemble the runtime configuration.

    Raises:
        StackConfigError: If the endpoint or environment version cannot be read
    """
    try:
        endpoint = endpoint_getter.service_discovery_endpoint()
    except Exception as e:
        raise StackConfigError(f"get service discovery endpoint: {e}") from e
    try:
        env_version = env_version_getter.version()
    except Exception as e:
        raise StackConfigError(f'get version of environment "{identity.env}": {e}') from e

    images = {}
    for container, img in artifacts.image_digests.items():
        # Sidecars are never tagged with the user's custom tag
        image_tag = img.tag if container == identity.name else img.git_short_commit_tag
        images[container] = ECRImage(
            repo_url=repository_url,
            image_tag=image_tag,
            digest=img.digest,
            main_container_name=identity.name,
            container_name=container,
        )

    return StackRuntimeConfig(
        pushed_images=images,
        env_file_arns=dict(artifacts.env_file_arns),
        addons_template_url=artifacts.addons_url,
        addons_parameters=dict(artifacts.addons_parameters),
        custom_resource_urls=dict(artifacts.custom_resource_urls),
        static_site_asset_mapping_location=artifacts.static_site_asset_mapping_location,
        service_discovery_endpoint=endpoint,
        account_id=env.account_id,
        region=env.region,
        env_version=env_version,
        additional_tags=dict(tags or {}),
    )
