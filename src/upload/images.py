"""Container image build-and-push.

Every container with a local Dockerfile is built once and pushed to the
workload's repository. The main container is tagged ``latest`` plus the
custom or commit tag; sidecars share the repository, so their tags carry
a ``<container>-`` prefix.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from manifest import BuildArgs

logger = logging.getLogger(__name__)

IMAGE_TAG_LATEST = 'latest'

LABEL_BUILDER = 'com.deploy-driver.image.builder'
LABEL_VERSION = 'com.deploy-driver.image.version'
LABEL_CONTAINER_NAME = 'com.deploy-driver.image.container.name'

BUILDER_NAME = 'deploy-driver'


@dataclass(frozen=True)
class ContainerImageIdentifier:
    """Tags and digest of a pushed image."""
    digest: str = ''
    custom_tag: str = ''
    git_short_commit_tag: str = ''

    @property
    def tag(self) -> str:
        """User supplied tag if any, otherwise the short commit."""
        return self.custom_tag or self.git_short_commit_tag


@dataclass
class DockerBuildArguments:
    """Fully resolved arguments for one ``docker build``."""
    uri: str
    dockerfile: str
    context: str
    tags: list[str]
    labels: dict[str, str] = field(default_factory=dict)
    args: dict[str, str] = field(default_factory=dict)
    cache_from: list[str] = field(default_factory=list)
    target: str = ''
    platform: str = ''


@runtime_checkable
class ImageBuilder(Protocol):
    """Builds images and pushes them to a repository."""

    def login(self, uri: str) -> None:
        ...

    def build_and_push(self, args: DockerBuildArguments) -> str:
        """Build and push, returning the image digest."""
        ...


class ImageBuildError(Exception):
    """Image build or push failed."""


def build_args_per_container(
    workload: str,
    build_args: dict[str, BuildArgs],
    workspace: Path,
    image: ContainerImageIdentifier,
    uri: str,
    platform: str = '',
    version: str = '',
) -> dict[str, DockerBuildArguments]:
    """Resolve docker build arguments for every locally built container."""
    out = {}
    for container, args in build_args.items():
        tags = [IMAGE_TAG_LATEST]
        if image.tag:
            tags.append(image.tag)
        if container != workload:
            tags = [f'{container}-{IMAGE_TAG_LATEST}']
            if image.git_short_commit_tag:
                tags.append(f'{container}-{image.git_short_commit_tag}')

        labels = {LABEL_BUILDER: BUILDER_NAME}
        if version:
            labels[LABEL_VERSION] = version
        labels[LABEL_CONTAINER_NAME] = container

        out[container] = DockerBuildArguments(
            uri=uri,
            dockerfile=str(workspace / args.dockerfile),
            context=str(workspace / args.context) if args.context else str(workspace),
            tags=tags,
            labels=labels,
            args=dict(args.args),
            cache_from=list(args.cache_from),
            target=args.target,
            platform=platform,
        )
    return out


def push_container_images(
    builder: ImageBuilder,
    args_per_container: dict[str, DockerBuildArguments],
    image: ContainerImageIdentifier,
    uri: Optional[str] = None,
) -> dict[str, ContainerImageIdentifier]:
    """Build and push each container image once.

    Returns:
        Map of container name to pushed image identifier

    Raises:
        ImageBuildError: If login, build or push fails
    """
    if not args_per_container:
        return {}
    login_uri = uri or next(iter(args_per_container.values())).uri
    try:
        builder.login(login_uri)
    except ImageBuildError as e:
        raise ImageBuildError(f"login to image repository: {e}") from e

    digests = {}
    for container, args in args_per_container.items():
        logger.info(f"Building image for container {container} ({', '.join(args.tags)})")
        try:
            digest = builder.build_and_push(args)
        except ImageBuildError as e:
            raise ImageBuildError(f"build and push image: {e}") from e
        logger.info(f"Pushed {container} image {digest}")
        digests[container] = ContainerImageIdentifier(
            digest=digest,
            custom_tag=image.custom_tag,
            git_short_commit_tag=image.git_short_commit_tag,
        )
    return digests
