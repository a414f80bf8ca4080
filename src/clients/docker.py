"""Container image builds with the docker CLI and ECR login."""

import base64
import logging
import re
from typing import Any

from botocore.exceptions import ClientError

from clients.base import new_client
from common import run_command
from upload.images import DockerBuildArguments, ImageBuildError

logger = logging.getLogger(__name__)

BUILD_TIMEOUT = 3600

_DIGEST_RE = re.compile(r'digest: (sha256:[0-9a-f]{64})')


def build_command(args: DockerBuildArguments) -> list[str]:
    cmd = ['docker', 'build']
    for tag in args.tags:
        cmd.extend(['-t', f'{args.uri}:{tag}'])
    if args.platform:
        cmd.extend(['--platform', args.platform])
    for image in args.cache_from:
        cmd.extend(['--cache-from', image])
    if args.target:
        cmd.extend(['--target', args.target])
    for key, value in sorted(args.args.items()):
        cmd.extend(['--build-arg', f'{key}={value}'])
    for key, value in sorted(args.labels.items()):
        cmd.extend(['--label', f'{key}={value}'])
    cmd.extend(['-f', args.dockerfile, args.context])
    return cmd


class DockerImageBuilder:
    """Builds images with ``docker`` and pushes them to ECR."""

    def __init__(self, ecr: Any):
        self.ecr = ecr

    @classmethod
    def for_region(cls, region: str) -> 'DockerImageBuilder':
        return cls(new_client('ecr', region))

    def login(self, uri: str) -> None:
        try:
            token = self.ecr.get_authorization_token()['authorizationData'][0]['authorizationToken']
        except ClientError as e:
            raise ImageBuildError(f"get ECR authorization token: {e}") from e
        username, _, password = base64.b64decode(token).decode().partition(':')
        registry = uri.split('/', 1)[0]
        rc, _, err = run_command(
            ['docker', 'login', '--username', username, '--password-stdin', registry],
            stdin=password, timeout=60,
        )
        if rc != 0:
            raise ImageBuildError(f"docker login {registry}: {err.strip()}")
        logger.info(f"Logged in to {registry}")

    def build_and_push(self, args: DockerBuildArguments) -> str:
        """Build, push every tag and return the pushed digest."""
        logger.info(f"Building image {args.uri} from {args.dockerfile}")
        rc, _, err = run_command(build_command(args), timeout=BUILD_TIMEOUT)
        if rc != 0:
            raise ImageBuildError(f"build Dockerfile at {args.dockerfile}: {err.strip()}")

        digest = ''
        for tag in args.tags:
            rc, out, err = run_command(['docker', 'push', f'{args.uri}:{tag}'], timeout=BUILD_TIMEOUT)
            if rc != 0:
                raise ImageBuildError(f"push image {args.uri}:{tag}: {err.strip()}")
            match = _DIGEST_RE.search(out)
            if match:
                digest = match.group(1)
        if not digest:
            raise ImageBuildError(f"no digest found in push output for {args.uri}")
        return digest
