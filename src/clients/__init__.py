"""boto3 adapters for the deploy driver's collaborators."""

from clients.acm import ACMCertValidator
from clients.base import AWSOperationError, WaitTimeoutError
from clients.cloudformation import CloudFormationClient, StackNotFoundError, StackVersionGetter
from clients.compute import AppRunnerClient, ECSClient
from clients.docker import DockerImageBuilder
from clients.elbv2 import ELBv2Client
from clients.environment import EnvironmentDescriber
from clients.s3 import S3Uploader

__all__ = [
    'ACMCertValidator',
    'AWSOperationError',
    'AppRunnerClient',
    'CloudFormationClient',
    'DockerImageBuilder',
    'ECSClient',
    'ELBv2Client',
    'EnvironmentDescriber',
    'S3Uploader',
    'StackNotFoundError',
    'StackVersionGetter',
    'WaitTimeoutError',
]
