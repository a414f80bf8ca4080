"""Reads of a deployed environment: stack outputs, parameters and topics."""

import logging
from typing import Any

from clients.base import AWSOperationError, new_client
from clients.cloudformation import CloudFormationClient, env_stack_name

logger = logging.getLogger(__name__)

OUTPUT_SERVICE_DISCOVERY_ENDPOINT = 'ServiceDiscoveryEndpoint'
OUTPUT_PUBLIC_SUBNET_CIDRS = 'PublicSubnetCIDRBlocks'


class EnvironmentDescriber:
    """Describes the environment stack of one app environment.

    Args:
        cfn: CloudFormation client in the environment region
        sns: boto3 SNS client in the environment region
        app: Application name
        env: Environment name
    """

    def __init__(self, cfn: CloudFormationClient, sns: Any, app: str, env: str):
        self.cfn = cfn
        self.sns = sns
        self.app = app
        self.env = env

    @classmethod
    def for_region(cls, region: str, cfn: CloudFormationClient, app: str, env: str) -> 'EnvironmentDescriber':
        return cls(cfn, new_client('sns', region), app, env)

    @property
    def stack_name(self) -> str:
        return env_stack_name(self.app, self.env)

    def outputs(self) -> dict[str, str]:
        return self.cfn.outputs(self.stack_name)

    def params(self) -> dict[str, str]:
        return self.cfn.params(self.stack_name)

    def service_discovery_endpoint(self) -> str:
        """Endpoint exported by the env stack; older stacks use ``<env>.<app>.local``."""
        endpoint = self.outputs().get(OUTPUT_SERVICE_DISCOVERY_ENDPOINT)
        return endpoint or f'{self.env}.{self.app}.local'

    def public_cidr_blocks(self) -> list[str]:
        value = self.outputs().get(OUTPUT_PUBLIC_SUBNET_CIDRS, '')
        blocks = [b.strip() for b in value.split(',') if b.strip()]
        if not blocks:
            raise AWSOperationError(f"environment stack {self.stack_name} exports no public subnet CIDR blocks")
        return blocks

    def list_topic_arns(self, app: str, env: str) -> list[str]:
        """Topics whose name carries the ``<app>-<env>-`` prefix."""
        prefix = f'{app}-{env}-'
        arns = []
        paginator = self.sns.get_paginator('list_topics')
        for page in paginator.paginate():
            for topic in page.get('Topics', []):
                arn = topic['TopicArn']
                if arn.rsplit(':', 1)[-1].startswith(prefix):
                    arns.append(arn)
        logger.debug(f"Found {len(arns)} topic(s) in {app}/{env}")
        return arns
