"""Force-update clients for the compute platforms.

Both look up the running service through the workload stack's resources,
so they only need the app, env and workload names.
"""

import logging
import time
from datetime import datetime
from typing import Any, Callable

from clients.base import AWSOperationError, WaitTimeoutError, new_client, wait_for
from clients.cloudformation import CloudFormationClient
from common import WorkloadIdentity

logger = logging.getLogger(__name__)

ECS_SERVICE_TYPE = 'AWS::ECS::Service'
APP_RUNNER_SERVICE_TYPE = 'AWS::AppRunner::Service'

APP_RUNNER_OP_SUCCEEDED = 'SUCCEEDED'
APP_RUNNER_OP_FAILED = 'FAILED'


def _service_resource(cfn: CloudFormationClient, identity: WorkloadIdentity, resource_type: str) -> str:
    for res in cfn.resources(identity.stack_name):
        if res.resource_type == resource_type and res.physical_id:
            return res.physical_id
    raise AWSOperationError(f"no {resource_type} resource found in stack {identity.stack_name}")


def parse_ecs_service_arn(arn: str) -> tuple[str, str]:
    """Split ``arn:...:service/<cluster>/<service>`` into (cluster, service)."""
    resource = arn.split(':', 5)[-1]
    parts = resource.split('/')
    if len(parts) != 3 or parts[0] != 'service':
        raise AWSOperationError(f"cannot parse ECS service ARN {arn}")
    return parts[1], parts[2]


class ECSClient:
    """Forces new deployments of ECS services."""

    def __init__(self, client: Any, cfn: CloudFormationClient):
        self.client = client
        self.cfn = cfn

    @classmethod
    def for_region(cls, region: str, cfn: CloudFormationClient) -> 'ECSClient':
        return cls(new_client('ecs', region), cfn)

    def _service(self, app: str, env: str, svc: str) -> tuple[str, str]:
        arn = _service_resource(self.cfn, WorkloadIdentity(app, env, svc), ECS_SERVICE_TYPE)
        return parse_ecs_service_arn(arn)

    def force_update_service(self, app: str, env: str, svc: str) -> None:
        """Start a new deployment and wait for the service to be stable.

        Raises:
            WaitTimeoutError: If the service does not stabilize in time
        """
        cluster, service = self._service(app, env, svc)
        self.client.update_service(cluster=cluster, service=service, forceNewDeployment=True)
        logger.debug(f"Started new deployment of ECS service {service} in cluster {cluster}")
        wait_for(self.client, 'services_stable', f"ECS service {service} to be stable",
                 delay=15, max_attempts=80, cluster=cluster, services=[service])

    def last_updated_at(self, app: str, env: str, svc: str) -> datetime:
        cluster, service = self._service(app, env, svc)
        resp = self.client.describe_services(cluster=cluster, services=[service])
        services = resp.get('services') or []
        if not services:
            raise AWSOperationError(f"ECS service {service} not found in cluster {cluster}")
        deployments = services[0].get('deployments') or []
        if not deployments:
            raise AWSOperationError(f"ECS service {service} has no deployments")
        primary = [d for d in deployments if d.get('status') == 'PRIMARY'] or deployments
        return max(d['updatedAt'] for d in primary)


class AppRunnerClient:
    """Starts manual deployments of App Runner services."""

    def __init__(self, client: Any, cfn: CloudFormationClient, poll_interval: float = 3.0,
                 timeout: float = 1800.0, sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.cfn = cfn
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.sleep = sleep

    @classmethod
    def for_region(cls, region: str, cfn: CloudFormationClient) -> 'AppRunnerClient':
        return cls(new_client('apprunner', region), cfn)

    def _service_arn(self, app: str, env: str, svc: str) -> str:
        return _service_resource(self.cfn, WorkloadIdentity(app, env, svc), APP_RUNNER_SERVICE_TYPE)

    def _operation(self, service_arn: str, operation_id: str) -> dict:
        paginator = self.client.get_paginator('list_operations')
        for page in paginator.paginate(ServiceArn=service_arn):
            for op in page.get('OperationSummaryList', []):
                if op.get('Id') == operation_id:
                    return op
        raise AWSOperationError(f"no operation found {operation_id}")

    def wait_for_operation(self, service_arn: str, operation_id: str) -> None:
        waited = 0.0
        while True:
            op = self._operation(service_arn, operation_id)
            status = op.get('Status')
            if status == APP_RUNNER_OP_SUCCEEDED:
                return
            if status == APP_RUNNER_OP_FAILED:
                raise AWSOperationError(f"operation {operation_id} failed")
            if waited >= self.timeout:
                raise WaitTimeoutError(f"timed out waiting for operation {operation_id}")
            self.sleep(self.poll_interval)
            waited += self.poll_interval

    def force_update_service(self, app: str, env: str, svc: str) -> None:
        service_arn = self._service_arn(app, env, svc)
        resp = self.client.start_deployment(ServiceArn=service_arn)
        operation_id = resp['OperationId']
        logger.debug(f"Started deployment operation {operation_id} for {service_arn}")
        self.wait_for_operation(service_arn, operation_id)

    def last_updated_at(self, app: str, env: str, svc: str) -> datetime:
        service_arn = self._service_arn(app, env, svc)
        resp = self.client.describe_service(ServiceArn=service_arn)
        return resp['Service']['UpdatedAt']
