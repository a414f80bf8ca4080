"""CloudFormation adapter: change-set deploys and stack reads."""

import json
import logging
import uuid
from typing import Any, Optional

from botocore.exceptions import ClientError

from clients.base import AWSOperationError, error_code, error_message, new_client, wait_for
from deployer.env import StackResource
from deployer.executor import DeployOptions, DeployOutcome
from upload.base import Uploader, stack_template_key

logger = logging.getLogger(__name__)

CHANGE_SET_PREFIX = 'deploy-driver'

# Status reasons of a change set that has nothing to apply
NO_CHANGES_REASON = "didn't contain changes"
NO_UPDATES_REASON = 'No updates are to be performed'

# Larger bodies must be passed by URL
MAX_TEMPLATE_BODY_SIZE = 51200

CAPABILITIES = ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM', 'CAPABILITY_AUTO_EXPAND']


class StackNotFoundError(AWSOperationError):
    """The stack does not exist."""


def _is_stack_missing(err: ClientError) -> bool:
    return error_code(err) == 'ValidationError' and 'does not exist' in error_message(err)


class CloudFormationClient:
    """Deploys workload stacks through change sets.

    Args:
        client: boto3 CloudFormation client
        uploader: Used to stage templates too large to send inline
    """

    def __init__(self, client: Any, uploader: Optional[Uploader] = None):
        self.client = client
        self.uploader = uploader

    @classmethod
    def for_region(cls, region: str, uploader: Optional[Uploader] = None) -> 'CloudFormationClient':
        return cls(new_client('cloudformation', region), uploader)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def describe(self, stack_name: str) -> dict:
        """Describe a stack.

        Raises:
            StackNotFoundError: If the stack does not exist
        """
        try:
            resp = self.client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if _is_stack_missing(e):
                raise StackNotFoundError(f"stack {stack_name} does not exist") from e
            raise
        stacks = resp.get('Stacks') or []
        if not stacks:
            raise StackNotFoundError(f"stack {stack_name} does not exist")
        return stacks[0]

    def outputs(self, stack_name: str) -> dict[str, str]:
        stack = self.describe(stack_name)
        return {o['OutputKey']: o.get('OutputValue', '') for o in stack.get('Outputs') or []}

    def params(self, stack_name: str) -> dict[str, str]:
        stack = self.describe(stack_name)
        return {p['ParameterKey']: p.get('ParameterValue', '') for p in stack.get('Parameters') or []}

    def template(self, stack_name: str) -> str:
        """Deployed template body, '' when the stack does not exist."""
        try:
            resp = self.client.get_template(StackName=stack_name, TemplateStage='Original')
        except ClientError as e:
            if _is_stack_missing(e):
                return ''
            raise
        body = resp.get('TemplateBody', '')
        # JSON templates come back already decoded
        if isinstance(body, dict):
            return json.dumps(body, indent=2)
        return body

    def template_metadata(self, stack_name: str) -> dict:
        resp = self.client.get_template_summary(StackName=stack_name)
        metadata = resp.get('Metadata')
        if not metadata:
            return {}
        return json.loads(metadata)

    def resources(self, stack_name: str) -> list[StackResource]:
        resources = []
        paginator = self.client.get_paginator('list_stack_resources')
        for page in paginator.paginate(StackName=stack_name):
            for res in page.get('StackResourceSummaries', []):
                resources.append(StackResource(
                    logical_id=res['LogicalResourceId'],
                    physical_id=res.get('PhysicalResourceId', ''),
                    resource_type=res.get('ResourceType', ''),
                ))
        return resources

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    def _stack_exists(self, stack_name: str) -> bool:
        try:
            stack = self.describe(stack_name)
        except StackNotFoundError:
            return False
        # A stack created by a failed change set has no resources yet
        return stack.get('StackStatus') != 'REVIEW_IN_PROGRESS'

    def _template_args(self, stack_name: str, body: str, bucket: str) -> dict:
        if len(body.encode()) <= MAX_TEMPLATE_BODY_SIZE or self.uploader is None:
            return {'TemplateBody': body}
        data = body.encode()
        url = self.uploader.upload(bucket, stack_template_key(stack_name, data), data)
        return {'TemplateURL': url}

    def deploy_service(self, conf, bucket: str, options: DeployOptions) -> DeployOutcome:
        """Create and execute a change set for the workload stack.

        Returns:
            NO_OP when the change set is empty, APPLIED otherwise

        Raises:
            AWSOperationError: If the change set cannot be created or executed
            WaitTimeoutError: If the stack does not settle in time
        """
        stack_name = conf.stack_name
        exists = self._stack_exists(stack_name)
        cs_type = 'UPDATE' if exists else 'CREATE'
        cs_name = f'{CHANGE_SET_PREFIX}-{uuid.uuid4()}'
        description = f"change set {cs_name} for stack {stack_name}"

        resp = self.client.create_change_set(
            StackName=stack_name,
            ChangeSetName=cs_name,
            ChangeSetType=cs_type,
            Parameters=[{'ParameterKey': k, 'ParameterValue': v} for k, v in conf.parameters().items()],
            Tags=[{'Key': k, 'Value': str(v)} for k, v in conf.tags().items()],
            Capabilities=CAPABILITIES,
            IncludeNestedStacks=True,
            **self._template_args(stack_name, conf.template(), bucket),
        )
        cs_id = resp['Id']
        logger.info(f"Created {description}")

        try:
            wait_for(self.client, 'change_set_create_complete', f"creation of {description}",
                     delay=3, max_attempts=120, ChangeSetName=cs_id)
        except AWSOperationError as e:
            descr = self.client.describe_change_set(ChangeSetName=cs_id)
            reason = descr.get('StatusReason', '')
            if not descr.get('Changes') and NO_CHANGES_REASON in reason:
                logger.info(f"No changes to deploy for stack {stack_name}")
                self.client.delete_change_set(ChangeSetName=cs_id)
                return DeployOutcome.NO_OP
            raise AWSOperationError(f"{e}: {reason}") from e

        descr = self.client.describe_change_set(ChangeSetName=cs_id)
        if descr.get('ExecutionStatus') != 'AVAILABLE':
            if NO_UPDATES_REASON in descr.get('StatusReason', ''):
                return DeployOutcome.NO_OP
            raise AWSOperationError(
                f"execute {description}: status {descr.get('ExecutionStatus')}: {descr.get('StatusReason', '')}"
            )

        execute_args: dict[str, Any] = {'ChangeSetName': cs_id, 'StackName': stack_name}
        if options.disable_rollback:
            execute_args['DisableRollback'] = True
        try:
            self.client.execute_change_set(**execute_args)
        except ClientError as e:
            raise AWSOperationError(f"execute {description}: {error_message(e)}") from e

        if options.detach:
            logger.info(f"Executed {description}; not waiting for the stack to settle")
            return DeployOutcome.APPLIED
        waiter = 'stack_update_complete' if exists else 'stack_create_complete'
        wait_for(self.client, waiter, f"stack {stack_name} to finish deploying", StackName=stack_name)
        logger.info(f"Deployed stack {stack_name}")
        return DeployOutcome.APPLIED


class StackVersionGetter:
    """Reads the template version recorded in a stack's metadata."""

    DEFAULT_VERSION = 'v0.0.0'

    def __init__(self, cfn: CloudFormationClient, stack_name: str):
        self.cfn = cfn
        self.stack_name = stack_name

    def version(self) -> str:
        metadata = self.cfn.template_metadata(self.stack_name)
        return metadata.get('Version') or self.DEFAULT_VERSION


def app_stack_name(app: str) -> str:
    return f'{app}-infrastructure-roles'


def env_stack_name(app: str, env: str) -> str:
    return f'{app}-{env}'
