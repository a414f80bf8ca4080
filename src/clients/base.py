"""Shared helpers for the boto3 adapters."""

import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

logger = logging.getLogger(__name__)

# Waiter polling used for long-running operations
DEFAULT_WAITER_DELAY = 5
DEFAULT_WAITER_MAX_ATTEMPTS = 360


class AWSOperationError(Exception):
    """A remote operation failed."""


class WaitTimeoutError(AWSOperationError, TimeoutError):
    """A waiter gave up before the resource reached the expected state."""


def new_client(service: str, region: Optional[str] = None) -> Any:
    return boto3.client(service, region_name=region)


def error_code(err: ClientError) -> str:
    return err.response.get('Error', {}).get('Code', '')


def error_message(err: ClientError) -> str:
    return err.response.get('Error', {}).get('Message', '') or str(err)


def wait_for(client: Any, waiter_name: str, description: str,
             delay: int = DEFAULT_WAITER_DELAY,
             max_attempts: int = DEFAULT_WAITER_MAX_ATTEMPTS, **kwargs) -> None:
    """Run a boto3 waiter, classifying give-ups as timeouts.

    Raises:
        WaitTimeoutError: If the waiter ran out of attempts
        AWSOperationError: If the resource reached a failure state
    """
    logger.debug(f"Waiting for {description}")
    waiter = client.get_waiter(waiter_name)
    try:
        waiter.wait(WaiterConfig={'Delay': delay, 'MaxAttempts': max_attempts}, **kwargs)
    except WaiterError as e:
        if 'Max attempts exceeded' in str(e):
            raise WaitTimeoutError(f"timed out waiting for {description}") from e
        raise AWSOperationError(f"wait for {description}: {e}") from e
