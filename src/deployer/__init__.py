"""Deploy execution: force-update protocol, workload deployer and env checks."""

from deployer.env import EnvValidationError, RedirectingServicesError, validate_env
from deployer.executor import (
    DeployError,
    DeployExecutor,
    DeployOptions,
    DeployOutcome,
    DeployState,
    ForceUpdateError,
)
from deployer.workload import WorkloadDeployer

__all__ = [
    'DeployError',
    'DeployExecutor',
    'DeployOptions',
    'DeployOutcome',
    'DeployState',
    'EnvValidationError',
    'ForceUpdateError',
    'RedirectingServicesError',
    'WorkloadDeployer',
    'validate_env',
]
