"""Deploy executor with the force-update fallback.

The deploy call reports an explicit ``DeployOutcome``. ``NO_OP`` means the
engine found nothing to change; that is only acceptable when the caller
asked to force an update, in which case the compute platform is told to
redeploy unless someone else already did so after this command started.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Protocol, runtime_checkable

from common import WorkloadIdentity

logger = logging.getLogger(__name__)


class DeployOutcome(Enum):
    """Result of a deploy call that did not fail."""
    APPLIED = 'applied'
    NO_OP = 'no_op'


class DeployState(Enum):
    NOT_STARTED = 'not_started'
    DEPLOYED = 'deployed'
    NO_OP_DEPLOYED = 'no_op_deployed'
    FORCE_UPDATING = 'force_updating'
    FORCED = 'forced'
    FAILED = 'failed'


@dataclass(frozen=True)
class DeployOptions:
    """Caller-supplied deploy flags."""
    force_new_update: bool = False
    disable_rollback: bool = False
    detach: bool = False


class DeployError(Exception):
    """Deployment failed."""


class ForceUpdateError(DeployError):
    """Forcing a redeploy of the running service failed."""


@runtime_checkable
class ServiceDeployer(Protocol):
    """Creates or updates the workload stack."""

    def deploy_service(self, conf, bucket: str, options: DeployOptions) -> DeployOutcome:
        ...


@runtime_checkable
class ServiceForceUpdater(Protocol):
    """Redeploys a running service without a template change."""

    def force_update_service(self, app: str, env: str, svc: str) -> None:
        ...

    def last_updated_at(self, app: str, env: str, svc: str) -> datetime:
        ...


def is_timeout(err: BaseException) -> bool:
    """Whether an error means the operation timed out.

    Either a ``TimeoutError`` or an error object exposing ``timeout()``
    that returns True.
    """
    if isinstance(err, TimeoutError):
        return True
    check = getattr(err, 'timeout', None)
    return callable(check) and bool(check())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def status_hint(identity: WorkloadIdentity) -> str:
    return f'Run "svc status --name {identity.name} --env {identity.env}" to check for the fail reason.'


@dataclass
class DeployExecutor:
    """Runs one deploy and, on a no-op, the force-update protocol.

    Attributes:
        identity: Workload being deployed
        deployer: Stack deployer
        bucket: Artifact bucket passed to the deploy call
        force_updater: Compute platform client, None when the workload
            type cannot be force-updated
        clock: Time source; injectable for tests
        state: Current state
        history: Every state entered, in order
    """
    identity: WorkloadIdentity
    deployer: ServiceDeployer
    bucket: str
    force_updater: Optional[ServiceForceUpdater] = None
    clock: Callable[[], datetime] = utc_now
    state: DeployState = field(default=DeployState.NOT_STARTED, init=False)
    history: list[DeployState] = field(default_factory=list, init=False)

    def _enter(self, state: DeployState) -> None:
        logger.debug(f"{self.identity}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _fail(self, err: DeployError) -> DeployError:
        self._enter(DeployState.FAILED)
        return err

    def execute(self, conf, options: DeployOptions) -> DeployState:
        """Deploy the stack configuration.

        Returns:
            DEPLOYED or FORCED

        Raises:
            DeployError: On any failure, including an unforced no-op
        """
        if self.state is not DeployState.NOT_STARTED:
            raise RuntimeError(f"deploy of {self.identity} already ran")
        cmd_run_at = self.clock()

        try:
            outcome = self.deployer.deploy_service(conf, self.bucket, options)
        except Exception as e:
            raise self._fail(DeployError(f"deploy service: {e}")) from e

        if outcome is DeployOutcome.APPLIED:
            self._enter(DeployState.DEPLOYED)
            return self.state

        if not options.force_new_update:
            logger.warning("Set --force to force an update for the service.")
            raise self._fail(DeployError(
                f"deploy service: stack {conf.stack_name} did not contain any changes; "
                "set --force to force an update for the service"
            ))

        self._enter(DeployState.NO_OP_DEPLOYED)
        if self.force_updater is None:
            logger.warning(f"Service {self.identity.name} cannot be force-updated; "
                           "the stack is already up to date")
            self._enter(DeployState.DEPLOYED)
            return self.state
        return self._force_update(cmd_run_at)

    def _force_update(self, cmd_run_at: datetime) -> DeployState:
        app, env, svc = self.identity.app, self.identity.env, self.identity.name
        try:
            last_updated = self.force_updater.last_updated_at(app, env, svc)
        except Exception as e:
            raise self._fail(DeployError(
                f"get the last updated deployment time for {svc}: {e}"
            )) from e

        if last_updated > cmd_run_at:
            logger.info(f"Service {svc} was redeployed after this command started; skipping force update")
            self._enter(DeployState.DEPLOYED)
            return self.state

        self._enter(DeployState.FORCE_UPDATING)
        logger.info(f"Forcing an update for service {svc} from environment {env}")
        try:
            self.force_updater.force_update_service(app, env, svc)
        except Exception as e:
            logger.error(f"Failed to force an update for service {svc} from environment {env}")
            msg = f"force an update for service {svc}: {e}"
            if is_timeout(e):
                msg = f"{msg}. {status_hint(self.identity)}"
            raise self._fail(ForceUpdateError(msg)) from e

        logger.info(f"Forced an update for service {svc} from environment {env}")
        self._enter(DeployState.FORCED)
        return self.state
