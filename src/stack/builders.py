"""Per-workload-type stack configuration builders.

``STACK_BUILDERS`` maps every workload manifest class to its builder. The
table is checked against ``ServiceManifest`` at import time, so adding a
workload type without a builder fails on startup instead of mid-deploy.

Each builder validates the type-specific constraints, gathers any extra
environment data it needs and returns a ``StackConfigOutput``.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, get_args, runtime_checkable

from common import WorkloadIdentity
from config import AppCapabilities, EnvironmentCapabilities
from manifest import (
    BackendService,
    LoadBalancedWebService,
    RequestDrivenWebService,
    ScheduledJob,
    ServiceManifest,
    StaticSite,
    TopicSubscription,
    WorkerService,
)
from stack.config import StackConfiguration, TemplateRenderer
from stack.runtime import StackConfigError, StackRuntimeConfig
from validation import CompatibilityValidator, raise_for_errors, validate_topics_exist

logger = logging.getLogger(__name__)

# Compute platforms that can be force-redeployed
PLATFORM_ECS = 'ecs'
PLATFORM_APP_RUNNER = 'apprunner'


@runtime_checkable
class PublicCIDRBlocksGetter(Protocol):
    """Returns the public subnet CIDR blocks of the environment VPC."""

    def public_cidr_blocks(self) -> list[str]:
        ...


@runtime_checkable
class TopicLister(Protocol):
    """Lists topic ARNs deployed in an app environment."""

    def list_topic_arns(self, app: str, env: str) -> list[str]:
        ...


@dataclass
class BuildContext:
    """Inputs shared by all builders for one deploy.

    Attributes:
        identity: Workload being deployed
        manifest: Parsed workload manifest
        raw_manifest: Manifest text
        app: Application capabilities snapshot
        env: Environment capabilities snapshot
        validator: Compatibility validator bound to app/env
        artifact_bucket: Bucket holding uploaded artifacts
        cidr_getter: Environment VPC reader (NLB services)
        topic_lister: Topic reader (worker services)
        renderer: Optional template renderer override
    """
    identity: WorkloadIdentity
    manifest: ServiceManifest
    raw_manifest: str
    app: AppCapabilities
    env: EnvironmentCapabilities
    validator: CompatibilityValidator
    artifact_bucket: str
    cidr_getter: Optional[PublicCIDRBlocksGetter] = None
    topic_lister: Optional[TopicLister] = None
    renderer: Optional[TemplateRenderer] = None

    def configuration(self, runtime: StackRuntimeConfig, **options) -> StackConfiguration:
        return StackConfiguration(
            identity=self.identity,
            manifest=self.manifest,
            raw_manifest=self.raw_manifest,
            app=self.app,
            env=self.env,
            runtime=runtime,
            artifact_bucket=self.artifact_bucket,
            options=options,
            renderer=self.renderer,
        )


@dataclass
class StackConfigOutput:
    """A built stack configuration plus what the deployer needs afterwards.

    Attributes:
        conf: Stack configuration to deploy
        platform: Compute platform for force updates, '' when not applicable
        rdws_alias: Alias of a request-driven web service
        subscriptions: Topic subscriptions of a worker service
    """
    conf: StackConfiguration
    platform: str = ''
    rdws_alias: str = ''
    subscriptions: list[TopicSubscription] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------

def build_lbws(ctx: BuildContext, mft: LoadBalancedWebService,
               runtime: StackRuntimeConfig) -> StackConfigOutput:
    raise_for_errors(ctx.validator.validate_alb_rules(ctx.identity.name, mft.http))
    options: dict = {}
    if mft.nlb is not None:
        ctx.validator.validate_nlb_alias(ctx.identity.name, mft.nlb.alias)
        if ctx.cidr_getter is None:
            raise StackConfigError("no VPC reader configured for network load balancer")
        try:
            options['nlb_cidr_blocks'] = ctx.cidr_getter.public_cidr_blocks()
        except Exception as e:
            raise StackConfigError(
                f"get public CIDR blocks information from the VPC of environment {ctx.identity.env}: {e}"
            ) from e
    if ctx.app.domain:
        options['dns_delegation'] = True
        options['https'] = True
    elif ctx.env.has_imported_public_certs:
        options['https'] = True
    return StackConfigOutput(conf=ctx.configuration(runtime, **options), platform=PLATFORM_ECS)


def build_backend(ctx: BuildContext, mft: BackendService,
                  runtime: StackRuntimeConfig) -> StackConfigOutput:
    raise_for_errors(ctx.validator.validate_internal_rules(ctx.identity.name, mft.http))
    options = {'https': bool(ctx.env.private_alb_certs)} if not mft.http.is_empty() else {}
    return StackConfigOutput(conf=ctx.configuration(runtime, **options), platform=PLATFORM_ECS)


def build_rdws(ctx: BuildContext, mft: RequestDrivenWebService,
               runtime: StackRuntimeConfig) -> StackConfigOutput:
    ctx.validator.validate_rdws_alias(ctx.identity.name, mft.alias)
    options = {'alias': mft.alias} if mft.alias else {}
    return StackConfigOutput(
        conf=ctx.configuration(runtime, **options),
        platform=PLATFORM_APP_RUNNER,
        rdws_alias=mft.alias,
    )


def build_worker(ctx: BuildContext, mft: WorkerService,
                 runtime: StackRuntimeConfig) -> StackConfigOutput:
    if ctx.topic_lister is None:
        raise StackConfigError("no topic reader configured for worker service")
    try:
        topic_arns = ctx.topic_lister.list_topic_arns(ctx.identity.app, ctx.identity.env)
    except Exception as e:
        raise StackConfigError(
            f"get SNS topics for app {ctx.identity.app} and environment {ctx.identity.env}: {e}"
        ) from e
    validate_topics_exist(mft.subscriptions, topic_arns, ctx.identity.app, ctx.identity.env)
    return StackConfigOutput(
        conf=ctx.configuration(runtime),
        platform=PLATFORM_ECS,
        subscriptions=list(mft.subscriptions),
    )


def build_scheduled_job(ctx: BuildContext, mft: ScheduledJob,
                        runtime: StackRuntimeConfig) -> StackConfigOutput:
    return StackConfigOutput(conf=ctx.configuration(runtime, schedule=mft.schedule))


def build_static_site(ctx: BuildContext, mft: StaticSite,
                      runtime: StackRuntimeConfig) -> StackConfigOutput:
    ctx.validator.validate_static_site(mft.alias, mft.certificate)
    options = {'alias': mft.alias} if mft.alias else {}
    return StackConfigOutput(conf=ctx.configuration(runtime, **options))


STACK_BUILDERS: dict[type, Callable[..., StackConfigOutput]] = {
    LoadBalancedWebService: build_lbws,
    BackendService: build_backend,
    RequestDrivenWebService: build_rdws,
    WorkerService: build_worker,
    ScheduledJob: build_scheduled_job,
    StaticSite: build_static_site,
}


def _check_builders_exhaustive() -> None:
    missing = [t.__name__ for t in get_args(ServiceManifest) if t not in STACK_BUILDERS]
    if missing:
        raise TypeError(f"no stack builder for workload type(s): {', '.join(missing)}")


_check_builders_exhaustive()


def build_stack_configuration(ctx: BuildContext, runtime: StackRuntimeConfig) -> StackConfigOutput:
    """Dispatch to the builder for the manifest's workload type.

    Raises:
        TypeError: If the manifest is not a known workload type
        CompatibilityError: If validation fails
        StackConfigError: If required environment data cannot be read
    """
    builder = STACK_BUILDERS.get(type(ctx.manifest))
    if builder is None:
        raise TypeError(f"unknown manifest type {type(ctx.manifest).__name__}")
    logger.debug(f"Building {type(ctx.manifest).__name__} stack configuration for {ctx.identity}")
    return builder(ctx, ctx.manifest, runtime)
