"""Environment checks run before a CDN starts terminating TLS.

When the CDN terminates TLS it talks plain HTTP to the ALB. A public
service whose listener rule redirects HTTP to HTTPS would then bounce
every CDN request, so each ALB workload of the environment is checked
concurrently for a redirect action.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from common import WorkloadIdentity, oxford_join, plural
from config import EnvironmentCapabilities

logger = logging.getLogger(__name__)

# Env stack parameter listing public ALB workloads, comma separated
ALB_WORKLOADS_PARAM = 'ALBWorkloads'

# Listener rule created for services with an alias
HTTP_LISTENER_RULE_WITH_DOMAIN = 'HTTPListenerRuleWithDomain'


class EnvValidationError(Exception):
    """The environment configuration cannot be applied."""


class RedirectingServicesError(EnvValidationError):
    """Public services redirect HTTP to HTTPS behind a TLS-terminating CDN."""

    def __init__(self, services: list[str]):
        self.services = list(services)
        super().__init__(self.message())

    def message(self) -> str:
        n = len(self.services)
        quoted = [f'"{svc}"' for svc in self.services]
        return (
            f"{plural(n, 'Service', 'Services')} {oxford_join(quoted)} "
            f"{plural(n, 'redirects', 'redirect')} HTTP traffic to HTTPS.\n"
            f"{plural(n, 'This service', 'These services')} will not be reachable through the CDN.\n"
            f"To fix this, set the following field in {plural(n, 'its', 'each')} manifest:\n"
            "http:\n  redirect_to_https: true\n"
            "and run svc deploy."
        )

    def warning(self) -> str:
        n = len(self.services)
        owner = plural(n, 'its', "each service's")
        return (
            f"{self.message()}\n"
            f"If you'd like to use {plural(n, 'this service', 'these services')} without a CDN, "
            f"ensure {owner} A record is pointed to the ALB.\n"
        )


@dataclass
class StackResource:
    logical_id: str
    physical_id: str
    resource_type: str = ''


@runtime_checkable
class EnvParamsGetter(Protocol):
    """Reads the environment stack parameters."""

    def params(self) -> dict[str, str]:
        ...


@runtime_checkable
class StackResourcesGetter(Protocol):
    """Lists the resources of a stack."""

    def resources(self, stack_name: str) -> list[StackResource]:
        ...


@runtime_checkable
class ListenerRuleDescriber(Protocol):
    """Reports whether a listener rule has a redirect action."""

    def rule_redirects(self, rule_arn: str) -> bool:
        ...


def service_redirects(identity: WorkloadIdentity, stacks: StackResourcesGetter,
                      rules: ListenerRuleDescriber) -> bool:
    """Whether the service's domain listener rule redirects.

    Only the rule created for aliases is checked; the default rule never
    redirects and cannot be fronted by the CDN anyway.
    """
    try:
        resources = stacks.resources(identity.stack_name)
    except Exception as e:
        raise EnvValidationError(f"get stack resources: {e}") from e

    rule_arn = next(
        (r.physical_id for r in resources if r.logical_id == HTTP_LISTENER_RULE_WITH_DOMAIN),
        '',
    )
    if not rule_arn:
        raise EnvValidationError(f'http listener not found on service "{identity.name}"')

    try:
        return rules.rule_redirects(rule_arn)
    except Exception as e:
        raise EnvValidationError(f'get listener rule "{rule_arn}": {e}') from e


def find_redirecting_services(app: str, env: str, services: list[str],
                              stacks: StackResourcesGetter,
                              rules: ListenerRuleDescriber) -> list[str]:
    """Check every service concurrently and return those that redirect, sorted.

    The first failing check cancels the checks that have not started yet
    and its error is raised.

    Raises:
        EnvValidationError: If any service cannot be checked
    """
    if not services:
        return []

    cancel = threading.Event()
    lock = threading.Lock()
    bad_services: list[str] = []

    def check(svc: str) -> None:
        if cancel.is_set():
            return
        try:
            redirects = service_redirects(WorkloadIdentity(app, env, svc), stacks, rules)
        except EnvValidationError as e:
            raise EnvValidationError(f'verify service "{svc}": {e}') from e
        if redirects:
            with lock:
                bad_services.append(svc)

    with ThreadPoolExecutor(max_workers=len(services)) as pool:
        futures = [pool.submit(check, svc) for svc in services]
        for future in as_completed(futures):
            err = future.exception()
            if err is None:
                continue
            cancel.set()
            for pending in futures:
                pending.cancel()
            raise err

    return sorted(bad_services)


def validate_alb_workloads_dont_redirect(app: str, env: str, params_getter: EnvParamsGetter,
                                         stacks: StackResourcesGetter,
                                         rules: ListenerRuleDescriber) -> None:
    """Raise RedirectingServicesError if any public ALB workload redirects."""
    try:
        params = params_getter.params()
    except Exception as e:
        raise EnvValidationError(f"get env params: {e}") from e

    services = [s for s in params.get(ALB_WORKLOADS_PARAM, '').split(',') if s]
    logger.debug(f"Checking {len(services)} ALB workload(s) in {env} for HTTPS redirects")
    bad = find_redirecting_services(app, env, services, stacks, rules)
    if bad:
        raise RedirectingServicesError(bad)


def validate_env(app: str, env: EnvironmentCapabilities, params_getter: EnvParamsGetter,
                 stacks: StackResourcesGetter, rules: ListenerRuleDescriber) -> str:
    """Check that the environment's CDN settings work with its services.

    Returns:
        A warning to show the user, '' when there is nothing to report

    Raises:
        RedirectingServicesError: If services redirect and ALB ingress is restricted to the CDN
        EnvValidationError: If the services cannot be checked
    """
    if not (env.cdn_enabled and env.cdn_terminates_tls and env.has_imported_public_certs):
        return ''
    try:
        validate_alb_workloads_dont_redirect(app, env.name, params_getter, stacks, rules)
    except RedirectingServicesError as e:
        if env.alb_ingress_restricted_to_cdn:
            raise
        logger.warning(f"Services {', '.join(e.services)} redirect HTTP traffic to HTTPS")
        return e.warning()
    except EnvValidationError as e:
        raise EnvValidationError(f"can't enable TLS termination on CDN: {e}") from e
    return ''
