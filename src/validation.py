"""Compatibility validation for workload deployments.

Rejects configurations that cannot be routed correctly before any
infrastructure is touched: aliases vs. imported certificates, custom
domains and CDN settings, topic subscriptions, and application template
versions required by a feature.

Rule checks return a list of error messages (empty if valid), one per
failing routing rule, each prefixed with the rule that failed.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from config import AppCapabilities, EnvironmentCapabilities
from manifest import Alias, HTTPConfig, RoutingRule, TopicSubscription

logger = logging.getLogger(__name__)

# Minimum application template versions per feature
ALIAS_MIN_APP_VERSION = 'v1.0.0'
STATIC_SITE_MIN_APP_VERSION = 'v1.2.0'

APP_UPGRADE_ACTION = 'Run "app upgrade" to upgrade the application template first.'


class CompatibilityError(Exception):
    """A configuration that cannot be deployed as requested."""

    def __init__(self, message: str, recommended_action: str = ''):
        super().__init__(message)
        self.recommended_action = recommended_action


class VersionGateError(CompatibilityError):
    """The application template is too old for a requested feature."""

    def __init__(self, message: str, recommended_action: str = APP_UPGRADE_ACTION):
        super().__init__(message, recommended_action)


class TopicNotFoundError(CompatibilityError):
    """A worker subscribes to a topic that is not deployed."""


class CertAliasError(Exception):
    """Raised by certificate validators when an alias is not covered."""


@runtime_checkable
class CertAliasValidator(Protocol):
    """Checks that every alias is covered by one of the certificates."""

    def validate_cert_aliases(self, aliases: list[str], cert_arns: list[str]) -> None:
        ...


@runtime_checkable
class VersionGetter(Protocol):
    """Returns the deployed template version of an app or environment."""

    def version(self) -> str:
        ...


def raise_for_errors(errors: list[str]) -> None:
    """Raise CompatibilityError combining errors, if any."""
    if errors:
        raise CompatibilityError('\n'.join(errors))


# -----------------------------------------------------------------------------
# Version Comparison
# -----------------------------------------------------------------------------

_SEMVER_RE = re.compile(
    r'^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$'
)


def _parse_semver(version: str) -> Optional[tuple[tuple[int, int, int], list[str]]]:
    match = _SEMVER_RE.match(version.strip()) if version else None
    if not match:
        return None
    major, minor, patch, pre = match.groups()
    core = (int(major), int(minor or 0), int(patch or 0))
    return core, pre.split('.') if pre else []


def _compare_prerelease(a: list[str], b: list[str]) -> int:
    # A version without prerelease sorts after one with it
    if not a or not b:
        return (len(a) == 0) - (len(b) == 0)
    for x, y in zip(a, b):
        if x == y:
            continue
        if x.isdigit() and y.isdigit():
            return -1 if int(x) < int(y) else 1
        if x.isdigit() != y.isdigit():
            return -1 if x.isdigit() else 1
        return -1 if x < y else 1
    return (len(a) > len(b)) - (len(a) < len(b))


def compare_versions(a: str, b: str) -> int:
    """Compare semantic versions, returning -1, 0 or 1.

    Invalid versions compare equal to each other and below any valid one.
    """
    pa, pb = _parse_semver(a), _parse_semver(b)
    if pa is None or pb is None:
        return (pa is not None) - (pb is not None)
    if pa[0] != pb[0]:
        return -1 if pa[0] < pb[0] else 1
    return _compare_prerelease(pa[1], pb[1])


def validate_min_app_version(app_name: str, getter: VersionGetter, minimum: str) -> None:
    """Require the application template to be at least minimum.

    Raises:
        VersionGateError: If the version is older or cannot be read
    """
    try:
        current = getter.version()
    except Exception as e:
        raise VersionGateError(f'get version for app "{app_name}": {e}') from e
    if compare_versions(current, minimum) < 0:
        raise VersionGateError(f'app version must be >= {minimum}')


def validate_app_version_for_alias(app_name: str, getter: VersionGetter) -> None:
    """Aliases require the alias-capable application template."""
    try:
        current = getter.version()
    except Exception as e:
        raise VersionGateError(f'get version for app {app_name}: {e}') from e
    if compare_versions(current, ALIAS_MIN_APP_VERSION) < 0:
        raise VersionGateError(
            f'alias is not compatible with application versions below {ALIAS_MIN_APP_VERSION}'
        )


def _log_app_version_outdated(name: str) -> None:
    logger.error(
        f"Cannot deploy service {name} because the application version is incompatible.\n"
        f"  To upgrade the application, run 'app upgrade' first."
    )


# -----------------------------------------------------------------------------
# Hosted Zone Patterns
# -----------------------------------------------------------------------------

def hosted_zone_patterns(env: str, app: str, domain: str) -> list[re.Pattern]:
    """Patterns for aliases in the env, app and root hosted zones.

    Each zone accepts its bare name or a single extra subdomain label.
    Names are escaped so dots and other metacharacters match literally.
    """
    zones = [
        f'{env}.{app}.{domain}',
        f'{app}.{domain}',
        domain,
    ]
    return [re.compile(rf'^([^.]+\.)?{re.escape(zone)}$') for zone in zones]


def alias_in_managed_zones(alias: str, env: str, app: str, domain: str) -> bool:
    """True if alias falls within the env, app or root hosted zone."""
    return any(p.match(alias) for p in hosted_zone_patterns(env, app, domain))


def _accepted_alias_forms(env: str, app: str, domain: str) -> str:
    return (
        f"  - {env}.{app}.{domain}\n"
        f"  - <name>.{env}.{app}.{domain}\n"
        f"  - {app}.{domain}\n"
        f"  - <name>.{app}.{domain}\n"
        f"  - {domain}\n"
        f"  - <name>.{domain}"
    )


def validate_managed_aliases(aliases: list[str], app: AppCapabilities, env_name: str,
                             field_name: str = 'http.alias') -> None:
    """Require every alias to live in a hosted zone managed for the app.

    Raises:
        CompatibilityError: On the first alias outside the managed zones
    """
    for alias in aliases:
        if alias_in_managed_zones(alias, env_name, app.name, app.domain):
            continue
        logger.error(
            f"{field_name} must match one of the following patterns:\n"
            f"{_accepted_alias_forms(env_name, app.name, app.domain)}"
        )
        raise CompatibilityError(
            f'alias "{alias}" is not supported in the hosted zones managed for the app',
            recommended_action=_accepted_alias_forms(env_name, app.name, app.domain),
        )


# -----------------------------------------------------------------------------
# Topic Subscriptions
# -----------------------------------------------------------------------------

def topic_resource_name(app: str, env: str, service: str, topic: str) -> str:
    """Deployed name of a service topic."""
    return f'{app}-{env}-{service}-{topic}'


def _arn_resource(arn: str) -> Optional[str]:
    parts = arn.split(':', 5)
    if len(parts) != 6 or parts[0] != 'arn':
        return None
    return parts[5]


def validate_topics_exist(subscriptions: list[TopicSubscription], topic_arns: list[str],
                          app: str, env: str) -> None:
    """Require every subscribed topic to be deployed in the environment.

    Raises:
        TopicNotFoundError: For the first subscription without a topic
    """
    deployed = {r for r in (_arn_resource(a) for a in topic_arns) if r}
    for sub in subscriptions:
        name = topic_resource_name(app, env, sub.service, sub.name)
        if name not in deployed:
            raise TopicNotFoundError(f'SNS topic {name} does not exist in environment {env}')


# -----------------------------------------------------------------------------
# Routing Rule Validation
# -----------------------------------------------------------------------------

@dataclass
class CompatibilityValidator:
    """Validates a workload's network exposure against its app and env.

    Attributes:
        app: Application capabilities snapshot
        env: Environment capabilities snapshot
        alb_cert_validator: Validates aliases against ALB certificates
        cdn_cert_validator: Validates aliases against the CDN certificate
        app_version_getter: Reads the application template version
    """
    app: AppCapabilities
    env: EnvironmentCapabilities
    alb_cert_validator: CertAliasValidator
    cdn_cert_validator: CertAliasValidator
    app_version_getter: VersionGetter

    def validate_alb_rules(self, svc_name: str, http: HTTPConfig) -> list[str]:
        """Validate the public ALB rules of a load balanced web service.

        Every rule is checked; the first failure within a rule ends that rule.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        for field_name, rule in http.rules():
            try:
                self._validate_public_rule(svc_name, rule, http.imported_alb)
            except CompatibilityError as e:
                errors.append(f'validate ALB runtime configuration for "{field_name}": {e}')
        return errors

    def _validate_public_rule(self, svc_name: str, rule: RoutingRule, imported_alb: str) -> None:
        has_imported_certs = self.env.has_imported_certs

        if rule.redirect_to_https and not self.app.domain and not has_imported_certs:
            raise CompatibilityError(
                f'cannot configure http to https redirect without having a domain associated '
                f'with the app "{self.app.name}" or importing any certificates in env "{self.env.name}"'
            )

        if rule.alias.is_empty():
            if has_imported_certs and not imported_alb:
                raise CompatibilityError(
                    f'cannot deploy service {svc_name} without "alias" to environment '
                    f'{self.env.name} with certificate imported'
                )
            return

        zones = rule.alias.hosted_zone_ids()
        if zones:
            if not has_imported_certs:
                raise CompatibilityError(
                    f'cannot specify alias hosted zones [{" ".join(zones)}] when no certificates '
                    f'are imported in environment "{self.env.name}"'
                )
            if self.env.cdn_enabled:
                raise CompatibilityError(
                    f'cannot specify alias hosted zones when cdn is enabled in environment '
                    f'"{self.env.name}"',
                    recommended_action='Remove "hosted_zone" from "http.alias"; the A-records '
                                       'are managed by the environment when a CDN is enabled.',
                )

        if has_imported_certs:
            self._validate_against_imported_certs(rule.alias)
            return

        if self.app.domain:
            try:
                validate_app_version_for_alias(self.app.name, self.app_version_getter)
            except VersionGateError:
                _log_app_version_outdated(svc_name)
                raise
            validate_managed_aliases(rule.alias.names, self.app, self.env.name)
            return

        logger.error(
            "http.alias requires either a domain associated with the application "
            "or certificates imported in the environment"
        )
        raise CompatibilityError(
            f"cannot specify http.alias when application is not associated with a domain "
            f"and env {self.env.name} doesn't import one or more certificates"
        )

    def _validate_against_imported_certs(self, alias: Alias) -> None:
        if self.env.public_alb_certs:
            try:
                self.alb_cert_validator.validate_cert_aliases(alias.names, self.env.public_alb_certs)
            except CertAliasError as e:
                raise CompatibilityError(
                    f'validate aliases against the imported public ALB certificate '
                    f'for env {self.env.name}: {e}'
                ) from e
        if self.env.cdn_cert:
            try:
                self.cdn_cert_validator.validate_cert_aliases(alias.names, [self.env.cdn_cert])
            except CertAliasError as e:
                raise CompatibilityError(
                    f'validate aliases against the imported CDN certificate '
                    f'for env {self.env.name}: {e}'
                ) from e

    def validate_nlb_alias(self, svc_name: str, alias: Alias) -> None:
        """NLB aliases live in managed zones and cannot coexist with imported certs.

        Raises:
            CompatibilityError: If the aliases cannot be served
        """
        if alias.is_empty():
            return
        if self.env.has_imported_public_certs:
            raise CompatibilityError(
                f'cannot specify nlb.alias when env {self.env.name} imports one or more certificates'
            )
        if not self.app.domain:
            logger.error("nlb.alias requires a domain associated with the application")
            raise CompatibilityError(
                'cannot specify nlb.alias when application is not associated with a domain'
            )
        try:
            validate_app_version_for_alias(self.app.name, self.app_version_getter)
        except VersionGateError:
            _log_app_version_outdated(svc_name)
            raise
        validate_managed_aliases(alias.names, self.app, self.env.name, field_name='nlb.alias')

    def validate_internal_rules(self, svc_name: str, http: HTTPConfig) -> list[str]:
        """Validate internal ALB rules of a backend service against private certs.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []
        if http.is_empty():
            return errors
        for field_name, rule in http.rules():
            try:
                self._validate_internal_rule(svc_name, rule)
            except CompatibilityError as e:
                errors.append(f'validate ALB runtime configuration for "{field_name}": {e}')
        return errors

    def _validate_internal_rule(self, svc_name: str, rule: RoutingRule) -> None:
        if rule.is_empty():
            return
        has_certs = bool(self.env.private_alb_certs)
        if rule.alias.is_empty():
            if has_certs:
                raise CompatibilityError(
                    f'cannot deploy service {svc_name} without "alias" to environment '
                    f'{self.env.name} with certificate imported'
                )
            return
        if not has_certs:
            raise CompatibilityError('cannot specify "alias" in an environment without imported certs')
        try:
            self.alb_cert_validator.validate_cert_aliases(rule.alias.names, self.env.private_alb_certs)
        except CertAliasError as e:
            raise CompatibilityError(
                f'validate aliases against the imported certificate for env {self.env.name}: {e}'
            ) from e

    def validate_rdws_alias(self, svc_name: str, alias: str) -> None:
        """App Runner services only accept ``<subdomain>.<domain>`` aliases.

        Raises:
            CompatibilityError: If the alias is unsupported
        """
        if not alias:
            return
        if not self.app.domain:
            logger.error("http.alias requires a domain associated with the application")
            raise CompatibilityError('alias specified when application is not associated with a domain')
        try:
            validate_app_version_for_alias(self.app.name, self.app_version_getter)
        except VersionGateError as e:
            _log_app_version_outdated(svc_name)
            raise VersionGateError(f'alias not supported: {e}') from e

        hint = (f"{alias} of http.alias should match the pattern <subdomain>.{self.app.domain}\n"
                f"  Where <subdomain> cannot be the application name.")
        env_zone, app_zone, _ = hosted_zone_patterns(self.env.name, self.app.name, self.app.domain)
        if env_zone.match(alias):
            logger.error(hint)
            raise CompatibilityError(f'{alias} is an environment-level alias, which is not supported yet')
        if app_zone.match(alias):
            logger.error(hint)
            raise CompatibilityError(f'{alias} is an application-level alias, which is not supported yet')
        if alias == self.app.domain:
            logger.error(hint)
            raise CompatibilityError(f'{alias} is a root domain alias, which is not supported yet')
        if not re.match(rf'^[^.]+\.{re.escape(self.app.domain)}$', alias):
            logger.error(hint)
            raise CompatibilityError('alias is not supported in hosted zones that are not managed for the app')

    def validate_static_site(self, alias: str, certificate: str) -> None:
        """Static sites need a recent app template and a routable alias.

        Raises:
            CompatibilityError: If static sites or the alias are unsupported
        """
        try:
            validate_min_app_version(self.app.name, self.app_version_getter,
                                     STATIC_SITE_MIN_APP_VERSION)
        except VersionGateError as e:
            raise VersionGateError(f'static sites not supported: {e}') from e
        if not alias:
            return
        if certificate:
            try:
                self.cdn_cert_validator.validate_cert_aliases([alias], [certificate])
            except CertAliasError as e:
                raise CompatibilityError(
                    f'validate alias against the imported certificate "{certificate}": {e}'
                ) from e
            return
        if not self.app.domain:
            raise CompatibilityError(
                'cannot specify alias when application is not associated with a domain '
                'or "http.certificate" is not set'
            )
        validate_managed_aliases([alias], self.app, self.env.name)
