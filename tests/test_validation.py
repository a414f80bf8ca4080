"""Tests for validation.py - compatibility checks before deploying."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import AppCapabilities, EnvironmentCapabilities
from manifest import Alias, HTTPConfig, TopicSubscription
from validation import (
    APP_UPGRADE_ACTION,
    CertAliasError,
    CompatibilityError,
    CompatibilityValidator,
    TopicNotFoundError,
    VersionGateError,
    alias_in_managed_zones,
    compare_versions,
    raise_for_errors,
    validate_topics_exist,
)


def make_validator(app=None, env=None, version='v1.2.0'):
    getter = MagicMock()
    getter.version.return_value = version
    return CompatibilityValidator(
        app=app or AppCapabilities(name='shop'),
        env=env or EnvironmentCapabilities(name='test'),
        alb_cert_validator=MagicMock(),
        cdn_cert_validator=MagicMock(),
        app_version_getter=getter,
    )


def http(**main):
    return HTTPConfig.from_value(main)


DOMAIN_APP = AppCapabilities(name='shop', domain='example.com')


class TestCompareVersions:
    """Tests for semantic version comparison."""

    @pytest.mark.parametrize('a,b,expected', [
        ('v1.2.0', 'v1.2.0', 0),
        ('v1.2.0', 'v1.10.0', -1),
        ('v2.0.0', 'v1.99.99', 1),
        ('1.2.0', 'v1.2.0', 0),
        ('v1.2.0-rc.1', 'v1.2.0', -1),
        ('v1.2.0-rc.2', 'v1.2.0-rc.10', -1),
        ('v1.2', 'v1.2.0', 0),
    ])
    def test_compare(self, a, b, expected):
        """Should compare numerically with prerelease ordering."""
        assert compare_versions(a, b) == expected

    def test_invalid_sorts_first(self):
        """Invalid versions compare below valid ones and equal to each other."""
        assert compare_versions('bogus', 'v0.0.1') == -1
        assert compare_versions('v0.0.1', '') == 1
        assert compare_versions('bogus', '') == 0


class TestHostedZonePatterns:
    """Tests for alias_in_managed_zones."""

    @pytest.mark.parametrize('alias', [
        'test.shop.example.com',
        'api.test.shop.example.com',
        'shop.example.com',
        'api.shop.example.com',
        'example.com',
        'api.example.com',
    ])
    def test_accepted(self, alias):
        """Bare zones and one extra label are accepted."""
        assert alias_in_managed_zones(alias, 'test', 'shop', 'example.com')

    @pytest.mark.parametrize('alias', [
        'a.b.example.com',
        'a.b.shop.example.com',
        'a.b.test.shop.example.com',
        'example.org',
        'notexample.com',
        'shopXexample.com',
        'apiXtestXshopXexampleXcom',
    ])
    def test_rejected(self, alias):
        """Anything else is rejected, and dots match only dots."""
        assert not alias_in_managed_zones(alias, 'test', 'shop', 'example.com')

    @pytest.mark.parametrize('domain', ['my-site.io', 'a.b.example.co.uk', 'x1.dev'])
    @pytest.mark.parametrize('label', ['www', 'a-b', '123'])
    def test_generated_domains(self, domain, label):
        """Each zone accepts exactly one extra label for any domain."""
        zones = [f'prod.web.{domain}', f'web.{domain}', domain]
        for zone in zones:
            assert alias_in_managed_zones(zone, 'prod', 'web', domain)
            assert alias_in_managed_zones(f'{label}.{zone}', 'prod', 'web', domain)
            assert not alias_in_managed_zones(f'{label}.{label}.{zone}', 'prod', 'web', domain)

    def test_metacharacters_are_literal(self):
        """Regex metacharacters in names should not act as wildcards."""
        assert alias_in_managed_zones('a.web+1.ex.com', 'prod', 'web+1', 'ex.com')
        assert not alias_in_managed_zones('a.webbb1.ex.com', 'prod', 'web+1', 'ex.com')


class TestALBRules:
    """Tests for validate_alb_rules."""

    def test_scenario_a_imported_certs_require_alias(self):
        """Imported ALB certs with an empty alias and a managed ALB fail."""
        v = make_validator(env=EnvironmentCapabilities(name='test', public_alb_certs=['arnX']))
        errors = v.validate_alb_rules('api', http(path='/'))
        assert errors == [
            'validate ALB runtime configuration for "http": cannot deploy service api without '
            '"alias" to environment test with certificate imported'
        ]

    def test_imported_alb_needs_no_alias(self):
        """A shared imported ALB does not need an alias."""
        v = make_validator(env=EnvironmentCapabilities(name='test', public_alb_certs=['arnX']))
        assert v.validate_alb_rules('api', http(path='/', alb='arn:alb')) == []

    def test_scenario_b_no_alias_needed(self):
        """No certs, no domain and no alias passes."""
        v = make_validator()
        assert v.validate_alb_rules('api', http(path='/')) == []

    def test_redirect_without_domain_or_certs(self):
        """HTTPS redirect needs a domain or imported certs."""
        v = make_validator()
        errors = v.validate_alb_rules('api', http(path='/', redirect_to_https=True))
        assert len(errors) == 1
        assert 'cannot configure http to https redirect' in errors[0]
        assert '"shop"' in errors[0]

    def test_redirect_with_domain(self):
        """HTTPS redirect is fine once the app has a domain."""
        v = make_validator(app=DOMAIN_APP)
        assert v.validate_alb_rules('api', http(path='/', redirect_to_https=True)) == []

    def test_hosted_zone_without_certs(self):
        """Alias hosted zones require imported certificates."""
        v = make_validator(app=DOMAIN_APP)
        errors = v.validate_alb_rules('api', http(
            path='/', alias=[{'name': 'a.example.com', 'hosted_zone': 'Z1'}]))
        assert 'cannot specify alias hosted zones [Z1]' in errors[0]

    def test_hosted_zone_with_cdn(self):
        """Alias hosted zones are incompatible with a CDN."""
        env = EnvironmentCapabilities(name='test', public_alb_certs=['arnX'], cdn_enabled=True)
        v = make_validator(env=env)
        errors = v.validate_alb_rules('api', http(
            path='/', alias=[{'name': 'a.example.com', 'hosted_zone': 'Z1'}]))
        assert 'cdn is enabled' in errors[0]

    def test_alb_and_cdn_certs_validated_independently(self):
        """Both certificate sets are checked with the full alias list."""
        env = EnvironmentCapabilities(name='test', public_alb_certs=['arnX'], cdn_cert='arnCDN')
        v = make_validator(env=env)
        assert v.validate_alb_rules('api', http(path='/', alias=['a.example.com', 'b.example.com'])) == []
        v.alb_cert_validator.validate_cert_aliases.assert_called_once_with(
            ['a.example.com', 'b.example.com'], ['arnX'])
        v.cdn_cert_validator.validate_cert_aliases.assert_called_once_with(
            ['a.example.com', 'b.example.com'], ['arnCDN'])

    def test_cdn_cert_only(self):
        """Only the CDN certificate is checked when no ALB cert is imported."""
        v = make_validator(env=EnvironmentCapabilities(name='test', cdn_cert='arnCDN'))
        assert v.validate_alb_rules('api', http(path='/', alias='a.example.com')) == []
        v.alb_cert_validator.validate_cert_aliases.assert_not_called()

    def test_cdn_cert_counts_as_imported(self):
        """A CDN certificate alone requires an alias and permits HTTPS redirects."""
        v = make_validator(env=EnvironmentCapabilities(name='test', cdn_cert='arnCDN'))
        errors = v.validate_alb_rules('api', http(path='/', redirect_to_https=True))
        assert len(errors) == 1
        assert 'without "alias"' in errors[0]
        assert 'redirect' not in errors[0]

    def test_cert_alias_failure(self):
        """A certificate mismatch is reported with the env name."""
        v = make_validator(env=EnvironmentCapabilities(name='test', public_alb_certs=['arnX']))
        v.alb_cert_validator.validate_cert_aliases.side_effect = CertAliasError('bad alias')
        errors = v.validate_alb_rules('api', http(path='/', alias='a.example.com'))
        assert errors == [
            'validate ALB runtime configuration for "http": validate aliases against the '
            'imported public ALB certificate for env test: bad alias'
        ]

    def test_domain_pattern_mismatch(self):
        """Aliases outside the managed zones fail with the accepted forms."""
        v = make_validator(app=DOMAIN_APP)
        errors = v.validate_alb_rules('api', http(path='/', alias='api.example.org'))
        assert 'alias "api.example.org" is not supported' in errors[0]

    def test_domain_pattern_match(self):
        """Aliases inside the managed zones pass."""
        v = make_validator(app=DOMAIN_APP)
        assert v.validate_alb_rules('api', http(path='/', alias='api.test.shop.example.com')) == []

    def test_domain_requires_app_version(self):
        """Aliases need the alias-capable application template."""
        v = make_validator(app=DOMAIN_APP, version='v0.9.0')
        with pytest.raises(VersionGateError) as exc_info:
            v._validate_public_rule('api', http(alias='a.example.com').main, '')
        assert exc_info.value.recommended_action == APP_UPGRADE_ACTION

    def test_version_read_failure(self):
        """A version read failure is a version-gate error."""
        v = make_validator(app=DOMAIN_APP)
        v.app_version_getter.version.side_effect = RuntimeError('boom')
        errors = v.validate_alb_rules('api', http(path='/', alias='a.example.com'))
        assert 'get version for app shop: boom' in errors[0]

    def test_alias_without_domain_or_certs(self):
        """An alias needs a domain or imported certificates."""
        v = make_validator()
        errors = v.validate_alb_rules('api', http(path='/', alias='a.example.com'))
        assert 'cannot specify http.alias when application is not associated with a domain' in errors[0]

    def test_reports_every_failing_rule(self):
        """Every rule is checked and named in its error."""
        v = make_validator(app=DOMAIN_APP)
        errors = v.validate_alb_rules('api', http(
            path='/',
            alias='bad.example.org',
            additional_rules=[
                {'path': '/ok', 'alias': 'ok.example.com'},
                {'path': '/v2', 'alias': 'also.bad.org'},
            ],
        ))
        assert len(errors) == 2
        assert errors[0].startswith('validate ALB runtime configuration for "http":')
        assert errors[1].startswith('validate ALB runtime configuration for "http.additional_rules[1]":')


class TestNLBAlias:
    """Tests for validate_nlb_alias."""

    def test_empty(self):
        """No NLB alias means nothing to check."""
        make_validator().validate_nlb_alias('api', Alias())

    def test_imported_certs_disallowed(self):
        """NLB aliases cannot coexist with imported ALB certificates."""
        v = make_validator(app=DOMAIN_APP,
                           env=EnvironmentCapabilities(name='test', public_alb_certs=['arnX']))
        with pytest.raises(CompatibilityError, match='nlb.alias'):
            v.validate_nlb_alias('api', Alias(names=['a.example.com']))

    def test_requires_domain(self):
        """NLB aliases need an app domain."""
        with pytest.raises(CompatibilityError, match='not associated with a domain'):
            make_validator().validate_nlb_alias('api', Alias(names=['a.example.com']))

    def test_pattern(self):
        """NLB aliases follow the managed zone patterns."""
        v = make_validator(app=DOMAIN_APP)
        v.validate_nlb_alias('api', Alias(names=['nlb.shop.example.com']))
        with pytest.raises(CompatibilityError, match='not supported in the hosted zones'):
            v.validate_nlb_alias('api', Alias(names=['a.b.example.com']))


class TestInternalRules:
    """Tests for validate_internal_rules."""

    def test_disabled_http(self):
        """Backend without http has nothing to validate."""
        assert make_validator().validate_internal_rules('db', HTTPConfig(enabled=False)) == []

    def test_alias_requires_private_certs(self):
        """Internal aliases need imported private certificates."""
        errors = make_validator().validate_internal_rules('db', http(path='/', alias='db.internal'))
        assert 'without imported certs' in errors[0]

    def test_private_certs_require_alias(self):
        """Imported private certs require an alias."""
        v = make_validator(env=EnvironmentCapabilities(name='test', private_alb_certs=['arnP']))
        errors = v.validate_internal_rules('db', http(path='/'))
        assert 'without "alias"' in errors[0]

    def test_aliases_checked_against_private_certs(self):
        """Aliases are validated against the private certificates."""
        v = make_validator(env=EnvironmentCapabilities(name='test', private_alb_certs=['arnP']))
        assert v.validate_internal_rules('db', http(path='/', alias='db.internal')) == []
        v.alb_cert_validator.validate_cert_aliases.assert_called_once_with(['db.internal'], ['arnP'])


class TestRDWSAlias:
    """Tests for validate_rdws_alias."""

    def test_empty(self):
        """No alias is always fine."""
        make_validator().validate_rdws_alias('fe', '')

    def test_requires_domain(self):
        """An alias needs an app domain."""
        with pytest.raises(CompatibilityError, match='not associated with a domain'):
            make_validator().validate_rdws_alias('fe', 'fe.example.com')

    def test_subdomain_of_root(self):
        """A subdomain of the root domain is accepted."""
        make_validator(app=DOMAIN_APP).validate_rdws_alias('fe', 'fe.example.com')

    @pytest.mark.parametrize('alias,message', [
        ('test.shop.example.com', 'environment-level alias'),
        ('fe.test.shop.example.com', 'environment-level alias'),
        ('shop.example.com', 'application-level alias'),
        ('fe.shop.example.com', 'application-level alias'),
        ('example.com', 'root domain alias'),
        ('a.b.example.com', 'not managed for the app'),
        ('fe.other.org', 'not managed for the app'),
    ])
    def test_unsupported(self, alias, message):
        """Only <subdomain>.<domain> is supported."""
        with pytest.raises(CompatibilityError, match=message):
            make_validator(app=DOMAIN_APP).validate_rdws_alias('fe', alias)

    def test_version_gate(self):
        """Old app templates cannot serve aliases."""
        with pytest.raises(VersionGateError, match='alias not supported'):
            make_validator(app=DOMAIN_APP, version='v0.1.0').validate_rdws_alias('fe', 'fe.example.com')


class TestStaticSite:
    """Tests for validate_static_site."""

    def test_version_gate(self):
        """Static sites need a recent app template."""
        with pytest.raises(VersionGateError) as exc_info:
            make_validator(version='v1.1.0').validate_static_site('', '')
        assert str(exc_info.value) == 'static sites not supported: app version must be >= v1.2.0'
        assert exc_info.value.recommended_action == APP_UPGRADE_ACTION

    def test_no_alias(self):
        """No alias only requires the version."""
        make_validator().validate_static_site('', '')

    def test_certificate(self):
        """An imported certificate validates the single alias."""
        v = make_validator()
        v.validate_static_site('www.other.org', 'arn:cert')
        v.cdn_cert_validator.validate_cert_aliases.assert_called_once_with(['www.other.org'], ['arn:cert'])

    def test_certificate_mismatch(self):
        """A certificate mismatch names the certificate."""
        v = make_validator()
        v.cdn_cert_validator.validate_cert_aliases.side_effect = CertAliasError('nope')
        with pytest.raises(CompatibilityError, match='arn:cert'):
            v.validate_static_site('www.other.org', 'arn:cert')

    def test_requires_domain_or_certificate(self):
        """Without a certificate the app needs a domain."""
        with pytest.raises(CompatibilityError, match='http.certificate'):
            make_validator().validate_static_site('www.example.com', '')

    def test_domain_pattern(self):
        """With a domain the alias must be in a managed zone."""
        v = make_validator(app=DOMAIN_APP)
        v.validate_static_site('www.example.com', '')
        with pytest.raises(CompatibilityError):
            v.validate_static_site('www.example.org', '')


class TestTopics:
    """Tests for validate_topics_exist."""

    ARNS = [
        'arn:aws:sns:us-west-2:123456789012:shop-test-database-orders',
        'arn:aws:sns:us-west-2:123456789012:shop-test-api-events',
    ]

    def test_topic_exists(self):
        """A deployed topic passes."""
        validate_topics_exist([TopicSubscription('orders', 'database')], self.ARNS, 'shop', 'test')

    def test_topic_missing(self):
        """A missing topic is named in the error."""
        with pytest.raises(TopicNotFoundError) as exc_info:
            validate_topics_exist([TopicSubscription('payments', 'database')], self.ARNS, 'shop', 'test')
        assert str(exc_info.value) == 'SNS topic shop-test-database-payments does not exist in environment test'

    def test_malformed_arns_ignored(self):
        """Strings that are not ARNs never match."""
        with pytest.raises(TopicNotFoundError):
            validate_topics_exist([TopicSubscription('orders', 'database')],
                                  ['shop-test-database-orders'], 'shop', 'test')


class TestRaiseForErrors:
    """Tests for raise_for_errors."""

    def test_no_errors(self):
        """No errors should not raise."""
        raise_for_errors([])

    def test_joins_errors(self):
        """Errors are joined with newlines."""
        with pytest.raises(CompatibilityError) as exc_info:
            raise_for_errors(['a', 'b'])
        assert str(exc_info.value) == 'a\nb'
