"""Tests for the stack package - runtime config, builders and configuration."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import cfn_yaml
from common import WorkloadIdentity
from config import AppCapabilities, EnvironmentCapabilities
from manifest import parse_manifest
from stack import (
    BuildContext,
    StackConfigError,
    StackRuntimeConfig,
    build_runtime_config,
    build_stack_configuration,
)
from stack.builders import PLATFORM_APP_RUNNER, PLATFORM_ECS, STACK_BUILDERS
from stack.config import TAG_APP, TAG_WORKLOAD
from stack.runtime import ECRImage
from upload.images import ContainerImageIdentifier
from upload.pipeline import UploadArtifactsOutput
from validation import CompatibilityError, CompatibilityValidator, TopicNotFoundError


def make_context(data, name='api', app=None, env=None, version='v1.2.0', **kwargs):
    app = app or AppCapabilities(name='shop')
    env = env or EnvironmentCapabilities(name='test', region='us-west-2', account_id='123456789012')
    getter = MagicMock()
    getter.version.return_value = version
    validator = CompatibilityValidator(
        app=app, env=env,
        alb_cert_validator=MagicMock(),
        cdn_cert_validator=MagicMock(),
        app_version_getter=getter,
    )
    return BuildContext(
        identity=WorkloadIdentity('shop', 'test', name),
        manifest=parse_manifest(data, name=name),
        raw_manifest='raw',
        app=app,
        env=env,
        validator=validator,
        artifact_bucket='shop-artifacts',
        **kwargs,
    )


class TestBuildRuntimeConfig:
    """Tests for build_runtime_config."""

    def make_getters(self):
        endpoint = MagicMock()
        endpoint.service_discovery_endpoint.return_value = 'test.shop.local'
        version = MagicMock()
        version.version.return_value = 'v1.1.0'
        return endpoint, version

    def test_assembles_fields(self, identity, env_caps):
        """Runtime config carries artifacts, endpoint, version and tags."""
        endpoint, version = self.make_getters()
        artifacts = UploadArtifactsOutput()
        artifacts.populate(
            image_digests={
                'api': ContainerImageIdentifier('sha256:a', custom_tag='v1', git_short_commit_tag='abc'),
                'proxy': ContainerImageIdentifier('sha256:b', custom_tag='v1', git_short_commit_tag='abc'),
            },
            env_file_arns={'api': 'arn:env'},
            addons_url='https://addons',
            addons_parameters={'DBName': 'mydb'},
        )
        rc = build_runtime_config(identity, env_caps, artifacts, endpoint, version,
                                  repository_url='repo/api', tags={'team': 'web'})
        assert rc.service_discovery_endpoint == 'test.shop.local'
        assert rc.env_version == 'v1.1.0'
        assert rc.account_id == '123456789012'
        assert rc.region == 'us-west-2'
        assert rc.env_file_arns == {'api': 'arn:env'}
        assert rc.addons_template_url == 'https://addons'
        assert rc.addons_parameters == {'DBName': 'mydb'}
        assert rc.additional_tags == {'team': 'web'}
        assert rc.pushed_images['api'].image_tag == 'v1'
        assert rc.pushed_images['proxy'].image_tag == 'abc'

    def test_endpoint_failure_is_fatal(self, identity, env_caps):
        """An endpoint read failure aborts with context."""
        endpoint, version = self.make_getters()
        endpoint.service_discovery_endpoint.side_effect = RuntimeError('throttled')
        with pytest.raises(StackConfigError, match='get service discovery endpoint: throttled'):
            build_runtime_config(identity, env_caps, UploadArtifactsOutput(), endpoint, version)
        version.version.assert_not_called()

    def test_env_version_failure_is_fatal(self, identity, env_caps):
        """An env version read failure aborts with the env name."""
        endpoint, version = self.make_getters()
        version.version.side_effect = RuntimeError('denied')
        with pytest.raises(StackConfigError, match='get version of environment "test": denied'):
            build_runtime_config(identity, env_caps, UploadArtifactsOutput(), endpoint, version)


class TestECRImage:
    """Tests for ECRImage.uri."""

    def test_digest_preferred(self):
        """Digest references win over tags."""
        img = ECRImage('repo', 'v1', 'sha256:a', 'api', 'api')
        assert img.uri == 'repo@sha256:a'

    def test_sidecar_tag_prefix(self):
        """Sidecar tag references carry the container prefix."""
        img = ECRImage('repo', 'abc', '', 'api', 'proxy')
        assert img.uri == 'repo:proxy-abc'

    def test_latest_fallback(self):
        """No tag falls back to latest."""
        assert ECRImage('repo', '', '', 'api', 'api').uri == 'repo:latest'


class TestBuilders:
    """Tests for per-type stack builders."""

    def test_table_is_exhaustive(self):
        """Every manifest type has a builder."""
        assert len(STACK_BUILDERS) == 6

    def test_unknown_type(self):
        """An unknown manifest type is a programming error."""
        ctx = make_context({'type': 'Scheduled Job'})
        ctx.manifest = object()
        with pytest.raises(TypeError, match='unknown manifest type'):
            build_stack_configuration(ctx, StackRuntimeConfig())

    def test_lbws_scenario_a(self):
        """Imported certs without alias fail with the rule name."""
        env = EnvironmentCapabilities(name='test', public_alb_certs=['arnX'])
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': {'path': '/'}}, env=env)
        with pytest.raises(CompatibilityError) as exc_info:
            build_stack_configuration(ctx, StackRuntimeConfig())
        assert str(exc_info.value) == (
            'validate ALB runtime configuration for "http": cannot deploy service api without '
            '"alias" to environment test with certificate imported'
        )

    def test_lbws_scenario_b(self):
        """No certs, no domain, no alias builds an ECS stack."""
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': {'path': '/'}})
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        assert out.platform == PLATFORM_ECS
        assert out.conf.options == {}

    def test_lbws_domain_options(self):
        """An app domain enables DNS delegation and HTTPS."""
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': {'path': '/'}},
                           app=AppCapabilities(name='shop', domain='example.com'))
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        assert out.conf.options == {'dns_delegation': True, 'https': True}

    def test_lbws_nlb_fetches_cidrs(self):
        """NLB services read the public CIDR blocks."""
        cidrs = MagicMock()
        cidrs.public_cidr_blocks.return_value = ['10.0.0.0/24', '10.0.1.0/24']
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': False, 'nlb': {'port': '443/tcp'}},
                           cidr_getter=cidrs)
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        assert out.conf.options['nlb_cidr_blocks'] == ['10.0.0.0/24', '10.0.1.0/24']

    def test_lbws_nlb_cidr_failure(self):
        """A CIDR read failure is fatal."""
        cidrs = MagicMock()
        cidrs.public_cidr_blocks.side_effect = RuntimeError('no vpc')
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': False, 'nlb': {'port': '443'}},
                           cidr_getter=cidrs)
        with pytest.raises(StackConfigError, match='environment test: no vpc'):
            build_stack_configuration(ctx, StackRuntimeConfig())

    def test_lbws_nlb_alias_with_imported_certs(self):
        """NLB aliases are rejected when ALB certs are imported."""
        env = EnvironmentCapabilities(name='test', public_alb_certs=['arnX'])
        ctx = make_context({'type': 'Load Balanced Web Service',
                            'http': {'path': '/', 'alias': 'a.example.com'},
                            'nlb': {'port': '443', 'alias': 'n.example.com'}},
                           env=env, cidr_getter=MagicMock())
        with pytest.raises(CompatibilityError, match='nlb.alias'):
            build_stack_configuration(ctx, StackRuntimeConfig())

    def test_backend(self):
        """Backend services build an ECS stack; internal HTTPS follows private certs."""
        env = EnvironmentCapabilities(name='test', private_alb_certs=['arnP'])
        ctx = make_context({'type': 'Backend Service', 'http': {'path': '/', 'alias': 'db.internal'}},
                           name='db', env=env)
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        assert out.platform == PLATFORM_ECS
        assert out.conf.options == {'https': True}

    def test_rdws(self):
        """Request-driven services run on App Runner and keep their alias."""
        ctx = make_context({'type': 'Request-Driven Web Service', 'http': {'alias': 'fe.example.com'}},
                           name='fe', app=AppCapabilities(name='shop', domain='example.com'))
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        assert out.platform == PLATFORM_APP_RUNNER
        assert out.rdws_alias == 'fe.example.com'

    def test_rdws_env_level_alias(self):
        """Environment-level aliases are unsupported for App Runner."""
        ctx = make_context({'type': 'Request-Driven Web Service',
                            'http': {'alias': 'fe.test.shop.example.com'}},
                           name='fe', app=AppCapabilities(name='shop', domain='example.com'))
        with pytest.raises(CompatibilityError, match='environment-level'):
            build_stack_configuration(ctx, StackRuntimeConfig())

    def worker_context(self, arns):
        topics = MagicMock()
        topics.list_topic_arns.return_value = arns
        return make_context({
            'type': 'Worker Service',
            'subscribe': {'topics': [{'name': 'orders', 'service': 'database'}]},
        }, name='worker', topic_lister=topics), topics

    def test_worker_scenario_c_topic_present(self):
        """Subscriptions to deployed topics pass and are kept on the output."""
        ctx, topics = self.worker_context(['arn:aws:sns:us-west-2:123456789012:shop-test-database-orders'])
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        topics.list_topic_arns.assert_called_once_with('shop', 'test')
        assert [s.name for s in out.subscriptions] == ['orders']
        assert out.platform == PLATFORM_ECS

    def test_worker_scenario_c_topic_absent(self):
        """Subscriptions to missing topics fail with the topic name."""
        ctx, _ = self.worker_context(['arn:aws:sns:us-west-2:123456789012:shop-test-api-events'])
        with pytest.raises(TopicNotFoundError) as exc_info:
            build_stack_configuration(ctx, StackRuntimeConfig())
        assert str(exc_info.value) == 'SNS topic shop-test-database-orders does not exist in environment test'

    def test_worker_topic_read_failure(self):
        """A topic read failure is fatal."""
        ctx, topics = self.worker_context([])
        topics.list_topic_arns.side_effect = RuntimeError('denied')
        with pytest.raises(StackConfigError, match='get SNS topics'):
            build_stack_configuration(ctx, StackRuntimeConfig())

    def test_scheduled_job(self):
        """Scheduled jobs skip validation and carry their schedule."""
        ctx = make_context({'type': 'Scheduled Job', 'on': {'schedule': '@daily'}}, name='report')
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        assert out.platform == ''
        assert out.conf.options == {'schedule': '@daily'}

    def test_static_site_version_gate(self):
        """Static sites need the static-site app template."""
        ctx = make_context({'type': 'Static Site'}, name='site', version='v1.0.0')
        with pytest.raises(CompatibilityError, match='static sites not supported'):
            build_stack_configuration(ctx, StackRuntimeConfig())

    def test_static_site_alias(self):
        """Static site aliases follow the managed zone patterns."""
        ctx = make_context({'type': 'Static Site', 'http': {'alias': 'www.example.com'}}, name='site',
                           app=AppCapabilities(name='shop', domain='example.com'))
        out = build_stack_configuration(ctx, StackRuntimeConfig())
        assert out.conf.options == {'alias': 'www.example.com'}


class TestStackConfiguration:
    """Tests for parameters, tags and the rendered template."""

    def test_parameters_prefer_pushed_image(self):
        """The pushed main image is the container image parameter."""
        ctx = make_context({'type': 'Scheduled Job', 'image': {'location': 'nginx'}}, name='report')
        runtime = StackRuntimeConfig(
            pushed_images={'report': ECRImage('repo', 'v1', 'sha256:a', 'report', 'report')},
            env_file_arns={'report': 'arn:env'},
        )
        params = build_stack_configuration(ctx, runtime).conf.parameters()
        assert params['ContainerImage'] == 'repo@sha256:a'
        assert params['EnvFileARN'] == 'arn:env'
        assert params['WorkloadName'] == 'report'

    def test_parameters_image_location(self):
        """Without a pushed image the manifest location is used."""
        ctx = make_context({'type': 'Scheduled Job', 'image': {'location': 'nginx'}}, name='report')
        params = build_stack_configuration(ctx, StackRuntimeConfig()).conf.parameters()
        assert params['ContainerImage'] == 'nginx'
        assert params['EnvFileARN'] == ''

    def test_static_site_parameters(self):
        """Static sites pass the asset mapping location."""
        ctx = make_context({'type': 'Static Site'}, name='site')
        runtime = StackRuntimeConfig(static_site_asset_mapping_location='s3://b/k')
        params = build_stack_configuration(ctx, runtime).conf.parameters()
        assert params['AssetMappingFileLocation'] == 's3://b/k'
        assert 'ContainerImage' not in params

    def test_reserved_tags_win(self):
        """User tags cannot override the workload tags."""
        ctx = make_context({'type': 'Scheduled Job', 'tags': {'owner': 'me', TAG_APP: 'other'}}, name='report')
        runtime = StackRuntimeConfig(additional_tags={'team': 'web'})
        tags = build_stack_configuration(ctx, runtime).conf.tags()
        assert tags['owner'] == 'me'
        assert tags['team'] == 'web'
        assert tags[TAG_APP] == 'shop'
        assert tags[TAG_WORKLOAD] == 'report'

    def test_template_renders(self):
        """The default template carries metadata, parameters and custom resources."""
        ctx = make_context({'type': 'Scheduled Job'}, name='report')
        runtime = StackRuntimeConfig(
            custom_resource_urls={'EnvControllerFunction': 'https://b.s3.amazonaws.com/k.zip'},
            service_discovery_endpoint='test.shop.local',
        )
        out = build_stack_configuration(ctx, runtime)
        doc = cfn_yaml.load(out.conf.template())
        assert doc['Description'] == 'Scheduled Job: report'
        assert doc['Metadata']['Manifest'] == 'raw'
        assert 'AddonsTemplateURL' in doc['Parameters']
        assert doc['Resources']['EnvControllerFunction']['Properties']['Code'] == {'S3Bucket': 'b', 'S3Key': 'k.zip'}
        assert doc['Outputs']['DiscoveryServiceEndpoint']['Value'] == 'test.shop.local'

    def test_template_is_deterministic(self):
        """Rendering twice yields the same text."""
        ctx = make_context({'type': 'Scheduled Job'}, name='report')
        conf = build_stack_configuration(ctx, StackRuntimeConfig()).conf
        assert conf.template() == conf.template()

    def test_custom_renderer(self):
        """A renderer override replaces the default."""
        renderer = MagicMock()
        renderer.render.return_value = 'Resources: {}\n'
        ctx = make_context({'type': 'Scheduled Job'}, name='report', renderer=renderer)
        conf = build_stack_configuration(ctx, StackRuntimeConfig()).conf
        assert conf.template() == 'Resources: {}\n'
        renderer.render.assert_called_once_with(conf)

    def test_addons_parameters_forwarded(self):
        """Addon parameters are passed to the nested addons stack."""
        ctx = make_context({'type': 'Scheduled Job'}, name='report')
        runtime = StackRuntimeConfig(addons_template_url='https://addons', addons_parameters={'DBName': 'mydb'})
        doc = cfn_yaml.load(build_stack_configuration(ctx, runtime).conf.template())
        params = doc['Resources']['AddonsStack']['Properties']['Parameters']
        assert params['DBName'] == 'mydb'
        assert set(params) == {'DBName', 'App', 'Env', 'Name'}


class TestOptionParameters:
    """Builder options become stack parameters."""

    def test_nlb_cidr_blocks(self):
        """NLB CIDR blocks are comma separated."""
        cidrs = MagicMock()
        cidrs.public_cidr_blocks.return_value = ['10.0.0.0/24', '10.0.1.0/24']
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': False, 'nlb': {'port': '443/tcp'}},
                           cidr_getter=cidrs)
        conf = build_stack_configuration(ctx, StackRuntimeConfig()).conf
        assert conf.parameters()['NLBPublicCIDRBlocks'] == '10.0.0.0/24,10.0.1.0/24'
        assert 'NLBPublicCIDRBlocks' in cfn_yaml.load(conf.template())['Parameters']

    def test_domain_flags(self):
        """DNS delegation and HTTPS are rendered as true/false strings."""
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': {'path': '/'}},
                           app=AppCapabilities(name='shop', domain='example.com'))
        params = build_stack_configuration(ctx, StackRuntimeConfig()).conf.parameters()
        assert params['DNSDelegation'] == 'true'
        assert params['HTTPSEnabled'] == 'true'

    def test_schedule(self):
        """Scheduled jobs pass their schedule."""
        ctx = make_context({'type': 'Scheduled Job', 'on': {'schedule': '@daily'}}, name='report')
        params = build_stack_configuration(ctx, StackRuntimeConfig()).conf.parameters()
        assert params['Schedule'] == '@daily'

    def test_static_site_alias(self):
        """Static site aliases are passed alongside the asset mapping."""
        ctx = make_context({'type': 'Static Site', 'http': {'alias': 'www.example.com'}}, name='site',
                           app=AppCapabilities(name='shop', domain='example.com'))
        params = build_stack_configuration(ctx, StackRuntimeConfig()).conf.parameters()
        assert params['Alias'] == 'www.example.com'
        assert 'AssetMappingFileLocation' in params

    def test_no_options(self):
        """Workloads without options add no option parameters."""
        ctx = make_context({'type': 'Load Balanced Web Service', 'http': {'path': '/'}})
        params = build_stack_configuration(ctx, StackRuntimeConfig()).conf.parameters()
        assert not {'NLBPublicCIDRBlocks', 'DNSDelegation', 'HTTPSEnabled', 'Schedule', 'Alias'} & set(params)
