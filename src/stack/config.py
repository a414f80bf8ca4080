"""Ready-to-deploy stack configuration for a workload.

A ``StackConfiguration`` bundles the workload manifest, the capability
snapshots it was validated against and the runtime configuration. It
exposes what the deploy engine needs: stack name, parameters, tags and
the rendered template body.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import cfn_yaml
from common import WorkloadIdentity
from config import AppCapabilities, EnvironmentCapabilities
from manifest import ServiceManifest, StaticSite
from stack.runtime import StackRuntimeConfig
from upload.base import parse_s3_url

# Template version written into every workload stack
WORKLOAD_TEMPLATE_VERSION = 'v1.4.0'

# Reserved tag keys identifying the workload
TAG_APP = 'deploy-driver-application'
TAG_ENV = 'deploy-driver-environment'
TAG_WORKLOAD = 'deploy-driver-service'

# Template parameters carrying the type-specific build options
OPTION_PARAMETERS = {
    'nlb_cidr_blocks': 'NLBPublicCIDRBlocks',
    'dns_delegation': 'DNSDelegation',
    'https': 'HTTPSEnabled',
    'schedule': 'Schedule',
    'alias': 'Alias',
}


def _parameter_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (list, tuple)):
        return ','.join(str(v) for v in value)
    return str(value)


WORKLOAD_TYPE_NAMES = {
    'LoadBalancedWebService': 'Load Balanced Web Service',
    'BackendService': 'Backend Service',
    'RequestDrivenWebService': 'Request-Driven Web Service',
    'WorkerService': 'Worker Service',
    'ScheduledJob': 'Scheduled Job',
    'StaticSite': 'Static Site',
}


@runtime_checkable
class TemplateRenderer(Protocol):
    """Turns a stack configuration into a template body."""

    def render(self, conf: 'StackConfiguration') -> str:
        ...


@dataclass
class StackConfiguration:
    """Everything needed to create or update the workload stack.

    Attributes:
        identity: Workload being deployed
        manifest: Parsed workload manifest
        raw_manifest: Manifest text, recorded in the template metadata
        app: Application capabilities snapshot
        env: Environment capabilities snapshot
        runtime: Runtime configuration
        artifact_bucket: Bucket holding uploaded artifacts
        options: Type-specific settings (NLB CIDRs, DNS delegation, ...)
        renderer: Optional override of the default renderer
    """
    identity: WorkloadIdentity
    manifest: ServiceManifest
    raw_manifest: str
    app: AppCapabilities
    env: EnvironmentCapabilities
    runtime: StackRuntimeConfig
    artifact_bucket: str
    options: dict[str, Any] = field(default_factory=dict)
    renderer: Optional[TemplateRenderer] = None

    @property
    def stack_name(self) -> str:
        return self.identity.stack_name

    @property
    def workload_type(self) -> str:
        return WORKLOAD_TYPE_NAMES[type(self.manifest).__name__]

    def parameters(self) -> dict[str, str]:
        """Template parameter values."""
        params = {
            'AppName': self.identity.app,
            'EnvName': self.identity.env,
            'WorkloadName': self.identity.name,
            'AddonsTemplateURL': self.runtime.addons_template_url,
        }
        for name, value in sorted(self.options.items()):
            params[OPTION_PARAMETERS[name]] = _parameter_value(value)
        if isinstance(self.manifest, StaticSite):
            params['AssetMappingFileLocation'] = self.runtime.static_site_asset_mapping_location
            return params
        main = self.runtime.pushed_images.get(self.identity.name)
        if main is not None:
            params['ContainerImage'] = main.uri
        elif self.manifest.image.location:
            params['ContainerImage'] = self.manifest.image.location
        params['EnvFileARN'] = self.runtime.env_file_arns.get(self.identity.name, '')
        return params

    def tags(self) -> dict[str, str]:
        """Stack tags: user tags first, reserved workload tags win."""
        tags = dict(self.manifest.tags)
        tags.update(self.runtime.additional_tags)
        tags.update({
            TAG_APP: self.identity.app,
            TAG_ENV: self.identity.env,
            TAG_WORKLOAD: self.identity.name,
        })
        return tags

    def template(self) -> str:
        renderer = self.renderer or DefaultTemplateRenderer()
        return renderer.render(self)


class DefaultTemplateRenderer:
    """Renders the workload skeleton: metadata, parameters and shared resources.

    Workload-specific resources are contributed by the template library the
    deploy driver is paired with; this renderer covers the parts the
    driver itself owns so templates diff and deploy consistently.
    """

    def render(self, conf: StackConfiguration) -> str:
        params = conf.parameters()
        doc: dict[str, Any] = {
            'AWSTemplateFormatVersion': '2010-09-09',
            'Description': f'{conf.workload_type}: {conf.identity.name}',
            'Metadata': {
                'Version': WORKLOAD_TEMPLATE_VERSION,
                'Manifest': conf.raw_manifest,
            },
            'Parameters': {name: {'Type': 'String'} for name in params},
            'Conditions': {
                'HasAddons': cfn_yaml.TaggedValue(
                    '!Not', [cfn_yaml.TaggedValue('!Equals', [cfn_yaml.TaggedValue('!Ref', 'AddonsTemplateURL'), ''])]
                ),
            },
            'Resources': self._resources(conf),
            'Outputs': {
                'DiscoveryServiceEndpoint': {
                    'Value': conf.runtime.service_discovery_endpoint or '',
                },
            },
        }
        return cfn_yaml.dump(doc)

    def _resources(self, conf: StackConfiguration) -> dict[str, Any]:
        resources: dict[str, Any] = {}
        for fn_name, url in sorted(conf.runtime.custom_resource_urls.items()):
            bucket, key = parse_s3_url(url)
            resources[fn_name] = {
                'Type': 'AWS::Lambda::Function',
                'Properties': {
                    'Handler': 'index.handler',
                    'Runtime': 'nodejs20.x',
                    'Timeout': 900,
                    'Code': {'S3Bucket': bucket, 'S3Key': key},
                },
            }
        resources['AddonsStack'] = {
            'Type': 'AWS::CloudFormation::Stack',
            'Condition': 'HasAddons',
            'Properties': {
                'TemplateURL': cfn_yaml.TaggedValue('!Ref', 'AddonsTemplateURL'),
                'Parameters': {
                    **conf.runtime.addons_parameters,
                    'App': cfn_yaml.TaggedValue('!Ref', 'AppName'),
                    'Env': cfn_yaml.TaggedValue('!Ref', 'EnvName'),
                    'Name': cfn_yaml.TaggedValue('!Ref', 'WorkloadName'),
                },
            },
        }
        return resources
