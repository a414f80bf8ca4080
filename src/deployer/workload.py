"""Workload deployer: one object per deploy invocation.

Wires the artifact pipeline, runtime configuration, stack configuration
builders and the deploy executor together. All collaborators are passed
in at construction; nothing is looked up globally.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from common import ActionResult, WorkloadIdentity, git_short_commit
from config import DeployConfig
from deployer.executor import (
    DeployError,
    DeployExecutor,
    DeployOptions,
    ServiceDeployer,
    ServiceForceUpdater,
    utc_now,
)
from deployer.recommend import rdws_actions, worker_actions
from manifest import RequestDrivenWebService, ServiceManifest, WorkerService
from stack import (
    BuildContext,
    StackConfigOutput,
    StackRuntimeConfig,
    build_runtime_config,
    build_stack_configuration,
)
from stack.builders import PublicCIDRBlocksGetter, TopicLister
from stack.config import TemplateRenderer
from stack.runtime import EndpointGetter
from template_diff import TemplateGetter, deploy_diff
from upload import ArtifactPipeline, UploadArtifactsOutput, Uploader
from upload.addons import Addons
from upload.customresources import workload_custom_resources
from upload.images import ContainerImageIdentifier, ImageBuilder
from validation import CertAliasValidator, CompatibilityValidator, VersionGetter

logger = logging.getLogger(__name__)


@dataclass
class WorkloadDeployer:
    """Deploys one workload to one environment.

    Attributes:
        identity: Workload being deployed
        manifest: Parsed workload manifest
        raw_manifest: Manifest text
        config: App, environment and workspace configuration
        uploader: Object-store uploader
        stack_deployer: Creates or updates the workload stack
        endpoint_getter: Environment service discovery endpoint
        env_version_getter: Environment template version
        app_version_getter: Application template version
        alb_cert_validator: Validates aliases against ALB certificates
        cdn_cert_validator: Validates aliases against the CDN certificate
        force_updaters: Force-update client per compute platform
        image_builder: Builds and pushes container images
        cidr_getter: Environment VPC reader
        topic_lister: Environment topic reader
        template_getter: Deployed template reader
        renderer: Template renderer override
        clock: Time source for the force-update protocol
        version: Driver version recorded on pushed images
    """
    identity: WorkloadIdentity
    manifest: ServiceManifest
    raw_manifest: str
    config: DeployConfig
    uploader: Uploader
    stack_deployer: ServiceDeployer
    endpoint_getter: EndpointGetter
    env_version_getter: VersionGetter
    app_version_getter: VersionGetter
    alb_cert_validator: CertAliasValidator
    cdn_cert_validator: CertAliasValidator
    force_updaters: dict[str, ServiceForceUpdater] = field(default_factory=dict)
    image_builder: Optional[ImageBuilder] = None
    cidr_getter: Optional[PublicCIDRBlocksGetter] = None
    topic_lister: Optional[TopicLister] = None
    template_getter: Optional[TemplateGetter] = None
    renderer: Optional[TemplateRenderer] = None
    clock: Callable[[], datetime] = utc_now
    version: str = ''

    @property
    def workspace(self) -> Path:
        return self.config.workspace

    @property
    def bucket(self) -> str:
        return self.config.resources.artifact_bucket

    @property
    def repository_url(self) -> str:
        return self.config.resources.repository_urls.get(self.identity.name, '')

    def validator(self) -> CompatibilityValidator:
        return CompatibilityValidator(
            app=self.config.app,
            env=self.config.env,
            alb_cert_validator=self.alb_cert_validator,
            cdn_cert_validator=self.cdn_cert_validator,
            app_version_getter=self.app_version_getter,
        )

    def build_context(self) -> BuildContext:
        return BuildContext(
            identity=self.identity,
            manifest=self.manifest,
            raw_manifest=self.raw_manifest,
            app=self.config.app,
            env=self.config.env,
            validator=self.validator(),
            artifact_bucket=self.bucket,
            cidr_getter=self.cidr_getter,
            topic_lister=self.topic_lister,
            renderer=self.renderer,
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def upload_artifacts(self, image_tag: str = '') -> UploadArtifactsOutput:
        """Build images and upload every artifact the stack references."""
        templates_dir = self.workspace / self.config.resources.templates_dir
        pipeline = ArtifactPipeline(
            identity=self.identity,
            manifest=self.manifest,
            workspace=self.workspace,
            bucket=self.bucket,
            region=self.config.env.region,
            uploader=self.uploader,
            image_builder=self.image_builder,
            repository_url=self.repository_url,
            image=ContainerImageIdentifier(
                custom_tag=image_tag,
                git_short_commit_tag=git_short_commit(self.workspace),
            ),
            addons=Addons.parse(self.workspace, self.identity.name),
            custom_resources=workload_custom_resources(self.manifest, templates_dir),
            version=self.version,
        )
        return pipeline.run()

    def stack_configuration(self, artifacts: UploadArtifactsOutput,
                            tags: Optional[dict[str, str]] = None) -> StackConfigOutput:
        """Assemble the runtime configuration, then the validated stack configuration."""
        runtime = build_runtime_config(
            identity=self.identity,
            env=self.config.env,
            artifacts=artifacts,
            endpoint_getter=self.endpoint_getter,
            env_version_getter=self.env_version_getter,
            repository_url=self.repository_url,
            tags=tags,
        )
        return build_stack_configuration(self.build_context(), runtime)

    def recommended_actions(self, output: StackConfigOutput) -> list[str]:
        if isinstance(self.manifest, RequestDrivenWebService):
            return rdws_actions(output.rdws_alias)
        if isinstance(self.manifest, WorkerService):
            return worker_actions(output.subscriptions)
        return []

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def deploy(self, options: DeployOptions, image_tag: str = '',
               tags: Optional[dict[str, str]] = None) -> ActionResult:
        """Upload artifacts, build the stack configuration and deploy it.

        Raises:
            UploadError, StackConfigError, CompatibilityError, DeployError
        """
        start = time.time()
        artifacts = self.upload_artifacts(image_tag)
        output = self.stack_configuration(artifacts, tags)

        executor = DeployExecutor(
            identity=self.identity,
            deployer=self.stack_deployer,
            bucket=self.bucket,
            force_updater=self.force_updaters.get(output.platform) if output.platform else None,
            clock=self.clock,
        )
        if output.platform and executor.force_updater is None and options.force_new_update:
            raise DeployError(f"no force-update client configured for platform {output.platform}")
        state = executor.execute(output.conf, options)

        return ActionResult(
            success=True,
            message=f"Deployed {self.identity.name} in environment {self.identity.env} ({state.value})",
            duration=time.time() - start,
            recommended_actions=self.recommended_actions(output),
        )

    def package(self, upload: bool = False, image_tag: str = '',
                tags: Optional[dict[str, str]] = None) -> tuple[StackConfigOutput, str]:
        """Render the stack template without deploying.

        Artifacts are only uploaded when ``upload`` is set; otherwise the
        template references no pushed artifacts.
        """
        artifacts = self.upload_artifacts(image_tag) if upload else UploadArtifactsOutput()
        output = self.stack_configuration(artifacts, tags)
        return output, output.conf.template()

    def diff(self, template: str) -> str:
        """Diff a rendered template against the deployed stack."""
        if self.template_getter is None:
            raise DeployError("no template reader configured for diff")
        return deploy_diff(self.template_getter, self.identity.stack_name, template)

    def validate(self) -> StackConfigOutput:
        """Run compatibility validation and builder checks without uploading.

        Raises:
            CompatibilityError: If the manifest is incompatible with the app or env
        """
        return build_stack_configuration(self.build_context(), StackRuntimeConfig(
            account_id=self.config.env.account_id,
            region=self.config.env.region,
        ))
