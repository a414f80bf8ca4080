"""CLI handlers for the svc and env nouns.

Usage:
    deploy-driver svc deploy -n <svc> -e <env> [--force] [--disable-rollback] [--detach]
                             [--tag <tag>] [--resource-tags k=v,...]
    deploy-driver svc package -n <svc> -e <env> [--diff] [--upload-assets] [--output-dir <dir>]
    deploy-driver svc validate -n <svc> -e <env>
    deploy-driver env validate -e <env>
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from clients import (
    ACMCertValidator,
    AppRunnerClient,
    CloudFormationClient,
    DockerImageBuilder,
    ECSClient,
    ELBv2Client,
    EnvironmentDescriber,
    S3Uploader,
    StackVersionGetter,
)
from clients.cloudformation import app_stack_name, env_stack_name
from common import WorkloadIdentity, get_version
from config import CDN_CERT_REGION, ConfigError, DeployConfig, load_deploy_config, parse_tags
from deployer.env import EnvValidationError, validate_env
from deployer.executor import DeployError, DeployOptions
from deployer.workload import WorkloadDeployer
from manifest import ManifestError, load_manifest
from stack import StackConfigError
from stack.builders import PLATFORM_APP_RUNNER, PLATFORM_ECS
from template_diff import TemplateDiffError
from upload import UploadError
from upload.images import ImageBuildError
from validation import CompatibilityError

logger = logging.getLogger(__name__)

# Errors reported to the user without a traceback
HANDLED_ERRORS = (
    ConfigError,
    ManifestError,
    CompatibilityError,
    StackConfigError,
    UploadError,
    ImageBuildError,
    DeployError,
    TemplateDiffError,
    EnvValidationError,
)


def _common_parser(noun: str, verb: str, description: str, workload: bool = True) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'deploy-driver {noun} {verb}',
        description=description,
    )
    if workload:
        parser.add_argument(
            '--name', '-n',
            required=True,
            help='Name of the workload',
        )
    parser.add_argument(
        '--env', '-e',
        required=True,
        help='Name of the environment',
    )
    parser.add_argument(
        '--workspace', '-w',
        help='Workspace root (default: $DEPLOY_WORKSPACE or the current directory)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _print_error(e: Exception) -> None:
    print(f"Error: {e}", file=sys.stderr)
    action = getattr(e, 'recommended_action', '')
    if action:
        print(f"  {action}", file=sys.stderr)


def build_workload_deployer(identity: WorkloadIdentity, config: DeployConfig) -> WorkloadDeployer:
    """Wire the boto3 adapters for one deploy."""
    region = config.env.region
    uploader = S3Uploader.for_region(region)
    cfn = CloudFormationClient.for_region(region, uploader)
    env_describer = EnvironmentDescriber.for_region(region, cfn, identity.app, identity.env)
    manifest, raw = load_manifest(config.workspace, identity.name)
    return WorkloadDeployer(
        identity=identity,
        manifest=manifest,
        raw_manifest=raw,
        config=config,
        uploader=uploader,
        stack_deployer=cfn,
        endpoint_getter=env_describer,
        env_version_getter=StackVersionGetter(cfn, env_stack_name(identity.app, identity.env)),
        app_version_getter=StackVersionGetter(cfn, app_stack_name(identity.app)),
        alb_cert_validator=ACMCertValidator.for_region(region),
        cdn_cert_validator=ACMCertValidator.for_region(CDN_CERT_REGION),
        force_updaters={
            PLATFORM_ECS: ECSClient.for_region(region, cfn),
            PLATFORM_APP_RUNNER: AppRunnerClient.for_region(region, cfn),
        },
        image_builder=DockerImageBuilder.for_region(region),
        cidr_getter=env_describer,
        topic_lister=env_describer,
        template_getter=cfn,
        version=get_version(),
    )


def _load(args) -> tuple[WorkloadIdentity, WorkloadDeployer]:
    config = load_deploy_config(args.env, args.workspace)
    identity = WorkloadIdentity(app=config.app.name, env=args.env, name=args.name)
    return identity, build_workload_deployer(identity, config)


# -----------------------------------------------------------------------------
# svc verbs
# -----------------------------------------------------------------------------

def svc_deploy_main(argv: list) -> int:
    """Handle 'svc deploy' verb."""
    parser = _common_parser('svc', 'deploy', 'Deploy a workload to an environment')
    parser.add_argument('--force', action='store_true',
                        help='Force a new deployment even if the stack has no changes')
    parser.add_argument('--disable-rollback', action='store_true',
                        help='Keep the stack in its failed state instead of rolling back')
    parser.add_argument('--detach', action='store_true',
                        help='Do not wait for the stack to finish deploying')
    parser.add_argument('--tag', default='', help='Image tag for the main container')
    parser.add_argument('--resource-tags', default='', help='Additional stack tags (k1=v1,k2=v2)')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    options = DeployOptions(
        force_new_update=args.force,
        disable_rollback=args.disable_rollback,
        detach=args.detach,
    )
    try:
        tags = parse_tags(args.resource_tags)
        identity, deployer = _load(args)
        logger.info(f"Deploying {identity}")
        result = deployer.deploy(options, image_tag=args.tag, tags=tags)
    except HANDLED_ERRORS as e:
        _print_error(e)
        if args.json_output:
            print(json.dumps({'verb': 'deploy', 'success': False, 'error': str(e)}, indent=2))
        return 1

    if args.json_output:
        print(json.dumps({
            'verb': 'deploy',
            'success': result.success,
            'message': result.message,
            'duration_seconds': round(result.duration, 2),
            'recommended_actions': result.recommended_actions,
        }, indent=2))
        return 0

    logger.info(result.message)
    if result.recommended_actions:
        print("\nRecommended follow-up actions:")
        for action in result.recommended_actions:
            print(f"  - {action}")
    return 0


def svc_package_main(argv: list) -> int:
    """Handle 'svc package' verb."""
    parser = _common_parser('svc', 'package', 'Render the stack template of a workload')
    parser.add_argument('--diff', action='store_true',
                        help='Show the difference against the deployed template')
    parser.add_argument('--upload-assets', action='store_true',
                        help='Build images and upload artifacts referenced by the template')
    parser.add_argument('--tag', default='', help='Image tag for the main container')
    parser.add_argument('--output-dir', type=Path,
                        help='Write the template and parameters here instead of stdout')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        identity, deployer = _load(args)
        output, template = deployer.package(upload=args.upload_assets, image_tag=args.tag)
        if args.diff:
            diff_text = deployer.diff(template)
            print(diff_text or "No changes.")
            return 0
    except HANDLED_ERRORS as e:
        _print_error(e)
        return 1

    if args.output_dir:
        args.output_dir.mkdir(parents=True, exist_ok=True)
        (args.output_dir / f'{identity.name}-{identity.env}.stack.yml').write_text(template)
        (args.output_dir / f'{identity.name}-{identity.env}.params.json').write_text(
            json.dumps({'Parameters': output.conf.parameters(), 'Tags': output.conf.tags()}, indent=2)
        )
        logger.info(f"Wrote stack template and parameters to {args.output_dir}")
        return 0
    print(template, end='')
    return 0


def svc_validate_main(argv: list) -> int:
    """Handle 'svc validate' verb."""
    parser = _common_parser('svc', 'validate', 'Check a workload against its app and environment')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        identity, deployer = _load(args)
        deployer.validate()
    except HANDLED_ERRORS as e:
        _print_error(e)
        if args.json_output:
            print(json.dumps({'verb': 'validate', 'valid': False, 'error': str(e)}, indent=2))
        return 1

    if args.json_output:
        print(json.dumps({'verb': 'validate', 'valid': True}, indent=2))
    else:
        logger.info(f"{identity.name} is compatible with environment {identity.env}")
    return 0


# -----------------------------------------------------------------------------
# env verbs
# -----------------------------------------------------------------------------

def env_validate_main(argv: list) -> int:
    """Handle 'env validate' verb."""
    parser = _common_parser('env', 'validate', 'Check environment CDN settings against its services',
                            workload=False)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    start = time.time()
    try:
        config = load_deploy_config(args.env, args.workspace)
        region = config.env.region
        cfn = CloudFormationClient.for_region(region)
        describer = EnvironmentDescriber.for_region(region, cfn, config.app.name, args.env)
        warning = validate_env(config.app.name, config.env, describer, cfn,
                               ELBv2Client.for_region(region))
    except HANDLED_ERRORS as e:
        _print_error(e)
        if args.json_output:
            print(json.dumps({'verb': 'validate', 'valid': False, 'error': str(e)}, indent=2))
        return 1

    if args.json_output:
        print(json.dumps({
            'verb': 'validate',
            'valid': True,
            'warning': warning,
            'duration_seconds': round(time.time() - start, 2),
        }, indent=2))
        return 0
    if warning:
        print(warning, file=sys.stderr)
    logger.info(f"Environment {args.env} passed validation")
    return 0


SVC_VERBS = {
    'deploy': (svc_deploy_main, 'Deploy a workload to an environment'),
    'package': (svc_package_main, 'Render the stack template, optionally diffed against the deployed one'),
    'validate': (svc_validate_main, 'Check a workload against its app and environment'),
}

ENV_VERBS = {
    'validate': (env_validate_main, 'Check environment CDN settings against its services'),
}


def dispatch_verb(noun: str, verbs: dict, argv: list) -> int:
    """Dispatch a noun's verb to its handler.

    Args:
        noun: The noun command (e.g., "svc")
        verbs: Verb name to (handler, description)
        argv: Arguments after the noun

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print(f"Usage: deploy-driver {noun} <action> [options]")
        print()
        print("Actions:")
        for verb, (_, desc) in verbs.items():
            print(f"  {verb:<10} {desc}")
        print()
        print(f"Run 'deploy-driver {noun} <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    if action not in verbs:
        print(f"Error: Unknown {noun} action '{action}'")
        print(f"Available actions: {', '.join(verbs)}")
        return 1
    handler, _ = verbs[action]
    rc: int = handler(argv[1:])
    return rc
