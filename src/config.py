"""Application and environment configuration.

Configuration is loaded from YAML files in the workspace:
- app.yml: Application settings (domain, version, artifact bucket)
- environments/{env}.yml: Environment manifest (certificates, CDN, region)
- {svc}/manifest.yml: Workload manifests (see manifest.py)
- {svc}/addons/*.yml: Optional addon templates (see upload/addons.py)

Workspace resolution order:
1. Explicit path (--workspace)
2. DEPLOY_WORKSPACE environment variable
3. Current working directory
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

# Region that hosts CloudFront certificates
CDN_CERT_REGION = 'us-east-1'


class ConfigError(Exception):
    """Configuration error."""


def get_workspace_dir(path: Optional[str] = None) -> Path:
    """Resolve the workspace directory."""
    if path:
        return Path(path)
    env_path = os.environ.get('DEPLOY_WORKSPACE')
    if env_path:
        return Path(env_path)
    return Path.cwd()


def _parse_yaml(path: Path) -> dict:
    """Parse YAML file and return dict."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return data


@dataclass
class AppCapabilities:
    """Read-only snapshot of application settings.

    Attributes:
        name: Application name
        domain: Custom domain associated with the app ('' when none)
        version: Template version of the application stack
        permissions_boundary: IAM permissions boundary policy name
        hosted_zone_id: Route 53 hosted zone of the domain
    """
    name: str
    domain: str = ''
    version: str = ''
    permissions_boundary: str = ''
    hosted_zone_id: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'AppCapabilities':
        if 'name' not in data:
            raise ConfigError("app config missing required field: name")
        return cls(
            name=data['name'],
            domain=data.get('domain', '') or '',
            version=str(data.get('version', '') or ''),
            permissions_boundary=data.get('permissions_boundary', '') or '',
            hosted_zone_id=data.get('hosted_zone_id', '') or '',
        )


@dataclass
class EnvironmentCapabilities:
    """Read-only snapshot of an environment's routing capabilities.

    Derived from the environment manifest. Certificates imported on the
    public ALB and on the CDN are validated independently.
    """
    name: str
    region: str = ''
    account_id: str = ''
    public_alb_certs: list[str] = field(default_factory=list)
    private_alb_certs: list[str] = field(default_factory=list)
    cdn_enabled: bool = False
    cdn_cert: str = ''
    cdn_terminates_tls: bool = False
    alb_ingress_restricted_to_cdn: bool = False

    @property
    def has_imported_public_certs(self) -> bool:
        return bool(self.public_alb_certs)

    @property
    def has_imported_certs(self) -> bool:
        """True when any public ALB or CDN certificate is imported."""
        return bool(self.public_alb_certs) or bool(self.cdn_cert)

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'EnvironmentCapabilities':
        http = data.get('http') or {}
        public = http.get('public') or {}
        private = http.get('private') or {}
        restrict_to = (public.get('ingress') or {}).get('restrict_to') or {}

        cdn = data.get('cdn')
        cdn_enabled = False
        cdn_cert = ''
        cdn_tls = False
        if isinstance(cdn, bool):
            cdn_enabled = cdn
        elif isinstance(cdn, dict):
            cdn_enabled = True
            cdn_cert = cdn.get('certificate', '') or ''
            cdn_tls = bool(cdn.get('terminate_tls', False))
        elif cdn is not None:
            raise ConfigError(f"environment {name}: 'cdn' must be a boolean or a mapping")

        return cls(
            name=name,
            region=data.get('region', '') or '',
            account_id=str(data.get('account_id', '') or ''),
            public_alb_certs=list(public.get('certificates') or []),
            private_alb_certs=list(private.get('certificates') or []),
            cdn_enabled=cdn_enabled,
            cdn_cert=cdn_cert,
            cdn_terminates_tls=cdn_tls,
            alb_ingress_restricted_to_cdn=bool(restrict_to.get('cdn', False)),
        )


@dataclass
class AppResources:
    """Regional resources shared by all workloads of an app."""
    artifact_bucket: str = ''
    repository_urls: dict[str, str] = field(default_factory=dict)
    templates_dir: str = 'templates'


@dataclass
class DeployConfig:
    """Everything loaded from the workspace for one deploy invocation."""
    workspace: Path
    app: AppCapabilities
    env: EnvironmentCapabilities
    resources: AppResources


def load_app_config(workspace: Path) -> tuple[AppCapabilities, AppResources]:
    """Load app.yml from the workspace.

    Raises:
        ConfigError: If app.yml is missing or invalid
    """
    app_file = workspace / 'app.yml'
    if not app_file.exists():
        raise ConfigError(f"Application config not found: {app_file}")
    data = _parse_yaml(app_file)
    app = AppCapabilities.from_dict(data)
    resources = AppResources(
        artifact_bucket=data.get('artifact_bucket', '') or '',
        repository_urls=dict(data.get('repository_urls') or {}),
        templates_dir=data.get('templates_dir') or 'templates',
    )
    logger.debug(f"Loaded app config for {app.name} from {app_file}")
    return app, resources


def load_env_config(workspace: Path, env: str) -> EnvironmentCapabilities:
    """Load environments/{env}.yml from the workspace.

    Raises:
        ConfigError: If the environment file is missing or invalid
    """
    env_file = workspace / 'environments' / f'{env}.yml'
    if not env_file.exists():
        available = list_envs(workspace)
        raise ConfigError(
            f"Environment config not found: {env_file}\n"
            f"Available environments: {', '.join(available) or '(none)'}"
        )
    return EnvironmentCapabilities.from_dict(env, _parse_yaml(env_file))


def list_envs(workspace: Path) -> list[str]:
    """List environment names defined in the workspace."""
    env_dir = workspace / 'environments'
    if not env_dir.is_dir():
        return []
    return sorted(p.stem for p in env_dir.glob('*.yml'))


def load_deploy_config(env: str, workspace: Optional[str] = None) -> DeployConfig:
    """Load app and environment configuration for a deploy."""
    ws = get_workspace_dir(workspace)
    app, resources = load_app_config(ws)
    env_caps = load_env_config(ws, env)
    if not resources.artifact_bucket:
        raise ConfigError(f"app {app.name}: 'artifact_bucket' is required to deploy")
    return DeployConfig(workspace=ws, app=app, env=env_caps, resources=resources)


def parse_tags(value: str) -> dict[str, Any]:
    """Parse 'k1=v1,k2=v2' resource tags."""
    tags: dict[str, Any] = {}
    if not value:
        return tags
    for pair in value.split(','):
        key, sep, val = pair.partition('=')
        if not sep or not key.strip():
            raise ConfigError(f"invalid resource tag {pair!r}: expected key=value")
        tags[key.strip()] = val.strip()
    return tags
