"""Workload manifest loading.

A workload manifest describes one service or job: its image, sidecars,
network exposure (aliases, routing rules, NLB) and dependencies. The set
of workload types is closed; each type is a dataclass built with
``from_dict`` and ``ServiceManifest`` is the union of all of them.

Supported types (``type:`` field):
    Load Balanced Web Service, Backend Service, Request-Driven Web Service,
    Worker Service, Scheduled Job, Static Site
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Workload manifest error."""


# ---------------------------------------------------------------------------
# Shared building blocks
# ---------------------------------------------------------------------------

@dataclass
class BuildArgs:
    """Docker build arguments for a container with a local Dockerfile."""
    dockerfile: str
    context: str = ''
    target: str = ''
    args: dict[str, str] = field(default_factory=dict)
    cache_from: list[str] = field(default_factory=list)

    @classmethod
    def from_value(cls, value: Any) -> 'BuildArgs':
        """Parse ``image.build``, either a Dockerfile path or a mapping."""
        if isinstance(value, str):
            return cls(dockerfile=value, context=str(Path(value).parent))
        if not isinstance(value, dict):
            raise ManifestError("image.build must be a string or a mapping")
        dockerfile = value.get('dockerfile', '')
        context = value.get('context', '')
        if not dockerfile and context:
            dockerfile = str(Path(context) / 'Dockerfile')
        if not dockerfile:
            raise ManifestError("image.build requires 'dockerfile' or 'context'")
        return cls(
            dockerfile=dockerfile,
            context=context or str(Path(dockerfile).parent),
            target=value.get('target', '') or '',
            args={k: str(v) for k, v in (value.get('args') or {}).items()},
            cache_from=list(value.get('cache_from') or []),
        )


@dataclass
class ImageConfig:
    """Container image: built locally or pulled from a registry."""
    build: Optional[BuildArgs] = None
    location: str = ''
    platform: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ImageConfig':
        data = data or {}
        build = data.get('build')
        return cls(
            build=BuildArgs.from_value(build) if build else None,
            location=data.get('location', '') or '',
            platform=data.get('platform', '') or '',
        )


@dataclass
class Sidecar:
    """A sidecar container running next to the main container."""
    name: str
    image: ImageConfig = field(default_factory=ImageConfig)
    env_file: str = ''

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'Sidecar':
        data = data or {}
        image = data.get('image')
        if isinstance(image, str):
            image_config = ImageConfig(location=image)
        else:
            image_config = ImageConfig.from_dict(image)
        return cls(name=name, image=image_config, env_file=data.get('env_file', '') or '')


@dataclass
class LoggingConfig:
    """FireLens log router settings."""
    env_file: str = ''

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['LoggingConfig']:
        if data is None:
            return None
        return cls(env_file=data.get('env_file', '') or '')


# Container name of the FireLens log router sidecar
FIRELENS_CONTAINER_NAME = 'firelens_log_router'


@dataclass
class Alias:
    """One or more custom DNS names, optionally bound to imported hosted zones.

    Accepts ``"a.example.com"``, ``["a.example.com", ...]`` or
    ``[{"name": "a.example.com", "hosted_zone": "Z123"}, ...]``.
    """
    names: list[str] = field(default_factory=list)
    hosted_zones: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> 'Alias':
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(names=[value])
        if not isinstance(value, list):
            raise ManifestError("alias must be a string or a list")
        names: list[str] = []
        zones: dict[str, str] = {}
        for item in value:
            if isinstance(item, str):
                names.append(item)
            elif isinstance(item, dict) and 'name' in item:
                names.append(item['name'])
                if item.get('hosted_zone'):
                    zones[item['name']] = item['hosted_zone']
            else:
                raise ManifestError(f"invalid alias entry: {item!r}")
        return cls(names=names, hosted_zones=zones)

    def is_empty(self) -> bool:
        return not self.names

    def hosted_zone_ids(self) -> list[str]:
        """Distinct hosted zone ids in declaration order."""
        seen: list[str] = []
        for name in self.names:
            zone = self.hosted_zones.get(name)
            if zone and zone not in seen:
                seen.append(zone)
        return seen


@dataclass
class RoutingRule:
    """One ALB listener rule."""
    path: str = ''
    alias: Alias = field(default_factory=Alias)
    redirect_to_https: Optional[bool] = None
    target_container: str = ''
    target_port: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RoutingRule':
        data = data or {}
        return cls(
            path=data.get('path', '') or '',
            alias=Alias.from_value(data.get('alias')),
            redirect_to_https=data.get('redirect_to_https'),
            target_container=data.get('target_container', '') or '',
            target_port=data.get('target_port'),
        )

    def is_empty(self) -> bool:
        return (not self.path and self.alias.is_empty()
                and self.redirect_to_https is None and not self.target_container)


@dataclass
class HTTPConfig:
    """``http`` section: the main rule plus ``additional_rules``."""
    main: RoutingRule = field(default_factory=RoutingRule)
    additional_rules: list[RoutingRule] = field(default_factory=list)
    imported_alb: str = ''
    enabled: bool = True

    @classmethod
    def from_value(cls, value: Any) -> 'HTTPConfig':
        if value is False:
            return cls(enabled=False)
        if value is None:
            return cls()
        if not isinstance(value, dict):
            raise ManifestError("http must be a mapping or false")
        data = value
        return cls(
            main=RoutingRule.from_dict(data),
            additional_rules=[RoutingRule.from_dict(r) for r in data.get('additional_rules') or []],
            imported_alb=data.get('alb', '') or '',
        )

    def rules(self) -> list[tuple[str, RoutingRule]]:
        """Return (field name, rule) pairs for the main and additional rules."""
        if not self.enabled:
            return []
        out = [('http', self.main)]
        for idx, rule in enumerate(self.additional_rules):
            out.append((f'http.additional_rules[{idx}]', rule))
        return out

    def is_empty(self) -> bool:
        return not self.enabled or (self.main.is_empty() and not self.additional_rules)


@dataclass
class NLBConfig:
    """Network load balancer settings."""
    port: str = ''
    alias: Alias = field(default_factory=Alias)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional['NLBConfig']:
        if not data:
            return None
        return cls(port=str(data.get('port', '') or ''), alias=Alias.from_value(data.get('alias')))


@dataclass
class TopicSubscription:
    """Subscription of a worker queue to another service's topic."""
    name: str
    service: str
    queue: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'TopicSubscription':
        if 'name' not in data or 'service' not in data:
            raise ManifestError("subscribe.topics entries require 'name' and 'service'")
        queue = data.get('queue')
        return cls(name=data['name'], service=data['service'], queue=bool(queue))


@dataclass
class FileUpload:
    """Static site asset source, relative to the workspace root."""
    source: str
    destination: str = ''
    recursive: bool = False
    exclude: list[str] = field(default_factory=list)
    reinclude: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'FileUpload':
        if 'source' not in data:
            raise ManifestError("files entries require 'source'")

        def as_list(value):
            if value is None:
                return []
            return [value] if isinstance(value, str) else list(value)

        return cls(
            source=data['source'],
            destination=data.get('destination', '') or '',
            recursive=bool(data.get('recursive', False)),
            exclude=as_list(data.get('exclude')),
            reinclude=as_list(data.get('reinclude')),
        )


# ---------------------------------------------------------------------------
# Workload types
# ---------------------------------------------------------------------------

@dataclass
class _ContainerWorkload:
    """Fields shared by every workload that runs containers."""
    name: str
    image: ImageConfig = field(default_factory=ImageConfig)
    env_file: str = ''
    sidecars: list[Sidecar] = field(default_factory=list)
    logging: Optional[LoggingConfig] = None
    tags: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def _container_fields(name: str, data: dict) -> dict:
        return {
            'name': name,
            'image': ImageConfig.from_dict(data.get('image')),
            'env_file': data.get('env_file', '') or '',
            'sidecars': [Sidecar.from_dict(n, s) for n, s in (data.get('sidecars') or {}).items()],
            'logging': LoggingConfig.from_dict(data.get('logging')),
            'tags': {k: str(v) for k, v in (data.get('tags') or {}).items()},
        }

    def build_args(self) -> dict[str, BuildArgs]:
        """Containers that must be built from a local Dockerfile."""
        out = {}
        if self.image.build is not None:
            out[self.name] = self.image.build
        for sidecar in self.sidecars:
            if sidecar.image.build is not None:
                out[sidecar.name] = sidecar.image.build
        return out

    def env_files(self) -> dict[str, str]:
        """Map container name to env file, including sidecars and the log router."""
        out = {self.name: self.env_file}
        for sidecar in self.sidecars:
            out[sidecar.name] = sidecar.env_file
        if self.logging is not None:
            out[FIRELENS_CONTAINER_NAME] = self.logging.env_file
        return out

    @property
    def platform(self) -> str:
        return self.image.platform


@dataclass
class LoadBalancedWebService(_ContainerWorkload):
    """Public service behind an application (and optionally network) load balancer."""
    http: HTTPConfig = field(default_factory=HTTPConfig)
    nlb: Optional[NLBConfig] = None

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'LoadBalancedWebService':
        return cls(
            **cls._container_fields(name, data),
            http=HTTPConfig.from_value(data.get('http')),
            nlb=NLBConfig.from_dict(data.get('nlb')),
        )


@dataclass
class BackendService(_ContainerWorkload):
    """Service reachable only inside the environment, optionally via an internal ALB."""
    http: HTTPConfig = field(default_factory=lambda: HTTPConfig(enabled=False))

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'BackendService':
        http = data.get('http')
        return cls(
            **cls._container_fields(name, data),
            http=HTTPConfig.from_value(http) if http else HTTPConfig(enabled=False),
        )


@dataclass
class RequestDrivenWebService(_ContainerWorkload):
    """App Runner service; supports a single alias under the root domain."""
    alias: str = ''

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'RequestDrivenWebService':
        http = data.get('http') or {}
        return cls(**cls._container_fields(name, data), alias=http.get('alias', '') or '')

    def env_files(self) -> dict[str, str]:
        # App Runner has no sidecars or log router
        return {self.name: self.env_file} if self.env_file else {}


@dataclass
class WorkerService(_ContainerWorkload):
    """Queue consumer subscribed to other services' topics."""
    subscriptions: list[TopicSubscription] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'WorkerService':
        subscribe = data.get('subscribe') or {}
        return cls(
            **cls._container_fields(name, data),
            subscriptions=[TopicSubscription.from_dict(t) for t in subscribe.get('topics') or []],
        )


@dataclass
class ScheduledJob(_ContainerWorkload):
    """Task triggered on a schedule."""
    schedule: str = ''

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'ScheduledJob':
        on = data.get('on') or {}
        return cls(**cls._container_fields(name, data), schedule=on.get('schedule', '') or '')


@dataclass
class StaticSite:
    """Static assets served from a bucket behind a CDN."""
    name: str
    alias: str = ''
    certificate: str = ''
    files: list[FileUpload] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'StaticSite':
        http = data.get('http') or {}
        return cls(
            name=name,
            alias=http.get('alias', '') or '',
            certificate=http.get('certificate', '') or '',
            files=[FileUpload.from_dict(f) for f in data.get('files') or []],
            tags={k: str(v) for k, v in (data.get('tags') or {}).items()},
        )

    def build_args(self) -> dict[str, BuildArgs]:
        return {}

    def env_files(self) -> dict[str, str]:
        return {}


ServiceManifest = Union[
    LoadBalancedWebService,
    BackendService,
    RequestDrivenWebService,
    WorkerService,
    ScheduledJob,
    StaticSite,
]

MANIFEST_TYPES: dict[str, type] = {
    'Load Balanced Web Service': LoadBalancedWebService,
    'Backend Service': BackendService,
    'Request-Driven Web Service': RequestDrivenWebService,
    'Worker Service': WorkerService,
    'Scheduled Job': ScheduledJob,
    'Static Site': StaticSite,
}


def parse_manifest(data: dict, name: Optional[str] = None) -> ServiceManifest:
    """Build a workload manifest from a parsed YAML document.

    Raises:
        ManifestError: On unknown type or malformed fields
    """
    if not isinstance(data, dict):
        raise ManifestError("manifest must be a mapping")
    wl_name = name or data.get('name')
    if not wl_name:
        raise ManifestError("manifest missing required field: name")
    wl_type = data.get('type')
    cls = MANIFEST_TYPES.get(wl_type or '')
    if cls is None:
        raise ManifestError(
            f"unknown workload type {wl_type!r}. "
            f"Valid types: {', '.join(MANIFEST_TYPES)}"
        )
    manifest: ServiceManifest = cls.from_dict(wl_name, data)
    return manifest


def load_manifest(workspace: Path, name: str) -> tuple[ServiceManifest, str]:
    """Load {workspace}/{name}/manifest.yml.

    Returns:
        (manifest, raw YAML text) tuple

    Raises:
        ManifestError: If the file is missing or invalid
    """
    path = workspace / name / 'manifest.yml'
    if not path.exists():
        raise ManifestError(f"Manifest not found: {path}")
    raw = path.read_text(encoding='utf-8')
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}") from e
    manifest = parse_manifest(data or {}, name=name)
    logger.debug(f"Loaded {type(manifest).__name__} manifest for {name}")
    return manifest, raw
