"""Custom resource function bundles.

Each workload type relies on a fixed set of Lambda-backed custom
resources. Their handler sources live in the templates directory under
``custom-resources/``; each is zipped as ``index.js`` and uploaded under a
key derived from the lowercased function name and the zip's hash.
"""

import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from manifest import (
    BackendService,
    LoadBalancedWebService,
    RequestDrivenWebService,
    ScheduledJob,
    ServiceManifest,
    StaticSite,
    WorkerService,
)
from upload.base import UploadError, Uploader, custom_resource_key

logger = logging.getLogger(__name__)

CUSTOM_RESOURCES_DIR = 'custom-resources'
HANDLER_FILE_NAME = 'index.js'

ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)

ENV_CONTROLLER_FN = 'EnvControllerFunction'
DYNAMIC_DESIRED_COUNT_FN = 'DynamicDesiredCountFunction'
BACKLOG_PER_TASK_FN = 'BacklogPerTaskCalculatorFunction'
RULE_PRIORITY_FN = 'RulePriorityFunction'
NLB_CUSTOM_DOMAIN_FN = 'NLBCustomDomainFunction'
NLB_CERT_VALIDATOR_FN = 'NLBCertValidatorFunction'
CUSTOM_DOMAIN_FN = 'CustomDomainFunction'
CERT_VALIDATION_FN = 'CertificateValidationFunction'
DNS_DELEGATION_FN = 'DNSDelegationFunction'

# Handler source per function
SOURCE_FILES = {
    RULE_PRIORITY_FN: 'alb-rule-priority-generator.js',
    BACKLOG_PER_TASK_FN: 'backlog-per-task-calculator.js',
    CUSTOM_DOMAIN_FN: 'custom-domain.js',
    DYNAMIC_DESIRED_COUNT_FN: 'desired-count-delegation.js',
    CERT_VALIDATION_FN: 'dns-cert-validator.js',
    DNS_DELEGATION_FN: 'dns-delegation.js',
    ENV_CONTROLLER_FN: 'env-controller.js',
    NLB_CERT_VALIDATOR_FN: 'nlb-cert-validator.js',
    NLB_CUSTOM_DOMAIN_FN: 'nlb-custom-domain.js',
}

# App Runner custom domains use their own handler
RDWS_CUSTOM_DOMAIN_SOURCE = 'custom-domain-app-runner.js'

LBWS_FUNCTIONS = [DYNAMIC_DESIRED_COUNT_FN, ENV_CONTROLLER_FN, RULE_PRIORITY_FN,
                  NLB_CUSTOM_DOMAIN_FN, NLB_CERT_VALIDATOR_FN]
BACKEND_FUNCTIONS = [DYNAMIC_DESIRED_COUNT_FN, RULE_PRIORITY_FN, ENV_CONTROLLER_FN]
WORKER_FUNCTIONS = [DYNAMIC_DESIRED_COUNT_FN, BACKLOG_PER_TASK_FN, ENV_CONTROLLER_FN]
RDWS_FUNCTIONS = [ENV_CONTROLLER_FN, CUSTOM_DOMAIN_FN]
SCHEDULED_JOB_FUNCTIONS = [ENV_CONTROLLER_FN]
STATIC_SITE_FUNCTIONS: list[str] = []
ENV_FUNCTIONS = [CERT_VALIDATION_FN, CUSTOM_DOMAIN_FN, DNS_DELEGATION_FN]


@dataclass
class CustomResource:
    """A custom resource function and its handler source."""
    function_name: str
    handler: bytes

    def zip(self) -> bytes:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, 'w', zipfile.ZIP_DEFLATED) as zf:
            info = zipfile.ZipInfo(HANDLER_FILE_NAME, date_time=ZIP_DATE_TIME)
            info.external_attr = 0o644 << 16
            zf.writestr(info, self.handler, compress_type=zipfile.ZIP_DEFLATED)
        return buf.getvalue()


def read_custom_resources(templates_dir: Path, functions: list[str],
                          sources: Optional[dict[str, str]] = None) -> list[CustomResource]:
    """Read handler sources for functions.

    Raises:
        UploadError: If a handler source cannot be read
    """
    sources = {**SOURCE_FILES, **(sources or {})}
    crs = []
    for fn in functions:
        path = templates_dir / CUSTOM_RESOURCES_DIR / sources[fn]
        try:
            handler = path.read_bytes()
        except OSError as e:
            raise UploadError(f"read custom resource {fn} at path {path}: {e}") from e
        crs.append(CustomResource(function_name=fn, handler=handler))
    return crs


def upload_custom_resources(uploader: Uploader, bucket: str,
                            crs: list[CustomResource]) -> dict[str, str]:
    """Zip and upload each custom resource.

    Returns:
        Map of function name to object URL
    """
    urls = {}
    for cr in crs:
        data = cr.zip()
        key = custom_resource_key(cr.function_name, data)
        try:
            urls[cr.function_name] = uploader.upload(bucket, key, data)
        except Exception as e:
            raise UploadError(f'upload custom resource "{cr.function_name}": {e}') from e
        logger.debug(f"Uploaded custom resource {cr.function_name} to {key}")
    return urls


def workload_custom_resources(manifest: ServiceManifest, templates_dir: Path) -> list[CustomResource]:
    """Custom resources required by the workload type of manifest."""
    if isinstance(manifest, LoadBalancedWebService):
        return read_custom_resources(templates_dir, LBWS_FUNCTIONS)
    if isinstance(manifest, BackendService):
        return read_custom_resources(templates_dir, BACKEND_FUNCTIONS)
    if isinstance(manifest, WorkerService):
        return read_custom_resources(templates_dir, WORKER_FUNCTIONS)
    if isinstance(manifest, RequestDrivenWebService):
        return read_custom_resources(templates_dir, RDWS_FUNCTIONS,
                                     {CUSTOM_DOMAIN_FN: RDWS_CUSTOM_DOMAIN_SOURCE})
    if isinstance(manifest, ScheduledJob):
        return read_custom_resources(templates_dir, SCHEDULED_JOB_FUNCTIONS)
    if isinstance(manifest, StaticSite):
        return read_custom_resources(templates_dir, STATIC_SITE_FUNCTIONS)
    raise TypeError(f"unknown manifest type {type(manifest).__name__}")
