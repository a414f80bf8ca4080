"""Addon template packaging.

Addons are extra CloudFormation templates stored next to the workload
manifest in ``{svc}/addons/*.yml``. The templates are merged into one,
local file references inside known resource properties (Lambda code,
state machine definitions, ...) are uploaded and rewritten to object
locations, and the merged template is uploaded under a content-derived key.
"""

import io
import logging
import os
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

import cfn_yaml
from upload.base import (
    UploadError,
    Uploader,
    addon_asset_key,
    addons_key,
    content_hash,
    parse_s3_url,
    s3_location,
)

logger = logging.getLogger(__name__)

ADDONS_DIR = 'addons'
PARAMETERS_FILE = 'addons.parameters.yml'

# Parameters always passed to the addons stack; addons.parameters.yml may not redefine them
RESERVED_PARAMETERS = ('App', 'Env', 'Name')

# Sections merged across addon templates, in output order
MERGED_SECTIONS = ('Parameters', 'Mappings', 'Conditions', 'Resources', 'Outputs')

# Fixed timestamp so zipped assets hash identically across runs
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class TransformInfo:
    """Where a resource type accepts a local artifact path."""
    property: tuple[str, ...]
    bucket_property: str = ''
    key_property: str = ''
    force_zip: bool = False


TRANSFORMS: dict[str, list[TransformInfo]] = {
    'AWS::ApiGateway::RestApi': [
        TransformInfo(('BodyS3Location',), 'Bucket', 'Key'),
    ],
    'AWS::Lambda::Function': [
        TransformInfo(('Code',), 'S3Bucket', 'S3Key', force_zip=True),
    ],
    'AWS::Lambda::LayerVersion': [
        TransformInfo(('Content',), 'S3Bucket', 'S3Key', force_zip=True),
    ],
    'AWS::AppSync::GraphQLSchema': [
        TransformInfo(('DefinitionS3Location',)),
    ],
    'AWS::AppSync::Resolver': [
        TransformInfo(('RequestMappingTemplateS3Location',)),
        TransformInfo(('ResponseMappingTemplateS3Location',)),
    ],
    'AWS::AppSync::FunctionConfiguration': [
        TransformInfo(('RequestMappingTemplateS3Location',)),
        TransformInfo(('ResponseMappingTemplateS3Location',)),
    ],
    'AWS::ElasticBeanstalk::ApplicationVersion': [
        TransformInfo(('SourceBundle',), 'S3Bucket', 'S3Key'),
    ],
    'AWS::Glue::Job': [
        TransformInfo(('Command', 'ScriptLocation')),
    ],
    'AWS::StepFunctions::StateMachine': [
        TransformInfo(('DefinitionS3Location',), 'Bucket', 'Key'),
    ],
    'AWS::CodeCommit::Repository': [
        TransformInfo(('Code', 'S3'), 'Bucket', 'Key', force_zip=True),
    ],
}


def is_file_path(value: Any) -> bool:
    """True for a string that points at a local file rather than a URL."""
    if not isinstance(value, str) or not value:
        return False
    return not value.startswith(('s3://', 'http://', 'https://'))


def zip_directory(root: Path) -> bytes:
    """Zip a file or directory with stable ordering and timestamps."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w', zipfile.ZIP_DEFLATED) as zf:
        if root.is_file():
            files = [(root, root.name)]
        else:
            files = []
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames.sort()
                for name in sorted(filenames):
                    path = Path(dirpath) / name
                    files.append((path, path.relative_to(root).as_posix()))
        for path, arcname in files:
            info = zipfile.ZipInfo(arcname, date_time=ZIP_DATE_TIME)
            info.external_attr = 0o644 << 16
            zf.writestr(info, path.read_bytes(), compress_type=zipfile.ZIP_DEFLATED)
    return buf.getvalue()


@dataclass
class Addons:
    """Merged addon templates of a workload."""
    workload: str
    directory: Path
    template: dict = field(default_factory=dict)
    parameters: dict = field(default_factory=dict)

    @classmethod
    def parse(cls, workspace: Path, workload: str) -> Optional['Addons']:
        """Read and merge ``{workspace}/{workload}/addons/*.yml``.

        Returns:
            Addons, or None when the workload has no addon templates

        Raises:
            UploadError: On invalid YAML or conflicting definitions
        """
        directory = workspace / workload / ADDONS_DIR
        if not directory.is_dir():
            return None
        files = sorted(p for p in directory.iterdir()
                       if p.suffix in ('.yml', '.yaml') and p.name != PARAMETERS_FILE)
        if not files:
            return None

        merged: dict[str, Any] = {}
        for path in files:
            try:
                doc = cfn_yaml.load(path.read_text(encoding='utf-8')) or {}
            except yaml.YAMLError as e:
                raise UploadError(f"parse addon template {path.name}: {e}") from e
            if not isinstance(doc, dict):
                raise UploadError(f"addon template {path.name} must be a mapping")
            _merge_template(merged, doc, path.name)

        params: dict = {}
        params_file = directory / PARAMETERS_FILE
        if params_file.exists():
            try:
                doc = cfn_yaml.load(params_file.read_text(encoding='utf-8')) or {}
            except yaml.YAMLError as e:
                raise UploadError(f"parse {PARAMETERS_FILE}: {e}") from e
            if isinstance(doc, dict):
                params = doc.get('Parameters') or {}
            if not isinstance(doc, dict) or not isinstance(params, dict):
                raise UploadError(f"{PARAMETERS_FILE} must contain a 'Parameters' mapping")
            reserved = sorted(set(params) & set(RESERVED_PARAMETERS))
            if reserved:
                raise UploadError(
                    f"reserved parameters {', '.join(reserved)} cannot be declared in {PARAMETERS_FILE}"
                )

        logger.debug(f"Merged {len(files)} addon template(s) for {workload}")
        return cls(workload=workload, directory=directory, template=merged, parameters=params)

    def package(self, uploader: Uploader, bucket: str, workspace: Path) -> None:
        """Upload local artifacts and rewrite their properties to object locations."""
        for logical_id, resource in (self.template.get('Resources') or {}).items():
            if not isinstance(resource, dict):
                continue
            for tr in TRANSFORMS.get(resource.get('Type', ''), []):
                props = resource.get('Properties')
                if not isinstance(props, dict):
                    continue
                try:
                    self._transform_property(props, tr, uploader, bucket, workspace)
                except (OSError, UploadError) as e:
                    raise UploadError(
                        f"transform property {'.'.join(tr.property)} for {logical_id}: {e}"
                    ) from e

    def _transform_property(self, props: dict, tr: TransformInfo, uploader: Uploader,
                            bucket: str, workspace: Path) -> None:
        parent = props
        for key in tr.property[:-1]:
            parent = parent.get(key)
            if not isinstance(parent, dict):
                return
        last = tr.property[-1]
        value = parent.get(last)
        if not is_file_path(value):
            return

        asset_path = Path(value)
        if not asset_path.is_absolute():
            asset_path = workspace / asset_path
        if tr.force_zip or asset_path.is_dir():
            data = zip_directory(asset_path)
        else:
            data = asset_path.read_bytes()
        try:
            url = uploader.upload(bucket, addon_asset_key(self.workload, content_hash(data)), data)
        except Exception as e:
            raise UploadError(f"upload {value} to s3 bucket {bucket}: {e}") from e
        obj_bucket, obj_key = parse_s3_url(url)
        logger.info(f"Uploaded {value} to {s3_location(obj_bucket, obj_key)}")

        if not tr.bucket_property and not tr.key_property:
            parent[last] = s3_location(obj_bucket, obj_key)
        else:
            parent[last] = {tr.bucket_property: obj_bucket, tr.key_property: obj_key}

    def render(self) -> str:
        return cfn_yaml.dump(self.template)


def _merge_template(merged: dict, doc: dict, source: str) -> None:
    for section, value in doc.items():
        if section not in MERGED_SECTIONS:
            merged.setdefault(section, value)
            continue
        if not isinstance(value, dict):
            raise UploadError(f"{section} in addon template {source} must be a mapping")
        target = merged.setdefault(section, {})
        for name, body in value.items():
            if name in target and target[name] != body:
                raise UploadError(
                    f'{section} entry "{name}" defined in'
                    f' {source} conflicts with an earlier addon template'
                )
            target[name] = body


def push_addons_template(addons: Optional[Addons], uploader: Uploader, bucket: str,
                         workspace: Path) -> str:
    """Package and upload the addons template.

    Returns:
        URL of the uploaded template, or '' when there are no addons
    """
    if addons is None:
        return ''
    try:
        addons.package(uploader, bucket, workspace)
    except UploadError as e:
        raise UploadError(f"package addons: {e}") from e
    body = addons.render().encode('utf-8')
    try:
        url = uploader.upload(bucket, addons_key(addons.workload, body), body)
    except Exception as e:
        raise UploadError(f"put addons artifact to bucket {bucket}: {e}") from e
    logger.info(f"Uploaded addons template for {addons.workload}")
    return url
