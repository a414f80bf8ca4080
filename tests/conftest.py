"""Shared pytest fixtures for deploy-driver tests."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import WorkloadIdentity  # noqa: E402
from config import AppCapabilities, EnvironmentCapabilities  # noqa: E402
from upload.base import object_url  # noqa: E402


@pytest.fixture
def identity():
    """Workload 'api' in env 'test' of app 'shop'."""
    return WorkloadIdentity(app='shop', env='test', name='api')


@pytest.fixture
def app_caps():
    """App without a domain."""
    return AppCapabilities(name='shop', version='v1.2.0')


@pytest.fixture
def env_caps():
    """Env without imported certificates or CDN."""
    return EnvironmentCapabilities(name='test', region='us-west-2', account_id='123456789012')


@pytest.fixture
def uploader():
    """Uploader mock that records calls and returns a virtual-hosted URL."""
    mock = MagicMock()
    mock.upload.side_effect = lambda bucket, key, data: object_url(bucket, key, 'us-west-2')
    return mock


@pytest.fixture
def version_getter():
    """Version getter mock returning a current app template version."""
    mock = MagicMock()
    mock.version.return_value = 'v1.2.0'
    return mock


@pytest.fixture
def workspace(tmp_path):
    """Create a temporary workspace.

    Creates a minimal workspace with:
    - app.yml
    - environments/test.yml, environments/prod.yml
    - api/manifest.yml (Load Balanced Web Service)
    - api/api.env
    - templates/custom-resources/*.js
    """
    (tmp_path / 'app.yml').write_text("""
name: shop
version: v1.2.0
artifact_bucket: shop-artifacts
repository_urls:
  api: 123456789012.dkr.ecr.us-west-2.amazonaws.com/shop/api
""")

    (tmp_path / 'environments').mkdir()
    (tmp_path / 'environments' / 'test.yml').write_text("""
region: us-west-2
account_id: "123456789012"
""")
    (tmp_path / 'environments' / 'prod.yml').write_text("""
region: us-east-1
account_id: "123456789012"
http:
  public:
    certificates:
      - arn:aws:acm:us-east-1:123456789012:certificate/abc
    ingress:
      restrict_to:
        cdn: true
cdn:
  certificate: arn:aws:acm:us-east-1:123456789012:certificate/cdn
  terminate_tls: true
""")

    (tmp_path / 'api').mkdir()
    (tmp_path / 'api' / 'manifest.yml').write_text("""
name: api
type: Load Balanced Web Service
image:
  location: public.ecr.aws/nginx/nginx:latest
env_file: api/api.env
http:
  path: /
""")
    (tmp_path / 'api' / 'api.env').write_text("LOG_LEVEL=info\n")

    cr_dir = tmp_path / 'templates' / 'custom-resources'
    cr_dir.mkdir(parents=True)
    for source in ['alb-rule-priority-generator.js', 'backlog-per-task-calculator.js',
                   'custom-domain.js', 'custom-domain-app-runner.js',
                   'desired-count-delegation.js', 'dns-cert-validator.js',
                   'dns-delegation.js', 'env-controller.js', 'nlb-cert-validator.js',
                   'nlb-custom-domain.js']:
        (cr_dir / source).write_text(f"// {source}\nexports.handler = async () => {{}};\n")

    return tmp_path
