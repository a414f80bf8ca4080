"""Common utilities and types for workload deployment."""

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkloadIdentity:
    """Composite key for one workload in one environment of an application."""
    app: str
    env: str
    name: str

    @property
    def stack_name(self) -> str:
        """Name of the CloudFormation stack holding the workload."""
        return f'{self.app}-{self.env}-{self.name}'

    def __str__(self) -> str:
        return f'{self.app}/{self.env}/{self.name}'


@dataclass
class ActionResult:
    """Result returned by a deploy operation."""
    success: bool
    message: str = ''
    duration: float = 0.0
    recommended_actions: list[str] = field(default_factory=list)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    stdin: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=stdin,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def git_short_commit(cwd: Optional[Path] = None) -> str:
    """Return the short commit id of the workspace, or '' outside a git repo."""
    rc, out, _ = run_command(['git', 'rev-parse', '--short', 'HEAD'], cwd=cwd, timeout=10)
    if rc != 0:
        return ''
    return out.strip()


def get_version() -> str:
    """Driver version from git tags, 'dev' when untagged."""
    rc, out, _ = run_command(['git', 'describe', '--tags', '--abbrev=0'],
                             cwd=Path(__file__).parent, timeout=10)
    return out.strip() if rc == 0 and out.strip() else 'dev'


def partition_for_region(region: str) -> str:
    """Return the AWS partition id that owns region."""
    if region.startswith('cn-'):
        return 'aws-cn'
    if region.startswith('us-gov-'):
        return 'aws-us-gov'
    if region.startswith('us-iso-'):
        return 'aws-iso'
    if region.startswith('us-isob-'):
        return 'aws-iso-b'
    return 'aws'


def oxford_join(words: list[str], conjunction: str = 'and') -> str:
    """Join words as an English series: 'a', 'a and b', 'a, b, and c'."""
    if not words:
        return ''
    if len(words) == 1:
        return words[0]
    if len(words) == 2:
        return f'{words[0]} {conjunction} {words[1]}'
    return f"{', '.join(words[:-1])}, {conjunction} {words[-1]}"


def plural(count: int, singular: str, plural_form: str) -> str:
    """Pick singular or plural form for count."""
    return singular if count == 1 else plural_form
