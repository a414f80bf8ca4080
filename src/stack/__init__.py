"""Stack configuration: runtime config assembly and per-type builders."""

from stack.builders import BuildContext, StackConfigOutput, build_stack_configuration
from stack.config import StackConfiguration
from stack.runtime import StackConfigError, StackRuntimeConfig, build_runtime_config

__all__ = [
    'BuildContext',
    'StackConfigError',
    'StackConfigOutput',
    'StackConfiguration',
    'StackRuntimeConfig',
    'build_runtime_config',
    'build_stack_configuration',
]
