"""Structural diff between a deployed and a freshly rendered template.

Both sides are parsed as YAML with CloudFormation tags preserved. Mapping
keys are compared by name, sequences by longest common subsequence. The
output has one line per changed node, indented four spaces per level:

    ~ Resources:
        ~ Service:
            ~ Properties:
                ~ DesiredCount: 1 -> 2
        + Queue:
            + Type: AWS::SQS::Queue

``+`` is an addition, ``-`` a removal and ``~`` a modification.
"""

import json
import logging
from typing import Any, Optional, Protocol, runtime_checkable

import cfn_yaml
from cfn_yaml import TaggedValue

logger = logging.getLogger(__name__)

INDENT = '    '

# Metadata written by the deploy driver itself, not part of the infrastructure
IGNORED_PATHS = [('Metadata', 'Manifest')]


class TemplateDiffError(Exception):
    """A template could not be parsed or fetched."""


@runtime_checkable
class TemplateGetter(Protocol):
    """Returns the deployed template body, '' when the stack does not exist."""

    def template(self, stack_name: str) -> str:
        ...


def _parse(text: str, side: str) -> Any:
    if not text or not text.strip():
        return {}
    try:
        doc = cfn_yaml.load(text)
    except Exception as e:
        raise TemplateDiffError(f"unmarshal {side} template: {e}") from e
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise TemplateDiffError(f"{side} template is not a mapping")
    for path in IGNORED_PATHS:
        _drop(doc, path)
    return doc


def _drop(doc: dict, path: tuple[str, ...]) -> None:
    node = doc
    for key in path[:-1]:
        node = node.get(key)
        if not isinstance(node, dict):
            return
    node.pop(path[-1], None)
    if len(path) > 1 and not node:
        _drop(doc, path[:-1])


def _format_scalar(value: Any) -> str:
    if isinstance(value, TaggedValue):
        return f'{value.tag} {_format_scalar(value.value)}'
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, str):
        return json.dumps(value) if '\n' in value or not value else value
    return str(value)


def _container(value: Any) -> Optional[tuple[str, Any]]:
    """(tag, dict-or-list) for container nodes, None for scalars."""
    if isinstance(value, TaggedValue) and isinstance(value.value, (dict, list)):
        return value.tag, value.value
    if isinstance(value, (dict, list)):
        return '', value
    return None


def _line(marker: str, depth: int, key: Any, text: str = '') -> str:
    label = '-' if key is None else f'{key}:'
    line = f'{INDENT * depth}{marker} {label}'
    return f'{line} {text}' if text else line


def _write_whole(lines: list[str], marker: str, depth: int, key: Any, value: Any) -> None:
    node = _container(value)
    if node is None:
        lines.append(_line(marker, depth, key, _format_scalar(value)))
        return
    tag, container = node
    if not container:
        empty = '{}' if isinstance(container, dict) else '[]'
        lines.append(_line(marker, depth, key, f'{tag} {empty}'.strip()))
        return
    lines.append(_line(marker, depth, key, tag))
    if isinstance(container, dict):
        for k, v in container.items():
            _write_whole(lines, marker, depth + 1, k, v)
    else:
        for item in container:
            _write_whole(lines, marker, depth + 1, None, item)


def _write_diff(lines: list[str], depth: int, key: Any, old: Any, new: Any) -> None:
    if old == new:
        return
    old_node, new_node = _container(old), _container(new)
    if old_node is None and new_node is None:
        lines.append(_line('~', depth, key, f'{_format_scalar(old)} -> {_format_scalar(new)}'))
        return
    if (old_node is not None and new_node is not None and old_node[0] == new_node[0]
            and type(old_node[1]) is type(new_node[1])):
        lines.append(_line('~', depth, key, new_node[0]))
        if isinstance(new_node[1], dict):
            _diff_mapping(lines, depth + 1, old_node[1], new_node[1])
        else:
            _diff_sequence(lines, depth + 1, old_node[1], new_node[1])
        return
    _write_whole(lines, '-', depth, key, old)
    _write_whole(lines, '+', depth, key, new)


def _diff_mapping(lines: list[str], depth: int, old: dict, new: dict) -> None:
    for key, value in new.items():
        if key in old:
            _write_diff(lines, depth, key, old[key], value)
        else:
            _write_whole(lines, '+', depth, key, value)
    for key, value in old.items():
        if key not in new:
            _write_whole(lines, '-', depth, key, value)


def lcs_pairs(old: list, new: list) -> list[tuple[int, int]]:
    """Index pairs of a longest common subsequence of old and new."""
    n, m = len(old), len(new)
    table = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(n - 1, -1, -1):
        for j in range(m - 1, -1, -1):
            if old[i] == new[j]:
                table[i][j] = table[i + 1][j + 1] + 1
            else:
                table[i][j] = max(table[i + 1][j], table[i][j + 1])
    pairs = []
    i = j = 0
    while i < n and j < m:
        if old[i] == new[j]:
            pairs.append((i, j))
            i += 1
            j += 1
        elif table[i + 1][j] >= table[i][j + 1]:
            i += 1
        else:
            j += 1
    return pairs


def _diff_sequence(lines: list[str], depth: int, old: list, new: list) -> None:
    i = j = 0
    for mi, mj in lcs_pairs(old, new) + [(len(old), len(new))]:
        removed, added = old[i:mi], new[j:mj]
        # Items replaced in place are reported as modifications when both are containers
        paired = min(len(removed), len(added))
        for a, b in zip(removed[:paired], added[:paired]):
            if _container(a) is not None and _container(b) is not None:
                _write_diff(lines, depth, None, a, b)
            else:
                _write_whole(lines, '-', depth, None, a)
                _write_whole(lines, '+', depth, None, b)
        for a in removed[paired:]:
            _write_whole(lines, '-', depth, None, a)
        for b in added[paired:]:
            _write_whole(lines, '+', depth, None, b)
        i, j = mi + 1, mj + 1


def diff(from_text: str, to_text: str) -> str:
    """Line-oriented diff from the deployed template to the new one.

    An empty ``from_text`` means nothing is deployed, so every node of
    ``to_text`` is an addition. Identical templates produce ''.

    Raises:
        TemplateDiffError: If either template is not a YAML mapping
    """
    old = _parse(from_text, 'current')
    new = _parse(to_text, 'new')
    lines: list[str] = []
    _diff_mapping(lines, 0, old, new)
    return '\n'.join(lines) + '\n' if lines else ''


def deploy_diff(getter: TemplateGetter, stack_name: str, template: str) -> str:
    """Diff a rendered template against the deployed stack.

    Raises:
        TemplateDiffError: If the deployed template cannot be fetched or parsed
    """
    try:
        deployed = getter.template(stack_name)
    except Exception as e:
        raise TemplateDiffError(f'retrieve the deployed template for "{stack_name}": {e}') from e
    if not deployed:
        logger.info(f"Stack {stack_name} is not deployed yet; the whole template is new")
    return diff(deployed, template)
