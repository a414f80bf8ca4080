"""YAML loading and dumping for CloudFormation templates.

PyYAML's safe loader rejects CloudFormation short-form intrinsics such as
``!Ref`` or ``!Sub``. The loader here keeps them as ``TaggedValue`` so a
template survives a load/dump cycle and compares structurally.
"""

from dataclasses import dataclass
from typing import Any

import yaml


@dataclass
class TaggedValue:
    """A node carrying a local tag, e.g. ``!GetAtt Service.Arn``."""
    tag: str
    value: Any

    def __str__(self) -> str:
        if isinstance(self.value, (dict, list)):
            return f'{self.tag} {yaml.dump(self.value, Dumper=CfnDumper, default_flow_style=True).strip()}'
        return f'{self.tag} {self.value}'


class CfnLoader(yaml.SafeLoader):
    """Safe loader that accepts local ``!`` tags."""


class CfnDumper(yaml.SafeDumper):
    """Safe dumper that writes TaggedValue back in short form."""


def _construct_tagged(loader: CfnLoader, tag_suffix: str, node: yaml.Node) -> TaggedValue:
    tag = f'!{tag_suffix}'
    if isinstance(node, yaml.ScalarNode):
        return TaggedValue(tag, loader.construct_scalar(node))
    if isinstance(node, yaml.SequenceNode):
        return TaggedValue(tag, loader.construct_sequence(node, deep=True))
    return TaggedValue(tag, loader.construct_mapping(node, deep=True))


def _represent_tagged(dumper: CfnDumper, data: TaggedValue) -> yaml.Node:
    if isinstance(data.value, dict):
        return dumper.represent_mapping(data.tag, data.value)
    if isinstance(data.value, list):
        return dumper.represent_sequence(data.tag, data.value)
    return dumper.represent_scalar(data.tag, str(data.value))


CfnLoader.add_multi_constructor('!', _construct_tagged)
CfnDumper.add_representer(TaggedValue, _represent_tagged)


def load(text: str) -> Any:
    """Parse a template; empty text yields None."""
    return yaml.load(text, Loader=CfnLoader)  # nosec B506 - CfnLoader extends SafeLoader


def dump(data: Any) -> str:
    return yaml.dump(data, Dumper=CfnDumper, default_flow_style=False, sort_keys=False)
