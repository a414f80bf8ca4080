"""Elastic Load Balancing listener rule reads."""

from typing import Any

from clients.base import AWSOperationError, new_client

REDIRECT_ACTION = 'redirect'


class ELBv2Client:
    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def for_region(cls, region: str) -> 'ELBv2Client':
        return cls(new_client('elbv2', region))

    def describe_rule(self, rule_arn: str) -> dict:
        resp = self.client.describe_rules(RuleArns=[rule_arn])
        rules = resp.get('Rules') or []
        if not rules:
            raise AWSOperationError("not found")
        return rules[0]

    def rule_redirects(self, rule_arn: str) -> bool:
        """Whether any action of the rule is a redirect."""
        rule = self.describe_rule(rule_arn)
        return any(action.get('Type') == REDIRECT_ACTION for action in rule.get('Actions', []))
