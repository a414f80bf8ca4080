"""Certificate alias validation against ACM certificates."""

import logging
from typing import Any

from clients.base import new_client
from validation import CertAliasError

logger = logging.getLogger(__name__)


def domain_matches(alias: str, domain: str) -> bool:
    """Whether a certificate domain covers alias.

    A wildcard covers exactly one extra label: ``*.example.com`` covers
    ``a.example.com`` but neither ``example.com`` nor ``a.b.example.com``.
    """
    alias, domain = alias.lower().rstrip('.'), domain.lower().rstrip('.')
    if not domain.startswith('*.'):
        return alias == domain
    label, sep, rest = alias.partition('.')
    return bool(label) and bool(sep) and rest == domain[2:]


class ACMCertValidator:
    """Checks that every alias is covered by at least one of the certificates."""

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def for_region(cls, region: str) -> 'ACMCertValidator':
        return cls(new_client('acm', region))

    def certificate_domains(self, cert_arn: str) -> list[str]:
        cert = self.client.describe_certificate(CertificateArn=cert_arn)['Certificate']
        domains = [cert['DomainName']] if cert.get('DomainName') else []
        domains.extend(d for d in cert.get('SubjectAlternativeNames', []) if d not in domains)
        return domains

    def validate_cert_aliases(self, aliases: list[str], cert_arns: list[str]) -> None:
        """Raise CertAliasError for the first alias no certificate covers."""
        domains: list[str] = []
        for arn in cert_arns:
            try:
                domains.extend(self.certificate_domains(arn))
            except Exception as e:
                raise CertAliasError(f"describe certificate {arn}: {e}") from e
        for alias in aliases:
            if not any(domain_matches(alias, d) for d in domains):
                raise CertAliasError(f"{alias} is not a valid domain against {', '.join(cert_arns)}")
        logger.debug(f"Aliases {', '.join(aliases)} are covered by {len(cert_arns)} certificate(s)")
