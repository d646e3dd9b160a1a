"""Route 53 record reconciliation for the custom domain."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from eb_converge.config.specs import DNS_CNAME_TTL
from eb_converge.reconcilers.base import Outcome, ReconcileAction, ReconcileResult
from eb_converge.reconcilers.comparators import compare_dns_record, normalize_dns_name
from eb_converge.reconcilers.state import DnsRecord, RecordType
from eb_converge.utils.errors import DependencyError, ErrorContext, error_handler
from eb_converge.utils.logging import LogContext, get_logger

logger = get_logger(__name__)

HOSTED_ZONE_PREFIX = '/hostedzone/'


class DnsRecordStatus(Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    NO_ZONE_FOUND = "no_zone_found"


@dataclass
class DnsRecordResult:
    """What happened to the domain's record."""
    domain: str
    status: DnsRecordStatus
    record_type: Optional[RecordType] = None
    target: Optional[str] = None
    hosted_zone_id: Optional[str] = None
    previous_target: Optional[str] = None

    def to_reconcile_result(self) -> ReconcileResult:
        if self.status is DnsRecordStatus.CREATED:
            action, outcome = ReconcileAction.CREATE, Outcome.absent()
        elif self.status is DnsRecordStatus.UPDATED:
            action, outcome = ReconcileAction.UPDATE, Outcome.differs({'target'})
        else:
            action, outcome = ReconcileAction.SKIP, Outcome.matches()

        warning = None
        if self.status is DnsRecordStatus.NO_ZONE_FOUND:
            warning = f"No Route 53 hosted zone found for {self.domain}; configure DNS manually"

        outputs = {'status': self.status.value}
        if self.hosted_zone_id:
            outputs['hosted_zone_id'] = self.hosted_zone_id
        if self.target:
            outputs['target'] = self.target
        return ReconcileResult(
            resource_type=DnsRecordReconciler.resource_type,
            resource_id=self.domain,
            action=action,
            outcome=outcome,
            warning=warning,
            outputs=outputs,
        )


@dataclass
class ManualDnsInstructions:
    """Record an operator must create at a DNS provider outside Route 53."""
    domain: str
    record_type: str
    name: str
    target: str
    ttl: int = DNS_CNAME_TTL
    notes: List[str] = field(default_factory=list)


def root_domain(domain: str) -> str:
    """Last two labels of ``domain``."""
    labels = normalize_dns_name(domain).split('.')
    return '.'.join(labels[-2:])


def is_apex(domain: str) -> bool:
    return normalize_dns_name(domain) == root_domain(domain)


def manual_dns_instructions(domain: str, target_dns: str) -> ManualDnsInstructions:
    """Guidance for a domain whose zone is not hosted in Route 53."""
    domain = normalize_dns_name(domain)
    target = normalize_dns_name(target_dns)
    if is_apex(domain):
        return ManualDnsInstructions(
            domain=domain,
            record_type='ALIAS',
            name='@',
            target=target,
            notes=[
                'Use an ALIAS (or ANAME) record if your provider supports it',
                'Cloudflare users can create a CNAME and rely on CNAME flattening',
                'Avoid A records to the load balancer IPs; they change',
            ],
        )
    return ManualDnsInstructions(
        domain=domain,
        record_type='CNAME',
        name=domain.split('.')[0],
        target=target,
        notes=['CNAME records are supported by all DNS providers'],
    )


class DnsRecordReconciler:
    """Points the custom domain at the environment's load balancer.

    The hosted zone is the exact domain, else its two-label parent. The
    apex gets an A ALIAS record and subdomains a CNAME. Writes are a single
    UPSERT. A missing zone is reported, not raised.
    """

    resource_type = "route53_record"

    def __init__(self, clients):
        self.route53_client = clients.get_client('route53')

    def reconcile_domain(
        self,
        domain: str,
        target_dns: str,
        target_hosted_zone_id: Optional[str] = None,
    ) -> DnsRecordResult:
        """Create or update the domain's record.

        Args:
            domain: Custom domain name
            target_dns: Load balancer DNS name
            target_hosted_zone_id: Load balancer canonical hosted zone (needed for the apex)

        Returns:
            DnsRecordResult

        Raises:
            DependencyError: If an apex record is needed and no canonical zone was given
            TransientAPIError: If a Route 53 call fails
        """
        domain = normalize_dns_name(domain)
        with LogContext(logger, resource_id=domain, resource_type=self.resource_type):
            try:
                return self._reconcile(domain, target_dns, target_hosted_zone_id)
            except ClientError as e:
                raise error_handler.handle_exception(
                    e, ErrorContext(resource_id=domain, resource_type=self.resource_type, operation='upsert')
                ) from e

    def _reconcile(self, domain: str, target_dns: str, target_hosted_zone_id: Optional[str]) -> DnsRecordResult:
        zone_id = self.find_hosted_zone(domain)
        if zone_id is None:
            logger.warning(f"No Route 53 hosted zone found for domain: {domain}")
            return DnsRecordResult(domain=domain, status=DnsRecordStatus.NO_ZONE_FOUND)
        logger.info(f"Found hosted zone: {zone_id}")

        desired = self.desired_record(domain, target_dns, target_hosted_zone_id)
        observed = self.get_record(zone_id, domain, desired.type)
        outcome = compare_dns_record(desired, observed)

        result = DnsRecordResult(
            domain=domain,
            status=DnsRecordStatus.SKIPPED,
            record_type=desired.type,
            target=normalize_dns_name(desired.target),
            hosted_zone_id=zone_id,
        )
        if outcome.is_match:
            logger.info(f"DNS record for {domain} already points to {result.target}, skipping")
            return result

        if outcome.is_absent:
            logger.info(f"Creating {desired.type.name} record: {domain} -> {result.target}")
            result.status = DnsRecordStatus.CREATED
        else:
            result.previous_target = normalize_dns_name(observed.target)
            logger.warning(
                f"DNS record points to {result.previous_target}, updating to {result.target}"
            )
            result.status = DnsRecordStatus.UPDATED

        response = self.route53_client.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={
                'Comment': f"eb-converge record for {domain}",
                'Changes': [desired.to_change('UPSERT')],
            },
        )
        logger.info(f"Change submitted: {response.get('ChangeInfo', {}).get('Id')}")
        return result

    def desired_record(self, domain: str, target_dns: str, target_hosted_zone_id: Optional[str]) -> DnsRecord:
        if is_apex(domain):
            if not target_hosted_zone_id:
                raise DependencyError(
                    f"An ALIAS record for {domain} needs the load balancer's canonical hosted zone",
                    context=ErrorContext(resource_id=domain, resource_type=self.resource_type),
                )
            return DnsRecord(
                name=domain,
                type=RecordType.ALIAS,
                target=target_dns,
                alias_hosted_zone_id=target_hosted_zone_id,
            )
        return DnsRecord(name=domain, type=RecordType.CNAME, target=target_dns, ttl=DNS_CNAME_TTL)

    def find_hosted_zone(self, domain: str) -> Optional[str]:
        """Public hosted zone id for ``domain`` or its two-label parent, without the /hostedzone/ prefix."""
        zones = self._public_zones()
        for candidate in (normalize_dns_name(domain), root_domain(domain)):
            if candidate in zones:
                return zones[candidate]
        return None

    def get_record(self, zone_id: str, domain: str, record_type: RecordType) -> Optional[DnsRecord]:
        response = self.route53_client.list_resource_record_sets(
            HostedZoneId=zone_id,
            StartRecordName=domain,
            StartRecordType=record_type.value,
            MaxItems='1',
        )
        for record_set in response.get('ResourceRecordSets', []):
            if (
                normalize_dns_name(record_set['Name']) == normalize_dns_name(domain)
                and record_set['Type'] == record_type.value
            ):
                return DnsRecord.from_api(record_set)
        return None

    def _public_zones(self) -> Dict[str, str]:
        zones: Dict[str, str] = {}
        paginator = self.route53_client.get_paginator('list_hosted_zones')
        for page in paginator.paginate():
            for zone in page.get('HostedZones', []):
                config: Dict[str, Any] = zone.get('Config') or {}
                if config.get('PrivateZone'):
                    continue
                name = normalize_dns_name(zone['Name'])
                zones.setdefault(name, zone['Id'].replace(HOSTED_ZONE_PREFIX, ''))
        return zones
