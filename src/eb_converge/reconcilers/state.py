"""Typed snapshots of observed AWS state.

Each snapshot is built from a structured API response and discarded once
its outcome has been computed. Nothing here is cached between calls.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import unquote

ENV_NAMESPACE = "aws:elasticbeanstalk:application:environment"
LAUNCH_NAMESPACE = "aws:autoscaling:launchconfiguration"
ASG_NAMESPACE = "aws:autoscaling:asg"
EC2_VPC_NAMESPACE = "aws:ec2:vpc"
ENVIRONMENT_NAMESPACE = "aws:elasticbeanstalk:environment"
PROCESS_NAMESPACE = "aws:elasticbeanstalk:environment:process:default"
HTTPS_LISTENER_NAMESPACE = "aws:elbv2:listener:443"


def parse_policy_document(document: Any) -> Dict[str, Any]:
    """Return a policy document as a dict, decoding URL-encoded JSON strings."""
    if isinstance(document, str):
        return json.loads(unquote(document))
    return dict(document)


@dataclass(frozen=True)
class ObservedBucket:
    name: str
    cors_rules: Tuple[Mapping[str, Any], ...] = ()
    public_access_block: Optional[Mapping[str, bool]] = None
    versioning_status: Optional[str] = None

    @property
    def allowed_methods(self) -> FrozenSet[str]:
        methods = set()
        for rule in self.cors_rules:
            methods.update(m.upper() for m in rule.get("AllowedMethods", []))
        return frozenset(methods)


@dataclass(frozen=True)
class ObservedRole:
    role_name: str
    arn: str
    trust_policy: Mapping[str, Any]
    attached_policy_arns: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class PolicyVersion:
    version_id: str
    is_default: bool
    create_date: Any

    @property
    def number(self) -> int:
        return int(self.version_id.lstrip("v") or 0)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "PolicyVersion":
        return cls(
            version_id=data["VersionId"],
            is_default=bool(data.get("IsDefaultVersion")),
            create_date=data.get("CreateDate"),
        )


@dataclass(frozen=True)
class ObservedPolicy:
    arn: str
    default_version_id: str
    document: Mapping[str, Any]
    attached_roles: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ObservedInstanceProfile:
    profile_name: str
    arn: str
    role_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ObservedApplication:
    application_name: str


@dataclass(frozen=True)
class ObservedEnvironment:
    environment_name: str
    environment_id: str
    status: str
    health: Optional[str] = None
    cname: Optional[str] = None
    solution_stack: Optional[str] = None
    option_settings: Mapping[Tuple[str, str], str] = field(default_factory=dict)

    @property
    def env_vars(self) -> Dict[str, str]:
        return {
            option: value
            for (namespace, option), value in self.option_settings.items()
            if namespace == ENV_NAMESPACE
        }

    def option(self, namespace: str, name: str) -> Optional[str]:
        return self.option_settings.get((namespace, name))

    @staticmethod
    def index_option_settings(settings: List[Mapping[str, Any]]) -> Dict[Tuple[str, str], str]:
        return {
            (s["Namespace"], s["OptionName"]): s.get("Value")
            for s in settings
            if s.get("Value") is not None
        }


@dataclass(frozen=True)
class ObservedListener:
    protocol: Optional[str]
    certificate_arns: Tuple[str, ...] = ()
    ssl_policy: Optional[str] = None
    # Elastic Beanstalk defaults ListenerEnabled to true when the option is unset.
    listener_enabled: str = "true"


@dataclass(frozen=True)
class ObservedDbInstance:
    identifier: str
    instance_class: str
    engine: str
    engine_version: str
    multi_az: bool
    status: str
    allocated_storage: int
    max_allocated_storage: Optional[int] = None
    endpoint_address: Optional[str] = None
    endpoint_port: Optional[int] = None
    vpc_security_group_ids: Tuple[str, ...] = ()
    read_replica_ids: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "ObservedDbInstance":
        endpoint = data.get("Endpoint") or {}
        return cls(
            identifier=data["DBInstanceIdentifier"],
            instance_class=data.get("DBInstanceClass", ""),
            engine=data.get("Engine", ""),
            engine_version=data.get("EngineVersion", ""),
            multi_az=bool(data.get("MultiAZ")),
            status=data.get("DBInstanceStatus", ""),
            allocated_storage=int(data.get("AllocatedStorage", 0)),
            max_allocated_storage=data.get("MaxAllocatedStorage"),
            endpoint_address=endpoint.get("Address"),
            endpoint_port=endpoint.get("Port"),
            vpc_security_group_ids=tuple(
                g["VpcSecurityGroupId"] for g in data.get("VpcSecurityGroups", [])
            ),
            read_replica_ids=tuple(data.get("ReadReplicaDBInstanceIdentifiers", [])),
        )


@dataclass(frozen=True)
class ObservedScalingTarget:
    min_capacity: int
    max_capacity: int


@dataclass(frozen=True)
class ObservedScalingPolicy:
    policy_name: str
    metric_type: Optional[str]
    target_value: Optional[float]
    scale_in_cooldown: Optional[int]
    scale_out_cooldown: Optional[int]

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "ObservedScalingPolicy":
        config = data.get("TargetTrackingScalingPolicyConfiguration") or {}
        metric = config.get("PredefinedMetricSpecification") or {}
        return cls(
            policy_name=data["PolicyName"],
            metric_type=metric.get("PredefinedMetricType"),
            target_value=config.get("TargetValue"),
            scale_in_cooldown=config.get("ScaleInCooldown"),
            scale_out_cooldown=config.get("ScaleOutCooldown"),
        )


class RecordType(Enum):
    CNAME = "CNAME"
    ALIAS = "A"


@dataclass(frozen=True)
class DnsRecord:
    """A single Route 53 record, desired or observed."""

    name: str
    type: RecordType
    target: str
    ttl: Optional[int] = None
    alias_hosted_zone_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "DnsRecord":
        alias = data.get("AliasTarget")
        if alias:
            return cls(
                name=data["Name"],
                type=RecordType.ALIAS,
                target=alias["DNSName"],
                alias_hosted_zone_id=alias.get("HostedZoneId"),
            )
        values = [r["Value"] for r in data.get("ResourceRecords", [])]
        return cls(
            name=data["Name"],
            type=RecordType(data["Type"]),
            target=values[0] if values else "",
            ttl=data.get("TTL"),
        )

    def to_change(self, action: str = "UPSERT") -> Dict[str, Any]:
        record_set: Dict[str, Any] = {"Name": self.name, "Type": self.type.value}
        if self.type is RecordType.ALIAS:
            record_set["AliasTarget"] = {
                "HostedZoneId": self.alias_hosted_zone_id,
                "DNSName": self.target,
                "EvaluateTargetHealth": True,
            }
        else:
            record_set["TTL"] = self.ttl
            record_set["ResourceRecords"] = [{"Value": self.target}]
        return {"Action": action, "ResourceRecordSet": record_set}
