"""Pure desired/observed comparisons.

No function here performs I/O or raises for ordinary divergence. Each
returns an Outcome whose changed fields name what would be updated.
"""

import json
from typing import Any, Iterable, Mapping, Optional

from eb_converge.config.specs import (
    BucketSpec,
    DatabaseSpec,
    EnvironmentSpec,
    EnvironmentVariablesSpec,
    HttpsListenerSpec,
    InstanceProfileSpec,
    ManagedPolicySpec,
    ReplicaSpec,
    RoleSpec,
)
from eb_converge.reconcilers.base import Outcome
from eb_converge.reconcilers.state import (
    ASG_NAMESPACE,
    LAUNCH_NAMESPACE,
    DnsRecord,
    ObservedBucket,
    ObservedDbInstance,
    ObservedEnvironment,
    ObservedInstanceProfile,
    ObservedListener,
    ObservedPolicy,
    ObservedRole,
    ObservedScalingPolicy,
    ObservedScalingTarget,
    parse_policy_document,
)

REPLICA_CPU_METRIC = "RDSReaderAverageCPUUtilization"


def normalize_policy(document: Any) -> str:
    """Canonical JSON text: keys sorted, no whitespace. Array order is kept."""
    return json.dumps(parse_policy_document(document), sort_keys=True, separators=(",", ":"))


def policies_equal(desired: Any, observed: Any) -> bool:
    return normalize_policy(desired) == normalize_policy(observed)


def normalize_dns_name(name: Optional[str]) -> str:
    """Lowercase and drop the trailing root dot."""
    return (name or "").strip().lower().rstrip(".")


def compare_bucket(desired: BucketSpec, observed: Optional[ObservedBucket]) -> Outcome:
    if observed is None:
        return Outcome.absent()

    fields = set()
    required = {m.upper() for m in desired.allowed_methods}
    if not required <= observed.allowed_methods:
        fields.add("cors")
    if observed.public_access_block is None or dict(observed.public_access_block) != desired.public_access_block.to_api():
        fields.add("public_access_block")
    if desired.versioning and observed.versioning_status != "Enabled":
        fields.add("versioning")
    return Outcome.from_fields(fields)


def compare_role(desired: RoleSpec, observed: Optional[ObservedRole]) -> Outcome:
    if observed is None:
        return Outcome.absent()

    fields = set()
    if not policies_equal(desired.trust_policy, observed.trust_policy):
        fields.add("trust_policy")
    if not set(desired.managed_policy_arns) <= observed.attached_policy_arns:
        fields.add("managed_policies")
    return Outcome.from_fields(fields)


def compare_managed_policy(desired: ManagedPolicySpec, observed: Optional[ObservedPolicy]) -> Outcome:
    if observed is None:
        return Outcome.absent()

    fields = set()
    if not policies_equal(desired.document, observed.document):
        fields.add("document")
    if desired.role_name not in observed.attached_roles:
        fields.add("attachment")
    return Outcome.from_fields(fields)


def compare_instance_profile(
    desired: InstanceProfileSpec,
    observed: Optional[ObservedInstanceProfile],
) -> Outcome:
    if observed is None:
        return Outcome.absent()
    if desired.role_name not in observed.role_names:
        return Outcome.differs({"role"})
    return Outcome.matches()


def compare_env_vars(desired: Mapping[str, str], observed: Mapping[str, str]) -> set:
    """Fields ``env:KEY`` for every desired variable missing or different."""
    return {
        f"env:{key}"
        for key, value in desired.items()
        if observed.get(key) != value
    }


def compare_environment(desired: EnvironmentSpec, observed: Optional[ObservedEnvironment]) -> Outcome:
    if observed is None:
        return Outcome.absent()

    fields = set()
    if observed.option(LAUNCH_NAMESPACE, "InstanceType") != desired.instance_type:
        fields.add("InstanceType")
    if observed.option(ASG_NAMESPACE, "MinSize") != str(desired.min_size):
        fields.add("MinSize")
    if observed.option(ASG_NAMESPACE, "MaxSize") != str(desired.max_size):
        fields.add("MaxSize")
    fields |= compare_env_vars(desired.env_vars, observed.env_vars)
    return Outcome.from_fields(fields)


def compare_environment_variables(
    desired: EnvironmentVariablesSpec,
    observed: Optional[ObservedEnvironment],
) -> Outcome:
    if observed is None:
        return Outcome.absent()
    return Outcome.from_fields(compare_env_vars(desired.env_vars, observed.env_vars))


def compare_https_listener(desired: HttpsListenerSpec, observed: Optional[ObservedListener]) -> Outcome:
    if observed is None or observed.protocol is None:
        return Outcome.absent()

    fields = set()
    if observed.listener_enabled.lower() != "true":
        fields.add("ListenerEnabled")
    if observed.protocol.upper() != "HTTPS":
        fields.add("Protocol")
    if desired.certificate_arn not in observed.certificate_arns:
        fields.add("SSLCertificateArns")
    if observed.ssl_policy != desired.ssl_policy:
        fields.add("SSLPolicy")
    return Outcome.from_fields(fields)


def compare_db_instance(desired: DatabaseSpec, observed: Optional[ObservedDbInstance]) -> Outcome:
    """Instance class, engine and Multi-AZ only. Storage and version drift are ignored."""
    if observed is None:
        return Outcome.absent()

    fields = set()
    if observed.instance_class != desired.instance_class:
        fields.add("instance_class")
    if observed.engine != desired.engine:
        fields.add("engine")
    if observed.multi_az != desired.multi_az:
        fields.add("multi_az")
    return Outcome.from_fields(fields)


def compare_storage_autoscaling(desired: DatabaseSpec, observed: ObservedDbInstance) -> Outcome:
    if observed.max_allocated_storage != desired.max_allocated_storage:
        return Outcome.differs({"max_allocated_storage"})
    return Outcome.matches()


def compare_replica_count(target: int, existing: Iterable[str]) -> Outcome:
    """Differs only when fewer replicas exist than targeted. Excess is never a difference."""
    if len(list(existing)) < target:
        return Outcome.differs({"replica_count"})
    return Outcome.matches()


def compare_security_group_ingress(
    permissions: Iterable[Mapping[str, Any]],
    port: int,
    source_group_id: str,
) -> bool:
    """True if a TCP rule covering ``port`` from ``source_group_id`` exists."""
    for permission in permissions:
        if permission.get("IpProtocol") not in ("tcp", "-1"):
            continue
        if permission.get("IpProtocol") == "tcp":
            if not permission.get("FromPort", 0) <= port <= permission.get("ToPort", -1):
                continue
        for pair in permission.get("UserIdGroupPairs", []):
            if pair.get("GroupId") == source_group_id:
                return True
    return False


def compare_replica_autoscaling(
    desired: ReplicaSpec,
    target: Optional[ObservedScalingTarget],
    policy: Optional[ObservedScalingPolicy],
) -> Outcome:
    if target is None and policy is None:
        return Outcome.absent()

    fields = set()
    if target is None:
        fields.add("scalable_target")
    else:
        if target.min_capacity != desired.min_capacity:
            fields.add("min_capacity")
        if target.max_capacity != desired.max_capacity:
            fields.add("max_capacity")

    if policy is None:
        fields.add("scaling_policy")
    else:
        if policy.metric_type != REPLICA_CPU_METRIC:
            fields.add("metric")
        if policy.target_value is None or float(policy.target_value) != float(desired.target_cpu):
            fields.add("target_cpu")
        if policy.scale_in_cooldown != desired.scale_in_cooldown:
            fields.add("scale_in_cooldown")
        if policy.scale_out_cooldown != desired.scale_out_cooldown:
            fields.add("scale_out_cooldown")
    return Outcome.from_fields(fields)


def compare_dns_record(desired: DnsRecord, observed: Optional[DnsRecord]) -> Outcome:
    """CNAME compares its single value; ALIAS compares the target DNS name.

    Both sides are compared without the trailing root dot.
    """
    if observed is None:
        return Outcome.absent()

    fields = set()
    if observed.type is not desired.type:
        fields.add("type")
    if normalize_dns_name(observed.target) != normalize_dns_name(desired.target):
        fields.add("target")
    return Outcome.from_fields(fields)
