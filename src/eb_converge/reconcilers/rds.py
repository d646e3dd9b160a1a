"""RDS PostgreSQL reconcilers and the ordered database convergence sequence."""

import secrets
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from botocore.exceptions import ClientError

from eb_converge.config.specs import DatabaseSpec, EnvironmentVariablesSpec
from eb_converge.reconcilers.base import (
    BaseReconciler,
    Outcome,
    ReconcileAction,
    ReconcileResult,
)
from eb_converge.reconcilers.comparators import (
    REPLICA_CPU_METRIC,
    compare_db_instance,
    compare_replica_autoscaling,
    compare_replica_count,
    compare_security_group_ingress,
    compare_storage_autoscaling,
)
from eb_converge.reconcilers.elastic_beanstalk import EnvironmentVariablesReconciler
from eb_converge.reconcilers.network import NetworkTopology, NetworkTopologyResolver
from eb_converge.reconcilers.state import (
    ObservedDbInstance,
    ObservedScalingPolicy,
    ObservedScalingTarget,
)
from eb_converge.utils.errors import (
    DependencyError,
    ErrorContext,
    PolicyDivergenceWarning,
    ProvisioningError,
    error_handler,
    is_not_found,
)
from eb_converge.utils.logging import get_logger
from eb_converge.utils.polling import BoundedPoller, PollStatus

logger = get_logger(__name__)

PASSWORD_LENGTH = 32
PASSWORD_ALPHABET = string.ascii_letters + string.digits

AVAILABLE_STATES = ('available',)
DB_FAILED_STATES = (
    'failed',
    'deleting',
    'incompatible-parameters',
    'incompatible-network',
    'incompatible-restore',
    'inaccessible-encryption-credentials',
    'storage-full',
)

AUTOSCALING_NAMESPACE = 'rds'
REPLICA_SCALABLE_DIMENSION = 'rds:replica:ReadReplicaCount'

SECRET_ENV_KEYS = frozenset({'DATABASE_URL', 'DB_PASSWORD'})


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random alphanumeric password; RDS rejects '/', '@', '"' and spaces."""
    return ''.join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def _tag_list(spec: DatabaseSpec, **extra: str) -> List[Dict[str, str]]:
    tags = dict(spec.tags)
    tags.update(extra)
    return [{'Key': k, 'Value': v} for k, v in tags.items()]


@dataclass(frozen=True)
class ResolvedPassword:
    value: str = field(repr=False)
    source: str  # configured | secret | generated


class MasterPasswordResolver:
    """Configured password, else the stored secret, else a new stored secret.

    A stored secret is reused verbatim and never rotated here.
    """

    resource_type = "db_master_password"

    def __init__(self, clients, generator=generate_password):
        self.secrets_client = clients.get_client('secretsmanager')
        self._generate = generator

    def resolve(self, spec: DatabaseSpec) -> ResolvedPassword:
        if spec.master_password:
            logger.info("Using database password from configuration")
            return ResolvedPassword(spec.master_password, 'configured')

        try:
            response = self.secrets_client.get_secret_value(SecretId=spec.secret_name)
            logger.info(f"Reusing database password stored in {spec.secret_name}")
            return ResolvedPassword(response['SecretString'], 'secret')
        except ClientError as e:
            if not is_not_found(e):
                raise self._wrap(e, spec, 'read') from e

        logger.info(f"Generating database password and storing it in {spec.secret_name}")
        password = self._generate()
        try:
            self.secrets_client.create_secret(
                Name=spec.secret_name,
                Description=f"Master password for {spec.application_name} {spec.environment_name} RDS database",
                SecretString=password,
                Tags=_tag_list(spec),
            )
        except ClientError as e:
            raise self._wrap(e, spec, 'create') from e
        return ResolvedPassword(password, 'generated')

    def reconcile(self, spec: DatabaseSpec) -> Tuple[str, ReconcileResult]:
        resolved = self.resolve(spec)
        if resolved.source == 'generated':
            action, outcome = ReconcileAction.CREATE, Outcome.absent()
        else:
            action, outcome = ReconcileAction.SKIP, Outcome.matches()
        result = ReconcileResult(
            resource_type=self.resource_type,
            resource_id=spec.secret_name,
            action=action,
            outcome=outcome,
            outputs={'source': resolved.source},
        )
        return resolved.value, result

    def _wrap(self, error: ClientError, spec: DatabaseSpec, operation: str):
        return error_handler.handle_exception(
            error,
            ErrorContext(resource_id=spec.secret_name, resource_type=self.resource_type, operation=operation),
        )


@dataclass(frozen=True)
class SubnetGroupSpec:
    name: str
    description: str
    vpc_id: str
    tags: Tuple[Tuple[str, str], ...] = ()


class SubnetGroupReconciler(BaseReconciler[SubnetGroupSpec, Dict[str, Any]]):
    """Created from every subnet in the VPC; never updated afterwards."""

    resource_type = "db_subnet_group"

    def __init__(self, clients, network: NetworkTopologyResolver, confirmer=None):
        super().__init__(clients, confirmer)
        self.rds_client = clients.get_client('rds')
        self.network = network

    def resource_id(self, desired: SubnetGroupSpec) -> str:
        return desired.name

    def get_current_state(self, desired: SubnetGroupSpec) -> Optional[Dict[str, Any]]:
        try:
            groups = self.rds_client.describe_db_subnet_groups(
                DBSubnetGroupName=desired.name
            ).get('DBSubnetGroups', [])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return groups[0] if groups else None

    def compare(self, desired: SubnetGroupSpec, observed: Optional[Dict[str, Any]]) -> Outcome:
        return Outcome.absent() if observed is None else Outcome.matches()

    def create(self, desired: SubnetGroupSpec) -> Dict[str, Any]:
        subnet_ids = self.network.list_subnets(desired.vpc_id)
        self.rds_client.create_db_subnet_group(
            DBSubnetGroupName=desired.name,
            DBSubnetGroupDescription=desired.description,
            SubnetIds=subnet_ids,
            Tags=[{'Key': k, 'Value': v} for k, v in desired.tags],
        )
        return {'subnet_group_name': desired.name, 'subnet_count': len(subnet_ids)}

    def outputs(self, desired: SubnetGroupSpec, observed: Dict[str, Any]) -> Dict[str, Any]:
        return {'subnet_group_name': desired.name}


@dataclass(frozen=True)
class DbSecurityGroupSpec:
    name: str
    description: str
    vpc_id: str
    source_group_id: str
    port: int
    tags: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ObservedSecurityGroup:
    group_id: str
    permissions: Tuple[Dict[str, Any], ...]


class DbSecurityGroupReconciler(BaseReconciler[DbSecurityGroupSpec, ObservedSecurityGroup]):
    """Database security group admitting the application group on the database port.

    Only that one ingress rule is managed. Other rules are left untouched.
    """

    resource_type = "db_security_group"

    def __init__(self, clients, confirmer=None):
        super().__init__(clients, confirmer)
        self.ec2_client = clients.get_client('ec2')

    def resource_id(self, desired: DbSecurityGroupSpec) -> str:
        return desired.name

    def get_current_state(self, desired: DbSecurityGroupSpec) -> Optional[ObservedSecurityGroup]:
        groups = self.ec2_client.describe_security_groups(
            Filters=[
                {'Name': 'group-name', 'Values': [desired.name]},
                {'Name': 'vpc-id', 'Values': [desired.vpc_id]},
            ]
        ).get('SecurityGroups', [])
        if not groups:
            return None
        return ObservedSecurityGroup(
            group_id=groups[0]['GroupId'],
            permissions=tuple(groups[0].get('IpPermissions', [])),
        )

    def compare(self, desired: DbSecurityGroupSpec, observed: Optional[ObservedSecurityGroup]) -> Outcome:
        if observed is None:
            return Outcome.absent()
        if compare_security_group_ingress(observed.permissions, desired.port, desired.source_group_id):
            return Outcome.matches()
        return Outcome.differs({'ingress'})

    def create(self, desired: DbSecurityGroupSpec) -> Dict[str, Any]:
        group_id = self.ec2_client.create_security_group(
            GroupName=desired.name,
            Description=desired.description,
            VpcId=desired.vpc_id,
        )['GroupId']
        self._authorize(group_id, desired)
        self.ec2_client.create_tags(
            Resources=[group_id],
            Tags=[{'Key': k, 'Value': v} for k, v in desired.tags] + [{'Key': 'Name', 'Value': desired.name}],
        )
        return {'security_group_id': group_id}

    def update(self, desired: DbSecurityGroupSpec, observed: ObservedSecurityGroup, outcome: Outcome) -> Dict[str, Any]:
        self._authorize(observed.group_id, desired)
        return {'security_group_id': observed.group_id}

    def outputs(self, desired: DbSecurityGroupSpec, observed: ObservedSecurityGroup) -> Dict[str, Any]:
        return {'security_group_id': observed.group_id}

    def _authorize(self, group_id: str, desired: DbSecurityGroupSpec) -> None:
        self.ec2_client.authorize_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[{
                'IpProtocol': 'tcp',
                'FromPort': desired.port,
                'ToPort': desired.port,
                'UserIdGroupPairs': [{
                    'GroupId': desired.source_group_id,
                    'Description': 'Application instances',
                }],
            }],
        )


def describe_db_instance(rds_client, identifier: str) -> Optional[ObservedDbInstance]:
    try:
        instances = rds_client.describe_db_instances(DBInstanceIdentifier=identifier).get('DBInstances', [])
    except ClientError as e:
        if is_not_found(e):
            return None
        raise
    return ObservedDbInstance.from_api(instances[0]) if instances else None


class _DbWaitMixin:
    """Bounded wait for a DB instance to become available."""

    def _wait_available(self, identifier: str) -> Optional[ObservedDbInstance]:
        def status():
            instance = describe_db_instance(self.rds_client, identifier)
            return instance.status if instance else None

        result = self.poller.wait(
            status,
            ready_states=AVAILABLE_STATES,
            failed_states=DB_FAILED_STATES,
            description=f"DB instance {identifier}",
        )
        if result.status is PollStatus.FAILED:
            raise ProvisioningError(
                f"DB instance {identifier} entered {result.last_state}",
                context=ErrorContext(resource_id=identifier, resource_type='db_instance'),
                suggestions=['Check the instance events in the RDS console'],
            )
        if result.status is PollStatus.TIMEOUT:
            self.warn(
                f"DB instance {identifier} not available after {result.elapsed:.0f}s "
                f"(status: {result.last_state}); it may still complete in the background"
            )
        return describe_db_instance(self.rds_client, identifier)


@dataclass(frozen=True)
class DbInstanceSpec:
    database: DatabaseSpec
    master_password: str = field(repr=False)
    subnet_group_name: str
    security_group_id: str


class DbInstanceReconciler(_DbWaitMixin, BaseReconciler[DbInstanceSpec, ObservedDbInstance]):
    """Primary instance. Class, engine and Multi-AZ drift is reported, never applied."""

    resource_type = "db_instance"

    def __init__(self, clients, confirmer=None, poller: Optional[BoundedPoller] = None):
        super().__init__(clients, confirmer)
        self.rds_client = clients.get_client('rds')
        self.poller = poller or BoundedPoller(interval=20.0, timeout=1800.0)

    def resource_id(self, desired: DbInstanceSpec) -> str:
        return desired.database.identifier

    def get_current_state(self, desired: DbInstanceSpec) -> Optional[ObservedDbInstance]:
        return describe_db_instance(self.rds_client, desired.database.identifier)

    def compare(self, desired: DbInstanceSpec, observed: Optional[ObservedDbInstance]) -> Outcome:
        return compare_db_instance(desired.database, observed)

    def describe_changes(self, desired: DbInstanceSpec, observed: ObservedDbInstance, outcome: Outcome) -> str:
        db = desired.database
        pairs = {
            'instance_class': (observed.instance_class, db.instance_class),
            'engine': (observed.engine, db.engine),
            'multi_az': (observed.multi_az, db.multi_az),
        }
        return ", ".join(
            f"{name}: {pairs[name][0]} -> {pairs[name][1]}" for name in sorted(outcome.changed_fields)
        )

    def check_update_policy(self, desired: DbInstanceSpec, observed: ObservedDbInstance, outcome: Outcome) -> None:
        raise PolicyDivergenceWarning(
            f"DB instance differs ({self.describe_changes(desired, observed, outcome)}); "
            f"these changes can cause downtime and must be applied manually",
            changed_fields=outcome.changed_fields,
            context=ErrorContext(resource_id=observed.identifier, resource_type=self.resource_type),
        )

    def create(self, desired: DbInstanceSpec) -> Dict[str, Any]:
        db = desired.database
        create_params = {
            'DBInstanceIdentifier': db.identifier,
            'DBInstanceClass': db.instance_class,
            'Engine': db.engine,
            'EngineVersion': db.engine_version,
            'MasterUsername': db.username,
            'MasterUserPassword': desired.master_password,
            'AllocatedStorage': db.allocated_storage,
            'StorageType': db.storage_type,
            'DBName': db.db_name,
            'DBSubnetGroupName': desired.subnet_group_name,
            'VpcSecurityGroupIds': [desired.security_group_id],
            'BackupRetentionPeriod': db.backup_retention_days,
            'PreferredBackupWindow': db.backup_window,
            'PreferredMaintenanceWindow': db.maintenance_window,
            'MultiAZ': db.multi_az,
            'StorageEncrypted': db.storage_encrypted,
            'PubliclyAccessible': db.publicly_accessible,
            'EnableCloudwatchLogsExports': ['postgresql', 'upgrade'],
            'Port': db.port,
            'Tags': _tag_list(db, Name=db.identifier),
        }
        if db.storage_autoscaling:
            create_params['MaxAllocatedStorage'] = db.max_allocated_storage

        self.rds_client.create_db_instance(**create_params)
        self.logger.info(f"DB instance creation initiated: {db.identifier}")

        instance = self._wait_available(db.identifier)
        return self._instance_outputs(instance)

    def outputs(self, desired: DbInstanceSpec, observed: ObservedDbInstance) -> Dict[str, Any]:
        return self._instance_outputs(observed)

    @staticmethod
    def _instance_outputs(instance: Optional[ObservedDbInstance]) -> Dict[str, Any]:
        if instance is None:
            return {}
        return {
            'status': instance.status,
            'endpoint': instance.endpoint_address,
            'port': instance.endpoint_port,
        }


class StorageAutoscalingReconciler(BaseReconciler[DatabaseSpec, ObservedDbInstance]):
    """Keeps MaxAllocatedStorage at the configured ceiling. Applied in place."""

    resource_type = "db_storage_autoscaling"

    def __init__(self, clients, confirmer=None):
        super().__init__(clients, confirmer)
        self.rds_client = clients.get_client('rds')

    def resource_id(self, desired: DatabaseSpec) -> str:
        return desired.identifier

    def get_current_state(self, desired: DatabaseSpec) -> Optional[ObservedDbInstance]:
        instance = describe_db_instance(self.rds_client, desired.identifier)
        if instance is None:
            raise DependencyError(f"DB instance {desired.identifier} does not exist")
        return instance

    def compare(self, desired: DatabaseSpec, observed: Optional[ObservedDbInstance]) -> Outcome:
        return compare_storage_autoscaling(desired, observed)

    def create(self, desired: DatabaseSpec) -> Dict[str, Any]:
        raise DependencyError(f"DB instance {desired.identifier} does not exist")

    def update(self, desired: DatabaseSpec, observed: ObservedDbInstance, outcome: Outcome) -> Dict[str, Any]:
        self.logger.info(
            f"Setting max allocated storage: {observed.max_allocated_storage} -> {desired.max_allocated_storage} GB"
        )
        self.rds_client.modify_db_instance(
            DBInstanceIdentifier=desired.identifier,
            MaxAllocatedStorage=desired.max_allocated_storage,
            ApplyImmediately=True,
        )
        return {'max_allocated_storage': desired.max_allocated_storage}

    def outputs(self, desired: DatabaseSpec, observed: ObservedDbInstance) -> Dict[str, Any]:
        return {'max_allocated_storage': observed.max_allocated_storage}


class ReadReplicaReconciler(_DbWaitMixin, BaseReconciler[DatabaseSpec, Tuple[str, ...]]):
    """Grows the replica set to the configured count. Replicas are never removed."""

    resource_type = "db_read_replicas"

    def __init__(self, clients, confirmer=None, poller: Optional[BoundedPoller] = None):
        super().__init__(clients, confirmer)
        self.rds_client = clients.get_client('rds')
        self.poller = poller or BoundedPoller(interval=20.0, timeout=1800.0)

    def resource_id(self, desired: DatabaseSpec) -> str:
        return f"{desired.identifier}-replicas"

    def get_current_state(self, desired: DatabaseSpec) -> Tuple[str, ...]:
        primary = describe_db_instance(self.rds_client, desired.identifier)
        if primary is None:
            raise DependencyError(f"DB instance {desired.identifier} does not exist")
        self.logger.info(f"Found {len(primary.read_replica_ids)} existing read replica(s)")
        return tuple(sorted(primary.read_replica_ids))

    def compare(self, desired: DatabaseSpec, observed: Tuple[str, ...]) -> Outcome:
        if not observed and desired.replicas.count > 0:
            return Outcome.absent()
        return compare_replica_count(desired.replicas.count, observed)

    def create(self, desired: DatabaseSpec) -> Dict[str, Any]:
        return self._add_replicas(desired, ())

    def update(self, desired: DatabaseSpec, observed: Tuple[str, ...], outcome: Outcome) -> Dict[str, Any]:
        return self._add_replicas(desired, observed)

    def outputs(self, desired: DatabaseSpec, observed: Tuple[str, ...]) -> Dict[str, Any]:
        return {'replicas': list(observed)}

    def plan_replica_names(self, desired: DatabaseSpec, existing: Tuple[str, ...]) -> List[str]:
        """Names for the replicas still missing, numbered after the existing count."""
        taken = set(existing)
        names = []
        ordinal = len(existing)
        while len(existing) + len(names) < desired.replicas.count:
            ordinal += 1
            name = desired.replica_identifier(ordinal)
            if name not in taken:
                names.append(name)
        return names

    def _add_replicas(self, desired: DatabaseSpec, existing: Tuple[str, ...]) -> Dict[str, Any]:
        names = self.plan_replica_names(desired, existing)
        self.logger.info(f"Creating {len(names)} additional read replica(s)")

        for name in names:
            self.rds_client.create_db_instance_read_replica(
                DBInstanceIdentifier=name,
                SourceDBInstanceIdentifier=desired.identifier,
                DBInstanceClass=desired.instance_class,
                PubliclyAccessible=desired.publicly_accessible,
                Tags=_tag_list(desired, Name=name, Type='ReadReplica'),
            )
            self.logger.info(f"Read replica creation initiated: {name}")

        for name in names:
            self._wait_available(name)

        return {'replicas': sorted(set(existing) | set(names)), 'created': names}


class ReplicaAutoscalingReconciler(
    BaseReconciler[DatabaseSpec, Tuple[Optional[ObservedScalingTarget], Optional[ObservedScalingPolicy]]]
):
    """Scalable target on the replica count plus a CPU target-tracking policy."""

    resource_type = "db_replica_autoscaling"

    def __init__(self, clients, confirmer=None):
        super().__init__(clients, confirmer)
        self.autoscaling_client = clients.get_client('application-autoscaling')

    def resource_id(self, desired: DatabaseSpec) -> str:
        return desired.scaling_policy_name

    def get_current_state(self, desired: DatabaseSpec):
        targets = self.autoscaling_client.describe_scalable_targets(
            ServiceNamespace=AUTOSCALING_NAMESPACE,
            ResourceIds=[desired.autoscaling_resource_id],
            ScalableDimension=REPLICA_SCALABLE_DIMENSION,
        ).get('ScalableTargets', [])
        target = None
        if targets:
            target = ObservedScalingTarget(
                min_capacity=targets[0]['MinCapacity'],
                max_capacity=targets[0]['MaxCapacity'],
            )

        policies = self.autoscaling_client.describe_scaling_policies(
            ServiceNamespace=AUTOSCALING_NAMESPACE,
            ResourceId=desired.autoscaling_resource_id,
            ScalableDimension=REPLICA_SCALABLE_DIMENSION,
            PolicyNames=[desired.scaling_policy_name],
        ).get('ScalingPolicies', [])
        policy = ObservedScalingPolicy.from_api(policies[0]) if policies else None

        return target, policy

    def compare(self, desired: DatabaseSpec, observed) -> Outcome:
        target, policy = observed
        return compare_replica_autoscaling(desired.replicas, target, policy)

    def create(self, desired: DatabaseSpec) -> Dict[str, Any]:
        return self._register(desired)

    def update(self, desired: DatabaseSpec, observed, outcome: Outcome) -> Dict[str, Any]:
        # Registration and put_scaling_policy both overwrite in place.
        return self._register(desired)

    def outputs(self, desired: DatabaseSpec, observed) -> Dict[str, Any]:
        return {'policy_name': desired.scaling_policy_name}

    def _register(self, desired: DatabaseSpec) -> Dict[str, Any]:
        replicas = desired.replicas
        self.autoscaling_client.register_scalable_target(
            ServiceNamespace=AUTOSCALING_NAMESPACE,
            ResourceId=desired.autoscaling_resource_id,
            ScalableDimension=REPLICA_SCALABLE_DIMENSION,
            MinCapacity=replicas.min_capacity,
            MaxCapacity=replicas.max_capacity,
        )
        response = self.autoscaling_client.put_scaling_policy(
            PolicyName=desired.scaling_policy_name,
            ServiceNamespace=AUTOSCALING_NAMESPACE,
            ResourceId=desired.autoscaling_resource_id,
            ScalableDimension=REPLICA_SCALABLE_DIMENSION,
            PolicyType='TargetTrackingScaling',
            TargetTrackingScalingPolicyConfiguration={
                'TargetValue': float(replicas.target_cpu),
                'PredefinedMetricSpecification': {
                    'PredefinedMetricType': REPLICA_CPU_METRIC,
                },
                'ScaleInCooldown': replicas.scale_in_cooldown,
                'ScaleOutCooldown': replicas.scale_out_cooldown,
            },
        )
        return {'policy_name': desired.scaling_policy_name, 'policy_arn': response.get('PolicyARN')}


def connection_variables(spec: DatabaseSpec, password: str, host: str, port: int) -> Dict[str, str]:
    """Environment variables the application reads to reach the database."""
    url = f"postgresql://{quote(spec.username, safe='')}:{quote(password, safe='')}@{host}:{port}/{spec.db_name}"
    return {
        'DATABASE_URL': url,
        'DB_HOST': host,
        'DB_PORT': str(port),
        'DB_NAME': spec.db_name,
        'DB_USERNAME': spec.username,
        'DB_PASSWORD': password,
    }


class DatabaseReconciler:
    """Runs the database steps in order, each feeding identifiers to the next.

    Order: password, subnet group, security group, instance, storage
    autoscaling, read replicas, replica autoscaling, connection variables.
    """

    def __init__(
        self,
        clients,
        network: NetworkTopologyResolver,
        confirmer=None,
        poller: Optional[BoundedPoller] = None,
        environment_poller: Optional[BoundedPoller] = None,
    ):
        poller = poller or BoundedPoller(interval=20.0, timeout=1800.0)
        self.network = network
        self.passwords = MasterPasswordResolver(clients)
        self.subnet_groups = SubnetGroupReconciler(clients, network)
        self.security_groups = DbSecurityGroupReconciler(clients)
        self.instances = DbInstanceReconciler(clients, poller=poller)
        self.storage = StorageAutoscalingReconciler(clients)
        self.replicas = ReadReplicaReconciler(clients, poller=poller)
        self.replica_autoscaling = ReplicaAutoscalingReconciler(clients)
        self.environment_variables = EnvironmentVariablesReconciler(
            clients, confirmer=confirmer, poller=environment_poller
        )

    def reconcile(self, spec: DatabaseSpec, topology: NetworkTopology) -> List[ReconcileResult]:
        """Converge every database resource for ``spec``.

        Raises:
            ConfigurationError: If the storage or replica bounds are invalid (before any AWS call)
            ConvergenceError: If any step fails fatally
        """
        spec.validate()
        results: List[ReconcileResult] = []

        password, password_result = self.passwords.reconcile(spec)
        results.append(password_result)

        results.append(self.subnet_groups.reconcile(SubnetGroupSpec(
            name=spec.subnet_group_name,
            description=f"Subnet group for {spec.application_name} {spec.environment_name} RDS database",
            vpc_id=topology.vpc_id,
            tags=spec.tags,
        )))

        sg_result = self.security_groups.reconcile(DbSecurityGroupSpec(
            name=spec.security_group_name,
            description=f"Security group for {spec.application_name} {spec.environment_name} RDS database",
            vpc_id=topology.vpc_id,
            source_group_id=topology.security_group_id,
            port=spec.port,
            tags=spec.tags,
        ))
        results.append(sg_result)

        instance_result = self.instances.reconcile(DbInstanceSpec(
            database=spec,
            master_password=password,
            subnet_group_name=spec.subnet_group_name,
            security_group_id=sg_result.outputs['security_group_id'],
        ))
        results.append(instance_result)

        if instance_result.outputs.get('status') not in AVAILABLE_STATES:
            if instance_result.action is ReconcileAction.CREATE:
                # Creation already spent its wait.
                results.append(self._halted(spec, instance_result.outputs.get('status')))
                return results
            instance = self._await_instance(spec)
            if instance is None or instance.status not in AVAILABLE_STATES:
                results.append(self._halted(spec, instance.status if instance else None))
                return results
            instance_result.outputs.update(DbInstanceReconciler._instance_outputs(instance))

        if spec.storage_autoscaling:
            results.append(self.storage.reconcile(spec))

        if spec.replicas.enabled:
            results.append(self.replicas.reconcile(spec))
            results.append(self.replica_autoscaling.reconcile(spec))

        if spec.publish_environment_variables:
            variables = connection_variables(
                spec, password,
                instance_result.outputs['endpoint'],
                instance_result.outputs['port'] or spec.port,
            )
            results.append(self.environment_variables.reconcile(EnvironmentVariablesSpec(
                application_name=spec.application_name,
                environment_name=spec.environment_name,
                variables=tuple(sorted(variables.items())),
                secret_keys=SECRET_ENV_KEYS,
            )))

        return results

    def _await_instance(self, spec: DatabaseSpec) -> Optional[ObservedDbInstance]:
        try:
            return self.instances._wait_available(spec.identifier)
        except ClientError as e:
            raise error_handler.handle_exception(
                e, ErrorContext(resource_id=spec.identifier, resource_type='db_instance', operation='wait')
            ) from e

    @staticmethod
    def _halted(spec: DatabaseSpec, status: Optional[str]) -> ReconcileResult:
        status = status or 'unknown'
        message = (
            f"DB instance {spec.identifier} is {status}; storage, replica and "
            f"connection settings were not reconciled. Re-run once it is available"
        )
        logger.warning(message)
        return ReconcileResult(
            resource_type='database',
            resource_id=spec.identifier,
            action=ReconcileAction.SKIP,
            outcome=Outcome.matches(),
            warning=message,
        )
