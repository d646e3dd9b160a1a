"""Resolves VPC, security group and load balancer identity for an environment."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from eb_converge.reconcilers.elastic_beanstalk import describe_environment
from eb_converge.reconcilers.state import EC2_VPC_NAMESPACE, LAUNCH_NAMESPACE
from eb_converge.utils.errors import (
    DependencyError,
    ErrorContext,
    error_handler,
    is_not_found,
)
from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class NetworkTopology:
    vpc_id: str
    security_group_id: str


@dataclass(frozen=True)
class LoadBalancer:
    name: str
    arn: str
    dns_name: str
    canonical_hosted_zone_id: str


def is_security_group_id(value: Optional[str]) -> bool:
    return bool(value) and value.startswith('sg-')


class NetworkTopologyResolver:
    """Walks Elastic Beanstalk configuration, falling back to the environment's EC2 instances.

    Every database resource depends on the result, so anything that cannot be
    resolved raises DependencyError.
    """

    def __init__(self, clients, application_name: str):
        self.eb_client = clients.get_client('elasticbeanstalk')
        self.ec2_client = clients.get_client('ec2')
        self.elbv2_client = clients.get_client('elbv2')
        self.application_name = application_name

    def resolve(self, environment_name: str) -> NetworkTopology:
        """Resolve VPC and application security group for ``environment_name``.

        Raises:
            DependencyError: If either cannot be determined
        """
        try:
            return self._resolve(environment_name)
        except ClientError as e:
            raise error_handler.handle_exception(
                e, ErrorContext(resource_id=environment_name, resource_type='network', operation='resolve')
            ) from e

    def _resolve(self, environment_name: str) -> NetworkTopology:
        env = self.ensure_environment_exists(environment_name)

        vpc_id = env.option(EC2_VPC_NAMESPACE, 'VPCId')
        security_group = self._first(env.option(LAUNCH_NAMESPACE, 'SecurityGroups'))

        instance = None
        if not vpc_id:
            logger.warning("VPC ID not found in environment configuration, querying EC2 instance")
            instance = self._first_instance(environment_name)
            vpc_id = instance.get('VpcId')
            if not vpc_id:
                raise self._unresolvable(environment_name, 'VPC ID')
            logger.info(f"Retrieved VPC from EC2 instance: {vpc_id}")
        else:
            logger.info(f"Found VPC from environment configuration: {vpc_id}")

        if not is_security_group_id(security_group):
            if security_group:
                # Option settings can hold a group name; only an sg- id is usable.
                logger.warning(f"Got security group name instead of ID: {security_group}")
            instance = instance or self._first_instance(environment_name)
            groups = instance.get('SecurityGroups', [])
            security_group = groups[0]['GroupId'] if groups else None
            if not is_security_group_id(security_group):
                raise self._unresolvable(environment_name, 'security group ID')
            logger.info(f"Retrieved security group from EC2 instance: {security_group}")
        else:
            logger.info(f"Found security group: {security_group}")

        return NetworkTopology(vpc_id=vpc_id, security_group_id=security_group)

    def ensure_environment_exists(self, environment_name: str):
        """Return the live environment or raise DependencyError."""
        env = describe_environment(self.eb_client, self.application_name, environment_name)
        if env is None:
            raise DependencyError(
                f"Elastic Beanstalk environment {environment_name} does not exist",
                context=ErrorContext(resource_id=environment_name, resource_type='eb_environment'),
                suggestions=['Create the environment before provisioning the database'],
            )
        return env

    def list_subnets(self, vpc_id: str) -> List[str]:
        """Every subnet id in ``vpc_id``.

        Raises:
            DependencyError: If the VPC has no subnets
        """
        subnet_ids = []
        paginator = self.ec2_client.get_paginator('describe_subnets')
        for page in paginator.paginate(Filters=[{'Name': 'vpc-id', 'Values': [vpc_id]}]):
            subnet_ids.extend(s['SubnetId'] for s in page.get('Subnets', []))
        if not subnet_ids:
            raise DependencyError(
                f"No subnets found in VPC {vpc_id}",
                context=ErrorContext(resource_id=vpc_id, resource_type='vpc'),
            )
        logger.info(f"Found {len(subnet_ids)} subnet(s) in VPC {vpc_id}")
        return subnet_ids

    def resolve_load_balancer(self, environment_name: str) -> LoadBalancer:
        """The environment's load balancer with its DNS name and canonical zone.

        Raises:
            DependencyError: If the environment has no load balancer
        """
        try:
            resources = self.eb_client.describe_environment_resources(
                EnvironmentName=environment_name
            )['EnvironmentResources']
            balancers = resources.get('LoadBalancers', [])
            if not balancers:
                raise DependencyError(
                    f"Could not find load balancer for environment {environment_name}",
                    context=ErrorContext(resource_id=environment_name, resource_type='load_balancer'),
                )
            name = balancers[0]['Name']

            # Environment resources report an ARN for ALBs and a name for classic ones.
            if name.startswith('arn:'):
                response = self.elbv2_client.describe_load_balancers(LoadBalancerArns=[name])
            else:
                response = self.elbv2_client.describe_load_balancers(Names=[name])
        except ClientError as e:
            if is_not_found(e):
                raise DependencyError(
                    f"Load balancer for environment {environment_name} not found",
                    context=ErrorContext(resource_id=environment_name, resource_type='load_balancer'),
                    cause=e,
                ) from e
            raise error_handler.handle_exception(
                e, ErrorContext(resource_id=environment_name, resource_type='load_balancer', operation='read')
            ) from e

        lb = response['LoadBalancers'][0]
        return LoadBalancer(
            name=lb['LoadBalancerName'],
            arn=lb['LoadBalancerArn'],
            dns_name=lb['DNSName'],
            canonical_hosted_zone_id=lb['CanonicalHostedZoneId'],
        )

    def _first_instance(self, environment_name: str) -> Dict[str, Any]:
        resources = self.eb_client.describe_environment_resources(
            EnvironmentName=environment_name
        )['EnvironmentResources']
        instances = resources.get('Instances', [])
        if not instances:
            raise DependencyError(
                f"No instances found in environment {environment_name}",
                context=ErrorContext(resource_id=environment_name, resource_type='eb_environment'),
                suggestions=['Wait for the environment to launch its instances and re-run'],
            )

        reservations = self.ec2_client.describe_instances(
            InstanceIds=[instances[0]['Id']]
        ).get('Reservations', [])
        if not reservations or not reservations[0].get('Instances'):
            raise self._unresolvable(environment_name, 'instance metadata')
        return reservations[0]['Instances'][0]

    @staticmethod
    def _first(value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        first = value.split(',')[0].strip()
        return first or None

    @staticmethod
    def _unresolvable(environment_name: str, what: str) -> DependencyError:
        return DependencyError(
            f"Could not determine {what} for environment {environment_name}",
            context=ErrorContext(resource_id=environment_name, resource_type='network'),
        )
