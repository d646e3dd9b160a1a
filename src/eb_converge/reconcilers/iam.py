"""IAM role, managed policy and instance profile reconcilers."""

import json
import time
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from eb_converge.config.specs import (
    DEFAULT_EB_ROLE,
    InstanceProfileSpec,
    ManagedPolicySpec,
    RoleSpec,
)
from eb_converge.reconcilers.base import (
    BaseReconciler,
    Outcome,
    ReconcileAction,
    ReconcileResult,
)
from eb_converge.reconcilers.comparators import (
    compare_instance_profile,
    compare_managed_policy,
    compare_role,
)
from eb_converge.reconcilers.policy_versions import PolicyVersionManager
from eb_converge.reconcilers.state import (
    ObservedInstanceProfile,
    ObservedPolicy,
    ObservedRole,
    parse_policy_document,
)
from eb_converge.utils.errors import DependencyError, ErrorContext, error_handler, is_not_found
from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)

# IAM is eventually consistent; a fresh instance profile is not usable at once.
PROFILE_PROPAGATION_DELAY = 10.0


def attached_policy_arns(iam_client, role_name: str) -> frozenset:
    """ARNs of managed policies attached to ``role_name``; empty if the role is missing."""
    arns = set()
    try:
        paginator = iam_client.get_paginator('list_attached_role_policies')
        for page in paginator.paginate(RoleName=role_name):
            arns.update(p['PolicyArn'] for p in page.get('AttachedPolicies', []))
    except ClientError as e:
        if not is_not_found(e):
            raise
    return frozenset(arns)


class RoleReconciler(BaseReconciler[RoleSpec, ObservedRole]):
    """Instance role: trust policy and attached AWS managed policies."""

    resource_type = "iam_role"

    def __init__(self, clients, confirmer=None):
        super().__init__(clients, confirmer)
        self.iam_client = clients.get_client('iam')

    def resource_id(self, desired: RoleSpec) -> str:
        return desired.role_name

    def get_current_state(self, desired: RoleSpec) -> Optional[ObservedRole]:
        try:
            role = self.iam_client.get_role(RoleName=desired.role_name)['Role']
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

        return ObservedRole(
            role_name=role['RoleName'],
            arn=role['Arn'],
            trust_policy=parse_policy_document(role['AssumeRolePolicyDocument']),
            attached_policy_arns=attached_policy_arns(self.iam_client, desired.role_name),
        )

    def compare(self, desired: RoleSpec, observed: Optional[ObservedRole]) -> Outcome:
        return compare_role(desired, observed)

    def create(self, desired: RoleSpec) -> Dict[str, Any]:
        response = self.iam_client.create_role(
            RoleName=desired.role_name,
            AssumeRolePolicyDocument=json.dumps(desired.trust_policy),
            Description='Elastic Beanstalk EC2 instance role',
        )

        for policy_arn in desired.managed_policy_arns:
            self.iam_client.attach_role_policy(RoleName=desired.role_name, PolicyArn=policy_arn)

        return {'role_arn': response['Role']['Arn']}

    def update(self, desired: RoleSpec, observed: ObservedRole, outcome: Outcome) -> Dict[str, Any]:
        if 'trust_policy' in outcome.changed_fields:
            self.iam_client.update_assume_role_policy(
                RoleName=desired.role_name,
                PolicyDocument=json.dumps(desired.trust_policy)
            )

        # Extra policies attached by someone else are left alone.
        for policy_arn in desired.managed_policy_arns:
            if policy_arn not in observed.attached_policy_arns:
                self.iam_client.attach_role_policy(RoleName=desired.role_name, PolicyArn=policy_arn)

        return {'role_arn': observed.arn}

    def outputs(self, desired: RoleSpec, observed: ObservedRole) -> Dict[str, Any]:
        return {'role_arn': observed.arn}


class ManagedPolicyReconciler(BaseReconciler[ManagedPolicySpec, ObservedPolicy]):
    """Customer managed policy attached to the instance role.

    Document changes are published as a new default version through
    PolicyVersionManager so the five-version ceiling is never hit.
    """

    resource_type = "iam_policy"

    def __init__(self, clients, account_id: str, confirmer=None):
        super().__init__(clients, confirmer)
        self.iam_client = clients.get_client('iam')
        self.account_id = account_id
        self.versions = PolicyVersionManager(self.iam_client)

    def policy_arn(self, desired: ManagedPolicySpec) -> str:
        return f"arn:aws:iam::{self.account_id}:policy/{desired.policy_name}"

    def resource_id(self, desired: ManagedPolicySpec) -> str:
        return desired.policy_name

    def get_current_state(self, desired: ManagedPolicySpec) -> Optional[ObservedPolicy]:
        arn = self.policy_arn(desired)
        try:
            policy = self.iam_client.get_policy(PolicyArn=arn)['Policy']
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

        version = self.iam_client.get_policy_version(
            PolicyArn=arn,
            VersionId=policy['DefaultVersionId']
        )['PolicyVersion']

        attached_roles = set()
        if arn in attached_policy_arns(self.iam_client, desired.role_name):
            attached_roles.add(desired.role_name)

        return ObservedPolicy(
            arn=arn,
            default_version_id=policy['DefaultVersionId'],
            document=parse_policy_document(version['Document']),
            attached_roles=frozenset(attached_roles),
        )

    def compare(self, desired: ManagedPolicySpec, observed: Optional[ObservedPolicy]) -> Outcome:
        return compare_managed_policy(desired, observed)

    def create(self, desired: ManagedPolicySpec) -> Dict[str, Any]:
        response = self.iam_client.create_policy(
            PolicyName=desired.policy_name,
            PolicyDocument=json.dumps(desired.document),
            Description=desired.description,
        )
        arn = response['Policy']['Arn']
        self.iam_client.attach_role_policy(RoleName=desired.role_name, PolicyArn=arn)
        return {'policy_arn': arn}

    def update(self, desired: ManagedPolicySpec, observed: ObservedPolicy, outcome: Outcome) -> Dict[str, Any]:
        outputs = {'policy_arn': observed.arn}
        if 'document' in outcome.changed_fields:
            outputs['version_id'] = self.versions.publish(observed.arn, desired.document)
        if 'attachment' in outcome.changed_fields:
            self.iam_client.attach_role_policy(RoleName=desired.role_name, PolicyArn=observed.arn)
        return outputs

    def outputs(self, desired: ManagedPolicySpec, observed: ObservedPolicy) -> Dict[str, Any]:
        return {'policy_arn': observed.arn, 'version_id': observed.default_version_id}


class InstanceProfileReconciler(BaseReconciler[InstanceProfileSpec, ObservedInstanceProfile]):
    """Instance profile wrapping the role. A missing role is repaired without confirmation."""

    resource_type = "iam_instance_profile"

    def __init__(
        self,
        clients,
        confirmer=None,
        propagation_delay: float = PROFILE_PROPAGATION_DELAY,
        sleep: Callable[[float], None] = time.sleep
    ):
        super().__init__(clients, confirmer)
        self.iam_client = clients.get_client('iam')
        self.propagation_delay = propagation_delay
        self._sleep = sleep

    def resource_id(self, desired: InstanceProfileSpec) -> str:
        return desired.profile_name

    def get_current_state(self, desired: InstanceProfileSpec) -> Optional[ObservedInstanceProfile]:
        try:
            profile = self.iam_client.get_instance_profile(
                InstanceProfileName=desired.profile_name
            )['InstanceProfile']
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

        return ObservedInstanceProfile(
            profile_name=profile['InstanceProfileName'],
            arn=profile['Arn'],
            role_names=tuple(r['RoleName'] for r in profile.get('Roles', [])),
        )

    def compare(self, desired: InstanceProfileSpec, observed: Optional[ObservedInstanceProfile]) -> Outcome:
        return compare_instance_profile(desired, observed)

    def create(self, desired: InstanceProfileSpec) -> Dict[str, Any]:
        response = self.iam_client.create_instance_profile(InstanceProfileName=desired.profile_name)
        self._attach_role(desired)
        return {
            'instance_profile': desired.profile_name,
            'instance_profile_arn': response['InstanceProfile']['Arn'],
        }

    def update(
        self,
        desired: InstanceProfileSpec,
        observed: ObservedInstanceProfile,
        outcome: Outcome
    ) -> Dict[str, Any]:
        # A profile holds a single role, so a stale one has to go first.
        for role_name in observed.role_names:
            logger.warning(f"Removing role {role_name} from instance profile {desired.profile_name}")
            self.iam_client.remove_role_from_instance_profile(
                InstanceProfileName=desired.profile_name,
                RoleName=role_name
            )
        self._attach_role(desired)
        return self.outputs(desired, observed)

    def outputs(self, desired: InstanceProfileSpec, observed: ObservedInstanceProfile) -> Dict[str, Any]:
        return {'instance_profile': desired.profile_name, 'instance_profile_arn': observed.arn}

    def _attach_role(self, desired: InstanceProfileSpec) -> None:
        self.iam_client.add_role_to_instance_profile(
            InstanceProfileName=desired.profile_name,
            RoleName=desired.role_name
        )
        if self.propagation_delay:
            logger.info(f"Waiting {self.propagation_delay:.0f}s for instance profile to propagate")
            self._sleep(self.propagation_delay)


class DefaultRoleCheck:
    """Verifies the stock Elastic Beanstalk EC2 role when no custom role is managed."""

    resource_type = "iam_role"

    def __init__(self, clients):
        self.iam_client = clients.get_client('iam')

    def reconcile(self, role_name: str = DEFAULT_EB_ROLE) -> ReconcileResult:
        """Confirm the default role exists.

        Raises:
            DependencyError: If the role is missing
        """
        try:
            self.iam_client.get_role(RoleName=role_name)
        except ClientError as e:
            if is_not_found(e):
                raise DependencyError(
                    f"Default Elastic Beanstalk role {role_name} does not exist",
                    context=ErrorContext(resource_id=role_name, resource_type=self.resource_type),
                    suggestions=[
                        'Create it from the Elastic Beanstalk console (it is created with the first environment)',
                        'Or set iam.use_default_role to false to manage a custom role',
                    ],
                ) from e
            raise error_handler.handle_exception(
                e, ErrorContext(resource_id=role_name, resource_type=self.resource_type, operation='read')
            ) from e

        logger.info(f"Using default Elastic Beanstalk role {role_name}")
        return ReconcileResult(
            resource_type=self.resource_type,
            resource_id=role_name,
            action=ReconcileAction.SKIP,
            outcome=Outcome.matches(),
            outputs={'instance_profile': role_name},
        )
