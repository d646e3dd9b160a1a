"""Publishing new IAM managed policy versions under the version ceiling."""

import json
from typing import Any, List, Mapping, Optional

from botocore.exceptions import ClientError

from eb_converge.reconcilers.state import PolicyVersion
from eb_converge.utils.errors import is_not_found
from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)

# IAM keeps at most five versions of a managed policy.
MAX_POLICY_VERSIONS = 5
# Prune once this many exist so the new version never lands at the ceiling.
PRUNE_THRESHOLD = MAX_POLICY_VERSIONS - 1


class PolicyVersionManager:
    """Creates a new default version of a managed policy, pruning old ones first."""

    def __init__(self, iam_client):
        self.iam_client = iam_client

    def list_versions(self, policy_arn: str) -> List[PolicyVersion]:
        response = self.iam_client.list_policy_versions(PolicyArn=policy_arn)
        return [PolicyVersion.from_api(v) for v in response.get('Versions', [])]

    @staticmethod
    def select_prunable(versions: List[PolicyVersion]) -> Optional[PolicyVersion]:
        """Oldest non-default version: earliest CreateDate, then lowest version number."""
        candidates = [v for v in versions if not v.is_default]
        if not candidates:
            return None
        return min(candidates, key=lambda v: (v.create_date is None, v.create_date, v.number))

    def publish(self, policy_arn: str, document: Mapping[str, Any]) -> str:
        """Publish ``document`` as the new default version.

        Args:
            policy_arn: ARN of an existing managed policy
            document: Policy document

        Returns:
            The new version id
        """
        versions = self.list_versions(policy_arn)

        if len(versions) >= PRUNE_THRESHOLD:
            oldest = self.select_prunable(versions)
            if oldest is not None:
                logger.info(f"Pruning policy version {oldest.version_id} of {policy_arn} "
                            f"({len(versions)} versions stored)")
                try:
                    self.iam_client.delete_policy_version(
                        PolicyArn=policy_arn,
                        VersionId=oldest.version_id
                    )
                except ClientError as e:
                    # Already gone is fine; anything else is not.
                    if not is_not_found(e):
                        raise

        response = self.iam_client.create_policy_version(
            PolicyArn=policy_arn,
            PolicyDocument=json.dumps(document),
            SetAsDefault=True
        )
        version_id = response['PolicyVersion']['VersionId']
        logger.info(f"Published policy version {version_id} of {policy_arn}")
        return version_id
