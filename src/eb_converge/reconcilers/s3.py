"""S3 bucket reconciler."""

from typing import Any, Dict, Optional
from botocore.exceptions import ClientError

from eb_converge.config.specs import BucketSpec
from eb_converge.reconcilers.base import BaseReconciler, Outcome
from eb_converge.reconcilers.comparators import compare_bucket
from eb_converge.reconcilers.state import ObservedBucket
from eb_converge.utils.errors import is_not_found


class BucketReconciler(BaseReconciler[BucketSpec, ObservedBucket]):
    """Converges a bucket's CORS rules, public access block and versioning."""

    resource_type = "s3_bucket"

    def __init__(self, clients, confirmer=None):
        super().__init__(clients, confirmer)
        self.s3_client = clients.get_client('s3')

    def resource_id(self, desired: BucketSpec) -> str:
        return desired.name

    def get_current_state(self, desired: BucketSpec) -> Optional[ObservedBucket]:
        bucket = desired.name
        try:
            self.s3_client.head_bucket(Bucket=bucket)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

        try:
            cors_rules = tuple(self.s3_client.get_bucket_cors(Bucket=bucket).get('CORSRules', []))
        except ClientError as e:
            if not is_not_found(e):
                raise
            cors_rules = ()

        try:
            response = self.s3_client.get_public_access_block(Bucket=bucket)
            public_access_block = response['PublicAccessBlockConfiguration']
        except ClientError as e:
            if not is_not_found(e):
                raise
            public_access_block = None

        versioning_status = self.s3_client.get_bucket_versioning(Bucket=bucket).get('Status')

        return ObservedBucket(
            name=bucket,
            cors_rules=cors_rules,
            public_access_block=public_access_block,
            versioning_status=versioning_status,
        )

    def compare(self, desired: BucketSpec, observed: Optional[ObservedBucket]) -> Outcome:
        return compare_bucket(desired, observed)

    def create(self, desired: BucketSpec) -> Dict[str, Any]:
        create_params: Dict[str, Any] = {'Bucket': desired.name}

        # us-east-1 rejects an explicit location constraint
        if desired.region != 'us-east-1':
            create_params['CreateBucketConfiguration'] = {
                'LocationConstraint': desired.region
            }

        self.s3_client.create_bucket(**create_params)

        self.s3_client.put_bucket_encryption(
            Bucket=desired.name,
            ServerSideEncryptionConfiguration={
                'Rules': [
                    {
                        'ApplyServerSideEncryptionByDefault': {'SSEAlgorithm': 'AES256'},
                        'BucketKeyEnabled': True
                    }
                ]
            }
        )

        self._apply_configuration(desired)
        return {'bucket': desired.name}

    def update(self, desired: BucketSpec, observed: ObservedBucket, outcome: Outcome) -> Dict[str, Any]:
        self._apply_configuration(desired)
        return {'bucket': desired.name}

    def outputs(self, desired: BucketSpec, observed: ObservedBucket) -> Dict[str, Any]:
        return {'bucket': desired.name}

    def _apply_configuration(self, desired: BucketSpec) -> None:
        if desired.versioning:
            self.s3_client.put_bucket_versioning(
                Bucket=desired.name,
                VersioningConfiguration={'Status': 'Enabled'}
            )

        self.s3_client.put_bucket_cors(
            Bucket=desired.name,
            CORSConfiguration=desired.cors_configuration()
        )

        self.s3_client.put_public_access_block(
            Bucket=desired.name,
            PublicAccessBlockConfiguration=desired.public_access_block.to_api()
        )
