"""boto3 session and client management."""

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from typing import Optional, Dict, Any
from dataclasses import dataclass
from eb_converge.utils.errors import ErrorContext, error_handler
from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AWSCredentials:
    """Caller identity for the active session."""
    account_id: str
    user_arn: str
    user_id: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """Owns the boto3 session and hands out cached service clients.

    Reconcilers never build clients themselves; they receive them from here
    so that a single region/profile applies to the whole run.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        session: Optional[boto3.Session] = None,
        max_pool_connections: int = 10
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            session: Pre-built boto3 session (takes precedence over profile)
            max_pool_connections: Maximum number of connections in the connection pool
        """
        self.profile = profile
        self.region = region
        self._session = session
        self._clients: Dict[str, Any] = {}
        self._credentials: Optional[AWSCredentials] = None

        # Transport-level retries only. Reconciliation itself never retries.
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={
                'mode': 'adaptive',
                'max_attempts': 5
            },
            connect_timeout=10,
            read_timeout=60
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create the boto3 session."""
        if self._session is None:
            kwargs = {}
            if self.profile:
                kwargs['profile_name'] = self.profile
            if self.region:
                kwargs['region_name'] = self.region

            self._session = boto3.Session(**kwargs)
            logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                        f"Profile: {self.profile or 'default'}")

        return self._session

    def get_client(self, service_name: str):
        """Get a cached boto3 client for a service.

        Args:
            service_name: AWS service name (e.g., 'rds', 'route53')

        Returns:
            Boto3 client for the service
        """
        if service_name not in self._clients:
            self._clients[service_name] = self.session.client(service_name, config=self._boto_config)
            logger.debug(f"Created {service_name} client")
        return self._clients[service_name]

    def validate_credentials(self) -> AWSCredentials:
        """Validate AWS credentials and return caller identity.

        Raises:
            CredentialError: If no usable credentials are found
            TransientAPIError: If the identity call fails
        """
        if self._credentials is not None:
            return self._credentials

        try:
            identity = self.get_client('sts').get_caller_identity()
        except (NoCredentialsError, PartialCredentialsError, ClientError) as e:
            raise error_handler.handle_exception(
                e, ErrorContext(aws_service='sts', operation='validate_credentials')
            ) from e

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            user_id=identity['UserId'],
            region=self.get_region(),
            profile=self.profile
        )

        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"User: {self._credentials.user_arn}, Region: {self._credentials.region}")

        return self._credentials

    def get_region(self) -> str:
        """Get the AWS region."""
        return self.session.region_name

    def clear_cache(self):
        """Clear cached clients and credentials."""
        self._clients.clear()
        self._credentials = None
        logger.debug("Cleared AWS client cache")
