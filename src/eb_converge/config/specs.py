"""Immutable desired-state specifications built once per run from Settings."""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from eb_converge.config.models import Settings
from eb_converge.utils.errors import ConfigurationError

DEFAULT_EB_ROLE = "aws-elasticbeanstalk-ec2-role"

EB_MANAGED_POLICY_ARNS = (
    "arn:aws:iam::aws:policy/AWSElasticBeanstalkWebTier",
    "arn:aws:iam::aws:policy/AWSElasticBeanstalkWorkerTier",
    "arn:aws:iam::aws:policy/AWSElasticBeanstalkMulticontainerDocker",
)

EC2_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}

POSTGRES_PORT = 5432
DNS_CNAME_TTL = 300


def _freeze(mapping: Optional[Mapping[str, str]]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((mapping or {}).items()))


@dataclass(frozen=True)
class PublicAccessBlock:
    block_public_acls: bool
    ignore_public_acls: bool
    block_public_policy: bool
    restrict_public_buckets: bool

    def to_api(self) -> Dict[str, bool]:
        return {
            "BlockPublicAcls": self.block_public_acls,
            "IgnorePublicAcls": self.ignore_public_acls,
            "BlockPublicPolicy": self.block_public_policy,
            "RestrictPublicBuckets": self.restrict_public_buckets,
        }


@dataclass(frozen=True)
class BucketSpec:
    name: str
    region: str
    allowed_methods: Tuple[str, ...]
    public_access_block: PublicAccessBlock
    allowed_origins: Tuple[str, ...] = ("*",)
    allowed_headers: Tuple[str, ...] = ("*",)
    expose_headers: Tuple[str, ...] = ("ETag",)
    max_age_seconds: int = 3000
    versioning: bool = False

    def cors_configuration(self) -> Dict[str, Any]:
        return {
            "CORSRules": [
                {
                    "AllowedHeaders": list(self.allowed_headers),
                    "AllowedMethods": list(self.allowed_methods),
                    "AllowedOrigins": list(self.allowed_origins),
                    "ExposeHeaders": list(self.expose_headers),
                    "MaxAgeSeconds": self.max_age_seconds,
                }
            ]
        }


@dataclass(frozen=True)
class RoleSpec:
    role_name: str
    trust_policy: Mapping[str, Any]
    managed_policy_arns: Tuple[str, ...]


@dataclass(frozen=True)
class ManagedPolicySpec:
    policy_name: str
    document: Mapping[str, Any]
    role_name: str
    description: str = ""


@dataclass(frozen=True)
class InstanceProfileSpec:
    profile_name: str
    role_name: str


@dataclass(frozen=True)
class ApplicationSpec:
    application_name: str


@dataclass(frozen=True)
class EnvironmentSpec:
    application_name: str
    environment_name: str
    platform: str
    instance_type: str
    min_size: int
    max_size: int
    instance_profile: str
    load_balancer_type: str
    health_check_path: str
    environment_variables: Tuple[Tuple[str, str], ...] = ()

    @property
    def env_vars(self) -> Dict[str, str]:
        return dict(self.environment_variables)


@dataclass(frozen=True)
class EnvironmentVariablesSpec:
    application_name: str
    environment_name: str
    variables: Tuple[Tuple[str, str], ...]
    secret_keys: FrozenSet[str] = frozenset()

    @property
    def env_vars(self) -> Dict[str, str]:
        return dict(self.variables)


@dataclass(frozen=True)
class HttpsListenerSpec:
    application_name: str
    environment_name: str
    certificate_arn: str
    ssl_policy: str


@dataclass(frozen=True)
class HttpRedirectSpec:
    environment_name: str


@dataclass(frozen=True)
class ReplicaSpec:
    enabled: bool
    count: int
    min_capacity: int
    max_capacity: int
    target_cpu: float
    scale_in_cooldown: int
    scale_out_cooldown: int


@dataclass(frozen=True)
class DatabaseSpec:
    identifier: str
    application_name: str
    environment_name: str
    instance_class: str
    engine: str
    engine_version: str
    allocated_storage: int
    storage_type: str
    storage_encrypted: bool
    multi_az: bool
    publicly_accessible: bool
    db_name: str
    username: str
    backup_retention_days: int
    backup_window: str
    maintenance_window: str
    storage_autoscaling: bool
    max_allocated_storage: int
    replicas: ReplicaSpec
    master_password: Optional[str] = field(default=None, repr=False)
    publish_environment_variables: bool = True
    port: int = POSTGRES_PORT
    tags: Tuple[Tuple[str, str], ...] = ()

    @property
    def subnet_group_name(self) -> str:
        return f"{self.identifier}-subnet-group"

    @property
    def security_group_name(self) -> str:
        return f"{self.identifier}-sg"

    @property
    def secret_name(self) -> str:
        return f"{self.application_name}/{self.environment_name}/db-password"

    @property
    def autoscaling_resource_id(self) -> str:
        return f"db:{self.identifier}"

    @property
    def scaling_policy_name(self) -> str:
        return f"{self.identifier}-cpu-autoscaling"

    def replica_identifier(self, ordinal: int) -> str:
        return f"{self.identifier}-replica-{ordinal}"

    def validate(self) -> None:
        """Check numeric bounds. Must run before any AWS call.

        Raises:
            ConfigurationError: If a bound is violated
        """
        if self.storage_autoscaling and self.max_allocated_storage <= self.allocated_storage:
            raise ConfigurationError(
                f"max_allocated_storage ({self.max_allocated_storage} GB) must be greater than "
                f"allocated_storage ({self.allocated_storage} GB)",
                suggestions=["Raise max_allocated_storage or disable storage autoscaling"],
            )

        if self.replicas.enabled:
            r = self.replicas
            if r.min_capacity > r.max_capacity:
                raise ConfigurationError(
                    f"Read replica min_capacity ({r.min_capacity}) cannot be greater than "
                    f"max_capacity ({r.max_capacity})"
                )
            if not r.min_capacity <= r.count <= r.max_capacity:
                raise ConfigurationError(
                    f"Read replica count ({r.count}) must be between min ({r.min_capacity}) "
                    f"and max ({r.max_capacity})"
                )


@dataclass(frozen=True)
class DnsSpec:
    domain: str
    auto_configure: bool


@dataclass(frozen=True)
class DesiredSpecs:
    """Everything a run converges toward. Built once, never mutated."""

    region: str
    static_bucket: BucketSpec
    uploads_bucket: BucketSpec
    application: ApplicationSpec
    environment: EnvironmentSpec
    role: Optional[RoleSpec]
    s3_policy: Optional[ManagedPolicySpec]
    instance_profile: Optional[InstanceProfileSpec]
    use_default_role: bool = False
    https_listener: Optional[HttpsListenerSpec] = None
    http_redirect: Optional[HttpRedirectSpec] = None
    database: Optional[DatabaseSpec] = None
    dns: Optional[DnsSpec] = None

    @property
    def instance_profile_name(self) -> str:
        if self.use_default_role or self.instance_profile is None:
            return DEFAULT_EB_ROLE
        return self.instance_profile.profile_name


def s3_access_policy(static_bucket: str, uploads_bucket: str) -> Dict[str, Any]:
    """Policy granting read access to static assets and full access to uploads."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "StaticAssetsReadAccess",
                "Effect": "Allow",
                "Action": ["s3:GetObject", "s3:ListBucket"],
                "Resource": [
                    f"arn:aws:s3:::{static_bucket}",
                    f"arn:aws:s3:::{static_bucket}/*",
                ],
            },
            {
                "Sid": "UploadsFullAccess",
                "Effect": "Allow",
                "Action": ["s3:*"],
                "Resource": [
                    f"arn:aws:s3:::{uploads_bucket}",
                    f"arn:aws:s3:::{uploads_bucket}/*",
                ],
            },
        ],
    }


def build_desired_specs(settings: Settings, skip_ssl: bool = False) -> DesiredSpecs:
    """Translate validated settings into immutable desired specs.

    Args:
        settings: Validated configuration
        skip_ssl: Leave the HTTPS listener and redirect unmanaged

    Returns:
        DesiredSpecs for the run

    Raises:
        ConfigurationError: If cross-field constraints are violated
    """
    app = settings.application
    region = settings.aws.region

    static_bucket = BucketSpec(
        name=settings.storage.static_assets_bucket,
        region=region,
        allowed_methods=("GET", "HEAD"),
        public_access_block=PublicAccessBlock(True, True, False, False),
        expose_headers=("ETag",),
        versioning=settings.storage.versioning,
    )
    uploads_bucket = BucketSpec(
        name=settings.storage.uploads_bucket,
        region=region,
        allowed_methods=("GET", "HEAD", "PUT", "POST", "DELETE"),
        public_access_block=PublicAccessBlock(True, True, True, True),
        expose_headers=("ETag", "x-amz-request-id"),
        versioning=settings.storage.versioning,
    )

    role = s3_policy = instance_profile = None
    if not settings.iam.use_default_role:
        role_name = settings.iam.role_name or f"{app.name}-{app.environment}-eb-ec2-role"
        role = RoleSpec(
            role_name=role_name,
            trust_policy=EC2_TRUST_POLICY,
            managed_policy_arns=EB_MANAGED_POLICY_ARNS,
        )
        s3_policy = ManagedPolicySpec(
            policy_name=f"{role_name}-s3-access",
            document=s3_access_policy(static_bucket.name, uploads_bucket.name),
            role_name=role_name,
            description=f"S3 access for {app.name} {app.environment}",
        )
        instance_profile = InstanceProfileSpec(profile_name=f"{role_name}-profile", role_name=role_name)

    env_vars = {
        "STATIC_ASSETS_BUCKET": static_bucket.name,
        "UPLOADS_BUCKET": uploads_bucket.name,
        "AWS_REGION": region,
    }
    env_vars.update(app.environment_variables)

    environment = EnvironmentSpec(
        application_name=app.name,
        environment_name=app.environment,
        platform=app.platform,
        instance_type=app.instance_type,
        min_size=app.min_instances,
        max_size=app.max_instances,
        instance_profile=(
            DEFAULT_EB_ROLE if instance_profile is None else instance_profile.profile_name
        ),
        load_balancer_type=app.load_balancer_type,
        health_check_path=app.health_check_path,
        environment_variables=_freeze(env_vars),
    )

    https_listener = http_redirect = None
    if not skip_ssl:
        if settings.ssl.certificate_arn:
            https_listener = HttpsListenerSpec(
                application_name=app.name,
                environment_name=app.environment,
                certificate_arn=settings.ssl.certificate_arn,
                ssl_policy=settings.ssl.ssl_policy,
            )
            if settings.ssl.https_redirect and app.load_balancer_type == "application":
                http_redirect = HttpRedirectSpec(environment_name=app.environment)
        elif settings.domain.name:
            raise ConfigurationError(
                f"Custom domain {settings.domain.name} requires ssl.certificate_arn",
                suggestions=["Set ssl.certificate_arn (ACM_CERTIFICATE_ARN) or pass --skip-ssl"],
            )

    database = None
    db = settings.database
    if db.enabled:
        database = DatabaseSpec(
            identifier=f"{app.name}-{app.environment}-db",
            application_name=app.name,
            environment_name=app.environment,
            instance_class=db.instance_class,
            engine=db.engine,
            engine_version=db.engine_version,
            allocated_storage=db.allocated_storage,
            storage_type=db.storage_type,
            storage_encrypted=db.storage_encrypted,
            multi_az=db.multi_az,
            publicly_accessible=db.publicly_accessible,
            db_name=db.db_name,
            username=db.username,
            backup_retention_days=db.backup_retention_days,
            backup_window=db.backup_window,
            maintenance_window=db.maintenance_window,
            storage_autoscaling=db.storage_autoscaling,
            max_allocated_storage=db.max_allocated_storage,
            replicas=ReplicaSpec(
                enabled=db.read_replicas.enabled,
                count=db.read_replicas.count,
                min_capacity=db.read_replicas.min_capacity,
                max_capacity=db.read_replicas.max_capacity,
                target_cpu=db.read_replicas.target_cpu,
                scale_in_cooldown=db.read_replicas.scale_in_cooldown,
                scale_out_cooldown=db.read_replicas.scale_out_cooldown,
            ),
            master_password=db.master_password,
            publish_environment_variables=db.publish_environment_variables,
            tags=_freeze({"Application": app.name, "Environment": app.environment, **settings.tags}),
        )
        database.validate()

    dns = None
    if settings.domain.name:
        dns = DnsSpec(domain=settings.domain.name, auto_configure=settings.domain.auto_configure_dns)

    return DesiredSpecs(
        region=region,
        static_bucket=static_bucket,
        uploads_bucket=uploads_bucket,
        application=ApplicationSpec(application_name=app.name),
        environment=environment,
        role=role,
        s3_policy=s3_policy,
        instance_profile=instance_profile,
        use_default_role=settings.iam.use_default_role,
        https_listener=https_listener,
        http_redirect=http_redirect,
        database=database,
        dns=dns,
    )
