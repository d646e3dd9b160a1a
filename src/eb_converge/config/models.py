"""Pydantic models for the configuration schema."""

import re
from typing import Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
DOMAIN_NAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)


def validate_domain_format(domain: str) -> bool:
    """Return True if ``domain`` is a syntactically valid DNS name (trailing dot allowed)."""
    return bool(DOMAIN_NAME_PATTERN.match(domain.lower().rstrip(".")))


class AWSConfig(BaseModel):
    """Target account settings."""

    region: str = Field(..., min_length=1, pattern=r"^[a-z]{2}(-[a-z]+)+-\d$")
    profile: Optional[str] = None


class ApplicationConfig(BaseModel):
    """Elastic Beanstalk application and environment."""

    name: str = Field(..., min_length=1, max_length=100)
    environment: str = Field(..., min_length=4, max_length=40, pattern=r"^[A-Za-z0-9][A-Za-z0-9-]*$")
    platform: str = Field(..., min_length=1, description="Substring matched against solution stack names")
    instance_type: str = Field("t3.micro", min_length=1)
    min_instances: int = Field(1, ge=1)
    max_instances: int = Field(4, ge=1)
    load_balancer_type: str = Field("application", pattern="^(application|network|classic)$")
    health_check_path: str = Field("/", pattern="^/")
    environment_variables: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_capacity(self):
        if self.min_instances > self.max_instances:
            raise ValueError(
                f"min_instances ({self.min_instances}) cannot exceed max_instances ({self.max_instances})"
            )
        return self


class StorageConfig(BaseModel):
    """S3 buckets for static assets and user uploads."""

    static_assets_bucket: str
    uploads_bucket: str
    versioning: bool = False

    @field_validator("static_assets_bucket", "uploads_bucket")
    @classmethod
    def validate_bucket_name(cls, v: str) -> str:
        if not 3 <= len(v) <= 63:
            raise ValueError(f"Bucket name must be 3-63 characters: {v}")
        if not BUCKET_NAME_PATTERN.match(v):
            raise ValueError(f"Bucket name must use lowercase letters, numbers and hyphens: {v}")
        return v

    @model_validator(mode="after")
    def validate_distinct(self):
        if self.static_assets_bucket == self.uploads_bucket:
            raise ValueError("static_assets_bucket and uploads_bucket must differ")
        return self


class IAMConfig(BaseModel):
    """Instance role settings."""

    use_default_role: bool = False
    role_name: Optional[str] = Field(None, min_length=1, max_length=64, pattern=r"^[\w+=,.@-]+$")


class SSLConfig(BaseModel):
    """HTTPS listener settings."""

    certificate_arn: Optional[str] = Field(None, pattern=r"^arn:aws[\w-]*:acm:")
    ssl_policy: str = "ELBSecurityPolicy-TLS13-1-2-2021-06"
    https_redirect: bool = True


class DomainConfig(BaseModel):
    """Custom domain and Route 53 settings."""

    name: Optional[str] = None
    auto_configure_dns: bool = False

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        v = v.strip().lower()
        if not validate_domain_format(v):
            raise ValueError(f"Invalid domain name format: {v}")
        return v.rstrip(".")


class ReadReplicaConfig(BaseModel):
    """Read replica count and autoscaling settings."""

    enabled: bool = False
    count: int = Field(1, ge=0)
    min_capacity: int = Field(1, ge=0)
    max_capacity: int = Field(3, ge=1, le=15)
    target_cpu: float = Field(70.0, gt=0, le=100)
    scale_in_cooldown: int = Field(300, ge=0)
    scale_out_cooldown: int = Field(60, ge=0)


class DatabaseConfig(BaseModel):
    """RDS PostgreSQL settings."""

    enabled: bool = True
    instance_class: str = "db.t3.micro"
    engine: str = "postgres"
    engine_version: str = "15.4"
    allocated_storage: int = Field(20, ge=20, le=65536)
    storage_type: str = Field("gp3", pattern="^(gp2|gp3|io1|io2|standard)$")
    storage_encrypted: bool = True
    multi_az: bool = False
    publicly_accessible: bool = False
    db_name: str = Field("appdb", pattern=r"^[A-Za-z][A-Za-z0-9_]*$", max_length=63)
    username: str = Field("dbadmin", pattern=r"^[A-Za-z][A-Za-z0-9_]*$", max_length=63)
    master_password: Optional[str] = Field(None, min_length=8)
    backup_retention_days: int = Field(7, ge=0, le=35)
    backup_window: str = Field("03:00-04:00", pattern=r"^\d{2}:\d{2}-\d{2}:\d{2}$")
    maintenance_window: str = "sun:04:00-sun:05:00"
    storage_autoscaling: bool = True
    max_allocated_storage: int = Field(100, ge=20, le=65536)
    read_replicas: ReadReplicaConfig = Field(default_factory=ReadReplicaConfig)
    publish_environment_variables: bool = True


class PollingConfig(BaseModel):
    """Bounded wait settings, in seconds."""

    interval: float = Field(20.0, gt=0)
    environment_timeout: float = Field(900.0, ge=0)
    database_timeout: float = Field(1800.0, ge=0)


class Settings(BaseModel):
    """Complete configuration for one application environment."""

    aws: AWSConfig
    application: ApplicationConfig
    storage: StorageConfig
    iam: IAMConfig = Field(default_factory=IAMConfig)
    ssl: SSLConfig = Field(default_factory=SSLConfig)
    domain: DomainConfig = Field(default_factory=DomainConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    tags: Dict[str, str] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        for key, value in v.items():
            if not key or len(key) > 128:
                raise ValueError(f"Tag key must be 1-128 characters: {key!r}")
            if len(value) > 256:
                raise ValueError(f"Tag value exceeds 256 characters for key '{key}'")
        return v
