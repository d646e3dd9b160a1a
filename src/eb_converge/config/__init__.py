"""Configuration management for eb-converge."""

from .models import (
    AWSConfig,
    ApplicationConfig,
    StorageConfig,
    IAMConfig,
    SSLConfig,
    DomainConfig,
    DatabaseConfig,
    ReadReplicaConfig,
    PollingConfig,
    Settings,
    validate_domain_format,
)
from .parser import Config, ConfigValidationError
from .specs import DesiredSpecs, build_desired_specs

__all__ = [
    "AWSConfig",
    "ApplicationConfig",
    "StorageConfig",
    "IAMConfig",
    "SSLConfig",
    "DomainConfig",
    "DatabaseConfig",
    "ReadReplicaConfig",
    "PollingConfig",
    "Settings",
    "validate_domain_format",
    "Config",
    "ConfigValidationError",
    "DesiredSpecs",
    "build_desired_specs",
]
