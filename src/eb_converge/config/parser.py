"""Configuration loading from YAML or a KEY=VALUE env file."""

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from eb_converge.config.models import Settings
from eb_converge.utils.errors import ConfigurationError
from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)

ENV_FILE_SUFFIXES = {".env"}

# Env-file variable name -> location in the Settings document.
ENV_VARIABLES: Dict[str, Tuple[str, ...]] = {
    "AWS_REGION": ("aws", "region"),
    "AWS_PROFILE": ("aws", "profile"),
    "APP_NAME": ("application", "name"),
    "ENV_NAME": ("application", "environment"),
    "EB_PLATFORM": ("application", "platform"),
    "INSTANCE_TYPE": ("application", "instance_type"),
    "MIN_INSTANCES": ("application", "min_instances"),
    "MAX_INSTANCES": ("application", "max_instances"),
    "LB_TYPE": ("application", "load_balancer_type"),
    "HEALTH_CHECK_PATH": ("application", "health_check_path"),
    "STATIC_ASSETS_BUCKET": ("storage", "static_assets_bucket"),
    "UPLOADS_BUCKET": ("storage", "uploads_bucket"),
    "ENABLE_S3_VERSIONING": ("storage", "versioning"),
    "USE_DEFAULT_IAM_ROLE": ("iam", "use_default_role"),
    "CUSTOM_IAM_ROLE_NAME": ("iam", "role_name"),
    "ACM_CERTIFICATE_ARN": ("ssl", "certificate_arn"),
    "SSL_POLICY": ("ssl", "ssl_policy"),
    "ENABLE_HTTPS_REDIRECT": ("ssl", "https_redirect"),
    "CUSTOM_DOMAIN": ("domain", "name"),
    "AUTO_CONFIGURE_DNS": ("domain", "auto_configure_dns"),
    "DB_ENABLED": ("database", "enabled"),
    "DB_INSTANCE_CLASS": ("database", "instance_class"),
    "DB_ENGINE": ("database", "engine"),
    "DB_ENGINE_VERSION": ("database", "engine_version"),
    "DB_ALLOCATED_STORAGE": ("database", "allocated_storage"),
    "DB_STORAGE_TYPE": ("database", "storage_type"),
    "DB_STORAGE_ENCRYPTED": ("database", "storage_encrypted"),
    "DB_MULTI_AZ": ("database", "multi_az"),
    "DB_PUBLICLY_ACCESSIBLE": ("database", "publicly_accessible"),
    "DB_NAME": ("database", "db_name"),
    "DB_USERNAME": ("database", "username"),
    "DB_MASTER_PASSWORD": ("database", "master_password"),
    "DB_BACKUP_RETENTION_DAYS": ("database", "backup_retention_days"),
    "DB_BACKUP_WINDOW": ("database", "backup_window"),
    "DB_MAINTENANCE_WINDOW": ("database", "maintenance_window"),
    "DB_STORAGE_AUTOSCALING_ENABLED": ("database", "storage_autoscaling"),
    "DB_MAX_ALLOCATED_STORAGE": ("database", "max_allocated_storage"),
    "DB_PUBLISH_ENV_VARS": ("database", "publish_environment_variables"),
    "DB_READ_REPLICA_ENABLED": ("database", "read_replicas", "enabled"),
    "DB_READ_REPLICA_COUNT": ("database", "read_replicas", "count"),
    "DB_READ_REPLICA_MIN_CAPACITY": ("database", "read_replicas", "min_capacity"),
    "DB_READ_REPLICA_MAX_CAPACITY": ("database", "read_replicas", "max_capacity"),
    "DB_READ_REPLICA_TARGET_CPU": ("database", "read_replicas", "target_cpu"),
    "DB_READ_REPLICA_SCALE_IN_COOLDOWN": ("database", "read_replicas", "scale_in_cooldown"),
    "DB_READ_REPLICA_SCALE_OUT_COOLDOWN": ("database", "read_replicas", "scale_out_cooldown"),
    "POLL_INTERVAL": ("polling", "interval"),
    "ENVIRONMENT_TIMEOUT": ("polling", "environment_timeout"),
    "DATABASE_TIMEOUT": ("polling", "database_timeout"),
}

ENV_LOCATIONS = {location: name for name, location in ENV_VARIABLES.items()}


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


def settings_document_from_env(values: Mapping[str, Optional[str]]) -> Dict[str, Any]:
    """Build a nested Settings document from flat env-file variables.

    Unknown variables are ignored and empty values are treated as unset.
    """
    document: Dict[str, Any] = {}
    for name, location in ENV_VARIABLES.items():
        value = values.get(name)
        if value is None or value.strip() == "":
            continue
        node = document
        for key in location[:-1]:
            node = node.setdefault(key, {})
        node[location[-1]] = value.strip()
    return document


class Config:
    """Loads and validates configuration for a convergence run."""

    def __init__(self, config_path: str):
        """Initialize configuration manager.

        Args:
            config_path: Path to a YAML file or a KEY=VALUE env file
        """
        self.config_path = Path(config_path)
        self.data: Dict[str, Any] = {}
        self.settings: Optional[Settings] = None

    @property
    def is_env_file(self) -> bool:
        return self.config_path.suffix in ENV_FILE_SUFFIXES or self.config_path.name.endswith(".env")

    def load(self) -> Settings:
        """Load and validate configuration.

        Returns:
            Validated Settings

        Raises:
            ConfigValidationError: If the file is missing, unparsable or invalid
        """
        if not self.config_path.exists():
            raise ConfigValidationError(f"Configuration file not found: {self.config_path}")

        if self.is_env_file:
            self.data = settings_document_from_env(dotenv_values(self.config_path))
        else:
            try:
                with open(self.config_path, "r") as f:
                    self.data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigValidationError(f"Failed to parse YAML: {e}") from e
            if not isinstance(self.data, dict):
                raise ConfigValidationError("Configuration root must be a mapping")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        logger.debug(f"Loaded configuration from {self.config_path}")
        return self.settings

    def validate(self) -> List[Dict]:
        """Validate the loaded document against the schema.

        Returns:
            List of validation errors (empty if valid)
        """
        try:
            self.settings = Settings(**self.data)
        except ValidationError as e:
            return [
                {"loc": self._display_location(error["loc"]), "msg": error["msg"]}
                for error in e.errors()
            ]
        return []

    def _display_location(self, loc) -> List[Any]:
        if self.is_env_file:
            name = ENV_LOCATIONS.get(tuple(loc))
            if name:
                return [name]
        return list(loc)

    def to_dict(self) -> Dict[str, Any]:
        """Return the validated configuration with secrets masked."""
        if self.settings is None:
            return {}
        data = self.settings.model_dump()
        if data["database"].get("master_password"):
            data["database"]["master_password"] = "********"
        return data
