"""Tests for configuration loading, validation and desired-spec building."""

import pytest
import yaml
from pydantic import ValidationError

from eb_converge.config.models import Settings, validate_domain_format
from eb_converge.config.parser import Config, ConfigValidationError, settings_document_from_env
from eb_converge.config.specs import DEFAULT_EB_ROLE, build_desired_specs
from eb_converge.utils.errors import ConfigurationError


ENV_FILE = """\
# eb-converge settings
AWS_REGION=us-west-2
APP_NAME=shop
ENV_NAME=shop-prod
EB_PLATFORM=Python 3.11
MAX_INSTANCES=6
STATIC_ASSETS_BUCKET=shop-static-assets
UPLOADS_BUCKET=shop-uploads
USE_DEFAULT_IAM_ROLE=false
ACM_CERTIFICATE_ARN=arn:aws:acm:us-west-2:123456789012:certificate/abc
CUSTOM_DOMAIN=shop.example.com
AUTO_CONFIGURE_DNS=true
DB_READ_REPLICA_ENABLED=true
DB_READ_REPLICA_COUNT=2
DB_MASTER_PASSWORD=
UNRELATED=ignored
"""


class TestConfigLoading:

    def test_load_yaml(self, tmp_path, settings_document):
        path = tmp_path / "eb-converge.yaml"
        path.write_text(yaml.safe_dump(settings_document))

        settings = Config(str(path)).load()

        assert settings.application.name == "shop"
        assert settings.database.enabled
        assert settings.polling.interval == 20.0

    def test_load_env_file(self, tmp_path):
        path = tmp_path / "production.env"
        path.write_text(ENV_FILE)

        settings = Config(str(path)).load()

        assert settings.aws.region == "us-west-2"
        assert settings.application.platform == "Python 3.11"
        assert settings.application.max_instances == 6
        assert settings.iam.use_default_role is False
        assert settings.domain.name == "shop.example.com"
        assert settings.domain.auto_configure_dns is True
        assert settings.database.read_replicas.count == 2
        assert settings.database.master_password is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigValidationError, match="not found"):
            Config(str(tmp_path / "missing.yaml")).load()

    def test_unparsable_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("aws: [unclosed")
        with pytest.raises(ConfigValidationError, match="Failed to parse YAML"):
            Config(str(path)).load()

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigValidationError, match="mapping"):
            Config(str(path)).load()

    def test_validation_errors_use_field_paths(self, tmp_path, settings_document):
        settings_document["storage"]["uploads_bucket"] = "Not_A_Bucket"
        path = tmp_path / "eb-converge.yaml"
        path.write_text(yaml.safe_dump(settings_document))

        with pytest.raises(ConfigValidationError) as exc_info:
            Config(str(path)).load()

        locations = [error["loc"] for error in exc_info.value.errors]
        assert ["storage", "uploads_bucket"] in locations
        assert "storage -> uploads_bucket" in str(exc_info.value)

    def test_env_file_errors_use_variable_names(self, tmp_path):
        path = tmp_path / "production.env"
        path.write_text(ENV_FILE.replace("UPLOADS_BUCKET=shop-uploads", "UPLOADS_BUCKET=Bad_Name"))

        with pytest.raises(ConfigValidationError) as exc_info:
            Config(str(path)).load()

        assert ["UPLOADS_BUCKET"] in [error["loc"] for error in exc_info.value.errors]

    def test_to_dict_masks_password(self, tmp_path, settings_document):
        settings_document["database"] = {"master_password": "hunter2hunter2"}
        path = tmp_path / "eb-converge.yaml"
        path.write_text(yaml.safe_dump(settings_document))

        config = Config(str(path))
        config.load()

        assert config.to_dict()["database"]["master_password"] == "********"

    def test_settings_document_from_env_skips_blank_values(self):
        document = settings_document_from_env({"APP_NAME": " shop ", "ENV_NAME": "  ", "OTHER": "x"})
        assert document == {"application": {"name": "shop"}}


class TestSettingsValidation:

    def test_capacity_bounds(self, settings_document):
        settings_document["application"].update(min_instances=5, max_instances=2)
        with pytest.raises(ValidationError, match="min_instances"):
            Settings(**settings_document)

    def test_buckets_must_differ(self, settings_document):
        settings_document["storage"]["uploads_bucket"] = "shop-static-assets"
        with pytest.raises(ValidationError, match="must differ"):
            Settings(**settings_document)

    def test_domain_normalized(self, settings_document):
        settings_document["domain"] = {"name": "Shop.Example.COM."}
        assert Settings(**settings_document).domain.name == "shop.example.com"

    def test_invalid_domain(self, settings_document):
        settings_document["domain"] = {"name": "not a domain"}
        with pytest.raises(ValidationError, match="Invalid domain"):
            Settings(**settings_document)

    def test_validate_domain_format(self):
        assert validate_domain_format("example.com.")
        assert validate_domain_format("www.example.co.uk")
        assert not validate_domain_format("localhost")
        assert not validate_domain_format("-bad.example.com")


class TestBuildDesiredSpecs:

    def test_defaults(self, settings):
        specs = build_desired_specs(settings)

        assert specs.region == "us-west-2"
        assert specs.static_bucket.allowed_methods == ("GET", "HEAD")
        assert specs.uploads_bucket.public_access_block.block_public_policy
        assert specs.role.role_name == "shop-shop-prod-eb-ec2-role"
        assert specs.instance_profile.profile_name == "shop-shop-prod-eb-ec2-role-profile"
        assert specs.environment.instance_profile == specs.instance_profile.profile_name
        assert specs.environment.env_vars["UPLOADS_BUCKET"] == "shop-uploads"
        assert specs.https_listener is None
        assert specs.dns is None
        assert specs.database.identifier == "shop-shop-prod-db"
        assert specs.database.secret_name == "shop/shop-prod/db-password"

    def test_s3_policy_scopes_buckets(self, specs):
        statements = specs.s3_policy.document["Statement"]
        assert statements[0]["Action"] == ["s3:GetObject", "s3:ListBucket"]
        assert "arn:aws:s3:::shop-static-assets/*" in statements[0]["Resource"]
        assert statements[1]["Resource"][0] == "arn:aws:s3:::shop-uploads"

    def test_default_role(self, settings_document):
        settings_document["iam"] = {"use_default_role": True}
        specs = build_desired_specs(Settings(**settings_document))
        assert specs.role is None
        assert specs.instance_profile_name == DEFAULT_EB_ROLE
        assert specs.environment.instance_profile == DEFAULT_EB_ROLE

    def test_user_variables_override_defaults(self, settings_document):
        settings_document["application"]["environment_variables"] = {"AWS_REGION": "eu-west-1", "DEBUG": "0"}
        env_vars = build_desired_specs(Settings(**settings_document)).environment.env_vars
        assert env_vars["AWS_REGION"] == "eu-west-1"
        assert env_vars["DEBUG"] == "0"

    def test_https_and_redirect(self, settings_document):
        settings_document["ssl"] = {"certificate_arn": "arn:aws:acm:us-west-2:1:certificate/x"}
        specs = build_desired_specs(Settings(**settings_document))
        assert specs.https_listener.certificate_arn.endswith("/x")
        assert specs.http_redirect.environment_name == "shop-prod"

    def test_no_redirect_for_network_load_balancer(self, settings_document):
        settings_document["application"]["load_balancer_type"] = "network"
        settings_document["ssl"] = {"certificate_arn": "arn:aws:acm:us-west-2:1:certificate/x"}
        specs = build_desired_specs(Settings(**settings_document))
        assert specs.https_listener is not None
        assert specs.http_redirect is None

    def test_skip_ssl(self, settings_document):
        settings_document["ssl"] = {"certificate_arn": "arn:aws:acm:us-west-2:1:certificate/x"}
        specs = build_desired_specs(Settings(**settings_document), skip_ssl=True)
        assert specs.https_listener is None
        assert specs.http_redirect is None

    def test_domain_requires_certificate(self, settings_document):
        settings_document["domain"] = {"name": "shop.example.com"}
        with pytest.raises(ConfigurationError, match="requires ssl.certificate_arn"):
            build_desired_specs(Settings(**settings_document))

    def test_domain_with_skip_ssl(self, settings_document):
        settings_document["domain"] = {"name": "shop.example.com", "auto_configure_dns": True}
        specs = build_desired_specs(Settings(**settings_document), skip_ssl=True)
        assert specs.dns.domain == "shop.example.com"
        assert specs.dns.auto_configure

    def test_database_disabled(self, settings_document):
        settings_document["database"] = {"enabled": False}
        assert build_desired_specs(Settings(**settings_document)).database is None

    def test_max_storage_must_exceed_allocated(self, settings_document):
        settings_document["database"] = {"allocated_storage": 100, "max_allocated_storage": 100}
        with pytest.raises(ConfigurationError, match="max_allocated_storage"):
            build_desired_specs(Settings(**settings_document))

    def test_storage_bound_ignored_without_autoscaling(self, settings_document):
        settings_document["database"] = {
            "allocated_storage": 100,
            "max_allocated_storage": 50,
            "storage_autoscaling": False,
        }
        assert build_desired_specs(Settings(**settings_document)).database.allocated_storage == 100

    @pytest.mark.parametrize("replicas, message", [
        ({"enabled": True, "min_capacity": 3, "max_capacity": 2, "count": 2}, "min_capacity"),
        ({"enabled": True, "min_capacity": 1, "max_capacity": 3, "count": 5}, "count"),
    ])
    def test_replica_bounds(self, settings_document, replicas, message):
        settings_document["database"] = {"read_replicas": replicas}
        with pytest.raises(ConfigurationError, match=message):
            build_desired_specs(Settings(**settings_document))

    def test_replica_bounds_ignored_when_disabled(self, settings_document):
        settings_document["database"] = {"read_replicas": {"enabled": False, "count": 9}}
        assert build_desired_specs(Settings(**settings_document)).database.replicas.count == 9

    def test_database_tags(self, settings_document):
        settings_document["tags"] = {"Team": "payments"}
        tags = dict(build_desired_specs(Settings(**settings_document)).database.tags)
        assert tags == {"Application": "shop", "Environment": "shop-prod", "Team": "payments"}

    def test_password_hidden_from_repr(self, settings_document):
        settings_document["database"] = {"master_password": "hunter2hunter2"}
        database = build_desired_specs(Settings(**settings_document)).database
        assert "hunter2hunter2" not in repr(database)
