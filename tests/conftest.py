"""Shared fixtures for eb-converge tests.

moto's ``mock_aws`` backs the services it models well (S3, IAM, STS,
Secrets Manager, Route 53). Elastic Beanstalk, ELBv2, EC2 instance lookups,
RDS and Application Auto Scaling are exercised against MagicMock clients so
that status transitions and option settings can be scripted exactly.
"""

from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from eb_converge.config.models import Settings
from eb_converge.config.specs import build_desired_specs
from eb_converge.utils.aws_client import AWSClientManager, AWSCredentials
from eb_converge.utils.polling import BoundedPoller

REGION = "us-west-2"


class FakeClock:
    """Monotonic clock advanced only by its own sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeClients:
    """Stand-in for AWSClientManager handing out pre-built clients."""

    def __init__(self, account_id: str = "123456789012", **clients):
        self.clients = dict(clients)
        self.account_id = account_id
        self.requested = []

    def get_client(self, service_name: str):
        self.requested.append(service_name)
        if service_name not in self.clients:
            self.clients[service_name] = MagicMock(name=service_name)
        return self.clients[service_name]

    def validate_credentials(self) -> AWSCredentials:
        return AWSCredentials(
            account_id=self.account_id,
            user_arn=f"arn:aws:iam::{self.account_id}:user/test",
            user_id="AIDTEST",
            region=REGION,
        )


def client_error(code: str, operation: str = "Operation", message: str = "error") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class EnvironmentScript:
    """describe_environments side effect walking through a list of statuses.

    ``None`` means the environment does not exist. The last status repeats
    once the script is exhausted.
    """

    def __init__(self, *statuses, name: str = "shop-prod"):
        self.statuses = list(statuses)
        self.name = name
        self.calls = 0

    def __call__(self, **kwargs):
        self.calls += 1
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if status is None:
            return {"Environments": []}
        return {
            "Environments": [{
                "EnvironmentName": self.name,
                "EnvironmentId": "e-abc123",
                "Status": status,
                "Health": "Green",
                "CNAME": f"{self.name}.us-west-2.elasticbeanstalk.com",
                "SolutionStackName": "64bit Amazon Linux 2023 v4.0.6 running Python 3.11",
            }]
        }


def configuration_settings(options):
    """describe_configuration_settings response for ``{(namespace, name): value}``."""
    return {
        "ConfigurationSettings": [{
            "OptionSettings": [
                {"Namespace": namespace, "OptionName": name, "Value": value}
                for (namespace, name), value in options.items()
            ]
        }]
    }


def eb_client(*statuses, options=None):
    """MagicMock Elastic Beanstalk client scripted with environment statuses."""
    client = MagicMock(name="elasticbeanstalk")
    client.describe_environments.side_effect = EnvironmentScript(*statuses)
    client.describe_configuration_settings.return_value = configuration_settings(options or {})
    return client


@pytest.fixture
def aws_credentials(monkeypatch):
    """Dummy credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def mock_aws_env(aws_credentials):
    """Activate moto's mock_aws context for the test."""
    with mock_aws():
        yield


@pytest.fixture
def aws_clients(mock_aws_env):
    """AWSClientManager bound to a moto-backed session."""
    return AWSClientManager(session=boto3.Session(region_name=REGION))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poller(clock):
    """Poller with a 20s interval and 100s timeout driven by the fake clock."""
    return BoundedPoller(interval=20.0, timeout=100.0, sleep=clock.sleep, clock=clock)


@pytest.fixture
def settings_document():
    """Minimal valid configuration document."""
    return {
        "aws": {"region": REGION},
        "application": {
            "name": "shop",
            "environment": "shop-prod",
            "platform": "Python 3.11",
        },
        "storage": {
            "static_assets_bucket": "shop-static-assets",
            "uploads_bucket": "shop-uploads",
        },
    }


@pytest.fixture
def settings(settings_document):
    return Settings(**settings_document)


@pytest.fixture
def specs(settings):
    return build_desired_specs(settings)


@pytest.fixture(autouse=True)
def _no_aws_profile(monkeypatch):
    """Keep a developer's AWS_PROFILE from leaking into sessions built by tests."""
    monkeypatch.delenv("AWS_PROFILE", raising=False)
    yield
