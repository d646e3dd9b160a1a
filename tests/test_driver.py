"""Tests for the convergence driver's ordering and failure handling."""

import json
from dataclasses import replace
from unittest.mock import MagicMock

import boto3
import pytest

from conftest import REGION, FakeClients, client_error, configuration_settings
from eb_converge.config.models import PollingConfig, Settings
from eb_converge.config.specs import build_desired_specs
from eb_converge.orchestrator.driver import ConvergenceDriver, RunSummary
from eb_converge.reconcilers.base import Outcome, ReconcileAction, ReconcileResult
from eb_converge.reconcilers.network import LoadBalancer, NetworkTopology
from eb_converge.reconcilers.route53 import DnsRecordResult, DnsRecordStatus
from eb_converge.utils.errors import DependencyError, TransientAPIError

DRIVER = "eb_converge.orchestrator.driver"

LOAD_BALANCER = LoadBalancer(
    name="awseb-shop",
    arn="arn:aws:elasticloadbalancing:us-west-2:1:loadbalancer/app/awseb-shop/abc",
    dns_name="awseb-shop-1.us-west-2.elb.amazonaws.com",
    canonical_hosted_zone_id="Z1H1FL5HABSF5",
)


def result(resource_type, resource_id, action=ReconcileAction.SKIP, warning=None, **outputs):
    outcome = Outcome.absent() if action is ReconcileAction.CREATE else Outcome.matches()
    return ReconcileResult(resource_type, resource_id, action, outcome, warning=warning, outputs=outputs)


class Stubs:
    """Patches every reconciler class the driver builds and records call order."""

    def __init__(self, monkeypatch):
        self.calls = []
        self.classes = {}
        profile = "shop-shop-prod-eb-ec2-role-profile"
        self._stub(monkeypatch, "BucketReconciler", lambda spec: result("s3_bucket", spec.name))
        self._stub(monkeypatch, "RoleReconciler", lambda spec: result("iam_role", spec.role_name))
        self._stub(monkeypatch, "ManagedPolicyReconciler", lambda spec: result("iam_policy", spec.policy_name))
        self._stub(
            monkeypatch, "InstanceProfileReconciler",
            lambda spec: result("iam_instance_profile", spec.profile_name, instance_profile=profile),
        )
        self._stub(
            monkeypatch, "DefaultRoleCheck",
            lambda: result("iam_role", "aws-elasticbeanstalk-ec2-role",
                           instance_profile="aws-elasticbeanstalk-ec2-role"),
        )
        self._stub(monkeypatch, "ApplicationReconciler", lambda spec: result("eb_application", spec.application_name))
        self._stub(monkeypatch, "EnvironmentReconciler", lambda spec: result("eb_environment", spec.environment_name))
        self._stub(monkeypatch, "HttpsListenerReconciler", lambda spec: result("https_listener", "shop-prod:443"))
        self._stub(monkeypatch, "HttpRedirectReconciler", lambda spec: result("http_redirect", "shop-prod:80"))
        self._stub(
            monkeypatch, "DatabaseReconciler",
            lambda spec, topology: [result("db_instance", spec.identifier)],
        )
        self._stub(
            monkeypatch, "DnsRecordReconciler",
            lambda domain, target, zone: DnsRecordResult(domain, DnsRecordStatus.CREATED, target=target),
            method="reconcile_domain",
        )

        self.network = MagicMock(name="network")
        self.network.resolve.return_value = NetworkTopology("vpc-123", "sg-app")
        self.network.resolve_load_balancer.return_value = LOAD_BALANCER
        monkeypatch.setattr(f"{DRIVER}.NetworkTopologyResolver", MagicMock(return_value=self.network))

    def _stub(self, monkeypatch, name, behaviour, method="reconcile"):
        instance = MagicMock(name=name)

        def call(*args):
            self.calls.append(name)
            return behaviour(*args)

        getattr(instance, method).side_effect = call
        cls = MagicMock(return_value=instance)
        self.classes[name] = cls
        monkeypatch.setattr(f"{DRIVER}.{name}", cls)

    def instance(self, name):
        return self.classes[name].return_value


@pytest.fixture
def stubs(monkeypatch):
    return Stubs(monkeypatch)


def _specs(settings_document, **sections):
    settings_document.update(sections)
    return build_desired_specs(Settings(**settings_document))


def _driver(specs, clients=None):
    return ConvergenceDriver(clients or FakeClients(), specs, polling=PollingConfig())


class TestConvergenceOrder:

    def test_default_run(self, stubs, specs):
        summary = _driver(specs).run()

        assert summary.error is None
        assert summary.exit_code == 0
        assert stubs.calls == [
            "BucketReconciler",
            "BucketReconciler",
            "RoleReconciler",
            "ManagedPolicyReconciler",
            "InstanceProfileReconciler",
            "ApplicationReconciler",
            "EnvironmentReconciler",
            "DatabaseReconciler",
        ]
        assert [r.resource_id for r in summary.results[:2]] == ["shop-static-assets", "shop-uploads"]
        stubs.network.resolve.assert_called_once_with("shop-prod")

    def test_policy_uses_caller_account(self, stubs, specs):
        clients = FakeClients(account_id="999988887777")
        _driver(specs, clients).run()

        args = stubs.classes["ManagedPolicyReconciler"].call_args.args
        assert args[1] == "999988887777"

    def test_default_role(self, stubs, settings_document):
        specs = _specs(settings_document, iam={"use_default_role": True}, database={"enabled": False})

        summary = _driver(specs).run()

        assert stubs.calls == [
            "BucketReconciler",
            "BucketReconciler",
            "DefaultRoleCheck",
            "ApplicationReconciler",
            "EnvironmentReconciler",
        ]
        assert summary.results[2].outputs == {"instance_profile": "aws-elasticbeanstalk-ec2-role"}

    def test_https_and_dns_steps(self, stubs, settings_document):
        specs = _specs(
            settings_document,
            ssl={"certificate_arn": "arn:aws:acm:us-west-2:1:certificate/x"},
            domain={"name": "shop.example.com", "auto_configure_dns": True},
        )

        summary = _driver(specs).run()

        assert stubs.calls[-4:] == [
            "HttpsListenerReconciler",
            "HttpRedirectReconciler",
            "DatabaseReconciler",
            "DnsRecordReconciler",
        ]
        stubs.instance("DnsRecordReconciler").reconcile_domain.assert_called_once_with(
            "shop.example.com", LOAD_BALANCER.dns_name, LOAD_BALANCER.canonical_hosted_zone_id,
        )
        assert summary.results[-1].resource_type == "route53_record"
        assert summary.results[-1].action is ReconcileAction.CREATE
        assert summary.manual_dns is None


class TestDns:

    def test_manual_dns_when_auto_configure_disabled(self, stubs, settings_document):
        specs = _specs(
            settings_document,
            ssl={"certificate_arn": "arn:aws:acm:us-west-2:1:certificate/x"},
            domain={"name": "example.com"},
            database={"enabled": False},
        )

        summary = _driver(specs).run()

        assert "DnsRecordReconciler" not in stubs.calls
        assert summary.manual_dns.record_type == "ALIAS"
        assert summary.manual_dns.target == LOAD_BALANCER.dns_name

    def test_manual_dns_when_no_zone(self, stubs, settings_document):
        specs = _specs(
            settings_document,
            ssl={"certificate_arn": "arn:aws:acm:us-west-2:1:certificate/x"},
            domain={"name": "www.example.org", "auto_configure_dns": True},
            database={"enabled": False},
        )
        stubs.instance("DnsRecordReconciler").reconcile_domain.side_effect = (
            lambda domain, target, zone: DnsRecordResult(domain, DnsRecordStatus.NO_ZONE_FOUND)
        )

        summary = _driver(specs).run()

        assert summary.exit_code == 0
        assert summary.manual_dns.record_type == "CNAME"
        assert summary.manual_dns.name == "www"
        assert len(summary.warnings) == 1


class TestFailures:

    def test_fatal_error_stops_the_run(self, stubs, specs):
        stubs.instance("EnvironmentReconciler").reconcile.side_effect = DependencyError("environment gone")

        summary = _driver(specs).run()

        assert summary.failed
        assert summary.exit_code == 1
        assert summary.error.message == "environment gone"
        assert "DatabaseReconciler" not in stubs.calls
        assert len(summary.results) == 6

    def test_unwrapped_client_error_is_converted(self, stubs, specs):
        stubs.network.resolve.side_effect = client_error("InternalFailure", "DescribeEnvironments")

        summary = _driver(specs).run()

        assert isinstance(summary.error, TransientAPIError)
        assert summary.exit_code == 1

    def test_warnings_do_not_fail_the_run(self, stubs, specs):
        stubs.instance("EnvironmentReconciler").reconcile.side_effect = (
            lambda spec: result("eb_environment", spec.environment_name, warning="Update declined")
        )

        summary = _driver(specs).run()

        assert summary.exit_code == 0
        assert [w.resource_type for w in summary.warnings] == ["eb_environment"]


class TestRunSummary:

    def test_counts(self):
        summary = RunSummary(results=[
            result("s3_bucket", "a", ReconcileAction.CREATE),
            result("s3_bucket", "b"),
            result("eb_environment", "c", ReconcileAction.UPDATE, warning="slow"),
            result("db_instance", "d"),
        ])
        assert (summary.created, summary.updated, summary.skipped) == (1, 1, 2)
        assert len(summary.warnings) == 1
        assert not summary.failed


class FakeBeanstalk:
    """Elastic Beanstalk client that keeps the application and environment it was asked to create."""

    SOLUTION_STACK = "64bit Amazon Linux 2023 v4.0.6 running Python 3.11"

    def __init__(self):
        self.applications = set()
        self.environment = None
        self.options = {}
        self.writes = []

    def describe_applications(self, ApplicationNames):
        return {"Applications": [{"ApplicationName": n} for n in ApplicationNames if n in self.applications]}

    def create_application(self, ApplicationName, Description=None):
        self.writes.append("create_application")
        self.applications.add(ApplicationName)

    def list_available_solution_stacks(self):
        return {"SolutionStacks": [self.SOLUTION_STACK]}

    def create_environment(self, ApplicationName, EnvironmentName, SolutionStackName, OptionSettings):
        self.writes.append("create_environment")
        self.environment = {
            "EnvironmentName": EnvironmentName,
            "EnvironmentId": "e-abc123",
            "Status": "Ready",
            "CNAME": f"{EnvironmentName}.{REGION}.elasticbeanstalk.com",
            "SolutionStackName": SolutionStackName,
        }
        self._apply(OptionSettings)

    def update_environment(self, ApplicationName, EnvironmentName, OptionSettings):
        self.writes.append("update_environment")
        self._apply(OptionSettings)

    def describe_environments(self, ApplicationName, EnvironmentNames, IncludeDeleted=False):
        return {"Environments": [self.environment] if self.environment else []}

    def describe_configuration_settings(self, ApplicationName, EnvironmentName):
        return configuration_settings(self.options)

    def describe_environment_resources(self, EnvironmentName):
        return {"EnvironmentResources": {"LoadBalancers": [{"Name": LOAD_BALANCER.arn}]}}

    def _apply(self, option_settings):
        for option in option_settings:
            self.options[(option["Namespace"], option["OptionName"])] = option["Value"]


class FakeLoadBalancing:
    """ELBv2 client with one load balancer whose port 80 listener forwards to the app."""

    def __init__(self):
        self.listener = {
            "ListenerArn": f"{LOAD_BALANCER.arn}/listener/80",
            "Port": 80,
            "DefaultActions": [{"Type": "forward"}],
        }
        self.writes = []

    def describe_load_balancers(self, LoadBalancerArns):
        return {"LoadBalancers": [{
            "LoadBalancerName": LOAD_BALANCER.name,
            "LoadBalancerArn": LOAD_BALANCER.arn,
            "DNSName": LOAD_BALANCER.dns_name,
            "CanonicalHostedZoneId": LOAD_BALANCER.canonical_hosted_zone_id,
        }]}

    def describe_listeners(self, LoadBalancerArn):
        return {"Listeners": [self.listener]}

    def modify_listener(self, ListenerArn, DefaultActions):
        self.writes.append("modify_listener")
        self.listener = dict(self.listener, DefaultActions=DefaultActions)


class TestRepeatedRuns:

    @pytest.fixture
    def clients(self, mock_aws_env):
        iam = boto3.client("iam", region_name=REGION)
        iam.create_policy(
            PolicyName="web-tier",
            PolicyDocument=json.dumps({
                "Version": "2012-10-17",
                "Statement": [{"Effect": "Allow", "Action": "cloudwatch:PutMetricData", "Resource": "*"}],
            }),
        )
        route53 = boto3.client("route53", region_name=REGION)
        route53.create_hosted_zone(Name="example.com", CallerReference="shop-zone")
        return FakeClients(
            s3=boto3.client("s3", region_name=REGION),
            iam=iam,
            route53=route53,
            elasticbeanstalk=FakeBeanstalk(),
            elbv2=FakeLoadBalancing(),
        )

    @pytest.fixture
    def full_specs(self, settings_document):
        specs = _specs(
            settings_document,
            ssl={"certificate_arn": "arn:aws:acm:us-west-2:123456789012:certificate/shop"},
            domain={"name": "shop.example.com", "auto_configure_dns": True},
            database={"enabled": False},
        )
        web_tier = "arn:aws:iam::123456789012:policy/web-tier"
        return replace(specs, role=replace(specs.role, managed_policy_arns=(web_tier,)))

    def _run(self, clients, specs):
        driver = ConvergenceDriver(clients, specs, polling=PollingConfig(), profile_propagation_delay=0)
        return driver.run()

    def test_second_run_changes_nothing(self, clients, full_specs):
        first = self._run(clients, full_specs)

        assert first.error is None
        assert [r.resource_type for r in first.results] == [
            "s3_bucket",
            "s3_bucket",
            "iam_role",
            "iam_policy",
            "iam_instance_profile",
            "eb_application",
            "eb_environment",
            "https_listener",
            "http_redirect",
            "route53_record",
        ]
        assert all(r.action is not ReconcileAction.SKIP for r in first.results)

        eb, elbv2 = clients.clients["elasticbeanstalk"], clients.clients["elbv2"]
        eb_writes, elbv2_writes = list(eb.writes), list(elbv2.writes)

        second = self._run(clients, full_specs)

        assert second.error is None
        assert second.exit_code == 0
        assert [(r.resource_type, r.action) for r in second.results] == [
            (r.resource_type, ReconcileAction.SKIP) for r in first.results
        ]
        assert second.warnings == []
        assert eb.writes == eb_writes
        assert elbv2.writes == elbv2_writes
