"""Tests for the HTTPS listener and HTTP redirect reconcilers."""

from unittest.mock import MagicMock

import pytest

from conftest import FakeClients, eb_client
from eb_converge.config.specs import HttpRedirectSpec, HttpsListenerSpec
from eb_converge.reconcilers.base import ReconcileAction
from eb_converge.reconcilers.network import LoadBalancer
from eb_converge.reconcilers.ssl import REDIRECT_ACTION, HttpRedirectReconciler, HttpsListenerReconciler
from eb_converge.reconcilers.state import HTTPS_LISTENER_NAMESPACE
from eb_converge.utils.confirm import StaticConfirmer
from eb_converge.utils.errors import DependencyError

CERT = "arn:aws:acm:us-west-2:123456789012:certificate/new"
OLD_CERT = "arn:aws:acm:us-west-2:123456789012:certificate/old"
POLICY = "ELBSecurityPolicy-TLS13-1-2-2021-06"
LB_ARN = "arn:aws:elasticloadbalancing:us-west-2:123456789012:loadbalancer/app/awseb-shop/abc"


@pytest.fixture
def listener_spec():
    return HttpsListenerSpec("shop", "shop-prod", CERT, POLICY)


def _listener_settings(**kwargs):
    return {o["OptionName"]: o["Value"] for o in kwargs["OptionSettings"]}


class TestHttpsListenerReconciler:

    def test_creates_listener_without_confirmation(self, listener_spec, poller):
        eb = eb_client("Ready")

        result = HttpsListenerReconciler(FakeClients(elasticbeanstalk=eb), poller=poller).reconcile(listener_spec)

        assert result.action is ReconcileAction.CREATE
        assert result.resource_id == "shop-prod:443"
        assert result.outputs == {"certificate_arns": [CERT]}
        settings = _listener_settings(**eb.update_environment.call_args.kwargs)
        assert settings == {
            "ListenerEnabled": "true",
            "Protocol": "HTTPS",
            "SSLCertificateArns": CERT,
            "SSLPolicy": POLICY,
        }
        namespaces = {o["Namespace"] for o in eb.update_environment.call_args.kwargs["OptionSettings"]}
        assert namespaces == {HTTPS_LISTENER_NAMESPACE}

    def test_certificate_is_appended(self, listener_spec, poller):
        eb = eb_client("Ready", options={
            (HTTPS_LISTENER_NAMESPACE, "Protocol"): "HTTPS",
            (HTTPS_LISTENER_NAMESPACE, "SSLCertificateArns"): OLD_CERT,
            (HTTPS_LISTENER_NAMESPACE, "SSLPolicy"): POLICY,
        })
        confirmer = StaticConfirmer(True)

        result = HttpsListenerReconciler(FakeClients(elasticbeanstalk=eb), confirmer, poller).reconcile(listener_spec)

        assert result.action is ReconcileAction.UPDATE
        assert result.outcome.changed_fields == {"SSLCertificateArns"}
        assert result.outputs == {"certificate_arns": [OLD_CERT, CERT]}
        assert f"Add certificate: {CERT}" in confirmer.prompts[0]
        settings = _listener_settings(**eb.update_environment.call_args.kwargs)
        assert settings["SSLCertificateArns"] == f"{OLD_CERT},{CERT}"

    def test_declined_update(self, listener_spec, poller):
        eb = eb_client("Ready", options={
            (HTTPS_LISTENER_NAMESPACE, "Protocol"): "HTTPS",
            (HTTPS_LISTENER_NAMESPACE, "SSLCertificateArns"): CERT,
            (HTTPS_LISTENER_NAMESPACE, "SSLPolicy"): "ELBSecurityPolicy-2016-08",
        })

        result = HttpsListenerReconciler(
            FakeClients(elasticbeanstalk=eb), StaticConfirmer(False), poller
        ).reconcile(listener_spec)

        assert result.action is ReconcileAction.SKIP
        assert result.outcome.changed_fields == {"SSLPolicy"}
        assert result.has_warning
        eb.update_environment.assert_not_called()

    def test_converged_listener(self, listener_spec, poller):
        eb = eb_client("Ready", options={
            (HTTPS_LISTENER_NAMESPACE, "Protocol"): "HTTPS",
            (HTTPS_LISTENER_NAMESPACE, "SSLCertificateArns"): f"{OLD_CERT}, {CERT}",
            (HTTPS_LISTENER_NAMESPACE, "SSLPolicy"): POLICY,
        })

        result = HttpsListenerReconciler(FakeClients(elasticbeanstalk=eb), poller=poller).reconcile(listener_spec)

        assert result.action is ReconcileAction.SKIP
        assert result.outputs == {"certificate_arns": [OLD_CERT, CERT]}

    def test_waits_for_busy_environment_before_applying(self, listener_spec, poller, clock):
        eb = eb_client("Updating", "Updating", "Ready")

        result = HttpsListenerReconciler(FakeClients(elasticbeanstalk=eb), poller=poller).reconcile(listener_spec)

        assert result.action is ReconcileAction.CREATE
        assert clock.sleeps == [20.0]
        eb.update_environment.assert_called_once()

    def test_skipped_when_environment_never_settles(self, listener_spec, poller, clock):
        eb = eb_client("Launching")

        result = HttpsListenerReconciler(FakeClients(elasticbeanstalk=eb), poller=poller).reconcile(listener_spec)

        assert result.action is ReconcileAction.SKIP
        assert result.outcome.is_absent
        assert result.outputs == {"certificate_arns": []}
        assert "Environment shop-prod not Ready after 100s (status: Launching)" in result.warning
        assert clock.now == 100.0
        eb.update_environment.assert_not_called()

    def test_disabled_listener_is_reenabled(self, listener_spec, poller):
        eb = eb_client("Ready", options={
            (HTTPS_LISTENER_NAMESPACE, "ListenerEnabled"): "false",
            (HTTPS_LISTENER_NAMESPACE, "Protocol"): "HTTPS",
            (HTTPS_LISTENER_NAMESPACE, "SSLCertificateArns"): CERT,
            (HTTPS_LISTENER_NAMESPACE, "SSLPolicy"): POLICY,
        })
        confirmer = StaticConfirmer(True)

        result = HttpsListenerReconciler(FakeClients(elasticbeanstalk=eb), confirmer, poller).reconcile(listener_spec)

        assert result.action is ReconcileAction.UPDATE
        assert result.outcome.changed_fields == {"ListenerEnabled"}
        assert "ListenerEnabled: false -> true" in confirmer.prompts[0]
        assert _listener_settings(**eb.update_environment.call_args.kwargs)["ListenerEnabled"] == "true"

    def test_missing_environment(self, listener_spec, poller):
        with pytest.raises(DependencyError):
            HttpsListenerReconciler(FakeClients(elasticbeanstalk=eb_client(None)), poller=poller).reconcile(listener_spec)


class TestHttpRedirectReconciler:

    def _reconciler(self, listeners, network=None):
        elbv2 = MagicMock()
        elbv2.describe_listeners.return_value = {"Listeners": listeners}
        if network is None:
            network = MagicMock()
            network.resolve_load_balancer.return_value = LoadBalancer(
                name="awseb-shop", arn=LB_ARN, dns_name="awseb-shop.elb.amazonaws.com",
                canonical_hosted_zone_id="Z1H1FL5HABSF5",
            )
        return HttpRedirectReconciler(FakeClients(elbv2=elbv2), network), elbv2

    def test_forward_listener_becomes_redirect(self):
        reconciler, elbv2 = self._reconciler([
            {"ListenerArn": "arn:listener/443", "Port": 443, "DefaultActions": [{"Type": "forward"}]},
            {"ListenerArn": "arn:listener/80", "Port": 80, "DefaultActions": [{"Type": "forward"}]},
        ])

        result = reconciler.reconcile(HttpRedirectSpec("shop-prod"))

        assert result.action is ReconcileAction.UPDATE
        assert result.outputs == {"listener_arn": "arn:listener/80"}
        elbv2.describe_listeners.assert_called_once_with(LoadBalancerArn=LB_ARN)
        elbv2.modify_listener.assert_called_once_with(
            ListenerArn="arn:listener/80",
            DefaultActions=[REDIRECT_ACTION],
        )

    def test_existing_redirect_is_skipped(self):
        reconciler, elbv2 = self._reconciler([
            {"ListenerArn": "arn:listener/80", "Port": 80, "DefaultActions": [REDIRECT_ACTION]},
        ])

        result = reconciler.reconcile(HttpRedirectSpec("shop-prod"))

        assert result.action is ReconcileAction.SKIP
        assert result.warning is None
        elbv2.modify_listener.assert_not_called()

    def test_missing_http_listener_is_a_warning(self):
        reconciler, elbv2 = self._reconciler([
            {"ListenerArn": "arn:listener/443", "Port": 443, "DefaultActions": []},
        ])

        result = reconciler.reconcile(HttpRedirectSpec("shop-prod"))

        assert result.action is ReconcileAction.SKIP
        assert "HTTP listener not found" in result.warning
        assert result.outputs == {}
        elbv2.describe_listeners.assert_called_once_with(LoadBalancerArn=LB_ARN)
        elbv2.modify_listener.assert_not_called()

    def test_missing_load_balancer_is_a_warning(self):
        network = MagicMock()
        network.resolve_load_balancer.side_effect = DependencyError("no load balancer")
        reconciler, elbv2 = self._reconciler([], network=network)

        result = reconciler.reconcile(HttpRedirectSpec("shop-prod"))

        assert result.action is ReconcileAction.SKIP
        assert "no load balancer" in result.warning
        elbv2.describe_listeners.assert_not_called()
