"""HTTPS listener and HTTP-to-HTTPS redirect reconcilers."""

from typing import Any, Dict, List, Optional

from eb_converge.config.specs import HttpRedirectSpec, HttpsListenerSpec
from eb_converge.reconcilers.base import BaseReconciler, Outcome
from eb_converge.reconcilers.comparators import compare_https_listener
from eb_converge.reconcilers.elastic_beanstalk import (
    READY_STATES,
    _EnvironmentWaitMixin,
    describe_environment,
)
from eb_converge.reconcilers.network import NetworkTopologyResolver
from eb_converge.reconcilers.state import HTTPS_LISTENER_NAMESPACE, ObservedListener
from eb_converge.utils.errors import DependencyError, ErrorContext, ResourceNotReadyWarning
from eb_converge.utils.polling import BoundedPoller

HTTP_PORT = 80
HTTPS_PORT = 443

REDIRECT_ACTION = {
    'Type': 'redirect',
    'RedirectConfig': {
        'Protocol': 'HTTPS',
        'Port': str(HTTPS_PORT),
        'StatusCode': 'HTTP_301',
    },
}


def split_arns(value: Optional[str]) -> List[str]:
    return [arn.strip() for arn in (value or '').split(',') if arn.strip()]


class HttpsListenerReconciler(_EnvironmentWaitMixin, BaseReconciler[HttpsListenerSpec, ObservedListener]):
    """Port 443 listener on the environment's load balancer.

    Certificates are appended to whatever the listener already serves and
    never removed. Changes to an existing listener need confirmation.
    """

    resource_type = "https_listener"

    def __init__(self, clients, confirmer=None, poller: Optional[BoundedPoller] = None):
        super().__init__(clients, confirmer)
        self.eb_client = clients.get_client('elasticbeanstalk')
        self.poller = poller or BoundedPoller(interval=20.0, timeout=900.0)
        self._environment = None

    def resource_id(self, desired: HttpsListenerSpec) -> str:
        return f"{desired.environment_name}:{HTTPS_PORT}"

    def get_current_state(self, desired: HttpsListenerSpec) -> Optional[ObservedListener]:
        env = describe_environment(self.eb_client, desired.application_name, desired.environment_name)
        if env is None:
            raise DependencyError(
                f"Environment {desired.environment_name} does not exist",
                context=ErrorContext(resource_id=desired.environment_name, resource_type=self.resource_type),
            )
        self._environment = env
        return ObservedListener(
            protocol=env.option(HTTPS_LISTENER_NAMESPACE, 'Protocol'),
            certificate_arns=tuple(split_arns(env.option(HTTPS_LISTENER_NAMESPACE, 'SSLCertificateArns'))),
            ssl_policy=env.option(HTTPS_LISTENER_NAMESPACE, 'SSLPolicy'),
            listener_enabled=env.option(HTTPS_LISTENER_NAMESPACE, 'ListenerEnabled') or 'true',
        )

    def compare(self, desired: HttpsListenerSpec, observed: Optional[ObservedListener]) -> Outcome:
        return compare_https_listener(desired, observed)

    def describe_changes(self, desired: HttpsListenerSpec, observed: ObservedListener, outcome: Outcome) -> str:
        lines = [f"HTTPS listener on {desired.environment_name} will be updated:"]
        if 'ListenerEnabled' in outcome.changed_fields:
            lines.append(f"  ListenerEnabled: {observed.listener_enabled} -> true")
        if 'Protocol' in outcome.changed_fields:
            lines.append(f"  Protocol: {observed.protocol} -> HTTPS")
        if 'SSLCertificateArns' in outcome.changed_fields:
            lines.append(f"  Add certificate: {desired.certificate_arn}")
        if 'SSLPolicy' in outcome.changed_fields:
            lines.append(f"  SSLPolicy: {observed.ssl_policy} -> {desired.ssl_policy}")
        return "\n".join(lines)

    def check_update_policy(self, desired, observed, outcome) -> None:
        self.require_confirmation(desired, observed, outcome)

    def create(self, desired: HttpsListenerSpec) -> Dict[str, Any]:
        return self._apply(desired, ())

    def update(self, desired: HttpsListenerSpec, observed: ObservedListener, outcome: Outcome) -> Dict[str, Any]:
        return self._apply(desired, observed.certificate_arns)

    def outputs(self, desired: HttpsListenerSpec, observed: ObservedListener) -> Dict[str, Any]:
        return {'certificate_arns': list(observed.certificate_arns)}

    def option_settings(self, desired: HttpsListenerSpec, existing_arns) -> List[Dict[str, str]]:
        arns = list(existing_arns)
        if desired.certificate_arn not in arns:
            arns.append(desired.certificate_arn)
        return [
            {'Namespace': HTTPS_LISTENER_NAMESPACE, 'OptionName': 'ListenerEnabled', 'Value': 'true'},
            {'Namespace': HTTPS_LISTENER_NAMESPACE, 'OptionName': 'Protocol', 'Value': 'HTTPS'},
            {'Namespace': HTTPS_LISTENER_NAMESPACE, 'OptionName': 'SSLCertificateArns', 'Value': ','.join(arns)},
            {'Namespace': HTTPS_LISTENER_NAMESPACE, 'OptionName': 'SSLPolicy', 'Value': desired.ssl_policy},
        ]

    def _apply(self, desired: HttpsListenerSpec, existing_arns) -> Dict[str, Any]:
        if self._environment is not None and self._environment.status not in READY_STATES:
            self._wait_for_ready(desired.application_name, desired.environment_name, required=True)

        settings = self.option_settings(desired, existing_arns)
        self.eb_client.update_environment(
            ApplicationName=desired.application_name,
            EnvironmentName=desired.environment_name,
            OptionSettings=settings,
        )
        self._wait_for_ready(desired.application_name, desired.environment_name)
        return {'certificate_arns': split_arns(settings[2]['Value'])}


class HttpRedirectReconciler(BaseReconciler[HttpRedirectSpec, Dict[str, Any]]):
    """Turns the port 80 ALB listener into a permanent redirect to HTTPS.

    A load balancer or listener that cannot be found yet is a warning, not
    an error; the redirect is applied on a later run.
    """

    resource_type = "http_redirect"

    def __init__(self, clients, network: NetworkTopologyResolver, confirmer=None):
        super().__init__(clients, confirmer)
        self.elbv2_client = clients.get_client('elbv2')
        self.network = network

    def resource_id(self, desired: HttpRedirectSpec) -> str:
        return f"{desired.environment_name}:{HTTP_PORT}"

    def get_current_state(self, desired: HttpRedirectSpec) -> Optional[Dict[str, Any]]:
        try:
            load_balancer = self.network.resolve_load_balancer(desired.environment_name)
        except DependencyError as e:
            raise ResourceNotReadyWarning(
                f"Could not find load balancer, skipping HTTP redirect: {e.message}",
                context=e.context,
            ) from e

        listeners = self.elbv2_client.describe_listeners(
            LoadBalancerArn=load_balancer.arn
        ).get('Listeners', [])
        for listener in listeners:
            if listener.get('Port') == HTTP_PORT:
                return listener
        return None

    def compare(self, desired: HttpRedirectSpec, observed: Optional[Dict[str, Any]]) -> Outcome:
        if observed is None:
            return Outcome.absent()
        for action in observed.get('DefaultActions', []):
            config = action.get('RedirectConfig') or {}
            if (
                action.get('Type') == 'redirect'
                and config.get('Protocol') == 'HTTPS'
                and str(config.get('Port')) == str(HTTPS_PORT)
                and config.get('StatusCode') == 'HTTP_301'
            ):
                return Outcome.matches()
        return Outcome.differs({'DefaultActions'})

    def create(self, desired: HttpRedirectSpec) -> Dict[str, Any]:
        raise ResourceNotReadyWarning(
            f"HTTP listener not found on {desired.environment_name}; the environment may still be initializing"
        )

    def update(self, desired: HttpRedirectSpec, observed: Dict[str, Any], outcome: Outcome) -> Dict[str, Any]:
        self.elbv2_client.modify_listener(
            ListenerArn=observed['ListenerArn'],
            DefaultActions=[REDIRECT_ACTION],
        )
        return {'listener_arn': observed['ListenerArn']}

    def outputs(self, desired: HttpRedirectSpec, observed: Dict[str, Any]) -> Dict[str, Any]:
        return {'listener_arn': observed['ListenerArn']}
