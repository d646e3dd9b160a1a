"""Elastic Beanstalk application, environment and environment-variable reconcilers."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from eb_converge.config.specs import ApplicationSpec, EnvironmentSpec, EnvironmentVariablesSpec
from eb_converge.reconcilers.base import BaseReconciler, Outcome
from eb_converge.reconcilers.comparators import compare_environment, compare_environment_variables
from eb_converge.reconcilers.state import (
    ASG_NAMESPACE,
    ENV_NAMESPACE,
    ENVIRONMENT_NAMESPACE,
    LAUNCH_NAMESPACE,
    PROCESS_NAMESPACE,
    ObservedApplication,
    ObservedEnvironment,
)
from eb_converge.utils.errors import (
    ConfigurationError,
    DependencyError,
    ErrorContext,
    ProvisioningError,
    ResourceNotReadyWarning,
    is_not_found,
)
from eb_converge.utils.polling import BoundedPoller, PollStatus

READY_STATES = ('Ready',)
FAILED_STATES = ('Terminated', 'Terminating')

MASKED_VALUE = '********'


def describe_environment(eb_client, application_name: str, environment_name: str) -> Optional[ObservedEnvironment]:
    """Fetch a live (non-terminated) environment with its option settings."""
    response = eb_client.describe_environments(
        ApplicationName=application_name,
        EnvironmentNames=[environment_name],
        IncludeDeleted=False
    )
    live = [e for e in response.get('Environments', []) if e.get('Status') != 'Terminated']
    if not live:
        return None
    env = live[0]

    try:
        settings = eb_client.describe_configuration_settings(
            ApplicationName=application_name,
            EnvironmentName=environment_name
        ).get('ConfigurationSettings', [])
    except ClientError as e:
        if not is_not_found(e):
            raise
        settings = []

    option_settings = settings[0].get('OptionSettings', []) if settings else []

    return ObservedEnvironment(
        environment_name=env['EnvironmentName'],
        environment_id=env.get('EnvironmentId', ''),
        status=env.get('Status', ''),
        health=env.get('Health'),
        cname=env.get('CNAME'),
        solution_stack=env.get('SolutionStackName'),
        option_settings=ObservedEnvironment.index_option_settings(option_settings),
    )


def environment_option_settings(desired: EnvironmentSpec) -> List[Dict[str, str]]:
    """Full option-setting document for the environment."""
    settings = [
        (LAUNCH_NAMESPACE, 'IamInstanceProfile', desired.instance_profile),
        (LAUNCH_NAMESPACE, 'InstanceType', desired.instance_type),
        (ASG_NAMESPACE, 'MinSize', str(desired.min_size)),
        (ASG_NAMESPACE, 'MaxSize', str(desired.max_size)),
        (ENVIRONMENT_NAMESPACE, 'EnvironmentType', 'LoadBalanced'),
        (ENVIRONMENT_NAMESPACE, 'LoadBalancerType', desired.load_balancer_type),
        (PROCESS_NAMESPACE, 'HealthCheckPath', desired.health_check_path),
    ]
    settings.extend((ENV_NAMESPACE, key, value) for key, value in desired.environment_variables)
    return [
        {'Namespace': namespace, 'OptionName': name, 'Value': value}
        for namespace, name, value in settings
    ]


def env_var_option_settings(variables: Dict[str, str]) -> List[Dict[str, str]]:
    return [
        {'Namespace': ENV_NAMESPACE, 'OptionName': key, 'Value': value}
        for key, value in sorted(variables.items())
    ]


class ApplicationReconciler(BaseReconciler[ApplicationSpec, ObservedApplication]):
    """Creates the application if it does not exist. Applications are never updated."""

    resource_type = "eb_application"

    def __init__(self, clients, confirmer=None):
        super().__init__(clients, confirmer)
        self.eb_client = clients.get_client('elasticbeanstalk')

    def resource_id(self, desired: ApplicationSpec) -> str:
        return desired.application_name

    def get_current_state(self, desired: ApplicationSpec) -> Optional[ObservedApplication]:
        response = self.eb_client.describe_applications(ApplicationNames=[desired.application_name])
        for app in response.get('Applications', []):
            if app['ApplicationName'] == desired.application_name:
                return ObservedApplication(application_name=app['ApplicationName'])
        return None

    def compare(self, desired: ApplicationSpec, observed: Optional[ObservedApplication]) -> Outcome:
        return Outcome.absent() if observed is None else Outcome.matches()

    def create(self, desired: ApplicationSpec) -> Dict[str, Any]:
        self.eb_client.create_application(
            ApplicationName=desired.application_name,
            Description=f"{desired.application_name} application"
        )
        return {'application_name': desired.application_name}

    def outputs(self, desired: ApplicationSpec, observed: ObservedApplication) -> Dict[str, Any]:
        return {'application_name': observed.application_name}


class _EnvironmentWaitMixin:
    """Bounded wait for an environment to settle in Ready."""

    def _wait_for_ready(
        self,
        application_name: str,
        environment_name: str,
        required: bool = False,
    ) -> Optional[ObservedEnvironment]:
        """Wait for Ready and return the environment as last described.

        Args:
            application_name: Owning application
            environment_name: Environment to wait on
            required: Raise instead of warning when the wait times out. Set
                before a write, which Elastic Beanstalk rejects unless Ready.

        Raises:
            ProvisioningError: If the environment terminates
            ResourceNotReadyWarning: If ``required`` and the wait times out
        """
        def status():
            env = describe_environment(self.eb_client, application_name, environment_name)
            return env.status if env else None

        result = self.poller.wait(
            status,
            ready_states=READY_STATES,
            failed_states=FAILED_STATES,
            description=f"environment {environment_name}",
        )
        if result.status is PollStatus.FAILED:
            raise ProvisioningError(
                f"Environment {environment_name} entered {result.last_state}",
                context=ErrorContext(resource_id=environment_name, resource_type='eb_environment'),
                suggestions=['Check the environment events in the Elastic Beanstalk console'],
            )
        if result.status is PollStatus.TIMEOUT:
            message = (
                f"Environment {environment_name} not Ready after {result.elapsed:.0f}s "
                f"(status: {result.last_state}); re-run once it settles"
            )
            if required:
                raise ResourceNotReadyWarning(
                    message,
                    context=ErrorContext(resource_id=environment_name, resource_type='eb_environment'),
                )
            self.warn(message)
        return describe_environment(self.eb_client, application_name, environment_name)


class EnvironmentReconciler(_EnvironmentWaitMixin, BaseReconciler[EnvironmentSpec, ObservedEnvironment]):
    """Environment capacity, instance type and application variables.

    Updates restart instances, so every update needs operator confirmation.
    """

    resource_type = "eb_environment"

    def __init__(self, clients, confirmer=None, poller: Optional[BoundedPoller] = None):
        super().__init__(clients, confirmer)
        self.eb_client = clients.get_client('elasticbeanstalk')
        self.poller = poller or BoundedPoller(interval=20.0, timeout=900.0)

    def resource_id(self, desired: EnvironmentSpec) -> str:
        return desired.environment_name

    def get_current_state(self, desired: EnvironmentSpec) -> Optional[ObservedEnvironment]:
        return describe_environment(self.eb_client, desired.application_name, desired.environment_name)

    def compare(self, desired: EnvironmentSpec, observed: Optional[ObservedEnvironment]) -> Outcome:
        return compare_environment(desired, observed)

    def resolve_solution_stack(self, platform: str) -> str:
        """First available solution stack whose name contains ``platform``.

        Raises:
            ConfigurationError: If no stack matches
        """
        stacks = self.eb_client.list_available_solution_stacks().get('SolutionStacks', [])
        for stack in stacks:
            if platform in stack:
                return stack
        raise ConfigurationError(
            f"No solution stack matches platform '{platform}'",
            suggestions=[
                'List stacks with: aws elasticbeanstalk list-available-solution-stacks',
                f"Available examples: {', '.join(stacks[:5])}" if stacks else 'No stacks returned for this region',
            ],
        )

    def create(self, desired: EnvironmentSpec) -> Dict[str, Any]:
        solution_stack = self.resolve_solution_stack(desired.platform)
        self.logger.info(f"Using solution stack: {solution_stack}")

        self.eb_client.create_environment(
            ApplicationName=desired.application_name,
            EnvironmentName=desired.environment_name,
            SolutionStackName=solution_stack,
            OptionSettings=environment_option_settings(desired)
        )

        env = self._wait_for_ready(desired.application_name, desired.environment_name)
        return self._environment_outputs(env)

    def check_update_policy(self, desired: EnvironmentSpec, observed: ObservedEnvironment, outcome: Outcome) -> None:
        self.require_confirmation(desired, observed, outcome)

    def describe_changes(self, desired: EnvironmentSpec, observed: ObservedEnvironment, outcome: Outcome) -> str:
        current = {
            'InstanceType': observed.option(LAUNCH_NAMESPACE, 'InstanceType'),
            'MinSize': observed.option(ASG_NAMESPACE, 'MinSize'),
            'MaxSize': observed.option(ASG_NAMESPACE, 'MaxSize'),
        }
        wanted = {
            'InstanceType': desired.instance_type,
            'MinSize': str(desired.min_size),
            'MaxSize': str(desired.max_size),
        }
        observed_env = observed.env_vars
        lines = [f"Environment {desired.environment_name} has pending changes:"]
        for field in sorted(outcome.changed_fields):
            if field.startswith('env:'):
                key = field[4:]
                lines.append(f"  {key}: {observed_env.get(key)!r} -> {desired.env_vars.get(key)!r}")
            else:
                lines.append(f"  {field}: {current.get(field)!r} -> {wanted.get(field)!r}")
        return "\n".join(lines)

    def update(self, desired: EnvironmentSpec, observed: ObservedEnvironment, outcome: Outcome) -> Dict[str, Any]:
        if observed.status not in READY_STATES:
            self._wait_for_ready(desired.application_name, desired.environment_name, required=True)

        self.eb_client.update_environment(
            ApplicationName=desired.application_name,
            EnvironmentName=desired.environment_name,
            OptionSettings=environment_option_settings(desired)
        )
        env = self._wait_for_ready(desired.application_name, desired.environment_name)
        return self._environment_outputs(env or observed)

    def outputs(self, desired: EnvironmentSpec, observed: ObservedEnvironment) -> Dict[str, Any]:
        return self._environment_outputs(observed)

    @staticmethod
    def _environment_outputs(env: Optional[ObservedEnvironment]) -> Dict[str, Any]:
        if env is None:
            return {}
        return {
            'environment_name': env.environment_name,
            'environment_id': env.environment_id,
            'cname': env.cname,
            'status': env.status,
        }


class EnvironmentVariablesReconciler(
    _EnvironmentWaitMixin,
    BaseReconciler[EnvironmentVariablesSpec, ObservedEnvironment],
):
    """Publishes a set of variables into an existing environment.

    The environment must already exist. Values listed in ``secret_keys`` are
    masked in confirmation prompts and logs.
    """

    resource_type = "eb_environment_variables"

    def __init__(self, clients, confirmer=None, poller: Optional[BoundedPoller] = None):
        super().__init__(clients, confirmer)
        self.eb_client = clients.get_client('elasticbeanstalk')
        self.poller = poller or BoundedPoller(interval=20.0, timeout=900.0)

    def resource_id(self, desired: EnvironmentVariablesSpec) -> str:
        return desired.environment_name

    def get_current_state(self, desired: EnvironmentVariablesSpec) -> Optional[ObservedEnvironment]:
        env = describe_environment(self.eb_client, desired.application_name, desired.environment_name)
        if env is None:
            raise DependencyError(
                f"Environment {desired.environment_name} does not exist",
                context=ErrorContext(resource_id=desired.environment_name, resource_type=self.resource_type),
                suggestions=['Create the Elastic Beanstalk environment first'],
            )
        return env

    def compare(self, desired: EnvironmentVariablesSpec, observed: Optional[ObservedEnvironment]) -> Outcome:
        return compare_environment_variables(desired, observed)

    def create(self, desired: EnvironmentVariablesSpec) -> Dict[str, Any]:
        raise DependencyError(f"Environment {desired.environment_name} does not exist")

    def check_update_policy(self, desired, observed, outcome) -> None:
        self.require_confirmation(desired, observed, outcome)

    def describe_changes(self, desired: EnvironmentVariablesSpec, observed: ObservedEnvironment, outcome: Outcome) -> str:
        lines = [f"Environment {desired.environment_name} variables will be updated:"]
        for field in sorted(outcome.changed_fields):
            key = field[4:]
            value = MASKED_VALUE if key in desired.secret_keys else desired.env_vars.get(key)
            lines.append(f"  {key} = {value}")
        return "\n".join(lines)

    def update(self, desired: EnvironmentVariablesSpec, observed: ObservedEnvironment, outcome: Outcome) -> Dict[str, Any]:
        if observed.status not in READY_STATES:
            self._wait_for_ready(desired.application_name, desired.environment_name, required=True)

        self.eb_client.update_environment(
            ApplicationName=desired.application_name,
            EnvironmentName=desired.environment_name,
            OptionSettings=env_var_option_settings(desired.env_vars)
        )
        self._wait_for_ready(desired.application_name, desired.environment_name)
        return {'variables': sorted(field[4:] for field in outcome.changed_fields)}
