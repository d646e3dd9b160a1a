"""Convergence driver: runs every reconciler in a fixed order."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from botocore.exceptions import ClientError

from eb_converge.config.models import PollingConfig
from eb_converge.config.specs import DesiredSpecs
from eb_converge.reconcilers.base import ReconcileAction, ReconcileResult
from eb_converge.reconcilers.elastic_beanstalk import ApplicationReconciler, EnvironmentReconciler
from eb_converge.reconcilers.iam import (
    DefaultRoleCheck,
    InstanceProfileReconciler,
    ManagedPolicyReconciler,
    RoleReconciler,
)
from eb_converge.reconcilers.network import NetworkTopologyResolver
from eb_converge.reconcilers.rds import DatabaseReconciler
from eb_converge.reconcilers.route53 import (
    DnsRecordReconciler,
    DnsRecordStatus,
    ManualDnsInstructions,
    manual_dns_instructions,
)
from eb_converge.reconcilers.s3 import BucketReconciler
from eb_converge.reconcilers.ssl import HttpRedirectReconciler, HttpsListenerReconciler
from eb_converge.utils.confirm import Confirmer
from eb_converge.utils.errors import ConvergenceError, ErrorContext, error_handler
from eb_converge.utils.logging import LogContext, get_logger
from eb_converge.utils.polling import BoundedPoller

logger = get_logger(__name__)


@dataclass
class RunSummary:
    """Everything one convergence run did."""

    results: List[ReconcileResult] = field(default_factory=list)
    error: Optional[ConvergenceError] = None
    manual_dns: Optional[ManualDnsInstructions] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def count(self, action: ReconcileAction) -> int:
        return sum(1 for r in self.results if r.action is action)

    @property
    def created(self) -> int:
        return self.count(ReconcileAction.CREATE)

    @property
    def updated(self) -> int:
        return self.count(ReconcileAction.UPDATE)

    @property
    def skipped(self) -> int:
        return self.count(ReconcileAction.SKIP)

    @property
    def warnings(self) -> List[ReconcileResult]:
        return [r for r in self.results if r.has_warning]

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def exit_code(self) -> int:
        """0 when converged or only warnings occurred, 1 after a fatal error."""
        return 1 if self.failed else 0


class ConvergenceDriver:
    """Runs S3, IAM, Elastic Beanstalk, HTTPS, database and DNS steps in order.

    Outputs of earlier steps (instance profile, environment, network
    identifiers, load balancer) are handed to later ones explicitly. The
    first fatal error stops the run.
    """

    def __init__(
        self,
        clients,
        specs: DesiredSpecs,
        confirmer: Optional[Confirmer] = None,
        polling: Optional[PollingConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        profile_propagation_delay: float = 10.0,
    ):
        """Initialize driver.

        Args:
            clients: Source of boto3 clients
            specs: Desired state for the run
            confirmer: Approves updates that need an operator
            polling: Bounded wait settings
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
            profile_propagation_delay: Seconds to wait after attaching a role to the instance profile
        """
        polling = polling or PollingConfig()
        self.clients = clients
        self.specs = specs
        self.confirmer = confirmer
        self.sleep = sleep
        self.profile_propagation_delay = profile_propagation_delay
        self.environment_poller = BoundedPoller(polling.interval, polling.environment_timeout, sleep, clock)
        self.database_poller = BoundedPoller(polling.interval, polling.database_timeout, sleep, clock)
        self.network = NetworkTopologyResolver(clients, specs.application.application_name)

    def run(self) -> RunSummary:
        """Converge every managed resource.

        Returns:
            RunSummary; a fatal error is recorded on it rather than raised
        """
        summary = RunSummary(start_time=datetime.now())
        start = time.monotonic()

        try:
            self._converge(summary)
        except ConvergenceError as e:
            summary.error = e
            error_handler.log_error(e)
        except ClientError as e:
            summary.error = error_handler.handle_exception(e, ErrorContext(operation='converge'))
            error_handler.log_error(summary.error)

        summary.end_time = datetime.now()
        summary.duration = time.monotonic() - start

        logger.info(
            f"Run finished: {summary.created} created, {summary.updated} updated, "
            f"{summary.skipped} skipped, {len(summary.warnings)} warning(s)"
            + (" - FAILED" if summary.failed else "")
        )
        return summary

    def _converge(self, summary: RunSummary) -> None:
        specs = self.specs

        logger.info("Step 1: S3 buckets")
        buckets = BucketReconciler(self.clients, self.confirmer)
        self._record(summary, buckets.reconcile(specs.static_bucket))
        self._record(summary, buckets.reconcile(specs.uploads_bucket))

        logger.info("Step 2: IAM")
        instance_profile = self._converge_iam(summary)

        logger.info("Step 3: Elastic Beanstalk application")
        self._record(summary, ApplicationReconciler(self.clients, self.confirmer).reconcile(specs.application))

        logger.info("Step 4: Elastic Beanstalk environment")
        if instance_profile != specs.environment.instance_profile:
            logger.warning(
                f"Instance profile {instance_profile} differs from the environment spec "
                f"({specs.environment.instance_profile})"
            )
        environment = EnvironmentReconciler(self.clients, self.confirmer, poller=self.environment_poller)
        self._record(summary, environment.reconcile(specs.environment))

        if specs.https_listener:
            logger.info("Step 5: HTTPS listener")
            listener = HttpsListenerReconciler(self.clients, self.confirmer, poller=self.environment_poller)
            self._record(summary, listener.reconcile(specs.https_listener))

            if specs.http_redirect:
                redirect = HttpRedirectReconciler(self.clients, self.network, self.confirmer)
                self._record(summary, redirect.reconcile(specs.http_redirect))

        if specs.database:
            logger.info("Step 6: RDS database")
            topology = self.network.resolve(specs.environment.environment_name)
            database = DatabaseReconciler(
                self.clients,
                self.network,
                confirmer=self.confirmer,
                poller=self.database_poller,
                environment_poller=self.environment_poller,
            )
            for result in database.reconcile(specs.database, topology):
                self._record(summary, result)

        if specs.dns:
            logger.info("Step 7: DNS")
            self._converge_dns(summary)

    def _converge_iam(self, summary: RunSummary) -> str:
        specs = self.specs
        if specs.use_default_role or specs.role is None:
            result = DefaultRoleCheck(self.clients).reconcile()
            self._record(summary, result)
            return result.outputs['instance_profile']

        self._record(summary, RoleReconciler(self.clients, self.confirmer).reconcile(specs.role))

        account_id = self.clients.validate_credentials().account_id
        policies = ManagedPolicyReconciler(self.clients, account_id, self.confirmer)
        self._record(summary, policies.reconcile(specs.s3_policy))

        profiles = InstanceProfileReconciler(
            self.clients,
            self.confirmer,
            propagation_delay=self.profile_propagation_delay,
            sleep=self.sleep,
        )
        result = profiles.reconcile(specs.instance_profile)
        self._record(summary, result)
        return result.outputs['instance_profile']

    def _converge_dns(self, summary: RunSummary) -> None:
        dns = self.specs.dns
        load_balancer = self.network.resolve_load_balancer(self.specs.environment.environment_name)

        if not dns.auto_configure:
            logger.info("Automatic DNS configuration is disabled")
            summary.manual_dns = manual_dns_instructions(dns.domain, load_balancer.dns_name)
            return

        result = DnsRecordReconciler(self.clients).reconcile_domain(
            dns.domain,
            load_balancer.dns_name,
            load_balancer.canonical_hosted_zone_id,
        )
        self._record(summary, result.to_reconcile_result())
        if result.status is DnsRecordStatus.NO_ZONE_FOUND:
            summary.manual_dns = manual_dns_instructions(dns.domain, load_balancer.dns_name)

    @staticmethod
    def _record(summary: RunSummary, result: ReconcileResult) -> None:
        summary.results.append(result)
        with LogContext(
            logger,
            resource_id=result.resource_id,
            resource_type=result.resource_type,
            action=result.action.value,
            outcome=str(result.outcome),
        ):
            if result.has_warning:
                logger.warning(f"{result.resource_type} {result.resource_id}: {result.action.value} ({result.warning})")
            else:
                logger.info(f"{result.resource_type} {result.resource_id}: {result.action.value}")
