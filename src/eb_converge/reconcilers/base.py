"""Base reconciler interface and result types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Generic, Iterable, Optional, TypeVar

from botocore.exceptions import ClientError

from eb_converge.utils.aws_client import AWSClientManager
from eb_converge.utils.confirm import Confirmer
from eb_converge.utils.errors import (
    ErrorContext,
    PolicyDivergenceWarning,
    ResourceNotReadyWarning,
    UserDeclinedError,
    error_handler,
)
from eb_converge.utils.logging import LogContext, get_logger

D = TypeVar("D")
O = TypeVar("O")


class OutcomeKind(Enum):
    """Classification of a desired/observed comparison."""
    ABSENT = "absent"
    MATCHES = "matches"
    DIFFERS = "differs"


@dataclass(frozen=True)
class Outcome:
    """Result of comparing desired and observed state."""
    kind: OutcomeKind
    changed_fields: FrozenSet[str] = frozenset()

    @classmethod
    def absent(cls) -> "Outcome":
        return cls(OutcomeKind.ABSENT)

    @classmethod
    def matches(cls) -> "Outcome":
        return cls(OutcomeKind.MATCHES)

    @classmethod
    def differs(cls, fields: Iterable[str]) -> "Outcome":
        fields = frozenset(fields)
        if not fields:
            raise ValueError("Differs requires at least one changed field")
        return cls(OutcomeKind.DIFFERS, fields)

    @classmethod
    def from_fields(cls, fields: Iterable[str]) -> "Outcome":
        """Matches when ``fields`` is empty, Differs otherwise."""
        fields = frozenset(fields)
        return cls.differs(fields) if fields else cls.matches()

    @property
    def is_absent(self) -> bool:
        return self.kind is OutcomeKind.ABSENT

    @property
    def is_match(self) -> bool:
        return self.kind is OutcomeKind.MATCHES

    @property
    def is_different(self) -> bool:
        return self.kind is OutcomeKind.DIFFERS

    def __str__(self) -> str:
        if self.is_different:
            return f"differs({', '.join(sorted(self.changed_fields))})"
        return self.kind.value


class ReconcileAction(Enum):
    """Action taken for a resource."""
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


@dataclass
class ReconcileResult:
    """Per-resource report of what a reconciler did."""
    resource_type: str
    resource_id: str
    action: ReconcileAction
    outcome: Outcome
    warning: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_warning(self) -> bool:
        return self.warning is not None


class BaseReconciler(ABC, Generic[D, O]):
    """Read, compare, then create, update or skip one resource.

    Subclasses supply the read and write operations and a pure comparison.
    Updates pass through ``check_update_policy`` first, which may raise
    PolicyDivergenceWarning or UserDeclinedError; both are reported as a
    skip with a warning, as is ResourceNotReadyWarning raised from any step.
    Any other AWS error aborts the run.
    """

    resource_type = "resource"

    def __init__(self, clients: AWSClientManager, confirmer: Optional[Confirmer] = None):
        """Initialize reconciler.

        Args:
            clients: Source of boto3 clients
            confirmer: Capability used to approve updates that need an operator
        """
        self.clients = clients
        self.confirmer = confirmer
        self.logger = get_logger(self.__class__.__module__)
        self._warnings = []

    def warn(self, message: str) -> None:
        """Record a non-fatal problem to report with the current result."""
        self.logger.warning(message)
        self._warnings.append(message)

    @abstractmethod
    def resource_id(self, desired: D) -> str:
        """Identity key of the resource."""

    @abstractmethod
    def get_current_state(self, desired: D) -> Optional[O]:
        """Fetch current resource state from AWS.

        Returns:
            Observed state, or None if the resource does not exist
        """

    @abstractmethod
    def compare(self, desired: D, observed: Optional[O]) -> Outcome:
        """Classify the difference between desired and observed state."""

    @abstractmethod
    def create(self, desired: D) -> Optional[Dict[str, Any]]:
        """Create the resource from the desired spec.

        Returns:
            Outputs for downstream reconcilers
        """

    def update(self, desired: D, observed: O, outcome: Outcome) -> Optional[Dict[str, Any]]:
        """Re-submit the full desired document for a resource that differs."""
        raise NotImplementedError(f"{self.resource_type} does not support updates")

    def outputs(self, desired: D, observed: O) -> Dict[str, Any]:
        """Outputs reported when the resource already matches."""
        return {}

    def check_update_policy(self, desired: D, observed: O, outcome: Outcome) -> None:
        """Hook run before every update. Raise to turn the update into a skip."""

    def describe_changes(self, desired: D, observed: O, outcome: Outcome) -> str:
        return f"{self.resource_type} {self.resource_id(desired)}: {', '.join(sorted(outcome.changed_fields))}"

    def require_confirmation(self, desired: D, observed: O, outcome: Outcome) -> None:
        """Ask the confirmer to approve an update.

        Raises:
            UserDeclinedError: If no confirmer is set or the operator declines
        """
        summary = self.describe_changes(desired, observed, outcome)
        if self.confirmer is None or not self.confirmer.confirm(summary):
            raise UserDeclinedError(
                f"Update declined; pending changes: {', '.join(sorted(outcome.changed_fields))}",
                changed_fields=outcome.changed_fields,
                context=ErrorContext(resource_id=self.resource_id(desired), resource_type=self.resource_type),
            )

    def reconcile(self, desired: D) -> ReconcileResult:
        """Converge one resource toward ``desired``.

        Raises:
            TransientAPIError: If any read or write fails unexpectedly
        """
        resource_id = self.resource_id(desired)
        operation = "read"
        observed, outcome = None, Outcome.absent()
        self._warnings = []
        with LogContext(self.logger, resource_id=resource_id, resource_type=self.resource_type):
            try:
                observed = self.get_current_state(desired)
                outcome = self.compare(desired, observed)

                if outcome.is_absent:
                    operation = "create"
                    self.logger.info(f"Creating {self.resource_type}")
                    outputs = self.create(desired) or {}
                    self.logger.info(f"Created {self.resource_type}")
                    return self._result(resource_id, ReconcileAction.CREATE, outcome, outputs=outputs)

                if outcome.is_match:
                    self.logger.info(f"{self.resource_type} is up to date, skipping")
                    return self._result(
                        resource_id, ReconcileAction.SKIP, outcome,
                        outputs=self.outputs(desired, observed),
                    )

                self.logger.info(f"{self.resource_type} {outcome}")
                self.check_update_policy(desired, observed, outcome)
                operation = "update"
                outputs = self.update(desired, observed, outcome) or {}
                self.logger.info(f"Updated {self.resource_type}")
                return self._result(resource_id, ReconcileAction.UPDATE, outcome, outputs=outputs)

            except (PolicyDivergenceWarning, UserDeclinedError, ResourceNotReadyWarning) as warning:
                self.logger.warning(f"Skipping {self.resource_type}: {warning.message}")
                self._warnings.append(warning.message)
                return self._result(
                    resource_id, ReconcileAction.SKIP, outcome,
                    outputs=self.outputs(desired, observed) if observed is not None else {},
                )
            except ClientError as e:
                raise error_handler.handle_exception(
                    e,
                    ErrorContext(resource_id=resource_id, resource_type=self.resource_type, operation=operation),
                ) from e

    def _result(self, resource_id, action, outcome, outputs=None) -> ReconcileResult:
        return ReconcileResult(
            resource_type=self.resource_type,
            resource_id=resource_id,
            action=action,
            outcome=outcome,
            warning="; ".join(self._warnings) or None,
            outputs=outputs or {},
        )
