"""Tests for the error taxonomy and AWS error translation."""

from botocore.exceptions import NoCredentialsError

from conftest import client_error
from eb_converge.utils.errors import (
    ConfigurationError,
    CredentialError,
    ErrorCategory,
    ErrorContext,
    ErrorHandler,
    ErrorSeverity,
    PolicyDivergenceWarning,
    TransientAPIError,
    UserDeclinedError,
    is_not_found,
)


class TestNotFound:

    def test_not_found_codes(self):
        for code in ("NoSuchBucket", "NoSuchEntity", "DBInstanceNotFound", "InvalidGroup.NotFound", "404"):
            assert is_not_found(client_error(code))

    def test_other_codes(self):
        assert not is_not_found(client_error("AccessDenied"))
        assert not is_not_found(client_error("Throttling"))


class TestErrorHandler:

    def setup_method(self):
        self.handler = ErrorHandler()

    def test_mapped_aws_error(self):
        error = self.handler.handle_exception(
            client_error("AccessDenied", "CreateBucket", "not allowed"),
            ErrorContext(resource_id="shop-uploads", operation="create"),
        )
        assert isinstance(error, TransientAPIError)
        assert error.category is ErrorCategory.PERMISSION
        assert "not allowed" in error.message
        assert error.context.aws_operation == "CreateBucket"
        assert error.fatal

    def test_unmapped_aws_error(self):
        error = self.handler.handle_exception(client_error("InternalFailure", message="boom"))
        assert isinstance(error, TransientAPIError)
        assert error.message == "AWS Error (InternalFailure): boom"
        assert error.category is ErrorCategory.AWS

    def test_missing_credentials(self):
        error = self.handler.handle_exception(NoCredentialsError())
        assert isinstance(error, CredentialError)
        assert error.severity is ErrorSeverity.CRITICAL

    def test_convergence_error_passes_through(self):
        original = ConfigurationError("bad value")
        assert self.handler.handle_exception(original) is original

    def test_unexpected_exception(self):
        error = self.handler.handle_exception(RuntimeError("surprise"))
        assert error.category is ErrorCategory.UNKNOWN
        assert error.cause.args == ("surprise",)


class TestConvergenceError:

    def test_user_message_includes_context_and_suggestions(self):
        error = ConfigurationError(
            "max_allocated_storage too small",
            context=ErrorContext(resource_id="shop-shop-prod-db", operation="validate"),
            suggestions=["Raise max_allocated_storage"],
        )
        message = error.to_user_message()
        assert message.startswith("CRITICAL: max_allocated_storage too small")
        assert "Resource: shop-shop-prod-db" in message
        assert "1. Raise max_allocated_storage" in message

    def test_warnings_are_not_fatal(self):
        assert not PolicyDivergenceWarning("drift", changed_fields={"engine"}).fatal
        declined = UserDeclinedError("declined", changed_fields=["cors"])
        assert not declined.fatal
        assert declined.changed_fields == frozenset({"cors"})

    def test_to_dict(self):
        data = TransientAPIError("throttled", context=ErrorContext(resource_id="r")).to_dict()
        assert data["category"] == "aws"
        assert data["severity"] == "critical"
        assert data["fatal"] is True
        assert data["context"]["resource_id"] == "r"
